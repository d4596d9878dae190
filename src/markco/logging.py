"""Stderr logging for markco.

stdout carries command results (comment listings, JSON, rendered HTML) and
the MCP stdio transport, so every diagnostic goes to stderr. Debug lines are
only written when verbose is on; ANSI colours only when stderr is a terminal.
"""

import sys
import traceback
from typing import Any

# ANSI colour codes
_CYAN = "36"
_YELLOW = "33"
_RED = "31"
_GRAY = "90"


class Logger:
    """Writes markco diagnostics to stderr.

    Attributes:
        verbose: Emit debug lines and exception tracebacks
        use_colors: Wrap lines in ANSI colour codes
    """

    def __init__(self, verbose: bool = False, use_colors: bool = True) -> None:
        self.verbose = verbose
        self.use_colors = use_colors and sys.stderr.isatty()

    def _colorize(self, text: str, color_code: str) -> str:
        if not self.use_colors:
            return text
        return f"\033[{color_code}m{text}\033[0m"

    def _write(self, text: str, color_code: str | None = None) -> None:
        if color_code is not None:
            text = self._colorize(text, color_code)
        print(text, file=sys.stderr)

    def debug(self, message: str, **details: Any) -> None:
        """Log a debug line with optional key=value details (verbose only).

        Example:
            >>> logger.debug("Anchor relocated", comment_id="c1", to_line=4)
            DEBUG: Anchor relocated (comment_id='c1' to_line=4)
        """
        if not self.verbose:
            return
        line = f"DEBUG: {message}"
        if details:
            line += " (" + " ".join(f"{key}={value!r}" for key, value in details.items()) + ")"
        self._write(line, _CYAN)

    def info(self, message: str) -> None:
        self._write(message)

    def warning(self, message: str) -> None:
        self._write(f"Warning: {message}", _YELLOW)

    def error(self, message: str) -> None:
        self._write(f"Error: {message}", _RED)

    def exception(self, message: str, exc: BaseException) -> None:
        """Log a failure; the traceback follows only in verbose mode."""
        self.error(f"{message}: {exc}")
        if self.verbose:
            self._write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)), _GRAY)


_logger: Logger | None = None


def init_logger(verbose: bool = False, use_colors: bool = True) -> Logger:
    """Install the process-wide logger (called by the CLI entry point)."""
    global _logger
    _logger = Logger(verbose=verbose, use_colors=use_colors)
    return _logger


def get_logger() -> Logger:
    """Return the process-wide logger.

    The store, reconciler and projector also run inside hosts that never call
    init_logger(), so a non-verbose logger is installed on first use.
    """
    global _logger
    if _logger is None:
        _logger = Logger()
    return _logger
