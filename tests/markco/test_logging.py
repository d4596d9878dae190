"""Tests for markco's stderr logger."""

import pytest

import markco.logging
from markco.logging import Logger, get_logger, init_logger


@pytest.fixture(autouse=True)
def _restore_global_logger():
    saved = markco.logging._logger
    yield
    markco.logging._logger = saved


class TestLogger:
    """Tests for Logger output."""

    def test_warning_goes_to_stderr(self, capsys):
        """Warnings are prefixed and never touch stdout."""
        Logger(use_colors=False).warning("Comment block is malformed")

        captured = capsys.readouterr()
        assert "Warning: Comment block is malformed" in captured.err
        assert captured.out == ""

    def test_error_goes_to_stderr(self, capsys):
        """Errors are prefixed and written to stderr."""
        Logger(use_colors=False).error("Anchor not found")

        captured = capsys.readouterr()
        assert captured.err == "Error: Anchor not found\n"
        assert captured.out == ""

    def test_info_is_unprefixed(self, capsys):
        """Info lines are written as given."""
        Logger(use_colors=False).info("Watching 1 file(s)")
        assert capsys.readouterr().err == "Watching 1 file(s)\n"

    def test_debug_only_when_verbose(self, capsys):
        """Debug output is gated by verbose and renders key/value details."""
        Logger(verbose=False, use_colors=False).debug("hidden")
        assert capsys.readouterr().err == ""

        Logger(verbose=True, use_colors=False).debug("Anchor relocated", comment_id="c1", to_line=4)
        assert capsys.readouterr().err == "DEBUG: Anchor relocated (comment_id='c1' to_line=4)\n"

    def test_exception_traceback_only_when_verbose(self, capsys):
        """Tracebacks are printed in verbose mode only."""
        try:
            raise ValueError("bad payload")
        except ValueError as e:
            Logger(verbose=False, use_colors=False).exception("Parse failed", e)
            quiet_err = capsys.readouterr().err
            Logger(verbose=True, use_colors=False).exception("Parse failed", e)
            verbose_err = capsys.readouterr().err

        assert "Error: Parse failed: bad payload" in quiet_err
        assert "Traceback" not in quiet_err
        assert "ValueError: bad payload" in verbose_err

    def test_colorize(self):
        """ANSI codes are added only when colors are enabled."""
        logger = Logger(use_colors=False)
        assert logger._colorize("text", "31") == "text"

        logger.use_colors = True  # Override TTY check
        assert logger._colorize("text", "31") == "\033[31mtext\033[0m"


class TestGlobalLogger:
    """Tests for the module-level logger."""

    def test_init_logger_replaces_global(self):
        """init_logger installs the instance returned by get_logger."""
        logger = init_logger(verbose=True, use_colors=False)
        assert get_logger() is logger
        assert logger.verbose is True

    def test_get_logger_installs_default(self):
        """Library code gets a non-verbose logger without initialization."""
        markco.logging._logger = None
        logger = get_logger()
        assert logger is get_logger()
        assert logger.verbose is False
