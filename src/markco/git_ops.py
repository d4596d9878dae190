"""Git integration for comment authorship.

New comments and replies are attributed to the git ``user.name`` configured
for the repository holding the document. Lookup failures never surface: the
configured default author is used instead.
"""

import subprocess
from pathlib import Path
from typing import Protocol

from markco.document import TextDocument
from markco.logging import get_logger

DEFAULT_AUTHOR = "user"


class AuthorProvider(Protocol):
    def get_author_name(self, document: TextDocument) -> str: ...


def get_git_user_name(cwd: Path, default: str = DEFAULT_AUTHOR, timeout: float = 5.0) -> str:
    """
    Read ``git config user.name`` as seen from cwd.

    Args:
        cwd: Directory to run git in (repository-local config applies)
        default: Name returned when git is missing, fails, or has no name set
        timeout: Seconds before the git process is abandoned

    Returns:
        Configured user name, or default
    """
    logger = get_logger()
    try:
        result = subprocess.run(
            ["git", "config", "user.name"],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (subprocess.SubprocessError, FileNotFoundError, OSError) as e:
        logger.debug("Failed to get git user.name", cwd=str(cwd), error=str(e))
        return default

    if result.stderr:
        logger.debug("git config stderr", stderr=result.stderr.strip())

    name = result.stdout.strip()
    if result.returncode != 0 or not name:
        logger.debug("Git user.name is empty, falling back", default=default)
        return default
    return name


class GitAuthorProvider:
    """Resolves the author from git, relative to the document's directory.

    Documents without a filesystem path (in-memory buffers) use the process
    working directory.
    """

    def __init__(self, default: str = DEFAULT_AUTHOR) -> None:
        self.default = default

    def get_author_name(self, document: TextDocument) -> str:
        path = getattr(document, "path", None)
        cwd = Path(path).parent if path is not None else Path.cwd()
        return get_git_user_name(cwd, default=self.default)


class StaticAuthorProvider:
    """Always returns the same author (explicit --author flags, tests, agents)."""

    def __init__(self, name: str) -> None:
        self.name = name

    def get_author_name(self, document: TextDocument) -> str:
        return self.name
