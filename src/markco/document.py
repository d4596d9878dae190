"""Text document model consumed by the comment store.

The store never touches files or editor buffers directly. It talks to a
``TextDocument``: full text, line access, offset/position mapping, and a
single asynchronous edit primitive that the host may reject.
"""

import os
import tempfile
from pathlib import Path
from typing import NamedTuple, Protocol, runtime_checkable


class Position(NamedTuple):
    """0-based line and character position."""

    line: int
    character: int


class Range(NamedTuple):
    """Half-open span between two positions (end is exclusive)."""

    start: Position
    end: Position

    @property
    def is_empty(self) -> bool:
        return self.start == self.end


class TextLine(NamedTuple):
    line_number: int
    text: str


class TextEdit(NamedTuple):
    """Replace ``range`` with ``new_text``. An empty range is an insertion."""

    range: Range
    new_text: str

    @classmethod
    def insert(cls, position: Position, text: str) -> "TextEdit":
        return cls(Range(position, position), text)

    @classmethod
    def replace(cls, range: Range, text: str) -> "TextEdit":
        return cls(range, text)


@runtime_checkable
class TextDocument(Protocol):
    """Host document interface."""

    @property
    def uri(self) -> str:
        """Stable identity used as the cache and lock key."""
        ...

    @property
    def line_count(self) -> int: ...

    def get_text(self, range: Range | None = None) -> str: ...

    def line_at(self, line: int) -> TextLine: ...

    def position_at(self, offset: int) -> Position: ...

    def offset_at(self, position: Position) -> int: ...

    async def apply_edit(self, edit: TextEdit) -> bool:
        """Apply an edit. Returns False when the host rejects it."""
        ...


class _TextBuffer:
    """Offset/position arithmetic over a plain string (lines split on ``\\n``)."""

    def __init__(self, text: str) -> None:
        self._set_text(text)

    def _set_text(self, text: str) -> None:
        self._text = text
        self._line_starts = [0]
        for i, ch in enumerate(text):
            if ch == "\n":
                self._line_starts.append(i + 1)

    @property
    def line_count(self) -> int:
        return len(self._line_starts)

    def get_text(self, range: Range | None = None) -> str:
        if range is None:
            return self._text
        return self._text[self.offset_at(range.start) : self.offset_at(range.end)]

    def line_at(self, line: int) -> TextLine:
        if line < 0 or line >= self.line_count:
            raise ValueError(f"Line {line} out of range (document has {self.line_count} lines)")
        start = self._line_starts[line]
        if line + 1 < self.line_count:
            end = self._line_starts[line + 1] - 1
        else:
            end = len(self._text)
        return TextLine(line, self._text[start:end])

    def position_at(self, offset: int) -> Position:
        offset = max(0, min(offset, len(self._text)))
        # Binary search for the last line start <= offset
        lo, hi = 0, len(self._line_starts) - 1
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if self._line_starts[mid] <= offset:
                lo = mid
            else:
                hi = mid - 1
        return Position(lo, offset - self._line_starts[lo])

    def offset_at(self, position: Position) -> int:
        if position.line < 0:
            return 0
        if position.line >= self.line_count:
            return len(self._text)
        line_text = self.line_at(position.line).text
        character = max(0, min(position.character, len(line_text)))
        return self._line_starts[position.line] + character

    def _apply(self, edit: TextEdit) -> str:
        start = self.offset_at(edit.range.start)
        end = self.offset_at(edit.range.end)
        if end < start:
            raise ValueError(f"Edit range end precedes start: {edit.range}")
        return self._text[:start] + edit.new_text + self._text[end:]


class InMemoryDocument(_TextBuffer):
    """Document held entirely in memory.

    Setting ``closed`` makes every subsequent edit fail, the way an editor
    rejects edits to a document that was closed underneath the caller.
    """

    def __init__(self, text: str, uri: str = "untitled:document.md") -> None:
        super().__init__(text)
        self._uri = uri
        self.closed = False
        self.version = 0

    @property
    def uri(self) -> str:
        return self._uri

    def replace_text(self, text: str) -> None:
        """Replace the whole buffer outside the edit primitive (user typing)."""
        self._set_text(text)
        self.version += 1

    async def apply_edit(self, edit: TextEdit) -> bool:
        if self.closed:
            return False
        self._set_text(self._apply(edit))
        self.version += 1
        return True


class FileDocument(_TextBuffer):
    """Document backed by a UTF-8 file on disk.

    The text is read once on construction (or ``reload()``). Edits rewrite the
    file atomically: temp file in the same directory, then rename over the
    target, so readers never observe a partial write.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).resolve()
        if not self.path.exists():
            raise FileNotFoundError(f"Source file not found: {self.path}")
        if not self.path.is_file():
            raise ValueError(f"Path is not a file: {self.path}")
        super().__init__(self._read())

    def _read(self) -> str:
        # newline="" keeps \r\n intact so offsets match the bytes on disk
        with open(self.path, encoding="utf-8", newline="") as f:
            return f.read()

    @property
    def uri(self) -> str:
        return self.path.as_uri()

    def reload(self) -> None:
        self._set_text(self._read())

    async def apply_edit(self, edit: TextEdit) -> bool:
        new_text = self._apply(edit)
        write_text_atomic(self.path, new_text)
        self._set_text(new_text)
        return True


def write_text_atomic(target_path: Path, content: str) -> None:
    """Write text content to target_path atomically.

    Uses temp file + rename pattern to ensure atomic write.

    Args:
        target_path: Destination file path
        content: Text content to write (written verbatim, no newline added)

    Raises:
        OSError: If write or rename fails
    """
    dir_path = target_path.parent
    dir_path.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(dir=dir_path, prefix=".tmp_", suffix=target_path.suffix)

    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)

        # Keep the original file's permissions
        if target_path.exists():
            os.chmod(temp_path, target_path.stat().st_mode & 0o777)
        else:
            os.chmod(temp_path, 0o644)

        os.replace(temp_path, target_path)

    except Exception:
        # Clean up temp file on any failure
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise
