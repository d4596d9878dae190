"""Metadata block I/O: locating, reading and writing the hidden comment block.

All comments for a document live in one HTML comment at the end of the file:

    <!-- markco-comments
    { "version": 2, "comments": [ ... ] }
    -->

Markdown renderers drop HTML comments, so the block is invisible in previews.
The block is always the last one physically in the document, but marker-like
text can also appear earlier (inside fenced code or inline code spans), so
the locator scans backward and skips any occurrence that sits inside code.
The serializer never writes a literal ``<`` into the payload, so the block
cannot contain a copy of its own start marker.
"""

import json
import re
from collections.abc import Callable
from typing import Any, NamedTuple

from pydantic import ValidationError

from markco.document import Position, Range, TextDocument, TextEdit
from markco.logging import get_logger
from markco.models import CURRENT_VERSION, Comment, CommentData

COMMENT_BLOCK_START = "<!-- markco-comments"
COMMENT_BLOCK_END = "-->"
ZERO_WIDTH_SPACE = "\u200b"

# "--" + k zero-width spaces + ">" for k >= 0. Sanitizing adds one zero-width
# space, restoring removes one, so the mapping is a bijection on all strings.
_SANITIZE_PATTERN = re.compile(f"--({ZERO_WIDTH_SPACE}*)>")
_RESTORE_PATTERN = re.compile(f"--({ZERO_WIDTH_SPACE}+)>")

_FENCE = "```"
_SINGLE_BACKTICK = re.compile(r"(?<!`)`(?!`)")


class BlockSpan(NamedTuple):
    """Character span of the metadata block, start marker through end marker.

    ``end`` is exclusive. An unterminated block (start marker with no end
    marker after it) runs to the end of the document and has ``closed=False``.
    """

    start: int
    end: int
    closed: bool = True

    @property
    def length(self) -> int:
        return self.end - self.start


# ============================================================================
# Escaping
# ============================================================================


def sanitize_for_storage(text: str) -> str:
    """Make text safe to store inside the HTML comment block.

    Every ``-->`` would close the block early, so it becomes ``--<ZWSP>>``.
    Sequences that already carry zero-width spaces get one more, which keeps
    ``restore_from_storage`` an exact inverse.
    """
    return _SANITIZE_PATTERN.sub(lambda m: f"--{m.group(1)}{ZERO_WIDTH_SPACE}>", text)


def restore_from_storage(text: str) -> str:
    """Exact inverse of ``sanitize_for_storage``."""
    return _RESTORE_PATTERN.sub(lambda m: f"--{m.group(1)[1:]}>", text)


def _transform_comment_fields(comment: dict[str, Any], fn: Callable[[str], str]) -> dict[str, Any]:
    """Apply fn to every free-text field of a wire-format comment (in place)."""

    def _apply(obj: dict[str, Any], key: str) -> None:
        if isinstance(obj.get(key), str):
            obj[key] = fn(obj[key])

    def _apply_names(obj: dict[str, Any]) -> None:
        names = obj.get("thumbsUp")
        if isinstance(names, list):
            obj["thumbsUp"] = [fn(n) if isinstance(n, str) else n for n in names]

    _apply(comment, "content")
    _apply(comment, "author")
    _apply_names(comment)
    anchor = comment.get("anchor")
    if isinstance(anchor, dict):
        _apply(anchor, "text")
    replies = comment.get("replies")
    if isinstance(replies, list):
        for reply in replies:
            if isinstance(reply, dict):
                _apply(reply, "content")
                _apply(reply, "author")
                _apply_names(reply)
    return comment


# ============================================================================
# Block location
# ============================================================================


def is_inside_code_context(text: str, position: int) -> bool:
    """
    Check whether position falls inside a fenced code block or an inline code span.

    Fences are tracked by counting ``` occurrences before position (odd means
    inside). Inline code is tracked per line by counting single backticks that
    are not part of a fence.

    Args:
        text: Full document text
        position: Character offset to test

    Returns:
        True if position is inside code
    """
    before = text[:position]

    if before.count(_FENCE) % 2 == 1:
        return True

    # A backtick immediately before position (e.g. `<!-- markco-comments) means inline code
    if position > 0 and text[position - 1] == "`":
        if not (position >= 3 and text[position - 3 : position] == _FENCE):
            return True

    last_backtick = before.rfind("`")
    if last_backtick == -1:
        return False

    # Ignore the backtick if it belongs to a fence
    if before[last_backtick:].startswith(_FENCE):
        return False

    line_start = before.rfind("\n", 0, last_backtick) + 1
    line_end = text.find("\n", position)
    line = text[line_start : len(text) if line_end == -1 else line_end]
    position_in_line = position - line_start

    ticks_before = len(_SINGLE_BACKTICK.findall(line[:position_in_line]))
    ticks_after = len(_SINGLE_BACKTICK.findall(line[position_in_line:]))

    # Odd number of single backticks before and at least one after: inside a span
    return ticks_before % 2 == 1 and ticks_after > 0


def find_block_start(text: str) -> int | None:
    """
    Find the offset of the metadata block's start marker.

    Scans backward from the end of the document and returns the right-most
    start marker that is not inside fenced or inline code.

    Args:
        text: Full document text

    Returns:
        Offset of the start marker, or None if no block exists
    """
    search_end = len(text) + len(COMMENT_BLOCK_START)
    while True:
        # Only occurrences starting strictly before the previous candidate
        index = text.rfind(COMMENT_BLOCK_START, 0, search_end - 1)
        if index == -1:
            return None
        if not is_inside_code_context(text, index):
            return index
        search_end = index + len(COMMENT_BLOCK_START)


def find_block_span(text: str) -> BlockSpan | None:
    """
    Locate the metadata block, start marker through end marker.

    Args:
        text: Full document text

    Returns:
        BlockSpan, or None if no block exists. If the end marker is missing,
        the span runs to the end of the text and ``closed`` is False.
    """
    start = find_block_start(text)
    if start is None:
        return None
    end_marker = text.find(COMMENT_BLOCK_END, start + len(COMMENT_BLOCK_START))
    if end_marker == -1:
        return BlockSpan(start, len(text), closed=False)
    return BlockSpan(start, end_marker + len(COMMENT_BLOCK_END))


# ============================================================================
# Parse / serialize
# ============================================================================


def parse_comments_text(text: str) -> list[Comment]:
    """
    Parse the comments stored in a document's metadata block.

    Never raises for bad input: a missing block, an unterminated block, a
    payload that does not look like a JSON object, or a payload that fails
    JSON decoding or schema validation all yield an empty list.

    Args:
        text: Full document text

    Returns:
        Comments in stored order, with escaped text restored
    """
    span = find_block_span(text)
    if span is None or not span.closed:
        return []

    payload = text[span.start + len(COMMENT_BLOCK_START) : span.end - len(COMMENT_BLOCK_END)].strip()

    # Marker text inside something that is not our block (e.g. prose about the format)
    if not payload.startswith("{"):
        return []

    try:
        raw = json.loads(payload)
        raw_comments = raw.get("comments") if isinstance(raw, dict) else None
        if isinstance(raw_comments, list):
            for raw_comment in raw_comments:
                if isinstance(raw_comment, dict):
                    _transform_comment_fields(raw_comment, restore_from_storage)
        data = CommentData.model_validate(raw)
    except json.JSONDecodeError as e:
        get_logger().warning(f"Failed to parse comment block: invalid JSON ({e})")
        return []
    except ValidationError as e:
        get_logger().warning(f"Failed to parse comment block: schema validation failed ({e})")
        return []

    return data.comments


def serialize_comments(
    comments: list[Comment], *, version: int = CURRENT_VERSION, indent: int = 2
) -> str:
    """
    Serialize comments into a complete metadata block (markers included).

    Free-text fields are passed through ``sanitize_for_storage`` so the payload
    can never contain the end marker, and every ``<`` is written as the JSON
    escape ``\\u003c`` so it can never contain the start marker either. The
    given comments are not modified.

    Args:
        comments: Comments to store
        version: Schema version tag written to the payload
        indent: JSON indentation

    Returns:
        Block text, start marker through end marker, no surrounding newlines
    """
    data = {
        "version": version,
        "comments": [
            _transform_comment_fields(comment.to_wire(), sanitize_for_storage)
            for comment in comments
        ],
    }
    # "<" only occurs inside JSON strings, where its unicode escape decodes back to it
    body = json.dumps(data, indent=indent, ensure_ascii=False).replace("<", "\\u003c")
    return f"{COMMENT_BLOCK_START}\n{body}\n{COMMENT_BLOCK_END}"


# ============================================================================
# Store
# ============================================================================


class CommentCache:
    """Parsed comments per document, keyed by document uri.

    Entries are replaced on parse and on successful save, and dropped only by
    explicit invalidation. There is no expiry.
    """

    def __init__(self) -> None:
        self._entries: dict[str, list[Comment]] = {}

    def __contains__(self, uri: object) -> bool:
        return uri in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, uri: str) -> list[Comment] | None:
        return self._entries.get(uri)

    def put(self, uri: str, comments: list[Comment]) -> None:
        self._entries[uri] = comments

    def invalidate(self, uri: str) -> None:
        self._entries.pop(uri, None)

    def clear(self) -> None:
        self._entries.clear()


class AnchorStore:
    """Reads and writes the metadata block of TextDocuments, with a parse cache."""

    def __init__(
        self,
        cache: CommentCache | None = None,
        *,
        schema_version: int = CURRENT_VERSION,
        json_indent: int = 2,
    ) -> None:
        self.cache = cache if cache is not None else CommentCache()
        self.schema_version = schema_version
        self.json_indent = json_indent

    def parse_comments(self, document: TextDocument) -> list[Comment]:
        """Re-parse the document's block and refresh the cache."""
        comments = parse_comments_text(document.get_text())
        self.cache.put(document.uri, comments)
        return list(comments)

    def get_comments(self, document: TextDocument) -> list[Comment]:
        """Cached comments for the document, parsing on first access.

        Returns a new list holding the cached Comment objects. Callers that
        intend to modify comments should copy them first so a failed save
        leaves the cache untouched.
        """
        cached = self.cache.get(document.uri)
        if cached is None:
            return self.parse_comments(document)
        return list(cached)

    def serialize(self, comments: list[Comment]) -> str:
        return serialize_comments(comments, version=self.schema_version, indent=self.json_indent)

    async def save_comments(self, document: TextDocument, comments: list[Comment]) -> bool:
        """
        Write comments into the document as a single edit.

        Appends ``\\n\\n`` + block when the document has no block (or only an
        unterminated one), otherwise replaces the existing block from start
        marker through end marker.

        Args:
            document: Target document
            comments: Full comment list to persist

        Returns:
            True on success. On success the cache holds exactly the given
            comments; on failure the cache is left unchanged.
        """
        text = document.get_text()
        block = self.serialize(comments)
        span = find_block_span(text)

        if span is None or not span.closed:
            last_line = document.line_at(document.line_count - 1)
            end = Position(last_line.line_number, len(last_line.text))
            edit = TextEdit.insert(end, "\n\n" + block)
        else:
            edit = TextEdit.replace(
                Range(document.position_at(span.start), document.position_at(span.end)), block
            )

        try:
            success = await document.apply_edit(edit)
        except OSError as e:
            get_logger().warning(f"Failed to write comment block to {document.uri}: {e}")
            return False

        if not success:
            get_logger().warning(f"Document rejected comment block write: {document.uri}")
            return False

        self.cache.put(document.uri, list(comments))
        get_logger().debug("Saved comment block", uri=document.uri, comments=len(comments))
        return True

    def invalidate(self, uri: str) -> None:
        """Drop the cached comments for a document uri."""
        self.cache.invalidate(uri)

    def clear_cache(self, document: TextDocument) -> None:
        self.invalidate(document.uri)
