"""markdown-it-py plugin that highlights commented text in rendered previews.

After parsing, each comment is assigned to the render tokens whose source
line range covers its anchor's start line. Inline tokens have their children
split at match boundaries and wrapped in ``<span class="markco-highlight">``;
fenced and indented code blocks are re-rendered as HTML with the matched
ranges wrapped.

Rendered text is not the raw source: emphasis markers, list numbers,
backticks and the like are consumed by the parser. Matching therefore tries
the raw anchor text first, then a copy with common markdown syntax stripped,
and, only when no token on the anchor's line contains either form, falls
back to highlighting the first such token whole. The fallback can highlight
far more than the selection; it is preferred over dropping the highlight
silently.
"""

import re
from collections.abc import Callable, Iterator
from enum import Enum
from typing import NamedTuple

from markdown_it import MarkdownIt
from markdown_it.common.utils import escapeHtml
from markdown_it.rules_core import StateCore
from markdown_it.token import Token

from markco.logging import get_logger
from markco.models import Comment
from markco.storage import parse_comments_text

# Leading list/quote/heading syntax, applied per line
_LINE_PREFIXES = [
    re.compile(r"^[ \t]*\d+[.)][ \t]+", re.MULTILINE),  # "1. ", "2) "
    re.compile(r"^[ \t]*[-*+][ \t]+", re.MULTILINE),  # "- ", "* ", "+ "
    re.compile(r"^[ \t]*>[ \t]?", re.MULTILINE),  # "> "
    re.compile(r"^[ \t]*#{1,6}[ \t]+", re.MULTILINE),  # "## "
]
_LINK = re.compile(r"!?\[([^\]]*)\]\([^)]*\)")
_BACKTICKS = re.compile(r"`")
_STRIKE = re.compile(r"~~")
_BOLD = re.compile(r"\*\*|__")
# Single * or _ used for emphasis; underscores inside words (snake_case) stay
_ITALIC_STAR = re.compile(r"(?<!\w)\*(?!\*)|\*(?!\w)")
_ITALIC_UNDERSCORE = re.compile(r"(?<!\w)_(?!_)|_(?!\w)")

_FENCE_TYPES = ("fence", "code_block")
_BREAK_TYPES = ("softbreak", "hardbreak")
_TEXT_TYPES = ("text", "code_inline")


class TokenKind(str, Enum):
    """Closed set of token shapes the splitting algorithm understands."""

    TEXT = "text"  # text-bearing, may be split (text, code_inline)
    BREAK = "break"  # line break, counts as "\n", never split
    MARKUP_OPEN = "markup_open"  # opening tag (em_open, strong_open, link_open, ...)
    MARKUP_CLOSE = "markup_close"  # closing tag
    MARKUP_VOID = "markup_void"  # self-contained, no text (image, html_inline, ...)
    BLOCK = "block"  # holds raw text directly (fence, code_block)
    OTHER = "other"  # block structure the projector never touches


def classify(token: Token) -> TokenKind:
    if token.type in _TEXT_TYPES:
        return TokenKind.TEXT
    if token.type in _BREAK_TYPES:
        return TokenKind.BREAK
    if token.type in _FENCE_TYPES:
        return TokenKind.BLOCK
    if token.type == "inline":
        return TokenKind.OTHER
    if token.nesting == 1:
        return TokenKind.MARKUP_OPEN
    if token.nesting == -1:
        return TokenKind.MARKUP_CLOSE
    if not token.block:
        return TokenKind.MARKUP_VOID
    return TokenKind.OTHER


class HighlightStyle(NamedTuple):
    highlight_class: str = "markco-highlight"
    resolved_class: str = "markco-resolved"

    def open_tag(self, comment: Comment) -> str:
        classes = self.highlight_class
        if comment.resolved:
            classes += f" {self.resolved_class}"
        return (
            f'<span class="{escapeHtml(classes)}" data-comment-id="{escapeHtml(comment.id)}"'
            f' title="{escapeHtml(comment.content)}">'
        )

    close_tag = "</span>"


class Match(NamedTuple):
    """A highlighted range [start, end) in a token's text coordinates."""

    start: int
    end: int
    comment: Comment
    order: int


class TextSlice(NamedTuple):
    start: int
    end: int


# ============================================================================
# Text helpers
# ============================================================================


def normalize_anchor_text(text: str) -> str:
    """
    Strip markdown syntax that does not survive rendering.

    Removes leading list numbers, bullets, quote and heading markers, link
    targets, backticks, strikethrough, bold and italic markers. Underscores
    inside words are kept.

    Args:
        text: Raw anchor text as selected in the source

    Returns:
        Text approximating what the renderer emits
    """
    normalized = text
    for pattern in _LINE_PREFIXES:
        normalized = pattern.sub("", normalized)
    normalized = _LINK.sub(r"\1", normalized)
    normalized = _BACKTICKS.sub("", normalized)
    normalized = _STRIKE.sub("", normalized)
    normalized = _BOLD.sub("", normalized)
    normalized = _ITALIC_STAR.sub("", normalized)
    normalized = _ITALIC_UNDERSCORE.sub("", normalized)
    return normalized


def extract_text_with_positions(children: list[Token]) -> tuple[str, dict[int, TextSlice]]:
    """
    Concatenate the text-bearing children of an inline token.

    Args:
        children: Child tokens of an inline token

    Returns:
        Tuple of (combined_text, positions) where positions maps a child index
        to its [start, end) slice of combined_text. Breaks contribute "\\n".
    """
    parts: list[str] = []
    positions: dict[int, TextSlice] = {}
    length = 0
    for i, child in enumerate(children):
        kind = classify(child)
        if kind is TokenKind.TEXT:
            piece = child.content
        elif kind is TokenKind.BREAK:
            piece = "\n"
        else:
            continue
        positions[i] = TextSlice(length, length + len(piece))
        parts.append(piece)
        length += len(piece)
    return "".join(parts), positions


def group_comments_by_line(comments: list[Comment]) -> dict[int, list[Comment]]:
    """Group comments by anchor start line, each group ordered by start character."""
    by_line: dict[int, list[Comment]] = {}
    for comment in comments:
        by_line.setdefault(comment.anchor.start_line, []).append(comment)
    for line_comments in by_line.values():
        line_comments.sort(key=lambda c: c.anchor.start_char)
    return by_line


def _find_nth(haystack: str, needle: str, n: int) -> int:
    """Offset of the n-th (0-based) occurrence, else the first, else -1."""
    first = index = haystack.find(needle)
    for _ in range(n):
        if index == -1:
            break
        index = haystack.find(needle, index + 1)
    return index if index != -1 else first


def source_occurrence(src_lines: list[str], token_map: list[int], comment: Comment) -> int:
    """
    Which occurrence of the anchor text, within the token's source lines, the anchor is.

    Counts occurrences of the anchor text that start before the anchor's
    recorded position inside the raw source of the token. Stale positions
    simply yield 0 (first occurrence).
    """
    start_line, end_line = token_map
    anchor = comment.anchor
    if not (start_line <= anchor.start_line < end_line) or not anchor.text:
        return 0

    block_lines = src_lines[start_line:end_line]
    raw = "\n".join(block_lines)
    offset = sum(len(line) + 1 for line in block_lines[: anchor.start_line - start_line])
    offset += anchor.start_char

    count = 0
    index = raw.find(anchor.text)
    while index != -1 and index < offset:
        count += 1
        index = raw.find(anchor.text, index + 1)
    return count


def _sorted_matches(matches: list[Match]) -> list[Match]:
    # Longer ranges first on ties so they nest outside shorter ones
    return sorted(matches, key=lambda m: (m.start, -m.end, m.order))


def iter_segments(start: int, end: int, matches: list[Match]) -> Iterator[tuple[int, int, list[Match]]]:
    """
    Split [start, end) at every match boundary.

    Yields:
        (segment_start, segment_end, active_matches) for each non-empty
        segment; active_matches keeps the order of ``matches``
    """
    cuts = {start, end}
    for match in matches:
        if start < match.start < end:
            cuts.add(match.start)
        if start < match.end < end:
            cuts.add(match.end)
    points = sorted(cuts)
    for seg_start, seg_end in zip(points, points[1:]):
        active = [m for m in matches if m.start <= seg_start < m.end]
        yield seg_start, seg_end, active


class _HighlightNester:
    """Keeps emitted highlight tags properly nested.

    Open highlights form a stack. Moving to a new set of active highlights
    closes the stack down to the longest prefix still active (innermost
    first), then opens the remaining ones in order.
    """

    def __init__(self, emit_open: Callable[[Comment], None], emit_close: Callable[[], None]) -> None:
        self._emit_open = emit_open
        self._emit_close = emit_close
        self.stack: list[Match] = []

    def sync(self, active: list[Match]) -> None:
        keep = 0
        while (
            keep < len(self.stack)
            and keep < len(active)
            and self.stack[keep].order == active[keep].order
        ):
            keep += 1
        while len(self.stack) > keep:
            self.stack.pop()
            self._emit_close()
        for match in active[keep:]:
            self.stack.append(match)
            self._emit_open(match.comment)

    def close_all(self) -> None:
        self.sync([])


# ============================================================================
# Projection
# ============================================================================


def _candidate_comments(token_map: list[int], by_line: dict[int, list[Comment]]) -> list[Comment]:
    start_line, end_line = token_map
    candidates: list[Comment] = []
    for line in range(start_line, end_line):
        candidates.extend(by_line.get(line, ()))
    return candidates


def locate_in_rendered_text(
    full_text: str, comment: Comment, src_lines: list[str], token_map: list[int]
) -> tuple[int, int] | None:
    """
    Find a comment's anchor in one token's rendered text.

    Tries the raw anchor text, then the normalized text, each at the same
    occurrence the anchor has in the token's source.

    Returns:
        [start, end) offsets into full_text, or None if neither form occurs
    """
    occurrence = source_occurrence(src_lines, token_map, comment)
    for needle in (comment.anchor.text, normalize_anchor_text(comment.anchor.text)):
        if not needle:
            continue
        index = _find_nth(full_text, needle, occurrence)
        if index != -1:
            return index, index + len(needle)
    return None


class _InlineTarget:
    """An inline token awaiting projection, with its rendered text and matches."""

    def __init__(self, token: Token, candidates: list[Comment]) -> None:
        self.token = token
        self.candidates = candidates
        self.full_text, self.positions = extract_text_with_positions(token.children or [])
        self.matches: list[Match] = []

    def add(self, comment: Comment, start: int, end: int) -> None:
        if start >= end:
            return
        order = next(i for i, candidate in enumerate(self.candidates) if candidate is comment)
        self.matches.append(Match(start, end, comment, order))


def project_inline_token(
    token: Token,
    matches: list[Match],
    full_text: str,
    positions: dict[int, TextSlice],
    style: HighlightStyle,
) -> None:
    """
    Rewrite an inline token's children so each match is wrapped.

    ``full_text`` and ``positions`` come from ``extract_text_with_positions``
    on the token's children; matches are offsets into ``full_text``.

    Text children overlapping a match boundary are split. Highlights are
    closed before opening/closing markup (emphasis, links) and reopened on the
    next text, so the produced HTML is always well nested.
    """
    if not matches:
        return
    matches = _sorted_matches(matches)
    new_children: list[Token] = []

    def _open(comment: Comment) -> None:
        new_children.append(Token("html_inline", "", 0, content=style.open_tag(comment)))

    def _close() -> None:
        new_children.append(Token("html_inline", "", 0, content=style.close_tag))

    nester = _HighlightNester(_open, _close)

    for i, child in enumerate(token.children or []):
        kind = classify(child)

        if kind is TokenKind.TEXT:
            text_slice = positions[i]
            for seg_start, seg_end, active in iter_segments(text_slice.start, text_slice.end, matches):
                nester.sync(active)
                new_children.append(child.copy(content=full_text[seg_start:seg_end]))
        elif kind is TokenKind.BREAK:
            position = positions[i].start
            nester.sync([m for m in matches if m.start <= position < m.end])
            new_children.append(child)
        elif kind in (TokenKind.MARKUP_OPEN, TokenKind.MARKUP_CLOSE):
            nester.close_all()
            new_children.append(child)
        else:
            new_children.append(child)

    nester.close_all()
    token.children = new_children


def project_fence_token(token: Token, candidates: list[Comment], style: HighlightStyle) -> list[Comment]:
    """
    Convert a code block token into an html_block with highlighted ranges.

    Matching is a literal search of the raw anchor text in the block content.
    Tokens without any match are left untouched.

    Returns:
        The candidates that were highlighted
    """
    content = token.content
    matches: list[Match] = []
    for order, comment in enumerate(candidates):
        needle = comment.anchor.text
        index = content.find(needle) if needle else -1
        if index != -1:
            matches.append(Match(index, index + len(needle), comment, order))
    if not matches:
        return []
    matches = _sorted_matches(matches)

    parts: list[str] = []
    nester = _HighlightNester(
        lambda comment: parts.append(style.open_tag(comment)),
        lambda: parts.append(style.close_tag),
    )
    for seg_start, seg_end, active in iter_segments(0, len(content), matches):
        nester.sync(active)
        parts.append(escapeHtml(content[seg_start:seg_end]))
    nester.close_all()

    info = token.info.strip() if token.info else ""
    lang = info.split(maxsplit=1)[0] if info else ""
    lang_class = f' class="language-{escapeHtml(lang)}"' if lang else ""

    token.type = "html_block"
    token.tag = ""
    token.nesting = 0
    token.content = f"<pre><code{lang_class}>{''.join(parts)}</code></pre>\n"
    return [m.comment for m in matches]


def project(
    tokens: list[Token],
    src: str,
    comments: list[Comment],
    *,
    style: HighlightStyle | None = None,
) -> None:
    """
    Highlight comment anchors in a markdown-it token stream, in place.

    Several tokens can share a source line (the cells of a table row), so
    each comment is placed in two passes: first in the first token whose
    rendered text contains it, exactly or normalized; only if no token does
    is the first candidate token highlighted whole. A comment is never
    highlighted in more than one token.

    Orphaned comments are skipped. Comments are never modified.

    Args:
        tokens: Block-level token list (``md.parse(src)`` or ``state.tokens``)
        src: Markdown source the tokens were parsed from
        comments: Comments to highlight
        style: CSS class names for the highlight spans
    """
    style = style or HighlightStyle()
    visible = [c for c in comments if not c.orphaned]
    if not visible:
        return

    by_line = group_comments_by_line(visible)
    src_lines = src.split("\n")
    placed: set[int] = set()
    targets: list[_InlineTarget] = []

    for token in tokens:
        if token.map is None:
            continue
        candidates = _candidate_comments(token.map, by_line)
        if not candidates:
            continue

        if classify(token) is TokenKind.BLOCK:
            placed.update(id(c) for c in project_fence_token(token, candidates, style))
        elif token.type == "inline" and token.children:
            targets.append(_InlineTarget(token, candidates))

    for target in targets:
        for comment in target.candidates:
            if id(comment) in placed:
                continue
            located = locate_in_rendered_text(target.full_text, comment, src_lines, target.token.map)
            if located is not None:
                target.add(comment, *located)
                placed.add(id(comment))

    logger = get_logger()
    for target in targets:
        for comment in target.candidates:
            if id(comment) in placed:
                continue
            logger.debug(
                "No match in rendered text, highlighting whole token",
                comment_id=comment.id,
                text=comment.anchor.text[:30],
            )
            target.add(comment, 0, len(target.full_text))
            placed.add(id(comment))

    for target in targets:
        project_inline_token(target.token, target.matches, target.full_text, target.positions, style)


def markco_preview_plugin(md: MarkdownIt, style: HighlightStyle | None = None) -> None:
    """Register the highlight pass as a core rule running after parsing.

    Comments are read from the source's own metadata block on every render.
    """

    def _markco_highlight(state: StateCore) -> None:
        comments = parse_comments_text(state.src)
        if comments:
            project(state.tokens, state.src, comments, style=style)

    md.core.ruler.push("markco_highlight", _markco_highlight)


def render_markdown(text: str, style: HighlightStyle | None = None) -> str:
    """Render markdown to HTML with comment highlights (CommonMark + tables + strikethrough)."""
    md = (
        MarkdownIt("commonmark")
        .enable("table")
        .enable("strikethrough")
        .use(markco_preview_plugin, style=style)
    )
    return md.render(text)
