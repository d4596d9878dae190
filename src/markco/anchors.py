"""Anchor reconciliation: re-locating comment anchors after document edits.

Each comment's anchor text is searched for literally in the document body,
with the metadata block cut out first. The block stores every anchor text
verbatim, so searching the full document would always find the text inside
its own storage and never report an orphan.

Matching is first occurrence in document order. When the same text appears
several times, the comment attaches to the first one, whatever its previous
position was.
"""

from collections.abc import Iterator

from markco.document import TextDocument
from markco.logging import get_logger
from markco.models import Comment, CommentAnchor, ReconciliationReport
from markco.storage import AnchorStore, find_block_span


def iter_text_occurrences(full_text: str, needle: str) -> Iterator[int]:
    """
    Yield document offsets of needle, ignoring the metadata block.

    Occurrences inside the block, and occurrences that would only exist by
    joining the text before and after the block, are skipped.

    Args:
        full_text: Full document text, block included
        needle: Literal text to find (empty text never matches)

    Yields:
        Offsets into full_text, in document order
    """
    if not needle:
        return

    span = find_block_span(full_text)
    if span is None:
        searchable = full_text
    else:
        searchable = full_text[: span.start] + full_text[span.end :]

    index = searchable.find(needle)
    while index != -1:
        if span is None:
            yield index
        elif index + len(needle) <= span.start:
            yield index
        elif index >= span.start:
            # Text that sat after the block: add the removed length back
            yield index + span.length
        index = searchable.find(needle, index + 1)


def locate_anchor_text(full_text: str, needle: str) -> int | None:
    """First document offset of needle outside the metadata block, or None."""
    return next(iter_text_occurrences(full_text, needle), None)


def find_anchor_in_document(document: TextDocument, anchor: CommentAnchor) -> CommentAnchor | None:
    """
    Find an anchor's text in the current document body.

    Args:
        document: Document to search
        anchor: Stored anchor (its text is authoritative, positions are ignored)

    Returns:
        New CommentAnchor with the same text and current positions, or None
        if the text no longer occurs outside the metadata block
    """
    offset = locate_anchor_text(document.get_text(), anchor.text)
    if offset is None:
        return None

    start = document.position_at(offset)
    end = document.position_at(offset + len(anchor.text))
    return CommentAnchor(
        text=anchor.text,
        start_line=start.line,
        start_char=start.character,
        end_line=end.line,
        end_char=end.character,
    )


def reconcile_comments(document: TextDocument, comments: list[Comment]) -> ReconciliationReport:
    """
    Re-validate every comment's anchor against the document, updating in place.

    Each comment is handled independently:
    1. FOUND, SAME POSITION: left alone
    2. FOUND, MOVED: anchor positions updated, text unchanged
    3. FOUND, WAS ORPHANED: anchor updated and orphaned flag cleared
    4. NOT FOUND: orphaned set (anchor kept as last known)

    Args:
        document: Current document
        comments: Comments to reconcile (modified in place)

    Returns:
        ReconciliationReport; ``changed`` tells whether anything needs saving
    """
    logger = get_logger()
    unchanged = relocated = restored = newly_orphaned = 0

    for comment in comments:
        new_anchor = find_anchor_in_document(document, comment.anchor)

        if new_anchor is None:
            if not comment.orphaned:
                comment.orphaned = True
                newly_orphaned += 1
                logger.debug(
                    "Anchor text not found, orphaning comment",
                    comment_id=comment.id,
                    text=comment.anchor.text[:30],
                )
            continue

        if comment.orphaned:
            restored += 1
        elif not new_anchor.same_position(comment.anchor):
            relocated += 1
        else:
            unchanged += 1
            continue

        logger.debug(
            "Anchor relocated",
            comment_id=comment.id,
            from_line=comment.anchor.start_line,
            to_line=new_anchor.start_line,
        )
        comment.anchor = new_anchor
        comment.orphaned = False

    return ReconciliationReport(
        total_comments=len(comments),
        unchanged_count=unchanged,
        relocated_count=relocated,
        orphaned_count=sum(1 for c in comments if c.orphaned),
        newly_orphaned_count=newly_orphaned,
        restored_count=restored,
        saved=False,
    )


async def reconcile_anchors(store: AnchorStore, document: TextDocument) -> ReconciliationReport:
    """
    Reconcile all comments of a document and persist any changes.

    Works on copies of the cached comments, so a rejected write leaves the
    cache as it was. Callers are expected to hold the document's write lock.

    Args:
        store: Store owning the document's cache
        document: Document that was just saved/edited

    Returns:
        ReconciliationReport with ``saved`` set when the block was rewritten
    """
    comments = [c.model_copy(deep=True) for c in store.get_comments(document)]
    report = reconcile_comments(document, comments)

    if not report.changed:
        return report

    saved = await store.save_comments(document, comments)
    return report.model_copy(update={"saved": saved})
