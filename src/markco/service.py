"""Comment operations exposed to editors, the CLI and the MCP server.

Every mutation follows the same pattern: take the document's write lock,
copy the cached comments, apply an update function to the copy, and save
the whole list back into the document. A rejected write therefore leaves
both the document and the cache as they were.
"""

from collections.abc import Callable
from typing import TypeVar

from markco.anchors import iter_text_occurrences, reconcile_anchors
from markco.config import Settings, get_settings
from markco.document import Range, TextDocument
from markco.git_ops import AuthorProvider, GitAuthorProvider
from markco.locking import DocumentLocks
from markco.models import Comment, CommentAnchor, ReconciliationReport, Reply
from markco.storage import AnchorStore

T = TypeVar("T")


def anchor_from_selection(document: TextDocument, selection: Range) -> CommentAnchor | None:
    """Build an anchor for a selection, or None if the selected text is blank."""
    text = document.get_text(selection)
    if not text.strip():
        return None
    return CommentAnchor(
        text=text,
        start_line=selection.start.line,
        start_char=selection.start.character,
        end_line=selection.end.line,
        end_char=selection.end.character,
    )


def find_text_selection(document: TextDocument, text: str, occurrence: int = 1) -> Range | None:
    """
    Range of the n-th occurrence of text in the document body.

    Args:
        document: Document to search (the metadata block is skipped)
        text: Literal text to find
        occurrence: 1-based occurrence number

    Returns:
        Range of the match, or None if there are fewer than ``occurrence`` matches
    """
    if occurrence < 1:
        return None
    for n, offset in enumerate(iter_text_occurrences(document.get_text(), text), start=1):
        if n == occurrence:
            return Range(document.position_at(offset), document.position_at(offset + len(text)))
    return None


class CommentService:
    """Comment CRUD, replies, reactions, re-anchoring and reconciliation."""

    def __init__(
        self,
        store: AnchorStore | None = None,
        *,
        locks: DocumentLocks | None = None,
        author_provider: AuthorProvider | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.store = store or AnchorStore(
            schema_version=settings.schema_version, json_indent=settings.json_indent
        )
        self.locks = locks or DocumentLocks()
        self.author_provider = author_provider or GitAuthorProvider(default=settings.default_author)
        self.lock_timeout = settings.lock_timeout

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def parse_comments(self, document: TextDocument) -> list[Comment]:
        return self.store.parse_comments(document)

    def get_comments(self, document: TextDocument) -> list[Comment]:
        return self.store.get_comments(document)

    def find_comment(self, document: TextDocument, comment_id: str) -> Comment | None:
        for comment in self.store.get_comments(document):
            if comment.id == comment_id:
                return comment
        return None

    def find_reply(self, document: TextDocument, comment_id: str, reply_id: str) -> Reply | None:
        comment = self.find_comment(document, comment_id)
        if comment is None:
            return None
        return comment.find_reply(reply_id)

    def clear_cache(self, document: TextDocument) -> None:
        """Forget cached state for a document that was closed or replaced."""
        self.store.invalidate(document.uri)
        self.locks.discard(document.uri)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    async def _mutate(
        self, document: TextDocument, update_fn: Callable[[list[Comment]], T | None]
    ) -> T | None:
        """
        Apply update_fn to a copy of the comments and persist the result.

        Args:
            document: Target document
            update_fn: Mutates the list in place; returns the entity to hand
                back to the caller, or None to abort without writing

        Returns:
            update_fn's result if the write succeeded, otherwise None

        Raises:
            LockTimeout: If earlier writers hold the document too long
        """
        async with self.locks.hold(document.uri, timeout=self.lock_timeout):
            comments = [c.model_copy(deep=True) for c in self.store.get_comments(document)]
            result = update_fn(comments)
            if result is None:
                return None
            if not await self.store.save_comments(document, comments):
                return None
            return result

    async def save_comments(self, document: TextDocument, comments: list[Comment]) -> bool:
        async with self.locks.hold(document.uri, timeout=self.lock_timeout):
            return await self.store.save_comments(document, comments)

    async def add_comment(
        self, document: TextDocument, selection: Range, content: str
    ) -> Comment | None:
        """
        Attach a new comment to the selected text.

        Args:
            document: Target document
            selection: Range of the text being commented on
            content: Comment text

        Returns:
            The new Comment, or None if the selection or content is blank or
            the write was rejected
        """
        anchor = anchor_from_selection(document, selection)
        if anchor is None or not content.strip():
            return None

        comment = Comment(
            anchor=anchor,
            content=content,
            author=self.author_provider.get_author_name(document),
        )

        def _add(comments: list[Comment]) -> Comment:
            comments.append(comment)
            return comment

        return await self._mutate(document, _add)

    async def delete_comment(self, document: TextDocument, comment_id: str) -> bool:
        """Delete a comment and all of its replies."""

        def _delete(comments: list[Comment]) -> bool | None:
            for i, comment in enumerate(comments):
                if comment.id == comment_id:
                    del comments[i]
                    return True
            return None

        return await self._mutate(document, _delete) is not None

    async def update_comment(
        self, document: TextDocument, comment_id: str, new_content: str
    ) -> Comment | None:
        if not new_content.strip():
            return None

        def _update(comments: list[Comment]) -> Comment | None:
            comment = _find(comments, comment_id)
            if comment is not None:
                comment.edit(new_content)
            return comment

        return await self._mutate(document, _update)

    async def resolve_comment(self, document: TextDocument, comment_id: str) -> Comment | None:
        """Toggle a comment's resolved flag."""

        def _resolve(comments: list[Comment]) -> Comment | None:
            comment = _find(comments, comment_id)
            if comment is not None:
                comment.toggle_resolved()
            return comment

        return await self._mutate(document, _resolve)

    async def re_anchor_comment(
        self, document: TextDocument, comment_id: str, selection: Range
    ) -> Comment | None:
        """Point a comment at a new selection, clearing its orphaned flag."""
        anchor = anchor_from_selection(document, selection)
        if anchor is None:
            return None

        def _re_anchor(comments: list[Comment]) -> Comment | None:
            comment = _find(comments, comment_id)
            if comment is not None:
                comment.re_anchor(anchor)
            return comment

        return await self._mutate(document, _re_anchor)

    async def toggle_thumbs_up_comment(
        self, document: TextDocument, comment_id: str
    ) -> Comment | None:
        author = self.author_provider.get_author_name(document)

        def _toggle(comments: list[Comment]) -> Comment | None:
            comment = _find(comments, comment_id)
            if comment is not None:
                comment.toggle_thumbs_up(author)
            return comment

        return await self._mutate(document, _toggle)

    # ------------------------------------------------------------------
    # Replies
    # ------------------------------------------------------------------

    async def add_reply(self, document: TextDocument, comment_id: str, content: str) -> Reply | None:
        if not content.strip():
            return None
        author = self.author_provider.get_author_name(document)

        def _add(comments: list[Comment]) -> Reply | None:
            comment = _find(comments, comment_id)
            if comment is None:
                return None
            return comment.add_reply(author=author, content=content)

        return await self._mutate(document, _add)

    async def delete_reply(self, document: TextDocument, comment_id: str, reply_id: str) -> bool:
        def _delete(comments: list[Comment]) -> bool | None:
            comment = _find(comments, comment_id)
            if comment is None or not comment.remove_reply(reply_id):
                return None
            return True

        return await self._mutate(document, _delete) is not None

    async def update_reply(
        self, document: TextDocument, comment_id: str, reply_id: str, new_content: str
    ) -> Reply | None:
        if not new_content.strip():
            return None

        def _update(comments: list[Comment]) -> Reply | None:
            comment = _find(comments, comment_id)
            reply = comment.find_reply(reply_id) if comment is not None else None
            if reply is not None:
                reply.edit(new_content)
            return reply

        return await self._mutate(document, _update)

    async def toggle_thumbs_up_reply(
        self, document: TextDocument, comment_id: str, reply_id: str
    ) -> Reply | None:
        author = self.author_provider.get_author_name(document)

        def _toggle(comments: list[Comment]) -> Reply | None:
            comment = _find(comments, comment_id)
            reply = comment.find_reply(reply_id) if comment is not None else None
            if reply is not None:
                reply.toggle_thumbs_up(author)
            return reply

        return await self._mutate(document, _toggle)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile_anchors(self, document: TextDocument) -> ReconciliationReport:
        """Re-locate every anchor after a save and persist any changes."""
        async with self.locks.hold(document.uri, timeout=self.lock_timeout):
            return await reconcile_anchors(self.store, document)


def _find(comments: list[Comment], comment_id: str) -> Comment | None:
    for comment in comments:
        if comment.id == comment_id:
            return comment
    return None
