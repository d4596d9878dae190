"""Per-document write serialization.

Every mutation of a document's comment block goes through a single in-order
queue for that document: an ``asyncio.Lock`` per document uri. asyncio locks
wake waiters in FIFO order, so concurrent writers are applied in the order
they arrived and none of them reads the cache while another write is pending.
"""

import asyncio
import contextlib
from collections.abc import AsyncGenerator


class LockTimeout(Exception):  # noqa: N818
    """Raised when a mutation cannot enter its document's queue in time."""

    pass


class DocumentLocks:
    """Registry of per-document locks.

    Locks are created lazily and dropped by ``discard()`` when the collaborator
    that tracks document lifetime reports the document closed or replaced.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, uri: str) -> asyncio.Lock:
        lock = self._locks.get(uri)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[uri] = lock
        return lock

    def is_locked(self, uri: str) -> bool:
        lock = self._locks.get(uri)
        return lock is not None and lock.locked()

    def discard(self, uri: str) -> None:
        """Forget a document's lock unless a mutation currently holds it."""
        lock = self._locks.get(uri)
        if lock is not None and not lock.locked():
            del self._locks[uri]

    @contextlib.asynccontextmanager
    async def hold(self, uri: str, timeout: float | None = None) -> AsyncGenerator[None, None]:
        """
        Hold the document's write lock for the duration of the block.

        Args:
            uri: Document identity
            timeout: Maximum seconds to wait for earlier writers (None waits forever)

        Yields:
            None (lock is held within context)

        Raises:
            LockTimeout: If the lock cannot be acquired within timeout

        Example:
            >>> async with locks.hold(doc.uri, timeout=5.0):
            ...     await store.save_comments(doc, comments)
        """
        lock = self._lock_for(uri)
        try:
            # A cancelled acquire never leaves the lock held
            async with asyncio.timeout(timeout):
                await lock.acquire()
        except TimeoutError:
            raise LockTimeout(f"Failed to acquire write lock for {uri} after {timeout:.1f} seconds") from None

        try:
            yield
        finally:
            lock.release()
