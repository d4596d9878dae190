"""Tests for per-document write locks."""

import asyncio

import pytest

from markco.locking import DocumentLocks, LockTimeout


@pytest.mark.asyncio
async def test_hold_and_release():
    """The lock is held inside the block and released after it."""
    locks = DocumentLocks()

    async with locks.hold("doc-a"):
        assert locks.is_locked("doc-a")
        assert not locks.is_locked("doc-b")

    assert not locks.is_locked("doc-a")


@pytest.mark.asyncio
async def test_released_on_exception():
    """An exception inside the block still releases the lock."""
    locks = DocumentLocks()

    with pytest.raises(RuntimeError):
        async with locks.hold("doc"):
            raise RuntimeError("boom")

    assert not locks.is_locked("doc")


@pytest.mark.asyncio
async def test_waiters_run_in_arrival_order():
    """Writers queued on the same document are served first come, first served."""
    locks = DocumentLocks()
    order: list[int] = []

    async def writer(n: int) -> None:
        async with locks.hold("doc"):
            order.append(n)
            await asyncio.sleep(0.01)

    async with locks.hold("doc"):
        tasks = [asyncio.create_task(writer(n)) for n in range(5)]
        await asyncio.sleep(0.01)  # let every writer start waiting

    await asyncio.gather(*tasks)
    assert order == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_different_documents_do_not_block_each_other():
    """Holding one document's lock does not delay another document."""
    locks = DocumentLocks()

    async with locks.hold("doc-a"):
        async with locks.hold("doc-b", timeout=0.1):
            assert locks.is_locked("doc-b")


@pytest.mark.asyncio
async def test_timeout_raises_lock_timeout():
    """Waiting longer than timeout raises LockTimeout naming the document."""
    locks = DocumentLocks()

    async with locks.hold("doc"):
        with pytest.raises(LockTimeout) as exc:
            async with locks.hold("doc", timeout=0.05):
                pass

    assert "doc" in str(exc.value)


@pytest.mark.asyncio
async def test_timed_out_waiters_do_not_keep_the_lock():
    """Writers that give up leave the lock free for the next writer."""
    locks = DocumentLocks()

    async def impatient() -> None:
        with pytest.raises(LockTimeout):
            async with locks.hold("doc", timeout=0.01):
                pass

    async with locks.hold("doc"):
        await asyncio.gather(*(impatient() for _ in range(20)))

    assert not locks.is_locked("doc")
    async with locks.hold("doc", timeout=0.1):
        assert locks.is_locked("doc")


@pytest.mark.asyncio
async def test_release_racing_timeout_leaves_lock_usable():
    """A release landing at the same moment as a timeout never orphans the lock."""
    locks = DocumentLocks()

    async def waiter() -> None:
        try:
            async with locks.hold("doc", timeout=0.01):
                pass
        except LockTimeout:
            pass

    for _ in range(20):
        async with locks.hold("doc"):
            task = asyncio.create_task(waiter())
            await asyncio.sleep(0.01)
        await task

        assert not locks.is_locked("doc")


@pytest.mark.asyncio
async def test_discard_keeps_held_locks():
    """discard() forgets idle locks only."""
    locks = DocumentLocks()

    async with locks.hold("doc"):
        locks.discard("doc")
        assert locks.is_locked("doc")

    locks.discard("doc")
    assert not locks.is_locked("doc")
