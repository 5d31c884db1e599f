"""Tests for message deduplication, conversation locks and the traversal guard."""

import asyncio

import pytest

from chatflow.errors import CycleDetectedError, MaxDepthExceededError
from chatflow.runtime.concurrency import ConversationLocks, MessageDeduplicator, TraversalGuard


class TestMessageDeduplicator:
    @pytest.mark.asyncio
    async def test_second_claim_of_finished_message_is_refused(self):
        dedup = MessageDeduplicator()

        async with dedup.claim(1, "wamid.1") as first:
            assert first
            assert dedup.is_in_flight(1, "wamid.1")

        assert dedup.is_finished(1, "wamid.1")
        async with dedup.claim(1, "wamid.1") as again:
            assert not again

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_waits_then_skips(self):
        dedup = MessageDeduplicator()
        processed = []
        started = asyncio.Event()
        proceed = asyncio.Event()

        async def deliver(tag):
            async with dedup.claim(1, "wamid.1") as first:
                if not first:
                    return False
                started.set()
                await proceed.wait()
                processed.append(tag)
                return True

        original = asyncio.create_task(deliver("original"))
        await started.wait()
        redelivery = asyncio.create_task(deliver("redelivery"))
        await asyncio.sleep(0)
        assert not redelivery.done()

        proceed.set()
        assert await original is True
        assert await redelivery is False
        assert processed == ["original"]

    @pytest.mark.asyncio
    async def test_same_id_in_other_conversation_is_distinct(self):
        dedup = MessageDeduplicator()

        assert await dedup.acquire(1, "m")
        assert await dedup.acquire(2, "m")

    @pytest.mark.asyncio
    async def test_messages_without_id_are_never_deduplicated(self):
        dedup = MessageDeduplicator()

        assert await dedup.acquire(1, None)
        dedup.release(1, None)
        assert await dedup.acquire(1, None)

    @pytest.mark.asyncio
    async def test_retention_is_bounded(self):
        dedup = MessageDeduplicator(retention=2)
        for message_id in ("a", "b", "c"):
            assert await dedup.acquire(1, message_id)
            dedup.release(1, message_id)

        assert not dedup.is_finished(1, "a")
        assert dedup.is_finished(1, "c")

    @pytest.mark.asyncio
    async def test_release_on_error(self):
        dedup = MessageDeduplicator()

        with pytest.raises(RuntimeError):
            async with dedup.claim(1, "m"):
                raise RuntimeError("boom")

        assert not dedup.is_in_flight(1, "m")
        assert dedup.is_finished(1, "m")


class TestConversationLocks:
    @pytest.mark.asyncio
    async def test_same_conversation_is_serialized(self):
        locks = ConversationLocks()
        order = []

        async def work(tag):
            async with locks.hold(42):
                order.append(f"{tag}-start")
                await asyncio.sleep(0.01)
                order.append(f"{tag}-end")

        await asyncio.gather(work("a"), work("b"))

        assert order == ["a-start", "a-end", "b-start", "b-end"]

    @pytest.mark.asyncio
    async def test_different_conversations_run_concurrently(self):
        locks = ConversationLocks()
        inside = asyncio.Event()

        async def first():
            async with locks.hold(1):
                await asyncio.wait_for(inside.wait(), timeout=1)

        async def second():
            async with locks.hold(2):
                inside.set()

        await asyncio.gather(first(), second())

    @pytest.mark.asyncio
    async def test_unused_locks_are_discarded(self):
        locks = ConversationLocks()

        async with locks.hold(1):
            assert len(locks) == 1

        assert len(locks) == 0


class TestTraversalGuard:
    def test_tracks_path(self):
        guard = TraversalGuard()
        guard.enter("a")
        guard.enter("b")

        assert guard.path == ["a", "b"]
        assert guard.depth == 2

    def test_reentry_is_a_cycle(self):
        guard = TraversalGuard()
        guard.enter("a")
        guard.enter("b")

        with pytest.raises(CycleDetectedError) as exc_info:
            guard.enter("a")

        assert exc_info.value.node_id == "a"
        assert exc_info.value.path == ["a", "b", "a"]

    def test_depth_limit(self):
        guard = TraversalGuard(max_depth=2)
        guard.enter("a")
        guard.enter("b")

        with pytest.raises(MaxDepthExceededError) as exc_info:
            guard.enter("c")

        assert exc_info.value.max_depth == 2
