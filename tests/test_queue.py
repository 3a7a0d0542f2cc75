"""Tests for the durable sync queue.

Covers:
- Enqueue assigns ids; claim hides the operation from other claimers,
  concurrent ones included
- Priority ordering with FIFO inside a priority
- Ack, release with backoff, and dead-lettering at the attempt budget
- Stale claim recovery
- Operator actions: stats, clear, dead-letter listing, replay and purge
"""

from __future__ import annotations

import asyncio

import pytest

from src.cms_bridge.sync.queue import SyncQueue
from src.cms_bridge.sync.retry import RetryPolicy
from src.cms_bridge.sync.schemas import (
    PRIORITY_BULK,
    PRIORITY_LIVE,
    QueueDirection,
    SyncOperation,
)


def _op(entity_id: str, priority: int = PRIORITY_LIVE, platform: str = "shopify") -> SyncOperation:
    return SyncOperation(
        platform=platform,
        direction=QueueDirection.TO_EXTERNAL,
        entity_type="product",
        action="update",
        payload={"entity_id": entity_id},
        priority=priority,
    )


@pytest.fixture
def queue(session_factory) -> SyncQueue:
    return SyncQueue(session_factory, "shopify", RetryPolicy(max_attempts=3, base_delay_ms=0))


# ── Claiming ─────────────────────────────────────────────────────────────────


class TestClaim:
    async def test_enqueue_assigns_ids(self, queue):
        first, second = await queue.enqueue_many([_op("a"), _op("b")])
        assert first.id is not None
        assert second.id > first.id

    async def test_claim_hides_operation(self, queue):
        await queue.enqueue(_op("a"))

        claimed = await queue.claim()

        assert claimed is not None
        assert claimed.claim_token is not None
        assert await queue.claim() is None
        assert await queue.pending_count() == 0

    async def test_concurrent_claims_hand_out_one_operation(self, queue):
        await queue.enqueue(_op("a"))

        claims = await asyncio.gather(*(queue.claim() for _ in range(5)))

        winners = [c for c in claims if c is not None]
        assert len(winners) == 1
        assert winners[0].payload["entity_id"] == "a"
        assert await queue.claim() is None

    async def test_empty_queue(self, queue):
        assert await queue.claim() is None

    async def test_priority_then_fifo(self, queue):
        await queue.enqueue_many([_op("bulk-1", PRIORITY_BULK), _op("bulk-2", PRIORITY_BULK)])
        await queue.enqueue(_op("live-1"))
        await queue.enqueue(_op("live-2"))

        order = []
        while (op := await queue.claim()) is not None:
            order.append(op.payload["entity_id"])

        assert order == ["live-1", "live-2", "bulk-1", "bulk-2"]

    async def test_queues_are_per_platform(self, queue, session_factory):
        other = SyncQueue(session_factory, "wordpress", RetryPolicy(base_delay_ms=0))
        await other.enqueue(_op("wp", platform="wordpress"))

        assert await queue.claim() is None
        assert (await other.claim()).payload["entity_id"] == "wp"


# ── Ack / Release / Dead Letter ──────────────────────────────────────────────


class TestLifecycle:
    async def test_ack_removes(self, queue):
        await queue.enqueue(_op("a"))
        claimed = await queue.claim()

        await queue.ack(claimed)

        stats = await queue.stats()
        assert stats["pending"] == 0
        assert stats["claimed"] == 0

    async def test_release_returns_with_incremented_attempt(self, queue):
        await queue.enqueue(_op("a"))
        claimed = await queue.claim()

        assert await queue.release(claimed, "HTTP 503") is True

        again = await queue.claim()
        assert again.id == claimed.id
        assert again.attempt == 1
        assert again.last_error == "HTTP 503"

    async def test_release_applies_backoff(self, session_factory):
        slow = SyncQueue(session_factory, "shopify", RetryPolicy(max_attempts=3, base_delay_ms=60_000))
        await slow.enqueue(_op("a"))

        await slow.release(await slow.claim(), "HTTP 503")

        assert await slow.claim() is None
        assert await slow.pending_count() == 1

    async def test_dead_letter_at_attempt_budget(self, queue):
        await queue.enqueue(_op("a"))

        outcomes = []
        for _ in range(3):
            claimed = await queue.claim()
            outcomes.append(await queue.release(claimed, "HTTP 500"))

        assert outcomes == [True, True, False]
        assert await queue.claim() is None
        dead = await queue.list_dead_letters()
        assert len(dead) == 1
        assert dead[0].attempt == queue.max_retries
        assert dead[0].error == "HTTP 500"
        assert dead[0].payload == {"entity_id": "a"}

    async def test_direct_dead_letter(self, queue):
        await queue.enqueue(_op("a"))
        claimed = await queue.claim()

        await queue.dead_letter(claimed, "ConflictError: already bound")

        dead = await queue.list_dead_letters()
        assert dead[0].attempt == 1
        assert (await queue.stats())["dead_letters"] == 1

    async def test_reclaim_stale(self, queue):
        await queue.enqueue(_op("a"))
        await queue.claim()

        assert await queue.reclaim_stale(older_than_seconds=3600) == 0
        assert await queue.reclaim_stale(older_than_seconds=-1) == 1
        assert (await queue.claim()).payload["entity_id"] == "a"


# ── Operator ─────────────────────────────────────────────────────────────────


class TestOperator:
    async def test_stats(self, queue):
        await queue.enqueue_many([_op("a"), _op("b")])
        await queue.claim()

        stats = await queue.stats()
        assert stats["pending"] == 1
        assert stats["claimed"] == 1
        assert stats["dead_letters"] == 0
        assert stats["oldest_pending_at"] is not None

    async def test_clear(self, queue):
        await queue.enqueue_many([_op("a"), _op("b"), _op("c")])
        assert await queue.clear() == 3
        assert await queue.pending_count() == 0

    async def test_replay_dead_letter(self, queue):
        await queue.enqueue(_op("a"))
        await queue.dead_letter(await queue.claim(), "boom")
        dead = (await queue.list_dead_letters())[0]

        replayed = await queue.replay_dead_letter(dead.id)

        assert replayed.attempt == 0
        assert replayed.payload == {"entity_id": "a"}
        assert await queue.list_dead_letters() == []
        assert (await queue.claim()).id == replayed.id

    async def test_replay_missing_dead_letter(self, queue):
        assert await queue.replay_dead_letter(9999) is None

    async def test_purge_dead_letters(self, queue):
        for entity_id in ("a", "b"):
            await queue.enqueue(_op(entity_id))
            await queue.dead_letter(await queue.claim(), "boom")

        assert await queue.purge_dead_letters() == 2
        assert await queue.list_dead_letters() == []
