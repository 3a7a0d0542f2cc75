"""Durable per-platform sync queue with claim/ack/release and dead letters.

Lifecycle of an operation:
  enqueue -> claim (hidden from other runners) -> ack (deleted)
                                               -> release (attempt += 1,
                                                  available again after backoff)
                                               -> dead letter (attempt budget
                                                  spent, or permanent error)

Claims are a conditional UPDATE on ``status = 'pending'`` so concurrent
runners in different processes never take the same row. Claims abandoned
by a crashed runner are returned to pending by reclaim_stale().
Ordering is priority (descending) then id (FIFO).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.cms_bridge.core.monitoring import dead_letters_total
from src.cms_bridge.sync.models import DeadLetterModel, SyncOperationModel
from src.cms_bridge.sync.retry import RetryPolicy
from src.cms_bridge.sync.schemas import DeadLetter, QueueDirection, SyncOperation

logger = structlog.get_logger(__name__)

STATUS_PENDING = "pending"
STATUS_CLAIMED = "claimed"

# Candidates lost to a concurrent runner before giving up on this claim
MAX_CLAIM_RACES = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored is UTC
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class SyncQueue:
    """SQL-backed queue of SyncOperations for one platform.

    Args:
        session_factory: async_sessionmaker producing AsyncSession instances.
        platform: Platform whose operations this queue holds.
        retry_policy: Supplies max attempts and the backoff schedule.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        platform: str,
        retry_policy: RetryPolicy,
    ) -> None:
        self._session_factory = session_factory
        self._platform = platform
        self._retry = retry_policy

    @property
    def max_retries(self) -> int:
        return self._retry.max_attempts

    # ── Producer ─────────────────────────────────────────────────────────────

    async def enqueue(self, operation: SyncOperation) -> SyncOperation:
        """Persist an operation and return it with its assigned id."""
        return (await self.enqueue_many([operation]))[0]

    async def enqueue_many(self, operations: list[SyncOperation]) -> list[SyncOperation]:
        """Persist several operations in one transaction, preserving order."""
        now = _utcnow()
        rows = [
            SyncOperationModel(
                platform=self._platform,
                direction=op.direction.value,
                entity_type=op.entity_type,
                action=op.action,
                payload=op.payload,
                attempt=op.attempt,
                priority=op.priority,
                status=STATUS_PENDING,
                claim_token=None,
                claimed_at=None,
                available_at=now,
                enqueued_at=op.enqueued_at,
                last_error=None,
            )
            for op in operations
        ]
        async with self._session_factory() as session:
            session.add_all(rows)
            await session.commit()
            return [_model_to_operation(row) for row in rows]

    # ── Consumer ─────────────────────────────────────────────────────────────

    async def claim(self) -> SyncOperation | None:
        """Atomically claim the next available operation, or None if idle."""
        for _ in range(MAX_CLAIM_RACES):
            now = _utcnow()
            async with self._session_factory() as session:
                candidate = await session.execute(
                    select(SyncOperationModel.id)
                    .where(
                        SyncOperationModel.platform == self._platform,
                        SyncOperationModel.status == STATUS_PENDING,
                        SyncOperationModel.available_at <= now,
                    )
                    .order_by(SyncOperationModel.priority.desc(), SyncOperationModel.id.asc())
                    .limit(1)
                )
                candidate_id = candidate.scalar_one_or_none()
                if candidate_id is None:
                    return None

                token = uuid.uuid4().hex
                result = await session.execute(
                    update(SyncOperationModel)
                    .where(
                        SyncOperationModel.id == candidate_id,
                        SyncOperationModel.status == STATUS_PENDING,
                    )
                    .values(status=STATUS_CLAIMED, claim_token=token, claimed_at=now)
                )
                await session.commit()
                if result.rowcount != 1:
                    logger.debug("queue.claim_race_lost", platform=self._platform, id=candidate_id)
                    continue

                row = await session.get(SyncOperationModel, candidate_id)
                if row is None:
                    continue
                return _model_to_operation(row)
        return None

    async def ack(self, operation: SyncOperation) -> None:
        """Remove a successfully processed operation."""
        async with self._session_factory() as session:
            await session.execute(
                delete(SyncOperationModel).where(
                    SyncOperationModel.id == operation.id,
                    SyncOperationModel.claim_token == operation.claim_token,
                )
            )
            await session.commit()

    async def release(self, operation: SyncOperation, error: str) -> bool:
        """Record a failed attempt.

        Returns True if the operation went back to pending (available after
        the policy's backoff), False if its attempt budget is spent and it
        was dead-lettered.
        """
        attempt = operation.attempt + 1
        if attempt >= self.max_retries:
            await self.dead_letter(operation, error, attempt=attempt)
            return False

        available_at = _utcnow() + timedelta(seconds=self._retry.delay_for(attempt))
        async with self._session_factory() as session:
            result = await session.execute(
                update(SyncOperationModel)
                .where(
                    SyncOperationModel.id == operation.id,
                    SyncOperationModel.claim_token == operation.claim_token,
                )
                .values(
                    status=STATUS_PENDING,
                    attempt=attempt,
                    claim_token=None,
                    claimed_at=None,
                    available_at=available_at,
                    last_error=error,
                )
            )
            await session.commit()

        if result.rowcount != 1:
            logger.warning(
                "queue.release_lost_claim",
                platform=self._platform,
                id=operation.id,
            )
        logger.info(
            "queue.released",
            platform=self._platform,
            id=operation.id,
            attempt=attempt,
            available_at=available_at.isoformat(),
            error=error,
        )
        return True

    async def dead_letter(
        self,
        operation: SyncOperation,
        error: str,
        attempt: int | None = None,
    ) -> None:
        """Move an operation to the dead-letter table.

        Operations that never reached the queue (direct dispatch) have no id
        and are recorded without a queue row to delete.
        """
        attempt = operation.attempt + 1 if attempt is None else attempt
        async with self._session_factory() as session:
            session.add(
                DeadLetterModel(
                    operation_id=operation.id,
                    platform=self._platform,
                    direction=operation.direction.value,
                    entity_type=operation.entity_type,
                    action=operation.action,
                    payload=operation.payload,
                    attempt=attempt,
                    error=error,
                    enqueued_at=operation.enqueued_at,
                    dead_lettered_at=_utcnow(),
                )
            )
            if operation.id is not None:
                await session.execute(
                    delete(SyncOperationModel).where(SyncOperationModel.id == operation.id)
                )
            await session.commit()

        dead_letters_total.labels(platform=self._platform).inc()
        logger.error(
            "queue.dead_lettered",
            platform=self._platform,
            id=operation.id,
            entity_type=operation.entity_type,
            action=operation.action,
            attempt=attempt,
            error=error,
        )

    async def reclaim_stale(self, older_than_seconds: float) -> int:
        """Return claims older than the timeout to pending. Returns the count."""
        cutoff = _utcnow() - timedelta(seconds=older_than_seconds)
        async with self._session_factory() as session:
            result = await session.execute(
                update(SyncOperationModel)
                .where(
                    SyncOperationModel.platform == self._platform,
                    SyncOperationModel.status == STATUS_CLAIMED,
                    SyncOperationModel.claimed_at < cutoff,
                )
                .values(status=STATUS_PENDING, claim_token=None, claimed_at=None)
            )
            await session.commit()

        if result.rowcount:
            logger.warning("queue.reclaimed_stale", platform=self._platform, count=result.rowcount)
        return result.rowcount

    # ── Operator ─────────────────────────────────────────────────────────────

    async def clear(self) -> int:
        """Delete every queued operation for the platform. Returns the count."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(SyncOperationModel).where(SyncOperationModel.platform == self._platform)
            )
            await session.commit()
        logger.info("queue.cleared", platform=self._platform, count=result.rowcount)
        return result.rowcount

    async def pending_count(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(SyncOperationModel)
                .where(
                    SyncOperationModel.platform == self._platform,
                    SyncOperationModel.status == STATUS_PENDING,
                )
            )
            return int(result.scalar_one())

    async def stats(self) -> dict[str, Any]:
        """Counts by status plus dead letters and the oldest pending timestamp."""
        async with self._session_factory() as session:
            by_status = await session.execute(
                select(SyncOperationModel.status, func.count())
                .where(SyncOperationModel.platform == self._platform)
                .group_by(SyncOperationModel.status)
            )
            counts = {status: int(count) for status, count in by_status.all()}

            oldest = await session.execute(
                select(func.min(SyncOperationModel.enqueued_at)).where(
                    SyncOperationModel.platform == self._platform,
                    SyncOperationModel.status == STATUS_PENDING,
                )
            )
            oldest_pending = oldest.scalar_one_or_none()

            dead = await session.execute(
                select(func.count())
                .select_from(DeadLetterModel)
                .where(DeadLetterModel.platform == self._platform)
            )

        return {
            "pending": counts.get(STATUS_PENDING, 0),
            "claimed": counts.get(STATUS_CLAIMED, 0),
            "dead_letters": int(dead.scalar_one()),
            "oldest_pending_at": _aware(oldest_pending).isoformat() if oldest_pending else None,
        }

    async def list_dead_letters(self, limit: int = 50, offset: int = 0) -> list[DeadLetter]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DeadLetterModel)
                .where(DeadLetterModel.platform == self._platform)
                .order_by(DeadLetterModel.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return [_model_to_dead_letter(row) for row in result.scalars().all()]

    async def replay_dead_letter(self, dead_letter_id: int) -> SyncOperation | None:
        """Re-enqueue a dead letter with a fresh attempt budget.

        Returns the new operation, or None if the dead letter does not exist.
        """
        now = _utcnow()
        async with self._session_factory() as session:
            dead = await session.get(DeadLetterModel, dead_letter_id)
            if dead is None or dead.platform != self._platform:
                return None

            row = SyncOperationModel(
                platform=dead.platform,
                direction=dead.direction,
                entity_type=dead.entity_type,
                action=dead.action,
                payload=dead.payload,
                attempt=0,
                priority=0,
                status=STATUS_PENDING,
                claim_token=None,
                claimed_at=None,
                available_at=now,
                enqueued_at=now,
                last_error=None,
            )
            session.add(row)
            await session.delete(dead)
            await session.commit()
            operation = _model_to_operation(row)

        logger.info(
            "queue.dead_letter_replayed",
            platform=self._platform,
            dead_letter_id=dead_letter_id,
            id=operation.id,
        )
        return operation

    async def purge_dead_letters(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(DeadLetterModel).where(DeadLetterModel.platform == self._platform)
            )
            await session.commit()
        return result.rowcount


# ── Conversion Helpers ───────────────────────────────────────────────────────


def _model_to_operation(row: SyncOperationModel) -> SyncOperation:
    return SyncOperation(
        id=row.id,
        platform=row.platform,
        direction=QueueDirection(row.direction),
        entity_type=row.entity_type,
        action=row.action,
        payload=row.payload or {},
        attempt=row.attempt,
        priority=row.priority,
        enqueued_at=_aware(row.enqueued_at),
        claim_token=row.claim_token,
        last_error=row.last_error,
    )


def _model_to_dead_letter(row: DeadLetterModel) -> DeadLetter:
    return DeadLetter(
        id=row.id,
        operation_id=row.operation_id,
        platform=row.platform,
        direction=QueueDirection(row.direction),
        entity_type=row.entity_type,
        action=row.action,
        payload=row.payload or {},
        attempt=row.attempt,
        error=row.error,
        enqueued_at=_aware(row.enqueued_at),
        dead_lettered_at=_aware(row.dead_lettered_at),
    )
