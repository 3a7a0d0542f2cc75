"""Batch Runner: time-budgeted queue processing and bulk outbound sync.

process_queue() claims operations one at a time until the queue is idle or
the time budget is spent. The budget is checked between items, so an
in-flight item always finishes. Each claim is one attempt: transient
failures are released back to the queue (with backoff), permanent ones are
dead-lettered immediately.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError

from src.cms_bridge.core.monitoring import queue_depth, queue_run_duration_seconds
from src.cms_bridge.sync.dispatcher import OutboundDispatcher
from src.cms_bridge.sync.entity_store import EntityStore
from src.cms_bridge.sync.exceptions import SyncError
from src.cms_bridge.sync.queue import SyncQueue
from src.cms_bridge.sync.schemas import (
    PRIORITY_BULK,
    BulkSyncResult,
    ChangeAction,
    PlatformConfig,
    QueueDirection,
    QueueRunResult,
    SyncOperation,
    SyncResult,
)
from src.cms_bridge.sync.webhooks import WebhookProcessor

logger = structlog.get_logger(__name__)

# Outcomes of a single claimed operation
OUTCOME_DONE = "done"
OUTCOME_RELEASED = "released"
OUTCOME_DEAD = "dead_lettered"


class BatchRunner:
    """Drains one platform's SyncQueue.

    Args:
        config: PlatformConfig for the platform.
        queue: SyncQueue holding the platform's operations.
        dispatcher: OutboundDispatcher for to_external operations.
        processor: WebhookProcessor for from_external operations.
        store: EntityStore used to reload entities before dispatch.
        clock: Monotonic clock in seconds (injectable for tests).
        sleep: Awaitable sleep used between bulk batches.
    """

    def __init__(
        self,
        config: PlatformConfig,
        queue: SyncQueue,
        dispatcher: OutboundDispatcher,
        processor: WebhookProcessor,
        store: EntityStore,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._queue = queue
        self._dispatcher = dispatcher
        self._processor = processor
        self._store = store
        self._clock = clock
        self._sleep = sleep

    @property
    def platform(self) -> str:
        return self._config.platform

    async def process_queue(self, time_budget: float) -> QueueRunResult:
        """Process queued operations until idle or ``time_budget`` seconds elapse."""
        start = self._clock()
        result = QueueRunResult()

        while self._clock() - start < time_budget:
            operation = await self._queue.claim()
            if operation is None:
                break

            outcome = await self.process_operation(operation)
            if outcome == OUTCOME_DONE:
                result.processed += 1
            else:
                result.errors += 1
                if outcome == OUTCOME_DEAD:
                    result.dead_lettered += 1

        result.remaining = await self._queue.pending_count()
        result.elapsed_seconds = round(self._clock() - start, 3)

        queue_depth.labels(platform=self.platform).set(result.remaining)
        queue_run_duration_seconds.labels(platform=self.platform).observe(result.elapsed_seconds)
        if result.processed or result.errors:
            logger.info(
                "queue.run_complete",
                platform=self.platform,
                processed=result.processed,
                errors=result.errors,
                dead_lettered=result.dead_lettered,
                remaining=result.remaining,
                elapsed_seconds=result.elapsed_seconds,
            )
        return result

    async def process_operation(self, operation: SyncOperation) -> str:
        """Execute one claimed operation and ack, release or dead-letter it."""
        try:
            sync_result = await self._execute(operation)
        except SyncError as exc:
            if not exc.retryable:
                await self._queue.dead_letter(operation, f"{type(exc).__name__}: {exc}")
                return OUTCOME_DEAD
            return await self._release(operation, str(exc))
        except Exception as exc:
            logger.error(
                "queue.operation_error",
                platform=self.platform,
                id=operation.id,
                entity_type=operation.entity_type,
                action=operation.action,
                exc_info=True,
            )
            return await self._release(operation, f"{type(exc).__name__}: {exc}")

        if sync_result.success:
            await self._queue.ack(operation)
            return OUTCOME_DONE

        if sync_result.message == "disabled":
            # Configuration changed while the item waited; nothing to retry.
            logger.info(
                "queue.skipped_disabled",
                platform=self.platform,
                id=operation.id,
                reason=sync_result.error,
            )
            await self._queue.ack(operation)
            return OUTCOME_DONE

        return await self._release(operation, sync_result.error or "sync failed")

    async def bulk_sync(
        self,
        entity_type: str,
        ids: list[str] | None = None,
        published_only: bool = True,
        batch_size: int = 50,
        batch_delay_ms: int = 500,
    ) -> BulkSyncResult:
        """Enqueue outbound syncs for many entities in delayed batches.

        Without explicit ids every entity of the type is selected, limited
        to published ones when ``published_only`` is set. Batches are
        enqueued at bulk priority so live changes still go first; the delay
        runs between batches, never after the last one.
        """
        result = BulkSyncResult()
        if not self._config.should_sync_to():
            result.errors.append("outbound sync disabled")
            return result
        if not self._config.is_entity_type_enabled(entity_type):
            result.errors.append(f"entity type {entity_type} disabled")
            return result

        if not ids:
            filters = {"status": "published"} if published_only else None
            ids = await self._store.query(entity_type, filters)

        batch_size = max(1, batch_size)
        batches = [ids[i : i + batch_size] for i in range(0, len(ids), batch_size)]
        result.total = len(ids)
        result.batches = len(batches)

        for index, batch in enumerate(batches):
            operations = [
                SyncOperation(
                    platform=self.platform,
                    direction=QueueDirection.TO_EXTERNAL,
                    entity_type=entity_type,
                    action=ChangeAction.UPDATE.value,
                    payload={"entity_id": str(entity_id)},
                    priority=PRIORITY_BULK,
                )
                for entity_id in batch
            ]
            try:
                await self._queue.enqueue_many(operations)
                result.successful += len(batch)
            except SQLAlchemyError as exc:
                logger.error(
                    "sync.bulk_batch_failed",
                    platform=self.platform,
                    entity_type=entity_type,
                    batch=index + 1,
                    error=str(exc),
                )
                result.failed += len(batch)
                result.errors.append(f"batch {index + 1}: {exc}")

            if index < len(batches) - 1:
                await self._sleep(batch_delay_ms / 1000)

        logger.info(
            "sync.bulk_enqueued",
            platform=self.platform,
            entity_type=entity_type,
            total=result.total,
            batches=result.batches,
            successful=result.successful,
            failed=result.failed,
        )
        return result

    # ── Internals ────────────────────────────────────────────────────────────

    async def _execute(self, operation: SyncOperation) -> SyncResult:
        if operation.direction == QueueDirection.FROM_EXTERNAL:
            return await self._processor.apply(
                operation.entity_type, operation.action, operation.payload
            )

        entity_id = str(operation.payload.get("entity_id", ""))
        if operation.action == ChangeAction.DELETE.value:
            entity = operation.payload.get("snapshot") or {
                "id": entity_id,
                "entity_type": operation.entity_type,
            }
        else:
            entity = await self._store.load(operation.entity_type, entity_id)
            if entity is None:
                return SyncResult(
                    success=False,
                    platform=self.platform,
                    entity_type=operation.entity_type,
                    cms_id=entity_id,
                    error=f"entity {operation.entity_type}/{entity_id} not found",
                )

        return await self._dispatcher.dispatch(entity, operation.action, max_attempts=1)

    async def _release(self, operation: SyncOperation, error: str) -> str:
        requeued = await self._queue.release(operation, error)
        return OUTCOME_RELEASED if requeued else OUTCOME_DEAD
