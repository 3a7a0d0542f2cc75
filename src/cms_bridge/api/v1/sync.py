"""Operator endpoints for the sync engine.

Per platform: immediate dispatch, bulk sync, full pull, manual queue runs, status
and stats, queue clearing, dead-letter inspection and replay, and the
Identity Map. Guarded by the optional X-API-Key check.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from src.cms_bridge.api.deps import (
    get_coordinator,
    get_coordinators,
    get_entity_store,
    require_admin_key,
)
from src.cms_bridge.config import get_settings
from src.cms_bridge.sync.coordinator import CoordinatorRegistry, SyncCoordinator
from src.cms_bridge.sync.entity_store import EntityStore
from src.cms_bridge.sync.exceptions import (
    ConflictError,
    SyncError,
    UnknownActionError,
    UnsupportedEntityTypeError,
)
from src.cms_bridge.sync.schemas import (
    BulkSyncResult,
    ChangeAction,
    DeadLetter,
    PullSyncResult,
    QueueRunResult,
    SyncMapping,
    SyncOperation,
    SyncResult,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"], dependencies=[Depends(require_admin_key)])


# ── Request Schemas ──────────────────────────────────────────────────────────


class DispatchRequest(BaseModel):
    """Request body for an immediate outbound sync of one entity."""

    entity_type: str
    entity_id: str
    action: str = ChangeAction.UPDATE.value


class BulkSyncRequest(BaseModel):
    """Request body for a bulk outbound sync (defaults from settings)."""

    entity_type: str
    ids: list[str] | None = None
    published_only: bool = True
    batch_size: int | None = Field(default=None, ge=1, le=500)
    batch_delay_ms: int | None = Field(default=None, ge=0)


class PullSyncRequest(BaseModel):
    """Request body for a full pull from the platform (all enabled types by default)."""

    entity_types: list[str] | None = None
    batch_size: int | None = Field(default=None, ge=1, le=500)


class ProcessQueueRequest(BaseModel):
    """Request body for a manual queue run."""

    time_budget_seconds: float | None = Field(default=None, gt=0)


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.get("")
async def list_platforms(
    coordinators: CoordinatorRegistry = Depends(get_coordinators),
) -> dict[str, Any]:
    """Configured platforms and their sync direction."""
    return {
        "platforms": [
            {
                "platform": c.platform,
                "sync_direction": c.config.sync_direction.value,
                "enabled_entity_types": c.config.enabled_entity_types,
            }
            for c in coordinators.all()
        ]
    }


@router.post("/{platform}/dispatch", response_model=SyncResult)
async def dispatch_entity(
    body: DispatchRequest,
    coordinator: SyncCoordinator = Depends(get_coordinator),
    store: EntityStore = Depends(get_entity_store),
) -> SyncResult:
    """Push one entity to the platform now, bypassing the queue.

    Deletes of entities already gone locally use a bare {id, entity_type}
    snapshot so the remote copy can still be removed.
    """
    entity = await store.load(body.entity_type, body.entity_id)
    if entity is None:
        if body.action != ChangeAction.DELETE.value:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Entity {body.entity_type}/{body.entity_id} not found",
            )
        entity = {"id": body.entity_id, "entity_type": body.entity_type}

    try:
        return await coordinator.dispatch(entity, body.action)
    except (UnknownActionError, UnsupportedEntityTypeError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except SyncError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc


@router.post("/{platform}/bulk", response_model=BulkSyncResult)
async def bulk_sync(
    body: BulkSyncRequest,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> BulkSyncResult:
    """Queue many entities for outbound sync in delayed batches."""
    settings = get_settings()
    return await coordinator.bulk_sync(
        body.entity_type,
        ids=body.ids,
        published_only=body.published_only,
        batch_size=body.batch_size or settings.SYNC_BULK_BATCH_SIZE,
        batch_delay_ms=(
            settings.SYNC_BULK_BATCH_DELAY_MS if body.batch_delay_ms is None else body.batch_delay_ms
        ),
    )


@router.post("/{platform}/bulk/pull", response_model=dict[str, PullSyncResult])
async def pull_sync(
    body: PullSyncRequest | None = None,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> dict[str, PullSyncResult]:
    """Ask the platform to re-send every entity of each type through its webhooks."""
    body = body or PullSyncRequest()
    return await coordinator.pull_all(
        entity_types=body.entity_types,
        batch_size=body.batch_size or get_settings().SYNC_BULK_BATCH_SIZE,
    )


@router.post("/{platform}/process", response_model=QueueRunResult)
async def process_queue(
    body: ProcessQueueRequest | None = None,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> QueueRunResult:
    """Drain the platform's queue within a time budget."""
    budget = (body.time_budget_seconds if body else None) or get_settings().SYNC_QUEUE_TIME_BUDGET_SECONDS
    return await coordinator.process_queue(budget)


@router.get("/{platform}/status")
async def get_status(
    test_connection: bool = Query(default=False),
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    """Configuration, queue statistics, per-type counters, optional connection test."""
    return await coordinator.status(test_connection=test_connection)


@router.post("/{platform}/stats/reset")
async def reset_stats(
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    coordinator.reset_stats()
    return {"platform": coordinator.platform, "reset": True}


@router.delete("/{platform}/queue")
async def clear_queue(
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    """Drop every queued operation for the platform."""
    cleared = await coordinator.queue.clear()
    return {"platform": coordinator.platform, "cleared": cleared}


@router.get("/{platform}/dead-letters", response_model=list[DeadLetter])
async def list_dead_letters(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> list[DeadLetter]:
    return await coordinator.queue.list_dead_letters(limit=limit, offset=offset)


@router.post("/{platform}/dead-letters/{dead_letter_id}/replay", response_model=SyncOperation)
async def replay_dead_letter(
    dead_letter_id: int,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> SyncOperation:
    """Re-enqueue a dead letter with a fresh attempt budget."""
    operation = await coordinator.queue.replay_dead_letter(dead_letter_id)
    if operation is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Dead letter {dead_letter_id} not found",
        )
    return operation


@router.delete("/{platform}/dead-letters")
async def purge_dead_letters(
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    purged = await coordinator.queue.purge_dead_letters()
    logger.info("sync.dead_letters_purged", platform=coordinator.platform, count=purged)
    return {"platform": coordinator.platform, "purged": purged}


@router.get("/{platform}/mappings", response_model=list[SyncMapping])
async def list_mappings(
    entity_type: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> list[SyncMapping]:
    """Identity Map bindings for the platform."""
    return await coordinator.identity_map.list_mappings(
        coordinator.platform, entity_type=entity_type, limit=limit, offset=offset
    )
