"""Sync observers: logging, Prometheus metrics, and per-entity-type stats.

Dispatcher and webhook processor notify a SyncObserver after every
completed sync (success or failure). Observers must not raise.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog

from src.cms_bridge.core.monitoring import sync_operations_total
from src.cms_bridge.sync.schemas import SyncResult, SyncStats

logger = structlog.get_logger(__name__)


class SyncObserver:
    """Base observer; subclasses override the hooks they care about."""

    def sync_completed(self, direction: str, result: SyncResult) -> None:
        pass

    def sync_failed(self, direction: str, result: SyncResult) -> None:
        pass


class LoggingObserver(SyncObserver):
    def sync_completed(self, direction: str, result: SyncResult) -> None:
        logger.info(
            f"sync.{direction}_complete",
            platform=result.platform,
            entity_type=result.entity_type,
            cms_id=result.cms_id,
            external_id=result.external_id,
            action=result.action.value if result.action else None,
            message=result.message,
        )

    def sync_failed(self, direction: str, result: SyncResult) -> None:
        log_method = logger.info if result.message == "disabled" else logger.error
        log_method(
            f"sync.{direction}_failed",
            platform=result.platform,
            entity_type=result.entity_type,
            cms_id=result.cms_id,
            external_id=result.external_id,
            error=result.error,
        )


class MetricsObserver(SyncObserver):
    def sync_completed(self, direction: str, result: SyncResult) -> None:
        sync_operations_total.labels(
            platform=result.platform,
            direction=direction,
            entity_type=result.entity_type,
            outcome="success",
        ).inc()

    def sync_failed(self, direction: str, result: SyncResult) -> None:
        sync_operations_total.labels(
            platform=result.platform,
            direction=direction,
            entity_type=result.entity_type,
            outcome="disabled" if result.message == "disabled" else "failure",
        ).inc()


class StatsObserver(SyncObserver):
    """Running synced/failed counters per entity type, resettable by operators.

    Config-gated skips are not counted as failures.
    """

    def __init__(self) -> None:
        self._stats: dict[str, SyncStats] = {}

    def sync_completed(self, direction: str, result: SyncResult) -> None:
        stats = self._stats.setdefault(result.entity_type, SyncStats())
        stats.synced += 1
        stats.last_sync = datetime.now(timezone.utc)

    def sync_failed(self, direction: str, result: SyncResult) -> None:
        if result.message == "disabled":
            return
        stats = self._stats.setdefault(result.entity_type, SyncStats())
        stats.failed += 1

    def snapshot(self) -> dict[str, SyncStats]:
        return {k: v.model_copy() for k, v in self._stats.items()}

    def reset(self) -> None:
        self._stats.clear()


class CompositeObserver(SyncObserver):
    """Fans one notification out to several observers.

    A raising observer is logged and skipped; the sync it reports on has
    already happened and the remaining observers still hear about it.
    """

    def __init__(self, observers: list[SyncObserver]) -> None:
        self._observers = list(observers)

    def sync_completed(self, direction: str, result: SyncResult) -> None:
        for observer in self._observers:
            try:
                observer.sync_completed(direction, result)
            except Exception:
                _log_observer_failure(observer, "sync_completed", direction, result)

    def sync_failed(self, direction: str, result: SyncResult) -> None:
        for observer in self._observers:
            try:
                observer.sync_failed(direction, result)
            except Exception:
                _log_observer_failure(observer, "sync_failed", direction, result)


def _log_observer_failure(
    observer: SyncObserver, hook: str, direction: str, result: SyncResult
) -> None:
    logger.error(
        "sync.observer_failed",
        observer=type(observer).__name__,
        hook=hook,
        direction=direction,
        platform=result.platform,
        entity_type=result.entity_type,
        exc_info=True,
    )
