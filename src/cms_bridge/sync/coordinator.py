"""Bidirectional Sync Coordinator: one per configured platform.

Wires the Identity Map, transformers, client, dispatcher, webhook
processor, queue and batch runner for a platform, and subscribes to local
ChangeEvents. Local changes are queued as to_external operations unless
the Loop-Prevention Guard recognises them as echoes of this platform's own
webhooks.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.cms_bridge.config import Settings
from src.cms_bridge.sync.client import (
    CredentialProvider,
    OAuthClientCredentialsProvider,
    PlatformClient,
    StaticCredentialProvider,
)
from src.cms_bridge.sync.dispatcher import OutboundDispatcher, parse_change_action
from src.cms_bridge.sync.entity_store import EntityStore
from src.cms_bridge.sync.exceptions import (
    SyncError,
    UnknownActionError,
    UnsupportedEntityTypeError,
    UnsupportedPlatformError,
)
from src.cms_bridge.sync.guard import should_dispatch
from src.cms_bridge.sync.identity_map import IdentityMap
from src.cms_bridge.sync.observers import (
    CompositeObserver,
    LoggingObserver,
    MetricsObserver,
    StatsObserver,
    SyncObserver,
)
from src.cms_bridge.sync.queue import SyncQueue
from src.cms_bridge.sync.retry import RetryPolicy
from src.cms_bridge.sync.runner import BatchRunner
from src.cms_bridge.sync.schemas import (
    PRIORITY_LIVE,
    BulkSyncResult,
    ChangeAction,
    ChangeEvent,
    PlatformConfig,
    PullSyncResult,
    QueueDirection,
    QueueRunResult,
    SyncOperation,
    SyncResult,
)
from src.cms_bridge.sync.transformers import TransformerRegistry, default_registry
from src.cms_bridge.sync.webhooks import WebhookProcessor

logger = structlog.get_logger(__name__)


class SyncCoordinator:
    """Everything needed to keep one platform in sync with the local store.

    Args:
        config: PlatformConfig for the platform.
        registry: TransformerRegistry shared across platforms.
        identity_map: IdentityMap shared across platforms.
        store: Local EntityStore.
        client: PlatformClient for the platform's API.
        session_factory: async_sessionmaker for the queue tables.
        retry_policy: RetryPolicy; defaults from the config's retry settings.
        observers: Extra SyncObservers beyond logging, metrics and stats.
    """

    def __init__(
        self,
        config: PlatformConfig,
        registry: TransformerRegistry,
        identity_map: IdentityMap,
        store: EntityStore,
        client: PlatformClient,
        session_factory: async_sessionmaker[AsyncSession],
        retry_policy: RetryPolicy | None = None,
        observers: list[SyncObserver] | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.registry = registry
        self.identity_map = identity_map
        self.stats = StatsObserver()
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=config.max_retries,
            base_delay_ms=config.retry_base_delay_ms,
        )
        observer = CompositeObserver(
            [LoggingObserver(), MetricsObserver(), self.stats, *(observers or [])]
        )

        self.queue = SyncQueue(session_factory, config.platform, self.retry_policy)
        self.dispatcher = OutboundDispatcher(
            config, registry, identity_map, client, self.retry_policy, observer
        )
        self.processor = WebhookProcessor(
            config,
            registry,
            identity_map,
            store,
            observer,
            queue=self.queue if config.defer_inbound else None,
        )
        self.runner = BatchRunner(config, self.queue, self.dispatcher, self.processor, store)

    @property
    def platform(self) -> str:
        return self.config.platform

    async def on_change(self, event: ChangeEvent) -> SyncOperation | None:
        """Queue a local lifecycle event for outbound sync.

        Returns the queued operation, or None when the event is an echo of
        this platform's webhook, outbound sync is gated off, or the platform
        has no transformer for the entity type.
        """
        if not should_dispatch(event, self.platform):
            logger.debug(
                "sync.loop_suppressed",
                platform=self.platform,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                origin=event.origin,
            )
            return None
        if not self.config.should_sync_to():
            return None
        if not self.config.is_entity_type_enabled(event.entity_type):
            return None
        if event.entity_type not in self.registry.entity_types(self.platform):
            return None

        payload: dict[str, Any] = {"entity_id": event.entity_id}
        if event.action == ChangeAction.DELETE:
            payload["snapshot"] = event.data

        operation = await self.queue.enqueue(
            SyncOperation(
                platform=self.platform,
                direction=QueueDirection.TO_EXTERNAL,
                entity_type=event.entity_type,
                action=event.action.value,
                payload=payload,
                priority=PRIORITY_LIVE,
            )
        )
        logger.info(
            "sync.outbound_queued",
            platform=self.platform,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            action=event.action.value,
            operation_id=operation.id,
        )
        return operation

    async def handle_webhook(
        self, event_name: str, raw_body: bytes, signature: str | None
    ) -> SyncResult:
        """Entry point for a platform webhook (immediate or deferred)."""
        if self.config.defer_inbound:
            return await self.processor.accept(event_name, raw_body, signature)
        return await self.processor.process(event_name, raw_body, signature)

    async def dispatch(self, entity: dict[str, Any], action: ChangeAction | str) -> SyncResult:
        """Push one entity immediately using the full retry budget.

        Failures that survive the retry budget, and binding conflicts, are
        recorded as dead letters so an operator can replay them. Validation
        errors and config-disabled results are not.

        Raises:
            UnsupportedEntityTypeError, UnknownActionError: Invalid request.
            SyncError: Any other non-retryable failure, after dead-lettering.
        """
        change = parse_change_action(action)
        try:
            result = await self.dispatcher.dispatch(entity, change)
        except (UnsupportedEntityTypeError, UnknownActionError):
            raise
        except SyncError as exc:
            await self._dead_letter_dispatch(entity, change, f"{type(exc).__name__}: {exc}")
            raise

        if not result.success and result.message != "disabled":
            await self._dead_letter_dispatch(entity, change, result.error or "dispatch failed")
        return result

    async def _dead_letter_dispatch(
        self, entity: dict[str, Any], change: ChangeAction, error: str
    ) -> None:
        payload: dict[str, Any] = {"entity_id": str(entity.get("id", ""))}
        if change == ChangeAction.DELETE:
            payload["snapshot"] = entity
        operation = SyncOperation(
            platform=self.platform,
            direction=QueueDirection.TO_EXTERNAL,
            entity_type=entity.get("entity_type", ""),
            action=change.value,
            payload=payload,
        )
        await self.queue.dead_letter(operation, error, attempt=self.retry_policy.max_attempts)

    async def process_queue(self, time_budget: float) -> QueueRunResult:
        return await self.runner.process_queue(time_budget)

    async def bulk_sync(
        self,
        entity_type: str,
        ids: list[str] | None = None,
        published_only: bool = True,
        batch_size: int = 50,
        batch_delay_ms: int = 500,
    ) -> BulkSyncResult:
        return await self.runner.bulk_sync(
            entity_type,
            ids=ids,
            published_only=published_only,
            batch_size=batch_size,
            batch_delay_ms=batch_delay_ms,
        )

    async def pull_all(
        self, entity_types: list[str] | None = None, batch_size: int = 50
    ) -> dict[str, PullSyncResult]:
        """Ask the platform to replay every entity of each type through its webhooks.

        One full-sync request per entity type (all enabled types by default).
        A failing type is reported in its own result and does not stop the
        others; the entities themselves arrive later as ordinary webhooks.
        """
        results: dict[str, PullSyncResult] = {}
        for entity_type in entity_types or self.config.enabled_entity_types:
            if not self.config.should_sync_from():
                results[entity_type] = PullSyncResult(success=False, error="inbound sync disabled")
                continue
            if not self.config.is_entity_type_enabled(entity_type):
                results[entity_type] = PullSyncResult(
                    success=False, error=f"entity type {entity_type} disabled"
                )
                continue

            path = self.config.full_sync_path.format(entity_type=entity_type)
            try:
                body = await self.retry_policy.run(
                    self.client.request,
                    "POST",
                    path,
                    {"batch_size": batch_size, "full_sync": True},
                )
            except SyncError as exc:
                logger.error(
                    "sync.pull_failed",
                    platform=self.platform,
                    entity_type=entity_type,
                    error=str(exc),
                )
                results[entity_type] = PullSyncResult(success=False, error=str(exc))
                continue

            body = body if isinstance(body, dict) else {}
            results[entity_type] = PullSyncResult(
                success=True,
                count=int(body.get("count") or 0),
                batches=int(body.get("batches") or 0),
            )
            logger.info(
                "sync.pull_requested",
                platform=self.platform,
                entity_type=entity_type,
                count=results[entity_type].count,
                batches=results[entity_type].batches,
            )
        return results

    async def status(self, test_connection: bool = False) -> dict[str, Any]:
        """Config summary, queue stats, per-type counters and optional connection test."""
        summary: dict[str, Any] = {
            "platform": self.platform,
            "api_url": self.config.api_url,
            "sync_direction": self.config.sync_direction.value,
            "enabled_entity_types": self.config.enabled_entity_types,
            "webhook_secret_configured": bool(self.config.webhook_secret),
            "defer_inbound": self.config.defer_inbound,
            "queue": await self.queue.stats(),
            "mappings": await self.identity_map.count(self.platform),
            "stats": {
                entity_type: stats.model_dump(mode="json")
                for entity_type, stats in self.stats.snapshot().items()
            },
        }
        if test_connection:
            summary["connection"] = await self.client.test_connection()
        return summary

    def reset_stats(self) -> None:
        self.stats.reset()
        logger.info("sync.stats_reset", platform=self.platform)


class CoordinatorRegistry:
    """Per-platform coordinators, fanned out to on every local change."""

    def __init__(self) -> None:
        self._coordinators: dict[str, SyncCoordinator] = {}

    def add(self, coordinator: SyncCoordinator) -> None:
        self._coordinators[coordinator.platform] = coordinator

    def get(self, platform: str) -> SyncCoordinator:
        """Raises UnsupportedPlatformError if the platform is not configured."""
        coordinator = self._coordinators.get(platform)
        if coordinator is None:
            raise UnsupportedPlatformError(f"Platform not configured: {platform}")
        return coordinator

    def all(self) -> list[SyncCoordinator]:
        return list(self._coordinators.values())

    def platforms(self) -> list[str]:
        return sorted(self._coordinators)

    def __contains__(self, platform: object) -> bool:
        return platform in self._coordinators

    async def on_change(self, event: ChangeEvent) -> None:
        for coordinator in self._coordinators.values():
            await coordinator.on_change(event)


def build_credentials(
    settings: Settings,
    config: PlatformConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CredentialProvider:
    """Credential provider for a platform from settings."""
    if config.platform == "optimizely":
        return OAuthClientCredentialsProvider(
            token_url=f"{config.api_url.rstrip('/')}/oauth2/token",
            client_id=settings.OPTIMIZELY_CLIENT_ID,
            client_secret=settings.OPTIMIZELY_CLIENT_SECRET,
            timeout=config.request_timeout_seconds,
            transport=transport,
        )
    token = getattr(settings, f"{config.platform.upper()}_API_TOKEN", "")
    return StaticCredentialProvider({(config.platform, config.site_id): token})


def build_coordinators(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    store: EntityStore,
    registry: TransformerRegistry | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CoordinatorRegistry:
    """Create a coordinator for every configured platform and subscribe them to ``store``."""
    registry = registry or default_registry()
    identity_map = IdentityMap(session_factory)
    coordinators = CoordinatorRegistry()

    for config in settings.get_platform_configs().values():
        credentials = build_credentials(settings, config, transport)
        client = PlatformClient(config, credentials, transport=transport)
        coordinators.add(
            SyncCoordinator(
                config=config,
                registry=registry,
                identity_map=identity_map,
                store=store,
                client=client,
                session_factory=session_factory,
            )
        )
        logger.info(
            "sync.coordinator_ready",
            platform=config.platform,
            sync_direction=config.sync_direction.value,
            entity_types=config.enabled_entity_types,
        )

    store.subscribe(coordinators.on_change)
    return coordinators
