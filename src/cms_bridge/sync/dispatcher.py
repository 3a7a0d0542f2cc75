"""Outbound Dispatcher: push one local entity change to one platform.

Flow per dispatch:
1. Config gates (direction, entity type). A closed gate yields a
   ``disabled`` SyncResult, never an exception.
2. Transformer lookup and action validation (raise on failure).
3. Identity Map lookup decides create (POST) vs update (PUT/PATCH).
   An update answered with 404 drops the stale mapping and recreates.
   Deleting an unmapped entity is a successful no-op, and a 404 on
   DELETE means the resource is already gone.
4. Platform calls run under the RetryPolicy; transient failures that
   exhaust it become a failed SyncResult carrying the last error.
5. Identity Map refreshed, observers notified.

Permanent errors (conflicts, invalid payloads, non-retryable statuses)
propagate so the batch runner can dead-letter them immediately.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.cms_bridge.sync.client import PlatformClient
from src.cms_bridge.sync.exceptions import (
    HTTPError,
    InvalidPayloadError,
    SyncError,
    UnknownActionError,
)
from src.cms_bridge.sync.identity_map import IdentityMap, outbound_mapping
from src.cms_bridge.sync.observers import SyncObserver
from src.cms_bridge.sync.retry import RetryPolicy
from src.cms_bridge.sync.schemas import ChangeAction, PlatformConfig, SyncAction, SyncResult
from src.cms_bridge.sync.transformers.base import Transformer, TransformerRegistry

logger = structlog.get_logger(__name__)

DIRECTION = "outbound"


def parse_change_action(action: ChangeAction | str) -> ChangeAction:
    """Normalise a lifecycle action.

    Raises:
        UnknownActionError: If the action is not create, update or delete.
    """
    if isinstance(action, ChangeAction):
        return action
    try:
        return ChangeAction(str(action).lower())
    except ValueError as exc:
        raise UnknownActionError(f"Unknown action: {action}") from exc


class OutboundDispatcher:
    """Sends local entity changes to one platform.

    Args:
        config: PlatformConfig for the target platform.
        registry: TransformerRegistry to resolve (platform, entity_type).
        identity_map: IdentityMap holding cms_id <-> external_id bindings.
        client: PlatformClient for the platform's REST API.
        retry_policy: RetryPolicy wrapping every platform call.
        observer: SyncObserver notified after each dispatch.
    """

    def __init__(
        self,
        config: PlatformConfig,
        registry: TransformerRegistry,
        identity_map: IdentityMap,
        client: PlatformClient,
        retry_policy: RetryPolicy,
        observer: SyncObserver | None = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._identity_map = identity_map
        self._client = client
        self._retry = retry_policy
        self._observer = observer or SyncObserver()

    @property
    def platform(self) -> str:
        return self._config.platform

    async def dispatch(
        self,
        entity: dict[str, Any],
        action: ChangeAction | str,
        *,
        max_attempts: int | None = None,
    ) -> SyncResult:
        """Push ``entity`` to the platform.

        Args:
            entity: Local entity dict (snapshot for deletes).
            action: create, update or delete.
            max_attempts: Override the retry budget for this call (the
                batch runner passes 1 and retries via the queue).

        Raises:
            UnsupportedEntityTypeError: No transformer for the entity type.
            UnknownActionError: Action is not a lifecycle action.
            ConflictError: The resulting binding conflicts with the map.
            SyncError: Any other non-retryable platform failure.
        """
        entity_type = entity.get("entity_type", "")
        cms_id = str(entity.get("id", ""))

        if not self._config.should_sync_to():
            return self._finish(
                SyncResult.disabled(self.platform, entity_type, "outbound sync disabled")
            )
        if not self._config.is_entity_type_enabled(entity_type):
            return self._finish(
                SyncResult.disabled(
                    self.platform, entity_type, f"entity type {entity_type} disabled"
                )
            )

        transformer = self._registry.get(self.platform, entity_type)
        change = parse_change_action(action)

        try:
            if change == ChangeAction.DELETE:
                result = await self._delete(transformer, entity_type, cms_id, max_attempts)
            else:
                result = await self._upsert(transformer, entity, cms_id, max_attempts)
        except SyncError as exc:
            if not exc.retryable:
                logger.error(
                    "sync.outbound_permanent_failure",
                    platform=self.platform,
                    entity_type=entity_type,
                    cms_id=cms_id,
                    action=change.value,
                    error=str(exc),
                )
                raise
            result = SyncResult(
                success=False,
                platform=self.platform,
                entity_type=entity_type,
                cms_id=cms_id,
                error=str(exc),
                message="retries exhausted",
            )

        return self._finish(result)

    # ── Internals ────────────────────────────────────────────────────────────

    async def _upsert(
        self,
        transformer: Transformer,
        entity: dict[str, Any],
        cms_id: str,
        max_attempts: int | None,
    ) -> SyncResult:
        entity_type = transformer.entity_type
        payload = transformer.wrap(transformer.to_external(entity))
        external_id = await self._identity_map.lookup_by_cms_id(self.platform, entity_type, cms_id)
        action = SyncAction.UPDATED

        if external_id is not None:
            try:
                await self._retry.run(
                    self._client.request,
                    transformer.update_method,
                    transformer.item_url(external_id),
                    payload,
                    max_attempts=max_attempts,
                )
            except HTTPError as exc:
                if exc.status_code != 404:
                    raise
                logger.warning(
                    "sync.stale_mapping",
                    platform=self.platform,
                    entity_type=entity_type,
                    cms_id=cms_id,
                    external_id=external_id,
                )
                await self._identity_map.remove(self.platform, entity_type, cms_id)
                external_id = None

        if external_id is None:
            body = await self._retry.run(
                self._client.request,
                "POST",
                transformer.collection_path,
                payload,
                max_attempts=max_attempts,
            )
            external_id = transformer.external_id_of(transformer.unwrap(body))
            if external_id is None:
                raise InvalidPayloadError(
                    f"{self.platform} create response for {entity_type}/{cms_id} has no id"
                )
            action = SyncAction.CREATED

        await self._identity_map.upsert(
            outbound_mapping(self.platform, entity_type, cms_id, external_id)
        )
        return SyncResult(
            success=True,
            platform=self.platform,
            entity_type=entity_type,
            cms_id=cms_id,
            external_id=external_id,
            action=action,
        )

    async def _delete(
        self,
        transformer: Transformer,
        entity_type: str,
        cms_id: str,
        max_attempts: int | None,
    ) -> SyncResult:
        external_id = await self._identity_map.lookup_by_cms_id(self.platform, entity_type, cms_id)
        if external_id is None:
            return SyncResult(
                success=True,
                platform=self.platform,
                entity_type=entity_type,
                cms_id=cms_id,
                action=SyncAction.DELETED,
                message="not synced, nothing to delete",
            )

        message = None
        try:
            await self._retry.run(
                self._client.request,
                "DELETE",
                transformer.item_url(external_id),
                None,
                max_attempts=max_attempts,
            )
        except HTTPError as exc:
            if exc.status_code != 404:
                raise
            message = "already deleted"

        await self._identity_map.remove(self.platform, entity_type, cms_id)
        return SyncResult(
            success=True,
            platform=self.platform,
            entity_type=entity_type,
            cms_id=cms_id,
            external_id=external_id,
            action=SyncAction.DELETED,
            message=message,
        )

    def _finish(self, result: SyncResult) -> SyncResult:
        if result.success:
            self._observer.sync_completed(DIRECTION, result)
        else:
            self._observer.sync_failed(DIRECTION, result)
        return result
