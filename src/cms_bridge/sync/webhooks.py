"""Inbound Webhook Processor: verify, gate, parse, transform, apply.

Hard gates run in this order and each one stops the webhook before any
local mutation:
1. HMAC-SHA256 signature over the raw body bytes (constant-time compare).
2. Inbound direction and entity-type enablement (``disabled`` result).
3. Event name parsing into (entity_type, action).
4. Body decoding and external id extraction.

Local mutations run inside ``mutation_origin(platform)`` so the resulting
ChangeEvents are not echoed back to the same platform.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from typing import TYPE_CHECKING, Any

import structlog

from src.cms_bridge.sync.entity_store import EntityStore
from src.cms_bridge.sync.exceptions import (
    InvalidPayloadError,
    InvalidSignatureError,
    UnknownActionError,
    UnsupportedEntityTypeError,
)
from src.cms_bridge.sync.guard import mutation_origin
from src.cms_bridge.sync.identity_map import IdentityMap, inbound_mapping
from src.cms_bridge.sync.observers import SyncObserver
from src.cms_bridge.sync.schemas import (
    PlatformConfig,
    QueueDirection,
    SyncAction,
    SyncOperation,
    SyncResult,
)
from src.cms_bridge.sync.transformers.base import TransformerRegistry

if TYPE_CHECKING:
    from src.cms_bridge.sync.queue import SyncQueue

logger = structlog.get_logger(__name__)

DIRECTION = "inbound"

# Entity type reported when the event name does not resolve
UNKNOWN_ENTITY_TYPE = "unknown"

ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_DELETE = "delete"
ACTION_STATUS = "status"

_ACTION_ALIASES: dict[str, str] = {
    "create": ACTION_CREATE,
    "created": ACTION_CREATE,
    "insert": ACTION_CREATE,
    "new": ACTION_CREATE,
    "update": ACTION_UPDATE,
    "updated": ACTION_UPDATE,
    "edit": ACTION_UPDATE,
    "save": ACTION_UPDATE,
    "delete": ACTION_DELETE,
    "deleted": ACTION_DELETE,
    "remove": ACTION_DELETE,
    "removed": ACTION_DELETE,
    # Status transitions (Shopify order events, publish workflows)
    "paid": ACTION_STATUS,
    "cancelled": ACTION_STATUS,
    "canceled": ACTION_STATUS,
    "fulfilled": ACTION_STATUS,
    "partially_fulfilled": ACTION_STATUS,
    "refunded": ACTION_STATUS,
    "published": ACTION_STATUS,
    "unpublished": ACTION_STATUS,
    "publish": ACTION_STATUS,
    "unpublish": ACTION_STATUS,
    "enable": ACTION_STATUS,
    "disable": ACTION_STATUS,
    "status_changed": ACTION_STATUS,
}


# ── Signature Verification ──────────────────────────────────────────────────


def compute_signature(secret: str, raw_body: bytes, encoding: str = "hex") -> str:
    """HMAC-SHA256 of ``raw_body`` keyed by ``secret`` in hex or base64."""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    if encoding == "base64":
        return base64.b64encode(digest).decode("ascii")
    return digest.hex()


def verify_signature(config: PlatformConfig, raw_body: bytes, signature: str | None) -> None:
    """Check a webhook signature against the platform's shared secret.

    With no secret configured the webhook passes with a warning, unless the
    platform requires signatures (``strict_signatures``).

    Raises:
        InvalidSignatureError: Missing or mismatched signature, or no secret
            configured on a strict platform.
    """
    secret = config.webhook_secret
    if not secret:
        if config.strict_signatures:
            raise InvalidSignatureError(f"No webhook secret configured for {config.platform}")
        logger.warning("webhook.no_secret_configured", platform=config.platform)
        return

    if not signature:
        raise InvalidSignatureError("Missing webhook signature")

    provided = signature.strip()
    if config.signature_prefix and provided.startswith(config.signature_prefix):
        provided = provided[len(config.signature_prefix) :]

    expected = compute_signature(secret, raw_body, config.signature_encoding)
    if config.signature_encoding == "hex":
        provided = provided.lower()

    if not hmac.compare_digest(expected.encode("ascii"), provided.encode("utf-8")):
        raise InvalidSignatureError("Webhook signature mismatch")


# ── Event Parsing ───────────────────────────────────────────────────────────


def split_event_name(event_name: str) -> tuple[str, str]:
    """Split ``products/create``, ``node.update`` or ``PRODUCTS_CREATE``.

    Returns (entity_name, action_name), both lower-cased.

    Raises:
        UnknownActionError: If the name has no separator.
    """
    name = event_name.strip().strip("/").lower()
    for separator in ("/", "."):
        if separator in name:
            entity_name, _, action_name = name.rpartition(separator)
            if entity_name and action_name:
                return entity_name, action_name

    # Topic constants (PRODUCTS_CREATE, ORDERS_PARTIALLY_FULFILLED) may have
    # underscores on both sides; take the longest known action suffix.
    parts = name.split("_")
    for i in range(1, len(parts)):
        action_name = "_".join(parts[i:])
        if action_name in _ACTION_ALIASES:
            return "_".join(parts[:i]), action_name
    if len(parts) > 1:
        return "_".join(parts[:-1]), parts[-1]
    raise UnknownActionError(f"Unrecognised event name: {event_name}")


def parse_action(action_name: str) -> str:
    action = _ACTION_ALIASES.get(action_name.lower())
    if action is None:
        raise UnknownActionError(f"Unknown webhook action: {action_name}")
    return action


# ── Processor ───────────────────────────────────────────────────────────────


class WebhookProcessor:
    """Applies verified platform webhooks to the local entity store.

    Args:
        config: PlatformConfig for the sending platform.
        registry: TransformerRegistry for entity resolution.
        identity_map: IdentityMap for external_id -> cms_id lookups.
        store: EntityStore receiving the local mutations.
        observer: SyncObserver notified after each applied webhook.
        queue: SyncQueue used when the platform defers inbound processing.
    """

    def __init__(
        self,
        config: PlatformConfig,
        registry: TransformerRegistry,
        identity_map: IdentityMap,
        store: EntityStore,
        observer: SyncObserver | None = None,
        queue: SyncQueue | None = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._identity_map = identity_map
        self._store = store
        self._observer = observer or SyncObserver()
        self._queue = queue

    @property
    def platform(self) -> str:
        return self._config.platform

    async def process(self, event_name: str, raw_body: bytes, signature: str | None) -> SyncResult:
        """Verify and apply one webhook synchronously.

        Raises:
            InvalidSignatureError: Signature check failed.
            UnknownActionError: Event action not recognised.
            UnsupportedEntityTypeError: Event entity not handled on this platform.
            InvalidPayloadError: Body not JSON or lacks the external id.
            ConflictError: Binding conflicts with the Identity Map.
        """
        gated = self._verify_and_gate(event_name, raw_body, signature)
        if isinstance(gated, SyncResult):
            return gated
        entity_type, action = gated
        payload = self._decode(raw_body)
        return await self.apply(entity_type, action, payload)

    async def accept(self, event_name: str, raw_body: bytes, signature: str | None) -> SyncResult:
        """Verify, gate and enqueue a webhook for the batch runner.

        Falls back to process() when no queue is wired.
        """
        if self._queue is None:
            return await self.process(event_name, raw_body, signature)

        gated = self._verify_and_gate(event_name, raw_body, signature)
        if isinstance(gated, SyncResult):
            return gated
        entity_type, action = gated
        payload = self._decode(raw_body)
        self._extract(entity_type, payload)

        operation = await self._queue.enqueue(
            SyncOperation(
                platform=self.platform,
                direction=QueueDirection.FROM_EXTERNAL,
                entity_type=entity_type,
                action=action,
                payload=payload,
            )
        )
        logger.info(
            "webhook.queued",
            platform=self.platform,
            entity_type=entity_type,
            action=action,
            operation_id=operation.id,
        )
        return SyncResult(
            success=True,
            platform=self.platform,
            entity_type=entity_type,
            message="queued",
        )

    def entity_type_for(self, event_name: str) -> str:
        """Registered entity type an event name refers to, or ``unknown``.

        Never raises; event names come from the caller and must not reach
        results or metric labels unresolved.
        """
        try:
            entity_name, _ = split_event_name(event_name)
            return self._registry.resolve_alias(self.platform, entity_name)
        except (UnknownActionError, UnsupportedEntityTypeError):
            return UNKNOWN_ENTITY_TYPE

    async def apply(self, entity_type: str, action: str, payload: dict[str, Any]) -> SyncResult:
        """Apply an already-verified webhook body to local state."""
        data, external_id = self._extract(entity_type, payload)

        if action == ACTION_DELETE:
            result = await self._apply_delete(entity_type, external_id)
        else:
            result = await self._apply_upsert(entity_type, action, data, external_id)

        self._observer.sync_completed(DIRECTION, result)
        return result

    # ── Internals ────────────────────────────────────────────────────────────

    def _verify_and_gate(
        self, event_name: str, raw_body: bytes, signature: str | None
    ) -> SyncResult | tuple[str, str]:
        verify_signature(self._config, raw_body, signature)

        if not self._config.should_sync_from():
            return self._disabled(self.entity_type_for(event_name), "inbound sync disabled")

        entity_name, action_name = split_event_name(event_name)
        entity_type = self._registry.resolve_alias(self.platform, entity_name)
        action = parse_action(action_name)

        if not self._config.is_entity_type_enabled(entity_type):
            return self._disabled(entity_type, f"entity type {entity_type} disabled")
        return entity_type, action

    def _disabled(self, entity_type: str, reason: str) -> SyncResult:
        result = SyncResult.disabled(self.platform, entity_type, reason)
        self._observer.sync_failed(DIRECTION, result)
        return result

    @staticmethod
    def _decode(raw_body: bytes) -> dict[str, Any]:
        try:
            payload = json.loads(raw_body or b"{}")
        except (ValueError, UnicodeDecodeError) as exc:
            raise InvalidPayloadError("Webhook body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise InvalidPayloadError("Webhook body must be a JSON object")
        return payload

    def _extract(self, entity_type: str, payload: dict[str, Any]) -> tuple[dict[str, Any], str]:
        transformer = self._registry.get(self.platform, entity_type)
        data = transformer.unwrap(payload)
        external_id = transformer.external_id_of(data)
        if external_id is None:
            raise InvalidPayloadError(f"{self.platform} {entity_type} webhook has no id")
        return data, external_id

    async def _apply_upsert(
        self,
        entity_type: str,
        action: str,
        data: dict[str, Any],
        external_id: str,
    ) -> SyncResult:
        transformer = self._registry.get(self.platform, entity_type)
        fields = transformer.to_local(data)

        with mutation_origin(self.platform):
            cms_id = await self._identity_map.lookup_by_external_id(
                self.platform, entity_type, external_id
            )
            if cms_id is not None and await self._store.load(entity_type, cms_id) is None:
                logger.warning(
                    "webhook.stale_mapping",
                    platform=self.platform,
                    entity_type=entity_type,
                    cms_id=cms_id,
                    external_id=external_id,
                )
                await self._identity_map.remove(self.platform, entity_type, cms_id)
                cms_id = None

            if cms_id is not None:
                await self._store.update(entity_type, cms_id, fields)
                sync_action = (
                    SyncAction.STATUS_UPDATED if action == ACTION_STATUS else SyncAction.UPDATED
                )
            else:
                entity = await self._store.create(entity_type, fields)
                cms_id = str(entity["id"])
                sync_action = SyncAction.CREATED

            await self._identity_map.upsert(
                inbound_mapping(self.platform, entity_type, cms_id, external_id)
            )

        return SyncResult(
            success=True,
            platform=self.platform,
            entity_type=entity_type,
            cms_id=cms_id,
            external_id=external_id,
            action=sync_action,
        )

    async def _apply_delete(self, entity_type: str, external_id: str) -> SyncResult:
        cms_id = await self._identity_map.lookup_by_external_id(
            self.platform, entity_type, external_id
        )
        if cms_id is None:
            return SyncResult(
                success=True,
                platform=self.platform,
                entity_type=entity_type,
                external_id=external_id,
                action=SyncAction.DELETED,
                message="already deleted",
            )

        with mutation_origin(self.platform):
            await self._store.delete(entity_type, cms_id)
        await self._identity_map.remove(self.platform, entity_type, cms_id)

        return SyncResult(
            success=True,
            platform=self.platform,
            entity_type=entity_type,
            cms_id=cms_id,
            external_id=external_id,
            action=SyncAction.DELETED,
        )
