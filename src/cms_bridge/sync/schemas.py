"""Pydantic schemas for the sync engine.

Defines the structured types shared by every sync component:
- Enums: SyncDirection, QueueDirection, MappingDirection, ChangeAction, SyncAction
- Configuration: PlatformConfig (per-platform gates, signature and auth conventions)
- Identity: SyncMapping
- Queue: SyncOperation, DeadLetter, QueueRunResult, BulkSyncResult
- Results and events: SyncResult, ChangeEvent, SyncStats
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

LOCAL_ORIGIN = "local"

# Queue priorities: live lifecycle events jump ahead of bulk backfills.
PRIORITY_LIVE = 10
PRIORITY_BULK = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ───────────────────────────────────────────────────────────────────


class SyncDirection(str, Enum):
    """Which directions are enabled for a platform."""

    BIDIRECTIONAL = "bidirectional"
    TO_EXTERNAL = "to_external"
    FROM_EXTERNAL = "from_external"
    DISABLED = "disabled"


class QueueDirection(str, Enum):
    """Direction of a single queued sync operation."""

    TO_EXTERNAL = "to_external"
    FROM_EXTERNAL = "from_external"


class MappingDirection(str, Enum):
    """Direction of the last successful sync recorded on a mapping."""

    OUTBOUND = "outbound"
    INBOUND = "inbound"


class ChangeAction(str, Enum):
    """Lifecycle action on a local entity or a platform resource."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncAction(str, Enum):
    """Outcome action reported on a SyncResult."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    STATUS_UPDATED = "status_updated"


# ── Configuration ───────────────────────────────────────────────────────────


class PlatformConfig(BaseModel):
    """Per-platform sync configuration.

    Wire conventions (signature header/encoding, auth header) differ per
    platform; see PLATFORM_DEFAULTS in src/cms_bridge/config.py.
    """

    platform: str
    api_url: str
    site_id: str = "default"
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    enabled_entity_types: list[str] = Field(default_factory=list)

    # Webhook verification
    webhook_secret: str | None = None
    strict_signatures: bool = False
    signature_header: str = "X-Signature"
    signature_encoding: str = "hex"  # hex | base64
    signature_prefix: str = ""
    event_header: str = "X-Event"

    # Outbound API
    auth_scheme: str = "bearer"  # bearer | header | basic
    auth_header: str = "Authorization"
    site_header: str | None = None
    health_path: str = "/health"
    # Full pull of one entity type, with an {entity_type} placeholder
    full_sync_path: str = "/sync/{entity_type}"
    request_timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_base_delay_ms: int = 1000

    # Inbound webhooks are queued and applied by the batch runner
    defer_inbound: bool = False

    def should_sync_to(self) -> bool:
        """True when local changes may be pushed to the platform."""
        return self.sync_direction in (SyncDirection.BIDIRECTIONAL, SyncDirection.TO_EXTERNAL)

    def should_sync_from(self) -> bool:
        """True when platform webhooks may mutate local state."""
        return self.sync_direction in (SyncDirection.BIDIRECTIONAL, SyncDirection.FROM_EXTERNAL)

    def is_entity_type_enabled(self, entity_type: str) -> bool:
        return entity_type in self.enabled_entity_types


# ── Identity ────────────────────────────────────────────────────────────────


class SyncMapping(BaseModel):
    """Binding between a CMS entity and its counterpart on one platform."""

    platform: str
    cms_entity_type: str
    cms_id: str
    external_id: str
    last_synced_at: datetime = Field(default_factory=_utcnow)
    last_sync_direction: MappingDirection = MappingDirection.OUTBOUND


# ── Queue ───────────────────────────────────────────────────────────────────


class SyncOperation(BaseModel):
    """One unit of queued sync work.

    For to_external operations the payload carries the entity id (and a
    snapshot for deletes). For from_external operations it carries the
    already-verified webhook body.
    """

    id: int | None = None
    platform: str
    direction: QueueDirection
    entity_type: str
    action: str
    payload: dict[str, Any] = Field(default_factory=dict)
    attempt: int = 0
    priority: int = PRIORITY_LIVE
    enqueued_at: datetime = Field(default_factory=_utcnow)
    claim_token: str | None = None
    last_error: str | None = None


class DeadLetter(BaseModel):
    """Operation that exhausted its retry budget or failed permanently."""

    id: int
    operation_id: int | None = None
    platform: str
    direction: QueueDirection
    entity_type: str
    action: str
    payload: dict[str, Any] = Field(default_factory=dict)
    attempt: int
    error: str
    enqueued_at: datetime
    dead_lettered_at: datetime


class QueueRunResult(BaseModel):
    """Summary of one time-budgeted queue run."""

    processed: int = 0
    errors: int = 0
    dead_lettered: int = 0
    remaining: int = 0
    elapsed_seconds: float = 0.0


class BulkSyncResult(BaseModel):
    """Summary of a bulk outbound sync request."""

    total: int = 0
    batches: int = 0
    successful: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)


class PullSyncResult(BaseModel):
    """Outcome of a full pull of one entity type from a platform."""

    success: bool
    count: int = 0
    batches: int = 0
    error: str | None = None


# ── Results and events ──────────────────────────────────────────────────────


class SyncResult(BaseModel):
    """Outcome of one inbound or outbound sync.

    error is populated if and only if success is False.
    """

    success: bool
    platform: str
    entity_type: str
    cms_id: str | None = None
    external_id: str | None = None
    action: SyncAction | None = None
    error: str | None = None
    message: str | None = None
    timestamp: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _error_iff_failed(self) -> SyncResult:
        if self.success and self.error is not None:
            raise ValueError("successful SyncResult cannot carry an error")
        if not self.success and not self.error:
            raise ValueError("failed SyncResult requires an error")
        return self

    @classmethod
    def disabled(cls, platform: str, entity_type: str, reason: str = "disabled") -> SyncResult:
        """Result for a sync skipped by configuration gates."""
        return cls(
            success=False,
            platform=platform,
            entity_type=entity_type,
            error=reason,
            message="disabled",
        )


class ChangeEvent(BaseModel):
    """Local entity lifecycle event, stamped with the mutation origin."""

    entity_type: str
    entity_id: str
    action: ChangeAction
    origin: str = LOCAL_ORIGIN
    data: dict[str, Any] = Field(default_factory=dict)


class SyncStats(BaseModel):
    """Running per-entity-type counters."""

    synced: int = 0
    failed: int = 0
    last_sync: datetime | None = None
