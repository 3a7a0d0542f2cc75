"""Sync engine persistence models.

Four SQLAlchemy models on the shared Base:
- SyncMappingModel: Identity Map rows, unique in both directions per
  (platform, cms_entity_type)
- SyncOperationModel: Durable queue items with claim bookkeeping
- DeadLetterModel: Operations that exhausted retries or failed permanently
- CmsEntityModel: Local content entities backing SqlEntityStore
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.cms_bridge.core.database import Base


class SyncMappingModel(Base):
    """Binding between a CMS entity and its external platform counterpart.

    The two unique constraints make the binding one-to-one: a CMS id maps
    to at most one external id on a platform and vice versa.
    """

    __tablename__ = "sync_mappings"
    __table_args__ = (
        UniqueConstraint(
            "platform",
            "cms_entity_type",
            "cms_id",
            name="uq_sync_mapping_cms",
        ),
        UniqueConstraint(
            "platform",
            "cms_entity_type",
            "external_id",
            name="uq_sync_mapping_external",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    platform: Mapped[str] = mapped_column(String(50), nullable=False)
    cms_entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    cms_id: Mapped[str] = mapped_column(String(255), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_sync_direction: Mapped[str] = mapped_column(String(20), nullable=False)


class SyncOperationModel(Base):
    """Queued sync operation.

    Autoincrement id doubles as the FIFO tie-breaker within a priority.
    A claimed row is invisible to other runners until acked (deleted),
    released back to pending, or reclaimed after the claim timeout.
    """

    __tablename__ = "sync_operations"
    __table_args__ = (
        Index("ix_sync_operations_claimable", "platform", "status", "priority", "id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    platform: Mapped[str] = mapped_column(String(50), nullable=False)
    direction: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    claim_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    enqueued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)


class DeadLetterModel(Base):
    """Terminal record of a failed operation, kept for operator replay."""

    __tablename__ = "sync_dead_letters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    operation_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    platform: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    direction: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    error: Mapped[str] = mapped_column(Text, nullable=False)
    enqueued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    dead_lettered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CmsEntityModel(Base):
    """Local CMS content entity.

    title/body/status are first-class columns because every transformer
    reads them; everything else lives in the data JSON document.
    """

    __tablename__ = "cms_entities"
    __table_args__ = (Index("ix_cms_entities_type_status", "entity_type", "status"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(50), default="draft", nullable=False)
    data: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
