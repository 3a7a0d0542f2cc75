"""Identity Map: persistent (platform, entity_type, cms_id) <-> external_id bindings.

The map is the only shared mutable state between inbound and outbound sync.
One-to-one uniqueness is enforced by the database (two unique constraints),
so concurrent writers racing on the same binding surface as ConflictError
rather than corrupting the map. Conflicting bindings are rejected: an
existing row is never silently re-pointed.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.cms_bridge.sync.exceptions import ConflictError
from src.cms_bridge.sync.models import SyncMappingModel
from src.cms_bridge.sync.schemas import MappingDirection, SyncMapping

logger = structlog.get_logger(__name__)


class IdentityMap:
    """Async repository for SyncMapping rows.

    Args:
        session_factory: async_sessionmaker producing AsyncSession instances.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def lookup_by_external_id(
        self, platform: str, entity_type: str, external_id: str
    ) -> str | None:
        """Return the cms_id bound to an external id, or None."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncMappingModel.cms_id).where(
                    SyncMappingModel.platform == platform,
                    SyncMappingModel.cms_entity_type == entity_type,
                    SyncMappingModel.external_id == external_id,
                )
            )
            return result.scalar_one_or_none()

    async def lookup_by_cms_id(self, platform: str, entity_type: str, cms_id: str) -> str | None:
        """Return the external_id bound to a CMS id, or None."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncMappingModel.external_id).where(
                    SyncMappingModel.platform == platform,
                    SyncMappingModel.cms_entity_type == entity_type,
                    SyncMappingModel.cms_id == cms_id,
                )
            )
            return result.scalar_one_or_none()

    async def upsert(self, mapping: SyncMapping) -> SyncMapping:
        """Create or refresh a binding.

        Re-upserting the same (cms_id, external_id) pair only refreshes
        last_synced_at and last_sync_direction.

        Raises:
            ConflictError: If either id is already bound to a different
                partner, including when a concurrent insert wins the race.
        """
        async with self._session_factory() as session:
            by_cms = await self._get(
                session,
                SyncMappingModel.cms_id == mapping.cms_id,
                mapping,
            )
            by_external = await self._get(
                session,
                SyncMappingModel.external_id == mapping.external_id,
                mapping,
            )

            if by_cms is not None and by_cms.external_id != mapping.external_id:
                raise self._conflict(mapping, "cms_id", by_cms.external_id)
            if by_external is not None and by_external.cms_id != mapping.cms_id:
                raise self._conflict(mapping, "external_id", by_external.cms_id)

            if by_cms is not None:
                by_cms.last_synced_at = mapping.last_synced_at
                by_cms.last_sync_direction = mapping.last_sync_direction.value
            else:
                session.add(
                    SyncMappingModel(
                        platform=mapping.platform,
                        cms_entity_type=mapping.cms_entity_type,
                        cms_id=mapping.cms_id,
                        external_id=mapping.external_id,
                        last_synced_at=mapping.last_synced_at,
                        last_sync_direction=mapping.last_sync_direction.value,
                    )
                )

            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                logger.warning(
                    "identity_map.concurrent_conflict",
                    platform=mapping.platform,
                    entity_type=mapping.cms_entity_type,
                    cms_id=mapping.cms_id,
                    external_id=mapping.external_id,
                )
                raise ConflictError(
                    f"Concurrent binding for {mapping.platform}/{mapping.cms_entity_type} "
                    f"cms_id={mapping.cms_id} external_id={mapping.external_id}"
                ) from exc

        return mapping

    async def remove(self, platform: str, entity_type: str, cms_id: str) -> bool:
        """Delete a binding. Returns True if a row was removed; idempotent."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(SyncMappingModel).where(
                    SyncMappingModel.platform == platform,
                    SyncMappingModel.cms_entity_type == entity_type,
                    SyncMappingModel.cms_id == cms_id,
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def list_mappings(
        self,
        platform: str,
        entity_type: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[SyncMapping]:
        """List bindings for a platform, most recently synced first."""
        stmt = select(SyncMappingModel).where(SyncMappingModel.platform == platform)
        if entity_type:
            stmt = stmt.where(SyncMappingModel.cms_entity_type == entity_type)
        stmt = stmt.order_by(SyncMappingModel.last_synced_at.desc()).limit(limit).offset(offset)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_model_to_mapping(row) for row in result.scalars().all()]

    async def count(self, platform: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(SyncMappingModel)
                .where(SyncMappingModel.platform == platform)
            )
            return int(result.scalar_one())

    # ── Internals ────────────────────────────────────────────────────────────

    @staticmethod
    async def _get(session: AsyncSession, clause, mapping: SyncMapping) -> SyncMappingModel | None:
        result = await session.execute(
            select(SyncMappingModel).where(
                SyncMappingModel.platform == mapping.platform,
                SyncMappingModel.cms_entity_type == mapping.cms_entity_type,
                clause,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _conflict(mapping: SyncMapping, field: str, bound_to: str) -> ConflictError:
        logger.warning(
            "identity_map.conflict",
            platform=mapping.platform,
            entity_type=mapping.cms_entity_type,
            cms_id=mapping.cms_id,
            external_id=mapping.external_id,
            field=field,
            bound_to=bound_to,
        )
        return ConflictError(
            f"{mapping.platform}/{mapping.cms_entity_type} {field} "
            f"{getattr(mapping, field)} already bound to {bound_to}"
        )


def _model_to_mapping(row: SyncMappingModel) -> SyncMapping:
    last_synced_at = row.last_synced_at
    if last_synced_at.tzinfo is None:
        last_synced_at = last_synced_at.replace(tzinfo=timezone.utc)
    return SyncMapping(
        platform=row.platform,
        cms_entity_type=row.cms_entity_type,
        cms_id=row.cms_id,
        external_id=row.external_id,
        last_synced_at=last_synced_at,
        last_sync_direction=MappingDirection(row.last_sync_direction),
    )


def outbound_mapping(platform: str, entity_type: str, cms_id: str, external_id: str) -> SyncMapping:
    return SyncMapping(
        platform=platform,
        cms_entity_type=entity_type,
        cms_id=cms_id,
        external_id=external_id,
        last_synced_at=datetime.now(timezone.utc),
        last_sync_direction=MappingDirection.OUTBOUND,
    )


def inbound_mapping(platform: str, entity_type: str, cms_id: str, external_id: str) -> SyncMapping:
    return SyncMapping(
        platform=platform,
        cms_entity_type=entity_type,
        cms_id=cms_id,
        external_id=external_id,
        last_synced_at=datetime.now(timezone.utc),
        last_sync_direction=MappingDirection.INBOUND,
    )
