"""Local entity store interface and its SQL implementation.

Entities are flat dicts: ``id``, ``entity_type``, ``title``, ``body``,
``status`` plus any extra fields. Every committed mutation is published as
a ChangeEvent stamped with the current mutation origin (see guard.py) to
the subscribed listeners, which is how local lifecycle changes reach the
outbound side of sync.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.cms_bridge.sync.guard import get_current_origin
from src.cms_bridge.sync.models import CmsEntityModel
from src.cms_bridge.sync.schemas import ChangeAction, ChangeEvent

logger = structlog.get_logger(__name__)

ChangeListener = Callable[[ChangeEvent], Awaitable[None]]

_COLUMNS = ("title", "body", "status")
_RESERVED = ("id", "entity_type", "created_at", "updated_at")


class EntityNotFoundError(LookupError):
    """Entity does not exist in the local store."""


class EntityStore(ABC):
    """Local CMS content store.

    Methods:
        load: Fetch one entity or None.
        create: Insert an entity and return it.
        update: Merge fields into an existing entity and return it.
        delete: Remove an entity; True if it existed.
        query: Ids of entities of a type matching an equality filter.
        subscribe: Register a coroutine called with every ChangeEvent.
    """

    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []

    def subscribe(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    async def _emit(
        self,
        entity_type: str,
        entity_id: str,
        action: ChangeAction,
        data: dict[str, Any],
    ) -> None:
        event = ChangeEvent(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            origin=get_current_origin(),
            data=data,
        )
        for listener in self._listeners:
            try:
                await listener(event)
            except Exception:
                # The mutation is already committed; one failing listener
                # must not hide the event from the others.
                logger.error(
                    "entity_store.listener_failed",
                    entity_type=entity_type,
                    entity_id=entity_id,
                    action=action.value,
                    exc_info=True,
                )

    @abstractmethod
    async def load(self, entity_type: str, entity_id: str) -> dict[str, Any] | None: ...

    @abstractmethod
    async def create(self, entity_type: str, fields: dict[str, Any]) -> dict[str, Any]: ...

    @abstractmethod
    async def update(
        self, entity_type: str, entity_id: str, fields: dict[str, Any]
    ) -> dict[str, Any]: ...

    @abstractmethod
    async def delete(self, entity_type: str, entity_id: str) -> bool: ...

    @abstractmethod
    async def query(
        self, entity_type: str, filters: dict[str, Any] | None = None
    ) -> list[str]: ...


class SqlEntityStore(EntityStore):
    """EntityStore backed by the cms_entities table.

    Args:
        session_factory: async_sessionmaker producing AsyncSession instances.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        super().__init__()
        self._session_factory = session_factory

    async def load(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        async with self._session_factory() as session:
            row = await self._get(session, entity_type, entity_id)
            return _model_to_entity(row) if row is not None else None

    async def create(self, entity_type: str, fields: dict[str, Any]) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        extra = {k: v for k, v in fields.items() if k not in _COLUMNS and k not in _RESERVED}
        row = CmsEntityModel(
            id=str(fields.get("id") or uuid.uuid4()),
            entity_type=entity_type,
            title=fields.get("title"),
            body=fields.get("body"),
            status=fields.get("status") or "draft",
            data=extra,
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
            entity = _model_to_entity(row)

        logger.info(
            "entity_store.created",
            entity_type=entity_type,
            entity_id=entity["id"],
            origin=get_current_origin(),
        )
        await self._emit(entity_type, entity["id"], ChangeAction.CREATE, entity)
        return entity

    async def update(
        self, entity_type: str, entity_id: str, fields: dict[str, Any]
    ) -> dict[str, Any]:
        """Merge ``fields`` into the entity field by field.

        Raises:
            EntityNotFoundError: If the entity does not exist.
        """
        async with self._session_factory() as session:
            row = await self._get(session, entity_type, entity_id)
            if row is None:
                raise EntityNotFoundError(f"{entity_type}/{entity_id} not found")

            for column in _COLUMNS:
                if column in fields:
                    setattr(row, column, fields[column])
            extra = {k: v for k, v in fields.items() if k not in _COLUMNS and k not in _RESERVED}
            if extra:
                row.data = {**(row.data or {}), **extra}
            row.updated_at = datetime.now(timezone.utc)

            await session.commit()
            entity = _model_to_entity(row)

        logger.info(
            "entity_store.updated",
            entity_type=entity_type,
            entity_id=entity_id,
            origin=get_current_origin(),
        )
        await self._emit(entity_type, entity_id, ChangeAction.UPDATE, entity)
        return entity

    async def delete(self, entity_type: str, entity_id: str) -> bool:
        async with self._session_factory() as session:
            row = await self._get(session, entity_type, entity_id)
            if row is None:
                return False
            snapshot = _model_to_entity(row)
            await session.delete(row)
            await session.commit()

        logger.info(
            "entity_store.deleted",
            entity_type=entity_type,
            entity_id=entity_id,
            origin=get_current_origin(),
        )
        await self._emit(entity_type, entity_id, ChangeAction.DELETE, snapshot)
        return True

    async def query(self, entity_type: str, filters: dict[str, Any] | None = None) -> list[str]:
        """Ids of matching entities in creation order.

        Column filters (title, body, status) run in SQL; other keys are
        matched against the JSON data document.
        """
        filters = filters or {}
        stmt = select(CmsEntityModel).where(CmsEntityModel.entity_type == entity_type)
        for column in _COLUMNS:
            if column in filters:
                stmt = stmt.where(getattr(CmsEntityModel, column) == filters[column])
        stmt = stmt.order_by(CmsEntityModel.created_at, CmsEntityModel.id)

        data_filters = {k: v for k, v in filters.items() if k not in _COLUMNS}
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()

        return [
            row.id
            for row in rows
            if all((row.data or {}).get(k) == v for k, v in data_filters.items())
        ]

    @staticmethod
    async def _get(
        session: AsyncSession, entity_type: str, entity_id: str
    ) -> CmsEntityModel | None:
        result = await session.execute(
            select(CmsEntityModel).where(
                CmsEntityModel.id == entity_id,
                CmsEntityModel.entity_type == entity_type,
            )
        )
        return result.scalar_one_or_none()


def _model_to_entity(row: CmsEntityModel) -> dict[str, Any]:
    entity: dict[str, Any] = dict(row.data or {})
    entity.update(
        {
            "id": row.id,
            "entity_type": row.entity_type,
            "title": row.title,
            "body": row.body,
            "status": row.status,
            "created_at": row.created_at.isoformat() if row.created_at else None,
            "updated_at": row.updated_at.isoformat() if row.updated_at else None,
        }
    )
    return entity
