"""Local content endpoints.

CRUD over the entity store. Mutations here carry the ``local`` origin, so
every configured platform with outbound sync enabled receives them.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, ConfigDict

from src.cms_bridge.api.deps import get_entity_store, require_admin_key
from src.cms_bridge.sync.entity_store import EntityNotFoundError, EntityStore

router = APIRouter(
    prefix="/entities",
    tags=["entities"],
    dependencies=[Depends(require_admin_key)],
)


class EntityFields(BaseModel):
    """Entity body: title/body/status plus any extra fields."""

    model_config = ConfigDict(extra="allow")

    title: str | None = None
    body: str | None = None
    status: str | None = None


@router.post("/{entity_type}", status_code=status.HTTP_201_CREATED)
async def create_entity(
    entity_type: str,
    fields: EntityFields,
    store: EntityStore = Depends(get_entity_store),
) -> dict[str, Any]:
    return await store.create(entity_type, fields.model_dump(exclude_unset=True))


@router.get("/{entity_type}")
async def list_entities(
    entity_type: str,
    entity_status: str | None = Query(default=None, alias="status"),
    store: EntityStore = Depends(get_entity_store),
) -> dict[str, Any]:
    filters = {"status": entity_status} if entity_status else None
    return {"entity_type": entity_type, "ids": await store.query(entity_type, filters)}


@router.get("/{entity_type}/{entity_id}")
async def get_entity(
    entity_type: str,
    entity_id: str,
    store: EntityStore = Depends(get_entity_store),
) -> dict[str, Any]:
    entity = await store.load(entity_type, entity_id)
    if entity is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Entity {entity_type}/{entity_id} not found",
        )
    return entity


@router.patch("/{entity_type}/{entity_id}")
async def update_entity(
    entity_type: str,
    entity_id: str,
    fields: EntityFields,
    store: EntityStore = Depends(get_entity_store),
) -> dict[str, Any]:
    try:
        return await store.update(entity_type, entity_id, fields.model_dump(exclude_unset=True))
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.delete("/{entity_type}/{entity_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_entity(
    entity_type: str,
    entity_id: str,
    store: EntityStore = Depends(get_entity_store),
) -> Response:
    if not await store.delete(entity_type, entity_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Entity {entity_type}/{entity_id} not found",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
