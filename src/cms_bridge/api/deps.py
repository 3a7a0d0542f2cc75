"""FastAPI dependency injection for sync components and operator authentication.

Coordinators and the entity store are created in the application lifespan
and stored on app.state; these dependencies fetch them per request.
"""

from __future__ import annotations

import hmac

from fastapi import Depends, Header, HTTPException, Request, status

from src.cms_bridge.config import get_settings
from src.cms_bridge.sync.coordinator import CoordinatorRegistry, SyncCoordinator
from src.cms_bridge.sync.entity_store import EntityStore


def get_coordinators(request: Request) -> CoordinatorRegistry:
    """Retrieve the CoordinatorRegistry from app.state, 503 if not available."""
    coordinators = getattr(request.app.state, "coordinators", None)
    if coordinators is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine not initialized",
        )
    return coordinators


def get_coordinator(
    platform: str,
    coordinators: CoordinatorRegistry = Depends(get_coordinators),
) -> SyncCoordinator:
    """Resolve the coordinator for the ``platform`` path parameter, 404 if unknown."""
    if platform not in coordinators:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Platform not configured: {platform}",
        )
    return coordinators.get(platform)


def get_entity_store(request: Request) -> EntityStore:
    """Retrieve the EntityStore from app.state, 503 if not available."""
    store = getattr(request.app.state, "entity_store", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Entity store not initialized",
        )
    return store


async def require_admin_key(x_api_key: str | None = Header(default=None)) -> None:
    """Check X-API-Key against ADMIN_API_KEY. No-op when no key is configured.

    Raises:
        HTTPException(401): If a key is configured and the header is missing or wrong.
    """
    expected = get_settings().ADMIN_API_KEY
    if not expected:
        return
    if not x_api_key or not hmac.compare_digest(x_api_key.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
