"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.cms_bridge.api.v1 import entities, health, sync, webhooks

router = APIRouter()

router.include_router(health.router)

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(webhooks.router)
api_router.include_router(sync.router)
api_router.include_router(entities.router)

router.include_router(api_router)
