"""Inbound webhook endpoints for every configured platform.

POST /webhooks/{platform}/{event_name} takes the event from the path
(``products/create``, ``node.update``); POST /webhooks/{platform} reads it
from the platform's topic header (e.g. X-Shopify-Topic).

Status mapping:
- 401: signature missing or invalid
- 400: unknown event, entity type or undecodable payload
- 404: platform not configured
- 500: unexpected error
- 200: everything else, including config-disabled syncs and identity
  conflicts, with the SyncResult as body

The raw body bytes are read before any JSON decoding so the HMAC is
computed over exactly what the platform signed.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from src.cms_bridge.api.deps import get_coordinator
from src.cms_bridge.core.monitoring import webhooks_received_total
from src.cms_bridge.sync.coordinator import SyncCoordinator
from src.cms_bridge.sync.exceptions import (
    ConflictError,
    InvalidPayloadError,
    InvalidSignatureError,
    UnknownActionError,
    UnsupportedEntityTypeError,
)
from src.cms_bridge.sync.schemas import SyncResult

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{platform}")
async def receive_topic_webhook(
    request: Request,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    """Webhook whose event name travels in the platform's topic header."""
    event_name = request.headers.get(coordinator.config.event_header, "")
    if not event_name:
        _count(coordinator.platform, status.HTTP_400_BAD_REQUEST)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing {coordinator.config.event_header} header",
        )
    return await _handle(coordinator, event_name, request)


@router.post("/{platform}/{event_name:path}")
async def receive_webhook(
    event_name: str,
    request: Request,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    """Webhook whose event name is part of the URL."""
    return await _handle(coordinator, event_name, request)


async def _handle(coordinator: SyncCoordinator, event_name: str, request: Request) -> dict[str, Any]:
    raw_body = await request.body()
    signature = request.headers.get(coordinator.config.signature_header)
    platform = coordinator.platform

    try:
        result = await coordinator.handle_webhook(event_name, raw_body, signature)
    except InvalidSignatureError as exc:
        logger.warning("webhook.invalid_signature", platform=platform, event=event_name)
        _count(platform, status.HTTP_401_UNAUTHORIZED)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    except (UnknownActionError, UnsupportedEntityTypeError, InvalidPayloadError) as exc:
        logger.warning(
            "webhook.rejected",
            platform=platform,
            event=event_name,
            error=str(exc),
        )
        _count(platform, status.HTTP_400_BAD_REQUEST)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ConflictError as exc:
        # A retry from the platform cannot resolve a binding conflict
        result = SyncResult(
            success=False,
            platform=platform,
            entity_type=coordinator.processor.entity_type_for(event_name),
            error=str(exc),
            message="conflict",
        )
    except Exception as exc:
        logger.error(
            "webhook.processing_failed",
            platform=platform,
            event=event_name,
            exc_info=True,
        )
        _count(platform, status.HTTP_500_INTERNAL_SERVER_ERROR)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc

    _count(platform, status.HTTP_200_OK)
    return result.model_dump(mode="json")


def _count(platform: str, status_code: int) -> None:
    webhooks_received_total.labels(platform=platform, status_code=str(status_code)).inc()
