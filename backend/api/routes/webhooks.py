"""
Inbound provider webhooks.

Endpoint:
- POST /api/webhooks/{provider} - Slack, Linear, Fireflies, Google Drive

Security:
- Every request is authenticated against the raw body before anything is
  parsed or stored (services/webhook_verification.py)
- Payloads outside the replay window are rejected
- Redeliveries are recognized by (provider, delivery id) and acknowledged
  without being processed again
"""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request

from api.context import get_sync_context
from connectors.errors import ReplayTooOld, SignatureInvalid
from connectors.registry import parse_provider
from services.engine import SyncContext

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    context: SyncContext = Depends(get_sync_context),
) -> dict[str, Any]:
    """
    Authenticate, record and queue one webhook delivery.

    Returns ``{ok, processed, message}``; Slack URL verification handshakes
    get ``{challenge}`` back instead.
    """
    try:
        provider = parse_provider(provider).value
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")

    body: bytes = await request.body()
    try:
        result = await context.webhooks.handle(provider, request.headers, body)
    except (SignatureInvalid, ReplayTooOld) as e:
        logger.warning("Rejected %s webhook: %s", provider, e)
        raise HTTPException(status_code=401, detail=str(e))

    if "challenge" in result:
        return result

    result.setdefault("message", "queued for processing")
    return result
