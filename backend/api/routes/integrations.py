"""
Integration connection endpoints.

Endpoints:
- POST /api/integrations/authorize - Start an OAuth flow
- GET /api/integrations/{provider}/callback - OAuth redirect target
- GET /api/integrations - List the caller's integrations
- DELETE /api/integrations/{integration_id} - Disconnect an integration
"""
from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import urlencode
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from api.auth_middleware import AuthContext, get_current_auth
from api.context import get_sync_context
from config import WEBHOOK_SECRETS, settings
from connectors.errors import IntegrationNotFound, SyncError
from connectors.google_drive import GoogleDriveAdapter
from connectors.registry import Provider, parse_provider
from models.sync_job import JobType
from services.engine import SyncContext
from services.oauth import decode_state, encode_state
from services.webhook_ingestion import new_drive_channel

router = APIRouter()
logger = logging.getLogger(__name__)


class AuthorizeRequest(BaseModel):
    """Request model for starting an OAuth flow."""

    provider: str


class AuthorizeResponse(BaseModel):
    """Response model with the provider consent URL."""

    auth_url: str
    state: str


class IntegrationResponse(BaseModel):
    """One integration as shown to its owner."""

    id: str
    provider: str
    team_id: Optional[str]
    team_name: Optional[str]
    user_email: Optional[str]
    status: str
    last_sync_at: Optional[str]
    last_error: Optional[str]


class IntegrationsListResponse(BaseModel):
    """Response model for the integrations list."""

    integrations: list[IntegrationResponse]


def _redirect(**params: str) -> RedirectResponse:
    return RedirectResponse(url=f"{settings.APP_URL}/integrations?{urlencode(params)}", status_code=302)


@router.post("/authorize", response_model=AuthorizeResponse)
async def authorize(
    request: AuthorizeRequest,
    auth: AuthContext = Depends(get_current_auth),
    context: SyncContext = Depends(get_sync_context),
) -> AuthorizeResponse:
    """Return the provider consent URL for the authenticated user."""
    try:
        provider = parse_provider(request.provider).value
        state = encode_state(auth.user_id_str, provider)
        auth_url = context.oauth.build_authorize_url(provider, state)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return AuthorizeResponse(auth_url=auth_url, state=state)


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    context: SyncContext = Depends(get_sync_context),
) -> RedirectResponse:
    """
    Finish an OAuth flow.

    Exchanges the code, stores the integration, queues an initial full sync
    and the recurring incremental sync, then sends the browser back to the app.
    """
    if error:
        logger.info("OAuth for %s declined: %s", provider, error)
        return _redirect(error=error, provider=provider)
    if not code or not state:
        return _redirect(error="missing_code", provider=provider)

    try:
        user_id, state_provider = decode_state(state)
    except ValueError:
        return _redirect(error="invalid_state", provider=provider)
    if state_provider != provider:
        return _redirect(error="invalid_state", provider=provider)

    try:
        token_response = await context.oauth.exchange_code(provider, code)
        account_info = await context.oauth.fetch_account_info(provider, token_response)
    except SyncError as e:
        logger.warning("OAuth exchange failed for %s: %s", provider, e)
        return _redirect(error="exchange_failed", provider=provider)

    integration_id = await context.credentials.save(user_id, provider, token_response, account_info)
    await context.queue.enqueue(integration_id, JobType.FULL_SYNC)
    if not await context.queue.has_open_recurring(integration_id):
        await context.queue.schedule_recurring(integration_id)

    if provider == Provider.GOOGLE_DRIVE.value:
        await _watch_drive(context, integration_id, token_response["access_token"])

    return _redirect(connected=provider)


async def _watch_drive(context: SyncContext, integration_id: UUID, token: str) -> None:
    """Register a Drive push channel; polling still covers the integration if this fails."""
    if not WEBHOOK_SECRETS.get("google_drive"):
        return
    adapter = context.adapters.get(Provider.GOOGLE_DRIVE.value)
    if not isinstance(adapter, GoogleDriveAdapter):
        return

    channel_id, channel_token = new_drive_channel(integration_id)
    address = f"{settings.APP_URL}/api/webhooks/{Provider.GOOGLE_DRIVE.value}"
    try:
        channel = await adapter.setup_watch(token, channel_id, address, channel_token)
    except SyncError as e:
        logger.warning("Drive watch setup failed for integration %s: %s", integration_id, e)
        return
    await context.credentials.update_config(
        integration_id,
        {
            "watch_channel_id": channel_id,
            "watch_resource_id": channel.get("resourceId"),
            "watch_expiration": channel.get("expiration"),
        },
    )


@router.get("", response_model=IntegrationsListResponse)
async def list_integrations(
    auth: AuthContext = Depends(get_current_auth),
    context: SyncContext = Depends(get_sync_context),
) -> IntegrationsListResponse:
    integrations = await context.credentials.list_for_user(auth.user_id)
    rows: list[dict[str, Any]] = [i.to_dict() for i in integrations]
    return IntegrationsListResponse(
        integrations=[
            IntegrationResponse(
                id=row["id"],
                provider=row["provider"],
                team_id=row.get("team_id"),
                team_name=row.get("team_name"),
                user_email=row.get("user_email"),
                status=row["status"],
                last_sync_at=row.get("last_sync_at"),
                last_error=row.get("last_error"),
            )
            for row in rows
        ]
    )


@router.delete("/{integration_id}")
async def disconnect_integration(
    integration_id: UUID,
    auth: AuthContext = Depends(get_current_auth),
    context: SyncContext = Depends(get_sync_context),
) -> dict[str, str]:
    try:
        integration = await context.credentials.get(integration_id)
    except IntegrationNotFound:
        raise HTTPException(status_code=404, detail="Integration not found")
    if integration.user_id != auth.user_id:
        raise HTTPException(status_code=404, detail="Integration not found")

    await context.credentials.deactivate(integration_id)
    return {"status": "disconnected", "integration_id": str(integration_id)}
