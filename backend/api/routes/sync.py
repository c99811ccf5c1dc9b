"""
Sync trigger endpoints.

Endpoints:
- POST /api/sync - Queue a sync job for one of the caller's integrations
- GET /api/sync/jobs - Recent jobs for an integration
- POST /api/sync/process-jobs - Run one worker pass inline (cron hook)
"""
from __future__ import annotations

import logging
from typing import Any, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from api.auth_middleware import AuthContext, get_current_auth, require_cron_secret
from api.context import get_sync_context
from connectors.errors import IntegrationNotFound
from models.integration import Integration
from models.sync_job import JobType
from services.engine import SyncContext

router = APIRouter()
logger = logging.getLogger(__name__)


class SyncTriggerRequest(BaseModel):
    """Request model for queueing a sync."""

    integration_id: UUID
    sync_type: Literal["full", "incremental"] = "incremental"


class SyncTriggerResponse(BaseModel):
    """Response model for sync trigger."""

    job_id: str
    status: str
    job_type: str


class SyncJobsResponse(BaseModel):
    """Response model for the recent jobs list."""

    integration_id: str
    jobs: list[dict[str, Any]]


async def _owned_integration(
    context: SyncContext, integration_id: UUID, auth: AuthContext
) -> Integration:
    try:
        integration = await context.credentials.get(integration_id)
    except IntegrationNotFound:
        raise HTTPException(status_code=404, detail="Integration not found")
    # Don't reveal other users' integrations
    if integration.user_id != auth.user_id:
        raise HTTPException(status_code=404, detail="Integration not found")
    return integration


@router.post("", response_model=SyncTriggerResponse)
async def trigger_sync(
    request: SyncTriggerRequest,
    auth: AuthContext = Depends(get_current_auth),
    context: SyncContext = Depends(get_sync_context),
) -> SyncTriggerResponse:
    """Queue a full or incremental sync; a worker picks it up on its next pass."""
    integration = await _owned_integration(context, request.integration_id, auth)
    if not integration.is_active:
        raise HTTPException(status_code=400, detail="Integration is disconnected")
    if integration.needs_reauth:
        raise HTTPException(status_code=409, detail="Integration needs to be reconnected")

    job_type = JobType.FULL_SYNC if request.sync_type == "full" else JobType.INCREMENTAL_SYNC
    job = await context.queue.enqueue(integration.id, job_type)
    return SyncTriggerResponse(job_id=str(job.id), status=job.status, job_type=job.job_type)


@router.get("/jobs", response_model=SyncJobsResponse)
async def list_sync_jobs(
    integration_id: UUID,
    limit: Optional[int] = 10,
    auth: AuthContext = Depends(get_current_auth),
    context: SyncContext = Depends(get_sync_context),
) -> SyncJobsResponse:
    integration = await _owned_integration(context, integration_id, auth)
    jobs = await context.queue.list_for_integration(integration.id, limit=min(limit or 10, 50))
    return SyncJobsResponse(
        integration_id=str(integration.id),
        jobs=[job.to_dict() for job in jobs],
    )


@router.post("/process-jobs", dependencies=[Depends(require_cron_secret)])
async def process_jobs(
    limit: Optional[int] = None,
    context: SyncContext = Depends(get_sync_context),
) -> dict[str, int]:
    """Run one orchestrator pass (reclaim + claim + process) in the request."""
    summary = await context.orchestrator.run_once(limit)
    logger.info("Inline job pass: %s", summary)
    return summary
