"""
Sync tasks for Celery workers.

Thin wrappers that run the async sync engine inside a Celery task. Job state
lives in the ``sync_jobs`` table, so a task that dies mid-run leaves nothing
behind in Redis that matters: the lease runs out and the job is reclaimed.
"""
from __future__ import annotations

import sys
from pathlib import Path

# Ensure backend directory is in Python path for Celery forked workers
_backend_dir = Path(__file__).resolve().parent.parent.parent
if str(_backend_dir) not in sys.path:
    sys.path.insert(0, str(_backend_dir))

import asyncio
import logging
from typing import Any, Optional

from workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def run_async(coro: Any) -> Any:
    """Run an async function in a sync context (for Celery tasks).

    Creates a fresh event loop and disposes any existing database connections
    to avoid 'Future attached to different loop' errors with asyncpg.
    """
    from models.database import dispose_engine

    # Pooled connections are tied to the previous (closed) event loop
    dispose_engine()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _process_due_jobs(limit: Optional[int]) -> dict[str, int]:
    from services.engine import build_context

    context = build_context()
    return await context.orchestrator.run_once(limit)


async def _reclaim_stale_jobs() -> int:
    from services.engine import build_context

    context = build_context()
    return await context.queue.reclaim_stale()


async def _ensure_recurring_syncs() -> dict[str, int]:
    """Schedule a recurring incremental sync for every active integration lacking one."""
    from services.engine import build_context

    context = build_context()
    integrations = await context.credentials.list_active()
    scheduled = 0
    for integration in integrations:
        if await context.queue.has_open_recurring(integration.id):
            continue
        await context.queue.schedule_recurring(integration.id)
        scheduled += 1
    return {"active_integrations": len(integrations), "scheduled": scheduled}


async def _sync_integration_now(integration_id: str, full: bool) -> dict[str, Any]:
    from models.sync_job import JobType
    from services.engine import build_context

    context = build_context()
    job_type = JobType.FULL_SYNC if full else JobType.INCREMENTAL_SYNC
    job = await context.queue.enqueue(integration_id, job_type)
    claimed = await context.queue.claim(job.id, context.orchestrator.worker_id)
    if claimed is None:
        # Another worker picked it up between enqueue and claim
        return {"job_id": str(job.id), "status": "claimed_elsewhere"}
    status = await context.orchestrator.process_job(claimed)
    return {"job_id": str(job.id), "status": status}


@celery_app.task(bind=True, name="workers.tasks.sync.process_due_jobs")
def process_due_jobs(self: Any, limit: Optional[int] = None) -> dict[str, int]:
    """
    Claim and run due sync jobs.

    Runs every 30 seconds via Beat. Safe to run on any number of workers at
    once: each job is claimed by exactly one of them.

    Returns:
        Counts of reclaimed/processed jobs and their resulting statuses
    """
    logger.info("Task %s: Processing due sync jobs", self.request.id)
    return run_async(_process_due_jobs(limit))


@celery_app.task(bind=True, name="workers.tasks.sync.reclaim_stale_jobs")
def reclaim_stale_jobs(self: Any) -> dict[str, int]:
    reclaimed: int = run_async(_reclaim_stale_jobs())
    if reclaimed:
        logger.warning("Task %s: Reclaimed %d stale job(s)", self.request.id, reclaimed)
    return {"reclaimed": reclaimed}


@celery_app.task(bind=True, name="workers.tasks.sync.ensure_recurring_syncs")
def ensure_recurring_syncs(self: Any) -> dict[str, int]:
    """Seed the recurring incremental sync chain for new integrations."""
    result: dict[str, int] = run_async(_ensure_recurring_syncs())
    logger.info("Task %s: Recurring syncs %s", self.request.id, result)
    return result


@celery_app.task(bind=True, name="workers.tasks.sync.sync_integration_now")
def sync_integration_now(self: Any, integration_id: str, full: bool = False) -> dict[str, Any]:
    """
    Run one sync for an integration immediately instead of waiting for Beat.

    Args:
        integration_id: UUID of the integration
        full: Full sync from scratch instead of incremental

    Returns:
        Dict with the job id and its resulting status
    """
    logger.info("Task %s: Syncing integration %s (full=%s)", self.request.id, integration_id, full)
    return run_async(_sync_integration_now(integration_id, full))
