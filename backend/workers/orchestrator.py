"""
Sync orchestrator - runs claimed jobs end to end.

For each job: load the integration, get a fresh token, pick the adapter for
the integration's provider, then either page through the provider
(full/incremental sync) or normalize the captured webhook payload. Every
outcome becomes exactly one queue transition:

- success                  -> completed (+ next occurrence for recurring jobs)
- CredentialsInvalid       -> failed, integration flagged for re-auth
- other SyncError          -> retrying/failed by ``retryable``
- anything else            -> retrying/failed (treated as transient)

Within a sync, pages are handled in order and the stored cursor moves only
after every item of a page has been ingested. A retried full sync picks up
at that cursor instead of page one.
"""
from __future__ import annotations

import logging
import os
import socket
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings, to_iso8601
from connectors.base import BaseAdapter
from connectors.errors import CredentialsInvalid, MalformedResponse, SyncError
from connectors.models import CanonicalRecord, Page
from models.database import utcnow
from models.integration import Integration
from models.sync_job import JobStatus, JobType, SyncJob
from models.webhook_event import WebhookEvent
from services.credentials import CredentialStore
from services.ingestion import IngestionPipeline
from services.job_queue import JobQueue

logger = logging.getLogger(__name__)


class JobAbandoned(SyncError):
    """The job can't run at all (inactive integration, unsupported provider)."""

    retryable = False


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class SyncOrchestrator:
    """Claims due jobs and drives them through adapters and the pipeline."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: JobQueue,
        credentials: CredentialStore,
        adapters: dict[str, BaseAdapter],
        pipeline: IngestionPipeline,
        worker_id: Optional[str] = None,
        batch_size: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory
        self.queue = queue
        self.credentials = credentials
        self.adapters = adapters
        self.pipeline = pipeline
        self.worker_id: str = worker_id or default_worker_id()
        self.batch_size: int = batch_size or settings.SYNC_BATCH_SIZE

    async def run_once(self, limit: Optional[int] = None) -> dict[str, int]:
        """
        One polling pass: reclaim expired leases, claim due jobs, run them.

        Returns:
            Counts of reclaimed jobs and of each resulting status
        """
        summary: dict[str, int] = {
            "reclaimed": await self.queue.reclaim_stale(),
            "processed": 0,
            JobStatus.COMPLETED.value: 0,
            JobStatus.RETRYING.value: 0,
            JobStatus.FAILED.value: 0,
        }
        jobs = await self.queue.claim_due(self.worker_id, limit or self.batch_size)
        for job in jobs:
            status = await self.process_job(job)
            summary["processed"] += 1
            if status in summary:
                summary[status] += 1
        if jobs:
            logger.info("Worker %s processed %d job(s): %s", self.worker_id, len(jobs), summary)
        return summary

    async def process_job(self, job: SyncJob) -> Optional[str]:
        """Run one claimed job and record its outcome. Returns the new status."""
        integration: Optional[Integration] = None
        try:
            integration = await self.credentials.get(job.integration_id)
            if not integration.is_active:
                raise JobAbandoned(f"Integration {integration.id} is not active")
            adapter = self.adapters.get(integration.provider)
            if adapter is None:
                raise JobAbandoned(f"No adapter registered for provider {integration.provider}")

            if job.job_type == JobType.WEBHOOK_EVENT.value:
                await self._process_webhook(job, integration, adapter)
            else:
                await self._run_sync(job, integration, adapter)

        except CredentialsInvalid as exc:
            if integration is not None:
                await self.credentials.mark_needs_reauth(integration.id, str(exc))
            return await self.queue.record_failure(job, self.worker_id, str(exc), retryable=False)
        except SyncError as exc:
            return await self.queue.record_failure(
                job, self.worker_id, str(exc), retryable=exc.retryable
            )
        except Exception as exc:
            logger.error("Unexpected error in job %s", job.id, exc_info=True)
            return await self.queue.record_failure(
                job, self.worker_id, f"{type(exc).__name__}: {exc}", retryable=True
            )

        if not await self.queue.complete(job, self.worker_id):
            return None
        if job.is_recurring:
            await self.queue.schedule_recurring(
                job.integration_id, job.payload.get("interval_minutes")
            )
        if job.webhook_event_id is not None:
            await self._settle_webhook_event(job.webhook_event_id)
        return JobStatus.COMPLETED.value

    # ── Webhook jobs ─────────────────────────────────────────────────────

    async def _process_webhook(
        self,
        job: SyncJob,
        integration: Integration,
        adapter: BaseAdapter,
    ) -> None:
        event_data: Optional[dict[str, Any]] = job.payload.get("event_data")
        if not isinstance(event_data, dict):
            raise JobAbandoned(f"Webhook job {job.id} carries no event data")

        token = await self.credentials.ensure_fresh_token(integration)
        record = await adapter.normalize_webhook(event_data, token)
        if record is None:
            logger.info("Webhook job %s produced no record", job.id)
        else:
            await self.pipeline.ingest(record, integration.user_id)

    async def _settle_webhook_event(self, webhook_event_id: UUID) -> None:
        """Mark the delivery processed once every job fanned out from it has completed."""
        if not await self.queue.webhook_event_settled(webhook_event_id):
            return
        async with self._session_factory() as session:
            await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == webhook_event_id, WebhookEvent.processed.is_(False))
                .values(processed=True, processed_at=utcnow())
            )
            await session.commit()

    # ── Sync jobs ────────────────────────────────────────────────────────

    async def _run_sync(
        self,
        job: SyncJob,
        integration: Integration,
        adapter: BaseAdapter,
    ) -> None:
        sync_started = utcnow()
        cursor: Optional[str] = None
        since: Optional[str] = None
        if job.job_type == JobType.INCREMENTAL_SYNC.value:
            cursor = integration.sync_cursor
            since = to_iso8601(integration.last_sync_at)
        elif job.retry_count > 0 and integration.sync_cursor:
            # Earlier attempts of this full sync saved their progress page by page
            cursor = integration.sync_cursor
            logger.info(
                "Resuming full sync of integration %s (retry %d)",
                integration.id, job.retry_count,
                extra={"job_id": str(job.id), "integration_id": str(integration.id)},
            )
        elif integration.sync_cursor:
            await self._save_cursor(integration.id, None)

        pages = 0
        ingested = 0
        while True:
            token = await self.credentials.ensure_fresh_token(integration)
            page: Page = await adapter.list_page(token, cursor, since)
            pages += 1

            for raw in page.items:
                record = self._normalize(adapter, raw)
                if await self.pipeline.ingest(record, integration.user_id):
                    ingested += 1

            # Page fully ingested; safe to advance
            await self._save_cursor(integration.id, page.next_cursor)

            if not page.has_more:
                break
            if not page.next_cursor or page.next_cursor == cursor:
                raise MalformedResponse(
                    f"{adapter.provider} reported more pages without a new cursor",
                    adapter.provider,
                )
            if not await self.queue.extend_lease(job, self.worker_id):
                raise JobAbandoned(f"Job {job.id} lost its lease after {pages} page(s)")
            cursor = page.next_cursor

        values: dict[str, Any] = {"last_sync_at": sync_started, "last_error": None}
        if not adapter.resumable_cursor:
            values["sync_cursor"] = None
        await self._update_integration(integration.id, values)

        logger.info(
            "Synced %s for integration %s: %d page(s), %d new item(s)",
            adapter.provider, integration.id, pages, ingested,
            extra={"job_id": str(job.id), "integration_id": str(integration.id)},
        )

    def _normalize(self, adapter: BaseAdapter, raw: dict[str, Any]) -> CanonicalRecord:
        try:
            return adapter.normalize(raw)
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedResponse(
                f"{adapter.provider} item could not be normalized: {exc}", adapter.provider
            ) from exc

    async def _save_cursor(self, integration_id: UUID, cursor: Optional[str]) -> None:
        await self._update_integration(integration_id, {"sync_cursor": cursor})

    async def _update_integration(self, integration_id: UUID, values: dict[str, Any]) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(Integration)
                .where(Integration.id == integration_id)
                .values(**values, updated_at=utcnow())
            )
            await session.commit()
