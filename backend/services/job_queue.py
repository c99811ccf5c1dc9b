"""
Durable job queue on the ``sync_jobs`` table.

Every state change is a single conditional UPDATE:
- claim: only if the row is still pending/retrying and due
- complete / fail / retry: only if the row is still processing and owned by
  the caller's worker id

so concurrent workers never both own a job, and a worker whose lease was
reclaimed can't overwrite the new owner's state.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional, Union
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from models.database import utcnow
from models.sync_job import CLAIMABLE_STATUSES, JobStatus, JobType, SyncJob

logger = logging.getLogger(__name__)

LEASE_EXPIRED_MESSAGE = "lease expired"


def backoff_delay(retry_count: int, cap_minutes: int) -> timedelta:
    """Delay before retry number ``retry_count``: 2^n minutes, capped."""
    return timedelta(minutes=min(2 ** retry_count, cap_minutes))


class JobQueue:
    """Enqueue, claim and transition sync jobs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_retries: Optional[int] = None,
        backoff_cap_minutes: Optional[int] = None,
        lease_seconds: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory
        self.max_retries: int = max_retries if max_retries is not None else settings.SYNC_MAX_RETRIES
        self.backoff_cap_minutes: int = backoff_cap_minutes or settings.SYNC_BACKOFF_CAP_MINUTES
        self.lease = timedelta(seconds=lease_seconds or settings.SYNC_LEASE_SECONDS)

    # ── Creation ─────────────────────────────────────────────────────────

    async def enqueue(
        self,
        integration_id: Union[str, UUID],
        job_type: Union[JobType, str],
        payload: Optional[dict[str, Any]] = None,
        scheduled_at: Optional[datetime] = None,
        max_retries: Optional[int] = None,
        webhook_event_id: Optional[UUID] = None,
        session: Optional[AsyncSession] = None,
    ) -> SyncJob:
        """
        Create a pending job.

        With ``session`` the job is only flushed into the caller's
        transaction, so it commits (or rolls back) together with whatever
        else the caller wrote.
        """
        job_type_value = JobType(job_type).value
        job = SyncJob(
            integration_id=UUID(str(integration_id)),
            job_type=job_type_value,
            status=JobStatus.PENDING.value,
            payload=payload or {},
            retry_count=0,
            max_retries=max_retries if max_retries is not None else self.max_retries,
            scheduled_at=scheduled_at or utcnow(),
            webhook_event_id=webhook_event_id,
        )
        if session is not None:
            session.add(job)
            await session.flush()
        else:
            async with self._session_factory() as own_session:
                own_session.add(job)
                await own_session.commit()

        logger.info(
            "Enqueued %s job %s for integration %s",
            job_type_value, job.id, integration_id,
            extra={"job_id": str(job.id), "integration_id": str(integration_id)},
        )
        return job

    async def schedule_recurring(
        self,
        integration_id: Union[str, UUID],
        interval_minutes: Optional[int] = None,
    ) -> SyncJob:
        """Enqueue the next recurring incremental sync at now + interval."""
        interval = interval_minutes or settings.SYNC_INTERVAL_MINUTES
        return await self.enqueue(
            integration_id,
            JobType.INCREMENTAL_SYNC,
            payload={"recurring": True, "interval_minutes": interval},
            scheduled_at=utcnow() + timedelta(minutes=interval),
        )

    # ── Claiming ─────────────────────────────────────────────────────────

    async def claim(self, job_id: Union[str, UUID], worker_id: str) -> Optional[SyncJob]:
        """
        Atomically move a due job to ``processing`` for ``worker_id``.

        Returns:
            The claimed job, or None if another worker got it first or it
            isn't due
        """
        now = utcnow()
        job_uuid = UUID(str(job_id))
        async with self._session_factory() as session:
            result = await session.execute(
                update(SyncJob)
                .where(
                    SyncJob.id == job_uuid,
                    SyncJob.status.in_(CLAIMABLE_STATUSES),
                    SyncJob.scheduled_at <= now,
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    started_at=now,
                    claimed_by=worker_id,
                    lease_expires_at=now + self.lease,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount != 1:
                return None
            job = await session.get(SyncJob, job_uuid, populate_existing=True)

        logger.info(
            "Worker %s claimed job %s",
            worker_id, job_uuid,
            extra={"job_id": str(job_uuid), "worker_id": worker_id},
        )
        return job

    async def claim_due(self, worker_id: str, limit: int = 5) -> list[SyncJob]:
        """Claim up to ``limit`` due jobs, oldest schedule first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncJob.id)
                .where(
                    SyncJob.status.in_(CLAIMABLE_STATUSES),
                    SyncJob.scheduled_at <= utcnow(),
                )
                .order_by(SyncJob.scheduled_at)
                .limit(limit * 2)
            )
            candidates: list[UUID] = list(result.scalars().all())

        claimed: list[SyncJob] = []
        for job_id in candidates:
            if len(claimed) >= limit:
                break
            job = await self.claim(job_id, worker_id)
            if job is not None:
                claimed.append(job)
        return claimed

    # ── Transitions ──────────────────────────────────────────────────────

    async def complete(self, job: SyncJob, worker_id: str) -> bool:
        now = utcnow()
        values: dict[str, Any] = {
            "status": JobStatus.COMPLETED.value,
            "completed_at": now,
            "error_message": None,
            "claimed_by": None,
            "lease_expires_at": None,
            "updated_at": now,
        }
        if not await self._update_owned(job.id, worker_id, values):
            logger.warning("Job %s no longer owned by %s; completion dropped", job.id, worker_id)
            return False
        _apply(job, values)
        logger.info("Job %s completed", job.id, extra={"job_id": str(job.id)})
        return True

    async def record_failure(
        self,
        job: SyncJob,
        worker_id: str,
        error: str,
        retryable: bool = True,
    ) -> Optional[str]:
        """
        Move a processing job to ``retrying`` or ``failed``.

        ``retry_count`` goes up by one; the job fails once it reaches
        ``max_retries`` or when the error is not retryable.

        Returns:
            The new status, or None if the job is no longer ours
        """
        values = self._failure_values(job, error, retryable)
        if not await self._update_owned(job.id, worker_id, values):
            logger.warning("Job %s no longer owned by %s; failure dropped", job.id, worker_id)
            return None
        _apply(job, values)
        self._log_failure(job, error)
        return job.status

    async def extend_lease(self, job: SyncJob, worker_id: str) -> bool:
        """
        Renew the lease of a job that is still being worked on.

        Returns:
            False when the job was reclaimed or is no longer ours
        """
        now = utcnow()
        values: dict[str, Any] = {"lease_expires_at": now + self.lease, "updated_at": now}
        if not await self._update_owned(job.id, worker_id, values):
            return False
        _apply(job, values)
        return True

    async def reclaim_stale(self) -> int:
        """
        Treat ``processing`` jobs whose lease has run out as failed attempts.

        Returns:
            Number of jobs reclaimed
        """
        now = utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncJob).where(
                    SyncJob.status == JobStatus.PROCESSING.value,
                    SyncJob.lease_expires_at.is_not(None),
                    SyncJob.lease_expires_at < now,
                )
            )
            stale: list[SyncJob] = list(result.scalars().all())

        reclaimed = 0
        for job in stale:
            values = self._failure_values(job, LEASE_EXPIRED_MESSAGE, retryable=True)
            async with self._session_factory() as session:
                result = await session.execute(
                    update(SyncJob)
                    .where(
                        SyncJob.id == job.id,
                        SyncJob.status == JobStatus.PROCESSING.value,
                        SyncJob.claimed_by == job.claimed_by,
                        SyncJob.lease_expires_at == job.lease_expires_at,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
            if result.rowcount == 1:
                reclaimed += 1
                logger.warning(
                    "Reclaimed job %s from %s after lease expiry",
                    job.id, job.claimed_by,
                    extra={"job_id": str(job.id), "worker_id": job.claimed_by},
                )
        return reclaimed

    # ── Queries ──────────────────────────────────────────────────────────

    async def get(self, job_id: Union[str, UUID]) -> Optional[SyncJob]:
        async with self._session_factory() as session:
            return await session.get(SyncJob, UUID(str(job_id)))

    async def has_open_recurring(self, integration_id: Union[str, UUID]) -> bool:
        """Whether a not-yet-finished recurring job exists for the integration."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncJob).where(
                    SyncJob.integration_id == UUID(str(integration_id)),
                    SyncJob.status.in_(
                        (*CLAIMABLE_STATUSES, JobStatus.PROCESSING.value)
                    ),
                )
            )
            return any(job.is_recurring for job in result.scalars().all())

    async def webhook_event_settled(self, webhook_event_id: Union[str, UUID]) -> bool:
        """Whether every job fanned out from a delivery has completed."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncJob.id).where(
                    SyncJob.webhook_event_id == UUID(str(webhook_event_id)),
                    SyncJob.status != JobStatus.COMPLETED.value,
                ).limit(1)
            )
            return result.first() is None

    async def list_for_integration(
        self,
        integration_id: Union[str, UUID],
        limit: int = 10,
    ) -> list[SyncJob]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncJob)
                .where(SyncJob.integration_id == UUID(str(integration_id)))
                .order_by(SyncJob.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # ── Helpers ──────────────────────────────────────────────────────────

    def _failure_values(self, job: SyncJob, error: str, retryable: bool) -> dict[str, Any]:
        now = utcnow()
        retry_count = min(job.retry_count + 1, job.max_retries)
        values: dict[str, Any] = {
            "retry_count": retry_count,
            "error_message": error[:2000],
            "claimed_by": None,
            "lease_expires_at": None,
            "updated_at": now,
        }
        if not retryable or retry_count >= job.max_retries:
            values["status"] = JobStatus.FAILED.value
            values["completed_at"] = now
        else:
            values["status"] = JobStatus.RETRYING.value
            values["scheduled_at"] = now + backoff_delay(retry_count, self.backoff_cap_minutes)
        return values

    async def _update_owned(self, job_id: UUID, worker_id: str, values: dict[str, Any]) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(SyncJob)
                .where(
                    SyncJob.id == job_id,
                    SyncJob.status == JobStatus.PROCESSING.value,
                    SyncJob.claimed_by == worker_id,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    def _log_failure(self, job: SyncJob, error: str) -> None:
        if job.status == JobStatus.FAILED.value:
            logger.warning(
                "Job %s failed after %d attempt(s): %s",
                job.id, job.retry_count, error,
                extra={"job_id": str(job.id), "integration_id": str(job.integration_id)},
            )
        else:
            logger.info(
                "Job %s retrying at %s (retry %d/%d): %s",
                job.id, job.scheduled_at, job.retry_count, job.max_retries, error,
                extra={"job_id": str(job.id), "integration_id": str(job.integration_id)},
            )


def _apply(job: SyncJob, values: dict[str, Any]) -> None:
    for key, value in values.items():
        setattr(job, key, value)
