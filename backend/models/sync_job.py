"""
SyncJob model - the durable job queue.

Status transitions:
    pending | retrying --(claim)--> processing --> completed
                                               --> retrying (retry_count < max_retries)
                                               --> failed
``completed`` and ``failed`` are terminal.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base, JSONType, utcnow


class JobType(str, Enum):
    FULL_SYNC = "full_sync"
    INCREMENTAL_SYNC = "incremental_sync"
    WEBHOOK_EVENT = "webhook_event"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


CLAIMABLE_STATUSES: tuple[str, ...] = (JobStatus.PENDING.value, JobStatus.RETRYING.value)
TERMINAL_STATUSES: tuple[str, ...] = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


class SyncJob(Base):
    """One unit of scheduled synchronization work."""

    __tablename__ = "sync_jobs"
    __table_args__ = (
        Index("ix_sync_jobs_status_scheduled", "status", "scheduled_at"),
        Index("ix_sync_jobs_integration", "integration_id"),
        Index("ix_sync_jobs_webhook_event", "webhook_event_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    integration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("integrations.id"), nullable=False
    )
    job_type: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.PENDING.value
    )

    # Embedded webhook body, recurrence parameters, manual trigger info
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Set on webhook_event jobs; the delivery they were fanned out from
    webhook_event_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("webhook_events.id"), nullable=True
    )

    # Claim lease: the worker that owns a processing row and until when
    claimed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=True
    )

    @property
    def is_recurring(self) -> bool:
        return bool((self.payload or {}).get("recurring"))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": str(self.id),
            "integration_id": str(self.integration_id),
            "job_type": self.job_type,
            "status": self.status,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "scheduled_at": f"{self.scheduled_at.isoformat()}Z" if self.scheduled_at else None,
            "started_at": f"{self.started_at.isoformat()}Z" if self.started_at else None,
            "completed_at": f"{self.completed_at.isoformat()}Z" if self.completed_at else None,
        }
