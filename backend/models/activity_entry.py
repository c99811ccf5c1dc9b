"""
ActivityEntry model - a user's unified activity log.

Each row is the persisted projection of one canonical record. The unique
index on (user_id, provider, external_id) is what makes ingestion idempotent:
a concurrent second insert of the same item fails the constraint and is
treated as "already exists".
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base, JSONType, utcnow


class ActivityEntry(Base):
    """One ingested item (message, issue, document, meeting) in the activity log."""

    __tablename__ = "activity_entries"
    __table_args__ = (
        Index(
            "uq_activity_entries_user_provider_external",
            "user_id",
            "provider",
            "external_id",
            unique=True,
        ),
        Index("ix_activity_entries_user_occurred", "user_id", "occurred_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    # Provider-qualified id, e.g. "linear_<issue id>"
    external_id: Mapped[str] = mapped_column(String(512), nullable=False)

    type: Mapped[str] = mapped_column(String(20), nullable=False)  # 'slack', 'linear', 'doc', 'meeting'
    content: Mapped[str] = mapped_column(Text, nullable=False)
    original_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    extra_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    tags: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)

    source_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    author: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    channel: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    occurred_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": str(self.id),
            "provider": self.provider,
            "external_id": self.external_id,
            "type": self.type,
            "content": self.content,
            "tags": self.tags or [],
            "source_url": self.source_url,
            "source_name": self.source_name,
            "author": self.author,
            "channel": self.channel,
            "occurred_at": f"{self.occurred_at.isoformat()}Z" if self.occurred_at else None,
        }
