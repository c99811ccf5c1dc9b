"""
Integration model for tracking connected provider accounts.

One row per (user, provider, external team). Token fields are written only by
the credential store (services/credentials.py); sync bookkeeping
(last_sync_at, sync_cursor) only by the sync orchestrator.

Rows are never hard-deleted while activity history references them;
disconnecting clears ``is_active`` instead.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base, JSONType, utcnow

# Placeholder team id for providers that don't expose a workspace at OAuth time
DEFAULT_TEAM_ID: str = "default"


class Integration(Base):
    """An OAuth-authorized connection from one user to one provider account."""

    __tablename__ = "integrations"
    __table_args__ = (
        # At most one integration per (user, provider, external team)
        UniqueConstraint(
            "user_id", "provider", "team_id",
            name="uq_integration_user_provider_team"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)

    # 'slack', 'linear', 'google_drive', 'fireflies'
    provider: Mapped[str] = mapped_column(String(50), nullable=False)

    # Status
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Set when credentials are revoked/expired beyond refresh; user must reconnect
    needs_reauth: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # OAuth credentials
    access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Held by the one worker currently refreshing the token, across processes
    token_refresh_locked_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    scopes: Mapped[Optional[list[str]]] = mapped_column(JSONType, nullable=True)

    # External account identity
    team_id: Mapped[str] = mapped_column(String(255), nullable=False, default=DEFAULT_TEAM_ID)
    team_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    user_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Sync bookkeeping
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Opaque, provider-specific pagination token
    sync_cursor: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Free-form provider config (e.g. Drive watch channel)
    config: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True, default=dict)

    # Timestamps
    created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=utcnow, nullable=True
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=True
    )

    @property
    def connection_status(self) -> str:
        """User-facing connection state."""
        if not self.is_active:
            return "disconnected"
        if self.needs_reauth:
            return "needs_reconnect"
        return "connected"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses. Never includes tokens."""
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "provider": self.provider,
            "is_active": self.is_active,
            "status": self.connection_status,
            "team_id": self.team_id,
            "team_name": self.team_name,
            "user_email": self.user_email,
            "scopes": self.scopes or [],
            "last_sync_at": f"{self.last_sync_at.isoformat()}Z" if self.last_sync_at else None,
            "last_error": self.last_error,
            "created_at": f"{self.created_at.isoformat()}Z" if self.created_at else None,
        }
