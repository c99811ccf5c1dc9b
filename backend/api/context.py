"""Access to the process-wide SyncContext from request handlers."""
from __future__ import annotations

from fastapi import Request

from services.engine import SyncContext, build_context


def get_sync_context(request: Request) -> SyncContext:
    """FastAPI dependency; builds the context on first use if startup didn't."""
    context: SyncContext | None = getattr(request.app.state, "sync_context", None)
    if context is None:
        context = build_context()
        request.app.state.sync_context = context
    return context
