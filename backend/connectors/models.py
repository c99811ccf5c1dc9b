"""
Canonical record models for the adapter interface.

Adapters return ``CanonicalRecord`` instances from ``normalize`` and
``normalize_webhook``. The ingestion pipeline consumes each one exactly once
and persists its own projection (``models.activity_entry.ActivityEntry``);
records are never stored in this shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

RecordType = Literal["slack", "linear", "doc", "meeting"]

# external id prefix -> provider slug
_ID_PREFIXES: dict[str, str] = {
    "slack_": "slack",
    "linear_": "linear",
    "google_": "google_drive",
    "fireflies_": "fireflies",
}


class CanonicalRecord(BaseModel):
    """One provider item in the provider-agnostic shape."""

    # Provider-qualified, e.g. "linear_<issue id>"; the dedup key
    id: str
    type: RecordType
    content: str
    source_url: Optional[str] = None
    source_name: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None
    author: Optional[str] = None
    channel: Optional[str] = None
    tags: list[str] = Field(default_factory=list)

    @property
    def provider(self) -> str:
        for prefix, provider in _ID_PREFIXES.items():
            if self.id.startswith(prefix):
                return provider
        return self.type


@dataclass
class Page:
    """One page of raw provider items from ``list_page``."""

    items: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False
