"""
Adapter registry: provider enum, metadata types, and the static
provider -> adapter map.

AdapterMeta is the single source of truth for what an adapter is and how it
authenticates. The map is resolved once at startup by ``build_adapters()``;
nothing dispatches on provider strings at call time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from connectors.base import BaseAdapter

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Provider(str, Enum):
    """The four supported external services."""

    SLACK = "slack"
    LINEAR = "linear"
    GOOGLE_DRIVE = "google_drive"
    FIREFLIES = "fireflies"


class AuthType(Enum):
    """How an adapter authenticates with its source system."""

    OAUTH2 = "oauth2"
    API_KEY = "api_key"


class PaginationStyle(Enum):
    OFFSET = "offset"
    CURSOR = "cursor"
    PAGE_TOKEN = "page_token"


# ---------------------------------------------------------------------------
# Metadata dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EventType:
    """An inbound webhook event this adapter can normalize."""

    name: str
    description: str


@dataclass(frozen=True)
class AdapterMeta:
    """Self-describing metadata for an adapter."""

    name: str
    slug: str
    auth_types: tuple[AuthType, ...]
    pagination: PaginationStyle
    record_type: str
    oauth_scopes: list[str] = field(default_factory=list)
    event_types: list[EventType] = field(default_factory=list)
    description: str = ""


# ---------------------------------------------------------------------------
# Static map
# ---------------------------------------------------------------------------


def adapter_classes() -> dict[Provider, type[BaseAdapter]]:
    """Provider -> adapter class."""
    # deferred: adapter modules import this one for AdapterMeta
    from connectors.fireflies import FirefliesAdapter
    from connectors.google_drive import GoogleDriveAdapter
    from connectors.linear import LinearAdapter
    from connectors.slack import SlackAdapter

    return {
        Provider.FIREFLIES: FirefliesAdapter,
        Provider.LINEAR: LinearAdapter,
        Provider.SLACK: SlackAdapter,
        Provider.GOOGLE_DRIVE: GoogleDriveAdapter,
    }


def build_adapters(**adapter_kwargs: Any) -> dict[str, BaseAdapter]:
    """
    Instantiate one adapter per provider.

    Keyword arguments (``transport``, ``page_delay``, ``timeout``) are passed to
    every adapter constructor. The result is keyed by provider slug.
    """
    adapters: dict[str, BaseAdapter] = {}
    for provider, adapter_cls in adapter_classes().items():
        adapters[provider.value] = adapter_cls(**adapter_kwargs)
    logger.info("Registered adapters: %s", ", ".join(sorted(adapters)))
    return adapters


def parse_provider(value: str) -> Provider:
    """Resolve a provider slug, raising ValueError for unknown ones."""
    try:
        return Provider(value)
    except ValueError:
        raise ValueError(f"Unknown provider: {value}") from None
