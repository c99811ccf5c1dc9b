"""Provider adapters package."""
from connectors.base import BaseAdapter
from connectors.fireflies import FirefliesAdapter
from connectors.google_drive import GoogleDriveAdapter
from connectors.linear import LinearAdapter
from connectors.registry import Provider, build_adapters
from connectors.slack import SlackAdapter

__all__ = [
    "BaseAdapter",
    "FirefliesAdapter",
    "GoogleDriveAdapter",
    "LinearAdapter",
    "Provider",
    "SlackAdapter",
    "build_adapters",
]
