"""Database models package."""
from models.database import Base, get_session, init_db, close_db, get_pool_status, get_engine
from models.integration import Integration
from models.sync_job import JobStatus, JobType, SyncJob
from models.activity_entry import ActivityEntry
from models.webhook_event import WebhookEvent

__all__ = [
    "Base",
    "get_session",
    "init_db",
    "close_db",
    "get_pool_status",
    "get_engine",
    "Integration",
    "SyncJob",
    "JobStatus",
    "JobType",
    "ActivityEntry",
    "WebhookEvent",
]
