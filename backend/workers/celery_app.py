"""
Celery application configuration.

This configures Celery with Redis as the broker and result backend.
Beat drives the job queue: it polls for due jobs, reclaims expired leases
and keeps one recurring sync scheduled per active integration. The queue
itself lives in PostgreSQL; Celery only supplies the clock and the workers.
"""
from __future__ import annotations

import sys
from datetime import timedelta
from pathlib import Path

# Ensure backend directory is in Python path for Celery workers
backend_dir = Path(__file__).resolve().parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Load .env BEFORE importing config/settings so workers share the API's DATABASE_URL
from dotenv import load_dotenv
env_file = backend_dir / ".env"
if not env_file.exists():
    env_file = backend_dir.parent / ".env"
if env_file.exists():
    load_dotenv(env_file)

from celery import Celery
from celery.signals import worker_process_shutdown
from kombu import Exchange, Queue

from config import settings

celery_app = Celery(
    "syncengine",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["workers.tasks.sync"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # A pass must end before the leases it holds expire, or another worker
    # reclaims jobs that are still running
    task_time_limit=settings.SYNC_LEASE_SECONDS - 60,
    task_soft_time_limit=settings.SYNC_LEASE_SECONDS - 120,
    # Summaries are only read from logs
    result_expires=60 * 60,
    # Each worker process creates its own connection pool
    worker_prefetch_multiplier=1,
    worker_concurrency=2,
    task_queues=(
        Queue("default", Exchange("default"), routing_key="default"),
        Queue("sync", Exchange("sync"), routing_key="sync.#"),
    ),
    task_default_queue="default",
    task_routes={"workers.tasks.sync.*": {"queue": "sync"}},
)

celery_app.conf.beat_schedule = {
    # Claim and run due jobs
    "process-due-sync-jobs": {
        "task": "workers.tasks.sync.process_due_jobs",
        "schedule": timedelta(seconds=30),
        "options": {"queue": "sync", "expires": 30},
    },
    # Return jobs from crashed workers to the queue
    "reclaim-stale-sync-jobs": {
        "task": "workers.tasks.sync.reclaim_stale_jobs",
        "schedule": timedelta(minutes=5),
        "options": {"queue": "sync"},
    },
    # Seed recurring incremental syncs for integrations that have none
    "ensure-recurring-syncs": {
        "task": "workers.tasks.sync.ensure_recurring_syncs",
        "schedule": timedelta(minutes=settings.SYNC_INTERVAL_MINUTES),
        "options": {"queue": "sync"},
    },
}


@worker_process_shutdown.connect
def cleanup_db_connections(**kwargs) -> None:
    """Release pooled database connections when a worker process exits."""
    from models.database import dispose_engine
    dispose_engine()
