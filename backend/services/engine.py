"""
Wiring for the sync engine.

Every component receives its collaborators at construction time. This module
is the one place that builds them from settings, for the API process and for
Celery tasks alike. Tests build their own context around a throwaway
database and mock HTTP transports.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from connectors.base import BaseAdapter
from connectors.registry import build_adapters
from models.database import get_session_factory
from services.credentials import CredentialStore
from services.ingestion import Collaborator, IngestionPipeline
from services.insights import InsightsClient
from services.job_queue import JobQueue
from services.oauth import OAuthClient
from services.webhook_ingestion import WebhookIngestor
from services.webhook_verification import WebhookVerifier
from workers.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class SyncContext:
    """The assembled components of one process."""

    session_factory: async_sessionmaker[AsyncSession]
    oauth: OAuthClient
    credentials: CredentialStore
    queue: JobQueue
    adapters: dict[str, BaseAdapter]
    pipeline: IngestionPipeline
    orchestrator: SyncOrchestrator
    webhooks: WebhookIngestor


def build_context(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    adapters: Optional[dict[str, BaseAdapter]] = None,
    oauth: Optional[OAuthClient] = None,
    collaborator: Optional[Collaborator] = None,
    verifier: Optional[WebhookVerifier] = None,
    worker_id: Optional[str] = None,
    **adapter_kwargs: Any,
) -> SyncContext:
    """
    Assemble the engine. Anything not passed in is built from settings.

    ``adapter_kwargs`` (``transport``, ``page_delay``, ``timeout``) go to the
    adapters when they are built here.
    """
    session_factory = session_factory or get_session_factory()
    oauth = oauth or OAuthClient()
    adapters = adapters if adapters is not None else build_adapters(**adapter_kwargs)

    if collaborator is None and settings.OPENAI_API_KEY:
        collaborator = InsightsClient()
    elif collaborator is None:
        logger.warning("OPENAI_API_KEY not set; summaries and tags use local fallbacks")

    credentials = CredentialStore(session_factory, oauth=oauth)
    queue = JobQueue(session_factory)
    pipeline = IngestionPipeline(session_factory, collaborator=collaborator)
    orchestrator = SyncOrchestrator(
        session_factory,
        queue=queue,
        credentials=credentials,
        adapters=adapters,
        pipeline=pipeline,
        worker_id=worker_id,
    )
    webhooks = WebhookIngestor(
        session_factory,
        verifier=verifier or WebhookVerifier(),
        credentials=credentials,
        queue=queue,
        adapters=adapters,
    )
    return SyncContext(
        session_factory=session_factory,
        oauth=oauth,
        credentials=credentials,
        queue=queue,
        adapters=adapters,
        pipeline=pipeline,
        orchestrator=orchestrator,
        webhooks=webhooks,
    )
