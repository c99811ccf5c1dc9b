"""
Webhook ingestion - authenticate, record, route, defer.

A delivery is handled in this order:
1. Verify signature and replay window (services/webhook_verification.py)
2. Resolve the integrations the event belongs to
3. In one transaction, record a WebhookEvent row keyed on (provider,
   delivery_id) and enqueue one ``webhook_event`` job per integration; a
   unique violation means the delivery was already seen and nothing is
   written

Processing always happens in a worker, so the HTTP handler answers quickly
and a slow provider lookup never makes the sender retry.
"""
from __future__ import annotations

import logging
from typing import Any, Mapping, Optional
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import WEBHOOK_SECRETS
from connectors.base import BaseAdapter
from connectors.errors import IntegrationNotFound
from models.integration import DEFAULT_TEAM_ID, Integration
from models.sync_job import JobType
from models.webhook_event import WebhookEvent
from services.credentials import CredentialStore
from services.job_queue import JobQueue
from services.webhook_verification import VerifiedDelivery, WebhookVerifier, drive_channel_token

logger = logging.getLogger(__name__)


def new_drive_channel(integration_id: UUID | str, secret: Optional[str] = None) -> tuple[str, str]:
    """
    Mint a Drive watch channel for an integration.

    Returns:
        (channel_id, channel_token). The integration id is recoverable from
        the channel id; the token is what Drive echoes back on each push.
    """
    secret = secret or WEBHOOK_SECRETS.get("google_drive")
    if not secret:
        raise ValueError("GOOGLE_WEBHOOK_SECRET is not configured")
    channel_id = f"{integration_id}.{uuid4().hex[:8]}"
    return channel_id, drive_channel_token(secret, channel_id)


class WebhookIngestor:
    """Turns authenticated webhook deliveries into queued jobs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        verifier: WebhookVerifier,
        credentials: CredentialStore,
        queue: JobQueue,
        adapters: dict[str, BaseAdapter],
    ) -> None:
        self._session_factory = session_factory
        self.verifier = verifier
        self.credentials = credentials
        self.queue = queue
        self.adapters = adapters

    async def handle(
        self,
        provider: str,
        headers: Mapping[str, str],
        body: bytes,
    ) -> dict[str, Any]:
        """
        Process one inbound delivery.

        Raises:
            SignatureInvalid, ReplayTooOld: authentication failed; nothing
                was recorded
            KeyError: unknown provider
        """
        delivery = self.verifier.verify(provider, headers, body)

        if delivery.challenge is not None:
            return {"challenge": delivery.challenge}

        targets = await self._resolve_targets(delivery) if delivery.routable else []

        event = WebhookEvent(
            provider=delivery.provider,
            delivery_id=delivery.delivery_id,
            event_type=delivery.event_type,
            action=delivery.action,
            external_id=delivery.external_id,
            payload=delivery.payload,
            processed=False,
        )
        job_ids: list[str] = []
        # The event row and its jobs commit together; a recorded delivery
        # always has its jobs
        async with self._session_factory() as session:
            try:
                session.add(event)
                await session.flush()
                for integration in targets:
                    job = await self.queue.enqueue(
                        integration.id,
                        JobType.WEBHOOK_EVENT,
                        payload={
                            "event_data": delivery.payload,
                            "webhook_event_id": str(event.id),
                        },
                        webhook_event_id=event.id,
                        session=session,
                    )
                    job_ids.append(str(job.id))
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(
                    "Duplicate %s delivery %s ignored", provider, delivery.delivery_id,
                    extra={"provider": provider, "delivery_id": delivery.delivery_id},
                )
                return {"ok": True, "processed": False, "message": "duplicate delivery"}

        if not delivery.routable:
            return {"ok": True, "processed": False, "message": "nothing to process"}

        if not targets:
            logger.warning(
                "No active %s integration for delivery %s", provider, delivery.delivery_id,
            )
            return {"ok": True, "processed": False, "message": "no matching integration"}

        logger.info(
            "Queued %d webhook job(s) for %s delivery %s",
            len(job_ids), provider, delivery.delivery_id,
            extra={"provider": provider, "delivery_id": delivery.delivery_id},
        )
        return {"ok": True, "processed": False, "queued": len(job_ids), "job_ids": job_ids}

    async def _resolve_targets(self, delivery: VerifiedDelivery) -> list[Integration]:
        if delivery.integration_id:
            try:
                integration = await self.credentials.get(delivery.integration_id)
            except (IntegrationNotFound, ValueError):
                logger.warning("Delivery names unknown integration %s", delivery.integration_id)
                return []
            if integration.provider != delivery.provider or not integration.is_active or integration.needs_reauth:
                return []
            return [integration]

        adapter = self.adapters.get(delivery.provider)
        team_id = adapter.webhook_targets_team(delivery.payload) if adapter else None
        if team_id:
            matched = await self.credentials.list_active(delivery.provider, team_id)
            if matched:
                return matched
            # API-key integrations never learned their workspace id
            return await self.credentials.list_active(delivery.provider, DEFAULT_TEAM_ID)
        return await self.credentials.list_active(delivery.provider)
