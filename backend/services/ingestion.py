"""
Normalization & persistence pipeline.

Turns one CanonicalRecord into one ActivityEntry row for a user:
summarize long content, merge collaborator tags with adapter tags, and insert
idempotently. The unique index on (user_id, provider, external_id) settles
races between concurrent ingestions of the same item; the losing insert is
reported as "already exists", not as an error.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, Protocol, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from connectors.models import CanonicalRecord
from models.activity_entry import ActivityEntry

logger = logging.getLogger(__name__)


class Collaborator(Protocol):
    """Summarization/tagging service (services.insights.InsightsClient in production)."""

    async def summarize(self, content: str, record_type: str) -> str: ...

    async def tag(self, content: str, existing_tags: list[str]) -> list[str]: ...


class IngestionPipeline:
    """Idempotent writer of canonical records into the activity log."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        collaborator: Optional[Collaborator] = None,
        summary_threshold: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory
        self._collaborator = collaborator
        self._threshold: int = summary_threshold or settings.SUMMARY_THRESHOLD_CHARS

    async def ingest(self, record: CanonicalRecord, user_id: Union[str, UUID]) -> bool:
        """
        Persist ``record`` for ``user_id``.

        Returns:
            True if a new entry was written, False if it already existed
        """
        user_uuid = UUID(str(user_id))
        provider = record.provider

        if await self.exists(user_uuid, provider, record.id):
            logger.debug("Skipping %s for user %s: already ingested", record.id, user_uuid)
            return False

        summary = await self._summarize(record)
        tags = await self._tags(record)

        entry = ActivityEntry(
            user_id=user_uuid,
            provider=provider,
            external_id=record.id,
            type=record.type,
            content=summary,
            original_content=record.content if summary != record.content else None,
            extra_metadata=record.metadata,
            tags=tags,
            source_url=record.source_url,
            source_name=record.source_name,
            author=record.author,
            channel=record.channel,
            occurred_at=_to_naive_utc(record.timestamp),
        )

        async with self._session_factory() as session:
            session.add(entry)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(
                    "Concurrent ingestion of %s for user %s lost the race; treating as existing",
                    record.id, user_uuid,
                )
                return False

        logger.info(
            "Ingested %s",
            record.id,
            extra={"provider": provider, "user_id": str(user_uuid), "entry_id": str(entry.id)},
        )
        return True

    async def exists(self, user_id: UUID, provider: str, external_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ActivityEntry.id).where(
                    ActivityEntry.user_id == user_id,
                    ActivityEntry.provider == provider,
                    ActivityEntry.external_id == external_id,
                ).limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def _summarize(self, record: CanonicalRecord) -> str:
        content = record.content
        if len(content) <= self._threshold:
            return content

        if self._collaborator is not None:
            try:
                return await self._collaborator.summarize(content, record.type)
            except Exception as exc:
                logger.warning("Summarizer failed for %s, truncating: %s", record.id, exc)
        return content[: self._threshold] + "..."

    async def _tags(self, record: CanonicalRecord) -> list[str]:
        tags = list(record.tags)
        if self._collaborator is not None:
            try:
                generated = await self._collaborator.tag(record.content, tags)
                return list(dict.fromkeys([*tags, *generated]))
            except Exception as exc:
                logger.warning("Tagger failed for %s, keeping adapter tags: %s", record.id, exc)
        return tags or [record.type, "imported"]


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
