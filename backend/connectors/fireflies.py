"""
Fireflies.ai adapter (meeting transcription).

Responsibilities:
- Page through transcripts with offset/limit (cursor is the stringified skip)
- Enrich transcripts that came back without sentences via a detail fetch
- Normalize transcripts to canonical meeting records
- Handle "transcription completed" webhooks by fetching the full transcript

Fireflies rate limits are strict, so pages are spaced 2 seconds apart.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from connectors.base import BaseAdapter, tag_slug
from connectors.errors import MalformedResponse
from connectors.models import CanonicalRecord, Page
from connectors.registry import AdapterMeta, AuthType, EventType, PaginationStyle

logger = logging.getLogger(__name__)

FIREFLIES_API_BASE = "https://api.fireflies.ai/graphql"

PAGE_LIMIT = 20

# Webhook event names that mean a transcript is ready to fetch
READY_EVENTS: frozenset[str] = frozenset({"transcription completed", "transcript_ready"})

_TRANSCRIPT_FIELDS = """
    id
    title
    date
    duration
    meeting_url
    transcript_url
    audio_url
    summary {
        overview
        keywords
        action_items
        outline {
            title
            timestamp
        }
    }
    participants {
        name
        email
        user_id
    }
    ai_filters {
        sentiment
        questions
        tasks
        topics
    }
    sentences {
        text
        speaker_name
        start_time
        end_time
    }
"""

TRANSCRIPTS_QUERY = f"""
query GetTranscripts($limit: Int, $skip: Int, $startDate: DateTime) {{
    transcripts(limit: $limit, skip: $skip, filters: {{ date_range_start: $startDate }}) {{
        {_TRANSCRIPT_FIELDS}
    }}
}}
"""

TRANSCRIPT_QUERY = f"""
query GetTranscript($id: String!) {{
    transcript(id: $id) {{
        {_TRANSCRIPT_FIELDS}
    }}
}}
"""


class FirefliesAdapter(BaseAdapter):
    """Adapter for Fireflies.ai meeting transcripts."""

    provider = "fireflies"

    page_delay_seconds = 2.0

    # An offset is only meaningful for the date filter it was taken under
    resumable_cursor = False

    meta = AdapterMeta(
        name="Fireflies",
        slug="fireflies",
        auth_types=(AuthType.OAUTH2, AuthType.API_KEY),
        pagination=PaginationStyle.OFFSET,
        record_type="meeting",
        oauth_scopes=["read:transcripts"],
        event_types=[
            EventType(name="Transcription completed", description="A meeting transcript is ready"),
        ],
        description="Meeting transcripts, summaries and action items",
    )

    async def list_page(
        self,
        token: str,
        cursor: Optional[str] = None,
        since: Optional[str] = None,
    ) -> Page:
        try:
            skip = int(cursor) if cursor else 0
        except ValueError:
            logger.warning("Ignoring unparseable Fireflies cursor %r", cursor)
            skip = 0

        variables: dict[str, Any] = {"limit": PAGE_LIMIT, "skip": skip}
        if since:
            variables["startDate"] = since

        await self._pace()
        data = await self._graphql(FIREFLIES_API_BASE, token, TRANSCRIPTS_QUERY, variables)
        transcripts: list[dict[str, Any]] = data.get("transcripts") or []

        items: list[dict[str, Any]] = []
        for transcript in transcripts:
            if not transcript.get("sentences"):
                details = await self.get_transcript(token, transcript["id"])
                if details:
                    transcript = details
            items.append(transcript)

        has_more = len(transcripts) == PAGE_LIMIT
        return Page(
            items=items,
            next_cursor=str(skip + len(transcripts)),
            has_more=has_more,
        )

    async def get_transcript(self, token: str, transcript_id: str) -> Optional[dict[str, Any]]:
        """Fetch a single transcript with full details."""
        data = await self._graphql(FIREFLIES_API_BASE, token, TRANSCRIPT_QUERY, {"id": transcript_id})
        return data.get("transcript")

    def normalize(self, raw: dict[str, Any]) -> CanonicalRecord:
        summary: dict[str, Any] = raw.get("summary") or {}
        ai_filters: dict[str, Any] = raw.get("ai_filters") or {}
        participants: list[Any] = raw.get("participants") or []
        participant_names: list[str] = [_participant_name(p) for p in participants]

        duration_seconds: float = float(raw.get("duration") or 0)
        duration_minutes: int = int(duration_seconds / 60 + 0.5)

        lines: list[str] = [
            f"Meeting: {raw.get('title') or 'Untitled meeting'}",
            f"Duration: {duration_minutes} minutes",
            f"Participants: {', '.join(participant_names)}",
            "",
        ]
        if summary.get("overview"):
            lines += ["Overview:", summary["overview"], ""]
        for heading, entries in (
            ("Action Items", summary.get("action_items")),
            ("Key Questions", ai_filters.get("questions")),
            ("Tasks", ai_filters.get("tasks")),
        ):
            if entries:
                # Fireflies sometimes returns action items as one newline-separated string
                if isinstance(entries, str):
                    entries = [e for e in entries.splitlines() if e.strip()]
                lines.append(f"{heading}:")
                lines += [f"- {entry}" for entry in entries]
                lines.append("")
        outline: list[dict[str, Any]] = summary.get("outline") or []
        if outline:
            lines.append("Key Moments:")
            for moment in outline:
                seconds = int(moment.get("timestamp") or 0)
                lines.append(f"- [{seconds // 60}:{seconds % 60:02d}] {moment.get('title', '')}")
        content = "\n".join(lines).strip()

        tags: list[str] = ["fireflies", "meeting"]
        tags += [tag_slug(k) for k in summary.get("keywords") or []]
        tags += [tag_slug(t) for t in ai_filters.get("topics") or []]
        if ai_filters.get("sentiment"):
            tags.append(f"sentiment-{str(ai_filters['sentiment']).lower()}")
        if duration_minutes < 15:
            tags.append("short-meeting")
        elif duration_minutes > 60:
            tags.append("long-meeting")

        return CanonicalRecord(
            id=f"fireflies_{raw['id']}",
            type="meeting",
            content=content,
            source_url=raw.get("transcript_url") or raw.get("meeting_url"),
            source_name="Fireflies.ai",
            metadata={
                "transcript_id": raw["id"],
                "duration": raw.get("duration"),
                "duration_minutes": duration_minutes,
                "participants": participants,
                "summary": summary,
                "ai_filters": ai_filters,
                "audio_url": raw.get("audio_url"),
                "meeting_url": raw.get("meeting_url"),
                "sentence_count": len(raw.get("sentences") or []),
            },
            timestamp=_parse_date(raw.get("date")),
            author=participant_names[0] if participant_names else "Meeting Host",
            tags=list(dict.fromkeys(tags)),
        )

    async def normalize_webhook(self, payload: dict[str, Any], token: str) -> Optional[CanonicalRecord]:
        event_type = str(payload.get("eventType") or payload.get("event") or "").lower()
        if event_type and event_type not in READY_EVENTS:
            logger.info("Ignoring Fireflies webhook event %s", event_type)
            return None

        meeting_id: Optional[str] = (
            payload.get("meetingId") or payload.get("meeting_id") or payload.get("transcript_id")
        )
        if not meeting_id:
            raise MalformedResponse("Fireflies webhook has no meeting id", self.provider)

        transcript = await self.get_transcript(token, meeting_id)
        if not transcript:
            # Transcript may not be queryable yet; retry later
            raise MalformedResponse(f"Fireflies transcript {meeting_id} not found", self.provider)

        record = self.normalize(transcript)
        record.metadata["webhook_event"] = event_type or None
        if "webhook" not in record.tags:
            record.tags.append("webhook")
        return record


def _participant_name(participant: Any) -> str:
    # Older API versions return bare email strings
    if isinstance(participant, dict):
        return participant.get("name") or participant.get("email") or "Unknown"
    return str(participant)


def _parse_date(value: Any) -> Optional[datetime]:
    """Fireflies dates are epoch milliseconds or ISO8601 strings."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable Fireflies date %r", value)
        return None
