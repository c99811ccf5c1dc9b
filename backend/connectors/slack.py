"""
Slack adapter (chat platform).

Responsibilities:
- Walk ``conversations.history`` for every channel the app is a member of
- Carry the walk position in one opaque cursor (channel list, channel index,
  Slack page cursor) so a sync resumes mid-channel after a crash
- Resolve message authors through ``users.info``
- Normalize messages and ``event_callback`` webhook events

Slack answers errors with HTTP 200 and ``{"ok": false, "error": ...}``, so the
body is checked here after the shared status mapping.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from connectors.base import BaseAdapter
from connectors.errors import CredentialsInvalid, MalformedResponse, RateLimited, SyncError
from connectors.models import CanonicalRecord, Page
from connectors.registry import AdapterMeta, AuthType, EventType, PaginationStyle

SLACK_API_BASE = "https://slack.com/api"
logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50

AUTH_ERRORS: frozenset[str] = frozenset(
    {"token_revoked", "invalid_auth", "not_authed", "account_inactive", "token_expired"}
)

# Raw-text forms of @here / @channel / @everyone
BROADCAST_MARKERS: tuple[str, ...] = (
    "<!here", "<!channel", "<!everyone", "@here", "@channel", "@everyone",
)


class SlackAdapter(BaseAdapter):
    """Adapter for Slack channel messages."""

    provider = "slack"

    page_delay_seconds = 1.0

    # Channel membership changes between syncs
    resumable_cursor = False

    meta = AdapterMeta(
        name="Slack",
        slug="slack",
        auth_types=(AuthType.OAUTH2,),
        pagination=PaginationStyle.CURSOR,
        record_type="slack",
        oauth_scopes=["channels:history", "channels:read", "users:read"],
        event_types=[
            EventType(name="message", description="A message was posted to a channel"),
        ],
        description="Channel messages with threads, reactions and files",
    )

    async def _call(self, method: str, token: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Call a Web API method and check the ``ok`` flag."""
        data = await self._request("GET", f"{SLACK_API_BASE}/{method}", token, params=params)
        if not isinstance(data, dict):
            raise MalformedResponse(f"Slack {method} returned a non-object body", self.provider)
        if not data.get("ok"):
            error: str = data.get("error") or "unknown_error"
            if error in AUTH_ERRORS:
                raise CredentialsInvalid(f"Slack auth error: {error}", self.provider)
            if error == "ratelimited":
                raise RateLimited(f"Slack {method} rate limited", self.provider)
            raise MalformedResponse(f"Slack API error in {method}: {error}", self.provider)
        return data

    # ── Contract ─────────────────────────────────────────────────────────

    async def list_page(
        self,
        token: str,
        cursor: Optional[str] = None,
        since: Optional[str] = None,
    ) -> Page:
        position = _decode_cursor(cursor)
        if position is None:
            channels = await self.get_member_channels(token)
            position = {"channels": channels, "index": 0, "cursor": None}

        channels: list[dict[str, str]] = position["channels"]
        index: int = position["index"]
        if index >= len(channels):
            return Page(items=[], next_cursor=None, has_more=False)

        channel = channels[index]
        params: dict[str, Any] = {
            "channel": channel["id"],
            "limit": HISTORY_LIMIT,
            "cursor": position.get("cursor"),
            "oldest": _to_slack_ts(since) if since else None,
        }
        await self._pace()
        data = await self._call("conversations.history", token, params)
        messages: list[dict[str, Any]] = data.get("messages") or []
        slack_cursor: Optional[str] = (data.get("response_metadata") or {}).get("next_cursor") or None

        author_cache: dict[str, str] = {}
        items: list[dict[str, Any]] = []
        for message in messages:
            if not _is_user_message(message):
                continue
            item = dict(message)
            item["_channel_id"] = channel["id"]
            item["_channel_name"] = channel["name"]
            item["_author_name"] = await self._author_name(token, message.get("user"), author_cache)
            items.append(item)

        if slack_cursor and messages:
            next_position = {"channels": channels, "index": index, "cursor": slack_cursor}
        else:
            next_position = {"channels": channels, "index": index + 1, "cursor": None}

        has_more = next_position["index"] < len(channels)
        return Page(
            items=items,
            next_cursor=json.dumps(next_position) if has_more else None,
            has_more=has_more,
        )

    def normalize(self, raw: dict[str, Any]) -> CanonicalRecord:
        channel_id: str = raw.get("_channel_id") or raw.get("channel") or ""
        channel_name: str = raw.get("_channel_name") or channel_id
        text: str = raw.get("text") or ""
        ts: str = raw["ts"]
        files: list[Any] = raw.get("files") or []
        reactions: list[Any] = raw.get("reactions") or []
        thread_ts: Optional[str] = raw.get("thread_ts")

        is_important = (
            any(marker in text for marker in BROADCAST_MARKERS)
            or bool(reactions)
            or bool(files)
        )
        team: str = raw.get("team") or "Slack"

        tags: list[str] = ["slack", channel_name]
        if is_important:
            tags.append("important")
        if thread_ts:
            tags.append("thread")
        if files:
            tags.append("file")

        return CanonicalRecord(
            id=f"slack_{channel_id}_{ts}",
            type="slack",
            content=text,
            source_url=f"slack://channel?team={team}&id={channel_id}&message={ts}",
            source_name=f"#{channel_name}",
            metadata={
                "channel_id": channel_id,
                "channel_name": channel_name,
                "user_id": raw.get("user"),
                "thread_ts": thread_ts,
                "is_thread": bool(thread_ts),
                "files": files,
                "reactions": reactions,
                "is_important": is_important,
            },
            timestamp=datetime.fromtimestamp(float(ts), tz=timezone.utc),
            author=raw.get("_author_name") or raw.get("user"),
            channel=channel_name,
            tags=list(dict.fromkeys(tags)),
        )

    async def normalize_webhook(self, payload: dict[str, Any], token: str) -> Optional[CanonicalRecord]:
        if payload.get("type") != "event_callback":
            return None
        event: dict[str, Any] = payload.get("event") or {}
        if event.get("type") != "message" or not _is_user_message(event):
            return None
        if not event.get("ts") or not event.get("channel"):
            raise MalformedResponse("Slack message event missing ts or channel", self.provider)

        info = await self._call("conversations.info", token, {"channel": event["channel"]})
        channel_name: str = (info.get("channel") or {}).get("name") or event["channel"]

        item = dict(event)
        item["_channel_id"] = event["channel"]
        item["_channel_name"] = channel_name
        item["_author_name"] = await self._author_name(token, event.get("user"), {})
        item.setdefault("team", payload.get("team_id"))
        return self.normalize(item)

    def webhook_targets_team(self, payload: dict[str, Any]) -> Optional[str]:
        return payload.get("team_id")

    # ── Helpers ──────────────────────────────────────────────────────────

    async def get_member_channels(self, token: str) -> list[dict[str, str]]:
        """Channels the app belongs to, as ``{"id", "name"}`` pairs."""
        channels: list[dict[str, str]] = []
        cursor: Optional[str] = None
        while True:
            data = await self._call(
                "conversations.list",
                token,
                {
                    "types": "public_channel,private_channel",
                    "exclude_archived": "true",
                    "limit": 100,
                    "cursor": cursor,
                },
            )
            for channel in data.get("channels") or []:
                if channel.get("is_member"):
                    channels.append({"id": channel["id"], "name": channel.get("name") or channel["id"]})
            cursor = (data.get("response_metadata") or {}).get("next_cursor") or None
            if not cursor:
                break
        return channels

    async def _author_name(self, token: str, user_id: Optional[str], cache: dict[str, str]) -> Optional[str]:
        if not user_id:
            return None
        if user_id in cache:
            return cache[user_id]
        try:
            data = await self._call("users.info", token, {"user": user_id})
        except CredentialsInvalid:
            raise
        except SyncError as exc:
            logger.warning("Slack users.info failed for %s: %s", user_id, exc)
            name = user_id
        else:
            user: dict[str, Any] = data.get("user") or {}
            name = user.get("real_name") or user.get("name") or user_id
        cache[user_id] = name
        return name


def _is_user_message(message: dict[str, Any]) -> bool:
    """Skip bot, system (subtyped) and empty messages."""
    if message.get("type") != "message":
        return False
    if message.get("subtype") or message.get("bot_id"):
        return False
    user: str = message.get("user") or ""
    if not user or user.startswith("B"):
        return False
    return bool((message.get("text") or "").strip())


def _decode_cursor(cursor: Optional[str]) -> Optional[dict[str, Any]]:
    if not cursor:
        return None
    try:
        position = json.loads(cursor)
    except ValueError:
        logger.warning("Discarding unreadable Slack cursor")
        return None
    if not isinstance(position, dict) or not isinstance(position.get("channels"), list):
        return None
    position.setdefault("index", 0)
    return position


def _to_slack_ts(since: str) -> str:
    """ISO8601 -> Slack epoch-seconds string."""
    parsed = datetime.fromisoformat(since.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return f"{parsed.timestamp():.6f}"
