"""
Linear adapter (issue tracker) - pages issues via the GraphQL API.

Pagination is Relay-style (``first``/``after`` with ``pageInfo.endCursor``);
incremental syncs filter on ``updatedAt >= since``. Webhook pushes for
``Issue`` events are enriched with a fetch of the full issue and fall back
to the pushed fields when that fetch fails.

Linear API docs: https://developers.linear.app/docs
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from connectors.base import BaseAdapter, tag_slug
from connectors.errors import CredentialsInvalid, MalformedResponse, SyncError
from connectors.models import CanonicalRecord, Page
from connectors.registry import AdapterMeta, AuthType, EventType, PaginationStyle

logger = logging.getLogger(__name__)

LINEAR_API_URL: str = "https://api.linear.app/graphql"

PAGE_SIZE: int = 50

# ── Priority mapping (Linear uses 0-4, 0 = no priority) ─────────────────
PRIORITY_TAGS: dict[int, str] = {
    1: "urgent",
    2: "high",
    3: "medium",
    4: "low",
}

_ISSUE_FIELDS: str = """
    id
    identifier
    title
    description
    priority
    estimate
    createdAt
    updatedAt
    url
    state { id name type }
    assignee { id name email }
    team { id name key }
    labels { nodes { id name color } }
    creator { id name email }
    comments { nodes { id body createdAt user { name email } } }
"""

ISSUES_QUERY: str = f"""
query Issues($after: String, $filter: IssueFilter) {{
    issues(first: {PAGE_SIZE}, after: $after, filter: $filter, orderBy: updatedAt) {{
        nodes {{
            {_ISSUE_FIELDS}
        }}
        pageInfo {{
            hasNextPage
            endCursor
        }}
    }}
}}
"""

ISSUE_QUERY: str = f"""
query Issue($id: String!) {{
    issue(id: $id) {{
        {_ISSUE_FIELDS}
    }}
}}
"""


class LinearAdapter(BaseAdapter):
    """Adapter for Linear issues."""

    provider: str = "linear"

    page_delay_seconds: float = 1.0

    meta = AdapterMeta(
        name="Linear",
        slug="linear",
        auth_types=(AuthType.OAUTH2, AuthType.API_KEY),
        pagination=PaginationStyle.CURSOR,
        record_type="linear",
        oauth_scopes=["read"],
        event_types=[
            EventType(name="Issue", description="Issue created, updated or removed"),
        ],
        description="Issues with state, assignee, labels and recent comments",
    )

    def _auth_headers(self, token: str) -> dict[str, str]:
        # Personal API keys are sent bare; OAuth tokens as Bearer
        authorization = token if token.startswith("lin_api_") else f"Bearer {token}"
        return {
            "Authorization": authorization,
            "Content-Type": "application/json",
        }

    # ── Contract ─────────────────────────────────────────────────────────

    async def list_page(
        self,
        token: str,
        cursor: Optional[str] = None,
        since: Optional[str] = None,
    ) -> Page:
        variables: dict[str, Any] = {}
        if cursor:
            variables["after"] = cursor
        if since:
            variables["filter"] = {"updatedAt": {"gte": since}}

        await self._pace()
        data: dict[str, Any] = await self._graphql(LINEAR_API_URL, token, ISSUES_QUERY, variables)

        connection: dict[str, Any] = data.get("issues") or {}
        if "nodes" not in connection:
            raise MalformedResponse("Linear issues response has no nodes", self.provider)
        page_info: dict[str, Any] = connection.get("pageInfo") or {}
        end_cursor: Optional[str] = page_info.get("endCursor")

        return Page(
            items=connection["nodes"],
            # Keep the current position when Linear returns an empty page
            next_cursor=end_cursor or cursor,
            has_more=bool(page_info.get("hasNextPage")) and bool(end_cursor),
        )

    def normalize(self, raw: dict[str, Any]) -> CanonicalRecord:
        team: dict[str, Any] = raw.get("team") or {}
        state: dict[str, Any] = raw.get("state") or {}
        assignee: Optional[dict[str, Any]] = raw.get("assignee")
        creator: dict[str, Any] = raw.get("creator") or {}
        labels: list[dict[str, Any]] = (raw.get("labels") or {}).get("nodes") or []
        comments: list[dict[str, Any]] = (raw.get("comments") or {}).get("nodes") or []
        identifier: str = raw.get("identifier") or raw["id"]

        content: str = raw.get("title") or ""
        if raw.get("description"):
            content += f"\n\n{raw['description']}"
        if comments:
            content += "\n\nRecent Comments:"
            for comment in comments[-3:]:
                commenter = (comment.get("user") or {}).get("name") or "Unknown"
                content += f"\n- {commenter}: {comment.get('body', '')}"

        tags: list[str] = ["linear"]
        if team.get("key"):
            tags.append(str(team["key"]).lower())
        if state.get("name"):
            tags.append(tag_slug(state["name"]))
        tags += [tag_slug(label["name"]) for label in labels if label.get("name")]
        priority: int = raw.get("priority") or 0
        if priority > 0:
            tags.append(f"priority-{PRIORITY_TAGS.get(priority, 'unknown')}")
        if assignee:
            tags.append("assigned")

        return CanonicalRecord(
            id=f"linear_{raw['id']}",
            type="linear",
            content=content,
            source_url=raw.get("url"),
            source_name=f"{team.get('name', 'Linear')} - {identifier}",
            metadata={
                "issue_id": raw["id"],
                "identifier": identifier,
                "team_id": team.get("id"),
                "team_name": team.get("name"),
                "team_key": team.get("key"),
                "state_id": state.get("id"),
                "state_name": state.get("name"),
                "state_type": state.get("type"),
                "assignee_id": (assignee or {}).get("id"),
                "assignee_name": (assignee or {}).get("name"),
                "assignee_email": (assignee or {}).get("email"),
                "creator_name": creator.get("name"),
                "creator_email": creator.get("email"),
                "priority": priority,
                "estimate": raw.get("estimate"),
                "labels": labels,
                "comment_count": len(comments),
            },
            timestamp=raw.get("updatedAt") or raw.get("createdAt"),
            author=(assignee or {}).get("name") or creator.get("name"),
            tags=list(dict.fromkeys(tags)),
        )

    async def normalize_webhook(self, payload: dict[str, Any], token: str) -> Optional[CanonicalRecord]:
        if payload.get("type") != "Issue":
            logger.info("Ignoring Linear webhook of type %s", payload.get("type"))
            return None
        data: dict[str, Any] = payload.get("data") or {}
        if not data.get("id"):
            raise MalformedResponse("Linear webhook payload has no issue id", self.provider)

        issue: Optional[dict[str, Any]] = None
        if payload.get("action") != "remove":
            issue = await self._fetch_issue(token, data["id"])
        if issue is None:
            issue = _issue_from_push(payload)

        record = self.normalize(issue)
        action: str = payload.get("action") or "update"
        record.metadata["webhook_action"] = action
        record.metadata["webhook_type"] = payload.get("type")
        record.tags = list(dict.fromkeys([*record.tags, "webhook", action]))
        return record

    def webhook_targets_team(self, payload: dict[str, Any]) -> Optional[str]:
        return payload.get("organizationId")

    # ── Helpers ──────────────────────────────────────────────────────────

    async def _fetch_issue(self, token: str, issue_id: str) -> Optional[dict[str, Any]]:
        """Full issue for a webhook push; None when the fetch fails."""
        try:
            data = await self._graphql(LINEAR_API_URL, token, ISSUE_QUERY, {"id": issue_id})
        except CredentialsInvalid:
            raise
        except SyncError as exc:
            logger.warning("Linear issue fetch failed for %s, using push payload: %s", issue_id, exc)
            return None
        return data.get("issue")


def _issue_from_push(payload: dict[str, Any]) -> dict[str, Any]:
    """Shape a webhook ``data`` object like an ``issues`` query node."""
    data: dict[str, Any] = payload.get("data") or {}
    team: dict[str, Any] = data.get("team") or {}
    state: dict[str, Any] = data.get("state") or {}
    assignee: Optional[dict[str, Any]] = data.get("assignee")
    team_name: str = team.get("name") or "Unknown Team"

    return {
        "id": data["id"],
        "identifier": data.get("identifier") or f"{team.get('key') or 'ISSUE'}-{data['id'][-4:]}",
        "title": data.get("title") or "Issue Update",
        "description": data.get("description"),
        "priority": data.get("priority") or 0,
        "estimate": data.get("estimate"),
        "createdAt": data.get("createdAt") or payload.get("createdAt"),
        "updatedAt": data.get("updatedAt") or payload.get("createdAt"),
        "url": data.get("url") or payload.get("url") or f"https://linear.app/issue/{data['id']}",
        "state": {
            "id": state.get("id") or state.get("name") or "unknown",
            "name": state.get("name") or "Unknown",
            "type": state.get("type") or "state",
        },
        "assignee": {
            "id": assignee.get("id") or assignee.get("email"),
            "name": assignee.get("name"),
            "email": assignee.get("email"),
        } if assignee else None,
        "team": {
            "id": team.get("id") or team_name,
            "name": team_name,
            "key": team.get("key") or team_name.upper(),
        },
        "labels": {"nodes": data.get("labels") or []},
        "creator": {"id": "webhook", "name": "Linear Webhook", "email": "webhook@linear.app"},
        "comments": {"nodes": []},
    }
