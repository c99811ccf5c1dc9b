"""
Google Drive adapter (document store).

1. Pages through Docs, Sheets and Slides with Drive v3 ``files.list`` page tokens
2. Pulls the plain text of Google Docs through the Docs API
3. Normalizes files to canonical ``doc`` records
4. Handles Drive push notifications (which carry only headers) by fetching
   the changed file, and registers ``changes.watch`` channels

Push notifications are verified upstream (services/webhook_verification.py);
the payload handed to ``normalize_webhook`` is the header-derived dict built
there.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from connectors.base import BaseAdapter, tag_slug
from connectors.errors import CredentialsInvalid, MalformedResponse, SyncError
from connectors.models import CanonicalRecord, Page
from connectors.registry import AdapterMeta, AuthType, EventType, PaginationStyle

logger = logging.getLogger(__name__)

# Google API endpoints
DRIVE_API_BASE: str = "https://www.googleapis.com/drive/v3"
DOCS_API_BASE: str = "https://docs.googleapis.com/v1"

GOOGLE_DOC_MIME: str = "application/vnd.google-apps.document"
GOOGLE_SHEET_MIME: str = "application/vnd.google-apps.spreadsheet"
GOOGLE_SLIDES_MIME: str = "application/vnd.google-apps.presentation"

FILE_TYPES: dict[str, str] = {
    GOOGLE_DOC_MIME: "document",
    GOOGLE_SHEET_MIME: "spreadsheet",
    GOOGLE_SLIDES_MIME: "presentation",
}

# File fields we request from Drive API
FILE_FIELDS: str = (
    "id,name,mimeType,modifiedTime,createdTime,webViewLink,owners,lastModifyingUser,size,version"
)
LIST_FIELDS: str = f"nextPageToken,files({FILE_FIELDS})"

PAGE_SIZE: int = 100


class GoogleDriveAdapter(BaseAdapter):
    """Adapter for Google Drive documents."""

    provider = "google_drive"

    page_delay_seconds = 1.0

    meta = AdapterMeta(
        name="Google Drive",
        slug="google_drive",
        auth_types=(AuthType.OAUTH2,),
        pagination=PaginationStyle.PAGE_TOKEN,
        record_type="doc",
        oauth_scopes=[
            "https://www.googleapis.com/auth/drive.readonly",
            "https://www.googleapis.com/auth/documents.readonly",
        ],
        event_types=[
            EventType(name="change", description="A file in the watched Drive changed"),
        ],
        description="Docs, Sheets and Slides with owners and revision info",
    )

    async def list_page(
        self,
        token: str,
        cursor: Optional[str] = None,
        since: Optional[str] = None,
    ) -> Page:
        mime_filter = " or ".join(f"mimeType='{mime}'" for mime in FILE_TYPES)
        q = f"({mime_filter}) and trashed = false"
        if since:
            q += f" and modifiedTime > '{since}'"

        params: dict[str, Any] = {
            "pageSize": PAGE_SIZE,
            "fields": LIST_FIELDS,
            "orderBy": "modifiedTime desc",
            "q": q,
            "pageToken": cursor,
        }
        await self._pace()
        data = await self._request("GET", f"{DRIVE_API_BASE}/files", token, params=params)
        if not isinstance(data, dict) or "files" not in data:
            raise MalformedResponse("Drive files.list response has no files", self.provider)

        items: list[dict[str, Any]] = []
        for file in data["files"]:
            items.append(await self._with_content(token, file))

        next_token: Optional[str] = data.get("nextPageToken")
        return Page(items=items, next_cursor=next_token, has_more=bool(next_token))

    def normalize(self, raw: dict[str, Any]) -> CanonicalRecord:
        file_type: str = FILE_TYPES.get(raw.get("mimeType", ""), "document")
        owners: list[dict[str, Any]] = raw.get("owners") or []
        owner_name: Optional[str] = owners[0].get("displayName") if owners else None
        last_modifier: dict[str, Any] = raw.get("lastModifyingUser") or {}

        content: str = raw.get("_doc_content") or f"Document: {raw.get('name', '')}"

        tags: list[str] = ["google", "docs", file_type]
        if owner_name:
            tags.append(tag_slug(owner_name))

        return CanonicalRecord(
            id=f"google_{raw['id']}",
            type="doc",
            content=content,
            source_url=raw.get("webViewLink"),
            source_name=f"Google {file_type.capitalize()}",
            metadata={
                "file_id": raw["id"],
                "name": raw.get("name"),
                "mime_type": raw.get("mimeType"),
                "file_type": file_type,
                "created_time": raw.get("createdTime"),
                "modified_time": raw.get("modifiedTime"),
                "size": raw.get("size"),
                "version": raw.get("version"),
                "owners": owners,
                "last_modifying_user": last_modifier or None,
            },
            timestamp=raw.get("modifiedTime"),
            author=last_modifier.get("displayName") or owner_name or "Unknown",
            tags=list(dict.fromkeys(tags)),
        )

    async def normalize_webhook(self, payload: dict[str, Any], token: str) -> Optional[CanonicalRecord]:
        file_id: Optional[str] = payload.get("file_id")
        if not file_id and payload.get("resource_id"):
            file_id = str(payload["resource_id"]).replace("file:", "")
        if not file_id:
            raise MalformedResponse("Drive notification names no file", self.provider)

        file = await self._request(
            "GET", f"{DRIVE_API_BASE}/files/{file_id}", token, params={"fields": FILE_FIELDS}
        )
        if not isinstance(file, dict) or "id" not in file:
            raise MalformedResponse(f"Drive file {file_id} response has no id", self.provider)
        if file.get("mimeType") not in FILE_TYPES:
            logger.info("Ignoring Drive change for unsupported file type %s", file.get("mimeType"))
            return None

        record = self.normalize(await self._with_content(token, file))
        record.metadata["webhook_event"] = {
            "channel_id": payload.get("channel_id"),
            "resource_state": payload.get("resource_state"),
            "message_number": payload.get("message_number"),
        }
        if "webhook" not in record.tags:
            record.tags.append("webhook")
        return record

    # ── Helpers ──────────────────────────────────────────────────────────

    async def _with_content(self, token: str, file: dict[str, Any]) -> dict[str, Any]:
        """Attach Google Doc text as ``_doc_content``; other types pass through."""
        if file.get("mimeType") != GOOGLE_DOC_MIME:
            return file
        enriched = dict(file)
        enriched["_doc_content"] = await self.get_doc_text(token, file["id"])
        return enriched

    async def get_doc_text(self, token: str, document_id: str) -> str:
        """Plain text of a Google Doc; empty string when it can't be read."""
        try:
            doc = await self._request("GET", f"{DOCS_API_BASE}/documents/{document_id}", token)
        except CredentialsInvalid:
            raise
        except SyncError as exc:
            logger.warning("Could not read Google Doc %s: %s", document_id, exc)
            return ""

        parts: list[str] = [f"{doc.get('title', '')}\n\n"]
        for element in (doc.get("body") or {}).get("content") or []:
            paragraph = element.get("paragraph")
            if not paragraph:
                continue
            for run in paragraph.get("elements") or []:
                text = (run.get("textRun") or {}).get("content")
                if text:
                    parts.append(text)
        return "".join(parts).strip()

    async def setup_watch(
        self,
        token: str,
        channel_id: str,
        address: str,
        channel_token: str,
    ) -> dict[str, Any]:
        """Register a ``changes.watch`` push channel for the user's Drive.

        Args:
            channel_id: Unique channel id (prefixed with the integration id)
            address: HTTPS webhook URL
            channel_token: Value echoed back as ``X-Goog-Channel-Token``
        """
        start = await self._request("GET", f"{DRIVE_API_BASE}/changes/startPageToken", token)
        page_token = start.get("startPageToken") if isinstance(start, dict) else None
        if not page_token:
            raise MalformedResponse("Drive startPageToken response is empty", self.provider)

        return await self._request(
            "POST",
            f"{DRIVE_API_BASE}/changes/watch",
            token,
            params={"pageToken": page_token},
            json={
                "id": channel_id,
                "type": "web_hook",
                "address": address,
                "token": channel_token,
                "payload": True,
            },
        )
