import asyncio
import json
from datetime import datetime, timezone
from types import SimpleNamespace

import httpx
import pytest

from connectors import base
from connectors.errors import (
    CredentialsInvalid,
    MalformedResponse,
    ProviderTimeout,
    RateLimited,
    TransientNetworkError,
)
from connectors.fireflies import FirefliesAdapter
from connectors.google_drive import GOOGLE_DOC_MIME, GOOGLE_SHEET_MIME, GoogleDriveAdapter
from connectors.linear import LinearAdapter
from connectors.registry import Provider, build_adapters
from connectors.slack import SlackAdapter


def _transport(handler) -> httpx.MockTransport:
    return httpx.MockTransport(handler)


def _linear_issue(**overrides) -> dict:
    issue = {
        "id": "issue-1",
        "identifier": "ENG-42",
        "title": "Fix login",
        "description": "SSO users bounce back to the login page",
        "priority": 2,
        "estimate": 3,
        "createdAt": "2026-03-01T10:00:00.000Z",
        "updatedAt": "2026-03-02T11:30:00.000Z",
        "url": "https://linear.app/acme/issue/ENG-42",
        "state": {"id": "s1", "name": "In Progress", "type": "started"},
        "assignee": {"id": "u1", "name": "Sam Lee", "email": "sam@acme.io"},
        "team": {"id": "t1", "name": "Core", "key": "ENG"},
        "labels": {"nodes": [{"id": "l1", "name": "Bug", "color": "red"}]},
        "creator": {"id": "u2", "name": "Ana", "email": "ana@acme.io"},
        "comments": {"nodes": [{"id": "c1", "body": "Repro'd", "createdAt": "2026-03-02T09:00:00Z", "user": {"name": "Ana"}}]},
    }
    issue.update(overrides)
    return issue


# ── Registry ─────────────────────────────────────────────────────────────


def test_build_adapters_covers_every_provider() -> None:
    adapters = build_adapters(page_delay=0)

    assert set(adapters) == {p.value for p in Provider}
    assert all(adapter.page_delay_seconds == 0 for adapter in adapters.values())


# ── Pacing ───────────────────────────────────────────────────────────────


def test_default_page_delays() -> None:
    adapters = build_adapters()

    assert adapters["fireflies"].page_delay_seconds == 2.0
    assert adapters["linear"].page_delay_seconds == 1.0
    assert adapters["slack"].page_delay_seconds == 1.0
    assert adapters["google_drive"].page_delay_seconds == 1.0


def test_second_page_waits_out_the_remaining_delay(monkeypatch) -> None:
    clock = {"now": 100.0}
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        clock["now"] += seconds

    monkeypatch.setattr(base, "time", SimpleNamespace(monotonic=lambda: clock["now"]))
    monkeypatch.setattr(base, "asyncio", SimpleNamespace(sleep=fake_sleep))

    def handler(request: httpx.Request) -> httpx.Response:
        # Each request takes 0.3s of the delay budget
        clock["now"] += 0.3
        return httpx.Response(200, json={"data": {"issues": {
            "nodes": [],
            "pageInfo": {"hasNextPage": False, "endCursor": None},
        }}})

    adapter = LinearAdapter(transport=_transport(handler), page_delay=1.0)

    async def _run():
        await adapter.list_page("lin_oauth")
        await adapter.list_page("lin_oauth", cursor="cur-2")

    asyncio.run(_run())

    assert sleeps == [pytest.approx(0.7)]


def test_page_after_the_delay_has_passed_does_not_wait(monkeypatch) -> None:
    clock = {"now": 100.0}
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    monkeypatch.setattr(base, "time", SimpleNamespace(monotonic=lambda: clock["now"]))
    monkeypatch.setattr(base, "asyncio", SimpleNamespace(sleep=fake_sleep))

    adapter = FirefliesAdapter()

    async def _run():
        await adapter._pace()
        clock["now"] += 2.5
        await adapter._pace()

    asyncio.run(_run())

    assert sleeps == []


# ── Linear ───────────────────────────────────────────────────────────────


def test_linear_page_and_normalize() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"data": {"issues": {
            "nodes": [_linear_issue()],
            "pageInfo": {"hasNextPage": True, "endCursor": "cur-2"},
        }}})

    adapter = LinearAdapter(transport=_transport(handler), page_delay=0)
    page = asyncio.run(adapter.list_page("lin_oauth", cursor="cur-1", since="2026-03-01T00:00:00Z"))

    assert page.has_more is True
    assert page.next_cursor == "cur-2"
    assert seen[0]["variables"] == {"after": "cur-1", "filter": {"updatedAt": {"gte": "2026-03-01T00:00:00Z"}}}

    record = adapter.normalize(page.items[0])
    assert record.id == "linear_issue-1"
    assert record.type == "linear"
    assert record.source_name == "Core - ENG-42"
    assert record.content.startswith("Fix login\n\nSSO users")
    assert "- Ana: Repro'd" in record.content
    assert record.tags == ["linear", "eng", "in-progress", "bug", "priority-high", "assigned"]
    assert record.author == "Sam Lee"
    assert record.timestamp == datetime(2026, 3, 2, 11, 30, tzinfo=timezone.utc)


def test_linear_api_key_sent_without_bearer() -> None:
    auth: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        auth.append(request.headers["Authorization"])
        return httpx.Response(200, json={"data": {"issues": {"nodes": [], "pageInfo": {}}}})

    adapter = LinearAdapter(transport=_transport(handler), page_delay=0)
    page = asyncio.run(adapter.list_page("lin_api_abc", cursor="keep"))

    assert auth == ["lin_api_abc"]
    assert page.items == []
    assert page.next_cursor == "keep"
    assert page.has_more is False


def test_linear_graphql_auth_error_is_invalid_credentials() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"errors": [{"message": "Authentication required, not authenticated"}]})

    adapter = LinearAdapter(transport=_transport(handler), page_delay=0)

    with pytest.raises(CredentialsInvalid):
        asyncio.run(adapter.list_page("token"))


def test_linear_graphql_other_error_is_malformed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"errors": [{"message": "Field 'foo' doesn't exist"}]})

    adapter = LinearAdapter(transport=_transport(handler), page_delay=0)

    with pytest.raises(MalformedResponse):
        asyncio.run(adapter.list_page("token"))


def test_linear_webhook_falls_back_to_push_payload() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502)

    adapter = LinearAdapter(transport=_transport(handler), page_delay=0)
    payload = {
        "type": "Issue",
        "action": "create",
        "data": {"id": "abcd1234", "title": "New bug", "team": {"name": "Core", "key": "ENG"}},
    }

    record = asyncio.run(adapter.normalize_webhook(payload, "token"))

    assert record.id == "linear_abcd1234"
    assert record.content == "New bug"
    assert record.metadata["webhook_action"] == "create"
    assert "webhook" in record.tags and "create" in record.tags


def test_linear_webhook_ignores_non_issue_events() -> None:
    adapter = LinearAdapter(transport=_transport(lambda r: httpx.Response(500)), page_delay=0)

    assert asyncio.run(adapter.normalize_webhook({"type": "Comment", "data": {"id": "c1"}}, "t")) is None


# ── Slack ────────────────────────────────────────────────────────────────


def _slack_handler(calls: list[str]):
    def handler(request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        calls.append(method)
        if method == "conversations.list":
            return httpx.Response(200, json={"ok": True, "channels": [
                {"id": "C1", "name": "general", "is_member": True},
                {"id": "C2", "name": "random", "is_member": False},
            ]})
        if method == "conversations.history":
            return httpx.Response(200, json={"ok": True, "messages": [
                {"type": "message", "user": "U1", "text": "Deploy at 5 <!here>", "ts": "1772400000.000100"},
                {"type": "message", "bot_id": "B1", "text": "build passed", "ts": "1772400001.000100"},
                {"type": "message", "subtype": "channel_join", "user": "U2", "text": "joined", "ts": "1772400002.000100"},
            ]})
        if method == "users.info":
            return httpx.Response(200, json={"ok": True, "user": {"real_name": "Sam Lee"}})
        if method == "conversations.info":
            return httpx.Response(200, json={"ok": True, "channel": {"name": "general"}})
        return httpx.Response(404)

    return handler


def test_slack_walks_member_channels_and_skips_bots() -> None:
    calls: list[str] = []
    adapter = SlackAdapter(transport=_transport(_slack_handler(calls)), page_delay=0)

    page = asyncio.run(adapter.list_page("xoxb"))

    assert calls == ["conversations.list", "conversations.history", "users.info"]
    assert len(page.items) == 1
    assert page.has_more is False
    assert page.next_cursor is None

    record = adapter.normalize(page.items[0])
    assert record.id == "slack_C1_1772400000.000100"
    assert record.source_name == "#general"
    assert record.author == "Sam Lee"
    assert record.tags == ["slack", "general", "important"]


def test_slack_ok_false_maps_to_error_taxonomy() -> None:
    def revoked(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ok": False, "error": "token_revoked"})

    def limited(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ok": False, "error": "ratelimited"})

    with pytest.raises(CredentialsInvalid):
        asyncio.run(SlackAdapter(transport=_transport(revoked), page_delay=0).list_page("xoxb"))
    with pytest.raises(RateLimited):
        asyncio.run(SlackAdapter(transport=_transport(limited), page_delay=0).list_page("xoxb"))


def test_slack_webhook_message_event() -> None:
    calls: list[str] = []
    adapter = SlackAdapter(transport=_transport(_slack_handler(calls)), page_delay=0)
    payload = {
        "type": "event_callback",
        "team_id": "T1",
        "event": {"type": "message", "channel": "C1", "user": "U1", "text": "hello", "ts": "1772400000.000200"},
    }

    record = asyncio.run(adapter.normalize_webhook(payload, "xoxb"))

    assert record.id == "slack_C1_1772400000.000200"
    assert record.channel == "general"
    assert "team=T1" in record.source_url
    assert adapter.webhook_targets_team(payload) == "T1"


def test_slack_webhook_ignores_bot_messages() -> None:
    adapter = SlackAdapter(transport=_transport(lambda r: httpx.Response(500)), page_delay=0)
    payload = {"type": "event_callback", "event": {"type": "message", "bot_id": "B1", "text": "x", "ts": "1", "channel": "C1"}}

    assert asyncio.run(adapter.normalize_webhook(payload, "xoxb")) is None


# ── Google Drive ─────────────────────────────────────────────────────────


def test_drive_lists_files_and_reads_doc_text() -> None:
    queries: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/drive/v3/files":
            queries.append(request.url.params["q"])
            return httpx.Response(200, json={"files": [
                {"id": "doc1", "name": "Plan", "mimeType": GOOGLE_DOC_MIME,
                 "modifiedTime": "2026-03-01T12:00:00Z", "owners": [{"displayName": "Ana Ruiz"}]},
                {"id": "sheet1", "name": "Budget", "mimeType": GOOGLE_SHEET_MIME,
                 "modifiedTime": "2026-03-01T13:00:00Z"},
            ], "nextPageToken": "tok-2"})
        if request.url.path == "/v1/documents/doc1":
            return httpx.Response(200, json={"title": "Plan", "body": {"content": [
                {"paragraph": {"elements": [{"textRun": {"content": "Ship it\n"}}]}},
                {"sectionBreak": {}},
            ]}})
        return httpx.Response(404)

    adapter = GoogleDriveAdapter(transport=_transport(handler), page_delay=0)
    page = asyncio.run(adapter.list_page("ya29", since="2026-02-01T00:00:00Z"))

    assert page.next_cursor == "tok-2"
    assert page.has_more is True
    assert "modifiedTime > '2026-02-01T00:00:00Z'" in queries[0]
    assert "trashed = false" in queries[0]

    doc, sheet = (adapter.normalize(item) for item in page.items)
    assert doc.id == "google_doc1"
    assert doc.content == "Plan\n\nShip it"
    assert doc.tags == ["google", "docs", "document", "ana-ruiz"]
    assert doc.author == "Ana Ruiz"
    assert sheet.content == "Document: Budget"
    assert sheet.source_name == "Google Spreadsheet"


def test_drive_webhook_fetches_changed_file() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/drive/v3/files/sheet9":
            return httpx.Response(200, json={"id": "sheet9", "name": "Q3", "mimeType": GOOGLE_SHEET_MIME})
        return httpx.Response(404)

    adapter = GoogleDriveAdapter(transport=_transport(handler), page_delay=0)
    payload = {"channel_id": "x.y", "resource_id": "sheet9", "resource_state": "update", "message_number": "3"}

    record = asyncio.run(adapter.normalize_webhook(payload, "ya29"))

    assert record.id == "google_sheet9"
    assert record.metadata["webhook_event"]["resource_state"] == "update"
    assert "webhook" in record.tags


def test_drive_setup_watch_registers_channel() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/changes/startPageToken"):
            return httpx.Response(200, json={"startPageToken": "55"})
        if request.url.path.endswith("/changes/watch"):
            assert request.url.params["pageToken"] == "55"
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"id": "chan", "resourceId": "res", "expiration": "1772400000000"})
        return httpx.Response(404)

    adapter = GoogleDriveAdapter(transport=_transport(handler), page_delay=0)
    result = asyncio.run(adapter.setup_watch("ya29", "chan", "https://hooks.example.com/g", "tok"))

    assert result["resourceId"] == "res"
    assert bodies[0]["type"] == "web_hook"
    assert bodies[0]["token"] == "tok"


# ── Fireflies ────────────────────────────────────────────────────────────


def test_fireflies_page_offset_and_normalize() -> None:
    variables: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        variables.append(body.get("variables") or {})
        return httpx.Response(200, json={"data": {"transcripts": [{
            "id": "m1",
            "title": "Weekly sync",
            "date": 1772400000000,
            "duration": 1800,
            "participants": [{"name": "Ana"}, "sam@acme.io"],
            "summary": {"overview": "Roadmap review", "keywords": ["Roadmap"], "action_items": "Ana: draft plan\nSam: book room"},
            "ai_filters": {"sentiment": "Positive", "topics": ["Hiring Plan"]},
            "sentences": [{"text": "hello"}],
        }]}})

    adapter = FirefliesAdapter(transport=_transport(handler), page_delay=0)
    page = asyncio.run(adapter.list_page("ff-key", cursor="20"))

    assert variables[0]["skip"] == 20
    assert page.next_cursor == "21"
    assert page.has_more is False

    record = adapter.normalize(page.items[0])
    assert record.id == "fireflies_m1"
    assert record.type == "meeting"
    assert "Duration: 30 minutes" in record.content
    assert "Participants: Ana, sam@acme.io" in record.content
    assert "- Sam: book room" in record.content
    assert record.tags == ["fireflies", "meeting", "roadmap", "hiring-plan", "sentiment-positive"]
    assert record.timestamp == datetime.fromtimestamp(1772400000, tz=timezone.utc)


def test_fireflies_webhook_for_other_event_is_ignored() -> None:
    adapter = FirefliesAdapter(transport=_transport(lambda r: httpx.Response(500)), page_delay=0)

    assert asyncio.run(adapter.normalize_webhook({"eventType": "Meeting deleted", "meetingId": "m1"}, "k")) is None


# ── Shared status mapping ────────────────────────────────────────────────


@pytest.mark.parametrize(
    ("status", "error"),
    [(401, CredentialsInvalid), (429, RateLimited), (503, TransientNetworkError), (404, MalformedResponse)],
)
def test_status_codes_map_to_errors(status: int, error: type) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, headers={"Retry-After": "30"}, text="nope")

    adapter = GoogleDriveAdapter(transport=_transport(handler), page_delay=0)

    with pytest.raises(error) as exc_info:
        asyncio.run(adapter.list_page("ya29"))
    if status == 429:
        assert exc_info.value.retry_after == 30.0


def test_timeout_maps_to_provider_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    adapter = FirefliesAdapter(transport=_transport(handler), page_delay=0)

    with pytest.raises(ProviderTimeout) as exc_info:
        asyncio.run(adapter.list_page("ff-key"))
    assert exc_info.value.retryable is True
