import asyncio
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import func, select

from connectors.models import CanonicalRecord
from models.activity_entry import ActivityEntry
from services.ingestion import IngestionPipeline


def _record(external_id: str = "linear_abc", content: str = "Fix login bug", **fields) -> CanonicalRecord:
    data = {
        "id": external_id,
        "type": "linear",
        "content": content,
        "source_name": "Core - ENG-1",
        "tags": ["linear", "eng"],
        "timestamp": datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
    }
    data.update(fields)
    return CanonicalRecord(**data)


async def _count(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(ActivityEntry))).scalar_one()


async def _entries(session_factory) -> list[ActivityEntry]:
    async with session_factory() as session:
        return list((await session.execute(select(ActivityEntry))).scalars().all())


class FakeCollaborator:
    def __init__(self, summary: str = "short summary", tags: list[str] | None = None, fail: bool = False) -> None:
        self.summary = summary
        self.tags = tags if tags is not None else ["auth", "linear"]
        self.fail = fail
        self.summarize_calls = 0

    async def summarize(self, content: str, record_type: str) -> str:
        self.summarize_calls += 1
        if self.fail:
            raise RuntimeError("collaborator down")
        return self.summary

    async def tag(self, content: str, existing_tags: list[str]) -> list[str]:
        if self.fail:
            raise ValueError("not a JSON list")
        return self.tags


def test_ingest_writes_once_and_skips_repeat(session_factory) -> None:
    pipeline = IngestionPipeline(session_factory)
    user_id = uuid4()

    async def _run():
        first = await pipeline.ingest(_record(), user_id)
        second = await pipeline.ingest(_record(content="edited"), user_id)
        return first, second, await _entries(session_factory)

    first, second, entries = asyncio.run(_run())

    assert first is True
    assert second is False
    assert len(entries) == 1
    entry = entries[0]
    assert entry.provider == "linear"
    assert entry.external_id == "linear_abc"
    assert entry.content == "Fix login bug"
    assert entry.original_content is None
    assert entry.occurred_at == datetime(2026, 3, 1, 12, 0)


def test_concurrent_ingest_of_same_id_stores_one_row(session_factory) -> None:
    pipeline = IngestionPipeline(session_factory)
    user_id = uuid4()

    async def _run():
        results = await asyncio.gather(*(pipeline.ingest(_record(), user_id) for _ in range(5)))
        return results, await _count(session_factory)

    results, count = asyncio.run(_run())

    assert count == 1
    assert results.count(True) == 1


def test_same_external_id_for_two_users_is_stored_twice(session_factory) -> None:
    pipeline = IngestionPipeline(session_factory)

    async def _run():
        await pipeline.ingest(_record(), uuid4())
        await pipeline.ingest(_record(), uuid4())
        return await _count(session_factory)

    assert asyncio.run(_run()) == 2


def test_long_content_is_summarized_and_tags_merged(session_factory) -> None:
    collaborator = FakeCollaborator()
    pipeline = IngestionPipeline(session_factory, collaborator=collaborator, summary_threshold=20)
    long_text = "x" * 50

    async def _run():
        await pipeline.ingest(_record(content=long_text), uuid4())
        return await _entries(session_factory)

    [entry] = asyncio.run(_run())

    assert collaborator.summarize_calls == 1
    assert entry.content == "short summary"
    assert entry.original_content == long_text
    assert entry.tags == ["linear", "eng", "auth"]


def test_short_content_is_not_summarized(session_factory) -> None:
    collaborator = FakeCollaborator()
    pipeline = IngestionPipeline(session_factory, collaborator=collaborator, summary_threshold=500)

    async def _run():
        await pipeline.ingest(_record(content="brief"), uuid4())
        return await _entries(session_factory)

    [entry] = asyncio.run(_run())

    assert collaborator.summarize_calls == 0
    assert entry.content == "brief"


def test_collaborator_failure_falls_back_to_truncation_and_adapter_tags(session_factory) -> None:
    pipeline = IngestionPipeline(
        session_factory, collaborator=FakeCollaborator(fail=True), summary_threshold=10
    )

    async def _run():
        await pipeline.ingest(_record(content="abcdefghijklmnop"), uuid4())
        return await _entries(session_factory)

    [entry] = asyncio.run(_run())

    assert entry.content == "abcdefghij..."
    assert entry.tags == ["linear", "eng"]


def test_record_without_tags_gets_type_and_imported(session_factory) -> None:
    pipeline = IngestionPipeline(session_factory)

    async def _run():
        await pipeline.ingest(_record(tags=[]), uuid4())
        return await _entries(session_factory)

    [entry] = asyncio.run(_run())

    assert entry.tags == ["linear", "imported"]
