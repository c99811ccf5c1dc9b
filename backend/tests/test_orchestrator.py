import asyncio
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from sqlalchemy import select, update

from connectors.base import BaseAdapter
from connectors.errors import CredentialsInvalid, TransientNetworkError
from connectors.models import CanonicalRecord, Page
from models.activity_entry import ActivityEntry
from models.database import utcnow
from models.integration import Integration
from models.sync_job import JobStatus, JobType, SyncJob
from models.webhook_event import WebhookEvent
from services.credentials import CredentialStore
from services.ingestion import IngestionPipeline
from services.job_queue import JobQueue
from workers.orchestrator import SyncOrchestrator


class ScriptedAdapter(BaseAdapter):
    """Serves pre-built pages keyed by the cursor they are requested with."""

    provider = "linear"

    def __init__(self, pages: dict[Optional[str], Union[Page, Exception]]) -> None:
        super().__init__(page_delay=0)
        self.pages = pages
        self.calls: list[tuple[Optional[str], Optional[str]]] = []

    async def list_page(self, token: str, cursor: Optional[str] = None, since: Optional[str] = None) -> Page:
        self.calls.append((cursor, since))
        page = self.pages[cursor]
        if isinstance(page, Exception):
            raise page
        return page

    def normalize(self, raw: dict[str, Any]) -> CanonicalRecord:
        return CanonicalRecord(
            id=f"linear_{raw['id']}",
            type="linear",
            content=raw.get("title", ""),
            source_name="Linear",
            tags=["linear"],
        )

    async def normalize_webhook(self, payload: dict[str, Any], token: str) -> Optional[CanonicalRecord]:
        data = payload.get("data") or {}
        if not data:
            return None
        return self.normalize(data)


class CountingPipeline(IngestionPipeline):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.ingest_calls = 0

    async def ingest(self, record: CanonicalRecord, user_id: Any) -> bool:
        self.ingest_calls += 1
        return await super().ingest(record, user_id)


def _items(*ids: str) -> list[dict[str, Any]]:
    return [{"id": i, "title": f"Issue {i}"} for i in ids]


def _build(session_factory, adapter: BaseAdapter, max_retries: int = 3):
    queue = JobQueue(session_factory, max_retries=max_retries)
    credentials = CredentialStore(session_factory, static_api_keys={})
    pipeline = CountingPipeline(session_factory)
    orchestrator = SyncOrchestrator(
        session_factory,
        queue=queue,
        credentials=credentials,
        adapters={adapter.provider: adapter},
        pipeline=pipeline,
        worker_id="worker-test",
    )
    return orchestrator, queue, pipeline


async def _claim_and_process(orchestrator: SyncOrchestrator, job: SyncJob) -> Optional[str]:
    claimed = await orchestrator.queue.claim(job.id, orchestrator.worker_id)
    assert claimed is not None
    return await orchestrator.process_job(claimed)


async def _reload(session_factory, model, row_id):
    async with session_factory() as session:
        return await session.get(model, row_id)


async def _entry_ids(session_factory) -> list[str]:
    async with session_factory() as session:
        result = await session.execute(select(ActivityEntry.external_id).order_by(ActivityEntry.external_id))
        return list(result.scalars().all())


def test_single_page_of_five_items_completes(session_factory, make_integration) -> None:
    adapter = ScriptedAdapter({None: Page(items=_items("1", "2", "3", "4", "5"), next_cursor="c1", has_more=False)})
    orchestrator, queue, pipeline = _build(session_factory, adapter)

    async def _run():
        integration = await make_integration()
        job = await queue.enqueue(integration.id, JobType.FULL_SYNC)
        status = await _claim_and_process(orchestrator, job)
        return (
            status,
            await queue.get(job.id),
            await _reload(session_factory, Integration, integration.id),
            await _entry_ids(session_factory),
        )

    status, job, integration, entries = asyncio.run(_run())

    assert status == "completed"
    assert job.status == JobStatus.COMPLETED.value
    assert pipeline.ingest_calls == 5
    assert entries == ["linear_1", "linear_2", "linear_3", "linear_4", "linear_5"]
    assert integration.last_sync_at is not None
    assert integration.sync_cursor == "c1"


def test_cursor_follows_pages_in_order(session_factory, make_integration) -> None:
    adapter = ScriptedAdapter({
        None: Page(items=_items("1", "2"), next_cursor="c1", has_more=True),
        "c1": Page(items=_items("3", "4"), next_cursor="c2", has_more=False),
    })
    orchestrator, queue, _ = _build(session_factory, adapter)

    async def _run():
        integration = await make_integration()
        job = await queue.enqueue(integration.id, JobType.FULL_SYNC)
        await _claim_and_process(orchestrator, job)
        return await _reload(session_factory, Integration, integration.id)

    integration = asyncio.run(_run())

    assert adapter.calls == [(None, None), ("c1", None)]
    assert integration.sync_cursor == "c2"


def test_incremental_sync_resumes_from_stored_cursor(session_factory, make_integration) -> None:
    adapter = ScriptedAdapter({"c5": Page(items=_items("9"), next_cursor="c6", has_more=False)})
    orchestrator, queue, _ = _build(session_factory, adapter)

    async def _run():
        integration = await make_integration(sync_cursor="c5", last_sync_at=datetime(2026, 3, 1, 8, 30))
        job = await queue.enqueue(integration.id, JobType.INCREMENTAL_SYNC)
        return await _claim_and_process(orchestrator, job)

    assert asyncio.run(_run()) == "completed"
    assert adapter.calls == [("c5", "2026-03-01T08:30:00Z")]


def test_failed_item_keeps_cursor_at_start_of_page(session_factory, make_integration) -> None:
    adapter = ScriptedAdapter({
        None: Page(items=_items("1", "2"), next_cursor="c1", has_more=True),
        # Second item can't be normalized (no id)
        "c1": Page(items=[{"id": "3", "title": "ok"}, {"title": "broken"}, {"id": "5"}], next_cursor="c2", has_more=False),
    })
    orchestrator, queue, _ = _build(session_factory, adapter)

    async def _run():
        integration = await make_integration()
        job = await queue.enqueue(integration.id, JobType.FULL_SYNC)
        status = await _claim_and_process(orchestrator, job)
        return (
            status,
            await queue.get(job.id),
            await _reload(session_factory, Integration, integration.id),
            await _entry_ids(session_factory),
        )

    status, job, integration, entries = asyncio.run(_run())

    assert status == "retrying"
    assert "could not be normalized" in job.error_message
    assert integration.sync_cursor == "c1"
    assert integration.last_sync_at is None
    assert entries == ["linear_1", "linear_2", "linear_3"]


def test_transient_errors_fail_job_after_max_retries(session_factory, make_integration) -> None:
    adapter = ScriptedAdapter({None: TransientNetworkError("linear API error: 503", "linear")})
    orchestrator, queue, _ = _build(session_factory, adapter, max_retries=3)

    async def _run():
        integration = await make_integration()
        job = await queue.enqueue(integration.id, JobType.FULL_SYNC)
        statuses = []
        for _ in range(3):
            statuses.append(await _claim_and_process(orchestrator, job))
            async with session_factory() as session:
                await session.execute(
                    update(SyncJob).where(SyncJob.id == job.id).values(scheduled_at=utcnow() - timedelta(seconds=1))
                )
                await session.commit()
        return statuses, await queue.get(job.id)

    statuses, job = asyncio.run(_run())

    assert statuses == ["retrying", "retrying", "failed"]
    assert job.status == JobStatus.FAILED.value
    assert job.retry_count == 3


def test_invalid_credentials_fail_immediately_and_flag_integration(session_factory, make_integration) -> None:
    adapter = ScriptedAdapter({None: CredentialsInvalid("linear rejected the access token", "linear")})
    orchestrator, queue, _ = _build(session_factory, adapter)

    async def _run():
        integration = await make_integration()
        job = await queue.enqueue(integration.id, JobType.FULL_SYNC)
        status = await _claim_and_process(orchestrator, job)
        return status, await queue.get(job.id), await _reload(session_factory, Integration, integration.id)

    status, job, integration = asyncio.run(_run())

    assert status == "failed"
    assert job.retry_count == 1
    assert integration.needs_reauth is True
    assert integration.connection_status == "needs_reconnect"
    assert "rejected" in integration.last_error


def test_inactive_integration_job_is_failed(session_factory, make_integration) -> None:
    adapter = ScriptedAdapter({})
    orchestrator, queue, _ = _build(session_factory, adapter)

    async def _run():
        integration = await make_integration(is_active=False)
        job = await queue.enqueue(integration.id, JobType.FULL_SYNC)
        return await _claim_and_process(orchestrator, job)

    assert asyncio.run(_run()) == "failed"
    assert adapter.calls == []


def test_recurring_job_schedules_next_run(session_factory, make_integration) -> None:
    adapter = ScriptedAdapter({None: Page(items=[], next_cursor=None, has_more=False)})
    orchestrator, queue, _ = _build(session_factory, adapter)

    async def _run():
        integration = await make_integration()
        job = await queue.schedule_recurring(integration.id, interval_minutes=15)
        async with session_factory() as session:
            await session.execute(update(SyncJob).where(SyncJob.id == job.id).values(scheduled_at=utcnow()))
            await session.commit()
        await _claim_and_process(orchestrator, job)
        return await queue.list_for_integration(integration.id)

    jobs = asyncio.run(_run())

    assert len(jobs) == 2
    statuses = sorted(job.status for job in jobs)
    assert statuses == ["completed", "pending"]
    assert all(job.is_recurring for job in jobs)


def test_webhook_job_ingests_and_marks_event_processed(session_factory, make_integration) -> None:
    adapter = ScriptedAdapter({})
    orchestrator, queue, pipeline = _build(session_factory, adapter)

    async def _run():
        integration = await make_integration()
        event = WebhookEvent(provider="linear", delivery_id="d-1", payload={})
        async with session_factory() as session:
            session.add(event)
            await session.commit()
        job = await queue.enqueue(
            integration.id,
            JobType.WEBHOOK_EVENT,
            payload={"event_data": {"data": {"id": "77", "title": "Pushed"}}, "webhook_event_id": str(event.id)},
            webhook_event_id=event.id,
        )
        status = await _claim_and_process(orchestrator, job)
        return status, await _reload(session_factory, WebhookEvent, event.id), await _entry_ids(session_factory)

    status, event, entries = asyncio.run(_run())

    assert status == "completed"
    assert event.processed is True
    assert event.processed_at is not None
    assert entries == ["linear_77"]
    assert adapter.calls == []


def test_run_once_processes_due_jobs(session_factory, make_integration) -> None:
    adapter = ScriptedAdapter({None: Page(items=_items("1"), next_cursor=None, has_more=False)})
    orchestrator, queue, _ = _build(session_factory, adapter)

    async def _run():
        first = await make_integration()
        second = await make_integration()
        await queue.enqueue(first.id, JobType.FULL_SYNC)
        await queue.enqueue(second.id, JobType.FULL_SYNC)
        return await orchestrator.run_once(limit=5)

    summary = asyncio.run(_run())

    assert summary["processed"] == 2
    assert summary["completed"] == 2
    assert summary["reclaimed"] == 0


def test_retried_full_sync_resumes_from_saved_cursor(session_factory, make_integration) -> None:
    adapter = ScriptedAdapter({
        None: Page(items=_items("1", "2"), next_cursor="c1", has_more=True),
        "c1": TransientNetworkError("linear API error: 502", "linear"),
    })
    orchestrator, queue, pipeline = _build(session_factory, adapter)

    async def _run():
        integration = await make_integration()
        job = await queue.enqueue(integration.id, JobType.FULL_SYNC)
        first = await _claim_and_process(orchestrator, job)

        adapter.pages["c1"] = Page(items=_items("3"), next_cursor="c2", has_more=False)
        async with session_factory() as session:
            await session.execute(
                update(SyncJob).where(SyncJob.id == job.id).values(scheduled_at=utcnow() - timedelta(seconds=1))
            )
            await session.commit()
        second = await _claim_and_process(orchestrator, job)
        return first, second, await _reload(session_factory, Integration, integration.id), await _entry_ids(session_factory)

    first, second, integration, entries = asyncio.run(_run())

    assert (first, second) == ("retrying", "completed")
    assert adapter.calls == [(None, None), ("c1", None), ("c1", None)]
    assert pipeline.ingest_calls == 3
    assert entries == ["linear_1", "linear_2", "linear_3"]
    assert integration.sync_cursor == "c2"


def test_new_full_sync_starts_over_despite_stored_cursor(session_factory, make_integration) -> None:
    adapter = ScriptedAdapter({None: Page(items=_items("1"), next_cursor="c9", has_more=False)})
    orchestrator, queue, _ = _build(session_factory, adapter)

    async def _run():
        integration = await make_integration(sync_cursor="c5")
        job = await queue.enqueue(integration.id, JobType.FULL_SYNC)
        return await _claim_and_process(orchestrator, job)

    assert asyncio.run(_run()) == "completed"
    assert adapter.calls == [(None, None)]


def test_sync_renews_lease_between_pages(session_factory, make_integration) -> None:
    adapter = ScriptedAdapter({
        None: Page(items=_items("1"), next_cursor="c1", has_more=True),
        "c1": Page(items=_items("2"), next_cursor=None, has_more=False),
    })
    orchestrator, queue, _ = _build(session_factory, adapter)
    renewals: list[str] = []
    real_extend = queue.extend_lease

    async def counting_extend(job, worker_id):
        renewals.append(worker_id)
        return await real_extend(job, worker_id)

    queue.extend_lease = counting_extend

    async def _run():
        integration = await make_integration()
        job = await queue.enqueue(integration.id, JobType.FULL_SYNC)
        return await _claim_and_process(orchestrator, job)

    assert asyncio.run(_run()) == "completed"
    assert renewals == ["worker-test"]


def test_fanned_out_delivery_is_processed_after_last_job(session_factory, make_integration) -> None:
    adapter = ScriptedAdapter({})
    orchestrator, queue, _ = _build(session_factory, adapter)

    async def _run():
        first = await make_integration()
        second = await make_integration()
        event = WebhookEvent(provider="linear", delivery_id="d-fan", payload={})
        async with session_factory() as session:
            session.add(event)
            await session.commit()
        payload = {"event_data": {"data": {"id": "88", "title": "Shared"}}, "webhook_event_id": str(event.id)}
        jobs = [
            await queue.enqueue(integration.id, JobType.WEBHOOK_EVENT, payload=payload, webhook_event_id=event.id)
            for integration in (first, second)
        ]
        await _claim_and_process(orchestrator, jobs[0])
        after_first = await _reload(session_factory, WebhookEvent, event.id)
        await _claim_and_process(orchestrator, jobs[1])
        after_second = await _reload(session_factory, WebhookEvent, event.id)
        return after_first, after_second

    after_first, after_second = asyncio.run(_run())

    assert after_first.processed is False
    assert after_second.processed is True
