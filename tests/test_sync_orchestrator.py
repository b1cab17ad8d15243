"""
Tests for the sync orchestrator: pagination, per-record and per-agent
failure isolation, and batched backfill.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.exceptions import PlatformError
from src.schemas.execution import PROCESSED_KEY, SHEET_SYNCED_KEY, ExecutionPage
from src.schemas.extraction import ExtractionOutcome, ExtractionStepResult
from src.schemas.owner import Agent
from src.schemas.sync import AgentSyncState
from src.services.data_extraction import FieldExtractor
from src.services.extraction_pipeline import ExtractionStep
from src.services.platform_client import PlatformClient
from src.services.reconciler import Reconciler
from src.services.sync_orchestrator import SyncOrchestrator


def _platform(*pages) -> MagicMock:
    platform = MagicMock(spec=PlatformClient)
    platform.list_executions = AsyncMock(side_effect=list(pages))
    return platform


def _orchestrator(store, platform, step, **kwargs) -> SyncOrchestrator:
    return SyncOrchestrator(
        store=store,
        platform=platform,
        reconciler=Reconciler(store, step),
        extraction_step=step,
        **kwargs,
    )


@pytest.fixture
def step(store, backend, sink) -> ExtractionStep:
    return ExtractionStep(store, FieldExtractor(backend), sink)


@pytest.mark.asyncio
async def test_pages_are_fetched_until_has_more_is_false(store, step, make_remote):
    platform = _platform(
        ExecutionPage(records=[make_remote("E1"), make_remote("E2")], has_more=True),
        ExecutionPage(records=[make_remote("E3")], has_more=True),
        ExecutionPage(records=[make_remote("E4")], has_more=False),
    )

    report = await _orchestrator(store, platform, step, page_size=2).sync_all()

    assert platform.list_executions.await_count == 3
    pages = [call.kwargs["page_number"] for call in platform.list_executions.await_args_list]
    assert pages == [1, 2, 3]
    assert all(call.kwargs["page_size"] == 2 for call in platform.list_executions.await_args_list)

    result = report.agents[0]
    assert result.state == AgentSyncState.DONE
    assert result.pages_fetched == 3
    assert result.executions_synced == 4
    assert set(store.executions) == {"E1", "E2", "E3", "E4"}
    assert report.trace_id


@pytest.mark.asyncio
async def test_each_page_is_reconciled_before_the_next_fetch(store, make_remote):
    events: list[str] = []

    async def list_executions(remote_agent_id, page_number, page_size):
        events.append(f"fetch-{page_number}")
        return ExecutionPage(records=[make_remote(f"E{page_number}")], has_more=page_number < 2)

    reconciler = MagicMock(spec=Reconciler)

    async def reconcile(agent, record):
        events.append(f"reconcile-{record['id']}")

    reconciler.reconcile = AsyncMock(side_effect=reconcile)
    platform = MagicMock(spec=PlatformClient)
    platform.list_executions = AsyncMock(side_effect=list_executions)
    orchestrator = SyncOrchestrator(store, platform, reconciler, MagicMock(spec=ExtractionStep))

    await orchestrator.sync_all()

    assert events == ["fetch-1", "reconcile-E1", "fetch-2", "reconcile-E2"]


@pytest.mark.asyncio
async def test_failing_record_does_not_stop_the_page(store, step, make_remote):
    platform = _platform(
        ExecutionPage(
            records=[make_remote("E1"), {"status": "completed"}, "garbage", make_remote("E2")],
            has_more=False,
        ),
    )

    report = await _orchestrator(store, platform, step).sync_all()

    result = report.agents[0]
    assert result.state == AgentSyncState.DONE
    assert result.executions_synced == 2
    assert result.executions_failed == 2
    assert set(store.executions) == {"E1", "E2"}


@pytest.mark.asyncio
async def test_extraction_failure_does_not_fail_the_sync(store, backend, step, make_remote):
    backend.complete = AsyncMock(return_value="nonsense")
    platform = _platform(ExecutionPage(records=[make_remote("E1")], has_more=False))

    report = await _orchestrator(store, platform, step).sync_all()

    assert report.agents[0].executions_synced == 1
    assert not (await store.get_execution("E1")).extraction_processed


@pytest.mark.asyncio
async def test_first_page_failure_fails_only_that_agent(store, step, make_remote):
    store.add_agent(Agent(id="agent-2", remote_agent_id="remote-agent-2", owner_id="owner-1", name="Night Line"))

    async def list_executions(remote_agent_id, page_number, page_size):
        if remote_agent_id == "remote-agent-1":
            raise PlatformError("GET /v2/agent/remote-agent-1/executions returned 500", status_code=500)
        return ExecutionPage(records=[make_remote("E7")], has_more=False)

    platform = MagicMock(spec=PlatformClient)
    platform.list_executions = AsyncMock(side_effect=list_executions)

    report = await _orchestrator(store, platform, step).sync_all()

    by_agent = {a.remote_agent_id: a for a in report.agents}
    assert by_agent["remote-agent-1"].state == AgentSyncState.AGENT_FAILED
    assert "500" in by_agent["remote-agent-1"].error
    assert by_agent["remote-agent-2"].state == AgentSyncState.DONE
    assert by_agent["remote-agent-2"].executions_synced == 1
    assert report.agents_failed == 1
    assert report.summary()["executions_synced"] == 1


@pytest.mark.asyncio
async def test_later_page_failure_keeps_earlier_progress(store, step, make_remote):
    platform = _platform(
        ExecutionPage(records=[make_remote("E1")], has_more=True),
        PlatformError("timeout"),
    )

    result = (await _orchestrator(store, platform, step).sync_all()).agents[0]

    assert result.state == AgentSyncState.DONE
    assert result.partial is True
    assert result.pages_fetched == 1
    assert result.executions_synced == 1
    assert "E1" in store.executions


@pytest.mark.asyncio
async def test_unexpected_error_fails_agent_without_raising(store, step):
    platform = _platform(RuntimeError("connection reset"))

    result = (await _orchestrator(store, platform, step).sync_all()).agents[0]

    assert result.state == AgentSyncState.AGENT_FAILED
    assert result.error == "connection reset"


@pytest.mark.asyncio
async def test_no_agents_is_an_empty_report(step):
    store = MagicMock()
    store.list_agents = AsyncMock(return_value=[])
    platform = _platform()

    report = await _orchestrator(store, platform, step).sync_all()

    assert report.agents == []
    platform.list_executions.assert_not_awaited()


@pytest.mark.asyncio
async def test_sync_agent_by_remote_id(store, step, make_remote):
    platform = _platform(ExecutionPage(records=[make_remote("E1")], has_more=False))
    orchestrator = _orchestrator(store, platform, step)

    assert await orchestrator.sync_agent_by_remote_id("unknown") is None
    result = await orchestrator.sync_agent_by_remote_id("remote-agent-1")
    assert result.executions_synced == 1


@pytest.mark.asyncio
async def test_refresh_execution_fills_in_missing_id(store, step, agent, make_remote):
    details = make_remote("E5")
    del details["id"]
    platform = _platform()
    platform.get_execution = AsyncMock(return_value=details)

    execution = await _orchestrator(store, platform, step).refresh_execution(agent, "E5")

    platform.get_execution.assert_awaited_once_with("remote-agent-1", "E5")
    assert execution.remote_execution_id == "E5"
    assert execution.extraction_processed


# -- Backfill --

async def _seed_backlog(store, count: int) -> None:
    for i in range(count):
        await store.upsert_execution({
            "remote_execution_id": f"B{i}",
            "agent_id": "agent-1",
            "transcript": f"Call {i}: Dr. Rao from Pune",
            "extracted_data": {},
        })


@pytest.mark.asyncio
async def test_backfill_processes_in_fixed_width_batches(store, make_remote):
    await _seed_backlog(store, 12)
    await store.upsert_execution({
        "remote_execution_id": "done", "agent_id": "agent-1", "transcript": "x",
        "extracted_data": {PROCESSED_KEY: True, SHEET_SYNCED_KEY: True},
    })
    await store.upsert_execution({
        "remote_execution_id": "silent", "agent_id": "agent-1", "transcript": "", "extracted_data": {},
    })

    in_flight = 0
    peak = 0
    batches: list[list[str]] = []

    async def process(execution, force_save=False):
        nonlocal in_flight, peak
        if in_flight == 0:
            batches.append([])
        batches[-1].append(execution.remote_execution_id)
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0)
        in_flight -= 1
        return ExtractionStepResult(
            remote_execution_id=execution.remote_execution_id, outcome=ExtractionOutcome.PROCESSED,
        )

    step = MagicMock(spec=ExtractionStep)
    step.process = AsyncMock(side_effect=process)
    orchestrator = SyncOrchestrator(store, _platform(), Reconciler(store, step), step, backfill_batch_size=5)

    report = await orchestrator.backfill("owner-1")

    assert report.total_found == 12
    assert report.processed == 12
    assert peak <= 5
    assert [len(b) for b in batches] == [5, 5, 2]


@pytest.mark.asyncio
async def test_backfill_counts_outcomes_and_survives_exceptions(store):
    await _seed_backlog(store, 4)
    outcomes = {
        "B0": ExtractionOutcome.PROCESSED,
        "B1": ExtractionOutcome.EXTRACTION_FAILED,
        "B2": ExtractionOutcome.NO_MEANINGFUL_DATA,
    }

    async def process(execution, force_save=False):
        if execution.remote_execution_id == "B3":
            raise RuntimeError("unexpected")
        return ExtractionStepResult(
            remote_execution_id=execution.remote_execution_id,
            outcome=outcomes[execution.remote_execution_id],
        )

    step = MagicMock(spec=ExtractionStep)
    step.process = AsyncMock(side_effect=process)
    orchestrator = SyncOrchestrator(store, _platform(), Reconciler(store, step), step)

    report = await orchestrator.backfill("owner-1")

    assert (report.processed, report.failed, report.skipped) == (1, 2, 1)


@pytest.mark.asyncio
async def test_backfill_end_to_end_marks_records_processed(store, step, sink):
    await _seed_backlog(store, 3)

    report = await _orchestrator(store, _platform(), step).backfill("owner-1")

    assert report.processed == 3
    assert sink.append_row.await_count == 3
    assert await store.list_backfill_candidates("owner-1") == []


@pytest.mark.asyncio
async def test_store_read_error_in_extraction_still_counts_record_synced(store, step, make_remote):
    store.list_active_fields = AsyncMock(side_effect=ConnectionError("supabase read timed out"))
    platform = _platform(ExecutionPage(records=[make_remote("E2")], has_more=False))

    result = (await _orchestrator(store, platform, step).sync_all()).agents[0]

    assert result.state == AgentSyncState.DONE
    assert result.executions_synced == 1
    assert result.executions_failed == 0
    stored = await store.get_execution("E2")
    assert stored is not None
    assert not stored.extraction_processed


@pytest.mark.asyncio
async def test_backfill_counts_lookup_failures_as_failed(store, step):
    await _seed_backlog(store, 2)
    store.list_active_fields = AsyncMock(side_effect=ConnectionError("supabase read timed out"))

    report = await _orchestrator(store, _platform(), step).backfill("owner-1")

    assert (report.processed, report.failed, report.skipped) == (0, 2, 0)
