"""
Sync Orchestrator.

Drives execution sync for every tracked agent:

    fetching_page -> reconciling_page -> (next page while has_more) -> done
    fetching_page (first page fails) -> agent_failed

Agents are synced one after another and pages strictly in order: page
N+1 is only requested once every record of page N has been reconciled.
A failing record is logged, counted and skipped. Failing to fetch an
agent's first page fails that agent only; the remaining agents still
sync.

Backfill is the out-of-band path: it re-runs the extraction step over
stored executions that never reached the owner's sheet, in fixed-width
concurrent batches, without calling the platform.
"""

from __future__ import annotations

import asyncio
from typing import Any

from src.exceptions import PlatformError
from src.logging_config import agent_id_var, execution_id_var, generate_trace_id, get_logger, trace_id_var
from src.schemas.execution import Execution
from src.schemas.extraction import ExtractionOutcome
from src.schemas.owner import Agent
from src.schemas.sync import AgentSyncResult, AgentSyncState, BackfillReport, SyncReport
from src.services.extraction_pipeline import ExtractionStep
from src.services.platform_client import PlatformClient
from src.services.reconciler import Reconciler

logger = get_logger(__name__)

# Step outcomes that count against a backfill
FAILED_OUTCOMES = (
    ExtractionOutcome.LOOKUP_FAILED,
    ExtractionOutcome.EXTRACTION_FAILED,
    ExtractionOutcome.PERSIST_FAILED,
)


class SyncOrchestrator:
    """Paginated fetch-and-reconcile over all tracked agents."""

    def __init__(
        self,
        store: Any,
        platform: PlatformClient,
        reconciler: Reconciler,
        extraction_step: ExtractionStep,
        page_size: int = 50,
        backfill_batch_size: int = 5,
    ) -> None:
        self.store = store
        self.platform = platform
        self.reconciler = reconciler
        self.extraction_step = extraction_step
        self.page_size = page_size
        self.backfill_batch_size = backfill_batch_size

    # -- Full sync --

    async def sync_all(self) -> SyncReport:
        """Sync every agent in the store. Never raises for per-agent failures."""
        trace_id = trace_id_var.get("") or generate_trace_id()
        token = trace_id_var.set(trace_id)
        report = SyncReport(trace_id=trace_id)

        try:
            agents = await self.store.list_agents()
            if not agents:
                logger.warning("sync_no_agents")
                return report

            logger.info("sync_started", agents=len(agents))
            for agent in agents:
                report.agents.append(await self.sync_agent(agent))

            logger.info("sync_complete", **report.summary())
            return report
        finally:
            trace_id_var.reset(token)

    async def sync_agent(self, agent: Agent) -> AgentSyncResult:
        """Fetch and reconcile every page of one agent's executions."""
        token = agent_id_var.set(agent.remote_agent_id)
        result = AgentSyncResult(remote_agent_id=agent.remote_agent_id)
        page_number = 1

        try:
            logger.info("agent_sync_started", agent_name=agent.name)
            while True:
                result.state = AgentSyncState.FETCHING_PAGE
                try:
                    page = await self.platform.list_executions(
                        agent.remote_agent_id,
                        page_number=page_number,
                        page_size=self.page_size,
                    )
                except PlatformError as e:
                    if page_number == 1:
                        result.state = AgentSyncState.AGENT_FAILED
                        result.error = str(e)
                        logger.error("agent_sync_failed", error=str(e))
                        return result
                    # Without this page we cannot know whether more exist
                    result.partial = True
                    result.error = str(e)
                    logger.error("agent_page_fetch_failed", page=page_number, error=str(e))
                    break

                result.pages_fetched += 1
                result.state = AgentSyncState.RECONCILING_PAGE
                logger.info("agent_page_fetched", page=page_number, records=len(page.records))

                for record in page.records:
                    if await self._reconcile_record(agent, record):
                        result.executions_synced += 1
                    else:
                        result.executions_failed += 1

                if not page.has_more:
                    break
                page_number += 1

            result.state = AgentSyncState.DONE
            logger.info(
                "agent_sync_complete",
                pages=result.pages_fetched,
                synced=result.executions_synced,
                failed=result.executions_failed,
                partial=result.partial,
            )
            return result
        except Exception as e:
            # Store outages and the like: give up on this agent only
            result.state = AgentSyncState.AGENT_FAILED
            result.error = str(e)
            logger.error("agent_sync_failed", error=str(e), error_type=type(e).__name__)
            return result
        finally:
            agent_id_var.reset(token)

    async def _reconcile_record(self, agent: Agent, record: Any) -> bool:
        remote_id = (record.get("id") or record.get("execution_id")) if isinstance(record, dict) else None
        token = execution_id_var.set(str(remote_id or ""))
        try:
            await self.reconciler.reconcile(agent, record)
            return True
        except Exception as e:
            logger.error("execution_reconcile_failed", error=str(e), error_type=type(e).__name__)
            return False
        finally:
            execution_id_var.reset(token)

    async def sync_agent_by_remote_id(self, remote_agent_id: str) -> AgentSyncResult | None:
        agent = await self.store.get_agent_by_remote_id(remote_agent_id)
        if agent is None:
            logger.warning("sync_agent_not_tracked", remote_agent_id=remote_agent_id)
            return None
        return await self.sync_agent(agent)

    async def refresh_execution(self, agent: Agent, remote_execution_id: str) -> Execution:
        """Re-fetch one execution's full details and reconcile it."""
        details = await self.platform.get_execution(agent.remote_agent_id, remote_execution_id)
        if isinstance(details, dict) and not (details.get("id") or details.get("execution_id")):
            details = {**details, "id": remote_execution_id}
        return await self.reconciler.reconcile(agent, details)

    # -- Backfill --

    async def backfill(self, owner_id: str) -> BackfillReport:
        """
        Drive extraction for an owner's stored executions that have a
        transcript but were never delivered to the sheet.

        Batches of ``backfill_batch_size`` run concurrently; the next
        batch starts only after every unit of the previous one finished.
        """
        executions = await self.store.list_backfill_candidates(owner_id)
        report = BackfillReport(owner_id=owner_id, total_found=len(executions))
        logger.info("backfill_started", owner_id=owner_id, candidates=len(executions))

        for start in range(0, len(executions), self.backfill_batch_size):
            batch = executions[start:start + self.backfill_batch_size]
            outcomes = await asyncio.gather(
                *(self.extraction_step.process(execution) for execution in batch),
                return_exceptions=True,
            )
            for execution, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    report.failed += 1
                    logger.error(
                        "backfill_execution_failed",
                        execution_id=execution.remote_execution_id,
                        error=str(outcome),
                    )
                elif outcome.outcome == ExtractionOutcome.PROCESSED:
                    report.processed += 1
                elif outcome.outcome in FAILED_OUTCOMES:
                    report.failed += 1
                else:
                    report.skipped += 1

        logger.info(
            "backfill_complete",
            owner_id=owner_id,
            processed=report.processed,
            skipped=report.skipped,
            failed=report.failed,
        )
        return report
