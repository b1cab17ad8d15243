"""
API Router: On-Demand Sync Endpoints.

Triggers full syncs, single-agent syncs, backfills and sheet header
rewrites, and reports aggregate counts. The pipeline itself never raises
for per-record problems; these handlers only turn missing entities and
sheet errors into HTTP errors.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from src.exceptions import MalformedRecordError, PlatformError, SheetSinkError
from src.logging_config import get_logger
from src.services.service_factory import ServiceFactory, SyncServices

logger = get_logger(__name__)
router = APIRouter(tags=["Sync"])

# Shared services (built on first use)
_services: SyncServices | None = None


def get_services() -> SyncServices:
    global _services
    if _services is None:
        _services = ServiceFactory.create_services()
    return _services


async def close_services() -> None:
    global _services
    if _services is not None:
        await _services.close()
        _services = None


@router.post("/sync")
async def sync_all(services: SyncServices = Depends(get_services)) -> dict[str, Any]:
    """Sync executions for every tracked agent."""
    report = await services.orchestrator.sync_all()
    return {**report.summary(), "details": [a.model_dump() for a in report.agents]}


@router.post("/sync/agents/{remote_agent_id}")
async def sync_agent(
    remote_agent_id: str, services: SyncServices = Depends(get_services)
) -> dict[str, Any]:
    """Sync executions for one tracked agent."""
    result = await services.orchestrator.sync_agent_by_remote_id(remote_agent_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Agent not tracked")
    return result.model_dump()


@router.post("/sync/agents/{remote_agent_id}/executions/{remote_execution_id}")
async def refresh_execution(
    remote_agent_id: str,
    remote_execution_id: str,
    services: SyncServices = Depends(get_services),
) -> dict[str, Any]:
    """Re-fetch one execution's details from the platform and reconcile it."""
    agent = await services.store.get_agent_by_remote_id(remote_agent_id)
    if agent is None:
        raise HTTPException(status_code=404, detail="Agent not tracked")

    try:
        execution = await services.orchestrator.refresh_execution(agent, remote_execution_id)
    except PlatformError as e:
        status = 404 if e.status_code == 404 else 502
        raise HTTPException(status_code=status, detail=str(e))
    except MalformedRecordError as e:
        logger.error("refresh_execution_malformed", execution_id=remote_execution_id, error=str(e))
        raise HTTPException(status_code=502, detail=str(e))
    return execution.model_dump(mode="json")


@router.get("/platform/agents/{remote_agent_id}/verify")
async def verify_agent(
    remote_agent_id: str, services: SyncServices = Depends(get_services)
) -> dict[str, Any]:
    """Check that an agent id exists on the platform before it is tracked."""
    try:
        verification = await services.platform.verify_agent(remote_agent_id)
    except PlatformError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return verification.model_dump()


@router.post("/owners/{owner_id}/backfill")
async def backfill(owner_id: str, services: SyncServices = Depends(get_services)) -> dict[str, Any]:
    """Run extraction for stored executions that never reached the owner's sheet."""
    owner = await services.store.get_owner(owner_id)
    if owner is None:
        raise HTTPException(status_code=404, detail="Owner not found")

    report = await services.orchestrator.backfill(owner_id)
    return {
        **report.model_dump(),
        "message": f"Processed {report.processed} of {report.total_found} past executions",
    }


@router.post("/owners/{owner_id}/sheet/headers")
async def initialize_sheet_headers(
    owner_id: str, services: SyncServices = Depends(get_services)
) -> dict[str, Any]:
    """Rewrite the header row of the owner's sheet from their active fields."""
    owner = await services.store.get_owner(owner_id)
    if owner is None:
        raise HTTPException(status_code=404, detail="Owner not found")

    fields = await services.store.list_active_fields(owner_id)
    try:
        headers = await services.sink.initialize_headers(owner, [f.field_name for f in fields])
    except SheetSinkError as e:
        logger.error("initialize_headers_error", owner_id=owner_id, error=str(e))
        raise HTTPException(status_code=502, detail=str(e))
    return {"headers": headers}


@router.get("/owners/{owner_id}/sheet/validate")
async def validate_sheet(owner_id: str, services: SyncServices = Depends(get_services)) -> dict[str, Any]:
    """Check that the owner's stored credential can open their sheet."""
    owner = await services.store.get_owner(owner_id)
    if owner is None:
        raise HTTPException(status_code=404, detail="Owner not found")

    try:
        return await services.sink.validate_access(owner)
    except SheetSinkError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/owners/{owner_id}/executions/stats")
async def execution_stats(owner_id: str, services: SyncServices = Depends(get_services)) -> dict[str, Any]:
    """Totals of calls, cost and conversation time, plus counts per status."""
    stats = await services.store.execution_stats(owner_id)
    return stats.model_dump()
