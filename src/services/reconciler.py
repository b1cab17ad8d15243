"""
Record Reconciler.

Maps a raw platform execution onto the stored ``executions`` shape,
merges it with whatever is already stored for the same remote id, and
upserts it. Locally computed extraction results always survive a
re-sync: once ``extracted_data`` is marked processed, the stored keys
are laid over whatever the platform sends.
"""

from __future__ import annotations

from typing import Any, Optional

from src.exceptions import MalformedRecordError
from src.logging_config import get_logger
from src.schemas.execution import PROCESSED_KEY, Execution, ExecutionStatus
from src.schemas.owner import Agent
from src.services.extraction_pipeline import ExtractionStep

logger = get_logger(__name__)

# The platform has reported call length under each of these names over time.
# First present, non-null value wins.
DURATION_FIELDS = (
    "conversation_duration",
    "conversation_time",
    "duration",
    "call_duration",
    "call_duration_seconds",
    "billable_duration",
)

# Costs arrive in minor units (cents)
COST_FIELDS = ("total_cost", "cost")


def first_present(record: dict[str, Any], keys: tuple[str, ...], default: Any = None) -> Any:
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return default


def _number(value: Any, field: str, execution_id: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise MalformedRecordError(f"Execution {execution_id} has non-numeric {field}: {value!r}") from e


def normalize_remote_execution(remote: Any, agent_id: str) -> dict[str, Any]:
    """
    Build the document to persist from one platform execution record.

    ``extracted_data`` is left out; the caller merges it separately.

    Raises:
        MalformedRecordError: the record is not an object, has no id, or
            carries a non-numeric cost/duration.
    """
    if not isinstance(remote, dict):
        raise MalformedRecordError(f"Execution record is not an object: {type(remote).__name__}")

    execution_id = remote.get("id") or remote.get("execution_id")
    if not execution_id:
        raise MalformedRecordError("Execution record has no id")
    execution_id = str(execution_id)

    cost = first_present(remote, COST_FIELDS)
    total_cost = _number(cost, "cost", execution_id) / 100 if cost is not None else 0.0
    duration = _number(first_present(remote, DURATION_FIELDS, 0), "duration", execution_id)

    telephony = remote.get("telephony_data")
    if not isinstance(telephony, dict):
        telephony = {}

    def telephony_value(key: str) -> Any:
        return telephony.get(key) or remote.get(key)

    return {
        "remote_execution_id": execution_id,
        "agent_id": agent_id,
        "status": remote.get("status") or ExecutionStatus.PENDING.value,
        "started_at": remote.get("created_at"),
        "ended_at": remote.get("updated_at"),
        "total_cost": total_cost,
        "conversation_time": duration,
        "transcript": remote.get("transcript") or "",
        "telephony_provider": telephony_value("provider"),
        "from_number": telephony_value("from_number"),
        "to_number": telephony_value("to_number"),
        "call_sid": telephony_value("call_sid"),
        "recording_url": telephony.get("recording_url"),
        "metadata": {**remote, "recording_url": telephony.get("recording_url")},
    }


def merge_extracted_data(
    remote: Any, previous: Optional[dict[str, Any]]
) -> dict[str, Any]:
    """
    Merge the platform's ``extracted_data`` with the stored compartment.

    Remote is the base. If the stored compartment is already processed,
    its keys are overlaid on top and win every collision. Otherwise the
    remote compartment (or an empty one) is used as-is.
    """
    base = dict(remote) if isinstance(remote, dict) else {}
    if previous and previous.get(PROCESSED_KEY):
        return {**base, **previous}
    return base


class Reconciler:
    """Merges remote records into the store and triggers extraction."""

    def __init__(self, store: Any, extraction_step: Optional[ExtractionStep] = None) -> None:
        self.store = store
        self.extraction_step = extraction_step

    async def reconcile(self, agent: Agent, remote: Any) -> Execution:
        """
        Upsert one remote execution and, if it has a transcript, run the
        extraction step on it before returning the stored record.
        """
        document = normalize_remote_execution(remote, agent.id)
        remote_id = document["remote_execution_id"]

        previous = await self.store.get_execution(remote_id)
        document["extracted_data"] = merge_extracted_data(
            remote.get("extracted_data"),
            previous.extracted_data if previous else None,
        )

        execution = await self.store.upsert_execution(document)
        logger.debug(
            "execution_reconciled",
            execution_id=remote_id,
            status=execution.status,
            created=previous is None,
        )

        if self.extraction_step is not None and execution.has_transcript:
            result = await self.extraction_step.process(execution)
            if result.processed_at is not None:
                execution = await self.store.get_execution(remote_id) or execution

        return execution
