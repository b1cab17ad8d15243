"""
Extraction-and-Delivery Step.

Runs at most once per execution: resolves the owning agent and owner,
extracts the owner's active fields from the transcript, delivers the
row to the owner's Google Sheet (best effort), and finally marks the
execution's ``extracted_data`` as processed.

Nothing in here raises to the caller. Every failure is logged and
reported through ``ExtractionStepResult.outcome``; an extraction failure
leaves the record unprocessed so the next sync can retry it.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from src.logging_config import execution_id_var, get_logger
from src.schemas.execution import (
    CALL_METADATA_KEY,
    CUSTOM_FIELDS_KEY,
    DOCTOR_INFO_KEY,
    PROCESSED_AT_KEY,
    PROCESSED_KEY,
    SHEET_ERROR_KEY,
    SHEET_SYNCED_AT_KEY,
    SHEET_SYNCED_KEY,
    Execution,
)
from src.schemas.extraction import (
    LEGACY_DOCTOR_FIELDS,
    CallMetadata,
    DeliveryResult,
    DeliveryStatus,
    ExtractionOutcome,
    ExtractionStepResult,
)
from src.schemas.owner import Agent, Owner
from src.services.data_extraction import (
    DoctorInfoExtractor,
    FieldExtractor,
    has_meaningful_data,
    has_valid_doctor_info,
)
from src.services.sheet_sink import GoogleSheetsSink

logger = get_logger(__name__)


def build_call_metadata(execution: Execution, agent: Agent) -> CallMetadata:
    started = execution.started_at
    return CallMetadata(
        call_date=started.date().isoformat() if started else "",
        call_time=started.isoformat() if started else "",
        execution_id=execution.remote_execution_id,
        agent_name=agent.name,
    )


class ExtractionStep:
    """Extracts, delivers and marks one execution as processed."""

    def __init__(
        self,
        store: Any,
        extractor: FieldExtractor,
        sink: Optional[GoogleSheetsSink] = None,
        save_empty_results: bool = False,
        doctor_info_extractor: Optional[DoctorInfoExtractor] = None,
    ) -> None:
        self.store = store
        self.extractor = extractor
        self.sink = sink
        self.save_empty_results = save_empty_results
        # Only set for deployments still on the fixed five-field dashboards
        self.doctor_info_extractor = doctor_info_extractor

    async def process(self, execution: Execution, force_save: bool = False) -> ExtractionStepResult:
        remote_id = execution.remote_execution_id
        token = execution_id_var.set(remote_id)
        try:
            return await self._process(execution, force_save)
        finally:
            execution_id_var.reset(token)

    async def _process(self, execution: Execution, force_save: bool) -> ExtractionStepResult:
        remote_id = execution.remote_execution_id

        try:
            # The in-hand copy may be stale (e.g. listed before a concurrent run)
            current = await self.store.get_execution(remote_id) or execution
            if current.extraction_processed:
                return ExtractionStepResult(remote_execution_id=remote_id, outcome=ExtractionOutcome.ALREADY_PROCESSED)

            if not current.has_transcript:
                return ExtractionStepResult(remote_execution_id=remote_id, outcome=ExtractionOutcome.NO_TRANSCRIPT)

            agent = await self.store.get_agent(current.agent_id)
            owner = await self.store.get_owner(agent.owner_id) if agent else None
            if agent is None or owner is None:
                logger.warning(
                    "extraction_owner_not_found",
                    agent_found=agent is not None,
                    agent_ref=current.agent_id,
                )
                return ExtractionStepResult(remote_execution_id=remote_id, outcome=ExtractionOutcome.MISSING_OWNER)

            fields = await self.store.list_active_fields(owner.id)
        except Exception as e:
            # Left unprocessed; the next sync or backfill retries it
            logger.error("extraction_lookup_failed", error=str(e), error_type=type(e).__name__)
            return ExtractionStepResult(remote_execution_id=remote_id, outcome=ExtractionOutcome.LOOKUP_FAILED)

        if not fields:
            if self.doctor_info_extractor is not None:
                return await self._process_doctor_info(current, agent, owner, force_save)
            logger.info("extraction_skipped_no_active_fields", owner_id=owner.id)
            return ExtractionStepResult(remote_execution_id=remote_id, outcome=ExtractionOutcome.NO_ACTIVE_FIELDS)

        descriptors = [field.to_descriptor() for field in fields]
        try:
            values = await self.extractor.extract(current.transcript, descriptors)
        except Exception as e:
            logger.error("extraction_failed", error=str(e), error_type=type(e).__name__)
            return ExtractionStepResult(remote_execution_id=remote_id, outcome=ExtractionOutcome.EXTRACTION_FAILED)

        if not has_meaningful_data(values) and not (force_save or self.save_empty_results):
            logger.info("extraction_found_nothing", fields=len(descriptors))
            return ExtractionStepResult(
                remote_execution_id=remote_id,
                outcome=ExtractionOutcome.NO_MEANINGFUL_DATA,
                values=values,
            )

        metadata = build_call_metadata(current, agent)
        row = [values[d.name] for d in descriptors] + metadata.as_row()
        return await self._deliver_and_mark(current, owner, row, metadata, {CUSTOM_FIELDS_KEY: values}, values)

    async def _process_doctor_info(
        self, execution: Execution, agent: Agent, owner: Owner, force_save: bool
    ) -> ExtractionStepResult:
        remote_id = execution.remote_execution_id
        try:
            info = await self.doctor_info_extractor.extract(execution.transcript)
        except Exception as e:
            logger.error("doctor_info_extraction_failed", error=str(e))
            return ExtractionStepResult(remote_execution_id=remote_id, outcome=ExtractionOutcome.EXTRACTION_FAILED)

        if not has_valid_doctor_info(info) and not (force_save or self.save_empty_results):
            return ExtractionStepResult(
                remote_execution_id=remote_id,
                outcome=ExtractionOutcome.NO_MEANINGFUL_DATA,
                values=info,
            )

        metadata = build_call_metadata(execution, agent)
        row = [info[key] for key in LEGACY_DOCTOR_FIELDS] + metadata.as_row()
        return await self._deliver_and_mark(execution, owner, row, metadata, {DOCTOR_INFO_KEY: info}, info)

    async def _deliver(self, owner: Owner, row: list[str]) -> DeliveryResult:
        if self.sink is None:
            return DeliveryResult(status=DeliveryStatus.SKIPPED, error="No Google Sheet connected")
        try:
            return await self.sink.append_row(owner, row)
        except Exception as e:
            logger.error("sheet_delivery_error", owner_id=owner.id, error=str(e))
            return DeliveryResult(status=DeliveryStatus.FAILED, error=str(e))

    async def _deliver_and_mark(
        self,
        execution: Execution,
        owner: Owner,
        row: list[str],
        metadata: CallMetadata,
        results: dict[str, Any],
        values: dict[str, str],
    ) -> ExtractionStepResult:
        remote_id = execution.remote_execution_id
        delivery = await self._deliver(owner, row)
        processed_at = datetime.now(timezone.utc)

        extracted = dict(execution.extracted_data)
        extracted.update(results)
        extracted[CALL_METADATA_KEY] = metadata.model_dump()
        extracted[PROCESSED_KEY] = True
        extracted[PROCESSED_AT_KEY] = processed_at.isoformat()
        extracted[SHEET_SYNCED_KEY] = delivery.delivered
        if delivery.delivered:
            extracted[SHEET_SYNCED_AT_KEY] = processed_at.isoformat()
            extracted.pop(SHEET_ERROR_KEY, None)
        elif delivery.status == DeliveryStatus.FAILED:
            extracted[SHEET_ERROR_KEY] = delivery.error

        try:
            await self.store.update_extracted_data(remote_id, extracted)
        except Exception as e:
            logger.error("extraction_persist_failed", error=str(e))
            return ExtractionStepResult(
                remote_execution_id=remote_id,
                outcome=ExtractionOutcome.PERSIST_FAILED,
                values=values,
                delivery=delivery,
            )

        logger.info(
            "extraction_processed",
            delivery=delivery.status.value,
            fields=len(values),
        )
        return ExtractionStepResult(
            remote_execution_id=remote_id,
            outcome=ExtractionOutcome.PROCESSED,
            values=values,
            delivery=delivery,
            processed_at=processed_at,
        )
