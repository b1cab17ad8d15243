"""
Data models for synced executions (one remote call record each).
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

# Keys inside Execution.extracted_data owned by this service
PROCESSED_KEY = "_extraction_processed"
PROCESSED_AT_KEY = "_extraction_date"
CUSTOM_FIELDS_KEY = "custom_fields"
DOCTOR_INFO_KEY = "doctor_info"
CALL_METADATA_KEY = "call_metadata"
SHEET_SYNCED_KEY = "google_sheet_synced"
SHEET_SYNCED_AT_KEY = "google_sheet_synced_at"
SHEET_ERROR_KEY = "google_sheet_error"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CALL_DISCONNECTED = "call-disconnected"
    NO_ANSWER = "no-answer"
    BUSY = "busy"
    FAILED = "failed"
    CANCELED = "canceled"
    STOPPED = "stopped"
    ERROR = "error"


class Execution(BaseModel):
    """A persisted execution.

    ``status`` stays a plain string so statuses the platform adds later
    are stored verbatim instead of failing validation.
    """
    remote_execution_id: str
    agent_id: str
    status: str = ExecutionStatus.PENDING.value
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    total_cost: float = 0.0
    conversation_time: float = 0
    transcript: str = ""
    telephony_provider: Optional[str] = None
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    call_sid: Optional[str] = None
    recording_url: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    extracted_data: dict[str, Any] = Field(default_factory=dict)

    class Config:
        from_attributes = True

    @property
    def extraction_processed(self) -> bool:
        return bool(self.extracted_data.get(PROCESSED_KEY))

    @property
    def has_transcript(self) -> bool:
        return bool(self.transcript and self.transcript.strip())


class ExecutionPage(BaseModel):
    """One page of the platform's execution listing."""
    records: list[Any] = Field(default_factory=list)
    has_more: bool = False


class ExecutionStats(BaseModel):
    """Aggregate figures over an owner's executions."""
    total_executions: int = 0
    total_cost: float = 0.0
    total_conversation_time: float = 0
    by_status: dict[str, int] = Field(default_factory=dict)
