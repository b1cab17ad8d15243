"""
Data models for user-defined extraction fields and extraction results.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

NOT_FOUND = "Not Found"

# Trailing sheet columns appended after the owner's active field names
METADATA_COLUMNS = ["Call_Date", "Call_Time", "Execution_ID", "Agent_Name"]

LEGACY_DOCTOR_FIELDS = [
    "doctor_name",
    "clinic_hospital_name",
    "phone_number",
    "email_id",
    "city",
]


class FieldDescriptor(BaseModel):
    """What the extractor needs to know about one field."""
    name: str
    instruction: str


class ExtractionFieldDefinition(BaseModel):
    """An owner's schema entry naming one datum to pull out of transcripts."""
    owner_id: str
    field_name: str = Field(min_length=1, max_length=50, pattern=r"^[A-Za-z0-9_]+$")
    description: str = Field(min_length=1, max_length=500)
    order: int = 0
    is_active: bool = True

    class Config:
        from_attributes = True

    def to_descriptor(self) -> FieldDescriptor:
        return FieldDescriptor(name=self.field_name, instruction=self.description)


class CallMetadata(BaseModel):
    """Metadata columns written after the extracted values."""
    call_date: str = ""
    call_time: str = ""
    execution_id: str = ""
    agent_name: str = ""

    def as_row(self) -> list[str]:
        return [self.call_date, self.call_time, self.execution_id, self.agent_name]


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    SKIPPED = "skipped"
    FAILED = "failed"


class DeliveryResult(BaseModel):
    """Outcome of appending one row to the owner's sheet."""
    status: DeliveryStatus
    error: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED


class ExtractionOutcome(str, Enum):
    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    NO_TRANSCRIPT = "no_transcript"
    MISSING_OWNER = "missing_owner"
    NO_ACTIVE_FIELDS = "no_active_fields"
    LOOKUP_FAILED = "lookup_failed"
    EXTRACTION_FAILED = "extraction_failed"
    NO_MEANINGFUL_DATA = "no_meaningful_data"
    PERSIST_FAILED = "persist_failed"


class ExtractionStepResult(BaseModel):
    """What the extraction-and-delivery step did for one execution."""
    remote_execution_id: str
    outcome: ExtractionOutcome
    values: dict[str, str] = Field(default_factory=dict)
    delivery: Optional[DeliveryResult] = None
    processed_at: Optional[datetime] = None
