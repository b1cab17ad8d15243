"""
Shared fixtures: an in-memory store seeded with one owner, one agent and
their extraction fields, plus builders for platform payloads.
"""

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.db import InMemoryStore
from src.schemas.extraction import DeliveryResult, DeliveryStatus, ExtractionFieldDefinition
from src.schemas.owner import Agent, Owner
from src.services.sheet_sink import GoogleSheetsSink

TRANSCRIPT = (
    "Agent: Hello, am I speaking with the clinic?\n"
    "User: Yes, this is Dr. Meera Rao from Sunrise Clinic in Pune. "
    "You can reach me at meera.rao@sunrise.example or +91 9876543210."
)


@pytest.fixture
def owner() -> Owner:
    return Owner(
        id="owner-1",
        name="Acme Outreach",
        email="ops@acme.example",
        google_authorized=True,
        google_sheet_id="sheet-123",
    )


@pytest.fixture
def agent() -> Agent:
    return Agent(id="agent-1", remote_agent_id="remote-agent-1", owner_id="owner-1", name="Front Desk")


@pytest.fixture
def store(owner: Owner, agent: Agent) -> InMemoryStore:
    db = InMemoryStore()
    db.add_owner(owner)
    db.add_agent(agent)
    db.add_field(ExtractionFieldDefinition(
        owner_id="owner-1", field_name="Doctor_Name", description="Full name of the doctor", order=1,
    ))
    db.add_field(ExtractionFieldDefinition(
        owner_id="owner-1", field_name="City", description="City of the clinic", order=2,
    ))
    db.add_field(ExtractionFieldDefinition(
        owner_id="owner-1", field_name="Budget", description="Monthly budget", order=0, is_active=False,
    ))
    return db


@pytest.fixture
def make_remote():
    """Build a platform execution payload."""
    def _make(execution_id: str = "E1", transcript: str = TRANSCRIPT, **overrides: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": execution_id,
            "status": "completed",
            "total_cost": 250,
            "conversation_duration": 42,
            "transcript": transcript,
            "created_at": "2024-05-01T10:15:00+00:00",
            "updated_at": "2024-05-01T10:16:00+00:00",
            "telephony_data": {
                "provider": "twilio",
                "from_number": "+15550001",
                "to_number": "+15550002",
                "call_sid": "CA123",
                "recording_url": "https://recordings.example/E1.mp3",
            },
        }
        payload.update(overrides)
        return payload
    return _make


@pytest.fixture
def backend() -> MagicMock:
    """Extraction backend double returning a fixed JSON reply."""
    mock = MagicMock()
    mock.complete = AsyncMock(return_value='{"Doctor_Name": "Dr. Meera Rao", "City": "Pune"}')
    return mock


@pytest.fixture
def sink() -> MagicMock:
    """Sheet sink double that always delivers."""
    mock = MagicMock(spec=GoogleSheetsSink)
    mock.append_row = AsyncMock(return_value=DeliveryResult(status=DeliveryStatus.DELIVERED))
    return mock
