"""
Data models for dashboard owners and the agents they track.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class Owner(BaseModel):
    """A dashboard user, including their Google Sheets binding."""
    id: str
    name: str = ""
    email: str = ""
    google_authorized: bool = False
    google_sheet_id: Optional[str] = None
    google_access_token: Optional[str] = None   # Fernet-encrypted
    google_refresh_token: Optional[str] = None  # Fernet-encrypted
    google_token_expiry: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def has_sheet_destination(self) -> bool:
        return self.google_authorized and bool(self.google_sheet_id)


class Agent(BaseModel):
    """A voice agent on the remote platform that this dashboard syncs."""
    id: str
    remote_agent_id: str
    owner_id: str
    name: str = ""

    class Config:
        from_attributes = True


class AgentVerification(BaseModel):
    """Result of checking that an agent id exists on the remote platform."""
    exists: bool
    agent_name: Optional[str] = None
    agent_status: Optional[str] = None
    created_at: Optional[str] = None
    error: Optional[str] = None
