"""
Reports returned by the sync orchestrator to its driving caller.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class AgentSyncState(str, Enum):
    FETCHING_PAGE = "fetching_page"
    RECONCILING_PAGE = "reconciling_page"
    DONE = "done"
    AGENT_FAILED = "agent_failed"


class AgentSyncResult(BaseModel):
    remote_agent_id: str
    state: AgentSyncState = AgentSyncState.FETCHING_PAGE
    pages_fetched: int = 0
    executions_synced: int = 0
    executions_failed: int = 0
    partial: bool = False  # a page after the first could not be fetched
    error: Optional[str] = None


class SyncReport(BaseModel):
    trace_id: str = ""
    agents: list[AgentSyncResult] = Field(default_factory=list)

    @property
    def executions_synced(self) -> int:
        return sum(a.executions_synced for a in self.agents)

    @property
    def executions_failed(self) -> int:
        return sum(a.executions_failed for a in self.agents)

    @property
    def agents_failed(self) -> int:
        return sum(1 for a in self.agents if a.state == AgentSyncState.AGENT_FAILED)

    def summary(self) -> dict[str, int | str]:
        return {
            "trace_id": self.trace_id,
            "agents": len(self.agents),
            "agents_failed": self.agents_failed,
            "executions_synced": self.executions_synced,
            "executions_failed": self.executions_failed,
        }


class BackfillReport(BaseModel):
    owner_id: str
    total_found: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
