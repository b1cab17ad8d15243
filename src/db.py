"""
Execution Store.

Typed helper methods over the four tables the sync pipeline touches:
``owners``, ``agents``, ``extraction_fields`` and ``executions``.

``SupabaseStore`` wraps the official Supabase Python client. When no
Supabase credentials are configured, ``get_db()`` hands out an
``InMemoryStore`` with the same methods so the service (and the test
suite) can run locally without a database.

Every write is scoped to a single execution keyed by its remote id, so
each write is atomic on its own and no cross-record transaction exists.
"""

from __future__ import annotations

import copy
from functools import lru_cache
from typing import Any, Optional

from supabase import Client, create_client

from src.config import get_settings
from src.logging_config import get_logger
from src.schemas.execution import SHEET_SYNCED_KEY, Execution, ExecutionStats
from src.schemas.extraction import ExtractionFieldDefinition
from src.schemas.owner import Agent, Owner

logger = get_logger(__name__)


def _stats_from_rows(rows: list[dict[str, Any]]) -> ExecutionStats:
    stats = ExecutionStats()
    for row in rows:
        stats.total_executions += 1
        stats.total_cost += float(row.get("total_cost") or 0)
        stats.total_conversation_time += float(row.get("conversation_time") or 0)
        status = row.get("status") or "pending"
        stats.by_status[status] = stats.by_status.get(status, 0) + 1
    stats.total_cost = round(stats.total_cost, 4)
    return stats


class SupabaseStore:
    """Wrapper around the official Supabase Python client."""

    def __init__(self, client: Client) -> None:
        self._client = client

    @classmethod
    def from_settings(cls) -> SupabaseStore:
        settings = get_settings()
        try:
            client = create_client(settings.supabase_url, settings.supabase_service_key)
            logger.info("Supabase client initialized", url=settings.supabase_url)
        except Exception as e:
            logger.error("Failed to initialize Supabase client", error=str(e))
            raise
        return cls(client)

    @property
    def client(self) -> Client:
        """Access the raw Supabase client."""
        return self._client

    # -- Agents & owners --

    async def list_agents(self) -> list[Agent]:
        response = self.client.table("agents").select("*").order("created_at").execute()
        return [Agent.model_validate(row) for row in response.data or []]

    async def list_agents_for_owner(self, owner_id: str) -> list[Agent]:
        response = (
            self.client.table("agents")
            .select("*")
            .eq("owner_id", owner_id)
            .execute()
        )
        return [Agent.model_validate(row) for row in response.data or []]

    async def get_agent(self, agent_id: str) -> Agent | None:
        try:
            response = (
                self.client.table("agents")
                .select("*")
                .eq("id", agent_id)
                .limit(1)
                .execute()
            )
            return Agent.model_validate(response.data[0]) if response.data else None
        except Exception as e:
            logger.error("Error fetching agent", id=agent_id, error=str(e))
            return None

    async def get_agent_by_remote_id(self, remote_agent_id: str) -> Agent | None:
        try:
            response = (
                self.client.table("agents")
                .select("*")
                .eq("remote_agent_id", remote_agent_id)
                .limit(1)
                .execute()
            )
            return Agent.model_validate(response.data[0]) if response.data else None
        except Exception as e:
            logger.error("Error fetching agent", remote_agent_id=remote_agent_id, error=str(e))
            return None

    async def get_owner(self, owner_id: str) -> Owner | None:
        try:
            response = (
                self.client.table("owners")
                .select("*")
                .eq("id", owner_id)
                .limit(1)
                .execute()
            )
            return Owner.model_validate(response.data[0]) if response.data else None
        except Exception as e:
            logger.error("Error fetching owner", id=owner_id, error=str(e))
            return None

    async def update_owner(self, owner_id: str, updates: dict[str, Any]) -> Owner | None:
        """Persist owner changes (e.g. a refreshed Google access token)."""
        response = (
            self.client.table("owners")
            .update(updates)
            .eq("id", owner_id)
            .execute()
        )
        return Owner.model_validate(response.data[0]) if response.data else None

    async def list_active_fields(self, owner_id: str) -> list[ExtractionFieldDefinition]:
        """Active extraction fields for an owner, in display order."""
        response = (
            self.client.table("extraction_fields")
            .select("*")
            .eq("owner_id", owner_id)
            .eq("is_active", True)
            .order("order")
            .execute()
        )
        return [ExtractionFieldDefinition.model_validate(row) for row in response.data or []]

    # -- Executions --

    async def get_execution(self, remote_execution_id: str) -> Execution | None:
        response = (
            self.client.table("executions")
            .select("*")
            .eq("remote_execution_id", remote_execution_id)
            .limit(1)
            .execute()
        )
        return Execution.model_validate(response.data[0]) if response.data else None

    async def upsert_execution(self, document: dict[str, Any]) -> Execution:
        """Write-or-create an execution keyed by its remote id."""
        try:
            response = (
                self.client.table("executions")
                .upsert(document, on_conflict="remote_execution_id")
                .execute()
            )
        except Exception as e:
            logger.error(
                "Error upserting execution",
                remote_execution_id=document.get("remote_execution_id"),
                error=str(e),
            )
            raise
        return Execution.model_validate(response.data[0])

    async def update_extracted_data(
        self, remote_execution_id: str, extracted_data: dict[str, Any]
    ) -> Execution | None:
        try:
            response = (
                self.client.table("executions")
                .update({"extracted_data": extracted_data})
                .eq("remote_execution_id", remote_execution_id)
                .execute()
            )
        except Exception as e:
            logger.error(
                "Error updating extracted data",
                remote_execution_id=remote_execution_id,
                error=str(e),
            )
            raise
        return Execution.model_validate(response.data[0]) if response.data else None

    async def list_backfill_candidates(self, owner_id: str) -> list[Execution]:
        """Executions with a transcript that have not reached the owner's sheet yet."""
        agents = await self.list_agents_for_owner(owner_id)
        if not agents:
            return []

        response = (
            self.client.table("executions")
            .select("*")
            .in_("agent_id", [a.id for a in agents])
            .neq("transcript", "")
            .or_(
                f"extracted_data->>{SHEET_SYNCED_KEY}.is.null,"
                f"extracted_data->>{SHEET_SYNCED_KEY}.neq.true"
            )
            .order("started_at")
            .execute()
        )
        return [Execution.model_validate(row) for row in response.data or []]

    async def execution_stats(self, owner_id: str) -> ExecutionStats:
        agents = await self.list_agents_for_owner(owner_id)
        if not agents:
            return ExecutionStats()

        response = (
            self.client.table("executions")
            .select("status, total_cost, conversation_time")
            .in_("agent_id", [a.id for a in agents])
            .execute()
        )
        return _stats_from_rows(response.data or [])


class InMemoryStore:
    """Dict-backed store with the same interface as ``SupabaseStore``.

    Rows are deep-copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self.owners: dict[str, dict[str, Any]] = {}
        self.agents: dict[str, dict[str, Any]] = {}
        self.fields: list[dict[str, Any]] = []
        self.executions: dict[str, dict[str, Any]] = {}

    # -- Seeding helpers --

    def add_owner(self, owner: Owner) -> Owner:
        self.owners[owner.id] = owner.model_dump()
        return owner

    def add_agent(self, agent: Agent) -> Agent:
        self.agents[agent.id] = agent.model_dump()
        return agent

    def add_field(self, field: ExtractionFieldDefinition) -> ExtractionFieldDefinition:
        for existing in self.fields:
            if existing["owner_id"] == field.owner_id and existing["field_name"] == field.field_name:
                raise ValueError(f"Field {field.field_name!r} already exists for owner {field.owner_id}")
        self.fields.append(field.model_dump())
        return field

    # -- Agents & owners --

    async def list_agents(self) -> list[Agent]:
        return [Agent.model_validate(row) for row in self.agents.values()]

    async def list_agents_for_owner(self, owner_id: str) -> list[Agent]:
        return [
            Agent.model_validate(row)
            for row in self.agents.values()
            if row["owner_id"] == owner_id
        ]

    async def get_agent(self, agent_id: str) -> Agent | None:
        row = self.agents.get(agent_id)
        return Agent.model_validate(row) if row else None

    async def get_agent_by_remote_id(self, remote_agent_id: str) -> Agent | None:
        for row in self.agents.values():
            if row["remote_agent_id"] == remote_agent_id:
                return Agent.model_validate(row)
        return None

    async def get_owner(self, owner_id: str) -> Owner | None:
        row = self.owners.get(owner_id)
        return Owner.model_validate(row) if row else None

    async def update_owner(self, owner_id: str, updates: dict[str, Any]) -> Owner | None:
        if owner_id not in self.owners:
            return None
        self.owners[owner_id].update(copy.deepcopy(updates))
        return Owner.model_validate(self.owners[owner_id])

    async def list_active_fields(self, owner_id: str) -> list[ExtractionFieldDefinition]:
        rows = [f for f in self.fields if f["owner_id"] == owner_id and f["is_active"]]
        rows.sort(key=lambda f: f["order"])
        return [ExtractionFieldDefinition.model_validate(row) for row in rows]

    # -- Executions --

    async def get_execution(self, remote_execution_id: str) -> Execution | None:
        row = self.executions.get(remote_execution_id)
        return Execution.model_validate(copy.deepcopy(row)) if row else None

    async def upsert_execution(self, document: dict[str, Any]) -> Execution:
        key = document["remote_execution_id"]
        row = self.executions.get(key, {})
        row.update(copy.deepcopy(document))
        self.executions[key] = row
        return Execution.model_validate(copy.deepcopy(row))

    async def update_extracted_data(
        self, remote_execution_id: str, extracted_data: dict[str, Any]
    ) -> Execution | None:
        row = self.executions.get(remote_execution_id)
        if row is None:
            return None
        row["extracted_data"] = copy.deepcopy(extracted_data)
        return Execution.model_validate(copy.deepcopy(row))

    async def list_backfill_candidates(self, owner_id: str) -> list[Execution]:
        agent_ids = {a.id for a in await self.list_agents_for_owner(owner_id)}
        return [
            Execution.model_validate(copy.deepcopy(row))
            for row in self.executions.values()
            if row["agent_id"] in agent_ids
            and (row.get("transcript") or "").strip()
            and not (row.get("extracted_data") or {}).get(SHEET_SYNCED_KEY)
        ]

    async def execution_stats(self, owner_id: str) -> ExecutionStats:
        agent_ids = {a.id for a in await self.list_agents_for_owner(owner_id)}
        return _stats_from_rows(
            [row for row in self.executions.values() if row["agent_id"] in agent_ids]
        )


ExecutionStore = SupabaseStore | InMemoryStore


@lru_cache(maxsize=1)
def get_db() -> ExecutionStore:
    """Return the process-wide store, chosen once from configuration."""
    settings = get_settings()
    if settings.supabase_enabled:
        return SupabaseStore.from_settings()

    logger.warning(
        "Supabase credentials missing. Using in-memory store.",
        url=bool(settings.supabase_url),
        key=bool(settings.supabase_service_key),
    )
    return InMemoryStore()
