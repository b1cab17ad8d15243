"""
Voice Agent Platform Client.

Thin async wrapper over the platform's REST API: agent listing and
details, paginated execution listing, and single-execution details.
Every transport or HTTP error is raised as ``PlatformError`` so callers
decide whether the failure costs them a record, a page, or an agent.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from src.config import get_settings
from src.exceptions import PlatformError
from src.logging_config import get_logger
from src.schemas.execution import ExecutionPage
from src.schemas.owner import AgentVerification

logger = get_logger(__name__)


class PlatformClient:
    """Bearer-authenticated client for the voice agent platform."""

    def __init__(
        self,
        base_url: str | None = None,
        bearer_token: str | None = None,
        timeout: float | None = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        settings = get_settings()
        token = bearer_token if bearer_token is not None else settings.platform_bearer_token
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=base_url or settings.platform_api_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
            timeout=timeout or settings.platform_timeout_seconds,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        try:
            response = await self._http.get(path, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "platform_http_error",
                path=path,
                status=e.response.status_code,
                body=e.response.text[:500],
            )
            raise PlatformError(
                f"GET {path} returned {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error("platform_transport_error", path=path, error=str(e))
            raise PlatformError(f"GET {path} failed: {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise PlatformError(f"GET {path} returned invalid JSON") from e

    # -- Agents --

    async def get_agent(self, remote_agent_id: str) -> dict[str, Any]:
        return await self._get(f"/v2/agent/{remote_agent_id}")

    async def verify_agent(self, remote_agent_id: str) -> AgentVerification:
        """Check that an agent exists on the platform before tracking it."""
        try:
            details = await self.get_agent(remote_agent_id)
        except PlatformError as e:
            if e.status_code == 404:
                return AgentVerification(exists=False, error="Agent not found on platform")
            raise

        if not isinstance(details, dict):
            raise PlatformError(f"Unexpected agent payload for {remote_agent_id}")
        return AgentVerification(
            exists=True,
            agent_name=details.get("agent_name"),
            agent_status=details.get("agent_status"),
            created_at=details.get("created_at"),
        )

    # -- Executions --

    async def list_executions(
        self,
        remote_agent_id: str,
        page_number: int = 1,
        page_size: int = 50,
    ) -> ExecutionPage:
        """Fetch one page of an agent's executions."""
        data = await self._get(
            f"/v2/agent/{remote_agent_id}/executions",
            params={"page_number": page_number, "page_size": page_size},
        )
        if not isinstance(data, dict):
            raise PlatformError(f"Unexpected execution page payload for agent {remote_agent_id}")

        records = data.get("data")
        if records is None:
            records = data.get("records", [])

        return ExecutionPage(
            records=list(records),
            has_more=data.get("has_more") is True,
        )

    async def get_execution(self, remote_agent_id: str, remote_execution_id: str) -> dict[str, Any]:
        return await self._get(f"/agent/{remote_agent_id}/execution/{remote_execution_id}")
