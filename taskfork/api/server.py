"""
Agent Server Client — The Network Collaborators.

Two things the engine needs from the agent server, both optional:

  - model selector resolution (``POST /v1/models/resolve``), which expands
    abstract groups like ``group:fast`` into a concrete handle plus a fallback
    chain, and
  - the agent directory (``GET /v1/agents/{id}``, ``GET /v1/models``), used to
    learn the parent's model, a deployed agent's model label, and the parent's
    display name.

Every call here may fail. Callers own the fallback; this module only raises.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from taskfork.config import ServerConfig
from taskfork.orchestration.models import ModelResolution

logger = structlog.get_logger(__name__)


class LlmConfig(BaseModel):
    handle: Optional[str] = None
    model: Optional[str] = None
    model_endpoint_type: Optional[str] = None


class AgentRecord(BaseModel):
    """The slice of a server agent record the engine reads."""

    id: str = ""
    name: str = ""
    llm_config: Optional[LlmConfig] = None


class ModelSelectorResponse(BaseModel):
    resolved_handle: str
    expansion_chain: list[str] = Field(default_factory=list)


class ServerClient:
    """Thin async client over the agent server's REST API."""

    def __init__(
        self,
        config: ServerConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._config = config
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            headers=headers,
            timeout=config.request_timeout_seconds,
            transport=transport,
        )

    async def resolve_model_selector(
        self,
        selector: list[str],
        parent_model_handle: Optional[str] = None,
    ) -> ModelResolution:
        """Ask the server to expand a selector into a handle and chain."""
        body: dict[str, Any] = {"selector": selector}
        if parent_model_handle:
            body["parent_model_handle"] = parent_model_handle
        response = await self._client.post("/v1/models/resolve", json=body)
        response.raise_for_status()
        payload = ModelSelectorResponse.model_validate(response.json())
        chain = payload.expansion_chain or [payload.resolved_handle]
        return ModelResolution(resolved_handle=payload.resolved_handle, expansion_chain=chain)

    async def retrieve_agent(self, agent_id: str) -> AgentRecord:
        response = await self._client.get(f"/v1/agents/{agent_id}")
        response.raise_for_status()
        return AgentRecord.model_validate(response.json())

    async def list_model_handles(self) -> set[str]:
        """Handles of every model the server currently offers."""
        response = await self._client.get("/v1/models")
        response.raise_for_status()
        data = response.json()
        items = data.get("models", []) if isinstance(data, dict) else data
        handles: set[str] = set()
        for item in items or []:
            if isinstance(item, dict) and item.get("handle"):
                handles.add(str(item["handle"]))
            elif isinstance(item, str):
                handles.add(item)
        return handles

    async def close(self) -> None:
        await self._client.aclose()
