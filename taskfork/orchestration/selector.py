"""
Model Selector Resolution — Which Model Does a Subagent Get?

A subagent type declares an ordered selector such as
``["group:fast", "inherit", "any"]``. Tokens come in four kinds:

  group:<name>   abstract tier, only the server knows what it expands to
  inherit        use the parent agent's model
  any            the system default
  <concrete>     a model id ("sonnet-4.5") or full handle ("openai/gpt-5.2")

The server resolver returns a concrete handle to try first and an expansion
chain of fallbacks. When the server cannot be reached the resolver falls back
locally and deterministically, so resolution never fails.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence

import structlog
from pydantic import BaseModel

from taskfork.orchestration.models import ModelResolution

logger = structlog.get_logger(__name__)

SPECIAL_TOKENS = frozenset({"inherit", "any"})
GROUP_PREFIX = "group:"
DEFAULT_SELECTOR = ("inherit", "any")


class ModelInfo(BaseModel):
    """Static catalog entry."""

    id: str
    handle: str
    label: str
    is_default: bool = False


MODEL_CATALOG: tuple[ModelInfo, ...] = (
    ModelInfo(
        id="sonnet-4.5",
        handle="anthropic/claude-sonnet-4-5-20250929",
        label="Sonnet 4.5",
        is_default=True,
    ),
    ModelInfo(id="opus-4.5", handle="anthropic/claude-opus-4-5-20251101", label="Opus 4.5"),
    ModelInfo(id="haiku-4.5", handle="anthropic/claude-haiku-4-5-20251001", label="Haiku 4.5"),
    ModelInfo(id="gpt-5.2", handle="openai/gpt-5.2", label="GPT-5.2"),
    ModelInfo(id="gpt-5-mini", handle="openai/gpt-5-mini", label="GPT-5 mini"),
    ModelInfo(id="gemini-2.5-pro", handle="google_ai/gemini-2.5-pro", label="Gemini 2.5 Pro"),
    ModelInfo(id="glm-4.7", handle="zai/glm-4.7", label="GLM 4.7"),
)


def parse_model_selector(value: Any) -> list[str]:
    """Normalize a configured selector into an ordered token list."""
    if value is None:
        return list(DEFAULT_SELECTOR)
    if isinstance(value, str):
        stripped = value.strip()
        return [stripped] if stripped else []
    if isinstance(value, (list, tuple)):
        tokens = [str(item).strip() for item in value]
        return [t for t in tokens if t]
    return list(DEFAULT_SELECTOR)


def is_selector_token(entry: str) -> bool:
    """True for tokens only a resolver can interpret (groups, inherit, any)."""
    return entry.startswith(GROUP_PREFIX) or entry in SPECIAL_TOKENS


def is_concrete_model(entry: str) -> bool:
    return bool(entry) and not is_selector_token(entry)


def is_full_handle(entry: str) -> bool:
    return "/" in entry


def get_default_model() -> str:
    for info in MODEL_CATALOG:
        if info.is_default:
            return info.handle
    return MODEL_CATALOG[0].handle


def get_model_info(identifier: str) -> Optional[ModelInfo]:
    for info in MODEL_CATALOG:
        if info.id == identifier or info.handle == identifier:
            return info
    return None


def resolve_model(identifier: str) -> Optional[str]:
    """Static id/handle lookup. Unknown full handles pass through."""
    info = get_model_info(identifier)
    if info is not None:
        return info.handle
    if is_full_handle(identifier):
        return identifier
    return None


async def resolve_model_async(identifier: str, server: Any = None) -> Optional[str]:
    """Static lookup first, then the server's live model list.

    A bare id matches a server handle exactly, by ``/<id>`` suffix, or by its
    last path segment. Unknown full handles pass through.
    """
    info = get_model_info(identifier)
    if info is not None:
        return info.handle

    if server is not None:
        try:
            handles = await server.list_model_handles()
        except Exception as exc:
            logger.debug("selector.model_list_failed", error=str(exc))
        else:
            if identifier in handles:
                return identifier
            for handle in sorted(handles):
                if handle.endswith(f"/{identifier}"):
                    return handle
            for handle in sorted(handles):
                if handle.split("/")[-1] == identifier:
                    return handle

    if is_full_handle(identifier):
        return identifier
    return None


def model_handle_from_agent(agent: Any) -> Optional[str]:
    """Derive a model handle from a server agent record."""
    llm = getattr(agent, "llm_config", None)
    if llm is None:
        return None
    if llm.handle:
        return llm.handle
    if llm.model_endpoint_type and llm.model:
        return f"{llm.model_endpoint_type}/{llm.model}"
    if llm.model:
        return resolve_model(llm.model)
    return None


class ModelSelectorResolver:
    """Turns a selector list into a ModelResolution. Never raises."""

    def __init__(self, server: Any = None, default_model: str = ""):
        self._server = server  # ServerClient, optional
        self._default_model = default_model

    @property
    def default_model(self) -> str:
        return self._default_model or get_default_model()

    async def resolve(
        self,
        selector: Sequence[str],
        parent_model_handle: Optional[str] = None,
    ) -> ModelResolution:
        tokens = list(selector)
        if self._server is not None:
            try:
                resolution = await self._server.resolve_model_selector(
                    tokens, parent_model_handle
                )
                logger.debug(
                    "selector.resolved",
                    selector=tokens,
                    handle=resolution.resolved_handle,
                    chain_length=len(resolution.expansion_chain),
                )
                return resolution
            except Exception as exc:
                logger.warning(
                    "selector.server_resolution_failed",
                    selector=tokens,
                    error=str(exc),
                )

        handle = await self.fallback_model(tokens, parent_model_handle)
        return ModelResolution(resolved_handle=handle, expansion_chain=[handle])

    async def fallback_model(
        self,
        selector: Sequence[str],
        parent_model_handle: Optional[str] = None,
    ) -> str:
        """Local resolution: parent, then first concrete entry, then default."""
        if parent_model_handle:
            return parent_model_handle

        for entry in selector:
            if not is_concrete_model(entry):
                continue
            if is_full_handle(entry):
                return entry
            resolved = await resolve_model_async(entry, self._server)
            if resolved:
                return resolved

        return self.default_model

    async def resolve_model(self, identifier: str) -> Optional[str]:
        return await resolve_model_async(identifier, self._server)
