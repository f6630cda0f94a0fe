"""Tests for taskfork.api.server — REST client against httpx.MockTransport."""

from __future__ import annotations

import json

import httpx
import pytest

from taskfork.api.server import ServerClient
from taskfork.config import ServerConfig


def _client(handler) -> ServerClient:
    config = ServerConfig(base_url="http://agent-server.test", api_key="sk-test")
    return ServerClient(config, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_resolve_model_selector_posts_selector_and_parent():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"resolved_handle": "p/fast", "expansion_chain": ["p/fast", "p/slow"]},
        )

    client = _client(handler)
    try:
        resolution = await client.resolve_model_selector(["group:fast", "any"], "p/parent")
    finally:
        await client.close()

    assert seen["path"] == "/v1/models/resolve"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"] == {"selector": ["group:fast", "any"], "parent_model_handle": "p/parent"}
    assert resolution.resolved_handle == "p/fast"
    assert resolution.expansion_chain == ["p/fast", "p/slow"]


@pytest.mark.asyncio
async def test_empty_chain_normalized():
    client = _client(lambda r: httpx.Response(200, json={"resolved_handle": "p/only"}))
    try:
        resolution = await client.resolve_model_selector(["any"])
    finally:
        await client.close()
    assert resolution.expansion_chain == ["p/only"]


@pytest.mark.asyncio
async def test_http_errors_raise():
    client = _client(lambda r: httpx.Response(503, json={"detail": "down"}))
    try:
        with pytest.raises(httpx.HTTPStatusError):
            await client.resolve_model_selector(["any"])
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_retrieve_agent():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/agents/agent-1"
        return httpx.Response(
            200,
            json={
                "id": "agent-1",
                "name": "Lead",
                "llm_config": {"model": "gpt-5.2", "model_endpoint_type": "openai"},
                "extra": "ignored",
            },
        )

    client = _client(handler)
    try:
        agent = await client.retrieve_agent("agent-1")
    finally:
        await client.close()
    assert agent.name == "Lead"
    assert agent.llm_config.model_endpoint_type == "openai"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"models": [{"handle": "a/x"}, {"handle": "b/y"}]},
        [{"handle": "a/x"}, "b/y"],
    ],
)
async def test_list_model_handles_shapes(payload):
    client = _client(lambda r: httpx.Response(200, json=payload))
    try:
        handles = await client.list_model_handles()
    finally:
        await client.close()
    assert handles == {"a/x", "b/y"}
