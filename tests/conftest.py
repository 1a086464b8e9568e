"""Shared fixtures: agent configs and bridges backed by ``httpx.MockTransport``."""

from __future__ import annotations

from typing import Callable

import httpx
import pytest

from comrade_bridge.bridge import ChatBridge
from comrade_bridge.config import AgentConfig, RetrySettings, StreamSettings

Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture
def openai_agent() -> AgentConfig:
    return AgentConfig(provider="openai", model="gpt-4o-mini", api_key="sk-test")


@pytest.fixture
def anthropic_agent() -> AgentConfig:
    return AgentConfig(provider="anthropic", model="claude-3-5-haiku-latest", api_key="ak-test")


@pytest.fixture
def ollama_agent() -> AgentConfig:
    return AgentConfig(provider="ollama", model="llama3", endpoint="http://localhost:11434/v1")


@pytest.fixture
def custom_agent() -> AgentConfig:
    return AgentConfig(
        provider="custom",
        model="local-model",
        endpoint="http://localhost:1234/v1/chat/completions",
    )


@pytest.fixture
async def make_bridge():
    """Factory: ``make_bridge(agent, handler, **kwargs) -> ChatBridge``."""
    clients: list[httpx.AsyncClient] = []

    def _make(agent: AgentConfig, handler: Handler, **kwargs) -> ChatBridge:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        kwargs.setdefault("retry", RetrySettings(max_attempts=3, base_delay=0.01))
        kwargs.setdefault("stream", StreamSettings(simulated_chunk_delay=0))
        return ChatBridge(agent, http_client=client, **kwargs)

    yield _make
    for client in clients:
        await client.aclose()
