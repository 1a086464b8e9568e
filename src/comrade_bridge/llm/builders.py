"""Provider request builders.

Pure functions: ``(agent, messages, options) -> ProviderRequest``.  No I/O
and no hidden clocks, so the same inputs always produce the same bytes.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, ClassVar, Sequence, Union

from comrade_bridge.config import AgentConfig
from comrade_bridge.errors import BridgeError, ErrorCode
from comrade_bridge.types import Message, RequestOptions, Role

from .capabilities import capabilities_for

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
OPENAI_MODELS_URL = "https://api.openai.com/v1/models"
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
OLLAMA_URL = "http://localhost:11434"

DEFAULT_TEMPERATURE = 0.7
ANTHROPIC_DEFAULT_MAX_TOKENS = 4096


# ---------------------------------------------------------------------------
# Request types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _BaseRequest:
    url: str
    headers: dict[str, str]
    body: dict[str, Any]
    method: str = "POST"
    provider: ClassVar[str] = ""

    @property
    def stream(self) -> bool:
        return bool(self.body.get("stream", False))

    def encode(self) -> bytes:
        """Serialized body exactly as sent on the wire."""
        return json.dumps(self.body, ensure_ascii=False, separators=(",", ":")).encode()


@dataclass(frozen=True)
class OpenAIRequest(_BaseRequest):
    provider: ClassVar[str] = "openai"

    def __post_init__(self) -> None:
        if "tools" in self.body and not self.body["tools"]:
            raise ValueError("empty tools list must be omitted")


@dataclass(frozen=True)
class CustomRequest(OpenAIRequest):
    provider: ClassVar[str] = "custom"


@dataclass(frozen=True)
class AnthropicRequest(_BaseRequest):
    provider: ClassVar[str] = "anthropic"

    def __post_init__(self) -> None:
        if not isinstance(self.body.get("max_tokens"), int):
            raise ValueError("Anthropic requests require max_tokens")
        roles = [m["role"] for m in self.body.get("messages", [])]
        if any(a == b for a, b in zip(roles, roles[1:])):
            raise ValueError("Anthropic messages must alternate user/assistant")


@dataclass(frozen=True)
class OllamaRequest(_BaseRequest):
    provider: ClassVar[str] = "ollama"

    def __post_init__(self) -> None:
        if "tools" in self.body:
            raise ValueError("tools are never forwarded to Ollama")


ProviderRequest = Union[OpenAIRequest, CustomRequest, AnthropicRequest, OllamaRequest]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _bearer_headers(agent: AgentConfig) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    api_key = agent.resolved_api_key()
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    headers.update(agent.extra_headers)
    return headers


def _anthropic_headers(agent: AgentConfig) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "anthropic-version": ANTHROPIC_VERSION,
    }
    api_key = agent.resolved_api_key()
    if api_key:
        headers["x-api-key"] = api_key
    headers.update(agent.extra_headers)
    return headers


def _temperature(agent: AgentConfig, options: RequestOptions) -> float:
    if options.temperature is not None:
        return options.temperature
    if agent.temperature is not None:
        return agent.temperature
    return DEFAULT_TEMPERATURE


def _max_tokens(agent: AgentConfig, options: RequestOptions) -> int | None:
    return options.max_tokens if options.max_tokens is not None else agent.max_tokens


def openai_chat_url(endpoint: str | None) -> str:
    if not endpoint:
        return OPENAI_URL
    base = endpoint.rstrip("/")
    if base.endswith("/chat/completions"):
        return base
    return f"{base}/chat/completions"


def openai_models_url(endpoint: str | None) -> str:
    if not endpoint:
        return OPENAI_MODELS_URL
    base = endpoint.rstrip("/").removesuffix("/chat/completions")
    return f"{base}/models"


def ollama_base_url(endpoint: str | None) -> str:
    # Accept the OpenAI-compatible URL form (".../v1") for the native API
    base = (endpoint or OLLAMA_URL).rstrip("/").removesuffix("/v1")
    return base.removesuffix("/api/chat")


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def _openai_body(
    agent: AgentConfig,
    messages: Sequence[Message],
    options: RequestOptions,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "model": agent.model,
        "messages": [m.to_wire() for m in messages],
        "temperature": _temperature(agent, options),
    }
    max_tokens = _max_tokens(agent, options)
    if max_tokens is not None:
        body["max_tokens"] = max_tokens
    body["stream"] = options.stream
    if options.tools:
        body["tools"] = [t.to_openai() for t in options.tools]
        body["tool_choice"] = "auto"
    return body


def build_openai_request(
    agent: AgentConfig,
    messages: Sequence[Message],
    options: RequestOptions,
) -> OpenAIRequest:
    return OpenAIRequest(
        url=openai_chat_url(agent.endpoint),
        headers=_bearer_headers(agent),
        body=_openai_body(agent, messages, options),
    )


def build_custom_request(
    agent: AgentConfig,
    messages: Sequence[Message],
    options: RequestOptions,
) -> CustomRequest:
    # Custom endpoints are assumed to speak the OpenAI chat-completions shape
    if not agent.endpoint:
        raise BridgeError(
            "Custom provider requires an endpoint",
            ErrorCode.CONFIGURATION_ERROR,
            provider="custom",
            suggested_fix="Set 'endpoint' for this agent to the full chat completions URL.",
        )
    return CustomRequest(
        url=agent.endpoint,
        headers=_bearer_headers(agent),
        body=_openai_body(agent, messages, options),
    )


def split_system(messages: Sequence[Message]) -> tuple[str | None, list[dict[str, str]]]:
    """Extract system text and merge the rest into alternating turns."""
    system_parts = [m.content for m in messages if m.role == Role.SYSTEM and m.content]
    turns: list[dict[str, str]] = []
    for m in messages:
        if m.role == Role.SYSTEM:
            continue
        if turns and turns[-1]["role"] == m.role.value:
            turns[-1]["content"] += "\n\n" + m.content
        else:
            turns.append(m.to_wire())
    system = "\n\n".join(system_parts) if system_parts else None
    return system, turns


def build_anthropic_request(
    agent: AgentConfig,
    messages: Sequence[Message],
    options: RequestOptions,
) -> AnthropicRequest:
    system, turns = split_system(messages)
    body: dict[str, Any] = {
        "model": agent.model,
        "max_tokens": _max_tokens(agent, options) or ANTHROPIC_DEFAULT_MAX_TOKENS,
        "messages": turns,
    }
    if system:
        body["system"] = system
    body["temperature"] = _temperature(agent, options)
    if options.stream:
        body["stream"] = True
    if options.tools:
        body["tools"] = [t.to_anthropic() for t in options.tools]
    return AnthropicRequest(
        url=agent.endpoint or ANTHROPIC_URL,
        headers=_anthropic_headers(agent),
        body=body,
    )


def build_ollama_request(
    agent: AgentConfig,
    messages: Sequence[Message],
    options: RequestOptions,
) -> OllamaRequest:
    model_options: dict[str, Any] = {"temperature": _temperature(agent, options)}
    max_tokens = _max_tokens(agent, options)
    if max_tokens is not None:
        model_options["num_predict"] = max_tokens
    body: dict[str, Any] = {
        "model": agent.model,
        "messages": [m.to_wire() for m in messages],
        "stream": options.stream,
        "options": model_options,
    }
    headers = {"Content-Type": "application/json"}
    headers.update(agent.extra_headers)
    return OllamaRequest(
        url=f"{ollama_base_url(agent.endpoint)}/api/chat",
        headers=headers,
        body=body,
    )


_BUILDERS = {
    "openai": build_openai_request,
    "anthropic": build_anthropic_request,
    "ollama": build_ollama_request,
    "custom": build_custom_request,
}


def build_request(
    agent: AgentConfig,
    messages: Sequence[Message],
    options: RequestOptions | None = None,
) -> ProviderRequest:
    """Dispatch to the builder for ``agent.provider``."""
    options = options or RequestOptions()
    caps = capabilities_for(agent.provider)
    if options.tools and not caps.tools:
        options = RequestOptions(
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            timeout=options.timeout,
            stream=options.stream,
        )
    return _BUILDERS[agent.provider](agent, messages, options)


# ---------------------------------------------------------------------------
# Connection probes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProbeRequest:
    """Minimal request used to check reachability and credentials."""

    url: str
    method: str
    headers: dict[str, str] = field(default_factory=dict)
    body: dict[str, Any] | None = None


def build_probe(agent: AgentConfig) -> ProbeRequest:
    provider = agent.provider
    capabilities_for(provider)
    if provider == "openai":
        return ProbeRequest(
            url=openai_models_url(agent.endpoint),
            method="GET",
            headers=_bearer_headers(agent),
        )
    if provider == "ollama":
        return ProbeRequest(url=f"{ollama_base_url(agent.endpoint)}/api/tags", method="GET")
    tiny = RequestOptions(max_tokens=1)
    ping = [Message.user("test")]
    if provider == "anthropic":
        req: ProviderRequest = build_anthropic_request(agent, ping, tiny)
    else:
        req = build_custom_request(agent, ping, tiny)
    return ProbeRequest(url=req.url, method="POST", headers=req.headers, body=req.body)
