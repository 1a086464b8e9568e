"""Per-provider capability flags."""

from __future__ import annotations

from dataclasses import dataclass

from comrade_bridge.errors import BridgeError, ErrorCode


@dataclass(frozen=True)
class ProviderCapabilities:
    """What a provider's wire protocol supports through this bridge."""

    tools: bool
    native_streaming: bool = True


CAPABILITIES: dict[str, ProviderCapabilities] = {
    "openai": ProviderCapabilities(tools=True),
    "anthropic": ProviderCapabilities(tools=True),
    # Ollama's /api/chat replies are parsed without tool calls
    "ollama": ProviderCapabilities(tools=False),
    "custom": ProviderCapabilities(tools=True),
}


def capabilities_for(provider: str) -> ProviderCapabilities:
    caps = CAPABILITIES.get(provider)
    if caps is None:
        raise BridgeError(
            f"Unsupported provider: {provider!r}",
            ErrorCode.UNSUPPORTED_PROVIDER,
            provider=provider,
        )
    return caps
