"""Comrade Bridge: one async chat interface over several LLM providers."""

from comrade_bridge.bridge import ChatBridge
from comrade_bridge.config import AgentConfig, BridgeConfig, load_config
from comrade_bridge.errors import BridgeError, ErrorCode
from comrade_bridge.types import (
    ChatResponse,
    ConnectionStatus,
    FinishReason,
    Message,
    RequestOptions,
    Role,
    ToolCall,
    ToolResult,
    ToolSpec,
    Usage,
)

__version__ = "0.1.0"

__all__ = [
    "AgentConfig",
    "BridgeConfig",
    "BridgeError",
    "ChatBridge",
    "ChatResponse",
    "ConnectionStatus",
    "ErrorCode",
    "FinishReason",
    "Message",
    "RequestOptions",
    "Role",
    "ToolCall",
    "ToolResult",
    "ToolSpec",
    "Usage",
    "load_config",
]
