"""Tool system: tool base class, registry and executor."""

from comrade_bridge.tools.base import Tool
from comrade_bridge.tools.executor import RegistryToolExecutor, ToolSecurityError
from comrade_bridge.tools.registry import ToolRegistry

__all__ = ["RegistryToolExecutor", "Tool", "ToolRegistry", "ToolSecurityError"]
