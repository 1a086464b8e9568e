"""Tool registry with async execution."""

from __future__ import annotations

import logging
from typing import Any

from comrade_bridge.tools.base import Tool
from comrade_bridge.types import ToolResult, ToolSpec

_logger = logging.getLogger(__name__)


def _smart_truncate(text: str, max_length: int) -> str:
    """Keep the head and tail of *text*, dropping the middle.

    The tail gets three quarters of the budget since errors tend to be
    printed last.
    """
    if len(text) <= max_length:
        return text
    head_size = max_length // 4
    tail_size = max_length - head_size
    omitted = len(text) - max_length
    return (
        text[:head_size]
        + f"\n\n... [{omitted} chars truncated] ...\n\n"
        + text[-tail_size:]
    )


class ToolRegistry:
    """Named tools available to one bridge."""

    def __init__(self, tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            _logger.warning("Replacing already registered tool %s", tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def list_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def tool_names(self) -> list[str]:
        return list(self._tools.keys())

    def tool_specs(self) -> list[ToolSpec]:
        """Specs for every registered tool, ready for ``RequestOptions.tools``."""
        return [t.to_tool_spec() for t in self._tools.values()]

    async def execute(self, tool_name: str, arguments: dict[str, Any]) -> ToolResult:
        """Execute a tool by name.

        Unknown tools, missing arguments and exceptions raised by the tool
        all come back as failed ``ToolResult``s.
        """
        tool = self._tools.get(tool_name)
        if tool is None:
            return ToolResult(
                success=False,
                error=f"Unknown tool: {tool_name}. Available: {', '.join(self._tools) or '(none)'}",
            )
        missing = tool.missing_arguments(arguments)
        if missing:
            return ToolResult(
                success=False,
                error=f"Missing required argument(s) for {tool_name}: {', '.join(missing)}",
            )
        try:
            result = await tool.execute(**arguments)
        except Exception as e:
            _logger.debug("Tool %s raised", tool_name, exc_info=True)
            return ToolResult(
                success=False,
                error=f"Tool '{tool_name}' execution failed: {type(e).__name__}: {e}",
            )
        max_out = tool.max_output
        if max_out > 0 and isinstance(result.data, str) and len(result.data) > max_out:
            result = ToolResult(
                success=result.success,
                data=_smart_truncate(result.data, max_out),
                error=result.error,
                metadata=result.metadata,
            )
        return result
