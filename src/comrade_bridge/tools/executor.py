"""Tool executor: runs model tool calls through the registry under a security posture."""

from __future__ import annotations

import asyncio
import logging

from comrade_bridge.tools.registry import ToolRegistry
from comrade_bridge.types import ExecutionContext, SecurityLevel, ToolCall, ToolExecution

_logger = logging.getLogger(__name__)


class ToolSecurityError(Exception):
    """A batch of tool calls was refused by the security posture."""

    def __init__(self, message: str, tool: str) -> None:
        super().__init__(message)
        self.tool = tool


class RegistryToolExecutor:
    """Executes tool calls against a ``ToolRegistry``.

    Usage::

        executor = RegistryToolExecutor(registry)
        executions = await executor.execute_tool_calls(calls, context)

    The whole batch is checked before anything runs: a dangerous tool
    without ``allow_dangerous`` (or any dangerous tool at the restricted
    level) raises ``ToolSecurityError`` and nothing is executed.
    """

    def __init__(self, registry: ToolRegistry, concurrent: bool = False) -> None:
        self._registry = registry
        self._concurrent = concurrent

    def _check(self, call: ToolCall, context: ExecutionContext) -> None:
        tool = self._registry.get(call.name)
        if tool is None or not tool.dangerous:
            return
        if context.level == SecurityLevel.RESTRICTED:
            raise ToolSecurityError(
                f"Tool '{call.name}' is not allowed at the restricted security level",
                call.name,
            )
        if not context.allow_dangerous:
            raise ToolSecurityError(
                f"Tool '{call.name}' is marked dangerous and dangerous tools are disabled",
                call.name,
            )

    async def _run_one(self, call: ToolCall) -> ToolExecution:
        _logger.debug("Executing tool %s (%s)", call.name, call.id)
        result = await self._registry.execute(call.name, call.parameters)
        if not result.success:
            _logger.info("Tool %s failed: %s", call.name, result.error)
        return ToolExecution(call=call, result=result)

    async def execute_tool_calls(
        self,
        tool_calls: list[ToolCall],
        context: ExecutionContext,
    ) -> list[ToolExecution]:
        for call in tool_calls:
            self._check(call, context)
        if self._concurrent and len(tool_calls) > 1:
            # gather preserves argument order
            return list(await asyncio.gather(*(self._run_one(c) for c in tool_calls)))
        return [await self._run_one(c) for c in tool_calls]
