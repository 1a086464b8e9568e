"""Tool-call orchestration.

When a reply stops for tool calls, the orchestrator hands every call to the
tool executor, feeds the results back as messages and sends exactly one
follow-up request without tools.  The follow-up is never orchestrated
again, which bounds tool use to one round per bridge call.

Phases::

    SENT -> TOOL_CALLS_DETECTED -> EXECUTING -> FOLLOW_UP_SENT -> DONE
    SENT -> DONE                                  (no tool calls)
"""

from __future__ import annotations

import enum
import logging
from typing import Awaitable, Callable, Protocol, Sequence

from comrade_bridge.errors import BridgeError, ErrorCode
from comrade_bridge.types import (
    ChatResponse,
    ExecutionContext,
    Message,
    ToolCall,
    ToolExecution,
    Usage,
)

_logger = logging.getLogger(__name__)

# Sends the extended conversation (tools omitted) and returns the reply
FollowUp = Callable[[list[Message]], Awaitable[ChatResponse]]


class ToolExecutor(Protocol):
    """Collaborator that runs tool calls.

    Returns one ``ToolExecution`` per call, in call order.  Tool-level
    failures are reported in ``ToolResult``; raising is reserved for
    refusing the whole batch (e.g. a security-policy denial).
    """

    async def execute_tool_calls(
        self,
        tool_calls: list[ToolCall],
        context: ExecutionContext,
    ) -> list[ToolExecution]:
        ...


class OrchestrationPhase(enum.Enum):
    SENT = "sent"
    TOOL_CALLS_DETECTED = "tool_calls_detected"
    EXECUTING = "executing"
    FOLLOW_UP_SENT = "follow_up_sent"
    DONE = "done"


def result_message(execution: ToolExecution) -> Message:
    """Synthetic user message reporting one tool result to the model."""
    call, result = execution.call, execution.result
    status = "succeeded" if result.success else "failed"
    return Message.user(
        f"Tool {call.name} (id: {call.id}) {status}: {result.summary()}",
        tool_call_id=call.id,
        tool_name=call.name,
    )


def merge_usage(first: Usage | None, second: Usage | None) -> Usage | None:
    if first is None and second is None:
        return None
    return (first or Usage()) + (second or Usage())


class ToolCallOrchestrator:
    """Drives one tool round for a single bridge call."""

    def __init__(
        self,
        executor: ToolExecutor | None,
        context: ExecutionContext,
        provider: str = "unknown",
    ) -> None:
        self._executor = executor
        self._context = context
        self._provider = provider
        self.phase = OrchestrationPhase.SENT

    def _enter(self, phase: OrchestrationPhase) -> None:
        _logger.debug("Tool orchestration %s -> %s", self.phase.value, phase.value)
        self.phase = phase

    async def run(
        self,
        messages: Sequence[Message],
        response: ChatResponse,
        follow_up: FollowUp,
    ) -> ChatResponse:
        """Return *response* unchanged, or the follow-up after one tool round."""
        if not response.wants_tools:
            self._enter(OrchestrationPhase.DONE)
            return response
        if self._executor is None:
            _logger.warning(
                "Model requested %d tool call(s) but no tool executor is configured",
                len(response.tool_calls),
            )
            self._enter(OrchestrationPhase.DONE)
            return response

        self._enter(OrchestrationPhase.TOOL_CALLS_DETECTED)
        calls = list(response.tool_calls)
        _logger.info(
            "Executing %d tool call(s): %s",
            len(calls), ", ".join(c.name for c in calls),
        )

        self._enter(OrchestrationPhase.EXECUTING)
        executions = await self._execute(calls)

        conversation = list(messages)
        conversation.append(
            Message.assistant(
                response.content or f"Calling tools: {', '.join(c.name for c in calls)}",
                tool_calls=[c.to_dict() for c in calls],
            )
        )
        conversation.extend(result_message(ex) for ex in executions)

        self._enter(OrchestrationPhase.FOLLOW_UP_SENT)
        final = await follow_up(conversation)
        self._enter(OrchestrationPhase.DONE)
        _logger.info(
            "Tool round finished: %d succeeded, %d failed",
            sum(1 for ex in executions if ex.result.success),
            sum(1 for ex in executions if not ex.result.success),
        )

        metadata = dict(final.metadata)
        metadata["tool_calls"] = [c.to_dict() for c in calls]
        metadata["tool_results"] = [
            {
                "id": ex.call.id,
                "name": ex.call.name,
                "success": ex.result.success,
                "output": ex.result.summary(),
            }
            for ex in executions
        ]
        return ChatResponse(
            content=final.content,
            finish_reason=final.finish_reason,
            usage=merge_usage(response.usage, final.usage),
            tool_calls=final.tool_calls,
            metadata=metadata,
        )

    async def _execute(self, calls: list[ToolCall]) -> list[ToolExecution]:
        assert self._executor is not None
        try:
            executions = await self._executor.execute_tool_calls(calls, self._context)
        except BridgeError as e:
            if e.code == ErrorCode.TOOL_EXECUTION_FAILED:
                raise
            raise self._failed(str(e), e) from e
        except Exception as e:
            raise self._failed(str(e) or type(e).__name__, e) from e

        if [ex.call.id for ex in executions] != [c.id for c in calls]:
            raise self._failed("tool executor returned results out of order or incomplete")
        return list(executions)

    def _failed(self, detail: str, cause: BaseException | None = None) -> BridgeError:
        _logger.warning("Tool execution aborted: %s", detail)
        return BridgeError(
            f"Tool execution failed: {detail}",
            ErrorCode.TOOL_EXECUTION_FAILED,
            provider=self._provider,
            original_cause=cause,
        )
