"""Bridge collaborators: tool orchestration and context injection."""

from comrade_bridge.core.context import ContextInjector, SystemPromptInjector, apply_context
from comrade_bridge.core.orchestrator import OrchestrationPhase, ToolCallOrchestrator, ToolExecutor

__all__ = [
    "ContextInjector",
    "OrchestrationPhase",
    "SystemPromptInjector",
    "ToolCallOrchestrator",
    "ToolExecutor",
    "apply_context",
]
