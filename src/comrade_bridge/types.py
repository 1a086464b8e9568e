"""Shared data types for the Comrade chat bridge."""

from __future__ import annotations

import enum
import json
import time
from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    """Author of a chat message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Message:
    """One canonical chat message."""

    role: Role
    content: str
    timestamp: float = field(default_factory=time.time)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Accept plain strings ("user") as well as Role members
        if not isinstance(self.role, Role):
            self.role = Role(self.role)

    @classmethod
    def system(cls, content: str, **metadata: Any) -> Message:
        return cls(Role.SYSTEM, content, metadata=metadata)

    @classmethod
    def user(cls, content: str, **metadata: Any) -> Message:
        return cls(Role.USER, content, metadata=metadata)

    @classmethod
    def assistant(cls, content: str, **metadata: Any) -> Message:
        return cls(Role.ASSISTANT, content, metadata=metadata)

    def to_wire(self) -> dict[str, str]:
        """Role/content pair as sent to OpenAI-shaped APIs."""
        return {"role": self.role.value, "content": self.content}


# ---------------------------------------------------------------------------
# Tool types
# ---------------------------------------------------------------------------

@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    type: str  # string, integer, boolean, array, object
    description: str
    required: bool = True
    default: Any = None
    enum: list[str] | None = None


@dataclass
class ToolSpec:
    """A tool offered to the model: name, description and a JSON schema."""

    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}},
    )

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def to_anthropic(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }


@dataclass
class ToolCall:
    """A model's request to invoke a tool.

    ``id`` is issued by the provider and must survive the follow-up round
    unchanged so results can be matched to their invocation.
    """

    id: str
    name: str
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "parameters": self.parameters}


@dataclass
class ToolResult:
    """Outcome of one tool invocation."""

    success: bool
    data: Any = None
    error: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def summary(self) -> str:
        """Stringified result as fed back to the model."""
        if self.success:
            if self.data is None:
                return "(no output)"
            if isinstance(self.data, str):
                return self.data
            try:
                return json.dumps(self.data, ensure_ascii=False, default=str)
            except (TypeError, ValueError):
                return str(self.data)
        return self.error or "unknown error"


@dataclass
class ToolExecution:
    """A tool call paired with its result, in invocation order."""

    call: ToolCall
    result: ToolResult


class SecurityLevel(str, enum.Enum):
    RESTRICTED = "restricted"
    NORMAL = "normal"
    ELEVATED = "elevated"


@dataclass
class ExecutionContext:
    """Who is running tools, where, and under what security posture."""

    agent_id: str = "default"
    workspace: str | None = None
    level: SecurityLevel = SecurityLevel.NORMAL
    allow_dangerous: bool = False


# ---------------------------------------------------------------------------
# Request / response types
# ---------------------------------------------------------------------------

@dataclass
class RequestOptions:
    """Per-request knobs.  ``None`` means "use the agent's configured value"."""

    temperature: float | None = None
    max_tokens: int | None = None
    timeout: float | None = None  # seconds
    stream: bool = False
    tools: list[ToolSpec] = field(default_factory=list)

    def validate(self) -> list[str]:
        """Return a list of constraint violations (empty when valid)."""
        problems: list[str] = []
        if self.temperature is not None and not 0 <= self.temperature <= 2:
            problems.append(
                f"temperature must be between 0 and 2 (got {self.temperature})",
            )
        if self.max_tokens is not None and self.max_tokens <= 0:
            problems.append(f"max_tokens must be positive (got {self.max_tokens})")
        if self.timeout is not None and self.timeout <= 0:
            problems.append(f"timeout must be positive (got {self.timeout})")
        names = [t.name for t in self.tools]
        if any(not n for n in names):
            problems.append("every tool needs a name")
        if len(set(names)) != len(names):
            problems.append("tool names must be unique")
        return problems


class FinishReason(str, enum.Enum):
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    ERROR = "error"


@dataclass
class Usage:
    """Token accounting.  ``total_tokens`` is always the sum of the parts."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class ChatResponse:
    """Provider-agnostic response."""

    content: str = ""
    finish_reason: FinishReason = FinishReason.STOP
    usage: Usage | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0

    @property
    def wants_tools(self) -> bool:
        """True when the model stopped in order to call tools."""
        return self.finish_reason == FinishReason.TOOL_CALLS and self.has_tool_calls


@dataclass
class ConnectionStatus:
    """Outcome of a connection probe."""

    ok: bool
    reason: str | None = None
    status_code: int | None = None

    def __bool__(self) -> bool:
        return self.ok
