"""Async Tool abstract base class."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from comrade_bridge.types import ToolParameter, ToolResult, ToolSpec


class Tool(ABC):
    """Base class for tools the model may call.

    Subclasses set ``name``, ``description`` and ``parameters`` as class
    attributes and implement the async ``execute()`` method.  Tools with
    side effects outside the workspace set ``dangerous = True``.
    """

    name: str
    description: str
    parameters: list[ToolParameter] = []
    dangerous: bool = False
    max_output: int = 5000  # chars of string output kept; 0 disables truncation

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool asynchronously."""

    def json_schema(self) -> dict[str, Any]:
        """Parameters as a JSON-schema object."""
        properties: dict[str, Any] = {}
        required: list[str] = []
        for p in self.parameters:
            prop: dict[str, Any] = {
                "type": p.type,
                "description": p.description,
            }
            if p.enum:
                prop["enum"] = p.enum
            if p.default is not None:
                prop["default"] = p.default
            properties[p.name] = prop
            if p.required:
                required.append(p.name)
        return {"type": "object", "properties": properties, "required": required}

    def to_tool_spec(self) -> ToolSpec:
        return ToolSpec(name=self.name, description=self.description, parameters=self.json_schema())

    def missing_arguments(self, arguments: dict[str, Any]) -> list[str]:
        return [p.name for p in self.parameters if p.required and p.name not in arguments]
