"""System-context injection.

A ``ContextInjector`` adds system context (project notes, persona, rules) to
a conversation before it is sent.  Injection is purely additive and
best-effort: ``apply_context`` never lets an injector failure break a call.
"""

from __future__ import annotations

import inspect
import logging
from typing import Awaitable, Protocol, Sequence, Union

from comrade_bridge.types import Message, Role

_logger = logging.getLogger(__name__)


class ContextInjector(Protocol):
    """Collaborator that extends a conversation with system context."""

    def augment_with_context(
        self, messages: list[Message],
    ) -> Union[list[Message], Awaitable[list[Message]]]:
        ...


class SystemPromptInjector:
    """Adds a fixed system prompt.

    An existing leading system message is extended rather than duplicated;
    otherwise a new system message is prepended.
    """

    def __init__(self, prompt: str) -> None:
        self.prompt = prompt

    def augment_with_context(self, messages: list[Message]) -> list[Message]:
        if not self.prompt:
            return list(messages)
        if messages and messages[0].role == Role.SYSTEM:
            first = messages[0]
            if self.prompt in first.content:
                return list(messages)
            merged = Message(
                Role.SYSTEM,
                f"{first.content}\n\n{self.prompt}" if first.content else self.prompt,
                timestamp=first.timestamp,
                metadata=dict(first.metadata),
            )
            return [merged, *messages[1:]]
        return [Message.system(self.prompt), *messages]


async def apply_context(
    injector: ContextInjector | None,
    messages: Sequence[Message],
) -> list[Message]:
    """Run *injector* over *messages*; on any failure return them unchanged."""
    original = list(messages)
    if injector is None:
        return original
    try:
        result = injector.augment_with_context(list(original))
        if inspect.isawaitable(result):
            result = await result
    except Exception as e:
        _logger.warning("Context injection failed, sending messages unchanged: %s", e)
        return original
    if not isinstance(result, list) or not all(isinstance(m, Message) for m in result):
        _logger.warning(
            "Context injector returned %s instead of a message list, ignoring it",
            type(result).__name__,
        )
        return original
    return result
