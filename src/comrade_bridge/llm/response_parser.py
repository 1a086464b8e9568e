"""Non-streaming response parsing.

``parse_response(status, body, provider)`` turns a complete provider reply
into a ``ChatResponse`` or raises ``BridgeError`` when the body carries a
provider error or is structurally invalid.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping

from comrade_bridge.errors import BridgeError, ErrorCode, classify_error
from comrade_bridge.types import ChatResponse, FinishReason, ToolCall, Usage

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Finish-reason mapping
# ---------------------------------------------------------------------------

# Unrecognized provider values map to ERROR, never silently to STOP.
_OPENAI_FINISH: dict[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.ERROR,
}

_ANTHROPIC_FINISH: dict[str, FinishReason] = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "tool_use": FinishReason.TOOL_CALLS,
    "refusal": FinishReason.ERROR,
}

_OLLAMA_FINISH: dict[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
}

_FINISH_TABLES = {
    "openai": _OPENAI_FINISH,
    "custom": _OPENAI_FINISH,
    "anthropic": _ANTHROPIC_FINISH,
    "ollama": _OLLAMA_FINISH,
}


def map_finish_reason(provider: str, value: str | None) -> FinishReason:
    """Map a provider finish value to exactly one canonical reason.

    An absent value (``None``) means the provider did not report one and
    is treated as a normal stop.
    """
    if value is None:
        return FinishReason.STOP
    table = _FINISH_TABLES.get(provider, {})
    reason = table.get(value)
    if reason is None:
        _logger.warning("Unrecognized %s finish reason %r", provider, value)
        return FinishReason.ERROR
    return reason


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _invalid(provider: str, detail: str, body: Any = None) -> BridgeError:
    return BridgeError(
        f"Invalid {provider} response: {detail}",
        ErrorCode.INVALID_RESPONSE,
        provider=provider,
        original_cause=body,
    )


def _decode(provider: str, body: Any) -> Mapping[str, Any]:
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except json.JSONDecodeError as e:
            raise _invalid(provider, f"unparsable JSON ({e})", body) from e
    if not isinstance(body, Mapping):
        raise _invalid(provider, f"expected a JSON object, got {type(body).__name__}", body)
    return body


def _usage(prompt: Any, completion: Any) -> Usage | None:
    if prompt is None and completion is None:
        return None
    return Usage(prompt_tokens=int(prompt or 0), completion_tokens=int(completion or 0))


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            args = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return args if isinstance(args, dict) else {"value": args}
    return {}


# ---------------------------------------------------------------------------
# Per-provider parsers
# ---------------------------------------------------------------------------

def _parse_openai(provider: str, data: Mapping[str, Any]) -> ChatResponse:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        raise _invalid(provider, "missing choices", data)
    choice = choices[0]
    if not isinstance(choice, Mapping):
        raise _invalid(provider, "malformed choice", data)
    message = choice.get("message")
    if not isinstance(message, Mapping):
        raise _invalid(provider, "choice has no message", data)

    tool_calls: list[ToolCall] = []
    raw_calls = message.get("tool_calls") or []
    if not isinstance(raw_calls, list):
        raise _invalid(provider, "tool_calls is not a list", data)
    for idx, tc in enumerate(raw_calls):
        if not isinstance(tc, Mapping):
            raise _invalid(provider, f"tool call {idx} is malformed", data)
        func = tc.get("function") or {}
        if not isinstance(func, Mapping):
            raise _invalid(provider, f"tool call {idx} has a malformed function", data)
        name = func.get("name")
        if not name:
            continue
        tool_calls.append(
            ToolCall(
                id=tc.get("id") or f"call_{idx}",
                name=name,
                parameters=_parse_arguments(func.get("arguments")),
            )
        )

    usage = data.get("usage") or {}
    return ChatResponse(
        content=message.get("content") or "",
        finish_reason=map_finish_reason(provider, choice.get("finish_reason")),
        usage=_usage(usage.get("prompt_tokens"), usage.get("completion_tokens")),
        tool_calls=tool_calls,
        metadata={
            "provider": provider,
            "model": data.get("model", ""),
            "response_id": data.get("id"),
        },
    )


def _parse_anthropic(provider: str, data: Mapping[str, Any]) -> ChatResponse:
    blocks = data.get("content")
    if not isinstance(blocks, list):
        raise _invalid(provider, "missing content array", data)

    texts: list[str] = []
    tool_calls: list[ToolCall] = []
    for block in blocks:
        if not isinstance(block, Mapping):
            continue
        if block.get("type") == "text":
            texts.append(block.get("text") or "")
        elif block.get("type") == "tool_use" and block.get("name"):
            tool_calls.append(
                ToolCall(
                    id=block.get("id") or f"toolu_{len(tool_calls)}",
                    name=block["name"],
                    parameters=_parse_arguments(block.get("input")),
                )
            )

    usage = data.get("usage") or {}
    return ChatResponse(
        content="".join(texts),
        finish_reason=map_finish_reason(provider, data.get("stop_reason")),
        usage=_usage(usage.get("input_tokens"), usage.get("output_tokens")),
        tool_calls=tool_calls,
        metadata={
            "provider": provider,
            "model": data.get("model", ""),
            "response_id": data.get("id"),
        },
    )


def _parse_ollama(provider: str, data: Mapping[str, Any]) -> ChatResponse:
    message = data.get("message")
    if not isinstance(message, Mapping) or "content" not in message:
        raise _invalid(provider, "missing message content", data)
    return ChatResponse(
        content=message.get("content") or "",
        finish_reason=map_finish_reason(provider, data.get("done_reason")),
        usage=_usage(data.get("prompt_eval_count"), data.get("eval_count")),
        metadata={
            "provider": provider,
            "model": data.get("model", ""),
            "total_duration": data.get("total_duration"),
        },
    )


_PARSERS = {
    "openai": _parse_openai,
    "custom": _parse_openai,
    "anthropic": _parse_anthropic,
    "ollama": _parse_ollama,
}


def parse_response(
    status: int,
    body: Any,
    provider: str,
    headers: Mapping[str, str] | None = None,
) -> ChatResponse:
    """Parse a complete provider reply into a ``ChatResponse``."""
    if status >= 400:
        raise classify_error(provider, status, headers, body)
    data = _decode(provider, body)
    if data.get("error") or data.get("type") == "error":
        raise classify_error(provider, status, headers, data)
    parser = _PARSERS.get(provider)
    if parser is None:
        raise BridgeError(
            f"Unsupported provider: {provider!r}",
            ErrorCode.UNSUPPORTED_PROVIDER,
            provider=provider,
        )
    return parser(provider, data)
