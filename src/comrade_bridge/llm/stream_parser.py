"""Stream frame parsing and line buffering.

A *frame* is one unit of streamed provider output: one SSE ``data:`` line
(OpenAI, Anthropic, custom) or one NDJSON line (Ollama).  Parsing never
raises; a line that cannot be understood becomes a ``SKIP`` frame so one
bad line cannot abort a stream.
"""

from __future__ import annotations

import codecs
import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from comrade_bridge.types import ToolCall

_logger = logging.getLogger(__name__)


class FrameKind(enum.Enum):
    DELTA = "delta"  # carries content text and/or metadata
    DONE = "done"  # provider signalled end of stream
    ERROR = "error"  # provider sent an error payload mid-stream
    SKIP = "skip"  # blank, comment, event-name or malformed line


@dataclass
class ToolFragment:
    """Piece of a streamed tool call, keyed by its position in the reply."""

    index: int
    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class Frame:
    kind: FrameKind
    text: str = ""
    finish_reason: str | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    tool_fragments: list[ToolFragment] = field(default_factory=list)
    error: Any = None

    @property
    def delta(self) -> str | None:
        """Content carried by this frame, or ``None``."""
        if self.kind == FrameKind.DELTA and self.text:
            return self.text
        return None


_SKIP = Frame(FrameKind.SKIP)


def _sse_payload(line: str) -> str | None:
    if not line.startswith("data:"):
        return None
    payload = line[5:]
    if payload.startswith(" "):
        payload = payload[1:]
    return payload.strip()


def _load(payload: str) -> dict[str, Any] | None:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        _logger.debug("Skipping malformed stream frame: %.80s", payload)
        return None
    return data if isinstance(data, dict) else None


# ---------------------------------------------------------------------------
# Per-provider parsers
# ---------------------------------------------------------------------------

def _parse_openai(line: str) -> Frame:
    payload = _sse_payload(line)
    if payload is None or not payload:
        return _SKIP
    if payload == "[DONE]":
        return Frame(FrameKind.DONE)
    data = _load(payload)
    if data is None:
        return _SKIP
    if data.get("error"):
        return Frame(FrameKind.ERROR, error=data)

    frame = Frame(FrameKind.DELTA)
    usage = data.get("usage")
    if isinstance(usage, dict):
        frame.prompt_tokens = usage.get("prompt_tokens")
        frame.completion_tokens = usage.get("completion_tokens")

    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return frame
    choice = choices[0]
    delta = choice.get("delta") or {}
    content = delta.get("content")
    if isinstance(content, str):
        frame.text = content
    frame.finish_reason = choice.get("finish_reason")
    for tc in delta.get("tool_calls") or []:
        func = tc.get("function") or {}
        frame.tool_fragments.append(
            ToolFragment(
                index=tc.get("index", 0),
                id=tc.get("id") or "",
                name=func.get("name") or "",
                arguments=func.get("arguments") or "",
            )
        )
    return frame


def _parse_anthropic(line: str) -> Frame:
    # "event: <name>" lines are redundant with the JSON "type" field
    payload = _sse_payload(line)
    if not payload:
        return _SKIP
    data = _load(payload)
    if data is None:
        return _SKIP

    kind = data.get("type")
    if kind == "content_block_delta":
        delta = data.get("delta") or {}
        if delta.get("type") == "input_json_delta":
            return Frame(
                FrameKind.DELTA,
                tool_fragments=[
                    ToolFragment(
                        index=data.get("index", 0),
                        arguments=delta.get("partial_json") or "",
                    )
                ],
            )
        text = delta.get("text")
        return Frame(FrameKind.DELTA, text=text if isinstance(text, str) else "")
    if kind == "content_block_start":
        block = data.get("content_block") or {}
        if block.get("type") == "tool_use":
            return Frame(
                FrameKind.DELTA,
                tool_fragments=[
                    ToolFragment(
                        index=data.get("index", 0),
                        id=block.get("id") or "",
                        name=block.get("name") or "",
                    )
                ],
            )
        text = block.get("text")
        return Frame(FrameKind.DELTA, text=text if isinstance(text, str) else "")
    if kind == "message_start":
        usage = (data.get("message") or {}).get("usage") or {}
        return Frame(
            FrameKind.DELTA,
            prompt_tokens=usage.get("input_tokens"),
            completion_tokens=usage.get("output_tokens"),
        )
    if kind == "message_delta":
        delta = data.get("delta") or {}
        usage = data.get("usage") or {}
        text = delta.get("text", delta.get("content"))
        return Frame(
            FrameKind.DELTA,
            text=text if isinstance(text, str) else "",
            finish_reason=delta.get("stop_reason"),
            completion_tokens=usage.get("output_tokens"),
        )
    if kind == "message_stop":
        return Frame(FrameKind.DONE)
    if kind == "error":
        return Frame(FrameKind.ERROR, error=data)
    # ping, content_block_stop, unknown future events
    return _SKIP


def _parse_ollama(line: str) -> Frame:
    stripped = line.strip()
    if not stripped:
        return _SKIP
    data = _load(stripped)
    if data is None:
        return _SKIP
    if data.get("error"):
        return Frame(FrameKind.ERROR, error=data)
    if data.get("done"):
        return Frame(
            FrameKind.DONE,
            finish_reason=data.get("done_reason") or "stop",
            prompt_tokens=data.get("prompt_eval_count"),
            completion_tokens=data.get("eval_count"),
        )
    content = (data.get("message") or {}).get("content")
    return Frame(FrameKind.DELTA, text=content if isinstance(content, str) else "")


_PARSERS = {
    "openai": _parse_openai,
    "custom": _parse_openai,
    "anthropic": _parse_anthropic,
    "ollama": _parse_ollama,
}


def parse_frame(line: str, provider: str) -> Frame:
    """Parse one complete line of provider stream output."""
    parser = _PARSERS.get(provider)
    if parser is None:
        return _SKIP
    try:
        return parser(line.rstrip("\r"))
    except (AttributeError, TypeError, ValueError) as e:
        # Structurally odd JSON (e.g. a list where a dict was expected)
        _logger.debug("Skipping unparsable %s frame: %s", provider, e)
        return _SKIP


def parse_stream_line(line: str, provider: str) -> str | None:
    """Content delta carried by *line*, or ``None`` for anything else."""
    return parse_frame(line, provider).delta


# ---------------------------------------------------------------------------
# Line buffering
# ---------------------------------------------------------------------------

class LineBuffer:
    """Split arbitrary byte chunks into complete lines.

    The trailing incomplete line is retained until more data arrives or
    ``flush()`` is called at end of stream.  Multi-byte UTF-8 sequences
    split across chunks are reassembled.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.pending = ""

    def feed(self, chunk: bytes | str) -> list[str]:
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        if not text:
            return []
        data = self.pending + text
        *lines, self.pending = data.split("\n")
        return lines

    def flush(self) -> list[str]:
        tail = self.pending + self._decoder.decode(b"", final=True)
        self.pending = ""
        return [tail] if tail.strip() else []


# ---------------------------------------------------------------------------
# Streamed tool-call accumulation
# ---------------------------------------------------------------------------

class ToolCallAccumulator:
    """Accumulate streamed tool-call fragments into complete ``ToolCall``s.

    Fragments share an ``index``; the first one carries ``id`` and ``name``,
    later ones carry argument JSON pieces that must be concatenated.
    """

    def __init__(self) -> None:
        self._calls: dict[int, ToolFragment] = {}

    def feed(self, fragments: list[ToolFragment]) -> None:
        for frag in fragments:
            entry = self._calls.setdefault(frag.index, ToolFragment(index=frag.index))
            if frag.id:
                entry.id = frag.id
            if frag.name:
                entry.name = frag.name
            if frag.arguments:
                entry.arguments += frag.arguments

    def has_calls(self) -> bool:
        return bool(self._calls)

    def finalize(self) -> list[ToolCall]:
        result: list[ToolCall] = []
        for idx in sorted(self._calls):
            entry = self._calls[idx]
            if not entry.name:
                continue
            try:
                args = json.loads(entry.arguments) if entry.arguments else {}
            except json.JSONDecodeError:
                args = {}
            if not isinstance(args, dict):
                args = {"value": args}
            result.append(
                ToolCall(id=entry.id or f"call_{idx}", name=entry.name, parameters=args),
            )
        return result
