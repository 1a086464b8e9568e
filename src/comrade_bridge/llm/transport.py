"""HTTP transport: single-shot requests, native streaming and simulated streaming.

Per streaming call the transport walks a small state machine::

    IDLE -> CONNECTING -> STREAMING -> COMPLETED | FAILED | CANCELLED

Retries wrap only the connection phase.  Once content has been delivered
to the caller a failure is terminal and carries the partial content.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

import httpx

from comrade_bridge.config import RetrySettings, StreamSettings
from comrade_bridge.errors import BridgeError, ErrorCode, classify_error, error_from_exception
from comrade_bridge.types import ChatResponse, Usage

from .builders import ProbeRequest, ProviderRequest
from .response_parser import map_finish_reason, parse_response
from .retry import retry
from .stream_parser import FrameKind, LineBuffer, ToolCallAccumulator, parse_frame

_logger = logging.getLogger(__name__)

# Any failure httpx can raise while sending or reading a response
_HTTP_ERRORS = (httpx.HTTPError, httpx.StreamError)

# callback(chunk, is_complete); may be a plain function or a coroutine function
StreamCallback = Callable[[str, bool], Union[None, Awaitable[None]]]


class StreamPhase(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class StreamState:
    """Mutable state of one in-flight stream.  Never shared across calls."""

    provider: str
    phase: StreamPhase = StreamPhase.IDLE
    buffer: LineBuffer = field(default_factory=LineBuffer)
    bytes_received: int = 0
    chunks_received: int = 0
    start_time: float = field(default_factory=time.monotonic)
    cancelled: bool = False
    parts: list[str] = field(default_factory=list)
    finish_reason: str | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    tools: ToolCallAccumulator = field(default_factory=ToolCallAccumulator)

    @property
    def content(self) -> str:
        return "".join(self.parts)

    @property
    def footprint(self) -> int:
        """Bytes held on behalf of this stream (received + pending line)."""
        return self.bytes_received + len(self.buffer.pending.encode())

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.start_time) * 1000)

    def to_response(self) -> ChatResponse:
        usage = None
        if self.prompt_tokens is not None or self.completion_tokens is not None:
            usage = Usage(
                prompt_tokens=self.prompt_tokens or 0,
                completion_tokens=self.completion_tokens or 0,
            )
        return ChatResponse(
            content=self.content,
            finish_reason=map_finish_reason(self.provider, self.finish_reason),
            usage=usage,
            tool_calls=self.tools.finalize(),
            metadata={
                "provider": self.provider,
                "streamed": True,
                "chunks": self.chunks_received,
                "bytes": self.bytes_received,
                "latency_ms": self.elapsed_ms,
            },
        )


class StreamCallbackGuard:
    """Wraps a stream callback so the terminal ``("", True)`` fires exactly once.

    Deltas delivered after completion are dropped.
    """

    def __init__(self, callback: StreamCallback) -> None:
        self._callback = callback
        self.completed = False

    async def _invoke(self, chunk: str, done: bool) -> None:
        result = self._callback(chunk, done)
        if inspect.isawaitable(result):
            await result

    async def delta(self, chunk: str) -> None:
        if self.completed or not chunk:
            return
        await self._invoke(chunk, False)

    async def complete(self) -> None:
        if self.completed:
            return
        self.completed = True
        await self._invoke("", True)


def _guarded(callback: StreamCallback | StreamCallbackGuard) -> StreamCallbackGuard:
    if isinstance(callback, StreamCallbackGuard):
        return callback
    return StreamCallbackGuard(callback)


# Word-aligned pieces: leading whitespace stays attached to the next token
_SIMULATED_CHUNK_RE = re.compile(r"\s*[\w']+|\s*[^\w\s]+|\s+")


def split_for_simulation(content: str) -> list[str]:
    """Slice *content* into word/punctuation-aligned chunks.

    ``"".join(split_for_simulation(c)) == c`` for every string.
    """
    return _SIMULATED_CHUNK_RE.findall(content)


def _cancelled(provider: str, partial: str = "", what: str = "Stream") -> BridgeError:
    return BridgeError(
        f"{what} cancelled",
        ErrorCode.CANCELLED,
        provider=provider,
        partial_content=partial,
    )


async def _race(aw: Awaitable[Any], cancel_event: asyncio.Event | None) -> tuple[bool, Any]:
    """Await *aw* unless *cancel_event* fires first.

    Returns ``(cancelled, result)``.  A cancelled *aw* is unwound before
    returning.  When both finish together the result wins.
    """
    if cancel_event is None:
        return False, await aw
    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for t in (task, waiter):
            if not t.done():
                t.cancel()
    if task in done:
        return False, task.result()
    await asyncio.gather(task, return_exceptions=True)
    return True, None


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class HttpTransport:
    """Sends provider requests over a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        retry_settings: RetrySettings | None = None,
        stream_settings: StreamSettings | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None
        self.retry_settings = retry_settings or RetrySettings()
        self.stream_settings = stream_settings or StreamSettings()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _retry(
        self,
        operation: Callable[[], Awaitable[Any]],
        provider: str,
        description: str,
        cancel_event: asyncio.Event | None,
    ) -> Any:
        return await retry(
            operation,
            max_attempts=self.retry_settings.max_attempts,
            base_delay=self.retry_settings.base_delay,
            max_delay=self.retry_settings.max_delay,
            description=description,
            cancel_event=cancel_event,
            provider=provider,
        )

    def _http_request(self, request: ProviderRequest, timeout: float) -> httpx.Request:
        return self._client.build_request(
            request.method,
            request.url,
            content=request.encode(),
            headers=request.headers,
            timeout=httpx.Timeout(timeout),
        )

    # -- single-shot -----------------------------------------------------

    async def send(
        self,
        request: ProviderRequest,
        timeout: float,
        cancel_event: asyncio.Event | None = None,
    ) -> ChatResponse:
        """Send a non-streaming request with retries and parse the reply."""
        provider = request.provider
        started = time.monotonic()

        async def attempt() -> ChatResponse:
            try:
                resp = await self._client.send(self._http_request(request, timeout))
            except _HTTP_ERRORS as e:
                raise error_from_exception(provider, e) from e
            return parse_response(resp.status_code, resp.content, provider, resp.headers)

        cancelled, response = await _race(
            self._retry(attempt, provider, f"{provider} request", cancel_event), cancel_event,
        )
        if cancelled:
            raise _cancelled(provider, what="Request")
        response.metadata["latency_ms"] = int((time.monotonic() - started) * 1000)
        return response

    # -- native streaming ------------------------------------------------

    async def stream(
        self,
        request: ProviderRequest,
        callback: StreamCallback | StreamCallbackGuard,
        timeout: float,
        cancel_event: asyncio.Event | None = None,
        finish: bool = True,
    ) -> ChatResponse:
        """Stream *request*, delivering deltas to *callback* in arrival order.

        With ``finish=False`` the terminal callback is left to the caller
        (used when a tool follow-up continues the same stream).  On any
        failure the terminal callback fires before the error propagates.
        """
        guard = _guarded(callback)
        state = StreamState(provider=request.provider)
        try:
            response = await self._connect(request, state, timeout, cancel_event)
            try:
                await self._read(response, state, guard, cancel_event)
            finally:
                await response.aclose()
        except BridgeError as e:
            state.phase = (
                StreamPhase.CANCELLED if e.code == ErrorCode.CANCELLED else StreamPhase.FAILED
            )
            if not e.partial_content:
                e.partial_content = state.content
            _logger.info(
                "%s stream ended %s after %d chunks: %s",
                state.provider, state.phase.value, state.chunks_received, e.message,
            )
            await guard.complete()
            raise
        except asyncio.CancelledError:
            state.phase = StreamPhase.CANCELLED
            state.cancelled = True
            await guard.complete()
            raise

        state.phase = StreamPhase.COMPLETED
        if finish:
            await guard.complete()
        _logger.debug(
            "%s stream completed: %d chunks, %d bytes",
            state.provider, state.chunks_received, state.bytes_received,
        )
        return state.to_response()

    async def _connect(
        self,
        request: ProviderRequest,
        state: StreamState,
        timeout: float,
        cancel_event: asyncio.Event | None,
    ) -> httpx.Response:
        provider = request.provider
        state.phase = StreamPhase.CONNECTING

        async def attempt() -> httpx.Response:
            try:
                resp = await self._client.send(self._http_request(request, timeout), stream=True)
                if resp.status_code >= 400:
                    try:
                        body = await resp.aread()
                    finally:
                        await resp.aclose()
                    raise classify_error(provider, resp.status_code, resp.headers, body)
            except _HTTP_ERRORS as e:
                raise error_from_exception(provider, e) from e
            return resp

        cancelled, response = await _race(
            self._retry(attempt, provider, f"{provider} stream", cancel_event), cancel_event,
        )
        if cancelled:
            raise _cancelled(provider)
        return response

    async def _read(
        self,
        response: httpx.Response,
        state: StreamState,
        guard: StreamCallbackGuard,
        cancel_event: asyncio.Event | None,
    ) -> None:
        state.phase = StreamPhase.STREAMING
        if cancel_event is not None and cancel_event.is_set():
            state.cancelled = True
            raise _cancelled(state.provider, state.content)

        # The reader is unwound inside _race before the connection is released
        cancelled, _ = await _race(self._consume(response, state, guard), cancel_event)
        if not cancelled:
            return
        state.cancelled = True
        raise _cancelled(state.provider, state.content)

    async def _consume(
        self,
        response: httpx.Response,
        state: StreamState,
        guard: StreamCallbackGuard,
    ) -> None:
        interval = self.stream_settings.pressure_check_interval
        try:
            async for chunk in response.aiter_bytes():
                state.bytes_received += len(chunk)
                state.chunks_received += 1
                for line in state.buffer.feed(chunk):
                    if await self._handle_line(line, state, guard):
                        return
                if state.chunks_received % interval == 0:
                    self._check_pressure(state)
        except _HTTP_ERRORS as e:
            raise error_from_exception(state.provider, e) from e
        for line in state.buffer.flush():
            if await self._handle_line(line, state, guard):
                return

    async def _handle_line(
        self,
        line: str,
        state: StreamState,
        guard: StreamCallbackGuard,
    ) -> bool:
        """Apply one line to *state*.  Returns True at end of stream."""
        frame = parse_frame(line, state.provider)
        if frame.kind == FrameKind.SKIP:
            return False
        if frame.kind == FrameKind.ERROR:
            raise classify_error(state.provider, None, None, frame.error)
        if frame.finish_reason is not None:
            state.finish_reason = frame.finish_reason
        if frame.prompt_tokens is not None:
            state.prompt_tokens = frame.prompt_tokens
        if frame.completion_tokens is not None:
            state.completion_tokens = frame.completion_tokens
        if frame.tool_fragments:
            state.tools.feed(frame.tool_fragments)
        if frame.kind == FrameKind.DONE:
            return True
        if frame.text:
            state.parts.append(frame.text)
            await guard.delta(frame.text)
        return False

    def _check_pressure(self, state: StreamState) -> None:
        limit = self.stream_settings.max_stream_bytes
        if state.footprint > limit:
            _logger.warning(
                "%s stream exceeded %d bytes after %d chunks, aborting",
                state.provider, limit, state.chunks_received,
            )
            raise BridgeError(
                f"Stream exceeded the {limit} byte limit",
                ErrorCode.RESOURCE_EXHAUSTED,
                provider=state.provider,
            )

    # -- simulated streaming ---------------------------------------------

    async def simulate_stream(
        self,
        request: ProviderRequest,
        callback: StreamCallback | StreamCallbackGuard,
        timeout: float,
        cancel_event: asyncio.Event | None = None,
        finish: bool = True,
    ) -> ChatResponse:
        """Send one plain request and replay its content as a stream.

        The final content is identical to what the reply carried; only the
        delivery cadence differs.
        """
        guard = _guarded(callback)
        provider = request.provider
        delivered: list[str] = []
        delay = self.stream_settings.simulated_chunk_delay
        try:
            response = await self.send(request, timeout, cancel_event)
            chunks = split_for_simulation(response.content)
            for i, piece in enumerate(chunks):
                if cancel_event is not None and cancel_event.is_set():
                    raise _cancelled(provider, "".join(delivered))
                delivered.append(piece)
                await guard.delta(piece)
                if delay and i < len(chunks) - 1:
                    await asyncio.sleep(delay)
        except BridgeError:
            await guard.complete()
            raise

        if finish:
            await guard.complete()
        response.metadata["streamed"] = True
        response.metadata["simulated"] = True
        return response

    # -- probes ----------------------------------------------------------

    async def probe(self, probe: ProbeRequest, provider: str, timeout: float) -> int:
        """Issue *probe* once (no retries) and return the HTTP status."""
        content = None
        if probe.body is not None:
            content = json.dumps(probe.body, separators=(",", ":")).encode()
        try:
            resp = await self._client.request(
                probe.method,
                probe.url,
                headers=probe.headers,
                content=content,
                timeout=httpx.Timeout(timeout),
            )
        except _HTTP_ERRORS as e:
            raise error_from_exception(provider, e) from e
        return resp.status_code
