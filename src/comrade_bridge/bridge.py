"""ChatBridge: the single entry point for talking to an LLM provider.

Usage::

    config, _ = load_config()
    async with ChatBridge.from_config(config) as bridge:
        reply = await bridge.send_message([Message.user("Hello")])

Every call validates its input before any network I/O, builds the
provider request, sends it through the transport (with retries) and, when
the model asks for tools, runs one tool round through the orchestrator.
A call either returns a ``ChatResponse`` or raises ``BridgeError``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Mapping, Sequence, Union

import httpx

from comrade_bridge.config import (
    AgentConfig,
    BridgeConfig,
    ConfigProvider,
    RetrySettings,
    StaticConfigProvider,
    StreamSettings,
)
from comrade_bridge.core.context import ContextInjector, SystemPromptInjector, apply_context
from comrade_bridge.core.orchestrator import ToolCallOrchestrator, ToolExecutor
from comrade_bridge.errors import BridgeError, ErrorCode
from comrade_bridge.llm.builders import build_probe, build_request
from comrade_bridge.llm.capabilities import ProviderCapabilities, capabilities_for
from comrade_bridge.llm.transport import HttpTransport, StreamCallback, StreamCallbackGuard
from comrade_bridge.types import (
    ChatResponse,
    ConnectionStatus,
    ExecutionContext,
    Message,
    RequestOptions,
    Role,
)

_logger = logging.getLogger(__name__)

MessageLike = Union[Message, Mapping[str, Any]]


class _RecordingGuard(StreamCallbackGuard):
    """Callback guard that also remembers every delta it delivered."""

    def __init__(self, callback: StreamCallback) -> None:
        super().__init__(callback)
        self.parts: list[str] = []

    async def delta(self, chunk: str) -> None:
        if self.completed or not chunk:
            return
        self.parts.append(chunk)
        await super().delta(chunk)


def _invalid(message: str, provider: str) -> BridgeError:
    return BridgeError(message, ErrorCode.INVALID_REQUEST, provider=provider)


def _coerce_messages(messages: Sequence[MessageLike], provider: str) -> list[Message]:
    if isinstance(messages, (str, bytes)) or not messages:
        raise _invalid("messages must be a non-empty list", provider)
    result: list[Message] = []
    for i, m in enumerate(messages):
        if isinstance(m, Mapping):
            try:
                m = Message(role=m["role"], content=m["content"])
            except (KeyError, ValueError) as e:
                raise _invalid(f"message {i} is malformed: {e}", provider) from e
        if not isinstance(m, Message):
            raise _invalid(f"message {i} is not a Message", provider)
        if not isinstance(m.role, Role):
            raise _invalid(f"message {i} has an invalid role {m.role!r}", provider)
        if not isinstance(m.content, str):
            raise _invalid(f"message {i} content must be a string", provider)
        result.append(m)
    if all(m.role == Role.SYSTEM for m in result):
        raise _invalid("at least one user or assistant message is required", provider)
    return result


def interpret_probe(provider: str, status: int) -> ConnectionStatus:
    """Decide reachability from a probe's HTTP status."""
    if status in (401, 403):
        return ConnectionStatus(False, f"Authentication failed (HTTP {status})", status)
    if provider in ("anthropic", "custom"):
        # The tiny completion may legitimately be rejected with a 4xx
        if status < 500:
            return ConnectionStatus(True, None, status)
        return ConnectionStatus(False, f"Server error (HTTP {status})", status)
    if 200 <= status < 300:
        return ConnectionStatus(True, None, status)
    return ConnectionStatus(False, f"Unexpected HTTP {status}", status)


class ChatBridge:
    """Provider-agnostic chat façade.

    *agent* is either a fixed ``AgentConfig`` or a ``ConfigProvider``
    consulted at the start of every call.  Tool execution and system
    context are injected collaborators; both are optional.
    """

    def __init__(
        self,
        agent: AgentConfig | ConfigProvider,
        *,
        agent_name: str | None = None,
        tool_executor: ToolExecutor | None = None,
        context_injector: ContextInjector | None = None,
        retry: RetrySettings | None = None,
        stream: StreamSettings | None = None,
        execution_context: ExecutionContext | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._agent = agent
        self._agent_name = agent_name
        self._tool_executor = tool_executor
        self._context_injector = context_injector
        self.stream_settings = stream or StreamSettings()
        self.execution_context = execution_context or ExecutionContext(
            agent_id=agent_name or "default",
        )
        self._transport = HttpTransport(
            client=http_client,
            retry_settings=retry or RetrySettings(),
            stream_settings=self.stream_settings,
        )

    @classmethod
    def from_config(
        cls,
        config: BridgeConfig,
        agent_name: str | None = None,
        **kwargs: Any,
    ) -> ChatBridge:
        """Build a bridge wired to *config*'s agents, retry and stream settings."""
        name = agent_name or config.default_agent
        kwargs.setdefault(
            "context_injector",
            SystemPromptInjector(config.system_prompt) if config.system_prompt else None,
        )
        kwargs.setdefault("retry", config.retry)
        kwargs.setdefault("stream", config.stream)
        kwargs.setdefault("execution_context", config.execution_context(name))
        return cls(StaticConfigProvider(config), agent_name=name, **kwargs)

    async def close(self) -> None:
        await self._transport.close()

    async def __aenter__(self) -> ChatBridge:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    def _resolve_agent(self) -> AgentConfig:
        if isinstance(self._agent, AgentConfig):
            return self._agent
        return self._agent.get_agent(self._agent_name)

    def _prepare(
        self,
        messages: Sequence[MessageLike],
        options: RequestOptions | None,
    ) -> tuple[AgentConfig, ProviderCapabilities, list[Message], RequestOptions]:
        """Validate everything that can be checked without network I/O."""
        agent = self._resolve_agent()
        provider = agent.provider
        caps = capabilities_for(provider)
        if not agent.model:
            raise BridgeError(
                "No model configured for this agent",
                ErrorCode.CONFIGURATION_ERROR,
                provider=provider,
            )
        if provider == "custom" and not agent.endpoint:
            raise BridgeError(
                "Custom provider requires an endpoint",
                ErrorCode.CONFIGURATION_ERROR,
                provider=provider,
                suggested_fix="Set 'endpoint' for this agent to the full chat completions URL.",
            )

        msgs = _coerce_messages(messages, provider)
        options = options or RequestOptions()
        problems = options.validate()
        if problems:
            raise _invalid("Invalid request options: " + "; ".join(problems), provider)
        if options.tools and not caps.tools:
            _logger.info(
                "%s does not support tool calling; dropping %d tool(s)",
                provider, len(options.tools),
            )
            options = replace(options, tools=[])
        return agent, caps, msgs, options

    def _timeout(self, agent: AgentConfig, options: RequestOptions) -> float:
        return options.timeout if options.timeout is not None else agent.timeout

    def _orchestrator(self, provider: str) -> ToolCallOrchestrator:
        return ToolCallOrchestrator(self._tool_executor, self.execution_context, provider)

    @staticmethod
    def _annotate(agent: AgentConfig, response: ChatResponse) -> ChatResponse:
        response.metadata["provider"] = agent.provider
        if not response.metadata.get("model"):
            response.metadata["model"] = agent.model
        return response

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def send_message(
        self,
        messages: Sequence[MessageLike],
        options: RequestOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ChatResponse:
        """Send *messages* and return the complete reply."""
        agent, _caps, msgs, options = self._prepare(messages, options)
        options = replace(options, stream=False)
        timeout = self._timeout(agent, options)
        msgs = await apply_context(self._context_injector, msgs)

        request = build_request(agent, msgs, options)
        _logger.info("Sending %s request (model=%s)", agent.provider, agent.model)
        response = self._annotate(
            agent, await self._transport.send(request, timeout, cancel_event),
        )

        async def follow_up(conversation: list[Message]) -> ChatResponse:
            req = build_request(agent, conversation, replace(options, tools=[]))
            return self._annotate(
                agent, await self._transport.send(req, timeout, cancel_event),
            )

        return await self._orchestrator(agent.provider).run(msgs, response, follow_up)

    async def stream_message(
        self,
        messages: Sequence[MessageLike],
        callback: StreamCallback,
        options: RequestOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ChatResponse:
        """Stream the reply to *callback* as ``(chunk, is_complete)`` calls.

        ``callback("", True)`` is always the last call, exactly once, even
        when the stream fails or is cancelled.  The returned content is the
        concatenation of every delivered chunk.
        """
        agent, caps, msgs, options = self._prepare(messages, options)
        timeout = self._timeout(agent, options)
        native = self.stream_settings.native and caps.native_streaming
        guard = _RecordingGuard(callback)

        async def stream_once(conversation: list[Message], opts: RequestOptions) -> ChatResponse:
            if native:
                request = build_request(agent, conversation, replace(opts, stream=True))
                response = await self._transport.stream(
                    request, guard, timeout, cancel_event, finish=False,
                )
            else:
                request = build_request(agent, conversation, replace(opts, stream=False))
                response = await self._transport.simulate_stream(
                    request, guard, timeout, cancel_event, finish=False,
                )
            return self._annotate(agent, response)

        try:
            msgs = await apply_context(self._context_injector, msgs)
            _logger.info(
                "Streaming %s request (model=%s, native=%s)",
                agent.provider, agent.model, native,
            )
            first = await stream_once(msgs, options)

            async def follow_up(conversation: list[Message]) -> ChatResponse:
                return await stream_once(conversation, replace(options, tools=[]))

            result = await self._orchestrator(agent.provider).run(msgs, first, follow_up)
        except BridgeError as e:
            if not e.partial_content:
                e.partial_content = "".join(guard.parts)
            raise
        finally:
            await guard.complete()

        result.content = "".join(guard.parts)
        return result

    async def validate_connection(self) -> ConnectionStatus:
        """Probe the provider.  Never raises; failures come back as ``ok=False``."""
        try:
            agent = self._resolve_agent()
            probe = build_probe(agent)
        except BridgeError as e:
            return ConnectionStatus(False, e.message)
        try:
            status = await self._transport.probe(probe, agent.provider, agent.timeout)
        except BridgeError as e:
            _logger.info("Connection probe for %s failed: %s", agent.provider, e.message)
            return ConnectionStatus(False, e.message)
        return interpret_probe(agent.provider, status)
