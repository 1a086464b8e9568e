"""End-to-end tests for ChatBridge over mocked HTTP."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from comrade_bridge.bridge import ChatBridge, interpret_probe
from comrade_bridge.config import AgentConfig, BridgeConfig, RetrySettings, StreamSettings
from comrade_bridge.core.context import SystemPromptInjector
from comrade_bridge.errors import BridgeError, ErrorCode
from comrade_bridge.types import (
    ExecutionContext,
    FinishReason,
    Message,
    RequestOptions,
    ToolExecution,
    ToolResult,
    ToolSpec,
)

HELLO = [Message.user("Hi")]
TIME_TOOL = ToolSpec("get_time", "Current time", {"type": "object", "properties": {}})


def _openai_reply(content="Hello!", finish_reason="stop", tool_calls=None, usage=(10, 20)):
    message = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "id": "chatcmpl-1",
        "model": "gpt-4o-mini",
        "choices": [{"message": message, "finish_reason": finish_reason}],
        "usage": {"prompt_tokens": usage[0], "completion_tokens": usage[1]},
    }


def _sse_body(lines: list[str]) -> bytes:
    return "".join(line + "\n\n" for line in lines).encode()


class Recorder:
    def __init__(self):
        self.calls = []

    def __call__(self, chunk, done):
        self.calls.append((chunk, done))


class ClockExecutor:
    def __init__(self):
        self.calls = []

    async def execute_tool_calls(self, tool_calls, context):
        self.calls.append(list(tool_calls))
        return [ToolExecution(c, ToolResult(True, data="12:00 UTC")) for c in tool_calls]


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------

class TestScenarios:
    async def test_openai_streaming(self, make_bridge, openai_agent):
        body = _sse_body([
            'data: {"choices":[{"delta":{"content":"Hello"}}]}',
            'data: {"choices":[{"delta":{"content":" world!"}}]}',
            "data: [DONE]",
        ])

        def handler(request):
            assert json.loads(request.content)["stream"] is True
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        rec = Recorder()
        resp = await make_bridge(openai_agent, handler).stream_message(HELLO, rec)
        assert rec.calls == [("Hello", False), (" world!", False), ("", True)]
        assert resp.content == "Hello world!"

    async def test_ollama_error_body_not_retried(self, make_bridge, ollama_agent):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"error": "model not found"})

        bridge = make_bridge(ollama_agent, handler)
        with patch("comrade_bridge.llm.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(BridgeError) as exc_info:
                await bridge.send_message(HELLO)
        err = exc_info.value
        assert err.provider == "ollama"
        assert err.code == ErrorCode.MODEL_NOT_FOUND
        assert not err.retryable
        assert len(calls) == 1
        sleep.assert_not_called()

    async def test_rate_limit_retry_after(self, make_bridge, openai_agent):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(
                    429,
                    headers={"Retry-After": "2"},
                    json={"error": {"message": "Rate limit reached", "type": "rate_limit_exceeded"}},
                )
            return httpx.Response(200, json=_openai_reply("finally"))

        bridge = make_bridge(openai_agent, handler)
        with patch("comrade_bridge.llm.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            resp = await bridge.send_message(HELLO)
        assert resp.content == "finally"
        assert len(calls) == 2
        sleep.assert_awaited_once_with(2.0)
        assert sum(c.args[0] for c in sleep.await_args_list) >= 2

    async def test_malformed_stream_line_skipped(self, make_bridge, openai_agent):
        body = _sse_body([
            'data: {"choices":[{"delta":{"content":"one"}}]}',
            "data: {this is not json",
            'data: {"choices":[{"delta":{"content":"two"}}]}',
            "data: [DONE]",
        ])
        rec = Recorder()
        bridge = make_bridge(openai_agent, lambda r: httpx.Response(200, content=body))
        resp = await bridge.stream_message(HELLO, rec)
        assert rec.calls == [("one", False), ("two", False), ("", True)]
        assert resp.content == "onetwo"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidation:
    @pytest.mark.parametrize("messages", [
        [],
        [Message.system("only system")],
        [{"role": "wizard", "content": "x"}],
        [{"content": "no role"}],
        [Message("user", 42)],
    ])
    async def test_rejected_before_io(self, make_bridge, openai_agent, messages):
        handler = AsyncMock(side_effect=AssertionError("no network expected"))
        bridge = make_bridge(openai_agent, handler)
        with pytest.raises(BridgeError) as exc_info:
            await bridge.send_message(messages)
        assert exc_info.value.code == ErrorCode.INVALID_REQUEST
        handler.assert_not_called()

    async def test_bad_options(self, make_bridge, openai_agent):
        bridge = make_bridge(openai_agent, AsyncMock())
        with pytest.raises(BridgeError) as exc_info:
            await bridge.send_message(HELLO, RequestOptions(temperature=5))
        assert exc_info.value.code == ErrorCode.INVALID_REQUEST
        assert "temperature" in exc_info.value.message

    async def test_stream_validation_does_not_call_back(self, make_bridge, openai_agent):
        rec = Recorder()
        with pytest.raises(BridgeError):
            await make_bridge(openai_agent, AsyncMock()).stream_message([], rec)
        assert rec.calls == []

    async def test_unsupported_provider(self, make_bridge):
        bridge = make_bridge(AgentConfig(provider="bard", model="x"), AsyncMock())
        with pytest.raises(BridgeError) as exc_info:
            await bridge.send_message(HELLO)
        assert exc_info.value.code == ErrorCode.UNSUPPORTED_PROVIDER

    async def test_custom_without_endpoint(self, make_bridge):
        bridge = make_bridge(AgentConfig(provider="custom", model="x"), AsyncMock())
        with pytest.raises(BridgeError) as exc_info:
            await bridge.send_message(HELLO)
        assert exc_info.value.code == ErrorCode.CONFIGURATION_ERROR

    async def test_dict_messages_accepted(self, make_bridge, openai_agent):
        bridge = make_bridge(openai_agent, lambda r: httpx.Response(200, json=_openai_reply()))
        resp = await bridge.send_message([{"role": "user", "content": "hi"}])
        assert resp.content == "Hello!"


# ---------------------------------------------------------------------------
# send_message
# ---------------------------------------------------------------------------

class TestSendMessage:
    async def test_response_metadata(self, make_bridge, openai_agent):
        bridge = make_bridge(openai_agent, lambda r: httpx.Response(200, json=_openai_reply()))
        resp = await bridge.send_message(HELLO)
        assert resp.finish_reason is FinishReason.STOP
        assert resp.usage.total_tokens == 30
        assert resp.metadata["provider"] == "openai"
        assert resp.metadata["model"] == "gpt-4o-mini"
        assert "latency_ms" in resp.metadata

    async def test_anthropic_roundtrip(self, make_bridge, anthropic_agent):
        def handler(request):
            body = json.loads(request.content)
            assert request.headers["x-api-key"] == "ak-test"
            assert body["system"] == "Be brief."
            return httpx.Response(200, json={
                "content": [{"type": "text", "text": "Hey"}],
                "stop_reason": "end_turn",
                "usage": {"input_tokens": 3, "output_tokens": 1},
            })

        bridge = make_bridge(
            anthropic_agent, handler, context_injector=SystemPromptInjector("Be brief."),
        )
        resp = await bridge.send_message(HELLO)
        assert resp.content == "Hey"
        assert resp.metadata["model"] == "claude-3-5-haiku-latest"

    async def test_auth_error_not_retried(self, make_bridge, openai_agent):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, json={"error": {"message": "bad", "code": "invalid_api_key"}})

        with pytest.raises(BridgeError) as exc_info:
            await make_bridge(openai_agent, handler).send_message(HELLO)
        assert exc_info.value.code == ErrorCode.INVALID_API_KEY
        assert "API key" in exc_info.value.suggested_fix
        assert len(calls) == 1

    async def test_server_errors_exhaust_retries(self, make_bridge, openai_agent):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, text="oops")

        bridge = make_bridge(openai_agent, handler, retry=RetrySettings(max_attempts=2, base_delay=0.01))
        with patch("comrade_bridge.llm.retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(BridgeError) as exc_info:
                await bridge.send_message(HELLO)
        assert exc_info.value.code == ErrorCode.SERVER_ERROR
        assert len(calls) == 3

    async def test_custom_server_error_shape_is_retried(self, make_bridge, custom_agent):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(500, json={
                    "object": "error",
                    "type": "InternalServerError",
                    "code": 500,
                    "message": "engine crashed",
                })
            return httpx.Response(200, json=_openai_reply("recovered"))

        bridge = make_bridge(custom_agent, handler)
        with patch("comrade_bridge.llm.retry.asyncio.sleep", new_callable=AsyncMock):
            resp = await bridge.send_message(HELLO)
        assert resp.content == "recovered"
        assert len(calls) == 2

    async def test_cancel_during_retry_after_wait(self, make_bridge, openai_agent):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(
                429, headers={"Retry-After": "5"}, json={"error": {"message": "Rate limit reached"}},
            )

        cancel = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.call_later(0.1, cancel.set)
        started = loop.time()
        with pytest.raises(BridgeError) as exc_info:
            await make_bridge(openai_agent, handler).send_message(HELLO, cancel_event=cancel)
        assert loop.time() - started < 1.0
        assert exc_info.value.code == ErrorCode.CANCELLED
        assert len(calls) == 1

    async def test_undecodable_body_is_bridge_error(self, make_bridge, openai_agent):
        def handler(request):
            return httpx.Response(200, content=b"definitely not gzip", headers={"content-encoding": "gzip"})

        with pytest.raises(BridgeError) as exc_info:
            await make_bridge(openai_agent, handler).send_message(HELLO)
        assert exc_info.value.code == ErrorCode.INVALID_RESPONSE
        assert isinstance(exc_info.value.original_cause, httpx.DecodingError)

    async def test_undecodable_stream_completes_callback(self, make_bridge, openai_agent):
        def handler(request):
            return httpx.Response(200, content=b"definitely not gzip", headers={"content-encoding": "gzip"})

        rec = Recorder()
        with pytest.raises(BridgeError) as exc_info:
            await make_bridge(openai_agent, handler).stream_message(HELLO, rec)
        assert exc_info.value.code == ErrorCode.INVALID_RESPONSE
        assert rec.calls == [("", True)]

    async def test_ollama_drops_tools(self, make_bridge, ollama_agent):
        def handler(request):
            assert "tools" not in json.loads(request.content)
            return httpx.Response(200, json={"message": {"content": "ok"}, "done": True})

        resp = await make_bridge(ollama_agent, handler).send_message(
            HELLO, RequestOptions(tools=[TIME_TOOL]),
        )
        assert resp.content == "ok"


class TestToolOrchestration:
    async def test_one_follow_up_without_tools(self, make_bridge, openai_agent):
        bodies = []

        def handler(request):
            body = json.loads(request.content)
            bodies.append(body)
            if len(bodies) == 1:
                return httpx.Response(200, json=_openai_reply(
                    content=None,
                    finish_reason="tool_calls",
                    tool_calls=[
                        {"id": "call_1", "type": "function", "function": {"name": "get_time", "arguments": "{}"}},
                        {"id": "call_2", "type": "function", "function": {"name": "get_time", "arguments": "{}"}},
                    ],
                    usage=(10, 5),
                ))
            return httpx.Response(200, json=_openai_reply("It is noon.", usage=(40, 6)))

        executor = ClockExecutor()
        bridge = make_bridge(openai_agent, handler, tool_executor=executor)
        resp = await bridge.send_message(HELLO, RequestOptions(tools=[TIME_TOOL]))

        assert len(bodies) == 2
        assert "tools" in bodies[0]
        assert "tools" not in bodies[1] and "tool_choice" not in bodies[1]
        assert [c.id for c in executor.calls[0]] == ["call_1", "call_2"]
        follow_msgs = bodies[1]["messages"]
        assert follow_msgs[1]["role"] == "assistant"
        assert follow_msgs[2]["content"] == "Tool get_time (id: call_1) succeeded: 12:00 UTC"
        assert resp.content == "It is noon."
        assert resp.usage.prompt_tokens == 50
        assert resp.usage.completion_tokens == 11
        assert len(resp.metadata["tool_calls"]) == 2

    async def test_executor_denial(self, make_bridge, openai_agent):
        class Denying:
            async def execute_tool_calls(self, tool_calls, context):
                assert context.agent_id == "ops"
                raise PermissionError("denied")

        def handler(request):
            return httpx.Response(200, json=_openai_reply(
                content="", finish_reason="tool_calls",
                tool_calls=[{"id": "c", "function": {"name": "get_time", "arguments": "{}"}}],
            ))

        bridge = make_bridge(
            openai_agent, handler,
            tool_executor=Denying(),
            execution_context=ExecutionContext(agent_id="ops"),
        )
        with pytest.raises(BridgeError) as exc_info:
            await bridge.send_message(HELLO, RequestOptions(tools=[TIME_TOOL]))
        assert exc_info.value.code == ErrorCode.TOOL_EXECUTION_FAILED

    async def test_streamed_tool_round_completes_once(self, make_bridge, openai_agent):
        first = _sse_body([
            'data: {"choices":[{"delta":{"content":"Checking. "}}]}',
            'data: {"choices":[{"delta":{"tool_calls":[{"index":0,"id":"call_1",'
            '"function":{"name":"get_time","arguments":"{}"}}]}}]}',
            'data: {"choices":[{"delta":{},"finish_reason":"tool_calls"}]}',
            "data: [DONE]",
        ])
        second = _sse_body([
            'data: {"choices":[{"delta":{"content":"Noon."}}]}',
            "data: [DONE]",
        ])
        replies = [first, second]

        def handler(request):
            return httpx.Response(200, content=replies.pop(0))

        rec = Recorder()
        bridge = make_bridge(openai_agent, handler, tool_executor=ClockExecutor())
        resp = await bridge.stream_message(HELLO, rec, RequestOptions(tools=[TIME_TOOL]))
        assert rec.calls == [("Checking. ", False), ("Noon.", False), ("", True)]
        assert resp.content == "Checking. Noon."
        assert resp.metadata["tool_calls"][0]["id"] == "call_1"


# ---------------------------------------------------------------------------
# stream_message
# ---------------------------------------------------------------------------

class TestStreamMessage:
    async def test_anthropic_stream(self, make_bridge, anthropic_agent):
        body = (
            'event: message_start\ndata: {"type":"message_start","message":{"usage":{"input_tokens":9,"output_tokens":1}}}\n\n'
            'event: ping\ndata: {"type":"ping"}\n\n'
            'event: content_block_delta\ndata: {"type":"content_block_delta","index":0,"delta":{"type":"text_delta","text":"Hi "}}\n\n'
            'event: content_block_delta\ndata: {"type":"content_block_delta","index":0,"delta":{"type":"text_delta","text":"there"}}\n\n'
            'event: message_delta\ndata: {"type":"message_delta","delta":{"stop_reason":"max_tokens"},"usage":{"output_tokens":2}}\n\n'
            'event: message_stop\ndata: {"type":"message_stop"}\n\n'
        ).encode()
        rec = Recorder()
        resp = await make_bridge(anthropic_agent, lambda r: httpx.Response(200, content=body)).stream_message(HELLO, rec)
        assert resp.content == "Hi there"
        assert resp.finish_reason is FinishReason.LENGTH
        assert resp.usage.prompt_tokens == 9
        assert resp.usage.completion_tokens == 2
        assert rec.calls[-1] == ("", True)

    async def test_ollama_ndjson_stream(self, make_bridge, ollama_agent):
        body = (
            '{"message":{"content":"Hel"},"done":false}\n'
            '{"message":{"content":"lo"},"done":false}\n'
            '{"done":true,"done_reason":"stop","prompt_eval_count":4,"eval_count":2}'
        ).encode()
        rec = Recorder()
        resp = await make_bridge(ollama_agent, lambda r: httpx.Response(200, content=body)).stream_message(HELLO, rec)
        assert resp.content == "Hello"
        assert resp.usage.total_tokens == 6
        assert rec.calls == [("Hel", False), ("lo", False), ("", True)]

    async def test_simulated_fallback_matches_content(self, make_bridge, openai_agent):
        def handler(request):
            assert json.loads(request.content)["stream"] is False
            return httpx.Response(200, json=_openai_reply("Same words, different cadence."))

        rec = Recorder()
        bridge = make_bridge(
            openai_agent, handler, stream=StreamSettings(native=False, simulated_chunk_delay=0),
        )
        resp = await bridge.stream_message(HELLO, rec)
        deltas = [c for c, done in rec.calls if not done]
        assert "".join(deltas) == resp.content == "Same words, different cadence."
        assert len(deltas) > 1
        assert rec.calls[-1] == ("", True)
        assert resp.metadata["simulated"] is True

    async def test_failure_still_completes_callback(self, make_bridge, openai_agent):
        rec = Recorder()
        bridge = make_bridge(
            openai_agent,
            lambda r: httpx.Response(400, json={"error": {"message": "bad request", "type": "invalid_request_error"}}),
        )
        with pytest.raises(BridgeError) as exc_info:
            await bridge.stream_message(HELLO, rec)
        assert exc_info.value.code == ErrorCode.INVALID_REQUEST
        assert rec.calls == [("", True)]

    async def test_cancellation(self, make_bridge, openai_agent):
        stall = asyncio.Event()
        cancel = asyncio.Event()

        async def body():
            yield b'data: {"choices":[{"delta":{"content":"part"}}]}\n\n'
            await stall.wait()

        rec = Recorder()

        def cb(chunk, done):
            rec(chunk, done)
            if chunk:
                cancel.set()

        bridge = make_bridge(openai_agent, lambda r: httpx.Response(200, content=body()))
        with pytest.raises(BridgeError) as exc_info:
            await asyncio.wait_for(bridge.stream_message(HELLO, cb, cancel_event=cancel), timeout=2)
        assert exc_info.value.code == ErrorCode.CANCELLED
        assert exc_info.value.partial_content == "part"
        assert rec.calls == [("part", False), ("", True)]


# ---------------------------------------------------------------------------
# validate_connection
# ---------------------------------------------------------------------------

class TestValidateConnection:
    async def test_openai_ok(self, make_bridge, openai_agent):
        def handler(request):
            assert request.method == "GET"
            assert request.url.path == "/v1/models"
            return httpx.Response(200, json={"data": []})

        status = await make_bridge(openai_agent, handler).validate_connection()
        assert status.ok and status.reason is None

    async def test_bad_credentials(self, make_bridge, openai_agent):
        status = await make_bridge(openai_agent, lambda r: httpx.Response(401)).validate_connection()
        assert not status.ok
        assert "401" in status.reason

    async def test_anthropic_4xx_is_reachable(self, make_bridge, anthropic_agent):
        status = await make_bridge(anthropic_agent, lambda r: httpx.Response(400)).validate_connection()
        assert status.ok

    async def test_ollama_unreachable(self, make_bridge, ollama_agent):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        status = await make_bridge(ollama_agent, handler).validate_connection()
        assert not status.ok
        assert "connection refused" in status.reason

    async def test_misconfigured_never_raises(self, make_bridge):
        status = await make_bridge(AgentConfig(provider="custom", model="x"), AsyncMock()).validate_connection()
        assert not status.ok

    @pytest.mark.parametrize("provider,status,ok", [
        ("custom", 200, True),
        ("custom", 422, True),
        ("custom", 403, False),
        ("custom", 502, False),
        ("ollama", 200, True),
        ("ollama", 404, False),
        ("anthropic", 400, True),
        ("anthropic", 401, False),
        ("anthropic", 500, False),
        ("anthropic", 529, False),
    ])
    def test_interpret_probe(self, provider, status, ok):
        assert interpret_probe(provider, status).ok is ok


class TestFromConfig:
    async def test_wires_agent_and_system_prompt(self):
        config = BridgeConfig(
            default_agent="cloud",
            agents={"cloud": AgentConfig(provider="openai", model="gpt-4o", api_key="k")},
            system_prompt="Answer in French.",
            security={"allow_dangerous": True},
        )
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json=_openai_reply("Bonjour"))

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        async with ChatBridge.from_config(config, http_client=client) as bridge:
            assert bridge.execution_context.agent_id == "cloud"
            assert bridge.execution_context.allow_dangerous
            resp = await bridge.send_message(HELLO)
        await client.aclose()
        assert resp.content == "Bonjour"
        assert seen[0]["model"] == "gpt-4o"
        assert seen[0]["messages"][0] == {"role": "system", "content": "Answer in French."}

    async def test_unknown_agent(self):
        bridge = ChatBridge.from_config(BridgeConfig(), "missing", http_client=httpx.AsyncClient())
        with pytest.raises(BridgeError) as exc_info:
            await bridge.send_message(HELLO)
        assert exc_info.value.code == ErrorCode.CONFIGURATION_ERROR
        await bridge.close()
