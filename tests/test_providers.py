"""Provider adapters exercised against a local aiohttp server."""

import json

import pytest
from aiohttp import web

from ai_toolkit.config import ProviderSettings
from ai_toolkit.errors import (
    AuthenticationFailed,
    ConfigError,
    InvalidRequest,
    ProviderUnavailable,
    RateLimited,
    ResponseParseError,
    StreamInterrupted,
)
from ai_toolkit.llm_client import FunctionDefinition, GenerationOptions
from ai_toolkit.providers import (
    AnthropicClient,
    EnhancedAnthropicClient,
    OllamaClient,
    OpenAIClient,
    create_client,
)
from ai_toolkit.providers.http import parse_retry_after


def settings(provider: str, base_url: str, api_key: str = "sk-ant-test-key") -> ProviderSettings:
    return ProviderSettings(provider=provider, api_key=api_key, base_url=base_url, model="test-model", timeout=5)


def sse(*events) -> bytes:
    lines = []
    for event in events:
        if isinstance(event, tuple):
            name, data = event
            lines.append(f"event: {name}\ndata: {json.dumps(data)}\n\n")
        else:
            lines.append(f"data: {event if isinstance(event, str) else json.dumps(event)}\n\n")
    return "".join(lines).encode()


def streaming_handler(body_parts, status=200):
    async def handler(request):
        response = web.StreamResponse(status=status, headers={"content-type": "text/event-stream"})
        await response.prepare(request)
        for part in body_parts:
            await response.write(part)
        await response.write_eof()
        return response

    return handler


def app_with(path: str, handler) -> web.Application:
    app = web.Application()
    app.router.add_post(path, handler)
    return app


async def collect(stream):
    return [chunk async for chunk in stream]


# =============================================================================
# OpenAI
# =============================================================================


class TestOpenAI:
    @pytest.mark.asyncio
    async def test_generate_sends_chat_payload_and_parses_result(self, serve):
        seen = {}

        async def handler(request):
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = await request.json()
            return web.json_response(
                {
                    "model": "test-model",
                    "choices": [{"message": {"content": "Hi there"}, "finish_reason": "stop"}],
                    "usage": {"prompt_tokens": 12, "completion_tokens": 3},
                }
            )

        async with serve(app_with("/chat/completions", handler)) as base_url:
            client = OpenAIClient(settings("openai", base_url, api_key="sk-openai"), temperature=0.2)
            try:
                result = await client.generate_with_options("Say hi", GenerationOptions(max_tokens=50))
            finally:
                await client.aclose()

        assert result.text == "Hi there"
        assert result.finish_reason == "stop"
        assert result.usage.input_tokens == 12
        assert result.usage.output_tokens == 3
        assert seen["auth"] == "Bearer sk-openai"
        assert seen["body"]["messages"] == [{"role": "user", "content": "Say hi"}]
        assert seen["body"]["max_tokens"] == 50
        assert seen["body"]["temperature"] == 0.2
        assert seen["body"]["stream"] is False

    @pytest.mark.asyncio
    async def test_tools_and_tool_calls(self, serve):
        seen = {}

        async def handler(request):
            seen["body"] = await request.json()
            return web.json_response(
                {
                    "choices": [
                        {
                            "message": {
                                "content": None,
                                "tool_calls": [
                                    {
                                        "id": "call_1",
                                        "function": {"name": "estimate", "arguments": '{"weeks": 6}'},
                                    }
                                ],
                            },
                            "finish_reason": "tool_calls",
                        }
                    ]
                }
            )

        estimate = FunctionDefinition(
            name="estimate",
            description="Estimate duration",
            parameters={"type": "object", "properties": {"weeks": {"type": "integer"}}},
        )
        async with serve(app_with("/chat/completions", handler)) as base_url:
            client = OpenAIClient(settings("openai", base_url, api_key="sk-openai"))
            try:
                args = await client.call_function("How long?", estimate)
            finally:
                await client.aclose()

        assert args == {"weeks": 6}
        assert seen["body"]["tools"][0] == {
            "type": "function",
            "function": {
                "name": "estimate",
                "description": "Estimate duration",
                "parameters": {"type": "object", "properties": {"weeks": {"type": "integer"}}},
            },
        }

    @pytest.mark.asyncio
    async def test_streaming_reassembles_hello_world(self, serve):
        body = sse(
            {"choices": [{"delta": {"content": "Hello"}}]},
            {"choices": [{"delta": {"content": ", wor"}}]},
            {"choices": [{"delta": {"content": "ld!"}}]},
            {"choices": [{"delta": {}, "finish_reason": "stop"}]},
            {"choices": [], "usage": {"prompt_tokens": 4, "completion_tokens": 3}},
            "[DONE]",
        )
        async with serve(app_with("/chat/completions", streaming_handler([body]))) as base_url:
            client = OpenAIClient(settings("openai", base_url, api_key="sk-openai"))
            try:
                chunks = await collect(client.generate_streaming(client.build_request("greet")))
            finally:
                await client.aclose()

        assert [c.text for c in chunks] == ["Hello", ", wor", "ld!"]
        assert "".join(c.text for c in chunks) == "Hello, world!"
        assert [c.index for c in chunks] == [0, 1, 2]
        assert [c.is_final for c in chunks] == [False, False, True]
        assert chunks[-1].finish_reason == "stop"
        assert chunks[-1].usage.output_tokens == 3

    @pytest.mark.asyncio
    async def test_stream_cut_short_raises_interrupted_with_partial_text(self, serve):
        body = sse({"choices": [{"delta": {"content": "Hello"}}]}, {"choices": [{"delta": {"content": ", wor"}}]})
        async with serve(app_with("/chat/completions", streaming_handler([body]))) as base_url:
            client = OpenAIClient(settings("openai", base_url, api_key="sk-openai"))
            received = []
            try:
                with pytest.raises(StreamInterrupted) as excinfo:
                    async for chunk in client.generate_streaming(client.build_request("greet")):
                        received.append(chunk.text)
            finally:
                await client.aclose()

        assert received == ["Hello"]
        assert excinfo.value.partial_text == "Hello, wor"
        assert excinfo.value.chunks_received == 2

    @pytest.mark.asyncio
    async def test_streamed_tool_call_fragments_land_on_final_chunk(self, serve):
        body = sse(
            {"choices": [{"delta": {"content": "Checking"}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "call_7", "function": {"name": "estimate", "arguments": ""}}]}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": "{\"wee"}}]}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": "ks\": 6}"}}]}}]},
            {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
            "[DONE]",
        )
        async with serve(app_with("/chat/completions", streaming_handler([body]))) as base_url:
            client = OpenAIClient(settings("openai", base_url, api_key="sk-openai"))
            try:
                chunks = await collect(client.generate_streaming(client.build_request("how long?")))
            finally:
                await client.aclose()

        final = chunks[-1]
        assert final.is_final and final.finish_reason == "tool_calls"
        assert [(c.id, c.name, c.arguments) for c in final.function_calls] == [("call_7", "estimate", {"weeks": 6})]
        assert all(not c.function_calls for c in chunks[:-1])

    @pytest.mark.asyncio
    async def test_invalid_utf8_mid_stream_keeps_partial_text(self, serve):
        body = sse({"choices": [{"delta": {"content": "Hi"}}]}) + b'data: {"choices": [{"delta": {"content": "\xff"}}]}\n\n'
        async with serve(app_with("/chat/completions", streaming_handler([body]))) as base_url:
            client = OpenAIClient(settings("openai", base_url, api_key="sk-openai"))
            try:
                with pytest.raises(StreamInterrupted) as excinfo:
                    await collect(client.generate_streaming(client.build_request("greet")))
            finally:
                await client.aclose()

        assert excinfo.value.partial_text == "Hi"
        assert isinstance(excinfo.value.__cause__, ResponseParseError)

    @pytest.mark.asyncio
    async def test_invalid_utf8_body_is_a_parse_error(self, serve):
        async def handler(request):
            return web.Response(body=b'{"choices": [{"message": {"content": "\xff"}}]}', content_type="application/json")

        async with serve(app_with("/chat/completions", handler)) as base_url:
            client = OpenAIClient(settings("openai", base_url, api_key="sk-openai"))
            try:
                with pytest.raises(ResponseParseError) as excinfo:
                    await client.generate(client.build_request("x"))
            finally:
                await client.aclose()

        assert excinfo.value.provider == "openai"


# =============================================================================
# Status mapping
# =============================================================================


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, headers, expected",
    [
        (401, {}, AuthenticationFailed),
        (403, {}, AuthenticationFailed),
        (429, {"retry-after": "7"}, RateLimited),
        (400, {}, InvalidRequest),
        (422, {}, InvalidRequest),
        (500, {}, ProviderUnavailable),
        (503, {}, ProviderUnavailable),
        (529, {}, ProviderUnavailable),
    ],
)
async def test_http_status_maps_to_error_taxonomy(serve, status, headers, expected):
    async def handler(request):
        return web.json_response({"error": {"message": "nope"}}, status=status, headers=headers)

    async with serve(app_with("/chat/completions", handler)) as base_url:
        client = OpenAIClient(settings("openai", base_url, api_key="sk-openai"))
        try:
            with pytest.raises(expected) as excinfo:
                await client.generate(client.build_request("x"))
        finally:
            await client.aclose()

    assert "nope" in str(excinfo.value)
    assert excinfo.value.provider == "openai"
    if expected is RateLimited:
        assert excinfo.value.retry_after == 7.0


@pytest.mark.asyncio
async def test_error_status_on_stream_open_is_not_an_interruption(serve):
    async def handler(request):
        return web.json_response({"error": {"message": "slow down"}}, status=429, headers={"retry-after-ms": "1500"})

    async with serve(app_with("/chat/completions", handler)) as base_url:
        client = OpenAIClient(settings("openai", base_url, api_key="sk-openai"))
        try:
            with pytest.raises(RateLimited) as excinfo:
                await collect(client.generate_streaming(client.build_request("x")))
        finally:
            await client.aclose()
    assert excinfo.value.retry_after == 1.5


@pytest.mark.asyncio
async def test_connection_failure_is_provider_unavailable():
    client = OpenAIClient(settings("openai", "http://127.0.0.1:1", api_key="sk-openai"))
    try:
        with pytest.raises(ProviderUnavailable):
            await client.generate(client.build_request("x"))
    finally:
        await client.aclose()


def test_parse_retry_after_variants():
    assert parse_retry_after({"retry-after": "12"}) == 12.0
    assert parse_retry_after({"retry-after-ms": "250"}) == 0.25
    assert parse_retry_after({}) is None
    assert parse_retry_after({"retry-after": "Wed, 21 Oct 2015 07:28:00 GMT"}) == 0.0


# =============================================================================
# Anthropic
# =============================================================================


class TestAnthropic:
    @pytest.mark.asyncio
    async def test_generate_joins_text_and_reads_tool_use(self, serve):
        seen = {}

        async def handler(request):
            seen["headers"] = dict(request.headers)
            seen["body"] = await request.json()
            return web.json_response(
                {
                    "model": "test-model",
                    "content": [
                        {"type": "text", "text": "Plan: "},
                        {"type": "text", "text": "ship it"},
                        {"type": "tool_use", "id": "tu_1", "name": "estimate", "input": {"weeks": 3}},
                    ],
                    "stop_reason": "tool_use",
                    "usage": {"input_tokens": 20, "output_tokens": 8},
                }
            )

        async with serve(app_with("/messages", handler)) as base_url:
            client = AnthropicClient(settings("anthropic", base_url))
            try:
                result = await client.generate(client.build_request("plan"))
            finally:
                await client.aclose()

        assert result.text == "Plan: ship it"
        assert result.function_calls[0].name == "estimate"
        assert result.function_calls[0].arguments == {"weeks": 3}
        assert seen["headers"]["x-api-key"] == "sk-ant-test-key"
        assert seen["headers"]["anthropic-version"] == "2023-06-01"
        assert "tools" not in seen["body"]

    @pytest.mark.asyncio
    async def test_streaming_events(self, serve):
        body = sse(
            ("message_start", {"type": "message_start", "message": {"usage": {"input_tokens": 9}}}),
            ("content_block_start", {"type": "content_block_start", "index": 0}),
            ("ping", {"type": "ping"}),
            ("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hello"}}),
            ("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": ", wor"}}),
            ("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "ld!"}}),
            ("content_block_stop", {"type": "content_block_stop", "index": 0}),
            ("message_delta", {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 3}}),
            ("message_stop", {"type": "message_stop"}),
        )
        async with serve(app_with("/messages", streaming_handler([body]))) as base_url:
            client = AnthropicClient(settings("anthropic", base_url))
            try:
                chunks = await collect(client.generate_streaming(client.build_request("greet")))
            finally:
                await client.aclose()

        assert "".join(c.text for c in chunks) == "Hello, world!"
        assert len(chunks) == 3
        assert sum(c.is_final for c in chunks) == 1 and chunks[-1].is_final
        assert chunks[-1].finish_reason == "end_turn"
        assert chunks[-1].usage.input_tokens == 9
        assert chunks[-1].usage.output_tokens == 3

    @pytest.mark.asyncio
    async def test_overloaded_error_event_after_content_interrupts(self, serve):
        body = sse(
            ("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Par"}}),
            ("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "tial"}}),
            ("error", {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}),
        )
        async with serve(app_with("/messages", streaming_handler([body]))) as base_url:
            client = AnthropicClient(settings("anthropic", base_url))
            try:
                with pytest.raises(StreamInterrupted) as excinfo:
                    await collect(client.generate_streaming(client.build_request("x")))
            finally:
                await client.aclose()

        assert excinfo.value.partial_text == "Partial"
        assert isinstance(excinfo.value.__cause__, ProviderUnavailable)

    @pytest.mark.asyncio
    async def test_streamed_tool_use_block_is_collected(self, serve):
        body = sse(
            ("message_start", {"type": "message_start", "message": {"usage": {"input_tokens": 4}}}),
            ("content_block_start", {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}),
            ("content_block_delta", {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Let me check"}}),
            ("content_block_stop", {"type": "content_block_stop", "index": 0}),
            (
                "content_block_start",
                {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "id": "tu_9", "name": "estimate", "input": {}}},
            ),
            ("content_block_delta", {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": "{\"weeks\""}}),
            ("content_block_delta", {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": ": 3}"}}),
            ("content_block_stop", {"type": "content_block_stop", "index": 1}),
            ("message_delta", {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 12}}),
            ("message_stop", {"type": "message_stop"}),
        )
        async with serve(app_with("/messages", streaming_handler([body]))) as base_url:
            client = AnthropicClient(settings("anthropic", base_url))
            try:
                chunks = await collect(client.generate_streaming(client.build_request("plan")))
            finally:
                await client.aclose()

        assert "".join(c.text for c in chunks) == "Let me check"
        assert chunks[-1].finish_reason == "tool_use"
        call = chunks[-1].function_calls[0]
        assert (call.id, call.name, call.arguments) == ("tu_9", "estimate", {"weeks": 3})

    @pytest.mark.asyncio
    async def test_enhanced_client_attaches_default_tool(self, serve):
        seen = {}

        async def handler(request):
            seen["body"] = await request.json()
            return web.json_response(
                {"content": [{"type": "text", "text": "first"}, {"type": "text", "text": "second"}], "stop_reason": "end_turn"}
            )

        async with serve(app_with("/messages", handler)) as base_url:
            client = EnhancedAnthropicClient(settings("anthropic_enhanced", base_url), max_tokens=8000)
            try:
                result = await client.generate(client.build_request("review this"))
            finally:
                await client.aclose()

        assert [tool["name"] for tool in seen["body"]["tools"]] == ["analyze_code"]
        assert seen["body"]["tools"][0]["input_schema"]["required"] == ["language", "code"]
        assert seen["body"]["tool_choice"] == {"type": "auto"}
        assert seen["body"]["max_tokens"] == 8000
        assert result.text == "first\nsecond"

    def test_enhanced_client_defaults_max_tokens_only_when_unset(self):
        assert EnhancedAnthropicClient(settings("anthropic_enhanced", "http://localhost")).default_max_tokens == 4000
        configured = EnhancedAnthropicClient(settings("anthropic_enhanced", "http://localhost"), max_tokens=1200)
        assert configured.default_max_tokens == 1200

    def test_warns_on_unexpected_key_prefix(self, caplog):
        AnthropicClient(settings("anthropic", "http://localhost", api_key="not-a-real-prefix"))
        assert any("expected prefix" in r.getMessage() for r in caplog.records)


# =============================================================================
# Ollama
# =============================================================================


class TestOllama:
    @pytest.mark.asyncio
    async def test_generate_uses_completion_endpoint(self, serve):
        seen = {}

        async def handler(request):
            seen["body"] = await request.json()
            return web.json_response(
                {"model": "test-model", "response": "done!", "done": True, "prompt_eval_count": 5, "eval_count": 2}
            )

        async with serve(app_with("/api/generate", handler)) as base_url:
            client = OllamaClient(settings("ollama", base_url, api_key=""))
            try:
                result = await client.generate(client.build_request("finish", GenerationOptions(max_tokens=32)))
            finally:
                await client.aclose()

        assert result.text == "done!"
        assert result.usage.output_tokens == 2
        assert seen["body"]["prompt"] == "finish"
        assert seen["body"]["options"]["num_predict"] == 32
        assert client.credential_id == "anonymous"

    @pytest.mark.asyncio
    async def test_ndjson_streaming(self, serve):
        lines = [
            {"response": "Hello", "done": False},
            {"response": ", wor", "done": False},
            {"response": "ld!", "done": False},
            {"response": "", "done": True, "done_reason": "stop", "eval_count": 3},
        ]
        body = "".join(json.dumps(line) + "\n" for line in lines).encode()
        async with serve(app_with("/api/generate", streaming_handler([body]))) as base_url:
            client = OllamaClient(settings("ollama", base_url, api_key=""))
            try:
                chunks = await collect(client.generate_streaming(client.build_request("greet")))
            finally:
                await client.aclose()

        assert [c.text for c in chunks] == ["Hello", ", wor", "ld!"]
        assert [c.is_final for c in chunks] == [False, False, True]

    @pytest.mark.asyncio
    async def test_ndjson_line_with_invalid_utf8_is_a_parse_error(self, serve):
        body = b'{"response": "\xff", "done": false}\n'
        async with serve(app_with("/api/generate", streaming_handler([body]))) as base_url:
            client = OllamaClient(settings("ollama", base_url, api_key=""))
            try:
                with pytest.raises(ResponseParseError):
                    await collect(client.generate_streaming(client.build_request("greet")))
            finally:
                await client.aclose()

    @pytest.mark.asyncio
    async def test_functions_are_rejected_before_any_request(self):
        client = OllamaClient(settings("ollama", "http://127.0.0.1:1", api_key=""))
        request = client.build_request("x", GenerationOptions(functions=[FunctionDefinition(name="f")]))
        try:
            with pytest.raises(InvalidRequest):
                await client.generate(request)
        finally:
            await client.aclose()


# =============================================================================
# Factory
# =============================================================================


class TestFactory:
    @pytest.mark.parametrize(
        "provider, cls",
        [
            ("openai", OpenAIClient),
            ("anthropic", AnthropicClient),
            ("anthropic_enhanced", EnhancedAnthropicClient),
            ("ollama", OllamaClient),
        ],
    )
    def test_selects_adapter(self, provider, cls):
        client = create_client(ProviderSettings(provider=provider, api_key="sk-ant-x"))
        assert type(client) is cls

    def test_unknown_provider(self):
        with pytest.raises(ConfigError):
            create_client(ProviderSettings(provider="mystery", api_key="k"))

    def test_missing_key(self):
        with pytest.raises(ConfigError):
            create_client(ProviderSettings(provider="openai", api_key=""))

    def test_credential_id_does_not_leak_the_key(self):
        client = create_client(ProviderSettings(provider="openai", api_key="sk-secret-value"))
        assert "secret" not in client.credential_id
        assert client.credential_id == create_client(
            ProviderSettings(provider="openai", api_key="sk-secret-value")
        ).credential_id
