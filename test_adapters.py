"""
Tests for the protocol adapter layer: request rendering, response parsing and
streaming against a mocked HTTP transport.
"""

import json
from dataclasses import replace

import httpx
import pytest

from adapters import (
    ANTHROPIC_ADAPTER,
    OPENAI_ADAPTER,
    AdapterRegistry,
    ChatRequest,
    DoneEvent,
    ErrorEvent,
    ProtocolAdapter,
    ReasoningEvent,
    TextEvent,
    ToolCallAccumulator,
    ToolCallDeltaEvent,
    ToolCallEvent,
    ToolParseConfig,
    XMLParseConfig,
    build_headers,
    build_request_body,
    get_by_path,
    parse_partial_json,
    parse_tool_calls,
    parse_xml_tool_calls,
    strip_xml_tool_calls,
)
from cancellation import AbortController
from config import LLMConfig
from errors import ErrorCode, LLMError

HISTORY = [
    {"role": "system", "content": "You are helpful."},
    {"role": "user", "content": "Read two files"},
    {
        "role": "assistant",
        "content": "Reading.",
        "tool_calls": [
            {"id": "c1", "type": "function", "function": {"name": "read_file", "arguments": '{"path": "a"}'}},
            {"id": "c2", "type": "function", "function": {"name": "read_file", "arguments": '{"path": "b"}'}},
        ],
    },
    {"role": "tool", "tool_call_id": "c1", "name": "read_file", "content": "A"},
    {"role": "tool", "tool_call_id": "c2", "name": "read_file", "content": "B"},
]

READ_TOOL = {
    "name": "read_file",
    "description": "Read a file",
    "parameters": {"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]},
}


def _sse(*chunks, done=True) -> str:
    lines = [f"data: {json.dumps(c)}\n\n" for c in chunks]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines)


def _adapter(handler, adapter_id="openai", registry=None) -> ProtocolAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ProtocolAdapter(
        registry=registry,
        adapter_id=adapter_id,
        base_url="https://llm.test/v1",
        api_key="test-key",
        max_retries=2,
        client=client,
        config=LLMConfig(retry_base_delay=0.0),
    )


async def _collect(adapter: ProtocolAdapter, request: ChatRequest):
    return [event async for event in adapter.send(request)]


# ---------------------------------------------------------------------------
# Paths and partial JSON
# ---------------------------------------------------------------------------

def test_get_by_path():
    obj = {"choices": [{"delta": {"content": "hi"}}]}
    assert get_by_path(obj, "choices.0.delta.content") == "hi"
    assert get_by_path(obj, "choices.1.delta") is None
    assert get_by_path(obj, "missing.path") is None
    assert get_by_path(obj, "") is obj


def test_parse_partial_json():
    assert parse_partial_json('{"path": "src/ma') == {"path": "src/ma"}
    assert parse_partial_json('{"a": 1, "b":') == {"a": 1, "b": None}
    assert parse_partial_json('{"a": [1, 2') == {"a": [1, 2]}
    assert parse_partial_json("") == {}


def test_accumulator_joins_fragments():
    acc = ToolCallAccumulator()
    acc.feed(0, "call_1", "f", '{"a":')
    assert acc.partial_arguments(0) == {"a": None}
    acc.feed(0, None, None, "1}")
    calls = acc.finish()
    assert len(calls) == 1
    assert calls[0].id == "call_1"
    assert calls[0].name == "f"
    assert calls[0].arguments == {"a": 1}


def test_accumulator_new_id_completes_previous_call():
    acc = ToolCallAccumulator()
    assert acc.feed(0, "x", "first", '{"n": 1}') is None
    flushed = acc.feed(0, "y", "second", '{"n": 2}')
    assert flushed.id == "x"
    assert flushed.arguments == {"n": 1}
    assert [c.id for c in acc.finish()] == ["y"]


def test_accumulator_bad_arguments_become_empty():
    acc = ToolCallAccumulator()
    acc.feed(0, None, "f", "{not json")
    calls = acc.finish()
    assert calls[0].arguments == {}
    assert calls[0].id.startswith("call_")


# ---------------------------------------------------------------------------
# XML tool calls
# ---------------------------------------------------------------------------

def test_parse_xml_tool_call_json_arguments():
    text = 'Let me look. <tool_call><name>foo</name><arguments>{"a":1}</arguments></tool_call>'
    calls = parse_xml_tool_calls(text, XMLParseConfig())
    assert len(calls) == 1
    assert calls[0].name == "foo"
    assert calls[0].arguments == {"a": 1}
    assert strip_xml_tool_calls(text, "tool_call") == "Let me look."


def test_parse_xml_tool_call_attribute_and_key_value():
    config = XMLParseConfig(tool_call_tag="invoke", name_source="@name", args_tag="params", args_format="key-value")
    text = '<invoke name="read_file"><params><path>a.py</path><start_line>3</start_line></params></invoke>'
    calls = parse_xml_tool_calls(text, config)
    assert calls[0].name == "read_file"
    assert calls[0].arguments == {"path": "a.py", "start_line": "3"}


def test_parse_tool_calls_from_complete_response():
    response = {"choices": [{"message": {"tool_calls": [
        {"id": "t1", "function": {"name": "read_file", "arguments": '{"path": "x"}'}},
    ]}}]}
    calls = parse_tool_calls(response, OPENAI_ADAPTER)
    assert [(c.id, c.name, c.arguments) for c in calls] == [("t1", "read_file", {"path": "x"})]

    anthropic = {"content": [{"type": "tool_use", "id": "tu1", "name": "read_file", "input": {"path": "y"}}]}
    calls = parse_tool_calls(anthropic, ANTHROPIC_ADAPTER)
    assert [(c.id, c.arguments) for c in calls] == [("tu1", {"path": "y"})]


# ---------------------------------------------------------------------------
# Request rendering
# ---------------------------------------------------------------------------

def test_openai_request_body():
    request = ChatRequest(model="gpt-test", messages=HISTORY, tools=[READ_TOOL], max_tokens=100)
    body = build_request_body(request, OPENAI_ADAPTER)
    assert body["model"] == "gpt-test"
    assert body["stream"] is True
    assert body["max_tokens"] == 100
    assert "temperature" not in body
    assert body["messages"][0] == {"role": "system", "content": "You are helpful."}
    assert body["messages"][2]["tool_calls"][0]["function"]["arguments"] == '{"path": "a"}'
    assert body["messages"][3] == {"role": "tool", "tool_call_id": "c1", "content": "A", "name": "read_file"}
    assert body["tools"][0]["type"] == "function"
    assert body["tools"][0]["function"]["name"] == "read_file"


def test_anthropic_request_body():
    request = ChatRequest(model="claude-test", messages=HISTORY, tools=[READ_TOOL], max_tokens=100)
    body = build_request_body(request, ANTHROPIC_ADAPTER)
    assert body["system"] == "You are helpful."
    assert all(m["role"] != "system" for m in body["messages"])
    assert body["tools"][0] == {
        "name": "read_file", "description": "Read a file", "input_schema": READ_TOOL["parameters"],
    }

    assistant = body["messages"][1]
    assert assistant["content"][0] == {"type": "text", "text": "Reading."}
    assert assistant["content"][1] == {"type": "tool_use", "id": "c1", "name": "read_file", "input": {"path": "a"}}

    results = body["messages"][2]
    assert results["role"] == "user"
    assert [b["tool_use_id"] for b in results["content"]] == ["c1", "c2"]
    assert len(body["messages"]) == 3


def test_build_headers():
    assert build_headers(OPENAI_ADAPTER, "k")["Authorization"] == "Bearer k"
    headers = build_headers(ANTHROPIC_ADAPTER, "k")
    assert headers["x-api-key"] == "k"
    assert headers["anthropic-version"] == "2023-06-01"
    assert "Authorization" not in build_headers(OPENAI_ADAPTER, "")


def test_registry_lookup_and_custom_adapters():
    registry = AdapterRegistry()
    assert registry.get("anthropic") is ANTHROPIC_ADAPTER
    assert registry.get("nonexistent") is OPENAI_ADAPTER
    custom = replace(OPENAI_ADAPTER, id="local", name="Local")
    registry.register(custom)
    assert registry.find("local") is custom
    assert registry.remove("local")
    assert registry.find("local") is None
    assert not registry.remove("openai")


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_openai_stream_text_and_tool_call():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        body = _sse(
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}}]},
            {"choices": [{"delta": {"tool_calls": [
                {"index": 0, "id": "call_a", "function": {"name": "read_file", "arguments": '{"path":'}},
            ]}}]},
            {"choices": [{"delta": {"tool_calls": [
                {"index": 0, "function": {"arguments": ' "x.py"}'}},
            ]}}]},
        )
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    adapter = _adapter(handler)
    events = await _collect(adapter, ChatRequest(model="m", messages=[{"role": "user", "content": "hi"}]))

    assert seen["url"] == "https://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"]["messages"] == [{"role": "user", "content": "hi"}]

    assert [e.content for e in events if isinstance(e, TextEvent)] == ["Hel", "lo"]
    deltas = [e for e in events if isinstance(e, ToolCallDeltaEvent)]
    assert deltas[-1].name == "read_file"
    assert deltas[-1].partial_arguments == {"path": "x.py"}
    calls = [e.call for e in events if isinstance(e, ToolCallEvent)]
    assert [(c.id, c.name, c.arguments) for c in calls] == [("call_a", "read_file", {"path": "x.py"})]
    done = events[-1]
    assert isinstance(done, DoneEvent)
    assert done.content == "Hello"
    assert len(done.tool_calls) == 1


@pytest.mark.asyncio
async def test_anthropic_stream():
    tool_delta = {"type": "content_block_delta", "index": 2,
                  "delta": {"type": "input_json_delta", "partial_json": json.dumps({"path": "src"})}}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/messages"
        assert request.headers["x-api-key"] == "test-key"
        body = (
            "event: message_start\n"
            f"data: {json.dumps({'type': 'message_start', 'message': {'id': 'msg'}})}\n\n"
            f"data: {json.dumps({'type': 'content_block_delta', 'index': 0, 'delta': {'type': 'thinking_delta', 'thinking': 'hmm'}})}\n\n"
            f"data: {json.dumps({'type': 'content_block_delta', 'index': 1, 'delta': {'type': 'text_delta', 'text': 'Sure.'}})}\n\n"
            f"data: {json.dumps({'type': 'content_block_start', 'index': 2, 'content_block': {'type': 'tool_use', 'id': 'toolu_1', 'name': 'list_directory', 'input': {}}})}\n\n"
            f"data: {json.dumps(tool_delta)}\n\n"
            f"data: {json.dumps({'type': 'message_stop'})}\n\n"
        )
        return httpx.Response(200, text=body)

    adapter = _adapter(handler, adapter_id="anthropic")
    events = await _collect(adapter, ChatRequest(model="m", messages=[{"role": "user", "content": "hi"}]))

    assert [e.content for e in events if isinstance(e, ReasoningEvent)] == ["hmm"]
    calls = [e.call for e in events if isinstance(e, ToolCallEvent)]
    assert [(c.id, c.name, c.arguments) for c in calls] == [("toolu_1", "list_directory", {"path": "src"})]
    assert events[-1].content == "Sure."


@pytest.mark.asyncio
async def test_xml_tool_calls_in_streamed_text():
    registry = AdapterRegistry()
    registry.register(replace(
        OPENAI_ADAPTER,
        id="xml",
        tool_parse=ToolParseConfig(response_format="xml", xml_config=XMLParseConfig()),
    ))
    text = 'Checking.<tool_call><name>read_file</name><arguments>{"path": "a"}</arguments></tool_call>'

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=_sse({"choices": [{"delta": {"content": text}}]}))

    adapter = _adapter(handler, adapter_id="xml", registry=registry)
    events = await _collect(adapter, ChatRequest(model="m", messages=[{"role": "user", "content": "go"}]))
    calls = [e.call for e in events if isinstance(e, ToolCallEvent)]
    assert [(c.name, c.arguments) for c in calls] == [("read_file", {"path": "a"})]
    assert events[-1].content == "Checking."


@pytest.mark.asyncio
async def test_reasoning_only_response_falls_back_to_reasoning():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=_sse({"choices": [{"delta": {"reasoning_content": "thinking"}}]}))

    adapter = _adapter(handler, adapter_id="deepseek")
    done = await adapter.complete(ChatRequest(model="m", messages=[{"role": "user", "content": "?"}]))
    assert done.reasoning == "thinking"
    assert done.content == "[Reasoning]\nthinking"


@pytest.mark.asyncio
async def test_retries_transient_failure_before_first_event():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) == 1:
            return httpx.Response(503, text="overloaded")
        return httpx.Response(200, text=_sse({"choices": [{"delta": {"content": "ok"}}]}))

    adapter = _adapter(handler)
    events = await _collect(adapter, ChatRequest(model="m", messages=[{"role": "user", "content": "hi"}]))
    assert len(attempts) == 2
    assert not any(isinstance(e, ErrorEvent) for e in events)
    assert events[-1].content == "ok"


@pytest.mark.asyncio
async def test_auth_failure_is_not_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(401, json={"error": {"message": "bad key"}})

    adapter = _adapter(handler)
    events = await _collect(adapter, ChatRequest(model="m", messages=[{"role": "user", "content": "hi"}]))
    assert len(attempts) == 1
    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)
    assert events[0].error.code == ErrorCode.API_KEY_INVALID
    assert "bad key" in events[0].error.message

    with pytest.raises(LLMError) as exc_info:
        await adapter.complete(ChatRequest(model="m", messages=[{"role": "user", "content": "hi"}]))
    assert exc_info.value.status == 401


@pytest.mark.asyncio
async def test_error_chunk_in_stream():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=_sse({"error": {"message": "context length exceeded"}}))

    adapter = _adapter(handler)
    events = await _collect(adapter, ChatRequest(model="m", messages=[{"role": "user", "content": "hi"}]))
    assert isinstance(events[-1], ErrorEvent)
    assert "context length exceeded" in events[-1].error.message


@pytest.mark.asyncio
async def test_aborted_request_ends_without_events():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=_sse({"choices": [{"delta": {"content": "late"}}]}))

    controller = AbortController()
    controller.abort("stop")
    adapter = _adapter(handler)
    request = ChatRequest(model="m", messages=[{"role": "user", "content": "hi"}], signal=controller.signal)
    assert await _collect(adapter, request) == []
    with pytest.raises(LLMError) as exc_info:
        await adapter.complete(request)
    assert exc_info.value.code == ErrorCode.ABORTED


# ---------------------------------------------------------------------------
# Mixed tool-call encoding and unparsable streams
# ---------------------------------------------------------------------------

MIXED_PARSE = ToolParseConfig(
    response_format="mixed",
    xml_config=XMLParseConfig(),
    tool_call_path="choices.0.message.tool_calls",
    tool_name_path="function.name",
    tool_args_path="function.arguments",
    tool_id_path="id",
)


def _mixed_registry() -> AdapterRegistry:
    registry = AdapterRegistry()
    registry.register(replace(OPENAI_ADAPTER, id="mixed", tool_parse=MIXED_PARSE))
    return registry


def test_mixed_parse_prefers_native_calls():
    adapter = replace(OPENAI_ADAPTER, id="mixed", tool_parse=MIXED_PARSE)
    response = {"choices": [{"message": {"tool_calls": [
        {"id": "t1", "function": {"name": "read_file", "arguments": '{"path": "x"}'}},
    ]}}]}
    calls = parse_tool_calls(response, adapter)
    assert [(c.id, c.name, c.arguments) for c in calls] == [("t1", "read_file", {"path": "x"})]


def test_mixed_parse_falls_back_to_xml_text():
    adapter = replace(OPENAI_ADAPTER, id="mixed", tool_parse=MIXED_PARSE)
    text = '<tool_call><name>search_files</name><arguments>{"pattern": "TODO"}</arguments></tool_call>'
    calls = parse_tool_calls(text, adapter)
    assert [(c.name, c.arguments) for c in calls] == [("search_files", {"pattern": "TODO"})]
    assert calls[0].id
    assert parse_tool_calls({"choices": [{"message": {}}]}, adapter) == []


@pytest.mark.asyncio
async def test_mixed_stream_keeps_native_calls_and_text():
    text = 'Note <tool_call><name>ignored</name><arguments>{}</arguments></tool_call>'

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=_sse(
            {"choices": [{"delta": {"content": text}}]},
            {"choices": [{"delta": {"tool_calls": [
                {"index": 0, "id": "call_n", "function": {"name": "read_file", "arguments": '{"path": "a"}'}},
            ]}}]},
        ))

    adapter = _adapter(handler, adapter_id="mixed", registry=_mixed_registry())
    events = await _collect(adapter, ChatRequest(model="m", messages=[{"role": "user", "content": "go"}]))
    done = events[-1]
    assert isinstance(done, DoneEvent)
    assert [(c.id, c.name) for c in done.tool_calls] == [("call_n", "read_file")]
    assert done.content == text


@pytest.mark.asyncio
async def test_mixed_stream_parses_xml_when_no_native_calls():
    text = 'Looking.<tool_call><name>list_directory</name><arguments>{"path": "src"}</arguments></tool_call>'

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=_sse({"choices": [{"delta": {"content": text}}]}))

    adapter = _adapter(handler, adapter_id="mixed", registry=_mixed_registry())
    events = await _collect(adapter, ChatRequest(model="m", messages=[{"role": "user", "content": "go"}]))
    calls = [e.call for e in events if isinstance(e, ToolCallEvent)]
    assert [(c.name, c.arguments) for c in calls] == [("list_directory", {"path": "src"})]
    assert events[-1].content == "Looking."


@pytest.mark.asyncio
async def test_unparsable_stream_is_retried_once():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) == 1:
            return httpx.Response(200, text="data: {not json\n\ndata: [DONE]\n\n")
        return httpx.Response(200, text=_sse({"choices": [{"delta": {"content": "ok"}}]}))

    adapter = _adapter(handler)
    events = await _collect(adapter, ChatRequest(model="m", messages=[{"role": "user", "content": "hi"}]))
    assert len(attempts) == 2
    assert not any(isinstance(e, ErrorEvent) for e in events)
    assert events[-1].content == "ok"


@pytest.mark.asyncio
async def test_unparsable_stream_fails_after_one_retry():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(200, text="data: garbage\n\ndata: [DONE]\n\n")

    adapter = _adapter(handler)
    events = await _collect(adapter, ChatRequest(model="m", messages=[{"role": "user", "content": "hi"}]))
    assert len(attempts) == 2
    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)
    assert events[0].error.code == ErrorCode.LLM_PARSE_ERROR


@pytest.mark.asyncio
async def test_malformed_chunks_among_good_ones_are_skipped():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        body = "data: {broken\n\n" + _sse({"choices": [{"delta": {"content": "fine"}}]})
        return httpx.Response(200, text=body)

    adapter = _adapter(handler)
    done = await adapter.complete(ChatRequest(model="m", messages=[{"role": "user", "content": "hi"}]))
    assert len(attempts) == 1
    assert done.content == "fine"
