"""
Streaming model client driven by an AdapterConfig.

send() turns one chat request into a stream of canonical events and never
raises for model-side failures: they arrive as a single ErrorEvent that ends
the stream.
"""

import asyncio
import json
import logging
from dataclasses import replace
from typing import AsyncIterator, List, Optional

import httpx

from adapters.parsing import build_headers, build_request_body, get_by_path, parse_tool_calls, strip_xml_tool_calls
from adapters.presets import AdapterRegistry
from adapters.streaming import ToolCallAccumulator, iter_sse_payloads, tool_call_deltas
from adapters.types import (
    AdapterConfig, ChatRequest, DoneEvent, ErrorEvent, ParsedToolCall, ReasoningEvent,
    StreamEvent, TextEvent, ToolCallDeltaEvent, ToolCallEvent,
)
from cancellation import AbortedError, AbortSignal
from config import LLMConfig, llm_config
from errors import ErrorCode, LLMError, classify_exception, is_retryable_message

logger = logging.getLogger(__name__)


async def _next_line(lines) -> Optional[str]:
    try:
        return await lines.__anext__()
    except StopAsyncIteration:
        return None


async def _raced_lines(response: httpx.Response, signal: Optional[AbortSignal]) -> AsyncIterator[str]:
    lines = response.aiter_lines().__aiter__()
    while True:
        if signal is not None:
            line = await signal.race(_next_line(lines))
        else:
            line = await _next_line(lines)
        if line is None:
            return
        yield line


def _error_detail(body: str, adapter: AdapterConfig) -> str:
    if adapter.response.error_field:
        try:
            message = get_by_path(json.loads(body), adapter.response.error_field)
        except ValueError:
            message = None
        if message:
            return str(message)
    return body


class ProtocolAdapter:
    """Vendor-neutral streaming chat client."""

    def __init__(
        self,
        registry: Optional[AdapterRegistry] = None,
        adapter_id: Optional[str] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        config: Optional[LLMConfig] = None,
    ):
        cfg = config or llm_config
        self.registry = registry or AdapterRegistry()
        self.adapter_id = adapter_id or cfg.adapter_id
        self.base_url = (base_url or cfg.base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else cfg.api_key
        self.timeout = timeout if timeout is not None else cfg.timeout
        self.max_retries = max_retries if max_retries is not None else cfg.max_retries
        self.retry_backoff = retry_backoff if retry_backoff is not None else cfg.retry_backoff
        self.retry_base_delay = cfg.retry_base_delay
        self.default_max_tokens = cfg.max_tokens
        self._client = client
        logger.info(f"ProtocolAdapter initialized: adapter={self.adapter_id} base_url={self.base_url}")

    @property
    def adapter(self) -> AdapterConfig:
        return self.registry.get(self.adapter_id)

    def has_credentials(self) -> bool:
        return bool(self.base_url and self.api_key)

    async def send(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        adapter = self.adapter
        signal = request.signal
        if request.max_tokens is None:
            request = replace(request, max_tokens=self.default_max_tokens)

        attempt = 0
        parse_retried = False
        while True:
            emitted = False
            try:
                async for event in self._stream_once(request, adapter, signal):
                    emitted = True
                    yield event
                return
            except AbortedError:
                logger.info("Model stream aborted")
                return
            except Exception as e:
                error = classify_exception(e)

            if signal is not None and signal.aborted:
                return
            if not emitted and error.code is ErrorCode.LLM_PARSE_ERROR and not parse_retried:
                parse_retried = True
                logger.warning(f"{error.message}, retrying once")
                continue
            if not emitted and error.retryable and attempt < self.max_retries:
                delay = self.retry_base_delay * (self.retry_backoff ** attempt)
                attempt += 1
                logger.warning(
                    f"Model call failed ({error.code.value}: {error.message}), "
                    f"retry {attempt}/{self.max_retries} in {delay:.1f}s"
                )
                try:
                    if signal is not None:
                        await signal.race(asyncio.sleep(delay))
                    else:
                        await asyncio.sleep(delay)
                except AbortedError:
                    return
                continue

            logger.error(f"Model call failed: {error.code.value}: {error.message}")
            yield ErrorEvent(error=error)
            return

    async def _stream_once(self, request: ChatRequest, adapter: AdapterConfig,
                           signal: Optional[AbortSignal]) -> AsyncIterator[StreamEvent]:
        rc = adapter.response
        url = f"{self.base_url}{adapter.request.endpoint}"
        body = build_request_body(request, adapter)
        headers = build_headers(adapter, self.api_key)
        logger.debug(f"Streaming {adapter.request.method} {url}, body keys: {list(body.keys())}")

        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            async with client.stream(adapter.request.method, url, json=body, headers=headers) as response:
                if response.status_code >= 400:
                    raw = await response.aread()
                    detail = _error_detail(raw.decode("utf-8", errors="replace"), adapter)
                    raise LLMError.from_status(response.status_code, detail)

                content_parts: List[str] = []
                reasoning_parts: List[str] = []
                calls: List[ParsedToolCall] = []
                accumulator = ToolCallAccumulator()
                parsed = malformed = 0

                async for payload in iter_sse_payloads(_raced_lines(response, signal), rc):
                    try:
                        chunk = json.loads(payload)
                    except ValueError:
                        malformed += 1
                        logger.debug(f"Skipping malformed chunk: {payload[:200]}")
                        continue
                    if not isinstance(chunk, dict):
                        malformed += 1
                        continue
                    parsed += 1

                    error_message = get_by_path(chunk, rc.error_field) if rc.error_field else None
                    if error_message:
                        raise LLMError(str(error_message), ErrorCode.API_CALL_FAILED,
                                       is_retryable_message(str(error_message)))

                    text = get_by_path(chunk, rc.content_field)
                    if isinstance(text, str) and text:
                        content_parts.append(text)
                        yield TextEvent(content=text)

                    if rc.reasoning_field:
                        thought = get_by_path(chunk, rc.reasoning_field)
                        if isinstance(thought, str) and thought:
                            reasoning_parts.append(thought)
                            yield ReasoningEvent(content=thought)

                    for delta in tool_call_deltas(chunk, rc):
                        index = delta["index"]
                        flushed = accumulator.feed(index, delta["id"], delta["name"], delta["args"])
                        if flushed is not None:
                            calls.append(flushed)
                            yield ToolCallEvent(call=flushed)
                        yield ToolCallDeltaEvent(
                            index=index,
                            id=delta["id"],
                            name=delta["name"] or accumulator.name_of(index),
                            args_fragment=delta["args"] if isinstance(delta["args"], str) else None,
                            partial_arguments=accumulator.partial_arguments(index),
                        )

                if malformed and not parsed:
                    raise LLMError(f"Model response could not be parsed ({malformed} malformed chunks)",
                                   ErrorCode.LLM_PARSE_ERROR)
        finally:
            if self._client is None:
                await client.aclose()

        for call in accumulator.finish():
            calls.append(call)
            yield ToolCallEvent(call=call)

        content = "".join(content_parts)
        parse = adapter.tool_parse
        if parse is not None and parse.xml_config is not None and (
                parse.response_format == "xml" or (parse.response_format == "mixed" and not calls)):
            xml_calls = parse_tool_calls(content, adapter)
            if xml_calls:
                content = strip_xml_tool_calls(content, parse.xml_config.tool_call_tag)
                for call in xml_calls:
                    calls.append(call)
                    yield ToolCallEvent(call=call)

        reasoning = "".join(reasoning_parts)
        if not content and reasoning:
            content = f"[Reasoning]\n{reasoning}"
        yield DoneEvent(content=content, tool_calls=calls, reasoning=reasoning)

    async def complete(self, request: ChatRequest) -> DoneEvent:
        """Run send() to completion. Raises LLMError on failure or abort."""
        async for event in self.send(request):
            if isinstance(event, ErrorEvent):
                if isinstance(event.error, LLMError):
                    raise event.error
                raise LLMError(event.error.message, event.error.code, event.error.retryable, event.error.status)
            if isinstance(event, DoneEvent):
                return event
        raise LLMError("Request aborted", ErrorCode.ABORTED)
