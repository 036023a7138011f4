"""Built-in adapter presets and the adapter registry."""

import logging
from dataclasses import replace
from typing import Dict, List, Optional

from adapters.types import (
    AdapterConfig, AuthConfig, MessageFormatConfig, RequestConfig,
    ResponseConfig, ToolFormatConfig, ToolParseConfig,
)

logger = logging.getLogger(__name__)


OPENAI_ADAPTER = AdapterConfig(
    id="openai",
    name="OpenAI",
    request=RequestConfig(
        endpoint="/chat/completions",
        body_template={
            "model": "{{model}}",
            "messages": "{{messages}}",
            "tools": "{{tools}}",
            "max_tokens": "{{max_tokens}}",
            "temperature": "{{temperature}}",
            "stream": True,
        },
        headers={"Content-Type": "application/json"},
    ),
    response=ResponseConfig(),
    auth=AuthConfig(type="bearer", header_name="Authorization"),
    tool_parse=ToolParseConfig(
        response_format="json",
        tool_call_path="choices.0.message.tool_calls",
        tool_name_path="function.name",
        tool_args_path="function.arguments",
        tool_id_path="id",
    ),
    tool_format=ToolFormatConfig(parameter_field="parameters", wrap_mode="function",
                                 wrap_field="function", include_type=True),
    message_format=MessageFormatConfig(),
)

ANTHROPIC_ADAPTER = AdapterConfig(
    id="anthropic",
    name="Anthropic",
    request=RequestConfig(
        endpoint="/messages",
        body_template={
            "model": "{{model}}",
            "system": "{{system}}",
            "messages": "{{messages}}",
            "tools": "{{tools}}",
            "max_tokens": "{{max_tokens}}",
            "temperature": "{{temperature}}",
            "stream": True,
        },
        headers={"Content-Type": "application/json", "anthropic-version": "2023-06-01"},
    ),
    response=ResponseConfig(
        content_field="delta.text",
        reasoning_field="delta.thinking",
        tool_call_field="",
        tool_id_path="content_block.id",
        tool_name_path="content_block.name",
        tool_args_path="delta.partial_json",
        tool_index_path="index",
        done_marker=None,
        data_prefix="data:",
        error_field="error.message",
    ),
    auth=AuthConfig(type="api-key", header_name="x-api-key"),
    tool_parse=ToolParseConfig(
        response_format="json",
        tool_call_path="content",
        tool_name_path="name",
        tool_args_path="input",
        tool_id_path="id",
        args_is_object=True,
    ),
    tool_format=ToolFormatConfig(parameter_field="input_schema", wrap_mode="none",
                                 wrap_field=None, include_type=False),
    message_format=MessageFormatConfig(
        tool_result_role="user",
        tool_call_id_field="tool_use_id",
        wrap_tool_result=True,
        tool_result_wrapper="tool_result",
        assistant_tool_calls="content_blocks",
    ),
)

DEEPSEEK_ADAPTER = replace(
    OPENAI_ADAPTER,
    id="deepseek",
    name="DeepSeek",
    response=replace(OPENAI_ADAPTER.response, reasoning_field="choices.0.delta.reasoning_content"),
)

ANTHROPIC_THINKING_ADAPTER = replace(
    ANTHROPIC_ADAPTER,
    id="anthropic-thinking",
    name="Anthropic Extended Thinking",
    request=replace(
        ANTHROPIC_ADAPTER.request,
        body_template={
            **ANTHROPIC_ADAPTER.request.body_template,
            "stream": True,
            "thinking": {"type": "enabled", "budget_tokens": 10000},
        },
    ),
)

BUILTIN_ADAPTERS: List[AdapterConfig] = [
    OPENAI_ADAPTER,
    ANTHROPIC_ADAPTER,
    DEEPSEEK_ADAPTER,
    ANTHROPIC_THINKING_ADAPTER,
]


class AdapterRegistry:
    """Adapter lookup by id. Custom adapters shadow built-ins with the same id."""

    def __init__(self, builtins: Optional[List[AdapterConfig]] = None):
        self._builtins: Dict[str, AdapterConfig] = {
            a.id: a for a in (BUILTIN_ADAPTERS if builtins is None else builtins)
        }
        self._custom: Dict[str, AdapterConfig] = {}

    def get(self, adapter_id: str) -> AdapterConfig:
        """Resolve an adapter; unknown ids fall back to the OpenAI format."""
        found = self.find(adapter_id)
        if found is None:
            logger.warning(f"Unknown adapter '{adapter_id}', falling back to openai")
            return self._builtins.get("openai", OPENAI_ADAPTER)
        return found

    def find(self, adapter_id: str) -> Optional[AdapterConfig]:
        return self._custom.get(adapter_id) or self._builtins.get(adapter_id)

    def all(self) -> List[AdapterConfig]:
        return list(self._builtins.values()) + list(self._custom.values())

    def register(self, adapter: AdapterConfig) -> None:
        self._custom[adapter.id] = adapter

    def remove(self, adapter_id: str) -> bool:
        return self._custom.pop(adapter_id, None) is not None
