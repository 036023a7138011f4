"""
Declarative adapter configuration and the canonical request/event shapes.

An AdapterConfig describes one vendor's wire format as data. The generic
engine in adapters.parsing / adapters.service interprets it; adding a vendor
means adding a config, not code.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from cancellation import AbortSignal
from errors import AppError


@dataclass(frozen=True)
class RequestConfig:
    endpoint: str = "/chat/completions"
    method: str = "POST"
    # Placeholders: {{model}} {{messages}} {{tools}} {{system}} {{max_tokens}} {{temperature}}
    body_template: Dict[str, Any] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ResponseConfig:
    content_field: str = "choices.0.delta.content"
    reasoning_field: Optional[str] = None
    # Path inside one chunk to the tool-call delta list (or object); "" means the chunk itself
    tool_call_field: str = "choices.0.delta.tool_calls"
    tool_id_path: str = "id"
    tool_name_path: str = "function.name"
    tool_args_path: str = "function.arguments"
    tool_index_path: str = "index"
    args_is_object: bool = False
    done_marker: Optional[str] = "[DONE]"
    data_prefix: str = "data:"
    error_field: Optional[str] = "error.message"


@dataclass(frozen=True)
class XMLParseConfig:
    tool_call_tag: str = "tool_call"
    # "@attr" reads the name from an attribute of the tool-call tag, otherwise a nested tag
    name_source: str = "name"
    args_tag: str = "arguments"
    args_format: str = "json"  # json | key-value


@dataclass(frozen=True)
class ToolParseConfig:
    """Tool-call encoding in responses: json | xml | mixed."""
    response_format: str = "json"
    xml_config: Optional[XMLParseConfig] = None
    tool_call_path: Optional[str] = None
    tool_name_path: Optional[str] = None
    tool_args_path: Optional[str] = None
    tool_id_path: Optional[str] = None
    args_is_object: bool = False
    auto_generate_id: bool = True


@dataclass(frozen=True)
class ToolFormatConfig:
    parameter_field: str = "parameters"
    wrap_mode: str = "function"  # none | function | tool
    wrap_field: Optional[str] = "function"
    include_type: bool = True


@dataclass(frozen=True)
class MessageFormatConfig:
    tool_result_role: str = "tool"
    tool_call_id_field: str = "tool_call_id"
    wrap_tool_result: bool = False
    tool_result_wrapper: Optional[str] = None
    # tool_calls: OpenAI style list on the message; content_blocks: tool_use blocks in content
    assistant_tool_calls: str = "tool_calls"


@dataclass(frozen=True)
class AuthConfig:
    type: str = "bearer"  # bearer | api-key | header
    header_name: str = "Authorization"


@dataclass(frozen=True)
class AdapterConfig:
    id: str
    name: str = ""
    request: RequestConfig = field(default_factory=RequestConfig)
    response: ResponseConfig = field(default_factory=ResponseConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    tool_parse: Optional[ToolParseConfig] = None
    tool_format: ToolFormatConfig = field(default_factory=ToolFormatConfig)
    message_format: MessageFormatConfig = field(default_factory=MessageFormatConfig)


@dataclass
class ChatRequest:
    """Canonical chat request, vendor-neutral."""
    model: str
    messages: List[Dict[str, Any]]
    tools: List[Dict[str, Any]] = field(default_factory=list)
    system_prompt: str = ""
    signal: Optional[AbortSignal] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None


@dataclass
class ParsedToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Canonical stream events
# ---------------------------------------------------------------------------

@dataclass
class TextEvent:
    content: str
    type: str = "text"


@dataclass
class ReasoningEvent:
    content: str
    type: str = "reasoning"


@dataclass
class ToolCallDeltaEvent:
    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    args_fragment: Optional[str] = None
    partial_arguments: Dict[str, Any] = field(default_factory=dict)
    type: str = "toolCallDelta"


@dataclass
class ToolCallEvent:
    call: ParsedToolCall
    type: str = "toolCall"


@dataclass
class DoneEvent:
    content: str
    tool_calls: List[ParsedToolCall] = field(default_factory=list)
    reasoning: str = ""
    type: str = "done"


@dataclass
class ErrorEvent:
    error: AppError
    type: str = "error"


StreamEvent = Union[TextEvent, ReasoningEvent, ToolCallDeltaEvent, ToolCallEvent, DoneEvent, ErrorEvent]
