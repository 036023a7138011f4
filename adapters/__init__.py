"""
Protocol adapters: one streaming client, many vendor wire formats.
Vendors are described by AdapterConfig data; see adapters.presets.
"""

from adapters.types import (  # noqa: F401
    AdapterConfig,
    AuthConfig,
    ChatRequest,
    DoneEvent,
    ErrorEvent,
    MessageFormatConfig,
    ParsedToolCall,
    ReasoningEvent,
    RequestConfig,
    ResponseConfig,
    StreamEvent,
    TextEvent,
    ToolCallDeltaEvent,
    ToolCallEvent,
    ToolFormatConfig,
    ToolParseConfig,
    XMLParseConfig,
)
from adapters.presets import (  # noqa: F401
    AdapterRegistry,
    BUILTIN_ADAPTERS,
    OPENAI_ADAPTER,
    ANTHROPIC_ADAPTER,
    DEEPSEEK_ADAPTER,
    ANTHROPIC_THINKING_ADAPTER,
)
from adapters.parsing import (  # noqa: F401
    build_headers,
    build_request_body,
    convert_messages,
    convert_tools,
    format_tool_result_message,
    generate_call_id,
    get_by_path,
    parse_tool_calls,
    parse_xml_tool_calls,
    strip_xml_tool_calls,
)
from adapters.streaming import ToolCallAccumulator, iter_sse_payloads, parse_partial_json  # noqa: F401
from adapters.service import ProtocolAdapter  # noqa: F401
