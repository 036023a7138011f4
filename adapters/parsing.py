"""
Config-driven request building and response parsing.

Messages inside the engine use the OpenAI chat shape:
    {"role": "assistant", "content": "...", "tool_calls": [{"id", "type", "function": {"name", "arguments"}}]}
    {"role": "tool", "tool_call_id": "...", "name": "...", "content": "..."}
Everything vendor specific is derived from an AdapterConfig here.
"""

import json
import logging
import random
import re
import string
import time
from typing import Any, Dict, List, Optional, Tuple

from adapters.types import AdapterConfig, ChatRequest, ParsedToolCall, ToolParseConfig, XMLParseConfig

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")
_ID_CHARS = string.ascii_lowercase + string.digits


def get_by_path(obj: Any, path: Optional[str]) -> Any:
    """Follow a dotted path through dicts and lists. An empty path addresses obj itself."""
    if obj is None:
        return None
    if not path:
        return obj
    current = obj
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            idx = int(part)
            if idx >= len(current):
                return None
            current = current[idx]
        else:
            return None
    return current


def generate_call_id() -> str:
    rand = "".join(random.choice(_ID_CHARS) for _ in range(7))
    return f"call_{int(time.time() * 1000)}_{rand}"


def _loads_args(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"Unparsable tool arguments: {str(raw)[:100]}")
        return {}
    return value if isinstance(value, dict) else {}


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------

def convert_tools(tools: List[Dict[str, Any]], adapter: AdapterConfig) -> List[Dict[str, Any]]:
    """Render canonical {name, description, parameters} tools in the adapter's format."""
    fmt = adapter.tool_format
    converted = []
    for tool in tools:
        tool_def = {
            "name": tool["name"],
            "description": tool.get("description", ""),
            fmt.parameter_field: tool.get("parameters", {"type": "object", "properties": {}}),
        }
        if fmt.wrap_mode == "function" and fmt.wrap_field:
            wrapped: Dict[str, Any] = {fmt.wrap_field: tool_def}
            if fmt.include_type:
                wrapped = {"type": "function", **wrapped}
            converted.append(wrapped)
        elif fmt.wrap_mode == "tool" and fmt.include_type:
            converted.append({"type": "tool", **tool_def})
        else:
            converted.append(tool_def)
    return converted


def format_tool_result_message(call_id: str, tool_name: str, result: str,
                               adapter: AdapterConfig) -> Dict[str, Any]:
    fmt = adapter.message_format
    if fmt.wrap_tool_result and fmt.tool_result_wrapper:
        return {
            "role": fmt.tool_result_role,
            "content": [{"type": fmt.tool_result_wrapper, fmt.tool_call_id_field: call_id, "content": result}],
        }
    msg = {"role": fmt.tool_result_role, fmt.tool_call_id_field: call_id, "content": result}
    if fmt.tool_result_role == "tool" and tool_name:
        msg["name"] = tool_name
    return msg


def _assistant_message(msg: Dict[str, Any], adapter: AdapterConfig) -> Dict[str, Any]:
    tool_calls = msg.get("tool_calls") or []
    content = msg.get("content") or ""
    if not tool_calls:
        return {"role": "assistant", "content": content}

    if adapter.message_format.assistant_tool_calls == "content_blocks":
        blocks: List[Dict[str, Any]] = []
        if content:
            blocks.append({"type": "text", "text": content})
        for tc in tool_calls:
            fn = tc.get("function", {})
            blocks.append({
                "type": "tool_use",
                "id": tc.get("id", ""),
                "name": fn.get("name", ""),
                "input": _loads_args(fn.get("arguments")),
            })
        return {"role": "assistant", "content": blocks}

    calls = []
    for tc in tool_calls:
        fn = tc.get("function", {})
        args = fn.get("arguments", "{}")
        if not isinstance(args, str):
            args = json.dumps(args)
        calls.append({"id": tc.get("id", ""), "type": "function",
                      "function": {"name": fn.get("name", ""), "arguments": args}})
    return {"role": "assistant", "content": content or None, "tool_calls": calls}


def convert_messages(messages: List[Dict[str, Any]], adapter: AdapterConfig) -> List[Dict[str, Any]]:
    """Render non-system history messages for the adapter's wire format."""
    converted: List[Dict[str, Any]] = []
    for msg in messages:
        role = msg.get("role")
        if role == "system":
            continue
        if role == "assistant":
            out = _assistant_message(msg, adapter)
        elif role == "tool":
            out = format_tool_result_message(
                msg.get("tool_call_id", ""), msg.get("name", ""), msg.get("content") or "", adapter)
        else:
            out = {"role": role, "content": msg.get("content") or ""}

        # Block-style vendors expect all results for one turn in a single user message
        prev = converted[-1] if converted else None
        if (prev is not None and prev["role"] == out["role"]
                and isinstance(prev.get("content"), list) and isinstance(out.get("content"), list)):
            prev["content"] = prev["content"] + out["content"]
            continue
        converted.append(out)
    return converted


def _template_uses(template: Any, name: str) -> bool:
    if isinstance(template, str):
        return f"{{{{{name}}}}}" in template
    if isinstance(template, dict):
        return any(_template_uses(v, name) for v in template.values())
    if isinstance(template, list):
        return any(_template_uses(v, name) for v in template)
    return False


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


_DROP = object()


def _substitute(template: Any, values: Dict[str, Any]) -> Any:
    if isinstance(template, str):
        whole = _PLACEHOLDER_RE.fullmatch(template)
        if whole:
            value = values.get(whole.group(1))
            return _DROP if _is_empty(value) else value
        return _PLACEHOLDER_RE.sub(lambda m: str(values.get(m.group(1), "") or ""), template)
    if isinstance(template, dict):
        out = {}
        for key, val in template.items():
            sub = _substitute(val, values)
            if sub is not _DROP:
                out[key] = sub
        return out
    if isinstance(template, list):
        return [s for s in (_substitute(v, values) for v in template) if s is not _DROP]
    return template


def split_system(messages: List[Dict[str, Any]]) -> Tuple[str, List[Dict[str, Any]]]:
    """Separate system messages from the rest of the history."""
    system_parts = [m.get("content") or "" for m in messages if m.get("role") == "system"]
    rest = [m for m in messages if m.get("role") != "system"]
    return "\n\n".join(p for p in system_parts if p), rest


def build_request_body(request: ChatRequest, adapter: AdapterConfig) -> Dict[str, Any]:
    history_system, history = split_system(request.messages)
    system = "\n\n".join(p for p in (request.system_prompt, history_system) if p)

    messages = convert_messages(history, adapter)
    template = adapter.request.body_template
    if system and not _template_uses(template, "system"):
        messages = [{"role": "system", "content": system}] + messages

    values = {
        "model": request.model,
        "messages": messages,
        "tools": convert_tools(request.tools, adapter) if request.tools else None,
        "system": system,
        "max_tokens": request.max_tokens,
        "temperature": request.temperature,
    }
    return _substitute(template, values)


def build_headers(adapter: AdapterConfig, api_key: Optional[str]) -> Dict[str, str]:
    headers = dict(adapter.request.headers)
    if api_key:
        auth = adapter.auth
        if auth.type == "bearer":
            headers[auth.header_name or "Authorization"] = f"Bearer {api_key}"
        else:
            headers[auth.header_name] = api_key
    return headers


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------

def _parse_json_tool_calls(response: Any, parse: ToolParseConfig) -> List[ParsedToolCall]:
    raw_calls = get_by_path(response, parse.tool_call_path or "tool_calls")
    if not raw_calls:
        return []
    results = []
    for tc in raw_calls if isinstance(raw_calls, list) else [raw_calls]:
        name = get_by_path(tc, parse.tool_name_path or "function.name")
        if not name:
            continue
        raw_args = get_by_path(tc, parse.tool_args_path or "function.arguments")
        call_id = get_by_path(tc, parse.tool_id_path or "id") or (
            generate_call_id() if parse.auto_generate_id else "")
        if parse.args_is_object:
            args = raw_args if isinstance(raw_args, dict) else {}
        else:
            args = _loads_args(raw_args)
        results.append(ParsedToolCall(id=call_id, name=name, arguments=args))
    return results


def parse_xml_tool_calls(text: str, xml_config: XMLParseConfig) -> List[ParsedToolCall]:
    """Extract tool calls embedded as XML tags in model text."""
    tag = re.escape(xml_config.tool_call_tag)
    results = []
    for match in re.finditer(rf"<{tag}[^>]*>([\s\S]*?)</{tag}>", text or "", re.IGNORECASE):
        inner = match.group(1)
        name = ""
        if xml_config.name_source.startswith("@"):
            attr = re.escape(xml_config.name_source[1:])
            attr_match = re.search(rf"{attr}=[\"']([^\"']+)[\"']", match.group(0))
            if attr_match:
                name = attr_match.group(1)
        else:
            src = re.escape(xml_config.name_source)
            name_match = re.search(rf"<{src}>([^<]+)</{src}>", inner)
            if name_match:
                name = name_match.group(1).strip()

        args: Dict[str, Any] = {}
        args_tag = re.escape(xml_config.args_tag)
        args_match = re.search(rf"<{args_tag}>([\s\S]*?)</{args_tag}>", inner)
        if args_match:
            body = args_match.group(1).strip()
            if xml_config.args_format == "json":
                args = _loads_args(body)
            elif xml_config.args_format == "key-value":
                for kv in re.finditer(r"<(\w+)>([^<]*)</\1>", body):
                    args[kv.group(1)] = kv.group(2)

        if name:
            results.append(ParsedToolCall(id=generate_call_id(), name=name, arguments=args))
    return results


def strip_xml_tool_calls(text: str, tag: str) -> str:
    escaped = re.escape(tag)
    return re.sub(rf"<{escaped}[^>]*>[\s\S]*?</{escaped}>", "", text or "", flags=re.IGNORECASE).strip()


def parse_tool_calls(response: Any, adapter: AdapterConfig) -> List[ParsedToolCall]:
    """Parse tool calls from a complete response object (json) or response text (xml)."""
    parse = adapter.tool_parse
    if parse is None:
        rc = adapter.response
        parse = ToolParseConfig(
            tool_call_path=rc.tool_call_field,
            tool_name_path=rc.tool_name_path,
            tool_args_path=rc.tool_args_path,
            tool_id_path=rc.tool_id_path,
            args_is_object=rc.args_is_object,
            auto_generate_id=False,
        )

    if parse.response_format == "xml":
        if not isinstance(response, str) or parse.xml_config is None:
            return []
        return parse_xml_tool_calls(response, parse.xml_config)

    if parse.response_format == "mixed":
        json_calls = _parse_json_tool_calls(response, parse) if not isinstance(response, str) else []
        if json_calls:
            return json_calls
        if isinstance(response, str) and parse.xml_config is not None:
            return parse_xml_tool_calls(response, parse.xml_config)
        return []

    return _parse_json_tool_calls(response, parse)
