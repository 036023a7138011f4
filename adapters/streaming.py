"""SSE line handling and incremental tool-call assembly."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional

from adapters.parsing import generate_call_id, get_by_path
from adapters.types import ParsedToolCall, ResponseConfig

logger = logging.getLogger(__name__)


async def iter_sse_payloads(lines: AsyncIterable[str], config: ResponseConfig) -> AsyncIterator[str]:
    """
    Yield the data payload of each SSE line.
    Blank lines, comments and other fields (event:, id:) are skipped.
    Iteration stops at the done marker.
    """
    prefix = config.data_prefix
    async for raw in lines:
        line = raw.strip()
        if not line or line.startswith(":"):
            continue
        if prefix:
            if not line.startswith(prefix):
                continue
            line = line[len(prefix):].strip()
        if config.done_marker is not None and line == config.done_marker:
            return
        if line:
            yield line


def _close_json(text: str) -> str:
    stack: List[str] = []
    in_str = False
    escaped = False
    for ch in text:
        if in_str:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            stack.append("}")
        elif ch == "[":
            stack.append("]")
        elif ch in "}]" and stack:
            stack.pop()
    if in_str:
        if escaped:
            text = text[:-1]
        text += '"'
    return text + "".join(reversed(stack))


def parse_partial_json(text: str) -> Dict[str, Any]:
    """Best-effort parse of a truncated JSON object. Returns {} when nothing usable is found."""
    if not text or not text.strip():
        return {}
    stripped = text.rstrip()
    attempts = [stripped, stripped.rstrip(",")]
    if stripped.endswith(":"):
        attempts.append(stripped + " null")
    if "," in stripped:
        attempts.append(stripped[:stripped.rfind(",")])
    for attempt in attempts:
        try:
            value = json.loads(_close_json(attempt))
        except ValueError:
            continue
        if isinstance(value, dict):
            return value
    return {}


@dataclass
class _PendingCall:
    index: int
    id: str = ""
    name: str = ""
    args: List[str] = field(default_factory=list)
    args_object: Optional[Dict[str, Any]] = None

    @property
    def arguments_text(self) -> str:
        return "".join(self.args)


class ToolCallAccumulator:
    """
    Assembles streamed tool-call deltas keyed by index.
    A new id arriving at an index that already holds a different call
    completes the previous call.
    """

    def __init__(self):
        self._pending: Dict[int, _PendingCall] = {}

    def feed(self, index: int, call_id: Optional[str] = None, name: Optional[str] = None,
             args: Any = None) -> Optional[ParsedToolCall]:
        flushed = None
        current = self._pending.get(index)
        if current is not None and call_id and current.id and call_id != current.id:
            flushed = self._finalize(current)
            current = None
        if current is None:
            current = _PendingCall(index=index)
            self._pending[index] = current
        if call_id:
            current.id = call_id
        if name:
            current.name = name
        if isinstance(args, dict):
            current.args_object = args
        elif args:
            current.args.append(str(args))
        return flushed

    def partial_arguments(self, index: int) -> Dict[str, Any]:
        current = self._pending.get(index)
        if current is None:
            return {}
        if current.args_object is not None:
            return current.args_object
        return parse_partial_json(current.arguments_text)

    def name_of(self, index: int) -> str:
        current = self._pending.get(index)
        return current.name if current else ""

    def finish(self) -> List[ParsedToolCall]:
        calls = [self._finalize(self._pending[i]) for i in sorted(self._pending)]
        self._pending.clear()
        return [c for c in calls if c is not None]

    @staticmethod
    def _finalize(pending: _PendingCall) -> Optional[ParsedToolCall]:
        if not pending.name:
            return None
        if pending.args_object is not None:
            arguments = pending.args_object
        else:
            text = pending.arguments_text.strip()
            arguments = {}
            if text:
                try:
                    parsed = json.loads(text)
                    arguments = parsed if isinstance(parsed, dict) else {}
                except ValueError:
                    logger.warning(f"Unparsable arguments for tool {pending.name}: {text[:100]}")
        return ParsedToolCall(id=pending.id or generate_call_id(), name=pending.name, arguments=arguments)


def tool_call_deltas(chunk: Dict[str, Any], config: ResponseConfig) -> List[Dict[str, Any]]:
    """Pull normalized {index, id, name, args} deltas out of one stream chunk."""
    raw = get_by_path(chunk, config.tool_call_field)
    if raw is None:
        return []
    deltas = []
    for item in raw if isinstance(raw, list) else [raw]:
        if not isinstance(item, dict):
            continue
        call_id = get_by_path(item, config.tool_id_path)
        name = get_by_path(item, config.tool_name_path)
        args = get_by_path(item, config.tool_args_path)
        if not (call_id or name or args):
            continue
        index = get_by_path(item, config.tool_index_path)
        deltas.append({
            "index": index if isinstance(index, int) else 0,
            "id": call_id if isinstance(call_id, str) else None,
            "name": name if isinstance(name, str) else None,
            "args": args,
        })
    return deltas
