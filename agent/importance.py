"""
Turn grouping and importance scoring for context compression.

Scores are structural: message role, tool operations and position. No
keyword matching is involved, so the same history always scores the same.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from tools.schemas import WRITE_TOOLS

DELETE_TOOLS = frozenset({"delete_file_or_folder"})

WEIGHTS = {
    "user": 30,
    "assistant_with_tools": 25,
    "assistant_text": 15,
    "tool": 10,
    "write_op": 35,
    "delete_op": 45,
    "error": 40,
    "recent": 20,
}

GROUP_WRITE_BONUS = 20
GROUP_ERROR_BONUS = 30
GROUP_RECENT_BONUS = 15


@dataclass
class MessageGroup:
    """One turn: a user message and the assistant/tool messages that answer it."""
    turn_index: int
    user_index: Optional[int]
    assistant_indices: List[int] = field(default_factory=list)
    tool_indices: List[int] = field(default_factory=list)
    chars: int = 0
    importance: float = 0.0
    has_write_ops: bool = False
    has_errors: bool = False
    files: List[str] = field(default_factory=list)

    @property
    def indices(self) -> List[int]:
        head = [self.user_index] if self.user_index is not None else []
        return sorted(head + self.assistant_indices + self.tool_indices)


def parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        value = json.loads(raw or "{}")
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


def iter_tool_calls(msg: Dict[str, Any]):
    """Yield (name, args) for each tool call proposed by an assistant message."""
    for tc in msg.get("tool_calls") or []:
        fn = tc.get("function", {})
        yield fn.get("name", ""), parse_arguments(fn.get("arguments"))


def is_error_content(content: Any) -> bool:
    return isinstance(content, str) and content.startswith("Error:")


def message_chars(msg: Dict[str, Any]) -> int:
    content = msg.get("content")
    if isinstance(content, str):
        total = len(content)
    elif content:
        total = len(json.dumps(content, ensure_ascii=False))
    else:
        total = 0
    for tc in msg.get("tool_calls") or []:
        args = tc.get("function", {}).get("arguments", "")
        total += len(args) if isinstance(args, str) else len(json.dumps(args))
    return total


def group_messages(messages: List[Dict[str, Any]]) -> List[MessageGroup]:
    """Group non-system messages into turns. Messages before the first user message form their own group."""
    groups: List[MessageGroup] = []
    current: Optional[MessageGroup] = None

    for i, msg in enumerate(messages):
        role = msg.get("role")
        if role == "system":
            continue
        if role == "user":
            if current is not None:
                groups.append(current)
            current = MessageGroup(turn_index=len(groups), user_index=i)
        elif current is None:
            current = MessageGroup(turn_index=0, user_index=None)

        current.chars += message_chars(msg)
        if role == "assistant":
            current.assistant_indices.append(i)
            for name, args in iter_tool_calls(msg):
                if name in WRITE_TOOLS:
                    current.has_write_ops = True
                    path = args.get("path")
                    if path and path not in current.files:
                        current.files.append(path)
        elif role == "tool":
            current.tool_indices.append(i)
            if is_error_content(msg.get("content")):
                current.has_errors = True

    if current is not None:
        groups.append(current)
    return groups


def score_message(msg: Dict[str, Any], index: int, total_messages: int) -> float:
    score = 0
    role = msg.get("role")
    if role == "user":
        score += WEIGHTS["user"]
    elif role == "assistant":
        calls = list(iter_tool_calls(msg))
        if calls:
            score += WEIGHTS["assistant_with_tools"]
            for name, _ in calls:
                if name in DELETE_TOOLS:
                    score += WEIGHTS["delete_op"]
                elif name in WRITE_TOOLS:
                    score += WEIGHTS["write_op"]
        else:
            score += WEIGHTS["assistant_text"]
    elif role == "tool":
        score += WEIGHTS["tool"]
        if is_error_content(msg.get("content")):
            score += WEIGHTS["error"]

    if total_messages and (total_messages - index) / total_messages < 0.2:
        score += WEIGHTS["recent"]
    return min(100, score)


def score_group(group: MessageGroup, messages: List[Dict[str, Any]], total_groups: int) -> float:
    indices = group.indices
    if not indices:
        return 0.0
    score = sum(score_message(messages[i], i, len(messages)) for i in indices) / len(indices)
    if group.has_write_ops:
        score += GROUP_WRITE_BONUS
    if group.has_errors:
        score += GROUP_ERROR_BONUS
    if total_groups and group.turn_index / total_groups > 0.7:
        score += GROUP_RECENT_BONUS
    return min(100.0, score)
