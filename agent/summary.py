"""
Structured conversation summaries and session handoff documents.

The heuristic generator is synchronous and always available. LLMSummarizer
refines it with a model call and falls back to the heuristic result on any
failure.
"""

import json
import logging
import re
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from adapters.types import ChatRequest
from agent.importance import DELETE_TOOLS, MessageGroup, is_error_content, iter_tool_calls
from errors import AppError
from tools.schemas import WRITE_TOOLS

logger = logging.getLogger(__name__)

COMPLETED_LIMIT = 30
DECISIONS_LIMIT = 15
FILE_CHANGES_LIMIT = 30
ERRORS_LIMIT = 10
INSTRUCTIONS_LIMIT = 10

_INSTRUCTION_RE = re.compile(r"\b(please|must|should|don't|do not|always|never|remember|note|important)\b", re.IGNORECASE)
_DECISION_RE = re.compile(r"[^.!?\n]*\b(decided|chose|choose|will use|going to use|opted)\b[^.!?\n]*[.!?]?", re.IGNORECASE)
_ERROR_WORD_RE = re.compile(r"error|failed|exception|denied", re.IGNORECASE)
_LIST_ITEM_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+)$", re.MULTILINE)


@dataclass
class FileChange:
    path: str
    action: str  # create | modify | delete
    summary: str = ""
    turn_index: int = 0


@dataclass
class DecisionPoint:
    turn_index: int
    type: str  # file_create | file_modify | file_delete | architecture
    description: str
    files: List[str] = field(default_factory=list)


@dataclass
class ErrorFix:
    error: str
    fix: str


@dataclass
class StructuredSummary:
    objective: str = ""
    completed_steps: List[str] = field(default_factory=list)
    pending_steps: List[str] = field(default_factory=list)
    decisions: List[DecisionPoint] = field(default_factory=list)
    file_changes: List[FileChange] = field(default_factory=list)
    errors_and_fixes: List[ErrorFix] = field(default_factory=list)
    user_instructions: List[str] = field(default_factory=list)
    generated_at: float = field(default_factory=time.time)
    turn_range: Tuple[int, int] = (0, 0)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class HandoffDocument:
    from_session_id: str
    summary: StructuredSummary
    last_user_request: str
    unresolved_items: List[str] = field(default_factory=list)
    suggested_next_steps: List[str] = field(default_factory=list)
    working_directory: str = ""
    key_file_snapshots: List[Dict[str, str]] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Heuristic extraction
# ---------------------------------------------------------------------------

def _text(msg: Dict[str, Any]) -> str:
    content = msg.get("content")
    return content if isinstance(content, str) else ""


def _extract_objective(content: str) -> str:
    match = re.match(r"^[^.!?\n]+[.!?]?", content.strip())
    if match and len(match.group(0)) > 20:
        return match.group(0)[:200]
    return content.strip()[:200]


def _group_calls(messages: List[Dict[str, Any]], group: MessageGroup):
    for idx in group.assistant_indices:
        for name, args in iter_tool_calls(messages[idx]):
            yield name, args


def _file_action(tool_name: str) -> Optional[str]:
    if tool_name in DELETE_TOOLS:
        return "delete"
    if tool_name == "create_file_or_folder":
        return "create"
    if tool_name in WRITE_TOOLS:
        return "modify"
    return None


def _extract_file_changes(messages, groups: List[MessageGroup]) -> List[FileChange]:
    changes: List[FileChange] = []
    by_path: Dict[str, FileChange] = {}
    for group in groups:
        for name, args in _group_calls(messages, group):
            path = args.get("path")
            action = _file_action(name)
            if not path or action is None:
                continue
            label = {"create": "Created", "delete": "Deleted"}.get(action, "Modified")
            existing = by_path.get(path)
            if existing is None:
                record = FileChange(path=path, action=action, summary=label, turn_index=group.turn_index)
                by_path[path] = record
                changes.append(record)
            elif action == "delete":
                existing.action = "delete"
                existing.summary = f"{existing.summary} then deleted"
                existing.turn_index = group.turn_index
            else:
                existing.summary = f"{existing.summary} -> {label}"
                existing.turn_index = group.turn_index
    return changes


def _extract_decisions(messages, groups: List[MessageGroup]) -> List[DecisionPoint]:
    decisions: List[DecisionPoint] = []
    for group in groups:
        for name, args in _group_calls(messages, group):
            path = args.get("path")
            action = _file_action(name)
            if not path or action is None:
                continue
            label = {"create": "Created", "delete": "Deleted"}.get(action, "Modified")
            decisions.append(DecisionPoint(group.turn_index, f"file_{action}", f"{label}: {path}", [path]))
        for idx in group.assistant_indices:
            for match in _DECISION_RE.finditer(_text(messages[idx])):
                sentence = match.group(0).strip()
                if 10 < len(sentence) <= 200:
                    decisions.append(DecisionPoint(group.turn_index, "architecture", sentence))
    return decisions


def _extract_completed_steps(messages, groups: List[MessageGroup]) -> List[str]:
    steps: List[str] = []
    for group in groups:
        if not group.has_write_ops:
            continue
        for name, args in _group_calls(messages, group):
            if name in WRITE_TOOLS and args.get("path"):
                step = f"{name}: {args['path']}"
                if step not in steps:
                    steps.append(step)
    return steps[-20:]


def _extract_pending_steps(messages) -> List[str]:
    last_assistant = next((m for m in reversed(messages) if m.get("role") == "assistant"), None)
    if last_assistant is None:
        return []
    items = [m.group(1).strip() for m in _LIST_ITEM_RE.finditer(_text(last_assistant))]
    return [item for item in items if 10 < len(item) < 200][:5]


def _extract_errors(messages, groups: List[MessageGroup]) -> List[ErrorFix]:
    results: List[ErrorFix] = []
    for i, group in enumerate(groups):
        if not group.has_errors:
            continue
        next_group = groups[i + 1] if i + 1 < len(groups) else None
        fix = "Fixed in subsequent changes" if next_group and next_group.has_write_ops else "Not yet fixed"
        for idx in group.tool_indices:
            content = _text(messages[idx])
            if not is_error_content(content):
                continue
            line = next((ln for ln in content.split("\n") if _ERROR_WORD_RE.search(ln)), content)
            results.append(ErrorFix(error=line[:100], fix=fix))
    return results[-5:]


def _extract_user_instructions(messages, groups: List[MessageGroup]) -> List[str]:
    found = []
    for group in groups:
        if group.user_index is None:
            continue
        content = _text(messages[group.user_index])
        if _INSTRUCTION_RE.search(content):
            found.append(content[:150])
    return found[-5:]


def generate_quick_summary(messages: List[Dict[str, Any]], groups: List[MessageGroup],
                           turn_range: Tuple[int, int]) -> StructuredSummary:
    """Heuristic summary of the given turns. No model call."""
    first_user = next((m for m in messages if m.get("role") == "user"), None)
    objective = _extract_objective(_text(first_user)) if first_user else "Unknown objective"
    return StructuredSummary(
        objective=objective or "Unknown objective",
        completed_steps=_extract_completed_steps(messages, groups),
        pending_steps=_extract_pending_steps(messages),
        decisions=_extract_decisions(messages, groups),
        file_changes=_extract_file_changes(messages, groups),
        errors_and_fixes=_extract_errors(messages, groups),
        user_instructions=_extract_user_instructions(messages, groups),
        turn_range=turn_range,
    )


def _merge_unique(old: List[Any], new: List[Any], limit: int) -> List[Any]:
    seen = set()
    merged = []
    for item in list(old) + list(new):
        key = json.dumps(asdict(item), sort_keys=True) if hasattr(item, "__dataclass_fields__") else item
        if key in seen:
            continue
        seen.add(key)
        merged.append(item)
    return merged[-limit:]


def merge_summaries(existing: StructuredSummary, new: StructuredSummary) -> StructuredSummary:
    return StructuredSummary(
        objective=new.objective or existing.objective,
        completed_steps=_merge_unique(existing.completed_steps, new.completed_steps, COMPLETED_LIMIT),
        pending_steps=new.pending_steps if new.pending_steps else existing.pending_steps,
        decisions=_merge_unique(existing.decisions, new.decisions, DECISIONS_LIMIT),
        file_changes=_merge_unique(existing.file_changes, new.file_changes, FILE_CHANGES_LIMIT),
        errors_and_fixes=_merge_unique(existing.errors_and_fixes, new.errors_and_fixes, ERRORS_LIMIT),
        user_instructions=_merge_unique(existing.user_instructions, new.user_instructions, INSTRUCTIONS_LIMIT),
        turn_range=(min(existing.turn_range[0], new.turn_range[0]), max(existing.turn_range[1], new.turn_range[1])),
    )


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def _bullets(items: List[str], prefix: str = "- ", empty: str = "- None") -> str:
    return "\n".join(f"{prefix}{item}" for item in items) or empty


def format_summary_for_system(summary: StructuredSummary) -> str:
    """Compact summary used when older turns are dropped from the window."""
    changes = [f"{f.action}: {f.path}" for f in summary.file_changes[-10:]]
    return (
        f"## Previous Context Summary (Turns {summary.turn_range[0]}-{summary.turn_range[1]})\n\n"
        f"**Objective:** {summary.objective}\n\n"
        f"**Completed:**\n{_bullets(summary.completed_steps[-5:], empty='- None recorded')}\n\n"
        f"**File Changes:**\n{_bullets(changes)}\n\n"
        f"**User Instructions:**\n{_bullets(summary.user_instructions[-3:])}\n\n"
        "---\nContinue based on the above context."
    )


def format_detailed_summary(summary: StructuredSummary) -> str:
    decisions = [f"[{d.type}] {d.description}" for d in summary.decisions[-5:]]
    errors = [f"Error: {e.error[:50]}... -> {e.fix}" for e in summary.errors_and_fixes]
    changes = [f"[{f.action.upper()}] {f.path}: {f.summary}" for f in summary.file_changes]
    return (
        "## Detailed Context Summary\n\n"
        f"**Objective:** {summary.objective}\n\n"
        f"**Completed Steps:**\n{_bullets(summary.completed_steps, '[x] ', 'None')}\n\n"
        f"**Pending Steps:**\n{_bullets(summary.pending_steps, '[ ] ', 'None')}\n\n"
        f"**Key Decisions:**\n{_bullets(decisions, empty='None')}\n\n"
        f"**Errors & Resolutions:**\n{_bullets(errors, empty='None')}\n\n"
        f"**File Changes:**\n{_bullets(changes, empty='None')}\n\n"
        f"**Important User Instructions:**\n{_bullets(summary.user_instructions, '! ', 'None')}\n\n"
        "---"
    )


def _suggested_next_steps(summary: StructuredSummary) -> List[str]:
    steps = list(summary.pending_steps[:3])
    unfixed = [e for e in summary.errors_and_fixes if e.fix == "Not yet fixed"]
    if unfixed:
        steps.append(f"Fix remaining error: {unfixed[0].error[:50]}")
    if not steps:
        steps = ["Review the changes made so far", "Continue with the next logical step"]
    return steps[:5]


def generate_handoff_document(session_id: str, messages: List[Dict[str, Any]], summary: StructuredSummary,
                              working_directory: str = "") -> HandoffDocument:
    last_user = next((m for m in reversed(messages) if m.get("role") == "user"), None)
    last_request = _text(last_user) if last_user else ""
    snapshots = [
        {"path": f.path, "content": "", "reason": f.summary}
        for f in summary.file_changes if f.action != "delete"
    ][-5:]
    return HandoffDocument(
        from_session_id=session_id,
        summary=summary,
        last_user_request=(last_request or "Continue the task")[:500],
        unresolved_items=[e.error for e in summary.errors_and_fixes if e.fix == "Not yet fixed"],
        suggested_next_steps=_suggested_next_steps(summary),
        working_directory=working_directory,
        key_file_snapshots=snapshots,
    )


def handoff_to_system_prompt(handoff: HandoffDocument) -> str:
    s = handoff.summary
    changes = [f"[{f.action.upper()}] {f.path}: {f.summary}" for f in s.file_changes]
    decisions = [d.description for d in s.decisions[-10:]]
    errors = [f"Error: {e.error}\n  Fix: {e.fix}" for e in s.errors_and_fixes]
    next_steps = "\n".join(f"{i}. {step}" for i, step in enumerate(handoff.suggested_next_steps, 1))
    return (
        "## Session Handoff Context\n\n"
        "This is a continuation of a previous session. Here's what happened:\n\n"
        f"### Objective\n{s.objective}\n\n"
        f"### Completed Steps\n{_bullets(s.completed_steps, '[x] ', 'None recorded')}\n\n"
        f"### Pending Steps\n{_bullets(s.pending_steps, '[ ] ', 'None recorded')}\n\n"
        f"### File Changes Made\n{_bullets(changes, empty='None')}\n\n"
        f"### Key Decisions\n{_bullets(decisions, empty='None')}\n\n"
        f"### Errors & Fixes\n{_bullets(errors, empty='None')}\n\n"
        f"### User Instructions to Remember\n{_bullets(s.user_instructions[-5:], empty='None')}\n\n"
        f"### Last User Request\n\"{handoff.last_user_request}\"\n\n"
        f"### Suggested Next Steps\n{next_steps}\n\n"
        "---\nContinue from where we left off. The user may provide additional context or corrections."
    )


# ---------------------------------------------------------------------------
# LLM refinement
# ---------------------------------------------------------------------------

SUMMARY_SYSTEM_PROMPT = """You are a conversation summarizer. Your task is to create concise, structured summaries of coding conversations.

Rules:
1. Focus on actions taken, not explanations
2. List concrete file changes and decisions
3. Identify pending work clearly
4. Note any user preferences or corrections
5. Output valid JSON only"""

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def parse_llm_summary(content: str, fallback: StructuredSummary) -> StructuredSummary:
    """Overlay a model's JSON summary on the heuristic one; fallback on anything unparsable."""
    match = _JSON_OBJECT_RE.search(content or "")
    if not match:
        return fallback
    try:
        parsed = json.loads(match.group(0))
    except ValueError:
        return fallback
    if not isinstance(parsed, dict):
        return fallback

    def str_list(key: str) -> List[str]:
        value = parsed.get(key)
        return [str(v) for v in value] if isinstance(value, list) else []

    completed = fallback.completed_steps + [s for s in str_list("completedSteps") if s not in fallback.completed_steps]
    instructions = fallback.user_instructions + [
        s for s in str_list("userInstructions") if s not in fallback.user_instructions]
    return StructuredSummary(
        objective=str(parsed.get("objective") or fallback.objective),
        completed_steps=completed,
        pending_steps=str_list("pendingSteps") or fallback.pending_steps,
        decisions=fallback.decisions,
        file_changes=fallback.file_changes,
        errors_and_fixes=fallback.errors_and_fixes,
        user_instructions=instructions,
        turn_range=fallback.turn_range,
    )


class LLMSummarizer:
    """Model-backed summary refinement through a ProtocolAdapter."""

    def __init__(self, adapter, model: str, max_tokens: int = 1500):
        self.adapter = adapter
        self.model = model
        self.max_tokens = max_tokens

    def _build_messages(self, messages, groups: List[MessageGroup], quick: StructuredSummary) -> List[Dict[str, Any]]:
        request: List[Dict[str, Any]] = []
        for group in groups:
            if group.user_index is not None:
                request.append({"role": "user", "content": _clip(_text(messages[group.user_index]), 300)})
            for idx in group.assistant_indices:
                msg = messages[idx]
                calls = []
                for name, args in iter_tool_calls(msg):
                    path = args.get("path")
                    calls.append(f"[{name} ({path})]" if path else f"[{name}]")
                text = _clip(_text(msg), 200)
                body = f"{text}\n{' '.join(calls)}".strip()
                request.append({"role": "assistant", "content": body or "(no content)"})

        reference = [f"Objective: {quick.objective}"]
        if quick.completed_steps:
            reference.append(f"Completed: {', '.join(quick.completed_steps[-5:])}")
        if quick.file_changes:
            reference.append("Files: " + ", ".join(f"{f.action}:{f.path}" for f in quick.file_changes[-5:]))
        if quick.errors_and_fixes:
            reference.append(f"Errors: {len(quick.errors_and_fixes)} encountered")

        request.append({
            "role": "user",
            "content": (
                "Based on the conversation above, generate a structured summary.\n\n"
                "## Quick Analysis (for reference):\n" + "\n".join(reference) + "\n\n"
                "## Output Format (JSON):\n"
                "{\n"
                '  "objective": "Main task/goal in one sentence",\n'
                '  "completedSteps": ["Step 1", "Step 2"],\n'
                '  "pendingSteps": ["Next step 1", "Next step 2"],\n'
                '  "keyDecisions": ["Important decision 1"],\n'
                '  "userInstructions": ["Important user instruction"]\n'
                "}\n\n"
                "Output ONLY valid JSON."
            ),
        })
        return request

    async def summarize(self, messages: List[Dict[str, Any]], groups: List[MessageGroup],
                        turn_range: Tuple[int, int]) -> StructuredSummary:
        quick = generate_quick_summary(messages, groups, turn_range)
        if not self.adapter.has_credentials():
            logger.warning("No model credentials configured, using heuristic summary")
            return quick

        request = ChatRequest(
            model=self.model,
            messages=self._build_messages(messages, groups, quick),
            system_prompt=SUMMARY_SYSTEM_PROMPT,
            max_tokens=self.max_tokens,
            temperature=0.3,
        )
        try:
            done = await self.adapter.complete(request)
        except AppError as e:
            logger.warning(f"LLM summary failed, using heuristic summary: {e.message}")
            return quick
        summary = parse_llm_summary(done.content, quick)
        logger.info("Generated LLM summary")
        return summary
