"""
Graduated context compression.

Level 0  full context
Level 1  per-message truncation of tool output and long assistant text
Level 2  sliding window over turns plus a compact summary in the system message
Level 3  deep compression: two turns, hard truncation, detailed summary
Level 4  session handoff: the thread ends and a handoff document seeds a new one

Sizes are measured in characters. The applied level never decreases for the
lifetime of a ContextManager; reset() starts over at level 0.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Optional, Tuple

from agent.importance import MessageGroup, group_messages, message_chars, score_group
from agent.summary import (
    HandoffDocument, StructuredSummary, format_detailed_summary, format_summary_for_system,
    generate_handoff_document, generate_quick_summary, handoff_to_system_prompt, merge_summaries,
)
from config import ContextConfig, context_config

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 3.5

SUMMARY_START = "\n\n<context-summary>\n"
SUMMARY_END = "\n</context-summary>"
_SUMMARY_BLOCK_RE = re.compile(re.escape(SUMMARY_START) + r"[\s\S]*?" + re.escape(SUMMARY_END))

TRUNCATION_MARKER = "\n\n... [truncated] ...\n\n"
ASSISTANT_MARKER = "\n...[Content truncated]...\n"


class CompressionLevel(IntEnum):
    FULL = 0
    TRUNCATE = 1
    SLIDING_WINDOW = 2
    DEEP = 3
    HANDOFF = 4

    @property
    def description(self) -> str:
        return {
            0: "Full Context",
            1: "Smart Truncation",
            2: "Sliding Window + Summary",
            3: "Deep Compression",
            4: "Session Handoff",
        }[int(self)]


@dataclass(frozen=True)
class TruncationRule:
    max_length: int
    head_ratio: float
    tail_ratio: float


TRUNCATION_RULES: Dict[str, TruncationRule] = {
    "read_file": TruncationRule(20000, 0.8, 0.15),
    "search_files": TruncationRule(10000, 0.9, 0.05),
    "get_dir_tree": TruncationRule(8000, 0.85, 0.1),
    "list_directory": TruncationRule(8000, 0.85, 0.1),
    # Command errors trail the output
    "run_command": TruncationRule(15000, 0.2, 0.75),
    "get_lint_errors": TruncationRule(8000, 0.85, 0.1),
}
DEFAULT_TRUNCATION = TruncationRule(12000, 0.7, 0.25)


def estimate_tokens(chars: int) -> int:
    return math.ceil(chars / CHARS_PER_TOKEN)


def total_chars(messages: List[Dict[str, Any]]) -> int:
    return sum(message_chars(m) for m in messages)


def truncate_tool_result(content: str, tool_name: str = "", max_chars: Optional[int] = None) -> str:
    """Head/tail truncation tuned per tool. The result, marker included, never exceeds the limit."""
    rule = TRUNCATION_RULES.get(tool_name, DEFAULT_TRUNCATION)
    limit = min(rule.max_length, max_chars) if max_chars else rule.max_length
    if len(content) <= limit:
        return content
    room = limit - len(TRUNCATION_MARKER)
    if room <= 0:
        return content[:limit]
    head = int(room * rule.head_ratio)
    tail = int(room * rule.tail_ratio)
    return content[:head] + TRUNCATION_MARKER + (content[-tail:] if tail else "")


def truncate_assistant_text(content: str, max_chars: int) -> str:
    if len(content) <= max_chars:
        return content
    room = max_chars - len(ASSISTANT_MARKER)
    if room <= 0:
        return content[:max_chars]
    half = room // 2
    return content[:half] + ASSISTANT_MARKER + content[len(content) - half:]


def strip_injected_summary(system_content: str) -> str:
    return _SUMMARY_BLOCK_RE.sub("", system_content or "")


def _inject(system_content: str, block: str) -> str:
    base = strip_injected_summary(system_content)
    return f"{base}{SUMMARY_START}{block}{SUMMARY_END}" if block else base


@dataclass
class CompressionStats:
    level: int
    level_name: str
    original_chars: int
    final_chars: int
    saved_percent: int
    kept_turns: int
    compacted_turns: int
    needs_handoff: bool = False

    @property
    def estimated_tokens(self) -> int:
        return estimate_tokens(self.final_chars)


@dataclass
class CompressionResult:
    messages: List[Dict[str, Any]]
    level: CompressionLevel
    summary: Optional[StructuredSummary] = None
    handoff: Optional[HandoffDocument] = None
    stats: Optional[CompressionStats] = None

    @property
    def needs_handoff(self) -> bool:
        return bool(self.stats and self.stats.needs_handoff)


@dataclass
class _Split:
    system: str
    has_system: bool
    rest: List[Dict[str, Any]] = field(default_factory=list)


def _split(messages: List[Dict[str, Any]]) -> _Split:
    system_parts = [m.get("content") or "" for m in messages if m.get("role") == "system"]
    rest = [m for m in messages if m.get("role") != "system"]
    return _Split(system="\n\n".join(p for p in system_parts if p), has_system=bool(system_parts), rest=rest)


class ContextManager:
    """Keeps one conversation thread within a character budget."""

    def __init__(self, config: Optional[ContextConfig] = None, session_id: str = "",
                 working_directory: str = ""):
        self.config = config or context_config
        self.session_id = session_id
        self.working_directory = working_directory
        self.current_level = CompressionLevel.FULL
        self.summary: Optional[StructuredSummary] = None
        self.handoff: Optional[HandoffDocument] = None
        self.last_stats: Optional[CompressionStats] = None
        # History and turns compacted by the last compress(), for model refinement
        self._compacted: Optional[Tuple[List[Dict[str, Any]], List[MessageGroup], Tuple[int, int]]] = None

    def reset(self) -> None:
        self.current_level = CompressionLevel.FULL
        self.summary = None
        self.handoff = None
        self.last_stats = None
        self._compacted = None

    def determine_level(self, chars: int, budget: int) -> CompressionLevel:
        ratio = chars / budget if budget > 0 else float("inf")
        cfg = self.config
        if ratio < cfg.l1_threshold:
            return CompressionLevel.FULL
        if ratio < cfg.l2_threshold:
            return CompressionLevel.TRUNCATE
        if ratio < cfg.l3_threshold:
            return CompressionLevel.SLIDING_WINDOW
        if ratio < cfg.l4_threshold:
            return CompressionLevel.DEEP
        return CompressionLevel.HANDOFF

    def compress(self, messages: List[Dict[str, Any]], budget: Optional[int] = None) -> CompressionResult:
        budget = budget or self.config.max_context_chars
        original = total_chars(messages)
        self._compacted = None
        if not any(m.get("role") != "system" for m in messages):
            return self._finish(CompressionLevel.FULL, [dict(m) for m in messages], original, 0, 0)

        level = max(self.current_level, self.determine_level(original, budget))
        result = self._apply(level, messages, original)
        while result.stats.final_chars > budget and level < CompressionLevel.HANDOFF:
            level = CompressionLevel(level + 1)
            logger.info(f"Still over budget ({result.stats.final_chars}/{budget}), escalating to level {int(level)}")
            result = self._apply(level, messages, original)

        self.current_level = level
        logger.info(
            f"Context level {int(result.level)} ({result.level.description}): "
            f"{original} -> {result.stats.final_chars} chars of {budget}"
        )
        return result

    async def refine_summary(self, summarizer) -> Optional[StructuredSummary]:
        """
        Summarize the turns compacted by the last compress() with a model and
        fold the result into the running summary.

        Completed steps, file changes and user instructions are unioned with
        what is already known; objective and pending steps are overwritten.
        Returns None when the last compress() compacted nothing.
        """
        if self._compacted is None:
            return None
        messages, groups, turn_range = self._compacted
        self._compacted = None
        refined = await summarizer.summarize(messages, groups, turn_range)
        self._merge_summary(refined)
        logger.info(f"Context summary refined for turns {turn_range[0]}-{turn_range[1]}")
        return self.summary

    def inject_summary(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Re-render the current summary into the system message."""
        if self.summary is None:
            return messages
        level = CompressionLevel(self.last_stats.level) if self.last_stats else self.current_level
        if level >= CompressionLevel.DEEP:
            block = format_detailed_summary(self.summary)
        else:
            block = format_summary_for_system(self.summary)

        out = [dict(m) for m in messages]
        for msg in out:
            if msg.get("role") == "system":
                msg["content"] = _inject(msg.get("content") or "", block)
                return out
        return [{"role": "system", "content": _inject("", block)}] + out

    # ------------------------------------------------------------------
    # Levels
    # ------------------------------------------------------------------

    def _apply(self, level: CompressionLevel, messages: List[Dict[str, Any]], original: int) -> CompressionResult:
        if level == CompressionLevel.FULL:
            kept = [dict(m) for m in messages]
            return self._finish(level, kept, original, self._count_turns(messages), 0)
        if level == CompressionLevel.TRUNCATE:
            return self._level1(messages, original)
        if level == CompressionLevel.SLIDING_WINDOW:
            return self._level2(messages, original)
        if level == CompressionLevel.DEEP:
            return self._level3(messages, original)
        return self._level4(messages, original)

    def _truncate(self, msg: Dict[str, Any], tool_cap: int) -> Dict[str, Any]:
        out = dict(msg)
        content = msg.get("content")
        if not isinstance(content, str):
            return out
        if msg.get("role") == "tool":
            out["content"] = truncate_tool_result(content, msg.get("name", ""), tool_cap)
        elif msg.get("role") == "assistant" and not msg.get("tool_calls"):
            out["content"] = truncate_assistant_text(content, self.config.max_assistant_chars)
        return out

    def _level1(self, messages, original) -> CompressionResult:
        cap = self.config.max_tool_result_chars
        kept = [self._truncate(m, cap) for m in messages]
        return self._finish(CompressionLevel.TRUNCATE, kept, original, self._count_turns(messages), 0)

    def _assemble(self, split: _Split, block: str, groups: List[MessageGroup], tool_cap: int) -> List[Dict[str, Any]]:
        keep = sorted({i for g in groups for i in g.indices})
        out: List[Dict[str, Any]] = []
        if split.has_system or block:
            out.append({"role": "system", "content": _inject(split.system, block)})
        out.extend(self._truncate(split.rest[i], tool_cap) for i in keep)
        return out

    def _score(self, split: _Split) -> List[MessageGroup]:
        groups = group_messages(split.rest)
        for group in groups:
            group.importance = score_group(group, split.rest, len(groups))
        return groups

    def _merge_summary(self, new: StructuredSummary) -> StructuredSummary:
        self.summary = merge_summaries(self.summary, new) if self.summary else new
        return self.summary

    def _level2(self, messages, original) -> CompressionResult:
        split = _split(messages)
        groups = self._score(split)
        if not groups:
            return self._level1(messages, original)

        keep_n = self.config.keep_recent_turns
        recent = groups[-keep_n:] if keep_n > 0 else []
        older = groups[:len(groups) - len(recent)]
        important = [g for g in older if g.importance > 60 or g.has_write_ops or g.has_errors]
        important = important[-self.config.max_important_old_turns:] if self.config.max_important_old_turns > 0 else []
        compacted = [g for g in older if g not in important]

        if compacted:
            turn_range = (compacted[0].turn_index, compacted[-1].turn_index)
            self._merge_summary(generate_quick_summary(split.rest, compacted, turn_range))
            self._compacted = (split.rest, compacted, turn_range)

        block = format_summary_for_system(self.summary) if self.summary else ""
        kept_groups = important + recent
        out = self._assemble(split, block, kept_groups, self.config.max_tool_result_chars)
        return self._finish(CompressionLevel.SLIDING_WINDOW, out, original, len(kept_groups), len(compacted))

    def _level3(self, messages, original) -> CompressionResult:
        split = _split(messages)
        groups = group_messages(split.rest)
        if not groups:
            return self._level1(messages, original)

        keep_n = max(1, self.config.deep_compression_turns)
        recent = groups[-keep_n:]
        older = groups[:len(groups) - len(recent)]
        if older:
            turn_range = (0, older[-1].turn_index)
            self._merge_summary(generate_quick_summary(split.rest, older, turn_range))
            self._compacted = (split.rest, older, turn_range)
        elif self.summary is None:
            self.summary = generate_quick_summary(split.rest, groups, (0, groups[-1].turn_index))

        out = self._assemble(split, format_detailed_summary(self.summary), recent,
                             self.config.max_tool_result_chars // 3)
        return self._finish(CompressionLevel.DEEP, out, original, len(recent), len(older))

    def _level4(self, messages, original) -> CompressionResult:
        split = _split(messages)
        groups = group_messages(split.rest)
        if len(groups) <= 1:
            if self.handoff is not None and groups:
                # Already handed off: keep the handoff context stable
                out = self._assemble(split, handoff_to_system_prompt(self.handoff), groups,
                                     self.config.max_tool_result_chars // 3)
                return self._finish(CompressionLevel.HANDOFF, out, original, 1, 0, needs_handoff=True)
            logger.warning("Only one turn in context, falling back to deep compression")
            return self._level3(messages, original)
        if not self.config.auto_handoff:
            return self._level3(messages, original)

        summary = self._merge_summary(generate_quick_summary(split.rest, groups, (0, groups[-1].turn_index)))
        self.handoff = generate_handoff_document(self.session_id, split.rest, summary, self.working_directory)
        out = self._assemble(split, handoff_to_system_prompt(self.handoff), groups[-1:],
                             self.config.max_tool_result_chars // 3)
        logger.warning(f"Session handoff required, {len(groups) - 1} turns compacted")
        return self._finish(CompressionLevel.HANDOFF, out, original, 1, len(groups) - 1, needs_handoff=True)

    # ------------------------------------------------------------------

    @staticmethod
    def _count_turns(messages) -> int:
        return sum(1 for m in messages if m.get("role") == "user")

    def _finish(self, level: CompressionLevel, out: List[Dict[str, Any]], original: int,
                kept: int, compacted: int, needs_handoff: bool = False) -> CompressionResult:
        final = total_chars(out)
        saved = round((1 - final / original) * 100) if original else 0
        stats = CompressionStats(
            level=int(level),
            level_name=level.description,
            original_chars=original,
            final_chars=final,
            saved_percent=saved,
            kept_turns=kept,
            compacted_turns=compacted,
            needs_handoff=needs_handoff,
        )
        self.last_stats = stats
        return CompressionResult(
            messages=out,
            level=level,
            summary=self.summary,
            handoff=self.handoff if needs_handoff else None,
            stats=stats,
        )
