"""
Agent event, loop state and tool call data types.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


@dataclass
class AgentEvent:
    """Event emitted during agent execution"""
    type: str  # state, text, reasoning, tool_call_delta, tool_call, approval_required, tool_result, observation, compression, handoff, max_iterations, error, done
    content: str = ""
    data: Optional[Dict[str, Any]] = None


class LoopState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_CALL = "tool_call"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    DONE = "done"
    ERROR = "error"
    ABORTED = "aborted"


class TerminationReason(str, Enum):
    COMPLETED = "completed"
    MAX_ITERATIONS = "max_iterations"
    ABORTED = "aborted"
    ERROR = "error"
    REJECTED = "rejected"
    REPEATED_CALLS = "repeated_calls"
    HANDOFF = "handoff"


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    AWAITING = "awaiting"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (ToolCallStatus.SUCCESS, ToolCallStatus.ERROR, ToolCallStatus.REJECTED)


_TRANSITIONS: Dict[ToolCallStatus, FrozenSet[ToolCallStatus]] = {
    ToolCallStatus.PENDING: frozenset({ToolCallStatus.RUNNING, ToolCallStatus.AWAITING, ToolCallStatus.ERROR}),
    ToolCallStatus.AWAITING: frozenset({ToolCallStatus.RUNNING, ToolCallStatus.REJECTED, ToolCallStatus.ERROR}),
    ToolCallStatus.RUNNING: frozenset({ToolCallStatus.SUCCESS, ToolCallStatus.ERROR}),
}


@dataclass
class ToolCall:
    """A model-proposed tool invocation tracked through approval and execution."""
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    status: ToolCallStatus = ToolCallStatus.PENDING
    result: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    def transition(self, new_status: ToolCallStatus, result: Optional[str] = None,
                   error: Optional[str] = None) -> None:
        if new_status not in _TRANSITIONS.get(self.status, frozenset()):
            raise ValueError(f"Invalid tool call transition {self.status.value} -> {new_status.value} ({self.id})")
        self.status = new_status
        if new_status is ToolCallStatus.RUNNING:
            self.started_at = time.time()
        if new_status.is_terminal:
            self.finished_at = time.time()
            if new_status is ToolCallStatus.SUCCESS:
                self.result, self.error = result or "", None
            else:
                self.result, self.error = None, error or new_status.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "arguments": self.arguments,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
        }
