"""
Agent package - execution engine for the coding assistant.

This package contains the agent functionality split into logical modules:
- events: AgentEvent, loop state and tool call data types
- streaming_buffer: Coalescing of streamed text for display
- plan: Task plan data types
- scheduler: Dependency-aware task plan execution
- importance: Turn grouping and importance scoring
- summary: Structured summaries and handoff documents
- compression: Multi-level context compression
- loop: Agent loop controller (the main entry point)
"""

# Core classes and data types
from .loop import AgentLoop, LoopResult, call_signature
from .events import AgentEvent, LoopState, TerminationReason, ToolCall, ToolCallStatus
from .streaming_buffer import StreamingBuffer

# Orchestrated plans
from .plan import (
    DependencyStatus,
    ExecutionMode,
    ExecutionStats,
    OrchestratorTask,
    PlanStatus,
    TaskExecutionResult,
    TaskPlan,
    TaskStatus,
)
from .scheduler import ExecutionScheduler, SKIP_REASON

# Context compression
from .compression import (
    CompressionLevel,
    CompressionResult,
    CompressionStats,
    ContextManager,
    estimate_tokens,
    truncate_tool_result,
)
from .importance import MessageGroup, group_messages, score_group, score_message
from .summary import (
    HandoffDocument,
    LLMSummarizer,
    StructuredSummary,
    generate_handoff_document,
    generate_quick_summary,
    handoff_to_system_prompt,
)

__all__ = [
    # Main loop
    "AgentLoop",
    "LoopResult",
    "call_signature",

    # Data types
    "AgentEvent",
    "LoopState",
    "TerminationReason",
    "ToolCall",
    "ToolCallStatus",
    "StreamingBuffer",

    # Plans
    "DependencyStatus",
    "ExecutionMode",
    "ExecutionStats",
    "OrchestratorTask",
    "PlanStatus",
    "TaskExecutionResult",
    "TaskPlan",
    "TaskStatus",
    "ExecutionScheduler",
    "SKIP_REASON",

    # Context compression
    "CompressionLevel",
    "CompressionResult",
    "CompressionStats",
    "ContextManager",
    "estimate_tokens",
    "truncate_tool_result",
    "MessageGroup",
    "group_messages",
    "score_group",
    "score_message",
    "HandoffDocument",
    "LLMSummarizer",
    "StructuredSummary",
    "generate_handoff_document",
    "generate_quick_summary",
    "handoff_to_system_prompt",
]
