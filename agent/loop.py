"""
Agent loop controller.

Drives one conversation thread: compress the history, stream a model turn,
execute the proposed tool calls one at a time (asking for approval where
needed), feed the results back and repeat until the model stops calling tools
or a termination condition is hit.
"""

import asyncio
import json
import logging
import re
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from adapters import (
    ChatRequest,
    DoneEvent,
    ErrorEvent,
    ParsedToolCall,
    ProtocolAdapter,
    ReasoningEvent,
    TextEvent,
    ToolCallDeltaEvent,
    ToolCallEvent,
)
from backend import Backend, LocalBackend
from cancellation import AbortController, AbortedError, AbortSignal
from config import AgentConfig, agent_config, llm_config
from errors import AppError, ErrorCode, classify_exception
from tools import ToolResult, execute_tool, get_tool_definitions, needs_approval
from tools._common import fail

from .compression import ContextManager, truncate_tool_result
from .events import AgentEvent, LoopState, TerminationReason, ToolCall, ToolCallStatus
from .plan import OrchestratorTask, TaskExecutionResult, TaskPlan
from .scheduler import ExecutionScheduler
from .streaming_buffer import StreamingBuffer
from .summary import HandoffDocument

logger = logging.getLogger(__name__)

REJECTED_MESSAGE = "Tool call was rejected by the user."
SKIPPED_MESSAGE = "Error: Skipped because an earlier tool call was rejected."
ABORTED_MESSAGE = "Aborted by user"
MAX_ITERATIONS_MESSAGE = "Reached maximum tool call limit."
MAX_RECENT_SIGNATURES = 5
MAX_DEPENDENCY_OUTPUT_CHARS = 2000

OBSERVATION_PREFIX = "[Observation] The following problems were detected in the files you changed, please fix them:\n\n"
OBSERVED_TOOLS = frozenset({"edit_file", "write_file", "create_file_or_folder"})
MAX_OBSERVED_PROBLEMS = 3
_LINT_PROBLEM_RE = re.compile(r"\[error\]|failed to compile|syntax error", re.IGNORECASE)

ApprovalHandler = Callable[[ToolCall], Awaitable[bool]]
EventHandler = Callable[[AgentEvent], Awaitable[None]]


@dataclass
class LoopResult:
    state: LoopState
    reason: TerminationReason
    content: str = ""
    iterations: int = 0
    messages: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[AppError] = None
    handoff: Optional[HandoffDocument] = None


@dataclass
class _Turn:
    content: str = ""
    calls: List[ParsedToolCall] = field(default_factory=list)
    error: Optional[AppError] = None
    completed: bool = False


def call_signature(calls: List[ParsedToolCall]) -> str:
    """Order-independent fingerprint of a set of tool calls."""
    parts = [f"{c.name}:{json.dumps(c.arguments, sort_keys=True, default=str)}" for c in calls]
    return "|".join(sorted(parts))


class AgentLoop:
    def __init__(
        self,
        adapter: ProtocolAdapter,
        *,
        working_directory: str = ".",
        backend: Optional[Backend] = None,
        config: Optional[AgentConfig] = None,
        context_manager: Optional[ContextManager] = None,
        scheduler: Optional[ExecutionScheduler] = None,
        approval_handler: Optional[ApprovalHandler] = None,
        on_event: Optional[EventHandler] = None,
        tools: Optional[List[str]] = None,
        summarizer=None,
    ):
        self.adapter = adapter
        self.working_directory = working_directory
        # One backend per loop so a timed-out command can be cancelled
        self._owns_backend = backend is None
        self.backend = backend or LocalBackend(working_directory)
        self.config = config or agent_config
        self.context_manager = context_manager or ContextManager(working_directory=working_directory)
        self.scheduler = scheduler
        self.approval_handler = approval_handler
        self.on_event = on_event
        self.tool_names = tools
        self.summarizer = summarizer

        self.messages: List[Dict[str, Any]] = []
        self.tool_calls: Dict[str, ToolCall] = {}
        self.state = LoopState.IDLE
        self._controller: Optional[AbortController] = None
        self._active = False
        self._text_chain: Optional[asyncio.Future] = None

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _emit(self, type: str, content: str = "", data: Optional[Dict[str, Any]] = None) -> None:
        if self.on_event is not None:
            await self.on_event(AgentEvent(type=type, content=content, data=data))

    async def _set_state(self, state: LoopState) -> None:
        if self.state == state:
            return
        self.state = state
        await self._emit("state", state.value)

    def _on_text_flush(self, text: str) -> None:
        # Chained so text events reach on_event in order
        previous = self._text_chain
        self._text_chain = asyncio.ensure_future(self._emit_text_after(previous, text))

    async def _emit_text_after(self, previous: Optional[asyncio.Future], text: str) -> None:
        if previous is not None:
            await previous
        await self._emit("text", text)

    async def _drain_text(self, buffer: StreamingBuffer) -> None:
        buffer.flush()
        if self._text_chain is not None:
            chain, self._text_chain = self._text_chain, None
            await chain

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._active

    async def run(
        self,
        user_message: str,
        system_prompt: str = "",
        model: Optional[str] = None,
        signal: Optional[AbortSignal] = None,
    ) -> LoopResult:
        """Run the loop for one user message. History carries over between runs."""
        if self._active:
            raise AppError("A run is already active for this conversation", ErrorCode.UNKNOWN)
        self._active = True
        self._controller = AbortController()
        controller = self._controller

        def forward_abort() -> None:
            controller.abort(signal.reason or ABORTED_MESSAGE)

        if signal is not None:
            signal.add_listener(forward_abort)

        try:
            self._set_system_prompt(system_prompt)
            self.messages.append({"role": "user", "content": user_message})
            return await self._run(model or llm_config.model, controller.signal)
        except Exception as e:
            logger.exception("Agent loop failed")
            error = classify_exception(e)
            await self._set_state(LoopState.ERROR)
            await self._emit("error", error.message, error.to_dict())
            return self._result(LoopState.ERROR, TerminationReason.ERROR, error=error)
        finally:
            if signal is not None:
                signal.remove_listener(forward_abort)
            self._active = False
            self._controller = None

    def abort(self, reason: str = ABORTED_MESSAGE) -> None:
        """Cancel the active run. Calls that have not finished are marked as errors."""
        if self._controller is not None:
            self._controller.abort(reason)
        self._mark_unfinished()
        self.state = LoopState.ABORTED
        logger.info(f"Agent loop aborted: {reason}")

    def _mark_unfinished(self) -> None:
        for call in self.tool_calls.values():
            if call.status in (ToolCallStatus.PENDING, ToolCallStatus.AWAITING, ToolCallStatus.RUNNING):
                call.transition(ToolCallStatus.ERROR, error=ABORTED_MESSAGE)

    def reset(self) -> None:
        if self._active:
            raise AppError("Cannot reset while a run is active", ErrorCode.UNKNOWN)
        self.messages = []
        self.tool_calls.clear()
        self.context_manager.reset()
        self.state = LoopState.IDLE

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _set_system_prompt(self, system_prompt: str) -> None:
        self.messages = [m for m in self.messages if m.get("role") != "system"]
        if system_prompt:
            self.messages.insert(0, {"role": "system", "content": system_prompt})

    async def _run(self, model: str, signal: AbortSignal) -> LoopResult:
        recent: Deque[str] = deque(maxlen=MAX_RECENT_SIGNATURES)
        repeats = 0
        content = ""
        iterations = 0

        while iterations < self.config.max_tool_loops:
            if signal.aborted:
                return await self._aborted(content, iterations)
            iterations += 1

            compressed = self.context_manager.compress(self.messages)
            self.messages = compressed.messages
            if compressed.level > 0:
                await self._emit("compression", compressed.level.description, asdict(compressed.stats))
            if compressed.needs_handoff:
                handoff = compressed.handoff
                await self._emit("handoff", handoff.last_user_request if handoff else "",
                                 handoff.to_dict() if handoff else None)
                await self._set_state(LoopState.DONE)
                await self._emit("done", "", {"reason": TerminationReason.HANDOFF.value})
                return self._result(LoopState.DONE, TerminationReason.HANDOFF, content, iterations, handoff=handoff)
            if (self.summarizer is not None and self.context_manager.config.enable_llm_summary
                    and compressed.stats.compacted_turns > 0):
                if await self.context_manager.refine_summary(self.summarizer) is not None:
                    self.messages = self.context_manager.inject_summary(self.messages)

            turn = await self._stream_turn(model, signal)
            if signal.aborted or not (turn.completed or turn.error):
                return await self._aborted(content, iterations)
            if turn.error is not None:
                logger.error(f"Model call failed: {turn.error.message}")
                await self._set_state(LoopState.ERROR)
                await self._emit("error", turn.error.message, turn.error.to_dict())
                return self._result(LoopState.ERROR, TerminationReason.ERROR, content, iterations, error=turn.error)

            content = turn.content
            if not turn.calls:
                self.messages.append({"role": "assistant", "content": content})
                await self._set_state(LoopState.DONE)
                await self._emit("done", content, {"reason": TerminationReason.COMPLETED.value})
                return self._result(LoopState.DONE, TerminationReason.COMPLETED, content, iterations)

            signature = call_signature(turn.calls)
            if signature in recent:
                repeats += 1
                if repeats >= self.config.max_repeated_tool_calls:
                    message = f"Stopped after {repeats} repeated identical tool calls."
                    logger.warning(message)
                    for call in turn.calls:
                        self.tool_calls[call.id].transition(ToolCallStatus.ERROR, error=message)
                    await self._emit("error", message, {"code": "REPEATED_CALLS"})
                    await self._set_state(LoopState.DONE)
                    await self._emit("done", content, {"reason": TerminationReason.REPEATED_CALLS.value})
                    return self._result(LoopState.DONE, TerminationReason.REPEATED_CALLS, content, iterations)
            else:
                repeats = 0
            recent.append(signature)

            self.messages.append(self._assistant_message(content, turn.calls))
            rejected = await self._execute_calls(turn.calls, signal)
            if signal.aborted:
                return await self._aborted(content, iterations)
            if rejected:
                await self._set_state(LoopState.DONE)
                await self._emit("done", content, {"reason": TerminationReason.REJECTED.value})
                return self._result(LoopState.DONE, TerminationReason.REJECTED, content, iterations)

            if self.config.auto_fix:
                problems = await self._observe_changes(turn.calls)
                if problems:
                    logger.info(f"Auto-check found {len(problems)} problem(s) in written files")
                    observation = OBSERVATION_PREFIX + "\n\n".join(problems[:MAX_OBSERVED_PROBLEMS])
                    self.messages.append({"role": "user", "content": observation})
                    await self._emit("observation", observation, {"count": len(problems)})

        logger.warning(f"Agent loop hit max_tool_loops ({self.config.max_tool_loops})")
        await self._emit("max_iterations", MAX_ITERATIONS_MESSAGE, {"iterations": iterations})
        await self._set_state(LoopState.DONE)
        await self._emit("done", content, {"reason": TerminationReason.MAX_ITERATIONS.value})
        return self._result(LoopState.DONE, TerminationReason.MAX_ITERATIONS, content, iterations)

    async def _aborted(self, content: str, iterations: int) -> LoopResult:
        self._mark_unfinished()
        self.state = LoopState.ABORTED
        await self._emit("state", LoopState.ABORTED.value)
        await self._emit("done", content, {"reason": TerminationReason.ABORTED.value})
        return self._result(LoopState.ABORTED, TerminationReason.ABORTED, content, iterations)

    def _result(self, state: LoopState, reason: TerminationReason, content: str = "", iterations: int = 0,
                error: Optional[AppError] = None, handoff: Optional[HandoffDocument] = None) -> LoopResult:
        return LoopResult(
            state=state,
            reason=reason,
            content=content,
            iterations=iterations,
            messages=list(self.messages),
            error=error,
            handoff=handoff,
        )

    @staticmethod
    def _assistant_message(content: str, calls: List[ParsedToolCall]) -> Dict[str, Any]:
        return {
            "role": "assistant",
            "content": content,
            "tool_calls": [
                {
                    "id": c.id,
                    "type": "function",
                    "function": {"name": c.name, "arguments": json.dumps(c.arguments)},
                }
                for c in calls
            ],
        }

    # ------------------------------------------------------------------
    # Model turn
    # ------------------------------------------------------------------

    async def _stream_turn(self, model: str, signal: AbortSignal) -> _Turn:
        await self._set_state(LoopState.STREAMING)
        request = ChatRequest(
            model=model,
            messages=self.messages,
            tools=[d.to_dict() for d in get_tool_definitions(self.tool_names)],
            signal=signal,
        )
        turn = _Turn()
        buffer = StreamingBuffer(self._on_text_flush, interval=self.config.stream_flush_interval_ms / 1000)
        try:
            async for event in self.adapter.send(request):
                if isinstance(event, TextEvent):
                    buffer.append(event.content)
                    continue
                await self._drain_text(buffer)
                if isinstance(event, ReasoningEvent):
                    await self._emit("reasoning", event.content)
                elif isinstance(event, ToolCallDeltaEvent):
                    await self._emit("tool_call_delta", event.args_fragment or "", {
                        "index": event.index,
                        "id": event.id,
                        "name": event.name,
                        "partial_arguments": event.partial_arguments,
                    })
                elif isinstance(event, ToolCallEvent):
                    call = event.call
                    turn.calls.append(call)
                    self.tool_calls[call.id] = ToolCall(id=call.id, name=call.name, arguments=call.arguments)
                    await self._set_state(LoopState.TOOL_CALL)
                    await self._emit("tool_call", call.name, self.tool_calls[call.id].to_dict())
                elif isinstance(event, DoneEvent):
                    turn.content = event.content
                    turn.completed = True
                elif isinstance(event, ErrorEvent):
                    turn.error = event.error
        finally:
            buffer.reset()
            await self._drain_text(buffer)
        return turn

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    async def _execute_calls(self, calls: List[ParsedToolCall], signal: AbortSignal) -> bool:
        """Run calls in order. Returns True if the user rejected one."""
        auto_approved = self.config.auto_approved_types()
        answered = set()
        rejected = False

        for call in calls:
            if signal.aborted:
                break
            tracked = self.tool_calls[call.id]

            if rejected:
                tracked.transition(ToolCallStatus.ERROR, error=SKIPPED_MESSAGE)
                self._append_result(call, SKIPPED_MESSAGE)
                answered.add(call.id)
                continue

            if needs_approval(call.name, auto_approved):
                tracked.transition(ToolCallStatus.AWAITING)
                await self._set_state(LoopState.AWAITING_APPROVAL)
                await self._emit("approval_required", call.name, tracked.to_dict())
                approved = await self._request_approval(tracked, signal)
                if signal.aborted:
                    break
                if not approved:
                    logger.info(f"Tool call rejected: {call.name} ({call.id})")
                    tracked.transition(ToolCallStatus.REJECTED, error=REJECTED_MESSAGE)
                    self._append_result(call, REJECTED_MESSAGE)
                    answered.add(call.id)
                    await self._emit("tool_result", REJECTED_MESSAGE, tracked.to_dict())
                    rejected = True
                    continue

            tracked.transition(ToolCallStatus.RUNNING)
            await self._set_state(LoopState.EXECUTING)
            result = await self._run_tool(call)
            if signal.aborted:
                logger.info(f"Discarding result of {call.name} ({call.id}) after abort")
                break

            content = truncate_tool_result(result.to_message_content(), call.name, self.config.max_tool_result_chars)
            if result.success:
                tracked.transition(ToolCallStatus.SUCCESS, result=content)
            else:
                tracked.transition(ToolCallStatus.ERROR, error=result.error)
            self._append_result(call, content)
            answered.add(call.id)
            data = tracked.to_dict()
            data["meta"] = result.meta
            data["code"] = result.code.value if result.code else None
            await self._emit("tool_result", content, data)

        # Every proposed call needs a result message before the next model turn
        for call in calls:
            if call.id not in answered:
                self._append_result(call, f"Error: {ABORTED_MESSAGE}")
        return rejected

    async def _request_approval(self, call: ToolCall, signal: AbortSignal) -> bool:
        if self.approval_handler is None:
            logger.info(f"No approval handler, rejecting {call.name}")
            return False
        if signal.aborted:
            return False
        try:
            return bool(await signal.race(self.approval_handler(call)))
        except AbortedError:
            return False

    async def _run_tool(self, call: ParsedToolCall) -> ToolResult:
        timeout = self.config.tool_timeout
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(execute_tool, call.name, call.arguments, self.working_directory, self.backend),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Tool {call.name} timed out after {timeout}s")
            self.backend.cancel_running_command()
            return fail(f"Tool timed out after {timeout}s", ErrorCode.TIMEOUT)

    async def _observe_changes(self, calls: List[ParsedToolCall]) -> List[str]:
        """Syntax-check files written by this turn's successful calls."""
        paths: List[str] = []
        for call in calls:
            if call.name not in OBSERVED_TOOLS or self.tool_calls[call.id].status is not ToolCallStatus.SUCCESS:
                continue
            path = call.arguments.get("path")
            if isinstance(path, str) and path and not path.endswith("/") and path not in paths:
                paths.append(path)

        problems = []
        for path in paths:
            check = ParsedToolCall(id=f"observe_{path}", name="get_lint_errors", arguments={"path": path})
            result = await self._run_tool(check)
            if result.success and _LINT_PROBLEM_RE.search(result.result or ""):
                problems.append(f"File: {path}\n{result.result.strip()}")
        return problems

    def _append_result(self, call: ParsedToolCall, content: str) -> None:
        self.messages.append({"role": "tool", "tool_call_id": call.id, "name": call.name, "content": content})

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def _task_prompt(self, plan: TaskPlan, task: OrchestratorTask) -> str:
        prompt = task.description or task.title
        finished = [plan.get_task(dep) for dep in task.dependencies]
        context = [f"- {t.title}: {(t.output or '')[:MAX_DEPENDENCY_OUTPUT_CHARS]}" for t in finished if t and t.output]
        if context:
            prompt += "\n\nResults of prerequisite tasks:\n" + "\n".join(context)
        return prompt

    async def run_plan(
        self,
        plan: TaskPlan,
        system_prompt: str = "",
        model: Optional[str] = None,
        signal: Optional[AbortSignal] = None,
    ) -> List[TaskExecutionResult]:
        """Execute a task plan, one isolated sub-conversation per task."""
        scheduler = self.scheduler or ExecutionScheduler()
        if signal is not None and signal.aborted:
            return []

        async def execute_task(task: OrchestratorTask, task_signal: AbortSignal) -> str:
            # Parallel tasks each get their own process slot unless a backend was injected
            sub = AgentLoop(
                self.adapter,
                working_directory=self.working_directory,
                backend=None if self._owns_backend else self.backend,
                config=self.config,
                context_manager=ContextManager(
                    self.context_manager.config,
                    session_id=f"{plan.id}:{task.id}",
                    working_directory=self.working_directory,
                ),
                approval_handler=self.approval_handler,
                on_event=self.on_event,
                tools=self.tool_names,
                summarizer=self.summarizer,
            )
            logger.info(f"Running task {task.id}: {task.title}")
            result = await sub.run(self._task_prompt(plan, task), system_prompt, model or task.model,
                                   signal=task_signal)
            if result.reason == TerminationReason.ABORTED:
                raise AbortedError(task_signal.reason or ABORTED_MESSAGE)
            if result.reason == TerminationReason.ERROR:
                raise result.error or AppError("Task failed", ErrorCode.UNKNOWN)
            if result.reason == TerminationReason.MAX_ITERATIONS:
                raise AppError(MAX_ITERATIONS_MESSAGE, ErrorCode.UNKNOWN)
            return result.content

        if signal is not None:
            signal.add_listener(scheduler.pause)
        try:
            return await scheduler.run(plan, execute_task)
        finally:
            if signal is not None:
                signal.remove_listener(scheduler.pause)
