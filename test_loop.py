"""
Tests for the agent loop controller, driven by a scripted model adapter.
"""

import asyncio

import pytest

from adapters import DoneEvent, ErrorEvent, ParsedToolCall, TextEvent, ToolCallDeltaEvent, ToolCallEvent
from agent.compression import ContextManager
from agent.events import LoopState, TerminationReason, ToolCallStatus
from agent.loop import OBSERVATION_PREFIX, REJECTED_MESSAGE, AgentLoop, call_signature
from agent.plan import OrchestratorTask, PlanStatus, TaskPlan, TaskStatus
from agent.scheduler import ExecutionScheduler
from agent.summary import StructuredSummary
from backend import LocalBackend
from cancellation import AbortController
from config import AgentConfig, ContextConfig, SchedulerConfig
from errors import AppError, ErrorCode, LLMError


class ScriptedAdapter:
    """Replays canned turns, or asks a responder function for each turn."""

    def __init__(self, turns=None, responder=None):
        self.turns = list(turns or [])
        self.responder = responder
        self.requests = []

    def has_credentials(self) -> bool:
        return True

    async def send(self, request):
        self.requests.append([dict(m) for m in request.messages])
        events = self.responder(request) if self.responder else self.turns.pop(0)
        for event in events:
            yield event


def _call(name, args, call_id="call_1"):
    return ParsedToolCall(id=call_id, name=name, arguments=args)


def _reply(text="", calls=()):
    events = [TextEvent(content=text)] if text else []
    events.extend(ToolCallEvent(call=c) for c in calls)
    events.append(DoneEvent(content=text, tool_calls=list(calls)))
    return events


def _config(**overrides) -> AgentConfig:
    values = dict(
        max_tool_loops=10,
        max_tool_result_chars=10000,
        tool_timeout=5.0,
        max_repeated_tool_calls=3,
        auto_approve_edits=False,
        auto_approve_terminal=False,
        auto_approve_dangerous=False,
        stream_flush_interval_ms=16,
        auto_fix=False,
    )
    values.update(overrides)
    return AgentConfig(**values)


def _loop(adapter, tmp_path, events=None, **kwargs) -> AgentLoop:
    async def on_event(event):
        if events is not None:
            events.append(event)

    kwargs.setdefault("config", _config())
    return AgentLoop(adapter, working_directory=str(tmp_path), on_event=on_event, **kwargs)


@pytest.mark.asyncio
async def test_plain_answer_completes(tmp_path):
    events = []
    adapter = ScriptedAdapter([_reply("Hi there")])
    loop = _loop(adapter, tmp_path, events)

    result = await loop.run("hello", system_prompt="Be brief.", model="m")

    assert result.state is LoopState.DONE
    assert result.reason is TerminationReason.COMPLETED
    assert result.content == "Hi there"
    assert result.iterations == 1
    assert [m["role"] for m in result.messages] == ["system", "user", "assistant"]
    assert adapter.requests[0][0] == {"role": "system", "content": "Be brief."}
    assert "".join(e.content for e in events if e.type == "text") == "Hi there"
    assert events[-1].type == "done"
    assert events[-1].data["reason"] == "completed"
    assert not loop.is_running


@pytest.mark.asyncio
async def test_tool_results_feed_the_next_turn(tmp_path):
    (tmp_path / "notes.txt").write_text("remember the milk")
    events = []
    adapter = ScriptedAdapter([
        _reply("Let me read it.", [_call("read_file", {"path": "notes.txt"})]),
        _reply("It says to remember the milk."),
    ])
    loop = _loop(adapter, tmp_path, events)

    result = await loop.run("what is in notes.txt?", model="m")

    assert result.reason is TerminationReason.COMPLETED
    assert result.iterations == 2
    assistant, tool = result.messages[1], result.messages[2]
    assert assistant["tool_calls"][0]["function"]["name"] == "read_file"
    assert assistant["tool_calls"][0]["function"]["arguments"] == '{"path": "notes.txt"}'
    assert tool["role"] == "tool"
    assert tool["tool_call_id"] == "call_1"
    assert "remember the milk" in tool["content"]
    assert adapter.requests[1][-1] == tool
    assert loop.tool_calls["call_1"].status is ToolCallStatus.SUCCESS

    types = [e.type for e in events]
    assert "tool_call" in types
    assert "tool_result" in types
    assert "approval_required" not in types


@pytest.mark.asyncio
async def test_rejected_call_stops_the_loop(tmp_path):
    adapter = ScriptedAdapter([
        _reply("", [_call("write_file", {"path": "out.txt", "content": "x"}, "w1"),
                    _call("read_file", {"path": "out.txt"}, "r1")]),
    ])
    asked = []

    async def deny(call):
        asked.append(call.name)
        return False

    loop = _loop(adapter, tmp_path, approval_handler=deny)
    result = await loop.run("write a file", model="m")

    assert result.reason is TerminationReason.REJECTED
    assert asked == ["write_file"]
    assert not (tmp_path / "out.txt").exists()
    results = {m["tool_call_id"]: m["content"] for m in result.messages if m["role"] == "tool"}
    assert results["w1"] == REJECTED_MESSAGE
    assert results["r1"].startswith("Error:")
    assert loop.tool_calls["w1"].status is ToolCallStatus.REJECTED
    assert loop.tool_calls["r1"].status is ToolCallStatus.ERROR


@pytest.mark.asyncio
async def test_approved_call_runs(tmp_path):
    events = []
    adapter = ScriptedAdapter([
        _reply("", [_call("write_file", {"path": "out.txt", "content": "data"})]),
        _reply("Done."),
    ])

    async def allow(call):
        return True

    loop = _loop(adapter, tmp_path, events, approval_handler=allow)
    result = await loop.run("write a file", model="m")

    assert result.reason is TerminationReason.COMPLETED
    assert (tmp_path / "out.txt").read_text() == "data"
    states = [e.content for e in events if e.type == "state"]
    assert "awaiting_approval" in states
    assert "executing" in states


@pytest.mark.asyncio
async def test_auto_approved_edits_skip_the_handler(tmp_path):
    adapter = ScriptedAdapter([
        _reply("", [_call("write_file", {"path": "auto.txt", "content": "ok"})]),
        _reply("Done."),
    ])
    loop = _loop(adapter, tmp_path, config=_config(auto_approve_edits=True))
    result = await loop.run("write", model="m")
    assert result.reason is TerminationReason.COMPLETED
    assert (tmp_path / "auto.txt").read_text() == "ok"


@pytest.mark.asyncio
async def test_max_iterations(tmp_path):
    (tmp_path / "f.txt").write_text("a\nb\nc\nd\n")
    counter = {"n": 0}

    def responder(request):
        counter["n"] += 1
        n = counter["n"]
        return _reply("", [_call("read_file", {"path": "f.txt", "start_line": n}, f"c{n}")])

    events = []
    loop = _loop(ScriptedAdapter(responder=responder), tmp_path, events, config=_config(max_tool_loops=3))
    result = await loop.run("loop forever", model="m")

    assert result.reason is TerminationReason.MAX_ITERATIONS
    assert result.iterations == 3
    assert any(e.type == "max_iterations" for e in events)


@pytest.mark.asyncio
async def test_repeated_identical_calls_stop(tmp_path):
    (tmp_path / "f.txt").write_text("same")

    def responder(request):
        return _reply("", [_call("read_file", {"path": "f.txt"}, f"c{len(adapter.requests)}")])

    adapter = ScriptedAdapter(responder=responder)
    loop = _loop(adapter, tmp_path, config=_config(max_repeated_tool_calls=2))
    result = await loop.run("read again and again", model="m")

    assert result.reason is TerminationReason.REPEATED_CALLS
    assert result.iterations == 3
    assert len(adapter.requests) == 3


def test_call_signature_ignores_order():
    a = _call("read_file", {"path": "a", "start_line": 1}, "x")
    b = _call("list_directory", {"path": "."}, "y")
    assert call_signature([a, b]) == call_signature([b, a])
    assert call_signature([a]) != call_signature([b])


@pytest.mark.asyncio
async def test_model_error_ends_in_error_state(tmp_path):
    error = LLMError("Authentication failed (401)", ErrorCode.API_KEY_INVALID, False, 401)
    loop = _loop(ScriptedAdapter([[ErrorEvent(error=error)]]), tmp_path)
    result = await loop.run("hi", model="m")
    assert result.state is LoopState.ERROR
    assert result.reason is TerminationReason.ERROR
    assert result.error.code is ErrorCode.API_KEY_INVALID


@pytest.mark.asyncio
async def test_history_persists_between_runs(tmp_path):
    adapter = ScriptedAdapter([_reply("first answer"), _reply("second answer")])
    loop = _loop(adapter, tmp_path)
    await loop.run("first question", system_prompt="sys", model="m")
    result = await loop.run("second question", system_prompt="sys", model="m")

    contents = [m["content"] for m in adapter.requests[1]]
    assert contents == ["sys", "first question", "first answer", "second question"]
    assert result.content == "second answer"
    assert sum(1 for m in loop.messages if m["role"] == "system") == 1

    loop.reset()
    assert loop.messages == []
    assert loop.state is LoopState.IDLE


@pytest.mark.asyncio
async def test_concurrent_run_is_rejected(tmp_path):
    gate = asyncio.Event()

    class GatedAdapter(ScriptedAdapter):
        async def send(self, request):
            await gate.wait()
            yield DoneEvent(content="ok")

    loop = _loop(GatedAdapter(), tmp_path)
    first = asyncio.ensure_future(loop.run("one", model="m"))
    await asyncio.sleep(0)
    assert loop.is_running

    with pytest.raises(AppError):
        await loop.run("two", model="m")

    gate.set()
    result = await first
    assert result.content == "ok"


@pytest.mark.asyncio
async def test_abort_while_awaiting_approval(tmp_path):
    adapter = ScriptedAdapter([_reply("", [_call("run_command", {"command": "echo hi"}, "cmd")])])

    async def never(call):
        await asyncio.Event().wait()
        return True

    loop = None

    async def on_event(event):
        if event.type == "approval_required":
            loop.abort()

    loop = AgentLoop(adapter, working_directory=str(tmp_path), config=_config(),
                     approval_handler=never, on_event=on_event)
    result = await loop.run("run something", model="m")

    assert result.state is LoopState.ABORTED
    assert result.reason is TerminationReason.ABORTED
    call = loop.tool_calls["cmd"]
    assert call.status is ToolCallStatus.ERROR
    assert call.error == "Aborted by user"
    assert result.messages[-1] == {
        "role": "tool", "tool_call_id": "cmd", "name": "run_command", "content": "Error: Aborted by user",
    }


@pytest.mark.asyncio
async def test_tool_call_deltas_are_forwarded(tmp_path):
    events = []
    call = _call("list_directory", {"path": "."})
    turn = [
        ToolCallDeltaEvent(index=0, id="call_1", name="list_directory", args_fragment='{"pa',
                           partial_arguments={}),
        ToolCallDeltaEvent(index=0, args_fragment='th": "."}', name="list_directory",
                           partial_arguments={"path": "."}),
        ToolCallEvent(call=call),
        DoneEvent(content="", tool_calls=[call]),
    ]
    loop = _loop(ScriptedAdapter([turn, _reply("Listed.")]), tmp_path, events)
    await loop.run("list", model="m")

    deltas = [e for e in events if e.type == "tool_call_delta"]
    assert len(deltas) == 2
    assert deltas[-1].data["partial_arguments"] == {"path": "."}


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

def _plan():
    return TaskPlan(name="build", tasks=[
        OrchestratorTask(id="A", title="setup", description="Create the project"),
        OrchestratorTask(id="B", title="code", description="Write the code", dependencies=["A"]),
    ])


def _scheduler():
    return ExecutionScheduler(SchedulerConfig(max_retries=0, task_timeout=5.0,
                                              auto_skip_on_dependency_failure=True, max_concurrency=1))


@pytest.mark.asyncio
async def test_run_plan_runs_each_task_in_its_own_conversation(tmp_path):
    prompts = []

    def responder(request):
        prompt = request.messages[-1]["content"]
        prompts.append(prompt)
        assert sum(1 for m in request.messages if m["role"] == "user") == 1
        return _reply(f"finished: {prompt.splitlines()[0]}")

    loop = _loop(ScriptedAdapter(responder=responder), tmp_path, scheduler=_scheduler())
    plan = _plan()
    results = await loop.run_plan(plan, system_prompt="sys", model="m")

    assert [(r.task_id, r.success) for r in results] == [("A", True), ("B", True)]
    assert plan.get_task("A").output == "finished: Create the project"
    assert "Results of prerequisite tasks" in prompts[1]
    assert "finished: Create the project" in prompts[1]
    assert plan.status is PlanStatus.COMPLETED
    assert loop.messages == []


@pytest.mark.asyncio
async def test_run_plan_fails_task_on_model_error(tmp_path):
    error = LLMError("Provider error (500)", ErrorCode.API_CALL_FAILED, True, 500)

    def responder(request):
        return [ErrorEvent(error=error)]

    loop = _loop(ScriptedAdapter(responder=responder), tmp_path, scheduler=_scheduler())
    plan = _plan()
    results = await loop.run_plan(plan, model="m")

    assert [(r.task_id, r.success) for r in results] == [("A", False)]
    assert "Provider error" in results[0].error
    assert plan.get_task("B").status is TaskStatus.SKIPPED
    assert plan.status is PlanStatus.FAILED


# ---------------------------------------------------------------------------
# Written-file checks
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_auto_fix_reports_syntax_errors_in_written_files(tmp_path):
    events = []
    adapter = ScriptedAdapter([
        _reply("", [_call("write_file", {"path": "bad.py", "content": "def broken(:\n    pass\n"})]),
        _reply("Fixed it."),
    ])
    loop = _loop(adapter, tmp_path, events, config=_config(auto_approve_edits=True, auto_fix=True))

    result = await loop.run("write a module", model="m")

    assert result.reason is TerminationReason.COMPLETED
    observation = adapter.requests[1][-1]
    assert observation["role"] == "user"
    assert observation["content"].startswith(OBSERVATION_PREFIX)
    assert "File: bad.py" in observation["content"]
    assert adapter.requests[1][-2]["role"] == "tool"
    assert [e.data["count"] for e in events if e.type == "observation"] == [1]


@pytest.mark.asyncio
async def test_auto_fix_is_quiet_for_clean_files(tmp_path):
    events = []
    adapter = ScriptedAdapter([
        _reply("", [_call("write_file", {"path": "good.py", "content": "x = 1\n"})]),
        _reply("Done."),
    ])
    loop = _loop(adapter, tmp_path, events, config=_config(auto_approve_edits=True, auto_fix=True))
    await loop.run("write a module", model="m")

    assert adapter.requests[1][-1]["role"] == "tool"
    assert not any(e.type == "observation" for e in events)


@pytest.mark.asyncio
async def test_written_files_are_not_checked_when_auto_fix_is_off(tmp_path):
    adapter = ScriptedAdapter([
        _reply("", [_call("write_file", {"path": "bad.py", "content": "def broken(:\n"})]),
        _reply("Done."),
    ])
    loop = _loop(adapter, tmp_path, config=_config(auto_approve_edits=True))
    await loop.run("write a module", model="m")
    assert adapter.requests[1][-1]["role"] == "tool"


# ---------------------------------------------------------------------------
# Summaries, signals and the backend
# ---------------------------------------------------------------------------

class RecordingSummarizer:
    def __init__(self):
        self.turns = []

    async def summarize(self, messages, groups, turn_range):
        self.turns.append([g.turn_index for g in groups])
        return StructuredSummary(objective="Finish the refactor", pending_steps=["Run the test suite"],
                                 turn_range=turn_range)


@pytest.mark.asyncio
async def test_refined_summary_reaches_the_model(tmp_path):
    context = ContextManager(ContextConfig(
        max_context_chars=1000,
        keep_recent_turns=5,
        deep_compression_turns=2,
        max_important_old_turns=3,
        max_tool_result_chars=10000,
        max_assistant_chars=4000,
        enable_llm_summary=True,
        auto_handoff=False,
    ))
    summarizer = RecordingSummarizer()
    adapter = ScriptedAdapter([_reply("Done.")])
    loop = _loop(adapter, tmp_path, context_manager=context, summarizer=summarizer)
    for i in range(3):
        loop.messages.append({"role": "user", "content": f"Question {i}: " + "q" * 480})
        loop.messages.append({"role": "assistant", "content": f"Answer {i}: " + "a" * 480})

    result = await loop.run("What next?", system_prompt="Be brief.", model="m")

    assert result.reason is TerminationReason.COMPLETED
    assert summarizer.turns == [[0, 1]]
    system = adapter.requests[0][0]
    assert system["role"] == "system"
    assert system["content"].startswith("Be brief.")
    assert "Finish the refactor" in system["content"]
    assert "Run the test suite" in system["content"]


@pytest.mark.asyncio
async def test_external_signal_listeners_are_released(tmp_path):
    adapter = ScriptedAdapter([_reply("one"), _reply("two"), _reply("three")])
    loop = _loop(adapter, tmp_path)
    controller = AbortController()

    for prompt in ("a", "b", "c"):
        await loop.run(prompt, model="m", signal=controller.signal)
    assert controller.signal.listener_count == 0
    controller.abort("late")
    assert loop.state is LoopState.DONE


@pytest.mark.asyncio
async def test_plan_signal_listener_is_released(tmp_path):
    loop = _loop(ScriptedAdapter(responder=lambda request: _reply("ok")), tmp_path, scheduler=_scheduler())
    controller = AbortController()
    await loop.run_plan(_plan(), model="m", signal=controller.signal)
    assert controller.signal.listener_count == 0


@pytest.mark.asyncio
async def test_loop_owns_one_backend(tmp_path):
    loop = _loop(ScriptedAdapter([]), tmp_path)
    assert isinstance(loop.backend, LocalBackend)
    assert loop.backend.working_directory == str(tmp_path)

    injected = LocalBackend(str(tmp_path))
    assert _loop(ScriptedAdapter([]), tmp_path, backend=injected).backend is injected


@pytest.mark.asyncio
async def test_tool_timeout_kills_the_running_command(tmp_path):
    adapter = ScriptedAdapter([
        _reply("", [_call("run_command", {"command": "sleep 2 && touch late.txt", "timeout": 30})]),
        _reply("Gave up."),
    ])
    loop = _loop(adapter, tmp_path, config=_config(auto_approve_terminal=True, tool_timeout=0.5))

    result = await loop.run("run it", model="m")

    assert result.reason is TerminationReason.COMPLETED
    assert loop.tool_calls["call_1"].status is ToolCallStatus.ERROR
    assert "timed out" in adapter.requests[1][-1]["content"]
    await asyncio.sleep(2.5)
    assert not (tmp_path / "late.txt").exists()
