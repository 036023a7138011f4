"""
Tests for task plans and the dependency-aware execution scheduler.
"""

import asyncio

import pytest

from agent.plan import (
    DependencyStatus,
    ExecutionMode,
    OrchestratorTask,
    PlanStatus,
    TaskPlan,
    TaskStatus,
)
from agent.scheduler import SKIP_REASON, ExecutionScheduler
from config import SchedulerConfig


def _config(**overrides) -> SchedulerConfig:
    values = dict(max_retries=0, task_timeout=5.0, auto_skip_on_dependency_failure=True, max_concurrency=3)
    values.update(overrides)
    return SchedulerConfig(**values)


def _chain_plan(mode=ExecutionMode.SEQUENTIAL) -> TaskPlan:
    return TaskPlan(
        name="chain",
        execution_mode=mode,
        tasks=[
            OrchestratorTask(id="A", title="first"),
            OrchestratorTask(id="B", title="second", dependencies=["A"]),
            OrchestratorTask(id="C", title="third", dependencies=["B"]),
        ],
    )


def test_tasks_without_dependencies_are_ready():
    plan = TaskPlan(name="p", tasks=[OrchestratorTask(id="x", title="x"), OrchestratorTask(id="y", title="y")])
    scheduler = ExecutionScheduler(_config())
    assert [t.id for t in scheduler.get_executable_tasks(plan)] == ["x", "y"]
    assert scheduler.check_dependencies(plan, plan.tasks[0]) is DependencyStatus.READY


def test_dependency_states():
    plan = _chain_plan()
    scheduler = ExecutionScheduler(_config())
    b = plan.get_task("B")
    assert scheduler.check_dependencies(plan, b) is DependencyStatus.WAITING
    plan.get_task("A").status = TaskStatus.COMPLETED
    assert scheduler.check_dependencies(plan, b) is DependencyStatus.READY
    plan.get_task("A").status = TaskStatus.FAILED
    assert scheduler.check_dependencies(plan, b) is DependencyStatus.BLOCKED


def test_missing_dependency_is_ignored():
    plan = TaskPlan(name="p", tasks=[OrchestratorTask(id="x", title="x", dependencies=["ghost"])])
    scheduler = ExecutionScheduler(_config())
    assert scheduler.check_dependencies(plan, plan.tasks[0]) is DependencyStatus.READY


def test_failure_skips_dependents_lazily():
    plan = _chain_plan()
    scheduler = ExecutionScheduler(_config())
    a = scheduler.get_next_task(plan)
    assert a.id == "A"
    scheduler.mark_task_running(a)
    scheduler.mark_task_failed(a, "boom")

    assert plan.get_task("B").status == TaskStatus.PENDING
    assert scheduler.get_next_task(plan) is None
    assert plan.get_task("B").status == TaskStatus.SKIPPED
    assert plan.get_task("B").error == SKIP_REASON
    assert plan.get_task("C").status == TaskStatus.SKIPPED

    stats = scheduler.calculate_stats(plan)
    assert (stats.completed_tasks, stats.failed_tasks, stats.skipped_tasks) == (0, 1, 2)
    assert scheduler.is_complete(plan)


def test_blocked_tasks_stay_pending_without_auto_skip():
    plan = _chain_plan()
    scheduler = ExecutionScheduler(_config(auto_skip_on_dependency_failure=False))
    plan.get_task("A").status = TaskStatus.FAILED
    assert scheduler.get_executable_tasks(plan) == []
    assert plan.get_task("B").status == TaskStatus.PENDING


def test_parallel_batch_respects_concurrency():
    plan = TaskPlan(name="p", tasks=[OrchestratorTask(id=str(i), title=str(i)) for i in range(5)])
    scheduler = ExecutionScheduler(_config(max_concurrency=2))
    assert [t.id for t in scheduler.get_parallel_batch(plan)] == ["0", "1"]


def test_running_tasks_are_not_offered_again():
    plan = TaskPlan(name="p", tasks=[OrchestratorTask(id="x", title="x"), OrchestratorTask(id="y", title="y")])
    scheduler = ExecutionScheduler(_config())
    scheduler.mark_task_running(plan.tasks[0])
    assert [t.id for t in scheduler.get_executable_tasks(plan)] == ["y"]
    assert scheduler.has_running_tasks()


def test_plan_rejects_duplicate_ids():
    with pytest.raises(ValueError):
        TaskPlan(name="p", tasks=[OrchestratorTask(id="x", title="a"), OrchestratorTask(id="x", title="b")])
    plan = TaskPlan(name="p", tasks=[OrchestratorTask(id="x", title="a")])
    with pytest.raises(ValueError):
        plan.add_task(OrchestratorTask(id="x", title="b"))


def test_plan_from_dict():
    plan = TaskPlan.from_dict({
        "name": "build",
        "execution_mode": "parallel",
        "tasks": [
            {"id": 1, "title": "setup"},
            {"id": 2, "title": "code", "dependencies": [1]},
        ],
    })
    assert plan.execution_mode is ExecutionMode.PARALLEL
    assert plan.get_task("2").dependencies == ["1"]
    assert plan.index_of("2") == 1


@pytest.mark.asyncio
async def test_run_sequential_chain():
    plan = _chain_plan()
    order = []

    async def runner(task, signal):
        order.append(task.id)
        return f"done {task.id}"

    results = await ExecutionScheduler(_config()).run(plan, runner)
    assert order == ["A", "B", "C"]
    assert [r.task_id for r in results] == ["A", "B", "C"]
    assert all(r.success for r in results)
    assert plan.status is PlanStatus.COMPLETED
    assert plan.get_task("C").output == "done C"


@pytest.mark.asyncio
async def test_run_failure_marks_plan_failed():
    plan = _chain_plan()

    async def runner(task, signal):
        raise RuntimeError("compile error")

    scheduler = ExecutionScheduler(_config())
    results = await scheduler.run(plan, runner)
    assert [(r.task_id, r.success) for r in results] == [("A", False)]
    assert results[0].error == "compile error"
    assert plan.status is PlanStatus.FAILED
    stats = scheduler.calculate_stats(plan)
    assert (stats.completed_tasks, stats.failed_tasks, stats.skipped_tasks) == (0, 1, 2)


@pytest.mark.asyncio
async def test_run_parallel_batches_independent_tasks():
    plan = TaskPlan(
        name="fan-in",
        execution_mode=ExecutionMode.PARALLEL,
        tasks=[
            OrchestratorTask(id="A", title="a"),
            OrchestratorTask(id="B", title="b"),
            OrchestratorTask(id="C", title="c", dependencies=["A", "B"]),
        ],
    )
    active = []
    peak = []

    async def runner(task, signal):
        active.append(task.id)
        peak.append(len(active))
        await asyncio.sleep(0.01)
        active.remove(task.id)
        return task.id

    results = await ExecutionScheduler(_config()).run(plan, runner)
    assert max(peak) == 2
    assert results[-1].task_id == "C"
    assert plan.status is PlanStatus.COMPLETED


@pytest.mark.asyncio
async def test_run_retries_failed_task():
    plan = TaskPlan(name="p", tasks=[OrchestratorTask(id="x", title="flaky")])
    calls = []

    async def runner(task, signal):
        calls.append(task.id)
        if len(calls) == 1:
            raise RuntimeError("transient")
        return "ok"

    results = await ExecutionScheduler(_config(max_retries=1)).run(plan, runner)
    assert len(calls) == 2
    assert results[0].success
    assert plan.get_task("x").retry_count == 1


@pytest.mark.asyncio
async def test_run_times_out_task():
    plan = TaskPlan(name="p", tasks=[OrchestratorTask(id="x", title="slow")])

    async def runner(task, signal):
        await asyncio.sleep(1)
        return "late"

    results = await ExecutionScheduler(_config(task_timeout=0.05)).run(plan, runner)
    assert not results[0].success
    assert "timed out" in results[0].error


@pytest.mark.asyncio
async def test_pause_requeues_running_task():
    plan = TaskPlan(name="p", tasks=[OrchestratorTask(id="x", title="long")])
    scheduler = ExecutionScheduler(_config())
    started = asyncio.Event()

    async def runner(task, signal):
        started.set()
        await asyncio.sleep(10)
        return "never"

    run = asyncio.ensure_future(scheduler.run(plan, runner))
    await started.wait()
    scheduler.pause()
    results = await run

    assert results == []
    assert plan.status is PlanStatus.PAUSED
    assert plan.get_task("x").status == TaskStatus.PENDING
    assert scheduler.is_paused
    scheduler.resume()
    assert scheduler.is_running
