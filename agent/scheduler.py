"""
Dependency-aware task scheduler.

Readiness is recomputed on every poll: a pending task is ready when all of its
dependencies completed, blocked when any dependency failed or was skipped,
and waiting otherwise. Blocked tasks are skipped lazily, so a chain of
dependents is skipped one level per poll.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional, Set

from agent.plan import (
    DependencyStatus, ExecutionMode, ExecutionStats, OrchestratorTask, PlanStatus,
    TaskExecutionResult, TaskPlan, TaskStatus,
)
from cancellation import AbortController, AbortedError, AbortSignal
from config import SchedulerConfig, scheduler_config

logger = logging.getLogger(__name__)

SKIP_REASON = "Dependency failed or skipped"

TaskRunner = Callable[[OrchestratorTask, AbortSignal], Awaitable[str]]


class ExecutionScheduler:
    def __init__(self, config: Optional[SchedulerConfig] = None):
        self.config = config or scheduler_config
        self._running: Set[str] = set()
        self._controller: Optional[AbortController] = None
        self._paused = False
        self._started_at: Optional[float] = None

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start(self, plan: Optional[TaskPlan] = None) -> None:
        self._controller = AbortController()
        self._running.clear()
        self._paused = False
        self._started_at = time.time()
        if plan is not None:
            plan.status = PlanStatus.EXECUTING
            plan.touch()
        logger.info(f"Scheduler started{f' for plan {plan.name}' if plan else ''}")

    def stop(self) -> None:
        if self._controller is not None:
            self._controller.abort("Stopped")
            self._controller = None
        self._running.clear()
        logger.info("Scheduler stopped")

    def pause(self) -> None:
        if self._controller is not None:
            self._controller.abort("Paused")
        self._paused = True
        logger.info("Scheduler paused")

    def resume(self) -> None:
        # Operations holding the old signal stay cancelled
        self._controller = AbortController()
        self._paused = False
        logger.info("Scheduler resumed")

    @property
    def signal(self) -> Optional[AbortSignal]:
        return self._controller.signal if self._controller else None

    @property
    def is_aborted(self) -> bool:
        return self._controller is None or self._controller.signal.aborted

    @property
    def is_running(self) -> bool:
        return not self.is_aborted

    @property
    def is_paused(self) -> bool:
        return self._paused

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def check_dependencies(self, plan: TaskPlan, task: OrchestratorTask) -> DependencyStatus:
        all_completed = True
        for dep_id in task.dependencies:
            dep = plan.get_task(dep_id)
            if dep is None:
                logger.warning(f"Dependency not found: {dep_id} (task {task.id})")
                continue
            if dep.status in (TaskStatus.FAILED, TaskStatus.SKIPPED):
                return DependencyStatus.BLOCKED
            if dep.status != TaskStatus.COMPLETED:
                all_completed = False
        return DependencyStatus.READY if all_completed else DependencyStatus.WAITING

    def get_executable_tasks(self, plan: TaskPlan) -> List[OrchestratorTask]:
        executable = []
        for task in plan.tasks:
            if task.status != TaskStatus.PENDING or task.id in self._running:
                continue
            status = self.check_dependencies(plan, task)
            if status is DependencyStatus.READY:
                executable.append(task)
            elif status is DependencyStatus.BLOCKED and self.config.auto_skip_on_dependency_failure:
                self._mark_task_skipped(plan, task, SKIP_REASON)
        return executable

    def get_parallel_batch(self, plan: TaskPlan) -> List[OrchestratorTask]:
        return self.get_executable_tasks(plan)[:max(1, self.config.max_concurrency)]

    def get_next_task(self, plan: TaskPlan) -> Optional[OrchestratorTask]:
        executable = self.get_executable_tasks(plan)
        return executable[0] if executable else None

    # ------------------------------------------------------------------
    # Task lifecycle
    # ------------------------------------------------------------------

    def _mark_task_skipped(self, plan: TaskPlan, task: OrchestratorTask, reason: str) -> None:
        task.status = TaskStatus.SKIPPED
        task.error = reason
        plan.touch()
        logger.info(f"Task skipped: {task.id} - {reason}")

    def mark_task_running(self, task: OrchestratorTask) -> None:
        task.status = TaskStatus.RUNNING
        task.started_at = time.time()
        self._running.add(task.id)

    def mark_task_completed(self, task: OrchestratorTask, output: str) -> TaskExecutionResult:
        now = time.time()
        duration = now - (task.started_at or now)
        task.status = TaskStatus.COMPLETED
        task.output = output
        task.completed_at = now
        self._running.discard(task.id)
        return TaskExecutionResult(task_id=task.id, success=True, output=output, duration=duration)

    def mark_task_failed(self, task: OrchestratorTask, error: str) -> TaskExecutionResult:
        now = time.time()
        duration = now - (task.started_at or now)
        task.status = TaskStatus.FAILED
        task.error = error
        task.completed_at = now
        self._running.discard(task.id)
        return TaskExecutionResult(task_id=task.id, success=False, output="", error=error, duration=duration)

    def _requeue(self, task: OrchestratorTask) -> None:
        task.status = TaskStatus.PENDING
        task.started_at = None
        self._running.discard(task.id)

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def is_complete(self, plan: TaskPlan) -> bool:
        return all(t.status.is_terminal for t in plan.tasks)

    def has_running_tasks(self) -> bool:
        return bool(self._running)

    def calculate_stats(self, plan: TaskPlan, started_at: Optional[float] = None) -> ExecutionStats:
        started = started_at or self._started_at or plan.created_at
        now = time.time()

        def count(status: TaskStatus) -> int:
            return sum(1 for t in plan.tasks if t.status == status)

        return ExecutionStats(
            total_tasks=len(plan.tasks),
            completed_tasks=count(TaskStatus.COMPLETED),
            failed_tasks=count(TaskStatus.FAILED),
            skipped_tasks=count(TaskStatus.SKIPPED),
            running_tasks=count(TaskStatus.RUNNING),
            pending_tasks=count(TaskStatus.PENDING),
            total_duration=now - started,
            started_at=started,
            completed_at=now if self.is_complete(plan) else None,
        )

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def _execute(self, task: OrchestratorTask, execute_task: TaskRunner,
                       signal: AbortSignal) -> Optional[TaskExecutionResult]:
        """Run one task with timeout and retries. None means it was interrupted and requeued."""
        while True:
            try:
                work = asyncio.wait_for(execute_task(task, signal), timeout=self.config.task_timeout)
                output = await signal.race(work)
                return self.mark_task_completed(task, output or "")
            except AbortedError:
                self._requeue(task)
                logger.info(f"Task interrupted: {task.id}")
                return None
            except asyncio.TimeoutError:
                error = f"Task timed out after {self.config.task_timeout}s"
            except Exception as e:
                error = str(e) or type(e).__name__

            if signal.aborted:
                self._requeue(task)
                return None
            if task.retry_count < self.config.max_retries:
                task.retry_count += 1
                logger.warning(f"Task {task.id} failed ({error}), retry {task.retry_count}/{self.config.max_retries}")
                continue
            logger.error(f"Task {task.id} failed: {error}")
            return self.mark_task_failed(task, error)

    async def run(
        self,
        plan: TaskPlan,
        execute_task: TaskRunner,
        on_result: Optional[Callable[[TaskExecutionResult], None]] = None,
    ) -> List[TaskExecutionResult]:
        """
        Execute a plan to completion, pause or deadlock.
        Results are returned in completion order.
        """
        self.start(plan)
        signal = self._controller.signal
        results: List[TaskExecutionResult] = []

        while not signal.aborted and not self.is_complete(plan):
            terminal_before = sum(1 for t in plan.tasks if t.status.is_terminal)
            if plan.execution_mode == ExecutionMode.SEQUENTIAL:
                nxt = self.get_next_task(plan)
                batch = [nxt] if nxt else []
            else:
                batch = self.get_parallel_batch(plan)

            if not batch:
                terminal_after = sum(1 for t in plan.tasks if t.status.is_terminal)
                if terminal_after > terminal_before:
                    continue
                logger.warning(f"Plan {plan.name} cannot make progress")
                break

            for task in batch:
                self.mark_task_running(task)
            for fut in asyncio.as_completed([self._execute(t, execute_task, signal) for t in batch]):
                result = await fut
                if result is None:
                    continue
                results.append(result)
                plan.touch()
                if on_result is not None:
                    on_result(result)

        if signal.aborted:
            plan.status = PlanStatus.PAUSED
        elif self.is_complete(plan) and not any(t.status == TaskStatus.FAILED for t in plan.tasks):
            plan.status = PlanStatus.COMPLETED
        else:
            plan.status = PlanStatus.FAILED
        plan.touch()

        stats = self.calculate_stats(plan)
        logger.info(
            f"Plan {plan.name} finished as {plan.status.value}: "
            f"{stats.completed_tasks} completed, {stats.failed_tasks} failed, {stats.skipped_tasks} skipped"
        )
        return results
