"""
Task plan data types for orchestrated multi-step execution.

A TaskPlan owns its tasks in declaration order. Dependencies are stored as
task ids and resolved through the plan's index, never as object references.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED)


class PlanStatus(str, Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class ExecutionMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class DependencyStatus(str, Enum):
    READY = "ready"
    WAITING = "waiting"
    BLOCKED = "blocked"


@dataclass
class OrchestratorTask:
    id: str
    title: str
    description: str = ""
    dependencies: List[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    retry_count: int = 0
    output: Optional[str] = None
    error: Optional[str] = None
    role: Optional[str] = None
    model: Optional[str] = None


@dataclass
class TaskPlan:
    name: str
    tasks: List[OrchestratorTask] = field(default_factory=list)
    execution_mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    status: PlanStatus = PlanStatus.DRAFT
    id: str = field(default_factory=lambda: f"plan_{uuid.uuid4().hex[:12]}")
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    _index: Dict[str, int] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self):
        self.reindex()

    def reindex(self) -> None:
        self._index = {task.id: i for i, task in enumerate(self.tasks)}
        if len(self._index) != len(self.tasks):
            raise ValueError(f"Duplicate task ids in plan {self.name}")

    def add_task(self, task: OrchestratorTask) -> None:
        if task.id in self._index:
            raise ValueError(f"Duplicate task id: {task.id}")
        self._index[task.id] = len(self.tasks)
        self.tasks.append(task)
        self.touch()

    def index_of(self, task_id: str) -> Optional[int]:
        return self._index.get(task_id)

    def get_task(self, task_id: str) -> Optional[OrchestratorTask]:
        idx = self._index.get(task_id)
        return self.tasks[idx] if idx is not None else None

    def touch(self) -> None:
        self.updated_at = time.time()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskPlan":
        """Build a plan from {name, execution_mode, tasks: [{id, title, description, dependencies}]}"""
        tasks = [
            OrchestratorTask(
                id=str(t["id"]),
                title=t.get("title", str(t["id"])),
                description=t.get("description", ""),
                dependencies=[str(d) for d in t.get("dependencies", [])],
                role=t.get("role"),
                model=t.get("model"),
            )
            for t in data.get("tasks", [])
        ]
        return cls(
            name=data.get("name", "plan"),
            tasks=tasks,
            execution_mode=ExecutionMode(data.get("execution_mode", "sequential")),
        )


@dataclass
class TaskExecutionResult:
    task_id: str
    success: bool
    output: str = ""
    error: Optional[str] = None
    duration: float = 0.0


@dataclass
class ExecutionStats:
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    skipped_tasks: int
    running_tasks: int
    pending_tasks: int
    total_duration: float
    started_at: float
    completed_at: Optional[float] = None
