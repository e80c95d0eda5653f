"""State models for stack and task tracking."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    """Lifecycle of one engine run."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    FINISHED = "finished"
    CANCELLED = "cancelled"


class TaskStatus(str, Enum):
    """Task execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.BLOCKED)


# Allowed status transitions within a single run.
TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.BLOCKED}),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.BLOCKED}
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.BLOCKED: frozenset(),
}


class TaskState(BaseModel):
    """Persistent state of a task."""

    task_id: str
    status: TaskStatus = TaskStatus.PENDING
    error_message: str = ""
    start_time: datetime | None = None
    end_time: datetime | None = None
    inputs: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    values: dict[str, Any] = Field(default_factory=dict)


class ExecutionSummary(BaseModel):
    """Read-only snapshot of a stack execution."""

    workflow_name: str
    execution_id: str
    start_time: datetime
    end_time: datetime | None = None
    total_tasks: int = 0
    completed_count: int = 0
    failed_count: int = 0
    blocked_count: int = 0
    pending_count: int = 0
    task_states: dict[str, TaskState] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.completed_count == self.total_tasks
