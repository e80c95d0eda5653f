"""Models package."""

from models.graph import ExecutionGraph, GraphNode
from models.state import (
    TASK_TRANSITIONS,
    ExecutionSummary,
    RunStatus,
    TaskState,
    TaskStatus,
)
from models.workflow import TaskSpec, WorkflowSpec

__all__ = [
    "ExecutionGraph",
    "GraphNode",
    "TASK_TRANSITIONS",
    "ExecutionSummary",
    "RunStatus",
    "TaskState",
    "TaskStatus",
    "TaskSpec",
    "WorkflowSpec",
]
