"""Thread-safe execution state store backed by a key-value store."""

import copy
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Iterable

from models.state import TASK_TRANSITIONS, ExecutionSummary, TaskState, TaskStatus
from services.kv_store import KeyNotFoundError, KeyValueStore, KeyValueStoreError

logger = logging.getLogger(__name__)

INPUT_KEY = "input"
OUTPUT_KEY = "output"


class StateStoreError(Exception):
    """Raised when the state store is used incorrectly."""

    pass


class TaskNotFoundError(StateStoreError):
    """Raised when task is not found."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"no state found for task {task_id}")


class StateKeyNotFoundError(StateStoreError):
    """Raised when a key is not present in a task's state."""

    def __init__(self, task_id: str, key: str):
        self.task_id = task_id
        self.key = key
        super().__init__(f"key {key} not found in task {task_id} state")


class InvalidStatusTransitionError(StateStoreError):
    """Raised when a status change would violate the task lifecycle."""

    def __init__(self, task_id: str, current: TaskStatus, requested: TaskStatus):
        self.task_id = task_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"invalid status transition for task {task_id}: "
            f"{current.value} -> {requested.value}"
        )


def _ensure_serializable(task_id: str, key: str, value: Any) -> None:
    try:
        json.dumps(value)
    except (TypeError, ValueError) as e:
        raise StateStoreError(
            f"value for {task_id}/{key} is not JSON serializable: {e}"
        ) from e


class ExecutionStateStore:
    """Per-task status, inputs, outputs and timing for one execution.

    The in-memory task states are authoritative for the running process;
    every mutation is written through to the injected key-value store so a
    run can be inspected after the process is gone. All access goes through
    one re-entrant lock, so a reader never observes a half-applied update.
    """

    def __init__(self, kv_store: KeyValueStore, workflow_name: str, execution_id: str):
        if kv_store is None:
            raise ValueError("kv_store is required")
        if not workflow_name:
            raise ValueError("workflow_name is required")
        if not execution_id:
            raise ValueError("execution_id is required")

        self._kv = kv_store
        self._workflow_name = workflow_name
        self._execution_id = execution_id
        self._lock = threading.RLock()
        self._tasks: dict[str, TaskState] = {}
        self._initialized = False
        self._persist_errors = 0
        self._closed = False
        self._start_time = self._utc_now()
        self._end_time: datetime | None = None

    @property
    def execution_id(self) -> str:
        return self._execution_id

    @property
    def workflow_name(self) -> str:
        return self._workflow_name

    def _utc_now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _task_key(self, task_id: str) -> str:
        return f"task:{self._execution_id}:{task_id}"

    def _summary_key(self) -> str:
        return f"summary:{self._execution_id}"

    def _get_state(self, task_id: str) -> TaskState:
        if not task_id:
            raise ValueError("task_id is required")
        state = self._tasks.get(task_id)
        if state is None:
            raise TaskNotFoundError(task_id)
        return state

    def _save(self, key: str, document: dict[str, Any]) -> None:
        # in-memory state stays authoritative when the backend rejects a write
        try:
            self._kv.save(None, key, document)
        except KeyValueStoreError as e:
            self._persist_errors += 1
            logger.error(f"Failed to persist {key} for execution {self._execution_id}: {e}")

    def _persist_task(self, state: TaskState) -> None:
        self._save(self._task_key(state.task_id), state.model_dump(mode="json"))

    def _persist_summary(self) -> None:
        self._save(self._summary_key(), self._build_summary().model_dump(mode="json"))

    @property
    def persist_errors(self) -> int:
        """Number of writes the key-value store rejected."""
        return self._persist_errors

    def initialize_tasks(self, task_ids: Iterable[str]) -> None:
        """Create a pending state for every task. Allowed once per store."""
        ids = list(task_ids)
        with self._lock:
            if self._initialized:
                raise StateStoreError(
                    f"tasks already initialized for execution {self._execution_id}"
                )
            for task_id in ids:
                if not task_id:
                    raise ValueError("task_id is required")
                if task_id in self._tasks:
                    raise StateStoreError(f"duplicate task ID: {task_id}")
                self._tasks[task_id] = TaskState(task_id=task_id)

            self._initialized = True
            for state in self._tasks.values():
                self._persist_task(state)
            self._persist_summary()

        logger.debug(f"Initialized {len(ids)} tasks for execution {self._execution_id}")

    def get(self, task_id: str, key: str) -> Any:
        """Get a value from a task's state.

        ``input`` and ``output`` return the full maps; any other key is looked
        up among the free-form values, then among the task's outputs.
        """
        if not key:
            raise ValueError("key is required")

        with self._lock:
            state = self._get_state(task_id)
            if key == INPUT_KEY:
                return copy.deepcopy(state.inputs)
            if key == OUTPUT_KEY:
                return copy.deepcopy(state.outputs)
            if key in state.values:
                return copy.deepcopy(state.values[key])
            if key in state.outputs:
                return copy.deepcopy(state.outputs[key])
        raise StateKeyNotFoundError(task_id, key)

    def set(self, task_id: str, key: str, value: Any) -> None:
        """Store a value in a task's state."""
        if not key:
            raise ValueError("key is required")
        _ensure_serializable(task_id, key, value)

        with self._lock:
            state = self._get_state(task_id)
            value = copy.deepcopy(value)
            if key in (INPUT_KEY, OUTPUT_KEY):
                if not isinstance(value, dict):
                    raise StateStoreError(f"{key} for task {task_id} must be a mapping")
                update = {"inputs": value} if key == INPUT_KEY else {"outputs": value}
            else:
                update = {"values": {**state.values, key: value}}

            updated = state.model_copy(update=update)
            self._tasks[task_id] = updated
            self._persist_task(updated)

    def get_all(self, task_id: str) -> dict[str, Any]:
        """Dump every stored key of a task."""
        with self._lock:
            state = self._get_state(task_id)
            dump = state.model_dump(mode="json")

        result = {
            "id": dump["task_id"],
            "status": dump["status"],
            "error_message": dump["error_message"],
            "start_time": dump["start_time"],
            "end_time": dump["end_time"],
            INPUT_KEY: dump["inputs"],
            OUTPUT_KEY: dump["outputs"],
        }
        result.update(dump["values"])
        return result

    def get_status(self, task_id: str) -> TaskStatus:
        with self._lock:
            return self._get_state(task_id).status

    def update_status(self, task_id: str, status: TaskStatus) -> TaskState:
        """Move a task to a new status, stamping start and end times."""
        status = TaskStatus(status)
        with self._lock:
            state = self._get_state(task_id)
            if status not in TASK_TRANSITIONS[state.status]:
                raise InvalidStatusTransitionError(task_id, state.status, status)

            now = self._utc_now()
            update: dict[str, Any] = {"status": status}
            if status == TaskStatus.RUNNING and state.start_time is None:
                update["start_time"] = now
            if status.is_terminal and state.end_time is None:
                update["end_time"] = now

            updated = state.model_copy(update=update)
            self._tasks[task_id] = updated
            self._persist_task(updated)
            self._persist_summary()
            return updated.model_copy(deep=True)

    def update_error_message(self, task_id: str, message: str) -> None:
        with self._lock:
            state = self._get_state(task_id)
            updated = state.model_copy(update={"error_message": message or ""})
            self._tasks[task_id] = updated
            self._persist_task(updated)

    def _build_summary(self) -> ExecutionSummary:
        counts = {status: 0 for status in TaskStatus}
        for state in self._tasks.values():
            counts[state.status] += 1

        return ExecutionSummary(
            workflow_name=self._workflow_name,
            execution_id=self._execution_id,
            start_time=self._start_time,
            end_time=self._end_time or self._utc_now(),
            total_tasks=len(self._tasks),
            completed_count=counts[TaskStatus.COMPLETED],
            failed_count=counts[TaskStatus.FAILED],
            blocked_count=counts[TaskStatus.BLOCKED],
            pending_count=counts[TaskStatus.PENDING],
            task_states={
                task_id: state.model_copy(deep=True)
                for task_id, state in self._tasks.items()
            },
        )

    def summary(self) -> ExecutionSummary:
        """Consistent snapshot of counts and per-task state."""
        with self._lock:
            return self._build_summary()

    def close(self) -> None:
        """Persist the final summary and release the key-value store."""
        with self._lock:
            if self._closed:
                return
            if self._end_time is None:
                self._end_time = self._utc_now()
            self._persist_summary()
            self._closed = True
        self._kv.close()

    @classmethod
    def load(cls, kv_store: KeyValueStore, execution_id: str) -> "ExecutionStateStore":
        """Rebuild a store from documents persisted by an earlier process."""
        if kv_store is None:
            raise ValueError("kv_store is required")
        if not execution_id:
            raise ValueError("execution_id is required")

        try:
            raw_summary = kv_store.load(None, f"summary:{execution_id}")
        except KeyNotFoundError:
            raise StateStoreError(f"no persisted state for execution {execution_id}") from None
        summary = ExecutionSummary.model_validate(raw_summary)

        store = cls(kv_store, summary.workflow_name, execution_id)
        store._start_time = summary.start_time
        prefix = f"task:{execution_id}:"
        for key in kv_store.list(None):
            if key.startswith(prefix):
                state = TaskState.model_validate(kv_store.load(None, key))
                store._tasks[state.task_id] = state
        store._initialized = True
        return store
