"""Unit tests for ExecutionStateStore."""

import json
import logging
import threading

import pytest

from models.state import ExecutionSummary, TaskStatus
from services.kv_store import InMemoryKeyValueStore, KeyValueStoreError
from services.state_store import (
    ExecutionStateStore,
    InvalidStatusTransitionError,
    StateKeyNotFoundError,
    StateStoreError,
    TaskNotFoundError,
)


@pytest.fixture
def kv():
    return InMemoryKeyValueStore()


class RejectingKeyValueStore(InMemoryKeyValueStore):
    """In-memory store whose backend refuses writes for keys ending in a suffix."""

    def __init__(self, suffix: str):
        super().__init__()
        self.suffix = suffix

    def save(self, ctx, key, value):
        if key.endswith(self.suffix):
            raise KeyValueStoreError("backend down")
        super().save(ctx, key, value)


@pytest.fixture
def store(kv):
    """Store with three pending tasks."""
    store = ExecutionStateStore(kv, "test-stack", "run-1")
    store.initialize_tasks(["A", "B", "C"])
    return store


class TestInitialization:
    """Tests for store construction and task initialization."""

    def test_tasks_start_pending(self, store):
        for task_id in ("A", "B", "C"):
            assert store.get_status(task_id) == TaskStatus.PENDING

    def test_initialize_twice_raises(self, store):
        with pytest.raises(StateStoreError, match="already initialized"):
            store.initialize_tasks(["D"])

    def test_duplicate_ids_rejected(self, kv):
        store = ExecutionStateStore(kv, "test-stack", "run-1")
        with pytest.raises(StateStoreError, match="duplicate"):
            store.initialize_tasks(["A", "A"])

    @pytest.mark.parametrize(
        "workflow_name,execution_id",
        [("", "run-1"), ("stack", "")],
    )
    def test_required_arguments(self, kv, workflow_name, execution_id):
        with pytest.raises(ValueError):
            ExecutionStateStore(kv, workflow_name, execution_id)

    def test_initialization_is_persisted(self, kv, store):
        keys = kv.list(None)
        assert "summary:run-1" in keys
        assert {"task:run-1:A", "task:run-1:B", "task:run-1:C"} <= set(keys)


class TestStatusTransitions:
    """Tests for the task lifecycle."""

    def test_happy_path_stamps_times(self, store):
        running = store.update_status("A", TaskStatus.RUNNING)
        assert running.start_time is not None
        assert running.end_time is None

        completed = store.update_status("A", TaskStatus.COMPLETED)
        assert completed.start_time == running.start_time
        assert completed.end_time is not None
        assert completed.end_time >= completed.start_time

    def test_pending_to_blocked_allowed(self, store):
        state = store.update_status("A", TaskStatus.BLOCKED)
        assert state.status == TaskStatus.BLOCKED
        assert state.end_time is not None

    def test_running_to_blocked_allowed(self, store):
        store.update_status("A", TaskStatus.RUNNING)
        assert store.update_status("A", TaskStatus.BLOCKED).status == TaskStatus.BLOCKED

    @pytest.mark.parametrize(
        "path",
        [
            [TaskStatus.COMPLETED],
            [TaskStatus.FAILED],
            [TaskStatus.PENDING],
            [TaskStatus.RUNNING, TaskStatus.RUNNING],
            [TaskStatus.RUNNING, TaskStatus.PENDING],
            [TaskStatus.RUNNING, TaskStatus.COMPLETED, TaskStatus.RUNNING],
            [TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.COMPLETED],
            [TaskStatus.BLOCKED, TaskStatus.RUNNING],
        ],
    )
    def test_invalid_transitions_rejected(self, store, path):
        for status in path[:-1]:
            store.update_status("A", status)
        before = store.get_status("A")

        with pytest.raises(InvalidStatusTransitionError) as exc_info:
            store.update_status("A", path[-1])

        assert exc_info.value.current == before
        assert exc_info.value.requested == path[-1]
        assert store.get_status("A") == before

    def test_accepts_string_status(self, store):
        assert store.update_status("A", "running").status == TaskStatus.RUNNING

    def test_unknown_task(self, store):
        with pytest.raises(TaskNotFoundError, match="no state found for task X"):
            store.update_status("X", TaskStatus.RUNNING)

    def test_returned_state_is_a_copy(self, store):
        state = store.update_status("A", TaskStatus.RUNNING)
        state.outputs["leak"] = True
        assert store.get("A", "output") == {}


class TestGetSet:
    """Tests for keyed task values."""

    def test_input_and_output_maps(self, store):
        store.set("A", "input", {"x": 1})
        store.set("A", "output", {"result": "ok"})

        assert store.get("A", "input") == {"x": 1}
        assert store.get("A", "output") == {"result": "ok"}

    def test_output_field_lookup(self, store):
        store.set("A", "output", {"result": "ok"})
        assert store.get("A", "result") == "ok"

    def test_free_value_shadows_output_field(self, store):
        store.set("A", "output", {"result": "from-output"})
        store.set("A", "result", "from-value")
        assert store.get("A", "result") == "from-value"

    def test_missing_key(self, store):
        with pytest.raises(StateKeyNotFoundError) as exc_info:
            store.get("A", "nothing")
        assert exc_info.value.task_id == "A"
        assert exc_info.value.key == "nothing"

    def test_empty_key_rejected(self, store):
        with pytest.raises(ValueError, match="key is required"):
            store.get("A", "")
        with pytest.raises(ValueError, match="key is required"):
            store.set("A", "", 1)

    def test_unknown_task(self, store):
        with pytest.raises(TaskNotFoundError):
            store.get("missing", "output")

    def test_non_serializable_value_rejected(self, store):
        with pytest.raises(StateStoreError, match="not JSON serializable"):
            store.set("A", "handle", object())

    def test_output_must_be_mapping(self, store):
        with pytest.raises(StateStoreError, match="must be a mapping"):
            store.set("A", "output", ["not", "a", "map"])

    def test_values_are_isolated_from_callers(self, store):
        payload = {"nested": {"n": 1}}
        store.set("A", "output", payload)
        payload["nested"]["n"] = 2

        fetched = store.get("A", "output")
        assert fetched == {"nested": {"n": 1}}
        fetched["nested"]["n"] = 3
        assert store.get("A", "output") == {"nested": {"n": 1}}


class TestGetAll:
    """Tests for full task dumps."""

    def test_dump_shape(self, store):
        store.update_status("A", TaskStatus.RUNNING)
        store.set("A", "input", {"x": 1})
        store.set("A", "output", {"y": 2})
        store.set("A", "attempts", 1)

        dump = store.get_all("A")

        assert dump["id"] == "A"
        assert dump["status"] == "running"
        assert dump["error_message"] == ""
        assert dump["start_time"] is not None
        assert dump["end_time"] is None
        assert dump["input"] == {"x": 1}
        assert dump["output"] == {"y": 2}
        assert dump["attempts"] == 1

    def test_dump_is_json_serializable(self, store):
        store.update_status("A", TaskStatus.RUNNING)
        store.update_status("A", TaskStatus.COMPLETED)
        json.dumps(store.get_all("A"))

    def test_error_message(self, store):
        store.update_status("A", TaskStatus.RUNNING)
        store.update_error_message("A", "Execution failed: boom")
        store.update_status("A", TaskStatus.FAILED)

        assert store.get_all("A")["error_message"] == "Execution failed: boom"


class TestSummary:
    """Tests for execution summaries."""

    def test_counts(self, store):
        store.update_status("A", TaskStatus.RUNNING)
        store.update_status("A", TaskStatus.COMPLETED)
        store.update_status("B", TaskStatus.RUNNING)
        store.update_status("B", TaskStatus.FAILED)

        summary = store.summary()

        assert summary.workflow_name == "test-stack"
        assert summary.execution_id == "run-1"
        assert summary.total_tasks == 3
        assert summary.completed_count == 1
        assert summary.failed_count == 1
        assert summary.blocked_count == 0
        assert summary.pending_count == 1
        assert not summary.succeeded
        assert set(summary.task_states) == {"A", "B", "C"}

    def test_all_completed_succeeds(self, store):
        for task_id in ("A", "B", "C"):
            store.update_status(task_id, TaskStatus.RUNNING)
            store.update_status(task_id, TaskStatus.COMPLETED)
        assert store.summary().succeeded

    def test_summary_is_a_snapshot(self, store):
        summary = store.summary()
        store.update_status("A", TaskStatus.RUNNING)
        assert summary.task_states["A"].status == TaskStatus.PENDING

    def test_summary_round_trips_through_json(self, store):
        store.update_status("A", TaskStatus.RUNNING)
        summary = store.summary()
        restored = ExecutionSummary.model_validate_json(summary.model_dump_json())
        assert restored.task_states["A"].status == TaskStatus.RUNNING


class TestPersistence:
    """Tests for write-through persistence and reload."""

    def test_load_restores_tasks(self, kv, store):
        store.update_status("A", TaskStatus.RUNNING)
        store.set("A", "output", {"y": 2})
        store.update_status("A", TaskStatus.COMPLETED)

        restored = ExecutionStateStore.load(kv, "run-1")

        assert restored.workflow_name == "test-stack"
        assert restored.get_status("A") == TaskStatus.COMPLETED
        assert restored.get("A", "y") == 2
        assert restored.get_status("C") == TaskStatus.PENDING
        with pytest.raises(StateStoreError, match="already initialized"):
            restored.initialize_tasks(["D"])

    def test_load_unknown_execution(self, kv):
        with pytest.raises(StateStoreError, match="no persisted state"):
            ExecutionStateStore.load(kv, "run-404")

    def test_close_is_idempotent(self, kv, store):
        store.close()
        store.close()


class TestConcurrency:
    """Tests for concurrent access."""

    def test_parallel_updates_are_consistent(self, kv):
        task_ids = [f"t{i}" for i in range(40)]
        store = ExecutionStateStore(kv, "test-stack", "run-1")
        store.initialize_tasks(task_ids)
        errors = []

        def work(task_id):
            try:
                store.update_status(task_id, TaskStatus.RUNNING)
                store.set(task_id, "output", {"id": task_id})
                store.update_status(task_id, TaskStatus.COMPLETED)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=work, args=(t,)) for t in task_ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        summary = store.summary()
        assert summary.completed_count == len(task_ids)
        assert all(store.get(t, "id") == t for t in task_ids)


class TestPersistenceFailures:
    """Tests for backend write failures."""

    def test_failed_writes_keep_memory_state(self, caplog):
        store = ExecutionStateStore(RejectingKeyValueStore(":B"), "test-stack", "run-1")
        store.initialize_tasks(["A", "B"])

        store.update_status("B", TaskStatus.RUNNING)
        store.set("B", "output", {"y": 1})
        store.update_error_message("B", "partial")
        store.update_status("B", TaskStatus.FAILED)

        assert store.get_status("B") == TaskStatus.FAILED
        assert store.get("B", "y") == 1
        assert store.summary().failed_count == 1
        assert store.persist_errors == 5
        assert "Failed to persist task:run-1:B" in caplog.text

    def test_other_tasks_still_persisted(self):
        kv = RejectingKeyValueStore(":B")
        store = ExecutionStateStore(kv, "test-stack", "run-1")
        store.initialize_tasks(["A", "B"])
        store.update_status("A", TaskStatus.RUNNING)

        assert kv.load(None, "task:run-1:A")["status"] == "running"
        assert "task:run-1:B" not in kv.list(None)

    def test_writes_after_close_are_logged(self, kv, store, caplog):
        store.close()
        with caplog.at_level(logging.ERROR):
            store.update_status("A", TaskStatus.RUNNING)

        assert store.get_status("A") == TaskStatus.RUNNING
        assert "store is closed" in caplog.text
