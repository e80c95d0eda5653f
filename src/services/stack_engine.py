"""Stack engine: executes a workflow's tasks in dependency order."""

import copy
import json
import logging
import re
import threading
import time
import uuid
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models.graph import ExecutionGraph
from models.state import ExecutionSummary, RunStatus, TaskStatus
from models.workflow import TaskSpec, WorkflowSpec
from services.graph_service import GraphService
from services.kv_store import KeyValueStoreFactory, memory_store_factory
from services.run_context import ExecutionInterruptedError, RunContext
from services.runtime import Runtime, RuntimeRegistry, TaskExecutionError
from services.runtime_adapters import default_registry
from services.state_store import INPUT_KEY, OUTPUT_KEY, ExecutionStateStore

logger = logging.getLogger(__name__)


class StackEngineError(Exception):
    """Base class for engine errors."""

    pass


class AlreadyRunningError(StackEngineError):
    """Raised when execute is called while a run is in progress."""

    def __init__(self, workflow_name: str):
        self.workflow_name = workflow_name
        super().__init__(f"stack is already running: {workflow_name}")


class ExecutionIncompleteError(StackEngineError):
    """Raised when a run finishes its order but not every task completed."""

    def __init__(self, summary: ExecutionSummary):
        self.summary = summary
        super().__init__(
            f"stack execution completed with errors: "
            f"{summary.completed_count}/{summary.total_tasks} tasks completed"
        )


class InputResolutionError(StackEngineError):
    """Raised when a dependency's output cannot be wired into a task."""

    def __init__(self, task_id: str, dependency_id: str, reason: str):
        self.task_id = task_id
        self.dependency_id = dependency_id
        super().__init__(f"cannot resolve input from {dependency_id} for {task_id}: {reason}")


class ExecuteOptions(BaseModel):
    """Options for a single run."""

    model_config = ConfigDict(frozen=True)

    initial_input: dict[str, Any] = Field(default_factory=dict)
    timeout: float = 0
    runtime: str = "simulated"
    runtime_options: dict[str, Any] = Field(default_factory=dict)
    parallel: bool = False
    max_workers: int | None = None

    @field_validator("timeout")
    @classmethod
    def timeout_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("timeout must be non-negative")
        return v

    @field_validator("runtime")
    @classmethod
    def runtime_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("runtime is required")
        return v

    @field_validator("initial_input")
    @classmethod
    def initial_input_serializable(cls, v: dict[str, Any]) -> dict[str, Any]:
        try:
            json.dumps(v)
        except (TypeError, ValueError) as e:
            raise ValueError(f"initial_input must be JSON serializable: {e}") from e
        return v

    @field_validator("max_workers")
    @classmethod
    def max_workers_positive(cls, v: int | None) -> int | None:
        if v is not None and v <= 0:
            raise ValueError("max_workers must be positive")
        return v


def new_execution_id() -> str:
    return f"run-{int(time.time())}-{uuid.uuid4().hex[:6]}"


class StackEngine:
    """Runs a workflow once per ``execute`` call.

    The graph and execution order are computed at construction. Tasks run
    one at a time in topological order (or one ready set at a time when
    ``parallel`` is set); a failing task is recorded and the run carries on
    with the rest of the order.
    """

    def __init__(
        self,
        spec: WorkflowSpec,
        kv_store_factory: KeyValueStoreFactory | None = None,
        runtime_registry: RuntimeRegistry | None = None,
        verbose: bool = False,
        graph_service: GraphService | None = None,
    ):
        if spec is None:
            raise ValueError("spec is required")

        self._spec = spec
        self._graph: ExecutionGraph = (graph_service or GraphService()).build_graph(spec)
        self._order = self._graph.topological_sort()
        self._levels = self._graph.get_execution_levels()
        self._tasks = {task.id: task for task in spec.agents}

        self._kv_store_factory = kv_store_factory or memory_store_factory()
        self._registry = runtime_registry or default_registry(verbose)
        self._verbose = verbose

        self._run_lock = threading.Lock()
        self._running = False
        self._run_status = RunStatus.NOT_STARTED
        self._ctx: RunContext | None = None
        self._closed = False

        self._runtimes: dict[str, Runtime] = {}
        self._runtimes_lock = threading.Lock()

        self._state_store = self._new_state_store()
        self._state_used = False
        # stores whose run thread is still inside execute, and those to close once it leaves
        self._active_stores: set[ExecutionStateStore] = set()
        self._retired_stores: set[ExecutionStateStore] = set()

    def _log(self, message: str) -> None:
        if self._verbose:
            logger.info(message)
        else:
            logger.debug(message)

    def _new_state_store(self) -> ExecutionStateStore:
        execution_id = new_execution_id()
        safe_name = re.sub(r"[^A-Za-z0-9_.-]", "_", self._spec.name)
        kv_store = self._kv_store_factory(f"stack_{safe_name}-{execution_id}")
        store = ExecutionStateStore(kv_store, self._spec.name, execution_id)
        store.initialize_tasks(self._order)
        return store

    @property
    def spec(self) -> WorkflowSpec:
        return self._spec

    @property
    def graph(self) -> ExecutionGraph:
        return self._graph

    @property
    def execution_order(self) -> list[str]:
        return list(self._order)

    @property
    def execution_id(self) -> str:
        return self._state_store.execution_id

    @property
    def run_status(self) -> RunStatus:
        return self._run_status

    @property
    def is_running(self) -> bool:
        with self._run_lock:
            return self._running

    def execute(
        self, ctx: RunContext | None = None, options: ExecuteOptions | None = None
    ) -> ExecutionSummary:
        """Run every task once and return the summary.

        Raises:
            AlreadyRunningError: If a run is already in progress.
            ExecutionInterruptedError: If the run was cancelled or timed out;
                tasks not yet reached stay pending.
            ExecutionIncompleteError: If the order finished but some tasks
                failed or were blocked. The summary is attached.
        """
        options = options or ExecuteOptions()

        with self._run_lock:
            if self._running:
                raise AlreadyRunningError(self._spec.name)
            if self._closed:
                raise StackEngineError("engine is closed")
            self._running = True

            if self._state_used:
                previous = self._state_store
                self._state_store = self._new_state_store()
                self._retire_store(previous)
            self._state_used = True

            parent = ctx or RunContext.background()
            if options.timeout > 0:
                run_ctx = parent.with_timeout(options.timeout)
            else:
                run_ctx = parent.with_cancel()
            self._ctx = run_ctx
            self._run_status = RunStatus.RUNNING
            store = self._state_store
            self._active_stores.add(store)

        try:
            runtime = self._get_runtime(options)

            self._log(
                f"Starting stack execution: {self._spec.name} "
                f"(Run ID: {store.execution_id})"
            )
            self._log(f"Execution order: {self._order}")

            if options.parallel:
                self._execute_parallel(run_ctx, store, runtime, options)
            else:
                self._execute_serial(run_ctx, store, runtime, options)
        except ExecutionInterruptedError:
            self._finish_run(run_ctx, store, RunStatus.CANCELLED)
            logger.warning(f"Stack execution cancelled: {store.execution_id}")
            raise
        except BaseException:
            self._finish_run(run_ctx, store, RunStatus.FINISHED)
            raise

        self._finish_run(run_ctx, store, RunStatus.FINISHED)

        summary = store.summary()
        if not summary.succeeded:
            logger.warning(
                f"Stack execution completed with errors: "
                f"{summary.completed_count}/{summary.total_tasks} tasks completed"
            )
            raise ExecutionIncompleteError(summary)

        self._log(
            f"Stack execution completed successfully: {self._spec.name} "
            f"(Run ID: {store.execution_id})"
        )
        return summary

    def _finish_run(
        self, run_ctx: RunContext, store: ExecutionStateStore, status: RunStatus
    ) -> None:
        with self._run_lock:
            # stop() may already have released this run
            if self._ctx is run_ctx:
                self._running = False
                if self._run_status == RunStatus.RUNNING:
                    self._run_status = status
            self._active_stores.discard(store)
            retired = store in self._retired_stores
            self._retired_stores.discard(store)
        if retired:
            store.close()

    def _retire_store(self, store: ExecutionStateStore) -> None:
        """Close a replaced store now, or once its run thread leaves execute.

        Caller holds the run lock.
        """
        if store in self._active_stores:
            self._retired_stores.add(store)
        else:
            store.close()

    def _get_runtime(self, options: ExecuteOptions) -> Runtime:
        key = f"{options.runtime}:{json.dumps(options.runtime_options, sort_keys=True, default=str)}"
        with self._runtimes_lock:
            runtime = self._runtimes.get(key)
            if runtime is None:
                runtime = self._registry.create(options.runtime, **options.runtime_options)
                self._runtimes[key] = runtime
            return runtime

    def _execute_serial(
        self,
        ctx: RunContext,
        store: ExecutionStateStore,
        runtime: Runtime,
        options: ExecuteOptions,
    ) -> None:
        executed: set[str] = set()
        for task_id in self._order:
            ctx.raise_if_done()
            if self._run_task(ctx, store, runtime, self._tasks[task_id], options, executed):
                executed.add(task_id)

    def _execute_parallel(
        self,
        ctx: RunContext,
        store: ExecutionStateStore,
        runtime: Runtime,
        options: ExecuteOptions,
    ) -> None:
        executed: set[str] = set()
        widest = max(len(level) for level in self._levels)
        with ThreadPoolExecutor(
            max_workers=options.max_workers or widest,
            thread_name_prefix=f"stack-{self._spec.name}",
        ) as pool:
            for level in self._levels:
                ctx.raise_if_done()
                self._log(f"Dispatching ready set: {level}")
                snapshot = frozenset(executed)
                futures = {
                    task_id: pool.submit(
                        self._run_task, ctx, store, runtime, self._tasks[task_id], options, snapshot
                    )
                    for task_id in level
                }
                for task_id, future in futures.items():
                    if future.result():
                        executed.add(task_id)

    def _run_task(
        self,
        ctx: RunContext,
        store: ExecutionStateStore,
        runtime: Runtime,
        task: TaskSpec,
        options: ExecuteOptions,
        executed: set[str] | frozenset[str],
    ) -> bool:
        """Run one task and record its outcome. Returns True on completion."""
        store.update_status(task.id, TaskStatus.RUNNING)
        self._log(f"Executing task: {task.id} (uses: {task.uses})")

        try:
            inputs = self._resolve_inputs(store, task, options.initial_input, executed)
        except InputResolutionError as e:
            logger.warning(f"Task {task.id} blocked: {e}")
            store.update_error_message(task.id, str(e))
            store.update_status(task.id, TaskStatus.BLOCKED)
            return False

        store.set(task.id, INPUT_KEY, inputs)

        try:
            outputs = runtime.execute(ctx, task, copy.deepcopy(inputs))
            if not isinstance(outputs, Mapping):
                raise TaskExecutionError(
                    task.id, f"runtime returned {type(outputs).__name__}, expected a mapping"
                )
            store.set(task.id, OUTPUT_KEY, dict(outputs))
        except Exception as e:
            logger.error(f"Task {task.id} execution failed: {e}")
            store.update_error_message(task.id, f"Execution failed: {e}")
            store.update_status(task.id, TaskStatus.FAILED)
            return False

        store.update_status(task.id, TaskStatus.COMPLETED)
        self._log(f"Task completed: {task.id}")
        return True

    def _resolve_inputs(
        self,
        store: ExecutionStateStore,
        task: TaskSpec,
        initial_input: dict[str, Any],
        executed: set[str] | frozenset[str],
    ) -> dict[str, Any]:
        """Initial input, overlaid with params, then one entry per inputFrom dependency."""
        inputs = copy.deepcopy(initial_input)
        inputs.update(copy.deepcopy(task.params))

        for dep_id in task.input_from:
            if not dep_id:
                continue
            if dep_id not in executed:
                raise InputResolutionError(task.id, dep_id, "dependency has not executed successfully")

            outputs = store.get(dep_id, OUTPUT_KEY)
            if task.input_key:
                if task.input_key not in outputs:
                    raise InputResolutionError(
                        task.id, dep_id, f"output has no key {task.input_key}"
                    )
                inputs[dep_id] = outputs[task.input_key]
            else:
                inputs[dep_id] = outputs

        return inputs

    def stop(self) -> None:
        """Cancel the current run. Cooperative: the in-flight task finishes first."""
        with self._run_lock:
            if self._ctx is not None:
                self._ctx.cancel()
            if self._running:
                self._run_status = RunStatus.CANCELLED
            self._running = False
        logger.info(
            f"Stack execution stopped: {self._spec.name} "
            f"(Run ID: {self._state_store.execution_id})"
        )

    def get_state(self) -> ExecutionSummary:
        """Snapshot of the current (or last) run."""
        return self._state_store.summary()

    def get_task_state(self, task_id: str) -> dict[str, Any]:
        return self._state_store.get_all(task_id)

    def export(self) -> bytes:
        """Serialize the current summary as JSON."""
        return self.get_state().model_dump_json(indent=2).encode("utf-8")

    def close(self) -> None:
        """Stop any run, clean up runtimes once, and close the state store."""
        if self.is_running:
            self.stop()

        with self._run_lock:
            if self._closed:
                return
            self._closed = True
            self._retire_store(self._state_store)

        with self._runtimes_lock:
            runtimes = list(self._runtimes.values())
            self._runtimes.clear()

        errors = []
        for runtime in runtimes:
            try:
                runtime.cleanup()
            except Exception as e:
                logger.error(f"Runtime cleanup failed: {e}")
                errors.append(e)

        if errors:
            raise StackEngineError(f"runtime cleanup failed: {errors[0]}") from errors[0]

    def __enter__(self) -> "StackEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
