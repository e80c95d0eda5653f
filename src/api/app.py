"""FastAPI REST API for submitting and inspecting stacks."""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any

from fastapi import FastAPI, HTTPException, Response

from api.models import (
    ErrorResponse,
    HealthResponse,
    StackStatusResponse,
    StackSubmitRequest,
    StackSubmitResponse,
)
from services.graph_service import GraphBuildError
from services.kv_store import KeyValueStoreFactory
from services.run_context import ExecutionInterruptedError
from services.runtime import RuntimeRegistry
from services.runtime_adapters import default_registry
from services.stack_engine import ExecuteOptions, StackEngine, StackEngineError
from services.state_store import TaskNotFoundError
from services.workflow_parser import WorkflowParseError, WorkflowParser

logger = logging.getLogger(__name__)


@dataclass
class StackRun:
    """A submitted stack and the thread executing it."""
    engine: StackEngine
    thread: threading.Thread | None = None
    error: str | None = None
    lock: threading.Lock = field(default_factory=threading.Lock)


class StackAPI:
    """REST API for running stacks and polling their state."""

    def __init__(
        self,
        parser: WorkflowParser,
        kv_store_factory: KeyValueStoreFactory | None = None,
        runtime_registry: RuntimeRegistry | None = None,
        verbose: bool = False,
    ):
        """Initialize API with dependencies."""
        if parser is None:
            raise ValueError("parser is required")

        self._parser = parser
        self._kv_store_factory = kv_store_factory
        self._registry = runtime_registry or default_registry(verbose)
        self._verbose = verbose
        self._runs: dict[str, StackRun] = {}
        self._runs_lock = threading.Lock()

    def _get_run(self, stack_id: str) -> StackRun:
        with self._runs_lock:
            run = self._runs.get(stack_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Stack not found")
        return run

    def _execute(self, stack_id: str, run: StackRun, options: ExecuteOptions) -> None:
        try:
            run.engine.execute(options=options)
        except (StackEngineError, ExecutionInterruptedError) as e:
            logger.info(f"Stack {stack_id} finished with error: {e}")
            with run.lock:
                run.error = str(e)
        except Exception as e:
            logger.exception(f"Stack {stack_id} crashed")
            with run.lock:
                run.error = str(e)

    def wait(self, stack_id: str, timeout: float | None = None) -> bool:
        """Block until a stack's run thread exits. Returns True if it did."""
        run = self._get_run(stack_id)
        if run.thread is None:
            return True
        run.thread.join(timeout)
        return not run.thread.is_alive()

    def create_app(self) -> FastAPI:
        """Create FastAPI application."""
        app = FastAPI(
            title="Stack Orchestrator API",
            description="REST API for running multi-agent stacks",
            version="1.0.0",
        )

        @app.post(
            "/stacks",
            response_model=StackSubmitResponse,
            responses={400: {"model": ErrorResponse}},
        )
        def submit_stack(request: StackSubmitRequest) -> StackSubmitResponse:
            """Submit a workflow and start running it."""
            try:
                spec = self._parser.parse_dict(request.workflow)
            except WorkflowParseError as e:
                raise HTTPException(status_code=400, detail=f"Invalid workflow: {e}")

            if request.runtime not in self._registry:
                raise HTTPException(
                    status_code=400, detail=f"Unknown runtime: {request.runtime}"
                )

            try:
                options = ExecuteOptions(
                    initial_input=request.input,
                    timeout=request.timeout,
                    runtime=request.runtime,
                    runtime_options=request.runtime_options,
                    parallel=request.parallel,
                )
            except ValueError as e:
                raise HTTPException(status_code=400, detail=f"Invalid options: {e}")

            try:
                engine = StackEngine(
                    spec,
                    kv_store_factory=self._kv_store_factory,
                    runtime_registry=self._registry,
                    verbose=self._verbose,
                )
            except GraphBuildError as e:
                raise HTTPException(status_code=400, detail=f"Invalid workflow: {e}")

            stack_id = f"stack-{uuid.uuid4().hex[:12]}"
            run = StackRun(engine=engine)
            run.thread = threading.Thread(
                target=self._execute,
                args=(stack_id, run, options),
                name=stack_id,
                daemon=True,
            )
            with self._runs_lock:
                self._runs[stack_id] = run
            run.thread.start()

            return StackSubmitResponse(
                stack_id=stack_id,
                execution_id=engine.execution_id,
                status="running",
                execution_order=engine.execution_order,
            )

        @app.get(
            "/stacks/{stack_id}",
            response_model=StackStatusResponse,
            responses={404: {"model": ErrorResponse}},
        )
        def get_stack_status(stack_id: str) -> StackStatusResponse:
            """Get the execution summary of a stack."""
            run = self._get_run(stack_id)
            with run.lock:
                error = run.error
            return StackStatusResponse(
                stack_id=stack_id,
                run_status=run.engine.run_status.value,
                error=error,
                summary=run.engine.get_state(),
            )

        @app.get(
            "/stacks/{stack_id}/tasks/{task_id}",
            responses={404: {"model": ErrorResponse}},
        )
        def get_task_state(stack_id: str, task_id: str) -> dict[str, Any]:
            """Get everything recorded for one task."""
            run = self._get_run(stack_id)
            try:
                return run.engine.get_task_state(task_id)
            except TaskNotFoundError:
                raise HTTPException(status_code=404, detail="Task not found")

        @app.get(
            "/stacks/{stack_id}/export",
            responses={404: {"model": ErrorResponse}},
        )
        def export_stack(stack_id: str) -> Response:
            """Export the stack's summary as JSON."""
            run = self._get_run(stack_id)
            return Response(content=run.engine.export(), media_type="application/json")

        @app.post(
            "/stacks/{stack_id}/stop",
            responses={404: {"model": ErrorResponse}},
        )
        def stop_stack(stack_id: str) -> dict:
            """Request cancellation of a running stack."""
            run = self._get_run(stack_id)
            run.engine.stop()
            return {"status": run.engine.run_status.value}

        @app.delete(
            "/stacks/{stack_id}",
            responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
        )
        def delete_stack(stack_id: str) -> dict:
            """Delete a finished stack and release its resources."""
            run = self._get_run(stack_id)
            if run.thread is not None and run.thread.is_alive():
                raise HTTPException(status_code=409, detail="Stack is still running")

            with self._runs_lock:
                self._runs.pop(stack_id, None)
            run.engine.close()
            return {"status": "deleted"}

        @app.get("/health", response_model=HealthResponse)
        def health_check() -> HealthResponse:
            """Health check endpoint."""
            return HealthResponse(status="ok")

        return app
