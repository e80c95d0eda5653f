"""Concrete runtimes: simulated, in-process, subprocess and remote HTTP."""

import json
import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from datetime import datetime, timezone
from typing import Any, Callable

from models.workflow import TaskSpec
from services.control_client import ControlClient, ControlClientError
from services.run_context import RunContext
from services.runtime import Runtime, RuntimeRegistry, TaskExecutionError

logger = logging.getLogger(__name__)


class SimulatedRuntime(Runtime):
    """Produces canned outputs based on what a task ``uses``.

    Handy for dry runs of a workflow file. A task whose params contain
    ``simulate_failure`` fails with that message.
    """

    def __init__(self, delay: float = 0.0, log_to_console: bool = False):
        if delay < 0:
            raise ValueError("delay must be non-negative")
        self._delay = delay
        self._log_to_console = log_to_console

    def execute(
        self, ctx: RunContext, task: TaskSpec, inputs: dict[str, Any]
    ) -> dict[str, Any]:
        if self._log_to_console:
            logger.info(f"Executing task {task.id} (uses: {task.uses})")
            logger.info(f"Inputs: {inputs}")

        if self._delay:
            ctx.wait(self._delay)
        ctx.raise_if_done()

        failure = task.params.get("simulate_failure")
        if failure:
            raise TaskExecutionError(task.id, str(failure))

        outputs: dict[str, Any] = {
            "_agent_id": task.id,
            "_agent_type": task.uses,
            "_processed_at": datetime.now(timezone.utc).isoformat(),
        }

        uses = task.uses.lower()
        if "processor" in uses:
            data = inputs.get("data")
            outputs["processed_data"] = (
                f"Processed: {data}" if isinstance(data, str) else "Processed unknown data"
            )
        elif "analyzer" in uses:
            outputs["analysis"] = {
                "sentiment": "positive",
                "entities": ["entity1", "entity2"],
                "confidence": 0.87,
            }
        elif "generator" in uses:
            outputs["generated_text"] = "This is generated content based on the inputs"
            outputs["generation_parameters"] = {"temperature": 0.7, "max_tokens": 100}
        elif "summarizer" in uses:
            text = inputs.get("text")
            if isinstance(text, str):
                outputs["summary"] = (
                    f"Summary of {len(text.split())} words: "
                    "The text discusses important topics."
                )
            else:
                outputs["summary"] = "Summary: The input contained relevant information."
        else:
            outputs.update(inputs)
            outputs["note"] = "Processed with default handler"

        outputs["status"] = "completed"

        if self._log_to_console:
            logger.info(f"Outputs: {outputs}")
        return outputs


TaskHandler = Callable[[RunContext, TaskSpec, dict[str, Any]], dict[str, Any]]


class CallableRuntime(Runtime):
    """Runs tasks in-process by dispatching to Python callables.

    Handlers are looked up by the task's ``uses`` first, then by its ID,
    then the default handler.
    """

    def __init__(
        self,
        handlers: dict[str, TaskHandler] | None = None,
        default: TaskHandler | None = None,
    ):
        self._handlers = dict(handlers or {})
        self._default = default

    def register(self, key: str, handler: TaskHandler) -> None:
        if not key:
            raise ValueError("key is required")
        self._handlers[key] = handler

    def execute(
        self, ctx: RunContext, task: TaskSpec, inputs: dict[str, Any]
    ) -> dict[str, Any]:
        handler = self._handlers.get(task.uses) or self._handlers.get(task.id) or self._default
        if handler is None:
            raise TaskExecutionError(task.id, f"no handler registered for {task.uses or task.id}")
        return handler(ctx, task, inputs)


class SubprocessRuntime(Runtime):
    """Runs each task as a child process exchanging JSON files.

    Inputs are written to ``<workdir>/<task_id>/inputs.json``; the process
    finds the paths in ``STACK_INPUTS`` and ``STACK_OUTPUTS`` and may write
    its outputs as a JSON object. The process is killed once the run
    context is done.
    """

    def __init__(
        self,
        command: list[str] | str | None = None,
        workdir: str | None = None,
        poll_interval: float = 0.1,
        env: dict[str, str] | None = None,
    ):
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if isinstance(command, str):
            command = shlex.split(command)
        self._command = command
        self._owns_workdir = workdir is None
        self._workdir = workdir or tempfile.mkdtemp(prefix="stack-")
        os.makedirs(self._workdir, exist_ok=True)
        self._poll_interval = poll_interval
        self._env = dict(env or {})

    @property
    def workdir(self) -> str:
        return self._workdir

    def _command_for(self, task: TaskSpec) -> list[str]:
        if self._command:
            return list(self._command)
        command = task.params.get("command") or task.uses
        if isinstance(command, list):
            return [str(part) for part in command]
        if not command:
            raise TaskExecutionError(task.id, "no command to run")
        return shlex.split(str(command))

    def execute(
        self, ctx: RunContext, task: TaskSpec, inputs: dict[str, Any]
    ) -> dict[str, Any]:
        task_dir = os.path.join(self._workdir, task.id)
        os.makedirs(task_dir, exist_ok=True)

        inputs_file = os.path.join(task_dir, "inputs.json")
        outputs_file = os.path.join(task_dir, "outputs.json")
        if os.path.exists(outputs_file):
            os.remove(outputs_file)

        try:
            with open(inputs_file, "w", encoding="utf-8") as f:
                json.dump(inputs, f)
        except (TypeError, ValueError) as e:
            raise TaskExecutionError(task.id, f"failed to marshal inputs: {e}") from e

        env = {
            **os.environ,
            **self._env,
            "STACK_TASK_ID": task.id,
            "STACK_INPUTS": inputs_file,
            "STACK_OUTPUTS": outputs_file,
        }
        command = self._command_for(task)
        logger.debug(f"Running task {task.id}: {' '.join(command)}")

        try:
            proc = subprocess.Popen(
                command,
                cwd=task_dir,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as e:
            raise TaskExecutionError(task.id, f"failed to start process: {e}") from e

        while True:
            try:
                stdout, stderr = proc.communicate(timeout=self._poll_interval)
                break
            except subprocess.TimeoutExpired:
                if ctx.done():
                    proc.kill()
                    proc.communicate()
                    ctx.raise_if_done()

        if proc.returncode != 0:
            detail = (stderr or "").strip().splitlines()[-1:] or [""]
            raise TaskExecutionError(
                task.id, f"process exited with code {proc.returncode}: {detail[0]}"
            )

        if not os.path.exists(outputs_file):
            return {
                "status": "completed",
                "message": f"Task {task.id} executed successfully but produced no output file",
                "stdout": stdout,
            }

        try:
            with open(outputs_file, "r", encoding="utf-8") as f:
                outputs = json.load(f)
        except json.JSONDecodeError as e:
            raise TaskExecutionError(task.id, f"failed to parse outputs JSON: {e}") from e

        if not isinstance(outputs, dict):
            raise TaskExecutionError(task.id, "outputs JSON must be an object")
        return outputs

    def cleanup(self) -> None:
        if self._owns_workdir and os.path.isdir(self._workdir):
            shutil.rmtree(self._workdir)


class HttpRuntime(Runtime):
    """Delegates tasks to a remote service's control endpoints."""

    def __init__(
        self,
        base_url: str | None = None,
        client: ControlClient | None = None,
        poll_interval: float = 1.0,
        timeout: float = 30.0,
    ):
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self._base_url = base_url
        self._client = client or ControlClient(timeout=timeout)
        self._poll_interval = poll_interval

    def _base_url_for(self, task: TaskSpec) -> str:
        base_url = self._base_url or task.params.get("endpoint")
        if not base_url:
            raise TaskExecutionError(task.id, "no endpoint configured for task")
        return str(base_url)

    def execute(
        self, ctx: RunContext, task: TaskSpec, inputs: dict[str, Any]
    ) -> dict[str, Any]:
        base_url = self._base_url_for(task)

        try:
            response = self._client.execute(
                base_url=base_url,
                task_id=task.id,
                uses=task.uses,
                inputs=inputs,
                parameters=task.params,
            )

            if response.status == "failed":
                raise TaskExecutionError(
                    task.id, response.error or "Service returned failed status"
                )
            if response.status == "complete":
                return response.output or {}

            return self._poll_until_complete(ctx, base_url, response.task_id or task.id, task)
        except ControlClientError as e:
            raise TaskExecutionError(task.id, str(e)) from e

    def _poll_until_complete(
        self, ctx: RunContext, base_url: str, service_task_id: str, task: TaskSpec
    ) -> dict[str, Any]:
        """Poll service status until complete."""
        while True:
            status = self._client.get_status(base_url, service_task_id)

            if status.status == "complete":
                return self._client.get_output(base_url, service_task_id).output

            if status.status == "failed":
                raise TaskExecutionError(task.id, status.error or "Service task failed")

            if ctx.wait(self._poll_interval):
                ctx.raise_if_done()


def default_registry(verbose: bool = False) -> RuntimeRegistry:
    """Registry with the built-in runtime types."""
    registry = RuntimeRegistry()
    registry.register(
        "simulated",
        lambda **options: SimulatedRuntime(log_to_console=verbose, **options),
    )
    registry.register("subprocess", SubprocessRuntime)
    registry.register("http", HttpRuntime)
    return registry
