"""Unit tests for runtimes and the runtime registry."""

import os
import sys
import time

import pytest
from pytest_httpx import HTTPXMock

from models.workflow import TaskSpec
from services.control_client import ControlClient
from services.run_context import ExecutionCancelledError, ExecutionTimeoutError, RunContext
from services.runtime import Runtime, RuntimeRegistry, TaskExecutionError, UnknownRuntimeError
from services.runtime_adapters import (
    CallableRuntime,
    HttpRuntime,
    SimulatedRuntime,
    SubprocessRuntime,
    default_registry,
)

WRITE_OUTPUTS = (
    "import json, os\n"
    "with open(os.environ['STACK_INPUTS']) as f:\n"
    "    data = json.load(f)\n"
    "with open(os.environ['STACK_OUTPUTS'], 'w') as f:\n"
    "    json.dump({'echo': data, 'task': os.environ['STACK_TASK_ID']}, f)\n"
)


def create_task(task_id: str = "task", uses: str = "", **params) -> TaskSpec:
    return TaskSpec(id=task_id, uses=uses, params=params)


@pytest.fixture
def ctx():
    return RunContext()


class TestRuntimeRegistry:
    """Tests for RuntimeRegistry."""

    def test_create_registered(self):
        registry = RuntimeRegistry()
        registry.register("sim", SimulatedRuntime)

        runtime = registry.create("sim", delay=0.5)

        assert isinstance(runtime, SimulatedRuntime)
        assert "sim" in registry
        assert len(registry) == 1

    def test_unknown_runtime_lists_registered(self):
        registry = RuntimeRegistry()
        registry.register("b", SimulatedRuntime)
        registry.register("a", SimulatedRuntime)

        with pytest.raises(UnknownRuntimeError) as exc_info:
            registry.create("docker")

        assert exc_info.value.name == "docker"
        assert str(exc_info.value) == "unsupported runtime type: docker (registered: a, b)"

    def test_unregister(self):
        registry = RuntimeRegistry()
        registry.register("sim", SimulatedRuntime)
        registry.unregister("sim")
        registry.unregister("never-there")
        assert registry.names() == []

    def test_factory_must_return_runtime(self):
        registry = RuntimeRegistry()
        registry.register("bad", lambda **options: object())
        with pytest.raises(TypeError, match="not Runtime"):
            registry.create("bad")

    def test_registries_are_independent(self):
        first = default_registry()
        second = default_registry()
        first.unregister("http")
        assert "http" in second

    def test_default_registry_names(self):
        assert default_registry().names() == ["http", "simulated", "subprocess"]

    def test_register_requires_name(self):
        with pytest.raises(ValueError, match="name is required"):
            RuntimeRegistry().register("", SimulatedRuntime)


class TestSimulatedRuntime:
    """Tests for SimulatedRuntime."""

    def test_processor(self, ctx):
        outputs = SimulatedRuntime().execute(ctx, create_task("p", "text-processor"), {"data": "hi"})

        assert outputs["processed_data"] == "Processed: hi"
        assert outputs["_agent_id"] == "p"
        assert outputs["_agent_type"] == "text-processor"
        assert outputs["status"] == "completed"

    def test_summarizer_counts_words(self, ctx):
        outputs = SimulatedRuntime().execute(
            ctx, create_task("s", "summarizer"), {"text": "one two three"}
        )
        assert outputs["summary"].startswith("Summary of 3 words")

    def test_analyzer(self, ctx):
        outputs = SimulatedRuntime().execute(ctx, create_task("a", "sentiment-analyzer"), {})
        assert outputs["analysis"]["sentiment"] == "positive"

    def test_default_echoes_inputs(self, ctx):
        outputs = SimulatedRuntime().execute(ctx, create_task("x", "custom"), {"k": 1})
        assert outputs["k"] == 1
        assert outputs["note"] == "Processed with default handler"

    def test_simulated_failure(self, ctx):
        task = create_task("x", "custom", simulate_failure="disk full")
        with pytest.raises(TaskExecutionError, match="disk full"):
            SimulatedRuntime().execute(ctx, task, {})

    def test_cancelled_context(self, ctx):
        ctx.cancel()
        with pytest.raises(ExecutionCancelledError):
            SimulatedRuntime(delay=5).execute(ctx, create_task(), {})

    def test_negative_delay_rejected(self):
        with pytest.raises(ValueError):
            SimulatedRuntime(delay=-1)


class TestCallableRuntime:
    """Tests for CallableRuntime."""

    def test_dispatch_order(self, ctx):
        runtime = CallableRuntime(
            handlers={
                "by-uses": lambda c, task, inputs: {"via": "uses"},
                "by-id": lambda c, task, inputs: {"via": "id"},
            },
            default=lambda c, task, inputs: {"via": "default"},
        )

        assert runtime.execute(ctx, create_task("by-id", "by-uses"), {}) == {"via": "uses"}
        assert runtime.execute(ctx, create_task("by-id", "other"), {}) == {"via": "id"}
        assert runtime.execute(ctx, create_task("x", "other"), {}) == {"via": "default"}

    def test_no_handler(self, ctx):
        with pytest.raises(TaskExecutionError, match="no handler"):
            CallableRuntime().execute(ctx, create_task("x", "missing"), {})

    def test_register(self, ctx):
        runtime = CallableRuntime()
        runtime.register("double", lambda c, task, inputs: {"n": inputs["n"] * 2})
        assert runtime.execute(ctx, create_task("t", "double"), {"n": 4}) == {"n": 8}


class TestSubprocessRuntime:
    """Tests for SubprocessRuntime."""

    def test_exchanges_json_files(self, ctx, tmp_path):
        runtime = SubprocessRuntime(command=[sys.executable, "-c", WRITE_OUTPUTS], workdir=str(tmp_path))

        outputs = runtime.execute(ctx, create_task("worker"), {"data": [1, 2]})

        assert outputs == {"echo": {"data": [1, 2]}, "task": "worker"}
        assert (tmp_path / "worker" / "inputs.json").exists()

    def test_command_from_params(self, ctx, tmp_path):
        runtime = SubprocessRuntime(workdir=str(tmp_path))
        task = create_task("worker", command=[sys.executable, "-c", WRITE_OUTPUTS])

        assert runtime.execute(ctx, task, {})["task"] == "worker"

    def test_no_output_file(self, ctx, tmp_path):
        runtime = SubprocessRuntime(command=[sys.executable, "-c", "print('hello')"], workdir=str(tmp_path))

        outputs = runtime.execute(ctx, create_task("quiet"), {})

        assert outputs["status"] == "completed"
        assert "hello" in outputs["stdout"]

    def test_nonzero_exit(self, ctx, tmp_path):
        script = "import sys; sys.stderr.write('bad things\\n'); sys.exit(3)"
        runtime = SubprocessRuntime(command=[sys.executable, "-c", script], workdir=str(tmp_path))

        with pytest.raises(TaskExecutionError, match="code 3: bad things"):
            runtime.execute(ctx, create_task(), {})

    def test_non_object_outputs(self, ctx, tmp_path):
        script = "import os; open(os.environ['STACK_OUTPUTS'], 'w').write('[1]')"
        runtime = SubprocessRuntime(command=[sys.executable, "-c", script], workdir=str(tmp_path))

        with pytest.raises(TaskExecutionError, match="must be an object"):
            runtime.execute(ctx, create_task(), {})

    def test_missing_command(self, ctx, tmp_path):
        with pytest.raises(TaskExecutionError, match="no command"):
            SubprocessRuntime(workdir=str(tmp_path)).execute(ctx, create_task(), {})

    def test_killed_when_context_done(self, tmp_path):
        runtime = SubprocessRuntime(
            command=[sys.executable, "-c", "import time; time.sleep(30)"],
            workdir=str(tmp_path),
            poll_interval=0.05,
        )
        ctx = RunContext(timeout=0.2)
        started = time.monotonic()

        with pytest.raises(ExecutionTimeoutError):
            runtime.execute(ctx, create_task(), {})

        assert time.monotonic() - started < 10

    def test_cleanup_removes_owned_workdir(self):
        runtime = SubprocessRuntime(command=[sys.executable, "-c", "pass"])
        workdir = runtime.workdir
        runtime.cleanup()
        assert not os.path.exists(workdir)

    def test_cleanup_keeps_given_workdir(self, tmp_path):
        SubprocessRuntime(workdir=str(tmp_path)).cleanup()
        assert tmp_path.exists()


class TestHttpRuntime:
    """Tests for HttpRuntime."""

    def test_sync_complete(self, ctx, httpx_mock: HTTPXMock):
        httpx_mock.add_response(
            method="POST",
            url="http://svc:8080/control/execute",
            json={"status": "complete", "output": {"answer": 42}},
        )
        runtime = HttpRuntime(base_url="http://svc:8080")

        assert runtime.execute(ctx, create_task("t", "solver"), {"q": 1}) == {"answer": 42}

    def test_polls_until_complete(self, ctx, httpx_mock: HTTPXMock):
        httpx_mock.add_response(
            method="POST",
            url="http://svc:8080/control/execute",
            json={"status": "running", "task_id": "svc-1"},
        )
        httpx_mock.add_response(
            method="GET",
            url="http://svc:8080/control/status/svc-1",
            json={"status": "running", "progress": 50},
        )
        httpx_mock.add_response(
            method="GET",
            url="http://svc:8080/control/status/svc-1",
            json={"status": "complete"},
        )
        httpx_mock.add_response(
            method="GET",
            url="http://svc:8080/control/output/svc-1",
            json={"output": {"model": "trained"}},
        )
        runtime = HttpRuntime(base_url="http://svc:8080", poll_interval=0.01)

        assert runtime.execute(ctx, create_task("t", "trainer"), {}) == {"model": "trained"}

    def test_endpoint_from_params(self, ctx, httpx_mock: HTTPXMock):
        httpx_mock.add_response(
            method="POST",
            url="http://other:9000/control/execute",
            json={"status": "complete", "output": {}},
        )
        task = create_task("t", "solver", endpoint="http://other:9000")

        assert HttpRuntime().execute(ctx, task, {}) == {}

    def test_failed_status(self, ctx, httpx_mock: HTTPXMock):
        httpx_mock.add_response(
            method="POST",
            url="http://svc:8080/control/execute",
            json={"status": "failed", "error": "bad input"},
        )

        with pytest.raises(TaskExecutionError, match="bad input"):
            HttpRuntime(base_url="http://svc:8080").execute(ctx, create_task(), {})

    def test_http_error_wrapped(self, ctx, httpx_mock: HTTPXMock):
        httpx_mock.add_response(
            method="POST",
            url="http://svc:8080/control/execute",
            status_code=503,
            text="Unavailable",
        )

        with pytest.raises(TaskExecutionError, match="HTTP 503"):
            HttpRuntime(base_url="http://svc:8080").execute(ctx, create_task(), {})

    def test_no_endpoint(self, ctx):
        with pytest.raises(TaskExecutionError, match="no endpoint"):
            HttpRuntime().execute(ctx, create_task(), {})

    def test_uses_injected_client(self, ctx, httpx_mock: HTTPXMock):
        httpx_mock.add_response(
            method="POST",
            url="http://svc:8080/control/execute",
            json={"status": "complete", "output": {"ok": True}},
        )
        runtime = HttpRuntime(base_url="http://svc:8080", client=ControlClient(timeout=1.0))

        assert runtime.execute(ctx, create_task(), {}) == {"ok": True}


class TestRuntimeContract:
    """Tests for the abstract runtime."""

    def test_cleanup_defaults_to_noop(self):
        class Minimal(Runtime):
            def execute(self, ctx, task, inputs):
                return {}

        Minimal().cleanup()

    def test_execute_is_abstract(self):
        with pytest.raises(TypeError):
            Runtime()
