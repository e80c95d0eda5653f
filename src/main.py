"""Command-line entry point for running stacks and serving the API."""

import argparse
import json
import logging
import os
import sys

import redis
import uvicorn

from api.app import StackAPI
from services.graph_service import GraphBuildError
from services.kv_store import (
    KeyValueStoreFactory,
    file_store_factory,
    memory_store_factory,
    redis_store_factory,
)
from services.log_service import configure_logging
from services.run_context import ExecutionInterruptedError
from services.runtime import UnknownRuntimeError
from services.stack_engine import ExecuteOptions, ExecutionIncompleteError, StackEngine
from services.workflow_parser import WorkflowParseError, WorkflowParser

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_DEGRADED = 1
EXIT_INTERRUPTED = 2
EXIT_INVALID = 3


def get_redis_client() -> redis.Redis:
    """Create Redis client from environment."""
    redis_url = os.environ.get("REDIS_URL", "redis://localhost:6379")
    return redis.Redis.from_url(redis_url, decode_responses=True)


def get_store_factory(kind: str) -> KeyValueStoreFactory:
    """Select the key-value backend for execution state."""
    if kind == "memory":
        return memory_store_factory()
    if kind == "file":
        return file_store_factory(os.environ.get("STACK_STATE_DIR", ".stack-state"))
    if kind == "redis":
        return redis_store_factory(get_redis_client())
    raise ValueError(f"Unknown store: {kind}")


def create_app(store: str = "memory", verbose: bool = False):
    """Create FastAPI application with all dependencies."""
    api = StackAPI(
        WorkflowParser(),
        kv_store_factory=get_store_factory(store),
        verbose=verbose,
    )
    return api.create_app()


def get_app():
    """Get or create the FastAPI application (for uvicorn import)."""
    return create_app(os.environ.get("STACK_STORE", "memory"))


def run_command(args: argparse.Namespace) -> int:
    """Run a workflow file once and print its summary."""
    try:
        spec = WorkflowParser().parse_file(args.workflow)
    except WorkflowParseError as e:
        logger.error(f"Failed to parse workflow: {e}")
        return EXIT_INVALID

    try:
        initial_input = json.loads(args.input) if args.input else {}
        runtime_options = json.loads(args.runtime_options) if args.runtime_options else {}
        options = ExecuteOptions(
            initial_input=initial_input,
            timeout=args.timeout,
            runtime=args.runtime,
            runtime_options=runtime_options,
            parallel=args.parallel,
        )
    except ValueError as e:
        logger.error(f"Invalid options: {e}")
        return EXIT_INVALID

    try:
        engine = StackEngine(
            spec,
            kv_store_factory=get_store_factory(args.store),
            verbose=args.verbose,
        )
    except GraphBuildError as e:
        logger.error(f"Invalid workflow: {e}")
        return EXIT_INVALID

    exit_code = EXIT_OK
    with engine:
        try:
            engine.execute(options=options)
        except UnknownRuntimeError as e:
            logger.error(str(e))
            exit_code = EXIT_INVALID
        except ExecutionIncompleteError as e:
            logger.warning(str(e))
            exit_code = EXIT_DEGRADED
        except ExecutionInterruptedError as e:
            logger.warning(f"Execution interrupted: {e}")
            exit_code = EXIT_INTERRUPTED
        except KeyboardInterrupt:
            engine.stop()
            exit_code = EXIT_INTERRUPTED

        exported = engine.export()
        if args.export:
            with open(args.export, "wb") as f:
                f.write(exported)
            logger.info(f"Exported execution state to {args.export}")
        print(exported.decode("utf-8"))

    return exit_code


def validate_command(args: argparse.Namespace) -> int:
    """Validate a workflow file and print its execution order."""
    try:
        spec = WorkflowParser().parse_file(args.workflow)
        with StackEngine(spec) as engine:
            order = engine.execution_order
            levels = engine.graph.get_execution_levels()
    except (WorkflowParseError, GraphBuildError) as e:
        logger.error(f"Invalid workflow: {e}")
        return EXIT_INVALID

    print(json.dumps({"name": spec.name, "order": order, "levels": levels}, indent=2))
    return EXIT_OK


def serve_command(args: argparse.Namespace) -> int:
    """Run the REST API server."""
    logger.info("Starting stack orchestrator API server")
    app = create_app(args.store, verbose=args.verbose)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Stack Orchestrator")
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default=os.environ.get("LOG_LEVEL", "info").lower(),
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--log-dir",
        default=os.environ.get("LOG_DIR"),
        help="Directory for rotating log files (default: console only)",
    )
    parser.add_argument("--verbose", action="store_true", help="Log per-task progress")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run a workflow once")
    run_parser.add_argument("workflow", help="Path to workflow YAML or JSON")
    run_parser.add_argument("--input", help="Initial input as a JSON object")
    run_parser.add_argument(
        "--timeout", type=float, default=0, help="Timeout in seconds (0 = no timeout)"
    )
    run_parser.add_argument(
        "--runtime", default="simulated", help="Runtime type (default: simulated)"
    )
    run_parser.add_argument("--runtime-options", help="Runtime options as a JSON object")
    run_parser.add_argument(
        "--parallel", action="store_true", help="Run independent tasks concurrently"
    )
    run_parser.add_argument(
        "--store",
        choices=["memory", "file", "redis"],
        default="memory",
        help="Backend for execution state (default: memory)",
    )
    run_parser.add_argument("--export", help="Write the final state JSON to this path")
    run_parser.set_defaults(func=run_command)

    validate_parser = subparsers.add_parser("validate", help="Validate a workflow")
    validate_parser.add_argument("workflow", help="Path to workflow YAML or JSON")
    validate_parser.set_defaults(func=validate_command)

    serve_parser = subparsers.add_parser("serve", help="Run the REST API")
    serve_parser.add_argument(
        "--host",
        default=os.environ.get("HOST", "0.0.0.0"),
        help="Host to bind to (default: 0.0.0.0)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", "8000")),
        help="Port to bind to (default: 8000)",
    )
    serve_parser.add_argument(
        "--store",
        choices=["memory", "file", "redis"],
        default=os.environ.get("STACK_STORE", "memory"),
        help="Backend for execution state (default: memory)",
    )
    serve_parser.set_defaults(func=serve_command)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to a subcommand."""
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(
        log_dir=args.log_dir,
        level=getattr(logging, args.log_level.upper()),
        verbose=args.verbose,
    )

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
