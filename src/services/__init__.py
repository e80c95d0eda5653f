# Services package

from services.control_client import (
    ControlClient,
    ControlClientError,
    ExecuteRequest,
    ExecuteResponse,
    OutputResponse,
    StatusResponse,
)
from services.graph_service import (
    CycleDetectedError,
    DuplicateTaskError,
    GraphBuildError,
    GraphService,
    UnknownDependencyError,
)
from services.kv_store import (
    FileKeyValueStore,
    InMemoryKeyValueStore,
    KeyNotFoundError,
    KeyValueStore,
    KeyValueStoreError,
    RedisKeyValueStore,
    file_store_factory,
    memory_store_factory,
    redis_store_factory,
)
from services.log_service import SizeAndTimeRotatingHandler, configure_logging
from services.run_context import (
    ExecutionCancelledError,
    ExecutionInterruptedError,
    ExecutionTimeoutError,
    RunContext,
)
from services.runtime import (
    Runtime,
    RuntimeRegistry,
    TaskExecutionError,
    UnknownRuntimeError,
)
from services.runtime_adapters import (
    CallableRuntime,
    HttpRuntime,
    SimulatedRuntime,
    SubprocessRuntime,
    default_registry,
)
from services.stack_engine import (
    AlreadyRunningError,
    ExecuteOptions,
    ExecutionIncompleteError,
    InputResolutionError,
    StackEngine,
    StackEngineError,
)
from services.state_store import (
    ExecutionStateStore,
    InvalidStatusTransitionError,
    StateKeyNotFoundError,
    StateStoreError,
    TaskNotFoundError,
)
from services.workflow_parser import WorkflowParseError, WorkflowParser

__all__ = [
    "AlreadyRunningError",
    "CallableRuntime",
    "ControlClient",
    "ControlClientError",
    "CycleDetectedError",
    "DuplicateTaskError",
    "ExecuteOptions",
    "ExecuteRequest",
    "ExecuteResponse",
    "ExecutionCancelledError",
    "ExecutionIncompleteError",
    "ExecutionInterruptedError",
    "ExecutionStateStore",
    "ExecutionTimeoutError",
    "FileKeyValueStore",
    "GraphBuildError",
    "GraphService",
    "HttpRuntime",
    "InMemoryKeyValueStore",
    "InputResolutionError",
    "InvalidStatusTransitionError",
    "KeyNotFoundError",
    "KeyValueStore",
    "KeyValueStoreError",
    "OutputResponse",
    "RedisKeyValueStore",
    "RunContext",
    "Runtime",
    "RuntimeRegistry",
    "SimulatedRuntime",
    "SizeAndTimeRotatingHandler",
    "StackEngine",
    "StackEngineError",
    "StateKeyNotFoundError",
    "StateStoreError",
    "StatusResponse",
    "SubprocessRuntime",
    "TaskExecutionError",
    "TaskNotFoundError",
    "UnknownDependencyError",
    "UnknownRuntimeError",
    "WorkflowParseError",
    "WorkflowParser",
    "configure_logging",
    "default_registry",
    "file_store_factory",
    "memory_store_factory",
    "redis_store_factory",
]
