"""Runtime contract and registry for executing individual stack tasks."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

from models.workflow import TaskSpec
from services.run_context import RunContext

logger = logging.getLogger(__name__)


class TaskExecutionError(Exception):
    """Raised by a runtime when a task cannot produce its outputs."""

    def __init__(self, task_id: str, message: str):
        self.task_id = task_id
        super().__init__(message)


class UnknownRuntimeError(Exception):
    """Raised when a runtime name is not registered."""

    def __init__(self, name: str, known: list[str]):
        self.name = name
        self.known = known
        super().__init__(
            f"unsupported runtime type: {name} (registered: {', '.join(known) or 'none'})"
        )


class Runtime(ABC):
    """Executes one task given its resolved inputs.

    Implementations may block; they should return promptly once ``ctx`` is
    done, but the engine does not rely on it.
    """

    @abstractmethod
    def execute(
        self, ctx: RunContext, task: TaskSpec, inputs: dict[str, Any]
    ) -> dict[str, Any]:
        """Run the task and return its outputs."""

    def cleanup(self) -> None:
        """Release resources held by the runtime."""


RuntimeFactory = Callable[..., Runtime]


class RuntimeRegistry:
    """Maps runtime type names to factories.

    Each engine is handed its own registry, so different runtime sets can
    coexist in one process.
    """

    def __init__(self):
        self._factories: dict[str, RuntimeFactory] = {}

    def register(self, name: str, factory: RuntimeFactory) -> None:
        if not name or not name.strip():
            raise ValueError("name is required")
        if factory is None:
            raise ValueError("factory is required")
        if name in self._factories:
            logger.debug(f"Replacing runtime factory: {name}")
        self._factories[name] = factory

    def unregister(self, name: str) -> None:
        self._factories.pop(name, None)

    def create(self, name: str, **options: Any) -> Runtime:
        """Instantiate the runtime registered under name."""
        if not name:
            raise ValueError("name is required")
        factory = self._factories.get(name)
        if factory is None:
            raise UnknownRuntimeError(name, self.names())
        runtime = factory(**options)
        if not isinstance(runtime, Runtime):
            raise TypeError(f"factory for {name} returned {type(runtime).__name__}, not Runtime")
        return runtime

    def names(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, name: object) -> bool:
        return name in self._factories

    def __len__(self) -> int:
        return len(self._factories)
