"""Cancellable, deadline-aware context governing a single stack run."""

import threading
import time


class ExecutionInterruptedError(Exception):
    """Raised when a run stops before finishing its planned order."""

    pass


class ExecutionCancelledError(ExecutionInterruptedError):
    """Raised when a run is cancelled."""

    def __init__(self, message: str = "context canceled"):
        super().__init__(message)


class ExecutionTimeoutError(ExecutionInterruptedError):
    """Raised when a run exceeds its deadline."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"context deadline exceeded after {timeout}s")


class RunContext:
    """Cancellation signal shared by the engine and runtimes.

    A context is done once it is cancelled, once its deadline passes, or once
    its parent is done. Checking is cooperative: callers poll ``done()`` or
    block on ``wait()``.
    """

    _POLL_INTERVAL = 0.05

    def __init__(self, parent: "RunContext | None" = None, timeout: float | None = None):
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be positive")

        self._parent = parent
        self._timeout = timeout
        self._deadline = time.monotonic() + timeout if timeout else None
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._error: ExecutionInterruptedError | None = None

    @classmethod
    def background(cls) -> "RunContext":
        """A root context that is only done when cancelled."""
        return cls()

    def with_timeout(self, timeout: float) -> "RunContext":
        return RunContext(parent=self, timeout=timeout)

    def with_cancel(self) -> "RunContext":
        return RunContext(parent=self)

    @property
    def deadline(self) -> float | None:
        """Monotonic deadline, taking the parent's into account."""
        parent_deadline = self._parent.deadline if self._parent else None
        if self._deadline is None:
            return parent_deadline
        if parent_deadline is None:
            return self._deadline
        return min(self._deadline, parent_deadline)

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None if there is none."""
        deadline = self.deadline
        if deadline is None:
            return None
        return max(0.0, deadline - time.monotonic())

    def cancel(self) -> None:
        with self._lock:
            if self._error is None:
                self._error = ExecutionCancelledError()
        self._event.set()

    def error(self) -> ExecutionInterruptedError | None:
        """The reason this context is done, or None while it is live."""
        with self._lock:
            if self._error is None:
                if self._parent is not None and self._parent.done():
                    self._error = self._parent.error()
                elif self._deadline is not None and time.monotonic() >= self._deadline:
                    self._error = ExecutionTimeoutError(self._timeout)
            if self._error is not None:
                self._event.set()
            return self._error

    def done(self) -> bool:
        return self.error() is not None

    def raise_if_done(self) -> None:
        err = self.error()
        if err is not None:
            raise err

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the context is done or ``timeout`` elapses.

        Returns True if the context is done.
        """
        end = time.monotonic() + timeout if timeout is not None else None
        while not self.done():
            step = self._POLL_INTERVAL
            if end is not None:
                left = end - time.monotonic()
                if left <= 0:
                    return False
                step = min(step, left)
            self._event.wait(step)
        return True
