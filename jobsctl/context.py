import threading
import time
from typing import Optional


class JobFailed(RuntimeError):
    """Raised by job handlers to report a failed attempt."""


class Cancelled(JobFailed):
    """The runner is shutting down."""


class DeadlineExceeded(JobFailed):
    """The job ran past its timeout."""


class JobContext:
    """
    Execution context handed to job handlers.

    Combines the runner's stop event with a per-job deadline. Handlers should
    poll `done()` (or call `check()`) around blocking work; nothing is interrupted
    forcibly, so a handler that ignores the context keeps running.
    """

    def __init__(self, parent: Optional[threading.Event], timeout: float):
        self._parent = parent if parent is not None else threading.Event()
        self.timeout = float(timeout)
        self.deadline = time.monotonic() + self.timeout

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    @property
    def cancelled(self) -> bool:
        return self._parent.is_set()

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.deadline

    def done(self) -> bool:
        return self.cancelled or self.expired

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`, waking early when the context is done. Returns done()."""
        self._parent.wait(min(max(0.0, seconds), self.remaining()))
        return self.done()

    def check(self):
        if self.cancelled:
            raise Cancelled("runner is stopping")
        if self.expired:
            raise DeadlineExceeded(f"job exceeded its timeout of {self.timeout}s")
