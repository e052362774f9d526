import logging
import signal
import threading
import time
from typing import List, Mapping, Optional, Union

from prometheus_client import CollectorRegistry

from .context import JobContext, DeadlineExceeded
from .jobs import register_builtin_jobs
from .metrics import RunnerMetrics
from .models import Job
from .registry import JobFunc, JobRegistry
from .store import JobQueue

logger = logging.getLogger(__name__)


def setup_signal_handlers(stop: threading.Event):
    def _handler(signum, frame):
        logger.info("Received signal %s, stopping runner", signum)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # Only the main thread may install handlers
            logger.debug("Cannot install handler for signal %s outside the main thread", sig)


class Runner:
    """
    Polls the queue and runs claimed jobs in parallel threads.

    At most `job_limit` jobs run at once; when the limit is reached the poll
    tick is skipped. A job is removed from the queue only after its handler
    succeeds; anything else leaves it to be claimed again once its lease
    (received_at + timeout) lapses.
    """

    def __init__(
        self,
        queue: JobQueue,
        *,
        registry: Optional[JobRegistry] = None,
        job_limit: int = 1,
        poll_interval: float = 1.0,
        error_backoff: float = 1.0,
        delete_timeout: float = 5.0,
        metrics: Union[RunnerMetrics, CollectorRegistry, None] = None,
    ):
        self._queue = queue
        self._registry = registry if registry is not None else JobRegistry()
        self._job_limit = max(1, int(job_limit))
        self._poll_interval = poll_interval
        self._error_backoff = error_backoff
        self._delete_timeout = delete_timeout
        self.metrics = metrics if isinstance(metrics, RunnerMetrics) else RunnerMetrics(metrics)

        self._current_job_count = 0
        self._current_job_count_lock = threading.Lock()
        self._threads: List[threading.Thread] = []
        self._jobs: Mapping[str, JobFunc] = {}

    @property
    def in_flight(self) -> int:
        with self._current_job_count_lock:
            return self._current_job_count

    def register(self, name: str, fn: JobFunc):
        self._registry.register(name, fn)

    def start(self, stop: threading.Event):
        """Poll until `stop` is set, then wait for running jobs to finish."""
        logger.info("Starting")
        register_builtin_jobs(self._registry)
        self._jobs = self._registry.freeze()
        logger.info("Registered jobs: %s", self._registry.names())

        while not stop.wait(self._poll_interval):
            self._receive_and_run(stop)

        logger.info("Stopping")
        for t in self._threads:
            t.join()
        self._threads = []
        logger.info("Stopped")

    def _receive_and_run(self, stop: threading.Event):
        with self._current_job_count_lock:
            if self._current_job_count >= self._job_limit:
                return

        try:
            job = self._queue.claim_next()
        except Exception:
            self.metrics.received(False)
            logger.exception("Error receiving job")
            # Don't hammer a failing queue
            stop.wait(self._error_backoff)
            return

        if job is None:
            self.metrics.received(True)
            return

        fn = self._jobs.get(job.name)
        if fn is None:
            self.metrics.received(False)
            logger.warning("No job with this name: %s", job.name)
            return

        self.metrics.received(True)

        with self._current_job_count_lock:
            self._current_job_count += 1

        t = threading.Thread(
            target=self._run, args=(stop, job, fn), name=f"job-{job.id}-{job.name}", daemon=True
        )
        self._threads = [th for th in self._threads if th.is_alive()]
        self._threads.append(t)
        t.start()

    def _run(self, stop: threading.Event, job: Job, fn: JobFunc):
        try:
            self._execute(stop, job, fn)
        except BaseException:
            # Includes SystemExit and KeyboardInterrupt raised inside a handler
            self.metrics.job_crashed(job.name)
            logger.exception("Recovered from crash in job %s (%s)", job.id, job.name)
        finally:
            with self._current_job_count_lock:
                self._current_job_count -= 1

    def _execute(self, stop: threading.Event, job: Job, fn: JobFunc):
        ctx = JobContext(stop, job.timeout)

        before = time.monotonic()
        error: Optional[Exception] = None
        try:
            fn(ctx, dict(job.payload))
            if ctx.expired:
                # The lease has lapsed, another poller may already own the job
                raise DeadlineExceeded(f"job finished after its timeout of {job.timeout}s")
        except Exception as e:
            error = e
        duration = time.monotonic() - before

        self.metrics.job_finished(job.name, error is None, duration)

        if error is not None:
            logger.error("Error running job %s (%s): %s", job.id, job.name, error, exc_info=error)
            return

        logger.info("Successfully ran job %s (%s) in %.3fs", job.id, job.name, duration)

        # Not tied to `stop`: a finished job must not be re-run just because we are shutting down.
        try:
            self._queue.remove(job.id, timeout=self._delete_timeout)
        except Exception:
            logger.exception("Error deleting job %s (%s), it will be repeated", job.id, job.name)
