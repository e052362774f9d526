"""Durable at-least-once job queue with a bounded, polling job runner."""

from .context import JobContext, JobFailed, Cancelled, DeadlineExceeded
from .registry import JobRegistry
from .store import JobQueue
from .worker import Runner

__all__ = [
    "JobContext",
    "JobFailed",
    "Cancelled",
    "DeadlineExceeded",
    "JobRegistry",
    "JobQueue",
    "Runner",
]
