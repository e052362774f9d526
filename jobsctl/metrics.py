from typing import Optional

from prometheus_client import CollectorRegistry, Counter


def _flag(value: bool) -> str:
    return "true" if value else "false"


class RunnerMetrics:
    """Counters the runner reports to; registered on one CollectorRegistry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()
        self.job_count = Counter(
            "app_jobs_total",
            "Job runs by job name and outcome.",
            ["name", "success"],
            registry=self.registry,
        )
        self.job_duration = Counter(
            "app_job_duration_seconds_total",
            "Cumulative job run time by job name and outcome.",
            ["name", "success"],
            registry=self.registry,
        )
        self.receives = Counter(
            "app_job_runner_receives_total",
            "Poll attempts against the queue by outcome.",
            ["success"],
            registry=self.registry,
        )

    def job_finished(self, name: str, success: bool, duration: float):
        self.job_count.labels(name, _flag(success)).inc()
        self.job_duration.labels(name, _flag(success)).inc(duration)

    def job_crashed(self, name: str):
        self.job_count.labels(name, "false").inc()

    def received(self, success: bool):
        self.receives.labels(_flag(success)).inc()
