import logging
import sqlite3
import sys
import threading
import time

import pytest
from prometheus_client import CollectorRegistry

from jobsctl.metrics import RunnerMetrics
from jobsctl.store import JobQueue
from jobsctl.worker import Runner


def _messages(caplog):
    return [r.getMessage() for r in caplog.records if r.name == "jobsctl.worker"]


def _sample(registry, metric, **labels):
    return registry.get_sample_value(metric, labels)


class TestRunnerStart:
    def test_runs_jobs_until_stopped(self, queue, stop, all_jobs, caplog):
        caplog.set_level(logging.INFO, logger="jobsctl")
        runner = Runner(queue, poll_interval=0.001)
        seen = {}

        def job(ctx, payload):
            seen.update(payload)
            stop.set()

        runner.register("test", job)
        queue.create_job("test", {"foo": "bar"}, 1)

        # Blocks until the job sets the stop event
        runner.start(stop)

        assert seen == {"foo": "bar"}
        assert all_jobs() == []

        messages = _messages(caplog)
        assert messages[:2] == ["Starting", "Registered jobs: ['command', 'health', 'test']"]
        assert any(m.startswith("Successfully ran job") for m in messages)
        # The job may finish logging after "Stopping", but always before "Stopped"
        assert "Stopping" in messages
        assert messages[-1] == "Stopped"

    def test_emits_job_metrics(self, queue, stop):
        registry = CollectorRegistry()
        runner = Runner(queue, poll_interval=0.001, metrics=registry)

        def job(ctx, payload):
            ctx.wait(0.01)
            stop.set()

        runner.register("test", job)
        queue.create_job("test", {}, 1)

        runner.start(stop)

        assert _sample(registry, "app_jobs_total", name="test", success="true") == 1
        assert _sample(registry, "app_job_duration_seconds_total", name="test", success="true") > 0
        assert _sample(registry, "app_job_runner_receives_total", success="true") >= 1
        assert _sample(registry, "app_jobs_total", name="test", success="false") is None

    def test_waits_for_running_jobs_before_returning(self, queue, stop, all_jobs):
        runner = Runner(queue, poll_interval=0.001)
        finished = threading.Event()

        def job(ctx, payload):
            stop.set()
            assert ctx.cancelled
            time.sleep(0.1)
            finished.set()

        runner.register("slow", job)
        queue.create_job("slow", {}, 5)

        runner.start(stop)

        assert finished.is_set()
        assert runner.in_flight == 0
        # Removed even though the runner was already stopping
        assert all_jobs() == []

    def test_registering_a_builtin_name_fails_at_start(self, queue, stop):
        runner = Runner(queue)
        runner.register("health", lambda ctx, payload: None)

        with pytest.raises(ValueError, match="already a job with this name: health"):
            runner.start(stop)

    def test_runs_builtin_health_job(self, queue, stop, all_jobs):
        registry = CollectorRegistry()
        runner = Runner(queue, poll_interval=0.001, metrics=registry)
        queue.create_job("health", {}, 5)

        def done(ctx, payload):
            stop.set()

        runner.register("done", done)
        queue.create_job("done", {}, 5)

        runner.start(stop)

        assert _sample(registry, "app_jobs_total", name="health", success="true") == 1
        assert all_jobs() == []


class TestFailures:
    def test_failing_job_is_isolated_and_left_in_queue(self, queue, stop, all_jobs):
        registry = CollectorRegistry()
        runner = Runner(queue, poll_interval=0.001, metrics=registry)

        def boom(ctx, payload):
            raise RuntimeError("boom")

        def ok(ctx, payload):
            stop.set()

        runner.register("boom", boom)
        runner.register("ok", ok)
        boom_id = queue.create_job("boom", {}, 60)
        queue.create_job("ok", {}, 60)

        runner.start(stop)

        assert _sample(registry, "app_jobs_total", name="boom", success="false") == 1
        assert _sample(registry, "app_job_duration_seconds_total", name="boom", success="false") >= 0
        assert _sample(registry, "app_jobs_total", name="ok", success="true") == 1

        remaining = all_jobs()
        assert [j.id for j in remaining] == [boom_id]
        assert remaining[0].received_at is not None

    def test_job_past_its_timeout_counts_as_failure(self, queue, stop, all_jobs):
        registry = CollectorRegistry()
        runner = Runner(queue, poll_interval=0.001, metrics=registry)

        def slow(ctx, payload):
            time.sleep(0.1)
            stop.set()

        runner.register("slow", slow)
        job_id = queue.create_job("slow", {}, 0.05)

        runner.start(stop)

        assert _sample(registry, "app_jobs_total", name="slow", success="false") == 1
        assert [j.id for j in all_jobs()] == [job_id]

    def test_crash_outside_handler_is_contained(self, queue, stop, caplog):
        caplog.set_level(logging.INFO, logger="jobsctl")

        class BrokenMetrics(RunnerMetrics):
            def job_finished(self, name, success, duration):
                raise RuntimeError("metrics backend down")

        metrics = BrokenMetrics()
        runner = Runner(queue, poll_interval=0.001, metrics=metrics)
        calls = []

        def job(ctx, payload):
            calls.append(payload["n"])
            if len(calls) == 2:
                stop.set()

        runner.register("test", job)
        queue.create_job("test", {"n": "1"}, 60)
        queue.create_job("test", {"n": "2"}, 60)

        runner.start(stop)

        assert calls == ["1", "2"]
        assert runner.in_flight == 0
        assert metrics.registry.get_sample_value("app_jobs_total", {"name": "test", "success": "false"}) == 2
        assert any(m.startswith("Recovered from crash in job") for m in _messages(caplog))

    def test_handler_calling_sys_exit_is_contained(self, queue, stop, all_jobs, caplog):
        caplog.set_level(logging.INFO, logger="jobsctl")
        registry = CollectorRegistry()
        runner = Runner(queue, poll_interval=0.001, metrics=registry)

        def bail(ctx, payload):
            sys.exit(3)

        runner.register("bail", bail)
        runner.register("ok", lambda ctx, payload: stop.set())
        bail_id = queue.create_job("bail", {}, 60)
        queue.create_job("ok", {}, 60)

        runner.start(stop)

        assert _sample(registry, "app_jobs_total", name="bail", success="false") == 1
        assert _sample(registry, "app_jobs_total", name="ok", success="true") == 1
        assert runner.in_flight == 0
        assert [j.id for j in all_jobs()] == [bail_id]
        assert any(m.startswith(f"Recovered from crash in job {bail_id}") for m in _messages(caplog))

    def test_unknown_job_name_is_left_for_later(self, queue, stop, all_jobs, caplog):
        caplog.set_level(logging.INFO, logger="jobsctl")
        registry = CollectorRegistry()
        runner = Runner(queue, poll_interval=0.001, metrics=registry)
        runner.register("ok", lambda ctx, payload: stop.set())
        unknown_id = queue.create_job("unknown", {}, 60)
        queue.create_job("ok", {}, 60)

        runner.start(stop)

        assert _sample(registry, "app_job_runner_receives_total", success="false") == 1
        assert "No job with this name: unknown" in _messages(caplog)
        remaining = all_jobs()
        assert [j.id for j in remaining] == [unknown_id]
        assert remaining[0].received_at is not None

    def test_queue_errors_are_counted_and_retried(self, stop):
        class FailingQueue:
            calls = 0

            def claim_next(self):
                self.calls += 1
                if self.calls == 3:
                    stop.set()
                raise sqlite3.OperationalError("database is locked")

            def remove(self, job_id, timeout=5.0):
                raise AssertionError("nothing to remove")

        registry = CollectorRegistry()
        q = FailingQueue()
        runner = Runner(q, poll_interval=0.001, error_backoff=0.001, metrics=registry)

        runner.start(stop)

        assert q.calls == 3
        assert _sample(registry, "app_job_runner_receives_total", success="false") == 3

    def test_delete_error_leaves_job(self, db_file, stop, all_jobs, caplog):
        caplog.set_level(logging.INFO, logger="jobsctl")

        class UndeletableQueue(JobQueue):
            def remove(self, job_id, timeout=5.0):
                raise sqlite3.OperationalError("disk I/O error")

        queue = UndeletableQueue(db_file)
        runner = Runner(queue, poll_interval=0.001)
        runner.register("test", lambda ctx, payload: stop.set())
        job_id = queue.create_job("test", {}, 60)

        runner.start(stop)

        assert [j.id for j in all_jobs()] == [job_id]
        assert any(m.startswith(f"Error deleting job {job_id}") for m in _messages(caplog))


class TestConcurrency:
    def test_never_runs_more_than_the_limit(self, queue, stop, all_jobs):
        limit, total = 2, 6
        runner = Runner(queue, job_limit=limit, poll_interval=0.001)
        lock = threading.Lock()
        running = 0
        peak = 0
        observed = []
        done = 0

        def job(ctx, payload):
            nonlocal running, peak, done
            with lock:
                running += 1
                peak = max(peak, running)
                observed.append(runner.in_flight)
            time.sleep(0.05)
            with lock:
                running -= 1
                done += 1
                if done == total:
                    stop.set()

        runner.register("test", job)
        for i in range(total):
            queue.create_job("test", {"i": str(i)}, 5)

        runner.start(stop)

        assert done == total
        assert 1 <= peak <= limit
        assert max(observed) <= limit
        assert all_jobs() == []

    def test_job_limit_has_a_minimum_of_one(self, queue, stop, all_jobs):
        runner = Runner(queue, job_limit=0, poll_interval=0.001)
        runner.register("test", lambda ctx, payload: stop.set())
        queue.create_job("test", {}, 5)

        runner.start(stop)

        assert all_jobs() == []
