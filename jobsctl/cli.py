import json
import logging
import threading
from typing import Dict, Tuple

import click
from prometheus_client import start_http_server

from .config import RunnerSettings, db_path
from .db import init_db, connect_db
from .jobs import HEALTH
from .models import STATES
from .repository import list_jobs, counts, get_config, set_config
from .store import JobQueue
from .utils import parse_duration_to_seconds
from .worker import Runner, setup_signal_handlers


def _parse_payload(pairs: Tuple[str, ...]) -> Dict[str, str]:
    payload = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected key=value, got {pair!r}", param_hint="--payload")
        payload[key.strip()] = value
    return payload


def _duration(value, param_hint: str) -> float:
    try:
        return parse_duration_to_seconds(value)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint=param_hint)


def _settings() -> RunnerSettings:
    conn = connect_db()
    try:
        return RunnerSettings.from_config(get_config(conn))
    finally:
        conn.close()


@click.group(help="jobsctl: durable job queue and runner")
@click.option("-v", "--verbose", is_flag=True, help="Log at DEBUG level")
def cli(verbose):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    # Ensure DB/schema exist before any command runs
    init_db()


# ---------- Enqueue ----------
@cli.command("enqueue", help="Add a new job to the queue")
@click.argument("name")
@click.option("-p", "--payload", "pairs", multiple=True, help="Payload entry as key=value (repeatable)")
@click.option("--timeout", "timeout_str", default=None,
              help="Per-attempt timeout, e.g. 30s, 5m (default: default_timeout_seconds)")
@click.option("--delay", "delay_str", default=None,
              help="Run after a delay, e.g. 20s, 5m, 1h30m, 2d3h")
def enqueue_cmd(name, pairs, timeout_str, delay_str):
    payload = _parse_payload(pairs)
    timeout = _duration(timeout_str, "--timeout") if timeout_str else _settings().default_timeout
    delay = _duration(delay_str, "--delay") if delay_str else 0

    try:
        job_id = JobQueue(db_path()).create_job_for_later(name, payload, timeout, delay)
    except (ValueError, RuntimeError) as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    click.secho(
        f"Enqueued job {job_id} -> {name} (timeout={timeout}s, "
        f"{'delay=' + delay_str if delay_str else 'run_at=now'})",
        fg="green"
    )


@cli.command("health", help="Enqueue a no-op health job")
def health_cmd():
    job_id = JobQueue(db_path()).create_job(HEALTH, {}, _settings().default_timeout)
    click.secho(f"Enqueued job {job_id} -> {HEALTH}", fg="green")


# ---------- Workers ----------
@cli.group("worker", help="Run jobs")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--limit", type=int, default=None, help="Max jobs running at once (default: job_limit)")
@click.option("--poll-interval", type=float, default=None,
              help="Seconds between polls (default: poll_interval_seconds)")
@click.option("--metrics-port", type=int, default=None, help="Serve Prometheus metrics on this port")
def worker_start(limit, poll_interval, metrics_port):
    try:
        settings = _settings()
    except ValueError as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    if limit is not None and limit < 1:
        raise click.BadParameter("must be >= 1", param_hint="--limit")
    if poll_interval is not None and poll_interval <= 0:
        raise click.BadParameter("must be > 0", param_hint="--poll-interval")

    runner = Runner(
        JobQueue(db_path()),
        job_limit=limit or settings.job_limit,
        poll_interval=poll_interval or settings.poll_interval,
        delete_timeout=settings.delete_timeout,
    )
    if metrics_port is not None:
        start_http_server(metrics_port, registry=runner.metrics.registry)
        click.secho(f"Serving metrics on :{metrics_port}/metrics", fg="cyan")

    stop = threading.Event()
    setup_signal_handlers(stop)
    click.secho("Starting runner. Press Ctrl+C to stop…", fg="cyan")
    runner.start(stop)
    click.secho("Runner stopped.", fg="yellow")


# ---------- Jobs ----------
@cli.command("list")
@click.option("--state", type=click.Choice(list(STATES)), default=None)
def list_cmd(state):
    conn = connect_db()
    try:
        jobs = list_jobs(conn, state=state)
    finally:
        conn.close()

    if not jobs:
        click.echo("No jobs.")
        return

    for j in jobs:
        received = j.received_at.isoformat() if j.received_at else "-"
        click.echo(
            f"{j.id:>8} | {j.name:<16} | timeout={j.timeout}s | run_at={j.run_at.isoformat()} "
            f"| received={received} | payload={json.dumps(j.payload, sort_keys=True)}"
        )


@cli.command("status")
def status_cmd():
    conn = connect_db()
    try:
        click.echo(json.dumps(counts(conn), indent=2))
    finally:
        conn.close()


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
def config_get():
    conn = connect_db()
    try:
        click.echo(json.dumps(get_config(conn), indent=2))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
def config_set_cmd(key, value):
    conn = connect_db()
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    finally:
        conn.close()


def main():
    cli()
