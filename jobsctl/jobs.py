import logging
import os
import shlex
import subprocess
from typing import Dict

from .context import JobContext, JobFailed, DeadlineExceeded
from .registry import JobRegistry

logger = logging.getLogger(__name__)

HEALTH = "health"
COMMAND = "command"


def health(ctx: JobContext, payload: Dict[str, str]):
    """No-op job; a successful run proves the runner is polling."""


def run_command(ctx: JobContext, payload: Dict[str, str]):
    cmd = payload.get("cmd", "")
    if not cmd.strip():
        raise JobFailed("payload is missing 'cmd'")
    ctx.check()

    args = shlex.split(cmd, posix=(os.name != "nt"))
    try:
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=ctx.remaining(),
        )
    except subprocess.TimeoutExpired:
        raise DeadlineExceeded(f"Command timed out after {ctx.timeout}s: {cmd}")
    except FileNotFoundError:
        raise JobFailed(f"Command not found: {cmd}")

    if result.stdout:
        logger.info("[%s] %s", cmd, result.stdout.strip())
    if result.stderr:
        logger.warning("[%s] %s", cmd, result.stderr.strip())
    if result.returncode != 0:
        raise JobFailed(f"Command exited with code {result.returncode}: {cmd}")


def register_builtin_jobs(registry: JobRegistry):
    registry.register(HEALTH, health)
    registry.register(COMMAND, run_command)
