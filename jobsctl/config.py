import os
from dataclasses import dataclass
from typing import Dict

DB_ENV_VAR = "JOBSCTL_DB"
DEFAULT_DB_FILE = "jobs.db"

DEFAULT_CONFIG = {
    "poll_interval_seconds": "1",
    "job_limit": "5",
    "default_timeout_seconds": "60",
    "delete_timeout_seconds": "5",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())


def db_path() -> str:
    return os.environ.get(DB_ENV_VAR, DEFAULT_DB_FILE)


def _positive_float(cfg: Dict[str, str], key: str) -> float:
    raw = cfg.get(key, DEFAULT_CONFIG[key])
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{key} must be > 0")
    return value


@dataclass(frozen=True)
class RunnerSettings:
    poll_interval: float = 1.0
    job_limit: int = 5
    default_timeout: float = 60.0
    delete_timeout: float = 5.0

    @classmethod
    def from_config(cls, cfg: Dict[str, str]) -> "RunnerSettings":
        raw_limit = cfg.get("job_limit", DEFAULT_CONFIG["job_limit"])
        try:
            job_limit = int(raw_limit)
        except ValueError:
            raise ValueError(f"job_limit must be an integer, got {raw_limit!r}")
        if job_limit < 1:
            raise ValueError("job_limit must be >= 1")

        return cls(
            poll_interval=_positive_float(cfg, "poll_interval_seconds"),
            job_limit=job_limit,
            default_timeout=_positive_float(cfg, "default_timeout_seconds"),
            delete_timeout=_positive_float(cfg, "delete_timeout_seconds"),
        )
