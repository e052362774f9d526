import sqlite3
from typing import Optional

from .config import DEFAULT_CONFIG, db_path

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    timeout REAL NOT NULL,
    run_at TEXT NOT NULL,
    received_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_run_created ON jobs(run_at, created_at);
CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def connect_db(path: Optional[str] = None, timeout: float = 30.0) -> sqlite3.Connection:
    # Autocommit: every statement is its own transaction, which is what makes the claim atomic.
    conn = sqlite3.connect(path or db_path(), timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


# The claim statement is UPDATE ... RETURNING
MIN_SQLITE_VERSION = (3, 35, 0)


def init_db(path: Optional[str] = None):
    if sqlite3.sqlite_version_info < MIN_SQLITE_VERSION:
        raise RuntimeError(
            f"SQLite {sqlite3.sqlite_version} is too old; "
            f"jobsctl needs {'.'.join(map(str, MIN_SQLITE_VERSION))} or newer"
        )
    conn = connect_db(path)
    try:
        conn.executescript(SCHEMA)
        # seed defaults
        for k, v in DEFAULT_CONFIG.items():
            conn.execute(
                "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
            )
    finally:
        conn.close()
