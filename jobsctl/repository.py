import json
import sqlite3
from typing import Dict, Iterable, List, Mapping, Optional

from .utils import now_iso, iso_in_utc_from_seconds_from_now
from .models import Job, PENDING, SCHEDULED, CLAIMED, EXPIRED, STATES
from .config import ALLOWED_CONFIG_KEYS, RunnerSettings

# received_at + timeout, in the same fixed format as every other timestamp column
LEASE_END_SQL = "strftime('%Y-%m-%dT%H:%M:%fZ', received_at, printf('+%.3f seconds', timeout))"

CLAIM_SQL = f"""
UPDATE jobs
SET received_at = :now, updated_at = :now
WHERE id = (
    SELECT id FROM jobs
    WHERE run_at <= :now AND (received_at IS NULL OR {LEASE_END_SQL} <= :now)
    ORDER BY created_at ASC, id ASC
    LIMIT 1
)
RETURNING *
"""

STATE_FILTERS = {
    PENDING: "received_at IS NULL AND run_at <= :now",
    SCHEDULED: "received_at IS NULL AND run_at > :now",
    CLAIMED: f"received_at IS NOT NULL AND {LEASE_END_SQL} > :now",
    EXPIRED: f"received_at IS NOT NULL AND {LEASE_END_SQL} <= :now",
}


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    # Reject values the runner would refuse to start with
    RunnerSettings.from_config({**get_config(conn), key: str(value)})
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )


# ---------- Jobs: enqueue / claim / remove ----------
def enqueue_job(
    conn,
    *,
    name: str,
    payload: Optional[Mapping[str, str]] = None,
    timeout: float,
    delay: float = 0,
) -> int:
    if not name or not name.strip():
        raise ValueError("Job name cannot be empty.")
    if timeout is None or timeout < 0:
        raise ValueError("timeout must be >= 0 seconds")
    if delay < 0:
        raise ValueError("delay must be >= 0 seconds")

    ts = now_iso()
    run_at = iso_in_utc_from_seconds_from_now(delay) if delay else ts
    data = json.dumps({str(k): str(v) for k, v in (payload or {}).items()}, sort_keys=True)

    try:
        with conn:
            cur = conn.execute(
                """INSERT INTO jobs (name, payload, timeout, run_at, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (name, data, round(float(timeout), 3), run_at, ts, ts),
            )
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error while inserting job: {e}")
    return int(cur.lastrowid)


def claim_next(conn, now: Optional[str] = None) -> Optional[Job]:
    """Stamp received_at on the oldest eligible job and return it, in one statement."""
    try:
        rows = conn.execute(CLAIM_SQL, {"now": now or now_iso()}).fetchall()
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error while claiming job: {e}")
    if not rows:
        return None
    return Job.from_row(rows[0])


def remove_job(conn, job_id: int):
    try:
        with conn:
            conn.execute("DELETE FROM jobs WHERE id=?", (job_id,))
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error while deleting job {job_id}: {e}")


# ---------- Queries ----------
def get_job(conn, job_id: int) -> Optional[Job]:
    row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
    return Job.from_row(row) if row else None


def list_jobs(conn, state: Optional[str] = None, now: Optional[str] = None) -> List[Job]:
    if state and state not in STATE_FILTERS:
        raise ValueError(f"Unknown state {state!r}; expected one of {', '.join(STATES)}")
    where = f"WHERE {STATE_FILTERS[state]}" if state else ""
    rows: Iterable[sqlite3.Row] = conn.execute(
        f"SELECT * FROM jobs {where} ORDER BY created_at ASC, id ASC",
        {"now": now or now_iso()},
    ).fetchall()
    return [Job.from_row(r) for r in rows]


def counts(conn, now: Optional[str] = None) -> Dict[str, int]:
    params = {"now": now or now_iso()}
    out = {}
    for s in STATES:
        out[s] = conn.execute(
            f"SELECT COUNT(1) AS c FROM jobs WHERE {STATE_FILTERS[s]}",
            params,
        ).fetchone()["c"]
    out["total"] = conn.execute("SELECT COUNT(1) AS c FROM jobs").fetchone()["c"]
    return out
