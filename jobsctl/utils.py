from datetime import datetime, timezone, timedelta
from typing import Optional
import math
import re

# e.g., "20s", "5m", "1h30m", "2d3h", "90m", "  2h  ", "1.5s", "250ms"
DURATION_RE = re.compile(
    r"(?i)^\s*(?:(\d+)\s*d)?\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m(?!s))?\s*(?:(\d+(?:\.\d+)?)\s*s)?\s*(?:(\d+)\s*ms)?\s*$"
)

# Same shape as sqlite's strftime('%Y-%m-%dT%H:%M:%fZ'), so stored values sort chronologically.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"


def parse_duration_to_seconds(s: str) -> float:
    """
    Parse duration strings like '20s', '5m', '1h30m', '2d3h', '250ms' or a bare number of seconds.
    Returns total seconds (float). Raises ValueError on bad input or a negative value.
    """
    if s is None or not str(s).strip():
        raise ValueError("duration string is empty")
    s = str(s)
    try:
        total = float(s)
    except ValueError:
        m = DURATION_RE.match(s)
        if not m or not any(m.groups()):
            raise ValueError(f"Invalid duration format: {s!r}")
        d, h, m_, s_, ms = m.groups()
        total = 0.0
        if d:  total += int(d) * 86400
        if h:  total += int(h) * 3600
        if m_: total += int(m_) * 60
        if s_: total += float(s_)
        if ms: total += int(ms) / 1000
    if not math.isfinite(total) or total < 0:
        raise ValueError("duration must be a finite number of seconds >= 0")
    return total


def format_iso(dt: datetime) -> str:
    """UTC timestamp with millisecond precision like '2025-11-06T09:12:34.123Z'."""
    dt = dt.astimezone(timezone.utc)
    return f"{dt.strftime(TIMESTAMP_FORMAT)}.{dt.microsecond // 1000:03d}Z"


def now_iso() -> str:
    return format_iso(datetime.now(timezone.utc))


def iso_in_utc_from_seconds_from_now(seconds: float) -> str:
    """Return UTC time `seconds` from now, in the stored timestamp format."""
    return format_iso(datetime.now(timezone.utc) + timedelta(seconds=seconds))


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return datetime.fromisoformat(s).astimezone(timezone.utc)
