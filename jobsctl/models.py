import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional

from .utils import parse_iso

# Lease states, derived from run_at/received_at rather than stored
PENDING = "pending"      # never claimed
CLAIMED = "claimed"      # lease active
EXPIRED = "expired"      # lease lapsed, eligible again
SCHEDULED = "scheduled"  # run_at still in the future

STATES = (PENDING, SCHEDULED, CLAIMED, EXPIRED)


@dataclass
class Job:
    id: int
    name: str
    payload: Dict[str, str] = field(default_factory=dict)
    timeout: float = 0.0
    run_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def lease_expires_at(self) -> Optional[datetime]:
        if self.received_at is None:
            return None
        return self.received_at + timedelta(seconds=self.timeout)

    @classmethod
    def from_row(cls, row) -> "Job":
        return cls(
            id=int(row["id"]),
            name=row["name"],
            payload=json.loads(row["payload"] or "{}"),
            timeout=float(row["timeout"]),
            run_at=parse_iso(row["run_at"]),
            received_at=parse_iso(row["received_at"]),
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )
