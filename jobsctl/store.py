from contextlib import closing
from typing import Mapping, Optional

from .config import db_path
from .db import connect_db, init_db
from .models import Job
from . import repository


class JobQueue:
    """
    The persisted job queue the runner polls.

    Every call opens its own connection, so one JobQueue can be shared by the
    poll loop and the job threads, and several processes can share one file.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path or db_path()
        init_db(self.path)

    def create_job(self, name: str, payload: Optional[Mapping[str, str]], timeout: float) -> int:
        """Enqueue a job to run now."""
        return self.create_job_for_later(name, payload, timeout, 0)

    def create_job_for_later(
        self, name: str, payload: Optional[Mapping[str, str]], timeout: float, delay: float
    ) -> int:
        with closing(connect_db(self.path)) as conn:
            return repository.enqueue_job(conn, name=name, payload=payload, timeout=timeout, delay=delay)

    def claim_next(self, now: Optional[str] = None) -> Optional[Job]:
        """Claim the oldest eligible job, or return None when nothing is eligible."""
        with closing(connect_db(self.path)) as conn:
            return repository.claim_next(conn, now=now)

    def remove(self, job_id: int, timeout: float = 5.0):
        """Delete a job. Unknown ids are not an error."""
        with closing(connect_db(self.path, timeout=timeout)) as conn:
            repository.remove_job(conn, job_id)
