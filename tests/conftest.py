import threading
from contextlib import closing

import pytest

from jobsctl.db import connect_db
from jobsctl.repository import list_jobs
from jobsctl.store import JobQueue


@pytest.fixture
def db_file(tmp_path):
    return str(tmp_path / "jobs.db")


@pytest.fixture
def queue(db_file):
    return JobQueue(db_file)


@pytest.fixture
def stop():
    return threading.Event()


@pytest.fixture
def all_jobs(db_file):
    def _all_jobs():
        with closing(connect_db(db_file)) as conn:
            return list_jobs(conn)
    return _all_jobs
