"""
Shared fixtures.

The store runs against a file-backed SQLite database (aiosqlite) so tests need
no Postgres server; the claim and uniqueness guarantees hold on both.
"""

import asyncio
import sys
from pathlib import Path

import pytest
import pytest_asyncio

from etl_orchestrator.db.session import build_engine, build_session_factory, create_tables
from etl_orchestrator.domain.states import TERMINAL_STATUSES
from etl_orchestrator.services.job_store import JobStore
from etl_orchestrator.settings import Settings


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        SQLALCHEMY_DATABASE_URI=f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}",
        LOGS_DIR=str(tmp_path / "logs"),
        PYTHON_EXECUTABLE=sys.executable,
        PYTHON_SCRIPT=str(tmp_path / "etl.py"),
        RUN_TIMEOUT_SECONDS=10,
        WORKER_ENABLED=True,
        WORKER_POLL_MILLIS=20,
        WORKER_MAX_CONCURRENT=2,
        SHUTDOWN_GRACE_SECONDS=5,
    )


@pytest_asyncio.fixture
async def engine(settings):
    engine = build_engine(settings.SQLALCHEMY_DATABASE_URI)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def store(engine) -> JobStore:
    return JobStore(build_session_factory(engine))


def monthly(period="202507", q="I2", **extra) -> dict:
    return {"period": period, "q": q, **extra}


async def wait_for_status(store: JobStore, job_id, statuses=TERMINAL_STATUSES, timeout=10.0):
    """Polls the store until the job reaches one of `statuses`."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        job = await store.find(job_id)
        if job is not None and job.status in statuses:
            return job
        if loop.time() > deadline:
            raise AssertionError(f"job {job_id} still {job.status if job else 'missing'} after {timeout}s")
        await asyncio.sleep(0.02)
