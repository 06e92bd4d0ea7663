import logging
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from etl_orchestrator.api.v1.metrics import JOBS_ENQUEUED_TOTAL
from etl_orchestrator.db.models import ACTIVE_KEY_COLUMNS, ACTIVE_KEY_INDEX, Job
from etl_orchestrator.domain.errors import ConflictError
from etl_orchestrator.domain.states import ACTIVE_STATUSES, JobStatus

logger = logging.getLogger(__name__)


def identity_of(params: dict[str, Any]) -> tuple[str, str]:
    """Extracts the (period, q) pair of a parameter document."""
    period = params.get("period")
    q = params.get("q")
    return ("" if period is None else str(period), "" if q is None else str(q))


def is_active_key_violation(error: IntegrityError) -> bool:
    # Postgres names the violated index, SQLite lists its columns
    message = str(error.orig)
    columns = ", ".join(f"{Job.__tablename__}.{c}" for c in ACTIVE_KEY_COLUMNS)
    return ACTIVE_KEY_INDEX in message or f"UNIQUE constraint failed: {columns}" in message


async def enqueue_job(session: AsyncSession, job_type: str, params: dict[str, Any]) -> Job:
    """
    Inserts a new QUEUED job.

    The partial unique index on (job_type, period, q) rejects a second active
    job for the same key; that rejection is reported as ConflictError and the
    caller must roll its transaction back.
    """
    period, q = identity_of(params)
    job = Job(
        job_type=job_type,
        params=params,
        period=period,
        q=q,
        status=JobStatus.QUEUED,
    )
    session.add(job)
    try:
        await session.flush()
    except IntegrityError as e:
        if not is_active_key_violation(e):
            raise
        logger.info("Enqueue rejected by active-run index for (%s, %s, %s)", job_type, period, q)
        raise ConflictError(job_type, period, q) from e

    JOBS_ENQUEUED_TOTAL.labels(job_type=job_type).inc()
    return job


async def exists_active(session: AsyncSession, job_type: str, period: str, q: str) -> bool:
    stmt = select(func.count()).select_from(Job).where(
        Job.job_type == job_type,
        Job.period == period,
        Job.q == q,
        Job.status.in_(ACTIVE_STATUSES),
    )
    count = (await session.execute(stmt)).scalar() or 0
    return count > 0


async def find_job(session: AsyncSession, job_id: UUID) -> Job | None:
    return await session.get(Job, job_id)
