from typing import Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from etl_orchestrator.api.v1.metrics import JOB_COMPLETE_TOTAL
from etl_orchestrator.db.models import Job, utcnow
from etl_orchestrator.domain.states import JobStatus


async def _finish(session: AsyncSession, job_id: UUID, status: JobStatus, **values) -> bool:
    # Only RUNNING jobs move to a terminal state. Repeating the same terminal
    # status is accepted (finished_at is overwritten); a job canceled while it
    # was running keeps its CANCELED status.
    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status.in_((JobStatus.RUNNING, status)))
        .values(status=status, finished_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    updated = result.rowcount > 0
    if updated:
        JOB_COMPLETE_TOTAL.labels(status=status).inc()
    return updated


async def mark_succeeded(session: AsyncSession, job_id: UUID, log_path: str) -> bool:
    return await _finish(session, job_id, JobStatus.SUCCEEDED, log_path=log_path, error=None)


async def mark_failed(
    session: AsyncSession,
    job_id: UUID,
    log_path: Optional[str],
    error: str,
) -> bool:
    return await _finish(session, job_id, JobStatus.FAILED, log_path=log_path, error=error)
