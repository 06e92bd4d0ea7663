import logging
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from etl_orchestrator.api.v1.metrics import JOB_COMPLETE_TOTAL
from etl_orchestrator.db.models import Job, utcnow
from etl_orchestrator.domain.states import ACTIVE_STATUSES, JobStatus

logger = logging.getLogger(__name__)


async def cancel_job(session: AsyncSession, job_id: UUID) -> bool:
    """
    Moves a QUEUED or RUNNING job to CANCELED.
    Terminal jobs are left alone; returns False for them (and for unknown ids).
    A running job's program is stopped by the worker that owns it, not here.
    """
    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status.in_(ACTIVE_STATUSES))
        .values(status=JobStatus.CANCELED, finished_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    canceled = result.rowcount > 0
    if canceled:
        JOB_COMPLETE_TOTAL.labels(status=JobStatus.CANCELED).inc()
        logger.info("Job %s canceled", job_id)
    return canceled
