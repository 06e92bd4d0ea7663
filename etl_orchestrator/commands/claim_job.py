import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import Update, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from etl_orchestrator.api.v1.metrics import JOB_CLAIM_TOTAL, JOB_START_DELAY
from etl_orchestrator.db.models import Job, utcnow
from etl_orchestrator.domain.states import JobStatus

logger = logging.getLogger(__name__)


def build_claim_statement(now: datetime) -> Update:
    """
    One statement does the whole claim:

        UPDATE etl_jobs SET status='running', started_at=now, attempt=attempt+1
        WHERE id = (SELECT id FROM etl_jobs WHERE status='queued'
                    ORDER BY created_at LIMIT 1 FOR UPDATE SKIP LOCKED)
          AND status = 'queued'
        RETURNING *

    Concurrent claimers skip rows another transaction has locked instead of
    waiting on them, so each queued job goes to exactly one claimer. The
    status guard on the outer UPDATE keeps the statement safe on backends
    without row locks (SQLite serialises the whole statement instead).
    """
    candidate = aliased(Job, name="candidate")
    next_queued = (
        select(candidate.id)
        .where(candidate.status == JobStatus.QUEUED)
        .order_by(candidate.created_at.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )

    return (
        update(Job)
        .where(Job.id == next_queued, Job.status == JobStatus.QUEUED)
        .values(
            status=JobStatus.RUNNING,
            started_at=now,
            attempt=Job.attempt + 1,
        )
        .returning(Job)
        .execution_options(synchronize_session=False)
    )


async def claim_job(session: AsyncSession) -> Optional[Job]:
    """Atomically claims the oldest QUEUED job, or returns None."""
    now = utcnow()
    result = await session.execute(build_claim_statement(now))
    job = result.scalar_one_or_none()

    if not job:
        JOB_CLAIM_TOTAL.labels(result="empty").inc()
        return None

    JOB_CLAIM_TOTAL.labels(result="claimed").inc()
    if job.created_at:
        created_at = job.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=now.tzinfo)
        delay = (now - created_at).total_seconds()
        if delay >= 0:
            JOB_START_DELAY.observe(delay)

    logger.debug("Claimed job %s (attempt %s)", job.id, job.attempt)
    return job
