import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from etl_orchestrator.api.v1.metrics import JOB_CONFLICTS_TOTAL
from etl_orchestrator.commands.cancel_job import cancel_job
from etl_orchestrator.commands.claim_job import claim_job
from etl_orchestrator.commands.enqueue_job import enqueue_job, exists_active, find_job, identity_of
from etl_orchestrator.commands.finish_job import mark_failed, mark_succeeded
from etl_orchestrator.db.models import Job
from etl_orchestrator.domain.errors import ConflictError, StorageError

logger = logging.getLogger(__name__)


class JobStore:
    """
    Durable job state.

    Every operation runs in its own short transaction, so callers never hold
    a session across an external program run. Database failures surface as
    StorageError; duplicate active runs as ConflictError.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except (SQLAlchemyError, OSError) as e:
            raise StorageError(f"{operation} failed: {e}") from e

    async def enqueue(self, job_type: str, params: dict[str, Any]) -> UUID:
        async with self._transaction("enqueue") as session:
            job = await enqueue_job(session, job_type, params)
        logger.info("Enqueued job %s (%s %s/%s)", job.id, job_type, job.period, job.q)
        return job.id

    async def exists_active(self, job_type: str, period: str, q: str) -> bool:
        async with self._transaction("exists_active") as session:
            return await exists_active(session, job_type, period, q)

    async def submit(self, job_type: str, params: dict[str, Any]) -> UUID:
        """
        Enqueues a run unless one with the same (job_type, period, q) is
        already queued or running. Both the pre-check and a race lost at the
        unique index raise ConflictError.
        """
        period, q = identity_of(params)
        try:
            if await self.exists_active(job_type, period, q):
                raise ConflictError(job_type, period, q)
            return await self.enqueue(job_type, params)
        except ConflictError:
            JOB_CONFLICTS_TOTAL.labels(job_type=job_type).inc()
            raise

    async def try_claim(self) -> Optional[Job]:
        async with self._transaction("claim") as session:
            job = await claim_job(session)
        if job:
            logger.info("Claimed job %s (attempt %s)", job.id, job.attempt)
        return job

    async def mark_succeeded(self, job_id: UUID, log_path: str) -> bool:
        async with self._transaction("mark_succeeded") as session:
            updated = await mark_succeeded(session, job_id, log_path)
        if not updated:
            logger.info("Job %s is no longer running; success not recorded", job_id)
        return updated

    async def mark_failed(self, job_id: UUID, log_path: Optional[str], error: str) -> bool:
        async with self._transaction("mark_failed") as session:
            updated = await mark_failed(session, job_id, log_path, error)
        if not updated:
            logger.info("Job %s is no longer running; failure not recorded", job_id)
        return updated

    async def cancel(self, job_id: UUID) -> bool:
        async with self._transaction("cancel") as session:
            return await cancel_job(session, job_id)

    async def find(self, job_id: UUID) -> Optional[Job]:
        async with self._transaction("find") as session:
            return await find_job(session, job_id)
