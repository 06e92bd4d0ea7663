from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, Uuid, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from etl_orchestrator.db.session import Base
from etl_orchestrator.domain.states import JobStatus

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
ParamsType = JSON().with_variant(JSONB(), "postgresql")

ACTIVE_PREDICATE = text("status IN ('queued', 'running')")
ACTIVE_KEY_INDEX = "ux_etl_jobs_active_key"
ACTIVE_KEY_COLUMNS = ("job_type", "period", "q")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Job(Base):
    __tablename__ = "etl_jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    status: Mapped[JobStatus] = mapped_column(String(16), default=JobStatus.QUEUED, index=True)
    job_type: Mapped[str] = mapped_column(String, nullable=False)

    # Parameter document, passed through to the ETL program untouched
    params: Mapped[dict[str, Any]] = mapped_column(ParamsType, default=dict)

    # Idempotency key parts, copied out of params at enqueue time
    period: Mapped[str] = mapped_column(String, nullable=False, default="")
    q: Mapped[str] = mapped_column(String, nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    attempt: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)

    log_path: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        # Claim query: oldest queued first
        Index(
            "ix_etl_jobs_queue",
            "created_at",
            postgresql_where=text("status = 'queued'"),
            sqlite_where=text("status = 'queued'"),
        ),
        # At most one active run per (job_type, period, q)
        Index(
            ACTIVE_KEY_INDEX,
            *ACTIVE_KEY_COLUMNS,
            unique=True,
            postgresql_where=ACTIVE_PREDICATE,
            sqlite_where=ACTIVE_PREDICATE,
        ),
    )

    def __repr__(self) -> str:
        return f"<Job {self.id} {self.job_type} {self.period}/{self.q} {self.status}>"
