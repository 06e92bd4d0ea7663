import os
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Response, status
from fastapi.responses import FileResponse
from pydantic import BaseModel, ConfigDict

from etl_orchestrator.api.deps import AppSettings, Store
from etl_orchestrator.domain.errors import ConflictError, StorageError
from etl_orchestrator.domain.params import RunParams
from etl_orchestrator.domain.states import JobStatus

PREFIX = "/api/v1/runs"

router = APIRouter()


class RunCreate(RunParams):
    job_type: Optional[str] = None


class RunCreated(BaseModel):
    run_id: UUID


class RunResponse(BaseModel):
    id: UUID
    status: JobStatus
    job_type: str
    params: dict[str, Any]
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    attempt: int
    max_attempts: int
    log_path: Optional[str] = None
    error: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


def _unavailable(e: StorageError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.post("", response_model=RunCreated, status_code=status.HTTP_201_CREATED)
async def create_run(body: RunCreate, store: Store, config: AppSettings, response: Response):
    job_type = body.job_type or config.DEFAULT_JOB_TYPE
    params = body.model_dump(mode="json", exclude={"job_type"})
    try:
        run_id = await store.submit(job_type, params)
    except ConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except StorageError as e:
        raise _unavailable(e)

    response.headers["Location"] = f"{PREFIX}/{run_id}"
    return RunCreated(run_id=run_id)


@router.get("/{run_id}", response_model=RunResponse)
async def get_run(run_id: UUID, store: Store):
    try:
        job = await store.find(run_id)
    except StorageError as e:
        raise _unavailable(e)
    if not job:
        raise HTTPException(status_code=404, detail="Run not found")
    return job


@router.get("/{run_id}/logs", response_class=FileResponse)
async def get_run_logs(run_id: UUID, store: Store):
    try:
        job = await store.find(run_id)
    except StorageError as e:
        raise _unavailable(e)
    if not job or not job.log_path or not os.path.isfile(job.log_path):
        raise HTTPException(status_code=404, detail="Log not found")
    return FileResponse(job.log_path, media_type="text/plain; charset=utf-8")


@router.post("/{run_id}/cancel", response_model=RunCreated, status_code=status.HTTP_202_ACCEPTED)
async def cancel_run(run_id: UUID, store: Store):
    try:
        job = await store.find(run_id)
        if not job:
            raise HTTPException(status_code=404, detail="Run not found")
        # Terminal runs are left as they are; the request is still accepted
        await store.cancel(run_id)
    except StorageError as e:
        raise _unavailable(e)
    return RunCreated(run_id=run_id)
