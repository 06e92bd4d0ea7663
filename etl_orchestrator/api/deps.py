from typing import Annotated

from fastapi import Depends, Request

from etl_orchestrator.services.job_store import JobStore
from etl_orchestrator.settings import Settings


def get_job_store(request: Request) -> JobStore:
    return request.app.state.store


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


# Dependencies for objects owned by the app lifespan
Store = Annotated[JobStore, Depends(get_job_store)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
