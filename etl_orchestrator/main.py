import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from etl_orchestrator.api.v1.metrics import router as metrics_router
from etl_orchestrator.api.v1.runs import PREFIX as RUNS_PREFIX
from etl_orchestrator.api.v1.runs import router as runs_router
from etl_orchestrator.db.session import build_engine, build_session_factory, create_tables
from etl_orchestrator.scheduler.worker_pool import WorkerPool
from etl_orchestrator.services.job_store import JobStore
from etl_orchestrator.services.process_supervisor import ProcessSupervisor
from etl_orchestrator.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        configure_logging(settings.LOG_LEVEL)
        engine = build_engine(settings.SQLALCHEMY_DATABASE_URI)
        if settings.CREATE_TABLES_ON_STARTUP:
            await create_tables(engine)

        store = JobStore(build_session_factory(engine))
        pool = WorkerPool(store, ProcessSupervisor(), settings)
        app.state.settings = settings
        app.state.store = store
        app.state.worker_pool = pool

        await pool.start()
        logger.info("%s ready.", settings.PROJECT_NAME)

        yield

        # Shutdown
        await pool.stop()
        await engine.dispose()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        lifespan=lifespan,
    )

    app.include_router(runs_router, prefix=RUNS_PREFIX, tags=["runs"])
    app.include_router(metrics_router, tags=["metrics"])

    @app.get("/health")
    async def health():
        pool = getattr(app.state, "worker_pool", None)
        return {"status": "ok", "worker_running": bool(pool and pool.running)}

    return app


app = create_app()
