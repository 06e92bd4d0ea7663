import asyncio
import logging
import re
import time
import traceback
from pathlib import Path
from typing import Optional
from uuid import UUID

from etl_orchestrator.api.v1.metrics import JOBS_INFLIGHT, WORKER_LOOP_ERRORS_TOTAL
from etl_orchestrator.db.models import Job
from etl_orchestrator.domain.errors import ExitCodeError, LaunchError, RunTimeoutError, StorageError
from etl_orchestrator.domain.params import RunParams
from etl_orchestrator.domain.states import JobStatus
from etl_orchestrator.services.job_store import JobStore
from etl_orchestrator.services.process_supervisor import TIMEOUT_EXIT_CODE, ProcessSupervisor
from etl_orchestrator.settings import Settings

logger = logging.getLogger(__name__)

_UNSAFE_PATH_CHARS = re.compile(r"[^\w.-]")


class WorkerPool:
    """
    Turns queued jobs into finished ones.

    A single polling loop claims jobs from the store and hands each one to its
    own task. A semaphore caps the number of those tasks; a slot is taken
    before every claim and given back when the job task is done, whatever
    the outcome.
    """

    def __init__(self, store: JobStore, supervisor: ProcessSupervisor, settings: Settings):
        self.store = store
        self.supervisor = supervisor
        self.settings = settings
        self.max_concurrent = settings.WORKER_MAX_CONCURRENT
        self.poll_interval = settings.poll_interval

        self._slots = asyncio.Semaphore(self.max_concurrent)
        self._shutdown = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._jobs: set[asyncio.Task] = set()

        self.active_count = 0
        self.peak_active = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        if not self.settings.WORKER_ENABLED:
            logger.info("Worker pool disabled; not starting.")
            return
        if self.running:
            return
        self._shutdown.clear()
        self._task = asyncio.create_task(self._loop(), name="etl-worker-pool")
        logger.info(
            "Worker pool started (max_concurrent=%s, poll_interval=%.2fs).",
            self.max_concurrent,
            self.poll_interval,
        )

    async def stop(self):
        """
        Stops claiming, signals running programs to stop and waits (bounded by
        SHUTDOWN_GRACE_SECONDS) for their jobs to record a final status.
        """
        self._shutdown.set()
        grace = self.settings.SHUTDOWN_GRACE_SECONDS

        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("Worker loop did not stop within %ss; cancelled.", grace)
            self._task = None

        if self._jobs:
            _, pending = await asyncio.wait(set(self._jobs), timeout=grace)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("%d job(s) still running after %ss; abandoned.", len(pending), grace)

        logger.info("Worker pool stopped.")

    async def _loop(self):
        while not self._shutdown.is_set():
            await self._slots.acquire()
            if self._shutdown.is_set():
                self._slots.release()
                break

            try:
                job = await self.store.try_claim()
            except Exception as e:
                self._slots.release()
                WORKER_LOOP_ERRORS_TOTAL.inc()
                logger.error(f"Error claiming job: {e}", exc_info=not isinstance(e, StorageError))
                await self._sleep(self.poll_interval)
                continue

            if job is None:
                self._slots.release()
                await self._sleep(self.poll_interval)
                continue

            self._dispatch(job)

    def _dispatch(self, job: Job):
        task = asyncio.create_task(self.run_job(job), name=f"etl-job-{job.id}")
        self._jobs.add(task)
        task.add_done_callback(self._on_job_done)

    def _on_job_done(self, task: asyncio.Task):
        self._jobs.discard(task)
        self._slots.release()
        if not task.cancelled() and task.exception() is not None:
            logger.error("Job task %s crashed", task.get_name(), exc_info=task.exception())

    async def _sleep(self, seconds: float):
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def log_path_for(self, params: RunParams, job_id: UUID) -> str:
        period = _UNSAFE_PATH_CHARS.sub("_", params.period)
        q = _UNSAFE_PATH_CHARS.sub("_", params.q)
        return str(Path(self.settings.LOGS_DIR) / f"{period}_{q}_{job_id}.log")

    async def run_job(self, job: Job):
        """
        Executes one claimed job and records its terminal status. Never raises:
        any error ends up in the job's `error` field.
        """
        self.active_count += 1
        self.peak_active = max(self.peak_active, self.active_count)
        JOBS_INFLIGHT.inc()

        log_path: Optional[str] = None
        cancel_event = asyncio.Event()
        watcher: Optional[asyncio.Task] = None
        try:
            params = RunParams.from_document(job.params)
            log_path = self.log_path_for(params, job.id)
            watcher = asyncio.create_task(self._watch_cancellation(job.id, cancel_event))

            logger.info(f"Running job {job.id} ({job.job_type} {params.period}/{params.q})")
            started = time.monotonic()
            exit_code = await self.supervisor.run(
                self.settings.PYTHON_EXECUTABLE,
                self.settings.PYTHON_SCRIPT,
                params.to_args(),
                log_path,
                self.settings.RUN_TIMEOUT_SECONDS,
                cancel_event,
            )

            if exit_code == 0:
                await self.store.mark_succeeded(job.id, log_path)
                logger.info(f"Job {job.id} succeeded")
            elif exit_code == TIMEOUT_EXIT_CODE:
                error = RunTimeoutError(
                    self.settings.RUN_TIMEOUT_SECONDS,
                    time.monotonic() - started,
                    reason=self._stop_reason(cancel_event),
                    exit_code=exit_code,
                )
                await self.store.mark_failed(job.id, log_path, str(error))
                logger.warning(f"Job {job.id} failed: {error}")
            else:
                error = ExitCodeError(exit_code)
                await self.store.mark_failed(job.id, log_path, str(error))
                logger.warning(f"Job {job.id} failed: {error}")

        except Exception as e:
            if isinstance(e, LaunchError):
                log_path = None
            logger.error(f"Job {job.id} failed: {type(e).__name__}: {e}")
            try:
                await self.store.mark_failed(job.id, log_path, traceback.format_exc())
            except Exception as store_error:
                logger.error("Could not record failure of job %s: %s", job.id, store_error)

        finally:
            self.active_count -= 1
            JOBS_INFLIGHT.dec()
            if watcher is not None:
                await self._stop_watcher(watcher, job.id)

    def _stop_reason(self, cancel_event: asyncio.Event) -> str:
        if not cancel_event.is_set():
            return "timed out"
        if self._shutdown.is_set():
            return "stopped at shutdown"
        return "canceled"

    @staticmethod
    async def _stop_watcher(watcher: asyncio.Task, job_id: UUID):
        watcher.cancel()
        try:
            await watcher
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Cancellation watcher of job %s crashed", job_id)

    async def _watch_cancellation(self, job_id: UUID, cancel_event: asyncio.Event):
        # Sets cancel_event on shutdown, or once the job has been canceled
        # through the store by someone else.
        while not cancel_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self.poll_interval)
                logger.info("Shutdown requested; stopping job %s", job_id)
                cancel_event.set()
                return
            except asyncio.TimeoutError:
                pass

            try:
                job = await self.store.find(job_id)
            except StorageError as e:
                logger.warning("Cancellation check for job %s failed: %s", job_id, e)
                continue

            if job is not None and job.status == JobStatus.CANCELED:
                logger.info("Job %s was canceled; stopping its program", job_id)
                cancel_event.set()
