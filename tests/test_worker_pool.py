import asyncio
import re
from pathlib import Path

import pytest

from conftest import monthly, wait_for_status
from etl_orchestrator.domain.errors import LaunchError, StorageError
from etl_orchestrator.domain.states import JobStatus
from etl_orchestrator.scheduler.worker_pool import WorkerPool
from etl_orchestrator.services.process_supervisor import TIMEOUT_EXIT_CODE, ProcessSupervisor


class FakeSupervisor:
    """Stands in for ProcessSupervisor; exit codes are looked up by the run's q."""

    def __init__(self, delay=0.05, exit_codes=None, wait_for_cancel=False):
        self.delay = delay
        self.exit_codes = exit_codes or {}
        self.wait_for_cancel = wait_for_cancel
        self.current = 0
        self.peak = 0
        self.calls = []
        self.started = asyncio.Event()

    async def run(self, executable, script, args, log_path, timeout, cancel_event=None):
        self.calls.append((executable, script, list(args), log_path, timeout))
        self.current += 1
        self.peak = max(self.peak, self.current)
        self.started.set()
        try:
            Path(log_path).parent.mkdir(parents=True, exist_ok=True)
            Path(log_path).write_text("fake run\n")
            if self.wait_for_cancel:
                await asyncio.wait_for(cancel_event.wait(), timeout=10)
                return TIMEOUT_EXIT_CODE
            await asyncio.sleep(self.delay)
            q = args[args.index("--q") + 1]
            result = self.exit_codes.get(q, 0)
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            self.current -= 1


class FlakyStore:
    """Delegates to a real store but fails the first `failures` claims."""

    def __init__(self, store, failures=2):
        self._store = store
        self.failures = failures

    async def try_claim(self):
        if self.failures:
            self.failures -= 1
            raise StorageError("claim failed: connection refused")
        return await self._store.try_claim()

    def __getattr__(self, name):
        return getattr(self._store, name)


class BrokenLookupStore(FlakyStore):
    """Claims and finishes through the real store; every lookup blows up."""

    def __init__(self, store):
        super().__init__(store, failures=0)
        self.lookups = 0

    async def find(self, job_id):
        self.lookups += 1
        raise RuntimeError("unexpected lookup failure")


@pytest.fixture
def make_pool(settings, store):
    pools = []

    def factory(supervisor, **overrides):
        pool_store = overrides.pop("_store", store)
        pool_settings = settings.model_copy(update=overrides) if overrides else settings
        pool = WorkerPool(pool_store, supervisor, pool_settings)
        pools.append(pool)
        return pool

    yield factory


async def run_until_done(pool, store, job_ids, timeout=10.0):
    await pool.start()
    try:
        return [await wait_for_status(store, job_id, timeout=timeout) for job_id in job_ids]
    finally:
        await pool.stop()


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_exit_zero_succeeds_with_log_path(self, make_pool, store, settings):
        supervisor = FakeSupervisor()
        pool = make_pool(supervisor)
        job_id = await store.enqueue("monthly_load", monthly(dryRun=True, steps=["load"]))

        [job] = await run_until_done(pool, store, [job_id])

        assert job.status == JobStatus.SUCCEEDED
        assert job.log_path == str(Path(settings.LOGS_DIR) / f"202507_I2_{job_id}.log")
        assert job.error is None
        executable, script, args, log_path, timeout = supervisor.calls[0]
        assert (executable, script) == (settings.PYTHON_EXECUTABLE, settings.PYTHON_SCRIPT)
        assert args == ["--period", "202507", "--q", "I2", "--dry-run", "--steps", "load"]
        assert timeout == settings.RUN_TIMEOUT_SECONDS

    @pytest.mark.asyncio
    async def test_non_zero_exit_fails_with_code(self, make_pool, store):
        pool = make_pool(FakeSupervisor(exit_codes={"I2": 3}))
        job_id = await store.enqueue("monthly_load", monthly())

        [job] = await run_until_done(pool, store, [job_id])

        assert job.status == JobStatus.FAILED
        assert job.error == "Exit code 3"
        assert job.log_path is not None

    @pytest.mark.asyncio
    async def test_timeout_exit_fails_with_sentinel(self, make_pool, store):
        pool = make_pool(FakeSupervisor(exit_codes={"I2": TIMEOUT_EXIT_CODE}))
        job_id = await store.enqueue("monthly_load", monthly())

        [job] = await run_until_done(pool, store, [job_id])

        assert job.status == JobStatus.FAILED
        assert "timed out" in job.error
        assert "exit code 124" in job.error
        assert job.log_path is not None

    @pytest.mark.asyncio
    async def test_launch_failure_fails_without_log_path(self, make_pool, store):
        pool = make_pool(FakeSupervisor(exit_codes={"I2": LaunchError("python3", "not found")}))
        job_id = await store.enqueue("monthly_load", monthly())

        [job] = await run_until_done(pool, store, [job_id])

        assert job.status == JobStatus.FAILED
        assert job.log_path is None
        assert "LaunchError" in job.error

    @pytest.mark.asyncio
    async def test_malformed_params_fail_the_job(self, make_pool, store):
        supervisor = FakeSupervisor()
        pool = make_pool(supervisor)
        job_id = await store.enqueue("monthly_load", {"period": "202507"})

        [job] = await run_until_done(pool, store, [job_id])

        assert job.status == JobStatus.FAILED
        assert "InvalidParamsError" in job.error
        assert job.log_path is None
        assert supervisor.calls == []

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_others(self, make_pool, store):
        pool = make_pool(FakeSupervisor(exit_codes={"Q1": RuntimeError("boom"), "Q2": 2}))
        ids = [await store.enqueue("monthly_load", monthly(q=f"Q{i}")) for i in range(4)]

        jobs = await run_until_done(pool, store, ids)

        assert [j.status for j in jobs] == [
            JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.FAILED, JobStatus.SUCCEEDED,
        ]
        assert "boom" in jobs[1].error


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_never_exceeds_max_concurrent(self, make_pool, store):
        supervisor = FakeSupervisor(delay=0.05)
        pool = make_pool(supervisor, WORKER_MAX_CONCURRENT=2)
        ids = [await store.enqueue("monthly_load", monthly(q=f"Q{i}")) for i in range(10)]

        jobs = await run_until_done(pool, store, ids, timeout=20)

        assert all(j.status == JobStatus.SUCCEEDED for j in jobs)
        assert all(j.attempt == 1 for j in jobs)
        assert supervisor.peak == 2
        assert pool.peak_active <= 2
        assert len(supervisor.calls) == 10

    @pytest.mark.asyncio
    async def test_slots_are_returned_after_failures(self, make_pool, store):
        codes = {f"Q{i}": RuntimeError("boom") for i in range(0, 6, 2)}
        pool = make_pool(FakeSupervisor(exit_codes=codes), WORKER_MAX_CONCURRENT=1)
        ids = [await store.enqueue("monthly_load", monthly(q=f"Q{i}")) for i in range(6)]

        jobs = await run_until_done(pool, store, ids)

        assert len(jobs) == 6
        assert pool.active_count == 0


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_disabled_pool_never_claims(self, make_pool, store):
        pool = make_pool(FakeSupervisor(), WORKER_ENABLED=False)
        job_id = await store.enqueue("monthly_load", monthly())

        await pool.start()
        assert not pool.running
        await asyncio.sleep(0.1)
        await pool.stop()

        assert (await store.find(job_id)).status == JobStatus.QUEUED

    @pytest.mark.asyncio
    async def test_loop_survives_store_errors(self, make_pool, store):
        flaky = FlakyStore(store, failures=2)
        pool = make_pool(FakeSupervisor(), _store=flaky)
        job_id = await store.enqueue("monthly_load", monthly())

        [job] = await run_until_done(pool, store, [job_id])

        assert job.status == JobStatus.SUCCEEDED
        assert flaky.failures == 0

    @pytest.mark.asyncio
    async def test_crashed_watcher_does_not_leak_active_count(self, make_pool, store):
        broken = BrokenLookupStore(store)
        pool = make_pool(FakeSupervisor(delay=0.3), _store=broken)
        job_id = await store.enqueue("monthly_load", monthly())

        [job] = await run_until_done(pool, store, [job_id])

        assert job.status == JobStatus.SUCCEEDED
        assert broken.lookups >= 1
        assert pool.active_count == 0

    @pytest.mark.asyncio
    async def test_cancel_request_stops_running_program(self, make_pool, store):
        supervisor = FakeSupervisor(wait_for_cancel=True)
        pool = make_pool(supervisor)
        job_id = await store.enqueue("monthly_load", monthly())

        await pool.start()
        try:
            await asyncio.wait_for(supervisor.started.wait(), timeout=5)
            await store.cancel(job_id)
            await asyncio.wait_for(_until(lambda: supervisor.current == 0), timeout=5)
        finally:
            await pool.stop()

        assert (await store.find(job_id)).status == JobStatus.CANCELED

    @pytest.mark.asyncio
    async def test_shutdown_cancels_in_flight_and_records_outcome(self, make_pool, store, settings):
        supervisor = FakeSupervisor(wait_for_cancel=True)
        pool = make_pool(supervisor)
        job_id = await store.enqueue("monthly_load", monthly())

        await pool.start()
        await asyncio.wait_for(supervisor.started.wait(), timeout=5)
        await pool.stop()

        job = await store.find(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error.startswith("Process stopped at shutdown after ")
        elapsed = float(re.search(r"after ([\d.]+)s", job.error).group(1))
        assert elapsed < settings.RUN_TIMEOUT_SECONDS
        assert "exit code 124" in job.error
        assert not pool.running


class TestRealProcess:
    @pytest.mark.asyncio
    async def test_runs_script_end_to_end(self, make_pool, store, settings):
        Path(settings.PYTHON_SCRIPT).write_text(
            "import sys\n"
            "print('args:', ' '.join(sys.argv[1:]))\n"
            "print('loading', file=sys.stderr)\n"
        )
        pool = make_pool(ProcessSupervisor(kill_grace_seconds=2.0))
        job_id = await store.enqueue("monthly_load", monthly(q="I/2"))

        [job] = await run_until_done(pool, store, [job_id])

        assert job.status == JobStatus.SUCCEEDED
        assert Path(job.log_path).name == f"202507_I_2_{job_id}.log"
        log = Path(job.log_path).read_text()
        assert "args: --period 202507 --q I/2 --steps extract,load,enrich" in log
        assert "loading" in log

    @pytest.mark.asyncio
    async def test_script_timeout_fails_job(self, make_pool, store, settings):
        Path(settings.PYTHON_SCRIPT).write_text("import time\nprint('begin', flush=True)\ntime.sleep(30)\n")
        pool = make_pool(ProcessSupervisor(kill_grace_seconds=2.0), RUN_TIMEOUT_SECONDS=0.5)
        job_id = await store.enqueue("monthly_load", monthly())

        [job] = await run_until_done(pool, store, [job_id])

        assert job.status == JobStatus.FAILED
        assert "124" in job.error
        assert "timed out" in Path(job.log_path).read_text().splitlines()[-1]


async def _until(predicate, interval=0.02):
    while not predicate():
        await asyncio.sleep(interval)
