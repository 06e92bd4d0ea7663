import asyncio
import logging
import os
import signal
import time
from pathlib import Path
from typing import IO, Optional, Sequence

from etl_orchestrator.api.v1.metrics import JOB_DURATION, PROCESS_KILLS_TOTAL
from etl_orchestrator.domain.errors import LaunchError

logger = logging.getLogger(__name__)

# Conventional "timed out" status (coreutils timeout(1)); also used for cancellation
TIMEOUT_EXIT_CODE = 124

# Lines longer than this are still captured, in chunks
STREAM_LIMIT = 1024 * 1024

EXIT_POLL_SECONDS = 0.05


class ProcessSupervisor:
    """
    Runs one external program to completion under a deadline.

    stdout and stderr share a single pipe, so the log keeps the order in which
    the program wrote them. Every line is flushed as soon as it is written,
    which lets readers tail the log of a running job.
    """

    def __init__(self, kill_grace_seconds: float = 5.0):
        self.kill_grace_seconds = kill_grace_seconds

    async def run(
        self,
        executable: str,
        script: str,
        args: Sequence[str],
        log_path: str,
        timeout: float,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> int:
        """
        Returns the program's exit code, or TIMEOUT_EXIT_CODE when the timeout
        elapsed or cancel_event was set first. Raises LaunchError if the
        program cannot be started at all.
        """
        log_file = Path(log_path)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        argv = [executable, script, *args]

        with open(log_file, "w", encoding="utf-8", newline="\n") as log:
            started = time.monotonic()
            try:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                    limit=STREAM_LIMIT,
                )
            except OSError as e:
                raise LaunchError(executable, e) from e

            logger.info("Started pid %s: %s", proc.pid, " ".join(argv))
            pump = asyncio.create_task(self._pump(proc.stdout, log))
            waiter = asyncio.create_task(self._wait_exit(proc))
            watched = {waiter}
            canceler = None
            if cancel_event is not None:
                canceler = asyncio.create_task(cancel_event.wait())
                watched.add(canceler)

            try:
                done, _ = await asyncio.wait(watched, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                self._kill(proc)
                pump.cancel()
                waiter.cancel()
                raise
            finally:
                if canceler is not None:
                    canceler.cancel()

            if waiter in done:
                exit_code = waiter.result()
                # Children left behind in the program's group would keep the
                # output pipe open
                self._kill(proc)
                await self._drain(pump, proc.pid)
                JOB_DURATION.observe(time.monotonic() - started)
                logger.info("pid %s exited with %s", proc.pid, exit_code)
                return exit_code

            canceled = canceler is not None and canceler in done
            reason = "canceled" if canceled else "timed out"
            PROCESS_KILLS_TOTAL.labels(reason="canceled" if canceled else "timeout").inc()
            logger.warning("pid %s %s after %.1fs, killing", proc.pid, reason, time.monotonic() - started)

            self._kill(proc)
            try:
                await asyncio.wait_for(waiter, timeout=self.kill_grace_seconds)
            except asyncio.TimeoutError:
                logger.warning("pid %s did not exit after kill", proc.pid)
            await self._drain(pump, proc.pid)

            elapsed = time.monotonic() - started
            log.write(f"Process {reason} after {elapsed:.1f}s (timeout {timeout:g}s)\n")
            log.flush()
            return TIMEOUT_EXIT_CODE

    @staticmethod
    async def _wait_exit(proc: asyncio.subprocess.Process) -> int:
        # Process.wait() only returns once the output pipe is closed too, so
        # watch the exit status itself.
        while proc.returncode is None:
            await asyncio.sleep(EXIT_POLL_SECONDS)
        return proc.returncode

    @staticmethod
    async def _pump(stream: asyncio.StreamReader, log: IO[str]) -> None:
        while True:
            try:
                chunk = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                chunk = e.partial
                if not chunk:
                    return
            except asyncio.LimitOverrunError as e:
                chunk = await stream.read(e.consumed)
            line = chunk.decode("utf-8", errors="replace")
            log.write(line if line.endswith("\n") else line + "\n")
            log.flush()

    async def _drain(self, pump: asyncio.Task, pid: int) -> None:
        # Something outside the program's group can still hold the pipe;
        # stop copying after the grace period.
        try:
            await asyncio.wait_for(pump, timeout=self.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("Output of pid %s still open after exit; log may be truncated", pid)

    @staticmethod
    def _kill(proc: asyncio.subprocess.Process) -> None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.warning("Could not kill pid %s: %s", proc.pid, e)
