class OrchestratorError(Exception):
    """Base exception for ETL orchestrator errors."""
    pass


class StorageError(OrchestratorError):
    """The job store is unreachable or a write failed."""
    pass


class ConflictError(StorageError):
    def __init__(self, job_type, period, q):
        self.job_type = job_type
        self.period = period
        self.q = q
        super().__init__(f"Active run for ({job_type}, {period}, {q}) already exists")


class InvalidParamsError(OrchestratorError):
    pass


class LaunchError(OrchestratorError):
    def __init__(self, executable, cause):
        self.executable = executable
        super().__init__(f"Could not start {executable!r}: {cause}")


class RunTimeoutError(OrchestratorError):
    def __init__(self, timeout_seconds, elapsed_seconds, reason="timed out", exit_code=124):
        self.timeout_seconds = timeout_seconds
        self.elapsed_seconds = elapsed_seconds
        self.reason = reason
        self.exit_code = exit_code
        super().__init__(
            f"Process {reason} after {elapsed_seconds:.1f}s "
            f"(timeout {timeout_seconds:g}s, exit code {exit_code})"
        )


class ExitCodeError(OrchestratorError):
    def __init__(self, exit_code):
        self.exit_code = exit_code
        super().__init__(f"Exit code {exit_code}")
