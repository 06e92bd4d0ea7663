from enum import StrEnum, auto


class JobStatus(StrEnum):
    QUEUED = auto()       # Created, waiting for a worker slot
    RUNNING = auto()      # Claimed by a worker, external program in flight
    SUCCEEDED = auto()    # Program exited 0
    FAILED = auto()       # Non-zero exit, timeout, launch or internal error
    CANCELED = auto()     # Canceled by request


ACTIVE_STATUSES = (JobStatus.QUEUED, JobStatus.RUNNING)
TERMINAL_STATUSES = (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED)
