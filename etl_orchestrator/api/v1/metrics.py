from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
JOBS_ENQUEUED_TOTAL = Counter('etl_jobs_enqueued_total', 'Total runs accepted into the queue', ['job_type'])
JOB_CONFLICTS_TOTAL = Counter('etl_job_conflicts_total', 'Run requests rejected as duplicates of an active run', ['job_type'])

JOB_CLAIM_TOTAL = Counter(
    "etl_job_claim_total",
    "Claim attempts by outcome",
    ["result"] # claimed vs empty
)
JOB_START_DELAY = Histogram('etl_job_start_delay_seconds', 'Time from enqueue to claim', buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0])

JOB_COMPLETE_TOTAL = Counter('etl_job_complete_total', 'Jobs reaching a terminal status', ['status'])
JOB_DURATION = Histogram('etl_job_duration_seconds', 'Wall-clock time of the external program', buckets=[1.0, 5.0, 10.0, 60.0, 300.0, 900.0, 3600.0])

JOBS_INFLIGHT = Gauge(
    "etl_jobs_inflight",
    "Number of jobs currently executing in this process"
)

PROCESS_KILLS_TOTAL = Counter(
    "etl_process_kills_total",
    "External programs killed on timeout or cancellation",
    ["reason"] # timeout vs canceled
)

WORKER_LOOP_ERRORS_TOTAL = Counter(
    "etl_worker_loop_errors_total",
    "Errors absorbed by the worker polling loop"
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
