"""
Prometheus metrics for the API process.

Counters and histograms are fed from the job state machine and an HTTP
middleware; the pending-queue gauge is recomputed from the database on
every scrape so it is correct regardless of which process moved a job.
"""
import time
from typing import Mapping, Optional

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.requests import Request
from starlette.responses import Response

from maes.db.models import Job, JobStatus, JobType

HTTP_REQUESTS = Counter(
    "maes_http_requests",
    "Total number of HTTP requests",
    ["method", "route", "status_code"],
)
HTTP_REQUEST_DURATION = Histogram(
    "maes_http_request_duration_seconds",
    "Duration of HTTP requests in seconds",
    ["method", "route"],
    buckets=(0.1, 0.5, 1, 2, 5, 10),
)

JOBS_CREATED = Counter(
    "maes_jobs_created",
    "Jobs accepted into the pending queue",
    ["job_type"],
)
JOB_TRANSITIONS = Counter(
    "maes_job_transitions",
    "Job status changes applied by the state machine",
    ["job_type", "status"],
)
JOB_DURATION = Histogram(
    "maes_job_duration_seconds",
    "Wall time from admission to a terminal status",
    ["job_type", "status"],
    buckets=(10, 30, 60, 300, 600, 1800, 3600, 7200),
)
PENDING_JOBS = Gauge(
    "maes_pending_jobs",
    "Jobs waiting for a free slot, per organization",
    ["organization_id"],
)


def record_created(job_type: JobType) -> None:
    JOBS_CREATED.labels(job_type=job_type.value).inc()


def record_transition(job: Job, status: JobStatus) -> None:
    """Count one applied transition; terminal ones also observe the job's duration."""
    JOB_TRANSITIONS.labels(job_type=job.job_type.value, status=status.value).inc()
    if status.is_terminal and job.duration is not None:
        JOB_DURATION.labels(job_type=job.job_type.value, status=status.value).observe(job.duration)


def set_pending_counts(counts: Mapping[str, int]) -> None:
    # Organizations that drained since the last scrape drop out of the series
    PENDING_JOBS.clear()
    for organization_id, count in counts.items():
        PENDING_JOBS.labels(organization_id=organization_id).set(count)


async def track_http_requests(request: Request, call_next):
    """Middleware: count requests by matched route template, not raw path."""
    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        route: Optional[object] = request.scope.get("route")
        path = getattr(route, "path", None) or "unmatched"
        HTTP_REQUESTS.labels(method=request.method, route=path, status_code=str(status_code)).inc()
        HTTP_REQUEST_DURATION.labels(method=request.method, route=path).observe(time.perf_counter() - start)


def render_latest() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
