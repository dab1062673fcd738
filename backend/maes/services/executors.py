"""
Clients for the external executors.

ExecutorClient hands a job to the extraction/analysis workers over the Celery
broker; the workers report back through the internal callback routes.
CooperatingServiceClient calls an executor service's delete-by-organization
endpoint during a purge.
"""
import asyncio
import logging
import uuid
from typing import Optional

import httpx
from kombu.exceptions import OperationalError

from maes.core.config import settings
from maes.core.errors import ExecutorUnavailableError
from maes.db.models import PRIORITY_RANK, Job, JobType

logger = logging.getLogger(__name__)

# Task names registered by the external executor workers
EXECUTOR_TASKS = {
    JobType.EXTRACTION: "executors.extract_data",
    JobType.CONNECTION_TEST: "executors.test_connection",
    JobType.ANALYSIS: "executors.analyze_data",
}


def queue_for(job_type: JobType) -> str:
    if job_type in (JobType.EXTRACTION, JobType.CONNECTION_TEST):
        return settings.EXTRACTION_QUEUE
    if job_type == JobType.ANALYSIS:
        return settings.ANALYSIS_QUEUE
    raise ValueError(f"No executor queue for job type {job_type.value}")


class ExecutorClient:
    """Broker-backed hand-off to the extraction and analysis workers."""

    def __init__(self, app=None, timeout: Optional[int] = None):
        self._app = app
        self.timeout = timeout or settings.EXECUTOR_DISPATCH_TIMEOUT_SEC

    @property
    def app(self):
        if self._app is None:
            from maes.workers.celery_app import celery_app

            self._app = celery_app
        return self._app

    def build_message(self, job: Job, context: Optional[dict] = None) -> dict:
        # Secrets are never put on the broker; executors fetch them over
        # the service-token protected internal route.
        return {
            "jobId": str(job.id),
            "organizationId": str(job.organization_id),
            "type": job.job_type.value,
            "parameters": dict(job.parameters or {}),
            **(context or {}),
        }

    async def dispatch(self, job: Job, context: Optional[dict] = None) -> None:
        """
        Publish the job for its executor.

        Raises ExecutorUnavailableError when the broker cannot be reached
        within the dispatch timeout.
        """
        message = self.build_message(job, context)
        queue = queue_for(job.job_type)

        def _send():
            self.app.send_task(
                EXECUTOR_TASKS[job.job_type],
                kwargs={"job": message},
                task_id=str(job.id),
                queue=queue,
                priority=PRIORITY_RANK[job.priority],
            )

        try:
            await asyncio.wait_for(asyncio.to_thread(_send), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ExecutorUnavailableError(
                f"Executor queue '{queue}' did not accept job within {self.timeout}s",
                {"job_id": str(job.id), "queue": queue},
            )
        except (OperationalError, OSError) as e:
            raise ExecutorUnavailableError(
                f"Executor queue '{queue}' unreachable: {e}",
                {"job_id": str(job.id), "queue": queue},
            )

        logger.info(f"Job {job.id} dispatched to {queue} (priority {PRIORITY_RANK[job.priority]})")

    async def request_stop(self, job_id: uuid.UUID) -> None:
        """Ask the owning executor to stop. Best-effort: failures are only logged."""

        def _revoke():
            self.app.control.revoke(str(job_id), terminate=True)

        try:
            await asyncio.wait_for(asyncio.to_thread(_revoke), timeout=self.timeout)
        except (asyncio.TimeoutError, OperationalError, OSError) as e:
            logger.warning(f"Stop request for job {job_id} not delivered: {e}")


class CooperatingServiceClient:
    """HTTP client for an executor service's delete-by-organization endpoint."""

    def __init__(
        self,
        name: str,
        base_url: str,
        timeout: Optional[int] = None,
        service_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or settings.CLEANUP_STEP_TIMEOUT_SEC
        self.service_token = service_token or settings.SERVICE_AUTH_TOKEN
        self._transport = transport

    async def delete_organization_data(self, organization_id: uuid.UUID) -> dict:
        """
        Remove everything the service holds for the organization.

        A 404 means the service has nothing for this organization, which is
        the same outcome as a successful delete.
        """
        url = f"{self.base_url}/internal/organization/{organization_id}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.delete(url, headers={"x-service-token": self.service_token})
        except httpx.HTTPError as e:
            raise ExecutorUnavailableError(
                f"{self.name} unreachable: {e.__class__.__name__}",
                {"service": self.name},
            )

        if response.status_code == 404:
            return {"deleted": 0}
        if response.status_code >= 400:
            raise ExecutorUnavailableError(
                f"{self.name} returned HTTP {response.status_code}",
                {"service": self.name, "status_code": response.status_code},
            )
        try:
            return response.json()
        except ValueError:
            return {}


def get_cooperating_services() -> list[CooperatingServiceClient]:
    """Executor services in cleanup order."""
    return [
        CooperatingServiceClient("extractor", settings.EXTRACTOR_SERVICE_URL),
        CooperatingServiceClient("analyzer", settings.ANALYZER_SERVICE_URL),
    ]


executor_client = ExecutorClient()
