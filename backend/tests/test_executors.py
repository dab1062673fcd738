"""
Tests for executor hand-off and cooperating service clients
"""
import uuid
from unittest.mock import MagicMock

import httpx
import pytest
from kombu.exceptions import OperationalError

from maes.core.config import settings
from maes.core.errors import ExecutorUnavailableError
from maes.db.models import Job, JobPriority, JobType
from maes.services.executors import CooperatingServiceClient, ExecutorClient, queue_for


def _job(job_type=JobType.EXTRACTION, priority=JobPriority.MEDIUM) -> Job:
    return Job(
        id=uuid.uuid4(),
        organization_id=uuid.uuid4(),
        job_type=job_type,
        priority=priority,
        parameters={"extraction_type": "emails"},
    )


def test_queue_for():
    assert queue_for(JobType.EXTRACTION) == settings.EXTRACTION_QUEUE
    assert queue_for(JobType.CONNECTION_TEST) == settings.EXTRACTION_QUEUE
    assert queue_for(JobType.ANALYSIS) == settings.ANALYSIS_QUEUE
    with pytest.raises(ValueError):
        queue_for(JobType.OFFBOARD)


class TestExecutorClient:
    def test_message_carries_no_secrets(self):
        job = _job()
        message = ExecutorClient(app=MagicMock()).build_message(job, {"organizationName": "Contoso"})

        assert message == {
            "jobId": str(job.id),
            "organizationId": str(job.organization_id),
            "type": "extraction",
            "parameters": {"extraction_type": "emails"},
            "organizationName": "Contoso",
        }

    @pytest.mark.asyncio
    async def test_dispatch_sends_task(self):
        app = MagicMock()
        job = _job(priority=JobPriority.CRITICAL)

        await ExecutorClient(app=app).dispatch(job)

        app.send_task.assert_called_once()
        args, kwargs = app.send_task.call_args
        assert args == ("executors.extract_data",)
        assert kwargs["task_id"] == str(job.id)
        assert kwargs["queue"] == settings.EXTRACTION_QUEUE
        assert kwargs["priority"] == 1

    @pytest.mark.asyncio
    async def test_dispatch_broker_down(self):
        app = MagicMock()
        app.send_task.side_effect = OperationalError("connection refused")

        with pytest.raises(ExecutorUnavailableError) as exc_info:
            await ExecutorClient(app=app).dispatch(_job(JobType.ANALYSIS))
        assert exc_info.value.details["queue"] == settings.ANALYSIS_QUEUE

    @pytest.mark.asyncio
    async def test_request_stop_is_best_effort(self):
        app = MagicMock()
        app.control.revoke.side_effect = OSError("unreachable")
        job_id = uuid.uuid4()

        await ExecutorClient(app=app).request_stop(job_id)

        app.control.revoke.assert_called_once_with(str(job_id), terminate=True)


class TestCooperatingServiceClient:
    @pytest.mark.asyncio
    async def test_success_returns_body(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"deleted": 12}))
        client = CooperatingServiceClient("extractor", "http://extractor/", transport=transport)

        assert await client.delete_organization_data(uuid.uuid4()) == {"deleted": 12}

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = CooperatingServiceClient("analyzer", "http://analyzer", transport=httpx.MockTransport(handler))

        with pytest.raises(ExecutorUnavailableError) as exc_info:
            await client.delete_organization_data(uuid.uuid4())
        assert exc_info.value.message == "analyzer unreachable: ConnectError"
