"""
Tests for job API endpoints
- Submission and admission
- Listing, stats, cancellation
- Logs and progress polling
"""
import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from maes.db.models import LogLevel, Organization
from maes.services import progress


def _jobs_url(organization_id, suffix: str = "") -> str:
    return f"/api/organizations/{organization_id}/jobs{suffix}"


class TestCreateJob:
    @pytest.mark.asyncio
    async def test_create_extraction_is_admitted(
        self, client: AsyncClient, organization: Organization, auth_headers, fake_executor
    ):
        response = await client.post(
            _jobs_url(organization.id),
            json={"job_type": "extraction", "priority": "high", "parameters": {"extraction_type": "mfa_status"}},
            headers=auth_headers(organization.id, "analyst", user_id="alice"),
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "running"
        assert data["priority"] == "high"
        assert data["created_by"] == "alice"
        assert data["started_at"] is not None
        assert fake_executor.dispatched == [uuid.UUID(data["id"])]

    @pytest.mark.asyncio
    async def test_viewer_cannot_create(self, client: AsyncClient, organization: Organization, auth_headers):
        response = await client.post(
            _jobs_url(organization.id), json={"job_type": "connection_test"}, headers=auth_headers(organization.id, "viewer")
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_offboard_type_rejected(self, client: AsyncClient, organization: Organization, auth_headers):
        response = await client.post(
            _jobs_url(organization.id), json={"job_type": "offboard"}, headers=auth_headers(organization.id)
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_parameters(self, client: AsyncClient, organization: Organization, auth_headers):
        response = await client.post(
            _jobs_url(organization.id),
            json={"job_type": "extraction", "parameters": {"extraction_type": "everything"}},
            headers=auth_headers(organization.id),
        )

        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "extraction_type"

    @pytest.mark.asyncio
    async def test_unconfigured_organization(self, client: AsyncClient, bare_organization: Organization, auth_headers):
        response = await client.post(
            _jobs_url(bare_organization.id),
            json={"job_type": "connection_test"},
            headers=auth_headers(bare_organization.id),
        )
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_queued_beyond_limit(
        self, client: AsyncClient, organization: Organization, auth_headers, fake_executor
    ):
        statuses = []
        for _ in range(4):
            response = await client.post(
                _jobs_url(organization.id), json={"job_type": "connection_test"}, headers=auth_headers(organization.id)
            )
            statuses.append(response.json()["status"])

        assert statuses == ["running", "running", "running", "pending"]
        assert len(fake_executor.dispatched) == 3


class TestReadJobs:
    @pytest.mark.asyncio
    async def test_list_and_filter(self, client: AsyncClient, organization: Organization, auth_headers, make_job):
        await make_job(organization.id)
        await make_job(organization.id, admit=False)

        response = await client.get(_jobs_url(organization.id), headers=auth_headers(organization.id, "viewer"))
        assert response.status_code == 200
        assert response.json()["total"] == 2

        response = await client.get(
            _jobs_url(organization.id, "?status=pending"), headers=auth_headers(organization.id, "viewer")
        )
        assert response.json()["total"] == 1
        assert response.json()["items"][0]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_stats(self, client: AsyncClient, organization: Organization, auth_headers, make_job):
        await make_job(organization.id)

        response = await client.get(_jobs_url(organization.id, "/stats"), headers=auth_headers(organization.id))

        assert response.status_code == 200
        assert response.json()["by_status"]["running"] == 1
        assert response.json()["by_type"]["extraction"] == 1

    @pytest.mark.asyncio
    async def test_job_of_other_organization_not_found(
        self, client: AsyncClient, organization: Organization, other_organization: Organization, auth_headers, make_job
    ):
        job = await make_job(other_organization.id)

        response = await client.get(_jobs_url(organization.id, f"/{job.id}"), headers=auth_headers(organization.id))
        assert response.status_code == 404


class TestCancelJob:
    @pytest.mark.asyncio
    async def test_cancel_running_job(
        self, client: AsyncClient, organization: Organization, auth_headers, make_job, fake_executor
    ):
        job = await make_job(organization.id)

        response = await client.post(_jobs_url(organization.id, f"/{job.id}/cancel"), headers=auth_headers(organization.id))
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert fake_executor.stopped == [job.id]

        again = await client.post(_jobs_url(organization.id, f"/{job.id}/cancel"), headers=auth_headers(organization.id))
        assert again.status_code == 200
        assert again.json()["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_cannot_cancel_offboard_job(
        self, client: AsyncClient, db_session: AsyncSession, organization: Organization, lifecycle, auth_headers
    ):
        _, job = await lifecycle.schedule_offboard(db_session, organization.id)

        response = await client.post(
            _jobs_url(organization.id, f"/{job.id}/cancel"), headers=auth_headers(organization.id, "admin")
        )
        assert response.status_code == 400


class TestLogsAndProgress:
    @pytest.mark.asyncio
    async def test_incremental_log_polling(
        self, client: AsyncClient, db_session: AsyncSession, organization: Organization, auth_headers, make_job
    ):
        job = await make_job(organization.id)
        await progress.append_log(db_session, job.id, LogLevel.INFO, "Connecting")
        await progress.append_log(db_session, job.id, LogLevel.INFO, "Connected")

        first = await client.get(_jobs_url(organization.id, f"/{job.id}/logs"), headers=auth_headers(organization.id))
        assert first.status_code == 200
        page = first.json()
        assert [entry["message"] for entry in page["entries"]] == ["Connecting", "Connected"]

        await progress.append_log(db_session, job.id, LogLevel.SUCCESS, "Done")
        second = await client.get(
            _jobs_url(organization.id, f"/{job.id}/logs?after={page['next_after']}"),
            headers=auth_headers(organization.id),
        )
        assert [entry["message"] for entry in second.json()["entries"]] == ["Done"]
        assert second.json()["entries"][0]["level"] == "success"

        empty = await client.get(
            _jobs_url(organization.id, f"/{job.id}/logs?after={second.json()['next_after']}"),
            headers=auth_headers(organization.id),
        )
        assert empty.json()["entries"] == []
        assert empty.json()["next_after"] == second.json()["next_after"]

    @pytest.mark.asyncio
    async def test_progress(
        self, client: AsyncClient, db_session: AsyncSession, organization: Organization, auth_headers, make_job
    ):
        job = await make_job(organization.id)
        await progress.append_log(db_session, job.id, LogLevel.WARN, "Unified Audit Log is not enabled")

        response = await client.get(_jobs_url(organization.id, f"/{job.id}/progress"), headers=auth_headers(organization.id))

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "running"
        assert data["percent"] == 0
        assert data["status_flags"]["source_logging_disabled"] is True
