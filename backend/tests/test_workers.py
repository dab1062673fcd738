"""
Tests for Celery wiring and task bodies
"""
import uuid
from contextlib import asynccontextmanager
from unittest.mock import MagicMock, patch

import pytest
from celery.exceptions import Retry
from kombu.exceptions import OperationalError
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession

from maes.core.config import settings
from maes.services.lifecycle import PurgeScheduler
from maes.workers import tasks
from maes.workers.celery_app import celery_app


class TestCeleryConfiguration:
    def test_queues(self):
        names = {queue.name for queue in celery_app.conf.task_queues}
        assert names == {settings.ORCHESTRATION_QUEUE, settings.EXTRACTION_QUEUE, settings.ANALYSIS_QUEUE}
        assert celery_app.conf.task_default_queue == settings.ORCHESTRATION_QUEUE

    def test_periodic_sweeps_registered(self):
        scheduled = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
        assert scheduled == {
            "maes.workers.tasks.sweep_due_offboards_task",
            "maes.workers.tasks.expire_overdue_jobs_task",
            "maes.workers.tasks.prune_job_logs_task",
        }
        for name in scheduled:
            assert name in celery_app.tasks


def test_run_async_uses_fresh_loop():
    async def answer():
        return 42

    assert tasks.run_async(answer()) == 42
    assert tasks.run_async(answer()) == 42


class TestPurgeScheduler:
    def test_schedule_sends_task(self):
        job_id = uuid.uuid4()
        with patch.object(tasks.purge_organization_task, "apply_async") as apply_async:
            PurgeScheduler().schedule(job_id)

        apply_async.assert_called_once_with(args=[str(job_id)], eta=None, task_id=str(job_id))

    def test_broker_down_is_not_fatal(self):
        with patch.object(
            tasks.purge_organization_task, "apply_async", side_effect=OperationalError("connection refused")
        ):
            PurgeScheduler().schedule(uuid.uuid4())

    def test_revoke(self):
        job_id = uuid.uuid4()
        with patch.object(celery_app.control, "revoke") as revoke:
            PurgeScheduler().revoke(job_id)

        revoke.assert_called_once_with(str(job_id))


class TestTaskBodies:
    def test_purge_task_runs_purge_job(self):
        job_id = str(uuid.uuid4())
        with patch.object(tasks, "run_async", return_value={"status": "completed"}) as run_async:
            result = tasks.purge_organization_task(job_id)

        assert result == {"status": "completed"}
        run_async.assert_called_once()
        run_async.call_args[0][0].close()

    def test_purge_task_retries_on_database_error(self):
        lost = sa_exc.OperationalError("SELECT 1", {}, ConnectionRefusedError("refused"))

        def connection_lost(coro):
            coro.close()
            raise lost

        with patch.object(tasks, "run_async", side_effect=connection_lost), patch.object(
            tasks.purge_organization_task, "retry", side_effect=Retry()
        ) as retry:
            with pytest.raises(Retry):
                tasks.purge_organization_task(str(uuid.uuid4()))

        retry.assert_called_once_with(exc=lost)

    def test_prune_task_reports_count(self):
        with patch.object(tasks, "run_async", return_value=7) as run_async:
            result = tasks.prune_job_logs_task()

        assert result == {"removed": 7}
        run_async.call_args[0][0].close()

    @pytest.mark.asyncio
    async def test_with_lifecycle_uses_worker_session(self, db_session: AsyncSession):
        @asynccontextmanager
        async def fake_worker_db():
            yield db_session

        seen = MagicMock()

        async def action(lifecycle, db):
            seen(lifecycle, db)
            return await lifecycle.sweep_due_offboards(db)

        with patch.object(tasks, "get_worker_db", fake_worker_db):
            purged = await tasks._with_lifecycle(action)

        assert purged == 0
        lifecycle, db = seen.call_args[0]
        assert db is db_session
        assert [service.name for service in lifecycle.services] == ["extractor", "analyzer"]
