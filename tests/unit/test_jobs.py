"""
Tests for the arq job functions.

Jobs are called directly with a hand-built ``ctx``, the way arq calls them.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from arq import Retry

from upload_resilience.db.models import DEFAULT_PROVIDER as PROVIDER
from upload_resilience.jobs.queue import (
    UPLOAD_TO_PROVIDER_JOB,
    RefreshTokenPayload,
    UploadPayload,
    UploadRetryPayload,
)
from upload_resilience.jobs.refresh_token_job import refresh_token_job
from upload_resilience.jobs.upload_job import upload_to_provider_job
from upload_resilience.jobs.upload_retry_job import backoff_for, pending_upload_retry_job
from upload_resilience.services.error_classifier import ErrorKind
from upload_resilience.utils.clock import utc_now


def job_ctx(app, job_try=1):
    return {"app": app, "job_try": job_try, "job_id": f"test-job-{job_try}"}


def refresh_payload(user, **overrides):
    values = {
        "user_id": user.id,
        "provider": PROVIDER,
        "reason": "immediate",
        "retry_until": utc_now() + timedelta(hours=1),
    }
    values.update(overrides)
    return RefreshTokenPayload(**values).model_dump(mode="json")


def retry_payload(upload, **overrides):
    values = {
        "upload_id": upload.id,
        "provider": PROVIDER,
        "retry_until": utc_now() + timedelta(minutes=30),
    }
    values.update(overrides)
    return UploadRetryPayload(**values).model_dump(mode="json")


@pytest.fixture
async def owner(make_user, make_token):
    user = await make_user()
    await make_token(user, expires_in=timedelta(hours=1))
    return user


class TestRefreshTokenJob:
    async def test_refreshes_expiring_token(self, app, make_user, make_token, provider):
        user = await make_user()
        await make_token(user, expires_in=timedelta(minutes=5))

        result = await refresh_token_job(job_ctx(app), refresh_payload(user))

        assert result["status"] == "success"
        assert provider.refresh_calls == 1

    async def test_classified_failure_ends_the_job(self, app, make_user, make_token, provider):
        user = await make_user()
        await make_token(user, expires_in=timedelta(minutes=5))
        provider.refresh_error = ConnectionResetError("reset by peer")

        result = await refresh_token_job(job_ctx(app), refresh_payload(user))

        assert result == {
            "status": "failure",
            "message": "reset by peer",
            "error_type": ErrorKind.NETWORK_ERROR.value,
        }

    async def test_past_deadline(self, app, make_user, provider):
        user = await make_user()
        payload = refresh_payload(user, retry_until=utc_now() - timedelta(seconds=1))

        assert await refresh_token_job(job_ctx(app), payload) == {"status": "expired"}
        assert provider.refresh_calls == 0

    async def test_unexpected_error_is_retried_by_arq(self, app, make_user, monkeypatch):
        user = await make_user()
        database_down = AsyncMock(side_effect=ConnectionRefusedError("could not connect to server"))
        monkeypatch.setattr(app.renewal, "refresh_token_if_needed", database_down)

        with pytest.raises(Retry) as exc_info:
            await refresh_token_job(job_ctx(app, job_try=1), refresh_payload(user))
        assert exc_info.value.defer_score == 30_000

        result = await refresh_token_job(
            job_ctx(app, job_try=app.settings.refresh_job_max_tries), refresh_payload(user)
        )
        assert result["status"] == "error"
        assert result["error_type"] == "network_error"


class TestUploadJob:
    async def test_transfers(self, app, owner, make_upload):
        upload = await make_upload(company_user_id=owner.id)
        payload = UploadPayload(upload_id=upload.id, provider=PROVIDER).model_dump(mode="json")

        result = await upload_to_provider_job(job_ctx(app), payload)

        assert result["delivered"] is True
        assert result["cloud_file_id"] == "drive-file-1"


class TestPendingUploadRetryJob:
    def test_backoff_for(self):
        assert [backoff_for([30, 60, 120], n) for n in (1, 2, 3, 4)] == [30, 60, 120, 120]

    async def test_dispatches(self, app, owner, make_upload, job_queue):
        upload = await make_upload(company_user_id=owner.id, retry_count=1)

        result = await pending_upload_retry_job(job_ctx(app), retry_payload(upload))

        assert result["status"] == "dispatched"
        assert len(job_queue.by_function(UPLOAD_TO_PROVIDER_JOB)) == 1

    async def test_unhealthy_connection_is_retried_later(self, app, owner, make_upload, get_upload):
        upload = await make_upload(company_user_id=owner.id, retry_count=1)
        for _ in range(5):
            await app.health_tracker.mark_connection_as_unhealthy(
                owner.id, PROVIDER, "Connection reset", ErrorKind.NETWORK_ERROR
            )

        with pytest.raises(Retry) as exc_info:
            await pending_upload_retry_job(job_ctx(app), retry_payload(upload))
        assert exc_info.value.defer_score == app.settings.upload_unhealthy_defer_seconds * 1000

        last_try = app.settings.upload_retry_job_max_tries
        result = await pending_upload_retry_job(job_ctx(app, last_try), retry_payload(upload))
        assert result["status"] == "deferred"
        stored = await get_upload(upload.id)
        assert stored.recovery_status == "retry_deferred"
        assert stored.retry_recommended_at > utc_now()

    async def test_deferral_beyond_deadline_goes_back_to_sweep(self, app, owner, make_upload):
        upload = await make_upload(company_user_id=owner.id, retry_count=1)
        for _ in range(5):
            await app.health_tracker.mark_connection_as_unhealthy(
                owner.id, PROVIDER, "Connection reset", ErrorKind.NETWORK_ERROR
            )
        payload = retry_payload(upload, retry_until=utc_now() + timedelta(minutes=2))

        result = await pending_upload_retry_job(job_ctx(app), payload)

        assert result["status"] == "deferred"

    async def test_errors_retry_with_backoff_then_fail_permanently(
        self, app, owner, make_upload, get_upload, mail_sender, monkeypatch
    ):
        upload = await make_upload(company_user_id=owner.id, retry_count=1)

        broken = AsyncMock(side_effect=RuntimeError("queue unavailable"))
        monkeypatch.setattr(app.recovery, "process", broken)

        with pytest.raises(Retry) as exc_info:
            await pending_upload_retry_job(job_ctx(app, 2), retry_payload(upload))
        assert exc_info.value.defer_score == 60_000
        assert (await get_upload(upload.id)).recovery_status == "retry_job_failed"

        result = await pending_upload_retry_job(job_ctx(app, 3), retry_payload(upload))

        assert result["status"] == "failed"
        stored = await get_upload(upload.id)
        assert stored.recovery_status == "recovery_permanently_failed"
        assert stored.error_details["total_retry_attempts"] == 3
        assert len(mail_sender.of_type("upload_failure")) == 1

    async def test_past_deadline(self, app, owner, make_upload, get_upload):
        upload = await make_upload(company_user_id=owner.id, retry_count=1)
        payload = retry_payload(upload, retry_until=utc_now() - timedelta(seconds=1))

        result = await pending_upload_retry_job(job_ctx(app), payload)

        assert result["status"] == "expired"
        assert (await get_upload(upload.id)).recovery_status == "retry_deferred"


class TestWorkerSettings:
    def test_lanes_and_functions(self, settings):
        from upload_resilience.jobs import worker

        names = {f.name for f in worker.HighWorkerSettings.functions}
        assert names == {"refresh_token_job", "upload_to_provider_job", "pending_upload_retry_job"}
        assert worker.HighWorkerSettings.queue_name == "high"
        assert worker.MaintenanceWorkerSettings.queue_name == "maintenance"
        assert worker.DefaultWorkerSettings.queue_name == "default"
        [sweep] = worker.MaintenanceWorkerSettings.cron_jobs
        assert sweep.name == "maintenance_sweep_job"
        assert sweep.unique

    async def test_maintenance_sweep_job(self, app):
        from upload_resilience.jobs.worker import maintenance_sweep_job

        result = await maintenance_sweep_job(job_ctx(app))
        assert result["failed_steps"] == []
