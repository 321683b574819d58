"""
End-to-end flows through the sweep, the queue and the job functions.

The recording job queue stands in for Redis: each test runs the jobs the
previous step enqueued by calling the job function with the stored payload.
"""

from datetime import timedelta

import httpx
import pytest
from sqlalchemy import update

from upload_resilience.clients.provider import ProviderError
from upload_resilience.db.database import with_unit_of_work
from upload_resilience.db.models import FileUpload
from upload_resilience.db.repositories import CloudStorageTokensRepository
from upload_resilience.db.models import DEFAULT_PROVIDER as PROVIDER
from upload_resilience.jobs.queue import (
    PENDING_UPLOAD_RETRY_JOB,
    REFRESH_TOKEN_JOB,
    UPLOAD_TO_PROVIDER_JOB,
    Lane,
)
from upload_resilience.jobs.refresh_token_job import refresh_token_job
from upload_resilience.jobs.upload_job import upload_to_provider_job
from upload_resilience.jobs.upload_retry_job import pending_upload_retry_job
from upload_resilience.services.error_classifier import ErrorKind
from upload_resilience.utils.clock import utc_now

pytestmark = pytest.mark.integration


def ctx_for(app, job):
    return {"app": app, "job_try": 1, "job_id": job.job_id}


class TestTokenLifecycle:
    async def test_expiring_token_with_revoked_grant(
        self, app, make_user, make_token, get_token, provider, job_queue, mail_sender
    ):
        """Sweep schedules an immediate refresh; the provider rejects the grant."""
        user = await make_user()
        await make_token(user, expires_in=timedelta(minutes=10))
        await app.health_tracker.record_successful_operation(user.id, PROVIDER)
        provider.refresh_error = ProviderError(
            "Token has been expired or revoked.", status_code=400, reason="invalid_grant"
        )

        report = await app.maintenance.run_once()
        assert report.succeeded

        [job] = job_queue.by_function(REFRESH_TOKEN_JOB)
        assert job.lane == Lane.HIGH

        result = await refresh_token_job(ctx_for(app, job), job.payload)

        assert result["status"] == "failure"
        assert result["error_type"] == ErrorKind.INVALID_CREDENTIALS.value

        summary = await app.health_tracker.get_health_summary(user.id, PROVIDER)
        assert summary.consecutive_failures == 1
        assert summary.is_healthy
        assert summary.requires_reconnection

        token = await get_token(user)
        assert token.requires_user_intervention
        assert len(mail_sender.of_type("refresh_failure")) == 1
        # No automatic retry for a revoked grant
        assert len(job_queue.by_function(REFRESH_TOKEN_JOB)) == 1

        # The next sweep no longer schedules the stuck token
        await app.maintenance.run_once()
        assert len(job_queue.by_function(REFRESH_TOKEN_JOB)) == 1

    async def test_network_failures_then_recovery(self, app, make_user, make_token, get_token, provider, mail_sender):
        """Five network failures make the connection unhealthy; one success heals it."""
        user = await make_user()
        await make_token(user, expires_in=timedelta(minutes=5))
        provider.refresh_error = httpx.ConnectError("connection refused")

        for attempt in range(1, 6):
            await app.renewal.refresh_token_if_needed(user.id, PROVIDER, attempt=attempt)

        summary = await app.health_tracker.get_health_summary(user.id, PROVIDER)
        assert summary.is_unhealthy
        assert summary.requires_reconnection
        assert summary.consecutive_failures == 5
        assert (await get_token(user)).requires_user_intervention

        await app.health_tracker.record_successful_operation(user.id, PROVIDER)

        summary = await app.health_tracker.get_health_summary(user.id, PROVIDER)
        assert summary.is_healthy
        assert summary.consecutive_failures == 0
        assert not summary.requires_reconnection

    async def test_transient_failure_retried_through_queue(
        self, app, make_user, make_token, get_token, provider, job_queue
    ):
        user = await make_user()
        await make_token(user, expires_in=timedelta(minutes=10))
        provider.refresh_error = httpx.ReadTimeout("read timed out")

        await app.maintenance.run_once()
        [first] = job_queue.by_function(REFRESH_TOKEN_JOB)
        await refresh_token_job(ctx_for(app, first), first.payload)

        retry = job_queue.by_function(REFRESH_TOKEN_JOB)[-1]
        assert retry.lane == Lane.MAINTENANCE
        assert retry.payload["attempt"] == 2

        provider.refresh_error = None
        result = await refresh_token_job(ctx_for(app, retry), retry.payload)

        assert result["status"] == "success"
        token = await get_token(user)
        assert token.refresh_failure_count == 0
        assert token.expires_at > utc_now() + timedelta(minutes=50)


async def advance_to(session_factory, user, seconds):
    """Move the token expiry closer, as if ``seconds`` had passed."""
    async with with_unit_of_work(session_factory) as session:
        token = await CloudStorageTokensRepository(session).get_token(user.id, PROVIDER)
        token.expires_at = token.expires_at - timedelta(seconds=seconds)


class TestScheduledRefresh:
    async def test_deferred_job_refreshes_when_it_runs(
        self, app, make_user, make_token, get_token, provider, job_queue, session_factory
    ):
        user = await make_user()
        await make_token(user, expires_in=timedelta(hours=5))

        await app.maintenance.run_once()
        [job] = job_queue.by_function(REFRESH_TOKEN_JOB)
        assert job.lane == Lane.MAINTENANCE

        await advance_to(session_factory, user, job.defer_seconds)
        result = await refresh_token_job(ctx_for(app, job), job.payload)

        assert result["status"] == "success"
        assert provider.refresh_calls == 1
        assert (await get_token(user)).expires_at > utc_now() + timedelta(minutes=50)

    async def test_immediate_job_refreshes_token_outside_on_demand_window(
        self, app, make_user, make_token, provider, job_queue
    ):
        """Twenty minutes left: not yet due on demand, but the sweep refreshes it."""
        user = await make_user()
        await make_token(user, expires_in=timedelta(minutes=20))

        await app.maintenance.run_once()
        [job] = job_queue.by_function(REFRESH_TOKEN_JOB)
        assert job.lane == Lane.HIGH

        result = await refresh_token_job(ctx_for(app, job), job.payload)

        assert result["status"] == "success"
        assert provider.refresh_calls == 1

        # On-demand callers still leave a twenty minute token alone
        await make_token(user, expires_in=timedelta(minutes=20))
        again = await app.renewal.refresh_token_if_needed(user.id, PROVIDER)
        assert again.outcome.value == "already_valid"
        assert provider.refresh_calls == 1


class TestUploadRecovery:
    async def test_recoverable_upload_is_redispatched(self, app, make_user, make_token, make_upload, get_upload, job_queue):
        """A network failure on a healthy connection consumes one recovery attempt."""
        owner = await make_user()
        await make_token(owner, expires_in=timedelta(hours=1))
        await app.health_tracker.record_successful_operation(owner.id, PROVIDER)
        upload = await make_upload(
            company_user_id=owner.id,
            retry_count=1,
            recovery_attempts=1,
            last_error="connection refused",
            cloud_storage_error_type=ErrorKind.NETWORK_ERROR.value,
            cloud_storage_error_context={"error_type": "network_error"},
            retry_recommended_at=utc_now() - timedelta(seconds=5),
        )

        await app.maintenance.run_once()
        [retry_job] = job_queue.by_function(PENDING_UPLOAD_RETRY_JOB)
        result = await pending_upload_retry_job(ctx_for(app, retry_job), retry_job.payload)

        assert result["status"] == "dispatched"
        stored = await get_upload(upload.id)
        assert stored.recovery_attempts == 2
        assert stored.cloud_storage_error_type is None
        assert stored.cloud_storage_error_context is None
        assert stored.last_error is None
        assert len(job_queue.by_function(UPLOAD_TO_PROVIDER_JOB)) == 1

    async def test_failed_upload_is_delivered_after_recovery(
        self, app, make_user, make_token, make_upload, get_upload, provider, job_queue, file_store, session_factory
    ):
        owner = await make_user()
        await make_token(owner, expires_in=timedelta(hours=1))
        upload = await make_upload(company_user_id=owner.id)

        provider.upload_error = ProviderError("Backend Error", status_code=503, reason="backendError")
        first = await app.transfer.transfer(upload.id)
        assert first.error_kind == ErrorKind.SERVICE_UNAVAILABLE

        stored = await get_upload(upload.id)
        assert stored.retry_count == 1
        assert stored.retry_recommended_at is not None

        # Not due yet
        provider.upload_error = None
        summary = await app.recovery.schedule_pending_upload_retries()
        assert summary["found"] == 0

        async with with_unit_of_work(session_factory) as session:
            await session.execute(
                update(FileUpload)
                .where(FileUpload.id == upload.id)
                .values(retry_recommended_at=utc_now() - timedelta(seconds=1))
            )

        await app.maintenance.run_once()
        [retry_job] = job_queue.by_function(PENDING_UPLOAD_RETRY_JOB)
        await pending_upload_retry_job(ctx_for(app, retry_job), retry_job.payload)
        [upload_job] = job_queue.by_function(UPLOAD_TO_PROVIDER_JOB)
        result = await upload_to_provider_job(ctx_for(app, upload_job), upload_job.payload)

        assert result["delivered"] is True
        stored = await get_upload(upload.id)
        assert stored.cloud_file_id == "drive-file-1"
        assert stored.recovery_attempts == 1
        assert not file_store.exists(upload.filename)

        summary = await app.health_tracker.get_health_summary(owner.id, PROVIDER)
        assert summary.is_healthy
        assert summary.consecutive_failures == 0

    async def test_storage_quota_upload_is_left_for_the_user(
        self, app, make_user, make_token, make_upload, get_upload, provider, job_queue
    ):
        owner = await make_user()
        await make_token(owner, expires_in=timedelta(hours=1))
        upload = await make_upload(company_user_id=owner.id)
        provider.upload_error = ProviderError(
            "The user's Drive storage quota has been exceeded.",
            status_code=403,
            reason="storageQuotaExceeded",
        )

        await app.transfer.transfer(upload.id)
        await app.maintenance.run_once()

        assert job_queue.by_function(PENDING_UPLOAD_RETRY_JOB) == []
        assert (await get_upload(upload.id)).retry_recommended_at is None
