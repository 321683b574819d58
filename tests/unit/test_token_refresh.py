"""
Tests for coordinated token refresh and failure bookkeeping.

Covers the coordinator (coalescing, lease waits, short-circuits) and the
renewal service on top of it (failure counters, health, notifications,
retry scheduling).
"""

import asyncio
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from upload_resilience.clients.provider import ProviderError
from upload_resilience.db.database import with_unit_of_work
from upload_resilience.db.models import DEFAULT_PROVIDER as PROVIDER
from upload_resilience.db.repositories import CloudStorageTokensRepository, TokenNotFoundError
from upload_resilience.jobs.queue import REFRESH_TOKEN_JOB, Lane, refresh_job_id
from upload_resilience.services.error_classifier import ErrorKind
from upload_resilience.services.token_refresh_coordinator import (
    RefreshOutcome,
    RefreshResult,
    TokenRefreshError,
)
from upload_resilience.utils.alerting import AlertSeverity
from upload_resilience.utils.clock import utc_now


class TestCoordinator:
    async def test_valid_token_is_not_refreshed(self, app, make_user, make_token, get_token, provider):
        """A second call on a fresh token is a no-op."""
        user = await make_user()
        await make_token(user, expires_in=timedelta(minutes=5))

        first = await app.coordinator.coordinate_refresh(user.id, PROVIDER)
        refreshed_at = (await get_token(user)).last_successful_refresh_at
        second = await app.coordinator.coordinate_refresh(user.id, PROVIDER)

        assert first.outcome == RefreshOutcome.SUCCESS
        assert second.outcome == RefreshOutcome.ALREADY_VALID
        assert provider.refresh_calls == 1
        assert (await get_token(user)).last_successful_refresh_at == refreshed_at

    async def test_concurrent_callers_share_one_refresh(self, app, make_user, make_token, provider):
        user = await make_user()
        await make_token(user, expires_in=timedelta(minutes=2))
        provider.refresh_delay = 0.05

        results = await asyncio.gather(
            *(app.coordinator.coordinate_refresh(user.id, PROVIDER) for _ in range(5))
        )

        assert provider.refresh_calls == 1
        assert all(r.outcome == RefreshOutcome.SUCCESS for r in results)
        assert app.coordinator.get_stats()["coalesced_callers_total"] == 4
        assert not app.coordinator.is_refresh_in_progress(user.id, PROVIDER)

    async def test_success_stores_credentials_and_health(self, app, make_user, make_token, get_token, provider):
        user = await make_user()
        await make_token(user, expires_in=timedelta(minutes=1), refresh_failure_count=2)

        result = await app.coordinator.coordinate_refresh(user.id, PROVIDER)

        token = await get_token(user)
        assert result.was_refreshed
        assert token.refresh_failure_count == 0
        assert token.expires_at > utc_now() + timedelta(minutes=50)
        assert token.refresh_lock_owner is None
        summary = await app.health_tracker.get_health_summary(user.id, PROVIDER)
        assert summary.is_healthy
        assert summary.token_expires_at == token.expires_at

    async def test_force_refreshes_valid_token(self, app, make_user, make_token, provider):
        user = await make_user()
        await make_token(user, expires_in=timedelta(hours=1))
        result = await app.coordinator.coordinate_refresh(user.id, PROVIDER, force=True)
        assert result.was_refreshed
        assert provider.refresh_calls == 1

    async def test_missing_token(self, app, make_user, provider):
        user = await make_user()
        result = await app.coordinator.coordinate_refresh(user.id, PROVIDER)
        assert result.outcome == RefreshOutcome.FAILURE
        assert result.error_kind == ErrorKind.INVALID_CREDENTIALS
        assert not result.provider_attempted
        assert provider.refresh_calls == 0
        summary = await app.health_tracker.get_health_summary(user.id, PROVIDER)
        assert summary.is_disconnected
        assert summary.requires_reconnection

    async def test_missing_token_for_unknown_user(self, app, provider):
        """The health record cannot be written without a user; the refresh still fails cleanly."""
        result = await app.coordinator.coordinate_refresh(uuid.uuid4(), PROVIDER)
        assert result.error_kind == ErrorKind.INVALID_CREDENTIALS
        assert provider.refresh_calls == 0

    @pytest.mark.parametrize(
        "columns",
        [
            {"requires_user_intervention": True},
            {"refresh_failure_count": 5},
        ],
    )
    async def test_unrefreshable_token_skips_provider(self, app, make_user, make_token, provider, columns):
        user = await make_user()
        await make_token(user, expires_in=timedelta(minutes=1), **columns)
        await app.health_tracker.record_successful_operation(user.id, PROVIDER)

        result = await app.coordinator.coordinate_refresh(user.id, PROVIDER)

        assert result.outcome == RefreshOutcome.FAILURE
        assert not result.provider_attempted
        assert provider.refresh_calls == 0
        assert not (await app.health_tracker.get_health_summary(user.id, PROVIDER)).is_disconnected

    async def test_no_refresh_credential(self, app, make_user, make_token, provider):
        user = await make_user()
        await make_token(user, expires_in=timedelta(minutes=1), refresh_token=None)
        await app.health_tracker.record_successful_operation(user.id, PROVIDER)
        result = await app.coordinator.coordinate_refresh(user.id, PROVIDER)
        assert result.error_kind == ErrorKind.INVALID_CREDENTIALS
        assert provider.refresh_calls == 0
        summary = await app.health_tracker.get_health_summary(user.id, PROVIDER)
        assert summary.is_disconnected
        assert summary.requires_reconnection

    async def test_provider_failure_is_classified(self, app, make_user, make_token, provider):
        user = await make_user()
        await make_token(user, expires_in=timedelta(minutes=1))
        provider.refresh_error = httpx.ConnectError("connection refused")

        result = await app.coordinator.coordinate_refresh(user.id, PROVIDER)

        assert result.error_kind == ErrorKind.NETWORK_ERROR
        assert result.provider_attempted
        assert app.coordinator.get_stats()["failures_by_kind"] == {"network_error": 1}

    async def test_lease_held_elsewhere_times_out(self, app, make_user, make_token, provider):
        user = await make_user()
        await make_token(
            user,
            expires_in=timedelta(minutes=1),
            refresh_lock_owner="other-worker",
            refresh_lock_expires_at=utc_now() + timedelta(minutes=1),
        )

        result = await app.coordinator.coordinate_refresh(user.id, PROVIDER)

        assert result.outcome == RefreshOutcome.FAILURE
        assert result.message == "lock wait timeout"
        assert not result.provider_attempted
        assert provider.refresh_calls == 0

    async def test_expired_lease_is_taken_over(self, app, make_user, make_token, get_token, provider):
        user = await make_user()
        await make_token(
            user,
            expires_in=timedelta(minutes=1),
            refresh_lock_owner="crashed-worker",
            refresh_lock_expires_at=utc_now() - timedelta(seconds=1),
        )

        result = await app.coordinator.coordinate_refresh(user.id, PROVIDER)

        assert result.was_refreshed
        assert (await get_token(user)).refresh_lock_expires_at is None

    async def test_refresh_by_another_process_while_waiting(
        self, app, make_user, make_token, session_factory, crypto, provider
    ):
        user = await make_user()
        token = await make_token(
            user,
            expires_in=timedelta(minutes=1),
            refresh_lock_owner="other-worker",
            refresh_lock_expires_at=utc_now() + timedelta(minutes=1),
        )

        async def other_process():
            await asyncio.sleep(0.08)
            async with with_unit_of_work(session_factory) as session:
                repo = CloudStorageTokensRepository(session, crypto)
                stored = await repo.get_token_for_update(user.id, PROVIDER)
                await repo.store_refreshed_credentials(
                    stored, "access-other", None, utc_now() + timedelta(hours=1)
                )
                await repo.release_refresh_lease(token.id, "other-worker")

        result, _ = await asyncio.gather(
            app.coordinator.coordinate_refresh(user.id, PROVIDER), other_process()
        )

        assert result.outcome == RefreshOutcome.REFRESHED_BY_ANOTHER_PROCESS
        assert result.is_successful
        assert provider.refresh_calls == 0


class TestRefreshFailureHandling:
    async def test_invalid_grant_requires_intervention(
        self, app, make_user, make_token, get_token, provider, mail_sender, job_queue, alert_manager
    ):
        user = await make_user()
        await make_token(user, expires_in=timedelta(minutes=10))
        provider.refresh_error = ProviderError(
            "Token has been expired or revoked.", status_code=400, reason="invalid_grant"
        )

        result = await app.renewal.refresh_token_if_needed(user.id, PROVIDER)

        assert result.error_kind == ErrorKind.INVALID_CREDENTIALS
        token = await get_token(user)
        assert token.refresh_failure_count == 1
        assert token.requires_user_intervention
        assert token.last_refresh_error_type == "invalid_credentials"
        assert token.last_notification_sent_at is not None

        summary = await app.health_tracker.get_health_summary(user.id, PROVIDER)
        assert summary.consecutive_failures == 1
        assert summary.is_healthy
        assert summary.requires_reconnection

        assert len(mail_sender.of_type("refresh_failure")) == 1
        assert job_queue.jobs == []
        assert alert_manager.recent_alerts[-1].severity == AlertSeverity.CRITICAL

    async def test_recoverable_failure_schedules_retry(
        self, app, make_user, make_token, get_token, provider, mail_sender, job_queue
    ):
        user = await make_user()
        await make_token(user, expires_in=timedelta(minutes=10))
        provider.refresh_error = httpx.ConnectError("connection refused")

        await app.renewal.refresh_token_if_needed(user.id, PROVIDER, attempt=1)

        token = await get_token(user)
        assert token.refresh_failure_count == 1
        assert not token.requires_user_intervention
        assert mail_sender.messages == []

        [job] = job_queue.by_function(REFRESH_TOKEN_JOB)
        assert job.lane == Lane.MAINTENANCE
        assert job.job_id == refresh_job_id(user.id, PROVIDER, 2)
        assert job.defer_seconds == 30
        assert job.payload["attempt"] == 2
        assert job.payload["reason"] == "retry"

    async def test_last_recoverable_attempt_notifies_without_retry(
        self, app, make_user, make_token, provider, mail_sender, job_queue
    ):
        user = await make_user()
        await make_token(user, expires_in=timedelta(minutes=10))
        provider.refresh_error = httpx.ReadTimeout("read timed out")

        await app.renewal.refresh_token_if_needed(
            user.id, PROVIDER, attempt=ErrorKind.TIMEOUT.max_attempts
        )

        assert len(mail_sender.of_type("refresh_failure")) == 1
        assert job_queue.jobs == []

    async def test_ceiling_forces_intervention(self, app, make_user, make_token, get_token, provider, job_queue):
        user = await make_user()
        await make_token(user, expires_in=timedelta(minutes=10), refresh_failure_count=4)
        provider.refresh_error = httpx.ConnectError("connection refused")

        await app.renewal.refresh_token_if_needed(user.id, PROVIDER)

        token = await get_token(user)
        assert token.refresh_failure_count == 5
        assert token.requires_user_intervention
        assert job_queue.jobs == []

    async def test_lock_timeout_is_not_counted(self, app, make_user, make_token, get_token):
        user = await make_user()
        await make_token(
            user,
            expires_in=timedelta(minutes=1),
            refresh_lock_owner="other-worker",
            refresh_lock_expires_at=utc_now() + timedelta(minutes=1),
        )

        await app.renewal.refresh_token_if_needed(user.id, PROVIDER)

        assert (await get_token(user)).refresh_failure_count == 0
        summary = await app.health_tracker.get_health_summary(user.id, PROVIDER)
        assert summary.consecutive_failures == 0

    async def test_recovery_sends_restored_notification(self, app, make_user, make_token, mail_sender):
        user = await make_user()
        await make_token(user, expires_in=timedelta(minutes=1))
        for _ in range(5):
            await app.health_tracker.mark_connection_as_unhealthy(
                user.id, PROVIDER, "Connection reset", ErrorKind.NETWORK_ERROR
            )

        result = await app.renewal.refresh_token_if_needed(user.id, PROVIDER)

        assert result.was_refreshed
        assert len(mail_sender.of_type("connection_restored")) == 1


class TestGetValidAccessToken:
    async def test_returns_stored_token_when_valid(self, app, make_user, make_token, provider):
        user = await make_user()
        await make_token(user, expires_in=timedelta(hours=1))
        assert await app.renewal.get_valid_access_token(user.id, PROVIDER) == "access-0"
        assert provider.refresh_calls == 0

    async def test_refreshes_when_expiring(self, app, make_user, make_token):
        user = await make_user()
        await make_token(user, expires_in=timedelta(minutes=3))
        assert await app.renewal.get_valid_access_token(user.id, PROVIDER) == "access-1"

    async def test_raises_with_kind(self, app, make_user, make_token, provider):
        user = await make_user()
        await make_token(user, expires_in=timedelta(minutes=3))
        provider.refresh_error = ProviderError("quota", status_code=403, reason="dailyLimitExceeded")

        with pytest.raises(TokenRefreshError) as exc_info:
            await app.renewal.get_valid_access_token(user.id, PROVIDER)
        assert exc_info.value.kind == ErrorKind.API_QUOTA_EXCEEDED

    async def test_missing_token_raises_invalid_credentials(self, app, make_user):
        user = await make_user()
        with pytest.raises(TokenRefreshError) as exc_info:
            await app.renewal.get_valid_access_token(user.id, PROVIDER)
        assert exc_info.value.kind == ErrorKind.INVALID_CREDENTIALS

    async def test_token_removed_after_check(self, app, make_user):
        """The coordinator saw a valid token, but it was deleted before it could be read."""
        user = await make_user()
        with patch.object(
            app.coordinator,
            "coordinate_refresh",
            AsyncMock(return_value=RefreshResult.already_valid()),
        ):
            with pytest.raises(TokenRefreshError) as exc_info:
                await app.renewal.get_valid_access_token(user.id, PROVIDER)
        assert exc_info.value.kind == ErrorKind.INVALID_CREDENTIALS
        assert isinstance(exc_info.value.__cause__, TokenNotFoundError)


class TestTokenRepository:
    async def test_require_token(self, session_factory, make_user, make_token):
        stored, missing = await make_user(), await make_user()
        await make_token(stored)

        async with with_unit_of_work(session_factory) as session:
            repo = CloudStorageTokensRepository(session)
            assert (await repo.require_token(stored.id, PROVIDER)).user_id == stored.id
            with pytest.raises(TokenNotFoundError):
                await repo.require_token(missing.id, PROVIDER)
