"""Tests for the token and upload record helpers."""

from datetime import timedelta

import pytest

from upload_resilience.db.models import CloudStorageToken, FileUpload
from upload_resilience.services.error_classifier import ErrorKind
from upload_resilience.utils.clock import utc_now


def token(expires_in=timedelta(hours=1), **columns):
    values = {
        "refresh_token_ciphertext": b"encrypted",
        "expires_at": utc_now() + expires_in if expires_in is not None else None,
        "refresh_failure_count": 0,
        "requires_user_intervention": False,
        "proactive_refresh_scheduled_at": None,
    }
    values.update(columns)
    return CloudStorageToken(**values)


class TestTokenHelpers:
    def test_expiry(self):
        assert token(timedelta(minutes=-1)).is_expired()
        assert not token(timedelta(minutes=1)).is_expired()
        assert not token(None).is_expired()

    @pytest.mark.parametrize(
        "expires_in, expected",
        [(timedelta(minutes=10), True), (timedelta(minutes=20), False), (None, False)],
    )
    def test_expiring_soon(self, expires_in, expected):
        assert token(expires_in).is_expiring_soon(15) is expected

    @pytest.mark.parametrize(
        "columns",
        [
            {"refresh_token_ciphertext": None},
            {"requires_user_intervention": True},
            {"refresh_failure_count": 5},
        ],
    )
    def test_cannot_be_refreshed(self, columns):
        assert not token(**columns).can_be_refreshed(failure_ceiling=5)

    def test_should_schedule_proactive_refresh(self):
        assert token(timedelta(minutes=25)).should_schedule_proactive_refresh(30)
        assert not token(timedelta(hours=2)).should_schedule_proactive_refresh(30)
        stamped = token(timedelta(minutes=25), proactive_refresh_scheduled_at=utc_now())
        assert not stamped.should_schedule_proactive_refresh(30)

    def test_failure_then_success(self):
        record = token(timedelta(minutes=5))

        record.mark_refresh_failure(ErrorKind.NETWORK_ERROR.value, requires_intervention=False)
        assert record.refresh_failure_count == 1
        assert not record.requires_user_intervention

        new_expiry = utc_now() + timedelta(hours=1)
        record.proactive_refresh_scheduled_at = utc_now()
        record.mark_refresh_success(new_expiry)

        assert record.refresh_failure_count == 0
        assert record.last_refresh_error_type is None
        assert record.proactive_refresh_scheduled_at is None
        assert record.expires_at == new_expiry
        assert record.last_successful_refresh_at is not None

    def test_ceiling_forces_intervention(self):
        record = token(refresh_failure_count=4)
        record.mark_refresh_failure(ErrorKind.TIMEOUT.value, requires_intervention=False, failure_ceiling=5)
        assert record.requires_user_intervention

    def test_intervention_kind(self):
        record = token()
        record.mark_refresh_failure(ErrorKind.INVALID_CREDENTIALS.value, requires_intervention=True)
        assert record.requires_user_intervention
        assert record.refresh_failure_count == 1


class TestUploadHelpers:
    def upload(self, **columns):
        values = {"retry_count": 0, "recovery_attempts": 0, "cloud_file_id": None, "error_details": None}
        values.update(columns)
        return FileUpload(**values)

    def test_can_be_retried(self):
        assert self.upload(retry_count=2, recovery_attempts=4).can_be_retried(3, 5)
        assert not self.upload(retry_count=3).can_be_retried(3, 5)
        assert not self.upload(recovery_attempts=5).can_be_retried(3, 5)
        assert not self.upload(cloud_file_id="drive-1").can_be_retried(3, 5)

    def test_recovery_status_merges_details(self):
        record = self.upload(error_details={"original": "kept"})

        record.update_recovery_status("retry_deferred", defer_seconds=300)

        assert record.recovery_status == "retry_deferred"
        assert record.error_details["original"] == "kept"
        assert record.error_details["defer_seconds"] == 300
        assert "recovery_updated_at" in record.error_details

    def test_clear_cloud_storage_error(self):
        record = self.upload(
            cloud_storage_error_type="network_error",
            cloud_storage_error_context={"error_type": "network_error"},
            connection_health_at_failure={"status": "healthy"},
            last_error="connection reset",
        )
        record.clear_cloud_storage_error()
        assert record.cloud_storage_error_type is None
        assert record.cloud_storage_error_context is None
        assert record.connection_health_at_failure is None
        assert record.last_error is None
