"""
Recovery of uploads whose cloud transfer failed.

``UploadRecoveryService.process`` is the body of the pending upload retry
job. It checks, in order:

1. already delivered                -> skip (``already_uploaded``)
2. retry/recovery ceilings reached  -> skip (``exceeded_retry_limits``)
3. recorded kind not recoverable    -> skip (``non_recoverable_error``)
4. local file missing               -> permanent failure, nothing consumed
5. no target user                   -> permanent failure
6. target connection unhealthy      -> ``UploadRetryDeferred``

and otherwise consumes one recovery attempt, clears the recorded error and
re-dispatches the upload on the high lane.
"""

import uuid
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..clients.file_store import LocalFileStore
from ..config import Settings
from ..db.database import with_unit_of_work
from ..db.models import FileUpload
from ..db.repositories import FileUploadsRepository
from ..jobs.queue import (
    PENDING_UPLOAD_RETRY_JOB,
    UPLOAD_TO_PROVIDER_JOB,
    JobQueue,
    Lane,
    UploadPayload,
    UploadRetryPayload,
    upload_retry_job_id,
)
from ..utils.alerting import AlertManager
from ..utils.clock import utc_now
from .error_classifier import ErrorKind
from .health_tracker import HealthTracker
from .notifications import NotificationDispatcher
from .upload_transfer import UploadTransferService

logger = structlog.get_logger(__name__)


class UploadRetryDeferred(Exception):
    """The retry should run again later; not a failure."""

    def __init__(self, defer_seconds: int, message: str = "Upload retry deferred"):
        super().__init__(message)
        self.defer_seconds = defer_seconds


class SkipReason(str, Enum):
    ALREADY_UPLOADED = "already_uploaded"
    EXCEEDED_RETRY_LIMITS = "exceeded_retry_limits"
    NON_RECOVERABLE_ERROR = "non_recoverable_error"
    MISSING_LOCAL_FILE = "missing_local_file"
    NO_TARGET_USER = "no_target_user"


class RecoveryDecision(NamedTuple):
    upload_id: int
    status: str  # dispatched, skipped or failed
    reason: Optional[SkipReason] = None
    target_user_id: Optional[uuid.UUID] = None
    recovery_attempts: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "upload_id": self.upload_id,
            "status": self.status,
            "reason": self.reason.value if self.reason else None,
            "target_user_id": str(self.target_user_id) if self.target_user_id else None,
            "recovery_attempts": self.recovery_attempts,
        }


class UploadRecoveryService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        transfer: UploadTransferService,
        health_tracker: HealthTracker,
        notifier: NotificationDispatcher,
        job_queue: JobQueue,
        alert_manager: AlertManager,
        file_store: LocalFileStore,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.transfer = transfer
        self.health_tracker = health_tracker
        self.notifier = notifier
        self.job_queue = job_queue
        self.alert_manager = alert_manager
        self.file_store = file_store

    def skip_reason(self, upload: FileUpload) -> Optional[SkipReason]:
        if upload.is_delivered:
            return SkipReason.ALREADY_UPLOADED
        if not upload.can_be_retried(
            self.settings.upload_max_retry_count, self.settings.upload_max_recovery_attempts
        ):
            return SkipReason.EXCEEDED_RETRY_LIMITS
        if (
            upload.cloud_storage_error_type
            and not ErrorKind.coerce(upload.cloud_storage_error_type).is_recoverable
        ):
            return SkipReason.NON_RECOVERABLE_ERROR
        return None

    async def process(self, upload_id: int, provider: str) -> RecoveryDecision:
        """
        Run the recovery checks and re-dispatch the upload.

        Raises:
            UploadRetryDeferred: If the target connection is unhealthy
        """
        log = logger.bind(upload_id=upload_id, provider=provider)

        async with with_unit_of_work(self.session_factory) as session:
            upload = await FileUploadsRepository(session).get_upload(upload_id)

            reason = self.skip_reason(upload)
            if reason is not None:
                if reason != SkipReason.ALREADY_UPLOADED:
                    upload.retry_recommended_at = None
                log.info("Upload retry skipped", reason=reason.value)
                return RecoveryDecision(upload_id, "skipped", reason)

            if not self.file_store.exists(upload.filename):
                upload.retry_recommended_at = None
                upload.last_error = f"Local file no longer exists: {upload.filename}"
                upload.update_recovery_status(
                    "recovery_failed",
                    recovery_failed=True,
                    reason=SkipReason.MISSING_LOCAL_FILE.value,
                )
                log.warning("Local file missing, upload cannot be recovered", filename=upload.filename)
                return RecoveryDecision(upload_id, "failed", SkipReason.MISSING_LOCAL_FILE)

            target = await self.transfer.resolve_target_user(upload, session)
            if target is None:
                upload.retry_recommended_at = None
                upload.update_recovery_status(
                    "recovery_failed",
                    recovery_failed=True,
                    reason=SkipReason.NO_TARGET_USER.value,
                )
                log.error("No target user for upload retry")
                return RecoveryDecision(upload_id, "failed", SkipReason.NO_TARGET_USER)

            health = await self.health_tracker.get_health_summary(
                target.id, provider, session=session
            )
            if health.is_unhealthy:
                log.warning(
                    "Connection still unhealthy, deferring retry",
                    target_user_id=str(target.id),
                    consecutive_failures=health.consecutive_failures,
                )
                raise UploadRetryDeferred(self.settings.upload_unhealthy_defer_seconds)

            upload.recovery_attempts += 1
            upload.last_processed_at = utc_now()
            upload.retry_recommended_at = None
            upload.clear_cloud_storage_error()
            upload.update_recovery_status("retry_dispatched", target_user_id=str(target.id))
            attempts = upload.recovery_attempts

        await self.job_queue.enqueue(
            UPLOAD_TO_PROVIDER_JOB,
            UploadPayload(
                upload_id=upload_id,
                provider=provider,
                tags=["upload", "recovery", f"upload:{upload_id}", f"provider:{provider}"],
            ),
            lane=Lane.HIGH,
            defer_seconds=self.settings.upload_dispatch_delay_seconds,
        )
        log.info(
            "Upload retry dispatched",
            target_user_id=str(target.id),
            recovery_attempts=attempts,
        )
        return RecoveryDecision(upload_id, "dispatched", target_user_id=target.id, recovery_attempts=attempts)

    async def postpone(self, upload_id: int, defer_seconds: int) -> None:
        """Hand the upload back to the sweep once the retry job runs out of tries."""
        async with with_unit_of_work(self.session_factory) as session:
            upload = await FileUploadsRepository(session).get_upload(upload_id)
            upload.retry_recommended_at = utc_now() + timedelta(seconds=defer_seconds)
            upload.update_recovery_status("retry_deferred", defer_seconds=defer_seconds)

    async def record_retry_job_error(
        self, upload_id: int, error: BaseException, attempt: int
    ) -> None:
        async with with_unit_of_work(self.session_factory) as session:
            upload = await FileUploadsRepository(session).get_upload(upload_id)
            upload.update_recovery_status(
                "retry_job_failed",
                retry_job_failed=True,
                attempt=attempt,
                error=str(error)[:500],
                exception_class=type(error).__name__,
            )

    async def handle_permanent_failure(
        self,
        upload_id: int,
        provider: str,
        error: BaseException,
        total_attempts: int,
    ) -> None:
        """Mark recovery as permanently failed and tell the target user."""
        async with with_unit_of_work(self.session_factory) as session:
            upload = await FileUploadsRepository(session).get_upload(upload_id)
            upload.update_recovery_status(
                "recovery_permanently_failed",
                recovery_permanently_failed=True,
                total_retry_attempts=total_attempts,
                final_error=str(error)[:500],
                final_exception_class=type(error).__name__,
            )
            upload.retry_recommended_at = None
            target = await self.transfer.resolve_target_user(upload, session)

        logger.error(
            "Upload recovery permanently failed",
            upload_id=upload_id,
            provider=provider,
            total_attempts=total_attempts,
            error=str(error),
        )
        self.alert_manager.alert_upload_permanently_failed(
            upload_id,
            str(target.id) if target else None,
            provider,
            str(error),
            total_attempts,
        )
        if target is not None:
            await self.notifier.send_upload_failure_notification(
                target, provider, upload, str(error), total_attempts
            )

    async def schedule_pending_upload_retries(self, limit: Optional[int] = None) -> Dict[str, int]:
        """Enqueue retry jobs for uploads whose recommended retry time has passed."""
        now = utc_now()
        summary = {"found": 0, "scheduled": 0, "already_queued": 0, "errors": 0}

        async with with_unit_of_work(self.session_factory) as session:
            uploads = await FileUploadsRepository(session).find_retryable_uploads(
                self.settings.upload_max_retry_count,
                self.settings.upload_max_recovery_attempts,
                limit or self.settings.upload_retry_batch_size,
                now,
            )
        summary["found"] = len(uploads)

        for upload in uploads:
            provider = upload.cloud_storage_provider
            payload = UploadRetryPayload(
                upload_id=upload.id,
                provider=provider,
                retry_until=now + timedelta(minutes=self.settings.upload_retry_deadline_minutes),
                tags=["upload-retry", f"upload:{upload.id}", f"provider:{provider}"],
            )
            try:
                job_id = await self.job_queue.enqueue(
                    PENDING_UPLOAD_RETRY_JOB,
                    payload,
                    lane=Lane.DEFAULT,
                    job_id=upload_retry_job_id(upload.id, provider),
                )
            except Exception as e:
                summary["errors"] += 1
                logger.error("Failed to enqueue upload retry", upload_id=upload.id, error=str(e))
                continue
            if job_id is None:
                summary["already_queued"] += 1
            else:
                summary["scheduled"] += 1

        logger.info("Pending upload retries scheduled", **summary)
        return summary
