"""
Notification dispatcher for token and upload problems.

Delivery is best effort. Every send is throttled per (user, provider,
notification type) using the ``notification_deliveries`` table, and delivery
failures are caught, counted and, after repeated failures, escalated to admin
users and raised as an operator alert. Nothing here raises to the caller.
"""

import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..clients.mail import MailMessage, MailSender
from ..config import Settings
from ..db.database import with_unit_of_work
from ..db.models import FileUpload, User
from ..db.repositories import NotificationDeliveriesRepository, UsersRepository
from ..utils.alerting import AlertManager
from ..utils.clock import utc_now
from .error_classifier import ErrorKind

logger = structlog.get_logger(__name__)


class NotificationError(Exception):
    """Raised by mail senders; never escapes the dispatcher."""

    pass


class NotificationType(str, Enum):
    TOKEN_EXPIRED = "token_expired"
    REFRESH_FAILURE = "refresh_failure"
    CONNECTION_RESTORED = "connection_restored"
    UPLOAD_FAILURE = "upload_failure"
    TOKEN_EXPIRING = "token_expiring"
    CONNECTION_UNHEALTHY = "connection_unhealthy"
    MULTIPLE_FAILURES = "multiple_failures"


class DeliveryOutcome(str, Enum):
    SENT = "sent"
    THROTTLED = "throttled"
    SKIPPED = "skipped"
    DISABLED = "disabled"
    FAILED = "failed"


def _provider_label(provider: str) -> str:
    return provider.replace("-", " ").title()


class NotificationDispatcher:
    """
    Sends user notifications through an injected ``MailSender``.

    Throttle bookkeeping runs in its own unit of work so a failed parent
    transaction never loses the record of a message already sent.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        mail_sender: MailSender,
        alert_manager: AlertManager,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.mail_sender = mail_sender
        self.alert_manager = alert_manager

    # ===== Public operations =====

    async def send_token_expired_notification(
        self, user: User, provider: str
    ) -> DeliveryOutcome:
        label = _provider_label(provider)
        return await self._deliver(
            user,
            provider,
            NotificationType.TOKEN_EXPIRED,
            subject=f"Action required: reconnect {label}",
            body=(
                f"Hello {user.name or user.email},\n\n"
                f"Your {label} connection has expired and can no longer be renewed "
                "automatically. Uploads to your account are paused until you "
                "reconnect it from your dashboard."
            ),
        )

    async def send_refresh_failure_notification(
        self,
        user: User,
        provider: str,
        error_kind: Union[ErrorKind, str],
        attempt: int,
        error_message: Optional[str] = None,
    ) -> DeliveryOutcome:
        kind = ErrorKind.coerce(error_kind)
        label = _provider_label(provider)
        if kind.requires_user_intervention:
            advice = f"Please reconnect {label} from your dashboard."
        else:
            advice = "We will keep retrying automatically."
        return await self._deliver(
            user,
            provider,
            NotificationType.REFRESH_FAILURE,
            subject=f"{label} connection problem",
            body=(
                f"Hello {user.name or user.email},\n\n"
                f"Renewing your {label} access failed after {attempt} attempt(s) "
                f"({kind.value}). {advice}"
            ),
            metadata={
                "error_type": kind.value,
                "attempt": attempt,
                "error_message": (error_message or "")[:500],
            },
        )

    async def handle_token_refresh_failure(
        self,
        user: User,
        provider: str,
        error_kind: Union[ErrorKind, str],
        error: Optional[BaseException],
        attempt: int,
    ) -> DeliveryOutcome:
        """
        Pick the notification strategy for a failed refresh.

        Kinds requiring the user notify at once (an expired token gets the
        dedicated message). Recoverable kinds stay quiet until ``attempt``
        reaches the kind's maximum. Other non-recoverable kinds notify at once.
        """
        kind = ErrorKind.coerce(error_kind)
        message = str(error) if error is not None else None

        logger.info(
            "Handling token refresh failure notification",
            user_id=str(user.id),
            provider=provider,
            error_type=kind.value,
            attempt=attempt,
            notify_immediately=kind.notify_immediately,
        )

        if kind.notify_immediately:
            if kind == ErrorKind.TOKEN_EXPIRED:
                return await self.send_token_expired_notification(user, provider)
            return await self.send_refresh_failure_notification(
                user, provider, kind, attempt, message
            )

        if kind.is_recoverable:
            if attempt >= kind.max_attempts:
                logger.info(
                    "Max retry attempts reached, sending failure notification",
                    user_id=str(user.id),
                    provider=provider,
                    error_type=kind.value,
                    attempt=attempt,
                    max_attempts=kind.max_attempts,
                )
                return await self.send_refresh_failure_notification(
                    user, provider, kind, attempt, message
                )
            logger.info(
                "Recoverable error, not sending notification yet",
                user_id=str(user.id),
                provider=provider,
                error_type=kind.value,
                attempt=attempt,
                max_attempts=kind.max_attempts,
            )
            return DeliveryOutcome.SKIPPED

        return await self.send_refresh_failure_notification(
            user, provider, kind, attempt, message
        )

    async def send_connection_restored_notification(
        self, user: User, provider: str
    ) -> DeliveryOutcome:
        label = _provider_label(provider)
        return await self._deliver(
            user,
            provider,
            NotificationType.CONNECTION_RESTORED,
            subject=f"{label} connection restored",
            body=(
                f"Hello {user.name or user.email},\n\n"
                f"Your {label} connection is working again. Pending uploads will "
                "resume automatically."
            ),
        )

    async def send_upload_failure_notification(
        self,
        user: User,
        provider: str,
        upload: FileUpload,
        error_message: str,
        total_attempts: int,
    ) -> DeliveryOutcome:
        label = _provider_label(provider)
        return await self._deliver(
            user,
            provider,
            NotificationType.UPLOAD_FAILURE,
            subject=f"Upload to {label} failed",
            body=(
                f"Hello {user.name or user.email},\n\n"
                f"The file '{upload.original_filename}' from {upload.email} could not "
                f"be uploaded to {label} after {total_attempts} attempt(s): "
                f"{error_message}. It is kept locally for manual recovery."
            ),
            metadata={"upload_id": upload.id, "total_attempts": total_attempts},
        )

    async def send_token_expiring_notification(
        self, user: User, provider: str, expires_at: Optional[datetime]
    ) -> DeliveryOutcome:
        label = _provider_label(provider)
        when = expires_at.strftime("%Y-%m-%d %H:%M UTC") if expires_at else "soon"
        return await self._deliver(
            user,
            provider,
            NotificationType.TOKEN_EXPIRING,
            subject=f"{label} access expiring",
            body=(
                f"Hello {user.name or user.email},\n\n"
                f"Your {label} access expires {when} and automatic renewal has "
                "not succeeded yet. Reconnect if the problem persists."
            ),
            throttle_hours=self.settings.expiring_notification_throttle_hours,
        )

    async def send_unhealthy_connection_notification(
        self,
        user: User,
        provider: str,
        consecutive_failures: int,
        last_error_type: Optional[str] = None,
    ) -> DeliveryOutcome:
        """Alert about a failing connection; quiet below the minimum failure count."""
        if consecutive_failures < self.settings.unhealthy_notification_min_failures:
            return DeliveryOutcome.SKIPPED

        if consecutive_failures >= self.settings.health_unhealthy_threshold:
            notification_type = NotificationType.MULTIPLE_FAILURES
        else:
            notification_type = NotificationType.CONNECTION_UNHEALTHY

        label = _provider_label(provider)
        return await self._deliver(
            user,
            provider,
            notification_type,
            subject=f"{label} connection unhealthy",
            body=(
                f"Hello {user.name or user.email},\n\n"
                f"The last {consecutive_failures} operations against your {label} "
                f"account failed ({last_error_type or 'unknown error'}). Uploads may "
                "be delayed."
            ),
            metadata={
                "consecutive_failures": consecutive_failures,
                "last_error_type": last_error_type,
            },
            throttle_hours=self.settings.unhealthy_notification_throttle_hours,
        )

    async def clear_notification_throttle(
        self,
        user_id: uuid.UUID,
        provider: str,
        notification_type: Optional[NotificationType] = None,
    ) -> None:
        types = [notification_type] if notification_type else list(NotificationType)
        async with with_unit_of_work(self.session_factory) as session:
            repo = NotificationDeliveriesRepository(session)
            for ntype in types:
                record = await repo.get(user_id, provider, ntype.value)
                if record is not None:
                    record.last_sent_at = None

    async def get_notification_status(
        self, user_id: uuid.UUID, provider: str
    ) -> Dict[str, Dict[str, Any]]:
        now = utc_now()
        status: Dict[str, Dict[str, Any]] = {}
        async with with_unit_of_work(self.session_factory) as session:
            repo = NotificationDeliveriesRepository(session)
            for ntype in NotificationType:
                record = await repo.get(user_id, provider, ntype.value)
                last_sent = record.last_sent_at if record else None
                until = (
                    last_sent + timedelta(hours=self._throttle_hours(ntype))
                    if last_sent
                    else None
                )
                status[ntype.value] = {
                    "last_sent": last_sent,
                    "can_send": until is None or until <= now,
                    "throttled_until": until,
                    "failure_count": record.failure_count if record else 0,
                }
        return status

    # ===== Delivery =====

    def _throttle_hours(self, notification_type: NotificationType) -> int:
        if notification_type == NotificationType.TOKEN_EXPIRING:
            return self.settings.expiring_notification_throttle_hours
        if notification_type in (
            NotificationType.CONNECTION_UNHEALTHY,
            NotificationType.MULTIPLE_FAILURES,
        ):
            return self.settings.unhealthy_notification_throttle_hours
        return self.settings.notification_throttle_hours

    async def _deliver(
        self,
        user: User,
        provider: str,
        notification_type: NotificationType,
        subject: str,
        body: str,
        metadata: Optional[Dict[str, Any]] = None,
        throttle_hours: Optional[int] = None,
    ) -> DeliveryOutcome:
        log = logger.bind(
            user_id=str(user.id),
            provider=provider,
            notification_type=notification_type.value,
        )
        if not self.settings.notifications_enabled:
            log.debug("Notifications disabled, not sending")
            return DeliveryOutcome.DISABLED

        hours = throttle_hours or self.settings.notification_throttle_hours
        now = utc_now()

        async with with_unit_of_work(self.session_factory) as session:
            record = await NotificationDeliveriesRepository(session).get_or_create(
                user.id, provider, notification_type.value
            )
            if record.last_sent_at and now < record.last_sent_at + timedelta(hours=hours):
                log.info("Notification throttled", last_sent_at=record.last_sent_at.isoformat())
                return DeliveryOutcome.THROTTLED

            message = MailMessage(
                to=user.email,
                subject=subject,
                body=body,
                notification_type=notification_type.value,
                metadata=metadata or {},
            )
            try:
                await self.mail_sender.send(message)
            except Exception as e:
                record.failure_count += 1
                record.last_failure_at = now
                record.last_error = str(e)[:1000]
                failure_count = record.failure_count
                error_message = str(e)
                log.error(
                    "Notification delivery failed",
                    error=str(e),
                    failure_count=failure_count,
                )
            else:
                record.last_sent_at = now
                record.failure_count = 0
                record.last_error = None
                log.info("Notification sent", email=user.email)
                return DeliveryOutcome.SENT

        if failure_count >= self.settings.max_notification_failures:
            await self._escalate(
                user, provider, notification_type, failure_count, error_message
            )
        return DeliveryOutcome.FAILED

    async def _escalate(
        self,
        user: User,
        provider: str,
        notification_type: NotificationType,
        failure_count: int,
        error_message: str,
    ) -> None:
        self.alert_manager.alert_notification_delivery_failure(
            str(user.id), provider, notification_type.value, failure_count, error_message
        )
        if not self.settings.escalate_to_admin:
            return

        async with with_unit_of_work(self.session_factory) as session:
            admins = await UsersRepository(session).list_admins()

        if not admins:
            logger.critical(
                "No admin users found for notification escalation",
                user_id=str(user.id),
                provider=provider,
                notification_type=notification_type.value,
                failure_count=failure_count,
            )
            return

        for admin in admins:
            message = MailMessage(
                to=admin.email,
                subject=f"Notification failure for {user.email}",
                body=(
                    f"The '{notification_type.value}' notification for {user.email} "
                    f"({_provider_label(provider)}) failed {failure_count} times. "
                    f"Last error: {error_message}"
                ),
                notification_type="admin_escalation",
                metadata={"original_user_id": str(user.id)},
            )
            try:
                await self.mail_sender.send(message)
                logger.info(
                    "Notification failure escalated to admin",
                    admin_id=str(admin.id),
                    original_user_id=str(user.id),
                    provider=provider,
                    notification_type=notification_type.value,
                )
            except Exception as e:
                logger.error(
                    "Failed to escalate notification failure to admin",
                    admin_id=str(admin.id),
                    original_user_id=str(user.id),
                    error=str(e),
                )
