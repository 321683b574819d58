"""
Proactive token renewal.

``TokenRenewalService`` sits between the refresh coordinator and everything
that needs a working token:

- ``refresh_token_if_needed`` runs a coordinated refresh and bookkeeps failures
  (token counters, health, notifications, operator alerts, retry jobs).
- ``schedule_proactive_refresh_for_expiring_tokens`` is the tiered scheduling
  pass of the maintenance sweep: tokens inside the immediate window go to the
  high lane now, tokens further out go to the maintenance lane, deferred until
  shortly before expiry, and are stamped so they are not scheduled twice.
"""

import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db.database import with_unit_of_work
from ..db.models import CloudStorageToken
from ..db.repositories import (
    CloudStorageTokensRepository,
    TokenNotFoundError,
    UsersRepository,
)
from ..jobs.queue import (
    REFRESH_TOKEN_JOB,
    JobQueue,
    Lane,
    RefreshTokenPayload,
    refresh_job_id,
)
from ..utils.alerting import AlertManager
from ..utils.clock import utc_now
from ..utils.crypto import CryptoService
from .error_classifier import ErrorClassifier, ErrorKind
from .health_tracker import HealthTracker
from .notifications import DeliveryOutcome, NotificationDispatcher
from .token_refresh_coordinator import (
    RefreshResult,
    TokenRefreshCoordinator,
    TokenRefreshError,
)

logger = structlog.get_logger(__name__)


class TokenRenewalService:
    """Refreshes tokens on demand and schedules refreshes ahead of expiry."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        crypto: CryptoService,
        coordinator: TokenRefreshCoordinator,
        health_tracker: HealthTracker,
        notifier: NotificationDispatcher,
        job_queue: JobQueue,
        alert_manager: AlertManager,
        classifier: Optional[ErrorClassifier] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.crypto = crypto
        self.coordinator = coordinator
        self.health_tracker = health_tracker
        self.notifier = notifier
        self.job_queue = job_queue
        self.alert_manager = alert_manager
        self.classifier = classifier or ErrorClassifier()

    # ===== On-demand refresh =====

    async def refresh_token_if_needed(
        self,
        user_id: uuid.UUID,
        provider: str,
        attempt: int = 1,
        force: bool = False,
        window_minutes: Optional[int] = None,
    ) -> RefreshResult:
        before = await self.health_tracker.get_health_summary(user_id, provider)
        result = await self.coordinator.coordinate_refresh(
            user_id, provider, force=force, window_minutes=window_minutes
        )

        if result.was_refreshed and (before.is_unhealthy or before.requires_reconnection):
            user = await self._get_user(user_id)
            if user is not None:
                await self.notifier.send_connection_restored_notification(user, provider)
        elif not result.is_successful:
            await self.handle_refresh_failure(
                user_id, provider, result, attempt, window_minutes=window_minutes
            )

        return result

    async def get_valid_access_token(self, user_id: uuid.UUID, provider: str) -> str:
        """
        Return a usable access token, refreshing first when needed.

        Raises:
            TokenRefreshError: If no usable token can be obtained
        """
        result = await self.refresh_token_if_needed(user_id, provider)
        if not result.is_successful:
            raise TokenRefreshError(result)
        if result.credentials is not None:
            return result.credentials.access_token

        async with with_unit_of_work(self.session_factory) as session:
            repo = CloudStorageTokensRepository(session, self.crypto)
            try:
                token = await repo.require_token(user_id, provider)
            except TokenNotFoundError as e:
                raise TokenRefreshError(
                    RefreshResult.failure(ErrorKind.INVALID_CREDENTIALS, e, str(e))
                ) from e
            return repo.get_decrypted_access_token(token)

    async def handle_refresh_failure(
        self,
        user_id: uuid.UUID,
        provider: str,
        result: RefreshResult,
        attempt: int = 1,
        window_minutes: Optional[int] = None,
    ) -> None:
        """
        Bookkeep a failed refresh.

        Only failures of an actual provider call count against the token. The
        token's failure counter and intervention flag are updated, the
        connection is marked unhealthy, the user is notified when the kind
        requires it or failures reached the notify threshold, and recoverable
        failures on a still-refreshable token get a retry job.
        """
        kind = result.error_kind or ErrorKind.UNKNOWN_ERROR
        log = logger.bind(user_id=str(user_id), provider=provider, error_type=kind.value)

        if not result.provider_attempted:
            log.info("Refresh not attempted", reason=result.message)
            return

        now = utc_now()
        async with with_unit_of_work(self.session_factory) as session:
            token = await CloudStorageTokensRepository(session).get_token_for_update(
                user_id, provider
            )
            if token is None:
                log.warning("Token disappeared before failure could be recorded")
                return

            token.mark_refresh_failure(
                kind.value,
                kind.requires_user_intervention,
                self.settings.token_failure_ceiling,
                now,
            )
            await self.health_tracker.mark_connection_as_unhealthy(
                user_id, provider, result.message, kind, session=session
            )
            user = await UsersRepository(session).get_user_by_id(user_id)
            failure_count = token.refresh_failure_count
            requires_intervention = token.requires_user_intervention
            still_refreshable = token.can_be_refreshed(self.settings.token_failure_ceiling)

        log.warning(
            "Token refresh failure recorded",
            attempt=attempt,
            failure_count=failure_count,
            requires_user_intervention=requires_intervention,
        )
        self.alert_manager.alert_token_refresh_failure(
            str(user_id), provider, failure_count, kind.value, is_terminal=requires_intervention
        )

        if user is not None:
            await self._notify_failure(user, provider, result, kind, attempt, failure_count)

        if kind.is_recoverable and still_refreshable and attempt < kind.max_attempts:
            delay = self._retry_delay(result, kind, attempt)
            await self._enqueue_refresh(
                user_id,
                provider,
                lane=Lane.MAINTENANCE,
                reason="retry",
                attempt=attempt + 1,
                defer_seconds=delay,
                window_minutes=window_minutes,
            )
            log.info("Token refresh retry scheduled", next_attempt=attempt + 1, delay_seconds=delay)

    async def _notify_failure(
        self,
        user,
        provider: str,
        result: RefreshResult,
        kind: ErrorKind,
        attempt: int,
        failure_count: int,
    ) -> None:
        if failure_count >= self.settings.token_notify_failure_count and not kind.notify_immediately:
            outcome = await self.notifier.send_refresh_failure_notification(
                user, provider, kind, attempt, result.message
            )
        else:
            outcome = await self.notifier.handle_token_refresh_failure(
                user, provider, kind, result.error, attempt
            )

        if outcome not in (DeliveryOutcome.SENT, DeliveryOutcome.FAILED):
            return
        async with with_unit_of_work(self.session_factory) as session:
            token = await CloudStorageTokensRepository(session).get_token_for_update(
                user.id, provider
            )
            if token is None:
                return
            if outcome == DeliveryOutcome.SENT:
                token.last_notification_sent_at = utc_now()
            else:
                token.notification_failure_count += 1

    def _retry_delay(self, result: RefreshResult, kind: ErrorKind, attempt: int) -> int:
        if result.error is not None:
            return self.classifier.classify_with_context(result.error).retry_delay(attempt)
        return kind.retry_delay(attempt)

    # ===== Scheduling =====

    async def _enqueue_refresh(
        self,
        user_id: uuid.UUID,
        provider: str,
        lane: Lane,
        reason: str,
        attempt: int = 1,
        defer_seconds: float = 0,
        window_minutes: Optional[int] = None,
    ) -> Optional[str]:
        payload = RefreshTokenPayload(
            user_id=user_id,
            provider=provider,
            reason=reason,
            attempt=attempt,
            refresh_window_minutes=window_minutes,
            retry_until=utc_now()
            + timedelta(seconds=defer_seconds)
            + timedelta(minutes=self.settings.refresh_job_deadline_minutes),
            tags=["token-refresh", f"user:{user_id}", f"provider:{provider}", reason],
        )
        return await self.job_queue.enqueue(
            REFRESH_TOKEN_JOB,
            payload,
            lane=lane,
            job_id=refresh_job_id(user_id, provider, attempt),
            defer_seconds=defer_seconds,
        )

    async def schedule_preemptive_refresh(
        self, token: CloudStorageToken, session: AsyncSession
    ) -> Lane:
        """
        Schedule a refresh at ``expires_at`` minus the proactive window.

        Tokens inside the immediate window go to the high lane at once and
        carry the immediate window so the refresh is not skipped as still
        valid. Other tokens go to the maintenance lane, deferred until the
        proactive window opens. The token is stamped with
        ``proactive_refresh_scheduled_at`` in ``session``.
        """
        now = utc_now()
        immediate_minutes = self.settings.token_immediate_refresh_minutes
        refresh_at = token.expires_at - timedelta(
            minutes=self.settings.token_proactive_refresh_minutes
        )

        window: Optional[int] = None
        if token.expires_at <= now + timedelta(minutes=immediate_minutes) or refresh_at <= now:
            lane, defer, reason = Lane.HIGH, 0.0, "immediate"
            window = max(immediate_minutes, self.settings.token_proactive_refresh_minutes)
        else:
            lane, defer, reason = (
                Lane.MAINTENANCE,
                (refresh_at - now).total_seconds(),
                "proactive",
            )

        await self._enqueue_refresh(
            token.user_id,
            token.provider,
            lane=lane,
            reason=reason,
            defer_seconds=defer,
            window_minutes=window,
        )
        token.proactive_refresh_scheduled_at = now
        await session.flush()

        logger.info(
            "Token refresh scheduled",
            user_id=str(token.user_id),
            provider=token.provider,
            lane=lane.value,
            expires_at=token.expires_at.isoformat(),
            defer_seconds=round(defer),
        )
        return lane

    async def schedule_proactive_refresh_for_expiring_tokens(
        self, provider: str
    ) -> Dict[str, Any]:
        """
        Tiered scheduling pass over refreshable tokens expiring within the
        maintenance window.

        Returns:
            Summary with total_expiring_tokens, scheduled, scheduled_immediate,
            scheduled_maintenance, skipped and errors
        """
        now = utc_now()
        immediate_until = now + timedelta(minutes=self.settings.token_immediate_refresh_minutes)
        summary = {
            "total_expiring_tokens": 0,
            "scheduled": 0,
            "scheduled_immediate": 0,
            "scheduled_maintenance": 0,
            "skipped": 0,
            "errors": 0,
        }

        async with with_unit_of_work(self.session_factory) as session:
            tokens = await CloudStorageTokensRepository(session).list_tokens_expiring_before(
                provider,
                now + timedelta(hours=self.settings.token_maintenance_window_hours),
                failure_ceiling=self.settings.token_failure_ceiling,
            )
            summary["total_expiring_tokens"] = len(tokens)

            for token in tokens:
                try:
                    if token.expires_at <= immediate_until:
                        # Immediate tier ignores the stamp; the stable job id dedupes.
                        lane = await self.schedule_preemptive_refresh(token, session)
                    elif token.proactive_refresh_scheduled_at is not None:
                        summary["skipped"] += 1
                        continue
                    else:
                        lane = await self.schedule_preemptive_refresh(token, session)
                except Exception as e:
                    summary["errors"] += 1
                    logger.error(
                        "Failed to schedule token refresh",
                        user_id=str(token.user_id),
                        provider=provider,
                        error=str(e),
                    )
                    continue

                summary["scheduled"] += 1
                if lane == Lane.HIGH:
                    summary["scheduled_immediate"] += 1
                else:
                    summary["scheduled_maintenance"] += 1

        logger.info("Proactive refresh scheduling completed", provider=provider, **summary)
        return summary

    async def _get_user(self, user_id: uuid.UUID):
        async with with_unit_of_work(self.session_factory) as session:
            return await UsersRepository(session).get_user_by_id(user_id)
