"""
Maintenance sweep for token lifecycle and upload recovery.

Runs on the maintenance worker's cron (every 15 minutes by default) or, for
deployments without the arq cron, as an in-process loop with jittered
intervals. Each step is isolated: a failing step is logged, counted and
alerted on, and the remaining steps still run.

Steps per provider:
- tiered proactive refresh scheduling
- failure counter reset (7 days)
- stale schedule stamp cleanup (2 hours, still-valid tokens only)
- orphaned and inactive health record purge
- expiring-token and unhealthy-connection notifications
- pending upload retry scheduling
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db.database import with_unit_of_work
from ..db.repositories import (
    CloudStorageTokensRepository,
    HealthStatusRepository,
    UsersRepository,
)
from ..utils.alerting import AlertManager
from ..utils.clock import utc_now
from .health_tracker import HealthTracker
from .notifications import DeliveryOutcome, NotificationDispatcher
from .proactive_renewal import TokenRenewalService
from .upload_recovery import UploadRecoveryService

logger = structlog.get_logger(__name__)


@dataclass
class SweepReport:
    started_at: datetime
    duration_ms: float = 0.0
    steps: Dict[str, Any] = field(default_factory=dict)
    failed_steps: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failed_steps

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "duration_ms": round(self.duration_ms, 2),
            "steps": self.steps,
            "failed_steps": self.failed_steps,
        }


class MaintenanceSweep:
    """Periodic scheduling, garbage collection and notification pass."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        renewal: TokenRenewalService,
        health_tracker: HealthTracker,
        notifier: NotificationDispatcher,
        recovery: UploadRecoveryService,
        alert_manager: AlertManager,
        providers: Sequence[str],
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.renewal = renewal
        self.health_tracker = health_tracker
        self.notifier = notifier
        self.recovery = recovery
        self.alert_manager = alert_manager
        self.providers = list(providers)

        self._running = False
        self._background_task: Optional[asyncio.Task] = None

        self.stats = {
            "sweeps_completed": 0,
            "steps_failed": 0,
            "refreshes_scheduled": 0,
            "notifications_sent": 0,
            "upload_retries_scheduled": 0,
            "avg_sweep_duration_ms": 0.0,
            "last_sweep_time": None,
        }

    # ===== Single sweep =====

    async def run_once(self) -> SweepReport:
        report = SweepReport(started_at=utc_now())
        start = time.monotonic()

        for provider in self.providers:
            await self._step(
                report,
                f"schedule_refreshes:{provider}",
                lambda p=provider: self.renewal.schedule_proactive_refresh_for_expiring_tokens(p),
            )
        await self._step(report, "reset_failure_counters", self.reset_failure_counters)
        await self._step(report, "clear_stale_schedule_locks", self.clear_stale_schedule_locks)
        await self._step(report, "purge_orphaned_health_records", self.purge_orphaned_health_records)
        await self._step(report, "purge_inactive_health_records", self.purge_inactive_health_records)
        for provider in self.providers:
            await self._step(
                report,
                f"notify_expiring_tokens:{provider}",
                lambda p=provider: self.notify_expiring_tokens(p),
            )
            await self._step(
                report,
                f"notify_unhealthy_connections:{provider}",
                lambda p=provider: self.notify_unhealthy_connections(p),
            )
        await self._step(
            report, "schedule_pending_upload_retries", self.recovery.schedule_pending_upload_retries
        )

        report.duration_ms = (time.monotonic() - start) * 1000
        self._update_statistics(report)
        return report

    async def _step(
        self,
        report: SweepReport,
        name: str,
        step: Callable[[], Awaitable[Any]],
    ) -> None:
        try:
            report.steps[name] = await step()
        except Exception as e:
            report.failed_steps.append(name)
            report.steps[name] = {"error": str(e)}
            self.stats["steps_failed"] += 1
            logger.error("Maintenance step failed", step=name, error=str(e), exc_info=True)
            self.alert_manager.alert_maintenance_step_failed(name, str(e))

    # ===== Garbage collection =====

    async def reset_failure_counters(self) -> int:
        """Forgive refresh failures whose last attempt is old."""
        older_than = utc_now() - timedelta(days=self.settings.failure_reset_days)
        async with with_unit_of_work(self.session_factory) as session:
            count = await CloudStorageTokensRepository(session).reset_stale_failure_counters(
                older_than
            )
        if count:
            logger.info("Stale failure counters reset", count=count)
        return count

    async def clear_stale_schedule_locks(self) -> int:
        """
        Clear schedule stamps left behind by a crashed run.

        Only tokens that have not expired are touched; expired tokens keep the
        stamp until a real refresh happens.
        """
        now = utc_now()
        cutoff = now - timedelta(hours=self.settings.stale_schedule_lock_hours)
        async with with_unit_of_work(self.session_factory) as session:
            count = await CloudStorageTokensRepository(session).clear_stale_schedule_locks(
                cutoff, now
            )
        if count:
            logger.info("Stale refresh schedule locks cleared", count=count)
        return count

    async def purge_orphaned_health_records(self) -> int:
        async with with_unit_of_work(self.session_factory) as session:
            count = await HealthStatusRepository(session).delete_orphaned()
        if count:
            logger.info("Orphaned health records purged", count=count)
        return count

    async def purge_inactive_health_records(self) -> int:
        now = utc_now()
        retention = timedelta(days=self.settings.health_record_retention_days)
        async with with_unit_of_work(self.session_factory) as session:
            count = await HealthStatusRepository(session).delete_inactive(
                updated_before=now - retention,
                no_success_since=now - timedelta(days=self.settings.active_user_days),
                no_uploads_since=now - retention,
            )
        if count:
            logger.info("Inactive health records purged", count=count)
        return count

    # ===== Notifications =====

    async def notify_expiring_tokens(self, provider: str) -> int:
        """
        Warn users whose token expires within the health window and cannot be
        renewed automatically.
        """
        records = await self.health_tracker.get_users_with_expiring_tokens(provider)
        sent = 0
        for record in records:
            async with with_unit_of_work(self.session_factory) as session:
                user = await UsersRepository(session).get_user_by_id(record.user_id)
                token = await CloudStorageTokensRepository(session).get_token(
                    record.user_id, provider
                )
            if user is None:
                continue
            if token is not None and token.can_be_refreshed(self.settings.token_failure_ceiling):
                continue
            outcome = await self.notifier.send_token_expiring_notification(
                user, provider, record.token_expires_at
            )
            if outcome == DeliveryOutcome.SENT:
                sent += 1
        self.stats["notifications_sent"] += sent
        return sent

    async def notify_unhealthy_connections(self, provider: str) -> int:
        records = await self.health_tracker.get_users_with_unhealthy_connections(provider)
        sent = 0
        for record in records:
            if record.consecutive_failures < self.settings.unhealthy_notification_min_failures:
                continue
            async with with_unit_of_work(self.session_factory) as session:
                user = await UsersRepository(session).get_user_by_id(record.user_id)
            if user is None:
                continue
            outcome = await self.notifier.send_unhealthy_connection_notification(
                user, provider, record.consecutive_failures, record.last_error_type
            )
            if outcome == DeliveryOutcome.SENT:
                sent += 1
        self.stats["notifications_sent"] += sent
        return sent

    # ===== Statistics =====

    def _update_statistics(self, report: SweepReport) -> None:
        self.stats["sweeps_completed"] += 1
        self.stats["last_sweep_time"] = report.started_at.isoformat()
        for name, result in report.steps.items():
            if name.startswith("schedule_refreshes:") and isinstance(result, dict):
                self.stats["refreshes_scheduled"] += result.get("scheduled", 0)
            elif name == "schedule_pending_upload_retries" and isinstance(result, dict):
                self.stats["upload_retries_scheduled"] += result.get("scheduled", 0)

        current_avg = self.stats["avg_sweep_duration_ms"]
        sweep_count = self.stats["sweeps_completed"]
        self.stats["avg_sweep_duration_ms"] = (
            current_avg * (sweep_count - 1) + report.duration_ms
        ) / sweep_count

        logger.info(
            "Maintenance sweep completed",
            duration_ms=round(report.duration_ms, 2),
            failed_steps=report.failed_steps,
            total_sweeps=sweep_count,
            avg_duration_ms=round(self.stats["avg_sweep_duration_ms"], 2),
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "is_running": self._running,
            "providers": self.providers,
            "config": {
                "sweep_interval_seconds": self.settings.maintenance_sweep_interval_seconds,
                "sweep_jitter_seconds": self.settings.maintenance_sweep_jitter_seconds,
            },
        }

    # ===== Background loop =====

    async def start(self) -> None:
        if self._running:
            logger.warning("Maintenance sweep already running")
            return
        self._running = True
        self._background_task = asyncio.create_task(self._loop())
        logger.info(
            "Maintenance sweep started",
            interval_seconds=self.settings.maintenance_sweep_interval_seconds,
        )

    async def stop(self) -> None:
        if not self._running:
            logger.warning("Maintenance sweep not running")
            return
        self._running = False
        if self._background_task:
            self._background_task.cancel()
            try:
                await self._background_task
            except asyncio.CancelledError:
                pass
        logger.info("Maintenance sweep stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                # Jitter keeps several workers from sweeping in lockstep.
                jitter = self.settings.maintenance_sweep_jitter_seconds
                sleep_duration = self.settings.maintenance_sweep_interval_seconds + random.randint(
                    -jitter, jitter
                )
                for _ in range(max(sleep_duration, 1)):
                    if not self._running:
                        break
                    await asyncio.sleep(1)
                if not self._running:
                    break

                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Maintenance loop error",
                    error=str(e),
                    sweep_count=self.stats["sweeps_completed"],
                )
                await asyncio.sleep(30)
