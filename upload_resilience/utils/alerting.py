"""
Operator alerting for the upload resilience engine.

Alerts cover conditions an operator should see even when no user mail goes
out: repeated refresh failures, undeliverable notifications, permanently
failed uploads and broken maintenance steps. ``AlertManager`` is passed to the
services that raise alerts; there is no process-wide instance.
"""

from collections import deque
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple

import structlog

from .clock import utc_now

logger = structlog.get_logger(__name__)


class AlertSeverity(str, Enum):
    """Alert severity levels for production monitoring."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertCategory(str, Enum):
    """Alert categories by subsystem."""

    TOKEN_REFRESH = "token_refresh"
    NOTIFICATIONS = "notifications"
    UPLOADS = "uploads"
    MAINTENANCE = "maintenance"


class Alert:
    """
    Structured alert with severity, category, and contextual information.
    """

    def __init__(
        self,
        title: str,
        description: str,
        severity: AlertSeverity,
        category: AlertCategory,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        provider: Optional[str] = None,
    ):
        self.title = title
        self.description = description
        self.severity = severity
        self.category = category
        self.metadata = metadata or {}
        self.user_id = user_id
        self.provider = provider
        self.timestamp = utc_now()
        self.alert_id = (
            f"{category.value}_{severity.value}_{int(self.timestamp.timestamp())}"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert alert to dictionary for JSON serialization."""
        return {
            "alert_id": self.alert_id,
            "title": self.title,
            "description": self.description,
            "severity": self.severity.value,
            "category": self.category.value,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
            "user_id": self.user_id,
            "provider": self.provider,
        }


class AlertManager:
    """
    Emits alerts as structured log events, with duplicate suppression.

    Non-critical alerts are limited to ``max_per_key`` per
    (category, user, provider) within ``window_minutes``; the count starts
    over once the window has passed.
    """

    def __init__(
        self, max_per_key: int = 3, window_minutes: int = 60, history_size: int = 100
    ):
        self.max_per_key = max_per_key
        self.window = timedelta(minutes=window_minutes)
        # key -> (alerts sent, window start)
        self._alert_counts: Dict[str, Tuple[int, datetime]] = {}
        self._recent: Deque[Alert] = deque(maxlen=history_size)

    @staticmethod
    def _rate_limit_key(alert: Alert) -> str:
        return f"{alert.category.value}_{alert.user_id}_{alert.provider}"

    def _prune(self, now: datetime) -> None:
        expired = [
            key for key, (_, started) in self._alert_counts.items() if now - started >= self.window
        ]
        for key in expired:
            del self._alert_counts[key]

    def should_alert(self, alert: Alert) -> bool:
        if alert.severity == AlertSeverity.CRITICAL:
            return True
        self._prune(utc_now())
        count, _ = self._alert_counts.get(self._rate_limit_key(alert), (0, None))
        return count < self.max_per_key

    def send_alert(self, alert: Alert) -> bool:
        """
        Send alert through configured channels.

        Returns:
            True if the alert was emitted, False if suppressed
        """
        if not self.should_alert(alert):
            logger.debug(
                "Alert suppressed due to rate limiting",
                alert_id=alert.alert_id,
                category=alert.category.value,
                severity=alert.severity.value,
            )
            return False

        logger.bind(
            alert_id=alert.alert_id,
            alert_severity=alert.severity.value,
            alert_category=alert.category.value,
            user_id=alert.user_id,
            provider=alert.provider,
        ).warning(
            f"ALERT: {alert.title}",
            description=alert.description,
            metadata=alert.metadata,
        )

        key = self._rate_limit_key(alert)
        count, started = self._alert_counts.get(key, (0, utc_now()))
        self._alert_counts[key] = (count + 1, started)
        self._recent.append(alert)
        return True

    @property
    def recent_alerts(self) -> List[Alert]:
        return list(self._recent)

    def alert_token_refresh_failure(
        self,
        user_id: str,
        provider: str,
        failure_count: int,
        error_type: str,
        is_terminal: bool = False,
    ) -> None:
        """Alert on a failed refresh; severity grows with the failure count."""
        if is_terminal or failure_count >= 5:
            severity = AlertSeverity.CRITICAL
        elif failure_count >= 3:
            severity = AlertSeverity.HIGH
        else:
            severity = AlertSeverity.MEDIUM

        self.send_alert(
            Alert(
                title=f"Token Refresh Failure (x{failure_count})",
                description=(
                    f"Token refresh for {provider} failed {failure_count} consecutive "
                    f"times ({error_type}). "
                    f"{'Requires reconnection.' if is_terminal else 'Automatic retry will continue.'}"
                ),
                severity=severity,
                category=AlertCategory.TOKEN_REFRESH,
                metadata={
                    "failure_count": failure_count,
                    "error_type": error_type,
                    "is_terminal": is_terminal,
                },
                user_id=user_id,
                provider=provider,
            )
        )

    def alert_notification_delivery_failure(
        self,
        user_id: str,
        provider: str,
        notification_type: str,
        failure_count: int,
        error_message: str,
    ) -> None:
        self.send_alert(
            Alert(
                title="User Notification Undeliverable",
                description=(
                    f"'{notification_type}' notification failed {failure_count} times "
                    f"for user {user_id}: {error_message}"
                ),
                severity=AlertSeverity.HIGH,
                category=AlertCategory.NOTIFICATIONS,
                metadata={
                    "notification_type": notification_type,
                    "failure_count": failure_count,
                    "error_message": error_message,
                },
                user_id=user_id,
                provider=provider,
            )
        )

    def alert_upload_permanently_failed(
        self,
        upload_id: int,
        user_id: Optional[str],
        provider: str,
        error_message: str,
        total_attempts: int,
    ) -> None:
        self.send_alert(
            Alert(
                title="Upload Permanently Failed",
                description=(
                    f"Upload {upload_id} gave up after {total_attempts} attempts: "
                    f"{error_message}"
                ),
                severity=AlertSeverity.HIGH,
                category=AlertCategory.UPLOADS,
                metadata={
                    "upload_id": upload_id,
                    "total_attempts": total_attempts,
                    "error_message": error_message,
                },
                user_id=user_id,
                provider=provider,
            )
        )

    def alert_maintenance_step_failed(self, step: str, error_message: str) -> None:
        self.send_alert(
            Alert(
                title=f"Maintenance Step Failed: {step}",
                description=error_message,
                severity=AlertSeverity.MEDIUM,
                category=AlertCategory.MAINTENANCE,
                metadata={"step": step},
            )
        )
