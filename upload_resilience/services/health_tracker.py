"""
Connection health tracking per (user, provider).

Status is derived, never assigned: ``derive_status`` maps the consecutive
failure count to healthy / degraded / unhealthy, and ``disconnected`` is only
entered when no usable credential exists. All writes to health records go
through ``HealthTracker``.
"""

import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Mapping, NamedTuple, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db.database import session_scope
from ..db.models import CloudStorageHealthStatus
from ..db.repositories import HealthStatusRepository
from ..utils.clock import utc_now
from .error_classifier import ErrorKind

logger = structlog.get_logger(__name__)

Scalar = Union[str, int, float, bool, None]


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    DISCONNECTED = "disconnected"


class DerivedStatus(NamedTuple):
    status: HealthState
    requires_reconnection: bool


def derive_status(
    consecutive_failures: int,
    degraded_threshold: int = 2,
    unhealthy_threshold: int = 5,
) -> DerivedStatus:
    """
    Status for a failure count.

    0-1 failures are healthy (a single blip is tolerated), 2-4 degraded,
    5 and above unhealthy with reconnection required.
    """
    if consecutive_failures >= unhealthy_threshold:
        return DerivedStatus(HealthState.UNHEALTHY, True)
    if consecutive_failures >= degraded_threshold:
        return DerivedStatus(HealthState.DEGRADED, False)
    return DerivedStatus(HealthState.HEALTHY, False)


class HealthSummary(BaseModel):
    """Flattened, presentation-ready view of one health record."""

    model_config = ConfigDict(frozen=True)

    user_id: uuid.UUID
    provider: str
    status: HealthState
    is_healthy: bool
    is_degraded: bool
    is_unhealthy: bool
    is_disconnected: bool
    consecutive_failures: int
    requires_reconnection: bool
    last_error_type: Optional[str] = None
    last_error_message: Optional[str] = None
    last_successful_operation_at: Optional[datetime] = None
    token_expires_at: Optional[datetime] = None
    token_expiring_soon: bool = False
    token_expired: bool = False
    provider_specific_data: Dict[str, Scalar] = {}

    def snapshot(self) -> Dict[str, Scalar]:
        """JSON-safe subset stored on uploads at failure time."""
        return {
            "status": self.status.value,
            "consecutive_failures": self.consecutive_failures,
            "requires_reconnection": self.requires_reconnection,
            "last_error_type": self.last_error_type,
            "token_expired": self.token_expired,
            "token_expiring_soon": self.token_expiring_soon,
        }


def _scalar_bag(metadata: Optional[Mapping[str, object]]) -> Dict[str, Scalar]:
    """Keep only string keys with scalar values."""
    if not metadata:
        return {}
    bag: Dict[str, Scalar] = {}
    for key, value in metadata.items():
        if isinstance(value, (str, int, float, bool)) or value is None:
            bag[str(key)] = value
        elif isinstance(value, datetime):
            bag[str(key)] = value.isoformat()
        else:
            logger.debug("Dropping non-scalar provider metadata", key=key)
    return bag


class HealthTracker:
    """
    Owns health status records.

    Every mutating method accepts an optional ``session`` so callers can fold
    the health update into their own transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.settings = settings

    def _derive(self, consecutive_failures: int) -> DerivedStatus:
        return derive_status(
            consecutive_failures,
            self.settings.health_degraded_threshold,
            self.settings.health_unhealthy_threshold,
        )

    async def get_or_create_health_status(
        self,
        user_id: uuid.UUID,
        provider: str,
        session: Optional[AsyncSession] = None,
    ) -> CloudStorageHealthStatus:
        async with session_scope(self.session_factory, session) as s:
            return await HealthStatusRepository(s).get_or_create(user_id, provider)

    async def record_successful_operation(
        self,
        user_id: uuid.UUID,
        provider: str,
        metadata: Optional[Mapping[str, object]] = None,
        session: Optional[AsyncSession] = None,
    ) -> CloudStorageHealthStatus:
        """Reset failures, clear reconnection and mark the connection healthy."""
        async with session_scope(self.session_factory, session) as s:
            record = await HealthStatusRepository(s).get_or_create(user_id, provider)
            previous = record.status

            record.consecutive_failures = 0
            record.requires_reconnection = False
            record.last_error_type = None
            record.last_error_message = None
            record.status = HealthState.HEALTHY.value
            record.last_successful_operation_at = utc_now()
            if metadata:
                merged = dict(record.provider_specific_data or {})
                merged.update(_scalar_bag(metadata))
                record.provider_specific_data = merged
            await s.flush()

        if previous != HealthState.HEALTHY.value:
            logger.info(
                "Connection health restored",
                user_id=str(user_id),
                provider=provider,
                previous_status=previous,
            )
        return record

    async def mark_connection_as_unhealthy(
        self,
        user_id: uuid.UUID,
        provider: str,
        reason: str,
        error_kind: Union[ErrorKind, str, None],
        session: Optional[AsyncSession] = None,
    ) -> CloudStorageHealthStatus:
        """
        Count one failure and recompute the status.

        Kinds that need the user to reconnect set ``requires_reconnection``
        without changing the failure-driven status.
        """
        kind = ErrorKind.coerce(error_kind)
        async with session_scope(self.session_factory, session) as s:
            record = await HealthStatusRepository(s).get_or_create(user_id, provider)
            previous = record.status

            record.consecutive_failures += 1
            record.last_error_type = kind.value
            record.last_error_message = (reason or "")[:1000]
            record.last_error_at = utc_now()

            derived = self._derive(record.consecutive_failures)
            record.status = derived.status.value
            record.requires_reconnection = (
                record.requires_reconnection
                or derived.requires_reconnection
                or kind.requires_user_intervention
            )
            await s.flush()

        log = logger.warning if record.status != previous else logger.debug
        log(
            "Connection failure recorded",
            user_id=str(user_id),
            provider=provider,
            error_type=kind.value,
            consecutive_failures=record.consecutive_failures,
            previous_status=previous,
            status=record.status,
        )
        return record

    async def mark_disconnected(
        self,
        user_id: uuid.UUID,
        provider: str,
        reason: str = "No valid credential",
        session: Optional[AsyncSession] = None,
    ) -> CloudStorageHealthStatus:
        """Enter ``disconnected``: no usable credential exists for the pair."""
        async with session_scope(self.session_factory, session) as s:
            record = await HealthStatusRepository(s).get_or_create(user_id, provider)
            record.status = HealthState.DISCONNECTED.value
            record.requires_reconnection = True
            record.last_error_message = reason
            record.token_expires_at = None
            await s.flush()

        logger.info("Connection marked disconnected", user_id=str(user_id), provider=provider)
        return record

    async def update_token_expiration(
        self,
        user_id: uuid.UUID,
        provider: str,
        expires_at: Optional[datetime],
        session: Optional[AsyncSession] = None,
    ) -> CloudStorageHealthStatus:
        """Only touches the denormalized expiry copy."""
        async with session_scope(self.session_factory, session) as s:
            record = await HealthStatusRepository(s).get_or_create(user_id, provider)
            record.token_expires_at = expires_at
            await s.flush()
        return record

    async def get_users_with_expiring_tokens(
        self, provider: str, within_hours: Optional[int] = None
    ) -> List[CloudStorageHealthStatus]:
        hours = within_hours or self.settings.health_token_expiring_hours
        now = utc_now()
        async with session_scope(self.session_factory) as s:
            records = await HealthStatusRepository(s).list_expiring(
                provider, now + timedelta(hours=hours), now
            )
        return list(records)

    async def get_users_with_unhealthy_connections(
        self, provider: str
    ) -> List[CloudStorageHealthStatus]:
        async with session_scope(self.session_factory) as s:
            records = await HealthStatusRepository(s).list_by_status(
                provider,
                [HealthState.DEGRADED.value, HealthState.UNHEALTHY.value],
            )
        return list(records)

    async def get_health_summary(
        self,
        user_id: uuid.UUID,
        provider: str,
        session: Optional[AsyncSession] = None,
    ) -> HealthSummary:
        async with session_scope(self.session_factory, session) as s:
            record = await HealthStatusRepository(s).get_or_create(user_id, provider)
        return self.summarize(record)

    def summarize(
        self, record: CloudStorageHealthStatus, now: Optional[datetime] = None
    ) -> HealthSummary:
        status = HealthState(record.status)
        now = now or utc_now()
        # Expiry is only flagged while something else is already wrong.
        expiring_soon = status != HealthState.HEALTHY and record.is_token_expiring_soon(
            self.settings.health_token_expiring_hours, now
        )
        return HealthSummary(
            user_id=record.user_id,
            provider=record.provider,
            status=status,
            is_healthy=status == HealthState.HEALTHY,
            is_degraded=status == HealthState.DEGRADED,
            is_unhealthy=status == HealthState.UNHEALTHY,
            is_disconnected=status == HealthState.DISCONNECTED,
            consecutive_failures=record.consecutive_failures,
            requires_reconnection=record.requires_reconnection,
            last_error_type=record.last_error_type,
            last_error_message=record.last_error_message,
            last_successful_operation_at=record.last_successful_operation_at,
            token_expires_at=record.token_expires_at,
            token_expiring_soon=expiring_soon,
            token_expired=record.is_token_expired(now),
            provider_specific_data=_scalar_bag(record.provider_specific_data),
        )
