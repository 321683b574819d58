"""
Database models for the upload resilience engine.

This module defines SQLAlchemy models for:
- Users (owners of cloud storage connections and uploads)
- Cloud storage tokens with encrypted credential storage and refresh bookkeeping
- Connection health status per (user, provider)
- File uploads awaiting or having completed transfer to cloud storage
- Notification delivery bookkeeping (throttling and failure counting)

Column types are portable (generic ``JSON``/``Uuid`` and a UTC-normalising
datetime) so the schema runs on PostgreSQL and on SQLite.

Security: credentials are encrypted at rest using Fernet encryption.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from ..utils.clock import ensure_utc, utc_now

DEFAULT_PROVIDER = "google-drive"


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return ensure_utc(value)

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class User(Base):
    """
    Account that owns cloud storage connections and uploads.

    Attributes:
        id: Unique user identifier (UUID)
        email: Notification address
        name: Display name used in notifications
        role: admin, employee or client
        status: active, inactive, suspended
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4, doc="Unique user identifier"
    )

    email: Mapped[str] = mapped_column(
        String(320), unique=True, nullable=False, doc="User's email address"
    )

    name: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, doc="Display name"
    )

    role: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="employee",
        doc="Account role: admin, employee, client",
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="active",
        doc="Account status: active, inactive, suspended",
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, doc="Account creation timestamp"
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
        doc="Last modification timestamp",
    )

    tokens: Mapped[list["CloudStorageToken"]] = relationship(
        "CloudStorageToken",
        back_populates="user",
        cascade="all, delete-orphan",
        doc="Cloud storage credentials owned by this user",
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"


class CloudStorageToken(Base):
    """
    OAuth credential pair for one (user, provider) with refresh bookkeeping.

    ``requires_user_intervention`` only goes from False to True through
    ``mark_refresh_failure``; a successful refresh is the only thing that
    clears it. ``proactive_refresh_scheduled_at`` doubles as a coalescing
    stamp for the scheduler and is cleared on success or by the maintenance
    sweep once stale. ``refresh_lock_expires_at`` is the cross-process
    refresh lease taken by compare-and-set.
    """

    __tablename__ = "cloud_storage_tokens"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4, doc="Unique token identifier"
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        doc="Owner of the credential",
    )

    provider: Mapped[str] = mapped_column(
        String(50), nullable=False, default=DEFAULT_PROVIDER, doc="Provider name"
    )

    access_token_ciphertext: Mapped[bytes] = mapped_column(
        LargeBinary, nullable=False, doc="Encrypted access token"
    )

    refresh_token_ciphertext: Mapped[Optional[bytes]] = mapped_column(
        LargeBinary, nullable=True, doc="Encrypted refresh token (if granted)"
    )

    token_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default="Bearer", doc="OAuth token type"
    )

    scopes: Mapped[Optional[list]] = mapped_column(
        JSON, nullable=True, doc="Granted OAuth scopes"
    )

    expires_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, doc="Access token expiry"
    )

    last_refresh_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, doc="Last refresh attempt (success or failure)"
    )

    refresh_failure_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, doc="Consecutive refresh failures"
    )

    last_successful_refresh_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, doc="Last successful refresh"
    )

    last_refresh_error_type: Mapped[Optional[str]] = mapped_column(
        String(50), nullable=True, doc="Error kind of the last failed refresh"
    )

    proactive_refresh_scheduled_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime,
        nullable=True,
        doc="When a proactive refresh was scheduled (coalescing stamp)",
    )

    requires_user_intervention: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        doc="Automatic refresh stopped until the user reconnects",
    )

    health_check_failures: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, doc="Failed live connection checks"
    )

    last_notification_sent_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, doc="Last refresh-failure notification"
    )

    notification_failure_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, doc="Failed notification deliveries"
    )

    refresh_lock_expires_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, doc="Refresh lease expiry (NULL = free)"
    )

    refresh_lock_owner: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, doc="Identifier of the lease holder"
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, doc="Connection timestamp"
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
        doc="Last modification timestamp",
    )

    user: Mapped["User"] = relationship("User", back_populates="tokens")

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_cst_user_provider"),
        Index("ix_cst_expires_at", "expires_at"),
    )

    @property
    def has_refresh_token(self) -> bool:
        return self.refresh_token_ciphertext is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False  # No expiry recorded, assume long-lived
        return (now or utc_now()) >= self.expires_at

    def is_expiring_soon(
        self, minutes: int = 15, now: Optional[datetime] = None
    ) -> bool:
        """True when the access token expires within ``minutes`` (or already has)."""
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utc_now()) + timedelta(minutes=minutes)

    def can_be_refreshed(self, failure_ceiling: int = 5) -> bool:
        return (
            self.has_refresh_token
            and not self.requires_user_intervention
            and self.refresh_failure_count < failure_ceiling
        )

    def should_schedule_proactive_refresh(
        self,
        window_minutes: int = 30,
        failure_ceiling: int = 5,
        now: Optional[datetime] = None,
    ) -> bool:
        return (
            self.is_expiring_soon(window_minutes, now)
            and self.can_be_refreshed(failure_ceiling)
            and self.proactive_refresh_scheduled_at is None
        )

    def mark_refresh_success(
        self, expires_at: Optional[datetime], now: Optional[datetime] = None
    ) -> None:
        """Record a successful refresh; clears intervention and scheduling stamps."""
        now = now or utc_now()
        self.expires_at = expires_at
        self.last_refresh_attempt_at = now
        self.last_successful_refresh_at = now
        self.refresh_failure_count = 0
        self.last_refresh_error_type = None
        self.requires_user_intervention = False
        self.proactive_refresh_scheduled_at = None
        self.health_check_failures = 0

    def mark_refresh_failure(
        self,
        error_type: str,
        requires_intervention: bool,
        failure_ceiling: int = 5,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Record a failed refresh.

        Args:
            error_type: Classified error kind value
            requires_intervention: Whether the kind needs the user to reconnect
            failure_ceiling: Failures after which intervention is forced
        """
        self.last_refresh_attempt_at = now or utc_now()
        self.refresh_failure_count += 1
        self.last_refresh_error_type = error_type
        if requires_intervention or self.refresh_failure_count >= failure_ceiling:
            self.requires_user_intervention = True

    def __repr__(self) -> str:
        return (
            f"<CloudStorageToken(user_id={self.user_id}, provider={self.provider}, "
            f"expires_at={self.expires_at}, failures={self.refresh_failure_count})>"
        )


class CloudStorageHealthStatus(Base):
    """
    Derived connectivity status for one (user, provider).

    ``status`` is only ever written by the health tracker from
    ``consecutive_failures`` and the credential state.
    """

    __tablename__ = "cloud_storage_health_statuses"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4, doc="Unique record identifier"
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        doc="Owner of the connection",
    )

    provider: Mapped[str] = mapped_column(
        String(50), nullable=False, default=DEFAULT_PROVIDER, doc="Provider name"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="disconnected",
        doc="healthy, degraded, unhealthy or disconnected",
    )

    consecutive_failures: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, doc="Consecutive failed operations"
    )

    last_error_type: Mapped[Optional[str]] = mapped_column(
        String(50), nullable=True, doc="Error kind of the last failure"
    )

    last_error_message: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True, doc="Message of the last failure"
    )

    last_error_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, doc="When the last failure happened"
    )

    token_expires_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, doc="Denormalized copy of the token expiry"
    )

    requires_reconnection: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, doc="User must reconnect"
    )

    provider_specific_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON, nullable=True, doc="Provider metadata (string -> scalar)"
    )

    last_successful_operation_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, doc="Last successful provider operation"
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, doc="Creation timestamp"
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
        doc="Last modification timestamp",
    )

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_cshs_user_provider"),
        Index("ix_cshs_status", "provider", "status"),
    )

    def is_token_expired(self, now: Optional[datetime] = None) -> bool:
        if self.token_expires_at is None:
            return False
        return self.token_expires_at <= (now or utc_now())

    def is_token_expiring_soon(
        self, hours: int = 24, now: Optional[datetime] = None
    ) -> bool:
        if self.token_expires_at is None:
            return False
        now = now or utc_now()
        return now < self.token_expires_at <= now + timedelta(hours=hours)

    def __repr__(self) -> str:
        return (
            f"<CloudStorageHealthStatus(user_id={self.user_id}, provider={self.provider}, "
            f"status={self.status}, failures={self.consecutive_failures})>"
        )


class FileUpload(Base):
    """
    A user-submitted file awaiting or having completed cloud transfer.

    Once ``cloud_file_id`` is set the upload is delivered and is never retried.
    """

    __tablename__ = "file_uploads"

    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True, doc="Upload identifier"
    )

    email: Mapped[str] = mapped_column(
        String(320), nullable=False, doc="Submitter address (recipient folder key)"
    )

    original_filename: Mapped[str] = mapped_column(
        String(255), nullable=False, doc="Name supplied by the submitter"
    )

    filename: Mapped[str] = mapped_column(
        String(255), nullable=False, doc="Stored file name under the local root"
    )

    mime_type: Mapped[Optional[str]] = mapped_column(
        String(127), nullable=True, doc="Content type"
    )

    file_size: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True, doc="Size in bytes"
    )

    message: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True, doc="Submitter's message"
    )

    company_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        doc="Explicit owner (employee/company) account",
    )

    uploaded_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        doc="Account that submitted the file",
    )

    cloud_storage_provider: Mapped[str] = mapped_column(
        String(50), nullable=False, default=DEFAULT_PROVIDER, doc="Target provider"
    )

    cloud_file_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, doc="Provider file id once delivered"
    )

    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, doc="Failed transfer attempts"
    )

    recovery_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, doc="Recovery job runs"
    )

    last_error: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True, doc="Last transfer error message"
    )

    error_details: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON, nullable=True, doc="Structured error and recovery details"
    )

    cloud_storage_error_type: Mapped[Optional[str]] = mapped_column(
        String(50), nullable=True, doc="Classified error kind of the last failure"
    )

    cloud_storage_error_context: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON, nullable=True, doc="Classifier context of the last failure"
    )

    connection_health_at_failure: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON, nullable=True, doc="Health summary snapshot taken at failure time"
    )

    last_processed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, doc="Last time a job processed this upload"
    )

    retry_recommended_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, doc="Earliest time a retry is worthwhile"
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, doc="Submission timestamp"
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
        doc="Last modification timestamp",
    )

    __table_args__ = (
        Index("ix_fu_pending", "cloud_file_id", "retry_recommended_at"),
    )

    @property
    def is_delivered(self) -> bool:
        return bool(self.cloud_file_id)

    @property
    def is_pending(self) -> bool:
        return not self.is_delivered

    @property
    def recovery_status(self) -> Optional[str]:
        return (self.error_details or {}).get("recovery_status")

    def can_be_retried(self, max_retry_count: int, max_recovery_attempts: int) -> bool:
        return (
            self.is_pending
            and self.retry_count < max_retry_count
            and self.recovery_attempts < max_recovery_attempts
        )

    def update_recovery_status(self, status: str, **details: Any) -> None:
        """Merge a recovery status and details into ``error_details``."""
        merged = dict(self.error_details or {})
        merged["recovery_status"] = status
        merged["recovery_updated_at"] = utc_now().isoformat()
        merged.update(details)
        # Reassign so SQLAlchemy sees the JSON change.
        self.error_details = merged

    def clear_cloud_storage_error(self) -> None:
        self.cloud_storage_error_type = None
        self.cloud_storage_error_context = None
        self.connection_health_at_failure = None
        self.last_error = None

    def __repr__(self) -> str:
        return (
            f"<FileUpload(id={self.id}, provider={self.cloud_storage_provider}, "
            f"delivered={self.is_delivered}, retry_count={self.retry_count})>"
        )


class NotificationDelivery(Base):
    """Per (user, provider, notification type) throttle and failure bookkeeping."""

    __tablename__ = "notification_deliveries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    provider: Mapped[str] = mapped_column(String(50), nullable=False)

    notification_type: Mapped[str] = mapped_column(String(50), nullable=False)

    last_sent_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, doc="Last successful delivery"
    )

    failure_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, doc="Consecutive delivery failures"
    )

    last_failure_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )

    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "provider", "notification_type", name="uq_nd_user_provider_type"
        ),
    )
