"""
Repository layer for the upload resilience engine.

Repositories encapsulate query patterns over the token, health, upload and
notification tables. They flush but never commit: the caller's unit of work
owns the transaction. SQLAlchemy errors are wrapped in ``RepositoryError``.

Security: credential material is encrypted/decrypted here and nowhere else
outside the provider boundary.
"""

import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import and_, delete, exists, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..utils.clock import utc_now
from ..utils.crypto import CryptoService, CryptoServiceError
from .models import (
    CloudStorageHealthStatus,
    CloudStorageToken,
    FileUpload,
    NotificationDelivery,
    User,
)


class RepositoryError(Exception):
    """Base exception for repository operations."""

    pass


class TokenNotFoundError(RepositoryError):
    """Raised when no token exists for a (user, provider)."""

    pass


class UploadNotFoundError(RepositoryError):
    """Raised when a file upload record does not exist."""

    pass


class UsersRepository:
    """User lookups needed by target-user resolution and admin escalation."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_user(
        self, email: str, name: Optional[str] = None, role: str = "employee"
    ) -> User:
        """
        Create a new user.

        Raises:
            RepositoryError: If user creation fails (e.g., duplicate email)
        """
        try:
            user = User(
                id=uuid.uuid4(),
                email=email.lower().strip(),
                name=name,
                role=role,
            )
            self.session.add(user)
            await self.session.flush()
            return user
        except IntegrityError as e:
            await self.session.rollback()
            raise RepositoryError(f"User with email {email} already exists") from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(f"Database error creating user: {e}") from e

    async def get_user_by_id(self, user_id: Optional[uuid.UUID]) -> Optional[User]:
        if user_id is None:
            return None
        try:
            return await self.session.get(User, user_id)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error getting user: {e}") from e

    async def list_admins(self) -> List[User]:
        try:
            result = await self.session.execute(
                select(User)
                .where(User.role == "admin", User.status == "active")
                .order_by(User.created_at)
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error listing admins: {e}") from e


class CloudStorageTokensRepository:
    """
    Token record access, including the compare-and-set refresh lease.

    Decryption failures surface as ``RepositoryError``.
    """

    def __init__(self, session: AsyncSession, crypto: Optional[CryptoService] = None):
        self.session = session
        self.crypto = crypto

    def _require_crypto(self) -> CryptoService:
        if self.crypto is None:
            raise RepositoryError("Credential access requires a CryptoService")
        return self.crypto

    async def get_token(
        self, user_id: uuid.UUID, provider: str
    ) -> Optional[CloudStorageToken]:
        try:
            result = await self.session.execute(
                select(CloudStorageToken).where(
                    CloudStorageToken.user_id == user_id,
                    CloudStorageToken.provider == provider,
                )
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error getting token: {e}") from e

    async def require_token(
        self, user_id: uuid.UUID, provider: str
    ) -> CloudStorageToken:
        """
        Raises:
            TokenNotFoundError: If the user never connected this provider
        """
        token = await self.get_token(user_id, provider)
        if token is None:
            raise TokenNotFoundError(f"No {provider} token stored for user {user_id}")
        return token

    async def record_connection_check(
        self, user_id: uuid.UUID, provider: str, ok: bool
    ) -> Optional[CloudStorageToken]:
        """Reset or bump ``health_check_failures`` after a live connection check."""
        token = await self.get_token(user_id, provider)
        if token is None:
            return None
        token.health_check_failures = 0 if ok else token.health_check_failures + 1
        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error recording connection check: {e}") from e
        return token

    async def get_token_for_update(
        self, user_id: uuid.UUID, provider: str
    ) -> Optional[CloudStorageToken]:
        """Fetch a token bypassing the identity map so concurrent writes are seen."""
        try:
            result = await self.session.execute(
                select(CloudStorageToken)
                .where(
                    CloudStorageToken.user_id == user_id,
                    CloudStorageToken.provider == provider,
                )
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error getting token: {e}") from e

    async def save_token(
        self,
        user_id: uuid.UUID,
        provider: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        scopes: Optional[List[str]] = None,
    ) -> CloudStorageToken:
        """
        Create or replace the credentials for a (user, provider).

        A reconnect resets all refresh bookkeeping.
        """
        crypto = self._require_crypto()
        try:
            token = await self.get_token(user_id, provider)
            if token is None:
                token = CloudStorageToken(
                    id=uuid.uuid4(), user_id=user_id, provider=provider
                )
                self.session.add(token)

            token.access_token_ciphertext = crypto.encrypt_token(access_token)
            token.refresh_token_ciphertext = (
                crypto.encrypt_token(refresh_token) if refresh_token else None
            )
            token.scopes = scopes
            token.mark_refresh_success(expires_at)
            token.last_refresh_attempt_at = None
            token.refresh_lock_expires_at = None
            token.refresh_lock_owner = None
            token.notification_failure_count = 0

            await self.session.flush()
            return token
        except CryptoServiceError as e:
            await self.session.rollback()
            raise RepositoryError(f"Token encryption failed: {e}") from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(f"Database error saving token: {e}") from e

    async def store_refreshed_credentials(
        self,
        token: CloudStorageToken,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
    ) -> CloudStorageToken:
        """Persist new credentials; a missing refresh token keeps the old one."""
        crypto = self._require_crypto()
        try:
            token.access_token_ciphertext = crypto.encrypt_token(access_token)
            if refresh_token:
                token.refresh_token_ciphertext = crypto.encrypt_token(refresh_token)
            token.mark_refresh_success(expires_at)
            await self.session.flush()
            return token
        except CryptoServiceError as e:
            raise RepositoryError(f"Token encryption failed: {e}") from e
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error updating tokens: {e}") from e

    def get_decrypted_access_token(self, token: CloudStorageToken) -> str:
        try:
            return self._require_crypto().decrypt_token(token.access_token_ciphertext)
        except CryptoServiceError as e:
            raise RepositoryError(f"Failed to decrypt access token: {e}") from e

    def get_decrypted_refresh_token(self, token: CloudStorageToken) -> Optional[str]:
        if token.refresh_token_ciphertext is None:
            return None
        try:
            return self._require_crypto().decrypt_token(token.refresh_token_ciphertext)
        except CryptoServiceError as e:
            raise RepositoryError(f"Failed to decrypt refresh token: {e}") from e

    async def try_acquire_refresh_lease(
        self,
        token_id: uuid.UUID,
        owner: str,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Take the refresh lease if it is free or expired.

        A single conditional UPDATE: exactly one of several concurrent callers
        sees ``rowcount == 1``.
        """
        now = now or utc_now()
        try:
            result = await self.session.execute(
                update(CloudStorageToken)
                .where(
                    CloudStorageToken.id == token_id,
                    or_(
                        CloudStorageToken.refresh_lock_expires_at.is_(None),
                        CloudStorageToken.refresh_lock_expires_at <= now,
                    ),
                )
                .values(
                    refresh_lock_expires_at=now + timedelta(seconds=ttl_seconds),
                    refresh_lock_owner=owner,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error acquiring refresh lease: {e}") from e

    async def release_refresh_lease(self, token_id: uuid.UUID, owner: str) -> None:
        try:
            await self.session.execute(
                update(CloudStorageToken)
                .where(
                    CloudStorageToken.id == token_id,
                    CloudStorageToken.refresh_lock_owner == owner,
                )
                .values(refresh_lock_expires_at=None, refresh_lock_owner=None)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error releasing refresh lease: {e}") from e

    async def list_tokens_expiring_before(
        self,
        provider: str,
        until: datetime,
        failure_ceiling: Optional[int] = None,
    ) -> Sequence[CloudStorageToken]:
        """
        Tokens of ``provider`` with an expiry at or before ``until``, soonest first.

        With ``failure_ceiling`` only refreshable tokens are returned
        (refresh credential present, no intervention flag, below the ceiling).
        """
        conditions = [
            CloudStorageToken.provider == provider,
            CloudStorageToken.expires_at.is_not(None),
            CloudStorageToken.expires_at <= until,
        ]
        if failure_ceiling is not None:
            conditions.extend(
                [
                    CloudStorageToken.refresh_token_ciphertext.is_not(None),
                    CloudStorageToken.requires_user_intervention.is_(False),
                    CloudStorageToken.refresh_failure_count < failure_ceiling,
                ]
            )
        try:
            result = await self.session.execute(
                select(CloudStorageToken)
                .where(*conditions)
                .order_by(CloudStorageToken.expires_at)
            )
            return result.scalars().all()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error listing expiring tokens: {e}") from e

    async def reset_stale_failure_counters(self, older_than: datetime) -> int:
        """Forget refresh failures whose last attempt is older than ``older_than``."""
        try:
            result = await self.session.execute(
                update(CloudStorageToken)
                .where(
                    CloudStorageToken.refresh_failure_count > 0,
                    CloudStorageToken.requires_user_intervention.is_(False),
                    CloudStorageToken.last_refresh_attempt_at < older_than,
                )
                .values(refresh_failure_count=0, last_refresh_attempt_at=None)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error resetting failure counters: {e}") from e

    async def clear_stale_schedule_locks(
        self, scheduled_before: datetime, now: Optional[datetime] = None
    ) -> int:
        """
        Clear ``proactive_refresh_scheduled_at`` stamps older than ``scheduled_before``
        on tokens that have not yet expired.
        """
        now = now or utc_now()
        try:
            result = await self.session.execute(
                update(CloudStorageToken)
                .where(
                    CloudStorageToken.proactive_refresh_scheduled_at.is_not(None),
                    CloudStorageToken.proactive_refresh_scheduled_at < scheduled_before,
                    CloudStorageToken.expires_at.is_not(None),
                    CloudStorageToken.expires_at > now,
                )
                .values(proactive_refresh_scheduled_at=None)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error clearing stale locks: {e}") from e


class HealthStatusRepository:
    """Health status record access and garbage collection queries."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(
        self, user_id: uuid.UUID, provider: str
    ) -> Optional[CloudStorageHealthStatus]:
        try:
            result = await self.session.execute(
                select(CloudStorageHealthStatus).where(
                    CloudStorageHealthStatus.user_id == user_id,
                    CloudStorageHealthStatus.provider == provider,
                )
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error getting health status: {e}") from e

    async def get_or_create(
        self, user_id: uuid.UUID, provider: str
    ) -> CloudStorageHealthStatus:
        """Return the record, creating a ``disconnected`` one on first use."""
        record = await self.get(user_id, provider)
        if record is not None:
            return record
        try:
            record = CloudStorageHealthStatus(
                id=uuid.uuid4(),
                user_id=user_id,
                provider=provider,
                status="disconnected",
                consecutive_failures=0,
                requires_reconnection=False,
            )
            self.session.add(record)
            await self.session.flush()
            return record
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error creating health status: {e}") from e

    async def list_expiring(
        self, provider: str, until: datetime, now: datetime
    ) -> Sequence[CloudStorageHealthStatus]:
        try:
            result = await self.session.execute(
                select(CloudStorageHealthStatus)
                .where(
                    CloudStorageHealthStatus.provider == provider,
                    CloudStorageHealthStatus.token_expires_at.is_not(None),
                    CloudStorageHealthStatus.token_expires_at > now,
                    CloudStorageHealthStatus.token_expires_at <= until,
                )
                .order_by(CloudStorageHealthStatus.token_expires_at)
            )
            return result.scalars().all()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error listing expiring health: {e}") from e

    async def list_by_status(
        self, provider: str, statuses: Sequence[str]
    ) -> Sequence[CloudStorageHealthStatus]:
        try:
            result = await self.session.execute(
                select(CloudStorageHealthStatus)
                .where(
                    CloudStorageHealthStatus.provider == provider,
                    CloudStorageHealthStatus.status.in_(list(statuses)),
                )
                .order_by(CloudStorageHealthStatus.consecutive_failures.desc())
            )
            return result.scalars().all()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error listing health by status: {e}") from e

    async def delete_orphaned(self) -> int:
        """Delete health records whose owning user no longer exists."""
        try:
            result = await self.session.execute(
                delete(CloudStorageHealthStatus)
                .where(
                    ~exists().where(User.id == CloudStorageHealthStatus.user_id)
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error purging orphans: {e}") from e

    async def delete_inactive(
        self,
        updated_before: datetime,
        no_success_since: datetime,
        no_uploads_since: datetime,
    ) -> int:
        """
        Delete old health records for users with no recent activity.

        A record goes when it was last touched before ``updated_before``, had
        no successful operation since ``no_success_since`` and its user has not
        uploaded (as owner or uploader) since ``no_uploads_since``.
        """
        recent_upload = exists().where(
            or_(
                FileUpload.company_user_id == CloudStorageHealthStatus.user_id,
                FileUpload.uploaded_by_user_id == CloudStorageHealthStatus.user_id,
            ),
            FileUpload.created_at >= no_uploads_since,
        )
        try:
            result = await self.session.execute(
                delete(CloudStorageHealthStatus)
                .where(
                    CloudStorageHealthStatus.updated_at < updated_before,
                    or_(
                        CloudStorageHealthStatus.last_successful_operation_at.is_(None),
                        CloudStorageHealthStatus.last_successful_operation_at
                        < no_success_since,
                    ),
                    ~recent_upload,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error purging inactive health: {e}") from e


class FileUploadsRepository:
    """File upload record access for the transfer and retry jobs."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_upload(self, **fields) -> FileUpload:
        try:
            upload = FileUpload(**fields)
            self.session.add(upload)
            await self.session.flush()
            return upload
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(f"Database error creating upload: {e}") from e

    async def get_upload(self, upload_id: int) -> FileUpload:
        """
        Raises:
            UploadNotFoundError: If no upload has this id
        """
        try:
            upload = await self.session.get(
                FileUpload, upload_id, populate_existing=True
            )
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error getting upload: {e}") from e
        if upload is None:
            raise UploadNotFoundError(f"Upload {upload_id} not found")
        return upload

    async def find_retryable_uploads(
        self,
        max_retry_count: int,
        max_recovery_attempts: int,
        limit: int,
        now: Optional[datetime] = None,
    ) -> Sequence[FileUpload]:
        """
        Pending uploads whose recommended retry time has passed.

        Uploads with a non-recoverable recorded kind still match here; the
        recovery service decides and records the skip reason.
        """
        now = now or utc_now()
        try:
            result = await self.session.execute(
                select(FileUpload)
                .where(
                    or_(FileUpload.cloud_file_id.is_(None), FileUpload.cloud_file_id == ""),
                    FileUpload.retry_count < max_retry_count,
                    FileUpload.recovery_attempts < max_recovery_attempts,
                    FileUpload.retry_recommended_at.is_not(None),
                    FileUpload.retry_recommended_at <= now,
                )
                .order_by(FileUpload.retry_recommended_at)
                .limit(limit)
            )
            return result.scalars().all()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error finding retryable uploads: {e}") from e


class NotificationDeliveriesRepository:
    """Throttle bookkeeping per (user, provider, notification type)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(
        self, user_id: uuid.UUID, provider: str, notification_type: str
    ) -> Optional[NotificationDelivery]:
        try:
            result = await self.session.execute(
                select(NotificationDelivery).where(
                    and_(
                        NotificationDelivery.user_id == user_id,
                        NotificationDelivery.provider == provider,
                        NotificationDelivery.notification_type == notification_type,
                    )
                )
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error getting delivery: {e}") from e

    async def get_or_create(
        self, user_id: uuid.UUID, provider: str, notification_type: str
    ) -> NotificationDelivery:
        record = await self.get(user_id, provider, notification_type)
        if record is not None:
            return record
        try:
            record = NotificationDelivery(
                id=uuid.uuid4(),
                user_id=user_id,
                provider=provider,
                notification_type=notification_type,
                failure_count=0,
            )
            self.session.add(record)
            await self.session.flush()
            return record
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error creating delivery: {e}") from e
