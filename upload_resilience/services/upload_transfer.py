"""
Transfer of a locally staged upload to the cloud provider.

One ``transfer`` call is one attempt. Failures are classified and recorded
on the upload record (kind, context, health snapshot, recommended retry
time) instead of being raised, so the recovery pipeline can pick the upload
up later.
"""

import uuid
from datetime import timedelta
from typing import Any, Dict, Mapping, NamedTuple, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..clients.file_store import LocalFileStore
from ..clients.provider import CloudStorageProvider, ProviderNotConfiguredError
from ..config import Settings
from ..db.database import session_scope, with_unit_of_work
from ..db.models import FileUpload, User
from ..db.repositories import FileUploadsRepository, UsersRepository
from ..utils.clock import utc_now
from .error_classifier import ClassifiedError, ErrorClassifier, ErrorKind
from .health_tracker import HealthTracker
from .proactive_renewal import TokenRenewalService
from .token_refresh_coordinator import TokenRefreshError

logger = structlog.get_logger(__name__)


class TransferResult(NamedTuple):
    upload_id: int
    delivered: bool
    cloud_file_id: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    target_user_id: Optional[uuid.UUID] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "upload_id": self.upload_id,
            "delivered": self.delivered,
            "cloud_file_id": self.cloud_file_id,
            "error_type": self.error_kind.value if self.error_kind else None,
            "message": self.message,
            "target_user_id": str(self.target_user_id) if self.target_user_id else None,
        }


class UploadTransferService:
    """Moves a pending upload into the target user's cloud storage."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        providers: Mapping[str, CloudStorageProvider],
        renewal: TokenRenewalService,
        health_tracker: HealthTracker,
        file_store: LocalFileStore,
        classifier: Optional[ErrorClassifier] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.providers = providers
        self.renewal = renewal
        self.health_tracker = health_tracker
        self.file_store = file_store
        self.classifier = classifier or ErrorClassifier()

    async def resolve_target_user(
        self, upload: FileUpload, session: Optional[AsyncSession] = None
    ) -> Optional[User]:
        """
        Pick the account whose storage receives the upload.

        Priority: explicit company/owner user, then the uploader, then the
        first admin with a working connection.
        """
        async with session_scope(self.session_factory, session) as s:
            users = UsersRepository(s)
            for user_id in (upload.company_user_id, upload.uploaded_by_user_id):
                user = await users.get_user_by_id(user_id)
                if user is not None:
                    return user
            admins = await users.list_admins()

        provider = self.providers.get(upload.cloud_storage_provider)
        if provider is None:
            return None
        for admin in admins:
            if await provider.has_valid_connection(admin):
                logger.info(
                    "Falling back to admin storage",
                    upload_id=upload.id,
                    admin_id=str(admin.id),
                )
                return admin
        return None

    async def transfer(self, upload_id: int) -> TransferResult:
        async with with_unit_of_work(self.session_factory) as session:
            upload = await FileUploadsRepository(session).get_upload(upload_id)
            if upload.is_delivered:
                return TransferResult(upload_id, True, upload.cloud_file_id, message="Already delivered")
            provider_name = upload.cloud_storage_provider
            target = await self.resolve_target_user(upload, session)

        log = logger.bind(upload_id=upload_id, provider=provider_name)

        if target is None:
            error = RuntimeError("No target user available for upload")
            return await self._record_failure(upload_id, None, provider_name, error)

        provider = self.providers.get(provider_name)
        if provider is None:
            error = ProviderNotConfiguredError(
                f"No client configured for provider {provider_name}", provider=provider_name
            )
            return await self._record_failure(upload_id, target, provider_name, error)

        if not self.file_store.exists(upload.filename):
            error = FileNotFoundError(f"Local file missing: {upload.filename}")
            return await self._record_failure(upload_id, target, provider_name, error)

        try:
            await self.renewal.get_valid_access_token(target.id, provider_name)
            cloud_file_id = await provider.upload_file(
                target,
                self.file_store.path_for(upload.filename),
                upload.email,
                {
                    "filename": upload.original_filename,
                    "mime_type": upload.mime_type,
                    "description": upload.message,
                },
            )
        except TokenRefreshError as e:
            # Refresh failures are already bookkept on the token and health record.
            return await self._record_failure(
                upload_id, target, provider_name, e, kind=e.kind, mark_unhealthy=False
            )
        except Exception as e:
            return await self._record_failure(upload_id, target, provider_name, e)

        async with with_unit_of_work(self.session_factory) as session:
            upload = await FileUploadsRepository(session).get_upload(upload_id)
            upload.cloud_file_id = cloud_file_id
            upload.clear_cloud_storage_error()
            upload.retry_recommended_at = None
            upload.last_processed_at = utc_now()
            await self.health_tracker.record_successful_operation(
                target.id,
                provider_name,
                {"last_upload_id": upload_id, "last_cloud_file_id": cloud_file_id},
                session=session,
            )

        self.file_store.delete(upload.filename)
        log.info("Upload delivered", cloud_file_id=cloud_file_id, target_user_id=str(target.id))
        return TransferResult(upload_id, True, cloud_file_id, target_user_id=target.id)

    async def _record_failure(
        self,
        upload_id: int,
        target: Optional[User],
        provider: str,
        error: BaseException,
        kind: Optional[ErrorKind] = None,
        mark_unhealthy: bool = True,
    ) -> TransferResult:
        classified = self.classifier.classify_with_context(error)
        if kind is not None:
            classified = classified._replace(kind=kind)
        now = utc_now()

        async with with_unit_of_work(self.session_factory) as session:
            upload = await FileUploadsRepository(session).get_upload(upload_id)
            snapshot = None
            if target is not None:
                if mark_unhealthy:
                    await self.health_tracker.mark_connection_as_unhealthy(
                        target.id, provider, classified.message, classified.kind, session=session
                    )
                summary = await self.health_tracker.get_health_summary(
                    target.id, provider, session=session
                )
                snapshot = summary.snapshot()

            upload.retry_count += 1
            upload.last_error = classified.message[:1000]
            upload.cloud_storage_error_type = classified.kind.value
            upload.cloud_storage_error_context = classified.to_context()
            upload.connection_health_at_failure = snapshot
            upload.last_processed_at = now
            upload.retry_recommended_at = self._retry_at(classified, upload.retry_count, now)

        log = logger.warning if classified.kind.is_recoverable else logger.error
        log(
            "Upload transfer failed",
            upload_id=upload_id,
            provider=provider,
            error_type=classified.kind.value,
            error=classified.message,
            retry_count=upload.retry_count,
            retry_recommended_at=(
                upload.retry_recommended_at.isoformat() if upload.retry_recommended_at else None
            ),
        )
        return TransferResult(
            upload_id,
            False,
            error_kind=classified.kind,
            message=classified.message,
            target_user_id=target.id if target else None,
        )

    @staticmethod
    def _retry_at(classified: ClassifiedError, retry_count: int, now):
        if not classified.kind.is_recoverable:
            return None
        return now + timedelta(seconds=classified.retry_delay(retry_count))
