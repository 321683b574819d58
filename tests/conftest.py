"""
Shared test fixtures for the upload resilience engine.

Every test gets its own in-memory SQLite database, a recording job queue in
place of arq, a recording mail sender and a scriptable fake provider, all
wired together through ``build_app``.
"""

import asyncio
import os
import uuid
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import pytest

# Set test environment before importing the package
os.environ.update(
    {
        "APP_ENV": "test",
        "LOG_LEVEL": "INFO",
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "REDIS_URL": "redis://localhost:6379/15",
    }
)

from cryptography.fernet import Fernet
from pydantic import BaseModel

from upload_resilience.app import build_app
from upload_resilience.clients.file_store import LocalFileStore
from upload_resilience.clients.mail import MailMessage
from upload_resilience.clients.provider import TokenGrant
from upload_resilience.config import Settings
from upload_resilience.db.database import (
    build_engine,
    build_session_factory,
    create_tables,
    with_unit_of_work,
)
from upload_resilience.db.repositories import (
    CloudStorageTokensRepository,
    FileUploadsRepository,
    UsersRepository,
)
from upload_resilience.jobs.queue import Lane
from upload_resilience.services.notifications import NotificationError
from upload_resilience.utils.alerting import AlertManager
from upload_resilience.utils.clock import utc_now
from upload_resilience.utils.crypto import CryptoService

PROVIDER = "google-drive"


@dataclass
class EnqueuedJob:
    function: str
    payload: Dict[str, Any]
    lane: Lane
    job_id: Optional[str]
    defer_seconds: float


class RecordingJobQueue:
    """In-memory ``JobQueue``; like arq, a queued job id is not enqueued twice."""

    def __init__(self):
        self.jobs: List[EnqueuedJob] = []

    async def enqueue(
        self,
        function: str,
        payload: BaseModel,
        *,
        lane: Lane,
        job_id: Optional[str] = None,
        defer_seconds: float = 0,
    ) -> Optional[str]:
        if job_id is not None and any(job.job_id == job_id for job in self.jobs):
            return None
        self.jobs.append(
            EnqueuedJob(function, payload.model_dump(mode="json"), lane, job_id, defer_seconds)
        )
        return job_id or f"job-{len(self.jobs)}"

    def by_function(self, function: str) -> List[EnqueuedJob]:
        return [job for job in self.jobs if job.function == function]


class RecordingMailSender:
    def __init__(self):
        self.messages: List[MailMessage] = []
        self.fail = False

    async def send(self, message: MailMessage) -> None:
        if self.fail:
            raise NotificationError("SMTP connection refused")
        self.messages.append(message)

    def of_type(self, notification_type: str) -> List[MailMessage]:
        return [m for m in self.messages if m.notification_type == notification_type]


class FakeProvider:
    """Scriptable ``CloudStorageProvider``."""

    def __init__(self):
        self.refresh_error: Optional[BaseException] = None
        self.upload_error: Optional[BaseException] = None
        self.expires_in = 3600
        self.refresh_calls = 0
        self.refresh_delay = 0.0
        self.uploads: List[Dict[str, Any]] = []
        self.connected: Set[uuid.UUID] = set()

    def get_provider_name(self) -> str:
        return PROVIDER

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        self.refresh_calls += 1
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        return TokenGrant(
            access_token=f"access-{self.refresh_calls}", expires_in=self.expires_in
        )

    async def upload_file(
        self, user: Any, local_path: Path, recipient_identifier: str, metadata: Dict[str, Any]
    ) -> str:
        if self.upload_error is not None:
            raise self.upload_error
        self.uploads.append(
            {
                "user_id": user.id,
                "path": local_path,
                "recipient": recipient_identifier,
                "metadata": metadata,
            }
        )
        return f"drive-file-{len(self.uploads)}"

    async def has_valid_connection(self, user: Any) -> bool:
        return user.id in self.connected


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        app_env="test",
        log_level="INFO",
        database_url="sqlite+aiosqlite:///:memory:",
        fernet_key=Fernet.generate_key().decode(),
        google_drive_client_id="test-client-id",
        google_drive_client_secret="test-client-secret",
        local_storage_root=str(tmp_path / "uploads"),
        refresh_lock_wait_seconds=0.3,
        refresh_lock_poll_seconds=0.05,
    )


@pytest.fixture
async def session_factory(settings):
    engine = build_engine(settings)
    await create_tables(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def crypto(settings) -> CryptoService:
    return CryptoService(settings.fernet_key)


@pytest.fixture
def job_queue() -> RecordingJobQueue:
    return RecordingJobQueue()


@pytest.fixture
def mail_sender() -> RecordingMailSender:
    return RecordingMailSender()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def alert_manager() -> AlertManager:
    return AlertManager()


@pytest.fixture
def file_store(settings) -> LocalFileStore:
    return LocalFileStore(settings.local_storage_root)


@pytest.fixture
def app(settings, session_factory, job_queue, provider, mail_sender, crypto, alert_manager, file_store):
    return build_app(
        settings,
        session_factory,
        job_queue,
        providers={PROVIDER: provider},
        mail_sender=mail_sender,
        crypto=crypto,
        alert_manager=alert_manager,
        file_store=file_store,
    )


@pytest.fixture
def make_user(session_factory):
    async def _make(email: Optional[str] = None, role: str = "employee", name: Optional[str] = None):
        async with with_unit_of_work(session_factory) as session:
            return await UsersRepository(session).create_user(
                email or f"user-{uuid.uuid4().hex[:8]}@example.com", name=name, role=role
            )

    return _make


@pytest.fixture
def make_token(session_factory, crypto):
    """Store a token expiring ``expires_in`` from now; extra kwargs set columns."""

    async def _make(
        user,
        expires_in: Optional[timedelta] = timedelta(hours=1),
        refresh_token: Optional[str] = "refresh-token",
        **columns: Any,
    ):
        async with with_unit_of_work(session_factory) as session:
            repo = CloudStorageTokensRepository(session, crypto)
            token = await repo.save_token(
                user.id,
                PROVIDER,
                access_token="access-0",
                refresh_token=refresh_token,
                expires_at=utc_now() + expires_in if expires_in is not None else None,
            )
            for key, value in columns.items():
                setattr(token, key, value)
            return token

    return _make


@pytest.fixture
def get_token(session_factory):
    async def _get(user):
        async with with_unit_of_work(session_factory) as session:
            return await CloudStorageTokensRepository(session).get_token(user.id, PROVIDER)

    return _get


@pytest.fixture
def make_upload(session_factory, file_store):
    """Create an upload record; ``with_file`` stages a local file for it."""

    async def _make(with_file: bool = True, **fields: Any):
        filename = fields.pop("filename", f"{uuid.uuid4().hex}.pdf")
        if with_file:
            file_store.write(filename, b"%PDF-1.4 test")
        values = {
            "email": "client@example.com",
            "original_filename": "contract.pdf",
            "filename": filename,
            "mime_type": "application/pdf",
            "file_size": 13,
            "cloud_storage_provider": PROVIDER,
        }
        values.update(fields)
        async with with_unit_of_work(session_factory) as session:
            return await FileUploadsRepository(session).create_upload(**values)

    return _make


@pytest.fixture
def get_upload(session_factory):
    async def _get(upload_id: int):
        async with with_unit_of_work(session_factory) as session:
            return await FileUploadsRepository(session).get_upload(upload_id)

    return _get
