"""
Composition root.

``build_app`` wires every service from explicit collaborators (tests pass
fakes); ``create_app`` builds the production graph from settings: database,
arq pool, Google Drive client and logging mail sender.
"""

from dataclasses import dataclass
from typing import Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .clients.credentials import StoredCredentials
from .clients.file_store import LocalFileStore
from .clients.google_drive import GoogleDriveClient
from .clients.mail import LoggingMailSender, MailSender
from .clients.provider import CloudStorageProvider
from .config import Settings, get_settings
from .db.database import on_shutdown, on_startup
from .jobs.queue import ArqJobQueue, JobQueue
from .services.error_classifier import ErrorClassifier
from .services.health_tracker import HealthTracker
from .services.maintenance import MaintenanceSweep
from .services.notifications import NotificationDispatcher
from .services.proactive_renewal import TokenRenewalService
from .services.token_refresh_coordinator import TokenRefreshCoordinator
from .services.upload_recovery import UploadRecoveryService
from .services.upload_transfer import UploadTransferService
from .utils.alerting import AlertManager
from .utils.crypto import CryptoService
from .utils.logging import configure_logging

logger = structlog.get_logger(__name__)


@dataclass
class ResilienceApp:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    crypto: CryptoService
    job_queue: JobQueue
    providers: Dict[str, CloudStorageProvider]
    alert_manager: AlertManager
    classifier: ErrorClassifier
    health_tracker: HealthTracker
    notifier: NotificationDispatcher
    coordinator: TokenRefreshCoordinator
    renewal: TokenRenewalService
    file_store: LocalFileStore
    transfer: UploadTransferService
    recovery: UploadRecoveryService
    maintenance: MaintenanceSweep

    async def close(self) -> None:
        for provider in self.providers.values():
            close = getattr(provider, "close", None)
            if close is not None:
                await close()
        close_queue = getattr(self.job_queue, "close", None)
        if close_queue is not None:
            await close_queue()


def build_app(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    job_queue: JobQueue,
    providers: Optional[Dict[str, CloudStorageProvider]] = None,
    mail_sender: Optional[MailSender] = None,
    crypto: Optional[CryptoService] = None,
    alert_manager: Optional[AlertManager] = None,
    file_store: Optional[LocalFileStore] = None,
) -> ResilienceApp:
    crypto = crypto or CryptoService(settings.fernet_key, settings.fernet_keys)
    if providers is None:
        clients = [GoogleDriveClient(settings, StoredCredentials(session_factory, crypto))]
        providers = {client.get_provider_name(): client for client in clients}
    alert_manager = alert_manager or AlertManager(
        max_per_key=settings.alert_rate_limit_per_key,
        window_minutes=settings.alert_rate_limit_window_minutes,
    )
    file_store = file_store or LocalFileStore(settings.local_storage_root)
    classifier = ErrorClassifier()

    health_tracker = HealthTracker(session_factory, settings)
    notifier = NotificationDispatcher(
        session_factory, settings, mail_sender or LoggingMailSender(), alert_manager
    )
    coordinator = TokenRefreshCoordinator(
        session_factory, settings, crypto, providers, health_tracker, classifier
    )
    renewal = TokenRenewalService(
        session_factory,
        settings,
        crypto,
        coordinator,
        health_tracker,
        notifier,
        job_queue,
        alert_manager,
        classifier,
    )
    transfer = UploadTransferService(
        session_factory, settings, providers, renewal, health_tracker, file_store, classifier
    )
    recovery = UploadRecoveryService(
        session_factory,
        settings,
        transfer,
        health_tracker,
        notifier,
        job_queue,
        alert_manager,
        file_store,
    )
    maintenance = MaintenanceSweep(
        session_factory,
        settings,
        renewal,
        health_tracker,
        notifier,
        recovery,
        alert_manager,
        providers=list(providers),
    )
    return ResilienceApp(
        settings=settings,
        session_factory=session_factory,
        crypto=crypto,
        job_queue=job_queue,
        providers=providers,
        alert_manager=alert_manager,
        classifier=classifier,
        health_tracker=health_tracker,
        notifier=notifier,
        coordinator=coordinator,
        renewal=renewal,
        file_store=file_store,
        transfer=transfer,
        recovery=recovery,
        maintenance=maintenance,
    )


async def create_app(settings: Optional[Settings] = None) -> ResilienceApp:
    """Build the production application for a worker process."""
    settings = settings or get_settings()
    configure_logging(
        settings.log_level, settings.app_env, settings.app_version, settings.log_json
    )
    session_factory = await on_startup(settings)
    job_queue = await ArqJobQueue.connect(settings)
    app = build_app(settings, session_factory, job_queue)
    logger.info("Application started", providers=list(app.providers), app_env=settings.app_env)
    return app


async def shutdown_app(app: ResilienceApp) -> None:
    await app.close()
    await on_shutdown()
    logger.info("Application stopped")
