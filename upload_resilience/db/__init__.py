"""
Database module for the upload resilience engine.

Single import point for database functionality.
"""

from .database import (
    build_engine,
    build_session_factory,
    create_tables,
    drop_tables,
    get_async_session,
    get_engine,
    get_session_factory,
    on_shutdown,
    on_startup,
    ping,
    session_scope,
    with_unit_of_work,
)
from .models import (
    Base,
    CloudStorageHealthStatus,
    CloudStorageToken,
    FileUpload,
    NotificationDelivery,
    User,
)
from .repositories import (
    CloudStorageTokensRepository,
    FileUploadsRepository,
    HealthStatusRepository,
    NotificationDeliveriesRepository,
    RepositoryError,
    TokenNotFoundError,
    UploadNotFoundError,
    UsersRepository,
)

__all__ = [
    # Session management
    "get_async_session",
    "with_unit_of_work",
    "session_scope",
    "build_engine",
    "build_session_factory",
    "get_engine",
    "get_session_factory",
    # Lifecycle
    "on_startup",
    "on_shutdown",
    "ping",
    "create_tables",
    "drop_tables",
    # Models
    "Base",
    "User",
    "CloudStorageToken",
    "CloudStorageHealthStatus",
    "FileUpload",
    "NotificationDelivery",
    # Repositories
    "UsersRepository",
    "CloudStorageTokensRepository",
    "HealthStatusRepository",
    "FileUploadsRepository",
    "NotificationDeliveriesRepository",
    "RepositoryError",
    "TokenNotFoundError",
    "UploadNotFoundError",
]
