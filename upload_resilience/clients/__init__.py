"""Client modules for external service integrations."""

from .file_store import LocalFileStore
from .google_drive import GoogleDriveClient, provider_error_from_response
from .mail import LoggingMailSender, MailMessage, MailSender
from .provider import (
    CloudStorageProvider,
    ProviderError,
    ProviderNotConfiguredError,
    TokenGrant,
)

__all__ = [
    "CloudStorageProvider",
    "GoogleDriveClient",
    "LocalFileStore",
    "LoggingMailSender",
    "MailMessage",
    "MailSender",
    "ProviderError",
    "ProviderNotConfiguredError",
    "TokenGrant",
    "provider_error_from_response",
]
