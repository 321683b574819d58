"""
Cloud storage provider contract.

The resilience engine never talks to a storage API directly; it goes through
an object satisfying ``CloudStorageProvider``. Provider failures surface as
``ProviderError`` (HTTP status, provider reason code, Retry-After) or as raw
transport exceptions, both of which feed the error classifier.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from ..utils.clock import utc_now


class ProviderError(Exception):
    """Raised when a provider API call returns an error response."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        reason: Optional[str] = None,
        retry_after: Optional[int] = None,
        provider: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.reason = reason
        self.retry_after = retry_after
        self.provider = provider

    def __repr__(self) -> str:
        return (
            f"ProviderError(status_code={self.status_code}, reason={self.reason!r}, "
            f"message={self.message!r})"
        )


class ProviderNotConfiguredError(ProviderError):
    """Raised when OAuth client credentials are missing."""


@dataclass
class TokenGrant:
    """Credentials returned by a refresh_token grant."""

    access_token: str
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def expires_at(self, now: Optional[datetime] = None) -> Optional[datetime]:
        if not self.expires_in:
            return None
        return (now or utc_now()) + timedelta(seconds=int(self.expires_in))


@runtime_checkable
class CloudStorageProvider(Protocol):
    """Operations the resilience engine needs from a storage provider."""

    def get_provider_name(self) -> str: ...

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant: ...

    async def upload_file(
        self,
        user: Any,
        local_path: Path,
        recipient_identifier: str,
        metadata: Dict[str, Any],
    ) -> str: ...

    async def has_valid_connection(self, user: Any) -> bool: ...
