"""
Error classification for cloud storage and token refresh failures.

Every failure the engine sees (provider HTTP errors, transport exceptions,
local file errors, bare messages) is mapped to exactly one ``ErrorKind``.
The kind carries fixed properties (recoverable, needs the user, severity)
and a retry policy; jobs and services consult those properties instead of
re-inspecting exception messages.

Classification order:
1. Structured HTTP status codes on ``ProviderError``
2. Provider reason codes (e.g. Google's ``storageQuotaExceeded``)
3. Exception type (httpx transport errors, timeouts, missing files)
4. Message phrases
5. ``UNKNOWN_ERROR``
"""

import asyncio
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional, Tuple, Union

import httpx
import structlog

from ..clients.provider import ProviderError

logger = structlog.get_logger(__name__)


class Severity(str, Enum):
    """Operator-facing severity of an error kind."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RetryPolicy(NamedTuple):
    """How often and how patiently a kind of failure is retried."""

    max_attempts: int
    backoff_seconds: Tuple[int, ...]
    is_recoverable: bool

    def delay_for(self, attempt: int) -> int:
        """Backoff for a 1-based attempt, clamped to the last entry."""
        if not self.is_recoverable or not self.backoff_seconds:
            return 0
        index = min(max(attempt, 1), len(self.backoff_seconds)) - 1
        return self.backoff_seconds[index]


class ErrorKind(str, Enum):
    """Closed taxonomy of provider and refresh failures."""

    TOKEN_EXPIRED = "token_expired"
    INVALID_CREDENTIALS = "invalid_credentials"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
    API_QUOTA_EXCEEDED = "api_quota_exceeded"
    STORAGE_QUOTA_EXCEEDED = "storage_quota_exceeded"
    NETWORK_ERROR = "network_error"
    SERVICE_UNAVAILABLE = "service_unavailable"
    TIMEOUT = "timeout"
    FILE_NOT_FOUND = "file_not_found"
    UNKNOWN_ERROR = "unknown_error"

    @property
    def retry_policy(self) -> RetryPolicy:
        return RETRY_POLICIES[self]

    @property
    def is_recoverable(self) -> bool:
        return RETRY_POLICIES[self].is_recoverable

    @property
    def requires_user_intervention(self) -> bool:
        return self in _INTERVENTION_KINDS

    @property
    def severity(self) -> Severity:
        return _SEVERITIES[self]

    @property
    def notify_immediately(self) -> bool:
        """Kinds the user must hear about on the first occurrence."""
        return self.requires_user_intervention

    @property
    def max_attempts(self) -> int:
        return RETRY_POLICIES[self].max_attempts

    def retry_delay(self, attempt: int) -> int:
        return RETRY_POLICIES[self].delay_for(attempt)

    @classmethod
    def coerce(cls, value: Union["ErrorKind", str, None]) -> "ErrorKind":
        """Parse a persisted kind; unknown or missing values become UNKNOWN_ERROR."""
        if isinstance(value, ErrorKind):
            return value
        if not value:
            return cls.UNKNOWN_ERROR
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN_ERROR


RETRY_POLICIES: Dict[ErrorKind, RetryPolicy] = {
    ErrorKind.NETWORK_ERROR: RetryPolicy(5, (30, 60, 120, 240, 300), True),
    ErrorKind.TIMEOUT: RetryPolicy(3, (60, 120, 180), True),
    ErrorKind.SERVICE_UNAVAILABLE: RetryPolicy(3, (60, 120, 240), True),
    ErrorKind.API_QUOTA_EXCEEDED: RetryPolicy(3, (3600,), True),
    ErrorKind.TOKEN_EXPIRED: RetryPolicy(0, (), False),
    ErrorKind.INVALID_CREDENTIALS: RetryPolicy(0, (), False),
    ErrorKind.INSUFFICIENT_PERMISSIONS: RetryPolicy(0, (), False),
    ErrorKind.STORAGE_QUOTA_EXCEEDED: RetryPolicy(0, (), False),
    ErrorKind.FILE_NOT_FOUND: RetryPolicy(0, (), False),
    # Unknown conditions are not retried.
    ErrorKind.UNKNOWN_ERROR: RetryPolicy(0, (), False),
}

_INTERVENTION_KINDS = frozenset(
    {
        ErrorKind.TOKEN_EXPIRED,
        ErrorKind.INVALID_CREDENTIALS,
        ErrorKind.INSUFFICIENT_PERMISSIONS,
        ErrorKind.STORAGE_QUOTA_EXCEEDED,
    }
)

_SEVERITIES: Dict[ErrorKind, Severity] = {
    ErrorKind.TOKEN_EXPIRED: Severity.HIGH,
    ErrorKind.INVALID_CREDENTIALS: Severity.HIGH,
    ErrorKind.INSUFFICIENT_PERMISSIONS: Severity.HIGH,
    ErrorKind.STORAGE_QUOTA_EXCEEDED: Severity.HIGH,
    ErrorKind.API_QUOTA_EXCEEDED: Severity.MEDIUM,
    ErrorKind.FILE_NOT_FOUND: Severity.MEDIUM,
    ErrorKind.NETWORK_ERROR: Severity.LOW,
    ErrorKind.SERVICE_UNAVAILABLE: Severity.LOW,
    ErrorKind.TIMEOUT: Severity.LOW,
    ErrorKind.UNKNOWN_ERROR: Severity.HIGH,
}

# Provider reason codes (Google API ``errors[].reason`` / OAuth ``error``).
_REASON_KINDS: Dict[str, ErrorKind] = {
    "invalid_grant": ErrorKind.INVALID_CREDENTIALS,
    "invalid_client": ErrorKind.INVALID_CREDENTIALS,
    "unauthorized_client": ErrorKind.INVALID_CREDENTIALS,
    "invalid_token": ErrorKind.TOKEN_EXPIRED,
    "autherror": ErrorKind.TOKEN_EXPIRED,
    "unauthorized": ErrorKind.TOKEN_EXPIRED,
    "insufficientpermissions": ErrorKind.INSUFFICIENT_PERMISSIONS,
    "forbidden": ErrorKind.INSUFFICIENT_PERMISSIONS,
    "storagequotaexceeded": ErrorKind.STORAGE_QUOTA_EXCEEDED,
    "quotaexceeded": ErrorKind.API_QUOTA_EXCEEDED,
    "ratelimitexceeded": ErrorKind.API_QUOTA_EXCEEDED,
    "userratelimitexceeded": ErrorKind.API_QUOTA_EXCEEDED,
    "dailylimitexceeded": ErrorKind.API_QUOTA_EXCEEDED,
    "notfound": ErrorKind.FILE_NOT_FOUND,
    "backenderror": ErrorKind.SERVICE_UNAVAILABLE,
    "internalerror": ErrorKind.SERVICE_UNAVAILABLE,
    "serviceunavailable": ErrorKind.SERVICE_UNAVAILABLE,
}

# Ordered: the first matching phrase group wins.
_MESSAGE_RULES: Tuple[Tuple[Tuple[str, ...], ErrorKind], ...] = (
    (("invalid_grant", "invalid refresh token", "invalid_client"), ErrorKind.INVALID_CREDENTIALS),
    (("token has been expired or revoked", "refresh token expired"), ErrorKind.TOKEN_EXPIRED),
    (("unauthorized", "unauthenticated", "invalid credentials"), ErrorKind.TOKEN_EXPIRED),
    (("storage quota", "storagequotaexceeded", "insufficient storage"), ErrorKind.STORAGE_QUOTA_EXCEEDED),
    (("rate limit", "ratelimit", "too many requests", "quota"), ErrorKind.API_QUOTA_EXCEEDED),
    (("timeout", "timed out"), ErrorKind.TIMEOUT),
    (
        (
            "connection",
            "network",
            "dns",
            "could not resolve host",
            "name resolution",
            "unreachable",
        ),
        ErrorKind.NETWORK_ERROR,
    ),
    (
        ("service unavailable", "temporarily unavailable", "503", "bad gateway", "502"),
        ErrorKind.SERVICE_UNAVAILABLE,
    ),
    (("insufficient permission", "permission denied", "forbidden"), ErrorKind.INSUFFICIENT_PERMISSIONS),
    (("file not found", "no such file", "not found"), ErrorKind.FILE_NOT_FOUND),
)


class ClassifiedError(NamedTuple):
    """A classified failure plus the structured context worth persisting."""

    kind: ErrorKind
    message: str
    status_code: Optional[int] = None
    reason: Optional[str] = None
    retry_after: Optional[int] = None
    exception_type: Optional[str] = None

    def to_context(self) -> Dict[str, Any]:
        return {
            "error_type": self.kind.value,
            "message": self.message[:500],
            "status_code": self.status_code,
            "reason": self.reason,
            "retry_after": self.retry_after,
            "exception_type": self.exception_type,
        }

    def retry_delay(self, attempt: int) -> int:
        """Policy delay, overridden by a provider Retry-After on quota errors."""
        if self.kind == ErrorKind.API_QUOTA_EXCEEDED and self.retry_after:
            return int(self.retry_after)
        return self.kind.retry_delay(attempt)


def _normalise_reason(reason: Optional[str]) -> Optional[str]:
    if not reason:
        return None
    return reason.replace("-", "").replace(" ", "").lower()


def _kind_from_message(message: str) -> Optional[ErrorKind]:
    lowered = message.lower()
    for index, (phrases, kind) in enumerate(_MESSAGE_RULES):
        # "expired" + "refresh" describes a dead refresh credential.
        if index == 1 and "expired" in lowered and "refresh" in lowered:
            return ErrorKind.TOKEN_EXPIRED
        if any(phrase in lowered for phrase in phrases):
            return kind
    return None


def _kind_from_status(
    status_code: int, reason: Optional[str], message: str
) -> Optional[ErrorKind]:
    lowered = message.lower()
    normalised = _normalise_reason(reason) or ""

    if status_code == 401:
        if (
            normalised in ("invalid_grant", "invalid_client", "unauthorized_client")
            or "invalid_grant" in lowered
            or "credentials" in lowered
            or "client" in lowered
        ):
            return ErrorKind.INVALID_CREDENTIALS
        return ErrorKind.TOKEN_EXPIRED
    if status_code == 403:
        if normalised == "storagequotaexceeded" or "storage quota" in lowered:
            return ErrorKind.STORAGE_QUOTA_EXCEEDED
        if (
            normalised in ("quotaexceeded", "ratelimitexceeded", "userratelimitexceeded", "dailylimitexceeded")
            or "quota" in lowered
            or "rate limit" in lowered
        ):
            return ErrorKind.API_QUOTA_EXCEEDED
        return ErrorKind.INSUFFICIENT_PERMISSIONS
    if status_code == 404:
        return ErrorKind.FILE_NOT_FOUND
    if status_code == 408:
        return ErrorKind.TIMEOUT
    if status_code == 429:
        return ErrorKind.API_QUOTA_EXCEEDED
    if status_code == 400:
        if normalised == "invalid_grant" or "invalid_grant" in lowered:
            return ErrorKind.INVALID_CREDENTIALS
        return None
    if status_code == 504:
        return ErrorKind.TIMEOUT
    if 500 <= status_code <= 599:
        return ErrorKind.SERVICE_UNAVAILABLE
    return None


class ErrorClassifier:
    """
    Maps raw failures to an ``ErrorKind``.

    Stateless and deterministic: the same input always yields the same kind.
    """

    def classify(self, error: Union[BaseException, str, None]) -> ErrorKind:
        return self.classify_with_context(error).kind

    def classify_with_context(
        self, error: Union[BaseException, str, None]
    ) -> ClassifiedError:
        if error is None:
            return ClassifiedError(ErrorKind.UNKNOWN_ERROR, "No error information")

        if isinstance(error, str):
            kind = _kind_from_message(error) or ErrorKind.UNKNOWN_ERROR
            return ClassifiedError(kind, error)

        message = str(error) or type(error).__name__
        exception_type = type(error).__name__

        if isinstance(error, ProviderError):
            return self._classify_provider_error(error, message, exception_type)

        if isinstance(error, httpx.HTTPStatusError):
            response = error.response
            kind = _kind_from_status(response.status_code, None, message)
            return ClassifiedError(
                kind or _kind_from_message(message) or ErrorKind.UNKNOWN_ERROR,
                message,
                status_code=response.status_code,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
                exception_type=exception_type,
            )

        kind = self._kind_from_exception_type(error)
        if kind is None:
            kind = _kind_from_message(message)
        if kind is None:
            logger.debug(
                "Unclassified error, treating as unknown",
                exception_type=exception_type,
                error=message[:200],
            )
            kind = ErrorKind.UNKNOWN_ERROR
        return ClassifiedError(kind, message, exception_type=exception_type)

    def _classify_provider_error(
        self, error: ProviderError, message: str, exception_type: str
    ) -> ClassifiedError:
        kind = None
        if error.status_code is not None:
            kind = _kind_from_status(error.status_code, error.reason, message)
        if kind is None:
            normalised = _normalise_reason(error.reason)
            if normalised:
                kind = _REASON_KINDS.get(normalised)
        if kind is None:
            kind = _kind_from_message(message) or ErrorKind.UNKNOWN_ERROR
        return ClassifiedError(
            kind,
            message,
            status_code=error.status_code,
            reason=error.reason,
            retry_after=error.retry_after,
            exception_type=exception_type,
        )

    @staticmethod
    def _kind_from_exception_type(error: BaseException) -> Optional[ErrorKind]:
        if isinstance(error, httpx.TimeoutException):
            return ErrorKind.TIMEOUT
        if isinstance(error, httpx.TransportError):
            return ErrorKind.NETWORK_ERROR
        if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
            return ErrorKind.TIMEOUT
        if isinstance(error, FileNotFoundError):
            return ErrorKind.FILE_NOT_FOUND
        if isinstance(error, ConnectionError):
            return ErrorKind.NETWORK_ERROR
        return None


def _parse_retry_after(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return max(0, int(float(value)))
    except ValueError:
        return None


default_classifier = ErrorClassifier()


def classify_error(error: Union[BaseException, str, None]) -> ErrorKind:
    """Module-level shortcut around a stateless classifier."""
    return default_classifier.classify(error)
