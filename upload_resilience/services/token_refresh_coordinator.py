"""
Coordinated token refresh.

At most one provider round-trip per (user, provider) is in flight:

1. In-process: concurrent callers in one worker share a single asyncio task.
2. Cross-process: a lease on ``cloud_storage_tokens.refresh_lock_expires_at``
   taken with a conditional UPDATE. Callers that lose the race poll until the
   holder finishes and then report ``REFRESHED_BY_ANOTHER_PROCESS``.

The coordinator only records successes. Failures are returned as a
``RefreshResult`` and bookkept by the renewal service.
"""

import asyncio
import time
import uuid
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Tuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..clients.provider import CloudStorageProvider, ProviderNotConfiguredError, TokenGrant
from ..config import Settings
from ..db.database import with_unit_of_work
from ..db.repositories import CloudStorageTokensRepository, RepositoryError
from ..utils.clock import utc_now
from ..utils.crypto import CryptoService
from .error_classifier import ErrorClassifier, ErrorKind
from .health_tracker import HealthTracker

logger = structlog.get_logger(__name__)


class RefreshOutcome(str, Enum):
    SUCCESS = "success"
    ALREADY_VALID = "already_valid"
    FAILURE = "failure"
    REFRESHED_BY_ANOTHER_PROCESS = "refreshed_by_another_process"


class RefreshResult(NamedTuple):
    """Result of a coordinated refresh."""

    outcome: RefreshOutcome
    message: str
    error_kind: Optional[ErrorKind] = None
    error: Optional[BaseException] = None
    credentials: Optional[TokenGrant] = None
    expires_at: Optional[datetime] = None
    provider_attempted: bool = False

    @classmethod
    def success(
        cls, credentials: TokenGrant, expires_at: Optional[datetime], message: str = "Token refreshed"
    ) -> "RefreshResult":
        return cls(
            RefreshOutcome.SUCCESS,
            message,
            credentials=credentials,
            expires_at=expires_at,
            provider_attempted=True,
        )

    @classmethod
    def already_valid(cls, message: str = "Token is still valid") -> "RefreshResult":
        return cls(RefreshOutcome.ALREADY_VALID, message)

    @classmethod
    def refreshed_by_another_process(
        cls, message: str = "Token was refreshed by another process"
    ) -> "RefreshResult":
        return cls(RefreshOutcome.REFRESHED_BY_ANOTHER_PROCESS, message)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        error: Optional[BaseException],
        message: str,
        provider_attempted: bool = False,
    ) -> "RefreshResult":
        """``provider_attempted`` is False when no provider call was made."""
        return cls(
            RefreshOutcome.FAILURE,
            message,
            error_kind=kind,
            error=error,
            provider_attempted=provider_attempted,
        )

    @property
    def is_successful(self) -> bool:
        """True when a usable access token exists afterwards."""
        return self.outcome != RefreshOutcome.FAILURE

    @property
    def was_refreshed(self) -> bool:
        return self.outcome == RefreshOutcome.SUCCESS


class TokenRefreshError(Exception):
    """A failed refresh surfaced as an exception, carrying the classified kind."""

    def __init__(self, result: RefreshResult):
        super().__init__(result.message)
        self.result = result
        self.kind = result.error_kind or ErrorKind.UNKNOWN_ERROR


class RefreshMetrics:
    """Counters for refresh attempts, kept per coordinator instance."""

    def __init__(self):
        self.attempts = 0
        self.successes = 0
        self.already_valid = 0
        self.coalesced = 0
        self.lease_waits = 0
        self.failures: Dict[str, int] = defaultdict(int)
        self.latencies: List[float] = []

    def record_success(self, latency_ms: float) -> None:
        self.attempts += 1
        self.successes += 1
        self.latencies.append(latency_ms)
        # Last 100 only
        if len(self.latencies) > 100:
            self.latencies = self.latencies[-100:]

    def record_failure(self, kind: ErrorKind) -> None:
        self.attempts += 1
        self.failures[kind.value] += 1

    def summary(self) -> Dict[str, Any]:
        return {
            "refresh_attempts_total": self.attempts,
            "refresh_success_total": self.successes,
            "already_valid_total": self.already_valid,
            "coalesced_callers_total": self.coalesced,
            "lease_waits_total": self.lease_waits,
            "success_rate": self.successes / max(1, self.attempts),
            "avg_latency_ms": sum(self.latencies) / max(1, len(self.latencies)),
            "failures_by_kind": dict(self.failures),
        }


RefreshKey = Tuple[uuid.UUID, str]


class TokenRefreshCoordinator:
    """
    Refreshes tokens with at-most-one in-flight provider call per (user, provider).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        crypto: CryptoService,
        providers: Mapping[str, CloudStorageProvider],
        health_tracker: HealthTracker,
        classifier: Optional[ErrorClassifier] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.crypto = crypto
        self.providers = dict(providers)
        self.health_tracker = health_tracker
        self.classifier = classifier or ErrorClassifier()
        self.metrics = RefreshMetrics()
        self._in_flight: Dict[RefreshKey, "asyncio.Task[RefreshResult]"] = {}
        self._instance_id = uuid.uuid4().hex[:12]

    def is_refresh_in_progress(self, user_id: uuid.UUID, provider: str) -> bool:
        task = self._in_flight.get((user_id, provider))
        return task is not None and not task.done()

    def get_stats(self) -> Dict[str, Any]:
        stats = self.metrics.summary()
        stats["in_flight"] = sum(1 for t in self._in_flight.values() if not t.done())
        return stats

    async def coordinate_refresh(
        self,
        user_id: uuid.UUID,
        provider: str,
        force: bool = False,
        window_minutes: Optional[int] = None,
    ) -> RefreshResult:
        """
        Refresh the token for (user, provider) if it is close to expiry.

        Concurrent callers for the same key await the same result. ``force``
        skips the expiry short-circuit (used when the provider rejected a
        token that still looked valid). ``window_minutes`` widens the
        expiry window for callers refreshing ahead of the default window.
        """
        key = (user_id, provider)
        task = self._in_flight.get(key)
        if task is not None and not task.done():
            self.metrics.coalesced += 1
            logger.debug(
                "Joining in-flight token refresh", user_id=str(user_id), provider=provider
            )
            return await asyncio.shield(task)

        task = asyncio.ensure_future(self._refresh(user_id, provider, force, window_minutes))
        self._in_flight[key] = task
        task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return await asyncio.shield(task)

    def _forget(self, key: RefreshKey, task: "asyncio.Task[RefreshResult]") -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _refresh(
        self,
        user_id: uuid.UUID,
        provider: str,
        force: bool,
        window_minutes: Optional[int] = None,
    ) -> RefreshResult:
        log = logger.bind(user_id=str(user_id), provider=provider)

        async with with_unit_of_work(self.session_factory) as session:
            token = await CloudStorageTokensRepository(session).get_token(user_id, provider)
            token_id = token.id if token is not None else None
            if token is not None and not force and not self._needs_refresh(token, window_minutes):
                self.metrics.already_valid += 1
                return RefreshResult.already_valid()

        if token_id is None:
            log.warning("No token stored, cannot refresh")
            return await self._disconnected(
                user_id, provider, "No token stored for this connection"
            )

        owner = f"{self._instance_id}:{uuid.uuid4().hex[:8]}"
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.refresh_lock_wait_seconds
        waited = False

        while not await self._try_acquire(token_id, owner):
            if not waited:
                self.metrics.lease_waits += 1
                log.debug("Refresh lease held elsewhere, waiting")
            waited = True

            if loop.time() >= deadline:
                log.warning(
                    "Timed out waiting for refresh lease",
                    wait_seconds=self.settings.refresh_lock_wait_seconds,
                )
                return RefreshResult.failure(
                    ErrorKind.UNKNOWN_ERROR, None, "lock wait timeout"
                )

            await asyncio.sleep(self.settings.refresh_lock_poll_seconds)
            if await self._became_valid(user_id, provider, window_minutes):
                log.info("Token refreshed by another process while waiting")
                return RefreshResult.refreshed_by_another_process()

        try:
            return await self._refresh_under_lease(
                user_id, provider, force, waited, window_minutes
            )
        finally:
            async with with_unit_of_work(self.session_factory) as session:
                await CloudStorageTokensRepository(session).release_refresh_lease(
                    token_id, owner
                )

    async def _disconnected(
        self, user_id: uuid.UUID, provider: str, reason: str
    ) -> RefreshResult:
        try:
            await self.health_tracker.mark_disconnected(user_id, provider, reason)
        except RepositoryError as e:
            logger.warning(
                "Could not record disconnected connection",
                user_id=str(user_id),
                provider=provider,
                error=str(e),
            )
        return RefreshResult.failure(ErrorKind.INVALID_CREDENTIALS, None, reason)

    def _needs_refresh(self, token, window_minutes: Optional[int] = None) -> bool:
        if window_minutes is None:
            window_minutes = self.settings.token_proactive_refresh_minutes
        return token.is_expiring_soon(window_minutes)

    async def _try_acquire(self, token_id: uuid.UUID, owner: str) -> bool:
        async with with_unit_of_work(self.session_factory) as session:
            return await CloudStorageTokensRepository(session).try_acquire_refresh_lease(
                token_id, owner, self.settings.refresh_lock_ttl_seconds
            )

    async def _became_valid(
        self, user_id: uuid.UUID, provider: str, window_minutes: Optional[int] = None
    ) -> bool:
        async with with_unit_of_work(self.session_factory) as session:
            token = await CloudStorageTokensRepository(session).get_token_for_update(
                user_id, provider
            )
            return token is not None and not self._needs_refresh(token, window_minutes)

    async def _refresh_under_lease(
        self,
        user_id: uuid.UUID,
        provider: str,
        force: bool,
        waited: bool,
        window_minutes: Optional[int] = None,
    ) -> RefreshResult:
        log = logger.bind(user_id=str(user_id), provider=provider)

        disconnect_reason: Optional[str] = None
        async with with_unit_of_work(self.session_factory) as session:
            repo = CloudStorageTokensRepository(session, self.crypto)
            token = await repo.get_token_for_update(user_id, provider)
            if token is None:
                disconnect_reason = "No token stored for this connection"
            # Re-check under the lease: a concurrent holder may have finished.
            elif not force and not self._needs_refresh(token, window_minutes):
                if waited:
                    return RefreshResult.refreshed_by_another_process()
                self.metrics.already_valid += 1
                return RefreshResult.already_valid()
            elif not token.can_be_refreshed(self.settings.token_failure_ceiling):
                log.warning(
                    "Token cannot be refreshed automatically",
                    requires_user_intervention=token.requires_user_intervention,
                    failure_count=token.refresh_failure_count,
                    has_refresh_token=token.has_refresh_token,
                )
                if not token.has_refresh_token:
                    disconnect_reason = "No refresh credential stored for this connection"
                else:
                    return RefreshResult.failure(
                        ErrorKind.INVALID_CREDENTIALS,
                        None,
                        "Token cannot be refreshed without user intervention",
                    )
            else:
                try:
                    refresh_token = repo.get_decrypted_refresh_token(token)
                except RepositoryError as e:
                    log.error("Stored refresh token is unreadable", error=str(e))
                    return RefreshResult.failure(ErrorKind.INVALID_CREDENTIALS, e, str(e))

        if disconnect_reason is not None:
            return await self._disconnected(user_id, provider, disconnect_reason)

        client = self.providers.get(provider)
        if client is None:
            error = ProviderNotConfiguredError(
                f"No client configured for provider {provider}", provider=provider
            )
            self.metrics.record_failure(ErrorKind.UNKNOWN_ERROR)
            return RefreshResult.failure(ErrorKind.UNKNOWN_ERROR, error, str(error))

        start = time.time()
        try:
            grant = await client.refresh_access_token(refresh_token)
        except Exception as e:
            classified = self.classifier.classify_with_context(e)
            self.metrics.record_failure(classified.kind)
            log.warning(
                "Token refresh failed",
                error_type=classified.kind.value,
                recoverable=classified.kind.is_recoverable,
                error=classified.message[:200],
            )
            return RefreshResult.failure(
                classified.kind, e, classified.message, provider_attempted=True
            )
        latency_ms = (time.time() - start) * 1000

        expires_at = grant.expires_at(utc_now())
        async with with_unit_of_work(self.session_factory) as session:
            repo = CloudStorageTokensRepository(session, self.crypto)
            token = await repo.get_token_for_update(user_id, provider)
            if token is None:
                return RefreshResult.failure(
                    ErrorKind.INVALID_CREDENTIALS, None, "Token removed during refresh"
                )
            await repo.store_refreshed_credentials(
                token, grant.access_token, grant.refresh_token, expires_at
            )
            await self.health_tracker.record_successful_operation(
                user_id,
                provider,
                {"operation": "token_refresh", "refreshed_at": utc_now()},
                session=session,
            )
            await self.health_tracker.update_token_expiration(
                user_id, provider, expires_at, session=session
            )

        self.metrics.record_success(latency_ms)
        log.info(
            "Token refresh successful",
            expires_at=expires_at.isoformat() if expires_at else None,
            latency_ms=round(latency_ms, 2),
        )
        return RefreshResult.success(grant, expires_at)
