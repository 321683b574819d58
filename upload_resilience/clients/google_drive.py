"""
Google Drive client over httpx.

Implements ``CloudStorageProvider``:
- refresh_token grants against the Google OAuth token endpoint, with network
  errors retried in-call (tenacity, exponential backoff, bounded attempts)
- multipart uploads into a per-recipient folder
- a cheap ``about`` call to check that a connection still works

Error responses raise ``ProviderError`` carrying the HTTP status, the Google
reason code and ``Retry-After`` so the error classifier can work on
structured data.
"""

import json
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import Settings
from .credentials import StoredCredentials
from .provider import ProviderError, ProviderNotConfiguredError, TokenGrant

logger = structlog.get_logger(__name__)

PROVIDER_NAME = "google-drive"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"


def _parse_retry_after(response: httpx.Response) -> Optional[int]:
    value = response.headers.get("Retry-After")
    if value and value.strip().isdigit():
        return int(value.strip())
    return None


def _log_refresh_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Token endpoint unreachable, retrying",
        attempt=retry_state.attempt_number,
        error=str(error),
        error_class=type(error).__name__,
        next_wait_seconds=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
    )


def provider_error_from_response(response: httpx.Response) -> ProviderError:
    """
    Build a ``ProviderError`` from a Google error response.

    Handles both the Drive API shape (``{"error": {"message", "errors":
    [{"reason"}]}}``) and the OAuth shape (``{"error": "invalid_grant",
    "error_description": ...}``).
    """
    reason: Optional[str] = None
    message = f"HTTP {response.status_code}"
    try:
        body = response.json()
    except (json.JSONDecodeError, ValueError):
        body = None

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            message = error.get("message") or message
            errors = error.get("errors") or []
            if errors and isinstance(errors[0], dict):
                reason = errors[0].get("reason")
            reason = reason or error.get("status")
        elif isinstance(error, str):
            reason = error
            message = body.get("error_description") or error
    elif response.text:
        message = response.text[:500]

    return ProviderError(
        message,
        status_code=response.status_code,
        reason=reason,
        retry_after=_parse_retry_after(response),
        provider=PROVIDER_NAME,
    )


class GoogleDriveClient:
    """
    Google Drive implementation of ``CloudStorageProvider``.

    Args:
        settings: Application settings (endpoints, OAuth client, timeouts)
        credentials: Source of the current access token per user
        http_client: Optional preconfigured client (tests pass a MockTransport)
        retry_wait_multiplier: Base for the exponential wait between retries
    """

    def __init__(
        self,
        settings: Settings,
        credentials: StoredCredentials,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_wait_multiplier: float = 1.0,
    ):
        self.settings = settings
        self.credentials = credentials
        self.retry_wait_multiplier = retry_wait_multiplier
        timeout = httpx.Timeout(
            connect=10.0,
            read=settings.provider_http_timeout_seconds,
            write=settings.provider_http_timeout_seconds,
            pool=5.0,
        )
        self.http_client = http_client or httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
        )

    def get_provider_name(self) -> str:
        return PROVIDER_NAME

    async def close(self) -> None:
        await self.http_client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ===== OAuth =====

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """
        Exchange a refresh token for a new access token.

        Raises:
            ProviderNotConfiguredError: If OAuth client credentials are missing
            ProviderError: On an error response from the token endpoint
            httpx.TransportError: When network errors outlast the retries
        """
        if not self.settings.google_drive_client_id or not self.settings.google_drive_client_secret:
            raise ProviderNotConfiguredError(
                "Google Drive OAuth client is not configured", provider=PROVIDER_NAME
            )

        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.settings.google_drive_client_id,
            "client_secret": self.settings.google_drive_client_secret,
        }

        start = time.time()
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.oauth_refresh_max_retries),
            wait=wait_exponential(multiplier=self.retry_wait_multiplier, max=30),
            retry=retry_if_exception_type(httpx.TransportError),
            before_sleep=_log_refresh_retry,
            reraise=True,
        ):
            with attempt:
                response = await self.http_client.post(
                    self.settings.google_token_url,
                    data=data,
                    headers={"Accept": "application/json"},
                )

        if response.status_code != 200:
            error = provider_error_from_response(response)
            logger.warning(
                "Token endpoint rejected refresh",
                status_code=response.status_code,
                reason=error.reason,
            )
            raise error

        body = response.json()
        logger.debug(
            "Token endpoint refresh succeeded",
            duration_ms=round((time.time() - start) * 1000, 2),
            expires_in=body.get("expires_in"),
        )
        return TokenGrant(
            access_token=body["access_token"],
            expires_in=body.get("expires_in"),
            refresh_token=body.get("refresh_token"),
            scope=body.get("scope"),
            raw=body,
        )

    # ===== Drive API =====

    async def _access_token_for(self, user: Any) -> str:
        token = await self.credentials.get_access_token(user.id, PROVIDER_NAME)
        if not token:
            raise ProviderError(
                "No valid Google Drive credential for user",
                status_code=401,
                reason="authError",
                provider=PROVIDER_NAME,
            )
        return token

    @staticmethod
    def _auth_headers(access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    async def _find_or_create_folder(
        self, access_token: str, name: str, parent_id: str
    ) -> str:
        escaped = name.replace("\\", "\\\\").replace("'", "\\'")
        query = (
            f"name = '{escaped}' and mimeType = '{FOLDER_MIME_TYPE}' "
            f"and '{parent_id}' in parents and trashed = false"
        )
        response = await self.http_client.get(
            f"{self.settings.google_drive_api_url}/files",
            params={"q": query, "fields": "files(id,name)", "pageSize": 1},
            headers=self._auth_headers(access_token),
        )
        if response.status_code != 200:
            raise provider_error_from_response(response)

        files = response.json().get("files") or []
        if files:
            return files[0]["id"]

        response = await self.http_client.post(
            f"{self.settings.google_drive_api_url}/files",
            params={"fields": "id"},
            json={"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_id]},
            headers=self._auth_headers(access_token),
        )
        if response.status_code not in (200, 201):
            raise provider_error_from_response(response)

        folder_id = response.json()["id"]
        logger.info("Recipient folder created", folder=name, folder_id=folder_id)
        return folder_id

    async def upload_file(
        self,
        user: Any,
        local_path: Path,
        recipient_identifier: str,
        metadata: Dict[str, Any],
    ) -> str:
        """
        Upload ``local_path`` into the recipient's folder.

        Returns:
            The Drive file id
        """
        access_token = await self._access_token_for(user)
        folder_id = await self._find_or_create_folder(
            access_token,
            recipient_identifier,
            metadata.get("root_folder_id") or self.settings.google_drive_root_folder_id,
        )

        file_metadata = {
            "name": metadata.get("filename") or local_path.name,
            "parents": [folder_id],
        }
        if metadata.get("description"):
            file_metadata["description"] = metadata["description"]

        mime_type = metadata.get("mime_type") or "application/octet-stream"
        boundary = f"upload-{uuid.uuid4().hex}"
        body = b"".join(
            [
                f"--{boundary}\r\n".encode(),
                b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
                json.dumps(file_metadata).encode(),
                f"\r\n--{boundary}\r\n".encode(),
                f"Content-Type: {mime_type}\r\n\r\n".encode(),
                local_path.read_bytes(),
                f"\r\n--{boundary}--\r\n".encode(),
            ]
        )

        start = time.time()
        response = await self.http_client.post(
            self.settings.google_drive_upload_url,
            params={"uploadType": "multipart", "fields": "id"},
            content=body,
            headers={
                **self._auth_headers(access_token),
                "Content-Type": f"multipart/related; boundary={boundary}",
            },
        )
        if response.status_code not in (200, 201):
            raise provider_error_from_response(response)

        file_id = response.json()["id"]
        logger.info(
            "File uploaded to Google Drive",
            user_id=str(user.id),
            file_id=file_id,
            size_bytes=len(body),
            duration_ms=round((time.time() - start) * 1000, 2),
        )
        return file_id

    async def has_valid_connection(self, user: Any) -> bool:
        access_token = await self.credentials.get_access_token(user.id, PROVIDER_NAME)
        if not access_token:
            return False
        try:
            response = await self.http_client.get(
                f"{self.settings.google_drive_api_url}/about",
                params={"fields": "user"},
                headers=self._auth_headers(access_token),
            )
        except httpx.TransportError as e:
            logger.warning("Connection check failed", user_id=str(user.id), error=str(e))
            ok = False
        else:
            ok = response.status_code == 200
            if not ok:
                logger.info(
                    "Connection check rejected",
                    user_id=str(user.id),
                    status_code=response.status_code,
                )
        await self.credentials.record_connection_check(user.id, PROVIDER_NAME, ok)
        return ok
