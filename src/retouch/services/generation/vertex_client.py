"""Vertex AI REST client (Imagen ``:predict`` and Gemini ``:generateContent``)."""

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

import google.auth
import httpx
from google.auth import exceptions as google_auth_exceptions
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from retouch.services.exceptions import ConfigurationError, NetworkError
from retouch.services.generation.retry import classify_message

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

TokenProvider = Callable[[], Awaitable[str]]


class GoogleTokenProvider:
    """OAuth access tokens for Vertex AI from a service account or ambient credentials.

    Credentials are built lazily and refreshed only when the cached token is
    missing or expired. The google-auth refresh is blocking, so it runs in a
    worker thread.
    """

    def __init__(self, credentials_json: str = ""):
        self._credentials_json = credentials_json
        self._credentials: Any = None
        self._lock = asyncio.Lock()

    def _build_credentials(self) -> Any:
        if self._credentials_json:
            try:
                info = json.loads(self._credentials_json)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"GOOGLE_APPLICATION_CREDENTIALS_JSON is not valid JSON: {e}") from e
            return service_account.Credentials.from_service_account_info(info, scopes=[CLOUD_PLATFORM_SCOPE])

        try:
            credentials, _ = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
        except google_auth_exceptions.DefaultCredentialsError as e:
            raise ConfigurationError(f"No Google credentials available: {e}") from e
        return credentials

    async def __call__(self) -> str:
        async with self._lock:
            if self._credentials is None:
                self._credentials = self._build_credentials()
            if not self._credentials.valid:
                try:
                    await asyncio.to_thread(self._credentials.refresh, GoogleAuthRequest())
                except google_auth_exceptions.RefreshError as e:
                    raise ConfigurationError(f"Failed to obtain Google access token: {e}") from e
                except google_auth_exceptions.TransportError as e:
                    raise NetworkError(f"Token refresh failed: {e}") from e
            return self._credentials.token


class VertexClient:
    """Thin POST wrapper that classifies non-2xx responses into the service error hierarchy."""

    def __init__(self, http_client: httpx.AsyncClient, token_provider: TokenProvider):
        self.http_client = http_client
        self.token_provider = token_provider

    async def post(self, endpoint: str, payload: dict[str, Any], timeout: Optional[float] = None) -> dict[str, Any]:
        """POST a JSON payload and return the decoded response body.

        Raises:
            RateLimitError: 429 / RESOURCE_EXHAUSTED
            TransientError: 5xx, busy, overloaded
            InvalidRequestError: 400 / 404
            PermanentError: Any other non-2xx response
            NetworkError: Timeouts and connection failures
        """
        token = await self.token_provider()
        try:
            response = await self.http_client.post(
                endpoint,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"Network timeout: {e}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Connection error: {e}") from e

        if response.status_code >= 400:
            raw = _safe_json(response)
            message = _error_message(raw) or response.text[:500]
            raise classify_message(
                f"Vertex API error ({response.status_code}): {message}",
                status_code=response.status_code,
                raw=raw,
            )

        body = _safe_json(response)
        if not isinstance(body, dict):
            raise classify_message("Vertex API returned a non-JSON body", status_code=response.status_code)
        return body


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _error_message(raw: Any) -> Optional[str]:
    if isinstance(raw, dict) and isinstance(raw.get("error"), dict):
        error = raw["error"]
        status = error.get("status")
        message = error.get("message")
        if status and message:
            return f"{status}: {message}"
        return message or status
    return None
