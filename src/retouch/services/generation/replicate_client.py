"""Replicate API client for image editing and upscaling with error classification."""

import asyncio
from typing import Any, Optional

import replicate
from replicate.exceptions import ModelError
from replicate.exceptions import ReplicateError as ReplicateAPIError

from retouch.services.exceptions import (
    ConfigurationError,
    ContentPolicyError,
    NetworkError,
    PermanentError,
    ServiceError,
)
from retouch.services.generation.retry import classify_message


def classify_replicate_error(exception: Exception) -> ServiceError:
    """Classify a Replicate SDK exception into the service error hierarchy.

    Classification rules:
        - Authentication failures → ConfigurationError
        - Content policy / NSFW / safety → ContentPolicyError
        - Timeouts and connection errors → NetworkError
        - Everything else → rate-limit / transient / permanent by status and message
    """
    error_message = str(exception)
    error_message_lower = error_message.lower()
    status_code = getattr(exception, "status", None)

    if (
        status_code in (401, 403)
        or "unauthorized" in error_message_lower
        or "invalid api token" in error_message_lower
        or "authentication" in error_message_lower
    ):
        return ConfigurationError(f"Replicate authentication failed: {error_message}")

    if (
        "content policy" in error_message_lower
        or "nsfw" in error_message_lower
        or "safety" in error_message_lower
        or "sensitive" in error_message_lower
    ):
        return ContentPolicyError(f"Content policy violation: {error_message}")

    if isinstance(exception, (asyncio.TimeoutError, TimeoutError)) or "timeout" in error_message_lower:
        return NetworkError(f"Network timeout: {error_message}")

    if isinstance(exception, (ConnectionError, OSError)):
        return NetworkError(f"Connection error: {error_message}")

    return classify_message(f"Replicate error: {error_message}", status_code=status_code)


class ReplicateClient:
    """Runs Replicate models; the SDK is synchronous so calls go through a worker thread."""

    def __init__(self, api_token: str):
        self.api_token = api_token
        self._client: Optional[replicate.Client] = None

    @property
    def configured(self) -> bool:
        return bool(self.api_token)

    def _get_client(self) -> replicate.Client:
        if not self.api_token:
            raise ConfigurationError("REPLICATE_API_TOKEN not configured")
        if self._client is None:
            self._client = replicate.Client(api_token=self.api_token)
        return self._client

    async def run(self, model: str, payload: dict[str, Any], timeout: Optional[float] = None) -> Any:
        """Run a model to completion and return its raw output.

        Raises:
            ConfigurationError: Token missing or rejected
            ContentPolicyError: Output withheld for a policy reason
            TransientError: Rate limits, 5xx, timeouts (retryable)
            PermanentError: Anything else
        """
        client = self._get_client()

        def _run() -> Any:
            return client.run(model, input=payload, use_file_output=False)

        try:
            return await asyncio.wait_for(asyncio.to_thread(_run), timeout=timeout)
        except (ReplicateAPIError, ModelError) as e:
            raise classify_replicate_error(e) from e
        except (ConnectionError, OSError, TimeoutError, asyncio.TimeoutError) as e:
            raise classify_replicate_error(e) from e
        except ServiceError:
            raise
        except Exception as e:
            # Unexpected errors are permanent to avoid retry loops
            raise PermanentError(f"Unexpected Replicate error: {e}") from e
