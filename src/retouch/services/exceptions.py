"""Service error hierarchy for generation, storage and dispatch operations.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts, 5xx)
- PermanentError: Non-retryable errors (bad request, policy block, configuration)
"""

from typing import Any


class ServiceError(Exception):
    """Base exception for all service errors.

    ``raw`` carries the provider payload (if any) for diagnostics.
    """

    def __init__(self, message: str, raw: Any = None):
        super().__init__(message)
        self.raw = raw


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Service unavailable (500, 502, 503, 504)
    - "Server busy" / overloaded responses
    """

    pass


class RateLimitError(TransientError):
    """Rate limit or quota exhaustion (429, RESOURCE_EXHAUSTED)."""

    pass


class ProviderUnavailableError(TransientError):
    """Upstream 5xx, busy or overloaded response."""

    pass


class NetworkError(TransientError):
    """Connection failure or request timeout."""

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400, 404)
    - Configuration errors
    """

    pass


class InvalidRequestError(PermanentError):
    """Malformed request rejected by an upstream service."""

    pass


class ContentPolicyError(PermanentError):
    """Generation finished but the provider withheld the output for a policy reason."""

    pass


class ImageProcessingError(PermanentError):
    """Source image could not be decoded or re-encoded."""

    pass


class ConfigurationError(PermanentError):
    """Missing credentials or settings; raised before any network call."""

    pass


class StorageError(PermanentError):
    """Object store upload or download failed."""

    pass


class DispatchError(ServiceError):
    """Job could not be handed off to the queue."""

    pass
