"""Dispatcher selection from settings."""

import httpx

from retouch.core.config import Settings
from retouch.services.dispatch.interface import JobDispatcher
from retouch.services.dispatch.local import LocalHttpDispatcher
from retouch.services.dispatch.qstash import QStashDispatcher
from retouch.services.exceptions import ConfigurationError


def create_dispatcher(settings: Settings, http_client: httpx.AsyncClient) -> JobDispatcher:
    """Build the configured dispatcher (``qstash`` or ``local``)."""
    if settings.dispatcher == "qstash":
        if not settings.qstash_token:
            raise ConfigurationError("QSTASH_TOKEN not configured")
        return QStashDispatcher(
            http_client,
            token=settings.qstash_token,
            base_url=settings.qstash_url,
            worker_secret=settings.worker_secret,
        )
    if settings.dispatcher == "local":
        return LocalHttpDispatcher(http_client, worker_secret=settings.worker_secret)
    raise ConfigurationError(f"Unknown DISPATCHER: {settings.dispatcher}")
