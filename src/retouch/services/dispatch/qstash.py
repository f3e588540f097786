"""Upstash QStash dispatcher."""

from typing import Any

import httpx
import structlog

from retouch.services.exceptions import DispatchError

logger = structlog.get_logger(__name__)

FLOW_CONTROL_KEY = "retouch-worker"


class QStashDispatcher:
    """Publishes worker payloads through QStash with flow control.

    QStash retries failed deliveries on its own and reports the delivery
    counter to the worker in the ``Upstash-Retried`` header.
    """

    name = "qstash"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token: str,
        base_url: str = "https://qstash.upstash.io",
        worker_secret: str = "",
        timeout: float = 10.0,
    ):
        self.http_client = http_client
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.worker_secret = worker_secret
        self.timeout = timeout

    def _headers(self, concurrency: int) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Upstash-Flow-Control-Key": FLOW_CONTROL_KEY,
            "Upstash-Flow-Control-Value": f"parallelism={concurrency}",
        }
        if self.worker_secret:
            # Forwarded to the worker as its Authorization header
            headers["Upstash-Forward-Authorization"] = f"Bearer {self.worker_secret}"
        return headers

    async def publish(self, target_url: str, payload: dict[str, Any], concurrency: int = 1) -> None:
        if not target_url:
            raise DispatchError("Worker URL not configured")

        try:
            response = await self.http_client.post(
                f"{self.base_url}/v2/publish/{target_url}",
                json=payload,
                headers=self._headers(concurrency),
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise DispatchError(f"QStash request failed: {e}") from e

        if response.status_code >= 400:
            raise DispatchError(f"QStash publish failed ({response.status_code}): {response.text[:300]}")

        message_id = None
        try:
            message_id = response.json().get("messageId")
        except (ValueError, AttributeError):
            pass
        logger.info("dispatch.published", dispatcher=self.name, target_url=target_url, message_id=message_id)

    async def aclose(self) -> None:
        return None
