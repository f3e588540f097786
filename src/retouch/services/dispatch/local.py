"""Local HTTP dispatcher for development.

Deliveries are fire-and-forget background POSTs to the worker endpoint,
serialized by a semaphore so one delivery runs at a time.
"""

import asyncio
from typing import Any

import httpx
import structlog

from retouch.services.exceptions import DispatchError

logger = structlog.get_logger(__name__)


class LocalHttpDispatcher:
    name = "local"

    def __init__(self, http_client: httpx.AsyncClient, worker_secret: str = "", timeout: float = 300.0):
        self.http_client = http_client
        self.worker_secret = worker_secret
        self.timeout = timeout
        self._semaphore = asyncio.Semaphore(1)
        self._tasks: set[asyncio.Task] = set()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.worker_secret:
            headers["Authorization"] = f"Bearer {self.worker_secret}"
        return headers

    async def publish(self, target_url: str, payload: dict[str, Any], concurrency: int = 1) -> None:
        if not target_url:
            raise DispatchError("Worker URL not configured")

        task = asyncio.create_task(self._deliver(target_url, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("dispatch.published", dispatcher=self.name, target_url=target_url, job_id=payload.get("jobId"))

    async def _deliver(self, target_url: str, payload: dict[str, Any]) -> None:
        async with self._semaphore:
            try:
                response = await self.http_client.post(
                    target_url, json=payload, headers=self._headers(), timeout=self.timeout
                )
                if response.status_code >= 400:
                    logger.error(
                        "dispatch.delivery_failed",
                        dispatcher=self.name,
                        job_id=payload.get("jobId"),
                        status_code=response.status_code,
                    )
            except httpx.HTTPError as e:
                # The scavenger fails the job if the worker never ran
                logger.error(
                    "dispatch.delivery_failed",
                    dispatcher=self.name,
                    job_id=payload.get("jobId"),
                    error=str(e),
                )

    async def drain(self) -> None:
        """Wait for in-flight deliveries."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
