"""Client-side job status polling and change-stream subscription (httpx).

Polling schedule: 1 s between the first 10 attempts, 3 s afterwards, at most
300 attempts (about 15 minutes) before giving up with PollTimeout.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

import httpx
import structlog

logger = structlog.get_logger(__name__)

TERMINAL = {"completed", "failed"}


class PollError(Exception):
    """Job status could not be obtained."""

    pass


class PollTimeout(PollError):
    """Job did not reach a terminal status within the polling budget."""

    pass


@dataclass
class JobProgress:
    """Snapshot of a job as seen by a client."""

    job_id: str
    status: str
    current_step: Optional[str] = None
    is_cooling_down: bool = False
    retry_count: int = 0
    result_url: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    @classmethod
    def from_view(cls, view: dict[str, Any]) -> "JobProgress":
        return cls(
            job_id=str(view.get("jobId", "")),
            status=str(view.get("status", "")),
            current_step=view.get("currentStep"),
            is_cooling_down=bool(view.get("isCoolingDown", False)),
            retry_count=int(view.get("retryCount") or 0),
            result_url=view.get("resultUrl"),
            error=view.get("error"),
            error_code=view.get("errorCode"),
        )


ProgressCallback = Callable[[JobProgress], Union[None, Awaitable[None]]]


class JobPoller:
    """Waits for a job to finish, either by polling or over server-sent events."""

    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        *,
        fast_attempts: int = 10,
        fast_delay: float = 1.0,
        slow_delay: float = 3.0,
        max_attempts: int = 300,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self.fast_attempts = fast_attempts
        self.fast_delay = fast_delay
        self.slow_delay = slow_delay
        self.max_attempts = max_attempts
        self.sleep = sleep

    def delay_for(self, attempt: int) -> float:
        """Delay after poll number ``attempt`` (1-based)."""
        return self.fast_delay if attempt <= self.fast_attempts else self.slow_delay

    async def fetch(self, job_id: str) -> JobProgress:
        """Fetch the current job view.

        Raises:
            PollError: Job not found
            httpx.HTTPError: Transport failure or server error
        """
        response = await self.http_client.get(f"{self.base_url}/jobs/{job_id}")
        if response.status_code == 404:
            raise PollError(f"Job {job_id} not found")
        response.raise_for_status()
        return JobProgress.from_view(response.json())

    async def wait(self, job_id: str, on_progress: Optional[ProgressCallback] = None) -> JobProgress:
        """Poll until the job is completed or failed.

        Transport errors and 5xx responses are logged and polling continues.

        Raises:
            PollError: Job not found
            PollTimeout: Still active after ``max_attempts`` polls
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                progress = await self.fetch(job_id)
            except httpx.HTTPError as e:
                logger.warning("poller.fetch_failed", job_id=job_id, attempt=attempt, error=str(e))
            else:
                if on_progress is not None:
                    maybe_awaitable = on_progress(progress)
                    if asyncio.iscoroutine(maybe_awaitable):
                        await maybe_awaitable
                if progress.is_terminal:
                    return progress

            if attempt < self.max_attempts:
                await self.sleep(self.delay_for(attempt))

        raise PollTimeout(f"Job {job_id} still running after {self.max_attempts} polls")

    async def subscribe(self, job_id: str) -> AsyncIterator[JobProgress]:
        """Yield job snapshots from ``GET /jobs/{id}/events`` until the stream closes.

        Raises:
            PollError: Job not found
        """
        async with self.http_client.stream("GET", f"{self.base_url}/jobs/{job_id}/events") as response:
            if response.status_code == 404:
                raise PollError(f"Job {job_id} not found")
            response.raise_for_status()

            event = "message"
            data_lines: list[str] = []
            async for line in response.aiter_lines():
                if line.startswith("event:"):
                    event = line[len("event:") :].strip()
                elif line.startswith("data:"):
                    data_lines.append(line[len("data:") :].strip())
                elif not line:
                    if data_lines and event == "job":
                        yield JobProgress.from_view(json.loads("\n".join(data_lines)))
                    elif event == "timeout":
                        raise PollTimeout(f"Event stream for job {job_id} timed out")
                    event = "message"
                    data_lines = []

    async def aclose(self) -> None:
        await self.http_client.aclose()
