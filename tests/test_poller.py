"""Client poller tests over httpx.MockTransport."""

import httpx
import pytest

from retouch.client.poller import JobPoller, PollError, PollTimeout


def view(status: str, **extra) -> dict:
    return {"ok": True, "jobId": "j1", "status": status, **extra}


class Script:
    """Serve the scripted responses in order, repeating the last one."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


def make_poller(handler, **kwargs):
    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    poller = JobPoller(
        "http://api.test/",
        httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=fake_sleep,
        **kwargs,
    )
    return poller, sleeps


def test_delay_schedule():
    poller, _ = make_poller(Script([httpx.Response(200, json=view("processing"))]))

    assert [poller.delay_for(n) for n in (1, 10, 11, 300)] == [1.0, 1.0, 3.0, 3.0]


@pytest.mark.asyncio
async def test_wait_until_completed_reports_progress():
    script = Script(
        [
            httpx.Response(200, json=view("processing", currentStep="generating")),
            httpx.Response(503),
            httpx.Response(200, json=view("retrying", isCoolingDown=True, retryCount=1)),
            httpx.Response(200, json=view("completed", resultUrl="https://cdn.test/a.png")),
        ]
    )
    poller, sleeps = make_poller(script)
    seen = []

    result = await poller.wait("j1", on_progress=lambda progress: seen.append(progress.status))

    assert result.status == "completed"
    assert result.result_url == "https://cdn.test/a.png"
    assert seen == ["processing", "retrying", "completed"]
    assert sleeps == [1.0, 1.0, 1.0]


@pytest.mark.asyncio
async def test_wait_accepts_async_callback():
    poller, _ = make_poller(Script([httpx.Response(200, json=view("failed", error="boom"))]))
    seen = []

    async def on_progress(progress):
        seen.append(progress.error)

    result = await poller.wait("j1", on_progress=on_progress)

    assert result.is_terminal
    assert seen == ["boom"]


@pytest.mark.asyncio
async def test_wait_times_out():
    poller, sleeps = make_poller(Script([httpx.Response(200, json=view("processing"))]), max_attempts=12)

    with pytest.raises(PollTimeout):
        await poller.wait("j1")

    assert len(sleeps) == 11
    assert sleeps[-1] == 3.0


@pytest.mark.asyncio
async def test_unknown_job():
    poller, _ = make_poller(Script([httpx.Response(404, json={"ok": False, "error": "Job not found"})]))

    with pytest.raises(PollError):
        await poller.wait("j1")


@pytest.mark.asyncio
async def test_subscribe_parses_event_stream():
    stream = (
        'event: job\ndata: {"jobId": "j1", "status": "processing"}\n\n'
        'event: job\ndata: {"jobId": "j1", "status": "completed", "resultUrl": "https://cdn.test/a.png"}\n\n'
    )
    poller, _ = make_poller(
        Script([httpx.Response(200, text=stream, headers={"content-type": "text/event-stream"})])
    )

    statuses = [progress.status async for progress in poller.subscribe("j1")]

    assert statuses == ["processing", "completed"]


@pytest.mark.asyncio
async def test_subscribe_timeout_event():
    stream = 'event: job\ndata: {"jobId": "j1", "status": "processing"}\n\nevent: timeout\ndata: {"jobId": "j1"}\n\n'
    poller, _ = make_poller(Script([httpx.Response(200, text=stream)]))

    with pytest.raises(PollTimeout):
        async for _ in poller.subscribe("j1"):
            pass
