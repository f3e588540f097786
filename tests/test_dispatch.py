"""Queue dispatcher tests (QStash over httpx.MockTransport, local HTTP delivery)."""

import json

import httpx
import pytest

from retouch.core.config import Settings
from retouch.services.dispatch.factory import create_dispatcher
from retouch.services.dispatch.local import LocalHttpDispatcher
from retouch.services.dispatch.qstash import QStashDispatcher
from retouch.services.exceptions import ConfigurationError, DispatchError

WORKER_URL = "https://api.retouch.test/worker/generate"


def make_settings(**overrides) -> Settings:
    values = {"DATABASE_URL": "sqlite+aiosqlite:///:memory:", "APP_ENV": "test", **overrides}
    return Settings(_env_file=None, **values)  # type: ignore[call-arg]


@pytest.mark.asyncio
async def test_qstash_publish_sets_flow_control_and_forwarded_auth():
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(201, json={"messageId": "msg_1"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    dispatcher = QStashDispatcher(client, token="qstash-token", worker_secret="worker-secret")

    await dispatcher.publish(WORKER_URL, {"jobId": "j1"}, concurrency=1)

    request = captured[0]
    assert str(request.url) == f"https://qstash.upstash.io/v2/publish/{WORKER_URL}"
    assert request.headers["authorization"] == "Bearer qstash-token"
    assert request.headers["upstash-flow-control-key"] == "retouch-worker"
    assert request.headers["upstash-flow-control-value"] == "parallelism=1"
    assert request.headers["upstash-forward-authorization"] == "Bearer worker-secret"
    assert json.loads(request.content) == {"jobId": "j1"}


@pytest.mark.asyncio
async def test_qstash_error_status_raises_dispatch_error():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500, text="upstream down")))
    dispatcher = QStashDispatcher(client, token="qstash-token")

    with pytest.raises(DispatchError, match=r"QStash publish failed \(500\)"):
        await dispatcher.publish(WORKER_URL, {"jobId": "j1"})


@pytest.mark.asyncio
async def test_qstash_transport_error_raises_dispatch_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    dispatcher = QStashDispatcher(httpx.AsyncClient(transport=httpx.MockTransport(handler)), token="t")

    with pytest.raises(DispatchError, match="QStash request failed"):
        await dispatcher.publish(WORKER_URL, {"jobId": "j1"})


@pytest.mark.asyncio
async def test_publish_without_worker_url_fails():
    dispatcher = QStashDispatcher(httpx.AsyncClient(), token="t")

    with pytest.raises(DispatchError, match="Worker URL not configured"):
        await dispatcher.publish("", {"jobId": "j1"})


@pytest.mark.asyncio
async def test_local_dispatcher_delivers_in_background():
    received: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(200, json={"ok": True})

    dispatcher = LocalHttpDispatcher(httpx.AsyncClient(transport=httpx.MockTransport(handler)), worker_secret="s")

    await dispatcher.publish(WORKER_URL, {"jobId": "j1"})
    await dispatcher.publish(WORKER_URL, {"jobId": "j2"})
    await dispatcher.drain()

    assert [json.loads(r.content)["jobId"] for r in received] == ["j1", "j2"]
    assert received[0].headers["authorization"] == "Bearer s"


@pytest.mark.asyncio
async def test_local_delivery_failure_is_not_raised():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("worker down", request=request)

    dispatcher = LocalHttpDispatcher(httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    await dispatcher.publish(WORKER_URL, {"jobId": "j1"})
    await dispatcher.aclose()


def test_factory_selects_dispatcher():
    client = httpx.AsyncClient()

    assert isinstance(create_dispatcher(make_settings(DISPATCHER="local"), client), LocalHttpDispatcher)
    assert isinstance(
        create_dispatcher(make_settings(DISPATCHER="qstash", QSTASH_TOKEN="t"), client), QStashDispatcher
    )
    with pytest.raises(ConfigurationError, match="QSTASH_TOKEN"):
        create_dispatcher(make_settings(DISPATCHER="qstash"), client)
    with pytest.raises(ConfigurationError, match="Unknown DISPATCHER"):
        create_dispatcher(make_settings(DISPATCHER="sqs"), client)
