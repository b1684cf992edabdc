import asyncio
import contextlib

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from webhook_delay.config import Config
from webhook_delay.data.record_store import BuildStatus, MemoryRecordStore, SchedulingRecord
from webhook_delay.runtime.trigger_client import TriggerClient, TriggerResult
from webhook_delay.web_api import SchedulerWebController, create_app

T0 = 1_700_000_000_000
BUILD_URL = "https://ci.example.com/build"


class _NoopTriggerClient:
    def __init__(self):
        self.started = False
        self.closed = False
        self.calls: list[str] = []

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.closed = True

    async def trigger(self, url: str) -> TriggerResult:
        self.calls.append(url)
        return TriggerResult(status=200, duration_ms=0.0)


@pytest.fixture(autouse=True)
def _per_request_mode(monkeypatch):
    monkeypatch.setattr(Config, "SECRET", "")
    monkeypatch.setattr(Config, "TARGET_URL", "")
    monkeypatch.setattr(Config, "PROTECT_STATUS", False)
    monkeypatch.setattr(Config, "DELAY_SECONDS", 60)


@contextlib.asynccontextmanager
async def _running_app(*, store=None, trigger_client=None, clock=None):
    loop = asyncio.get_running_loop()
    ctl = SchedulerWebController(
        loop,
        store=store or MemoryRecordStore(),
        trigger_client=trigger_client or _NoopTriggerClient(),
        clock=clock or (lambda: T0),
    )
    client = TestClient(TestServer(create_app(ctl)))
    await client.start_server()
    try:
        yield client, ctl
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_schedule_request_is_acknowledged():
    async with _running_app() as (client, _ctl):
        resp = await client.post("/", headers={"x-webhook-url": BUILD_URL, "x-delay-seconds": "60"})
        assert resp.status == 202
        assert resp.headers["Access-Control-Allow-Origin"] == "*"
        assert await resp.json() == {
            "ok": True,
            "scheduledFor": "2023-11-14T22:14:20.000Z",
            "delaySeconds": 60,
            "webhookUrl": BUILD_URL,
        }


@pytest.mark.asyncio
async def test_status_reflects_pending_schedule():
    async with _running_app() as (client, ctl):
        await client.post("/", headers={"x-webhook-url": BUILD_URL, "x-delay-seconds": "60"})
        resp = await client.get("/status")
        assert resp.status == 200
        assert resp.headers["Cache-Control"] == "no-store"
        assert await resp.json() == {
            "lastWebhookAt": "2023-11-14T22:13:20.000Z",
            "scheduledFor": "2023-11-14T22:14:20.000Z",
            "retryCount": 0,
            "delayMs": 60_000,
            "webhookUrl": BUILD_URL,
            "state": "pending",
        }
        assert ctl.machine.timer.due_at("scheduler") == T0 + 60_000


@pytest.mark.asyncio
async def test_fresh_status_has_no_optional_fields():
    async with _running_app() as (client, _ctl):
        resp = await client.get("/status")
        assert resp.status == 200
        assert await resp.json() == {"retryCount": 0, "state": "idle"}


@pytest.mark.asyncio
async def test_status_reports_last_failure():
    store = MemoryRecordStore()
    store.put(
        "scheduler",
        SchedulingRecord(
            last_build_at=T0,
            last_build_status=BuildStatus.ERROR,
            last_error="Build webhook responded with HTTP 500",
            retry_count=1,
            scheduled_for=T0 + 60_000,
        ),
    )
    async with _running_app(store=store) as (client, _ctl):
        body = await (await client.get("/status")).json()
    assert body["lastBuildStatus"] == "error"
    assert body["lastError"] == "Build webhook responded with HTTP 500"
    assert body["retryCount"] == 1
    assert body["state"] == "retrying"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "headers, message",
    [
        ({"x-delay-seconds": "60"}, "Missing x-webhook-url header"),
        ({"x-webhook-url": "not a url", "x-delay-seconds": "60"}, "Invalid x-webhook-url header"),
        ({"x-webhook-url": "ftp://ci.example.com/build", "x-delay-seconds": "60"}, "Unsupported webhook protocol"),
        ({"x-webhook-url": BUILD_URL}, "Missing x-delay-seconds header"),
        ({"x-webhook-url": BUILD_URL, "x-delay-seconds": "0"}, "Invalid x-delay-seconds header"),
        ({"x-webhook-url": BUILD_URL, "x-delay-seconds": "-5"}, "Invalid x-delay-seconds header"),
        ({"x-webhook-url": BUILD_URL, "x-delay-seconds": "soon"}, "Invalid x-delay-seconds header"),
        ({"x-webhook-url": BUILD_URL, "x-delay-seconds": "1.5"}, "Invalid x-delay-seconds header"),
        ({"x-webhook-url": BUILD_URL, "x-delay-seconds": "31536001"}, "Invalid x-delay-seconds header"),
        ({"x-webhook-url": BUILD_URL, "x-delay-seconds": "300000000000"}, "Invalid x-delay-seconds header"),
    ],
)
async def test_invalid_input_is_rejected_before_scheduling(headers, message):
    store = MemoryRecordStore()
    async with _running_app(store=store) as (client, _ctl):
        resp = await client.post("/", headers=headers)
        assert resp.status == 400
        assert (await resp.json())["message"] == message
    assert store.get("scheduler") is None


@pytest.mark.asyncio
async def test_longest_allowed_delay_is_accepted():
    async with _running_app() as (client, _ctl):
        resp = await client.post("/", headers={"x-webhook-url": BUILD_URL, "x-delay-seconds": "31536000"})
        assert resp.status == 202
        assert (await resp.json())["scheduledFor"] == "2024-11-13T22:13:20.000Z"


@pytest.mark.asyncio
async def test_status_survives_unrenderable_stored_schedule():
    store = MemoryRecordStore()
    store.put(
        "scheduler",
        SchedulingRecord(last_webhook_at=T0, scheduled_for=T0 + 300_000_000_000 * 1000, webhook_url=BUILD_URL),
    )
    async with _running_app(store=store) as (client, _ctl):
        for _ in range(2):
            resp = await client.get("/status")
            assert resp.status == 200
            body = await resp.json()
            assert body["state"] == "pending"
            assert "scheduledFor" not in body
            assert body["lastWebhookAt"] == "2023-11-14T22:13:20.000Z"

@pytest.mark.asyncio
async def test_second_request_replaces_pending_schedule():
    now = {"value": T0}
    async with _running_app(clock=lambda: now["value"]) as (client, ctl):
        await client.post("/", headers={"x-webhook-url": BUILD_URL, "x-delay-seconds": "60"})
        now["value"] = T0 + 10_000
        resp = await client.post("/", headers={"x-webhook-url": BUILD_URL, "x-delay-seconds": "30"})
        assert (await resp.json())["scheduledFor"] == "2023-11-14T22:14:00.000Z"
        assert ctl.machine.timer.due_at("scheduler") == T0 + 40_000
        assert ctl.machine.timer.armed_keys() == ["scheduler"]


@pytest.mark.asyncio
async def test_scheduler_key_selects_independent_schedule():
    async with _running_app() as (client, _ctl):
        await client.post(
            "/",
            headers={"x-webhook-url": BUILD_URL, "x-delay-seconds": "60", "x-scheduler-key": "docs-site"},
        )
        default_status = await (await client.get("/status")).json()
        keyed_status = await (await client.get("/status", params={"key": "docs-site"})).json()

    assert default_status == {"retryCount": 0, "state": "idle"}
    assert keyed_status["state"] == "pending"


@pytest.mark.asyncio
async def test_invalid_scheduler_key_is_rejected():
    async with _running_app() as (client, _ctl):
        resp = await client.get("/status", params={"key": "../etc"})
        assert resp.status == 400


@pytest.mark.asyncio
async def test_static_target_mode_uses_configured_delay(monkeypatch):
    monkeypatch.setattr(Config, "TARGET_URL", "https://static.example.com/hook")
    monkeypatch.setattr(Config, "DELAY_SECONDS", 30)
    async with _running_app() as (client, _ctl):
        resp = await client.post("/")
        assert resp.status == 202
        body = await resp.json()
        status = await (await client.get("/status")).json()

    assert body == {"ok": True, "scheduledFor": "2023-11-14T22:13:50.000Z", "delaySeconds": 30}
    assert "webhookUrl" not in status
    assert status["delayMs"] == 30_000


@pytest.mark.asyncio
@pytest.mark.parametrize("delay", [0, 31_536_001, 300_000_000_000])
async def test_static_target_mode_rejects_out_of_range_delay(monkeypatch, delay):
    monkeypatch.setattr(Config, "TARGET_URL", "https://static.example.com/hook")
    monkeypatch.setattr(Config, "DELAY_SECONDS", delay)
    store = MemoryRecordStore()
    async with _running_app(store=store) as (client, _ctl):
        resp = await client.post("/")
        assert resp.status == 500
        assert (await resp.json())["message"] == "Server delay misconfigured"
    assert store.get("scheduler") is None

@pytest.mark.asyncio
async def test_controller_lifecycle_follows_app():
    trigger_client = _NoopTriggerClient()
    store = MemoryRecordStore()
    store.put("scheduler", SchedulingRecord(scheduled_for=T0 + 5_000, webhook_url=BUILD_URL))
    async with _running_app(store=store, trigger_client=trigger_client) as (_client, ctl):
        assert trigger_client.started is True
        assert ctl.machine.timer.due_at("scheduler") == T0 + 5_000
    assert trigger_client.closed is True
    assert ctl.machine.timer.armed_keys() == []


@pytest.mark.asyncio
async def test_delayed_build_fires_end_to_end():
    hits: list[str] = []

    async def _build(request: web.Request):
        hits.append(request.method)
        return web.Response(status=201)

    target_app = web.Application()
    target_app.router.add_post("/build", _build)
    target = TestServer(target_app)
    await target.start_server()

    trigger_client = TriggerClient(method="POST", timeout_seconds=5)
    try:
        loop = asyncio.get_running_loop()
        ctl = SchedulerWebController(loop, store=MemoryRecordStore(), trigger_client=trigger_client)
        client = TestClient(TestServer(create_app(ctl)))
        await client.start_server()
        try:
            url = str(target.make_url("/build"))
            resp = await client.post("/", headers={"x-webhook-url": url, "x-delay-seconds": "1"})
            assert resp.status == 202

            status = {}
            for _ in range(40):
                await asyncio.sleep(0.1)
                status = await (await client.get("/status")).json()
                if status.get("lastBuildStatus"):
                    break
        finally:
            await client.close()
    finally:
        await target.close()

    assert hits == ["POST"]
    assert status["lastBuildStatus"] == "success"
    assert status["retryCount"] == 0
    assert "scheduledFor" not in status
