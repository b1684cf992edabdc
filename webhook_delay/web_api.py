import asyncio
import hmac
import re
import signal
from typing import Any, Callable, Optional
from urllib.parse import urlparse

from aiohttp import web
from loguru import logger

from webhook_delay.config import Config
from webhook_delay.core.contracts import ack_payload, error_payload, status_payload
from webhook_delay.core.logging_setup import setup_logging
from webhook_delay.core.state_machine import (
    MAX_DELAY_SECONDS,
    DelayedTriggerStateMachine,
    QueueResult,
    SchedulerStatus,
)
from webhook_delay.data.record_store import RecordStore, SqliteRecordStore
from webhook_delay.runtime.trigger_client import TriggerClient

_SECRET_HEADER = "x-webhook-secret"
_WEBHOOK_URL_HEADER = "x-webhook-url"
_DELAY_HEADER = "x-delay-seconds"
_KEY_HEADER = "x-scheduler-key"

_SCHEDULER_KEY_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")
_INTEGER_RE = re.compile(r"^\+?\d+$")

_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
    "Access-Control-Allow-Headers": "*",
}
_PREFLIGHT_MAX_AGE = "86400"


class RequestValidationError(ValueError):
    pass


def _parse_webhook_url(raw: Optional[str]) -> str:
    value = (raw or "").strip()
    if not value:
        raise RequestValidationError(f"Missing {_WEBHOOK_URL_HEADER} header")
    try:
        parsed = urlparse(value)
        host = parsed.hostname
        _ = parsed.port  # raises on a malformed port
    except ValueError:
        raise RequestValidationError(f"Invalid {_WEBHOOK_URL_HEADER} header") from None
    if not parsed.scheme or not parsed.netloc or not host:
        raise RequestValidationError(f"Invalid {_WEBHOOK_URL_HEADER} header")
    if parsed.scheme.lower() not in {"http", "https"}:
        raise RequestValidationError("Unsupported webhook protocol")
    return parsed._replace(scheme=parsed.scheme.lower()).geturl()


def _parse_delay_seconds(raw: Optional[str]) -> int:
    value = (raw or "").strip()
    if not value:
        raise RequestValidationError(f"Missing {_DELAY_HEADER} header")
    if not _INTEGER_RE.match(value):
        raise RequestValidationError(f"Invalid {_DELAY_HEADER} header")
    seconds = int(value)
    if seconds <= 0 or seconds > MAX_DELAY_SECONDS:
        raise RequestValidationError(f"Invalid {_DELAY_HEADER} header")
    return seconds


def _scheduler_key(request: web.Request) -> str:
    raw = (request.headers.get(_KEY_HEADER) or request.query.get("key") or "").strip()
    if not raw:
        return Config.DEFAULT_SCHEDULER_KEY
    if not _SCHEDULER_KEY_RE.match(raw):
        raise RequestValidationError("Invalid scheduler key")
    return raw


def _secret_matches(request: web.Request, secret: str) -> bool:
    if not secret:
        return True
    provided = request.headers.get(_SECRET_HEADER)
    if provided is None:
        provided = request.query.get("secret")
    if provided is None:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8"))


def _not_found() -> web.Response:
    return web.json_response(error_payload("Not Found"), status=404)


class SchedulerWebController:
    """Wires the state machine to its store, trigger client and configuration."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        *,
        store: RecordStore | None = None,
        trigger_client: TriggerClient | None = None,
        clock: Callable[[], int] | None = None,
    ):
        self._loop = loop
        self._store = store or SqliteRecordStore(Config.DB_PATH)
        self._trigger_client = trigger_client or TriggerClient(
            method=Config.trigger_method(),
            timeout_seconds=Config.TIMEOUT_SEC,
        )
        self._machine = DelayedTriggerStateMachine(
            store=self._store,
            trigger=self._trigger_client,
            loop=loop,
            clock=clock,
            static_target=Config.static_target,
        )

    @property
    def machine(self) -> DelayedTriggerStateMachine:
        return self._machine

    async def start(self) -> None:
        await self._trigger_client.start()
        self._machine.resume_pending()

    async def stop(self) -> None:
        await self._machine.shutdown()
        await self._trigger_client.close()

    async def schedule(self, key: str, delay_seconds: int, webhook_url: str | None) -> QueueResult:
        return await self._machine.queue_execution(key, delay_seconds, webhook_url)

    def status(self, key: str) -> SchedulerStatus:
        return self._machine.get_status(key)


@web.middleware
async def cors_middleware(request: web.Request, handler):
    if request.method == "OPTIONS":
        resp = web.Response(status=204)
        resp.headers["Access-Control-Max-Age"] = _PREFLIGHT_MAX_AGE
    else:
        try:
            resp = await handler(request)
        except web.HTTPException as exc:
            resp = web.json_response(error_payload(exc.reason), status=exc.status)

    for name, value in _CORS_HEADERS.items():
        resp.headers[name] = value
    return resp


def create_app(controller: SchedulerWebController) -> web.Application:
    app = web.Application(middlewares=[cors_middleware])
    app["controller"] = controller

    async def controller_ctx(app_: web.Application):
        ctl: SchedulerWebController = app_["controller"]
        await ctl.start()
        yield
        await ctl.stop()

    app.cleanup_ctx.append(controller_ctx)

    async def health(request: web.Request):
        if request.method != "GET":
            return _not_found()
        return web.json_response({"ok": True})

    async def schedule(request: web.Request):
        if request.method != "POST":
            return _not_found()

        if not _secret_matches(request, Config.SECRET):
            return web.json_response(error_payload("Unauthorized"), status=401)

        ctl: SchedulerWebController = request.app["controller"]
        static_target = Config.static_target()
        try:
            key = _scheduler_key(request)
            if static_target:
                webhook_url = None
                delay_seconds = int(Config.DELAY_SECONDS)
                if not 0 < delay_seconds <= MAX_DELAY_SECONDS:
                    logger.error(f"Configured delay must be in 1..{MAX_DELAY_SECONDS}s, got {delay_seconds}")
                    return web.json_response(error_payload("Server delay misconfigured"), status=500)
            else:
                webhook_url = _parse_webhook_url(request.headers.get(_WEBHOOK_URL_HEADER))
                delay_seconds = _parse_delay_seconds(request.headers.get(_DELAY_HEADER))
        except RequestValidationError as exc:
            return web.json_response(error_payload(str(exc)), status=400)

        result = await ctl.schedule(key, delay_seconds, webhook_url)
        return web.json_response(ack_payload(result, webhook_url=webhook_url), status=202)

    async def status(request: web.Request):
        if request.method != "GET":
            return _not_found()

        if Config.PROTECT_STATUS and not _secret_matches(request, Config.SECRET):
            return web.json_response(error_payload("Unauthorized"), status=401)

        ctl: SchedulerWebController = request.app["controller"]
        try:
            key = _scheduler_key(request)
        except RequestValidationError as exc:
            return web.json_response(error_payload(str(exc)), status=400)
        return web.json_response(status_payload(ctl.status(key)), headers={"Cache-Control": "no-store"})

    app.router.add_route("*", "/", schedule)
    app.router.add_route("*", "/status", status)
    app.router.add_route("*", "/health", health)

    return app


async def run_server(host: str, port: int) -> None:
    loop = asyncio.get_running_loop()
    controller = SchedulerWebController(loop)

    app = create_app(controller)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host=host, port=port)
    await site.start()
    mode = f"static target {Config.static_target()}" if Config.static_target() else "per-request targets"
    logger.info(f"webhook-delay listening on http://{host}:{port} ({mode}, method {Config.trigger_method()})")

    stop_event = asyncio.Event()

    def _request_stop(*_args: Any) -> None:
        loop.call_soon_threadsafe(stop_event.set)

    for sig in (signal.SIGINT, getattr(signal, "SIGTERM", signal.SIGINT)):
        try:
            signal.signal(sig, _request_stop)
        except (ValueError, OSError):  # pragma: no cover - platform dependent
            pass

    await stop_event.wait()
    await runner.cleanup()


def main() -> None:
    setup_logging(component="scheduler")
    asyncio.run(run_server(Config.HOST, Config.PORT))


if __name__ == "__main__":
    main()
