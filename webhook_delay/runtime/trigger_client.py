from __future__ import annotations

import asyncio
from dataclasses import dataclass

from aiohttp import ClientError, ClientSession, ClientTimeout, InvalidURL

from webhook_delay.core.error_taxonomy import ErrorCategory, TriggerError, classify_exception


@dataclass(frozen=True)
class TriggerResult:
    status: int
    duration_ms: float


class TriggerClient:
    """Performs the bodiless build-webhook call."""

    def __init__(
        self,
        *,
        method: str = "POST",
        timeout_seconds: float = 30.0,
        session: ClientSession | None = None,
    ):
        method = (method or "POST").strip().upper()
        if method not in {"POST", "GET"}:
            raise ValueError(f"Unsupported trigger method: {method}")
        self._method = method
        self._timeout = ClientTimeout(total=max(0.001, float(timeout_seconds)))
        self._session = session
        self._owns_session = session is None

    @property
    def method(self) -> str:
        return self._method

    async def start(self) -> None:
        if self._session is None:
            self._session = ClientSession(timeout=self._timeout)
            self._owns_session = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def trigger(self, url: str) -> TriggerResult:
        if self._session is None:
            await self.start()
        assert self._session is not None

        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            async with self._session.request(self._method, url, timeout=self._timeout) as resp:
                status = resp.status
                # Drain so the connection can be reused.
                await resp.read()
        except asyncio.TimeoutError as exc:
            raise TriggerError(
                f"Build webhook timed out after {self._timeout.total:g}s",
                category=ErrorCategory.TIMEOUT,
            ) from exc
        except InvalidURL as exc:
            raise TriggerError(
                f"Invalid build webhook URL: {exc}",
                category=ErrorCategory.CONFIG_INVALID,
            ) from exc
        except ClientError as exc:
            raise TriggerError(
                f"Build webhook request failed: {exc}",
                category=classify_exception(exc),
            ) from exc

        if not 200 <= status < 300:
            raise TriggerError(
                f"Build webhook responded with HTTP {status}",
                category=ErrorCategory.HTTP_STATUS,
                status=status,
            )
        return TriggerResult(status=status, duration_ms=(loop.time() - started) * 1000.0)
