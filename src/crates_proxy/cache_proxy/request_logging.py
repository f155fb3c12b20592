"""Per-request logger attachment and response accounting."""

from __future__ import annotations

import time
from uuid import uuid4

import structlog
from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ..common.metrics import GLOBAL_REGISTRY, Gauge, Histogram


LOGGER = structlog.get_logger("crates_proxy.requests")
LOGGER_STATE_KEY = "logger"

IN_FLIGHT_GAUGE = GLOBAL_REGISTRY.register(Gauge("crates_proxy_requests_in_flight", "Requests currently being served"))
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "crates_proxy_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="End-to-end request latency",
    )
)


def request_logger(scope: Scope):
    """Return the logger :class:`RequestLoggingMiddleware` attached to this request."""
    logger = scope.get("state", {}).get(LOGGER_STATE_KEY)
    if logger is None:
        raise RuntimeError(f"Attempted to get the request logger when the handler doesn't have one: {scope.get('path')}")
    return logger


class ResponseSpy:
    """Records the status code and the number of body bytes sent to the client."""

    def __init__(self, send: Send) -> None:
        self._send = send
        self.status_code = 200
        self.bytes_written = 0

    async def __call__(self, message: Message) -> None:
        if message["type"] == "http.response.start":
            self.status_code = message["status"]
        await self._send(message)
        if message["type"] == "http.response.body":
            self.bytes_written += len(message.get("body", b""))


class RequestLoggingMiddleware:
    """Outermost middleware: binds a request id and logs every served request."""

    def __init__(self, app: ASGIApp, logger=None) -> None:
        self.app = app
        self._logger = logger if logger is not None else LOGGER

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        logger = self._logger.bind(request_id=str(uuid4()))
        scope.setdefault("state", {})[LOGGER_STATE_KEY] = logger
        request = Request(scope)
        spy = ResponseSpy(send)
        start = time.perf_counter()
        IN_FLIGHT_GAUGE.inc()
        try:
            await self.app(scope, receive, spy)
        except Exception:
            logger.exception(
                "handler_failed",
                method=request.method,
                url=str(request.url),
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            raise
        finally:
            IN_FLIGHT_GAUGE.dec()
            REQUEST_LATENCY_HISTOGRAM.observe(time.perf_counter() - start)

        logger.info(
            "request_served",
            response_code=spy.status_code,
            bytes_written=spy.bytes_written,
            url=str(request.url),
            method=request.method,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
            user_agent=request.headers.get("user-agent"),
        )
