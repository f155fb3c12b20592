"""Read-through cache in front of an ASGI handler."""

from __future__ import annotations

from http import HTTPStatus
from urllib.parse import quote

from opentelemetry import trace
from starlette.responses import Response
from starlette.types import ASGIApp, Receive, Scope, Send

from ..common.metrics import GLOBAL_REGISTRY, Counter
from .capture import ResponseCapture
from .errors import CacheError
from .request_logging import request_logger
from .storage import CacheBackend


REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("crates_proxy_cache_requests_total", "Requests on cached routes"))
HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("crates_proxy_cache_hits_total", "Cache hits"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("crates_proxy_cache_misses_total", "Cache misses"))
BYTES_SERVED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("crates_proxy_cache_bytes_served_total", "Bytes served from cache")
)
BYTES_WRITTEN_COUNTER = GLOBAL_REGISTRY.register(
    Counter("crates_proxy_cache_bytes_written_total", "Bytes written to cache")
)
WRITE_FAILURES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("crates_proxy_cache_write_failures_total", "Cache writes that failed")
)
NOT_CACHED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("crates_proxy_cache_responses_not_cached_total", "Miss responses that were not stored")
)
TRACER = trace.get_tracer("crates_proxy.cache_proxy")

# RFC 3986 sub-delims plus ':' and '@' stay unescaped in a path.
_PATH_SAFE = "/:@!$&'()*+,;="


def escaped_path(scope: Scope) -> str:
    """The request path exactly as escaped on the wire, without the query string."""
    raw_path = scope.get("raw_path")
    if raw_path:
        return raw_path.split(b"?", 1)[0].decode("latin-1")
    return quote(scope["path"], safe=_PATH_SAFE)


def _status_text(code: int) -> str:
    try:
        return HTTPStatus(code).phrase
    except ValueError:
        return ""


class CacheMiddleware:
    """Serve from ``backend`` when possible, otherwise run ``app`` and store its 200 body.

    The wrapped app streams straight to the client through a
    :class:`ResponseCapture`; the store happens only after the app returns, so
    a slow or broken backend never delays or alters what the client receives.
    """

    def __init__(self, app: ASGIApp, backend: CacheBackend) -> None:
        self.app = app
        self.backend = backend

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["method"] != "GET":
            await self.app(scope, receive, send)
            return

        logger = request_logger(scope)
        cache_key = escaped_path(scope)
        REQUEST_COUNTER.inc()

        with TRACER.start_as_current_span("crates_proxy.cache", attributes={"crates_proxy.cache_key": cache_key}) as span:
            content = await self.backend.get(logger, cache_key)
            if content is not None:
                span.set_attribute("crates_proxy.cache_hit", True)
                span.set_attribute("crates_proxy.bytes", len(content))
                HIT_COUNTER.inc()
                BYTES_SERVED_COUNTER.inc(len(content))
                logger.info("cache_hit", bytes=len(content), path=cache_key)
                await Response(content, status_code=200)(scope, receive, send)
                return

            span.set_attribute("crates_proxy.cache_hit", False)
            MISS_COUNTER.inc()
            logger.debug("cache_miss", path=cache_key)

            capture = ResponseCapture(send)
            await self.app(scope, receive, capture)
            await self._store(logger, cache_key, capture)

    async def _store(self, logger, cache_key: str, capture: ResponseCapture) -> None:
        if capture.status_code != 200:
            NOT_CACHED_COUNTER.inc()
            logger.info(
                "response_not_cached",
                reason="status",
                status_code=capture.status_code,
                status_text=_status_text(capture.status_code),
                path=cache_key,
            )
            return

        incomplete = capture.incomplete_reason()
        if incomplete is not None:
            NOT_CACHED_COUNTER.inc()
            logger.info(
                "response_not_cached",
                reason=incomplete,
                bytes=capture.bytes_captured,
                declared_length=capture.declared_length,
                path=cache_key,
            )
            return

        body = capture.body
        try:
            await self.backend.put(logger, cache_key, body)
        except CacheError as exc:
            WRITE_FAILURES_COUNTER.inc()
            logger.warning("cache_update_failed", error=str(exc), path=cache_key)
            return
        BYTES_WRITTEN_COUNTER.inc(len(body))
