"""Plain reverse-proxy forwarding to the upstream origin."""

from __future__ import annotations

from typing import AsyncIterator

import httpx
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import PlainTextResponse, StreamingResponse
from starlette.types import Receive, Scope, Send

from .middleware import escaped_path
from .request_logging import request_logger


HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)
# httpx negotiates and decodes content encodings itself and sizes the body it sends.
SKIP_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {"host", "accept-encoding", "content-length"}
# Bodies are relayed decoded, so the upstream encoding and length no longer apply.
SKIP_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {"content-encoding", "content-length"}


def _filter_headers(raw_headers, skip: frozenset[str]) -> list[tuple[bytes, bytes]]:
    return [(name, value) for name, value in raw_headers if name.decode("latin-1").lower() not in skip]


class UpstreamProxy:
    """ASGI app forwarding every request to ``upstream``, keeping path and query."""

    def __init__(self, upstream: str, client: httpx.AsyncClient) -> None:
        self._upstream = httpx.URL(upstream)
        self._client = client

    def target_url(self, scope: Scope) -> httpx.URL:
        raw_path = escaped_path(scope).encode("latin-1")
        query = scope.get("query_string", b"")
        if query:
            raw_path += b"?" + query
        return self._upstream.copy_with(raw_path=raw_path)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        logger = request_logger(scope)
        request = Request(scope, receive)
        try:
            url = self.target_url(scope)
            body = await request.body()
            upstream_request = self._client.build_request(
                request.method,
                url,
                headers=_filter_headers(request.headers.raw, SKIP_REQUEST_HEADERS),
                content=body or None,
            )
        except (httpx.InvalidURL, UnicodeError) as exc:
            logger.error("upstream_request_invalid", error=str(exc), path=scope.get("path"))
            await PlainTextResponse("Server Error", status_code=500)(scope, receive, send)
            return

        logger.debug(
            "proxying_request",
            url=str(upstream_request.url),
            method=request.method,
            referer=request.headers.get("referer"),
        )
        try:
            upstream_response = await self._client.send(upstream_request, stream=True)
        except httpx.HTTPError as exc:
            logger.error("upstream_request_failed", error=str(exc), url=str(upstream_request.url))
            await PlainTextResponse("Server Error", status_code=500)(scope, receive, send)
            return

        logger.debug(
            "upstream_response_received",
            status_code=upstream_response.status_code,
            headers=dict(upstream_response.headers),
        )
        response = StreamingResponse(
            _relay(logger, upstream_response),
            status_code=upstream_response.status_code,
            background=BackgroundTask(upstream_response.aclose),
        )
        response.raw_headers = _filter_headers(upstream_response.headers.raw, SKIP_RESPONSE_HEADERS)
        await response(scope, receive, send)


async def _relay(logger, upstream_response: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in upstream_response.aiter_bytes():
            yield chunk
    except httpx.HTTPError as exc:
        logger.error("upstream_stream_failed", error=str(exc), url=str(upstream_response.url))
        raise
    finally:
        await upstream_response.aclose()
