"""Caching reverse proxy for a crates.io-style registry."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from starlette.convertors import Convertor, register_url_convertor

from ..common.http_security import MetricsAccess
from ..common.metrics import GLOBAL_REGISTRY
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.settings import CacheProxySettings
from .middleware import CacheMiddleware
from .request_logging import RequestLoggingMiddleware
from .storage import CacheBackend, build_backend
from .upstream import UpstreamProxy


SERVICE_NAME = "crates_proxy"
CRATE_DOWNLOAD_ROUTE = "/api/v1/crates/{crate:crate_name}/{version:crate_version}/download"
OPERATIONS_PREFIX = "/_proxy"


class _PatternConvertor(Convertor):
    def convert(self, value: str) -> str:
        return value

    def to_string(self, value: str) -> str:
        return value


class CrateNameConvertor(_PatternConvertor):
    regex = r"[\w-]*"


class CrateVersionConvertor(_PatternConvertor):
    # Pre-release and build-metadata versions are proxied without caching.
    regex = r"[\d.]*"


register_url_convertor("crate_name", CrateNameConvertor())
register_url_convertor("crate_version", CrateVersionConvertor())


def get_backend(request: Request) -> CacheBackend:
    return request.app.state.backend  # type: ignore[attr-defined]


def create_app(
    settings: Optional[CacheProxySettings] = None,
    *,
    backend: Optional[CacheBackend] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the proxy.

    ``backend`` defaults to the one described by ``settings``; ``transport``
    replaces the network transport of the upstream client.
    """
    settings = settings or CacheProxySettings()
    configure_logging(SERVICE_NAME, settings.effective_log_level, human_readable=settings.verbose)
    configure_tracing(
        service_name=SERVICE_NAME,
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )
    if backend is None:
        backend = build_backend(settings)
    client = httpx.AsyncClient(
        timeout=settings.upstream_timeout_seconds,
        follow_redirects=True,
        transport=transport,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        try:
            yield
        finally:
            await client.aclose()

    # No generated docs: every path outside the reserved prefix belongs to the upstream.
    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    instrument_fastapi_app(app)
    app.state.settings = settings
    app.state.backend = backend
    app.add_middleware(RequestLoggingMiddleware)

    @app.get(f"{OPERATIONS_PREFIX}/healthz", status_code=status.HTTP_200_OK)
    async def health_check(backend: CacheBackend = Depends(get_backend)) -> dict:
        health: dict[str, object] = {"status": "healthy"}
        try:
            health["backend"] = backend.status()
        except Exception as exc:  # noqa: BLE001 - reported to the probe
            health["status"] = "unhealthy"
            health["backend"] = {"error": str(exc)}
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health) from exc
        if health["backend"].get("writable") is False:
            health["status"] = "degraded"
        return health

    metrics_token = settings.metrics_token.get_secret_value() if settings.metrics_token else None

    @app.get(
        f"{OPERATIONS_PREFIX}/metrics",
        response_class=PlainTextResponse,
        dependencies=[Depends(MetricsAccess(metrics_token))],
    )
    async def metrics_endpoint() -> PlainTextResponse:
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    proxied = UpstreamProxy(str(settings.upstream), client)
    app.router.add_route(
        CRATE_DOWNLOAD_ROUTE,
        CacheMiddleware(proxied, backend),
        methods=["GET"],
        include_in_schema=False,
    )
    app.router.add_route("/{path:path}", proxied, include_in_schema=False)
    return app
