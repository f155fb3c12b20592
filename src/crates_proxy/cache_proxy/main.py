"""Command-line entrypoint for running the caching proxy."""

from __future__ import annotations

import argparse
from typing import Optional, Sequence

import structlog
import uvicorn
from pydantic import ValidationError

from ..common.observability import configure_logging
from ..common.settings import CacheProxySettings
from .app import SERVICE_NAME, create_app
from .errors import CacheConfigurationError
from .storage import build_backend


LOGGER = structlog.get_logger("crates_proxy.main")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Caching reverse proxy for a crates.io registry")
    parser.add_argument(
        "-v", "--verbose", action="store_true", default=None, help="Show more verbose debug information"
    )
    parser.add_argument("-u", "--upstream", help="The URL to proxy requests to")
    parser.add_argument("-H", "--host", help="The interface to listen on")
    parser.add_argument("-p", "--port", type=int, help="The port to use")
    parser.add_argument("-b", "--bucket", help="The S3 bucket to cache responses in")
    parser.add_argument("-c", "--cache-dir", help="The directory to use when caching locally")
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> CacheProxySettings:
    """Command-line flags win over environment variables and ``.env``."""
    overrides = {
        "verbose": args.verbose,
        "upstream": args.upstream,
        "host": args.host,
        "port": args.port,
        "s3_bucket": args.bucket,
        "cache_dir": args.cache_dir,
    }
    return CacheProxySettings(**{key: value for key, value in overrides.items() if value is not None})


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    try:
        settings = settings_from_args(args)
    except ValidationError as exc:
        configure_logging(SERVICE_NAME)
        LOGGER.critical("invalid_configuration", error=str(exc))
        raise SystemExit(1) from exc

    configure_logging(SERVICE_NAME, settings.effective_log_level, human_readable=settings.verbose)
    LOGGER.info("started", args=settings.public_view())

    try:
        backend = build_backend(settings)
    except CacheConfigurationError as exc:
        LOGGER.critical(
            "cache_initialisation_failed",
            error=str(exc),
            backend="s3" if settings.s3_bucket else "local",
        )
        raise SystemExit(1) from exc

    app = create_app(settings, backend=backend)
    LOGGER.info("serving", addr=f"{settings.host}:{settings.port}")
    # uvicorn owns SIGINT/SIGTERM and drains in-flight requests before exiting.
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,
        timeout_graceful_shutdown=5,
    )


if __name__ == "__main__":
    main()
