"""Storage backends for cached response bodies: local disk or S3-compatible storage."""

from __future__ import annotations

import asyncio
import contextlib
import os
import tempfile
import time
from pathlib import Path
from typing import Callable, Optional

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from ..common.settings import CacheProxySettings
from .errors import (
    CacheConfigurationError,
    CacheUnavailableError,
    CacheWriteError,
    InvalidCacheKeyError,
    OutsideCacheRootError,
)


S3_MAX_KEY_BYTES = 1024
S3_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
PARTIAL_SUFFIX = ".partial"
STALE_PARTIAL_SECONDS = 3600.0

LOGGER = structlog.get_logger("crates_proxy.storage")


class CacheBackend:
    """Byte store addressed by request path.

    ``get`` never raises for per-request failures: anything other than a clean
    "not found" is logged on the supplied logger and reported as a miss.
    ``put`` raises :class:`CacheError` so the caller can decide what a failed
    write means.
    """

    async def get(self, logger, cache_key: str) -> Optional[bytes]:  # pragma: no cover - interface
        raise NotImplementedError

    async def put(self, logger, cache_key: str, content: bytes) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def status(self) -> dict[str, object]:  # pragma: no cover - interface
        raise NotImplementedError


class CircuitBreaker:
    def __init__(self, failure_threshold: int, reset_timeout: float):
        self._failure_threshold = max(1, failure_threshold)
        self._reset_timeout = max(0.0, reset_timeout)
        self._failure_count = 0
        self._opened_at: float | None = None

    def _maybe_reset(self) -> None:
        if self._opened_at is None:
            return
        if time.monotonic() - self._opened_at >= self._reset_timeout:
            self._opened_at = None
            self._failure_count = 0

    def allow_request(self) -> bool:
        self._maybe_reset()
        return self._opened_at is None

    def record_success(self) -> None:
        self._failure_count = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._failure_count >= self._failure_threshold:
            self._opened_at = time.monotonic()

    @property
    def is_open(self) -> bool:
        self._maybe_reset()
        return self._opened_at is not None


class LocalCacheBackend(CacheBackend):
    """Stores each entry as a plain file at ``<base_dir>/<url-path>``."""

    def __init__(self, base_dir: Path | str):
        try:
            root = Path(base_dir).expanduser().resolve()
            root.mkdir(parents=True, exist_ok=True)
        except (OSError, RuntimeError) as exc:
            raise CacheConfigurationError(f"unable to create the cache directory {base_dir}: {exc}") from exc
        self._root = root
        removed = _sweep_partials(root, STALE_PARTIAL_SECONDS)
        if removed:
            LOGGER.info("stale_partials_removed", count=removed, base_dir=str(root))

    @property
    def base_dir(self) -> Path:
        return self._root

    def resolve(self, cache_key: str) -> Path:
        """Map a key onto a file below the base directory.

        The lexical check runs before anything touches the disk; the second
        check catches symlinks inside the root that point elsewhere.
        """
        if "\x00" in cache_key:
            raise InvalidCacheKeyError(cache_key, "embedded NUL byte")
        candidate = Path(os.path.normpath(self._root.joinpath(*cache_key.split("/"))))
        if self._root not in candidate.parents:
            raise OutsideCacheRootError(cache_key, self._root)
        try:
            resolved = candidate.resolve(strict=False)
        except (OSError, RuntimeError, ValueError) as exc:
            raise InvalidCacheKeyError(cache_key, str(exc)) from exc
        if self._root not in resolved.parents:
            raise OutsideCacheRootError(cache_key, self._root)
        return resolved

    async def get(self, logger, cache_key: str) -> Optional[bytes]:
        try:
            path = await asyncio.to_thread(self.resolve, cache_key)
        except InvalidCacheKeyError as exc:
            logger.warning(
                "cache_path_rejected",
                error=str(exc),
                path=cache_key,
                base_dir=str(self._root),
            )
            return None

        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("cache_read_failed", error=str(exc), path=str(path))
            return None

    async def put(self, logger, cache_key: str, content: bytes) -> None:
        path = await asyncio.to_thread(self.resolve, cache_key)
        try:
            await asyncio.to_thread(_write_atomically, path, content)
        except OSError as exc:
            raise CacheWriteError(f"unable to write {path}: {exc}") from exc
        logger.debug("cache_updated", path=str(path), bytes=len(content))

    def status(self) -> dict[str, object]:
        return {
            "backend": "local",
            "base_dir": str(self._root),
            "writable": self._root.is_dir() and os.access(self._root, os.W_OK),
        }


def _write_atomically(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=PARTIAL_SUFFIX)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(content)
        os.chmod(tmp_name, 0o644)
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


def _sweep_partials(root: Path, max_age: float) -> int:
    """Delete temporary files left behind by writers that died before the rename.

    Files younger than ``max_age`` may still belong to a live writer and are kept.
    """
    cutoff = time.time() - max_age
    removed = 0
    for path in root.rglob(f".*{PARTIAL_SUFFIX}"):
        try:
            if not path.is_file() or path.stat().st_mtime > cutoff:
                continue
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            LOGGER.warning("stale_partial_not_removed", error=str(exc), path=str(path))
            continue
        removed += 1
    return removed


def _is_missing(exc: BaseException) -> bool:
    if not isinstance(exc, ClientError):
        return False
    code = str(exc.response.get("Error", {}).get("Code", ""))
    return code in S3_MISSING_CODES


class S3CacheBackend(CacheBackend):
    def __init__(self, settings: CacheProxySettings):
        if not settings.s3_bucket:
            raise CacheConfigurationError("an S3 bucket is required for the object-store cache")
        client_args: dict[str, Optional[str]] = {
            "endpoint_url": settings.s3_endpoint_url,
            "region_name": settings.s3_region,
        }
        try:
            session = boto3.session.Session()
            self._client = session.client("s3", **{k: v for k, v in client_args.items() if v})
        except (BotoCoreError, ValueError) as exc:
            raise CacheConfigurationError(f"unable to initialise the S3 client: {exc}") from exc
        self._bucket = settings.s3_bucket
        self._endpoint = settings.s3_endpoint_url
        self._max_retries = max(0, settings.s3_max_retries)
        self._retry_base = max(0.0, settings.s3_retry_base_seconds)
        self._retry_max = max(self._retry_base, settings.s3_retry_max_seconds)
        self._breaker = CircuitBreaker(
            failure_threshold=settings.s3_circuit_breaker_failures,
            reset_timeout=settings.s3_circuit_breaker_reset_seconds,
        )

    @staticmethod
    def object_key(cache_key: str) -> str:
        key = cache_key.lstrip("/")
        if not key:
            raise InvalidCacheKeyError(cache_key, "empty object key")
        if len(key.encode("utf-8")) > S3_MAX_KEY_BYTES:
            raise InvalidCacheKeyError(cache_key, f"object keys are limited to {S3_MAX_KEY_BYTES} bytes")
        if any(ord(char) < 0x20 or ord(char) == 0x7F for char in key):
            raise InvalidCacheKeyError(cache_key, "control characters are not allowed")
        return key

    async def get(self, logger, cache_key: str) -> Optional[bytes]:
        try:
            key = self.object_key(cache_key)
        except InvalidCacheKeyError as exc:
            logger.warning("cache_key_rejected", error=str(exc), path=cache_key, bucket=self._bucket)
            return None

        try:
            response = await self._call_with_retry(self._client.get_object, Bucket=self._bucket, Key=key)
            return await asyncio.to_thread(response["Body"].read)
        except ClientError as exc:
            if _is_missing(exc):
                return None
            logger.warning("cache_read_failed", error=str(exc), path=cache_key, bucket=self._bucket)
        except Exception as exc:  # noqa: BLE001 - a failed read is a miss
            logger.warning("cache_read_failed", error=str(exc), path=cache_key, bucket=self._bucket)
        return None

    async def put(self, logger, cache_key: str, content: bytes) -> None:
        key = self.object_key(cache_key)
        try:
            await self._call_with_retry(self._client.put_object, Bucket=self._bucket, Key=key, Body=content)
        except (ClientError, CacheUnavailableError) as exc:
            raise CacheWriteError(f"unable to upload s3://{self._bucket}/{key}: {exc}") from exc
        logger.debug("cache_updated", bucket=self._bucket, key=key, bytes=len(content))

    def status(self) -> dict[str, object]:
        return {
            "backend": "s3",
            "bucket": self._bucket,
            "endpoint": self._endpoint,
            "circuit_open": self._breaker.is_open,
        }

    async def _call_with_retry(self, func: Callable[..., object], **kwargs) -> object:
        if not self._breaker.allow_request():
            raise CacheUnavailableError("S3 circuit breaker is open")

        attempt = 0
        while True:
            try:
                result = await asyncio.to_thread(func, **kwargs)
                self._breaker.record_success()
                return result
            except ClientError as exc:
                if _is_missing(exc):
                    self._breaker.record_success()
                    raise
                last_error: Exception = exc
            except Exception as exc:  # noqa: BLE001
                last_error = exc
            attempt += 1
            if attempt > self._max_retries:
                self._breaker.record_failure()
                raise CacheUnavailableError(f"S3 request failed after {attempt} attempts: {last_error}") from last_error
            delay = min(self._retry_base * (2 ** (attempt - 1)), self._retry_max)
            if delay:
                await asyncio.sleep(delay)


def build_backend(settings: CacheProxySettings) -> CacheBackend:
    if settings.s3_bucket:
        return S3CacheBackend(settings)
    return LocalCacheBackend(settings.cache_dir)
