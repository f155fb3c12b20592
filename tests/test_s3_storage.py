from __future__ import annotations

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError
from structlog.testing import capture_logs

from crates_proxy.cache_proxy.errors import CacheConfigurationError, CacheWriteError, InvalidCacheKeyError
from crates_proxy.cache_proxy.storage import S3CacheBackend, build_backend
from crates_proxy.common.settings import CacheProxySettings


def _missing() -> ClientError:
    return ClientError({"Error": {"Code": "NoSuchKey", "Message": "The specified key does not exist."}}, "GetObject")


class FakeClient:
    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], bytes] = {}
        self.put_calls = 0
        self.get_calls = 0
        self.failures_remaining = 0
        self.failure: Exception = EndpointConnectionError(endpoint_url="http://s3.invalid")

    def put_object(self, *, Bucket: str, Key: str, Body: bytes):
        self.put_calls += 1
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise self.failure
        self.objects[(Bucket, Key)] = Body
        return {}

    def get_object(self, *, Bucket: str, Key: str):
        self.get_calls += 1
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise self.failure
        if (Bucket, Key) not in self.objects:
            raise _missing()

        class Body:
            def __init__(self, payload: bytes) -> None:
                self._payload = payload

            def read(self) -> bytes:
                return self._payload

        return {"Body": Body(self.objects[(Bucket, Key)])}


@pytest.fixture
def fake_client(monkeypatch: pytest.MonkeyPatch) -> FakeClient:
    client = FakeClient()
    client_kwargs: dict[str, object] = {}

    class DummySession:
        def client(self, service_name, **kwargs):  # noqa: D401 - mimic boto3 session
            assert service_name == "s3"
            client_kwargs.update(kwargs)
            return client

    monkeypatch.setattr("crates_proxy.cache_proxy.storage.boto3.session.Session", lambda: DummySession())
    client.client_kwargs = client_kwargs  # type: ignore[attr-defined]
    return client


def _settings(**overrides) -> CacheProxySettings:
    values = {
        "s3_bucket": "crates",
        "s3_max_retries": 0,
        "s3_retry_base_seconds": 0.0,
        "s3_retry_max_seconds": 0.0,
    }
    values.update(overrides)
    return CacheProxySettings(**values)


@pytest.mark.anyio
async def test_put_then_get_uses_path_without_leading_slash(fake_client: FakeClient, logger) -> None:
    backend = S3CacheBackend(_settings())
    await backend.put(logger, "/api/v1/crates/foo/1.0.0/download", b"PKG-BYTES")

    assert fake_client.objects == {("crates", "api/v1/crates/foo/1.0.0/download"): b"PKG-BYTES"}
    assert await backend.get(logger, "/api/v1/crates/foo/1.0.0/download") == b"PKG-BYTES"


@pytest.mark.anyio
async def test_missing_object_is_a_silent_miss(fake_client: FakeClient, logger) -> None:
    backend = S3CacheBackend(_settings())
    with capture_logs() as logs:
        assert await backend.get(logger, "/absent") is None
    assert logs == []


@pytest.mark.anyio
async def test_transient_failure_is_a_logged_miss(fake_client: FakeClient, logger) -> None:
    backend = S3CacheBackend(_settings())
    fake_client.failures_remaining = 1
    with capture_logs() as logs:
        assert await backend.get(logger, "/flaky") is None
    assert [entry["event"] for entry in logs] == ["cache_read_failed"]
    assert logs[0]["log_level"] == "warning"
    assert logs[0]["bucket"] == "crates"


@pytest.mark.anyio
async def test_access_denied_is_not_mistaken_for_missing(fake_client: FakeClient, logger) -> None:
    backend = S3CacheBackend(_settings())
    fake_client.failures_remaining = 1
    fake_client.failure = ClientError({"Error": {"Code": "AccessDenied"}}, "GetObject")
    with capture_logs() as logs:
        assert await backend.get(logger, "/forbidden") is None
    assert logs[0]["event"] == "cache_read_failed"


@pytest.mark.anyio
async def test_put_failure_is_reported(fake_client: FakeClient, logger) -> None:
    backend = S3CacheBackend(_settings())
    fake_client.failures_remaining = 1
    with pytest.raises(CacheWriteError):
        await backend.put(logger, "/crate", b"data")


@pytest.mark.anyio
async def test_put_retries_until_success(fake_client: FakeClient, logger) -> None:
    backend = S3CacheBackend(_settings(s3_max_retries=2))
    fake_client.failures_remaining = 2
    await backend.put(logger, "/crate", b"data")
    assert fake_client.put_calls == 3
    assert fake_client.objects[("crates", "crate")] == b"data"


@pytest.mark.anyio
async def test_missing_object_is_not_retried(fake_client: FakeClient, logger) -> None:
    backend = S3CacheBackend(_settings(s3_max_retries=3))
    assert await backend.get(logger, "/absent") is None
    assert fake_client.get_calls == 1


@pytest.mark.anyio
async def test_open_circuit_short_circuits_calls(
    monkeypatch: pytest.MonkeyPatch, fake_client: FakeClient, logger
) -> None:
    current_time = [0.0]
    monkeypatch.setattr("crates_proxy.cache_proxy.storage.time.monotonic", lambda: current_time[0])
    backend = S3CacheBackend(
        _settings(s3_circuit_breaker_failures=2, s3_circuit_breaker_reset_seconds=5.0)
    )
    fake_client.failures_remaining = 10

    assert await backend.get(logger, "/a") is None
    assert await backend.get(logger, "/a") is None
    calls_before_open = fake_client.get_calls
    assert backend.status()["circuit_open"] is True

    assert await backend.get(logger, "/a") is None
    with pytest.raises(CacheWriteError):
        await backend.put(logger, "/a", b"data")
    assert fake_client.get_calls == calls_before_open
    assert fake_client.put_calls == 0

    fake_client.failures_remaining = 0
    current_time[0] += 6.0
    await backend.put(logger, "/a", b"data")
    assert await backend.get(logger, "/a") == b"data"


@pytest.mark.parametrize(
    "key",
    ["/", "", "/" + "k" * 1025, "/crate\x01name"],
)
def test_object_key_validation(key: str) -> None:
    with pytest.raises(InvalidCacheKeyError):
        S3CacheBackend.object_key(key)


def test_object_key_accepts_limit_length() -> None:
    key = "/" + "k" * 1024
    assert S3CacheBackend.object_key(key) == "k" * 1024


@pytest.mark.anyio
async def test_invalid_key_get_is_miss_and_put_raises(fake_client: FakeClient, logger) -> None:
    backend = S3CacheBackend(_settings())
    with capture_logs() as logs:
        assert await backend.get(logger, "/" + "k" * 2000) is None
    assert logs[0]["event"] == "cache_key_rejected"
    with pytest.raises(InvalidCacheKeyError):
        await backend.put(logger, "/" + "k" * 2000, b"data")
    assert fake_client.put_calls == 0


def test_client_is_built_with_endpoint_and_region(fake_client: FakeClient) -> None:
    backend = S3CacheBackend(_settings(s3_endpoint_url="http://minio:9000", s3_region="eu-west-1"))
    assert fake_client.client_kwargs == {"endpoint_url": "http://minio:9000", "region_name": "eu-west-1"}  # type: ignore[attr-defined]
    assert backend.status() == {
        "backend": "s3",
        "bucket": "crates",
        "endpoint": "http://minio:9000",
        "circuit_open": False,
    }


def test_build_backend_prefers_bucket(fake_client: FakeClient, tmp_path) -> None:
    assert isinstance(build_backend(_settings(cache_dir=tmp_path)), S3CacheBackend)


def test_session_failure_is_a_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    from botocore.exceptions import NoRegionError

    class BrokenSession:
        def client(self, *_args, **_kwargs):
            raise NoRegionError()

    monkeypatch.setattr("crates_proxy.cache_proxy.storage.boto3.session.Session", lambda: BrokenSession())
    with pytest.raises(CacheConfigurationError):
        S3CacheBackend(_settings())


@pytest.mark.anyio
async def test_not_found_on_upload_is_a_write_error(fake_client: FakeClient, logger) -> None:
    backend = S3CacheBackend(_settings(s3_max_retries=2))
    fake_client.failures_remaining = 1
    fake_client.failure = ClientError({"Error": {"Code": "404"}}, "PutObject")
    with pytest.raises(CacheWriteError):
        await backend.put(logger, "/api/v1/crates/foo/1.0.0/download", b"PKG-BYTES")
    assert fake_client.put_calls == 1
    assert fake_client.objects == {}
