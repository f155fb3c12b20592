from __future__ import annotations

from pathlib import Path

import pytest
import structlog

from crates_proxy.cache_proxy.storage import LocalCacheBackend


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def logger():
    return structlog.get_logger("tests")


@pytest.fixture
def cache_root(tmp_path: Path) -> Path:
    return tmp_path / "cache"


@pytest.fixture
def local_backend(cache_root: Path) -> LocalCacheBackend:
    return LocalCacheBackend(cache_root)
