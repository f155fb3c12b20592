"""Guard for the proxy's operational endpoints."""

from __future__ import annotations

import hmac
from ipaddress import ip_address
from typing import Optional

from fastapi import HTTPException, Request, status


def _is_loopback(host: Optional[str]) -> bool:
    if not host:
        return False
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


class MetricsAccess:
    """FastAPI dependency admitting scrapers of ``/_proxy/metrics``.

    With a token configured every caller must present it as a bearer token.
    Without one only loopback clients are admitted.
    """

    def __init__(self, token: Optional[str]) -> None:
        self._expected = f"Bearer {token}".encode() if token else None

    def __call__(self, request: Request) -> None:
        if self._expected is not None:
            presented = request.headers.get("authorization", "").encode()
            if not hmac.compare_digest(presented, self._expected):
                raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
            return

        client_host = request.client.host if request.client else None
        if not _is_loopback(client_host):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics are only served to localhost")
