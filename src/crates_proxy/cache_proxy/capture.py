"""ASGI ``send`` decorator that mirrors a response body into memory."""

from __future__ import annotations

from typing import Optional

from starlette.types import Message, Send


class ResponseCapture:
    """Forward every message to the client while keeping a copy of the body.

    Body bytes go to the client first and into the buffer second. The buffer
    is extended even when the client write raises, so it always holds what
    the handler attempted to send.
    """

    def __init__(self, send: Send) -> None:
        self._send = send
        self._buffer = bytearray()
        self.status_code = 200
        self.declared_length: Optional[int] = None
        self.completed = False

    async def __call__(self, message: Message) -> None:
        if message["type"] == "http.response.start":
            self.status_code = message["status"]
            self.declared_length = _content_length(message.get("headers", []))
            await self._send(message)
            return

        if message["type"] == "http.response.body":
            body = message.get("body", b"")
            try:
                await self._send(message)
            finally:
                self._buffer.extend(body)
            if not message.get("more_body", False):
                self.completed = True
            return

        await self._send(message)

    @property
    def body(self) -> bytes:
        return bytes(self._buffer)

    @property
    def bytes_captured(self) -> int:
        return len(self._buffer)

    def incomplete_reason(self) -> Optional[str]:
        """Why the captured body must not be cached, or ``None`` if it is whole."""
        if not self.completed:
            return "body_not_finished"
        if self.declared_length is not None and self.declared_length != len(self._buffer):
            return "content_length_mismatch"
        return None


def _content_length(headers) -> Optional[int]:
    for name, value in headers:
        if name.lower() == b"content-length":
            try:
                return int(value)
            except ValueError:
                return None
    return None
