"""WebSocket transport for BIDIRECTIONAL procedures (server side).

Each text frame carries exactly one JSON object: the declared input shape
from client to server, the declared output shape from server to client.
Handler failures while processing a frame are reported back as a failure
payload, {"error": "<message>"}, and the connection stays open.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from starlette.websockets import WebSocket, WebSocketState

from ..connection import ConnectionState, DuplexConnection
from ..errors import ConnectionClosed, InvalidOutput
from ..schema import Procedure

logger = logging.getLogger(__name__)

FAILURE_KEY = "error"
BINARY_FRAME_ERROR = "Binary frames are not supported"


def failure_payload(message: str) -> dict[str, str]:
    """Application-level failure payload sent over a live duplex connection."""
    return {FAILURE_KEY: message}


def is_failure_payload(payload: Any) -> bool:
    return isinstance(payload, dict) and set(payload) == {FAILURE_KEY}


class ServerDuplex(DuplexConnection):
    """Server side of a BIDIRECTIONAL connection, backed by a Starlette WebSocket."""

    def __init__(self, procedure: Procedure, websocket: WebSocket):
        super().__init__(procedure)
        self._websocket = websocket
        self._send_lock = asyncio.Lock()

    @property
    def websocket(self) -> WebSocket:
        return self._websocket

    async def accept(self) -> None:
        """Complete the open handshake."""
        await self._websocket.accept()
        self._set_state(ConnectionState.OPEN)
        logger.info(f"Duplex connection opened for {self.procedure.name}")

    async def send(self, message: Any) -> None:
        """Send one message, validated against the procedure's output shape."""
        if not self.is_sendable:
            raise ConnectionClosed(f"Connection for {self.procedure.name} is {self.state.value}")
        result = self.procedure.output.validate(message)
        if not result.ok:
            raise InvalidOutput(self.procedure.name, result.violations)
        await self._send_json(self.procedure.output.dump(result.value))

    async def send_failure(self, message: str) -> None:
        """Report a per-message failure without closing the connection."""
        if not self.is_sendable:
            logger.warning(f"Dropping failure for closed {self.procedure.name}: {message}")
            return
        await self._send_json(failure_payload(message))

    async def _send_json(self, data: Any) -> None:
        async with self._send_lock:
            await self._websocket.send_text(json.dumps(data))

    async def receive_frames(self) -> AsyncIterator[str]:
        """Yield inbound text frames until either side closes.

        Binary frames are answered with a failure payload and skipped.
        """
        while self.is_open:
            try:
                message = await self._websocket.receive()
            except RuntimeError:
                # Socket was closed underneath us
                break

            if message["type"] == "websocket.disconnect":
                logger.info(f"Duplex client left {self.procedure.name} (code={message.get('code')})")
                break

            text = message.get("text")
            if text is None:
                logger.warning(f"Binary frame rejected on {self.procedure.name}")
                await self.send_failure(BINARY_FRAME_ERROR)
                continue
            yield text

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        """Close the connection. Close listeners run before the socket is released."""
        if self._state not in (ConnectionState.OPEN, ConnectionState.CONNECTING):
            return
        self._set_state(ConnectionState.CLOSING)
        await self._notify_closed()

        if (
            self._websocket.application_state == WebSocketState.CONNECTED
            and self._websocket.client_state == WebSocketState.CONNECTED
        ):
            try:
                await self._websocket.close(code=code, reason=reason)
            except RuntimeError as e:
                logger.debug(f"WebSocket already closed for {self.procedure.name}: {e}")

        self._set_state(ConnectionState.CLOSED)
        self._clear_listeners()
        logger.info(f"Duplex connection closed for {self.procedure.name}")
