"""Client-side duplex channel for BIDIRECTIONAL procedures.

Uses the `websockets` library. Outbound messages are validated against the
procedure's input shape before sending; inbound frames are validated against
its output shape before being dispatched to message listeners. A failure
payload ({"error": "..."}) from the server goes to error listeners and the
channel stays open. Inbound messages are buffered for receive() only once a
consumer has attached, or while no message listener is registered.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosedError, InvalidHandshake

from ..config import ClientConfig
from ..connection import WILDCARD, ConnectionState, DuplexConnection, call_listener
from ..errors import ConnectionClosed, MalformedResponse, RemoteError, RPCError, TransportError
from ..schema import MethodKind, Procedure
from ..transport.websocket import FAILURE_KEY, is_failure_payload
from .request import decode_output, encode_input

logger = logging.getLogger(__name__)

_END = object()

ErrorListener = Callable[[RPCError], Any]


class DuplexChannel(DuplexConnection):
    """Client end of a BIDIRECTIONAL procedure.

    Usage:
        async with client.Greeting.echo() as channel:
            channel.on_message("Echo", handle_reply)
            await channel.send({"msg": "hi"})
    """

    def __init__(
        self,
        config: ClientConfig,
        service: str,
        procedure: Procedure,
        *,
        headers: dict[str, str] | None = None,
    ):
        if procedure.method != MethodKind.BIDIRECTIONAL:
            raise ValueError(f"{service}.{procedure.name} is not a bidirectional procedure")
        super().__init__(procedure, ConnectionState.CONNECTING)
        self.service = service
        self.config = config
        self._headers = {**config.headers, **(headers or {})}

        self._ws: Any = None  # websockets ClientConnection
        self._reader_task: asyncio.Task[None] | None = None
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._consuming = False
        self._error_listeners: list[ErrorListener] = []
        self._released = False
        self.last_error: RPCError | None = None

    @property
    def url(self) -> str:
        return self.config.ws_base_url + self.config.procedure_path(
            self.service, self.procedure.name
        )

    def on_error(self, listener: ErrorListener) -> ErrorListener:
        self._error_listeners.append(listener)
        return listener

    async def open(self) -> DuplexChannel:
        """Complete the WebSocket handshake.

        Raises:
            TransportError: The handshake failed or the server is unreachable
        """
        if self._state != ConnectionState.CONNECTING:
            return self

        try:
            self._ws = await websockets.connect(
                self.url,
                additional_headers=self._headers or None,
                open_timeout=self.config.timeout,
                ping_interval=30,
                ping_timeout=10,
            )
        except (OSError, InvalidHandshake, TimeoutError) as e:
            error = TransportError(f"Failed to connect to {self.procedure.name}: {e}")
            self.last_error = error
            self._set_state(ConnectionState.ERRORED)
            await self._emit_error(error)
            await self._release()
            raise error from e

        self._set_state(ConnectionState.OPEN)
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info(f"Duplex channel open: {self.url}")
        return self

    async def send(self, message: Any) -> None:
        """Send one message, validated against the input shape.

        Raises:
            ConnectionClosed: The channel is closing or closed
            InvalidInput: The message violates the input shape (nothing is sent)
        """
        if not self.is_sendable:
            raise ConnectionClosed(f"Channel {self.procedure.name} is {self._state.value}")
        payload = encode_input(self.procedure, message)
        try:
            await self._ws.send(json.dumps(payload))
        except websockets.ConnectionClosed as e:
            raise ConnectionClosed(f"Channel {self.procedure.name} closed: {e}") from e

    async def close(self) -> None:
        """Close the channel. Idempotent; close listeners run once."""
        if self._state not in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            return
        self._set_state(ConnectionState.CLOSING)
        await self._release()
        self._set_state(ConnectionState.CLOSED)
        logger.info(f"Duplex channel closed: {self.procedure.name}")

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True

        await self._notify_closed()

        task, self._reader_task = self._reader_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

        self._clear_listeners()
        self._queue.put_nowait(_END)

    async def _read_loop(self) -> None:
        try:
            async for frame in self._ws:
                if isinstance(frame, bytes):
                    frame = frame.decode("utf-8")
                await self._handle_frame(frame)
        except ConnectionClosedError as e:
            error = TransportError(f"Channel {self.procedure.name} dropped: {e}")
            self.last_error = error
            self._set_state(ConnectionState.ERRORED)
            await self._emit_error(error)
            await self._release()
            return

        # Server closed the connection cleanly
        await self.close()

    async def _handle_frame(self, frame: str) -> None:
        try:
            payload = json.loads(frame)
        except json.JSONDecodeError as e:
            await self._emit_error(MalformedResponse(f"Failed to decode message: {e}"))
            return

        if is_failure_payload(payload):
            await self._emit_error(RemoteError(str(payload[FAILURE_KEY])))
            return

        try:
            message = decode_output(self.procedure, payload)
        except MalformedResponse as e:
            await self._emit_error(e)
            return

        # Observer-only channels are not buffered
        if self._consuming or not self._message_listeners:
            self._queue.put_nowait(message)
        try:
            await self.dispatch(message, WILDCARD)
        except Exception:
            logger.exception(f"Error in message listener for {self.procedure.name}")

    async def _emit_error(self, error: RPCError) -> None:
        logger.debug(f"{self!r}: {error}")
        for listener in list(self._error_listeners):
            try:
                await call_listener(listener, error)
            except Exception:
                logger.exception(f"Error in error listener for {self.procedure.name}")

    async def receive(self, timeout: float | None = None) -> Any:
        """Wait for the next inbound message.

        Raises:
            ConnectionClosed: The channel ended and no buffered messages remain
            TimeoutError: No message arrived within `timeout`
        """
        self._consuming = True
        if self._state == ConnectionState.CONNECTING:
            await self.open()
        item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if item is _END:
            self._queue.put_nowait(_END)
            raise ConnectionClosed(f"Channel {self.procedure.name} is {self._state.value}")
        return item

    async def _iterate(self) -> AsyncIterator[Any]:
        while True:
            try:
                yield await self.receive()
            except ConnectionClosed:
                return

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._iterate()

    async def __aenter__(self) -> DuplexChannel:
        return await self.open()

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
