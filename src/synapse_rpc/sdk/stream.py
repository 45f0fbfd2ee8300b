"""Client-side push stream for SUBSCRIPTION procedures.

Opens a GET request with Accept: text/event-stream and reads SSE frames in a
background task. Each data frame is decoded, validated against the output
shape and delivered both to on_message observers and to `async for` consumers,
in arrival order.

States:
    CONNECTING -> OPEN -> CLOSED      server sent close, or close() was called
    CONNECTING -> ERRORED             server refused the stream
    OPEN -> ERRORED                   transport dropped without a close frame

A frame that fails to decode or validate is reported to on_error and skipped;
the stream stays open.

Events are buffered for receive() once a consumer has attached, or while no
on_message observer is registered. An observer-only stream keeps nothing.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx

from ..config import ClientConfig
from ..connection import Connection, ConnectionState, Direction, call_listener
from ..errors import ConnectionClosed, MalformedResponse, RemoteError, RPCError, TransportError
from ..schema import MethodKind, Procedure
from ..transport.sse import CLOSE_EVENT, ERROR_EVENT, iter_frames
from .request import PAYLOAD_PARAM, decode_output, encode_input

logger = logging.getLogger(__name__)

_END = object()

OpenListener = Callable[[], Any]
EventListener = Callable[[Any], Any]
ErrorListener = Callable[[RPCError], Any]


class PushStream(Connection):
    """Receive-only connection to a SUBSCRIPTION procedure.

    Input is validated when the stream is created, so an invalid call raises
    InvalidInput without touching the network.

    Usage:
        async with client.Todo.WatchTodos({"filter": "all"}) as stream:
            async for event in stream:
                ...
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        config: ClientConfig,
        service: str,
        procedure: Procedure,
        args: Any = None,
        *,
        headers: dict[str, str] | None = None,
        on_open: OpenListener | None = None,
        on_message: EventListener | None = None,
        on_error: ErrorListener | None = None,
        on_close: Callable[[], Any] | None = None,
    ):
        super().__init__(procedure, Direction.RECEIVE, ConnectionState.CONNECTING)
        if procedure.method != MethodKind.SUBSCRIPTION:
            raise ValueError(f"{service}.{procedure.name} is not a subscription procedure")

        self.service = service
        self._payload = encode_input(procedure, {} if args is None else args)
        self._http = http
        self.config = config
        self._headers = {**config.headers, **(headers or {})}

        self._response: httpx.Response | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._released = False
        self._consuming = False

        self._open_listeners: list[OpenListener] = []
        self._message_listeners: list[EventListener] = []
        self._error_listeners: list[ErrorListener] = []
        self.last_error: RPCError | None = None

        if on_open:
            self.on_open(on_open)
        if on_message:
            self.on_message(on_message)
        if on_error:
            self.on_error(on_error)
        if on_close:
            self.on_close(on_close)

    # =========================================================================
    # Observers
    # =========================================================================

    def on_open(self, listener: OpenListener) -> OpenListener:
        self._open_listeners.append(listener)
        return listener

    def on_message(self, listener: EventListener) -> EventListener:
        self._message_listeners.append(listener)
        return listener

    def on_error(self, listener: ErrorListener) -> ErrorListener:
        self._error_listeners.append(listener)
        return listener

    @property
    def is_connected(self) -> bool:
        return self.is_open

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def open(self) -> PushStream:
        """Open the event stream.

        Raises:
            RemoteError: The server refused the stream (non-200 status)
            TransportError: The server could not be reached
        """
        if self._state != ConnectionState.CONNECTING:
            return self

        path = self.config.procedure_path(self.service, self.procedure.name)
        request = self._http.build_request(
            "GET",
            path,
            params={PAYLOAD_PARAM: json.dumps(self._payload)},
            headers={**self._headers, "Accept": "text/event-stream"},
            timeout=httpx.Timeout(self.config.timeout, read=None),
        )

        try:
            response = await self._http.send(request, stream=True)
        except httpx.TransportError as e:
            error = TransportError(f"Failed to connect to {self.procedure.name}: {e}")
            await self._fail(error)
            raise error from e

        if response.status_code != 200:
            body = await response.aread()
            await response.aclose()
            error = RemoteError(body.decode("utf-8", errors="replace"), response.status_code)
            await self._fail(error)
            raise error

        self._response = response
        self._set_state(ConnectionState.OPEN)
        logger.debug(f"Subscribed to {self.service}.{self.procedure.name}")

        for listener in list(self._open_listeners):
            try:
                await call_listener(listener)
            except Exception:
                logger.exception(f"Error in open listener for {self.procedure.name}")

        self._reader_task = asyncio.create_task(self._read_loop())
        return self

    async def close(self) -> None:
        """Close the stream from the client side. Idempotent."""
        if self._state not in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            return
        self._set_state(ConnectionState.CLOSING)
        await self._release(ConnectionState.CLOSED)

    async def _fail(self, error: RPCError) -> None:
        self.last_error = error
        await self._emit_error(error)
        await self._release(ConnectionState.ERRORED)

    async def _release(self, final_state: ConnectionState) -> None:
        """Release the reader task and HTTP response, exactly once."""
        if self._released:
            return
        self._released = True

        task, self._reader_task = self._reader_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        response, self._response = self._response, None
        if response is not None:
            await response.aclose()

        self._set_state(final_state)
        self._queue.put_nowait(_END)
        await self._notify_closed()

    # =========================================================================
    # Reading
    # =========================================================================

    async def _read_loop(self) -> None:
        assert self._response is not None
        closed_by_server = False
        try:
            async for frame in iter_frames(self._response.aiter_lines()):
                if frame.event == CLOSE_EVENT:
                    closed_by_server = True
                    break
                if frame.event == ERROR_EVENT:
                    await self._emit_error(RemoteError(_error_text(frame.data)))
                    continue
                await self._handle_data(frame.data)
        except httpx.HTTPError as e:
            await self._fail(TransportError(f"Stream {self.procedure.name} dropped: {e}"))
            return

        if closed_by_server:
            logger.debug(f"Server closed {self.service}.{self.procedure.name}")
            self._set_state(ConnectionState.CLOSING)
            await self._release(ConnectionState.CLOSED)
        else:
            await self._fail(
                TransportError(f"Stream {self.procedure.name} ended without a close frame")
            )

    async def _handle_data(self, data: str) -> None:
        try:
            decoded = json.loads(data)
        except json.JSONDecodeError as e:
            await self._emit_error(MalformedResponse(f"Failed to decode event data: {e}"))
            return

        try:
            event = decode_output(self.procedure, decoded)
        except MalformedResponse as e:
            await self._emit_error(e)
            return

        # Observer-only streams are not buffered
        if self._consuming or not self._message_listeners:
            self._queue.put_nowait(event)
        for listener in list(self._message_listeners):
            try:
                await call_listener(listener, event)
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
        """Wait for the next event.

        Raises:
            ConnectionClosed: The stream ended and no buffered events remain
            TimeoutError: No event arrived within `timeout`
        """
        self._consuming = True
        if self._state == ConnectionState.CONNECTING:
            await self.open()
        item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if item is _END:
            # Keep the end marker for later receivers
            self._queue.put_nowait(_END)
            raise ConnectionClosed(f"Stream {self.procedure.name} is {self._state.value}")
        return item

    async def _iterate(self) -> AsyncIterator[Any]:
        while True:
            try:
                yield await self.receive()
            except ConnectionClosed:
                return

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._iterate()

    async def __aenter__(self) -> PushStream:
        return await self.open()

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


def _error_text(data: str) -> str:
    try:
        decoded = json.loads(data)
    except json.JSONDecodeError:
        return data
    return decoded if isinstance(decoded, str) else json.dumps(decoded)
