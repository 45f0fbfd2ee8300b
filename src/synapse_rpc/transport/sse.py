"""Server-Sent Events transport for SUBSCRIPTION procedures.

Server side:
- ServerStream: send-only connection handed to the subscription handler
- EventStreamResponse: Starlette response that drains a ServerStream

Shared:
- encode_frame / iter_frames: SSE wire format, used by the client stream too

Wire format:
    data: {"event": "created", ...}\\n\\n      one output event
    event: error\\ndata: "message"\\n\\n         handler failure (stream stays usable)
    event: close\\ndata: null\\n\\n              explicit close, precedes termination
    : keep-alive\\n\\n                         idle heartbeat (ignored by clients)
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from starlette.requests import Request
from starlette.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from ..connection import Connection, ConnectionState, Direction
from ..errors import ConnectionClosed, InvalidOutput
from ..schema import Procedure

logger = logging.getLogger(__name__)

MESSAGE_EVENT = "message"
ERROR_EVENT = "error"
CLOSE_EVENT = "close"

_CLOSE = object()


@dataclass
class SSEFrame:
    """One dispatched server-sent event."""

    event: str = MESSAGE_EVENT
    data: str = ""
    id: str | None = None


def encode_frame(data: str, event: str | None = None) -> str:
    """Encode a single SSE frame."""
    lines = []
    if event and event != MESSAGE_EVENT:
        lines.append(f"event: {event}")
    for line in data.splitlines() or [""]:
        lines.append(f"data: {line}")
    return "\n".join(lines) + "\n\n"


async def iter_frames(lines: AsyncIterator[str]) -> AsyncIterator[SSEFrame]:
    """Assemble SSE lines into frames.

    Comment lines and frames without data are skipped, as EventSource does.
    """
    event = MESSAGE_EVENT
    data_lines: list[str] = []
    event_id: str | None = None

    async for raw_line in lines:
        line = raw_line.rstrip("\r")
        if not line:
            if data_lines:
                yield SSEFrame(event=event, data="\n".join(data_lines), id=event_id)
            event, data_lines, event_id = MESSAGE_EVENT, [], None
            continue
        if line.startswith(":"):
            continue

        field_name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field_name == "data":
            data_lines.append(value)
        elif field_name == "event":
            event = value or MESSAGE_EVENT
        elif field_name == "id":
            event_id = value

    if data_lines:
        yield SSEFrame(event=event, data="\n".join(data_lines), id=event_id)


class ServerStream(Connection):
    """Send-only server side of a SUBSCRIPTION.

    The handler writes events with `await conn.write(event)` and may close with
    `await conn.close()`. Close listeners run exactly once, whichever side
    ends the stream (explicit close, client disconnect, server shutdown).
    """

    def __init__(self, procedure: Procedure, keepalive_interval: float = 15.0):
        super().__init__(procedure, Direction.SEND, ConnectionState.OPEN)
        self.keepalive_interval = keepalive_interval
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._handler_task: asyncio.Task[Any] | None = None

    def attach_handler(self, task: asyncio.Task[Any]) -> None:
        """Bind the running handler task; it is cancelled when the stream ends."""
        self._handler_task = task

    async def write(self, event: Any) -> None:
        """Validate an event against the output shape and queue it for delivery."""
        if not self.is_sendable:
            raise ConnectionClosed(f"Stream for {self.procedure.name} is {self.state.value}")
        result = self.procedure.output.validate(event)
        if not result.ok:
            raise InvalidOutput(self.procedure.name, result.violations)
        payload = json.dumps(self.procedure.output.dump(result.value))
        self._queue.put_nowait(encode_frame(payload))

    async def fail(self, message: str) -> None:
        """Report a handler failure to the client, then close the stream."""
        if self.is_sendable:
            self._queue.put_nowait(encode_frame(json.dumps(message), event=ERROR_EVENT))
        await self.close()

    async def close(self) -> None:
        """Send the close frame and end the stream. Closing twice is a no-op."""
        if self._state != ConnectionState.OPEN:
            return
        self._set_state(ConnectionState.CLOSING)
        self._queue.put_nowait(_CLOSE)
        await self._finalize()

    async def abort(self) -> None:
        """End the stream because the transport went away or the server is stopping."""
        if self._state != ConnectionState.OPEN:
            return
        logger.debug(f"Aborting stream for {self.procedure.name}")
        await self.close()

    async def _finalize(self) -> None:
        await self._notify_closed()
        self._set_state(ConnectionState.CLOSED)

        task = self._handler_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def frames(self, request: Request | None = None) -> AsyncIterator[str]:
        """Yield encoded frames until the stream closes."""
        while True:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=self.keepalive_interval)
            except TimeoutError:
                if request is not None and await request.is_disconnected():
                    logger.info(f"Client disconnected from {self.procedure.name}")
                    break
                yield ": keep-alive\n\n"
                continue

            if item is _CLOSE:
                yield encode_frame("null", event=CLOSE_EVENT)
                break
            yield item


class EventStreamResponse(StreamingResponse):
    """SSE response bound to a ServerStream.

    Whatever way the response ends, the stream is finalized exactly once.
    """

    def __init__(self, stream: ServerStream, request: Request | None = None):
        self.stream = stream
        super().__init__(
            stream.frames(request),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",  # Disable nginx buffering
            },
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.stream.abort()
