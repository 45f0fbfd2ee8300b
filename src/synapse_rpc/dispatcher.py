"""Server dispatcher - routes wire requests to procedure implementations.

The dispatcher owns:
- the resolved (service, procedure) -> handler table
- the event fan-out registry shared by every connection on this server
- the set of live streaming connections, closed on shutdown

Validation happens here so no handler ever sees an invalid payload and no
client ever receives an output that violates its declared shape.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from starlette.requests import HTTPConnection
from starlette.websockets import WebSocket

from .bus import EventFanOut
from .connection import Connection
from .errors import (
    DuplicateService,
    InvalidInput,
    InvalidOutput,
    MissingImplementation,
    RemoteError,
    UnknownProcedure,
)
from .implementation import CallContext, Handler, ServiceImplementation
from .schema import APISchema, MethodKind, Procedure
from .transport.sse import ServerStream
from .transport.websocket import ServerDuplex

logger = logging.getLogger(__name__)


class MethodMismatch(RemoteError):
    """A procedure was called through the wrong channel for its method kind."""

    def __init__(self, procedure: Procedure, expected: MethodKind | tuple[MethodKind, ...]):
        kinds = expected if isinstance(expected, tuple) else (expected,)
        names = " or ".join(k.value for k in kinds)
        super().__init__(
            f"{procedure.name} is a {procedure.method.value} procedure, not {names}",
            status_code=405,
        )


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class Dispatcher:
    """Routes (service, procedure) to the registered implementation."""

    def __init__(
        self,
        schema: APISchema,
        implementations: Mapping[str, ServiceImplementation] | Iterable[ServiceImplementation],
        fanout: EventFanOut | None = None,
        keepalive_interval: float = 15.0,
    ):
        self.schema = schema
        self.fanout = fanout or EventFanOut()
        self.keepalive_interval = keepalive_interval
        self._connections: set[Connection] = set()

        if isinstance(implementations, Mapping):
            implementations = implementations.values()
        table: dict[str, ServiceImplementation] = {}
        for implementation in implementations:
            name = implementation.service.name
            if name not in schema:
                raise UnknownProcedure(name)
            if name in table:
                raise DuplicateService(name)
            table[name] = implementation
        for service in schema:
            if service.name not in table:
                raise MissingImplementation(service.name, [p.name for p in service])
        self._implementations = table

        for implementation in table.values():
            for topic in implementation.topics:
                self.fanout.define(topic, owner=implementation.service.name)

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def lookup(self, service: str, procedure: str) -> Procedure:
        return self.schema.lookup(service, procedure)

    def resolve(self, service: str, procedure: str) -> tuple[Procedure, Handler]:
        declared = self.schema.lookup(service, procedure)
        return declared, self._implementations[service].handler(procedure)

    def _context(
        self, service: str, procedure: Procedure, request: HTTPConnection | None
    ) -> CallContext:
        return CallContext(
            service=service, procedure=procedure, fanout=self.fanout, request=request
        )

    @staticmethod
    def validate_input(procedure: Procedure, payload: Any) -> Any:
        result = procedure.input.validate(payload)
        if not result.ok:
            raise InvalidInput(result.violations)
        return result.value

    @property
    def active_connections(self) -> int:
        return len(self._connections)

    # -------------------------------------------------------------------------
    # QUERY / MUTATION
    # -------------------------------------------------------------------------

    async def call(
        self,
        service: str,
        procedure: str,
        payload: Any,
        request: HTTPConnection | None = None,
    ) -> Any:
        """Run a one-shot procedure and return its JSON-encodable output.

        Raises:
            UnknownProcedure: No such procedure
            MethodMismatch: The procedure is not a QUERY or MUTATION
            InvalidInput: Payload failed input validation (handler not run)
            RemoteError: The handler raised, or its output failed validation
        """
        declared, handler = self.resolve(service, procedure)
        if not declared.method.is_one_shot:
            raise MethodMismatch(declared, (MethodKind.QUERY, MethodKind.MUTATION))

        value = self.validate_input(declared, payload)
        ctx = self._context(service, declared, request)

        try:
            output = await _maybe_await(handler(value, ctx))
        except Exception as e:
            logger.exception(f"Error in {service}.{procedure}: {e}")
            raise RemoteError(str(e) or e.__class__.__name__, status_code=500) from e

        result = declared.output.validate(output)
        if not result.ok:
            error = InvalidOutput(f"{service}.{procedure}", result.violations)
            logger.error(str(error))
            raise RemoteError(str(error), status_code=500) from error
        return declared.output.dump(result.value)

    # -------------------------------------------------------------------------
    # SUBSCRIPTION
    # -------------------------------------------------------------------------

    async def open_stream(
        self,
        service: str,
        procedure: str,
        payload: Any,
        request: HTTPConnection | None = None,
    ) -> ServerStream:
        """Validate input and start the subscription handler on a new stream.

        The handler runs as its own task for the stream's lifetime; if it raises,
        the failure is sent to the client and the stream is closed.
        """
        declared, handler = self.resolve(service, procedure)
        if declared.method != MethodKind.SUBSCRIPTION:
            raise MethodMismatch(declared, MethodKind.SUBSCRIPTION)

        value = self.validate_input(declared, payload)
        ctx = self._context(service, declared, request)

        stream = ServerStream(declared, keepalive_interval=self.keepalive_interval)
        self._track(stream)

        async def run_handler() -> None:
            try:
                await _maybe_await(handler(value, ctx, stream))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Error in subscription {service}.{procedure}: {e}")
                await stream.fail(str(e) or e.__class__.__name__)

        stream.attach_handler(asyncio.create_task(run_handler()))
        logger.info(f"Subscription opened: {service}.{procedure}")
        return stream

    # -------------------------------------------------------------------------
    # BIDIRECTIONAL
    # -------------------------------------------------------------------------

    async def run_duplex(self, service: str, procedure: str, websocket: WebSocket) -> None:
        """Serve one duplex connection until either side closes it.

        Inbound frames are handled sequentially in arrival order. A frame that
        fails to parse or validate, or whose listener raises, is answered with
        a failure payload; the connection stays open.
        """
        declared, handler = self.resolve(service, procedure)
        if declared.method != MethodKind.BIDIRECTIONAL:
            raise MethodMismatch(declared, MethodKind.BIDIRECTIONAL)

        conn = ServerDuplex(declared, websocket)
        ctx = self._context(service, declared, websocket)
        await conn.accept()
        self._track(conn)

        try:
            try:
                await _maybe_await(handler(ctx, conn))
            except Exception as e:
                logger.exception(f"Error opening {service}.{procedure}: {e}")
                await conn.send_failure(str(e) or e.__class__.__name__)
                await conn.close(code=1011)
                return

            async for frame in conn.receive_frames():
                await self._handle_frame(conn, frame)
        finally:
            await conn.close()

    async def _handle_frame(self, conn: ServerDuplex, frame: str) -> None:
        name = conn.procedure.name
        try:
            payload = json.loads(frame)
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON frame on {name}: {e}")
            await conn.send_failure(f"Invalid JSON: {e}")
            return

        result = conn.procedure.input.validate(payload)
        if not result.ok:
            error = InvalidInput(result.violations)
            logger.warning(f"Rejected message on {name}: {error}")
            await conn.send_failure(str(error))
            return

        try:
            await conn.dispatch(result.value)
        except Exception as e:
            logger.exception(f"Error handling message on {name}: {e}")
            await conn.send_failure(str(e) or e.__class__.__name__)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _track(self, conn: ServerStream | ServerDuplex) -> None:
        self._connections.add(conn)
        conn.on_close(lambda: self._connections.discard(conn))

    async def shutdown(self) -> None:
        """Close every live connection, then tear down the fan-out registry."""
        connections = list(self._connections)
        if connections:
            logger.info(f"Closing {len(connections)} live connection(s)")
        for conn in connections:
            if isinstance(conn, ServerStream):
                await conn.abort()
            elif isinstance(conn, ServerDuplex):
                await conn.close(code=1001)
        self.fanout.close()
