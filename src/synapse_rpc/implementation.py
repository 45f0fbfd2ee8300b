"""Service implementations - binding procedure names to handler functions.

Handler signatures depend on the procedure's method kind:
- QUERY / MUTATION:   handler(input, ctx) -> output
- SUBSCRIPTION:       handler(input, ctx, conn)
- BIDIRECTIONAL:      handler(ctx, conn)

Handlers may be plain functions or coroutines. Streaming handlers usually
register listeners on `conn` and return; the connection stays open until
either side closes it.

Usage:
    greeting = (
        ServiceImplementationBuilder(greeting_service)
        .register("SayHello", say_hello)
        .register("echo", echo)
        .build()
    )
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from starlette.requests import HTTPConnection

from .bus import EventCallback, EventFanOut, EventPredicate, Subscription, Topic
from .errors import DuplicateProcedure, MissingImplementation, UnknownProcedure
from .schema import Procedure, Service

logger = logging.getLogger(__name__)

# The actual signature varies by method kind, see module docstring
Handler = Callable[..., Any]


@dataclass
class CallContext:
    """Per-call context passed to every handler.

    Attributes:
        service: Name of the service being called
        procedure: The declared procedure
        fanout: The server's event fan-out registry
        request: Raw Starlette request (or WebSocket handshake) for the call
    """

    service: str
    procedure: Procedure
    fanout: EventFanOut
    request: HTTPConnection | None = None

    @property
    def headers(self) -> Mapping[str, str]:
        if self.request is None:
            return {}
        return self.request.headers

    async def publish(self, topic: Topic | str, event: Any) -> int:
        """Publish on a topic owned by this call's service."""
        return await self.fanout.publish(topic, event, owner=self.service)

    def subscribe(
        self,
        topic: Topic | str,
        callback: EventCallback,
        predicate: EventPredicate | None = None,
    ) -> Subscription:
        return self.fanout.subscribe(topic, callback, predicate)


@dataclass(frozen=True)
class ServiceImplementation:
    """A complete set of handlers for one service."""

    service: Service
    handlers: Mapping[str, Handler]
    topics: tuple[Topic, ...] = field(default_factory=tuple)

    def handler(self, procedure: str) -> Handler:
        try:
            return self.handlers[procedure]
        except KeyError:
            raise UnknownProcedure(self.service.name, procedure) from None


class ServiceImplementationBuilder:
    """Fluent builder that checks handlers against the declared service.

    Registration errors surface immediately; build() fails if any declared
    procedure is left without a handler.
    """

    def __init__(self, service: Service):
        self._service = service
        self._handlers: dict[str, Handler] = {}
        self._topics: list[Topic] = []

    def register(self, procedure: str, handler: Handler) -> ServiceImplementationBuilder:
        """Register the handler for a declared procedure."""
        if procedure not in self._service:
            raise UnknownProcedure(self._service.name, procedure)
        if procedure in self._handlers:
            raise DuplicateProcedure(self._service.name, procedure)
        if not callable(handler):
            raise TypeError(f"Handler for {self._service.name}.{procedure} must be callable")
        self._handlers[procedure] = handler
        return self

    def implements(self, procedure: str) -> Callable[[Handler], Handler]:
        """Decorator form of register()."""

        def decorator(handler: Handler) -> Handler:
            self.register(procedure, handler)
            return handler

        return decorator

    def publishes(self, *topics: Topic) -> ServiceImplementationBuilder:
        """Declare topics owned (and published) by this service."""
        self._topics.extend(topics)
        return self

    def build(self) -> ServiceImplementation:
        missing = [p.name for p in self._service if p.name not in self._handlers]
        if missing:
            raise MissingImplementation(self._service.name, missing)
        logger.debug(
            f"Built implementation for {self._service.name} "
            f"({len(self._handlers)} procedures, {len(self._topics)} topics)"
        )
        return ServiceImplementation(
            service=self._service,
            handlers=MappingProxyType(dict(self._handlers)),
            topics=tuple(self._topics),
        )
