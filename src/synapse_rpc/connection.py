"""Connection lifecycle shared by client and server channels.

A Connection is a live channel instance for one streaming or duplex call:
- Push-stream (SUBSCRIPTION): server side is send-only, client side receive-only
- Duplex (BIDIRECTIONAL): both sides send and receive named messages

Close listeners run exactly once, in registration order, when the connection
leaves the OPEN state; closing twice is a no-op.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .schema import Procedure

logger = logging.getLogger(__name__)

# Name under which transport frames are dispatched; matches every listener
WILDCARD = "*"

CloseListener = Callable[[], Awaitable[None] | None]
MessageCallback = Callable[["DuplexConnection", Any], Awaitable[None] | None]


class ConnectionState(str, Enum):
    """Connection state machine."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    ERRORED = "errored"


class Direction(str, Enum):
    """Which way application payloads flow on this side of the connection."""

    SEND = "send"
    RECEIVE = "receive"
    DUPLEX = "duplex"


@dataclass(frozen=True)
class MessageListener:
    """A named inbound message listener."""

    name: str
    callback: MessageCallback

    def matches(self, name: str) -> bool:
        return name == WILDCARD or self.name == WILDCARD or self.name == name


async def call_listener(callback: Callable[..., Any], *args: Any) -> None:
    """Invoke a sync or async listener."""
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class Connection:
    """Base class for all connection objects."""

    def __init__(
        self,
        procedure: Procedure,
        direction: Direction,
        state: ConnectionState = ConnectionState.CONNECTING,
    ):
        self.procedure = procedure
        self.direction = direction
        self._state = state
        self._close_listeners: list[CloseListener] = []
        self._close_notified = False
        self._late_listener_tasks: set[asyncio.Future[Any]] = set()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == ConnectionState.OPEN

    @property
    def is_closed(self) -> bool:
        return self._state in (ConnectionState.CLOSED, ConnectionState.ERRORED)

    @property
    def is_sendable(self) -> bool:
        return self._state == ConnectionState.OPEN

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            logger.debug(f"{self!r}: {self._state.value} -> {state.value}")
            self._state = state

    def on_close(self, listener: CloseListener) -> CloseListener:
        """Register a close listener.

        Registering after the connection closed runs the listener right away,
        so cleanup registered late (e.g. a fan-out unsubscribe) still happens.
        """
        if self._close_notified:
            result = listener()
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._late_listener_tasks.add(task)
                task.add_done_callback(self._late_listener_done)
            return listener
        self._close_listeners.append(listener)
        return listener

    def _late_listener_done(self, task: asyncio.Future[Any]) -> None:
        self._late_listener_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                f"Error in close listener for {self.procedure.name}", exc_info=error
            )

    async def _notify_closed(self) -> None:
        """Run close listeners once, in registration order."""
        if self._close_notified:
            return
        self._close_notified = True
        listeners, self._close_listeners = self._close_listeners, []
        for listener in listeners:
            try:
                await call_listener(listener)
            except Exception:
                logger.exception(f"Error in close listener for {self.procedure.name}")

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}({self.procedure.name}, "
            f"{self.direction.value}, {self._state.value})"
        )


class DuplexConnection(Connection):
    """Connection carrying named application messages in both directions."""

    def __init__(
        self,
        procedure: Procedure,
        state: ConnectionState = ConnectionState.CONNECTING,
    ):
        super().__init__(procedure, Direction.DUPLEX, state)
        self._message_listeners: list[MessageListener] = []

    def on_message(self, name: str, callback: MessageCallback) -> MessageListener:
        """Register a named message listener. Any number may share a name."""
        listener = MessageListener(name=name, callback=callback)
        self._message_listeners.append(listener)
        return listener

    def remove_message_listener(self, listener: MessageListener) -> None:
        if listener in self._message_listeners:
            self._message_listeners.remove(listener)

    @property
    def message_listeners(self) -> list[MessageListener]:
        return list(self._message_listeners)

    async def dispatch(self, message: Any, name: str = WILDCARD) -> int:
        """Deliver a message to every listener registered under a matching name.

        Listeners run sequentially in registration order. Messages matching no
        listener are dropped. If a listener raises, the remaining listeners
        still run and the first error is re-raised afterwards.

        Returns:
            Number of listeners invoked
        """
        matched = [listener for listener in self._message_listeners if listener.matches(name)]
        if not matched:
            logger.debug(f"{self!r}: dropping message with no listener for '{name}'")
            return 0

        first_error: Exception | None = None
        for listener in matched:
            try:
                await call_listener(listener.callback, self, message)
            except Exception as e:
                if first_error is None:
                    first_error = e
                else:
                    logger.exception(f"Additional error in message listener '{listener.name}'")
        if first_error is not None:
            raise first_error
        return len(matched)

    def _clear_listeners(self) -> None:
        self._message_listeners.clear()

    async def send(self, message: Any) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError
