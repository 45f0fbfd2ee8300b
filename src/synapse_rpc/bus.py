"""Event Fan-Out Registry - topic-based pub/sub for streaming procedures.

SUBSCRIPTION and BIDIRECTIONAL implementations subscribe a callback under a
topic when their connection opens and remove it when the connection closes.
One-shot implementations publish state changes to every live subscriber.

One registry is owned by each Server and torn down when the server shuts down.
Topics are owned by the service that declared them; no other service may
publish on them.

Usage:
    TodoChanged = Topic("todo.changed", TodoEvent)

    fanout.define(TodoChanged, owner="Todo")
    sub = fanout.subscribe(TodoChanged, conn.write, predicate=lambda e: ...)
    conn.on_close(sub.unsubscribe)
    await fanout.publish(TodoChanged, TodoEvent(...), owner="Todo")
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .errors import TopicOwnershipError
from .shapes import Shape

logger = logging.getLogger(__name__)

# Subscriber callbacks may be plain functions or coroutines
EventCallback = Callable[[Any], Awaitable[None] | None]
EventPredicate = Callable[[Any], bool]


@dataclass(frozen=True)
class Topic:
    """Typed topic definition.

    The schema, when given, is used to validate every published event.
    """

    name: str
    schema: Any = None

    def validate(self, event: Any) -> Any:
        if self.schema is None:
            return event
        result = Shape.of(self.schema).validate(event)
        if not result.ok:
            details = "; ".join(str(v) for v in result.violations)
            raise ValueError(f"Invalid event for topic '{self.name}': {details}")
        return result.value


@dataclass(eq=False)
class Subscription:
    """A subscriber entry. Lives no longer than the connection that created it."""

    topic: str
    callback: EventCallback
    predicate: EventPredicate | None = None
    active: bool = True
    _registry: EventFanOut | None = field(default=None, repr=False)

    def accepts(self, event: Any) -> bool:
        if self.predicate is None:
            return True
        return bool(self.predicate(event))

    def unsubscribe(self) -> None:
        """Remove this entry. Safe to call more than once."""
        if self._registry is not None:
            self._registry.unsubscribe(self)
        else:
            self.active = False


class EventFanOut:
    """Mapping from topic to the set of live subscriber entries.

    The subscriber table is guarded by a lock; publish takes a snapshot and
    re-checks each entry before invoking it, so an entry removed while a
    publish is in flight is never called.
    """

    def __init__(self) -> None:
        self._topics: dict[str, str] = {}  # topic name -> owning service
        self._subscriptions: dict[str, set[Subscription]] = {}
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def define(self, topic: Topic | str, owner: str) -> None:
        """Declare a topic as owned by a service."""
        name = _topic_name(topic)
        with self._lock:
            current = self._topics.get(name)
            if current is not None and current != owner:
                raise TopicOwnershipError(
                    f"Topic '{name}' is already owned by service '{current}'"
                )
            self._topics[name] = owner
        logger.debug(f"Topic {name} defined by {owner}")

    def owner_of(self, topic: Topic | str) -> str | None:
        return self._topics.get(_topic_name(topic))

    def subscribe(
        self,
        topic: Topic | str,
        callback: EventCallback,
        predicate: EventPredicate | None = None,
    ) -> Subscription:
        """Add a subscriber entry under a topic.

        Returns:
            The Subscription; call unsubscribe() on it when the connection closes.
        """
        name = _topic_name(topic)
        subscription = Subscription(
            topic=name, callback=callback, predicate=predicate, _registry=self
        )
        with self._lock:
            if self._closed:
                subscription.active = False
                logger.warning(f"Subscribe to {name} after registry shutdown ignored")
                return subscription
            self._subscriptions.setdefault(name, set()).add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscriber entry. Removing an already-removed entry is a no-op."""
        with self._lock:
            subscription.active = False
            entries = self._subscriptions.get(subscription.topic)
            if entries is None:
                return
            entries.discard(subscription)
            if not entries:
                del self._subscriptions[subscription.topic]

    def subscriber_count(self, topic: Topic | str | None = None) -> int:
        with self._lock:
            if topic is None:
                return sum(len(entries) for entries in self._subscriptions.values())
            return len(self._subscriptions.get(_topic_name(topic), ()))

    async def publish(self, topic: Topic | str, event: Any, *, owner: str) -> int:
        """Deliver an event to every current subscriber whose predicate accepts it.

        Args:
            topic: The topic (or topic name) to publish on
            event: The event payload; validated when the Topic carries a schema
            owner: Name of the publishing service; must own the topic

        Returns:
            Number of subscribers invoked
        """
        name = _topic_name(topic)
        if isinstance(topic, Topic):
            event = topic.validate(event)

        with self._lock:
            current = self._topics.get(name)
            if current != owner:
                raise TopicOwnershipError(
                    f"Service '{owner}' cannot publish on topic '{name}' (owner: {current})"
                )
            # Copy so subscribe/unsubscribe during delivery doesn't mutate our iteration
            snapshot = list(self._subscriptions.get(name, ()))

        delivered = 0
        for subscription in snapshot:
            if not subscription.active:
                continue
            try:
                if not subscription.accepts(event):
                    continue
                result = subscription.callback(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Error in subscriber for {name}")
        return delivered

    def close(self) -> None:
        """Tear down the registry; every remaining entry is deactivated."""
        with self._lock:
            self._closed = True
            remaining = [s for entries in self._subscriptions.values() for s in entries]
            self._subscriptions.clear()
        for subscription in remaining:
            subscription.active = False
        if remaining:
            logger.info(f"Fan-out registry closed with {len(remaining)} live subscriber(s)")


def _topic_name(topic: Topic | str) -> str:
    return topic.name if isinstance(topic, Topic) else topic
