"""
Event subscription.

``EventsService`` is the subscription surface providers connect to.
``InMemoryEventBus`` delivers published events to the subscribers of their
topic in order; a failing subscriber never fails the publisher, the event is
recorded in the dead letter list and dropped.
"""

from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Sequence

import logfire

from dirsync.events.models import EventParams


EventHandler = Callable[[EventParams], Awaitable[None]]


@dataclass
class Subscription:
    id: str
    topics: Sequence[str]
    on_event: EventHandler


class EventsService(ABC):
    """Delivers events published on named topics to subscribers."""

    @abstractmethod
    async def subscribe(self, id: str, topics: Sequence[str], on_event: EventHandler) -> None:
        pass

    @abstractmethod
    async def publish(self, params: EventParams) -> None:
        pass


class InMemoryEventBus(EventsService):
    """In-process event bus."""

    def __init__(self, max_dead_letters: int = 1000):
        self._subscriptions: Dict[str, List[Subscription]] = defaultdict(list)
        self.dead_letters: Deque[Dict[str, Any]] = deque(maxlen=max_dead_letters)

    async def subscribe(self, id: str, topics: Sequence[str], on_event: EventHandler) -> None:
        subscription = Subscription(id=id, topics=list(topics), on_event=on_event)
        for topic in subscription.topics:
            self._subscriptions[topic].append(subscription)
        logfire.info("Subscribed to events", subscriber=id, topics=list(topics))

    def subscribers(self, topic: str) -> List[str]:
        return [s.id for s in self._subscriptions.get(topic, [])]

    async def publish(self, params: EventParams) -> None:
        subscriptions = list(self._subscriptions.get(params.topic, []))
        if not subscriptions:
            logfire.debug("No subscribers for event", topic=params.topic)
            return

        for subscription in subscriptions:
            with logfire.span("Deliver event", topic=params.topic, subscriber=subscription.id,
                              event_type=params.event_payload.type):
                try:
                    await subscription.on_event(params)
                except Exception as e:
                    logfire.error(
                        "Event handler failed, dropping event",
                        topic=params.topic,
                        subscriber=subscription.id,
                        event_type=params.event_payload.type,
                        error=str(e)
                    )
                    self.dead_letters.append({
                        "subscriber": subscription.id,
                        "event": params.event_payload.to_dict(),
                        "error": str(e),
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                    })
