from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Literal, Optional

logger = logging.getLogger(__name__)

EventKind = Literal["status", "log"]


@dataclass(frozen=True)
class GatewayEvent:
    kind: EventKind
    message: str
    level: str = "info"
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class Subscription:
    """Bounded queue of events for one consumer; iterate it with ``async for``."""

    def __init__(self, channel: "EventChannel", maxsize: int) -> None:
        self._channel = channel
        self._queue: "asyncio.Queue[Optional[GatewayEvent]]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def _offer(self, event: Optional[GatewayEvent]) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                # slow consumer: discard the oldest event instead of blocking publishers
                self._queue.get_nowait()
                self.dropped += 1

    async def get(self) -> Optional[GatewayEvent]:
        return await self._queue.get()

    def get_nowait(self) -> Optional[GatewayEvent]:
        return self._queue.get_nowait()

    def pending(self) -> List[GatewayEvent]:
        events = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is not None:
                events.append(event)
        return events

    def close(self) -> None:
        self._channel.unsubscribe(self)
        self._offer(None)

    def __aiter__(self) -> AsyncIterator[GatewayEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[GatewayEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


class EventChannel:
    """Explicit publish/subscribe channel for gateway status and log events."""

    def __init__(self, maxsize: int = 1000) -> None:
        self._maxsize = maxsize
        self._subscribers: List[Subscription] = []

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, self._maxsize)
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def publish(self, event: GatewayEvent) -> None:
        for subscription in list(self._subscribers):
            subscription._offer(event)

    def status(self, message: str, level: str = "info", **data: Any) -> None:
        self.publish(GatewayEvent(kind="status", message=message, level=level, data=data))

    def log(self, message: str, level: str = "info", **data: Any) -> None:
        self.publish(GatewayEvent(kind="log", message=message, level=level, data=data))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
