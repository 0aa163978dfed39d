"""Row change feed for bookings and room blocks.

Writers publish a ``ChangeEvent`` after committing. Timeline views subscribe
for one table and one day; they re-fetch the whole day on every event instead
of patching their state.
"""
from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from itertools import count
from typing import Optional

import pika
from pika.exceptions import AMQPError

from .config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    type: str
    row_id: int
    room_id: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def touches(self, day: date) -> bool:
        if self.start_time is None:
            return True
        end = self.end_time or self.start_time
        return self.start_time.date() <= day <= end.date()

    def to_message(self) -> str:
        payload = asdict(self)
        for key in ("start_time", "end_time"):
            if payload[key] is not None:
                payload[key] = payload[key].isoformat()
        return json.dumps({"event": f"{self.table}.{self.type.lower()}", **payload})


@dataclass(eq=False)
class Subscription:
    id: int
    table: str
    day: Optional[date]
    loop: asyncio.AbstractEventLoop
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        return self.day is None or event.touches(self.day)

    async def get(self) -> ChangeEvent:
        return await self.queue.get()


class ChangeFeed:
    """In-process publish/subscribe hub; ``publish`` may be called from any thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: dict[int, Subscription] = {}
        self._ids = count(1)

    def subscribe(self, table: str, day: Optional[date] = None) -> Subscription:
        subscription = Subscription(id=next(self._ids), table=table, day=day, loop=asyncio.get_running_loop())
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.id, None)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: ChangeEvent) -> int:
        with self._lock:
            targets = [sub for sub in self._subscriptions.values() if sub.matches(event)]
        delivered = 0
        for subscription in targets:
            try:
                subscription.loop.call_soon_threadsafe(subscription.queue.put_nowait, event)
                delivered += 1
            except RuntimeError:
                # Loop already closed: the view went away without unsubscribing.
                self.unsubscribe(subscription)
        if settings.rabbitmq_enabled:
            publish_to_rabbitmq(event)
        return delivered


def publish_to_rabbitmq(event: ChangeEvent) -> None:
    """Mirror an event to the durable RabbitMQ queue; failures are logged, not raised."""

    try:
        connection = pika.BlockingConnection(pika.ConnectionParameters(host=settings.rabbitmq_host))
        try:
            channel = connection.channel()
            channel.queue_declare(queue=settings.rabbitmq_queue, durable=True)
            channel.basic_publish(
                exchange="",
                routing_key=settings.rabbitmq_queue,
                body=event.to_message(),
                properties=pika.BasicProperties(delivery_mode=2),
            )
        finally:
            connection.close()
    except AMQPError:
        logger.error("Could not publish %s.%s for row %s to RabbitMQ", event.table, event.type, event.row_id, exc_info=True)


change_feed = ChangeFeed()
