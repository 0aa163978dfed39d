"""Unit tests for the change feed."""
import asyncio
import json
import threading
from datetime import date, datetime
from unittest.mock import patch

from pika.exceptions import AMQPConnectionError

from common import events
from common.events import INSERT, UPDATE, ChangeEvent, ChangeFeed, publish_to_rabbitmq


def event(day: int = 10, table: str = "bookings", kind: str = INSERT) -> ChangeEvent:
    return ChangeEvent(
        table=table,
        type=kind,
        row_id=3,
        room_id=1,
        start_time=datetime(2030, 3, day, 9),
        end_time=datetime(2030, 3, day, 10),
    )


class TestChangeEvent:
    """Test event matching and serialization."""

    def test_touches_its_days(self):
        overnight = ChangeEvent("bookings", INSERT, 1, 1, datetime(2030, 3, 10, 22), datetime(2030, 3, 11, 1))
        assert overnight.touches(date(2030, 3, 10)) is True
        assert overnight.touches(date(2030, 3, 11)) is True
        assert overnight.touches(date(2030, 3, 12)) is False

    def test_message_payload(self):
        payload = json.loads(event().to_message())
        assert payload["event"] == "bookings.insert"
        assert payload["row_id"] == 3
        assert payload["start_time"] == "2030-03-10T09:00:00"


class TestChangeFeed:
    """Test subscription filtering and delivery."""

    def test_delivers_to_matching_subscribers_only(self):
        feed = ChangeFeed()

        async def scenario():
            same_day = feed.subscribe("bookings", date(2030, 3, 10))
            other_day = feed.subscribe("bookings", date(2030, 3, 11))
            other_table = feed.subscribe("room_blocks", date(2030, 3, 10))

            delivered = feed.publish(event())
            received = await asyncio.wait_for(same_day.get(), timeout=1)

            assert delivered == 1
            assert received.row_id == 3
            assert other_day.queue.empty()
            assert other_table.queue.empty()

        asyncio.run(scenario())

    def test_publish_from_worker_thread(self):
        feed = ChangeFeed()

        async def scenario():
            subscription = feed.subscribe("bookings")
            worker = threading.Thread(target=feed.publish, args=(event(kind=UPDATE),))
            worker.start()
            received = await asyncio.wait_for(subscription.get(), timeout=1)
            worker.join()
            assert received.type == UPDATE

        asyncio.run(scenario())

    def test_unsubscribe(self):
        feed = ChangeFeed()

        async def scenario():
            subscription = feed.subscribe("bookings")
            feed.unsubscribe(subscription)
            assert feed.subscriber_count() == 0
            assert feed.publish(event()) == 0

        asyncio.run(scenario())


class TestRabbitMQMirror:
    """Test the optional RabbitMQ mirror."""

    def test_broker_failure_is_logged_not_raised(self):
        with patch.object(events.pika, "BlockingConnection", side_effect=AMQPConnectionError("down")):
            publish_to_rabbitmq(event())

    def test_publishes_persistent_message(self):
        with patch.object(events.pika, "BlockingConnection") as connection:
            publish_to_rabbitmq(event())

        channel = connection.return_value.channel.return_value
        kwargs = channel.basic_publish.call_args.kwargs
        assert kwargs["routing_key"] == events.settings.rabbitmq_queue
        assert kwargs["properties"].delivery_mode == 2
        connection.return_value.close.assert_called_once()
