#!/usr/bin/env python3
"""
Messaging Unit Tests

Tests for the event bus, the message queues and the message bus.
Redis is exercised through a mocked client.
"""

import json
import unittest
from unittest.mock import MagicMock, Mock, patch

from redis.exceptions import ConnectionError as RedisConnectionError

from parkdesk.domain.aggregates import ParkingSession
from parkdesk.infrastructure.messaging import (
    EventBus, EventType, MessageType, Message, DomainEventMessage,
    CallbackEventHandler, LoggingEventHandler, InMemoryMessageQueue,
    RedisMessageQueue, MessageBus, MessageBrokerFactory
)


def make_event(event_type=EventType.SESSION_REGISTERED, **data):
    return DomainEventMessage(event_type=event_type, aggregate_id="s-1", data=data or {"plate": "ABC123"})


class TestMessages(unittest.TestCase):
    """Unit tests for message serialization"""

    def test_domain_event_json(self):
        """Test a domain event survives the wire format as its own type"""
        event = make_event(EventType.SESSION_SETTLED, plate="ABC123", final_cost=6000)

        restored = Message.from_json(event.to_json())

        self.assertIsInstance(restored, DomainEventMessage)
        self.assertEqual(restored.event_type, EventType.SESSION_SETTLED)
        self.assertEqual(restored.message_id, event.message_id)
        self.assertEqual(restored.data, {"plate": "ABC123", "final_cost": 6000})
        self.assertEqual(restored.timestamp, event.timestamp)

    def test_wire_shape(self):
        payload = json.loads(make_event().to_json())
        self.assertEqual(payload["message_type"], "domain_event")
        self.assertEqual(payload["event_type"], "session.registered")
        self.assertEqual(payload["aggregate_id"], "s-1")

    def test_plain_message(self):
        message = Message(message_type=MessageType.NOTIFICATION, source="desk-1")
        restored = Message.from_json(message.to_json())

        self.assertNotIsInstance(restored, DomainEventMessage)
        self.assertEqual(restored.message_type, MessageType.NOTIFICATION)
        self.assertEqual(restored.source, "desk-1")

    def test_from_aggregate_event(self):
        session = ParkingSession.register("ABC123", "car", 1000, "desk-1")
        event = DomainEventMessage.from_aggregate_event(session.clear_events()[0])

        self.assertEqual(event.event_type, EventType.SESSION_REGISTERED)
        self.assertEqual(event.aggregate_id, session.id)
        self.assertEqual(event.source, "parkdesk")


class TestEventBus(unittest.TestCase):
    """Unit tests for EventBus"""

    def setUp(self):
        self.bus = EventBus()

    def test_publish_to_subscribers(self):
        received = []
        handler = CallbackEventHandler(received.append)
        self.bus.subscribe(EventType.SESSION_REGISTERED, handler)
        self.bus.subscribe(EventType.SESSION_REGISTERED, handler)

        self.bus.publish(make_event())
        self.bus.publish(make_event(EventType.SESSION_CANCELLED))

        self.assertEqual(len(received), 1)

    def test_failing_handler_is_isolated(self):
        """Test one failing handler does not stop the others"""
        received = []
        self.bus.subscribe(EventType.SESSION_REGISTERED, CallbackEventHandler(Mock(side_effect=RuntimeError("boom"))))
        self.bus.subscribe(EventType.SESSION_REGISTERED, CallbackEventHandler(received.append))

        self.bus.publish(make_event())

        self.assertEqual(len(received), 1)

    def test_can_handle_filter(self):
        handler = Mock()
        handler.can_handle.return_value = False
        self.bus.subscribe(EventType.SESSION_REGISTERED, handler)

        self.bus.publish(make_event())

        handler.handle.assert_not_called()

    def test_subscribe_all_and_unsubscribe(self):
        received = []
        handler = CallbackEventHandler(received.append)
        self.bus.subscribe_all(handler)

        for event_type in EventType:
            self.bus.publish(make_event(event_type))
        self.assertEqual(len(received), len(EventType))

        self.bus.unsubscribe(EventType.TARIFFS_UPDATED, handler)
        self.bus.unsubscribe(EventType.TARIFFS_UPDATED, handler)
        self.bus.publish(make_event(EventType.TARIFFS_UPDATED))
        self.assertEqual(len(received), len(EventType))

        self.bus.clear_subscribers()
        self.bus.publish(make_event())
        self.assertEqual(len(received), len(EventType))

    def test_logging_handler_levels(self):
        """Test fee inconsistencies are logged as warnings"""
        handler = LoggingEventHandler()
        with self.assertLogs("LoggingEventHandler", level="INFO") as logs:
            handler.handle(make_event())
            handler.handle(make_event(EventType.FEE_INCONSISTENCY, plate="ABC123", category="truck"))

        self.assertTrue(logs.output[0].startswith("INFO"))
        self.assertTrue(logs.output[1].startswith("WARNING"))


class TestInMemoryMessageQueue(unittest.TestCase):
    """Unit tests for InMemoryMessageQueue"""

    def test_publish_keeps_messages_per_topic(self):
        queue = InMemoryMessageQueue()

        self.assertTrue(queue.publish("parkdesk.events", make_event()))
        queue.publish("other", make_event(EventType.SESSION_CANCELLED))

        self.assertEqual(len(queue.get_messages("parkdesk.events")), 1)
        self.assertEqual(queue.get_messages("other")[0].event_type, EventType.SESSION_CANCELLED)
        self.assertEqual(queue.get_messages("missing"), [])

        queue.clear()
        self.assertEqual(queue.get_messages("parkdesk.events"), [])


class TestRedisMessageQueue(unittest.TestCase):
    """Unit tests for RedisMessageQueue with a mocked client"""

    def setUp(self):
        self.client = MagicMock()
        self.client.publish.return_value = 0
        self.queue = RedisMessageQueue(client=self.client)

    def test_publish_serializes_message(self):
        """Test a publish with no listeners still counts as delivered to the broker"""
        event = make_event()
        self.assertTrue(self.queue.publish("parkdesk.events", event))

        topic, payload = self.client.publish.call_args[0]
        self.assertEqual(topic, "parkdesk.events")
        self.assertEqual(json.loads(payload)["message_id"], str(event.message_id))
        self.assertEqual(Message.from_json(payload).event_type, EventType.SESSION_REGISTERED)

    def test_publish_failure_returns_false(self):
        self.client.publish.side_effect = RedisConnectionError("connection refused")
        with self.assertLogs("RedisMessageQueue", level="ERROR"):
            self.assertFalse(self.queue.publish("parkdesk.events", make_event()))

    def test_close(self):
        self.queue.close()
        self.client.close.assert_called_once()


class TestMessageBus(unittest.TestCase):
    """Unit tests for MessageBus"""

    def test_publish_reaches_bus_and_queue(self):
        queue = InMemoryMessageQueue()
        bus = MessageBus(message_queue=queue, topic="lot-7")
        received = []
        bus.subscribe_to_events(EventType.TARIFFS_UPDATED, CallbackEventHandler(received.append))

        bus.emit(EventType.TARIFFS_UPDATED, {"categories": ["car"]})

        self.assertEqual(received[0].data, {"categories": ["car"]})
        self.assertEqual(len(queue.get_messages("lot-7")), 1)

    def test_publish_aggregate_events(self):
        queue = InMemoryMessageQueue()
        bus = MessageBus(message_queue=queue)
        session = ParkingSession.register("ABC123", "car", 1000, "desk-1")
        session.settle(5000, 3000)

        bus.publish_aggregate_events(session.clear_events())

        types = [m.event_type for m in queue.get_messages("parkdesk.events")]
        self.assertEqual(types, [EventType.SESSION_REGISTERED, EventType.SESSION_SETTLED])

    def test_retry_then_success(self):
        """Test a transient broker failure is retried"""
        queue = Mock()
        queue.publish.side_effect = [RuntimeError("broker down"), False, True]
        bus = MessageBus(message_queue=queue, retry_delay=0)

        bus.publish_event(make_event())

        self.assertEqual(queue.publish.call_count, 3)

    def test_retry_gives_up(self):
        queue = Mock()
        queue.publish.return_value = False
        bus = MessageBus(message_queue=queue, max_retries=2, retry_delay=0)

        with self.assertLogs("MessageBus", level="ERROR"):
            bus.publish_event(make_event())
        self.assertEqual(queue.publish.call_count, 2)

    def test_backoff_delays(self):
        queue = Mock()
        queue.publish.return_value = False
        bus = MessageBus(message_queue=queue, max_retries=3, retry_delay=0.5)

        with patch("parkdesk.infrastructure.messaging.time.sleep") as sleep:
            bus.publish_event(make_event())

        self.assertEqual([c[0][0] for c in sleep.call_args_list], [0.5, 1.0])

    def test_close_closes_queue(self):
        queue = Mock()
        MessageBus(message_queue=queue).close()
        queue.close.assert_called_once()


class TestMessageBrokerFactory(unittest.TestCase):
    """Unit tests for MessageBrokerFactory"""

    def test_broker_types(self):
        self.assertIsNone(MessageBrokerFactory.create_message_bus("none").message_queue)
        self.assertIsInstance(
            MessageBrokerFactory.create_message_bus("memory", topic="t").message_queue,
            InMemoryMessageQueue
        )
        with self.assertRaises(ValueError):
            MessageBrokerFactory.create_message_bus("kafka")

    def test_redis_broker(self):
        with patch("parkdesk.infrastructure.messaging.redis.Redis.from_url") as from_url:
            bus = MessageBrokerFactory.create_message_bus("redis", redis_url="redis://cache:6379")

        from_url.assert_called_once_with("redis://cache:6379")
        self.assertIsInstance(bus.message_queue, RedisMessageQueue)


if __name__ == '__main__':
    unittest.main()
