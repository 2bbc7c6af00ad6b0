# File: parkdesk/infrastructure/messaging.py
"""
Messaging Infrastructure for the Parking Desk

This module implements messaging patterns for event-driven communication:
1. Event Bus - For intra-process event publishing/subscription
2. Message Queue - Outbound publishing for other processes (dashboards, auditing)
3. Message Bus - Routes domain events to the bus and the queue

Key Patterns:
- Publish/Subscribe
- Retry with exponential backoff on broker publish

Supported Brokers:
- Redis Pub/Sub
- In-memory (for testing)
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, List, Any, Callable
from datetime import datetime, timezone
import logging
import json
from dataclasses import dataclass, asdict, field
from enum import Enum
from uuid import UUID, uuid4
import time
import threading

import redis
from redis.exceptions import RedisError

from ..domain.aggregates import DomainEvent as AggregateEvent


# ============================================================================
# MESSAGE TYPES AND ENUMS
# ============================================================================

class MessageType(str, Enum):
    """Types of messages in the system"""
    DOMAIN_EVENT = "domain_event"
    NOTIFICATION = "notification"


class EventType(str, Enum):
    """Domain event types"""
    # Session events
    SESSION_REGISTERED = "session.registered"
    SESSION_SETTLED = "session.settled"
    SESSION_CANCELLED = "session.cancelled"

    # Tariff events
    TARIFFS_UPDATED = "tariffs.updated"
    TARIFFS_SEEDED = "tariffs.seeded"

    # Data inconsistencies
    FEE_INCONSISTENCY = "fee.inconsistency"


# ============================================================================
# MESSAGE BASE CLASSES
# ============================================================================

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Message:
    """Base message class"""
    message_id: UUID = field(default_factory=uuid4)
    message_type: MessageType = MessageType.DOMAIN_EVENT
    timestamp: datetime = field(default_factory=_utcnow)
    source: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to dictionary"""
        data = asdict(self)
        data['message_id'] = str(self.message_id)
        data['timestamp'] = self.timestamp.isoformat()
        return data

    def to_json(self) -> str:
        """Convert message to JSON string"""
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Message':
        """Create message from dictionary"""
        data = dict(data)
        data['timestamp'] = datetime.fromisoformat(data['timestamp'])
        data['message_id'] = UUID(str(data['message_id']))
        message_type = data.get('message_type')
        if message_type == MessageType.DOMAIN_EVENT.value and cls is Message:
            return DomainEventMessage.from_dict(data)
        if message_type is not None:
            data['message_type'] = MessageType(message_type)
        return cls(**data)

    @classmethod
    def from_json(cls, json_str: str) -> 'Message':
        """Create message from JSON string"""
        return cls.from_dict(json.loads(json_str))


@dataclass
class DomainEventMessage(Message):
    """Domain event message"""
    event_type: EventType = EventType.SESSION_REGISTERED
    aggregate_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.message_type = MessageType.DOMAIN_EVENT
        self.event_type = EventType(self.event_type)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DomainEventMessage':
        data = dict(data)
        if isinstance(data.get('timestamp'), str):
            data['timestamp'] = datetime.fromisoformat(data['timestamp'])
        if not isinstance(data.get('message_id'), UUID):
            data['message_id'] = UUID(str(data['message_id']))
        data['message_type'] = MessageType.DOMAIN_EVENT
        data['event_type'] = EventType(data['event_type'])
        return cls(**data)

    @classmethod
    def from_aggregate_event(cls, event: AggregateEvent, source: str = "parkdesk") -> 'DomainEventMessage':
        """Wrap an event raised by an aggregate"""
        payload = event.data()
        return cls(
            event_type=EventType(event.event_type),
            aggregate_id=payload.get("session_id"),
            data=payload,
            source=source,
        )


# ============================================================================
# EVENT HANDLERS
# ============================================================================

class EventHandler(ABC):
    """Abstract base class for event handlers"""

    @abstractmethod
    def handle(self, event: DomainEventMessage) -> None:
        """Handle a domain event"""
        pass

    def can_handle(self, event: DomainEventMessage) -> bool:
        """Check if this handler can handle the event"""
        return True


class CallbackEventHandler(EventHandler):
    """Adapts a plain callable to the handler interface"""

    def __init__(self, callback: Callable[[DomainEventMessage], None]):
        self.callback = callback

    def handle(self, event: DomainEventMessage) -> None:
        self.callback(event)


class LoggingEventHandler(EventHandler):
    """Writes every event to the audit log"""

    def __init__(self):
        self._logger = logging.getLogger(self.__class__.__name__)

    def handle(self, event: DomainEventMessage) -> None:
        level = logging.WARNING if event.event_type == EventType.FEE_INCONSISTENCY else logging.INFO
        self._logger.log(level, f"{event.event_type.value}: {event.data}")


# ============================================================================
# EVENT BUS (In-memory)
# ============================================================================

class EventBus:
    """
    In-memory event bus for intra-process event publishing

    A failing handler is logged and skipped; the remaining handlers still
    receive the event.
    """

    def __init__(self):
        self._subscribers: Dict[EventType, List[EventHandler]] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Subscribe to events of a specific type"""
        with self._lock:
            handlers = self._subscribers.setdefault(event_type, [])
            if handler not in handlers:
                handlers.append(handler)
                self._logger.debug(f"Subscribed {handler.__class__.__name__} to {event_type}")

    def subscribe_all(self, handler: EventHandler) -> None:
        for event_type in EventType:
            self.subscribe(event_type, handler)

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Unsubscribe handler from events"""
        with self._lock:
            try:
                self._subscribers.get(event_type, []).remove(handler)
                self._logger.debug(f"Unsubscribed {handler.__class__.__name__} from {event_type}")
            except ValueError:
                pass

    def publish(self, event: DomainEventMessage) -> None:
        """Publish an event to all subscribers"""
        self._logger.debug(f"Publishing event: {event.event_type} (ID: {event.message_id})")

        with self._lock:
            handlers = list(self._subscribers.get(event.event_type, []))

        for handler in handlers:
            if handler.can_handle(event):
                try:
                    handler.handle(event)
                except Exception as e:
                    self._logger.error(
                        f"Error handling event {event.event_type} with {handler.__class__.__name__}: {e}",
                        exc_info=True
                    )

    def clear_subscribers(self) -> None:
        """Clear all subscribers (for testing)"""
        with self._lock:
            self._subscribers.clear()


# ============================================================================
# MESSAGE QUEUE ABSTRACTIONS
# ============================================================================

class MessageQueue(ABC):
    """Outbound message queue: events are published for other processes to consume"""

    @abstractmethod
    def publish(self, topic: str, message: Message) -> bool:
        """Publish a message to a topic"""
        pass

    def close(self) -> None:
        pass


class InMemoryMessageQueue(MessageQueue):
    """In-memory message queue; keeps published messages per topic"""

    def __init__(self):
        self._messages: Dict[str, List[Message]] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def publish(self, topic: str, message: Message) -> bool:
        with self._lock:
            self._messages.setdefault(topic, []).append(message)
        self._logger.debug(f"Published to {topic}: {message.message_id}")
        return True

    def get_messages(self, topic: str) -> List[Message]:
        """Messages published to a topic, oldest first"""
        with self._lock:
            return list(self._messages.get(topic, []))

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()


class RedisMessageQueue(MessageQueue):
    """Publishes JSON messages to Redis Pub/Sub channels"""

    def __init__(self, redis_url: str = "redis://localhost:6379", client: Optional[Any] = None, **kwargs):
        self.redis_url = redis_url
        self._logger = logging.getLogger(self.__class__.__name__)
        self.redis_client = client or redis.Redis.from_url(redis_url, **kwargs)

    def publish(self, topic: str, message: Message) -> bool:
        """Publish a message to a Redis channel"""
        try:
            receivers = self.redis_client.publish(topic, message.to_json())
        except RedisError as e:
            self._logger.error(f"Error publishing to Redis: {e}")
            return False
        self._logger.debug(f"Published {message.message_id} to {topic} ({receivers} receivers)")
        return True

    def close(self) -> None:
        self.redis_client.close()
        self._logger.info("Redis connection closed")


# ============================================================================
# MESSAGE BUS
# ============================================================================

class MessageBus:
    """
    Routes domain events to the in-process event bus and, when configured,
    to an external message queue under a single topic
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        message_queue: Optional[MessageQueue] = None,
        topic: str = "parkdesk.events",
        max_retries: int = 3,
        retry_delay: float = 0.5
    ):
        self.event_bus = event_bus or EventBus()
        self.message_queue = message_queue
        self.topic = topic
        self.max_retries = max_retries
        self.retry_delay = retry_delay  # seconds
        self._logger = logging.getLogger(self.__class__.__name__)

    def publish_event(self, event: DomainEventMessage) -> None:
        """Publish a domain event through all channels"""
        self._logger.debug(f"Publishing event {event.event_type} (ID: {event.message_id})")

        self.event_bus.publish(event)

        if self.message_queue and not self._publish_with_retry(self.topic, event):
            self._logger.error(f"Failed to publish message {event.message_id} to {self.topic}")

    def publish_aggregate_events(self, events: List[AggregateEvent]) -> None:
        for event in events:
            self.publish_event(DomainEventMessage.from_aggregate_event(event))

    def emit(self, event_type: EventType, data: Dict[str, Any], aggregate_id: Optional[str] = None) -> None:
        self.publish_event(DomainEventMessage(
            event_type=event_type, aggregate_id=aggregate_id, data=data, source="parkdesk"
        ))

    def _publish_with_retry(self, topic: str, message: Message) -> bool:
        """Publish message with retry logic"""
        for attempt in range(self.max_retries):
            try:
                if self.message_queue.publish(topic, message):
                    return True
            except Exception as e:
                self._logger.warning(f"Attempt {attempt + 1} failed for message {message.message_id}: {e}")
            if attempt < self.max_retries - 1:
                time.sleep(self.retry_delay * (2 ** attempt))  # Exponential backoff

        return False

    def subscribe_to_events(self, event_type: EventType, handler: EventHandler) -> None:
        """Subscribe to events on the event bus"""
        self.event_bus.subscribe(event_type, handler)

    def close(self):
        """Close all messaging components"""
        if self.message_queue:
            self.message_queue.close()
        self._logger.info("Message bus closed")


# ============================================================================
# MESSAGE BROKER FACTORY
# ============================================================================

class MessageBrokerFactory:
    """Factory for creating message brokers"""

    @staticmethod
    def create_redis_broker(redis_url: str = "redis://localhost:6379", **kwargs) -> RedisMessageQueue:
        """Create Redis message broker"""
        return RedisMessageQueue(redis_url, **kwargs)

    @staticmethod
    def create_in_memory_broker() -> InMemoryMessageQueue:
        """Create in-memory message broker (for testing)"""
        return InMemoryMessageQueue()

    @staticmethod
    def create_message_bus(
        broker_type: str = "memory",
        topic: str = "parkdesk.events",
        **kwargs
    ) -> MessageBus:
        """Create a message bus with the configured broker"""
        if broker_type == "redis":
            broker = MessageBrokerFactory.create_redis_broker(**kwargs)
        elif broker_type == "memory":
            broker = MessageBrokerFactory.create_in_memory_broker()
        elif broker_type == "none":
            broker = None
        else:
            raise ValueError(f"Unknown broker type: {broker_type}")

        return MessageBus(event_bus=EventBus(), message_queue=broker, topic=topic)
