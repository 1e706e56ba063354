"""
Realtime change events for chat and booking state.

Writers publish a ChangeEvent after their transaction commits; live views
subscribe to one topic and consume events through a Subscription handle.
Two transports are provided:

- InMemoryTransport: single process, thread-safe, used by default and in tests
- RedisTransport: Redis pub/sub with JSON payloads, for multi-process deployments

Every topic carries its own monotonically increasing sequence number so a
consumer can detect that it missed events and reload from storage.
"""

import json
import logging
import queue
import threading
import time
from dataclasses import asdict, dataclass, field

import redis
from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import transaction
from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)


EVENT_INSERT = 'INSERT'
EVENT_UPDATE = 'UPDATE'
EVENT_TYPES = (EVENT_INSERT, EVENT_UPDATE)

TABLE_MESSAGES = 'messages'
TABLE_BOOKINGS = 'bookings'

DEFAULT_TRANSPORT = 'courier.realtime.InMemoryTransport'


def messages_topic(booking_id):
    return f'{TABLE_MESSAGES}:{booking_id}'


def bookings_topic(booking_id):
    return f'{TABLE_BOOKINGS}:{booking_id}'


@dataclass
class ChangeEvent:
    """A row-level change notification."""

    topic: str
    event_type: str
    table: str
    record: dict = field(default_factory=dict)
    sequence: int = None

    def to_json(self):
        return json.dumps(asdict(self), cls=DjangoJSONEncoder)

    @classmethod
    def from_json(cls, payload):
        data = json.loads(payload)
        return cls(
            topic=data['topic'],
            event_type=data['event_type'],
            table=data['table'],
            record=data.get('record') or {},
            sequence=data.get('sequence'),
        )


class Subscription:
    """
    Handle for one topic subscription.

    Events are buffered until consumed with ``get`` or ``drain``. ``close`` is
    idempotent and releases the subscription from its transport; use the
    handle as a context manager to release it on every exit path.
    """

    def __init__(self, transport, topic, event_types=EVENT_TYPES):
        self.transport = transport
        self.topic = topic
        self.event_types = frozenset(event_types)
        self.closed = False
        self._queue = queue.Queue()

    def matches(self, event):
        return event.topic == self.topic and event.event_type in self.event_types

    def deliver(self, event):
        if not self.closed and self.matches(event):
            self._queue.put(event)

    def get(self, timeout=None):
        """
        Return the next event, or None if none arrives within ``timeout``
        seconds. ``timeout=None`` blocks until an event arrives.
        """
        if self.closed:
            return None
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self):
        """Return every event already buffered without blocking."""
        events = []
        while True:
            event = self.get(timeout=0)
            if event is None:
                return events
            events.append(event)

    def close(self):
        if self.closed:
            return
        self.closed = True
        self.transport.unsubscribe(self)
        logger.info(f"Subscription closed: topic={self.topic}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class BaseTransport:
    """Interface every realtime transport implements."""

    def subscribe(self, topic, event_types=EVENT_TYPES):
        raise NotImplementedError

    def unsubscribe(self, subscription):
        raise NotImplementedError

    def publish(self, event):
        """Assign the next sequence number of the event's topic and deliver it."""
        raise NotImplementedError

    def next_sequence(self, topic):
        raise NotImplementedError

    def current_sequence(self, topic):
        raise NotImplementedError

    def close(self):
        pass


class InMemoryTransport(BaseTransport):
    """Thread-safe in-process fan-out."""

    def __init__(self):
        self._lock = threading.RLock()
        self._subscriptions = {}
        self._sequences = {}

    def subscribe(self, topic, event_types=EVENT_TYPES):
        subscription = Subscription(self, topic, event_types)
        with self._lock:
            self._subscriptions.setdefault(topic, []).append(subscription)
        logger.info(f"Subscription opened: topic={topic}")
        return subscription

    def unsubscribe(self, subscription):
        with self._lock:
            subscriptions = self._subscriptions.get(subscription.topic, [])
            if subscription in subscriptions:
                subscriptions.remove(subscription)
            if not subscriptions:
                self._subscriptions.pop(subscription.topic, None)

    def subscriber_count(self, topic):
        with self._lock:
            return len(self._subscriptions.get(topic, []))

    def next_sequence(self, topic):
        with self._lock:
            self._sequences[topic] = self._sequences.get(topic, 0) + 1
            return self._sequences[topic]

    def current_sequence(self, topic):
        with self._lock:
            return self._sequences.get(topic, 0)

    def publish(self, event):
        # Numbering and fan-out share the lock so delivery order follows sequence order
        with self._lock:
            if event.sequence is None:
                event.sequence = self.next_sequence(event.topic)
            else:
                self._sequences[event.topic] = max(self.current_sequence(event.topic), event.sequence)
            subscriptions = list(self._subscriptions.get(event.topic, []))
            for subscription in subscriptions:
                subscription.deliver(event)
        return event

    def close(self):
        with self._lock:
            subscriptions = [s for subs in self._subscriptions.values() for s in subs]
        for subscription in subscriptions:
            subscription.close()


class RedisSubscription(Subscription):
    """Subscription backed by a Redis PubSub connection."""

    def __init__(self, transport, topic, event_types, pubsub):
        super().__init__(transport, topic, event_types)
        self._pubsub = pubsub

    def get(self, timeout=None):
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.closed:
            if deadline is None:
                wait = 1.0
            else:
                wait = max(0.0, deadline - time.monotonic())

            message = self._pubsub.get_message(timeout=wait)
            if message is not None and message.get('type') == 'message':
                try:
                    event = ChangeEvent.from_json(message['data'])
                except (ValueError, KeyError, TypeError):
                    logger.warning(f"Dropping malformed realtime payload on {self.topic}")
                    continue
                if self.matches(event):
                    return event
                continue

            if deadline is not None and time.monotonic() >= deadline:
                return None
        return None

    def drain(self):
        events = []
        while True:
            event = self.get(timeout=0)
            if event is None:
                return events
            events.append(event)


class RedisTransport(BaseTransport):
    """
    Redis pub/sub transport.

    Events are published as JSON on a channel named after the topic; the
    per-topic sequence lives in the ``courier:seq:<topic>`` counter.
    """

    SEQUENCE_KEY = 'courier:seq:{topic}'

    def __init__(self, url=None, client=None):
        self.url = url or settings.COURIER.get('REDIS_URL', 'redis://localhost:6379/0')
        self.client = client if client is not None else redis.from_url(self.url, decode_responses=True)

    def subscribe(self, topic, event_types=EVENT_TYPES):
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(topic)
        logger.info(f"Subscription opened: topic={topic} (redis)")
        return RedisSubscription(self, topic, event_types, pubsub)

    def unsubscribe(self, subscription):
        pubsub = getattr(subscription, '_pubsub', None)
        if pubsub is None:
            return
        try:
            pubsub.unsubscribe(subscription.topic)
            pubsub.close()
        except redis.RedisError:
            logger.warning(f"Error releasing redis subscription for {subscription.topic}", exc_info=True)

    def next_sequence(self, topic):
        return int(self.client.incr(self.SEQUENCE_KEY.format(topic=topic)))

    def current_sequence(self, topic):
        value = self.client.get(self.SEQUENCE_KEY.format(topic=topic))
        return int(value) if value is not None else 0

    def publish(self, event):
        if event.sequence is None:
            event.sequence = self.next_sequence(event.topic)
        self.client.publish(event.topic, event.to_json())
        return event

    def close(self):
        self.client.close()


_transport = None
_transport_lock = threading.Lock()


def get_transport():
    """Return the process-wide transport configured in ``COURIER['REALTIME_TRANSPORT']``."""
    global _transport
    with _transport_lock:
        if _transport is None:
            path = settings.COURIER.get('REALTIME_TRANSPORT', DEFAULT_TRANSPORT)
            _transport = import_string(path)()
        return _transport


def reset_transport():
    """Close and forget the process-wide transport."""
    global _transport
    with _transport_lock:
        transport, _transport = _transport, None
    if transport is not None:
        transport.close()


def publish_change(topic, event_type, table, record):
    """
    Publish one change event. Failures are logged and swallowed: the write
    that caused the event has already committed.

    Returns:
        ChangeEvent or None if publishing failed
    """
    event = ChangeEvent(topic=topic, event_type=event_type, table=table, record=record)
    try:
        return get_transport().publish(event)
    except Exception as e:
        logger.error(f"Failed to publish {event_type} on {topic}: {e}", exc_info=True)
        return None


def publish_on_commit(topic, event_type, table, record):
    """Schedule ``publish_change`` for after the current transaction commits."""
    transaction.on_commit(lambda: publish_change(topic, event_type, table, record))
