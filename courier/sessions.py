"""
Live views built on the realtime transport.

ChatSession keeps an ordered, de-duplicated copy of one conversation and
the booking's handoff state, fed by change events. UnreadBadge polls a
user's unread total on a fixed interval.

Both hold resources (subscriptions, a polling thread) and release them on
``close``/``stop``; use them as context managers.
"""

import bisect
import logging
import threading
from collections import namedtuple

from django.conf import settings
from django.db import connection
from django.utils.dateparse import parse_datetime

from . import messaging
from .conversations import get_unread_total
from .handoff import fetch_handoff_step, validate_delivery_code
from .models import Booking, Message, ROLE_SENDER, STEP_HANDED_OVER
from .realtime import (
    EVENT_INSERT, EVENT_TYPES, EVENT_UPDATE, TABLE_BOOKINGS,
    bookings_topic, get_transport, messages_topic,
)

logger = logging.getLogger(__name__)


SendResult = namedtuple('SendResult', ['message', 'code_accepted'])


def _message_key(message):
    return (message.created_at, message.id)


def send_or_submit_code(booking_id, user_id, text):
    """
    Send chat text, trying it as the delivery code first where that applies.

    When the user is the booking's sender and the handoff waits in
    handed_over, the text is first checked as the delivery code. A rejected
    code falls through to an ordinary message, so a sender can still chat
    while the goods are on their way.

    Returns:
        SendResult: ``(message, code_accepted)``; ``message`` is None when
        the text completed the delivery

    Raises:
        NotFoundError, ValidationError, ConflictError, StorageError: As
            raised by ``courier.messaging.send``
    """
    booking = messaging.get_booking_for_participant(booking_id, user_id)

    if booking.role_of(user_id) == ROLE_SENDER and fetch_handoff_step(booking_id) == STEP_HANDED_OVER:
        if validate_delivery_code(booking_id, text, user_id):
            return SendResult(message=None, code_accepted=True)

    message = messaging.send(booking_id, user_id, text)
    return SendResult(message=message, code_accepted=False)


class ChatSession:
    """
    Live view of one booking's conversation for one participant.

    ``open`` subscribes before loading so no change committed in between is
    lost: events numbered at or below the baseline taken at subscription
    time are already covered by the load and are skipped. A jump in a
    topic's sequence means events were missed; the session then reloads
    from storage.

    Usage:
        with ChatSession(booking_id, user_id) as chat:
            chat.send('On my way')
            chat.pump(timeout=1)
            for message in chat.messages:
                ...
    """

    def __init__(self, booking_id, user_id, transport=None):
        self.booking_id = booking_id
        self.user_id = user_id
        self.transport = transport if transport is not None else get_transport()

        self.messages = []
        self.role = None
        self.status = None
        self.handoff_step = None
        self.reload_count = 0

        self._by_id = {}
        self._subscriptions = {}
        self._sequences = {}

    @property
    def topics(self):
        return (messages_topic(self.booking_id), bookings_topic(self.booking_id))

    @property
    def is_open(self):
        return bool(self._subscriptions)

    def open(self):
        """
        Subscribe to the booking's topics and load the conversation.

        Raises:
            NotFoundError: If the booking does not exist or the user is not a participant
            StorageError: If the conversation cannot be loaded
        """
        if self.is_open:
            return self

        booking = messaging.get_booking_for_participant(self.booking_id, self.user_id)
        self.role = booking.role_of(self.user_id)

        message_topic, booking_topic = self.topics
        self._subscriptions[message_topic] = self.transport.subscribe(message_topic, EVENT_TYPES)
        self._subscriptions[booking_topic] = self.transport.subscribe(booking_topic, (EVENT_UPDATE,))

        try:
            for topic in self.topics:
                self._sequences[topic] = self.transport.current_sequence(topic)
            self.reload()
        except Exception:
            self.close()
            raise

        logger.info(f"Chat session opened: booking={self.booking_id}, user={self.user_id}")
        return self

    def reload(self):
        """Replace the local view with a full load from storage."""
        messages = messaging.list_messages(self.booking_id)
        self.messages = messages
        self._by_id = {message.id: message for message in messages}
        self._refresh_booking_state()
        self.reload_count += 1

    def _refresh_booking_state(self):
        state = Booking.objects.filter(pk=self.booking_id).values('status', 'handoff_step').first()
        if state is not None:
            self.status = state['status']
            self.handoff_step = state['handoff_step']

    def reconnect(self):
        """Drop the subscriptions and open again with a full reload."""
        self.close()
        return self.open()

    def close(self):
        """Release every subscription. Safe to call more than once."""
        subscriptions, self._subscriptions = self._subscriptions, {}
        for subscription in subscriptions.values():
            subscription.close()
        if subscriptions:
            logger.info(f"Chat session closed: booking={self.booking_id}, user={self.user_id}")

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def _ensure_open(self):
        if not self.is_open:
            raise RuntimeError('Chat session is not open.')

    def pump(self, timeout=0):
        """
        Apply pending change events to the local view.

        Waits up to ``timeout`` seconds for a message event, then applies
        everything buffered on both topics.

        Returns:
            int: Number of events that changed the view
        """
        self._ensure_open()
        message_topic, booking_topic = self.topics

        events = []
        first = self._subscriptions[message_topic].get(timeout=timeout)
        if first is not None:
            events.append(first)
        events.extend(self._subscriptions[message_topic].drain())
        events.extend(self._subscriptions[booking_topic].drain())

        applied = 0
        for event in events:
            if self._apply(event):
                applied += 1
        return applied

    def _apply(self, event):
        last = self._sequences.get(event.topic, 0)

        if event.sequence is not None:
            if event.sequence <= last:
                return False
            self._sequences[event.topic] = event.sequence
            if event.sequence > last + 1:
                logger.info(
                    f"Sequence gap on {event.topic} ({last} -> {event.sequence}); reloading"
                )
                self.reload()
                return True

        if event.table == TABLE_BOOKINGS:
            return self._apply_booking_update(event.record)
        if event.event_type == EVENT_INSERT:
            return self._apply_insert(event.record)
        if event.event_type == EVENT_UPDATE:
            return self._apply_read_update(event.record)
        return False

    def _add(self, message):
        if message.id in self._by_id:
            return False
        self._by_id[message.id] = message

        if not self.messages or _message_key(message) >= _message_key(self.messages[-1]):
            self.messages.append(message)
        else:
            bisect.insort(self.messages, message, key=_message_key)
        return True

    def _apply_insert(self, record):
        message_id = record.get('id')
        if message_id is None or message_id in self._by_id:
            return False

        created_at = parse_datetime(record['created_at']) if record.get('created_at') else None
        if record.get('booking_id') != self.booking_id or created_at is None:
            return False

        message = Message(
            id=message_id,
            booking_id=self.booking_id,
            sender_id=record.get('sender_id'),
            content=record.get('content', ''),
            is_system=bool(record.get('is_system')),
            read_at=parse_datetime(record['read_at']) if record.get('read_at') else None,
            created_at=created_at,
        )
        message._state.adding = False
        message._state.db = 'default'
        return self._add(message)

    def _apply_read_update(self, record):
        message = self._by_id.get(record.get('id'))
        read_at = parse_datetime(record['read_at']) if record.get('read_at') else None
        if message is None or read_at is None or message.read_at is not None:
            return False
        message.read_at = read_at
        return True

    def _apply_booking_update(self, record):
        changed = False
        for attr in ('status', 'handoff_step'):
            value = record.get(attr)
            if value is not None and value != getattr(self, attr):
                setattr(self, attr, value)
                changed = True
        return changed

    def send(self, text):
        """
        Send text into the conversation; see ``send_or_submit_code``.

        The local view reflects the result immediately instead of waiting
        for the change event.
        """
        self._ensure_open()

        result = send_or_submit_code(self.booking_id, self.user_id, text)
        if result.code_accepted:
            self._refresh_booking_state()
        else:
            self._add(result.message)
        return result

    def mark_read(self):
        """Mark the counterpart's messages read; the view updates from the resulting events."""
        self._ensure_open()
        return messaging.mark_read(self.booking_id, self.user_id)


class UnreadBadge:
    """
    Unread total of one user, refreshed on a fixed interval.

    ``refresh`` recomputes on demand; ``start`` runs the same refresh on a
    background thread every ``interval`` seconds until ``stop``. The
    optional ``on_change`` callback receives the new total whenever it
    changes.
    """

    def __init__(self, user_id, interval=None, on_change=None):
        self.user_id = user_id
        self.interval = interval if interval is not None else settings.COURIER.get('UNREAD_POLL_INTERVAL', 30)
        self.on_change = on_change
        self.count = 0

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread = None

    def refresh(self):
        count = get_unread_total(self.user_id)
        with self._lock:
            changed = count != self.count
            self.count = count
        if changed and self.on_change is not None:
            self.on_change(count)
        return count

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return self
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name=f'unread-badge-{self.user_id}',
            daemon=True,
        )
        self._thread.start()
        return self

    def _run(self):
        try:
            while not self._stop_event.is_set():
                try:
                    self.refresh()
                except Exception as e:
                    logger.error(f"Unread badge refresh failed for user {self.user_id}: {e}", exc_info=True)
                if self._stop_event.wait(self.interval):
                    break
        finally:
            connection.close()

    def stop(self, timeout=None):
        self._stop_event.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False
