"""
Message store: the append-only chat log of a booking.

Every booking past approval owns one conversation between its sender and
its traveler. Messages are immutable after creation except ``read_at``,
which goes from null to a timestamp exactly once. Handoff transitions add
system messages to the same log; ``is_system`` is the only thing that tells
them apart from user text.
"""

import logging

from django.db import DatabaseError, models, transaction
from django.utils import timezone

from .exceptions import ConflictError, NotFoundError, StorageError, ValidationError
from .models import Booking, Message
from .realtime import EVENT_UPDATE, TABLE_MESSAGES, messages_topic, publish_on_commit
from .validators import validate_message_content

logger = logging.getLogger(__name__)


class SystemMessageCode(models.TextChoices):
    """Closed set of system message payloads, stored verbatim as content."""

    SENDER_CONFIRMED = '[HANDOFF] sender_confirmed', 'sender confirmed handoff'
    HANDED_OVER = '[HANDOFF] handed_over', 'package handed over'
    DELIVERED = '[HANDOFF] delivered', 'package delivered'


def get_booking_for_participant(booking_id, user_id, for_update=False):
    """
    Load a booking visible to ``user_id``.

    Missing bookings and bookings the user takes no part in raise the same
    error so the existence of other users' bookings never leaks.

    Raises:
        NotFoundError: If the booking does not exist or the user is neither
            its sender nor its traveler
    """
    queryset = Booking.objects.select_related('announcement', 'sender', 'announcement__traveler')
    if for_update:
        queryset = queryset.select_for_update(of=('self',))

    booking = queryset.filter(pk=booking_id).first()
    if booking is None or not booking.is_participant(user_id):
        raise NotFoundError('Booking not found.', code='booking_not_found')
    return booking


def serialize_message(message):
    """Plain dict view of a message, as carried by change events."""
    return {
        'id': message.id,
        'booking_id': message.booking_id,
        'sender_id': message.sender_id,
        'content': message.content,
        'is_system': message.is_system,
        'read_at': message.read_at.isoformat() if message.read_at else None,
        'created_at': message.created_at.isoformat() if message.created_at else None,
    }


def render_message(message):
    """
    Text to display for a message.

    System messages show their label; everything else shows its content
    verbatim, including user text that happens to equal a system code.
    """
    if message.is_system:
        try:
            return SystemMessageCode(message.content).label
        except ValueError:
            return message.content
    return message.content


def list_messages(booking_id):
    """
    Return the conversation of a booking, oldest first.

    Ties on ``created_at`` are broken by id so the order is total.

    Raises:
        StorageError: If the messages cannot be loaded
    """
    try:
        return list(
            Message.objects.filter(booking_id=booking_id)
            .select_related('sender')
            .order_by('created_at', 'id')
        )
    except DatabaseError as e:
        logger.error(f"Error loading messages for booking {booking_id}: {e}", exc_info=True)
        raise StorageError('Could not load messages.')


def send(booking_id, sender_id, content):
    """
    Append a user message to a booking's conversation.

    Args:
        booking_id: Booking owning the conversation
        sender_id: Sender or traveler of the booking
        content: Raw text; stored trimmed

    Returns:
        Message: The stored message, unread and with ``is_system=False``

    Raises:
        ValidationError: If the trimmed content is empty or too long
        NotFoundError: If the booking does not exist or the sender is not a participant
        ConflictError: If the booking has no chat surface (pending, rejected, cancelled)
        StorageError: If the message cannot be stored
    """
    content = validate_message_content(content)

    try:
        booking = get_booking_for_participant(booking_id, sender_id)

        if not booking.has_chat:
            logger.warning(
                f"Message rejected for booking {booking_id} in status {booking.status}: "
                f"sender={sender_id}"
            )
            raise ConflictError(
                f'Chat is not available for a {booking.status} booking.',
                code='chat_unavailable'
            )

        message = Message.objects.create(
            booking=booking,
            sender_id=sender_id,
            content=content,
            is_system=False,
        )
    except DatabaseError as e:
        logger.error(f"Error storing message for booking {booking_id}: {e}", exc_info=True)
        raise StorageError('Could not store message.')

    logger.info(f"Message {message.id} sent in booking {booking_id} by user {sender_id}")
    return message


def append_system_message(booking_id, sender_id, code):
    """
    Append a handoff protocol entry to the conversation.

    Runs inside the caller's transaction so the entry commits together with
    the state change it records.

    Raises:
        ValidationError: If ``code`` is not a SystemMessageCode
    """
    if code not in SystemMessageCode.values:
        raise ValidationError(f'Unknown system message code: {code}', code='unknown_system_code')

    return Message.objects.create(
        booking_id=booking_id,
        sender_id=sender_id,
        content=str(SystemMessageCode(code).value),
        is_system=True,
    )


def mark_read(booking_id, reader_id):
    """
    Mark every unread message the other party sent in this conversation as read.

    The selection and the update run in one transaction. Messages already
    read keep their original timestamp, so repeating the call is harmless.

    Returns:
        int: Number of messages marked by this call

    Raises:
        NotFoundError: If the booking does not exist or the reader is not a participant
        StorageError: If the update fails
    """
    try:
        with transaction.atomic():
            booking = get_booking_for_participant(booking_id, reader_id)

            unread_ids = list(
                Message.objects.select_for_update()
                .filter(booking_id=booking.pk, read_at__isnull=True)
                .exclude(sender_id=reader_id)
                .values_list('id', flat=True)
            )
            if not unread_ids:
                return 0

            read_at = timezone.now()
            marked = Message.objects.filter(
                pk__in=unread_ids,
                read_at__isnull=True,
            ).update(read_at=read_at)

            # Bulk updates fire no model signals
            for message_id in unread_ids:
                publish_on_commit(
                    messages_topic(booking.pk),
                    EVENT_UPDATE,
                    TABLE_MESSAGES,
                    {'id': message_id, 'booking_id': booking.pk, 'read_at': read_at.isoformat()},
                )
    except DatabaseError as e:
        logger.error(f"Error marking messages read for booking {booking_id}: {e}", exc_info=True)
        raise StorageError('Could not update read state.')

    logger.info(f"Marked {marked} message(s) read in booking {booking_id} for user {reader_id}")
    return marked
