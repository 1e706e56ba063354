"""
Conversation aggregator: a user's inbox.

A conversation is derived from a booking, never stored. Bookings still
pending, rejected or cancelled have no conversation.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from django.db import DatabaseError
from django.db.models import Count, OuterRef, Q, Subquery

from .exceptions import StorageError
from .models import Booking, CLOSED_STATUSES, Message, ROLE_SENDER
from .profiles import display_profile

logger = logging.getLogger(__name__)


@dataclass
class Conversation:
    booking_id: int
    status: str
    handoff_step: str
    role: str
    other_user_id: int
    other_user: dict = field(default_factory=dict)
    departure_city: str = ''
    destination_city: str = ''
    departure_date: Optional[date] = None
    total_price: Optional[Decimal] = None
    last_message: Optional[str] = None
    last_message_is_system: bool = False
    last_message_at: Optional[datetime] = None
    unread_count: int = 0


def participant_bookings(user_id):
    """Chat-enabled bookings where the user is the sender or the traveler."""
    return (
        Booking.objects
        .filter(Q(sender_id=user_id) | Q(announcement__traveler_id=user_id))
        .exclude(status__in=CLOSED_STATUSES)
    )


def unread_messages(user_id):
    """Messages addressed to the user that are still unread."""
    return Message.objects.filter(read_at__isnull=True).exclude(sender_id=user_id)


def list_conversations(user_id):
    """
    Build the inbox of a user.

    The latest message and the unread count of every booking come from
    annotations on one query. Conversations with messages come first, most
    recent activity first; conversations without messages follow, newest
    booking first.

    Returns:
        list[Conversation]

    Raises:
        StorageError: If the bookings cannot be loaded
    """
    latest = Message.objects.filter(booking=OuterRef('pk')).order_by('-created_at', '-id')

    try:
        bookings = list(
            participant_bookings(user_id)
            .select_related('sender', 'announcement', 'announcement__traveler')
            .annotate(
                last_message_content=Subquery(latest.values('content')[:1]),
                last_message_is_system=Subquery(latest.values('is_system')[:1]),
                last_message_at=Subquery(latest.values('created_at')[:1]),
                unread_count=Count(
                    'messages',
                    filter=Q(messages__read_at__isnull=True) & ~Q(messages__sender_id=user_id),
                ),
            )
            .order_by('-created_at', '-id')
        )
    except DatabaseError as e:
        logger.error(f"Error loading conversations for user {user_id}: {e}", exc_info=True)
        raise StorageError('Could not load conversations.')

    conversations = []
    for booking in bookings:
        role = booking.role_of(user_id)
        other = booking.announcement.traveler if role == ROLE_SENDER else booking.sender
        announcement = booking.announcement

        conversations.append(Conversation(
            booking_id=booking.pk,
            status=booking.status,
            handoff_step=booking.handoff_step,
            role=role,
            other_user_id=other.pk,
            other_user=display_profile(other),
            departure_city=announcement.departure_city,
            destination_city=announcement.destination_city,
            departure_date=announcement.departure_date,
            total_price=booking.total_price,
            last_message=booking.last_message_content,
            last_message_is_system=bool(booking.last_message_is_system),
            last_message_at=booking.last_message_at,
            unread_count=booking.unread_count,
        ))

    active = [c for c in conversations if c.last_message_at is not None]
    silent = [c for c in conversations if c.last_message_at is None]
    active.sort(key=lambda c: c.last_message_at, reverse=True)

    return active + silent


def get_unread_total(user_id):
    """
    Total unread messages across all of a user's conversations.

    Returns 0 when the count cannot be computed.
    """
    try:
        booking_ids = list(participant_bookings(user_id).values_list('id', flat=True))
        if not booking_ids:
            return 0
        return unread_messages(user_id).filter(booking_id__in=booking_ids).count()
    except DatabaseError:
        logger.warning(f"Unread total unavailable for user {user_id}", exc_info=True)
        return 0
