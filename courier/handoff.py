"""
Handoff state machine.

A booking's physical handoff moves strictly forward:

    none -> sender_confirmed -> handed_over -> delivered

Each transition is a conditional update guarded by the expected current
step, so two racing actors cannot both win. The state write and the system
message that records it commit in the same transaction. Entering
handed_over issues a fresh one-time delivery code; submitting that code
is the alternative path to delivered.
"""

import hmac
import logging
import secrets
from collections import namedtuple

from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone

from .exceptions import ConflictError, PermissionDeniedError, StorageError, ValidationError
from .messaging import SystemMessageCode, append_system_message, get_booking_for_participant
from .models import (
    Booking, CLOSED_STATUSES, ROLE_SENDER, ROLE_TRAVELER,
    STATUS_DELIVERED, STATUS_HANDED_OVER,
    STEP_DELIVERED, STEP_HANDED_OVER, STEP_NONE, STEP_SENDER_CONFIRMED,
)
from .realtime import EVENT_UPDATE, TABLE_BOOKINGS, bookings_topic, publish_on_commit

logger = logging.getLogger(__name__)


# Uppercase letters and digits without 0, O, 1 and I
DELIVERY_CODE_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'

Transition = namedtuple('Transition', ['expected', 'actor', 'status', 'system_message', 'issues_code'])

TRANSITIONS = {
    STEP_SENDER_CONFIRMED: Transition(
        expected=STEP_NONE,
        actor=ROLE_SENDER,
        status=None,
        system_message=SystemMessageCode.SENDER_CONFIRMED,
        issues_code=False,
    ),
    STEP_HANDED_OVER: Transition(
        expected=STEP_SENDER_CONFIRMED,
        actor=ROLE_TRAVELER,
        status=STATUS_HANDED_OVER,
        system_message=SystemMessageCode.HANDED_OVER,
        issues_code=True,
    ),
    STEP_DELIVERED: Transition(
        expected=STEP_HANDED_OVER,
        actor=ROLE_TRAVELER,
        status=STATUS_DELIVERED,
        system_message=SystemMessageCode.DELIVERED,
        issues_code=False,
    ),
}

# Step each side may trigger next, keyed by the current step
NEXT_ACTION = {
    (STEP_NONE, ROLE_SENDER): STEP_SENDER_CONFIRMED,
    (STEP_SENDER_CONFIRMED, ROLE_TRAVELER): STEP_HANDED_OVER,
    (STEP_HANDED_OVER, ROLE_TRAVELER): STEP_DELIVERED,
}


def generate_delivery_code(length=None):
    """Random code from the unambiguous alphabet, drawn with a CSPRNG."""
    if length is None:
        length = settings.COURIER.get('DELIVERY_CODE_LENGTH', 10)
    return ''.join(secrets.choice(DELIVERY_CODE_ALPHABET) for _ in range(length))


def normalize_code(code):
    return code.strip().upper()


def _publish_booking_state(booking_id, status, step):
    # The delivery code never leaves through change events
    publish_on_commit(
        bookings_topic(booking_id),
        EVENT_UPDATE,
        TABLE_BOOKINGS,
        {'id': booking_id, 'status': status, 'handoff_step': step},
    )


def confirm_handoff(booking_id, actor_id, step):
    """
    Advance a booking's handoff by one step.

    Args:
        booking_id: Booking to advance
        actor_id: User performing the step
        step: Target step: sender_confirmed, handed_over or delivered

    Returns:
        str or None: The new delivery code when ``step`` is handed_over,
        otherwise None

    Raises:
        ValidationError: If ``step`` is not a valid target step
        NotFoundError: If the booking does not exist or the actor is not a participant
        PermissionDeniedError: If the actor is the wrong party for this step
        ConflictError: If the booking is not in the step this transition
            starts from, or has no chat surface
        StorageError: If the transition cannot be persisted
    """
    transition = TRANSITIONS.get(step)
    if transition is None:
        raise ValidationError(f'Invalid handoff step: {step}', code='invalid_handoff_step')

    delivery_code = None

    try:
        with transaction.atomic():
            booking = get_booking_for_participant(booking_id, actor_id)

            role = booking.role_of(actor_id)
            if role != transition.actor:
                logger.warning(
                    f"User {actor_id} ({role}) attempted {step} on booking {booking_id}; "
                    f"only the {transition.actor} may"
                )
                raise PermissionDeniedError(
                    f'Only the {transition.actor} can perform this step.',
                    code='wrong_party'
                )

            if not booking.has_chat:
                raise ConflictError(
                    f'Handoff is not available for a {booking.status} booking.',
                    code='handoff_unavailable'
                )

            updates = {'handoff_step': step, 'updated_at': timezone.now()}
            if transition.status:
                updates['status'] = transition.status
            if transition.issues_code:
                delivery_code = generate_delivery_code()
                updates['delivery_code'] = delivery_code

            updated = (
                Booking.objects
                .filter(pk=booking.pk, handoff_step=transition.expected)
                .exclude(status__in=CLOSED_STATUSES)
                .update(**updates)
            )

            if updated == 0:
                logger.warning(
                    f"Stale handoff transition on booking {booking_id}: "
                    f"expected {transition.expected}, requested {step}, actor={actor_id}"
                )
                raise ConflictError(
                    'The booking is no longer in the expected handoff step.',
                    code='stale_handoff_step'
                )

            append_system_message(booking.pk, actor_id, transition.system_message)
            _publish_booking_state(booking.pk, transition.status or booking.status, step)

    except DatabaseError as e:
        logger.error(f"Error applying handoff step {step} to booking {booking_id}: {e}", exc_info=True)
        raise StorageError('Could not update handoff state.')

    logger.info(
        f"Handoff transition on booking {booking_id}: "
        f"{transition.expected} -> {step} by user {actor_id}"
    )
    return delivery_code


def validate_delivery_code(booking_id, submitted_code, sender_id):
    """
    Check a submitted delivery code and complete the delivery on a match.

    Fails closed: anything other than an exact (case-insensitive, trimmed)
    match on a booking in handed_over yields False without mutating
    anything. On a match a single conditional update moves the booking to
    delivered, so of several concurrent correct submissions exactly one
    returns True.

    Args:
        booking_id: Booking the code belongs to
        submitted_code: Code as typed
        sender_id: Participant submitting the code; recorded as the author
            of the delivered system message

    Returns:
        bool: True if this call completed the delivery

    Raises:
        StorageError: Only if the transition write itself fails
    """
    if not isinstance(submitted_code, str):
        return False

    normalized = normalize_code(submitted_code)
    if not normalized:
        return False

    try:
        booking = Booking.objects.select_related('announcement').filter(pk=booking_id).first()
    except DatabaseError:
        logger.warning(f"Delivery code lookup failed for booking {booking_id}", exc_info=True)
        return False

    if booking is None or not booking.is_participant(sender_id):
        logger.warning(f"Delivery code submitted for unavailable booking {booking_id} by user {sender_id}")
        return False

    if booking.handoff_step != STEP_HANDED_OVER or not booking.delivery_code:
        logger.warning(
            f"Delivery code submitted for booking {booking_id} in step {booking.handoff_step}"
        )
        return False

    if not hmac.compare_digest(normalized.encode(), normalize_code(booking.delivery_code).encode()):
        logger.warning(f"Delivery code mismatch for booking {booking_id} by user {sender_id}")
        return False

    try:
        with transaction.atomic():
            updated = Booking.objects.filter(
                pk=booking.pk,
                handoff_step=STEP_HANDED_OVER,
                delivery_code=booking.delivery_code,
            ).update(
                handoff_step=STEP_DELIVERED,
                status=STATUS_DELIVERED,
                updated_at=timezone.now(),
            )

            if updated == 0:
                logger.warning(f"Delivery code for booking {booking_id} lost a concurrent transition")
                return False

            append_system_message(booking.pk, sender_id, SystemMessageCode.DELIVERED)
            _publish_booking_state(booking.pk, STATUS_DELIVERED, STEP_DELIVERED)

    except DatabaseError as e:
        logger.error(f"Error completing delivery for booking {booking_id}: {e}", exc_info=True)
        raise StorageError('Could not complete delivery.')

    logger.info(f"Delivery code verified for booking {booking_id} by user {sender_id}")
    return True


def fetch_handoff_step(booking_id):
    """Current handoff step, or 'none' if the booking cannot be read."""
    try:
        step = Booking.objects.filter(pk=booking_id).values_list('handoff_step', flat=True).first()
    except DatabaseError:
        logger.warning(f"Handoff step lookup failed for booking {booking_id}", exc_info=True)
        return STEP_NONE
    return step or STEP_NONE


def fetch_delivery_code(booking_id, user_id):
    """Delivery code of a booking, visible to its traveler only."""
    try:
        booking = Booking.objects.select_related('announcement').filter(pk=booking_id).first()
    except DatabaseError:
        logger.warning(f"Delivery code fetch failed for booking {booking_id}", exc_info=True)
        return None

    if booking is None or booking.role_of(user_id) != ROLE_TRAVELER:
        return None
    return booking.delivery_code


def get_handoff_state(booking_id, user_id):
    """
    Handoff view for one participant.

    Returns:
        dict: booking_id, status, step, role of the caller, the delivery
        code (traveler only), the step the caller may trigger next (or None)
        and whether the caller may submit a delivery code

    Raises:
        NotFoundError: If the booking does not exist or the user is not a participant
    """
    booking = get_booking_for_participant(booking_id, user_id)
    role = booking.role_of(user_id)

    next_action = NEXT_ACTION.get((booking.handoff_step, role)) if booking.has_chat else None

    return {
        'booking_id': booking.pk,
        'status': booking.status,
        'step': booking.handoff_step,
        'role': role,
        'delivery_code': booking.delivery_code if role == ROLE_TRAVELER else None,
        'next_action': next_action,
        'can_submit_code': role == ROLE_SENDER and booking.handoff_step == STEP_HANDED_OVER,
    }
