"""
Rating gate: one rating per booking per rater.

Exclusivity is enforced by the unique constraint on (booking, rater), so
retried or concurrent submissions cannot produce a second row. Whether the
booking is delivered is checked by the API layer before calling in.
"""

import logging

from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import Avg, Count

from .exceptions import ConflictError, StorageError, ValidationError
from .messaging import get_booking_for_participant
from .models import Rating
from .profiles import display_profile
from .validators import validate_score

logger = logging.getLogger(__name__)


def submit_rating(booking_id, rater_id, rated_id, score, comment=None):
    """
    Record a rating from one booking participant for the other.

    Args:
        booking_id: Booking being rated
        rater_id: Participant giving the rating
        rated_id: The rater's counterpart on the booking
        score: Integer from 1 to 5
        comment: Optional free text

    Returns:
        Rating: The stored rating

    Raises:
        ValidationError: If the score is invalid or ``rated_id`` is not the
            rater's counterpart
        NotFoundError: If the booking does not exist or the rater is not a participant
        ConflictError: If the rater already rated this booking
        StorageError: If the rating cannot be stored
    """
    validate_score(score)

    if comment is not None:
        comment = comment.strip() or None

    try:
        with transaction.atomic():
            booking = get_booking_for_participant(booking_id, rater_id)

            if rated_id != booking.counterpart_id(rater_id):
                raise ValidationError(
                    'You can only rate the other participant of the booking.',
                    code='invalid_rated_user'
                )

            rating = Rating.objects.create(
                booking=booking,
                rater_id=rater_id,
                rated_id=rated_id,
                score=score,
                comment=comment,
            )
    except IntegrityError:
        logger.warning(f"Duplicate rating rejected: booking={booking_id}, rater={rater_id}")
        raise ConflictError('You have already rated this booking.', code='duplicate_rating')
    except DatabaseError as e:
        logger.error(f"Error storing rating for booking {booking_id}: {e}", exc_info=True)
        raise StorageError('Could not store rating.')

    logger.info(
        f"Rating {rating.id} submitted: booking={booking_id}, rater={rater_id}, "
        f"rated={rated_id}, score={score}"
    )
    return rating


def get_average_rating(user_id):
    """
    Average score received by a user.

    Returns:
        dict: ``{'average': float, 'count': int}`` with the unrounded mean;
        zeros when the user has no ratings or the aggregate cannot be
        computed
    """
    try:
        result = Rating.objects.filter(rated_id=user_id).aggregate(
            average=Avg('score'),
            count=Count('id'),
        )
    except DatabaseError:
        logger.warning(f"Average rating unavailable for user {user_id}", exc_info=True)
        return {'average': 0.0, 'count': 0}

    if not result['count']:
        return {'average': 0.0, 'count': 0}

    return {'average': float(result['average']), 'count': result['count']}


def fetch_rating_for_booking(booking_id, rater_id):
    """The rater's rating for a booking, or None."""
    try:
        return Rating.objects.filter(booking_id=booking_id, rater_id=rater_id).first()
    except DatabaseError:
        logger.warning(f"Rating lookup failed for booking {booking_id}", exc_info=True)
        return None


def list_user_reviews(user_id):
    """
    Ratings received by a user, newest first, with the rater's display profile.

    Returns an empty list when the reviews cannot be loaded.
    """
    try:
        ratings = list(
            Rating.objects.filter(rated_id=user_id)
            .select_related('rater')
            .order_by('-created_at', '-id')
        )
    except DatabaseError:
        logger.warning(f"Reviews unavailable for user {user_id}", exc_info=True)
        return []

    return [
        {
            'id': rating.id,
            'booking_id': rating.booking_id,
            'score': rating.score,
            'comment': rating.comment,
            'created_at': rating.created_at,
            'rater_id': rating.rater_id,
            'rater': display_profile(rating.rater),
        }
        for rating in ratings
    ]
