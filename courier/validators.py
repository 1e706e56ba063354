"""
Input validators for chat messages, ratings and bookings.
"""

from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError

from .exceptions import ValidationError


def get_message_max_length():
    return settings.COURIER.get('MESSAGE_MAX_LENGTH', 2000)


def validate_message_content(content):
    """
    Normalize and validate chat message content.

    Content is trimmed first; the trimmed text must hold between 1 and
    MESSAGE_MAX_LENGTH characters.

    Args:
        content: Raw text as typed by the user

    Returns:
        str: Trimmed content

    Raises:
        ValidationError: If content is not a string, empty after trimming
            or too long
    """
    if not isinstance(content, str):
        raise ValidationError('Message content must be text.', code='invalid_content')

    trimmed = content.strip()
    max_length = get_message_max_length()

    if not trimmed:
        raise ValidationError('Message cannot be empty.', code='message_empty')

    if len(trimmed) > max_length:
        raise ValidationError(
            f'Message must be between 1 and {max_length} characters.',
            code='message_too_long'
        )

    return trimmed


def validate_score(score):
    """
    Validate a rating score.

    Booleans are rejected even though they are ints in Python.

    Raises:
        ValidationError: If score is not an integer from 1 to 5
    """
    if isinstance(score, bool) or not isinstance(score, int):
        raise ValidationError('Score must be an integer.', code='invalid_score')

    if score < 1 or score > 5:
        raise ValidationError('Score must be between 1 and 5.', code='score_out_of_range')

    return score


def validate_positive_kilos(value):
    """Model field validator: requested kilos must be strictly positive."""
    if value is not None and Decimal(value) <= 0:
        raise DjangoValidationError(
            'Requested kilos must be greater than 0.',
            code='kilos_not_positive'
        )
