"""
Profile lookup for display purposes.

Identity data is owned by the identity provider; the core only needs a
display name and an avatar URL. Missing users resolve to an all-null profile.
"""

import logging

from django.contrib.auth import get_user_model
from django.db import DatabaseError

logger = logging.getLogger(__name__)

EMPTY_PROFILE = {'first_name': None, 'last_name': None, 'avatar_url': None}


def display_name(user):
    """First name, falling back to the username and then the e-mail local part."""
    if user is None:
        return None
    if user.first_name:
        return user.first_name
    if user.username:
        return user.username
    if user.email:
        return user.email.split('@')[0]
    return None


def display_profile(user):
    if user is None:
        return dict(EMPTY_PROFILE)
    return {
        'first_name': display_name(user),
        'last_name': user.last_name or None,
        'avatar_url': user.avatar_url or None,
    }


def lookup_profile(user_id):
    """
    Resolve a user id to its display profile.

    Returns:
        dict: first_name, last_name and avatar_url; all None when the user
        does not exist or cannot be loaded
    """
    if user_id is None:
        return dict(EMPTY_PROFILE)

    User = get_user_model()
    try:
        user = User.objects.filter(pk=user_id).first()
    except DatabaseError:
        logger.warning(f"Profile lookup failed for user {user_id}", exc_info=True)
        return dict(EMPTY_PROFILE)

    return display_profile(user)
