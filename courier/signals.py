"""
Django signals for the courier app.

- New messages are announced on their booking's realtime topic once the
  surrounding transaction commits.
- Rating writes keep the denormalized ``avg_rating`` / ``ratings_count`` of
  the rated user in sync.
"""

import logging
from decimal import Decimal

from django.db import transaction
from django.db.models import Avg, Count
from django.db.models.signals import post_delete, post_save
from django.dispatch import receiver

from .messaging import serialize_message
from .models import Message, Rating, User
from .realtime import EVENT_INSERT, TABLE_MESSAGES, messages_topic, publish_on_commit

logger = logging.getLogger(__name__)


@receiver(post_save, sender=Message)
def publish_message_insert(sender, instance, created, **kwargs):
    """
    Publish an INSERT change event for every newly created message.

    Read-state changes are published by ``mark_read`` itself, since bulk
    updates do not emit signals.
    """
    if not created:
        return

    publish_on_commit(
        messages_topic(instance.booking_id),
        EVENT_INSERT,
        TABLE_MESSAGES,
        serialize_message(instance),
    )


def recalculate_user_rating(user_id):
    """
    Recompute the rating aggregates of one user under a row lock.

    Must run inside a transaction.
    """
    user = User.objects.select_for_update().get(pk=user_id)

    stats = Rating.objects.filter(rated_id=user_id).aggregate(avg=Avg('score'), total=Count('id'))

    avg = stats['avg']
    user.avg_rating = Decimal(str(avg)).quantize(Decimal('0.01')) if avg is not None else Decimal('0.00')
    user.ratings_count = stats['total'] or 0
    user.save(update_fields=['avg_rating', 'ratings_count'])
    return user


@receiver(post_save, sender=Rating)
def update_rating_on_save(sender, instance, created, **kwargs):
    """
    Refresh the rated user's aggregates when a rating is created or updated.

    Runs in the same transaction as ``Rating.save()``; a failure here rolls
    back the rating too, so ratings and aggregates never drift apart.

    Args:
        sender: The Rating model class
        instance: The Rating instance that was saved
        created: Boolean indicating if this is a new rating
        **kwargs: Additional keyword arguments
    """
    try:
        with transaction.atomic():
            user = recalculate_user_rating(instance.rated_id)

        action = "created" if created else "updated"
        logger.info(
            f"Updated ratings for rating {instance.id} ({action}): "
            f"rated={instance.rated_id}, avg={user.avg_rating}, count={user.ratings_count}"
        )
    except Exception as e:
        logger.error(f"Error updating ratings for rating {instance.id}: {e}", exc_info=True)
        raise


@receiver(post_delete, sender=Rating)
def update_rating_on_delete(sender, instance, **kwargs):
    """
    Refresh the rated user's aggregates after a rating is deleted.

    A user left without ratings drops back to 0.00 / 0.
    """
    try:
        with transaction.atomic():
            user = recalculate_user_rating(instance.rated_id)

        logger.info(
            f"Updated ratings after deleting rating {instance.id}: "
            f"rated={instance.rated_id}, avg={user.avg_rating}, count={user.ratings_count}"
        )
    except User.DoesNotExist:
        # Rated user deleted in the same cascade
        pass
    except Exception as e:
        logger.error(f"Error updating ratings after deleting rating {instance.id}: {e}", exc_info=True)
        raise
