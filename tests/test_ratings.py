"""
Tests for the rating gate: validation, exclusivity and aggregates.
"""

import threading
from decimal import Decimal
from unittest import mock

from django.db import DatabaseError, connection
from django.test import TestCase, TransactionTestCase

from courier import ratings
from courier.exceptions import ConflictError, NotFoundError, ValidationError
from courier.models import Rating

from factories import create_announcement, create_booking, create_scenario, create_user


class SubmitRatingTests(TestCase):

    def setUp(self):
        self.sender, self.traveler, self.outsider, self.booking = create_scenario()

    def test_sender_rates_traveler(self):
        rating = ratings.submit_rating(self.booking.id, self.sender.id, self.traveler.id, 5, '  Great trip ')

        self.assertEqual(rating.score, 5)
        self.assertEqual(rating.comment, 'Great trip')
        self.assertEqual(rating.rater_id, self.sender.id)
        self.assertEqual(rating.rated_id, self.traveler.id)

    def test_both_participants_can_rate_each_other(self):
        ratings.submit_rating(self.booking.id, self.sender.id, self.traveler.id, 4)
        ratings.submit_rating(self.booking.id, self.traveler.id, self.sender.id, 3)

        self.assertEqual(Rating.objects.filter(booking=self.booking).count(), 2)

    def test_blank_comment_is_stored_as_null(self):
        rating = ratings.submit_rating(self.booking.id, self.sender.id, self.traveler.id, 4, '   ')
        self.assertIsNone(rating.comment)

    def test_score_bounds(self):
        for score in [1, 5]:
            with self.subTest(score=score):
                booking = create_booking(self.sender, self.booking.announcement)
                self.assertEqual(
                    ratings.submit_rating(booking.id, self.sender.id, self.traveler.id, score).score,
                    score
                )

    def test_invalid_scores_are_rejected(self):
        for score in [0, 6, -1, 3.5, '4', None, True]:
            with self.subTest(score=score):
                with self.assertRaises(ValidationError):
                    ratings.submit_rating(self.booking.id, self.sender.id, self.traveler.id, score)

        self.assertFalse(Rating.objects.exists())

    def test_rated_user_must_be_the_counterpart(self):
        for rated_id in [self.sender.id, self.outsider.id]:
            with self.subTest(rated_id=rated_id):
                with self.assertRaises(ValidationError) as ctx:
                    ratings.submit_rating(self.booking.id, self.sender.id, rated_id, 4)
                self.assertEqual(ctx.exception.code, 'invalid_rated_user')

    def test_outsider_cannot_rate(self):
        with self.assertRaises(NotFoundError):
            ratings.submit_rating(self.booking.id, self.outsider.id, self.traveler.id, 1)

    def test_missing_booking_raises_not_found(self):
        with self.assertRaises(NotFoundError):
            ratings.submit_rating(999999, self.sender.id, self.traveler.id, 4)

    def test_duplicate_rating_is_a_conflict(self):
        ratings.submit_rating(self.booking.id, self.sender.id, self.traveler.id, 5)

        with self.assertLogs('courier.ratings', level='WARNING'):
            with self.assertRaises(ConflictError) as ctx:
                ratings.submit_rating(self.booking.id, self.sender.id, self.traveler.id, 1)

        self.assertEqual(ctx.exception.code, 'duplicate_rating')
        self.assertEqual(Rating.objects.get(booking=self.booking).score, 5)

    def test_rating_updates_rated_user_aggregates(self):
        ratings.submit_rating(self.booking.id, self.sender.id, self.traveler.id, 5)
        second_sender = create_user('second_sender')
        other = create_booking(second_sender, self.booking.announcement)
        ratings.submit_rating(other.id, second_sender.id, self.traveler.id, 4)

        self.traveler.refresh_from_db()
        self.assertEqual(self.traveler.avg_rating, Decimal('4.50'))
        self.assertEqual(self.traveler.ratings_count, 2)


class RatingReadTests(TestCase):

    def setUp(self):
        self.sender, self.traveler, self.outsider, self.booking = create_scenario()

    def test_average_is_zero_without_ratings(self):
        self.assertEqual(ratings.get_average_rating(self.traveler.id), {'average': 0.0, 'count': 0})

    def test_average_over_received_ratings(self):
        scores = [5, 4, 4]
        for i, score in enumerate(scores):
            rater = create_user(f'rater{i}')
            booking = create_booking(rater, self.booking.announcement)
            ratings.submit_rating(booking.id, rater.id, self.traveler.id, score)

        summary = ratings.get_average_rating(self.traveler.id)
        self.assertAlmostEqual(summary['average'], 13 / 3)
        self.assertNotEqual(summary['average'], 4.33)
        self.assertEqual(summary['count'], 3)

    def test_average_degrades_on_storage_failure(self):
        with mock.patch.object(Rating.objects, 'filter', side_effect=DatabaseError('gone')):
            with self.assertLogs('courier.ratings', level='WARNING'):
                self.assertEqual(ratings.get_average_rating(self.traveler.id), {'average': 0.0, 'count': 0})

    def test_fetch_rating_for_booking(self):
        self.assertIsNone(ratings.fetch_rating_for_booking(self.booking.id, self.sender.id))

        rating = ratings.submit_rating(self.booking.id, self.sender.id, self.traveler.id, 3)

        self.assertEqual(ratings.fetch_rating_for_booking(self.booking.id, self.sender.id), rating)
        self.assertIsNone(ratings.fetch_rating_for_booking(self.booking.id, self.traveler.id))

    def test_fetch_rating_degrades_on_storage_failure(self):
        with mock.patch.object(Rating.objects, 'filter', side_effect=DatabaseError('gone')):
            with self.assertLogs('courier.ratings', level='WARNING'):
                self.assertIsNone(ratings.fetch_rating_for_booking(self.booking.id, self.sender.id))

    def test_reviews_are_newest_first_with_rater_identity(self):
        older = ratings.submit_rating(self.booking.id, self.sender.id, self.traveler.id, 2, 'Late')
        other_sender = create_user('other_sender', first_name='Olga')
        other_booking = create_booking(other_sender, create_announcement(self.traveler))
        newer = ratings.submit_rating(other_booking.id, other_sender.id, self.traveler.id, 5, 'Perfect')

        reviews = ratings.list_user_reviews(self.traveler.id)

        self.assertEqual([r['id'] for r in reviews], [newer.id, older.id])
        self.assertEqual(reviews[0]['rater']['first_name'], 'Olga')
        self.assertEqual(reviews[1]['rater']['first_name'], 'Sara')
        self.assertEqual(reviews[1]['comment'], 'Late')

    def test_no_reviews_for_unrated_user(self):
        self.assertEqual(ratings.list_user_reviews(self.outsider.id), [])


class ConcurrentRatingTests(TransactionTestCase):
    """Duplicate submissions racing each other still produce a single rating."""

    def setUp(self):
        self.sender, self.traveler, self.outsider, self.booking = create_scenario()

    def test_concurrent_duplicate_submissions_store_one_rating(self):
        barrier = threading.Barrier(3)
        outcomes = []
        lock = threading.Lock()

        def submit(score):
            try:
                barrier.wait(timeout=10)
                ratings.submit_rating(self.booking.id, self.sender.id, self.traveler.id, score)
                outcome = 'created'
            except ConflictError:
                outcome = 'conflict'
            except Exception as e:
                outcome = repr(e)
            finally:
                connection.close()
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=submit, args=(score,)) for score in (3, 4, 5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        self.assertEqual(sorted(outcomes), ['conflict', 'conflict', 'created'])
        self.assertEqual(Rating.objects.filter(booking=self.booking, rater=self.sender).count(), 1)

        self.traveler.refresh_from_db()
        self.assertEqual(self.traveler.ratings_count, 1)
