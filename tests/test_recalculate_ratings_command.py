from decimal import Decimal
from io import StringIO

from django.core.management import CommandError, call_command
from django.test import TestCase

from courier.models import Rating, STATUS_DELIVERED, STEP_DELIVERED, User

from factories import create_announcement, create_booking, create_user


class RecalculateRatingsCommandTests(TestCase):
    def setUp(self):
        self.traveler1 = create_user('traveler1')
        self.traveler2 = create_user('traveler2')
        self.sender1 = create_user('sender1')
        self.sender2 = create_user('sender2')

        announcement1 = create_announcement(self.traveler1)
        announcement2 = create_announcement(self.traveler2)

        # Traveler 1: 5 and 3 stars
        for sender, score in [(self.sender1, 5), (self.sender2, 3)]:
            booking = create_booking(
                sender, announcement1, status=STATUS_DELIVERED, handoff_step=STEP_DELIVERED
            )
            Rating.objects.create(booking=booking, rater=sender, rated=self.traveler1, score=score)

        # Traveler 2: 4 stars
        booking = create_booking(
            self.sender1, announcement2, status=STATUS_DELIVERED, handoff_step=STEP_DELIVERED
        )
        Rating.objects.create(booking=booking, rater=self.sender1, rated=self.traveler2, score=4)

        # Corrupt the stored aggregates
        User.objects.filter(pk=self.traveler1.pk).update(avg_rating=Decimal('1.00'), ratings_count=10)
        User.objects.filter(pk=self.traveler2.pk).update(avg_rating=Decimal('0.00'), ratings_count=0)
        User.objects.filter(pk=self.sender1.pk).update(avg_rating=Decimal('2.50'), ratings_count=2)

    def test_recalculate_ratings(self):
        out = StringIO()
        call_command('recalculate_ratings', stdout=out)

        self.traveler1.refresh_from_db()
        self.traveler2.refresh_from_db()
        self.sender1.refresh_from_db()

        # Traveler 1: (5 + 3) / 2 = 4.00
        self.assertEqual(self.traveler1.avg_rating, Decimal('4.00'))
        self.assertEqual(self.traveler1.ratings_count, 2)

        self.assertEqual(self.traveler2.avg_rating, Decimal('4.00'))
        self.assertEqual(self.traveler2.ratings_count, 1)

        # Never rated: reset to zero
        self.assertEqual(self.sender1.avg_rating, Decimal('0.00'))
        self.assertEqual(self.sender1.ratings_count, 0)

        self.assertIn('Recalculation completed successfully', out.getvalue())
        self.assertIn('3 out of date', out.getvalue())

    def test_dry_run(self):
        out = StringIO()
        call_command('recalculate_ratings', '--dry-run', stdout=out)

        self.traveler1.refresh_from_db()
        self.assertEqual(self.traveler1.avg_rating, Decimal('1.00'))
        self.assertEqual(self.traveler1.ratings_count, 10)

        output = out.getvalue()
        self.assertIn('[DRY-RUN]', output)
        self.assertIn('Dry run completed. No changes saved.', output)

    def test_small_batches(self):
        call_command('recalculate_ratings', '--batch-size=1', stdout=StringIO())

        self.traveler1.refresh_from_db()
        self.traveler2.refresh_from_db()
        self.assertEqual(self.traveler1.ratings_count, 2)
        self.assertEqual(self.traveler2.ratings_count, 1)

    def test_second_run_finds_nothing_to_fix(self):
        call_command('recalculate_ratings', stdout=StringIO())

        out = StringIO()
        call_command('recalculate_ratings', stdout=out)

        self.assertIn('Processed 4 users total, 0 out of date.', out.getvalue())

    def test_invalid_batch_size(self):
        with self.assertRaises(CommandError):
            call_command('recalculate_ratings', '--batch-size=0', stdout=StringIO())
