# Recalculate Ratings Management Command
from decimal import Decimal

from django.core.management.base import BaseCommand, CommandError
from django.db.models import Avg, Count

from courier.models import Rating, User


class Command(BaseCommand):
    help = 'Recalculates user rating aggregates from stored ratings to ensure data consistency.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Run the command without saving changes to the database.',
        )
        parser.add_argument(
            '--batch-size',
            type=int,
            default=1000,
            help='Batch size for bulk processing.',
        )

    def handle(self, *args, **options):
        dry_run = options['dry_run']
        batch_size = options['batch_size']

        if batch_size < 1:
            raise CommandError('--batch-size must be at least 1.')

        self.recalculate_users(dry_run, batch_size)

        if dry_run:
            self.stdout.write(self.style.SUCCESS('Dry run completed. No changes saved.'))
        else:
            self.stdout.write(self.style.SUCCESS('Recalculation completed successfully.'))

    def recalculate_users(self, dry_run, batch_size):
        self.stdout.write('Recalculating user ratings...')

        stats_by_user = {
            row['rated_id']: row
            for row in Rating.objects.values('rated_id').annotate(avg=Avg('score'), total=Count('id'))
        }

        users = User.objects.order_by('pk').iterator(chunk_size=batch_size)
        updates = []
        count = 0
        changed = 0

        for user in users:
            stats = stats_by_user.get(user.pk)
            if stats is None:
                new_avg = Decimal('0.00')
                new_total = 0
            else:
                new_avg = Decimal(str(stats['avg'])).quantize(Decimal('0.01'))
                new_total = stats['total']

            if abs(user.avg_rating - new_avg) > Decimal('0.001') or user.ratings_count != new_total:
                if dry_run:
                    self.stdout.write(
                        f'  [DRY-RUN] User {user.id}: Rating {user.avg_rating} -> {new_avg}, '
                        f'Count {user.ratings_count} -> {new_total}'
                    )
                user.avg_rating = new_avg
                user.ratings_count = new_total
                updates.append(user)
                changed += 1

            if len(updates) >= batch_size:
                if not dry_run:
                    User.objects.bulk_update(updates, ['avg_rating', 'ratings_count'])
                updates = []

            count += 1
            if count % 100 == 0:
                self.stdout.write(f'Processed {count} users...')

        if updates and not dry_run:
            User.objects.bulk_update(updates, ['avg_rating', 'ratings_count'])

        self.stdout.write(f'Processed {count} users total, {changed} out of date.')
