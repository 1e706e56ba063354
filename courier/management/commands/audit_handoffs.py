# Audit Handoffs Management Command
from django.core.management.base import BaseCommand
from django.db import transaction

from courier.messaging import SystemMessageCode, append_system_message
from courier.models import (
    Booking, Message, ROLE_SENDER, ROLE_TRAVELER,
    STATUS_DELIVERED, STATUS_HANDED_OVER,
    STEP_DELIVERED, STEP_HANDED_OVER, STEP_NONE, STEP_SENDER_CONFIRMED,
)

# System messages every step implies, with the party that authors each
EXPECTED_MESSAGES = {
    STEP_NONE: [],
    STEP_SENDER_CONFIRMED: [
        (SystemMessageCode.SENDER_CONFIRMED, ROLE_SENDER),
    ],
    STEP_HANDED_OVER: [
        (SystemMessageCode.SENDER_CONFIRMED, ROLE_SENDER),
        (SystemMessageCode.HANDED_OVER, ROLE_TRAVELER),
    ],
    STEP_DELIVERED: [
        (SystemMessageCode.SENDER_CONFIRMED, ROLE_SENDER),
        (SystemMessageCode.HANDED_OVER, ROLE_TRAVELER),
        (SystemMessageCode.DELIVERED, ROLE_TRAVELER),
    ],
}

EXPECTED_STATUS = {
    STEP_HANDED_OVER: STATUS_HANDED_OVER,
    STEP_DELIVERED: STATUS_DELIVERED,
}


class Command(BaseCommand):
    help = (
        'Reports bookings whose handoff step has no matching system message '
        'or whose status disagrees with the step.'
    )

    def add_arguments(self, parser):
        parser.add_argument(
            '--repair',
            action='store_true',
            help='Append the missing system messages.',
        )

    def handle(self, *args, **options):
        repair = options['repair']

        bookings = (
            Booking.objects.exclude(handoff_step=STEP_NONE)
            .select_related('announcement')
            .order_by('pk')
        )

        incomplete = 0
        repaired = 0
        inconsistent = 0

        for booking in list(bookings):
            expected_status = EXPECTED_STATUS.get(booking.handoff_step)
            if expected_status and booking.status != expected_status:
                inconsistent += 1
                self.stdout.write(self.style.WARNING(
                    f'Booking {booking.pk}: step {booking.handoff_step} but status {booking.status}'
                ))

            present = set(
                Message.objects.filter(booking_id=booking.pk, is_system=True)
                .values_list('content', flat=True)
            )
            missing = [
                (code, party) for code, party in EXPECTED_MESSAGES[booking.handoff_step]
                if code.value not in present
            ]
            if not missing:
                continue

            incomplete += 1
            labels = ', '.join(code.value for code, _ in missing)
            self.stdout.write(f'Booking {booking.pk} ({booking.handoff_step}): missing {labels}')

            if repair:
                with transaction.atomic():
                    for code, party in missing:
                        author_id = booking.sender_id if party == ROLE_SENDER else booking.traveler_id
                        append_system_message(booking.pk, author_id, code)
                repaired += 1

        self.stdout.write(f'Found {incomplete} booking(s) with missing system messages.')
        if inconsistent:
            self.stdout.write(self.style.WARNING(
                f'Found {inconsistent} booking(s) whose status disagrees with the handoff step.'
            ))
        if repair:
            self.stdout.write(self.style.SUCCESS(f'Repaired {repaired} booking(s).'))
        elif incomplete:
            self.stdout.write('Run with --repair to append the missing messages.')
