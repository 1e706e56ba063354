"""
Shared builders for test data.

A standard scenario has a traveler T who published an announcement, a
sender S who booked kilos on it, and an outsider with no part in the booking.
"""

from datetime import date, timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model

from courier.models import Announcement, Booking, STATUS_APPROVED

User = get_user_model()


def create_user(username, **extra):
    extra.setdefault('email', f'{username}@test.com')
    return User.objects.create_user(username=username, password='testpass123', **extra)


def create_announcement(traveler, **overrides):
    data = {
        'title': 'Paris to Dakar, 20 kg free',
        'departure_city': 'Paris',
        'departure_country': 'France',
        'destination_city': 'Dakar',
        'destination_country': 'Senegal',
        'departure_date': date.today() + timedelta(days=10),
        'available_space': Decimal('20.00'),
        'price_per_kg': Decimal('8.50'),
    }
    data.update(overrides)
    return Announcement.objects.create(traveler=traveler, **data)


def create_booking(sender, announcement, status=STATUS_APPROVED, **overrides):
    data = {
        'requested_kilos': Decimal('5.00'),
        'message': 'Two boxes of books',
    }
    data.update(overrides)
    return Booking.objects.create(sender=sender, announcement=announcement, status=status, **data)


def create_scenario(prefix=''):
    """Return (sender, traveler, outsider, booking) with an approved booking."""
    traveler = create_user(f'{prefix}traveler', first_name='Tom')
    sender = create_user(f'{prefix}sender', first_name='Sara')
    outsider = create_user(f'{prefix}outsider')
    announcement = create_announcement(traveler)
    booking = create_booking(sender, announcement)
    return sender, traveler, outsider, booking
