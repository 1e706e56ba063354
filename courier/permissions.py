"""
Custom permission classes for the courier API.
"""

from rest_framework import permissions
from rest_framework.exceptions import NotFound


class IsBookingParticipant(permissions.BasePermission):
    """
    Object-level permission that allows only the sender and the traveler of
    a booking.

    Outsiders get a 404 rather than a 403 so the existence of other users'
    bookings never leaks.

    Usage:
        class MyView(APIView):
            permission_classes = [IsAuthenticated, IsBookingParticipant]

            def get(self, request, booking_id):
                booking = ...
                self.check_object_permissions(request, booking)
    """

    message = 'Booking not found.'

    def has_permission(self, request, view):
        return bool(request.user and request.user.is_authenticated)

    def has_object_permission(self, request, view, obj):
        """
        Check that the requesting user takes part in the booking.

        Args:
            request: HTTP request object
            view: View being accessed
            obj: Booking instance, or any object with a ``booking`` attribute

        Returns:
            bool: True if user is the booking's sender or traveler

        Raises:
            NotFound: If the user is neither
        """
        booking = getattr(obj, 'booking', obj)
        if not booking.is_participant(request.user.id):
            raise NotFound(self.message)
        return True
