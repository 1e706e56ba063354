"""
API views for the courier marketplace core.

Every endpoint requires a valid bearer token issued by the identity
provider. Bookings the caller takes no part in answer 404.
"""

import logging

from django.contrib.auth import get_user_model
from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from .exceptions import CourierError, NotFoundError, PermissionDeniedError

User = get_user_model()
logger = logging.getLogger(__name__)


def get_client_ip(request):
    """
    Get client IP address from request.
    Handles proxy headers for accurate IP detection.
    """
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        return x_forwarded_for.split(',')[0]
    return request.META.get('REMOTE_ADDR')


def error_response(request, error, action):
    """
    Translate a CourierError into an API response.

    Authorization failures are logged as unauthorized access attempts.
    """
    if isinstance(error, (NotFoundError, PermissionDeniedError)):
        logger.warning(
            f"Unauthorized {action} attempt. "
            f"User: {request.user.email} (ID: {request.user.id}), "
            f"Code: {error.code}, "
            f"IP: {get_client_ip(request)}"
        )
    return Response(error.as_dict(), status=error.status_code)


# ============================================================================
# Conversations
# ============================================================================

class ConversationListView(APIView):
    """
    API endpoint for the caller's inbox.

    GET /api/conversations/
    Headers: Authorization: Bearer <access_token>

    Success response (200):
    [
        {
            "booking_id": 12,
            "status": "approved",
            "handoff_step": "none",
            "role": "sender",
            "other_user_id": 4,
            "other_user": {"first_name": "Tom", "last_name": null, "avatar_url": null},
            "departure_city": "Paris",
            "destination_city": "Dakar",
            "departure_date": "2026-11-02",
            "last_message": "See you at the airport",
            "last_message_is_system": false,
            "last_message_at": "2026-10-30T09:12:00Z",
            "unread_count": 2
        }
    ]

    Conversations with messages come first, latest activity first.
    """
    permission_classes = [IsAuthenticated]

    def get(self, request, *args, **kwargs):
        from .conversations import list_conversations
        from .serializers import ConversationSerializer

        try:
            conversations = list_conversations(request.user.id)
        except CourierError as e:
            return error_response(request, e, 'conversation list')

        serializer = ConversationSerializer(conversations, many=True)
        return Response(serializer.data, status=status.HTTP_200_OK)


class UnreadCountView(APIView):
    """
    API endpoint for the unread badge.

    GET /api/conversations/unread/

    Success response (200):
    {"unread": 3}
    """
    permission_classes = [IsAuthenticated]

    def get(self, request, *args, **kwargs):
        from .conversations import get_unread_total

        return Response({'unread': get_unread_total(request.user.id)}, status=status.HTTP_200_OK)


# ============================================================================
# Messages
# ============================================================================

class BookingMessagesView(APIView):
    """
    API endpoint for a booking's conversation.

    GET /api/bookings/<booking_id>/messages/
        Messages oldest first.

    POST /api/bookings/<booking_id>/messages/
    Request body: {"content": "Hello"}

    When the caller is the booking's sender and the handoff waits in
    handed_over, the content is first tried as the delivery code.

    Success responses:
    - 201: {"code_accepted": false, "message": {...}}
    - 200: {"code_accepted": true, "message": null}

    Error responses:
    - 400: Empty or too long content
    - 404: Booking not found or caller not a participant
    - 409: Booking has no chat (pending, rejected, cancelled)
    - 503: Storage unavailable
    """
    permission_classes = [IsAuthenticated]

    def get(self, request, booking_id, *args, **kwargs):
        from .messaging import get_booking_for_participant, list_messages
        from .serializers import MessageSerializer

        try:
            get_booking_for_participant(booking_id, request.user.id)
            messages = list_messages(booking_id)
        except CourierError as e:
            return error_response(request, e, 'message list')

        serializer = MessageSerializer(messages, many=True)
        return Response(serializer.data, status=status.HTTP_200_OK)

    def post(self, request, booking_id, *args, **kwargs):
        from .serializers import MessageCreateSerializer, MessageSerializer
        from .sessions import send_or_submit_code

        serializer = MessageCreateSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            result = send_or_submit_code(
                booking_id,
                request.user.id,
                serializer.validated_data['content'],
            )
        except CourierError as e:
            return error_response(request, e, 'message send')

        if result.code_accepted:
            return Response(
                {'code_accepted': True, 'message': None},
                status=status.HTTP_200_OK
            )

        return Response(
            {'code_accepted': False, 'message': MessageSerializer(result.message).data},
            status=status.HTTP_201_CREATED
        )


class MarkReadView(APIView):
    """
    API endpoint marking the counterpart's messages as read.

    POST /api/bookings/<booking_id>/messages/read/

    Success response (200):
    {"marked": 2}
    """
    permission_classes = [IsAuthenticated]

    def post(self, request, booking_id, *args, **kwargs):
        from .messaging import mark_read

        try:
            marked = mark_read(booking_id, request.user.id)
        except CourierError as e:
            return error_response(request, e, 'mark read')

        return Response({'marked': marked}, status=status.HTTP_200_OK)


# ============================================================================
# Handoff
# ============================================================================

class HandoffView(APIView):
    """
    API endpoint for the handoff protocol.

    GET /api/bookings/<booking_id>/handoff/
        Current handoff state for the caller.

    POST /api/bookings/<booking_id>/handoff/
    Request body: {"step": "sender_confirmed" | "handed_over" | "delivered"}

    Success response (200): the new handoff state. ``delivery_code`` is set
    once the booking is handed over and shown to the traveler only.

    Error responses:
    - 400: Unknown step
    - 403: Caller is the wrong party for this step
    - 404: Booking not found or caller not a participant
    - 409: Booking is not in the step this transition starts from
    - 503: Storage unavailable
    """
    permission_classes = [IsAuthenticated]

    def get(self, request, booking_id, *args, **kwargs):
        from .handoff import get_handoff_state
        from .serializers import HandoffStateSerializer

        try:
            state = get_handoff_state(booking_id, request.user.id)
        except CourierError as e:
            return error_response(request, e, 'handoff state')

        return Response(HandoffStateSerializer(state).data, status=status.HTTP_200_OK)

    def post(self, request, booking_id, *args, **kwargs):
        from .handoff import confirm_handoff, get_handoff_state
        from .serializers import HandoffStateSerializer, HandoffTransitionSerializer

        serializer = HandoffTransitionSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        step = serializer.validated_data['step']
        try:
            confirm_handoff(booking_id, request.user.id, step)
            state = get_handoff_state(booking_id, request.user.id)
        except CourierError as e:
            return error_response(request, e, f'handoff {step}')

        logger.info(
            f"Handoff step applied via API. "
            f"Booking ID: {booking_id}, Step: {step}, "
            f"User: {request.user.email} (ID: {request.user.id}), "
            f"IP: {get_client_ip(request)}"
        )
        return Response(HandoffStateSerializer(state).data, status=status.HTTP_200_OK)


class DeliveryCodeVerifyView(APIView):
    """
    API endpoint for completing a delivery with its code.

    POST /api/bookings/<booking_id>/handoff/verify/
    Request body: {"code": "ABCD2345EF"}

    Success response (200):
    {"delivered": true}

    Error responses:
    - 400: {"delivered": false, ...} for any rejected code
    - 404: Booking not found or caller not a participant
    - 503: Storage unavailable
    """
    permission_classes = [IsAuthenticated]

    def post(self, request, booking_id, *args, **kwargs):
        from .handoff import validate_delivery_code
        from .messaging import get_booking_for_participant
        from .serializers import DeliveryCodeSerializer

        serializer = DeliveryCodeSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            get_booking_for_participant(booking_id, request.user.id)
            delivered = validate_delivery_code(
                booking_id,
                serializer.validated_data['code'],
                request.user.id,
            )
        except CourierError as e:
            return error_response(request, e, 'delivery code verification')

        if not delivered:
            return Response(
                {
                    'delivered': False,
                    'detail': 'The delivery code is not valid for this booking.',
                    'code': 'invalid_delivery_code',
                },
                status=status.HTTP_400_BAD_REQUEST
            )

        return Response({'delivered': True}, status=status.HTTP_200_OK)


# ============================================================================
# Ratings
# ============================================================================

class BookingRatingView(APIView):
    """
    API endpoint for the caller's own rating of a booking.

    GET /api/bookings/<booking_id>/rating/

    Success response (200):
    {"rating": {...}} or {"rating": null}
    """

    def get_permissions(self):
        from .permissions import IsBookingParticipant
        return [IsAuthenticated(), IsBookingParticipant()]

    def get(self, request, booking_id, *args, **kwargs):
        from .models import Booking
        from .ratings import fetch_rating_for_booking
        from .serializers import RatingSerializer

        booking = Booking.objects.select_related('announcement').filter(pk=booking_id).first()
        if booking is None:
            return Response({'detail': 'Booking not found.'}, status=status.HTTP_404_NOT_FOUND)
        self.check_object_permissions(request, booking)

        rating = fetch_rating_for_booking(booking_id, request.user.id)
        data = RatingSerializer(rating).data if rating is not None else None
        return Response({'rating': data}, status=status.HTTP_200_OK)


class RatingCreateView(APIView):
    """
    API endpoint for rating the other participant of a delivered booking.

    POST /api/ratings/
    Request body: {
        "booking_id": 123,
        "score": 5,
        "comment": "Careful with the parcel"
    }

    Success response (201): the stored rating.

    Error responses:
    - 400: Invalid score or booking not delivered
    - 404: Booking not found or caller not a participant
    - 409: Caller already rated this booking
    - 503: Storage unavailable
    """
    permission_classes = [IsAuthenticated]

    def post(self, request, *args, **kwargs):
        from rest_framework.exceptions import NotFound
        from .ratings import submit_rating
        from .serializers import RatingCreateSerializer, RatingSerializer

        serializer = RatingCreateSerializer(data=request.data, context={'request': request})

        try:
            serializer.is_valid(raise_exception=True)
        except NotFound as e:
            logger.warning(
                f"Rating creation failed - booking not found. "
                f"User: {request.user.email}, "
                f"Booking ID: {request.data.get('booking_id')}"
            )
            return Response({'detail': str(e)}, status=status.HTTP_404_NOT_FOUND)

        data = serializer.validated_data
        try:
            rating = submit_rating(
                data['booking'].pk,
                request.user.id,
                data['rated_id'],
                data['score'],
                data.get('comment'),
            )
        except CourierError as e:
            return error_response(request, e, 'rating')

        return Response(RatingSerializer(rating).data, status=status.HTTP_201_CREATED)


# ============================================================================
# User ratings
# ============================================================================

class UserRatingView(APIView):
    """
    API endpoint for a user's average rating.

    GET /api/users/<user_id>/rating/

    Success response (200):
    {"average": 4.5, "count": 2}
    """
    permission_classes = [IsAuthenticated]

    def get(self, request, user_id, *args, **kwargs):
        from .ratings import get_average_rating
        from .serializers import RatingSummarySerializer

        if not User.objects.filter(pk=user_id).exists():
            return Response({'detail': 'User not found.'}, status=status.HTTP_404_NOT_FOUND)

        summary = get_average_rating(user_id)
        return Response(RatingSummarySerializer(summary).data, status=status.HTTP_200_OK)


class UserReviewsView(APIView):
    """
    API endpoint for the ratings a user received, newest first.

    GET /api/users/<user_id>/reviews/
    """
    permission_classes = [IsAuthenticated]

    def get(self, request, user_id, *args, **kwargs):
        from .ratings import list_user_reviews
        from .serializers import ReviewSerializer

        if not User.objects.filter(pk=user_id).exists():
            return Response({'detail': 'User not found.'}, status=status.HTTP_404_NOT_FOUND)

        reviews = list_user_reviews(user_id)
        return Response(ReviewSerializer(reviews, many=True).data, status=status.HTTP_200_OK)
