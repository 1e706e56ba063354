"""
Serializers for the courier API.
"""

from django.contrib.auth import get_user_model
from rest_framework import serializers

from .models import Booking, Message, Rating, STEP_DELIVERED
from .profiles import display_profile

User = get_user_model()


class ParticipantSerializer(serializers.ModelSerializer):
    """
    Public display identity of a user.

    Fields:
    - id: User ID
    - first_name: First name, falling back to username or e-mail local part
    - last_name: Last name or null
    - avatar_url: Opaque avatar URL or null
    """

    first_name = serializers.SerializerMethodField()
    last_name = serializers.SerializerMethodField()
    avatar_url = serializers.SerializerMethodField()

    class Meta:
        model = User
        fields = ['id', 'first_name', 'last_name', 'avatar_url']
        read_only_fields = fields

    def get_first_name(self, obj):
        return display_profile(obj)['first_name']

    def get_last_name(self, obj):
        return display_profile(obj)['last_name']

    def get_avatar_url(self, obj):
        return display_profile(obj)['avatar_url']


class MessageSerializer(serializers.ModelSerializer):
    """
    Serializer for chat messages.

    ``display`` is the text to render: the label for system messages, the
    content for everything else.
    """

    booking_id = serializers.IntegerField(read_only=True)
    sender_id = serializers.IntegerField(read_only=True)
    sender = ParticipantSerializer(read_only=True)
    display = serializers.SerializerMethodField()

    class Meta:
        model = Message
        fields = ['id', 'booking_id', 'sender_id', 'sender', 'content', 'display', 'is_system', 'read_at', 'created_at']
        read_only_fields = fields

    def get_display(self, obj):
        from .messaging import render_message
        return render_message(obj)


class MessageCreateSerializer(serializers.Serializer):
    """
    Input for sending a message.

    Length rules are applied by ``courier.messaging.send`` on the trimmed
    text; this serializer only requires a string.
    """

    content = serializers.CharField(required=True, allow_blank=True, trim_whitespace=False)


class ConversationSerializer(serializers.Serializer):
    """Read-only view of a ``courier.conversations.Conversation``."""

    booking_id = serializers.IntegerField()
    status = serializers.CharField()
    handoff_step = serializers.CharField()
    role = serializers.CharField()
    other_user_id = serializers.IntegerField()
    other_user = serializers.DictField()
    departure_city = serializers.CharField()
    destination_city = serializers.CharField()
    departure_date = serializers.DateField(allow_null=True)
    total_price = serializers.DecimalField(max_digits=16, decimal_places=2, allow_null=True)
    last_message = serializers.CharField(allow_null=True)
    last_message_is_system = serializers.BooleanField()
    last_message_at = serializers.DateTimeField(allow_null=True)
    unread_count = serializers.IntegerField()


class HandoffStateSerializer(serializers.Serializer):
    booking_id = serializers.IntegerField()
    status = serializers.CharField()
    step = serializers.CharField()
    role = serializers.CharField()
    delivery_code = serializers.CharField(allow_null=True)
    next_action = serializers.CharField(allow_null=True)
    can_submit_code = serializers.BooleanField()


class HandoffTransitionSerializer(serializers.Serializer):
    """
    Input for a handoff step.

    Unknown steps are rejected by the state machine itself so that every
    caller gets the same error.
    """

    step = serializers.CharField(required=True)


class DeliveryCodeSerializer(serializers.Serializer):
    code = serializers.CharField(required=True, max_length=64, trim_whitespace=True)


class RatingSerializer(serializers.ModelSerializer):
    """
    Serializer for stored ratings.

    Fields:
    - id: Rating ID
    - booking_id: Rated booking
    - rater_id / rated_id: Participants
    - score: 1 to 5
    - comment: Optional text
    - created_at: Timestamp
    """

    booking_id = serializers.IntegerField(read_only=True)
    rater_id = serializers.IntegerField(read_only=True)
    rated_id = serializers.IntegerField(read_only=True)

    class Meta:
        model = Rating
        fields = ['id', 'booking_id', 'rater_id', 'rated_id', 'score', 'comment', 'created_at']
        read_only_fields = fields


class RatingCreateSerializer(serializers.Serializer):
    """
    Input for rating the other participant of a delivered booking.

    Security features:
    - Requires JWT authentication (enforced by view)
    - Validates booking exists and the user took part in it
    - Only delivered bookings can be rated
    - The rated user is always the requester's counterpart

    Fields:
    - booking_id: Required, delivered booking
    - score: Required, integer from 1-5
    - comment: Optional text feedback
    """

    booking_id = serializers.IntegerField(required=True)
    score = serializers.IntegerField(required=True)
    comment = serializers.CharField(required=False, allow_blank=True, allow_null=True, max_length=1000)

    def validate_score(self, value):
        """
        Validate score is integer between 1-5.

        Raises:
            ValidationError: If score is not between 1-5
        """
        if value < 1 or value > 5:
            raise serializers.ValidationError("Score must be between 1 and 5.")
        return value

    def validate(self, attrs):
        """
        Object-level validation for booking state and participation.

        Sets ``booking`` and ``rated_id`` on the validated data.

        Raises:
            NotFound: If the booking does not exist or the user is not a participant
            ValidationError: If the booking is not delivered
        """
        from rest_framework.exceptions import NotFound

        request = self.context.get('request')
        if not request or not request.user:
            raise serializers.ValidationError("Authentication required to rate a booking.")

        booking = (
            Booking.objects.select_related('announcement')
            .filter(pk=attrs['booking_id'])
            .first()
        )
        if booking is None or not booking.is_participant(request.user.id):
            raise NotFound("Booking not found.")

        if booking.handoff_step != STEP_DELIVERED:
            raise serializers.ValidationError({
                'booking_id': f"Only delivered bookings can be rated. This booking is {booking.status}."
            })

        attrs['booking'] = booking
        attrs['rated_id'] = booking.counterpart_id(request.user.id)
        return attrs


class RatingSummarySerializer(serializers.Serializer):
    average = serializers.FloatField()
    count = serializers.IntegerField()


class ReviewSerializer(serializers.Serializer):
    """A received rating with the rater's display identity."""

    id = serializers.IntegerField()
    booking_id = serializers.IntegerField()
    score = serializers.IntegerField()
    comment = serializers.CharField(allow_null=True)
    created_at = serializers.DateTimeField()
    rater_id = serializers.IntegerField()
    rater = serializers.DictField()
