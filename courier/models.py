"""
Data model for the courier marketplace core.

Announcements and bookings are created and approved by external CRUD
collaborators; this app reads their ownership and owns the handoff fields,
the chat log and the ratings.
"""

from decimal import Decimal

from django.contrib.auth.models import AbstractUser
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models
from django.utils.translation import gettext_lazy as _

from .validators import validate_positive_kilos


# Booking statuses
STATUS_PENDING = 'pending'
STATUS_APPROVED = 'approved'
STATUS_REJECTED = 'rejected'
STATUS_CANCELLED = 'cancelled'
STATUS_HANDED_OVER = 'handed_over'
STATUS_DELIVERED = 'delivered'

# Bookings in these statuses never get a chat surface
CLOSED_STATUSES = (STATUS_PENDING, STATUS_REJECTED, STATUS_CANCELLED)

# Handoff steps, in protocol order
STEP_NONE = 'none'
STEP_SENDER_CONFIRMED = 'sender_confirmed'
STEP_HANDED_OVER = 'handed_over'
STEP_DELIVERED = 'delivered'

HANDOFF_ORDER = (STEP_NONE, STEP_SENDER_CONFIRMED, STEP_HANDED_OVER, STEP_DELIVERED)

ROLE_SENDER = 'sender'
ROLE_TRAVELER = 'traveler'


class User(AbstractUser):
    """
    Marketplace user.

    Identity is owned by the external identity provider; the core only reads
    display fields (names, avatar URL) and keeps denormalized rating
    aggregates for profile rendering.

    Additional fields:
    - email: Required, unique email address
    - avatar_url: Optional opaque avatar URL
    - avg_rating: Average score received (0.00 when unrated)
    - ratings_count: Number of ratings received
    """

    email = models.EmailField(
        _('email address'),
        unique=True,
        error_messages={
            'unique': _('A user with that email already exists.'),
        },
    )

    avatar_url = models.URLField(
        _('avatar url'),
        max_length=500,
        blank=True,
        null=True,
        help_text=_('Opaque avatar URL served by the image store.')
    )

    avg_rating = models.DecimalField(
        _('average rating'),
        max_digits=3,
        decimal_places=2,
        default=Decimal('0.00'),
        validators=[
            MinValueValidator(Decimal('0.00')),
            MaxValueValidator(Decimal('5.00')),
        ],
        help_text=_('Average score received, maintained from ratings.')
    )

    ratings_count = models.PositiveIntegerField(
        _('ratings count'),
        default=0,
        help_text=_('Number of ratings received.')
    )

    class Meta:
        verbose_name = _('user')
        verbose_name_plural = _('users')
        ordering = ['-date_joined']

    def __str__(self):
        return self.email or self.username


class Announcement(models.Model):
    """
    A traveler's published luggage capacity on a route and date.

    Fields:
    - traveler: Owner of the announcement
    - title: Short listing title
    - departure_city / departure_country: Route origin
    - destination_city / destination_country: Route destination
    - departure_date: Travel date
    - available_space: Capacity in kilos
    - price_per_kg: Informational price per kilo
    - status: active, completed or cancelled
    """

    STATUS_CHOICES = [
        ('active', 'Active'),
        ('completed', 'Completed'),
        ('cancelled', 'Cancelled'),
    ]

    traveler = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='announcements',
        help_text=_('Traveler offering the luggage space')
    )

    title = models.CharField(_('title'), max_length=200)

    departure_city = models.CharField(_('departure city'), max_length=120)
    departure_country = models.CharField(_('departure country'), max_length=120, blank=True, default='')
    destination_city = models.CharField(_('destination city'), max_length=120)
    destination_country = models.CharField(_('destination country'), max_length=120, blank=True, default='')

    departure_date = models.DateField(_('departure date'))

    available_space = models.DecimalField(
        _('available space'),
        max_digits=7,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.00'))],
        help_text=_('Luggage capacity in kilos')
    )

    price_per_kg = models.DecimalField(
        _('price per kg'),
        max_digits=8,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.00'))],
        help_text=_('Informational price per kilo')
    )

    status = models.CharField(
        _('status'),
        max_length=20,
        choices=STATUS_CHOICES,
        default='active'
    )

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)
    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    class Meta:
        verbose_name = _('announcement')
        verbose_name_plural = _('announcements')
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['traveler'], name='courier_ann_traveler_idx'),
            models.Index(fields=['departure_date'], name='courier_ann_departure_idx'),
        ]

    def __str__(self):
        return f"{self.departure_city} → {self.destination_city} ({self.departure_date})"


class Booking(models.Model):
    """
    A sender's request for kilos against a traveler's announcement.

    The booking owns exactly one conversation. Its ``status`` and
    ``handoff_step`` move in lockstep once the handoff starts:
    handed_over/handed_over and delivered/delivered. Only the handoff state
    machine writes ``handoff_step``, ``delivery_code`` and the post-approval
    statuses, always through conditional updates.
    """

    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_APPROVED, 'Approved'),
        (STATUS_REJECTED, 'Rejected'),
        (STATUS_CANCELLED, 'Cancelled'),
        (STATUS_HANDED_OVER, 'Handed over'),
        (STATUS_DELIVERED, 'Delivered'),
    ]

    HANDOFF_STEP_CHOICES = [
        (STEP_NONE, 'None'),
        (STEP_SENDER_CONFIRMED, 'Sender confirmed'),
        (STEP_HANDED_OVER, 'Handed over'),
        (STEP_DELIVERED, 'Delivered'),
    ]

    sender = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='sent_bookings',
        help_text=_('User shipping the goods')
    )

    announcement = models.ForeignKey(
        Announcement,
        on_delete=models.CASCADE,
        related_name='bookings',
        help_text=_('Announcement the kilos are booked against')
    )

    requested_kilos = models.DecimalField(
        _('requested kilos'),
        max_digits=7,
        decimal_places=2,
        validators=[validate_positive_kilos],
    )

    message = models.TextField(
        _('message'),
        blank=True,
        null=True,
        help_text=_('Optional note sent with the booking request')
    )

    status = models.CharField(
        _('status'),
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_PENDING
    )

    handoff_step = models.CharField(
        _('handoff step'),
        max_length=20,
        choices=HANDOFF_STEP_CHOICES,
        default=STEP_NONE
    )

    delivery_code = models.CharField(
        _('delivery code'),
        max_length=10,
        blank=True,
        null=True,
        help_text=_('One-time code issued when the goods are handed over')
    )

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)
    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    class Meta:
        verbose_name = _('booking')
        verbose_name_plural = _('bookings')
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['sender'], name='courier_bkg_sender_idx'),
            models.Index(fields=['announcement'], name='courier_bkg_announcement_idx'),
            models.Index(fields=['status'], name='courier_bkg_status_idx'),
        ]

    def __str__(self):
        return f"Booking #{self.pk} ({self.requested_kilos} kg, {self.status})"

    @property
    def traveler_id(self):
        return self.announcement.traveler_id

    @property
    def traveler(self):
        return self.announcement.traveler

    @property
    def has_chat(self):
        """Conversations exist from approval onward."""
        return self.status not in CLOSED_STATUSES

    @property
    def total_price(self):
        """Informational price: requested kilos times the announcement's price per kilo."""
        return (self.requested_kilos * self.announcement.price_per_kg).quantize(Decimal('0.01'))

    def role_of(self, user_id):
        """Return 'sender', 'traveler' or None for the given user id."""
        if user_id is None:
            return None
        if user_id == self.sender_id:
            return ROLE_SENDER
        if user_id == self.traveler_id:
            return ROLE_TRAVELER
        return None

    def is_participant(self, user_id):
        return self.role_of(user_id) is not None

    def counterpart_id(self, user_id):
        """Id of the other participant, or None for outsiders."""
        role = self.role_of(user_id)
        if role == ROLE_SENDER:
            return self.traveler_id
        if role == ROLE_TRAVELER:
            return self.sender_id
        return None

    def clean(self):
        super().clean()

        if self.sender_id and self.announcement_id and self.sender_id == self.announcement.traveler_id:
            raise ValidationError({
                'sender': _('Travelers cannot book their own announcement.')
            })

        if self.handoff_step == STEP_HANDED_OVER and self.status != STATUS_HANDED_OVER:
            raise ValidationError({
                'status': _('A handed over booking must have status handed_over.')
            })

        if self.handoff_step == STEP_DELIVERED and self.status != STATUS_DELIVERED:
            raise ValidationError({
                'status': _('A delivered booking must have status delivered.')
            })


class Message(models.Model):
    """
    One entry of a booking's conversation.

    Messages are immutable once written. The only later change is
    ``read_at``, which moves from null to a timestamp exactly once.
    ``is_system`` alone marks protocol entries; content that merely looks
    like a system code is still an ordinary message.
    """

    booking = models.ForeignKey(
        Booking,
        on_delete=models.CASCADE,
        related_name='messages',
        help_text=_('Booking owning the conversation')
    )

    sender = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='chat_messages',
        help_text=_('Sender or traveler of the booking')
    )

    content = models.TextField(_('content'), max_length=2000)

    is_system = models.BooleanField(
        _('system message'),
        default=False,
        help_text=_('True for entries generated by the handoff protocol')
    )

    read_at = models.DateTimeField(_('read at'), blank=True, null=True)

    created_at = models.DateTimeField(_('created at'), auto_now_add=True, db_index=True)

    class Meta:
        verbose_name = _('message')
        verbose_name_plural = _('messages')
        ordering = ['created_at', 'id']
        indexes = [
            models.Index(fields=['booking', 'created_at'], name='courier_msg_bkg_created_idx'),
            models.Index(fields=['booking', 'read_at'], name='courier_msg_bkg_read_idx'),
        ]

    def __str__(self):
        return f"{self.sender_id} → booking {self.booking_id}: {self.content[:50]}"

    def save(self, *args, **kwargs):
        # Existing rows may only gain a read_at timestamp
        if self.pk is not None and not self._state.adding:
            update_fields = kwargs.get('update_fields')
            if update_fields is None or set(update_fields) != {'read_at'}:
                raise ValidationError(_('Messages are immutable after creation.'))
        super().save(*args, **kwargs)


class Rating(models.Model):
    """
    Score given by one booking participant to the other after delivery.

    At most one rating exists per (booking, rater); the database unique
    constraint is the safety net against retried or concurrent submissions.
    """

    booking = models.ForeignKey(
        Booking,
        on_delete=models.CASCADE,
        related_name='ratings',
        help_text=_('Delivered booking being rated')
    )

    rater = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='ratings_given',
        help_text=_('User giving the rating')
    )

    rated = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='ratings_received',
        help_text=_('User receiving the rating')
    )

    score = models.PositiveSmallIntegerField(
        _('score'),
        validators=[
            MinValueValidator(1, message=_('Score must be at least 1.')),
            MaxValueValidator(5, message=_('Score must be at most 5.')),
        ],
        help_text=_('Score from 1 to 5')
    )

    comment = models.TextField(_('comment'), blank=True, null=True)

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)

    class Meta:
        verbose_name = _('rating')
        verbose_name_plural = _('ratings')
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['rated'], name='courier_rating_rated_idx'),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=['booking', 'rater'],
                name='unique_rating_per_booking_rater'
            ),
            models.CheckConstraint(
                condition=models.Q(score__gte=1) & models.Q(score__lte=5),
                name='rating_score_between_1_and_5'
            ),
        ]

    def __str__(self):
        return f"Rating by {self.rater_id} for {self.rated_id} - {self.score}★"
