"""
Django admin configuration for the courier app.

Handoff state and delivery codes are only written by the handoff state
machine, so they are read-only here.
"""

from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from django.utils.translation import gettext_lazy as _

from .models import Announcement, Booking, Message, Rating, User


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    """
    Custom admin interface for User model.

    Extends Django's UserAdmin with the avatar URL and rating aggregates.
    """

    list_display = [
        'email',
        'username',
        'first_name',
        'avg_rating',
        'ratings_count',
        'is_staff',
        'is_active',
        'date_joined',
    ]

    list_filter = ['is_staff', 'is_superuser', 'is_active', 'date_joined']

    search_fields = ['email', 'username', 'first_name', 'last_name']

    ordering = ['-date_joined']

    fieldsets = (
        (None, {
            'fields': ('username', 'password')
        }),
        (_('Personal Info'), {
            'fields': ('first_name', 'last_name', 'email', 'avatar_url')
        }),
        (_('Ratings'), {
            'fields': ('avg_rating', 'ratings_count')
        }),
        (_('Permissions'), {
            'fields': (
                'is_active',
                'is_staff',
                'is_superuser',
                'groups',
                'user_permissions',
            ),
            'classes': ('collapse',),
        }),
        (_('Important Dates'), {
            'fields': ('last_login', 'date_joined'),
            'classes': ('collapse',),
        }),
    )

    add_fieldsets = (
        (None, {
            'classes': ('wide',),
            'fields': ('username', 'email', 'password1', 'password2'),
        }),
    )

    # Aggregates are maintained by rating signals
    readonly_fields = ['avg_rating', 'ratings_count', 'last_login', 'date_joined']

    list_per_page = 25


@admin.register(Announcement)
class AnnouncementAdmin(admin.ModelAdmin):
    list_display = [
        'id',
        'title',
        'traveler',
        'departure_city',
        'destination_city',
        'departure_date',
        'available_space',
        'price_per_kg',
        'status',
    ]
    list_filter = ['status', 'departure_date']
    search_fields = ['title', 'departure_city', 'destination_city', 'traveler__email']
    raw_id_fields = ['traveler']
    date_hierarchy = 'departure_date'
    list_per_page = 25


class MessageInline(admin.TabularInline):
    model = Message
    extra = 0
    can_delete = False
    fields = ['sender', 'content', 'is_system', 'read_at', 'created_at']
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Booking)
class BookingAdmin(admin.ModelAdmin):
    """
    Admin interface for bookings.

    The conversation is shown inline and cannot be edited.
    """

    list_display = [
        'id',
        'sender',
        'announcement',
        'requested_kilos',
        'status',
        'handoff_step',
        'created_at',
    ]
    list_filter = ['status', 'handoff_step', 'created_at']
    search_fields = ['sender__email', 'announcement__traveler__email', 'announcement__title']
    raw_id_fields = ['sender', 'announcement']
    readonly_fields = ['handoff_step', 'delivery_code', 'created_at', 'updated_at']
    inlines = [MessageInline]
    list_per_page = 25


@admin.register(Message)
class MessageAdmin(admin.ModelAdmin):
    list_display = ['id', 'booking', 'sender', 'short_content', 'is_system', 'read_at', 'created_at']
    list_filter = ['is_system', 'created_at']
    search_fields = ['content', 'sender__email']
    readonly_fields = ['booking', 'sender', 'content', 'is_system', 'read_at', 'created_at']
    list_per_page = 50

    @admin.display(description=_('content'))
    def short_content(self, obj):
        return obj.content[:60]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(Rating)
class RatingAdmin(admin.ModelAdmin):
    list_display = ['id', 'booking', 'rater', 'rated', 'score', 'created_at']
    list_filter = ['score', 'created_at']
    search_fields = ['rater__email', 'rated__email', 'comment']
    raw_id_fields = ['booking', 'rater', 'rated']
    readonly_fields = ['created_at']
    list_per_page = 25
