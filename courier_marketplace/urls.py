"""
URL configuration for courier_marketplace project.
"""
from django.contrib import admin
from django.urls import path

from courier.views import (
    ConversationListView,
    UnreadCountView,
    BookingMessagesView,
    MarkReadView,
    HandoffView,
    DeliveryCodeVerifyView,
    BookingRatingView,
    RatingCreateView,
    UserRatingView,
    UserReviewsView,
)


urlpatterns = [
    path('admin/', admin.site.urls),

    # Conversations
    path('api/conversations/', ConversationListView.as_view(), name='conversation-list'),
    path('api/conversations/unread/', UnreadCountView.as_view(), name='conversation-unread'),

    # Messages
    path('api/bookings/<int:booking_id>/messages/', BookingMessagesView.as_view(), name='booking-messages'),
    path('api/bookings/<int:booking_id>/messages/read/', MarkReadView.as_view(), name='booking-messages-read'),

    # Handoff
    path('api/bookings/<int:booking_id>/handoff/', HandoffView.as_view(), name='booking-handoff'),
    path('api/bookings/<int:booking_id>/handoff/verify/', DeliveryCodeVerifyView.as_view(), name='booking-handoff-verify'),

    # Ratings
    path('api/bookings/<int:booking_id>/rating/', BookingRatingView.as_view(), name='booking-rating'),
    path('api/ratings/', RatingCreateView.as_view(), name='rating-create'),
    path('api/users/<int:user_id>/rating/', UserRatingView.as_view(), name='user-rating'),
    path('api/users/<int:user_id>/reviews/', UserReviewsView.as_view(), name='user-reviews'),
]
