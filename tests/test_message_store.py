"""
Tests for the message store: ordering, validation, read state and system
messages.
"""

from datetime import timedelta
from unittest import mock

from django.db import DatabaseError
from django.test import TestCase
from django.utils import timezone

from courier import messaging
from courier.exceptions import ConflictError, NotFoundError, StorageError, ValidationError
from courier.messaging import SystemMessageCode
from courier.models import Message, STATUS_CANCELLED, STATUS_PENDING, STATUS_REJECTED
from courier.realtime import EVENT_UPDATE, get_transport, messages_topic, reset_transport

from factories import create_announcement, create_booking, create_scenario


class MessageOrderingTests(TestCase):
    """list_messages returns the conversation oldest first, ties broken by id."""

    def setUp(self):
        self.sender, self.traveler, self.outsider, self.booking = create_scenario()

    def test_empty_conversation_returns_empty_list(self):
        self.assertEqual(messaging.list_messages(self.booking.id), [])

    def test_messages_are_ordered_by_creation_time(self):
        first = messaging.send(self.booking.id, self.sender.id, 'first')
        second = messaging.send(self.booking.id, self.traveler.id, 'second')
        third = messaging.send(self.booking.id, self.sender.id, 'third')

        now = timezone.now()
        Message.objects.filter(pk=first.pk).update(created_at=now - timedelta(minutes=3))
        Message.objects.filter(pk=second.pk).update(created_at=now - timedelta(minutes=1))
        Message.objects.filter(pk=third.pk).update(created_at=now - timedelta(minutes=2))

        ids = [m.id for m in messaging.list_messages(self.booking.id)]
        self.assertEqual(ids, [first.id, third.id, second.id])

    def test_equal_timestamps_are_ordered_by_id(self):
        messages = [messaging.send(self.booking.id, self.sender.id, f'm{i}') for i in range(4)]
        same_instant = timezone.now()
        Message.objects.filter(booking=self.booking).update(created_at=same_instant)

        ids = [m.id for m in messaging.list_messages(self.booking.id)]
        self.assertEqual(ids, sorted(m.id for m in messages))

    def test_other_bookings_messages_are_not_listed(self):
        other_booking = create_booking(self.outsider, self.booking.announcement)
        messaging.send(other_booking.id, self.outsider.id, 'not yours')
        messaging.send(self.booking.id, self.sender.id, 'yours')

        contents = [m.content for m in messaging.list_messages(self.booking.id)]
        self.assertEqual(contents, ['yours'])

    def test_list_failure_raises_storage_error(self):
        with mock.patch.object(Message.objects, 'filter', side_effect=DatabaseError('disk I/O error')):
            with self.assertRaises(StorageError):
                messaging.list_messages(self.booking.id)


class MessageSendTests(TestCase):
    """send validates content, participation and booking status."""

    def setUp(self):
        self.sender, self.traveler, self.outsider, self.booking = create_scenario()

    def test_send_stores_trimmed_unread_user_message(self):
        message = messaging.send(self.booking.id, self.sender.id, '   Hello there  \n')

        self.assertEqual(message.content, 'Hello there')
        self.assertFalse(message.is_system)
        self.assertIsNone(message.read_at)
        self.assertEqual(message.sender_id, self.sender.id)
        self.assertEqual(Message.objects.filter(booking=self.booking).count(), 1)

    def test_traveler_can_send(self):
        message = messaging.send(self.booking.id, self.traveler.id, 'Hi!')
        self.assertEqual(message.sender_id, self.traveler.id)

    def test_content_of_exactly_max_length_is_accepted(self):
        message = messaging.send(self.booking.id, self.sender.id, 'a' * 2000)
        self.assertEqual(len(message.content), 2000)

    def test_content_over_max_length_is_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            messaging.send(self.booking.id, self.sender.id, 'a' * 2001)

        self.assertEqual(ctx.exception.code, 'message_too_long')
        self.assertFalse(Message.objects.exists())

    def test_length_is_measured_after_trimming(self):
        message = messaging.send(self.booking.id, self.sender.id, '  ' + 'a' * 2000 + '  ')
        self.assertEqual(len(message.content), 2000)

    def test_whitespace_only_content_is_rejected(self):
        for content in ['', '   ', '\n\t ']:
            with self.subTest(content=content):
                with self.assertRaises(ValidationError) as ctx:
                    messaging.send(self.booking.id, self.sender.id, content)
                self.assertEqual(ctx.exception.code, 'message_empty')

        self.assertFalse(Message.objects.exists())

    def test_outsider_cannot_send(self):
        with self.assertRaises(NotFoundError):
            messaging.send(self.booking.id, self.outsider.id, 'let me in')
        self.assertFalse(Message.objects.exists())

    def test_missing_booking_raises_not_found(self):
        with self.assertRaises(NotFoundError):
            messaging.send(999999, self.sender.id, 'anyone?')

    def test_bookings_without_chat_surface_reject_messages(self):
        for booking_status in [STATUS_PENDING, STATUS_REJECTED, STATUS_CANCELLED]:
            with self.subTest(status=booking_status):
                booking = create_booking(self.sender, self.booking.announcement, status=booking_status)
                with self.assertRaises(ConflictError) as ctx:
                    messaging.send(booking.id, self.sender.id, 'hello')
                self.assertEqual(ctx.exception.code, 'chat_unavailable')

    def test_text_equal_to_system_code_stays_user_message(self):
        message = messaging.send(self.booking.id, self.sender.id, '[HANDOFF] delivered')

        self.assertFalse(message.is_system)
        self.assertEqual(messaging.render_message(message), '[HANDOFF] delivered')

    def test_storage_failure_raises_storage_error(self):
        with mock.patch.object(Message.objects, 'create', side_effect=DatabaseError('locked')):
            with self.assertLogs('courier.messaging', level='ERROR'):
                with self.assertRaises(StorageError):
                    messaging.send(self.booking.id, self.sender.id, 'hello')

    def test_stored_message_cannot_be_edited(self):
        message = messaging.send(self.booking.id, self.sender.id, 'original')
        message.content = 'edited'

        from django.core.exceptions import ValidationError as DjangoValidationError
        with self.assertRaises(DjangoValidationError):
            message.save()

        message.refresh_from_db()
        self.assertEqual(message.content, 'original')


class MarkReadTests(TestCase):
    """mark_read marks the counterpart's messages once and never reverts."""

    def setUp(self):
        reset_transport()
        self.sender, self.traveler, self.outsider, self.booking = create_scenario()

    def tearDown(self):
        reset_transport()

    def test_marks_only_messages_from_the_other_party(self):
        from_sender = [messaging.send(self.booking.id, self.sender.id, f's{i}') for i in range(3)]
        from_traveler = messaging.send(self.booking.id, self.traveler.id, 't1')

        marked = messaging.mark_read(self.booking.id, self.traveler.id)

        self.assertEqual(marked, 3)
        for message in from_sender:
            message.refresh_from_db()
            self.assertIsNotNone(message.read_at)
        from_traveler.refresh_from_db()
        self.assertIsNone(from_traveler.read_at)

    def test_mark_read_is_idempotent(self):
        messaging.send(self.booking.id, self.sender.id, 'hello')

        self.assertEqual(messaging.mark_read(self.booking.id, self.traveler.id), 1)
        self.assertEqual(messaging.mark_read(self.booking.id, self.traveler.id), 0)

    def test_read_at_never_changes_once_set(self):
        message = messaging.send(self.booking.id, self.sender.id, 'hello')
        messaging.mark_read(self.booking.id, self.traveler.id)
        message.refresh_from_db()
        first_read_at = message.read_at

        messaging.send(self.booking.id, self.sender.id, 'again')
        messaging.mark_read(self.booking.id, self.traveler.id)
        message.refresh_from_db()

        self.assertEqual(message.read_at, first_read_at)

    def test_system_messages_from_other_party_count_as_unread(self):
        messaging.append_system_message(self.booking.id, self.sender.id, SystemMessageCode.SENDER_CONFIRMED)

        self.assertEqual(messaging.mark_read(self.booking.id, self.traveler.id), 1)

    def test_outsider_cannot_mark_read(self):
        messaging.send(self.booking.id, self.sender.id, 'hello')

        with self.assertRaises(NotFoundError):
            messaging.mark_read(self.booking.id, self.outsider.id)
        self.assertTrue(Message.objects.filter(read_at__isnull=True).exists())

    def test_mark_read_publishes_one_update_per_marked_message(self):
        messages = [messaging.send(self.booking.id, self.sender.id, f'm{i}') for i in range(2)]
        subscription = get_transport().subscribe(messages_topic(self.booking.id), [EVENT_UPDATE])

        with self.captureOnCommitCallbacks(execute=True):
            messaging.mark_read(self.booking.id, self.traveler.id)

        events = subscription.drain()
        subscription.close()

        self.assertEqual(sorted(e.record['id'] for e in events), sorted(m.id for m in messages))
        self.assertTrue(all(e.record['read_at'] for e in events))

    def test_nothing_is_published_when_nothing_was_unread(self):
        subscription = get_transport().subscribe(messages_topic(self.booking.id))

        with self.captureOnCommitCallbacks(execute=True):
            messaging.mark_read(self.booking.id, self.traveler.id)

        self.assertEqual(subscription.drain(), [])
        subscription.close()


class SystemMessageTests(TestCase):
    """System messages use a closed set of codes and render as labels."""

    def setUp(self):
        self.sender, self.traveler, self.outsider, self.booking = create_scenario()

    def test_append_system_message_stores_code_verbatim(self):
        message = messaging.append_system_message(
            self.booking.id, self.traveler.id, SystemMessageCode.HANDED_OVER
        )

        self.assertTrue(message.is_system)
        self.assertEqual(message.content, '[HANDOFF] handed_over')

    def test_plain_string_code_is_accepted(self):
        message = messaging.append_system_message(self.booking.id, self.sender.id, '[HANDOFF] sender_confirmed')
        self.assertEqual(message.content, SystemMessageCode.SENDER_CONFIRMED.value)

    def test_unknown_code_is_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            messaging.append_system_message(self.booking.id, self.sender.id, '[HANDOFF] lost')

        self.assertEqual(ctx.exception.code, 'unknown_system_code')
        self.assertFalse(Message.objects.exists())

    def test_render_uses_label_for_system_messages(self):
        expected = {
            SystemMessageCode.SENDER_CONFIRMED: 'sender confirmed handoff',
            SystemMessageCode.HANDED_OVER: 'package handed over',
            SystemMessageCode.DELIVERED: 'package delivered',
        }
        for code, label in expected.items():
            with self.subTest(code=code):
                message = messaging.append_system_message(self.booking.id, self.traveler.id, code)
                self.assertEqual(messaging.render_message(message), label)

    def test_serialize_message_carries_read_state(self):
        message = messaging.send(self.booking.id, self.sender.id, 'hello')
        data = messaging.serialize_message(message)

        self.assertEqual(data['id'], message.id)
        self.assertEqual(data['booking_id'], self.booking.id)
        self.assertEqual(data['content'], 'hello')
        self.assertFalse(data['is_system'])
        self.assertIsNone(data['read_at'])


class AnnouncementOwnershipTests(TestCase):
    """The traveler of a booking is the owner of its announcement."""

    def test_traveler_is_resolved_through_announcement(self):
        sender, traveler, outsider, booking = create_scenario()
        other_announcement = create_announcement(outsider)
        other_booking = create_booking(sender, other_announcement)

        self.assertEqual(booking.traveler_id, traveler.id)
        self.assertEqual(other_booking.traveler_id, outsider.id)
        self.assertEqual(booking.role_of(traveler.id), 'traveler')
        self.assertIsNone(other_booking.role_of(traveler.id))
