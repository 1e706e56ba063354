"""
Concurrency tests for handoff transitions and delivery code checks.

Uses TransactionTestCase for proper database visibility across threads:
every thread works on its own connection against committed data.
"""

import threading

from django.db import connection
from django.test import TransactionTestCase

from courier import handoff
from courier.exceptions import ConflictError
from courier.models import Message

from factories import create_scenario


def run_concurrently(target, args_list):
    """
    Start one thread per argument tuple, released together by a barrier.

    Returns:
        list: (result, exception) pairs in completion order
    """
    barrier = threading.Barrier(len(args_list))
    results = []
    lock = threading.Lock()

    def worker(*args):
        try:
            barrier.wait(timeout=10)
            outcome = (target(*args), None)
        except Exception as e:
            outcome = (None, e)
        finally:
            # Each thread opened its own connection
            connection.close()
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker, args=args) for args in args_list]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    return results


class ConcurrentHandoffTests(TransactionTestCase):

    def setUp(self):
        self.sender, self.traveler, self.outsider, self.booking = create_scenario()

    def test_concurrent_sender_confirmations_apply_once(self):
        results = run_concurrently(
            handoff.confirm_handoff,
            [(self.booking.id, self.sender.id, 'sender_confirmed')] * 2,
        )

        self.assertEqual(len(results), 2)
        errors = [e for _, e in results if e is not None]
        self.assertEqual(len(errors), 1, f"Expected exactly one loser, got {errors}")
        self.assertIsInstance(errors[0], ConflictError)

        self.booking.refresh_from_db()
        self.assertEqual(self.booking.handoff_step, 'sender_confirmed')
        self.assertEqual(
            Message.objects.filter(booking=self.booking, content='[HANDOFF] sender_confirmed').count(),
            1
        )

    def test_concurrent_hand_overs_issue_one_code(self):
        handoff.confirm_handoff(self.booking.id, self.sender.id, 'sender_confirmed')

        results = run_concurrently(
            handoff.confirm_handoff,
            [(self.booking.id, self.traveler.id, 'handed_over')] * 3,
        )

        codes = [code for code, e in results if e is None]
        self.assertEqual(len(codes), 1)
        self.assertTrue(all(isinstance(e, ConflictError) for _, e in results if e is not None))

        self.booking.refresh_from_db()
        self.assertEqual(self.booking.delivery_code, codes[0])

    def test_concurrent_correct_codes_deliver_exactly_once(self):
        handoff.confirm_handoff(self.booking.id, self.sender.id, 'sender_confirmed')
        code = handoff.confirm_handoff(self.booking.id, self.traveler.id, 'handed_over')

        results = run_concurrently(
            handoff.validate_delivery_code,
            [(self.booking.id, code, self.sender.id)] * 4,
        )

        self.assertEqual(len(results), 4)
        self.assertTrue(all(e is None for _, e in results), results)
        self.assertEqual(sum(1 for accepted, _ in results if accepted), 1)

        self.booking.refresh_from_db()
        self.assertEqual(self.booking.handoff_step, 'delivered')
        self.assertEqual(self.booking.status, 'delivered')
        self.assertEqual(
            Message.objects.filter(booking=self.booking, content='[HANDOFF] delivered').count(),
            1
        )

    def test_code_check_racing_traveler_confirmation_delivers_once(self):
        handoff.confirm_handoff(self.booking.id, self.sender.id, 'sender_confirmed')
        code = handoff.confirm_handoff(self.booking.id, self.traveler.id, 'handed_over')

        def deliver(kind):
            if kind == 'code':
                return handoff.validate_delivery_code(self.booking.id, code, self.sender.id)
            try:
                handoff.confirm_handoff(self.booking.id, self.traveler.id, 'delivered')
                return True
            except ConflictError:
                return False

        results = run_concurrently(deliver, [('code',), ('traveler',)])

        self.assertEqual(sum(1 for won, _ in results if won), 1)
        self.assertEqual(
            Message.objects.filter(booking=self.booking, content='[HANDOFF] delivered').count(),
            1
        )
