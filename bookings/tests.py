from django.test import TestCase, Client, override_settings
from django.core.exceptions import ImproperlyConfigured
from django.core.management import call_command
from django.db import IntegrityError
from django.utils import timezone
from unittest.mock import patch
from concurrent.futures import Future
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from types import SimpleNamespace
import json
import re
import threading
import time

import requests
from django.core.cache import cache

from config.caches import LOCMEM_BACKEND, cache_settings

from . import notifications, pricing, references, services
from .exceptions import LockTimeoutError, QuoteExpiredError, StateConflictError, ValidationError
from .locks import KeyedLock
from .markup import default_registry
from .models import (
    Booking,
    BookingKind,
    BookingStatus,
    CommunicationLogEntry,
    HotelMarkupSettings,
    ServiceProvider,
    StatusHistoryEntry,
    TransportationBooking,
)
from .sla import compute_sla, minutes_between
from .state_machine import BookingStateMachine, allowed_transitions


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeRegistry:
    def __init__(self, percentage='15'):
        self.percentage = Decimal(percentage)

    def current_markup_percentage(self, provider_id, hotel_id=None, category=None):
        return pricing.normalize_percentage(self.percentage)


def paid_notification(transaction_id='TX-1', amount_cents=None):
    return SimpleNamespace(
        transaction_id=transaction_id,
        gateway_order_id='KSH-1',
        amount_cents=amount_cents,
        currency='EGP',
        occurred_at=None,
        response_code='00',
        response_message='Approved',
        raw={'transactionId': transaction_id},
        status_code='SUCCESS',
    )


class BookingTestMixin:
    def setUp(self):
        self.client = Client()
        self.clock = FakeClock(timezone.now() - timedelta(days=2))
        self.registry = FakeRegistry('15')

    def create_booking(self, **overrides):
        data = {
            'guest_id': 'guest-1',
            'hotel_id': 'hotel-1',
            'service_provider_id': 'provider-1',
            'vehicle_type': 'sedan',
            'comfort_level': 'comfort',
            'pickup_location': 'Hotel lobby',
            'destination': 'Cairo Airport T2',
            'scheduled_at': self.clock() + timedelta(days=1),
            'passenger_count': 2,
        }
        data.update(overrides)
        registry = data.pop('registry', self.registry)
        return services.request_transportation(registry=registry, clock=self.clock, **data)

    def quote(self, booking, base_price='100.00', **kwargs):
        return services.provide_quote(
            booking.booking_reference, base_price, registry=self.registry, clock=self.clock, **kwargs
        )

    def history(self, booking):
        return list(booking.status_history.values_list('status', flat=True))


class QuoteArithmeticTest(TestCase):
    def test_final_price_is_base_plus_markup(self):
        figures = pricing.compute_quote(10000, '15')
        self.assertEqual(figures.markup_amount_cents, 1500)
        self.assertEqual(figures.final_price_cents, 11500)
        self.assertEqual(figures.markup_percentage, Decimal('15.00'))

    def test_markup_amount_rounds_half_up(self):
        self.assertEqual(pricing.compute_quote(999, '12.5').markup_amount_cents, 125)
        self.assertEqual(pricing.compute_quote(1, '50').markup_amount_cents, 1)
        self.assertEqual(pricing.compute_quote(333, '10').final_price_cents, 366)

    def test_zero_markup(self):
        figures = pricing.compute_quote(4250, 0)
        self.assertEqual(figures.final_price_cents, 4250)

    def test_negative_inputs_rejected(self):
        with self.assertRaises(ValidationError):
            pricing.compute_quote(-1, '15')
        with self.assertRaises(ValidationError):
            pricing.compute_quote(100, '-5')
        with self.assertRaises(ValidationError):
            pricing.to_cents('-0.01')

    def test_cents_conversion(self):
        self.assertEqual(pricing.to_cents('250.50'), 25050)
        self.assertEqual(pricing.to_cents(19.99), 1999)
        self.assertEqual(pricing.format_amount(28750), '287.50')
        with self.assertRaises(ValidationError):
            pricing.to_cents('abc')


class BookingReferenceTest(BookingTestMixin, TestCase):
    def test_reference_format(self):
        booking = self.create_booking()
        self.assertRegex(booking.booking_reference, r'^TR\d{10}$')
        self.assertEqual(booking.kind, BookingKind.TRANSPORTATION)

    def test_falls_back_to_timestamp_reference_when_candidates_collide(self):
        first = self.create_booking()
        with patch('bookings.references.candidate_reference', return_value=first.booking_reference):
            second = self.create_booking()
        self.assertNotEqual(first.booking_reference, second.booking_reference)
        self.assertRegex(second.booking_reference, r'^TR\d{8}$')

    def test_insert_race_retries_with_new_candidate(self):
        first = self.create_booking()
        candidates = iter([first.booking_reference, 'TR2603150042'])

        with patch('bookings.references.candidate_reference', side_effect=lambda prefix: next(candidates)), \
                patch('bookings.references.Booking') as booking_model:
            # The existence check misses the row a concurrent worker just inserted.
            booking_model.objects.filter.return_value.exists.side_effect = [False, True, False]
            booking = references.create_with_reference(
                TransportationBooking,
                BookingKind.TRANSPORTATION,
                guest_id='guest-2',
                hotel_id='hotel-1',
                service_provider_id='provider-1',
                vehicle_type='van',
                comfort_level='economy',
                pickup_location='Lobby',
                destination='Giza',
                scheduled_at=self.clock(),
                passenger_count=4,
            )

        self.assertEqual(booking.booking_reference, 'TR2603150042')
        self.assertEqual(Booking.objects.count(), 2)

    def test_other_integrity_errors_are_not_retried(self):
        self.create_booking()
        Booking.objects.update(gateway_transaction_id='TX-DUP')
        with self.assertRaises(IntegrityError):
            references.create_with_reference(
                TransportationBooking,
                BookingKind.TRANSPORTATION,
                guest_id='guest-2',
                hotel_id='hotel-1',
                service_provider_id='provider-1',
                vehicle_type='van',
                comfort_level='economy',
                pickup_location='Lobby',
                destination='Giza',
                scheduled_at=self.clock(),
                passenger_count=4,
                gateway_transaction_id='TX-DUP',
            )


class StateMachineTest(BookingTestMixin, TestCase):
    def test_new_booking_has_opening_history_entry(self):
        booking = self.create_booking()
        self.assertEqual(booking.status, BookingStatus.PENDING_QUOTE)
        self.assertEqual(self.history(booking), ['pending_quote'])
        self.assertEqual(booking.markup_percentage, Decimal('15.00'))
        self.assertEqual(booking.communications.count(), 1)

    def test_fast_quote_moves_to_payment_pending(self):
        booking = self.quote(self.create_booking(), '100.00', notes='Includes tolls')

        self.assertEqual(booking.status, BookingStatus.PAYMENT_PENDING)
        self.assertEqual(booking.quote_base_price_cents, 10000)
        self.assertEqual(booking.markup_amount_cents, 1500)
        self.assertEqual(booking.quote_final_price_cents, 11500)
        self.assertEqual(booking.payment_total_cents, 11500)
        self.assertEqual(booking.quote_expires_at, booking.quoted_at + timedelta(hours=24))
        self.assertEqual(self.history(booking), ['pending_quote', 'payment_pending'])
        quote_entry = booking.communications.get(message_type='quote')
        self.assertIn('115.00 EGP', quote_entry.message)
        self.assertIn('Includes tolls', quote_entry.message)

    def test_quote_requiring_acceptance(self):
        booking = self.quote(self.create_booking(), '80', require_acceptance=True)
        self.assertEqual(booking.status, BookingStatus.QUOTE_SENT)

        booking = services.accept_quote(booking.booking_reference, actor='guest-1', clock=self.clock)
        self.assertEqual(booking.status, BookingStatus.QUOTE_ACCEPTED)
        self.assertEqual(self.history(booking), ['pending_quote', 'quote_sent', 'quote_accepted'])

    def test_reject_quote_is_terminal(self):
        booking = self.quote(self.create_booking(), '80', require_acceptance=True)
        booking = services.reject_quote(booking.booking_reference, reason='Too expensive', clock=self.clock)
        self.assertEqual(booking.status, BookingStatus.QUOTE_REJECTED)
        self.assertEqual(allowed_transitions(booking.status), ())
        with self.assertRaises(StateConflictError):
            services.cancel_booking(booking.booking_reference, 'guest', clock=self.clock)

    def test_illegal_transition_leaves_booking_unchanged(self):
        booking = self.create_booking()
        with self.assertRaises(StateConflictError) as ctx:
            services.accept_quote(booking.booking_reference, clock=self.clock)

        self.assertEqual(ctx.exception.current, 'pending_quote')
        self.assertEqual(ctx.exception.requested, 'quote_accepted')
        booking.refresh_from_db()
        self.assertEqual(booking.status, BookingStatus.PENDING_QUOTE)
        self.assertEqual(self.history(booking), ['pending_quote'])

    def test_second_quote_is_rejected(self):
        booking = self.quote(self.create_booking())
        with self.assertRaises(StateConflictError):
            self.quote(booking, '200')
        booking.refresh_from_db()
        self.assertEqual(booking.quote_base_price_cents, 10000)

    def test_accepted_quote_cannot_be_replaced(self):
        booking = self.quote(self.create_booking(), '80', require_acceptance=True)
        services.accept_quote(booking.booking_reference, clock=self.clock)

        for require_acceptance in (False, True):
            with self.assertRaises(StateConflictError) as ctx:
                self.quote(booking, '500', require_acceptance=require_acceptance)
            self.assertEqual(ctx.exception.current, 'quote_accepted')

        booking.refresh_from_db()
        self.assertEqual(booking.status, BookingStatus.QUOTE_ACCEPTED)
        self.assertEqual(booking.quote_base_price_cents, 8000)
        self.assertEqual(booking.quote_final_price_cents, 9200)
        self.assertEqual(self.history(booking), ['pending_quote', 'quote_sent', 'quote_accepted'])

    def test_sent_quote_cannot_be_replaced(self):
        booking = self.quote(self.create_booking(), '80', require_acceptance=True)

        with self.assertRaises(StateConflictError) as ctx:
            self.quote(booking, '500')
        self.assertEqual(ctx.exception.current, 'quote_sent')
        self.assertEqual(ctx.exception.requested, 'payment_pending')

        booking.refresh_from_db()
        self.assertEqual(booking.status, BookingStatus.QUOTE_SENT)
        self.assertEqual(booking.quote_base_price_cents, 8000)

    def test_expired_quote_cannot_be_accepted(self):
        booking = self.quote(self.create_booking(), '80', require_acceptance=True, expiration_hours=1)
        self.clock.advance(hours=1, minutes=1)

        with self.assertRaises(QuoteExpiredError):
            services.accept_quote(booking.booking_reference, clock=self.clock)
        booking.refresh_from_db()
        self.assertEqual(booking.status, BookingStatus.QUOTE_SENT)

        expired = services.expire_overdue_quotes(clock=self.clock)
        self.assertEqual(expired, [booking.booking_reference])
        booking.refresh_from_db()
        self.assertEqual(booking.status, BookingStatus.QUOTE_EXPIRED)
        self.assertTrue(booking.status_history.get(status='quote_expired').automatic)

    def test_quote_within_expiry_can_be_accepted(self):
        booking = self.quote(self.create_booking(), '80', require_acceptance=True, expiration_hours=1)
        self.clock.advance(minutes=59)
        booking = services.accept_quote(booking.booking_reference, clock=self.clock)
        self.assertEqual(booking.status, BookingStatus.QUOTE_ACCEPTED)

    def test_cash_payment_confirms_booking(self):
        booking = self.quote(self.create_booking())
        booking = services.choose_cash(booking.booking_reference, clock=self.clock)
        self.assertEqual(booking.status, BookingStatus.CONFIRMED)
        self.assertEqual(booking.payment_method, 'cash')

    def test_payment_success_records_breakdown(self):
        booking = self.quote(self.create_booking())
        with services.locked_booking(booking.booking_reference) as locked:
            BookingStateMachine(locked, self.clock).record_payment_success(paid_notification())

        booking.refresh_from_db()
        self.assertEqual(booking.status, BookingStatus.PAYMENT_COMPLETED)
        self.assertEqual(booking.payment_status, 'completed')
        self.assertEqual(booking.payment_paid_cents, 11500)
        self.assertEqual(booking.provider_amount_cents, 10000)
        self.assertEqual(booking.hotel_commission_cents, 1500)
        self.assertEqual(booking.gateway_transaction_id, 'TX-1')
        self.assertEqual(booking.gateway_order_reference, 'KSH-1')

    def test_payment_failure_keeps_booking_payable(self):
        booking = self.quote(self.create_booking())
        failed = paid_notification('TX-F')
        failed.response_message = 'Insufficient funds'
        with services.locked_booking(booking.booking_reference) as locked:
            BookingStateMachine(locked, self.clock).record_payment_failure(failed)

        booking.refresh_from_db()
        self.assertEqual(booking.status, BookingStatus.PAYMENT_PENDING)
        self.assertEqual(booking.payment_status, 'failed')
        self.assertEqual(booking.gateway_failure_reason, 'Insufficient funds')
        self.assertEqual(self.history(booking), ['pending_quote', 'payment_pending'])

    def test_full_lifecycle(self):
        booking = self.quote(self.create_booking())
        with services.locked_booking(booking.booking_reference) as locked:
            BookingStateMachine(locked, self.clock).record_payment_success(paid_notification())
        self.clock.advance(minutes=30)
        services.start_service(booking.booking_reference, clock=self.clock)
        self.clock.advance(minutes=40)
        booking = services.complete_booking(booking.booking_reference, clock=self.clock)

        self.assertEqual(booking.status, BookingStatus.COMPLETED)
        self.assertEqual(
            self.history(booking),
            ['pending_quote', 'payment_pending', 'payment_completed', 'service_active', 'completed'],
        )
        booking = services.submit_feedback(booking.booking_reference, 5, 'Smooth ride', clock=self.clock)
        self.assertEqual(booking.guest_rating, 5)

    def test_feedback_only_after_completion(self):
        booking = self.create_booking()
        with self.assertRaises(StateConflictError):
            services.submit_feedback(booking.booking_reference, 4, clock=self.clock)

    def test_cancel_from_payment_pending(self):
        booking = self.quote(self.create_booking())
        booking = services.cancel_booking(
            booking.booking_reference, 'hotel', reason='Guest checked out', refund_amount='10.00', clock=self.clock,
        )
        self.assertEqual(booking.status, BookingStatus.CANCELLED)
        self.assertEqual(booking.cancelled_by, 'hotel')
        self.assertEqual(booking.refund_amount_cents, 1000)
        self.assertEqual(booking.status_history.last().notes, 'Guest checked out')

    def test_cannot_cancel_paid_booking(self):
        booking = self.quote(self.create_booking())
        with services.locked_booking(booking.booking_reference) as locked:
            BookingStateMachine(locked, self.clock).record_payment_success(paid_notification())
        with self.assertRaises(StateConflictError):
            services.cancel_booking(booking.booking_reference, 'guest', clock=self.clock)

    def test_history_timestamps_never_go_backwards(self):
        booking = self.quote(self.create_booking())
        self.clock.advance(hours=-3)
        booking = services.choose_cash(booking.booking_reference, clock=self.clock)
        timestamps = list(booking.status_history.values_list('timestamp', flat=True))
        self.assertEqual(timestamps, sorted(timestamps))

    def test_log_entries_are_append_only(self):
        booking = self.create_booking()
        entry = StatusHistoryEntry.objects.get(booking=booking)
        entry.notes = 'edited'
        with self.assertRaises(ValueError):
            entry.save()
        with self.assertRaises(ValueError):
            entry.delete()
        with self.assertRaises(ValueError):
            CommunicationLogEntry.objects.get(booking=booking).delete()

    def test_unknown_booking(self):
        from .exceptions import NotFoundError
        with self.assertRaises(NotFoundError):
            services.get_booking('TR0000000000')


class MarkupSyncTest(BookingTestMixin, TestCase):
    def test_markup_tracks_provider_before_quote(self):
        booking = self.create_booking()
        self.registry.percentage = Decimal('20')

        booking = services.get_booking(booking.booking_reference, registry=self.registry)
        self.assertEqual(booking.markup_percentage, Decimal('20.00'))
        self.assertEqual(self.history(booking), ['pending_quote'])

        booking = self.quote(booking, '100.00')
        self.assertEqual(booking.quote_final_price_cents, 12000)

    def test_quote_recomputed_while_negotiable(self):
        booking = self.quote(self.create_booking(), '100.00', require_acceptance=True)
        communications = booking.communications.count()
        self.registry.percentage = Decimal('10')

        booking = services.get_booking(booking.booking_reference, registry=self.registry)
        self.assertEqual(booking.markup_amount_cents, 1000)
        self.assertEqual(booking.quote_final_price_cents, 11000)
        self.assertEqual(booking.payment_total_cents, 11000)
        self.assertEqual(booking.communications.count(), communications)

        again = services.get_booking(booking.booking_reference, registry=self.registry)
        self.assertEqual(again.updated_at, booking.updated_at)

    def test_markup_frozen_from_payment_pending(self):
        booking = self.quote(self.create_booking(), '100.00')
        self.registry.percentage = Decimal('25')

        booking = services.get_booking(booking.booking_reference, registry=self.registry)
        self.assertEqual(booking.markup_percentage, Decimal('15.00'))
        self.assertEqual(booking.quote_final_price_cents, 11500)

    def test_registry_reads_provider_record(self):
        ServiceProvider.objects.create(provider_id='provider-9', markup_percentage=Decimal('7.5'))
        self.assertEqual(default_registry.current_markup_percentage('provider-9'), Decimal('7.50'))
        self.assertEqual(default_registry.current_markup_percentage('unknown'), Decimal('15.00'))

    def test_provider_markup_beats_hotel_settings(self):
        ServiceProvider.objects.create(provider_id='provider-9', markup_percentage=Decimal('7.5'))
        HotelMarkupSettings.objects.create(
            hotel_id='hotel-1', default_percentage=Decimal('20'), categories={'transportation': 12},
        )
        self.assertEqual(default_registry.current_markup_percentage('provider-9', 'hotel-1'), Decimal('7.50'))

    def test_hotel_category_markup_when_provider_has_none(self):
        ServiceProvider.objects.create(provider_id='provider-9', markup_percentage=None)
        HotelMarkupSettings.objects.create(
            hotel_id='hotel-1', default_percentage=Decimal('20'), categories={'transportation': 12.5},
        )
        self.assertEqual(
            default_registry.current_markup_percentage('provider-9', 'hotel-1', BookingKind.TRANSPORTATION),
            Decimal('12.50'),
        )

    def test_hotel_default_markup_for_other_categories(self):
        HotelMarkupSettings.objects.create(
            hotel_id='hotel-1', default_percentage=Decimal('20'), categories={'laundry': 5},
        )
        self.assertEqual(
            default_registry.current_markup_percentage('unknown', 'hotel-1', BookingKind.TRANSPORTATION),
            Decimal('20.00'),
        )
        self.assertEqual(
            default_registry.current_markup_percentage('unknown', 'hotel-1', BookingKind.LAUNDRY),
            Decimal('5.00'),
        )

    @override_settings(DEFAULT_MARKUP_PERCENTAGE=Decimal('18'))
    def test_global_default_without_hotel_settings(self):
        HotelMarkupSettings.objects.create(hotel_id='hotel-2', categories={})
        self.assertEqual(default_registry.current_markup_percentage('unknown', 'hotel-1'), Decimal('18.00'))
        self.assertEqual(default_registry.current_markup_percentage('unknown', 'hotel-2'), Decimal('18.00'))

    def test_booking_follows_hotel_markup(self):
        hotel = HotelMarkupSettings.objects.create(hotel_id='hotel-1', categories={'transportation': 10})
        booking = self.create_booking(registry=default_registry)
        self.assertEqual(booking.markup_percentage, Decimal('10.00'))

        hotel.categories = {'transportation': 12}
        hotel.save()
        booking = services.get_booking(booking.booking_reference)
        self.assertEqual(booking.markup_percentage, Decimal('12.00'))

        booking = services.provide_quote(booking.booking_reference, '100.00')
        self.assertEqual(booking.quote_final_price_cents, 11200)


class SLATrackerTest(BookingTestMixin, TestCase):
    def test_direct_completion(self):
        booking = self.create_booking()
        self.clock.advance(minutes=45)
        booking = services.complete_booking(booking.booking_reference, clock=self.clock)

        self.assertEqual(booking.sla_accepted_at, booking.created_at)
        self.assertEqual(booking.sla_started_at, booking.created_at)
        self.assertEqual(booking.sla_actual_response_minutes, 0)
        self.assertEqual(booking.sla_actual_completion_minutes, 45)
        self.assertEqual(booking.sla_actual_service_minutes, 45)
        self.assertTrue(booking.sla_response_on_time)
        self.assertTrue(booking.sla_completion_on_time)
        self.assertEqual(booking.sla_status, 'met')

    def test_missed_completion_target(self):
        booking = self.create_booking()
        self.clock.advance(minutes=20)
        booking = self.quote(booking)
        self.assertEqual(booking.sla_actual_response_minutes, 20)
        self.assertEqual(booking.sla_status, 'pending')

        with services.locked_booking(booking.booking_reference) as locked:
            BookingStateMachine(locked, self.clock).record_payment_success(paid_notification())
        self.clock.advance(minutes=40)
        services.start_service(booking.booking_reference, clock=self.clock)
        self.clock.advance(minutes=240)
        booking = services.complete_booking(booking.booking_reference, clock=self.clock)

        self.assertEqual(booking.sla_actual_completion_minutes, 300)
        self.assertEqual(booking.sla_actual_service_minutes, 240)
        self.assertFalse(booking.sla_completion_on_time)
        self.assertEqual(booking.sla_completion_delay_minutes, 60)
        self.assertEqual(booking.sla_status, 'missed')

    def test_compute_is_pure(self):
        created = self.clock()
        history = [
            ('pending_quote', created),
            ('quote_sent', created + timedelta(minutes=31)),
        ]
        first = compute_sla(created, history, 30, 240)
        second = compute_sla(created, history, 30, 240)
        self.assertEqual(first, second)
        self.assertFalse(first.response_on_time)
        self.assertEqual(first.response_delay_minutes, 1)
        self.assertIsNone(first.completed_at)

    def test_minutes_round_half_up(self):
        start = self.clock()
        self.assertEqual(minutes_between(start, start + timedelta(seconds=90)), 2)
        self.assertEqual(minutes_between(start, start + timedelta(seconds=89)), 1)


class KeyedLockTest(TestCase):
    def setUp(self):
        self.locks = KeyedLock(prefix='test-lock', wait_timeout=2, ttl=5)

    def test_mutual_exclusion_across_threads(self):
        state = {'inside': 0, 'max': 0}
        guard = threading.Lock()

        def worker():
            with self.locks.hold('payment:TX-1'):
                with guard:
                    state['inside'] += 1
                    state['max'] = max(state['max'], state['inside'])
                time.sleep(0.02)
                with guard:
                    state['inside'] -= 1

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(state['max'], 1)
        self.assertEqual(self.locks.active_keys(), [])

    def test_wait_is_bounded(self):
        with self.locks.hold('booking:1'):
            with self.assertRaises(LockTimeoutError):
                with self.locks.hold('booking:1', timeout=0.05):
                    pass
        self.assertEqual(self.locks.active_keys(), [])

    def test_distinct_keys_do_not_block(self):
        with self.locks.hold('booking:1'):
            with self.locks.hold('booking:2', timeout=0.05):
                self.assertEqual(sorted(self.locks.active_keys()), ['booking:1', 'booking:2'])

    def test_lease_held_by_another_process(self):
        cache.set('test-lock:booking:9', 'other-worker', timeout=5)
        with self.assertRaises(LockTimeoutError):
            with self.locks.hold('booking:9', timeout=0.05):
                pass
        self.assertEqual(cache.get('test-lock:booking:9'), 'other-worker')

        cache.delete('test-lock:booking:9')
        with self.locks.hold('booking:9'):
            self.assertIsNotNone(cache.get('test-lock:booking:9'))
        self.assertIsNone(cache.get('test-lock:booking:9'))

    def test_released_on_error(self):
        with self.assertRaises(RuntimeError):
            with self.locks.hold('booking:3'):
                raise RuntimeError('boom')
        with self.locks.hold('booking:3', timeout=0.05):
            pass


class InlineDispatcher:
    def submit(self, fn, *args, **kwargs):
        future = Future()
        future.set_result(fn(*args, **kwargs))
        return future


@override_settings(NOTIFICATIONS_WEBHOOK_URL='https://notify.example.com/bookings')
class StatusNotificationTest(BookingTestMixin, TestCase):
    @patch('bookings.notifications.dispatcher', InlineDispatcher())
    @patch('bookings.notifications.requests.post')
    def test_transition_dispatched_after_commit(self, mock_post):
        booking = self.create_booking()
        with self.captureOnCommitCallbacks(execute=True):
            self.quote(booking)

        mock_post.assert_called_once()
        payload = mock_post.call_args.kwargs['json']
        self.assertEqual(payload['booking_reference'], booking.booking_reference)
        self.assertEqual(payload['previous_status'], 'pending_quote')
        self.assertEqual(payload['status'], 'payment_pending')
        self.assertEqual(mock_post.call_args.kwargs['timeout'], 5)

    @patch('bookings.notifications.dispatcher', InlineDispatcher())
    @patch('bookings.notifications.requests.post', side_effect=requests.ConnectionError('down'))
    def test_dispatch_failure_does_not_roll_back(self, mock_post):
        booking = self.create_booking()
        with self.assertLogs('bookings.notifications', 'WARNING'):
            with self.captureOnCommitCallbacks(execute=True):
                self.quote(booking)

        booking.refresh_from_db()
        self.assertEqual(booking.status, BookingStatus.PAYMENT_PENDING)

    @patch('bookings.notifications.dispatcher', InlineDispatcher())
    @patch('bookings.notifications.requests.post')
    def test_failed_transition_sends_nothing(self, mock_post):
        booking = self.create_booking()
        with self.captureOnCommitCallbacks(execute=True):
            with self.assertRaises(StateConflictError):
                services.start_service(booking.booking_reference, clock=self.clock)
        mock_post.assert_not_called()

    @patch('bookings.notifications.requests.post')
    def test_slow_endpoint_does_not_block_the_caller(self, mock_post):
        release = threading.Event()
        delivered_on = []

        def slow_post(url, json, timeout):
            delivered_on.append(threading.current_thread().name)
            release.wait(5)

        mock_post.side_effect = slow_post
        booking = self.create_booking()

        future = notifications.dispatch_status_notification(
            sender=Booking, booking=booking, previous_status='pending_quote', status='payment_pending',
        )
        self.assertFalse(future.done())

        release.set()
        future.result(timeout=5)
        self.assertEqual(len(delivered_on), 1)
        self.assertTrue(delivered_on[0].startswith('booking-notify'))
        self.assertNotEqual(delivered_on[0], threading.current_thread().name)

    @override_settings(NOTIFICATIONS_WEBHOOK_URL='')
    def test_nothing_dispatched_without_endpoint(self):
        booking = self.create_booking()
        self.assertIsNone(notifications.dispatch_status_notification(
            sender=Booking, booking=booking, previous_status='pending_quote', status='cancelled',
        ))


class CacheSettingsTest(TestCase):
    def test_local_memory_cache_allowed_in_debug(self):
        caches = cache_settings({}, debug=True)
        self.assertEqual(caches['default']['BACKEND'], LOCMEM_BACKEND)

    def test_shared_cache_required_without_debug(self):
        with self.assertRaises(ImproperlyConfigured):
            cache_settings({}, debug=False)
        with self.assertRaises(ImproperlyConfigured):
            cache_settings({'CACHE_BACKEND': LOCMEM_BACKEND}, debug=False)

    def test_shared_cache_backend_used(self):
        caches = cache_settings({
            'CACHE_BACKEND': 'django.core.cache.backends.redis.RedisCache',
            'CACHE_LOCATION': 'redis://cache:6379/1',
        }, debug=False)
        self.assertEqual(caches['default'], {
            'BACKEND': 'django.core.cache.backends.redis.RedisCache',
            'LOCATION': 'redis://cache:6379/1',
        })


class ExpireQuotesCommandTest(BookingTestMixin, TestCase):
    def test_command_expires_overdue_quotes(self):
        overdue = self.quote(self.create_booking(), '50', require_acceptance=True, expiration_hours=1)
        fresh = self.quote(self.create_booking(), '50', require_acceptance=True, expiration_hours=96)

        out = StringIO()
        call_command('expire_quotes', stdout=out)

        overdue.refresh_from_db()
        fresh.refresh_from_db()
        self.assertEqual(overdue.status, BookingStatus.QUOTE_EXPIRED)
        self.assertEqual(fresh.status, BookingStatus.QUOTE_SENT)
        self.assertIn(overdue.booking_reference, out.getvalue())


class BookingApiTest(TestCase):
    def setUp(self):
        self.client = Client()

    def post(self, url, payload=None):
        return self.client.post(url, data=json.dumps(payload or {}), content_type='application/json')

    def request_ride(self, **overrides):
        payload = {
            'guest_id': 'guest-1',
            'hotel_id': 'hotel-1',
            'service_provider_id': 'provider-1',
            'vehicle_type': 'suv',
            'comfort_level': 'premium',
            'passenger_capacity': 6,
            'pickup_location': 'Hotel lobby',
            'destination': 'Pyramids of Giza',
            'scheduled_at': (timezone.now() + timedelta(days=1)).isoformat(),
            'passenger_count': 3,
        }
        payload.update(overrides)
        return self.post('/api/bookings/transportation/', payload)

    def test_request_transportation(self):
        response = self.request_ride()
        self.assertEqual(response.status_code, 201)
        data = response.json()
        self.assertTrue(re.match(r'^TR\d{10}$', data['booking_reference']))
        self.assertEqual(data['status'], 'pending_quote')
        self.assertEqual(data['markup']['percentage'], '15.00')
        self.assertEqual(data['trip']['destination'], 'Pyramids of Giza')
        self.assertIsNone(data['quote'])

    def test_provider_markup_applies(self):
        ServiceProvider.objects.create(provider_id='provider-1', markup_percentage=Decimal('10'))
        data = self.request_ride().json()
        self.assertEqual(data['markup']['percentage'], '10.00')

    def test_invalid_request(self):
        response = self.request_ride(passenger_count=0, vehicle_type='spaceship')
        self.assertEqual(response.status_code, 400)
        data = response.json()
        self.assertEqual(data['code'], 'validation_error')
        self.assertIn('passenger_count', data['details']['errors'])
        self.assertIn('vehicle_type', data['details']['errors'])

    def test_passengers_over_capacity(self):
        response = self.request_ride(passenger_count=7)
        self.assertEqual(response.status_code, 400)

    def test_invalid_json(self):
        response = self.client.post(
            '/api/bookings/transportation/', data='{not json', content_type='application/json',
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'Invalid JSON')

    def test_quote_and_detail(self):
        reference = self.request_ride().json()['booking_reference']
        response = self.post(f'/api/bookings/{reference}/quote/', {'base_price': '250.00', 'notes': 'Night fare'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['quote']['final_price'], '287.50')

        detail = self.client.get(f'/api/bookings/{reference}/').json()
        self.assertEqual(detail['status'], 'payment_pending')
        self.assertEqual(detail['payment']['total'], '287.50')
        self.assertEqual([entry['status'] for entry in detail['status_history']], ['pending_quote', 'payment_pending'])
        self.assertEqual(detail['communications'][-1]['message_type'], 'quote')

    def test_illegal_transition_returns_conflict(self):
        reference = self.request_ride().json()['booking_reference']
        response = self.post(f'/api/bookings/{reference}/accept/')
        self.assertEqual(response.status_code, 409)
        data = response.json()
        self.assertEqual(data['code'], 'state_conflict')
        self.assertEqual(data['details'], {'current': 'pending_quote', 'requested': 'quote_accepted'})

    def test_cancel_and_feedback(self):
        reference = self.request_ride().json()['booking_reference']
        response = self.post(f'/api/bookings/{reference}/cancel/', {'cancelled_by': 'guest', 'reason': 'Plans changed'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['cancellation']['reason'], 'Plans changed')

        response = self.post(f'/api/bookings/{reference}/cancel/', {'cancelled_by': 'guest'})
        self.assertEqual(response.status_code, 409)

        response = self.post(f'/api/bookings/{reference}/feedback/', {'rating': 5})
        self.assertEqual(response.status_code, 409)

    def test_complete_then_rate(self):
        reference = self.request_ride().json()['booking_reference']
        self.assertEqual(self.post(f'/api/bookings/{reference}/complete/').status_code, 200)

        response = self.post(f'/api/bookings/{reference}/feedback/', {'rating': 6})
        self.assertEqual(response.status_code, 400)
        response = self.post(f'/api/bookings/{reference}/feedback/', {'rating': 4, 'comment': 'On time'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['feedback'], {'rating': 4, 'comment': 'On time'})

    def test_cash_flow(self):
        reference = self.request_ride().json()['booking_reference']
        self.post(f'/api/bookings/{reference}/quote/', {'base_price': '100'})
        response = self.post(f'/api/bookings/{reference}/cash/')
        self.assertEqual(response.json()['status'], 'confirmed')
        response = self.post(f'/api/bookings/{reference}/start/')
        self.assertEqual(response.json()['status'], 'service_active')

    def test_unknown_booking(self):
        response = self.client.get('/api/bookings/TR9999999999/')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()['code'], 'not_found')

    def test_method_not_allowed(self):
        response = self.client.get('/api/bookings/transportation/')
        self.assertEqual(response.status_code, 405)
