"""Booking use cases.

Every write locks the booking, re-reads it inside a transaction and hands
it to the state machine; reads go through markup sync.
"""
import logging
from contextlib import contextmanager

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from . import pricing
from .exceptions import NotFoundError, StateConflictError
from .locks import booking_locks
from .markup import apply_current_markup, default_registry, sync_markup
from .models import Booking, BookingKind, BookingStatus, Party, TransportationBooking
from .references import create_with_reference
from .state_machine import BookingStateMachine

logger = logging.getLogger(__name__)


def fetch_booking(reference, for_update=False):
    queryset = Booking.objects.all()
    if for_update:
        queryset = queryset.select_for_update()
    try:
        return queryset.get(booking_reference=reference)
    except Booking.DoesNotExist:
        raise NotFoundError(f'Booking {reference} not found', booking_reference=reference)


@contextmanager
def locked_booking(reference, locks=booking_locks):
    booking = fetch_booking(reference)
    with locks.hold(f'booking:{booking.pk}'):
        with transaction.atomic():
            yield fetch_booking(reference, for_update=True)


def get_booking(reference, registry=default_registry):
    return sync_markup(fetch_booking(reference), registry)


def request_transportation(*, guest_id, hotel_id, service_provider_id, vehicle_type, comfort_level,
                           pickup_location, destination, scheduled_at, passenger_count, service_id='',
                           passenger_capacity=None, special_requirements='', registry=default_registry,
                           clock=timezone.now):
    percentage = registry.current_markup_percentage(
        service_provider_id, hotel_id, BookingKind.TRANSPORTATION,
    )
    with transaction.atomic():
        booking = create_with_reference(
            TransportationBooking,
            BookingKind.TRANSPORTATION,
            guest_id=guest_id,
            hotel_id=hotel_id,
            service_provider_id=service_provider_id,
            service_id=service_id,
            vehicle_type=vehicle_type,
            comfort_level=comfort_level,
            passenger_capacity=passenger_capacity,
            pickup_location=pickup_location,
            destination=destination,
            scheduled_at=scheduled_at,
            passenger_count=passenger_count,
            special_requirements=special_requirements or '',
            markup_percentage=percentage,
            created_at=clock(),
        )
        machine = BookingStateMachine(booking, clock)
        machine.record_opened(actor=guest_id)
        machine.add_message(
            Party.GUEST,
            f'Transportation requested from {pickup_location} to {destination} '
            f'for {passenger_count} passenger(s)',
        )
    logger.info('Transportation booking %s requested by guest %s', booking.booking_reference, guest_id)
    return booking


def provide_quote(reference, base_price, notes='', expiration_hours=None, require_acceptance=False,
                  actor='', registry=default_registry, clock=timezone.now):
    base_price_cents = pricing.to_cents(base_price, 'base_price')
    with locked_booking(reference) as booking:
        apply_current_markup(booking, registry)
        return BookingStateMachine(booking, clock).create_quote(
            base_price_cents,
            notes=notes,
            expiration_hours=expiration_hours,
            require_acceptance=require_acceptance,
            actor=actor,
        )


def accept_quote(reference, actor='', clock=timezone.now):
    with locked_booking(reference) as booking:
        return BookingStateMachine(booking, clock).accept_quote(actor=actor)


def reject_quote(reference, reason='', actor='', clock=timezone.now):
    with locked_booking(reference) as booking:
        return BookingStateMachine(booking, clock).reject_quote(reason=reason, actor=actor)


def choose_cash(reference, actor='', clock=timezone.now):
    with locked_booking(reference) as booking:
        return BookingStateMachine(booking, clock).choose_cash(actor=actor)


def start_service(reference, actor='', clock=timezone.now):
    with locked_booking(reference) as booking:
        return BookingStateMachine(booking, clock).start_service(actor=actor)


def complete_booking(reference, actor='', clock=timezone.now):
    with locked_booking(reference) as booking:
        return BookingStateMachine(booking, clock).complete(actor=actor)


def cancel_booking(reference, cancelled_by, reason='', actor='', refund_amount=0, cancellation_fee=0,
                   clock=timezone.now):
    refund_cents = pricing.to_cents(refund_amount, 'refund_amount')
    fee_cents = pricing.to_cents(cancellation_fee, 'cancellation_fee')
    with locked_booking(reference) as booking:
        return BookingStateMachine(booking, clock).cancel(
            cancelled_by,
            reason=reason,
            actor=actor,
            refund_amount_cents=refund_cents,
            cancellation_fee_cents=fee_cents,
        )


def submit_feedback(reference, rating, comment='', clock=timezone.now):
    with locked_booking(reference) as booking:
        return BookingStateMachine(booking, clock).submit_feedback(rating, comment)


def payment_urls(reference):
    return {
        'success_url': f'{settings.FRONTEND_URL}/guest/payment-success?booking={reference}',
        'failure_url': f'{settings.FRONTEND_URL}/guest/payment-failed?booking={reference}',
        'webhook_url': f'{settings.BACKEND_URL}/api/payments/kashier/webhook/',
    }


def start_payment(reference, gateway, actor='', registry=default_registry, clock=timezone.now):
    """Issue (or re-issue after a failure) a hosted payment session."""
    with locked_booking(reference) as booking:
        machine = BookingStateMachine(booking, clock)
        machine.ensure_payable()
        apply_current_markup(booking, registry)
        session = gateway.build_session(
            order_id=booking.booking_reference,
            amount_cents=booking.quote_final_price_cents,
            currency=booking.currency,
            **payment_urls(booking.booking_reference),
        )
        booking = machine.begin_payment(session, actor=actor)
    logger.info(
        'Payment session %s created for booking %s (%s cents %s)',
        session.session_id, booking.booking_reference, session.amount_cents, session.currency,
    )
    return booking, session


def expire_overdue_quotes(clock=timezone.now):
    now = clock()
    references = list(
        Booking.objects
        .filter(status=BookingStatus.QUOTE_SENT, quote_expires_at__lt=now)
        .values_list('booking_reference', flat=True)
    )
    expired = []
    for reference in references:
        try:
            with locked_booking(reference) as booking:
                BookingStateMachine(booking, clock).expire_quote()
        except StateConflictError as exc:
            logger.info('Skipping quote expiry for %s: %s', reference, exc)
            continue
        expired.append(reference)
    return expired
