"""The only code allowed to change a booking's status.

Each transition appends one status-history entry, recomputes SLA timing and,
once the surrounding transaction commits, sends ``booking_status_changed``.
Callers are expected to hold the booking lock (see ``bookings.services``).
"""
import logging
from datetime import timedelta
from functools import partial

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from . import pricing
from .exceptions import QuoteExpiredError, StateConflictError, ValidationError
from .models import (
    Booking,
    BookingStatus,
    CommunicationLogEntry,
    Party,
    PaymentMethod,
    PaymentStatus,
    StatusHistoryEntry,
)
from .signals import booking_status_changed
from .sla import apply_sla

logger = logging.getLogger(__name__)

S = BookingStatus

TRANSITIONS = {
    S.PENDING_QUOTE.value: (S.QUOTE_SENT, S.PAYMENT_PENDING, S.CANCELLED, S.COMPLETED),
    S.QUOTE_SENT.value: (S.QUOTE_ACCEPTED, S.QUOTE_REJECTED, S.QUOTE_EXPIRED, S.CANCELLED),
    S.QUOTE_ACCEPTED.value: (S.PAYMENT_PENDING, S.CANCELLED),
    S.PAYMENT_PENDING.value: (S.PAYMENT_COMPLETED, S.CONFIRMED, S.CANCELLED),
    S.PAYMENT_COMPLETED.value: (S.SERVICE_ACTIVE, S.COMPLETED),
    S.CONFIRMED.value: (S.SERVICE_ACTIVE, S.COMPLETED),
    S.SERVICE_ACTIVE.value: (S.COMPLETED,),
    S.COMPLETED.value: (),
    S.CANCELLED.value: (),
    S.QUOTE_REJECTED.value: (),
    S.QUOTE_EXPIRED.value: (),
}


def allowed_transitions(status):
    return TRANSITIONS.get(str(status), ())


class BookingStateMachine:
    def __init__(self, booking, clock=timezone.now):
        self.booking = booking
        self.clock = clock

    @property
    def status(self):
        return str(self.booking.status)

    def can_transition(self, target):
        return target in allowed_transitions(self.status)

    def _check(self, target):
        if not self.can_transition(target):
            raise StateConflictError(self.status, str(target))

    def _now(self):
        """Wall clock, but never earlier than the last recorded entry."""
        now = self.clock()
        last = (
            self.booking.status_history.order_by('-timestamp')
            .values_list('timestamp', flat=True)
            .first()
        )
        floor = max(filter(None, [last, self.booking.created_at]))
        return max(now, floor)

    def _log(self, sender, message, message_type='info', timestamp=None):
        return CommunicationLogEntry.objects.create(
            booking=self.booking,
            sender=sender,
            message=message,
            message_type=message_type,
            timestamp=timestamp or self._now(),
        )

    def _history(self):
        return self.booking.status_history.order_by('timestamp', 'id').values_list('status', 'timestamp')

    def _append_history(self, status, timestamp, actor='', automatic=False, notes=''):
        StatusHistoryEntry.objects.create(
            booking=self.booking,
            status=status,
            timestamp=timestamp,
            actor=actor or '',
            automatic=automatic,
            notes=notes,
        )

    def _transition(self, target, actor='', automatic=False, notes='', timestamp=None):
        self._check(target)
        previous = self.status
        timestamp = timestamp or self._now()
        self.booking.status = target
        self._append_history(target, timestamp, actor=actor, automatic=automatic, notes=notes)
        apply_sla(self.booking, self._history())
        self.booking.save()

        logger.info('Booking %s moved %s -> %s', self.booking.booking_reference, previous, target)
        transaction.on_commit(partial(
            _announce, self.booking, previous, str(target), actor or '',
        ))
        return self.booking

    def _money(self, cents):
        return f'{pricing.format_amount(cents)} {self.booking.currency}'

    def record_opened(self, actor='', automatic=False, notes='', announce=False):
        """Record the initial status of a freshly created booking."""
        with transaction.atomic():
            self._append_history(
                self.status, self.booking.created_at, actor=actor, automatic=automatic, notes=notes,
            )
            apply_sla(self.booking, self._history())
            self.booking.save()
            if announce:
                transaction.on_commit(partial(_announce, self.booking, '', self.status, actor or ''))
        return self.booking

    def add_message(self, sender, message, message_type='info'):
        return self._log(sender, message, message_type)

    def ensure_payable(self):
        if self.status not in (S.QUOTE_ACCEPTED, S.PAYMENT_PENDING):
            raise StateConflictError(self.status, S.PAYMENT_PENDING.value)
        if not self.booking.has_quote:
            raise ValidationError('Booking has no quote to pay')

    def create_quote(self, base_price_cents, notes='', expiration_hours=None, require_acceptance=False, actor=''):
        target = S.QUOTE_SENT if require_acceptance else S.PAYMENT_PENDING
        # Only an unquoted booking can be priced; an accepted quote is binding.
        if self.status != S.PENDING_QUOTE:
            raise StateConflictError(self.status, str(target))
        self._check(target)
        if expiration_hours is None:
            expiration_hours = settings.QUOTE_EXPIRATION_HOURS
        if expiration_hours <= 0:
            raise ValidationError('expiration_hours must be positive', field='expiration_hours')

        figures = pricing.compute_quote(base_price_cents, self.booking.markup_percentage)
        with transaction.atomic():
            now = self._now()
            booking = self.booking
            booking.quote_base_price_cents = figures.base_price_cents
            booking.quote_markup_percentage = figures.markup_percentage
            booking.quote_final_price_cents = figures.final_price_cents
            booking.quoted_at = now
            booking.quote_expires_at = now + timedelta(hours=expiration_hours)
            booking.quote_notes = notes or ''
            booking.markup_percentage = figures.markup_percentage
            booking.markup_amount_cents = figures.markup_amount_cents
            booking.payment_total_cents = figures.final_price_cents

            suffix = 'Awaiting guest acceptance' if require_acceptance else 'Ready for payment'
            message = f'Quote set: {self._money(figures.final_price_cents)}'
            if notes:
                message += f'. Notes: {notes}'
            self._log(Party.PROVIDER, f'{message} - {suffix}', 'quote', timestamp=now)
            return self._transition(target, actor=actor, timestamp=now)

    def accept_quote(self, actor=''):
        self._check(S.QUOTE_ACCEPTED)
        if self.booking.is_quote_expired(self.clock()):
            raise QuoteExpiredError('Quote has expired', expires_at=self.booking.quote_expires_at.isoformat())
        with transaction.atomic():
            self._log(
                Party.GUEST,
                f'Quote accepted for {self._money(self.booking.quote_final_price_cents or 0)}',
                'acceptance',
            )
            return self._transition(S.QUOTE_ACCEPTED, actor=actor)

    def reject_quote(self, reason='', actor=''):
        self._check(S.QUOTE_REJECTED)
        with transaction.atomic():
            message = 'Quote rejected'
            if reason:
                message += f'. Reason: {reason}'
            self._log(Party.GUEST, message, 'rejection')
            return self._transition(S.QUOTE_REJECTED, actor=actor, notes=reason or '')

    def expire_quote(self):
        self._check(S.QUOTE_EXPIRED)
        if not self.booking.is_quote_expired(self.clock()):
            raise ValidationError('Quote has not expired yet')
        with transaction.atomic():
            self._log(Party.SYSTEM, 'Quote expired without a guest response', 'reminder')
            return self._transition(S.QUOTE_EXPIRED, actor='system', automatic=True)

    def begin_payment(self, session, actor=''):
        self.ensure_payable()
        booking = self.booking
        with transaction.atomic():
            booking.gateway_session_id = session.session_id
            booking.gateway_payment_url = session.payment_url
            booking.gateway_order_reference = session.order_id
            booking.gateway_failure_reason = ''
            booking.payment_method = PaymentMethod.ONLINE
            booking.payment_status = PaymentStatus.PENDING
            booking.payment_total_cents = booking.quote_final_price_cents
            if self.status == S.QUOTE_ACCEPTED:
                return self._transition(S.PAYMENT_PENDING, actor=actor)
            booking.save()
            logger.info('Payment session %s re-issued for booking %s', session.session_id, booking.booking_reference)
            return booking

    def choose_cash(self, actor=''):
        self._check(S.CONFIRMED)
        with transaction.atomic():
            self.booking.payment_method = PaymentMethod.CASH
            self._log(
                Party.GUEST,
                f'Guest will pay {self._money(self.booking.payment_total_cents)} in cash',
                'payment',
            )
            return self._transition(S.CONFIRMED, actor=actor)

    def _store_notification(self, notification):
        booking = self.booking
        booking.gateway_transaction_id = notification.transaction_id or booking.gateway_transaction_id
        if notification.gateway_order_id:
            booking.gateway_order_reference = notification.gateway_order_id
        booking.gateway_notification = notification.raw
        booking.gateway_response_code = notification.response_code or ''
        booking.gateway_response_message = (notification.response_message or '')[:255]

    def record_payment_success(self, notification, actor='gateway'):
        self._check(S.PAYMENT_COMPLETED)
        booking = self.booking
        with transaction.atomic():
            now = self._now()
            self._store_notification(notification)
            booking.payment_method = PaymentMethod.ONLINE
            booking.payment_status = PaymentStatus.COMPLETED
            booking.payment_paid_cents = (
                notification.amount_cents if notification.amount_cents is not None else booking.payment_total_cents
            )
            booking.currency = notification.currency or booking.currency
            booking.paid_at = notification.occurred_at or now
            booking.gateway_failure_reason = ''
            booking.provider_amount_cents = booking.quote_base_price_cents or 0
            booking.hotel_commission_cents = booking.markup_amount_cents or 0
            booking.platform_fee_cents = 0

            self._log(
                Party.SYSTEM,
                f'Payment completed successfully. Amount: {self._money(booking.payment_paid_cents)}. '
                f'Transaction ID: {notification.transaction_id}',
                'payment',
                timestamp=now,
            )
            return self._transition(S.PAYMENT_COMPLETED, actor=actor, automatic=True, timestamp=now)

    def record_payment_failure(self, notification):
        """Failed payments leave the booking in payment_pending so the guest can retry."""
        if self.status != S.PAYMENT_PENDING:
            raise StateConflictError(self.status, S.PAYMENT_PENDING.value)
        booking = self.booking
        with transaction.atomic():
            self._store_notification(notification)
            booking.payment_status = PaymentStatus.FAILED
            booking.gateway_failure_reason = (notification.response_message or 'Payment failed')[:255]
            self._log(Party.SYSTEM, f'Payment failed. Reason: {booking.gateway_failure_reason}', 'payment')
            booking.save()
        logger.info('Payment failed for booking %s: %s', booking.booking_reference, booking.gateway_failure_reason)
        return booking

    def record_payment_status(self, notification, payment_status):
        booking = self.booking
        if booking.is_paid or booking.payment_status == payment_status:
            return booking
        with transaction.atomic():
            self._store_notification(notification)
            booking.payment_status = payment_status
            self._log(Party.SYSTEM, f'Payment status updated: {notification.status_code}', 'payment')
            booking.save()
        return booking

    def record_refund(self, notification):
        booking = self.booking
        if booking.payment_status not in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
            raise ValidationError('Only completed payments can be refunded', payment_status=booking.payment_status)
        amount = notification.amount_cents
        if amount is None:
            amount = booking.payment_paid_cents - booking.payment_refunded_cents
        with transaction.atomic():
            booking.payment_refunded_cents = min(
                booking.payment_paid_cents, booking.payment_refunded_cents + amount,
            )
            booking.payment_status = PaymentStatus.REFUNDED
            self._log(
                Party.SYSTEM,
                f'Refund of {self._money(amount)} recorded. Transaction ID: {notification.transaction_id}',
                'payment',
            )
            booking.save()
        return booking

    def start_service(self, actor=''):
        self._check(S.SERVICE_ACTIVE)
        with transaction.atomic():
            self._log(Party.PROVIDER, 'Trip started', 'info')
            return self._transition(S.SERVICE_ACTIVE, actor=actor)

    def complete(self, actor=''):
        self._check(S.COMPLETED)
        with transaction.atomic():
            self._log(Party.PROVIDER, 'Trip completed', 'info')
            return self._transition(S.COMPLETED, actor=actor)

    def cancel(self, cancelled_by, reason='', actor='', refund_amount_cents=0, cancellation_fee_cents=0):
        self._check(S.CANCELLED)
        if cancelled_by not in Party.values:
            raise ValidationError('cancelled_by must be one of ' + ', '.join(Party.values), field='cancelled_by')
        if refund_amount_cents < 0 or cancellation_fee_cents < 0:
            raise ValidationError('Refund and fee amounts cannot be negative')

        booking = self.booking
        with transaction.atomic():
            now = self._now()
            booking.cancelled_by = cancelled_by
            booking.cancelled_at = now
            booking.cancellation_reason = reason or ''
            booking.refund_amount_cents = refund_amount_cents
            booking.cancellation_fee_cents = cancellation_fee_cents
            message = 'Booking cancelled'
            if reason:
                message += f'. Reason: {reason}'
            self._log(cancelled_by, message, 'info', timestamp=now)
            return self._transition(S.CANCELLED, actor=actor or cancelled_by, notes=reason or '', timestamp=now)

    def submit_feedback(self, rating, comment=''):
        if self.status != S.COMPLETED:
            raise StateConflictError(self.status, S.COMPLETED.value, 'Feedback is only accepted for completed bookings')
        if not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError('rating must be between 1 and 5', field='rating')
        booking = self.booking
        booking.guest_rating = rating
        booking.guest_comment = comment or ''
        booking.feedback_at = self.clock()
        booking.save(update_fields=['guest_rating', 'guest_comment', 'feedback_at', 'updated_at'])
        return booking


def _announce(booking, previous_status, status, actor):
    responses = booking_status_changed.send_robust(
        sender=Booking, booking=booking, previous_status=previous_status, status=status, actor=actor,
    )
    for receiver, response in responses:
        if isinstance(response, Exception):
            logger.error(
                'Receiver %r failed for booking %s: %s', receiver, booking.booking_reference, response,
                exc_info=(type(response), response, response.__traceback__),
            )
