"""Applies verified gateway notifications to bookings exactly once.

Kashier reports every outcome at least twice: a server webhook and the
guest's browser redirect, in either order and sometimes at the same time.
Both paths funnel into ``PaymentReconciler.reconcile``, which serializes work
per transaction and treats anything already applied as a successful no-op.
"""
import logging
import time
from dataclasses import dataclass

from django.conf import settings
from django.db import IntegrityError, OperationalError, transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from bookings.exceptions import (
    DuplicateTransactionError,
    LockTimeoutError,
    NotFoundError,
    SignatureVerificationError,
    ValidationError,
)
from bookings.locks import booking_locks
from bookings.models import (
    Booking,
    BookingKind,
    BookingStatus,
    Party,
    PaymentMethod,
    PaymentStatus,
    ServiceOrderBooking,
)
from bookings.references import create_with_reference
from bookings.state_machine import BookingStateMachine

from .gateway import KashierGateway
from .models import PaymentNotification
from .pending import pending_checkouts

logger = logging.getLogger(__name__)

PAY_FIRST_KINDS = (BookingKind.LAUNDRY, BookingKind.RESTAURANT)


@dataclass
class ReconciliationResult:
    booking: Booking
    outcome: str
    created: bool = False

    @property
    def booking_reference(self):
        return self.booking.booking_reference if self.booking is not None else ''


class PaymentReconciler:
    def __init__(self, gateway=None, locks=booking_locks, pending_store=pending_checkouts, clock=timezone.now,
                 retries=None, backoff=0.05):
        self.gateway = gateway or KashierGateway()
        self.locks = locks
        self.pending_store = pending_store
        self.clock = clock
        self.retries = settings.PAYMENT_RECONCILE_RETRIES if retries is None else retries
        self.backoff = backoff

    def reconcile(self, notification):
        """Apply ``notification``; safe to call any number of times.

        Raises ``LockTimeoutError`` when another worker holds the transaction
        for longer than the configured wait.
        """
        key = notification.idempotency_key
        with self.locks.hold(f'payment:{key}'):
            attempt = 0
            while True:
                try:
                    result = self._reconcile(notification)
                    break
                except OperationalError:
                    attempt += 1
                    if attempt > self.retries:
                        raise
                    delay = self.backoff * 2 ** (attempt - 1)
                    logger.warning(
                        'Transient database error reconciling %s, retry %d/%d in %.2fs',
                        key, attempt, self.retries, delay, exc_info=True,
                    )
                    time.sleep(delay)

        logger.info(
            'Reconciled %s %s notification %s: %s %s',
            notification.source, notification.event, key, result.outcome, result.booking_reference,
        )
        return result

    def _reconcile(self, notification):
        if notification.is_pay_first and not notification.is_refund:
            result = self._reconcile_pay_first(notification)
            self._audit(notification, result)
            return result

        found = self._find_booking(notification)
        with self.locks.hold(f'booking:{found.pk}'):
            with transaction.atomic():
                booking = Booking.objects.select_for_update().get(pk=found.pk)
                machine = BookingStateMachine(booking, self.clock)
                if notification.is_refund:
                    result = self._apply_refund(machine, notification)
                else:
                    result = self._apply_payment(machine, notification)
                self._audit(notification, result)
                return result

    def _find_booking(self, notification):
        booking = None
        if notification.transaction_id:
            booking = Booking.objects.filter(gateway_transaction_id=notification.transaction_id).first()
        if booking is None:
            booking = Booking.objects.filter(booking_reference=notification.order_reference).first()
        if booking is None and notification.is_pay_first:
            booking = Booking.objects.filter(gateway_session_id=notification.order_reference).first()
        if booking is None:
            raise NotFoundError(
                f'No booking for order {notification.order_reference}',
                order_reference=notification.order_reference,
            )
        return booking

    def _apply_payment(self, machine, notification):
        booking = machine.booking
        if booking.is_paid:
            return ReconciliationResult(booking, 'already_processed')

        status = notification.payment_status
        if status == PaymentStatus.COMPLETED:
            machine.record_payment_success(notification, actor=f'gateway:{notification.source}')
            return ReconciliationResult(booking, 'completed')

        if booking.status != BookingStatus.PAYMENT_PENDING:
            logger.info(
                'Ignoring %s notification for booking %s in status %s',
                notification.status_code, booking.booking_reference, booking.status,
            )
            return ReconciliationResult(booking, 'ignored')

        if status == PaymentStatus.FAILED:
            duplicate = (
                booking.payment_status == PaymentStatus.FAILED
                and booking.gateway_transaction_id
                and booking.gateway_transaction_id == notification.transaction_id
            )
            if duplicate:
                return ReconciliationResult(booking, 'already_processed')
            machine.record_payment_failure(notification)
            return ReconciliationResult(booking, 'failed')

        machine.record_payment_status(notification, status)
        return ReconciliationResult(booking, 'status_updated')

    def _apply_refund(self, machine, notification):
        booking = machine.booking
        seen = PaymentNotification.objects.filter(
            event='refund',
            outcome='refunded',
            transaction_id=notification.transaction_id,
            order_reference=notification.order_reference,
        ).exists()
        if seen:
            return ReconciliationResult(booking, 'already_processed')
        if notification.payment_status not in (PaymentStatus.REFUNDED, PaymentStatus.COMPLETED):
            logger.info('Refund for booking %s reported as %s', booking.booking_reference, notification.status_code)
            return ReconciliationResult(booking, 'ignored')
        machine.record_refund(notification)
        return ReconciliationResult(booking, 'refunded')

    def _reconcile_pay_first(self, notification):
        try:
            existing = self._find_booking(notification)
        except NotFoundError:
            existing = None
        if existing is not None:
            return ReconciliationResult(existing, 'already_processed')

        if notification.payment_status != PaymentStatus.COMPLETED:
            # Nothing exists yet; the payload stays until it expires so the guest can retry.
            logger.info(
                'Pay-first checkout %s reported %s', notification.order_reference, notification.status_code,
            )
            if notification.payment_status == PaymentStatus.FAILED:
                return ReconciliationResult(None, 'failed')
            return ReconciliationResult(None, 'status_updated')

        payload = self.pending_store.get(notification.order_reference)
        if payload is None:
            raise NotFoundError(
                f'No pending checkout for {notification.order_reference}',
                order_reference=notification.order_reference,
            )

        try:
            booking = self._create_paid_order(notification, payload)
        except DuplicateTransactionError as exc:
            logger.info('Transaction %s already created booking %s', exc.transaction_id, exc.booking)
            return ReconciliationResult(exc.booking, 'already_processed')

        self.pending_store.discard(notification.order_reference)
        return ReconciliationResult(booking, 'created', created=True)

    def _create_paid_order(self, notification, payload):
        kind = payload['kind']
        if kind not in PAY_FIRST_KINDS:
            raise ValidationError(f'Unsupported pay-first booking kind {kind}', kind=kind)

        now = self.clock()
        amount_cents = payload['amount_cents']
        paid_cents = notification.amount_cents if notification.amount_cents is not None else amount_cents
        if paid_cents != amount_cents:
            logger.warning(
                'Pay-first checkout %s paid %s cents, expected %s',
                notification.order_reference, paid_cents, amount_cents,
            )
        scheduled_at = parse_datetime(payload['scheduled_at']) if payload.get('scheduled_at') else None

        try:
            with transaction.atomic():
                booking = create_with_reference(
                    ServiceOrderBooking,
                    kind,
                    locks=self.locks,
                    guest_id=payload['guest_id'],
                    hotel_id=payload['hotel_id'],
                    service_provider_id=payload['service_provider_id'],
                    service_id=payload.get('service_id', ''),
                    details=payload.get('details') or {},
                    scheduled_at=scheduled_at,
                    status=BookingStatus.PAYMENT_COMPLETED,
                    payment_method=PaymentMethod.ONLINE,
                    payment_status=PaymentStatus.COMPLETED,
                    payment_total_cents=amount_cents,
                    payment_paid_cents=paid_cents,
                    provider_amount_cents=paid_cents,
                    currency=notification.currency or payload['currency'],
                    paid_at=notification.occurred_at or now,
                    gateway_session_id=notification.order_reference,
                    gateway_order_reference=notification.gateway_order_id,
                    gateway_transaction_id=notification.transaction_id or None,
                    gateway_notification=notification.raw,
                    gateway_response_code=notification.response_code,
                    gateway_response_message=notification.response_message[:255],
                    created_at=now,
                )
                machine = BookingStateMachine(booking, self.clock)
                machine.record_opened(actor=f'gateway:{notification.source}', automatic=True, announce=True)
                machine.add_message(
                    Party.SYSTEM,
                    f'{booking.get_kind_display()} order paid online. '
                    f'Transaction ID: {notification.transaction_id}',
                    'payment',
                )
        except IntegrityError:
            existing = None
            if notification.transaction_id:
                existing = Booking.objects.filter(gateway_transaction_id=notification.transaction_id).first()
            if existing is None:
                raise
            raise DuplicateTransactionError(notification.transaction_id, existing)

        logger.info(
            'Created %s booking %s from pay-first checkout %s',
            kind, booking.booking_reference, notification.order_reference,
        )
        return booking

    def _audit(self, notification, result):
        PaymentNotification.objects.create(
            source=notification.source,
            event=notification.event,
            status_code=notification.status_code,
            order_reference=notification.order_reference,
            transaction_id=notification.transaction_id,
            payload=notification.raw,
            signature_valid=True,
            outcome=result.outcome,
            booking_reference=result.booking_reference,
        )

    def handle(self, data, signature, source='webhook', event='pay'):
        """Verify, parse and reconcile a raw gateway payload.

        Rejected signatures and processing errors are written to the
        notification audit table before the exception propagates.
        """
        try:
            self.gateway.verify_notification(data, signature)
        except SignatureVerificationError as exc:
            record_rejected(source, event, data, exc.message)
            raise

        try:
            notification = self.gateway.parse_notification(data, source=source, event=event)
            return self.reconcile(notification)
        except LockTimeoutError:
            raise
        except Exception as exc:
            PaymentNotification.objects.create(
                source=source,
                event=event or '',
                status_code=str(data.get('status') or data.get('paymentStatus') or '')[:20],
                order_reference=str(data.get('merchantOrderId') or data.get('orderId') or '')[:128],
                transaction_id=str(data.get('transactionId') or '')[:128],
                payload=data,
                signature_valid=True,
                outcome='error',
                error=str(exc),
            )
            raise


def record_rejected(source, event, data, error):
    data = data if isinstance(data, dict) else {'raw': data}
    return PaymentNotification.objects.create(
        source=source,
        event=event or '',
        order_reference=str(data.get('merchantOrderId') or data.get('orderId') or '')[:128],
        transaction_id=str(data.get('transactionId') or '')[:128],
        payload=data,
        signature_valid=False,
        outcome='rejected',
        error=error,
    )
