import logging

from django.conf import settings

from bookings import pricing
from bookings.exceptions import ValidationError

from .gateway import KashierGateway
from .pending import pending_checkouts, temporary_reference
from .reconciler import PAY_FIRST_KINDS

logger = logging.getLogger(__name__)


def start_pay_first_checkout(*, kind, amount, guest_id, hotel_id, service_provider_id, service_id='',
                             details=None, scheduled_at=None, currency=None, gateway=None,
                             store=pending_checkouts):
    """Open a hosted checkout for an order that is only created once paid."""
    if kind not in PAY_FIRST_KINDS:
        raise ValidationError(f'Pay-first checkout is not available for {kind}', field='kind')
    amount_cents = pricing.to_cents(amount, 'amount')
    if amount_cents <= 0:
        raise ValidationError('amount must be positive', field='amount')

    gateway = gateway or KashierGateway()
    currency = currency or gateway.currency
    reference = temporary_reference(kind)
    session = gateway.build_session(
        order_id=reference,
        amount_cents=amount_cents,
        currency=currency,
        success_url=f'{settings.FRONTEND_URL}/guest/payment-success?bookingRef={reference}',
        failure_url=f'{settings.FRONTEND_URL}/guest/payment-failed?bookingRef={reference}',
        webhook_url=f'{settings.BACKEND_URL}/api/payments/kashier/webhook/',
    )
    store.put(reference, {
        'kind': str(kind),
        'guest_id': guest_id,
        'hotel_id': hotel_id,
        'service_provider_id': service_provider_id,
        'service_id': service_id or '',
        'details': details or {},
        'scheduled_at': scheduled_at.isoformat() if scheduled_at else None,
        'amount_cents': amount_cents,
        'currency': currency,
    })
    logger.info('Pay-first checkout %s opened for guest %s (%s %s)', reference, guest_id, session.amount, currency)
    return session
