"""Kashier hosted-payment-page adapter.

Builds signed payment links and verifies the notifications Kashier sends back,
either server-to-server (webhook) or through the guest's browser (redirect).
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from urllib.parse import quote, urlencode

from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from bookings import pricing
from bookings.exceptions import GatewayUnavailableError, SignatureVerificationError, ValidationError
from bookings.models import PaymentStatus

logger = logging.getLogger(__name__)

# Kashier serializes signed fields the way Node's querystring module does.
QUERYSTRING_SAFE = "!*'()"

STATUS_MAP = {
    'SUCCESS': PaymentStatus.COMPLETED,
    'FAILED': PaymentStatus.FAILED,
    'ERROR': PaymentStatus.FAILED,
    'PENDING': PaymentStatus.PENDING,
    'PROCESSING': PaymentStatus.PROCESSING,
    'REFUNDED': PaymentStatus.REFUNDED,
}

UNSIGNED_REDIRECT_KEYS = ('signature', 'mode')


@dataclass(frozen=True)
class PaymentSession:
    session_id: str
    order_id: str
    amount: str
    amount_cents: int
    currency: str
    hash: str
    payment_url: str


@dataclass
class GatewayNotification:
    source: str
    event: str
    status_code: str
    payment_status: str
    order_reference: str
    transaction_id: str = ''
    gateway_order_id: str = ''
    amount_cents: int = None
    currency: str = ''
    method: str = ''
    occurred_at: datetime = None
    response_code: str = ''
    response_message: str = ''
    raw: dict = field(default_factory=dict)

    @property
    def idempotency_key(self):
        return self.transaction_id or self.order_reference

    @property
    def is_pay_first(self):
        return self.order_reference.startswith('TEMP_')

    @property
    def is_refund(self):
        return self.event == 'refund'


def _querystring_value(value):
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if value is None or isinstance(value, dict):
        return ''
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def canonical_query(data, keys):
    pairs = []
    for key in keys:
        if key not in data:
            continue
        value = data[key]
        values = value if isinstance(value, (list, tuple)) else [value]
        pairs.extend((key, _querystring_value(item)) for item in values)
    return urlencode(pairs, safe=QUERYSTRING_SAFE, quote_via=quote)


def _response_message(value):
    if isinstance(value, dict):
        return value.get('en') or next(iter(value.values()), '')
    return value or ''


def _amount_cents(value):
    if value in (None, ''):
        return None
    try:
        return pricing.to_cents(value, 'amount')
    except ValidationError:
        logger.warning('Ignoring unparseable gateway amount %r', value)
        return None


class KashierGateway:
    def __init__(self, merchant_id=None, api_key=None, base_url=None, currency=None, mode=None):
        self.merchant_id = merchant_id if merchant_id is not None else settings.KASHIER_MERCHANT_ID
        self.api_key = api_key if api_key is not None else settings.KASHIER_API_KEY
        self.base_url = base_url or settings.KASHIER_BASE_URL
        self.currency = currency or settings.KASHIER_CURRENCY
        self.mode = mode or settings.KASHIER_MODE

    @property
    def configured(self):
        return bool(self.merchant_id and self.api_key)

    def _sign(self, message):
        return hmac.new(self.api_key.encode(), message.encode(), hashlib.sha256).hexdigest()

    def order_hash(self, order_id, amount, currency):
        return self._sign(f'/?payment={self.merchant_id}.{order_id}.{amount}.{currency}')

    def build_session(self, order_id, amount_cents, currency=None, success_url='', failure_url='', webhook_url=''):
        if not self.configured:
            raise GatewayUnavailableError('Kashier is not configured')
        if amount_cents is None or amount_cents <= 0:
            raise ValidationError('Payment amount must be positive', field='amount')

        currency = currency or self.currency
        amount = pricing.format_amount(amount_cents)
        order_hash = self.order_hash(order_id, amount, currency)
        params = {
            'merchantId': self.merchant_id,
            'orderId': order_id,
            'amount': amount,
            'currency': currency,
            'mode': self.mode,
            'merchantRedirect': success_url,
            'failureRedirect': failure_url,
            'serverWebhook': webhook_url,
            'hash': order_hash,
        }
        return PaymentSession(
            session_id=order_id,
            order_id=order_id,
            amount=amount,
            amount_cents=amount_cents,
            currency=currency,
            hash=order_hash,
            payment_url=f'{self.base_url}?{urlencode(params)}',
        )

    def verify_notification(self, data, signature, signature_keys=None):
        """Raise ``SignatureVerificationError`` unless ``signature`` signs ``data``."""
        if not self.api_key:
            raise GatewayUnavailableError('Kashier is not configured')
        if not signature or not isinstance(data, dict):
            logger.warning('Kashier notification arrived without a signature')
            raise SignatureVerificationError('Missing signature')

        if signature_keys is None:
            signature_keys = data.get('signatureKeys')
        if signature_keys is None:
            signature_keys = [key for key in data if key not in UNSIGNED_REDIRECT_KEYS]
        if not isinstance(signature_keys, (list, tuple)) or not all(isinstance(k, str) for k in signature_keys):
            raise SignatureVerificationError('Malformed signatureKeys')

        expected = self._sign(canonical_query(data, sorted(signature_keys)))
        if not hmac.compare_digest(expected, str(signature)):
            logger.warning(
                'Kashier signature mismatch for order %s',
                data.get('merchantOrderId') or data.get('orderId'),
            )
            raise SignatureVerificationError('Invalid signature')

    def map_status(self, code):
        status = STATUS_MAP.get(str(code or '').upper())
        if status is None:
            logger.warning('Unrecognized Kashier payment status %r, treating as pending', code)
            return PaymentStatus.PENDING
        return status

    def parse_notification(self, data, source='webhook', event='pay'):
        """Normalize a webhook ``data`` object or redirect query parameters."""
        if source == 'redirect':
            status_code = data.get('paymentStatus', '')
            order_reference = data.get('merchantOrderId') or data.get('orderId') or ''
            gateway_order_id = data.get('orderReference', '')
        else:
            status_code = data.get('status', '')
            order_reference = data.get('merchantOrderId') or ''
            gateway_order_id = data.get('orderReference') or data.get('kashierOrderId') or ''
        if not order_reference:
            raise ValidationError('Notification has no merchant order id')

        occurred_at = None
        if data.get('creationDate'):
            occurred_at = parse_datetime(str(data['creationDate']))
            if occurred_at is not None and timezone.is_naive(occurred_at):
                occurred_at = timezone.make_aware(occurred_at, dt_timezone.utc)

        return GatewayNotification(
            source=source,
            event=event or 'pay',
            status_code=str(status_code).upper(),
            payment_status=self.map_status(status_code),
            order_reference=str(order_reference),
            transaction_id=str(data.get('transactionId') or ''),
            gateway_order_id=str(gateway_order_id),
            amount_cents=_amount_cents(data.get('amount')),
            currency=str(data.get('currency') or ''),
            method=str(data.get('method') or ''),
            occurred_at=occurred_at,
            response_code=str(data.get('transactionResponseCode') or ''),
            response_message=_response_message(data.get('transactionResponseMessage')),
            raw=data,
        )
