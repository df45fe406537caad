from django.test import TestCase, TransactionTestCase, Client, override_settings
from django.db import OperationalError, connection
from django.utils import timezone
from datetime import timedelta
from unittest.mock import patch
from urllib.parse import parse_qs, urlsplit
import hashlib
import hmac
import json
import threading

from bookings import services as booking_services
from bookings.exceptions import (
    GatewayUnavailableError,
    LockTimeoutError,
    NotFoundError,
    SignatureVerificationError,
)
from bookings.locks import booking_locks
from bookings.models import Booking, BookingStatus, PaymentStatus, ServiceOrderBooking
from .gateway import KashierGateway, canonical_query
from .models import PaymentNotification
from .pending import PendingCheckoutStore, temporary_reference
from .reconciler import PaymentReconciler, ReconciliationResult
from .services import start_pay_first_checkout

API_KEY = 'kashier_fake_key_for_testing'
WEBHOOK_KEYS = ['amount', 'currency', 'merchantOrderId', 'orderReference', 'status', 'transactionId']


def sign(data, keys):
    message = canonical_query(data, sorted(keys))
    return hmac.new(API_KEY.encode(), message.encode(), hashlib.sha256).hexdigest()


class KashierGatewayTest(TestCase):
    def setUp(self):
        self.gateway = KashierGateway()

    def test_order_hash(self):
        expected = hmac.new(
            API_KEY.encode(), b'/?payment=MID-test-1.TR2603150001.115.00.EGP', hashlib.sha256,
        ).hexdigest()
        self.assertEqual(self.gateway.order_hash('TR2603150001', '115.00', 'EGP'), expected)

    def test_build_session(self):
        session = self.gateway.build_session(
            order_id='TR2603150001',
            amount_cents=11500,
            currency='EGP',
            success_url='https://guest.example.com/ok',
            failure_url='https://guest.example.com/failed',
            webhook_url='https://api.example.com/api/payments/kashier/webhook/',
        )
        self.assertEqual(session.session_id, 'TR2603150001')
        self.assertEqual(session.amount, '115.00')

        url = urlsplit(session.payment_url)
        self.assertEqual(f'{url.scheme}://{url.netloc}', 'https://checkout.kashier.io')
        params = {key: values[0] for key, values in parse_qs(url.query).items()}
        self.assertEqual(params['merchantId'], 'MID-test-1')
        self.assertEqual(params['orderId'], 'TR2603150001')
        self.assertEqual(params['amount'], '115.00')
        self.assertEqual(params['mode'], 'test')
        self.assertEqual(params['merchantRedirect'], 'https://guest.example.com/ok')
        self.assertEqual(params['hash'], self.gateway.order_hash('TR2603150001', '115.00', 'EGP'))

    def test_unconfigured_gateway(self):
        gateway = KashierGateway(merchant_id='', api_key='')
        with self.assertRaises(GatewayUnavailableError):
            gateway.build_session(order_id='TR1', amount_cents=100)

    def test_canonical_query_matches_gateway_encoding(self):
        self.assertEqual(canonical_query({'currency': 'EGP', 'amount': 115.0}, ['amount', 'currency']),
                         'amount=115&currency=EGP')
        self.assertEqual(canonical_query({'b': 'x y', 'a': "it's/ok!"}, ['a', 'b']),
                         "a=it's%2Fok!&b=x%20y")
        self.assertEqual(canonical_query({'flag': True, 'none': None, 'missing_skipped': 1}, ['flag', 'none', 'x']),
                         'flag=true&none=')

    def test_verify_webhook_signature(self):
        data = {
            'merchantOrderId': 'TR2603150001',
            'transactionId': 'TX-1',
            'status': 'SUCCESS',
            'amount': '115.00',
            'currency': 'EGP',
            'signatureKeys': ['transactionId', 'status', 'merchantOrderId', 'amount', 'currency'],
        }
        signature = sign(data, data['signatureKeys'])
        self.gateway.verify_notification(data, signature)

        tampered = dict(data, amount='1.00')
        with self.assertRaises(SignatureVerificationError):
            self.gateway.verify_notification(tampered, signature)
        with self.assertRaises(SignatureVerificationError):
            self.gateway.verify_notification(data, '')

    def test_verify_redirect_signature_ignores_mode(self):
        data = {'paymentStatus': 'SUCCESS', 'merchantOrderId': 'TR1', 'transactionId': 'TX-9', 'amount': '10.00'}
        signature = sign(data, data.keys())
        self.gateway.verify_notification(dict(data, mode='test', signature=signature), signature)

    def test_map_status(self):
        self.assertEqual(self.gateway.map_status('SUCCESS'), PaymentStatus.COMPLETED)
        self.assertEqual(self.gateway.map_status('error'), PaymentStatus.FAILED)
        self.assertEqual(self.gateway.map_status('REFUNDED'), PaymentStatus.REFUNDED)
        with self.assertLogs('payments.gateway', 'WARNING'):
            self.assertEqual(self.gateway.map_status('VOIDED'), PaymentStatus.PENDING)

    def test_parse_redirect_notification(self):
        notification = self.gateway.parse_notification({
            'paymentStatus': 'SUCCESS',
            'merchantOrderId': 'TR1',
            'orderReference': 'KSH-77',
            'transactionId': 'TX-9',
            'amount': '115.50',
            'currency': 'EGP',
        }, source='redirect')
        self.assertEqual(notification.order_reference, 'TR1')
        self.assertEqual(notification.gateway_order_id, 'KSH-77')
        self.assertEqual(notification.amount_cents, 11550)
        self.assertEqual(notification.payment_status, PaymentStatus.COMPLETED)
        self.assertEqual(notification.idempotency_key, 'TX-9')


class PaymentFlowTestMixin:
    def setUp(self):
        self.client = Client()
        booking = booking_services.request_transportation(
            guest_id='guest-1',
            hotel_id='hotel-1',
            service_provider_id='provider-1',
            vehicle_type='sedan',
            comfort_level='economy',
            pickup_location='Hotel lobby',
            destination='Cairo Airport T3',
            scheduled_at=timezone.now() + timedelta(days=1),
            passenger_count=1,
        )
        booking_services.provide_quote(booking.booking_reference, '100.00')
        self.reference = booking.booking_reference

    def booking(self):
        return Booking.objects.get(booking_reference=self.reference)

    def webhook(self, status='SUCCESS', transaction_id='TX-1001', amount='115.00', order=None, event='pay',
                signature=None, message='Approved'):
        data = {
            'merchantOrderId': order or self.reference,
            'orderReference': 'KSH-ORD-1',
            'transactionId': transaction_id,
            'status': status,
            'amount': amount,
            'currency': 'EGP',
            'method': 'card',
            'creationDate': '2026-03-15T10:00:00Z',
            'transactionResponseCode': '00',
            'transactionResponseMessage': {'en': message},
            'signatureKeys': WEBHOOK_KEYS,
        }
        return self.client.post(
            '/api/payments/kashier/webhook/',
            data=json.dumps({'event': event, 'data': data}),
            content_type='application/json',
            HTTP_X_KASHIER_SIGNATURE=signature if signature is not None else sign(data, WEBHOOK_KEYS),
        )

    def redirect(self, status='SUCCESS', transaction_id='TX-1001', amount='115.00', order=None):
        data = {
            'paymentStatus': status,
            'merchantOrderId': order or self.reference,
            'orderReference': 'KSH-ORD-1',
            'transactionId': transaction_id,
            'amount': amount,
            'currency': 'EGP',
        }
        data['signature'] = sign(data, data.keys())
        data['mode'] = 'test'
        return self.client.post(
            '/api/payments/kashier/confirm/', data=json.dumps(data), content_type='application/json',
        )


class PaymentSessionTest(PaymentFlowTestMixin, TestCase):
    def test_create_session(self):
        response = self.client.post(
            '/api/payments/kashier/sessions/',
            data=json.dumps({'booking_reference': self.reference}),
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data['session_id'], self.reference)
        self.assertEqual(data['amount'], '115.00')
        self.assertIn('merchantId=MID-test-1', data['payment_url'])
        self.assertIn(f'payment-success%3Fbooking%3D{self.reference}', data['payment_url'])

        booking = self.booking()
        self.assertEqual(booking.gateway_session_id, self.reference)
        self.assertEqual(booking.payment_status, PaymentStatus.PENDING)
        self.assertEqual(booking.status_history.count(), 2)

    def test_session_for_unquoted_booking(self):
        other = booking_services.request_transportation(
            guest_id='guest-2',
            hotel_id='hotel-1',
            service_provider_id='provider-1',
            vehicle_type='van',
            comfort_level='economy',
            pickup_location='Hotel lobby',
            destination='Downtown',
            scheduled_at=timezone.now() + timedelta(days=1),
            passenger_count=5,
        )
        response = self.client.post(
            '/api/payments/kashier/sessions/',
            data=json.dumps({'booking_reference': other.booking_reference}),
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 409)

    @override_settings(KASHIER_API_KEY='')
    def test_gateway_not_configured(self):
        response = self.client.post(
            '/api/payments/kashier/sessions/',
            data=json.dumps({'booking_reference': self.reference}),
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()['code'], 'gateway_unavailable')


class WebhookReconciliationTest(PaymentFlowTestMixin, TestCase):
    def test_success_completes_booking(self):
        response = self.webhook()
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['outcome'], 'completed')

        booking = self.booking()
        self.assertEqual(booking.status, BookingStatus.PAYMENT_COMPLETED)
        self.assertEqual(booking.payment_paid_cents, 11500)
        self.assertEqual(booking.gateway_transaction_id, 'TX-1001')
        self.assertEqual(booking.gateway_order_reference, 'KSH-ORD-1')
        self.assertEqual(booking.gateway_response_message, 'Approved')
        self.assertEqual(booking.paid_at.isoformat(), '2026-03-15T10:00:00+00:00')

    def test_replayed_webhook_is_idempotent(self):
        self.webhook()
        response = self.webhook()
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['outcome'], 'already_processed')

        booking = self.booking()
        self.assertEqual(booking.status_history.filter(status='payment_completed').count(), 1)
        self.assertEqual(booking.communications.filter(message__startswith='Payment completed').count(), 1)
        self.assertEqual(
            list(PaymentNotification.objects.order_by('id').values_list('outcome', flat=True)),
            ['completed', 'already_processed'],
        )

    def test_webhook_then_redirect(self):
        self.webhook()
        response = self.redirect()
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data['outcome'], 'already_processed')
        self.assertEqual(data['booking']['status'], 'payment_completed')
        self.assertEqual(self.booking().status_history.filter(status='payment_completed').count(), 1)

    def test_redirect_then_webhook(self):
        self.assertEqual(self.redirect().json()['outcome'], 'completed')
        self.assertEqual(self.webhook().json()['outcome'], 'already_processed')

    def test_tampered_signature_rejected(self):
        response = self.webhook(signature='0' * 64)
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()['code'], 'invalid_signature')

        booking = self.booking()
        self.assertEqual(booking.status, BookingStatus.PAYMENT_PENDING)
        self.assertIsNone(booking.gateway_transaction_id)
        audit = PaymentNotification.objects.get()
        self.assertFalse(audit.signature_valid)
        self.assertEqual(audit.outcome, 'rejected')

    def test_tampered_redirect_rejected(self):
        data = {
            'paymentStatus': 'SUCCESS',
            'merchantOrderId': self.reference,
            'transactionId': 'TX-1001',
            'amount': '115.00',
        }
        data['signature'] = sign(data, data.keys())
        data['amount'] = '1.00'
        response = self.client.post(
            '/api/payments/kashier/confirm/', data=json.dumps(data), content_type='application/json',
        )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(self.booking().status, BookingStatus.PAYMENT_PENDING)

    def test_failure_keeps_booking_payable_and_retry_succeeds(self):
        response = self.webhook(status='FAILED', transaction_id='TX-F1', message='Card declined')
        self.assertEqual(response.json()['outcome'], 'failed')
        booking = self.booking()
        self.assertEqual(booking.status, BookingStatus.PAYMENT_PENDING)
        self.assertEqual(booking.payment_status, PaymentStatus.FAILED)
        self.assertEqual(booking.gateway_failure_reason, 'Card declined')

        duplicate = self.webhook(status='FAILED', transaction_id='TX-F1', message='Card declined')
        self.assertEqual(duplicate.json()['outcome'], 'already_processed')
        self.assertEqual(self.booking().communications.filter(message__startswith='Payment failed').count(), 1)

        response = self.client.post(
            '/api/payments/kashier/sessions/',
            data=json.dumps({'booking_reference': self.reference}),
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.booking().payment_status, PaymentStatus.PENDING)

        self.assertEqual(self.webhook(transaction_id='TX-1002').json()['outcome'], 'completed')
        booking = self.booking()
        self.assertEqual(booking.status, BookingStatus.PAYMENT_COMPLETED)
        self.assertEqual(booking.gateway_transaction_id, 'TX-1002')

    def test_pending_status_only_updates_payment(self):
        response = self.webhook(status='PROCESSING', transaction_id='TX-P1')
        self.assertEqual(response.json()['outcome'], 'status_updated')
        booking = self.booking()
        self.assertEqual(booking.status, BookingStatus.PAYMENT_PENDING)
        self.assertEqual(booking.payment_status, PaymentStatus.PROCESSING)

    def test_refund_applied_once(self):
        self.webhook()
        response = self.webhook(event='refund', status='SUCCESS', transaction_id='TX-R1', amount='50.00')
        self.assertEqual(response.json()['outcome'], 'refunded')
        replay = self.webhook(event='refund', status='SUCCESS', transaction_id='TX-R1', amount='50.00')
        self.assertEqual(replay.json()['outcome'], 'already_processed')

        booking = self.booking()
        self.assertEqual(booking.payment_refunded_cents, 5000)
        self.assertEqual(booking.payment_status, PaymentStatus.REFUNDED)
        self.assertEqual(booking.status, BookingStatus.PAYMENT_COMPLETED)

    def test_processing_error_still_acknowledged(self):
        with self.assertLogs('payments.views', 'ERROR'):
            response = self.webhook(order='TR0000000000', transaction_id='TX-404')
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()['processed'])
        audit = PaymentNotification.objects.get()
        self.assertEqual(audit.outcome, 'error')
        self.assertTrue(audit.signature_valid)

    def test_malformed_webhook_body(self):
        response = self.client.post(
            '/api/payments/kashier/webhook/', data=json.dumps({'event': 'pay'}), content_type='application/json',
        )
        self.assertEqual(response.status_code, 400)

    @override_settings(BOOKING_LOCK_WAIT_SECONDS=0.05)
    def test_concurrent_delivery_told_to_retry(self):
        with booking_locks.hold('payment:TX-1001'):
            response = self.redirect()
            self.assertEqual(response.status_code, 202)
            self.assertEqual(response.json()['code'], 'retry_later')
            webhook = self.webhook()
            self.assertEqual(webhook.status_code, 202)
        self.assertEqual(self.booking().status, BookingStatus.PAYMENT_PENDING)

        self.assertEqual(self.redirect().json()['outcome'], 'completed')
        self.assertEqual(self.webhook().json()['outcome'], 'already_processed')


class ReconcilerRetryTest(PaymentFlowTestMixin, TestCase):
    def notification(self):
        return KashierGateway().parse_notification({
            'merchantOrderId': self.reference,
            'transactionId': 'TX-1001',
            'status': 'SUCCESS',
            'amount': '115.00',
            'currency': 'EGP',
        })

    def test_transient_errors_are_retried(self):
        reconciler = PaymentReconciler(retries=2, backoff=0)
        done = ReconciliationResult(None, 'completed')
        with patch.object(PaymentReconciler, '_reconcile', side_effect=[OperationalError('locked'), done]) as inner:
            with self.assertLogs('payments.reconciler', 'WARNING'):
                self.assertIs(reconciler.reconcile(self.notification()), done)
        self.assertEqual(inner.call_count, 2)

    def test_retries_are_bounded(self):
        reconciler = PaymentReconciler(retries=2, backoff=0)
        with patch.object(PaymentReconciler, '_reconcile', side_effect=OperationalError('locked')) as inner:
            with self.assertRaises(OperationalError):
                reconciler.reconcile(self.notification())
        self.assertEqual(inner.call_count, 3)

    def test_reconcile_directly_is_idempotent(self):
        reconciler = PaymentReconciler()
        self.assertEqual(reconciler.reconcile(self.notification()).outcome, 'completed')
        self.assertEqual(reconciler.reconcile(self.notification()).outcome, 'already_processed')
        self.assertEqual(Booking.objects.get(gateway_transaction_id='TX-1001').booking_reference, self.reference)


class PayFirstTest(TestCase):
    def setUp(self):
        self.client = Client()

    def open_checkout(self, **overrides):
        payload = {
            'kind': 'laundry',
            'amount': '240.00',
            'guest_id': 'guest-7',
            'hotel_id': 'hotel-1',
            'service_provider_id': 'laundry-1',
            'details': {'items': [{'name': 'Shirt', 'quantity': 3}], 'express': True},
        }
        payload.update(overrides)
        return self.client.post('/api/payments/kashier/pay-first/', data=json.dumps(payload),
                                content_type='application/json')

    def paid(self, reference, transaction_id='TX-PF-1', status='SUCCESS', amount='240.00'):
        data = {
            'merchantOrderId': reference,
            'orderReference': 'KSH-PF-1',
            'transactionId': transaction_id,
            'status': status,
            'amount': amount,
            'currency': 'EGP',
            'signatureKeys': WEBHOOK_KEYS,
        }
        return self.client.post(
            '/api/payments/kashier/webhook/',
            data=json.dumps({'event': 'pay', 'data': data}),
            content_type='application/json',
            HTTP_X_KASHIER_SIGNATURE=sign(data, WEBHOOK_KEYS),
        )

    def test_checkout_uses_temporary_reference(self):
        response = self.open_checkout()
        self.assertEqual(response.status_code, 201)
        reference = response.json()['temp_booking_reference']
        self.assertTrue(reference.startswith('TEMP_LAUNDRY_'))
        self.assertEqual(Booking.objects.count(), 0)
        self.assertEqual(PendingCheckoutStore().get(reference)['amount_cents'], 24000)

    def test_transportation_is_not_pay_first(self):
        self.assertEqual(self.open_checkout(kind='transportation').status_code, 400)

    def test_booking_created_only_after_payment(self):
        reference = self.open_checkout().json()['temp_booking_reference']
        response = self.paid(reference)
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data['outcome'], 'created')
        self.assertTrue(data['created'])

        booking = ServiceOrderBooking.objects.get()
        self.assertRegex(booking.booking_reference, r'^LA\d{10}$')
        self.assertEqual(booking.status, BookingStatus.PAYMENT_COMPLETED)
        self.assertEqual(booking.payment_paid_cents, 24000)
        self.assertEqual(booking.details['express'], True)
        self.assertEqual(booking.gateway_session_id, reference)
        self.assertEqual(list(booking.status_history.values_list('status', flat=True)), ['payment_completed'])
        self.assertIsNone(PendingCheckoutStore().get(reference))

        replay = self.paid(reference)
        self.assertEqual(replay.json()['outcome'], 'already_processed')
        self.assertEqual(replay.json()['booking_reference'], booking.booking_reference)
        self.assertEqual(ServiceOrderBooking.objects.count(), 1)

    def test_failed_payment_creates_nothing(self):
        reference = self.open_checkout(kind='restaurant').json()['temp_booking_reference']
        self.assertEqual(self.paid(reference, status='FAILED').json()['outcome'], 'failed')
        self.assertEqual(Booking.objects.count(), 0)
        self.assertIsNotNone(PendingCheckoutStore().get(reference))

    def test_racing_worker_gets_existing_booking(self):
        reference = self.open_checkout().json()['temp_booking_reference']
        self.paid(reference)
        first = ServiceOrderBooking.objects.get()

        # A second worker that missed the committed row still holds the payload.
        store = PendingCheckoutStore()
        store.put(reference, {
            'kind': 'laundry',
            'guest_id': 'guest-7',
            'hotel_id': 'hotel-1',
            'service_provider_id': 'laundry-1',
            'details': {},
            'scheduled_at': None,
            'amount_cents': 24000,
            'currency': 'EGP',
        })
        notification = KashierGateway().parse_notification({
            'merchantOrderId': reference,
            'transactionId': 'TX-PF-1',
            'status': 'SUCCESS',
            'amount': '240.00',
            'currency': 'EGP',
        })
        with patch.object(PaymentReconciler, '_find_booking', side_effect=NotFoundError('not yet visible')):
            result = PaymentReconciler(pending_store=store).reconcile(notification)

        self.assertEqual(result.outcome, 'already_processed')
        self.assertEqual(result.booking.pk, first.pk)
        self.assertEqual(ServiceOrderBooking.objects.count(), 1)

    def test_unknown_temporary_reference(self):
        with self.assertLogs('payments.views', 'ERROR'):
            response = self.paid(temporary_reference('laundry'))
        self.assertFalse(response.json()['processed'])
        self.assertEqual(Booking.objects.count(), 0)


class LockTimeoutMappingTest(TestCase):
    def test_lock_timeout_is_retry_later(self):
        error = LockTimeoutError('payment:TX-1')
        self.assertEqual(error.status_code, 202)
        self.assertEqual(error.as_dict()['code'], 'retry_later')


class ConcurrentPayFirstDeliveryTest(TransactionTestCase):
    @override_settings(BOOKING_LOCK_WAIT_SECONDS=10)
    def test_simultaneous_webhook_and_redirect_create_one_booking(self):
        session = start_pay_first_checkout(
            kind='laundry',
            amount='240.00',
            guest_id='guest-7',
            hotel_id='hotel-1',
            service_provider_id='laundry-1',
            gateway=KashierGateway(),
        )
        data = {
            'merchantOrderId': session.order_id,
            'orderReference': 'KSH-PF-9',
            'transactionId': 'TX-PF-9',
            'status': 'SUCCESS',
            'paymentStatus': 'SUCCESS',
            'amount': '240.00',
            'currency': 'EGP',
        }
        barrier = threading.Barrier(2)
        results = []
        errors = []

        def deliver(source):
            try:
                notification = KashierGateway().parse_notification(data, source=source)
                barrier.wait(timeout=5)
                results.append(PaymentReconciler().reconcile(notification))
            except Exception as exc:
                errors.append(exc)
            finally:
                connection.close()

        workers = [threading.Thread(target=deliver, args=(source,)) for source in ('webhook', 'redirect')]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(timeout=30)

        self.assertEqual(errors, [])
        self.assertEqual(sorted(result.outcome for result in results), ['already_processed', 'created'])
        booking = ServiceOrderBooking.objects.get()
        self.assertEqual({result.booking.pk for result in results}, {booking.pk})
        self.assertEqual(booking.gateway_transaction_id, 'TX-PF-9')
        self.assertEqual(booking.status_history.count(), 1)
        self.assertEqual(PaymentNotification.objects.count(), 2)
