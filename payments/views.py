import json
import logging

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from bookings import services as booking_services
from bookings.exceptions import GatewayUnavailableError, LockTimeoutError, SignatureVerificationError
from bookings.http import json_endpoint, read_json, validated
from bookings.serializers import serialize_booking

from .gateway import KashierGateway
from .reconciler import PaymentReconciler
from .serializers import PayFirstSerializer, PaymentSessionSerializer
from .services import start_pay_first_checkout

logger = logging.getLogger(__name__)


def _session_payload(session):
    return {
        'session_id': session.session_id,
        'payment_url': session.payment_url,
        'amount': session.amount,
        'currency': session.currency,
    }


def _result_payload(result):
    return {
        'outcome': result.outcome,
        'created': result.created,
        'booking_reference': result.booking_reference or None,
        'booking': serialize_booking(result.booking, include_history=False) if result.booking else None,
    }


@csrf_exempt
@require_http_methods(["POST"])
@json_endpoint
def create_payment_session(request):
    data = validated(PaymentSessionSerializer, read_json(request))
    booking, session = booking_services.start_payment(
        data['booking_reference'], KashierGateway(), actor=data['actor'],
    )
    payload = _session_payload(session)
    payload.update(booking_reference=booking.booking_reference, status=booking.status)
    return JsonResponse(payload)


@csrf_exempt
@require_http_methods(["POST"])
@json_endpoint
def create_pay_first_session(request):
    data = validated(PayFirstSerializer, read_json(request))
    session = start_pay_first_checkout(gateway=KashierGateway(), **data)
    payload = _session_payload(session)
    payload['temp_booking_reference'] = session.order_id
    return JsonResponse(payload, status=201)


@csrf_exempt
@require_http_methods(["POST"])
def kashier_webhook(request):
    try:
        body = json.loads(request.body)
    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)

    data = body.get('data') if isinstance(body, dict) else None
    if not isinstance(data, dict):
        return JsonResponse({'error': 'Missing data object'}, status=400)

    event = body.get('event') or 'pay'
    signature = request.headers.get('X-Kashier-Signature', '')
    reconciler = PaymentReconciler(KashierGateway())

    try:
        result = reconciler.handle(data, signature, source='webhook', event=event)
    except SignatureVerificationError as exc:
        return JsonResponse(exc.as_dict(), status=exc.status_code)
    except (LockTimeoutError, GatewayUnavailableError) as exc:
        return JsonResponse(exc.as_dict(), status=exc.status_code)
    except Exception:
        # Answered 2xx; the failure is on the audit row.
        logger.exception(
            'Kashier webhook processing failed for order %s (event %s)', data.get('merchantOrderId'), event,
        )
        return JsonResponse({'received': True, 'processed': False})

    payload = _result_payload(result)
    payload.update(received=True, processed=True)
    return JsonResponse(payload)


@csrf_exempt
@require_http_methods(["POST"])
@json_endpoint
def confirm_redirect(request):
    data = read_json(request)
    reconciler = PaymentReconciler(KashierGateway())
    result = reconciler.handle(data, data.get('signature', ''), source='redirect', event='pay')
    payload = _result_payload(result)
    payload['payment_status'] = data.get('paymentStatus')
    return JsonResponse(payload)
