from rest_framework import serializers

from .models import Party, TransportationBooking
from .pricing import format_amount


class TransportationRequestSerializer(serializers.Serializer):
    guest_id = serializers.CharField(max_length=64)
    hotel_id = serializers.CharField(max_length=64)
    service_provider_id = serializers.CharField(max_length=64)
    service_id = serializers.CharField(max_length=64, required=False, allow_blank=True, default='')
    vehicle_type = serializers.ChoiceField(choices=TransportationBooking.VEHICLE_TYPES)
    comfort_level = serializers.ChoiceField(choices=TransportationBooking.COMFORT_LEVELS)
    passenger_capacity = serializers.IntegerField(min_value=1, required=False, allow_null=True)
    pickup_location = serializers.CharField(max_length=255)
    destination = serializers.CharField(max_length=255)
    scheduled_at = serializers.DateTimeField()
    passenger_count = serializers.IntegerField(min_value=1)
    special_requirements = serializers.CharField(required=False, allow_blank=True, default='')

    def validate(self, data):
        capacity = data.get('passenger_capacity')
        if capacity is not None and data['passenger_count'] > capacity:
            raise serializers.ValidationError({'passenger_count': 'Exceeds the vehicle passenger capacity.'})
        return data


class QuoteSerializer(serializers.Serializer):
    base_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    notes = serializers.CharField(required=False, allow_blank=True, default='')
    expiration_hours = serializers.IntegerField(min_value=1, required=False)
    require_acceptance = serializers.BooleanField(required=False, default=False)
    actor = serializers.CharField(max_length=64, required=False, allow_blank=True, default='')


class ActorSerializer(serializers.Serializer):
    actor = serializers.CharField(max_length=64, required=False, allow_blank=True, default='')


class RejectSerializer(ActorSerializer):
    reason = serializers.CharField(required=False, allow_blank=True, default='')


class CancelSerializer(RejectSerializer):
    cancelled_by = serializers.ChoiceField(choices=Party.choices)
    refund_amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False, default=0)
    cancellation_fee = serializers.DecimalField(
        max_digits=12, decimal_places=2, min_value=0, required=False, default=0,
    )


class FeedbackSerializer(serializers.Serializer):
    rating = serializers.IntegerField(min_value=1, max_value=5)
    comment = serializers.CharField(required=False, allow_blank=True, default='')


def _amount(cents):
    return None if cents is None else format_amount(cents)


def _timestamp(value):
    return value.isoformat() if value else None


def serialize_booking(booking, include_history=True):
    payload = {
        'booking_reference': booking.booking_reference,
        'kind': booking.kind,
        'status': booking.status,
        'guest_id': booking.guest_id,
        'hotel_id': booking.hotel_id,
        'service_provider_id': booking.service_provider_id,
        'service_id': booking.service_id,
        'quote': None,
        'markup': {
            'percentage': str(booking.markup_percentage),
            'amount': _amount(booking.markup_amount_cents),
        },
        'payment': {
            'method': booking.payment_method,
            'status': booking.payment_status,
            'currency': booking.currency,
            'total': _amount(booking.payment_total_cents),
            'paid': _amount(booking.payment_paid_cents),
            'refunded': _amount(booking.payment_refunded_cents),
            'paid_at': _timestamp(booking.paid_at),
            'payment_url': booking.gateway_payment_url or None,
            'transaction_id': booking.gateway_transaction_id,
            'failure_reason': booking.gateway_failure_reason or None,
        },
        'sla': {
            'status': booking.sla_status,
            'target_response_minutes': booking.sla_target_response_minutes,
            'target_completion_minutes': booking.sla_target_completion_minutes,
            'actual_response_minutes': booking.sla_actual_response_minutes,
            'actual_completion_minutes': booking.sla_actual_completion_minutes,
            'actual_service_minutes': booking.sla_actual_service_minutes,
            'response_on_time': booking.sla_response_on_time,
            'completion_on_time': booking.sla_completion_on_time,
        },
        'created_at': _timestamp(booking.created_at),
    }
    if booking.has_quote:
        payload['quote'] = {
            'base_price': _amount(booking.quote_base_price_cents),
            'markup_percentage': str(booking.quote_markup_percentage),
            'final_price': _amount(booking.quote_final_price_cents),
            'quoted_at': _timestamp(booking.quoted_at),
            'expires_at': _timestamp(booking.quote_expires_at),
            'notes': booking.quote_notes,
        }
    if booking.cancelled_at:
        payload['cancellation'] = {
            'cancelled_by': booking.cancelled_by,
            'cancelled_at': _timestamp(booking.cancelled_at),
            'reason': booking.cancellation_reason,
            'refund_amount': _amount(booking.refund_amount_cents),
            'cancellation_fee': _amount(booking.cancellation_fee_cents),
        }
    if booking.guest_rating is not None:
        payload['feedback'] = {'rating': booking.guest_rating, 'comment': booking.guest_comment}

    variant = booking.variant()
    if isinstance(variant, TransportationBooking):
        payload['trip'] = {
            'vehicle_type': variant.vehicle_type,
            'comfort_level': variant.comfort_level,
            'passenger_capacity': variant.passenger_capacity,
            'pickup_location': variant.pickup_location,
            'destination': variant.destination,
            'scheduled_at': _timestamp(variant.scheduled_at),
            'passenger_count': variant.passenger_count,
            'special_requirements': variant.special_requirements,
        }
    else:
        payload['details'] = variant.details

    if include_history:
        payload['status_history'] = [
            {
                'status': entry.status,
                'timestamp': _timestamp(entry.timestamp),
                'actor': entry.actor or None,
                'automatic': entry.automatic,
                'notes': entry.notes,
            }
            for entry in booking.status_history.all()
        ]
        payload['communications'] = [
            {
                'sender': entry.sender,
                'message': entry.message,
                'message_type': entry.message_type,
                'timestamp': _timestamp(entry.timestamp),
            }
            for entry in booking.communications.all()
        ]
    return payload
