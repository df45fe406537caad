from rest_framework import serializers

from bookings.models import BookingKind


class PaymentSessionSerializer(serializers.Serializer):
    booking_reference = serializers.CharField(max_length=32)
    actor = serializers.CharField(max_length=64, required=False, allow_blank=True, default='')


class PayFirstSerializer(serializers.Serializer):
    kind = serializers.ChoiceField(choices=[BookingKind.LAUNDRY.value, BookingKind.RESTAURANT.value])
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    guest_id = serializers.CharField(max_length=64)
    hotel_id = serializers.CharField(max_length=64)
    service_provider_id = serializers.CharField(max_length=64)
    service_id = serializers.CharField(max_length=64, required=False, allow_blank=True, default='')
    details = serializers.DictField(required=False, default=dict)
    scheduled_at = serializers.DateTimeField(required=False, allow_null=True, default=None)
