from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.utils import timezone


def default_response_target():
    return settings.SLA_TARGET_RESPONSE_MINUTES


def default_completion_target():
    return settings.SLA_TARGET_COMPLETION_MINUTES


def default_currency():
    return settings.DEFAULT_CURRENCY


class BookingStatus(models.TextChoices):
    PENDING_QUOTE = 'pending_quote', 'Pending Quote'
    QUOTE_SENT = 'quote_sent', 'Quote Sent'
    QUOTE_ACCEPTED = 'quote_accepted', 'Quote Accepted'
    PAYMENT_PENDING = 'payment_pending', 'Payment Pending'
    CONFIRMED = 'confirmed', 'Confirmed'
    PAYMENT_COMPLETED = 'payment_completed', 'Payment Completed'
    SERVICE_ACTIVE = 'service_active', 'Service Active'
    COMPLETED = 'completed', 'Completed'
    CANCELLED = 'cancelled', 'Cancelled'
    QUOTE_REJECTED = 'quote_rejected', 'Quote Rejected'
    QUOTE_EXPIRED = 'quote_expired', 'Quote Expired'


class BookingKind(models.TextChoices):
    TRANSPORTATION = 'transportation', 'Transportation'
    LAUNDRY = 'laundry', 'Laundry'
    RESTAURANT = 'restaurant', 'Restaurant'


class PaymentStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    PROCESSING = 'processing', 'Processing'
    COMPLETED = 'completed', 'Completed'
    FAILED = 'failed', 'Failed'
    REFUNDED = 'refunded', 'Refunded'


class PaymentMethod(models.TextChoices):
    ONLINE = 'online', 'Online'
    CASH = 'cash', 'Cash'


class SLAStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    MET = 'met', 'Met'
    MISSED = 'missed', 'Missed'
    AT_RISK = 'at-risk', 'At Risk'


class Party(models.TextChoices):
    GUEST = 'guest', 'Guest'
    PROVIDER = 'provider', 'Provider'
    HOTEL = 'hotel', 'Hotel'
    SYSTEM = 'system', 'System'


# Markup follows the provider's live setting only while the quote is still negotiable.
MARKUP_TRACKING_STATUSES = (
    BookingStatus.PENDING_QUOTE,
    BookingStatus.QUOTE_SENT,
    BookingStatus.QUOTE_ACCEPTED,
)

PAID_STATUSES = (
    BookingStatus.PAYMENT_COMPLETED,
    BookingStatus.SERVICE_ACTIVE,
    BookingStatus.COMPLETED,
)

CANCELLABLE_STATUSES = (
    BookingStatus.PENDING_QUOTE,
    BookingStatus.QUOTE_SENT,
    BookingStatus.QUOTE_ACCEPTED,
    BookingStatus.PAYMENT_PENDING,
)


class ServiceProvider(models.Model):
    """Markup configuration owned by the provider registry."""

    provider_id = models.CharField(max_length=64, unique=True)
    business_name = models.CharField(max_length=255, blank=True)
    markup_percentage = models.DecimalField(
        max_digits=5, decimal_places=2, null=True, blank=True,
        validators=[MinValueValidator(0)],
    )
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'bookings_service_provider'

    def __str__(self):
        return self.business_name or self.provider_id


class HotelMarkupSettings(models.Model):
    """Hotel-wide markup, used for providers without their own percentage.

    ``categories`` maps a booking kind (``transportation``, ``laundry``...) to a
    percentage; ``default_percentage`` covers every other kind.
    """

    hotel_id = models.CharField(max_length=64, unique=True)
    default_percentage = models.DecimalField(
        max_digits=5, decimal_places=2, null=True, blank=True,
        validators=[MinValueValidator(0)],
    )
    categories = models.JSONField(default=dict, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'bookings_hotel_markup_settings'
        verbose_name_plural = 'hotel markup settings'

    def __str__(self):
        return self.hotel_id

    def percentage_for(self, category):
        percentage = (self.categories or {}).get(str(category))
        if percentage is None:
            return self.default_percentage
        return percentage


class Booking(models.Model):
    booking_reference = models.CharField(max_length=32, unique=True)
    kind = models.CharField(max_length=20, choices=BookingKind.choices, db_index=True)

    guest_id = models.CharField(max_length=64, db_index=True)
    hotel_id = models.CharField(max_length=64, db_index=True)
    service_provider_id = models.CharField(max_length=64, db_index=True)
    service_id = models.CharField(max_length=64, blank=True)

    status = models.CharField(
        max_length=20, choices=BookingStatus.choices, default=BookingStatus.PENDING_QUOTE, db_index=True,
    )

    quote_base_price_cents = models.PositiveIntegerField(null=True, blank=True)
    quote_markup_percentage = models.DecimalField(max_digits=5, decimal_places=2, null=True, blank=True)
    quote_final_price_cents = models.PositiveIntegerField(null=True, blank=True)
    quoted_at = models.DateTimeField(null=True, blank=True)
    quote_expires_at = models.DateTimeField(null=True, blank=True)
    quote_notes = models.TextField(blank=True)

    markup_percentage = models.DecimalField(
        max_digits=5, decimal_places=2, default=0, validators=[MinValueValidator(0)],
    )
    markup_amount_cents = models.PositiveIntegerField(default=0)

    payment_method = models.CharField(max_length=10, choices=PaymentMethod.choices, default=PaymentMethod.ONLINE)
    payment_status = models.CharField(max_length=12, choices=PaymentStatus.choices, default=PaymentStatus.PENDING)
    payment_total_cents = models.PositiveIntegerField(default=0)
    payment_paid_cents = models.PositiveIntegerField(default=0)
    payment_refunded_cents = models.PositiveIntegerField(default=0)
    currency = models.CharField(max_length=3, default=default_currency)
    paid_at = models.DateTimeField(null=True, blank=True)
    provider_amount_cents = models.PositiveIntegerField(default=0)
    hotel_commission_cents = models.PositiveIntegerField(default=0)
    platform_fee_cents = models.PositiveIntegerField(default=0)

    gateway_session_id = models.CharField(max_length=128, blank=True)
    gateway_payment_url = models.TextField(blank=True)
    gateway_order_reference = models.CharField(max_length=128, blank=True, db_index=True)
    gateway_transaction_id = models.CharField(max_length=128, null=True, blank=True, unique=True)
    gateway_notification = models.JSONField(default=dict, blank=True)
    gateway_response_code = models.CharField(max_length=32, blank=True)
    gateway_response_message = models.CharField(max_length=255, blank=True)
    gateway_failure_reason = models.CharField(max_length=255, blank=True)

    sla_target_response_minutes = models.PositiveIntegerField(default=default_response_target)
    sla_target_completion_minutes = models.PositiveIntegerField(default=default_completion_target)
    sla_accepted_at = models.DateTimeField(null=True, blank=True)
    sla_started_at = models.DateTimeField(null=True, blank=True)
    sla_completed_at = models.DateTimeField(null=True, blank=True)
    sla_actual_response_minutes = models.IntegerField(null=True, blank=True)
    sla_actual_completion_minutes = models.IntegerField(null=True, blank=True)
    sla_actual_service_minutes = models.IntegerField(null=True, blank=True)
    sla_response_on_time = models.BooleanField(null=True, blank=True)
    sla_completion_on_time = models.BooleanField(null=True, blank=True)
    sla_response_delay_minutes = models.IntegerField(null=True, blank=True)
    sla_completion_delay_minutes = models.IntegerField(null=True, blank=True)
    sla_status = models.CharField(max_length=10, choices=SLAStatus.choices, default=SLAStatus.PENDING)

    cancelled_by = models.CharField(max_length=10, choices=Party.choices, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.TextField(blank=True)
    refund_amount_cents = models.PositiveIntegerField(default=0)
    cancellation_fee_cents = models.PositiveIntegerField(default=0)

    guest_rating = models.PositiveSmallIntegerField(
        null=True, blank=True, validators=[MinValueValidator(1), MaxValueValidator(5)],
    )
    guest_comment = models.TextField(blank=True)
    feedback_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'bookings_booking'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['service_provider_id', 'status']),
            models.Index(fields=['hotel_id', 'status']),
        ]

    def __str__(self):
        return f"{self.booking_reference} - {self.kind} - {self.status}"

    @property
    def has_quote(self):
        return self.quote_base_price_cents is not None

    @property
    def markup_frozen(self):
        return self.status not in MARKUP_TRACKING_STATUSES

    @property
    def is_paid(self):
        return self.status in PAID_STATUSES

    def is_quote_expired(self, now=None):
        if self.quote_expires_at is None:
            return False
        return (now or timezone.now()) > self.quote_expires_at

    def variant(self):
        """Return the kind-specific record backing this booking."""
        if type(self) is not Booking:
            return self
        if self.kind == BookingKind.TRANSPORTATION:
            return self.transportationbooking
        return self.serviceorderbooking


class TransportationBooking(Booking):
    VEHICLE_TYPES = [
        ('sedan', 'Sedan'),
        ('suv', 'SUV'),
        ('van', 'Van'),
        ('hatchback', 'Hatchback'),
        ('luxury_car', 'Luxury Car'),
        ('minibus', 'Minibus'),
        ('pickup_truck', 'Pickup Truck'),
    ]
    COMFORT_LEVELS = [
        ('economy', 'Economy'),
        ('comfort', 'Comfort'),
        ('premium', 'Premium'),
    ]

    vehicle_type = models.CharField(max_length=20, choices=VEHICLE_TYPES)
    comfort_level = models.CharField(max_length=10, choices=COMFORT_LEVELS)
    passenger_capacity = models.PositiveSmallIntegerField(null=True, blank=True)
    pickup_location = models.CharField(max_length=255)
    destination = models.CharField(max_length=255)
    scheduled_at = models.DateTimeField(db_index=True)
    passenger_count = models.PositiveSmallIntegerField(validators=[MinValueValidator(1)])
    special_requirements = models.TextField(blank=True)

    class Meta:
        db_table = 'bookings_transportation_booking'


class ServiceOrderBooking(Booking):
    """Laundry and restaurant orders that only exist once payment succeeds."""

    details = models.JSONField(default=dict, blank=True)
    scheduled_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'bookings_service_order_booking'


class AppendOnlyModel(models.Model):
    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError(f'{self.__class__.__name__} entries are append-only')
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError(f'{self.__class__.__name__} entries are append-only')


class StatusHistoryEntry(AppendOnlyModel):
    booking = models.ForeignKey(Booking, on_delete=models.CASCADE, related_name='status_history')
    status = models.CharField(max_length=20, choices=BookingStatus.choices)
    timestamp = models.DateTimeField()
    actor = models.CharField(max_length=64, blank=True)
    automatic = models.BooleanField(default=False)
    notes = models.TextField(blank=True)

    class Meta:
        db_table = 'bookings_status_history'
        ordering = ['timestamp', 'id']

    def __str__(self):
        return f"{self.booking_id} -> {self.status} @ {self.timestamp.isoformat()}"


class CommunicationLogEntry(AppendOnlyModel):
    MESSAGE_TYPES = [
        ('quote', 'Quote'),
        ('acceptance', 'Acceptance'),
        ('rejection', 'Rejection'),
        ('info', 'Info'),
        ('reminder', 'Reminder'),
        ('payment', 'Payment'),
    ]

    booking = models.ForeignKey(Booking, on_delete=models.CASCADE, related_name='communications')
    sender = models.CharField(max_length=10, choices=Party.choices)
    message = models.TextField()
    message_type = models.CharField(max_length=12, choices=MESSAGE_TYPES, default='info')
    timestamp = models.DateTimeField()

    class Meta:
        db_table = 'bookings_communication_log'
        ordering = ['timestamp', 'id']

    def __str__(self):
        return f"[{self.sender}] {self.message[:40]}"
