"""Keeps a booking's markup in step with the live markup configuration.

Hotel staff can edit provider and hotel markup at any time, so every read
of a booking whose quote is still negotiable re-resolves the percentage and
persists the difference before the booking is served.
"""
import logging

from django.conf import settings
from django.db import transaction

from . import pricing
from .locks import booking_locks
from .models import Booking, BookingKind, HotelMarkupSettings, ServiceProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Resolves the markup a hotel charges on top of a provider's price.

    The provider's own percentage wins, then the hotel's percentage for the
    booking kind, then the hotel default, then ``DEFAULT_MARKUP_PERCENTAGE``.
    """

    def current_markup_percentage(self, provider_id, hotel_id=None, category=BookingKind.TRANSPORTATION):
        percentage = (
            ServiceProvider.objects
            .filter(provider_id=provider_id)
            .values_list('markup_percentage', flat=True)
            .first()
        )
        if percentage is None and hotel_id:
            hotel = HotelMarkupSettings.objects.filter(hotel_id=hotel_id).first()
            if hotel is not None:
                percentage = hotel.percentage_for(category)
        if percentage is None:
            percentage = settings.DEFAULT_MARKUP_PERCENTAGE
        return pricing.normalize_percentage(percentage)


default_registry = ProviderRegistry()


def current_percentage(booking, registry=default_registry):
    return registry.current_markup_percentage(booking.service_provider_id, booking.hotel_id, booking.kind)


def apply_current_markup(booking, registry=default_registry):
    """Update ``booking`` in memory; returns the changed field names.

    Callers hold the booking lock and persist the returned fields.
    """
    if booking.markup_frozen:
        return []
    percentage = current_percentage(booking, registry)
    if percentage == booking.markup_percentage:
        return []

    booking.markup_percentage = percentage
    changed = ['markup_percentage']
    if booking.has_quote:
        figures = pricing.compute_quote(booking.quote_base_price_cents, percentage)
        booking.markup_amount_cents = figures.markup_amount_cents
        booking.quote_markup_percentage = figures.markup_percentage
        booking.quote_final_price_cents = figures.final_price_cents
        booking.payment_total_cents = figures.final_price_cents
        changed += ['markup_amount_cents', 'quote_markup_percentage', 'quote_final_price_cents', 'payment_total_cents']
    return changed


def sync_markup(booking, registry=default_registry, locks=booking_locks):
    """Read-time reconciliation of ``booking``'s markup.

    Returns the booking as persisted. Frozen bookings are returned untouched
    without taking the lock.
    """
    if booking.markup_frozen:
        return booking
    if current_percentage(booking, registry) == booking.markup_percentage:
        return booking

    with locks.hold(f'booking:{booking.pk}'):
        with transaction.atomic():
            current = Booking.objects.select_for_update().get(pk=booking.pk)
            changed = apply_current_markup(current, registry)
            if changed:
                current.save(update_fields=changed + ['updated_at'])
                logger.info(
                    'Markup for booking %s synced to %s%%', current.booking_reference, current.markup_percentage,
                )
    booking.refresh_from_db()
    return booking
