import logging
from concurrent.futures import ThreadPoolExecutor

import requests
from django.conf import settings
from django.dispatch import receiver

from .signals import booking_status_changed

logger = logging.getLogger(__name__)

# Deliveries run off the request thread; a slow endpoint never delays a booking write.
dispatcher = ThreadPoolExecutor(max_workers=2, thread_name_prefix='booking-notify')


def deliver(url, payload, timeout):
    try:
        requests.post(url, json=payload, timeout=timeout)
    except requests.RequestException:
        logger.warning(
            'Notification dispatch failed for booking %s (%s -> %s)',
            payload['booking_reference'], payload['previous_status'], payload['status'], exc_info=True,
        )


@receiver(booking_status_changed, dispatch_uid='bookings.dispatch_status_notification')
def dispatch_status_notification(sender, booking, previous_status, status, actor='', **kwargs):
    """Forward the transition to the notification service (email/WhatsApp).

    Returns the pending delivery, or None when no endpoint is configured.
    """
    if not settings.NOTIFICATIONS_WEBHOOK_URL:
        return None

    payload = {
        'booking_reference': booking.booking_reference,
        'booking_kind': booking.kind,
        'guest_id': booking.guest_id,
        'hotel_id': booking.hotel_id,
        'service_provider_id': booking.service_provider_id,
        'previous_status': previous_status,
        'status': status,
        'actor': actor,
    }
    return dispatcher.submit(
        deliver, settings.NOTIFICATIONS_WEBHOOK_URL, payload, settings.NOTIFICATIONS_TIMEOUT_SECONDS,
    )
