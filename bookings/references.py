import logging
import secrets
import time

from django.db import IntegrityError, transaction
from django.utils import timezone

from .locks import booking_locks
from .models import Booking, BookingKind

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 10

PREFIXES = {
    BookingKind.TRANSPORTATION.value: 'TR',
    BookingKind.LAUNDRY.value: 'LA',
    BookingKind.RESTAURANT.value: 'RE',
}


def candidate_reference(prefix, now=None):
    now = now or timezone.now()
    return f"{prefix}{now:%y%m%d}{secrets.randbelow(10000):04d}"


def fallback_reference(prefix):
    return f"{prefix}{str(int(time.time() * 1000))[-8:]}"


def create_with_reference(model, kind, locks=booking_locks, **fields):
    """Insert ``model`` under a fresh, unique booking reference.

    Each candidate is checked and inserted while its key is locked; the
    unique constraint on ``booking_reference`` catches anything that slips
    past another process.
    """
    prefix = PREFIXES[str(kind)]
    for _ in range(MAX_ATTEMPTS):
        reference = candidate_reference(prefix)
        with locks.hold(f'booking-ref:{reference}'):
            if Booking.objects.filter(booking_reference=reference).exists():
                continue
            try:
                with transaction.atomic():
                    return model.objects.create(booking_reference=reference, kind=kind, **fields)
            except IntegrityError:
                if not Booking.objects.filter(booking_reference=reference).exists():
                    raise
                logger.info('Booking reference %s collided on insert, retrying', reference)

    reference = fallback_reference(prefix)
    logger.warning('Falling back to timestamp booking reference %s', reference)
    with locks.hold(f'booking-ref:{reference}'):
        return model.objects.create(booking_reference=reference, kind=kind, **fields)
