from django.core.exceptions import ImproperlyConfigured

LOCMEM_BACKEND = 'django.core.cache.backends.locmem.LocMemCache'


def cache_settings(environ, debug):
    """Build ``CACHES`` from the environment.

    Booking locks and pay-first checkout payloads live in the default cache,
    which every worker process must share once ``DEBUG`` is off.
    """
    backend = environ.get('CACHE_BACKEND', '')
    if not debug and backend in ('', LOCMEM_BACKEND):
        raise ImproperlyConfigured(
            'CACHE_BACKEND must name a cache shared by all workers (redis, memcached or database) '
            'when DEBUG is off'
        )
    return {
        'default': {
            'BACKEND': backend or LOCMEM_BACKEND,
            'LOCATION': environ.get('CACHE_LOCATION', 'hotel-transport'),
        }
    }
