import secrets
import time

from django.conf import settings
from django.core.cache import caches

ALPHABET = '0123456789abcdefghijklmnopqrstuvwxyz'


def temporary_reference(kind):
    suffix = ''.join(secrets.choice(ALPHABET) for _ in range(9))
    return f"TEMP_{kind.upper()}_{int(time.time() * 1000)}_{suffix}"


class PendingCheckoutStore:
    """Order payloads for pay-first checkouts, kept until the gateway reports back.

    Entries expire after ``PAY_FIRST_TTL_SECONDS``; an abandoned checkout
    simply ages out of the cache.
    """

    def __init__(self, cache_alias='default', prefix='pay-first', ttl=None):
        self.cache_alias = cache_alias
        self.prefix = prefix
        self._ttl = ttl

    @property
    def cache(self):
        return caches[self.cache_alias]

    @property
    def ttl(self):
        return self._ttl if self._ttl is not None else settings.PAY_FIRST_TTL_SECONDS

    def _key(self, reference):
        return f'{self.prefix}:{reference}'

    def put(self, reference, payload):
        self.cache.set(self._key(reference), payload, timeout=self.ttl)

    def get(self, reference):
        return self.cache.get(self._key(reference))

    def discard(self, reference):
        self.cache.delete(self._key(reference))


pending_checkouts = PendingCheckoutStore()
