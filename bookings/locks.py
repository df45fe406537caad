"""Per-key mutual exclusion.

Two layers guard each key. Threads in this process queue on a
``threading.Lock`` held in a reference-counted registry; entries are evicted
as soon as nobody holds or waits on them. Across processes a lease is taken
in the Django cache with ``cache.add`` and a TTL, so a crashed worker cannot
keep a key locked forever.
"""
import logging
import threading
import time
import uuid
from contextlib import contextmanager

from django.conf import settings
from django.core.cache import caches

from .exceptions import LockTimeoutError

logger = logging.getLogger(__name__)


class _Entry:
    __slots__ = ('lock', 'users')

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class KeyedLock:
    def __init__(self, cache_alias='default', prefix='lock', wait_timeout=None, ttl=None,
                 poll_interval=0.02, max_poll_interval=0.25):
        self.cache_alias = cache_alias
        self.prefix = prefix
        self._wait_timeout = wait_timeout
        self._ttl = ttl
        self.poll_interval = poll_interval
        self.max_poll_interval = max_poll_interval
        self._entries = {}
        self._registry_lock = threading.Lock()

    @property
    def wait_timeout(self):
        if self._wait_timeout is not None:
            return self._wait_timeout
        return settings.BOOKING_LOCK_WAIT_SECONDS

    @property
    def ttl(self):
        if self._ttl is not None:
            return self._ttl
        return settings.BOOKING_LOCK_TTL_SECONDS

    @property
    def cache(self):
        return caches[self.cache_alias]

    def active_keys(self):
        with self._registry_lock:
            return list(self._entries)

    def _checkout(self, key):
        with self._registry_lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1
            return entry

    def _checkin(self, key, entry):
        with self._registry_lock:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def _acquire_lease(self, cache_key, token, deadline):
        interval = self.poll_interval
        while not self.cache.add(cache_key, token, timeout=self.ttl):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            time.sleep(min(interval, remaining))
            interval = min(interval * 2, self.max_poll_interval)
        return True

    def _release_lease(self, cache_key, token):
        if self.cache.get(cache_key) == token:
            self.cache.delete(cache_key)

    @contextmanager
    def hold(self, key, timeout=None):
        timeout = self.wait_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        entry = self._checkout(key)
        try:
            if not entry.lock.acquire(timeout=max(timeout, 0)):
                logger.warning('Timed out waiting for lock %s', key)
                raise LockTimeoutError(key)
            try:
                cache_key = f'{self.prefix}:{key}'
                token = uuid.uuid4().hex
                if not self._acquire_lease(cache_key, token, deadline):
                    logger.warning('Timed out waiting for lease %s', key)
                    raise LockTimeoutError(key)
                try:
                    yield
                finally:
                    self._release_lease(cache_key, token)
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)


booking_locks = KeyedLock()
