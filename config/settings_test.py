import os
import tempfile

from .settings import *

# File-backed so threaded tests get real, separate connections.
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
        'TEST': {
            'NAME': os.path.join(tempfile.gettempdir(), 'hotel_transport_test.sqlite3'),
        },
    }
}

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'hotel-transport-tests',
    }
}

STORAGES = {
    'default': {'BACKEND': 'django.core.files.storage.FileSystemStorage'},
    'staticfiles': {'BACKEND': 'django.contrib.staticfiles.storage.StaticFilesStorage'},
}

KASHIER_MERCHANT_ID = 'MID-test-1'
KASHIER_API_KEY = 'kashier_fake_key_for_testing'
KASHIER_MODE = 'test'
KASHIER_CURRENCY = 'EGP'
DEFAULT_CURRENCY = 'EGP'

BOOKING_LOCK_WAIT_SECONDS = 2
PAYMENT_RECONCILE_RETRIES = 2
NOTIFICATIONS_WEBHOOK_URL = ''
