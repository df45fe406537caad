import os
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv
import dj_database_url

from .caches import cache_settings

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / '.env')

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'django-insecure-dev-key-change-in-production')

DEBUG = os.environ.get('DEBUG', 'True') == 'True'

ALLOWED_HOSTS = os.environ.get('ALLOWED_HOSTS', '*').split(',')

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'corsheaders',
    'rest_framework',
    'bookings',
    'payments',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'whitenoise.middleware.WhiteNoiseMiddleware',
    'corsheaders.middleware.CorsMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'config.wsgi.application'

DATABASES = {
    'default': dj_database_url.config(
        default=f"postgresql://{os.environ.get('PGUSER', 'postgres')}:{os.environ.get('PGPASSWORD', 'postgres')}@{os.environ.get('PGHOST', 'localhost')}:{os.environ.get('PGPORT', '5432')}/{os.environ.get('PGDATABASE', 'hotel_transport')}"
    )
}

# Locks and pay-first checkout payloads live here; a shared backend is
# required once DEBUG is off.
CACHES = cache_settings(os.environ, DEBUG)

AUTH_PASSWORD_VALIDATORS = [
    {'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator'},
    {'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator'},
    {'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator'},
    {'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator'},
]

LANGUAGE_CODE = 'en-gb'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'
STORAGES = {
    'default': {'BACKEND': 'django.core.files.storage.FileSystemStorage'},
    'staticfiles': {'BACKEND': 'whitenoise.storage.CompressedManifestStaticFilesStorage'},
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

REST_FRAMEWORK = {
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
    'DEFAULT_PARSER_CLASSES': [
        'rest_framework.parsers.JSONParser',
    ],
}

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'bookings': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'payments': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
    },
    'root': {'handlers': ['console'], 'level': 'WARNING'},
}

KASHIER_BASE_URL = os.environ.get('KASHIER_BASE_URL', 'https://checkout.kashier.io')
KASHIER_MERCHANT_ID = os.environ.get('KASHIER_MERCHANT_ID', '')
KASHIER_API_KEY = os.environ.get('KASHIER_API_KEY', '')
KASHIER_MODE = os.environ.get('KASHIER_MODE', 'test')
KASHIER_CURRENCY = os.environ.get('KASHIER_CURRENCY', 'EGP')
DEFAULT_CURRENCY = os.environ.get('DEFAULT_CURRENCY', KASHIER_CURRENCY)

FRONTEND_URL = os.environ.get('FRONTEND_URL', 'http://localhost:3000')
BACKEND_URL = os.environ.get('BACKEND_URL', 'http://localhost:8000')

DEFAULT_MARKUP_PERCENTAGE = Decimal(os.environ.get('DEFAULT_MARKUP_PERCENTAGE', '15'))
QUOTE_EXPIRATION_HOURS = int(os.environ.get('QUOTE_EXPIRATION_HOURS', '24'))
SLA_TARGET_RESPONSE_MINUTES = int(os.environ.get('SLA_TARGET_RESPONSE_MINUTES', '30'))
SLA_TARGET_COMPLETION_MINUTES = int(os.environ.get('SLA_TARGET_COMPLETION_MINUTES', '240'))

BOOKING_LOCK_WAIT_SECONDS = float(os.environ.get('BOOKING_LOCK_WAIT_SECONDS', '10'))
BOOKING_LOCK_TTL_SECONDS = int(os.environ.get('BOOKING_LOCK_TTL_SECONDS', '30'))
PAY_FIRST_TTL_SECONDS = int(os.environ.get('PAY_FIRST_TTL_SECONDS', '3600'))
PAYMENT_RECONCILE_RETRIES = int(os.environ.get('PAYMENT_RECONCILE_RETRIES', '3'))

NOTIFICATIONS_WEBHOOK_URL = os.environ.get('NOTIFICATIONS_WEBHOOK_URL', '')
NOTIFICATIONS_TIMEOUT_SECONDS = float(os.environ.get('NOTIFICATIONS_TIMEOUT_SECONDS', '5'))

CSRF_TRUSTED_ORIGINS = os.environ.get('CSRF_TRUSTED_ORIGINS', 'http://localhost:3000').split(',')

CORS_ALLOWED_ORIGINS = os.environ.get('CORS_ALLOWED_ORIGINS', 'http://localhost:3000').split(',')
