# core/settings.py
import os
from pathlib import Path

import structlog

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'dev-insecure-key-change-me')
DEBUG = os.environ.get('DJANGO_DEBUG', '1') == '1'
ALLOWED_HOSTS = [h for h in os.environ.get('DJANGO_ALLOWED_HOSTS', '*').split(',') if h]

INSTALLED_APPS = [
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'rest_framework',
    'cells',
]

MIDDLEWARE = [
    'django.middleware.common.CommonMiddleware',
]

ROOT_URLCONF = 'core.urls'

DATABASES = {
    'default': {
        'ENGINE': os.environ.get('DATABASE_ENGINE', 'django.db.backends.sqlite3'),
        'NAME': os.environ.get('DATABASE_NAME', str(BASE_DIR / 'db.sqlite3')),
        'USER': os.environ.get('DATABASE_USER', ''),
        'PASSWORD': os.environ.get('DATABASE_PASSWORD', ''),
        'HOST': os.environ.get('DATABASE_HOST', ''),
        'PORT': os.environ.get('DATABASE_PORT', ''),
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'
USE_TZ = True
TIME_ZONE = 'UTC'

REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework.authentication.BasicAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAuthenticated',
    ],
}

# ── PLACE SYNC ─────────────────────────────────────────────────────
PLACES_SYNC = {
    'GOOGLE_PLACES_API_KEY': os.environ.get('GOOGLE_PLACES_API_KEY', ''),
    'H3_LEVEL': int(os.environ.get('PLACES_SYNC_H3_LEVEL', 10)),
    'STALE_AFTER_HOURS': float(os.environ.get('PLACES_SYNC_STALE_AFTER_HOURS', 12)),
    'QUERY_RADIUS_M': int(os.environ.get('PLACES_SYNC_QUERY_RADIUS_M', 1000)),
    'PAGE_CAP': int(os.environ.get('PLACES_SYNC_PAGE_CAP', 20)),
    'WORKER_CONCURRENCY': int(os.environ.get('PLACES_SYNC_WORKER_CONCURRENCY', 5)),
    'MAX_ATTEMPTS': int(os.environ.get('PLACES_SYNC_MAX_ATTEMPTS', 3)),
    'BACKOFF_SECONDS': float(os.environ.get('PLACES_SYNC_BACKOFF_SECONDS', 1.0)),
    'POLL_INTERVAL': float(os.environ.get('PLACES_SYNC_POLL_INTERVAL', 0.5)),
    'HTTP_TIMEOUT': float(os.environ.get('PLACES_SYNC_HTTP_TIMEOUT', 10)),
}

# ── LOGGING ────────────────────────────────────────────────────────
LOG_FORMAT = os.environ.get('LOG_FORMAT', 'console' if DEBUG else 'json')

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt='iso'),
        *([structlog.dev.ConsoleRenderer()] if LOG_FORMAT == 'console'
          else [structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer()]),
    ],
    cache_logger_on_first_use=True,
)
