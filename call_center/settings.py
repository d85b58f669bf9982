"""
Django settings for the call_center project.

All values are environment driven. The project has no relational database:
collections are JSON documents kept under DATA_DIR.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.getenv('SECRET_KEY', 'dev-insecure-call-center-key')
DEBUG = os.getenv('DEBUG', 'false').lower() == 'true'
ALLOWED_HOSTS = [h.strip() for h in os.getenv('ALLOWED_HOSTS', '*').split(',') if h.strip()]

INSTALLED_APPS = [
    'leads',
    'crm',
]

MIDDLEWARE = [
    'django.middleware.common.CommonMiddleware',
    'call_center.middleware.NoCacheMiddleware',
]

ROOT_URLCONF = 'call_center.urls'
WSGI_APPLICATION = 'call_center.wsgi.application'

DATABASES = {}

USE_TZ = True
TIME_ZONE = 'UTC'

# Uploaded multipart bodies are streamed to disk above this size
FILE_UPLOAD_MAX_MEMORY_SIZE = 5 * 1024 * 1024
DATA_UPLOAD_MAX_MEMORY_SIZE = 50 * 1024 * 1024

##### STORAGE
DATA_DIR = Path(os.getenv('DATA_DIR', BASE_DIR / 'data'))
UPLOAD_DIR = Path(os.getenv('UPLOAD_DIR', BASE_DIR / 'uploads'))
EXPORT_DIR = Path(os.getenv('EXPORT_DIR', BASE_DIR / 'exports'))
UPLOAD_URL_PREFIX = '/uploads/'

##### REDIS / CELERY
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')
CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', REDIS_URL)
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', REDIS_URL)
CELERY_TASK_SERIALIZER = 'json'
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TIMEZONE = TIME_ZONE

# When false, export tasks run inline in the request instead of on a worker
EXPORTS_ASYNC = os.getenv('EXPORTS_ASYNC', 'true').lower() == 'true'

##### CRM
DISPLAY_UTC_OFFSET_HOURS = int(os.getenv('DISPLAY_UTC_OFFSET_HOURS', '2'))
COMMENT_DEDUP_WINDOW_SECONDS = int(os.getenv('COMMENT_DEDUP_WINDOW_SECONDS', '15'))

##### LOGGING
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '%(asctime)s %(levelname)s %(name)s: %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': LOG_LEVEL,
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': os.getenv('DJANGO_LOG_LEVEL', 'WARNING'),
            'propagate': False,
        },
    },
}
