"""
Celery app initialization for the call_center project.

Imported by call_center/__init__.py so the worker and the web process share
one app. Tasks are discovered from every installed Django app.
"""

import os
from celery import Celery

# Set default Django settings
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'call_center.settings')

app = Celery('call_center')

# Load configuration from Django settings with CELERY namespace
app.config_from_object('django.conf:settings', namespace='CELERY')

# Auto-discover tasks from all registered Django apps
app.autodiscover_tasks()

# the web process enqueues exports before a worker may be up
app.conf.broker_connection_retry_on_startup = True
