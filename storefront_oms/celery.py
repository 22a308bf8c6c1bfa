"""
Celery Configuration for the Storefront Fulfillment backend

HOW IT WORKS:
1. An order is placed or a return changes status → API responds immediately
2. The notification email task is pushed to the Redis queue after commit
3. A Celery worker picks it up and sends the email in background
"""

import os
from celery import Celery

# Set the default Django settings module
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'storefront_oms.settings')

app = Celery('storefront_oms')

# Load config from Django settings (all settings starting with CELERY_)
app.config_from_object('django.conf:settings', namespace='CELERY')

# Auto-discover tasks.py in all installed apps
app.autodiscover_tasks()
