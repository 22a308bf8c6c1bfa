"""
Fulfillment Module - Background Tasks

Queued with transaction.on_commit so a rolled-back request never emails.
"""

import logging

from celery import shared_task
from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.mail import send_mail

logger = logging.getLogger('fulfillment')


@shared_task(bind=True, max_retries=3, default_retry_delay=60)
def send_notification_email(self, user_id, subject, message):
    """Email a notification to a user. Retries on SMTP errors."""
    user = get_user_model().objects.filter(pk=user_id).first()
    if user is None or not user.email:
        logger.info(f'Skipping notification email: user {user_id} has no email')
        return False

    try:
        send_mail(subject, message, settings.DEFAULT_FROM_EMAIL, [user.email])
    except OSError as exc:
        logger.warning(f'Notification email to {user.email} failed, retrying: {exc}')
        raise self.retry(exc=exc)

    logger.info(f'Notification email sent to {user.email}: {subject}')
    return True
