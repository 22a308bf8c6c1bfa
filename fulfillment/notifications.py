"""
Fulfillment Module - Notification Dispatcher

Fire-and-forget. Every event writes a Notification row for the customer
and, for customer-initiated events, one per staff user. Email goes out
through a Celery task after the surrounding transaction commits.

A failure here is logged and swallowed; it must never undo the order,
return or refund that triggered it.
"""

import logging

from django.contrib.auth import get_user_model
from django.db import transaction

from .models import Notification
from .tasks import send_notification_email

logger = logging.getLogger('fulfillment')

ORDER_CREATED = 'order_created'
ORDER_STATUS_CHANGED = 'order_status_changed'
PAYMENT_SUCCESS = 'payment_success'
PAYMENT_FAILED = 'payment_failed'
RETURN_REQUESTED = 'return_requested'
RETURN_STATUS_CHANGED = 'return_status_changed'
RETURN_REFUND_PROCESSED = 'return_refund_processed'

# kind → (type, priority, notify staff, customer title)
EVENTS = {
    ORDER_CREATED: ('order', 'medium', True, 'Order placed'),
    ORDER_STATUS_CHANGED: ('order', 'medium', False, 'Order status updated'),
    PAYMENT_SUCCESS: ('payment', 'medium', False, 'Payment received'),
    PAYMENT_FAILED: ('payment', 'high', False, 'Payment failed'),
    RETURN_REQUESTED: ('return', 'high', True, 'Return requested'),
    RETURN_STATUS_CHANGED: ('return', 'medium', False, 'Return status updated'),
    RETURN_REFUND_PROCESSED: ('return', 'high', False, 'Refund processed'),
}


def _message(kind, order=None, return_request=None, amount=None, status=''):
    order_number = order.order_number if order else ''
    return_number = return_request.return_number if return_request else ''

    if kind == ORDER_CREATED:
        return f'Your order {order_number} has been placed. Total: Rs.{amount}'
    if kind == ORDER_STATUS_CHANGED:
        return f'Your order {order_number} is now {status}.'
    if kind == PAYMENT_SUCCESS:
        return f'Payment of Rs.{amount} received for order {order_number}.'
    if kind == PAYMENT_FAILED:
        return f'Payment for order {order_number} failed.'
    if kind == RETURN_REQUESTED:
        return f'Return {return_number} requested for order {order_number}.'
    if kind == RETURN_STATUS_CHANGED:
        return f'Return {return_number} is now {status}.'
    if kind == RETURN_REFUND_PROCESSED:
        return f'Refund of Rs.{amount} processed for return {return_number}.'
    return ''


class NotificationDispatcher:

    def dispatch(self, kind, user, order=None, return_request=None, actor_name='', amount=None, status=''):
        """Returns the number of notification rows written (0 on failure)."""
        try:
            # Own savepoint: a failed insert must not poison the caller's transaction
            with transaction.atomic():
                return self._dispatch(kind, user, order, return_request, actor_name, amount, status)
        except Exception:
            logger.exception(f'Notification {kind} for user {getattr(user, "pk", None)} failed')
            return 0

    def _dispatch(self, kind, user, order, return_request, actor_name, amount, status):
        notification_type, priority, notify_staff, title = EVENTS[kind]
        message = _message(kind, order, return_request, amount, status)

        metadata = {'actor_name': actor_name}
        if order is not None:
            metadata['order_id'] = order.pk
            metadata['order_number'] = order.order_number
        if return_request is not None:
            metadata['return_id'] = return_request.pk
            metadata['return_number'] = return_request.return_number
        if amount is not None:
            metadata['amount'] = str(amount)
        if status:
            metadata['status'] = status

        if return_request is not None:
            action_url = f'/returns/{return_request.pk}'
        elif order is not None:
            action_url = f'/orders/{order.pk}'
        else:
            action_url = ''

        rows = [Notification(
            user=user, title=title, message=message, type=notification_type,
            event=kind, priority=priority, metadata=metadata, action_url=action_url,
        )]

        if notify_staff:
            staff = get_user_model().objects.filter(is_staff=True, is_active=True).exclude(pk=user.pk)
            staff_message = f'{actor_name or user}: {message}'
            rows.extend(
                Notification(
                    user=admin_user, title=title, message=staff_message, type=notification_type,
                    event=kind, priority=priority, metadata=metadata, action_url=action_url,
                )
                for admin_user in staff
            )

        Notification.objects.bulk_create(rows)

        user_id = user.pk
        transaction.on_commit(lambda: _queue_email(user_id, title, message))

        logger.info(f'Notification {kind} dispatched to {len(rows)} user(s)')
        return len(rows)


def _queue_email(user_id, subject, message):
    try:
        send_notification_email.delay(user_id, subject, message)
    except Exception:
        logger.exception(f'Could not queue notification email for user {user_id}')
