"""
Fulfillment Module - Payment Gateway Webhooks

The gateway calls us when a payment or refund changes state:
    POST /api/v1/payments/webhook/

SECURITY:
Every request carries X-Razorpay-Signature = HMAC-SHA256(raw body,
webhook secret). The signature is checked over the exact bytes received,
before the body is parsed.

EVENTS HANDLED:
    payment.captured → order Processing → Confirmed
    payment.failed   → unpaid order Cancelled, payment_status failed, stock restored
    refund.created   → order refund info filled in
Anything else is acknowledged and ignored so the gateway stops retrying.
"""

import json
import logging

from django.conf import settings
from django.db import transaction
from django.utils import timezone
from rest_framework import status
from rest_framework.decorators import api_view, authentication_classes, permission_classes, throttle_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from . import notifications
from .gateway import compute_signature, signatures_match
from .models import Order, OrderStatusHistory
from .notifications import NotificationDispatcher
from .orders import restock
from .utils import from_paise

logger = logging.getLogger('fulfillment')


def _payment_entity(payload, key):
    return payload.get('payload', {}).get(key, {}).get('entity', {})


def _order_for_payment(entity):
    order = Order.objects.select_for_update().filter(payment_id=entity.get('id', '')).first()
    if order is None and entity.get('order_id'):
        order = Order.objects.select_for_update().filter(gateway_order_id=entity['order_id']).first()
    return order


# ============================================================
# EVENT HANDLERS
# ============================================================

def _handle_payment_captured(payload, notifier):
    entity = _payment_entity(payload, 'payment')
    order = _order_for_payment(entity)
    if order is None:
        return f'No order for payment {entity.get("id")}'

    if order.order_status == Order.STATUS_PROCESSING:
        order.order_status = Order.STATUS_CONFIRMED
        order.payment_status = 'completed'
        order.paid_at = order.paid_at or timezone.now()
        order.save()
        OrderStatusHistory.objects.create(order=order, status=order.order_status, changed_by='webhook')
        notifier.dispatch(
            notifications.ORDER_STATUS_CHANGED, order.user, order=order,
            actor_name='webhook', status=order.order_status,
        )
    return f'Order {order.order_number} confirmed'


def _handle_payment_failed(payload, notifier):
    # One gateway order can carry several attempts; only the failed attempt itself counts
    entity = _payment_entity(payload, 'payment')
    order = Order.objects.select_for_update().filter(payment_id=entity.get('id', '')).first()
    if order is None:
        return f'No order for payment {entity.get("id")}'
    if order.payment_status == 'completed':
        logger.warning(f'payment.failed for {entity.get("id")} ignored: order {order.order_number} is paid')
        return f'Order {order.order_number} already paid'

    if order.order_status in (Order.STATUS_PROCESSING, Order.STATUS_CONFIRMED):
        order.order_status = Order.STATUS_CANCELLED
        order.payment_status = 'failed'
        order.cancelled_at = order.cancelled_at or timezone.now()
        order.save()
        restock(order)
        OrderStatusHistory.objects.create(order=order, status=order.order_status, changed_by='webhook')
        notifier.dispatch(
            notifications.PAYMENT_FAILED, order.user, order=order,
            actor_name='webhook', amount=order.total_price,
        )
    return f'Order {order.order_number} marked failed'


def _handle_refund_created(payload, notifier):
    entity = _payment_entity(payload, 'refund')
    order = Order.objects.select_for_update().filter(payment_id=entity.get('payment_id', '')).first()
    if order is None:
        return f'No order for refunded payment {entity.get("payment_id")}'

    order.refund_id = entity.get('id', '')
    order.refund_amount = from_paise(entity.get('amount', 0))
    order.refund_status = 'processed' if entity.get('status') == 'processed' else 'pending'
    # Razorpay sends empty notes as [] rather than {}
    notes = entity.get('notes')
    order.refund_reason = notes.get('reason', '') if isinstance(notes, dict) else ''
    order.refunded_at = order.refunded_at or timezone.now()
    order.save()
    return f'Refund {order.refund_id} recorded on order {order.order_number}'


EVENT_HANDLERS = {
    'payment.captured': _handle_payment_captured,
    'payment.failed': _handle_payment_failed,
    'refund.created': _handle_refund_created,
}


# ============================================================
# WEBHOOK ENDPOINT
# ============================================================

@api_view(['POST'])
@authentication_classes([])
@permission_classes([AllowAny])
@throttle_classes([])
def razorpay_webhook(request):
    """
    POST /api/v1/payments/webhook/

    Expected payload (abridged):
    {
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"id": "pay_XXXX", "order_id": "order_XXXX", ...}}}
    }
    """
    # Read the raw bytes first; the signature covers exactly these
    raw_body = request.body
    signature = request.headers.get('X-Razorpay-Signature', '')
    secret = settings.RAZORPAY_WEBHOOK_SECRET

    if not secret:
        logger.error('Webhook received but RAZORPAY_WEBHOOK_SECRET is not configured')
        return Response({'error': 'Webhook not configured'}, status=status.HTTP_503_SERVICE_UNAVAILABLE)

    expected = compute_signature(secret, raw_body)
    if not signatures_match(expected, signature):
        logger.warning('Webhook signature verification failed')
        return Response({'error': 'Invalid webhook signature'}, status=status.HTTP_401_UNAUTHORIZED)

    try:
        payload = json.loads(raw_body)
    except ValueError:
        return Response({'error': 'Malformed payload'}, status=status.HTTP_400_BAD_REQUEST)

    event = payload.get('event', '')
    handler = EVENT_HANDLERS.get(event)
    if handler is None:
        logger.info(f'Webhook event ignored: {event}')
        return Response({'status': 'ignored', 'event': event})

    with transaction.atomic():
        message = handler(payload, NotificationDispatcher())

    logger.info(f'Webhook processed: {event} | {message}')
    return Response({'status': 'success', 'event': event, 'message': message})
