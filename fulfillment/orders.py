"""
Fulfillment Module - Order Status Updates (admin)
"""

import logging

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from . import notifications
from .exceptions import AuthorizationFailed, Conflict, NotFound, ValidationFailed
from .models import Order, OrderStatusHistory, Product
from .notifications import NotificationDispatcher

logger = logging.getLogger('fulfillment')

CANCELLABLE_STATUSES = (Order.STATUS_PROCESSING, Order.STATUS_CONFIRMED)

# No admin status update leaves these
FINAL_STATUSES = (Order.STATUS_DELIVERED, Order.STATUS_RETURNED, Order.STATUS_CANCELLED)

TIMESTAMP_FIELDS = {
    Order.STATUS_SHIPPED: 'shipped_at',
    Order.STATUS_DELIVERED: 'delivered_at',
    Order.STATUS_CANCELLED: 'cancelled_at',
}


def restock(order):
    """Put every line of a cancelled order back on the shelf."""
    for item in order.items.all():
        Product.objects.filter(pk=item.product_id).update(stock=F('stock') + item.quantity)


def update_order_status(order_id, new_status, actor, tracking_number='', notifier=None, now=None):
    """
    Move an order to `new_status`. Shipped/delivered/cancelled timestamps
    are stamped once. Delivered, returned and cancelled orders are final
    here; after delivery the order only changes through the return
    lifecycle. Cancelling restocks the order's lines.
    """
    now = now or timezone.now()
    notifier = notifier or NotificationDispatcher()

    if new_status not in dict(Order.STATUS_CHOICES):
        raise ValidationFailed(f'Invalid order status: {new_status}')

    with transaction.atomic():
        order = Order.objects.select_for_update().filter(pk=order_id).first()
        if order is None:
            raise NotFound('Order not found')

        old_status = order.order_status
        if old_status in FINAL_STATUSES:
            raise Conflict(f'Order is already {old_status.lower()} and cannot be changed')
        if old_status == new_status:
            raise Conflict(f'Order is already {new_status}')

        order.order_status = new_status
        field = TIMESTAMP_FIELDS.get(new_status)
        if field and getattr(order, field) is None:
            setattr(order, field, now)
        if tracking_number:
            order.tracking_number = tracking_number
        # COD is settled at the door
        if new_status == Order.STATUS_DELIVERED and order.is_cod and order.payment_status == 'pending':
            order.payment_status = 'completed'
            order.paid_at = order.paid_at or now
        order.save()
        if new_status == Order.STATUS_CANCELLED:
            restock(order)

        changed_by = f'admin:{actor.get_username()}' if actor is not None else 'system'
        OrderStatusHistory.objects.create(order=order, status=new_status, changed_by=changed_by)

        notifier.dispatch(
            notifications.ORDER_STATUS_CHANGED, order.user, order=order,
            actor_name=changed_by, status=new_status,
        )

    logger.info(f'Order {order.order_number}: {old_status} → {new_status} by {changed_by}')
    return order


def cancel_order(user, order_id, notifier=None, now=None):
    """Customer cancels an order that has not left the warehouse. Stock goes back."""
    now = now or timezone.now()
    notifier = notifier or NotificationDispatcher()

    with transaction.atomic():
        order = Order.objects.select_for_update().filter(pk=order_id).first()
        if order is None:
            raise NotFound('Order not found')
        if order.user_id != user.pk:
            raise AuthorizationFailed('You are not authorized to cancel this order')
        if order.order_status not in CANCELLABLE_STATUSES:
            raise Conflict('Order cannot be cancelled at this stage')

        old_status = order.order_status
        order.order_status = Order.STATUS_CANCELLED
        if order.cancelled_at is None:
            order.cancelled_at = now
        order.save()

        restock(order)

        OrderStatusHistory.objects.create(order=order, status=Order.STATUS_CANCELLED, changed_by='customer')
        notifier.dispatch(
            notifications.ORDER_STATUS_CHANGED, user, order=order,
            actor_name=user.get_username(), status=Order.STATUS_CANCELLED,
        )

    logger.info(f'Order {order.order_number}: {old_status} → Cancelled by customer')
    return order
