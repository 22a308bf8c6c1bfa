"""
Fulfillment Module - Return Lifecycle

STATUS FLOW:
    pending → approved → return_shipped → return_received → refund_processed → completed
       │         │
       │         └→ rejected
       ├→ rejected
       └→ cancelled (customer only)

Admins may skip ahead (pending → return_received) but never backwards.
return_received → refund_processed happens only through one of the
refund operations, never through a plain status update.
"""

import logging
import uuid

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from . import notifications
from .exceptions import AuthorizationFailed, Conflict, NotFound, ValidationFailed
from .gateway import get_payment_gateway
from .models import Order, ReturnItem, ReturnRequest, ReturnStatusHistory
from .notifications import NotificationDispatcher
from .utils import to_money

logger = logging.getLogger('fulfillment')

R = ReturnRequest

TRANSITIONS = {
    R.STATUS_PENDING: {R.STATUS_APPROVED, R.STATUS_REJECTED, R.STATUS_RETURN_SHIPPED, R.STATUS_RETURN_RECEIVED},
    R.STATUS_APPROVED: {R.STATUS_RETURN_SHIPPED, R.STATUS_RETURN_RECEIVED, R.STATUS_REJECTED},
    R.STATUS_RETURN_SHIPPED: {R.STATUS_RETURN_RECEIVED},
    R.STATUS_RETURN_RECEIVED: set(),
    R.STATUS_REFUND_PROCESSED: {R.STATUS_COMPLETED},
    R.STATUS_REJECTED: set(),
    R.STATUS_CANCELLED: set(),
    R.STATUS_COMPLETED: set(),
}

TIMESTAMP_FIELDS = {
    R.STATUS_APPROVED: 'approved_at',
    R.STATUS_REJECTED: 'rejected_at',
    R.STATUS_RETURN_SHIPPED: 'return_shipped_at',
    R.STATUS_RETURN_RECEIVED: 'return_received_at',
    R.STATUS_REFUND_PROCESSED: 'refund_processed_at',
    R.STATUS_COMPLETED: 'completed_at',
    R.STATUS_CANCELLED: 'cancelled_at',
}

COD_REFUND_METHODS = ('bank_transfer', 'upi', 'cash')

# method → proof fields that must be present
COD_REFUND_PROOF = {
    'bank_transfer': ('bank_transaction_id', 'bank_name'),
    'upi': ('upi_id', 'upi_transaction_id'),
    'cash': (),
}


def can_transition(from_status, to_status):
    return to_status in TRANSITIONS.get(from_status, set())


def _actor_label(user):
    if user is None:
        return 'system'
    if user.is_staff:
        return f'admin:{user.get_username()}'
    return 'customer'


def _stamp(return_request, status, now):
    """Set the status timestamp once. Never overwrites an earlier stamp."""
    field = TIMESTAMP_FIELDS.get(status)
    if field and getattr(return_request, field) is None:
        setattr(return_request, field, now)


class ReturnLifecycle:

    def __init__(self, gateway=None, notifier=None):
        self._gateway = gateway
        self.notifier = notifier or NotificationDispatcher()

    @property
    def gateway(self):
        # Built on first refund; most lifecycle calls never touch the gateway
        if self._gateway is None:
            self._gateway = get_payment_gateway()
        return self._gateway

    # ============================================================
    # ELIGIBILITY
    # ============================================================

    def check_eligibility(self, order, now=None):
        """
        Can this order be returned right now? Returns a dict with
        'eligible' and either 'reason' or the window details.
        """
        now = now or timezone.now()
        error = self._ineligibility(order, now)
        if error is not None:
            return {'eligible': False, 'reason': error.message}

        window_days = settings.FULFILLMENT['RETURN_WINDOW_DAYS']
        return {
            'eligible': True,
            'return_window_days': window_days,
            'days_remaining': window_days - (now - order.delivered_at).days,
            'order_number': order.order_number,
        }

    def _ineligibility(self, order, now):
        """The error that blocks a return on this order, or None."""
        window_days = settings.FULFILLMENT['RETURN_WINDOW_DAYS']

        if order.returns.exclude(status__in=R.INACTIVE_STATUSES).exists():
            return Conflict('An active return already exists for this order')
        if order.order_status != Order.STATUS_DELIVERED:
            return ValidationFailed(f'Order is not delivered yet. Current status: {order.order_status}')
        if order.delivered_at is None:
            return ValidationFailed('Order has no delivery date')

        # Whole days since delivery; day 7 of a 7 day window is still open
        if (now - order.delivered_at).days > window_days:
            return ValidationFailed(f'Return window of {window_days} days has expired')
        return None

    # ============================================================
    # CUSTOMER OPERATIONS
    # ============================================================

    def create(self, user, order_id, items, return_reason, return_address=None, now=None):
        """
        Open a return for a delivered order. The order row stays locked
        while we check for an active return and insert the new one.
        """
        now = now or timezone.now()
        if not items:
            raise ValidationFailed('Select at least one item to return')
        if not (return_reason or '').strip():
            raise ValidationFailed('Return reason is required')

        with transaction.atomic():
            order = Order.objects.select_for_update().filter(pk=order_id).first()
            if order is None:
                raise NotFound('Order not found')
            if order.user_id != user.pk:
                raise AuthorizationFailed('Not authorized to return this order')

            error = self._ineligibility(order, now)
            if error is not None:
                raise error

            lines = self._resolve_items(order, items)
            address = self._return_address(order, return_address)

            return_request = ReturnRequest.objects.create(
                order=order,
                user=user,
                status=R.STATUS_PENDING,
                return_reason=return_reason,
                return_name=address['name'],
                return_address=address['address'],
                return_city=address['city'],
                return_state=address['state'],
                return_pincode=address['pincode'],
                return_phone=address['phone'],
                return_window=settings.FULFILLMENT['RETURN_WINDOW_DAYS'],
                requested_at=now,
            )
            ReturnItem.objects.bulk_create([
                ReturnItem(return_request=return_request, **line) for line in lines
            ])

            order.order_status = Order.STATUS_RETURNED
            order.save(update_fields=['order_status', 'updated_at'])

            ReturnStatusHistory.objects.create(
                return_request=return_request,
                from_status='',
                to_status=R.STATUS_PENDING,
                changed_by='customer',
                comment=f'Return requested. Reason: {return_reason}',
            )

            self.notifier.dispatch(
                notifications.RETURN_REQUESTED, user, order=order,
                return_request=return_request, actor_name=user.get_username(),
                amount=return_request.items_value,
            )

        logger.info(f'Return created: {return_request.return_number} for order {order.order_number}')
        return return_request

    def cancel(self, user, return_id, now=None):
        """Customer withdraws a return. Only while it is still pending."""
        now = now or timezone.now()
        with transaction.atomic():
            return_request = self._locked(return_id)
            if return_request.user_id != user.pk:
                raise AuthorizationFailed('Not authorized to cancel this return')
            if return_request.status != R.STATUS_PENDING:
                raise Conflict(
                    f'Cannot cancel return in "{return_request.status}" status. '
                    f'Cancellation allowed only while pending'
                )

            self._move(return_request, R.STATUS_CANCELLED, 'customer', 'Cancelled by customer', now)
            self._restore_order(return_request.order)

        logger.info(f'Return {return_request.return_number} cancelled by customer')
        return return_request

    # ============================================================
    # ADMIN OPERATIONS
    # ============================================================

    def update_status(self, return_id, new_status, actor, admin_notes='', tracking_number='',
                      return_tracking_number='', now=None):
        now = now or timezone.now()
        valid_statuses = dict(R.STATUS_CHOICES)
        if new_status not in valid_statuses:
            raise ValidationFailed(f'Invalid status: {new_status}')
        if new_status == R.STATUS_REFUND_PROCESSED:
            raise Conflict('Refunds must be recorded through a refund operation')
        if new_status == R.STATUS_CANCELLED:
            raise Conflict('Only the customer can cancel a return')

        with transaction.atomic():
            return_request = self._locked(return_id)
            old_status = return_request.status
            if not can_transition(old_status, new_status):
                raise Conflict(f'Cannot move return from "{old_status}" to "{new_status}"')

            if admin_notes:
                return_request.admin_notes = admin_notes
            if tracking_number:
                return_request.tracking_number = tracking_number
            if return_tracking_number:
                return_request.return_tracking_number = return_tracking_number

            self._move(return_request, new_status, _actor_label(actor), admin_notes, now)
            if new_status == R.STATUS_REJECTED:
                self._restore_order(return_request.order)

        logger.info(f'Return {return_request.return_number}: {old_status} → {new_status}')
        return return_request

    def process_online_refund(self, return_id, actor, amount=None, reason='', now=None):
        """
        Refund a received return through the gateway. The return row stays
        locked across the gateway call; if the call fails nothing changes.
        """
        now = now or timezone.now()
        with transaction.atomic():
            return_request = self._locked(return_id)
            order = return_request.order

            if return_request.refund_id:
                raise Conflict('Refund already processed for this return')
            if order.is_cod:
                raise ValidationFailed('COD orders are refunded manually')
            if return_request.status != R.STATUS_RETURN_RECEIVED:
                raise Conflict('Refund allowed only after the return is received')

            refund_amount = self._refund_amount(return_request, amount)
            refund = self.gateway.refund(
                order.payment_id,
                refund_amount,
                notes={'return_number': return_request.return_number, 'reason': reason},
            )

            return_request.refund_id = refund['id']
            return_request.refund_amount = refund.get('amount') or refund_amount
            return_request.refund_status = 'processed'
            return_request.refund_reason = reason
            return_request.refunded_at = now
            return_request.refund_method = 'razorpay'
            self._move(
                return_request, R.STATUS_REFUND_PROCESSED, _actor_label(actor),
                f'Gateway refund {refund["id"]} of Rs.{return_request.refund_amount}', now,
            )
            self._mark_order_refunded(order)

        logger.info(
            f'Refund {return_request.refund_id} of Rs.{return_request.refund_amount} '
            f'processed for return {return_request.return_number}'
        )
        return return_request

    def process_cod_refund(self, return_id, actor, refund_method, amount=None, reason='', proof=None, now=None):
        """
        Record a refund paid outside the gateway (bank transfer, UPI or cash).
        The proof is taken as attested by the admin; nothing is called.
        """
        now = now or timezone.now()
        proof = proof or {}
        if refund_method not in COD_REFUND_METHODS:
            raise ValidationFailed(f'Refund method must be one of: {", ".join(COD_REFUND_METHODS)}')
        missing = [field for field in COD_REFUND_PROOF[refund_method] if not proof.get(field)]
        if missing:
            raise ValidationFailed(f'Missing refund details: {", ".join(missing)}')

        with transaction.atomic():
            return_request = self._locked(return_id)
            order = return_request.order

            if return_request.refund_id:
                raise Conflict('Refund already processed for this return')
            if not order.is_cod:
                raise ValidationFailed('Online payments are refunded through the payment gateway')
            if return_request.status != R.STATUS_RETURN_RECEIVED:
                raise Conflict('Refund allowed only after the return is received')

            return_request.refund_id = f'CODREF-{uuid.uuid4().hex[:10].upper()}'
            return_request.refund_amount = self._refund_amount(return_request, amount)
            return_request.refund_status = 'processed'
            return_request.refund_reason = reason
            return_request.refunded_at = now
            return_request.refund_method = refund_method

            if refund_method == 'bank_transfer':
                return_request.bank_transaction_id = proof['bank_transaction_id']
                return_request.bank_name = proof['bank_name']
                return_request.bank_account_number = proof.get('bank_account_number', '')
                return_request.bank_ifsc_code = proof.get('bank_ifsc_code', '')
                return_request.bank_reference_number = proof.get('bank_reference_number', '')
                return_request.bank_transfer_date = proof.get('bank_transfer_date') or now
            elif refund_method == 'upi':
                return_request.upi_id = proof['upi_id']
                return_request.upi_transaction_id = proof['upi_transaction_id']
                return_request.upi_transfer_date = proof.get('upi_transfer_date') or now

            self._move(
                return_request, R.STATUS_REFUND_PROCESSED, _actor_label(actor),
                f'COD refund via {refund_method} of Rs.{return_request.refund_amount}', now,
            )
            self._mark_order_refunded(order)

        logger.info(
            f'COD refund {return_request.refund_id} ({refund_method}) of Rs.{return_request.refund_amount} '
            f'recorded for return {return_request.return_number}'
        )
        return return_request

    # ============================================================
    # HELPERS
    # ============================================================

    def _locked(self, return_id):
        return_request = ReturnRequest.objects.select_for_update().select_related('order', 'user').filter(
            pk=return_id,
        ).first()
        if return_request is None:
            raise NotFound('Return request not found')
        return return_request

    def _move(self, return_request, new_status, changed_by, comment, now):
        old_status = return_request.status
        return_request.status = new_status
        _stamp(return_request, new_status, now)
        return_request.save()

        ReturnStatusHistory.objects.create(
            return_request=return_request,
            from_status=old_status,
            to_status=new_status,
            changed_by=changed_by,
            comment=comment or '',
        )

        if new_status == R.STATUS_REFUND_PROCESSED:
            kind, amount = notifications.RETURN_REFUND_PROCESSED, return_request.refund_amount
        else:
            kind, amount = notifications.RETURN_STATUS_CHANGED, None
        self.notifier.dispatch(
            kind, return_request.user, order=return_request.order,
            return_request=return_request, actor_name=changed_by,
            amount=amount, status=return_request.get_status_display(),
        )

    def _refund_amount(self, return_request, amount):
        if amount in (None, ''):
            return to_money(return_request.order.total_price)
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationFailed('Refund amount must be greater than zero')
        if amount > return_request.items_value:
            logger.warning(
                f'Refund Rs.{amount} for return {return_request.return_number} exceeds '
                f'returned items value Rs.{return_request.items_value}'
            )
        return amount

    def _resolve_items(self, order, items):
        ordered = {item.product_id: item for item in order.items.all()}
        valid_reasons = dict(ReturnItem.REASON_CHOICES)
        lines = []
        seen = set()

        for item in items:
            product_id = getattr(item.get('product'), 'pk', item.get('product'))
            order_item = ordered.get(product_id)
            if order_item is None:
                raise ValidationFailed(f'Product {product_id} is not part of this order')
            if product_id in seen:
                raise ValidationFailed(f'Product {product_id} is listed more than once')
            seen.add(product_id)

            try:
                quantity = int(item.get('quantity') or 0)
            except (TypeError, ValueError):
                raise ValidationFailed(f'Invalid quantity for {order_item.name}')
            if quantity <= 0 or quantity > order_item.quantity:
                raise ValidationFailed(
                    f'Return quantity for {order_item.name} must be between 1 and {order_item.quantity}'
                )

            reason = item.get('reason') or 'other'
            if reason not in valid_reasons:
                raise ValidationFailed(f'Invalid return reason: {reason}')

            lines.append({
                'product_id': product_id,
                'name': order_item.name,
                'quantity': quantity,
                'price': order_item.price,
                'image': order_item.image,
                'reason': reason,
                'description': item.get('description', ''),
            })
        return lines

    def _return_address(self, order, return_address):
        address = {
            'name': order.shipping_name,
            'address': order.shipping_address,
            'city': order.shipping_city,
            'state': order.shipping_state,
            'pincode': order.shipping_pincode,
            'phone': order.shipping_phone,
        }
        for key, value in (return_address or {}).items():
            if key in address and value:
                address[key] = value
        return address

    def _restore_order(self, order):
        if order.order_status == Order.STATUS_RETURNED:
            order.order_status = Order.STATUS_DELIVERED
            order.save(update_fields=['order_status', 'updated_at'])

    def _mark_order_refunded(self, order):
        order.payment_status = 'refunded'
        order.save(update_fields=['payment_status', 'updated_at'])
