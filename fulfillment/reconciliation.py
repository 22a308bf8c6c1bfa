"""
Fulfillment Module - Payment Reconciler

Turns a confirmed payment (or a COD placement) into a durable order.

PIPELINE:
    verify signature → confirm payment captured → validate & price
    → materialize order → adjust stock → clear cart      (critical)
    → redeem coupon → build invoice → notify             (advisory)

Critical steps share one DB transaction; any failure rolls all of them
back and the caller gets an error. Advisory steps each run in their own
savepoint; a failure is logged and recorded in the result, and the
caller still gets the order.
"""

import logging
import uuid
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from . import coupons, notifications
from .exceptions import AuthorizationFailed, Conflict, ValidationFailed
from .gateway import get_payment_gateway
from .invoicing import build_invoice, order_tax
from .models import CartItem, Order, OrderItem, OrderStatusHistory, Product
from .notifications import NotificationDispatcher
from .shipping import ShippingCostEstimator, is_valid_pincode
from .utils import to_money

logger = logging.getLogger('fulfillment')

CRITICAL = 'critical'
ADVISORY = 'advisory'

REQUIRED_ITEM_FIELDS = ('product', 'name', 'quantity', 'price')
REQUIRED_SHIPPING_FIELDS = ('name', 'phone', 'address', 'city', 'state', 'pincode')


class PipelineResult:
    """The order plus what happened at each step."""

    def __init__(self, order, created, steps=None):
        self.order = order
        self.created = created
        self.steps = steps or []

    @property
    def failed_steps(self):
        return [step['step'] for step in self.steps if not step['ok']]


# ============================================================
# INPUT VALIDATION
# ============================================================

def validate_order_data(order_data):
    """
    Check and normalize the checkout payload. Raises ValidationFailed
    before anything is written.
    """
    raw_items = order_data.get('items') or []
    if not raw_items:
        raise ValidationFailed('No order items')

    items = []
    for index, item in enumerate(raw_items, start=1):
        missing = [f for f in REQUIRED_ITEM_FIELDS if item.get(f) in (None, '')]
        if missing:
            raise ValidationFailed(f'Item {index} is missing: {", ".join(missing)}')
        try:
            quantity = int(item['quantity'])
            price = to_money(item['price'])
        except (TypeError, ValueError, InvalidOperation):
            raise ValidationFailed(f'Item {index} has an invalid quantity or price')
        if quantity <= 0 or price < 0:
            raise ValidationFailed(f'Item {index} has an invalid quantity or price')
        items.append({
            'product': getattr(item['product'], 'pk', item['product']),
            'name': item['name'],
            'quantity': quantity,
            'price': price,
            'image': item.get('image') or '',
        })

    product_ids = {item['product'] for item in items}
    if Product.objects.filter(pk__in=product_ids).count() != len(product_ids):
        raise ValidationFailed('One or more products do not exist')

    shipping_info = order_data.get('shipping_info') or {}
    missing = [f for f in REQUIRED_SHIPPING_FIELDS if not shipping_info.get(f)]
    if missing:
        raise ValidationFailed(f'Shipping address is missing: {", ".join(missing)}')
    if not is_valid_pincode(shipping_info['pincode']):
        raise ValidationFailed('Invalid pincode')

    return items, shipping_info


class PaymentReconciler:

    def __init__(self, gateway=None, notifier=None, shipping_estimator=None):
        self.gateway = gateway or get_payment_gateway()
        self.notifier = notifier or NotificationDispatcher()
        self.shipping_estimator = shipping_estimator

    # ============================================================
    # ENTRY POINTS
    # ============================================================

    def create_gateway_order(self, amount, receipt=''):
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationFailed('Amount must be greater than zero')
        receipt = receipt or f'rcpt_{uuid.uuid4().hex[:12]}'
        gateway_order = self.gateway.create_order(amount, settings.FULFILLMENT['CURRENCY'], receipt)
        logger.info(f'Gateway order {gateway_order["id"]} created for Rs.{amount}')
        return gateway_order

    def confirm_online_payment(self, user, gateway_order_id, payment_id, signature, order_data):
        """
        Verify a gateway payment and record the order for it. Safe to
        retry: a payment that already has an order returns that order.
        """
        self._check_user(user)

        if not self.gateway.verify_signature(gateway_order_id, payment_id, signature):
            logger.warning(f'Payment signature mismatch: order {gateway_order_id}, payment {payment_id}')
            raise ValidationFailed('Payment verification failed')

        existing = self._existing_order(user, payment_id)
        if existing:
            return PipelineResult(existing, created=False)

        items, shipping_info = validate_order_data(order_data)

        payment = self.gateway.fetch_payment(payment_id)
        if payment['status'] != 'captured':
            logger.warning(f'Payment {payment_id} is {payment["status"]}, not captured')
            raise ValidationFailed(f'Payment is not captured (status: {payment["status"]})')

        pricing = self.price_order(user, items, shipping_info, order_data)
        if payment['amount'] < pricing['total_price']:
            logger.warning(
                f'Payment {payment_id} underpaid: captured Rs.{payment["amount"]}, '
                f'order total Rs.{pricing["total_price"]}'
            )
            raise Conflict(
                f'Captured amount Rs.{payment["amount"]} is less than order total Rs.{pricing["total_price"]}'
            )
        if payment['amount'] > pricing['total_price']:
            logger.warning(
                f'Payment {payment_id} amount Rs.{payment["amount"]} differs from '
                f'order total Rs.{pricing["total_price"]}'
            )

        context = {
            'user': user,
            'items': items,
            'shipping_info': shipping_info,
            'billing_info': order_data.get('billing_info'),
            'notes': order_data.get('notes', ''),
            'pricing': pricing,
            'payment': {
                'payment_id': payment_id,
                'gateway_order_id': gateway_order_id,
                'payment_method': Order.METHOD_RAZORPAY,
                'payment_status': 'completed',
                'paid_at': timezone.now(),
            },
        }
        return self._run(context)

    def place_cod_order(self, user, order_data):
        """Cash on delivery: no gateway, payment stays pending."""
        self._check_user(user)
        items, shipping_info = validate_order_data(order_data)
        pricing = self.price_order(user, items, shipping_info, order_data)

        context = {
            'user': user,
            'items': items,
            'shipping_info': shipping_info,
            'billing_info': order_data.get('billing_info'),
            'notes': order_data.get('notes', ''),
            'pricing': pricing,
            'payment': {
                'payment_id': f'COD-{uuid.uuid4().hex[:12].upper()}',
                'gateway_order_id': '',
                'payment_method': Order.METHOD_COD,
                'payment_status': 'pending',
                'paid_at': None,
            },
        }
        return self._run(context)

    # ============================================================
    # PRICING
    # ============================================================

    def price_order(self, user, items, shipping_info, order_data):
        """
        Server-side price breakdown. Shipping comes from the estimator
        unless the payload carries it; the discount comes from the coupon
        engine and never exceeds the items price.
        """
        items_price = to_money(sum((item['price'] * item['quantity'] for item in items), Decimal('0.00')))
        tax_price = order_tax([(item['price'], item['quantity']) for item in items])

        estimator = self.shipping_estimator or ShippingCostEstimator()
        estimate = estimator.estimate(shipping_info['pincode'], items_price)
        if order_data.get('shipping_price') not in (None, ''):
            shipping_price = to_money(order_data['shipping_price'])
        else:
            shipping_price = estimate['shipping_charges']

        pricing = {
            'items_price': items_price,
            'tax_price': tax_price,
            'shipping_price': shipping_price,
            'discount': Decimal('0.00'),
            'coupon_code': '',
            'coupon_discount_type': '',
            'coupon_discount_value': Decimal('0.00'),
            'estimated_delivery': estimate['estimated_delivery']['max_date'],
        }

        code = coupons.normalize_code(order_data.get('coupon_code'))
        if code:
            coupon = coupons.find_coupon(code)
            if coupon is None or not coupons.is_eligible(coupon, user, items_price):
                raise ValidationFailed(f'Coupon {code} is not valid for this order')
            pricing.update({
                'discount': coupons.calculate_discount(coupon, items_price),
                'coupon_code': coupon.code,
                'coupon_discount_type': coupon.discount_type,
                'coupon_discount_value': coupon.discount_value,
            })

        total = items_price + tax_price + shipping_price - pricing['discount']
        pricing['total_price'] = to_money(max(total, Decimal('0.00')))
        return pricing

    # ============================================================
    # PIPELINE
    # ============================================================

    def steps(self):
        return [
            ('materialize_order', self._materialize_order, CRITICAL),
            ('adjust_stock', self._adjust_stock, CRITICAL),
            ('clear_cart', self._clear_cart, CRITICAL),
            ('redeem_coupon', self._redeem_coupon, ADVISORY),
            ('build_invoice', self._build_invoice, ADVISORY),
            ('notify', self._notify, ADVISORY),
        ]

    def _run(self, context):
        steps = self.steps()
        outcomes = []
        payment_id = context['payment']['payment_id']

        try:
            with transaction.atomic():
                for name, step, policy in steps:
                    if policy == CRITICAL:
                        step(context)
                        outcomes.append({'step': name, 'policy': policy, 'ok': True, 'error': ''})
        except IntegrityError:
            # Lost a race with a concurrent confirmation of the same payment
            existing = Order.objects.filter(payment_id=payment_id).first()
            if existing is None:
                raise
            logger.info(f'Order for payment {payment_id} was created concurrently')
            return PipelineResult(existing, created=False)

        order = context['order']
        for name, step, policy in steps:
            if policy != ADVISORY:
                continue
            try:
                with transaction.atomic():
                    step(context)
            except Exception as exc:
                logger.exception(f'Step {name} failed for order {order.order_number}; continuing')
                outcomes.append({'step': name, 'policy': policy, 'ok': False, 'error': str(exc)})
            else:
                outcomes.append({'step': name, 'policy': policy, 'ok': True, 'error': ''})

        logger.info(
            f'Order {order.order_number} created for payment {payment_id} '
            f'(total Rs.{order.total_price}, method {order.payment_method})'
        )
        return PipelineResult(order, created=True, steps=outcomes)

    def _materialize_order(self, context):
        pricing = context['pricing']
        shipping_info = context['shipping_info']
        payment = context['payment']

        order = Order.objects.create(
            user=context['user'],
            shipping_name=shipping_info['name'],
            shipping_phone=shipping_info['phone'],
            shipping_address=shipping_info['address'],
            shipping_city=shipping_info['city'],
            shipping_state=shipping_info['state'],
            shipping_pincode=shipping_info['pincode'],
            payment_id=payment['payment_id'],
            gateway_order_id=payment['gateway_order_id'],
            payment_method=payment['payment_method'],
            payment_status=payment['payment_status'],
            paid_at=payment['paid_at'],
            items_price=pricing['items_price'],
            tax_price=pricing['tax_price'],
            shipping_price=pricing['shipping_price'],
            discount=pricing['discount'],
            total_price=pricing['total_price'],
            coupon_code=pricing['coupon_code'],
            coupon_discount_type=pricing['coupon_discount_type'],
            coupon_discount_value=pricing['coupon_discount_value'],
            coupon_discount_applied=pricing['discount'],
            estimated_delivery=pricing['estimated_delivery'],
            notes=context['notes'] or '',
        )
        OrderItem.objects.bulk_create([
            OrderItem(
                order=order,
                product_id=item['product'],
                name=item['name'],
                quantity=item['quantity'],
                price=item['price'],
                image=item['image'],
            )
            for item in context['items']
        ])
        OrderStatusHistory.objects.create(order=order, status=order.order_status, changed_by='system')
        context['order'] = order

    def _adjust_stock(self, context):
        for item in context['items']:
            updated = Product.objects.filter(
                pk=item['product'], stock__gte=item['quantity'],
            ).update(stock=F('stock') - item['quantity'])
            if not updated:
                logger.warning(f'Insufficient stock for product {item["product"]} ({item["name"]})')
                raise Conflict(f'Insufficient stock for {item["name"]}')

    def _clear_cart(self, context):
        CartItem.objects.filter(cart__user=context['user']).delete()

    def _redeem_coupon(self, context):
        code = context['pricing']['coupon_code']
        if code and not coupons.redeem(code):
            raise Conflict(f'Coupon {code} usage limit reached')

    def _build_invoice(self, context):
        build_invoice(context['order'], billing_address=context['billing_info'])

    def _notify(self, context):
        order = context['order']
        user = context['user']
        self.notifier.dispatch(
            notifications.ORDER_CREATED, user, order=order,
            actor_name=user.get_username(), amount=order.total_price,
        )
        if not order.is_cod:
            self.notifier.dispatch(
                notifications.PAYMENT_SUCCESS, user, order=order,
                actor_name=user.get_username(), amount=order.total_price,
            )

    # ============================================================
    # HELPERS
    # ============================================================

    def _check_user(self, user):
        if user is None or not user.is_authenticated:
            raise AuthorizationFailed('Authentication required')

    def _existing_order(self, user, payment_id):
        existing = Order.objects.filter(payment_id=payment_id).first()
        if existing is None:
            return None
        if existing.user_id != user.pk:
            raise Conflict('Payment is already linked to another order')
        logger.info(f'Payment {payment_id} already recorded as {existing.order_number}')
        return existing
