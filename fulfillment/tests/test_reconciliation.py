"""
Payment reconciliation: verify → order → stock → cart → coupon → invoice → notify.

Checkout used throughout: 2 x Rs.500 ghee, shipped to 560001.
    items 1000 + GST 180 + shipping 0 (free at 1000) = 1180
"""

from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth.models import AnonymousUser

from fulfillment.exceptions import AuthorizationFailed, Conflict, ValidationFailed
from fulfillment.models import (
    CartItem, Coupon, Invoice, Notification, Order, OrderStatusHistory, ShippingRule,
)
from fulfillment.reconciliation import PaymentReconciler

from .base import BaseTestCase, FakeGateway


class ReconcilerTestCase(BaseTestCase):

    def setUp(self):
        super().setUp()
        self.gateway = FakeGateway()
        self.reconciler = PaymentReconciler(gateway=self.gateway)

    def confirm(self, payment_id='pay_0001', order_id='order_0001', signature=None, data=None, user=None):
        return self.reconciler.confirm_online_payment(
            user or self.customer,
            gateway_order_id=order_id,
            payment_id=payment_id,
            signature=signature if signature is not None else self.gateway.sign(order_id, payment_id),
            order_data=data or self.checkout_data(),
        )

    def assertNothingWritten(self):
        self.assertEqual(Order.objects.count(), 0)
        self.ghee.refresh_from_db()
        self.assertEqual(self.ghee.stock, 10)
        self.assertEqual(CartItem.objects.filter(cart__user=self.customer).count(), 1)


# ============================================================
# ONLINE PAYMENT TESTS
# ============================================================

class OnlinePaymentTests(ReconcilerTestCase):

    def test_confirmed_payment_creates_order(self):
        result = self.confirm()
        order = result.order

        self.assertTrue(result.created)
        self.assertEqual(result.failed_steps, [])
        self.assertEqual(order.payment_status, 'completed')
        self.assertEqual(order.payment_method, Order.METHOD_RAZORPAY)
        self.assertEqual(order.gateway_order_id, 'order_0001')
        self.assertIsNotNone(order.paid_at)
        self.assertEqual(order.order_status, Order.STATUS_PROCESSING)
        self.assertEqual(order.items.count(), 1)
        self.assertTrue(OrderStatusHistory.objects.filter(order=order, status='Processing').exists())

    def test_prices_are_computed_server_side(self):
        order = self.confirm().order
        self.assertEqual(order.items_price, Decimal('1000.00'))
        self.assertEqual(order.tax_price, Decimal('180.00'))
        self.assertEqual(order.shipping_price, Decimal('0.00'))
        self.assertEqual(order.total_price, Decimal('1180.00'))
        self.assertEqual(order.total_price, order.computed_total())

    def test_shipping_rule_applies(self):
        ShippingRule.objects.create(
            name='Bengaluru', description='City', pincode_type='single', pincodes=['560001'],
            shipping_charges=Decimal('40'), free_shipping_threshold=Decimal('5000'),
        )
        self.gateway.payment_amount = Decimal('1220.00')
        order = self.confirm().order
        self.assertEqual(order.shipping_price, Decimal('40.00'))
        self.assertEqual(order.total_price, Decimal('1220.00'))

    def test_stock_decremented_and_cart_cleared(self):
        self.confirm()
        self.ghee.refresh_from_db()
        self.assertEqual(self.ghee.stock, 8)
        self.assertFalse(CartItem.objects.filter(cart__user=self.customer).exists())

    def test_invoice_and_notifications(self):
        order = self.confirm().order
        invoice = Invoice.objects.get(order=order)
        self.assertEqual(invoice.total_amount, order.total_price)
        self.assertEqual(invoice.tax_total, order.tax_price)

        customer_events = set(Notification.objects.filter(user=self.customer).values_list('event', flat=True))
        self.assertEqual(customer_events, {'order_created', 'payment_success'})
        # Staff hear about new orders
        self.assertTrue(Notification.objects.filter(user=self.admin, event='order_created').exists())

    def test_bad_signature_creates_nothing(self):
        with self.assertRaises(ValidationFailed):
            self.confirm(signature='0' * 64)
        self.assertNothingWritten()
        self.assertEqual(self.gateway.fetched, [])

    def test_uncaptured_payment_creates_nothing(self):
        self.gateway.payment_status = 'authorized'
        with self.assertRaises(ValidationFailed):
            self.confirm()
        self.assertNothingWritten()

    def test_underpaid_capture_creates_nothing(self):
        self.gateway.payment_amount = Decimal('1000.00')
        with self.assertLogs('fulfillment', level='WARNING'):
            with self.assertRaises(Conflict) as ctx:
                self.confirm()
        self.assertIn('less than order total', ctx.exception.message)
        self.assertNothingWritten()

    def test_overpaid_capture_is_logged(self):
        self.gateway.payment_amount = Decimal('1200.00')
        with self.assertLogs('fulfillment', level='WARNING'):
            result = self.confirm()
        self.assertTrue(result.created)
        self.assertEqual(result.order.total_price, Decimal('1180.00'))

    def test_missing_shipping_field_creates_nothing(self):
        data = self.checkout_data()
        del data['shipping_info']['city']
        with self.assertRaises(ValidationFailed) as ctx:
            self.confirm(data=data)
        self.assertIn('city', ctx.exception.message)
        self.assertNothingWritten()

    def test_item_without_price_creates_nothing(self):
        data = self.checkout_data(items=[{'product': self.ghee.pk, 'name': 'Ghee', 'quantity': 1}])
        with self.assertRaises(ValidationFailed):
            self.confirm(data=data)
        self.assertNothingWritten()

    def test_empty_items_rejected(self):
        with self.assertRaises(ValidationFailed):
            self.reconciler.place_cod_order(self.customer, {'items': [], 'shipping_info': {}})

    def test_anonymous_user_rejected(self):
        with self.assertRaises(AuthorizationFailed):
            self.confirm(user=AnonymousUser())


# ============================================================
# IDEMPOTENCY & STOCK TESTS
# ============================================================

class IdempotencyTests(ReconcilerTestCase):

    def test_retry_returns_same_order(self):
        first = self.confirm()
        second = self.confirm()

        self.assertTrue(first.created)
        self.assertFalse(second.created)
        self.assertEqual(first.order.pk, second.order.pk)
        self.assertEqual(Order.objects.count(), 1)
        self.ghee.refresh_from_db()
        self.assertEqual(self.ghee.stock, 8)

    def test_payment_of_another_user_is_rejected(self):
        self.confirm()
        with self.assertRaises(Conflict):
            self.confirm(user=self.other_customer)

    def test_insufficient_stock_rolls_back(self):
        data = self.checkout_data(items=[
            {'product': self.honey.pk, 'name': self.honey.name, 'quantity': 1, 'price': '250.00'},
            {'product': self.ghee.pk, 'name': self.ghee.name, 'quantity': 11, 'price': '500.00'},
        ])
        self.gateway.payment_amount = Decimal('10000.00')
        with self.assertRaises(Conflict) as ctx:
            self.confirm(data=data)
        self.assertIn('Insufficient stock', ctx.exception.message)

        self.assertNothingWritten()
        # Honey was decremented before ghee failed; that must be undone too
        self.honey.refresh_from_db()
        self.assertEqual(self.honey.stock, 5)


# ============================================================
# ADVISORY STEP TESTS
# ============================================================

class AdvisoryStepTests(ReconcilerTestCase):

    def test_invoice_failure_does_not_fail_checkout(self):
        with patch('fulfillment.reconciliation.build_invoice', side_effect=RuntimeError('invoice store down')):
            with self.assertLogs('fulfillment', level='ERROR'):
                result = self.confirm()

        self.assertTrue(result.created)
        self.assertEqual(result.failed_steps, ['build_invoice'])
        self.assertTrue(Order.objects.filter(pk=result.order.pk).exists())
        self.assertFalse(Invoice.objects.exists())
        # The later advisory steps still ran
        self.assertTrue(Notification.objects.filter(user=self.customer, event='order_created').exists())

    def test_failed_redemption_is_recorded(self):
        self.make_coupon(usage_limit=5)
        data = self.checkout_data(coupon_code='WELCOME10')
        with patch('fulfillment.reconciliation.coupons.redeem', return_value=False):
            with self.assertLogs('fulfillment', level='ERROR'):
                result = self.confirm(data=data)

        self.assertTrue(result.created)
        self.assertIn('redeem_coupon', result.failed_steps)


# ============================================================
# COUPON TESTS
# ============================================================

class CouponCheckoutTests(ReconcilerTestCase):

    def test_coupon_discount_and_redemption(self):
        coupon = self.make_coupon(usage_limit=5)
        order = self.confirm(data=self.checkout_data(coupon_code='welcome10')).order

        self.assertEqual(order.discount, Decimal('100.00'))
        self.assertEqual(order.total_price, Decimal('1080.00'))
        self.assertEqual(order.coupon_code, 'WELCOME10')
        self.assertEqual(order.coupon_discount_applied, Decimal('100.00'))
        self.assertEqual(order.total_price, order.computed_total())
        coupon.refresh_from_db()
        self.assertEqual(coupon.used_count, 1)

    def test_ineligible_coupon_rejects_checkout(self):
        coupon = self.make_coupon(minimum_order_amount=Decimal('5000'))
        with self.assertRaises(ValidationFailed):
            self.confirm(data=self.checkout_data(coupon_code='WELCOME10'))

        self.assertNothingWritten()
        coupon.refresh_from_db()
        self.assertEqual(coupon.used_count, 0)

    def test_unknown_coupon_rejects_checkout(self):
        with self.assertRaises(ValidationFailed):
            self.confirm(data=self.checkout_data(coupon_code='NOSUCH'))
        self.assertNothingWritten()

    def test_discount_never_makes_total_negative(self):
        self.make_coupon(code='MEGA', discount_type=Coupon.FIXED, discount_value=Decimal('5000'))
        order = self.confirm(data=self.checkout_data(coupon_code='MEGA')).order
        self.assertEqual(order.discount, Decimal('1000.00'))
        self.assertEqual(order.total_price, Decimal('180.00'))


# ============================================================
# COD TESTS
# ============================================================

class CashOnDeliveryTests(ReconcilerTestCase):

    def test_cod_order(self):
        result = self.reconciler.place_cod_order(self.customer, self.checkout_data())
        order = result.order

        self.assertTrue(result.created)
        self.assertRegex(order.payment_id, r'^COD-[0-9A-F]{12}$')
        self.assertEqual(order.payment_status, 'pending')
        self.assertEqual(order.payment_method, Order.METHOD_COD)
        self.assertIsNone(order.paid_at)
        self.assertEqual(order.invoice.payment_status, 'Pending')
        self.assertEqual(self.gateway.fetched, [])
        self.assertFalse(Notification.objects.filter(event='payment_success').exists())

    def test_explicit_shipping_price_is_used(self):
        order = self.reconciler.place_cod_order(
            self.customer, self.checkout_data(shipping_price='75.00'),
        ).order
        self.assertEqual(order.shipping_price, Decimal('75.00'))
        self.assertEqual(order.total_price, Decimal('1255.00'))


class GatewayOrderTests(ReconcilerTestCase):

    def test_create_gateway_order(self):
        gateway_order = self.reconciler.create_gateway_order(Decimal('1180.00'), receipt='rcpt_1')
        self.assertEqual(gateway_order['id'], 'order_0001')
        self.assertEqual(self.gateway.created_orders[0]['currency'], 'INR')

    def test_non_positive_amount_rejected(self):
        with self.assertRaises(ValidationFailed):
            self.reconciler.create_gateway_order(Decimal('0'))
