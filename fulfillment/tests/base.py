"""
Shared fixtures for the fulfillment tests.

Run tests with: python manage.py test fulfillment
"""

import uuid
from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.test import TestCase
from django.utils import timezone
from rest_framework.test import APIClient

from fulfillment.gateway import compute_signature, signatures_match
from fulfillment.models import (
    Cart, CartItem, Coupon, Order, OrderItem, Product, ReturnItem, ReturnRequest,
)


class FakeGateway:
    """
    In-memory stand-in for the payment gateway. Records every call.
    Set `refund_error` to make refunds fail.
    """

    key_id = 'rzp_test_fake'

    def __init__(self, secret='test_secret', payment_status='captured', payment_amount=None, refund_error=None):
        self.secret = secret
        self.payment_status = payment_status
        self.payment_amount = payment_amount
        self.refund_error = refund_error
        self.created_orders = []
        self.fetched = []
        self.refunds = []

    def sign(self, order_id, payment_id):
        return compute_signature(self.secret, f'{order_id}|{payment_id}')

    def create_order(self, amount, currency='INR', receipt='', notes=None):
        order = {
            'id': f'order_{len(self.created_orders) + 1:04d}',
            'amount': amount,
            'currency': currency,
            'status': 'created',
        }
        self.created_orders.append(order)
        return order

    def verify_signature(self, order_id, payment_id, signature):
        return signatures_match(self.sign(order_id, payment_id), signature)

    def fetch_payment(self, payment_id):
        self.fetched.append(payment_id)
        return {
            'id': payment_id,
            'status': self.payment_status,
            'amount': self.payment_amount if self.payment_amount is not None else Decimal('1180.00'),
            'currency': 'INR',
            'method': 'upi',
        }

    def refund(self, payment_id, amount=None, notes=None):
        if self.refund_error is not None:
            raise self.refund_error
        self.refunds.append({'payment_id': payment_id, 'amount': amount, 'notes': notes})
        return {'id': f'rfnd_{len(self.refunds):04d}', 'amount': amount, 'status': 'processed'}


SHIPPING_INFO = {
    'name': 'Priya Sharma',
    'phone': '9876543210',
    'address': '12 MG Road',
    'city': 'Bengaluru',
    'state': 'Karnataka',
    'pincode': '560001',
}


class BaseTestCase(TestCase):
    """
    Users, products and a filled cart. Every test class inherits from this.
    """

    def setUp(self):
        # Throttle counters live in the cache
        cache.clear()
        self.client = APIClient()
        self.base_url = '/api/v1'

        User = get_user_model()
        self.customer = User.objects.create_user('priya', 'priya@example.com', 'pass1234')
        self.other_customer = User.objects.create_user('rahul', 'rahul@example.com', 'pass1234')
        self.admin = User.objects.create_user('ops', 'ops@example.com', 'pass1234', is_staff=True)

        self.ghee = Product.objects.create(name='A2 Cow Ghee 1L', price=Decimal('500.00'), stock=10)
        self.honey = Product.objects.create(name='Wild Honey 500g', price=Decimal('250.00'), stock=5)

        cart = Cart.objects.create(user=self.customer)
        CartItem.objects.create(cart=cart, product=self.ghee, quantity=2)

    # ------------------------------------------------------------
    # Builders
    # ------------------------------------------------------------

    def checkout_data(self, items=None, **overrides):
        data = {
            'items': items or [{
                'product': self.ghee.pk,
                'name': self.ghee.name,
                'quantity': 2,
                'price': '500.00',
            }],
            'shipping_info': dict(SHIPPING_INFO),
        }
        data.update(overrides)
        return data

    def make_coupon(self, code='WELCOME10', **kwargs):
        now = timezone.now()
        fields = {
            'description': 'Welcome offer',
            'discount_type': Coupon.PERCENTAGE,
            'discount_value': Decimal('10'),
            'valid_from': now - timedelta(days=1),
            'valid_until': now + timedelta(days=30),
        }
        fields.update(kwargs)
        return Coupon.objects.create(code=code, **fields)

    def make_order(self, user=None, order_status=Order.STATUS_DELIVERED, delivered_days_ago=2,
                   payment_method=Order.METHOD_RAZORPAY, quantity=2, **kwargs):
        """A 2 x Rs.500 order: items 1000 + GST 180 = 1180."""
        user = user or self.customer
        delivered_at = None
        if order_status in (Order.STATUS_DELIVERED, Order.STATUS_RETURNED):
            delivered_at = timezone.now() - timedelta(days=delivered_days_ago)

        fields = {
            'user': user,
            'shipping_name': SHIPPING_INFO['name'],
            'shipping_phone': SHIPPING_INFO['phone'],
            'shipping_address': SHIPPING_INFO['address'],
            'shipping_city': SHIPPING_INFO['city'],
            'shipping_state': SHIPPING_INFO['state'],
            'shipping_pincode': SHIPPING_INFO['pincode'],
            'payment_id': f'pay_{uuid.uuid4().hex[:14]}',
            'payment_method': payment_method,
            'payment_status': 'pending' if payment_method == Order.METHOD_COD else 'completed',
            'items_price': Decimal('500.00') * quantity,
            'tax_price': Decimal('90.00') * quantity,
            'shipping_price': Decimal('0.00'),
            'total_price': Decimal('590.00') * quantity,
            'order_status': order_status,
            'delivered_at': delivered_at,
            'paid_at': None if payment_method == Order.METHOD_COD else timezone.now() - timedelta(days=5),
        }
        fields.update(kwargs)
        order = Order.objects.create(**fields)
        OrderItem.objects.create(
            order=order, product=self.ghee, name=self.ghee.name,
            quantity=quantity, price=Decimal('500.00'),
        )
        return order

    def make_return(self, order, status=ReturnRequest.STATUS_PENDING, quantity=1):
        return_request = ReturnRequest.objects.create(
            order=order,
            user=order.user,
            status=status,
            return_reason='Jar arrived cracked',
            return_name=order.shipping_name,
            return_address=order.shipping_address,
            return_city=order.shipping_city,
            return_state=order.shipping_state,
            return_pincode=order.shipping_pincode,
            return_phone=order.shipping_phone,
        )
        ReturnItem.objects.create(
            return_request=return_request, product=self.ghee, name=self.ghee.name,
            quantity=quantity, price=Decimal('500.00'), reason='damaged_during_shipping',
        )
        if order.order_status == Order.STATUS_DELIVERED:
            order.order_status = Order.STATUS_RETURNED
            order.save()
        return return_request
