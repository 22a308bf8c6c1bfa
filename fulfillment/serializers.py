"""
Fulfillment Module - Serializers

Input serializers check shape and types only; the business rules
(eligibility, transitions, stock, refunds) live in the service modules so
the admin site and the API enforce the same thing.
"""

from rest_framework import serializers

from .models import (
    Coupon, Invoice, InvoiceItem, Notification, Order, OrderItem,
    OrderStatusHistory, ReturnItem, ReturnRequest, ReturnStatusHistory,
)
from .shipping import is_valid_pincode


def _validate_pincode(value):
    if not is_valid_pincode(value):
        raise serializers.ValidationError('Pincode must be 6 digits and cannot start with 0.')
    return value


# ============================================================
# CHECKOUT INPUT
# ============================================================

class OrderItemInputSerializer(serializers.Serializer):
    product = serializers.IntegerField()
    name = serializers.CharField(max_length=255)
    quantity = serializers.IntegerField(min_value=1)
    price = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0)
    image = serializers.CharField(max_length=500, required=False, allow_blank=True)


class AddressSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=200)
    phone = serializers.CharField(max_length=15)
    address = serializers.CharField()
    city = serializers.CharField(max_length=100)
    state = serializers.CharField(max_length=100)
    pincode = serializers.CharField(max_length=10)

    def validate_pincode(self, value):
        return _validate_pincode(value)


class CheckoutSerializer(serializers.Serializer):
    """
    What the storefront sends at checkout:
    {
        "items": [{"product": 1, "name": "A2 Ghee 1L", "quantity": 2, "price": "899.00"}],
        "shipping_info": {"name": ..., "phone": ..., "address": ..., "city": ..., "state": ..., "pincode": "560001"},
        "billing_info": {...},          # optional, defaults to shipping_info
        "coupon_code": "WELCOME10",     # optional
        "shipping_price": "50.00"       # optional, estimated server side otherwise
    }
    """

    items = OrderItemInputSerializer(many=True, allow_empty=False)
    shipping_info = AddressSerializer()
    billing_info = AddressSerializer(required=False)
    coupon_code = serializers.CharField(max_length=50, required=False, allow_blank=True)
    shipping_price = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0, required=False)
    notes = serializers.CharField(required=False, allow_blank=True)


class VerifyPaymentSerializer(CheckoutSerializer):
    razorpay_order_id = serializers.CharField(max_length=100)
    razorpay_payment_id = serializers.CharField(max_length=100)
    razorpay_signature = serializers.CharField(max_length=200)


class CreatePaymentOrderSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=1)
    receipt = serializers.CharField(max_length=40, required=False, allow_blank=True)


# ============================================================
# COUPONS & SHIPPING INPUT
# ============================================================

class CouponValidateSerializer(serializers.Serializer):
    code = serializers.CharField(max_length=50)
    order_amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)


class OrderAmountSerializer(serializers.Serializer):
    order_amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)


class ShippingCalculateSerializer(serializers.Serializer):
    pincode = serializers.CharField(max_length=10)
    order_amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, default=0)

    def validate_pincode(self, value):
        return _validate_pincode(value)


# ============================================================
# ORDER / INVOICE INPUT
# ============================================================

class OrderStatusUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Order.STATUS_CHOICES)
    tracking_number = serializers.CharField(max_length=200, required=False, allow_blank=True)


class GenerateInvoiceSerializer(serializers.Serializer):
    order_id = serializers.IntegerField()
    billing_info = AddressSerializer(required=False)


# ============================================================
# RETURN INPUT
# ============================================================

class ReturnItemInputSerializer(serializers.Serializer):
    product = serializers.IntegerField()
    quantity = serializers.IntegerField(min_value=1)
    reason = serializers.ChoiceField(choices=ReturnItem.REASON_CHOICES)
    description = serializers.CharField(max_length=500, required=False, allow_blank=True)


class ReturnAddressSerializer(AddressSerializer):
    name = serializers.CharField(max_length=200, required=False)
    phone = serializers.CharField(max_length=15, required=False)
    address = serializers.CharField(required=False)
    city = serializers.CharField(max_length=100, required=False)
    state = serializers.CharField(max_length=100, required=False)
    pincode = serializers.CharField(max_length=10, required=False)


class CreateReturnRequestSerializer(serializers.Serializer):
    """
    {
        "order_id": 12,
        "items": [{"product": 1, "quantity": 1, "reason": "damaged_during_shipping"}],
        "return_reason": "Jar arrived cracked",
        "return_address": {...}          # optional, defaults to the shipping address
    }
    """

    order_id = serializers.IntegerField()
    items = ReturnItemInputSerializer(many=True, allow_empty=False)
    return_reason = serializers.CharField(max_length=1000)
    return_address = ReturnAddressSerializer(required=False)


class CheckEligibilitySerializer(serializers.Serializer):
    order_id = serializers.IntegerField()


class ReturnStatusUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=ReturnRequest.STATUS_CHOICES)
    admin_notes = serializers.CharField(max_length=1000, required=False, allow_blank=True)
    tracking_number = serializers.CharField(max_length=200, required=False, allow_blank=True)
    return_tracking_number = serializers.CharField(max_length=200, required=False, allow_blank=True)


class RefundSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False)
    reason = serializers.CharField(max_length=500, required=False, allow_blank=True)


class CODRefundSerializer(RefundSerializer):
    refund_method = serializers.ChoiceField(choices=['bank_transfer', 'upi', 'cash'])

    bank_transaction_id = serializers.CharField(max_length=100, required=False, allow_blank=True)
    bank_name = serializers.CharField(max_length=100, required=False, allow_blank=True)
    bank_account_number = serializers.CharField(max_length=50, required=False, allow_blank=True)
    bank_ifsc_code = serializers.CharField(max_length=20, required=False, allow_blank=True)
    bank_reference_number = serializers.CharField(max_length=100, required=False, allow_blank=True)
    bank_transfer_date = serializers.DateTimeField(required=False)

    upi_id = serializers.CharField(max_length=100, required=False, allow_blank=True)
    upi_transaction_id = serializers.CharField(max_length=100, required=False, allow_blank=True)
    upi_transfer_date = serializers.DateTimeField(required=False)


# ============================================================
# OUTPUT SERIALIZERS
# ============================================================

class OrderItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderItem
        fields = ['id', 'product', 'name', 'quantity', 'price', 'image']
        read_only_fields = fields


class OrderStatusHistorySerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderStatusHistory
        fields = ['status', 'changed_by', 'created_at']
        read_only_fields = fields


class OrderSerializer(serializers.ModelSerializer):
    items = OrderItemSerializer(many=True, read_only=True)
    status_history = OrderStatusHistorySerializer(many=True, read_only=True)

    class Meta:
        model = Order
        fields = [
            'id', 'order_number', 'items',
            'shipping_name', 'shipping_phone', 'shipping_address',
            'shipping_city', 'shipping_state', 'shipping_pincode',
            'payment_id', 'gateway_order_id', 'payment_method', 'payment_status',
            'items_price', 'tax_price', 'shipping_price', 'discount', 'total_price',
            'coupon_code', 'coupon_discount_applied',
            'order_status', 'paid_at', 'shipped_at', 'delivered_at', 'cancelled_at',
            'tracking_number', 'estimated_delivery',
            'refund_id', 'refund_amount', 'refund_status',
            'status_history', 'created_at',
        ]
        read_only_fields = fields


class OrderListSerializer(serializers.ModelSerializer):
    """Order history row: no nested items or history."""

    class Meta:
        model = Order
        fields = [
            'id', 'order_number', 'payment_method', 'payment_status',
            'total_price', 'order_status', 'tracking_number', 'created_at',
        ]
        read_only_fields = fields


class CouponSerializer(serializers.ModelSerializer):
    class Meta:
        model = Coupon
        fields = [
            'code', 'description', 'discount_type', 'discount_value',
            'minimum_order_amount', 'maximum_discount', 'valid_until',
        ]
        read_only_fields = fields


class DeliveryWindowSerializer(serializers.Serializer):
    min = serializers.IntegerField()
    max = serializers.IntegerField()
    min_date = serializers.DateField()
    max_date = serializers.DateField()


class ShippingEstimateSerializer(serializers.Serializer):
    pincode = serializers.CharField()
    order_amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    shipping_charges = serializers.DecimalField(max_digits=12, decimal_places=2)
    free_shipping_threshold = serializers.DecimalField(max_digits=12, decimal_places=2)
    estimated_delivery = DeliveryWindowSerializer()
    rule = serializers.DictField(allow_null=True)


class InvoiceItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = InvoiceItem
        fields = ['product', 'name', 'quantity', 'unit_price', 'total_price', 'gst_rate', 'cgst', 'sgst', 'igst']
        read_only_fields = fields


class InvoiceSerializer(serializers.ModelSerializer):
    items = InvoiceItemSerializer(many=True, read_only=True)
    order_number = serializers.CharField(source='order.order_number', read_only=True)
    tax_total = serializers.DecimalField(max_digits=13, decimal_places=3, read_only=True)

    class Meta:
        model = Invoice
        fields = [
            'id', 'invoice_number', 'order', 'order_number', 'invoice_date', 'due_date',
            'billing_name', 'billing_address', 'billing_city', 'billing_state',
            'billing_pincode', 'billing_phone',
            'shipping_name', 'shipping_address', 'shipping_city', 'shipping_state',
            'shipping_pincode', 'shipping_phone',
            'items', 'subtotal', 'cgst_total', 'sgst_total', 'igst_total', 'tax_total',
            'shipping_charges', 'discount', 'total_amount', 'amount_in_words',
            'payment_status', 'payment_method', 'payment_date',
            'notes', 'terms', 'company_info',
        ]
        read_only_fields = fields


class InvoiceListSerializer(serializers.ModelSerializer):
    order_number = serializers.CharField(source='order.order_number', read_only=True)

    class Meta:
        model = Invoice
        fields = [
            'id', 'invoice_number', 'order', 'order_number', 'invoice_date',
            'total_amount', 'payment_status', 'payment_method',
        ]
        read_only_fields = fields


class ReturnItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = ReturnItem
        fields = ['id', 'product', 'name', 'quantity', 'price', 'image', 'reason', 'description']
        read_only_fields = fields


class ReturnStatusHistorySerializer(serializers.ModelSerializer):
    """One entry of the "Track your return" timeline."""

    class Meta:
        model = ReturnStatusHistory
        fields = ['id', 'from_status', 'to_status', 'changed_by', 'comment', 'created_at']
        read_only_fields = fields


class ReturnRequestListSerializer(serializers.ModelSerializer):
    """Lightweight: no nested items or history."""

    order_number = serializers.CharField(source='order.order_number', read_only=True)

    class Meta:
        model = ReturnRequest
        fields = [
            'id', 'return_number', 'order', 'order_number', 'status',
            'refund_amount', 'refund_status', 'requested_at', 'created_at',
        ]


class ReturnRequestSerializer(serializers.ModelSerializer):
    items = ReturnItemSerializer(many=True, read_only=True)
    status_history = ReturnStatusHistorySerializer(many=True, read_only=True)
    order_number = serializers.CharField(source='order.order_number', read_only=True)
    payment_method = serializers.CharField(source='order.payment_method', read_only=True)
    refund_info = serializers.SerializerMethodField()

    class Meta:
        model = ReturnRequest
        fields = [
            'id', 'return_number', 'order', 'order_number', 'payment_method',
            'status', 'return_reason', 'admin_notes', 'items',
            'return_name', 'return_address', 'return_city', 'return_state',
            'return_pincode', 'return_phone',
            'tracking_number', 'return_tracking_number', 'return_window',
            'refund_info',
            'requested_at', 'approved_at', 'rejected_at', 'return_shipped_at',
            'return_received_at', 'refund_processed_at', 'completed_at', 'cancelled_at',
            'status_history', 'created_at', 'updated_at',
        ]
        read_only_fields = fields

    def get_refund_info(self, obj):
        if not obj.refund_id:
            return None
        info = {
            'refund_id': obj.refund_id,
            'amount': str(obj.refund_amount),
            'status': obj.refund_status,
            'reason': obj.refund_reason,
            'method': obj.refund_method,
            'refunded_at': obj.refunded_at,
        }
        if obj.refund_method == 'bank_transfer':
            info['bank_transfer'] = {
                'transaction_id': obj.bank_transaction_id,
                'bank_name': obj.bank_name,
                'account_number': obj.bank_account_number,
                'ifsc_code': obj.bank_ifsc_code,
                'reference_number': obj.bank_reference_number,
                'transfer_date': obj.bank_transfer_date,
            }
        elif obj.refund_method == 'upi':
            info['upi'] = {
                'upi_id': obj.upi_id,
                'transaction_id': obj.upi_transaction_id,
                'transfer_date': obj.upi_transfer_date,
            }
        return info


class NotificationSerializer(serializers.ModelSerializer):
    class Meta:
        model = Notification
        fields = ['id', 'title', 'message', 'type', 'event', 'priority', 'metadata', 'action_url', 'is_read', 'created_at']
        read_only_fields = fields
