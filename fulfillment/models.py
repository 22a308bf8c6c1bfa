"""
Fulfillment Module - Database Models

TABLES:
1. Product, Cart, CartItem   → Minimal catalog/cart references the pipeline touches
2. Coupon                    → Promotional discounts and their redemption counter
3. ShippingRule              → Pincode based shipping charges
4. Order, OrderItem          → The durable order created from a confirmed payment
5. OrderStatusHistory        → Order status timeline
6. Invoice, InvoiceItem      → GST invoice, one per order
7. ReturnRequest, ReturnItem → Customer return and its refund record
8. ReturnStatusHistory       → Every return status change (audit trail)
9. Notification              → In-app notifications for customers and admins
"""

import uuid
from decimal import Decimal

from django.conf import settings
from django.db import models
from django.utils import timezone


# ============================================================
# CATALOG & CART
# ============================================================
# Catalog CRUD lives elsewhere; we only need stock and price here.

class Product(models.Model):
    name = models.CharField(max_length=255)
    price = models.DecimalField(max_digits=10, decimal_places=2)
    stock = models.IntegerField(default=0)
    image = models.CharField(max_length=500, blank=True)
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'products'

    def __str__(self):
        return self.name


class Cart(models.Model):
    user = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='cart')
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'carts'

    def __str__(self):
        return f"Cart of {self.user}"


class CartItem(models.Model):
    cart = models.ForeignKey(Cart, on_delete=models.CASCADE, related_name='items')
    product = models.ForeignKey(Product, on_delete=models.CASCADE)
    quantity = models.PositiveIntegerField(default=1)

    class Meta:
        db_table = 'cart_items'


# ============================================================
# COUPON MODEL
# ============================================================

class Coupon(models.Model):
    """
    A promotional code. `used_count` is incremented once per successful
    redemption (see coupons.redeem), never on validation.
    """

    PERCENTAGE = 'percentage'
    FIXED = 'fixed'
    DISCOUNT_TYPE_CHOICES = [
        (PERCENTAGE, 'Percentage'),
        (FIXED, 'Fixed Amount'),
    ]

    code = models.CharField(max_length=50, unique=True, db_index=True)
    description = models.CharField(max_length=500)
    discount_type = models.CharField(max_length=20, choices=DISCOUNT_TYPE_CHOICES)
    discount_value = models.DecimalField(max_digits=10, decimal_places=2)
    minimum_order_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    maximum_discount = models.DecimalField(max_digits=10, decimal_places=2, default=0)  # 0 = no cap

    usage_limit = models.PositiveIntegerField(default=0)     # 0 = unlimited
    used_count = models.PositiveIntegerField(default=0)

    # Per-user restrictions
    first_time_only = models.BooleanField(default=False)
    allowed_users = models.ManyToManyField(
        settings.AUTH_USER_MODEL, blank=True, related_name='exclusive_coupons'
    )
    max_usage_per_user = models.PositiveIntegerField(default=1)  # 0 = unlimited

    valid_from = models.DateTimeField()
    valid_until = models.DateTimeField()
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'coupons'
        ordering = ['-created_at']

    def __str__(self):
        return self.code

    def save(self, *args, **kwargs):
        """Codes are stored upper-cased so lookups are case-insensitive."""
        self.code = (self.code or '').strip().upper()
        super().save(*args, **kwargs)


# ============================================================
# SHIPPING RULE MODEL
# ============================================================

class ShippingRule(models.Model):
    PINCODE_TYPE_CHOICES = [
        ('single', 'Single Pincodes'),
        ('range', 'Pincode Ranges'),
        ('state', 'State'),
        ('zone', 'Zone'),
        ('all', 'All Pincodes (catch-all)'),
    ]

    name = models.CharField(max_length=200)
    description = models.CharField(max_length=500)
    pincode_type = models.CharField(max_length=20, choices=PINCODE_TYPE_CHOICES)
    pincodes = models.JSONField(default=list, blank=True)          # ["560001", ...]
    pincode_ranges = models.JSONField(default=list, blank=True)    # [{"start": "560001", "end": "560099"}]
    states = models.JSONField(default=list, blank=True)
    zones = models.JSONField(default=list, blank=True)

    shipping_charges = models.DecimalField(max_digits=10, decimal_places=2)
    free_shipping_threshold = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    estimated_min_days = models.PositiveIntegerField(default=3)
    estimated_max_days = models.PositiveIntegerField(default=5)

    is_active = models.BooleanField(default=True)
    priority = models.PositiveIntegerField(default=1)    # Lower = checked first

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'shipping_rules'
        ordering = ['priority', 'id']

    def __str__(self):
        return f"{self.name} (priority {self.priority})"


# ============================================================
# ORDER MODEL
# ============================================================

class Order(models.Model):
    """
    Created once by the payment reconciler, either from a verified gateway
    payment or a COD placement. Invariant:
        total_price = items_price + tax_price + shipping_price - discount >= 0
    """

    STATUS_PROCESSING = 'Processing'
    STATUS_CONFIRMED = 'Confirmed'
    STATUS_SHIPPED = 'Shipped'
    STATUS_OUT_FOR_DELIVERY = 'Out for Delivery'
    STATUS_DELIVERED = 'Delivered'
    STATUS_CANCELLED = 'Cancelled'
    STATUS_RETURNED = 'Returned'

    STATUS_CHOICES = [
        (STATUS_PROCESSING, 'Processing'),
        (STATUS_CONFIRMED, 'Confirmed'),
        (STATUS_SHIPPED, 'Shipped'),
        (STATUS_OUT_FOR_DELIVERY, 'Out for Delivery'),
        (STATUS_DELIVERED, 'Delivered'),
        (STATUS_CANCELLED, 'Cancelled'),
        (STATUS_RETURNED, 'Returned'),
    ]

    METHOD_RAZORPAY = 'razorpay'
    METHOD_COD = 'cod'
    PAYMENT_METHOD_CHOICES = [
        (METHOD_RAZORPAY, 'Razorpay'),
        (METHOD_COD, 'Cash on Delivery'),
    ]

    PAYMENT_STATUS_CHOICES = [
        ('completed', 'Completed'),
        ('pending', 'Pending'),
        ('failed', 'Failed'),
        ('refunded', 'Refunded'),
    ]

    REFUND_STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('processed', 'Processed'),
        ('failed', 'Failed'),
    ]

    order_number = models.CharField(max_length=50, unique=True, db_index=True)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name='orders')

    # Shipping destination
    shipping_name = models.CharField(max_length=200)
    shipping_phone = models.CharField(max_length=15)
    shipping_address = models.TextField()
    shipping_city = models.CharField(max_length=100)
    shipping_state = models.CharField(max_length=100)
    shipping_pincode = models.CharField(max_length=10)

    # Payment descriptor
    payment_id = models.CharField(max_length=100, unique=True)      # Gateway payment id or synthesized COD id
    gateway_order_id = models.CharField(max_length=100, blank=True)
    payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES)
    payment_status = models.CharField(max_length=20, choices=PAYMENT_STATUS_CHOICES)

    # Price breakdown
    items_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    tax_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    shipping_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    discount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)

    # Coupon snapshot (what was actually applied at order time)
    coupon_code = models.CharField(max_length=50, blank=True, db_index=True)
    coupon_discount_type = models.CharField(max_length=20, blank=True)
    coupon_discount_value = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    coupon_discount_applied = models.DecimalField(max_digits=12, decimal_places=2, default=0)

    order_status = models.CharField(max_length=30, choices=STATUS_CHOICES, default=STATUS_PROCESSING)

    # Timestamps (NULL until the event happens)
    paid_at = models.DateTimeField(null=True, blank=True)
    shipped_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    tracking_number = models.CharField(max_length=200, blank=True)
    estimated_delivery = models.DateField(null=True, blank=True)
    notes = models.TextField(blank=True)

    # Gateway refund info (populated by refund webhooks)
    refund_id = models.CharField(max_length=100, blank=True)
    refund_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    refund_status = models.CharField(max_length=20, choices=REFUND_STATUS_CHOICES, blank=True)
    refund_reason = models.CharField(max_length=500, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'orders'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['user', 'order_status']),
            models.Index(fields=['order_status', 'created_at']),
        ]

    def __str__(self):
        return f"Order {self.order_number}"

    def save(self, *args, **kwargs):
        """Auto-generate order_number on first save"""
        if not self.order_number:
            self.order_number = f"OD-{uuid.uuid4().hex[:10].upper()}"
        super().save(*args, **kwargs)

    @property
    def is_cod(self):
        return self.payment_method == self.METHOD_COD

    def computed_total(self):
        total = self.items_price + self.tax_price + self.shipping_price - self.discount
        return max(total, Decimal('0.00'))


class OrderItem(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='items')
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name='order_items')
    name = models.CharField(max_length=255)
    quantity = models.PositiveIntegerField()
    price = models.DecimalField(max_digits=10, decimal_places=2)    # Unit price
    image = models.CharField(max_length=500, blank=True)

    class Meta:
        db_table = 'order_items'

    def __str__(self):
        return f"{self.name} x {self.quantity}"

    @property
    def line_total(self):
        return self.price * self.quantity


class OrderStatusHistory(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='status_history')
    status = models.CharField(max_length=30)
    changed_by = models.CharField(max_length=100, default='system')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'order_status_history'
        ordering = ['created_at']


# ============================================================
# INVOICE MODELS
# ============================================================

def _default_terms():
    return f"Payment is due within {settings.FULFILLMENT['INVOICE_DUE_DAYS']} days of invoice date."


class Invoice(models.Model):
    """
    GST invoice. invoice_number and due_date are assigned once at creation
    and are never regenerated.
    """

    PAYMENT_STATUS_CHOICES = [
        ('Paid', 'Paid'),
        ('Pending', 'Pending'),
        ('Overdue', 'Overdue'),
    ]

    invoice_number = models.CharField(max_length=50, unique=True, db_index=True)
    order = models.OneToOneField(Order, on_delete=models.PROTECT, related_name='invoice')
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name='invoices')

    invoice_date = models.DateTimeField(default=timezone.now)
    due_date = models.DateTimeField()

    billing_name = models.CharField(max_length=200)
    billing_address = models.TextField()
    billing_city = models.CharField(max_length=100)
    billing_state = models.CharField(max_length=100)
    billing_pincode = models.CharField(max_length=10)
    billing_phone = models.CharField(max_length=15)

    shipping_name = models.CharField(max_length=200)
    shipping_address = models.TextField()
    shipping_city = models.CharField(max_length=100)
    shipping_state = models.CharField(max_length=100)
    shipping_pincode = models.CharField(max_length=10)
    shipping_phone = models.CharField(max_length=15)

    subtotal = models.DecimalField(max_digits=12, decimal_places=2)
    cgst_total = models.DecimalField(max_digits=13, decimal_places=3, default=0)
    sgst_total = models.DecimalField(max_digits=13, decimal_places=3, default=0)
    igst_total = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    shipping_charges = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    discount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    amount_in_words = models.CharField(max_length=500, blank=True)

    payment_status = models.CharField(max_length=20, choices=PAYMENT_STATUS_CHOICES, default='Paid')
    payment_method = models.CharField(max_length=20)
    payment_date = models.DateTimeField(null=True, blank=True)

    notes = models.TextField(blank=True)
    terms = models.CharField(max_length=500, default=_default_terms)
    company_info = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'invoices'
        ordering = ['-invoice_date']

    def __str__(self):
        return self.invoice_number

    @property
    def tax_total(self):
        return self.cgst_total + self.sgst_total + self.igst_total


class InvoiceItem(models.Model):
    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name='items')
    product = models.ForeignKey(Product, on_delete=models.PROTECT)
    name = models.CharField(max_length=255)
    quantity = models.PositiveIntegerField()
    unit_price = models.DecimalField(max_digits=10, decimal_places=2)
    total_price = models.DecimalField(max_digits=12, decimal_places=2)
    gst_rate = models.DecimalField(max_digits=5, decimal_places=2, default=18)
    cgst = models.DecimalField(max_digits=13, decimal_places=3, default=0)
    sgst = models.DecimalField(max_digits=13, decimal_places=3, default=0)
    igst = models.DecimalField(max_digits=12, decimal_places=2, default=0)

    class Meta:
        db_table = 'invoice_items'


# ============================================================
# RETURN REQUEST MODEL
# ============================================================

class ReturnRequest(models.Model):
    """
    A customer's return against a delivered order. At most one active
    (not rejected/cancelled/completed) return exists per order.
    """

    STATUS_PENDING = 'pending'
    STATUS_APPROVED = 'approved'
    STATUS_REJECTED = 'rejected'
    STATUS_RETURN_SHIPPED = 'return_shipped'
    STATUS_RETURN_RECEIVED = 'return_received'
    STATUS_REFUND_PROCESSED = 'refund_processed'
    STATUS_COMPLETED = 'completed'
    STATUS_CANCELLED = 'cancelled'

    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending Review'),
        (STATUS_APPROVED, 'Approved'),
        (STATUS_REJECTED, 'Rejected'),
        (STATUS_RETURN_SHIPPED, 'Return Shipped'),
        (STATUS_RETURN_RECEIVED, 'Return Received'),
        (STATUS_REFUND_PROCESSED, 'Refund Processed'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_CANCELLED, 'Cancelled by Customer'),
    ]

    INACTIVE_STATUSES = [STATUS_REJECTED, STATUS_CANCELLED, STATUS_COMPLETED]

    REFUND_STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('processed', 'Processed'),
        ('failed', 'Failed'),
    ]

    REFUND_METHOD_CHOICES = [
        ('razorpay', 'Razorpay (original payment)'),
        ('bank_transfer', 'Bank Transfer'),
        ('upi', 'UPI'),
        ('cash', 'Cash'),
    ]

    return_number = models.CharField(max_length=50, unique=True, db_index=True)
    order = models.ForeignKey(Order, on_delete=models.PROTECT, related_name='returns')
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name='returns')

    status = models.CharField(max_length=30, choices=STATUS_CHOICES, default=STATUS_PENDING)
    return_reason = models.TextField(max_length=1000)
    admin_notes = models.TextField(max_length=1000, blank=True)

    # Return address (where the pickup happens)
    return_name = models.CharField(max_length=200)
    return_address = models.TextField()
    return_city = models.CharField(max_length=100)
    return_state = models.CharField(max_length=100)
    return_pincode = models.CharField(max_length=10)
    return_phone = models.CharField(max_length=15)

    tracking_number = models.CharField(max_length=200, blank=True)
    return_tracking_number = models.CharField(max_length=200, blank=True)

    # Refund info - gateway refunds fill the first block,
    # COD refunds also fill the method-specific proof fields.
    refund_id = models.CharField(max_length=100, blank=True)
    refund_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    refund_status = models.CharField(max_length=20, choices=REFUND_STATUS_CHOICES, blank=True)
    refund_reason = models.CharField(max_length=500, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)
    refund_method = models.CharField(max_length=20, choices=REFUND_METHOD_CHOICES, blank=True)

    bank_transaction_id = models.CharField(max_length=100, blank=True)
    bank_name = models.CharField(max_length=100, blank=True)
    bank_account_number = models.CharField(max_length=50, blank=True)
    bank_ifsc_code = models.CharField(max_length=20, blank=True)
    bank_transfer_date = models.DateTimeField(null=True, blank=True)
    bank_reference_number = models.CharField(max_length=100, blank=True)

    upi_id = models.CharField(max_length=100, blank=True)
    upi_transaction_id = models.CharField(max_length=100, blank=True)
    upi_transfer_date = models.DateTimeField(null=True, blank=True)

    return_window = models.PositiveIntegerField(default=7)

    # Stamped once per transition, never overwritten
    requested_at = models.DateTimeField(default=timezone.now)
    approved_at = models.DateTimeField(null=True, blank=True)
    rejected_at = models.DateTimeField(null=True, blank=True)
    return_shipped_at = models.DateTimeField(null=True, blank=True)
    return_received_at = models.DateTimeField(null=True, blank=True)
    refund_processed_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'return_requests'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['order', 'status']),
            models.Index(fields=['user', 'status']),
            models.Index(fields=['status', 'created_at']),
        ]

    def __str__(self):
        return f"Return {self.return_number} - {self.order.order_number}"

    def save(self, *args, **kwargs):
        """Auto-generate return_number on first save"""
        if not self.return_number:
            self.return_number = f"RET-{uuid.uuid4().hex[:8].upper()}"
        super().save(*args, **kwargs)

    @property
    def is_active(self):
        return self.status not in self.INACTIVE_STATUSES

    @property
    def items_value(self):
        return sum((item.price * item.quantity for item in self.items.all()), Decimal('0.00'))


class ReturnItem(models.Model):
    REASON_CHOICES = [
        ('defective_product', 'Product is Defective'),
        ('wrong_item', 'Wrong Item Delivered'),
        ('not_as_described', 'Product Not as Described'),
        ('damaged_during_shipping', 'Damaged During Shipping'),
        ('changed_mind', 'Changed My Mind'),
        ('other', 'Other'),
    ]

    return_request = models.ForeignKey(ReturnRequest, on_delete=models.CASCADE, related_name='items')
    product = models.ForeignKey(Product, on_delete=models.PROTECT)
    name = models.CharField(max_length=255)
    quantity = models.PositiveIntegerField()
    price = models.DecimalField(max_digits=10, decimal_places=2)
    image = models.CharField(max_length=500, blank=True)
    reason = models.CharField(max_length=50, choices=REASON_CHOICES)
    description = models.TextField(max_length=500, blank=True)

    class Meta:
        db_table = 'return_items'

    def __str__(self):
        return f"{self.name} x {self.quantity} ({self.reason})"


class ReturnStatusHistory(models.Model):
    """
    Tracks every status change for a return request.

    Example timeline:
        pending          (Customer submitted return)
        approved         (Admin approved)
        return_shipped   (Customer handed over the parcel)
        return_received  (Warehouse received it)
        refund_processed (Gateway refund or COD refund recorded)
        completed
    """

    return_request = models.ForeignKey(
        ReturnRequest,
        on_delete=models.CASCADE,
        related_name='status_history'
    )
    from_status = models.CharField(max_length=30, blank=True)
    to_status = models.CharField(max_length=30)
    changed_by = models.CharField(max_length=100, default='system')  # 'system', 'customer', 'admin:<name>', 'webhook'
    comment = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'return_status_history'
        ordering = ['created_at', 'id']

    def __str__(self):
        return f"{self.return_request.return_number}: {self.from_status} → {self.to_status}"


# ============================================================
# NOTIFICATION MODEL
# ============================================================

class Notification(models.Model):
    TYPE_CHOICES = [
        ('order', 'Order'),
        ('payment', 'Payment'),
        ('return', 'Return'),
    ]

    PRIORITY_CHOICES = [
        ('low', 'Low'),
        ('medium', 'Medium'),
        ('high', 'High'),
    ]

    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='notifications')
    title = models.CharField(max_length=200)
    message = models.TextField()
    type = models.CharField(max_length=20, choices=TYPE_CHOICES)
    event = models.CharField(max_length=50, db_index=True)
    priority = models.CharField(max_length=10, choices=PRIORITY_CHOICES, default='medium')
    metadata = models.JSONField(default=dict, blank=True)
    action_url = models.CharField(max_length=300, blank=True)
    is_read = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'notifications'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['user', 'is_read']),
        ]

    def __str__(self):
        return f"{self.event} → {self.user}"
