"""
Fulfillment Module - Django Admin Configuration

Internal panel for the operations team:
- Manage coupons and shipping rules
- Move orders through shipping and delivery
- Approve/reject returns and mark them received
- Inspect invoices and status timelines

Status changes go through the same services as the API, so the
transition rules and timestamps are identical.

Access at: http://127.0.0.1:8000/admin/
"""

from django.contrib import admin, messages

from .exceptions import FulfillmentError
from .models import (
    Coupon, Invoice, InvoiceItem, Notification, Order, OrderItem, OrderStatusHistory,
    Product, ReturnItem, ReturnRequest, ReturnStatusHistory, ShippingRule,
)
from .orders import update_order_status
from .returns import ReturnLifecycle


def _apply(modeladmin, request, queryset, action, label):
    """Run `action(obj)` per row; report successes and per-row refusals."""
    done = 0
    for obj in queryset:
        try:
            action(obj)
        except FulfillmentError as exc:
            modeladmin.message_user(request, f'{obj}: {exc.message}', level=messages.WARNING)
        else:
            done += 1
    modeladmin.message_user(request, f'{done} {label}.')


# ============================================================
# INLINE MODELS (shown inside parent model's page)
# ============================================================

class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ['product', 'name', 'quantity', 'price', 'image']


class OrderStatusHistoryInline(admin.TabularInline):
    model = OrderStatusHistory
    extra = 0
    readonly_fields = ['status', 'changed_by', 'created_at']


class InvoiceItemInline(admin.TabularInline):
    model = InvoiceItem
    extra = 0
    readonly_fields = ['product', 'name', 'quantity', 'unit_price', 'total_price', 'gst_rate', 'cgst', 'sgst', 'igst']


class ReturnItemInline(admin.TabularInline):
    model = ReturnItem
    extra = 0
    readonly_fields = ['product', 'name', 'quantity', 'price', 'reason', 'description']


class ReturnStatusHistoryInline(admin.TabularInline):
    """Show status timeline inside the ReturnRequest detail page."""
    model = ReturnStatusHistory
    extra = 0
    readonly_fields = ['from_status', 'to_status', 'changed_by', 'comment', 'created_at']
    ordering = ['-created_at']


# ============================================================
# CATALOG, COUPON & SHIPPING ADMIN
# ============================================================

@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ['name', 'price', 'stock', 'is_active']
    list_filter = ['is_active']
    search_fields = ['name']


@admin.register(Coupon)
class CouponAdmin(admin.ModelAdmin):
    list_display = [
        'code', 'discount_type', 'discount_value', 'minimum_order_amount',
        'used_count', 'usage_limit', 'valid_until', 'is_active',
    ]
    list_filter = ['discount_type', 'is_active', 'first_time_only']
    search_fields = ['code', 'description']
    readonly_fields = ['used_count', 'created_at', 'updated_at']
    filter_horizontal = ['allowed_users']

    fieldsets = (
        ('Coupon', {
            'fields': ('code', 'description', 'is_active')
        }),
        ('Discount', {
            'fields': ('discount_type', 'discount_value', 'minimum_order_amount', 'maximum_discount')
        }),
        ('Limits', {
            'fields': ('usage_limit', 'used_count', 'max_usage_per_user', 'first_time_only', 'allowed_users')
        }),
        ('Validity', {
            'fields': ('valid_from', 'valid_until')
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',),
        }),
    )


@admin.register(ShippingRule)
class ShippingRuleAdmin(admin.ModelAdmin):
    list_display = [
        'name', 'pincode_type', 'shipping_charges', 'free_shipping_threshold',
        'estimated_min_days', 'estimated_max_days', 'priority', 'is_active',
    ]
    list_filter = ['pincode_type', 'is_active']
    search_fields = ['name', 'description']
    ordering = ['priority', 'id']


# ============================================================
# ORDER ADMIN
# ============================================================

@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = [
        'order_number', 'user', 'total_price', 'payment_method',
        'payment_status', 'order_status', 'created_at',
    ]
    list_filter = ['order_status', 'payment_method', 'payment_status']
    search_fields = ['order_number', 'payment_id', 'user__username', 'user__email', 'shipping_name']
    readonly_fields = [
        'order_number', 'order_status', 'payment_id', 'gateway_order_id', 'items_price', 'tax_price',
        'shipping_price', 'discount', 'total_price', 'created_at', 'updated_at',
    ]
    list_per_page = 25
    inlines = [OrderItemInline, OrderStatusHistoryInline]

    fieldsets = (
        ('Order Info', {
            'fields': ('order_number', 'user', 'order_status', 'tracking_number', 'estimated_delivery')
        }),
        ('Shipping', {
            'fields': (
                'shipping_name', 'shipping_phone', 'shipping_address',
                'shipping_city', 'shipping_state', 'shipping_pincode',
            )
        }),
        ('Payment', {
            'fields': ('payment_method', 'payment_status', 'payment_id', 'gateway_order_id', 'paid_at')
        }),
        ('Pricing', {
            'fields': (
                'items_price', 'tax_price', 'shipping_price', 'discount', 'total_price',
                'coupon_code', 'coupon_discount_applied',
            )
        }),
        ('Refund', {
            'fields': ('refund_id', 'refund_amount', 'refund_status', 'refunded_at'),
            'classes': ('collapse',),
        }),
        ('Timestamps', {
            'fields': ('shipped_at', 'delivered_at', 'cancelled_at', 'created_at', 'updated_at'),
            'classes': ('collapse',),
        }),
    )

    # order_status is read-only on the form; it moves only through these actions
    actions = ['mark_shipped', 'mark_delivered', 'mark_cancelled']

    @admin.action(description='Mark selected orders as Shipped')
    def mark_shipped(self, request, queryset):
        _apply(self, request, queryset,
               lambda order: update_order_status(order.pk, Order.STATUS_SHIPPED, request.user),
               'order(s) marked shipped')

    @admin.action(description='Mark selected orders as Delivered')
    def mark_delivered(self, request, queryset):
        _apply(self, request, queryset,
               lambda order: update_order_status(order.pk, Order.STATUS_DELIVERED, request.user),
               'order(s) marked delivered')

    @admin.action(description='Cancel selected orders and restock')
    def mark_cancelled(self, request, queryset):
        _apply(self, request, queryset,
               lambda order: update_order_status(order.pk, Order.STATUS_CANCELLED, request.user),
               'order(s) cancelled')


# ============================================================
# INVOICE ADMIN
# ============================================================

@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ['invoice_number', 'get_order_number', 'total_amount', 'payment_status', 'invoice_date']
    list_filter = ['payment_status', 'payment_method']
    search_fields = ['invoice_number', 'order__order_number', 'billing_name']
    readonly_fields = ['invoice_number', 'invoice_date', 'due_date', 'created_at']
    inlines = [InvoiceItemInline]

    def get_order_number(self, obj):
        return obj.order.order_number
    get_order_number.short_description = 'Order Number'


# ============================================================
# RETURN REQUEST ADMIN
# ============================================================

@admin.register(ReturnRequest)
class ReturnRequestAdmin(admin.ModelAdmin):
    list_display = [
        'return_number', 'get_order_number', 'user', 'status',
        'refund_method', 'refund_amount', 'created_at',
    ]
    list_filter = ['status', 'refund_method', 'refund_status']
    search_fields = ['return_number', 'order__order_number', 'user__username', 'refund_id']
    readonly_fields = [
        'return_number', 'status', 'refund_id', 'refund_amount', 'refund_status', 'refunded_at',
        'requested_at', 'approved_at', 'rejected_at', 'return_shipped_at', 'return_received_at',
        'refund_processed_at', 'completed_at', 'cancelled_at', 'created_at', 'updated_at',
    ]
    list_per_page = 25
    inlines = [ReturnItemInline, ReturnStatusHistoryInline]

    fieldsets = (
        ('Return Info', {
            'fields': ('return_number', 'order', 'user', 'status', 'return_reason', 'admin_notes')
        }),
        ('Return Address', {
            'fields': (
                'return_name', 'return_phone', 'return_address',
                'return_city', 'return_state', 'return_pincode',
                'tracking_number', 'return_tracking_number',
            )
        }),
        ('Refund Info', {
            'fields': (
                'refund_method', 'refund_id', 'refund_amount', 'refund_status', 'refund_reason', 'refunded_at',
            )
        }),
        ('Bank / UPI Proof', {
            'fields': (
                'bank_transaction_id', 'bank_name', 'bank_account_number', 'bank_ifsc_code',
                'bank_reference_number', 'bank_transfer_date',
                'upi_id', 'upi_transaction_id', 'upi_transfer_date',
            ),
            'classes': ('collapse',),
        }),
        ('Timeline', {
            'fields': (
                'requested_at', 'approved_at', 'rejected_at', 'return_shipped_at', 'return_received_at',
                'refund_processed_at', 'completed_at', 'cancelled_at', 'created_at', 'updated_at',
            ),
            'classes': ('collapse',),
        }),
    )

    def get_order_number(self, obj):
        return obj.order.order_number
    get_order_number.short_description = 'Order Number'

    actions = ['approve_returns', 'reject_returns', 'mark_received']

    def _move(self, request, queryset, new_status, label):
        lifecycle = ReturnLifecycle()
        _apply(self, request, queryset,
               lambda ret: lifecycle.update_status(ret.pk, new_status, request.user,
                                                   admin_notes=f'{label} via admin panel'),
               f'return(s) {label.lower()}')

    @admin.action(description='Approve selected returns')
    def approve_returns(self, request, queryset):
        self._move(request, queryset, ReturnRequest.STATUS_APPROVED, 'Approved')

    @admin.action(description='Reject selected returns')
    def reject_returns(self, request, queryset):
        self._move(request, queryset, ReturnRequest.STATUS_REJECTED, 'Rejected')

    @admin.action(description='Mark as Return Received')
    def mark_received(self, request, queryset):
        self._move(request, queryset, ReturnRequest.STATUS_RETURN_RECEIVED, 'Received')


@admin.register(ReturnStatusHistory)
class ReturnStatusHistoryAdmin(admin.ModelAdmin):
    list_display = ['get_return_number', 'from_status', 'to_status', 'changed_by', 'created_at']
    list_filter = ['to_status', 'changed_by']
    search_fields = ['return_request__return_number', 'comment']
    readonly_fields = ['return_request', 'from_status', 'to_status', 'changed_by', 'comment', 'created_at']
    list_per_page = 50

    def get_return_number(self, obj):
        return obj.return_request.return_number
    get_return_number.short_description = 'Return Number'


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ['event', 'user', 'title', 'priority', 'is_read', 'created_at']
    list_filter = ['type', 'event', 'priority', 'is_read']
    search_fields = ['user__username', 'title', 'message']
