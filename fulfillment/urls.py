"""
Fulfillment Module URL Configuration
All URLs are prefixed with /api/v1/
"""

from django.urls import path

from . import views
from . import webhooks

urlpatterns = [
    # Payments
    path('payments/create-order/', views.create_payment_order, name='payment-create-order'),
    path('payments/verify/', views.verify_payment, name='payment-verify'),
    path('payments/cod/', views.place_cod_order, name='payment-cod'),
    path('payments/webhook/', webhooks.razorpay_webhook, name='payment-webhook'),

    # Coupons & shipping
    path('coupons/validate/', views.validate_coupon, name='coupon-validate'),
    path('coupons/best/', views.best_coupon, name='coupon-best'),
    path('shipping/calculate/', views.calculate_shipping, name='shipping-calculate'),

    # Orders
    path('orders/mine/', views.my_orders, name='my-orders'),
    path('orders/<int:order_id>/', views.get_order, name='order-detail'),
    path('orders/<int:order_id>/cancel/', views.cancel_customer_order, name='order-cancel'),
    path('orders/<int:order_id>/status/', views.update_order, name='order-status'),

    # Invoices
    path('invoices/mine/', views.my_invoices, name='my-invoices'),
    path('invoices/order/<int:order_id>/', views.get_order_invoice, name='order-invoice'),
    path('invoices/generate/', views.generate_invoice, name='invoice-generate'),

    # Returns - customer
    path('returns/', views.create_return, name='create-return'),
    path('returns/list/', views.list_returns, name='list-returns'),
    path('returns/check-eligibility/', views.check_eligibility, name='check-eligibility'),
    path('returns/<int:return_id>/', views.get_return_detail, name='return-detail'),
    path('returns/<int:return_id>/status/', views.get_status_history, name='return-status'),
    path('returns/<int:return_id>/cancel/', views.cancel_return, name='cancel-return'),

    # Returns - admin
    path('returns/stats/', views.return_stats, name='return-stats'),
    path('returns/<int:return_id>/admin-status/', views.update_return_status, name='return-admin-status'),
    path('returns/<int:return_id>/refund/', views.process_refund, name='return-refund'),
    path('returns/<int:return_id>/cod-refund/', views.process_cod_refund, name='return-cod-refund'),

    # Notifications
    path('notifications/', views.list_notifications, name='notification-list'),
    path('notifications/<int:notification_id>/read/', views.mark_notification_read, name='notification-read'),
]
