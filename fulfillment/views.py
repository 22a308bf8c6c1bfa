"""
Fulfillment Module - API Views

Thin HTTP layer: validate the payload with a serializer, call the
service, translate FulfillmentError into {'error': message}.
"""

import logging

from django.conf import settings
from django.db.models import Count, Sum
from drf_spectacular.utils import extend_schema
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes, throttle_classes
from rest_framework.pagination import PageNumberPagination
from rest_framework.permissions import AllowAny, IsAdminUser
from rest_framework.response import Response
from rest_framework.throttling import UserRateThrottle

from . import coupons
from .exceptions import FulfillmentError
from .gateway import get_payment_gateway
from .invoicing import build_invoice
from .models import Invoice, Notification, Order, ReturnRequest
from .orders import cancel_order, update_order_status
from .reconciliation import PaymentReconciler
from .returns import ReturnLifecycle
from .serializers import (
    CheckEligibilitySerializer,
    CheckoutSerializer,
    CODRefundSerializer,
    CouponSerializer,
    CouponValidateSerializer,
    CreatePaymentOrderSerializer,
    CreateReturnRequestSerializer,
    GenerateInvoiceSerializer,
    InvoiceListSerializer,
    InvoiceSerializer,
    NotificationSerializer,
    OrderAmountSerializer,
    OrderListSerializer,
    OrderSerializer,
    OrderStatusUpdateSerializer,
    RefundSerializer,
    ReturnRequestListSerializer,
    ReturnRequestSerializer,
    ReturnStatusHistorySerializer,
    ReturnStatusUpdateSerializer,
    ShippingCalculateSerializer,
    ShippingEstimateSerializer,
    VerifyPaymentSerializer,
)
from .shipping import ShippingCostEstimator
from .utils import to_money

logger = logging.getLogger('fulfillment')


class PaymentThrottle(UserRateThrottle):
    scope = 'payment'


class ReturnCreateThrottle(UserRateThrottle):
    scope = 'return_create'


# ============================================================
# HELPER FUNCTIONS
# ============================================================

def _error(exc):
    return Response({'error': exc.message}, status=exc.status_code)


def _reconciler():
    return PaymentReconciler(gateway=get_payment_gateway())


def _lifecycle():
    return ReturnLifecycle(gateway=get_payment_gateway())


def _checkout_payload(data):
    """Serializer output → the plain dict the reconciler works on."""
    payload = {
        'items': [dict(item) for item in data['items']],
        'shipping_info': dict(data['shipping_info']),
        'coupon_code': data.get('coupon_code', ''),
        'notes': data.get('notes', ''),
    }
    if data.get('billing_info'):
        payload['billing_info'] = dict(data['billing_info'])
    if data.get('shipping_price') is not None:
        payload['shipping_price'] = data['shipping_price']
    return payload


def _order_response(result):
    return Response(
        {
            'order': OrderSerializer(result.order).data,
            'created': result.created,
            'failed_steps': result.failed_steps,
        },
        status=status.HTTP_201_CREATED if result.created else status.HTTP_200_OK,
    )


def _get_owned(queryset, pk, user):
    """Fetch a row the user owns (staff can see everything)."""
    obj = queryset.filter(pk=pk).first()
    if obj is None or (obj.user_id != user.pk and not user.is_staff):
        return None
    return obj


# ============================================================
# PAYMENTS
# ============================================================

@extend_schema(request=CreatePaymentOrderSerializer)
@api_view(['POST'])
@throttle_classes([PaymentThrottle])
def create_payment_order(request):
    """
    POST /api/v1/payments/create-order/

    Create a gateway order the storefront opens checkout against.
    """
    serializer = CreatePaymentOrderSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    try:
        gateway_order = _reconciler().create_gateway_order(
            serializer.validated_data['amount'],
            receipt=serializer.validated_data.get('receipt', ''),
        )
    except FulfillmentError as exc:
        return _error(exc)

    return Response({
        'order_id': gateway_order['id'],
        'amount': str(gateway_order['amount']),
        'currency': gateway_order['currency'],
        'key_id': settings.RAZORPAY_KEY_ID,
    }, status=status.HTTP_201_CREATED)


@extend_schema(request=VerifyPaymentSerializer)
@api_view(['POST'])
@throttle_classes([PaymentThrottle])
def verify_payment(request):
    """
    POST /api/v1/payments/verify/

    Called by the storefront after the gateway checkout succeeds. Verifies
    the signature, records the order and returns it. Retrying with the
    same payment returns the same order (200 instead of 201).
    """
    serializer = VerifyPaymentSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    data = serializer.validated_data
    try:
        result = _reconciler().confirm_online_payment(
            request.user,
            gateway_order_id=data['razorpay_order_id'],
            payment_id=data['razorpay_payment_id'],
            signature=data['razorpay_signature'],
            order_data=_checkout_payload(data),
        )
    except FulfillmentError as exc:
        return _error(exc)

    return _order_response(result)


@extend_schema(request=CheckoutSerializer)
@api_view(['POST'])
@throttle_classes([PaymentThrottle])
def place_cod_order(request):
    """POST /api/v1/payments/cod/"""
    serializer = CheckoutSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    try:
        result = _reconciler().place_cod_order(request.user, _checkout_payload(serializer.validated_data))
    except FulfillmentError as exc:
        return _error(exc)

    return _order_response(result)


# ============================================================
# COUPONS
# ============================================================

@extend_schema(request=CouponValidateSerializer)
@api_view(['POST'])
def validate_coupon(request):
    """
    POST /api/v1/coupons/validate/

    Request: {"code": "WELCOME10", "order_amount": "1500.00"}
    Response: {"valid": true, "discount": "150.00", "coupon": {...}}
    """
    serializer = CouponValidateSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    order_amount = serializer.validated_data['order_amount']
    coupon = coupons.find_coupon(serializer.validated_data['code'])
    if coupon is None:
        return Response({'error': 'Invalid coupon code'}, status=status.HTTP_404_NOT_FOUND)

    if not coupons.is_eligible(coupon, request.user, order_amount):
        return Response({
            'valid': False,
            'error': 'Coupon is not applicable to this order',
        }, status=status.HTTP_400_BAD_REQUEST)

    discount = coupons.calculate_discount(coupon, order_amount)
    return Response({
        'valid': True,
        'discount': str(discount),
        'final_amount': str(order_amount - discount),
        'coupon': CouponSerializer(coupon).data,
    })


@extend_schema(request=OrderAmountSerializer)
@api_view(['POST'])
def best_coupon(request):
    """POST /api/v1/coupons/best/ - the eligible coupon with the largest discount"""
    serializer = OrderAmountSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    best = coupons.best_coupon_for(request.user, serializer.validated_data['order_amount'])
    if best is None:
        return Response({'coupon': None, 'discount': '0.00'})

    coupon, discount = best
    return Response({'coupon': CouponSerializer(coupon).data, 'discount': str(discount)})


# ============================================================
# SHIPPING
# ============================================================

@extend_schema(request=ShippingCalculateSerializer, responses=ShippingEstimateSerializer)
@api_view(['POST'])
@permission_classes([AllowAny])
def calculate_shipping(request):
    """POST /api/v1/shipping/calculate/"""
    serializer = ShippingCalculateSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    estimate = ShippingCostEstimator().estimate(
        serializer.validated_data['pincode'],
        serializer.validated_data['order_amount'],
    )
    return Response(ShippingEstimateSerializer(estimate).data)


# ============================================================
# ORDERS
# ============================================================

@api_view(['GET'])
def my_orders(request):
    """
    GET /api/v1/orders/mine/

    The customer's own order history, newest first.

    Query params:
    - status: Filter by order status
    - page: Page number (20 per page)
    """
    queryset = Order.objects.filter(user=request.user).order_by('-created_at', '-id')
    status_filter = request.query_params.get('status')
    if status_filter:
        queryset = queryset.filter(order_status=status_filter)

    paginator = PageNumberPagination()
    page = paginator.paginate_queryset(queryset, request)
    return paginator.get_paginated_response(OrderListSerializer(page, many=True).data)


@api_view(['GET'])
def get_order(request, order_id):
    """GET /api/v1/orders/{id}/"""
    order = _get_owned(
        Order.objects.prefetch_related('items', 'status_history'), order_id, request.user,
    )
    if order is None:
        return Response({'error': 'Order not found'}, status=status.HTTP_404_NOT_FOUND)
    return Response(OrderSerializer(order).data)


@api_view(['POST'])
def cancel_customer_order(request, order_id):
    """POST /api/v1/orders/{id}/cancel/"""
    try:
        order = cancel_order(request.user, order_id)
    except FulfillmentError as exc:
        return _error(exc)
    return Response({
        'message': 'Order cancelled successfully',
        'order_number': order.order_number,
        'order_status': order.order_status,
    })


@extend_schema(request=OrderStatusUpdateSerializer)
@api_view(['PUT'])
@permission_classes([IsAdminUser])
def update_order(request, order_id):
    """PUT /api/v1/orders/{id}/status/ (admin)"""
    serializer = OrderStatusUpdateSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    try:
        order = update_order_status(
            order_id,
            serializer.validated_data['status'],
            request.user,
            tracking_number=serializer.validated_data.get('tracking_number', ''),
        )
    except FulfillmentError as exc:
        return _error(exc)
    return Response(OrderSerializer(order).data)


# ============================================================
# INVOICES
# ============================================================

@api_view(['GET'])
def my_invoices(request):
    """GET /api/v1/invoices/mine/?page=1"""
    queryset = (
        Invoice.objects.select_related('order')
        .filter(user=request.user)
        .order_by('-invoice_date', '-id')
    )
    paginator = PageNumberPagination()
    page = paginator.paginate_queryset(queryset, request)
    return paginator.get_paginated_response(InvoiceListSerializer(page, many=True).data)


@api_view(['GET'])
def get_order_invoice(request, order_id):
    """
    GET /api/v1/invoices/order/{order_id}/

    COD invoices are only released once the order is delivered.
    """
    invoice = Invoice.objects.select_related('order').prefetch_related('items').filter(order_id=order_id).first()
    if invoice is None or (invoice.user_id != request.user.pk and not request.user.is_staff):
        return Response({'error': 'Invoice not found'}, status=status.HTTP_404_NOT_FOUND)

    if invoice.order.is_cod and invoice.order.order_status != Order.STATUS_DELIVERED and not request.user.is_staff:
        return Response(
            {'error': 'Invoice download will be available after delivery for Cash on Delivery orders'},
            status=status.HTTP_403_FORBIDDEN,
        )
    return Response(InvoiceSerializer(invoice).data)


@extend_schema(request=GenerateInvoiceSerializer)
@api_view(['POST'])
@permission_classes([IsAdminUser])
def generate_invoice(request):
    """
    POST /api/v1/invoices/generate/ (admin)

    Backfill an invoice that the checkout pipeline failed to create.
    Returns the existing invoice when there already is one.
    """
    serializer = GenerateInvoiceSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    order = Order.objects.filter(pk=serializer.validated_data['order_id']).first()
    if order is None:
        return Response({'error': 'Order not found'}, status=status.HTTP_404_NOT_FOUND)
    if order.is_cod and order.order_status != Order.STATUS_DELIVERED:
        return Response(
            {'error': 'Invoice for Cash on Delivery orders can be generated after delivery'},
            status=status.HTTP_400_BAD_REQUEST,
        )

    existed = Invoice.objects.filter(order=order).exists()
    billing = serializer.validated_data.get('billing_info')
    invoice = build_invoice(order, billing_address=dict(billing) if billing else None)
    return Response(
        InvoiceSerializer(invoice).data,
        status=status.HTTP_200_OK if existed else status.HTTP_201_CREATED,
    )


# ============================================================
# RETURNS - CUSTOMER
# ============================================================

@extend_schema(request=CreateReturnRequestSerializer, responses=ReturnRequestSerializer)
@api_view(['POST'])
@throttle_classes([ReturnCreateThrottle])
def create_return(request):
    """
    POST /api/v1/returns/

    Create a return request for a delivered order.
    """
    serializer = CreateReturnRequestSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    data = serializer.validated_data
    try:
        return_request = _lifecycle().create(
            request.user,
            data['order_id'],
            [dict(item) for item in data['items']],
            data['return_reason'],
            return_address=dict(data['return_address']) if data.get('return_address') else None,
        )
    except FulfillmentError as exc:
        return _error(exc)

    return Response(ReturnRequestSerializer(return_request).data, status=status.HTTP_201_CREATED)


@extend_schema(request=CheckEligibilitySerializer)
@api_view(['POST'])
def check_eligibility(request):
    """
    POST /api/v1/returns/check-eligibility/

    Request: {"order_id": 123}
    Response: {"eligible": true, "return_window_days": 7, "days_remaining": 3, ...}
    """
    serializer = CheckEligibilitySerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    order = _get_owned(Order.objects.all(), serializer.validated_data['order_id'], request.user)
    if order is None:
        return Response({'error': 'Order not found'}, status=status.HTTP_404_NOT_FOUND)
    return Response(_lifecycle().check_eligibility(order))


@api_view(['GET'])
def list_returns(request):
    """
    GET /api/v1/returns/list/

    Customers see their own returns; staff see all of them.

    Query params:
    - status: Filter by status
    - order_id: Filter by order
    - page: Page number (20 per page)
    """
    queryset = ReturnRequest.objects.select_related('order').order_by('-created_at', '-id')
    if not request.user.is_staff:
        queryset = queryset.filter(user=request.user)

    status_filter = request.query_params.get('status')
    order_id = request.query_params.get('order_id')
    if status_filter:
        queryset = queryset.filter(status=status_filter)
    if order_id:
        if not order_id.isdigit():
            return Response({'error': 'Invalid order_id'}, status=status.HTTP_400_BAD_REQUEST)
        queryset = queryset.filter(order_id=int(order_id))

    paginator = PageNumberPagination()
    page = paginator.paginate_queryset(queryset, request)
    return paginator.get_paginated_response(ReturnRequestListSerializer(page, many=True).data)


@api_view(['GET'])
def get_return_detail(request, return_id):
    """GET /api/v1/returns/{id}/"""
    return_request = _get_owned(
        ReturnRequest.objects.select_related('order').prefetch_related('items', 'status_history'),
        return_id, request.user,
    )
    if return_request is None:
        return Response({'error': 'Return request not found'}, status=status.HTTP_404_NOT_FOUND)
    return Response(ReturnRequestSerializer(return_request).data)


@api_view(['GET'])
def get_status_history(request, return_id):
    """
    GET /api/v1/returns/{id}/status/

    The status timeline for "Track your return".
    """
    return_request = _get_owned(ReturnRequest.objects.all(), return_id, request.user)
    if return_request is None:
        return Response({'error': 'Return request not found'}, status=status.HTTP_404_NOT_FOUND)

    history = return_request.status_history.order_by('created_at', 'id')
    return Response({
        'return_number': return_request.return_number,
        'current_status': return_request.status,
        'timeline': ReturnStatusHistorySerializer(history, many=True).data,
    })


@api_view(['POST'])
def cancel_return(request, return_id):
    """POST /api/v1/returns/{id}/cancel/ - only while pending"""
    try:
        return_request = _lifecycle().cancel(request.user, return_id)
    except FulfillmentError as exc:
        return _error(exc)

    return Response({
        'message': 'Return request cancelled successfully',
        'return_number': return_request.return_number,
        'status': return_request.status,
    })


# ============================================================
# RETURNS - ADMIN
# ============================================================

@api_view(['GET'])
@permission_classes([IsAdminUser])
def return_stats(request):
    """
    GET /api/v1/returns/stats/ (admin)

    Return counts per status, the total refunded so far and the five
    latest requests for the dashboard.
    """
    queryset = ReturnRequest.objects.all()
    by_status = {
        row['status']: row['count']
        for row in queryset.order_by().values('status').annotate(count=Count('id'))
    }
    refunded = queryset.filter(refund_status='processed').aggregate(total=Sum('refund_amount'))['total']
    recent = queryset.select_related('order').order_by('-created_at', '-id')[:5]

    return Response({
        'total_returns': sum(by_status.values()),
        'by_status': by_status,
        'refunded_total': str(to_money(refunded or 0)),
        'refunded_count': queryset.filter(refund_status='processed').count(),
        'recent_returns': ReturnRequestListSerializer(recent, many=True).data,
    })


@extend_schema(request=ReturnStatusUpdateSerializer, responses=ReturnRequestSerializer)
@api_view(['PUT'])
@permission_classes([IsAdminUser])
def update_return_status(request, return_id):
    """PUT /api/v1/returns/{id}/admin-status/"""
    serializer = ReturnStatusUpdateSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    data = serializer.validated_data
    try:
        return_request = _lifecycle().update_status(
            return_id,
            data['status'],
            request.user,
            admin_notes=data.get('admin_notes', ''),
            tracking_number=data.get('tracking_number', ''),
            return_tracking_number=data.get('return_tracking_number', ''),
        )
    except FulfillmentError as exc:
        return _error(exc)
    return Response(ReturnRequestSerializer(return_request).data)


@extend_schema(request=RefundSerializer, responses=ReturnRequestSerializer)
@api_view(['POST'])
@permission_classes([IsAdminUser])
def process_refund(request, return_id):
    """
    POST /api/v1/returns/{id}/refund/ (admin)

    Refund an online payment through the gateway. Amount defaults to the
    full order total.
    """
    serializer = RefundSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    try:
        return_request = _lifecycle().process_online_refund(
            return_id,
            request.user,
            amount=serializer.validated_data.get('amount'),
            reason=serializer.validated_data.get('reason', ''),
        )
    except FulfillmentError as exc:
        return _error(exc)
    return Response(ReturnRequestSerializer(return_request).data)


@extend_schema(request=CODRefundSerializer, responses=ReturnRequestSerializer)
@api_view(['POST'])
@permission_classes([IsAdminUser])
def process_cod_refund(request, return_id):
    """
    POST /api/v1/returns/{id}/cod-refund/ (admin)

    Record a COD refund paid by bank transfer, UPI or cash.
    """
    serializer = CODRefundSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    data = dict(serializer.validated_data)
    refund_method = data.pop('refund_method')
    amount = data.pop('amount', None)
    reason = data.pop('reason', '')
    try:
        return_request = _lifecycle().process_cod_refund(
            return_id, request.user, refund_method, amount=amount, reason=reason, proof=data,
        )
    except FulfillmentError as exc:
        return _error(exc)
    return Response(ReturnRequestSerializer(return_request).data)


# ============================================================
# NOTIFICATIONS
# ============================================================

@api_view(['GET'])
def list_notifications(request):
    """GET /api/v1/notifications/?unread=true"""
    queryset = Notification.objects.filter(user=request.user).order_by('-created_at', '-id')
    if request.query_params.get('unread', '').lower() == 'true':
        queryset = queryset.filter(is_read=False)

    paginator = PageNumberPagination()
    page = paginator.paginate_queryset(queryset, request)
    return paginator.get_paginated_response(NotificationSerializer(page, many=True).data)


@api_view(['POST'])
def mark_notification_read(request, notification_id):
    """POST /api/v1/notifications/{id}/read/"""
    updated = Notification.objects.filter(pk=notification_id, user=request.user).update(is_read=True)
    if not updated:
        return Response({'error': 'Notification not found'}, status=status.HTTP_404_NOT_FOUND)
    return Response({'message': 'Notification marked as read'})
