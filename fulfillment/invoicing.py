"""
Fulfillment Module - Tax Invoice Builder

GST RULES:
    GST per line = line total x GST rate / 100
    Billing state == shipping state → intra-state: CGST = SGST = GST / 2
    Otherwise                       → inter-state: IGST = GST

Amounts in words use Indian numbering (crore / lakh / thousand).
"""

import logging
import uuid
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from .models import Invoice, InvoiceItem, Order
from .utils import to_money

logger = logging.getLogger('fulfillment')

ONES = ['', 'One', 'Two', 'Three', 'Four', 'Five', 'Six', 'Seven', 'Eight', 'Nine']
TEENS = ['Ten', 'Eleven', 'Twelve', 'Thirteen', 'Fourteen', 'Fifteen',
         'Sixteen', 'Seventeen', 'Eighteen', 'Nineteen']
TENS = ['', '', 'Twenty', 'Thirty', 'Forty', 'Fifty', 'Sixty', 'Seventy', 'Eighty', 'Ninety']


# ============================================================
# GST CALCULATION
# ============================================================

def default_gst_rate():
    return Decimal(str(settings.FULFILLMENT['GST_RATE']))


def line_gst(line_total, gst_rate):
    return to_money(to_money(line_total) * Decimal(str(gst_rate)) / Decimal('100'))


def split_gst(line_total, gst_rate, same_state):
    gst = line_gst(line_total, gst_rate)
    if same_state:
        # Halves of a paise amount fit in three decimals, stored exactly
        half = gst / 2
        return {'gst': gst, 'cgst': half, 'sgst': half, 'igst': to_money(0)}
    return {'gst': gst, 'cgst': to_money(0), 'sgst': to_money(0), 'igst': gst}


def order_tax(lines, gst_rate=None):
    """
    Total GST over (unit_price, quantity) pairs, rounded per line exactly
    the way the invoice does it so order tax and invoice tax agree.
    """
    gst_rate = default_gst_rate() if gst_rate is None else gst_rate
    total = Decimal('0.00')
    for unit_price, quantity in lines:
        total += line_gst(to_money(unit_price) * quantity, gst_rate)
    return to_money(total)


def same_state(billing_state, shipping_state):
    return (billing_state or '').strip().lower() == (shipping_state or '').strip().lower()


# ============================================================
# AMOUNT IN WORDS
# ============================================================

def _below_thousand(num):
    if num == 0:
        return ''
    if num < 10:
        return ONES[num]
    if num < 20:
        return TEENS[num - 10]
    if num < 100:
        return TENS[num // 10] + (' ' + ONES[num % 10] if num % 10 else '')
    rest = num % 100
    return ONES[num // 100] + ' Hundred' + (' and ' + _below_thousand(rest) if rest else '')


def amount_in_words(amount):
    """1180.50 → 'One Thousand One Hundred and Eighty Rupees Only'"""
    num = int(to_money(amount))
    if num <= 0:
        return 'Zero Rupees Only'

    crore = num // 10000000
    lakh = (num % 10000000) // 100000
    thousand = (num % 100000) // 1000
    remainder = num % 1000

    parts = []
    if crore:
        # Amounts past 999 crore still read as "<n> Crore"
        parts.append((amount_in_words(crore).replace(' Rupees Only', '') if crore >= 1000
                      else _below_thousand(crore)) + ' Crore')
    if lakh:
        parts.append(_below_thousand(lakh) + ' Lakh')
    if thousand:
        parts.append(_below_thousand(thousand) + ' Thousand')
    if remainder:
        parts.append(_below_thousand(remainder))

    return ' '.join(parts) + ' Rupees Only'


# ============================================================
# INVOICE CREATION
# ============================================================

def generate_invoice_number(now=None):
    now = now or timezone.now()
    return f"INV-{now:%Y%m}-{uuid.uuid4().hex[:8].upper()}"


def _address_from_order(order):
    return {
        'name': order.shipping_name,
        'address': order.shipping_address,
        'city': order.shipping_city,
        'state': order.shipping_state,
        'pincode': order.shipping_pincode,
        'phone': order.shipping_phone,
    }


def build_invoice(order, billing_address=None, gst_rate=None):
    """
    Create the invoice for an order. Idempotent: an order that already has
    an invoice gets it back unchanged (number and due date are never
    regenerated). Billing address defaults to the shipping address.
    """
    existing = Invoice.objects.filter(order=order).first()
    if existing:
        return existing

    gst_rate = default_gst_rate() if gst_rate is None else Decimal(str(gst_rate))
    shipping = _address_from_order(order)
    billing = dict(shipping, **(billing_address or {}))
    intra_state = same_state(billing['state'], shipping['state'])

    invoice_date = timezone.now()
    due_days = settings.FULFILLMENT['INVOICE_DUE_DAYS']

    lines = []
    totals = {'cgst': Decimal('0.00'), 'sgst': Decimal('0.00'), 'igst': Decimal('0.00')}
    for item in order.items.all():
        line_total = to_money(item.price * item.quantity)
        split = split_gst(line_total, gst_rate, intra_state)
        for key in totals:
            totals[key] += split[key]
        lines.append((item, line_total, split))

    is_cod = order.payment_method == Order.METHOD_COD

    with transaction.atomic():
        invoice = Invoice.objects.create(
            invoice_number=generate_invoice_number(invoice_date),
            order=order,
            user=order.user,
            invoice_date=invoice_date,
            due_date=invoice_date + timedelta(days=due_days),
            billing_name=billing['name'],
            billing_address=billing['address'],
            billing_city=billing['city'],
            billing_state=billing['state'],
            billing_pincode=billing['pincode'],
            billing_phone=billing['phone'],
            shipping_name=shipping['name'],
            shipping_address=shipping['address'],
            shipping_city=shipping['city'],
            shipping_state=shipping['state'],
            shipping_pincode=shipping['pincode'],
            shipping_phone=shipping['phone'],
            subtotal=to_money(order.items_price),
            cgst_total=totals['cgst'],
            sgst_total=totals['sgst'],
            igst_total=totals['igst'],
            shipping_charges=to_money(order.shipping_price),
            discount=to_money(order.coupon_discount_applied or order.discount),
            total_amount=to_money(order.total_price),
            amount_in_words=amount_in_words(order.total_price),
            payment_status='Pending' if is_cod else 'Paid',
            payment_method=order.payment_method,
            payment_date=None if is_cod else order.paid_at,
            company_info=settings.FULFILLMENT['COMPANY_INFO'],
        )
        InvoiceItem.objects.bulk_create([
            InvoiceItem(
                invoice=invoice,
                product_id=item.product_id,
                name=item.name,
                quantity=item.quantity,
                unit_price=item.price,
                total_price=line_total,
                gst_rate=gst_rate,
                cgst=split['cgst'],
                sgst=split['sgst'],
                igst=split['igst'],
            )
            for item, line_total, split in lines
        ])

    logger.info(f'Invoice {invoice.invoice_number} created for order {order.order_number}')
    return invoice
