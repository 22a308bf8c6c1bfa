"""
Fulfillment Module - Coupon Engine

Validity, per-user eligibility, discount amount and best-of-N selection.
The calculators are pure; eligibility reads the user's order history and
fails closed on any lookup error.
"""

import logging
from decimal import Decimal

from django.conf import settings
from django.db import DatabaseError
from django.db.models import F, Q
from django.utils import timezone

from .models import Coupon, Order
from .utils import to_money

logger = logging.getLogger('fulfillment')


def normalize_code(code):
    return (code or '').strip().upper()


def find_coupon(code):
    """Case-insensitive lookup; returns None when the code is unknown."""
    code = normalize_code(code)
    if not code:
        return None
    return Coupon.objects.filter(code=code).first()


# ============================================================
# VALIDITY & ELIGIBILITY
# ============================================================

def is_valid(coupon, now=None):
    now = now or timezone.now()
    return (
        coupon.is_active
        and coupon.valid_from <= now <= coupon.valid_until
        and (coupon.usage_limit == 0 or coupon.used_count < coupon.usage_limit)
    )


def is_eligible(coupon, user, order_amount, now=None):
    """
    Can `user` apply `coupon` to an order worth `order_amount`?

    Rules, in order:
    1. Coupon is valid right now
    2. Order meets the minimum amount
    3. User is on the allow-list (when one is configured)
    4. First-time-only coupons need zero prior purchases
    5. Per-user cap: prior orders with this code < max_usage_per_user
    """
    if not is_valid(coupon, now):
        return False
    if to_money(order_amount) < coupon.minimum_order_amount:
        return False

    try:
        if coupon.pk and coupon.allowed_users.exists():
            if user is None or not coupon.allowed_users.filter(pk=user.pk).exists():
                return False

        if coupon.first_time_only:
            purchased_statuses = settings.FULFILLMENT['COUPON_PURCHASED_STATUSES']
            if Order.objects.filter(user=user, order_status__in=purchased_statuses).exists():
                return False

        if coupon.max_usage_per_user > 0:
            prior_uses = Order.objects.filter(
                user=user, coupon_code=coupon.code,
            ).exclude(order_status=Order.STATUS_CANCELLED).count()
            if prior_uses >= coupon.max_usage_per_user:
                return False
    except (DatabaseError, TypeError, ValueError):
        logger.exception(f'Coupon eligibility lookup failed for {coupon.code}; treating as ineligible')
        return False

    return True


# ============================================================
# DISCOUNT CALCULATION
# ============================================================

def calculate_discount(coupon, order_amount):
    """Discount in rupees. Never more than the order amount itself."""
    order_amount = to_money(order_amount)
    if order_amount <= 0:
        return Decimal('0.00')

    if coupon.discount_type == Coupon.PERCENTAGE:
        discount = order_amount * coupon.discount_value / Decimal('100')
        if coupon.maximum_discount > 0:
            discount = min(discount, coupon.maximum_discount)
    else:
        discount = coupon.discount_value

    return to_money(min(discount, order_amount))


def select_best(coupons, order_amount):
    """
    Pick the coupon giving the biggest discount. Ties are broken by the
    discount as a share of the order. Returns (coupon, discount) or None.
    """
    order_amount = to_money(order_amount)
    candidates = []
    for coupon in coupons:
        discount = calculate_discount(coupon, order_amount)
        if discount <= 0:
            continue
        share = discount / order_amount * 100 if order_amount > 0 else Decimal('0')
        candidates.append((discount, share, coupon))

    if not candidates:
        return None

    candidates.sort(key=lambda entry: (entry[0], entry[1]), reverse=True)
    discount, _, coupon = candidates[0]
    return coupon, discount


def best_coupon_for(user, order_amount, now=None):
    now = now or timezone.now()
    active = Coupon.objects.filter(is_active=True, valid_from__lte=now, valid_until__gte=now)
    eligible = [c for c in active if is_eligible(c, user, order_amount, now)]
    return select_best(eligible, order_amount)


# ============================================================
# REDEMPTION
# ============================================================

def redeem(code):
    """
    Consume one use of a coupon. A single conditional UPDATE, so two
    concurrent checkouts cannot push used_count past usage_limit.
    Returns True if a use was consumed.
    """
    updated = Coupon.objects.filter(code=normalize_code(code)).filter(
        Q(usage_limit=0) | Q(used_count__lt=F('usage_limit'))
    ).update(used_count=F('used_count') + 1, updated_at=timezone.now())

    if not updated:
        logger.warning(f'Coupon {normalize_code(code)} not redeemed: unknown code or usage limit reached')
    return bool(updated)
