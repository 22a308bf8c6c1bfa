"""
Fulfillment Module - Shipping Cost Estimator

Rules are checked in ascending priority; the first active rule whose
pincode list or pincode range matches wins. No match falls back to the
catch-all ("all") rule, then to the configured default charge.
"""

import re
from datetime import timedelta

from django.conf import settings
from django.utils import timezone

from .models import ShippingRule
from .utils import to_money

PINCODE_RE = re.compile(r'^[1-9][0-9]{5}$')


def is_valid_pincode(pincode):
    return bool(PINCODE_RE.match(str(pincode or '')))


def rule_matches(rule, pincode):
    if not rule.is_active:
        return False
    if pincode in (rule.pincodes or []):
        return True
    # Pincodes are fixed-width digit strings, so string comparison is numeric order
    for pincode_range in rule.pincode_ranges or []:
        if pincode_range['start'] <= pincode <= pincode_range['end']:
            return True
    return False


def rule_charge(rule, order_amount):
    if to_money(order_amount) >= rule.free_shipping_threshold:
        return to_money(0)
    return to_money(rule.shipping_charges)


class ShippingCostEstimator:

    def __init__(self, rules=None):
        if rules is None:
            rules = ShippingRule.objects.filter(is_active=True)
        self.rules = sorted(
            (r for r in rules if r.is_active),
            key=lambda r: (r.priority, r.pk or 0),
        )

    def matching_rules(self, pincode):
        return [rule for rule in self.rules if rule_matches(rule, pincode)]

    def find_rule(self, pincode):
        for rule in self.rules:
            if rule_matches(rule, pincode):
                return rule
        for rule in self.rules:
            if rule.pincode_type == 'all':
                return rule
        return None

    def estimate(self, pincode, order_amount, now=None):
        """Shipping charge and delivery window for an order to `pincode`."""
        policy = settings.FULFILLMENT
        now = now or timezone.now()
        order_amount = to_money(order_amount)

        rule = self.find_rule(pincode)
        if rule is not None:
            charge = rule_charge(rule, order_amount)
            min_days, max_days = rule.estimated_min_days, rule.estimated_max_days
            threshold = rule.free_shipping_threshold
        else:
            threshold = to_money(policy['FREE_SHIPPING_THRESHOLD'])
            charge = to_money(0) if order_amount >= threshold else to_money(policy['DEFAULT_SHIPPING_CHARGE'])
            min_days, max_days = policy['DEFAULT_DELIVERY_DAYS']

        return {
            'pincode': pincode,
            'order_amount': order_amount,
            'shipping_charges': charge,
            'free_shipping_threshold': to_money(threshold),
            'estimated_delivery': {
                'min': min_days,
                'max': max_days,
                'min_date': (now + timedelta(days=min_days)).date(),
                'max_date': (now + timedelta(days=max_days)).date(),
            },
            'rule': {'name': rule.name, 'description': rule.description} if rule else None,
        }
