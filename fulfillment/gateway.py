"""
Fulfillment Module - Payment Gateway Client

The reconciler and the return lifecycle receive a gateway object instead
of building one per call, so tests can pass a fake.

Contract this system relies on:
    create_order(amount, currency, receipt)   → {'id', 'amount', 'currency', 'status'}
    verify_signature(order_id, payment_id, signature) → bool
    fetch_payment(payment_id)                  → {'id', 'status', 'amount', 'currency', 'method'}
    refund(payment_id, amount=None, notes=None) → {'id', 'amount', 'status'}

Amounts cross this boundary in rupees; the Razorpay API itself uses paise.
"""

import hashlib
import hmac
import logging

import requests
from django.conf import settings

from .exceptions import GatewayError
from .utils import from_paise, to_paise

logger = logging.getLogger('fulfillment')

_gateway = None


def compute_signature(secret, message):
    """Hex HMAC-SHA256. `message` may be text or the raw request bytes."""
    if isinstance(message, str):
        message = message.encode('utf-8')
    return hmac.new(secret.encode('utf-8'), message, hashlib.sha256).hexdigest()


def signatures_match(expected, provided):
    return hmac.compare_digest(expected, provided or '')


class RazorpayGateway:

    def __init__(self, key_id, key_secret, base_url='https://api.razorpay.com/v1', timeout=15, session=None):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.auth = (key_id, key_secret)

    def _request(self, method, path, **kwargs):
        url = f'{self.base_url}{path}'
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.Timeout as exc:
            logger.error(f'Gateway timeout: {method} {path}')
            raise GatewayError('Payment gateway timed out') from exc
        except requests.RequestException as exc:
            logger.error(f'Gateway connection error: {method} {path}: {exc}')
            raise GatewayError('Payment gateway unreachable') from exc

        if response.status_code >= 400:
            try:
                description = response.json().get('error', {}).get('description', '')
            except ValueError:
                description = response.text[:200]
            logger.error(f'Gateway error {response.status_code}: {method} {path}: {description}')
            raise GatewayError(f'Payment gateway error: {description or response.status_code}')

        return response.json()

    def create_order(self, amount, currency='INR', receipt='', notes=None):
        data = self._request('POST', '/orders', json={
            'amount': to_paise(amount),
            'currency': currency,
            'receipt': receipt[:40],
            'payment_capture': 1,
            'notes': notes or {},
        })
        return {
            'id': data['id'],
            'amount': from_paise(data['amount']),
            'currency': data.get('currency', currency),
            'status': data.get('status'),
        }

    def verify_signature(self, order_id, payment_id, signature):
        expected = compute_signature(self.key_secret, f'{order_id}|{payment_id}')
        return signatures_match(expected, signature)

    def fetch_payment(self, payment_id):
        data = self._request('GET', f'/payments/{payment_id}')
        return {
            'id': data['id'],
            'status': data.get('status'),
            'amount': from_paise(data.get('amount', 0)),
            'currency': data.get('currency'),
            'method': data.get('method'),
        }

    def refund(self, payment_id, amount=None, notes=None):
        payload = {'notes': notes or {}}
        if amount is not None:
            payload['amount'] = to_paise(amount)
        data = self._request('POST', f'/payments/{payment_id}/refund', json=payload)
        return {
            'id': data['id'],
            'amount': from_paise(data.get('amount', 0)),
            'status': data.get('status'),
        }


def get_payment_gateway():
    """The process-wide gateway client, built once from settings."""
    global _gateway
    if _gateway is None:
        if not (settings.RAZORPAY_KEY_ID and settings.RAZORPAY_KEY_SECRET):
            logger.error('Razorpay credentials are missing')
        _gateway = RazorpayGateway(
            key_id=settings.RAZORPAY_KEY_ID,
            key_secret=settings.RAZORPAY_KEY_SECRET,
            base_url=settings.RAZORPAY_API_URL,
            timeout=settings.RAZORPAY_TIMEOUT,
        )
    return _gateway
