"""
Return lifecycle: creation rules, transitions, refunds.

Orders come from make_order(): 2 x Rs.500 ghee, total Rs.1180.
"""

from datetime import timedelta
from decimal import Decimal

from django.utils import timezone

from fulfillment.exceptions import (
    AuthorizationFailed, Conflict, GatewayError, NotFound, ValidationFailed,
)
from fulfillment.models import Notification, Order, ReturnRequest, ReturnStatusHistory
from fulfillment.returns import ReturnLifecycle, can_transition

from .base import BaseTestCase, FakeGateway

R = ReturnRequest


class ReturnTestCase(BaseTestCase):

    def setUp(self):
        super().setUp()
        self.gateway = FakeGateway()
        self.lifecycle = ReturnLifecycle(gateway=self.gateway)
        self.order = self.make_order()
        self.items = [{'product': self.ghee.pk, 'quantity': 1, 'reason': 'damaged_during_shipping'}]

    def create(self, order=None, user=None, items=None, now=None):
        return self.lifecycle.create(
            user or self.customer,
            (order or self.order).pk,
            items or self.items,
            'Jar arrived cracked',
            now=now,
        )

    def received(self, order):
        """A return already sitting in the warehouse."""
        return self.make_return(order, status=R.STATUS_RETURN_RECEIVED)


# ============================================================
# CREATION TESTS
# ============================================================

class ReturnCreationTests(ReturnTestCase):

    def test_create_return(self):
        return_request = self.create()

        self.assertTrue(return_request.return_number.startswith('RET-'))
        self.assertEqual(return_request.status, R.STATUS_PENDING)
        self.assertEqual(return_request.return_window, 7)
        self.assertEqual(return_request.return_pincode, '560001')

        item = return_request.items.get()
        self.assertEqual(item.price, Decimal('500.00'))
        self.assertEqual(item.name, self.ghee.name)

        self.order.refresh_from_db()
        self.assertEqual(self.order.order_status, Order.STATUS_RETURNED)

        history = ReturnStatusHistory.objects.get(return_request=return_request)
        self.assertEqual((history.from_status, history.to_status), ('', R.STATUS_PENDING))
        self.assertTrue(Notification.objects.filter(user=self.admin, event='return_requested').exists())

    def test_outside_return_window(self):
        """Delivered 8 days ago with a 7 day window."""
        order = self.make_order(delivered_days_ago=8)
        with self.assertRaises(ValidationFailed) as ctx:
            self.create(order=order)
        self.assertIn('expired', ctx.exception.message)
        self.assertFalse(ReturnRequest.objects.filter(order=order).exists())

    def test_last_day_of_window_is_allowed(self):
        now = timezone.now()
        order = self.make_order()
        order.delivered_at = now - timedelta(days=7)
        order.save()
        self.assertEqual(self.create(order=order, now=now).status, R.STATUS_PENDING)

    def test_only_owner_can_return(self):
        with self.assertRaises(AuthorizationFailed):
            self.create(user=self.other_customer)

    def test_order_must_be_delivered(self):
        order = self.make_order(order_status=Order.STATUS_SHIPPED)
        with self.assertRaises(ValidationFailed):
            self.create(order=order)

    def test_unknown_order(self):
        with self.assertRaises(NotFound):
            self.lifecycle.create(self.customer, 99999, self.items, 'Broken')

    def test_second_active_return_conflicts(self):
        self.create()
        with self.assertRaises(Conflict):
            self.create()
        self.assertEqual(ReturnRequest.objects.filter(order=self.order).count(), 1)

    def test_new_return_allowed_after_rejection(self):
        first = self.create()
        self.lifecycle.update_status(first.pk, R.STATUS_REJECTED, self.admin)
        second = self.create()
        self.assertNotEqual(first.pk, second.pk)

    def test_quantity_above_ordered_rejected(self):
        items = [{'product': self.ghee.pk, 'quantity': 3, 'reason': 'wrong_item'}]
        with self.assertRaises(ValidationFailed):
            self.create(items=items)

        self.assertFalse(ReturnRequest.objects.exists())
        self.order.refresh_from_db()
        self.assertEqual(self.order.order_status, Order.STATUS_DELIVERED)

    def test_product_not_in_order_rejected(self):
        items = [{'product': self.honey.pk, 'quantity': 1, 'reason': 'wrong_item'}]
        with self.assertRaises(ValidationFailed):
            self.create(items=items)

    def test_eligibility_report(self):
        result = self.lifecycle.check_eligibility(self.order)
        self.assertTrue(result['eligible'])
        self.assertEqual(result['days_remaining'], 5)

        old_order = self.make_order(delivered_days_ago=30)
        self.assertFalse(self.lifecycle.check_eligibility(old_order)['eligible'])


# ============================================================
# CANCELLATION TESTS
# ============================================================

class CancellationTests(ReturnTestCase):

    def test_cancel_pending_return(self):
        return_request = self.create()
        cancelled = self.lifecycle.cancel(self.customer, return_request.pk)

        self.assertEqual(cancelled.status, R.STATUS_CANCELLED)
        self.assertIsNotNone(cancelled.cancelled_at)
        self.order.refresh_from_db()
        self.assertEqual(self.order.order_status, Order.STATUS_DELIVERED)

    def test_cannot_cancel_approved_return(self):
        return_request = self.create()
        self.lifecycle.update_status(return_request.pk, R.STATUS_APPROVED, self.admin)

        with self.assertRaises(Conflict):
            self.lifecycle.cancel(self.customer, return_request.pk)

        return_request.refresh_from_db()
        self.assertEqual(return_request.status, R.STATUS_APPROVED)
        self.assertIsNone(return_request.cancelled_at)

    def test_other_customer_cannot_cancel(self):
        return_request = self.create()
        with self.assertRaises(AuthorizationFailed):
            self.lifecycle.cancel(self.other_customer, return_request.pk)

    def test_admin_cannot_set_cancelled(self):
        return_request = self.create()
        with self.assertRaises(Conflict):
            self.lifecycle.update_status(return_request.pk, R.STATUS_CANCELLED, self.admin)


# ============================================================
# TRANSITION TESTS
# ============================================================

class TransitionTests(ReturnTestCase):

    def test_transition_table(self):
        self.assertTrue(can_transition(R.STATUS_PENDING, R.STATUS_APPROVED))
        self.assertTrue(can_transition(R.STATUS_PENDING, R.STATUS_RETURN_RECEIVED))
        self.assertTrue(can_transition(R.STATUS_REFUND_PROCESSED, R.STATUS_COMPLETED))
        self.assertFalse(can_transition(R.STATUS_APPROVED, R.STATUS_PENDING))
        self.assertFalse(can_transition(R.STATUS_RETURN_SHIPPED, R.STATUS_APPROVED))
        self.assertFalse(can_transition(R.STATUS_RETURN_RECEIVED, R.STATUS_REFUND_PROCESSED))
        for terminal in (R.STATUS_REJECTED, R.STATUS_CANCELLED, R.STATUS_COMPLETED):
            self.assertFalse(can_transition(terminal, R.STATUS_APPROVED))

    def test_approve_stamps_and_records(self):
        return_request = self.create()
        updated = self.lifecycle.update_status(
            return_request.pk, R.STATUS_APPROVED, self.admin, admin_notes='Photos look fine',
        )

        self.assertEqual(updated.status, R.STATUS_APPROVED)
        self.assertIsNotNone(updated.approved_at)
        self.assertEqual(updated.admin_notes, 'Photos look fine')
        latest = updated.status_history.last()
        self.assertEqual(latest.changed_by, 'admin:ops')
        self.assertEqual((latest.from_status, latest.to_status), (R.STATUS_PENDING, R.STATUS_APPROVED))

    def test_skip_ahead_leaves_skipped_stamps_empty(self):
        return_request = self.create()
        updated = self.lifecycle.update_status(return_request.pk, R.STATUS_RETURN_RECEIVED, self.admin)
        self.assertIsNotNone(updated.return_received_at)
        self.assertIsNone(updated.approved_at)

    def test_backwards_move_rejected(self):
        return_request = self.create()
        self.lifecycle.update_status(return_request.pk, R.STATUS_RETURN_SHIPPED, self.admin)
        with self.assertRaises(Conflict):
            self.lifecycle.update_status(return_request.pk, R.STATUS_APPROVED, self.admin)

    def test_refund_processed_needs_a_refund(self):
        return_request = self.received(self.order)
        with self.assertRaises(Conflict):
            self.lifecycle.update_status(return_request.pk, R.STATUS_REFUND_PROCESSED, self.admin)

    def test_unknown_status(self):
        return_request = self.create()
        with self.assertRaises(ValidationFailed):
            self.lifecycle.update_status(return_request.pk, 'lost_in_transit', self.admin)

    def test_rejection_restores_order(self):
        return_request = self.create()
        self.lifecycle.update_status(return_request.pk, R.STATUS_REJECTED, self.admin)
        self.order.refresh_from_db()
        self.assertEqual(self.order.order_status, Order.STATUS_DELIVERED)


# ============================================================
# ONLINE REFUND TESTS
# ============================================================

class OnlineRefundTests(ReturnTestCase):

    def test_full_refund_through_gateway(self):
        return_request = self.received(self.order)
        refunded = self.lifecycle.process_online_refund(return_request.pk, self.admin, reason='Damaged')

        self.assertEqual(refunded.status, R.STATUS_REFUND_PROCESSED)
        self.assertEqual(refunded.refund_id, 'rfnd_0001')
        self.assertEqual(refunded.refund_amount, Decimal('1180.00'))
        self.assertEqual(refunded.refund_status, 'processed')
        self.assertEqual(refunded.refund_method, 'razorpay')
        self.assertIsNotNone(refunded.refund_processed_at)
        self.assertEqual(self.gateway.refunds[0]['payment_id'], self.order.payment_id)

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, 'refunded')
        self.assertTrue(Notification.objects.filter(user=self.customer, event='return_refund_processed').exists())

    def test_second_refund_conflicts(self):
        return_request = self.received(self.order)
        self.lifecycle.process_online_refund(return_request.pk, self.admin)

        with self.assertRaises(Conflict):
            self.lifecycle.process_online_refund(return_request.pk, self.admin)
        self.assertEqual(len(self.gateway.refunds), 1)

    def test_refund_before_receipt_rejected(self):
        return_request = self.make_return(self.order, status=R.STATUS_APPROVED)
        with self.assertRaises(Conflict):
            self.lifecycle.process_online_refund(return_request.pk, self.admin)
        self.assertEqual(self.gateway.refunds, [])

    def test_cod_order_cannot_use_gateway(self):
        order = self.make_order(payment_method=Order.METHOD_COD)
        return_request = self.received(order)
        with self.assertRaises(ValidationFailed):
            self.lifecycle.process_online_refund(return_request.pk, self.admin)

    def test_gateway_timeout_leaves_return_untouched(self):
        self.gateway.refund_error = GatewayError('Payment gateway timed out')
        return_request = self.received(self.order)

        with self.assertRaises(GatewayError):
            self.lifecycle.process_online_refund(return_request.pk, self.admin)

        return_request.refresh_from_db()
        self.assertEqual(return_request.status, R.STATUS_RETURN_RECEIVED)
        self.assertEqual(return_request.refund_id, '')
        self.assertIsNone(return_request.refund_processed_at)
        self.assertFalse(return_request.status_history.exists())

        # Retry once the gateway is back
        self.gateway.refund_error = None
        refunded = self.lifecycle.process_online_refund(return_request.pk, self.admin)
        self.assertEqual(refunded.status, R.STATUS_REFUND_PROCESSED)

    def test_partial_refund_amount(self):
        return_request = self.received(self.order)
        refunded = self.lifecycle.process_online_refund(return_request.pk, self.admin, amount=Decimal('590.00'))
        self.assertEqual(refunded.refund_amount, Decimal('590.00'))
        self.assertEqual(self.gateway.refunds[0]['amount'], Decimal('590.00'))

    def test_amount_above_returned_items_is_logged(self):
        return_request = self.received(self.order)
        with self.assertLogs('fulfillment', level='WARNING') as logs:
            self.lifecycle.process_online_refund(return_request.pk, self.admin, amount=Decimal('1000.00'))
        self.assertTrue(any('exceeds' in line for line in logs.output))

    def test_complete_after_refund(self):
        return_request = self.received(self.order)
        self.lifecycle.process_online_refund(return_request.pk, self.admin)
        completed = self.lifecycle.update_status(return_request.pk, R.STATUS_COMPLETED, self.admin)
        self.assertIsNotNone(completed.completed_at)


# ============================================================
# COD REFUND TESTS
# ============================================================

class CODRefundTests(ReturnTestCase):

    def setUp(self):
        super().setUp()
        self.cod_order = self.make_order(payment_method=Order.METHOD_COD)
        self.return_request = self.received(self.cod_order)

    def test_bank_transfer_requires_transaction_id(self):
        with self.assertRaises(ValidationFailed):
            self.lifecycle.process_cod_refund(
                self.return_request.pk, self.admin, 'bank_transfer', proof={'bank_name': 'HDFC'},
            )

        self.return_request.refresh_from_db()
        self.assertEqual(self.return_request.refund_id, '')
        self.assertEqual(self.return_request.status, R.STATUS_RETURN_RECEIVED)

    def test_bank_transfer_refund(self):
        refunded = self.lifecycle.process_cod_refund(
            self.return_request.pk, self.admin, 'bank_transfer',
            amount=Decimal('500.00'),
            proof={'bank_transaction_id': 'UTR123456', 'bank_name': 'HDFC', 'bank_ifsc_code': 'HDFC0000123'},
        )

        self.assertRegex(refunded.refund_id, r'^CODREF-[0-9A-F]{10}$')
        self.assertEqual(refunded.status, R.STATUS_REFUND_PROCESSED)
        self.assertEqual(refunded.refund_amount, Decimal('500.00'))
        self.assertEqual(refunded.bank_transaction_id, 'UTR123456')
        self.assertEqual(refunded.bank_ifsc_code, 'HDFC0000123')
        self.assertIsNotNone(refunded.bank_transfer_date)
        self.assertEqual(self.gateway.refunds, [])

    def test_upi_requires_upi_id(self):
        with self.assertRaises(ValidationFailed):
            self.lifecycle.process_cod_refund(
                self.return_request.pk, self.admin, 'upi', proof={'upi_transaction_id': 'T1'},
            )

    def test_upi_refund(self):
        refunded = self.lifecycle.process_cod_refund(
            self.return_request.pk, self.admin, 'upi',
            proof={'upi_id': 'priya@okbank', 'upi_transaction_id': 'UPI98765'},
        )
        self.assertEqual(refunded.refund_method, 'upi')
        self.assertEqual(refunded.upi_id, 'priya@okbank')

    def test_cash_refund_needs_no_proof(self):
        refunded = self.lifecycle.process_cod_refund(self.return_request.pk, self.admin, 'cash')
        self.assertEqual(refunded.refund_method, 'cash')
        self.assertEqual(refunded.refund_amount, Decimal('1180.00'))

    def test_second_cod_refund_conflicts(self):
        self.lifecycle.process_cod_refund(self.return_request.pk, self.admin, 'cash')
        with self.assertRaises(Conflict):
            self.lifecycle.process_cod_refund(self.return_request.pk, self.admin, 'cash')

    def test_online_order_cannot_be_refunded_manually(self):
        return_request = self.received(self.order)
        with self.assertRaises(ValidationFailed):
            self.lifecycle.process_cod_refund(return_request.pk, self.admin, 'cash')

    def test_unknown_method(self):
        with self.assertRaises(ValidationFailed):
            self.lifecycle.process_cod_refund(self.return_request.pk, self.admin, 'cheque')
