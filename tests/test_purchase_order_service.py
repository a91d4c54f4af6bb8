from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

from app.config import settings
from app.errors import ConflictError, InvalidState, InvalidTransition, NotFound, ValidationFailed
from app.models import PaymentTerms, PurchaseOrderStatus
from app.services.audit_service import list_status_history
from app.services.date_utils import as_utc
from app.services.purchase_order_math_service import to_money
from app.services.purchase_order_service import (
    PurchaseOrderInput,
    bulk_soft_delete_purchase_orders,
    change_purchase_order_status,
    create_purchase_order,
    duplicate_purchase_order,
    get_purchase_order,
    soft_delete_purchase_order,
    update_purchase_order,
)
from tests.support import FIXED_NOW, add_supplier, item, make_session_factory

NOW_PATH = 'app.services.purchase_order_service._now'


def _input(**overrides) -> PurchaseOrderInput:
    values = {
        'vendor_ref': 'static-vendor-1',
        'purchase_date': '2024-03-15',
        'expected_delivery': '2024-03-20',
        'order_items': [item()],
        'tax_rate': Decimal('18'),
        'shipping_cost': Decimal('50'),
        'discount': Decimal('10'),
    }
    values.update(overrides)
    return PurchaseOrderInput(**values)


class ServiceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        self.db = self.session_factory()
        now_patcher = patch(NOW_PATH, return_value=FIXED_NOW)
        self.now_mock = now_patcher.start()
        self.addCleanup(now_patcher.stop)

    def tearDown(self) -> None:
        self.db.close()

    def create(self, **overrides):
        po = create_purchase_order(self.db, data=_input(**overrides), actor_principal_id=1)
        self.db.commit()
        return po

    def set_status(self, po, status, reason=None, actor=1):
        result = change_purchase_order_status(
            self.db,
            purchase_order_id=po.id,
            new_status=status,
            cancellation_reason=reason,
            actor_principal_id=actor,
        )
        self.db.commit()
        return result


class CreatePurchaseOrderTests(ServiceTestCase):
    def test_reference_order_totals_and_number(self) -> None:
        po = self.create()
        self.assertEqual(po.order_number, 'PO-202403-001')
        self.assertEqual(po.status, PurchaseOrderStatus.DRAFT)
        self.assertEqual(po.subtotal, Decimal('200.00'))
        self.assertEqual(po.tax_amount, Decimal('36.00'))
        self.assertEqual(po.total_amount, Decimal('276.00'))
        self.assertEqual([i.line_total for i in po.items], [Decimal('200.00')])
        self.assertEqual(po.created_by_principal_id, 1)
        self.assertEqual(po.payment_terms, PaymentTerms.NET_30)

    def test_sequential_numbers_reset_next_month(self) -> None:
        first = self.create()
        second = self.create()
        self.now_mock.return_value = datetime(2024, 4, 2, 8, 0, tzinfo=timezone.utc)
        third = self.create(purchase_date='2024-04-02', expected_delivery='2024-04-09')
        self.assertEqual(
            [first.order_number, second.order_number, third.order_number],
            ['PO-202403-001', 'PO-202403-002', 'PO-202404-001'],
        )

    def test_defaults_applied_when_absent(self) -> None:
        po = self.create(purchase_date=None, tax_rate=None, shipping_cost=None, discount=None)
        self.assertEqual(as_utc(po.purchase_date), FIXED_NOW)
        self.assertEqual(po.tax_rate, Decimal('18'))
        self.assertEqual(po.shipping_cost, Decimal('0.00'))
        self.assertEqual(po.total_amount, Decimal('236.00'))

    def test_same_day_delivery_accepted(self) -> None:
        po = self.create(purchase_date='2024-03-15T16:00:00Z', expected_delivery='2024-03-15')
        self.assertEqual(as_utc(po.expected_delivery).date(), as_utc(po.purchase_date).date())

    def test_delivery_before_purchase_rejected(self) -> None:
        with self.assertRaises(ValidationFailed) as ctx:
            self.create(expected_delivery='2024-03-14')
        self.assertEqual(ctx.exception.details, ['expectedDelivery: must be on or after purchaseDate'])

    def test_all_problems_reported_together(self) -> None:
        with self.assertRaises(ValidationFailed) as ctx:
            self.create(
                vendor_ref=' ',
                expected_delivery='not-a-date',
                order_items=[item(unit_price=Decimal('0')), item(quantity=0)],
                payment_terms='Net 45',
            )
        self.assertEqual(
            ctx.exception.details,
            [
                'vendorRef: is required',
                'expectedDelivery: is not a valid date',
                'paymentTerms: must be one of Net30, Net15, Net7, Immediate, COD, AdvancePayment',
                'orderItems[0].unitPrice: must be greater than zero',
                'orderItems[1].quantity: must be greater than zero',
            ],
        )

    def test_legacy_payment_terms_label_accepted(self) -> None:
        po = self.create(payment_terms='Net 15 Days')
        self.assertEqual(po.payment_terms, PaymentTerms.NET_15)

    def test_discount_cannot_make_total_negative(self) -> None:
        with self.assertRaises(ValidationFailed):
            self.create(discount=Decimal('1000'))

    def test_sub_cent_tax_rate_rejected(self) -> None:
        with self.assertRaises(ValidationFailed) as ctx:
            self.create(tax_rate=Decimal('18.125'))
        self.assertEqual(ctx.exception.details, ['taxRate: cannot have more than two decimal places'])

    def test_stored_totals_match_stored_tax_rate(self) -> None:
        po = self.create(tax_rate=Decimal('18.12'), order_items=[item(unit_price=Decimal('33.33'), quantity=3)])

        with self.session_factory() as fresh:
            stored = get_purchase_order(fresh, purchase_order_id=po.id)
            self.assertEqual(stored.tax_rate, Decimal('18.12'))
            self.assertEqual(stored.subtotal, Decimal('99.99'))
            self.assertEqual(stored.tax_amount, to_money(stored.subtotal * stored.tax_rate / 100))
            before = (stored.tax_amount, stored.total_amount)

            update_purchase_order(fresh, purchase_order_id=po.id, changes={}, actor_principal_id=None)
            self.assertEqual((stored.tax_amount, stored.total_amount), before)

    def test_unknown_numeric_vendor_is_tolerated_and_logged(self) -> None:
        with self.assertLogs('app.services.purchase_order_service', level='WARNING') as logs:
            po = self.create(vendor_ref='4242')
        self.assertEqual(po.vendor_ref, '4242')
        self.assertIn('4242', logs.output[0])

    def test_missing_actor_leaves_created_by_unset(self) -> None:
        po = create_purchase_order(self.db, data=_input(), actor_principal_id=None)
        self.assertIsNone(po.created_by_principal_id)


class OrderNumberRaceTests(ServiceTestCase):
    def test_collision_regenerates_once(self) -> None:
        self.create()
        with patch(
            'app.services.purchase_order_service.next_order_number',
            side_effect=['PO-202403-001', 'PO-202403-002'],
        ) as number_mock:
            with self.assertLogs('app.services.purchase_order_service', level='WARNING'):
                po = self.create()
        self.assertEqual(po.order_number, 'PO-202403-002')
        self.assertEqual(number_mock.call_count, 2)

    def test_second_collision_is_a_conflict(self) -> None:
        self.create()
        with patch(
            'app.services.purchase_order_service.next_order_number',
            side_effect=['PO-202403-001', 'PO-202403-001'],
        ):
            with self.assertRaises(ConflictError):
                self.create()

    def test_explicit_duplicate_number_conflicts_immediately(self) -> None:
        self.create()
        with patch('app.services.purchase_order_service.next_order_number') as number_mock:
            with self.assertRaises(ConflictError):
                self.create(order_number='PO-202403-001')
        number_mock.assert_not_called()

    def test_scan_strategy_numbers_sequentially(self) -> None:
        with patch.object(settings, 'order_number_strategy', 'scan'):
            numbers = [self.create().order_number for _ in range(3)]
        self.assertEqual(numbers, ['PO-202403-001', 'PO-202403-002', 'PO-202403-003'])


class UpdatePurchaseOrderTests(ServiceTestCase):
    def test_items_change_recomputes_totals(self) -> None:
        po = self.create()
        updated = update_purchase_order(
            self.db,
            purchase_order_id=po.id,
            changes={'order_items': [item(quantity=3)], 'notes': '  rush  '},
            actor_principal_id=9,
        )
        self.assertEqual(updated.subtotal, Decimal('300.00'))
        self.assertEqual(updated.tax_amount, Decimal('54.00'))
        self.assertEqual(updated.total_amount, Decimal('394.00'))
        self.assertEqual(updated.notes, 'rush')
        self.assertEqual(updated.updated_by_principal_id, 9)
        self.assertEqual(updated.order_number, 'PO-202403-001')

    def test_anonymous_update_keeps_previous_updated_by(self) -> None:
        po = self.create()
        update_purchase_order(self.db, purchase_order_id=po.id, changes={'notes': 'a'}, actor_principal_id=9)
        updated = update_purchase_order(self.db, purchase_order_id=po.id, changes={'notes': 'b'}, actor_principal_id=None)
        self.assertEqual(updated.updated_by_principal_id, 9)

    def test_status_and_number_cannot_be_patched(self) -> None:
        po = self.create()
        with self.assertRaises(ValidationFailed) as ctx:
            update_purchase_order(
                self.db,
                purchase_order_id=po.id,
                changes={'status': 'Shipped', 'orderNumber': 'PO-1'},
                actor_principal_id=1,
            )
        self.assertEqual(
            ctx.exception.details,
            ['orderNumber: cannot be changed through update', 'status: cannot be changed through update'],
        )

    def test_changed_vendor_must_exist(self) -> None:
        po = self.create()
        with self.assertRaises(NotFound):
            update_purchase_order(self.db, purchase_order_id=po.id, changes={'vendor_ref': '777'}, actor_principal_id=1)
        with self.assertRaises(NotFound):
            update_purchase_order(
                self.db, purchase_order_id=po.id, changes={'vendor_ref': 'static-vendor-2'}, actor_principal_id=1
            )

        supplier = add_supplier(self.db)
        updated = update_purchase_order(
            self.db, purchase_order_id=po.id, changes={'vendor_ref': str(supplier.id)}, actor_principal_id=1
        )
        self.assertEqual(updated.vendor_ref, str(supplier.id))

    def test_unchanged_static_vendor_is_not_rechecked(self) -> None:
        po = self.create()
        updated = update_purchase_order(
            self.db, purchase_order_id=po.id, changes={'vendor_ref': 'static-vendor-1'}, actor_principal_id=1
        )
        self.assertEqual(updated.vendor_ref, 'static-vendor-1')

    def test_merged_dates_are_revalidated(self) -> None:
        po = self.create()
        with self.assertRaises(ValidationFailed):
            update_purchase_order(
                self.db, purchase_order_id=po.id, changes={'purchase_date': '2024-03-25'}, actor_principal_id=1
            )

    def test_delivered_order_is_locked_but_can_still_be_cancelled(self) -> None:
        po = self.create()
        self.set_status(po, 'Delivered')
        with self.assertRaises(InvalidState):
            update_purchase_order(self.db, purchase_order_id=po.id, changes={'notes': 'x'}, actor_principal_id=1)

        cancelled = self.set_status(po, 'Cancelled', reason='Damaged on arrival')
        self.assertEqual(cancelled.status, PurchaseOrderStatus.CANCELLED)
        self.assertIsNotNone(cancelled.cancelled_at)
        self.assertIsNotNone(cancelled.delivered_at)

    def test_unknown_order_not_found(self) -> None:
        with self.assertRaises(NotFound):
            update_purchase_order(self.db, purchase_order_id=404, changes={}, actor_principal_id=1)


class StatusChangeTests(ServiceTestCase):
    def test_cancel_requires_reason(self) -> None:
        po = self.create()
        with self.assertRaises(ValidationFailed):
            self.set_status(po, 'Cancelled')
        with self.assertRaises(ValidationFailed):
            self.set_status(po, 'Cancelled', reason='   ')

        cancelled = self.set_status(po, 'Cancelled', reason='Supplier out of stock')
        self.assertEqual(as_utc(cancelled.cancelled_at), FIXED_NOW)
        self.assertEqual(cancelled.cancellation_reason, 'Supplier out of stock')

    def test_repeat_status_change_does_not_advance_timestamps(self) -> None:
        po = self.create()
        self.set_status(po, 'Delivered')
        self.now_mock.return_value = FIXED_NOW + timedelta(days=2)
        again = self.set_status(po, 'Delivered')

        self.assertEqual(as_utc(again.delivered_at), FIXED_NOW)
        history = list_status_history(self.db, purchase_order_id=po.id)
        self.assertEqual([(row['from'], row['to']) for row in history], [('Draft', 'Delivered')])

    def test_forbidden_transition(self) -> None:
        po = self.create()
        self.set_status(po, 'Cancelled', reason='Duplicate order')
        with self.assertRaises(InvalidTransition) as ctx:
            self.set_status(po, 'Pending')
        self.assertEqual(ctx.exception.message, 'Cannot change status from Cancelled to Pending')

    def test_unknown_status_rejected(self) -> None:
        po = self.create()
        with self.assertRaises(ValidationFailed):
            self.set_status(po, 'Lost')

    def test_long_cancellation_reason_rejected(self) -> None:
        po = self.create()
        with self.assertRaises(ValidationFailed):
            self.set_status(po, 'Cancelled', reason='x' * 501)

    def test_strict_policy_uses_whitelist(self) -> None:
        po = self.create()
        with patch.object(settings, 'status_transition_policy', 'strict'):
            with self.assertRaises(InvalidTransition):
                self.set_status(po, 'Delivered')
            confirmed = self.set_status(po, 'Confirmed')
        self.assertEqual(confirmed.status, PurchaseOrderStatus.CONFIRMED)

    def test_status_change_records_actor(self) -> None:
        po = self.create()
        updated = self.set_status(po, 'Pending', actor=33)
        self.assertEqual(updated.updated_by_principal_id, 33)
        history = list_status_history(self.db, purchase_order_id=po.id)
        self.assertEqual(history[0]['actorPrincipalId'], 33)


class DeleteAndDuplicateTests(ServiceTestCase):
    def test_soft_delete_hides_order(self) -> None:
        po = self.create()
        soft_delete_purchase_order(self.db, purchase_order_id=po.id, actor_principal_id=2)
        self.db.commit()

        with self.assertRaises(NotFound):
            get_purchase_order(self.db, purchase_order_id=po.id)
        deleted = get_purchase_order(self.db, purchase_order_id=po.id, include_deleted=True)
        self.assertTrue(deleted.is_deleted)
        self.assertIsNotNone(deleted.deleted_at)

    def test_shipped_order_cannot_be_deleted(self) -> None:
        po = self.create()
        self.set_status(po, 'Shipped')
        with self.assertRaises(InvalidState):
            soft_delete_purchase_order(self.db, purchase_order_id=po.id, actor_principal_id=2)

    def test_bulk_delete_is_all_or_nothing(self) -> None:
        first = self.create()
        second = self.create()
        self.set_status(second, 'Delivered')
        with self.assertRaises(InvalidState) as ctx:
            bulk_soft_delete_purchase_orders(self.db, purchase_order_ids=[first.id, second.id], actor_principal_id=2)
        self.assertIn('1 order(s)', ctx.exception.message)
        self.assertFalse(get_purchase_order(self.db, purchase_order_id=first.id).is_deleted)

        third = self.create()
        deleted = bulk_soft_delete_purchase_orders(
            self.db, purchase_order_ids=[first.id, third.id, 999], actor_principal_id=2
        )
        self.assertEqual(deleted, 2)

    def test_bulk_delete_requires_ids(self) -> None:
        with self.assertRaises(ValidationFailed):
            bulk_soft_delete_purchase_orders(self.db, purchase_order_ids=[], actor_principal_id=2)

    def test_duplicate_starts_fresh_draft(self) -> None:
        source = self.create(notes='Monthly tea restock')
        self.set_status(source, 'Cancelled', reason='Wrong vendor')

        later = datetime(2024, 4, 2, 10, 0, tzinfo=timezone.utc)
        self.now_mock.return_value = later
        copy = duplicate_purchase_order(self.db, purchase_order_id=source.id, actor_principal_id=8)
        self.db.commit()

        self.assertEqual(copy.order_number, 'PO-202404-001')
        self.assertEqual(copy.status, PurchaseOrderStatus.DRAFT)
        self.assertEqual(as_utc(copy.purchase_date), later)
        self.assertEqual(as_utc(copy.expected_delivery), later + timedelta(days=5))
        self.assertIsNone(copy.cancelled_at)
        self.assertIsNone(copy.cancellation_reason)
        self.assertEqual(copy.created_by_principal_id, 8)
        self.assertEqual(copy.total_amount, source.total_amount)
        self.assertEqual(copy.notes, 'Monthly tea restock')
        self.assertEqual(len(copy.items), 1)
        self.assertNotEqual(copy.id, source.id)


if __name__ == '__main__':
    unittest.main()
