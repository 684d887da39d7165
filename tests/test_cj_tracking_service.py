from __future__ import annotations

import hashlib
import hmac
import unittest
from datetime import datetime, timezone

from storefront.models import Order, OrderStatus
from storefront.services.cj_client import CjApiError
from storefront.services.cj_tracking_service import (
    TrackingUpdate,
    advance_order_status,
    apply_tracking_update,
    normalize_shipping_status,
    persist_cj_tracking,
    sync_all_pending_tracking,
    verify_webhook_signature,
)
from support import FakeCjClient, add_order, make_engine, make_session_factory

SECRET = 'whsec_test'
BODY = b'{"orderId": "42", "trackingNo": "ABC123", "carrier": "DHL"}'


def _sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()


class WebhookSignatureTests(unittest.TestCase):
    def test_valid_signature(self) -> None:
        self.assertTrue(verify_webhook_signature(BODY, _sign(BODY), SECRET))
        self.assertTrue(verify_webhook_signature(BODY, 'sha256=' + _sign(BODY), SECRET))

    def test_single_byte_change_is_rejected(self) -> None:
        tampered = BODY.replace(b'ABC123', b'ABC124')
        self.assertFalse(verify_webhook_signature(tampered, _sign(BODY), SECRET))

        signature = _sign(BODY)
        flipped = signature[:-1] + ('0' if signature[-1] != '0' else '1')
        self.assertFalse(verify_webhook_signature(BODY, flipped, SECRET))

    def test_malformed_signatures_are_rejected(self) -> None:
        self.assertFalse(verify_webhook_signature(BODY, _sign(BODY)[:-2], SECRET))
        self.assertFalse(verify_webhook_signature(BODY, 'zz' * 32, SECRET))
        self.assertFalse(verify_webhook_signature(BODY, None, SECRET))
        self.assertFalse(verify_webhook_signature(BODY, _sign(BODY), None))
        self.assertFalse(verify_webhook_signature(BODY, _sign(BODY, 'other'), SECRET))


class ApplyTrackingUpdateTests(unittest.TestCase):
    def _order(self, **fields) -> Order:
        defaults = {'status': OrderStatus.PROCESSING, 'shipping_status': 'created'}
        defaults.update(fields)
        return Order(**defaults)

    def test_status_normalisation(self) -> None:
        self.assertEqual(normalize_shipping_status('IN TRANSIT'), 'in_transit')
        self.assertEqual(normalize_shipping_status('CREATED'), 'processing')
        self.assertEqual(normalize_shipping_status('Out For Delivery'), 'out_for_delivery')
        self.assertIsNone(normalize_shipping_status('  '))

    def test_late_update_never_moves_backwards(self) -> None:
        order = self._order(shipping_status='in_transit', status=OrderStatus.SHIPPED, tracking_number='T1')

        changes = apply_tracking_update(order, TrackingUpdate(shipping_status='shipped'))

        self.assertNotIn('shipping_status', changes)
        self.assertNotIn('status', changes)
        self.assertEqual(order.shipping_status, 'in_transit')
        self.assertEqual(order.tracking_number, 'T1')

    def test_missing_fields_do_not_clear_existing_values(self) -> None:
        order = self._order(tracking_number='T1', carrier='DHL')

        changes = apply_tracking_update(order, TrackingUpdate(tracking_number=None, carrier=''))

        self.assertEqual(changes, [])
        self.assertEqual((order.tracking_number, order.carrier), ('T1', 'DHL'))

    def test_delivery_sets_timestamps_and_status(self) -> None:
        order = self._order()

        changes = apply_tracking_update(order, TrackingUpdate(tracking_number='T9', shipping_status='delivered'))

        self.assertEqual(order.status, OrderStatus.DELIVERED)
        self.assertIsNotNone(order.shipped_at)
        self.assertIsNotNone(order.delivered_at)
        self.assertIn('delivered_at', changes)

        self.assertEqual(apply_tracking_update(order, TrackingUpdate(shipping_status='cancelled')), [])
        self.assertEqual(order.shipping_status, 'delivered')

    def test_order_status_only_advances(self) -> None:
        order = self._order(status=OrderStatus.SHIPPED)
        self.assertFalse(advance_order_status(order, OrderStatus.PROCESSING))
        self.assertTrue(advance_order_status(order, OrderStatus.CANCELLED))
        self.assertFalse(advance_order_status(order, OrderStatus.DELIVERED))


class PersistTrackingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.db = make_session_factory(self.engine)()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def test_matches_by_local_order_id(self) -> None:
        add_order(self.db, order_id=42, status=OrderStatus.PROCESSING)
        self.db.commit()

        saved = persist_cj_tracking(
            self.db, {'data': {'orderId': '42', 'trackingNo': 'ABC123', 'carrier': 'DHL', 'status': 'SHIPPED'}}
        )

        self.assertTrue(saved.ok)
        order = self.db.get(Order, 42)
        self.assertEqual((order.tracking_number, order.carrier), ('ABC123', 'DHL'))
        self.assertEqual(order.shipping_status, 'shipped')
        self.assertEqual(order.status, OrderStatus.SHIPPED)

    def test_matches_by_supplier_order_number(self) -> None:
        order = add_order(self.db, cj_order_no='CJ-9', status=OrderStatus.PROCESSING)
        self.db.commit()

        saved = persist_cj_tracking(self.db, {'orderNo': 'CJ-9', 'trackingNo': 'TN-9'})

        self.assertTrue(saved.ok)
        self.assertEqual(saved.order_id, order.id)
        self.assertEqual(self.db.get(Order, order.id).tracking_number, 'TN-9')

    def test_unmatched_payloads(self) -> None:
        self.assertEqual(persist_cj_tracking(self.db, {'event': 'ping'}).reason, 'no identifiers found')
        self.assertEqual(persist_cj_tracking(self.db, {'orderId': 999}).reason, 'order not found')
        self.assertEqual(persist_cj_tracking(self.db, ['x']).reason, 'payload is not an object')

    def test_batch_sync_continues_past_failures(self) -> None:
        shipped = add_order(self.db, order_number='SO-A', cj_order_no='CJ-A', status=OrderStatus.PROCESSING)
        add_order(self.db, order_number='SO-B', cj_order_no='CJ-B', status=OrderStatus.PROCESSING)
        add_order(self.db, order_number='SO-C', cj_order_no='CJ-C', status=OrderStatus.DELIVERED)
        self.db.commit()
        client = FakeCjClient(
            tracking={
                'CJ-A': {'result': True, 'data': {'trackNumber': 'TN-A', 'logisticName': 'Aramex', 'orderStatus': 'SHIPPED'}},
                'CJ-B': CjApiError('CJ API error 502: gateway', status=502),
            }
        )

        summary = sync_all_pending_tracking(self.db, client)

        self.assertEqual((summary.total, summary.successful, summary.failed), (2, 1, 1))
        self.assertNotIn(('tracking', 'CJ-C'), client.calls)
        by_number = {r.cj_order_no: r for r in summary.results}
        self.assertTrue(by_number['CJ-A'].updated)
        self.assertEqual(by_number['CJ-A'].tracking_number, 'TN-A')
        self.assertIn('gateway', by_number['CJ-B'].error)
        self.db.refresh(shipped)
        self.assertEqual(shipped.status, OrderStatus.SHIPPED)
        self.assertEqual(shipped.carrier, 'Aramex')

    def test_batch_sync_survives_a_timeout_on_the_first_order(self) -> None:
        add_order(
            self.db, order_number='SO-A', cj_order_no='CJ-A', status=OrderStatus.PROCESSING, created_at=datetime(2026, 10, 1, tzinfo=timezone.utc)
        )
        add_order(
            self.db, order_number='SO-B', cj_order_no='CJ-B', status=OrderStatus.PROCESSING, created_at=datetime(2026, 10, 2, tzinfo=timezone.utc)
        )
        self.db.commit()
        client = FakeCjClient(
            tracking={
                'CJ-A': {'result': True, 'data': {'trackNumber': 'TN-A', 'orderStatus': 'IN TRANSIT'}},
                'CJ-B': TimeoutError('read timed out'),
            }
        )

        summary = sync_all_pending_tracking(self.db, client)

        self.assertEqual(client.calls, [('tracking', 'CJ-B'), ('tracking', 'CJ-A')])
        self.assertEqual((summary.total, summary.successful, summary.failed), (2, 1, 1))
        by_number = {r.cj_order_no: r for r in summary.results}
        self.assertEqual(by_number['CJ-B'].error, 'read timed out')
        self.assertEqual(by_number['CJ-A'].tracking_number, 'TN-A')


if __name__ == '__main__':
    unittest.main()
