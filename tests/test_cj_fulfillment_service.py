from __future__ import annotations

import unittest
from unittest.mock import patch

from sqlalchemy import select

from storefront.models import OrderStatus, ProductVariant
from storefront.services.cj_client import CjClient, RequestThrottle
from storefront.services.cj_fulfillment_service import (
    ShippingInfo,
    list_pending_cj_orders,
    maybe_create_cj_order_for_order_id,
    release_cj_claim,
    retry_failed_cj_orders,
)
from storefront.services.settings_service import set_kill_switch
from support import FakeCjClient, add_order, add_product, make_engine, make_session_factory


class NumberingClient(FakeCjClient):
    def create_order(self, payload):
        super().create_order(payload)
        return {'result': True, 'data': {'orderId': 'CJ-' + payload['orderNumber']}}


class FulfillmentTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.db = make_session_factory(self.engine)()
        self.product = add_product(self.db)
        self.variant = self.db.scalar(select(ProductVariant).where(ProductVariant.product_id == self.product.id))
        self.order = add_order(self.db, items=[(self.product, self.variant.id, 2)])
        self.db.commit()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def test_kill_switch_blocks_without_calling_supplier(self) -> None:
        set_kill_switch(self.db, True)
        self.db.commit()
        client = FakeCjClient()

        result = maybe_create_cj_order_for_order_id(self.db, client, self.order.id)

        self.assertFalse(result.ok)
        self.assertEqual(result.reason, 'disabled')
        self.assertEqual(client.calls, [])

    def test_places_order_once(self) -> None:
        client = FakeCjClient(create_response={'result': True, 'data': {'orderId': 'CJ-777'}})

        result = maybe_create_cj_order_for_order_id(self.db, client, self.order.id)

        self.assertTrue(result.ok)
        self.assertEqual(result.cj_order_no, 'CJ-777')
        self.db.refresh(self.order)
        self.assertEqual(self.order.cj_order_no, 'CJ-777')
        self.assertEqual(self.order.shipping_status, 'created')
        self.assertEqual(self.order.status, OrderStatus.PROCESSING)

        payload = client.calls[0][1]
        self.assertEqual(payload['orderNumber'], f'SF-{self.order.id}')
        self.assertEqual(payload['products'], [{'vid': 'VID-1', 'quantity': 2}])
        self.assertEqual(payload['shippingCountryCode'], 'SA')
        self.assertEqual(payload['shippingCustomerName'], 'Sara Ahmed')

        again = maybe_create_cj_order_for_order_id(self.db, client, self.order.id)
        self.assertTrue(again.ok)
        self.assertTrue(again.already_placed)
        self.assertEqual(again.cj_order_no, 'CJ-777')
        self.assertEqual(len(client.calls), 1)

    def test_unmapped_item_fails_closed(self) -> None:
        bare = add_product(self.db, title='Mystery Box', cj_product_id='PID-2', vids=())
        order = add_order(self.db, order_number='SO-1002', items=[(self.product, self.variant.id, 1), (bare, None, 1)])
        self.db.commit()
        client = FakeCjClient()

        result = maybe_create_cj_order_for_order_id(self.db, client, order.id)

        self.assertFalse(result.ok)
        self.assertTrue(result.reason.startswith('unmapped items:'))
        self.assertEqual(client.calls, [])
        self.db.refresh(order)
        self.assertIsNone(order.shipping_status)

    def test_ambiguous_variant_is_unmapped(self) -> None:
        multi = add_product(self.db, title='Socks', cj_product_id='PID-3', vids=('V-A', 'V-B'))
        order = add_order(self.db, order_number='SO-1003', items=[(multi, None, 1)])
        self.db.commit()

        result = maybe_create_cj_order_for_order_id(self.db, FakeCjClient(), order.id)

        self.assertFalse(result.ok)
        self.assertIn('unmapped items', result.reason)

    def test_missing_address_is_reported(self) -> None:
        order = add_order(self.db, order_number='SO-1004', shipping=False, items=[(self.product, self.variant.id, 1)])
        self.db.commit()
        client = FakeCjClient()

        result = maybe_create_cj_order_for_order_id(self.db, client, order.id)

        self.assertEqual(result.reason, 'Missing recipient address: name, country_code, city, address1')
        self.assertEqual(client.calls, [])

    def test_shipping_override_is_used(self) -> None:
        order = add_order(self.db, order_number='SO-1005', shipping=False, items=[(self.product, self.variant.id, 1)])
        self.db.commit()
        client = FakeCjClient(create_response={'result': True, 'data': {'orderId': 'CJ-AE'}})

        result = maybe_create_cj_order_for_order_id(
            self.db, client, order.id, {'name': 'Omar', 'countryCode': 'ae', 'city': 'Dubai', 'address1': 'Street 1'}
        )

        self.assertTrue(result.ok)
        self.assertEqual(client.calls[0][1]['shippingCountryCode'], 'AE')

    def test_supplier_failure_releases_the_claim(self) -> None:
        failing = FakeCjClient(create_error='CJ API error 500: busy')

        result = maybe_create_cj_order_for_order_id(self.db, failing, self.order.id)

        self.assertFalse(result.ok)
        self.assertIn('busy', result.reason)
        self.db.refresh(self.order)
        self.assertEqual(self.order.shipping_status, 'awaiting_supplier')
        self.assertIsNone(self.order.cj_order_no)

        retried = maybe_create_cj_order_for_order_id(self.db, FakeCjClient(), self.order.id)
        self.assertTrue(retried.ok)
        self.assertEqual(retried.cj_order_no, 'CJ-1')

    @patch('storefront.services.cj_client.urlopen', side_effect=TimeoutError('The read operation timed out'))
    def test_timeout_releases_the_claim(self, _urlopen) -> None:
        client = CjClient(access_token='static-token', throttle=RequestThrottle(0))

        result = maybe_create_cj_order_for_order_id(self.db, client, self.order.id)

        self.assertFalse(result.ok)
        self.assertIn('network error', result.reason)
        self.db.refresh(self.order)
        self.assertEqual(self.order.shipping_status, 'awaiting_supplier')
        self.assertEqual([o.id for o in list_pending_cj_orders(self.db)], [self.order.id])

    def test_unexpected_error_releases_the_claim_and_propagates(self) -> None:
        client = FakeCjClient()

        with patch.object(client, 'create_order', side_effect=KeyError('boom')):
            with self.assertRaises(KeyError):
                maybe_create_cj_order_for_order_id(self.db, client, self.order.id)

        self.db.refresh(self.order)
        self.assertEqual(self.order.shipping_status, 'awaiting_supplier')

    def test_stuck_claim_can_be_released(self) -> None:
        self.order.shipping_status = 'placing'
        self.db.commit()

        self.assertTrue(release_cj_claim(self.db, self.order.id))
        self.assertFalse(release_cj_claim(self.db, self.order.id))

        result = maybe_create_cj_order_for_order_id(self.db, FakeCjClient(), self.order.id)
        self.assertTrue(result.ok)

    def test_placed_order_claim_is_not_released(self) -> None:
        self.order.cj_order_no = 'CJ-5'
        self.order.shipping_status = 'placing'
        self.db.commit()

        self.assertFalse(release_cj_claim(self.db, self.order.id))
        self.db.refresh(self.order)
        self.assertEqual(self.order.shipping_status, 'placing')

    def test_claimed_order_is_left_alone(self) -> None:
        self.order.shipping_status = 'placing'
        self.db.commit()
        client = FakeCjClient()

        result = maybe_create_cj_order_for_order_id(self.db, client, self.order.id)

        self.assertEqual(result.reason, 'in progress')
        self.assertEqual(client.calls, [])

    def test_unknown_and_cancelled_orders(self) -> None:
        self.assertEqual(maybe_create_cj_order_for_order_id(self.db, FakeCjClient(), 9999).reason, 'Order not found')
        self.order.status = OrderStatus.CANCELLED
        self.db.commit()
        self.assertEqual(maybe_create_cj_order_for_order_id(self.db, FakeCjClient(), self.order.id).reason, 'Order is cancelled')

    def test_retry_places_every_pending_paid_order(self) -> None:
        second = add_order(self.db, order_number='SO-2000', items=[(self.product, self.variant.id, 1)])
        add_order(self.db, order_number='SO-2001', status=OrderStatus.PENDING, items=[(self.product, self.variant.id, 1)])
        self.db.commit()
        self.assertEqual({o.id for o in list_pending_cj_orders(self.db)}, {self.order.id, second.id})

        summary = retry_failed_cj_orders(self.db, NumberingClient())

        self.assertEqual((summary.total, summary.successful, summary.failed), (2, 2, 0))
        self.assertEqual({r['cjOrderNo'] for r in summary.results}, {f'CJ-SF-{self.order.id}', f'CJ-SF-{second.id}'})
        self.assertEqual(list_pending_cj_orders(self.db), [])


class ShippingInfoTests(unittest.TestCase):
    def test_from_dict_accepts_alternate_keys(self) -> None:
        info = ShippingInfo.from_dict({'full_name': 'A', 'countryCode': 'SA', 'state': 'Riyadh', 'line1': 'X', 'postal_code': '1'})
        self.assertEqual((info.name, info.province, info.address1, info.zip_code), ('A', 'Riyadh', 'X', '1'))
        self.assertEqual(info.missing_fields(), ['city'])


if __name__ == '__main__':
    unittest.main()
