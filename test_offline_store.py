import datetime as dt
import os
import shutil
import tempfile
import unittest

import offline_store as ost


def _sale(**extra):
    base = {
        'business_id': 'biz-1',
        'user_id': 'user-1',
        'customer_id': None,
        'payment_method': 'Cash',
        'cart': [{'variant_id': 1, 'quantity': 1, 'price': 1000}],
        'subtotal': 1000,
        'discount': None,
        'total': 1000,
        'amount_tendered': 1000,
        'amount_paid': 1000,
        'due_amount': 0,
        'change_due': 0,
        'payment_status': 'paid',
    }
    base.update(extra)
    return base


class SchemaUpgradeTest(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, 'till.db')

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_new_store_is_at_latest_version(self):
        store = ost.LocalStore(self.path)
        try:
            self.assertEqual(store.version, ost.SCHEMA_VERSION)
        finally:
            store.close()

    def test_old_store_upgrades_without_losing_sales(self):
        old = ost.LocalStore(self.path, schema_version=1)
        self.assertEqual(old.version, 1)
        sale_id = old.add_offline_sale(_sale(created_utc='2024-01-01T08:00:00.000Z'))
        old.close()

        store = ost.LocalStore(self.path)
        try:
            self.assertEqual(store.version, ost.SCHEMA_VERSION)
            sale = store.get_offline_sale(sale_id)
            self.assertEqual(sale['created_utc'], '2024-01-01T08:00:00.000Z')
            self.assertEqual(sale['sync_status'], ost.SYNC_PENDING)
            self.assertEqual(sale['attempts'], 0)
            self.assertEqual([s['id'] for s in store.pending_sales()], [sale_id])
            store.set_meta('k', 'v')
            self.assertEqual(store.get_meta('k'), 'v')
        finally:
            store.close()

    def test_reopening_is_a_no_op(self):
        ost.LocalStore(self.path).close()
        store = ost.LocalStore(self.path)
        try:
            self.assertEqual(store.version, ost.SCHEMA_VERSION)
        finally:
            store.close()


class OfflineQueueTest(unittest.TestCase):
    def setUp(self):
        self.store = ost.LocalStore(':memory:')

    def tearDown(self):
        self.store.close()

    def test_pending_sales_are_oldest_first(self):
        late = self.store.add_offline_sale(_sale(created_utc='2024-01-01T10:00:00.000Z'))
        early = self.store.add_offline_sale(_sale(created_utc='2024-01-01T09:00:00.000Z'))
        same_a = self.store.add_offline_sale(_sale(created_utc='2024-01-01T11:00:00.000Z'))
        same_b = self.store.add_offline_sale(_sale(created_utc='2024-01-01T11:00:00.000Z'))
        ids = [s['id'] for s in self.store.pending_sales()]
        self.assertEqual(ids, [early, late, same_a, same_b])

    def test_local_ids_are_monotonic(self):
        first = self.store.add_offline_sale(_sale())
        self.store.delete_offline_sale(first)
        second = self.store.add_offline_sale(_sale())
        self.assertGreater(second, first)

    def test_retry_hides_sale_until_due(self):
        sale_id = self.store.add_offline_sale(_sale())
        attempts = self.store.schedule_retry(sale_id, 'timeout', '2999-01-01T00:00:00.000Z')
        self.assertEqual(attempts, 1)
        self.assertEqual(self.store.pending_sales(), [])
        due = self.store.pending_sales(now='2999-01-01T00:00:00.000Z')
        self.assertEqual([s['id'] for s in due], [sale_id])
        self.assertEqual(due[0]['last_error'], 'timeout')
        self.assertEqual(self.store.count_pending(), 1)

    def test_failed_sales_stay_until_requeued(self):
        sale_id = self.store.add_offline_sale(_sale())
        self.store.schedule_retry(sale_id, 'timeout', ost.iso_now())
        self.store.mark_failed(sale_id, 'customer not found')
        self.assertEqual(self.store.pending_sales(now='2999-01-01T00:00:00.000Z'), [])
        failed = self.store.failed_sales()
        self.assertEqual(len(failed), 1)
        self.assertEqual(failed[0]['failure_reason'], 'customer not found')
        self.assertEqual(failed[0]['last_error'], 'timeout')
        self.assertIsNotNone(failed[0]['failed_utc'])

        self.assertTrue(self.store.requeue_failed(sale_id))
        self.assertFalse(self.store.requeue_failed(sale_id))
        sale = self.store.get_offline_sale(sale_id)
        self.assertEqual(sale['sync_status'], ost.SYNC_PENDING)
        self.assertEqual(sale['attempts'], 0)

    def test_discount_round_trips_as_descriptor(self):
        sale_id = self.store.add_offline_sale(_sale(discount={'type': 'fixed', 'value': 200, 'amount': 200}))
        self.assertEqual(self.store.get_offline_sale(sale_id)['discount'],
                         {'type': 'fixed', 'value': 200, 'amount': 200})

    def test_iso_now_is_sortable_utc(self):
        stamp = ost.iso_now(dt.datetime(2024, 5, 1, 12, 30, tzinfo=dt.timezone.utc))
        self.assertEqual(stamp, '2024-05-01T12:30:00.000Z')


class CatalogCacheTest(unittest.TestCase):
    def setUp(self):
        self.store = ost.LocalStore(':memory:')

    def tearDown(self):
        self.store.close()

    def test_products_replace_and_lookup(self):
        self.store.replace_products([
            {'variant_id': 1, 'product_name': 'Sugar', 'variant_name': '1kg', 'sku': 'SUG-1', 'price': 4500},
            {'id': 2, 'name': 'Salt', 'sku': 'SAL-1', 'selling_price': '1200'},
            {'product_name': 'no key'},
        ])
        self.assertEqual(self.store.find_product_by_sku('SUG-1')['product_name'], 'Sugar')
        self.assertEqual(self.store.get_product(2)['price'], 1200)
        self.assertIsNone(self.store.find_product_by_sku('missing'))
        self.assertEqual([p['variant_id'] for p in self.store.search_products('sa')], [2])

        self.store.replace_products([{'variant_id': 3, 'product_name': 'Tea', 'sku': 'TEA'}])
        self.assertIsNone(self.store.get_product(1))
        self.assertEqual(len(self.store.search_products()), 1)

    def test_customers_search_by_name_or_phone(self):
        self.store.replace_customers([
            {'id': 1, 'name': 'Jane Doe', 'phone': '0700111222'},
            {'id': 2, 'name': 'Okello', 'phone': '0772000000'},
        ])
        self.assertEqual([c['id'] for c in self.store.search_customers('jane')], [1])
        self.assertEqual([c['id'] for c in self.store.search_customers('0772')], [2])
        self.assertEqual(self.store.get_customer(2)['name'], 'Okello')

    def test_default_printer(self):
        self.assertIsNone(self.store.default_printer())
        self.store.replace_printers([
            {'id': 1, 'name': 'Back office', 'system_name': 'COM4', 'is_default': False},
            {'id': 2, 'name': 'Front till', 'system_name': 'COM3', 'is_default': True},
        ])
        self.assertEqual(self.store.default_printer()['name'], 'Front till')
        self.assertEqual([p['id'] for p in self.store.list_printers()], [2, 1])


if __name__ == "__main__":
    unittest.main()
