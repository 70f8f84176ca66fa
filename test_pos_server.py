import unittest
from unittest import mock

from config import Settings
from connectivity import ConnectivityMonitor
from ledger_client import SubmitResult
from offline_store import LocalStore, LocalStoreError
from pos_server import create_app
from sync_reconciler import SyncRunner


class AcceptingLedger:
    def __init__(self):
        self.tokens = []

    def submit_sale(self, payload, token):
        self.tokens.append(token)
        return SubmitResult(server_sale_id=f"SRV-{payload['local_id']}")

    def fetch_sellable_products(self, business_id=None):
        return [{'variant_id': 5, 'product_name': 'Bread', 'sku': 'BRD-1', 'price': 3000}]

    def fetch_customers(self, business_id=None):
        return [{'id': 7, 'name': 'Jane Doe', 'phone': '0700000007'}]

    def fetch_printers(self, business_id=None):
        return [{'id': 1, 'name': 'Front till', 'system_name': 'COM3', 'is_default': True}]


class PosServerTest(unittest.TestCase):
    def setUp(self):
        self.store = LocalStore(':memory:')
        self.ledger = AcceptingLedger()
        self.monitor = ConnectivityMonitor(lambda: False)
        self.runner = SyncRunner(self.store, self.ledger, monitor=self.monitor)
        settings = Settings(business_id='biz-1', user_id='cashier-1', store_name='Kampala Shop')
        app = create_app(self.store, self.runner, settings, monitor=self.monitor)
        app.testing = True
        self.client = app.test_client()

    def tearDown(self):
        self.store.close()

    def _sale(self, **extra):
        body = {
            'cart': [{'variant_id': 5, 'product_name': 'Bread', 'quantity': 2, 'price': 25000}],
            'payment_method': 'Cash',
            'amount_paid': 30000,
        }
        body.update(extra)
        return self.client.post('/api/sales', json=body)

    def test_record_sale_offline_returns_receipt(self):
        resp = self._sale()
        self.assertEqual(resp.status_code, 201)
        data = resp.get_json()
        self.assertEqual(data['sale']['payment_status'], 'partial')
        self.assertEqual(data['sale']['due_amount'], 20000)
        self.assertEqual(data['receipt']['store_info']['name'], 'Kampala Shop')

        status = self.client.get('/api/status').get_json()
        self.assertFalse(status['online'])
        self.assertEqual(status['pending_sales'], 1)
        pending = self.client.get('/api/sales/pending').get_json()['sales']
        self.assertEqual(pending[0]['business_id'], 'biz-1')
        self.assertEqual(pending[0]['user_id'], 'cashier-1')

    def test_invalid_sale_is_400_and_not_queued(self):
        resp = self._sale(cart=[])
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()['status'], 'error')
        resp = self.client.post('/api/sales', data='nope', content_type='text/plain')
        self.assertEqual(resp.status_code, 400)
        for discount in (10, {'type': 5, 'value': 10}):
            resp = self._sale(discount=discount)
            self.assertEqual(resp.status_code, 400)
            self.assertEqual(resp.get_json()['status'], 'error')
        self.assertEqual(self.store.count_pending(), 0)

    def test_sale_recorded_online_is_replayed(self):
        started = []
        start_cycle = self.runner.start_background_cycle

        def tracking_start(name='sync-cycle'):
            thread = start_cycle(name)
            started.append(thread)
            return thread

        self.monitor.set_online(True)
        with mock.patch.object(self.runner, 'start_background_cycle', side_effect=tracking_start):
            resp = self._sale()
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(len(started), 1)
        started[0].join(timeout=5)
        self.assertEqual(self.store.count_pending(), 0)
        self.assertEqual(len(self.ledger.tokens), 1)

    def test_sale_recorded_offline_waits_in_queue(self):
        with mock.patch.object(self.runner, 'start_background_cycle') as start:
            self._sale()
        start.assert_not_called()
        self.assertEqual(self.store.count_pending(), 1)

    def test_storage_failure_is_500(self):
        with mock.patch.object(self.store, 'add_offline_sale', side_effect=LocalStoreError('disk full')):
            resp = self._sale()
        self.assertEqual(resp.status_code, 500)
        self.assertIn('disk full', resp.get_json()['message'])

    def test_sync_requires_connectivity(self):
        self._sale()
        self.assertEqual(self.client.post('/api/sync').status_code, 503)
        self.monitor.set_online(True)
        resp = self.client.post('/api/sync')
        self.assertEqual(resp.status_code, 200)
        report = resp.get_json()['report']
        self.assertEqual(report['accepted'], 1)
        self.assertEqual(self.store.count_pending(), 0)
        self.assertIsNotNone(self.client.get('/api/status').get_json()['last_sync_utc'])

    def test_lookups_after_sync(self):
        self.monitor.set_online(True)
        self.client.post('/api/sync')
        product = self.client.get('/api/products?sku=BRD-1').get_json()['product']
        self.assertEqual(product['product_name'], 'Bread')
        self.assertEqual(self.client.get('/api/products?sku=NOPE').status_code, 404)
        customers = self.client.get('/api/customers?q=jane').get_json()['customers']
        self.assertEqual(customers[0]['id'], 7)
        printer = self.client.get('/api/printers/default').get_json()['printer']
        self.assertEqual(printer['system_name'], 'COM3')

    def test_review_queue_retry(self):
        sale_id = self._sale().get_json()['sale']['id']
        self.assertEqual(self.client.post(f'/api/sales/{sale_id}/retry').status_code, 404)
        self.store.mark_failed(sale_id, 'customer does not exist')
        failed = self.client.get('/api/sales/failed').get_json()['sales']
        self.assertEqual([s['id'] for s in failed], [sale_id])
        resp = self.client.post(f'/api/sales/{sale_id}/retry')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()['sale']['sync_status'], 'pending')


if __name__ == "__main__":
    unittest.main()
