"""
Till JSON API.

The till UI posts completed sales here; they are always written to the local
queue first and replayed to the ledger by the sync runner, so the cashier
never waits on the network.
"""
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

import printers
from config import Settings
from connectivity import ConnectivityMonitor
from offline_sales import SaleValidationError, build_receipt, record_offline_sale
from offline_store import LocalStore, LocalStoreError
from sync_reconciler import LAST_SYNC_KEY, SyncRunner


def _store_info(settings: Settings) -> Dict[str, Any]:
    return {
        'name': settings.store_name,
        'address': settings.store_address,
        'phone_number': settings.store_phone,
        'receipt_footer': settings.receipt_footer,
    }


def _as_int(value: Any) -> Optional[int]:
    if value in (None, ''):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise SaleValidationError("customer_id must be an integer")


def create_app(store: LocalStore, runner: SyncRunner, settings: Settings,
               monitor: Optional[ConnectivityMonitor] = None) -> Flask:
    app = Flask(__name__)
    app.json.sort_keys = False

    def _online() -> bool:
        return monitor.is_online if monitor is not None else False

    @app.after_request
    def add_no_cache_headers(response):
        response.headers['Cache-Control'] = 'no-store'
        response.headers['X-Content-Type-Options'] = 'nosniff'
        return response

    @app.errorhandler(LocalStoreError)
    def handle_store_error(exc):
        app.logger.error("Local store error: %s", exc)
        return jsonify({'status': 'error', 'message': f"Local storage failed: {exc}"}), 500

    @app.errorhandler(SaleValidationError)
    def handle_validation_error(exc):
        return jsonify({'status': 'error', 'message': str(exc)}), 400

    @app.route('/health')
    def health():
        return jsonify({'status': 'ok'})

    @app.route('/api/status')
    def api_status():
        return jsonify({
            'status': 'success',
            'online': _online(),
            'syncing': runner.is_syncing,
            'pending_sales': store.count_sales('pending'),
            'failed_sales': store.count_sales('failed'),
            'last_sync_utc': store.get_meta(LAST_SYNC_KEY),
        })

    @app.route('/api/sales', methods=['POST'])
    def api_record_sale():
        """Record a completed sale in the local queue and return its receipt."""
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({'status': 'error', 'message': 'Invalid JSON payload'}), 400
        business_id = data.get('business_id') or settings.business_id
        customer_id = _as_int(data.get('customer_id'))
        sale = record_offline_sale(
            store,
            cart=data.get('cart') or data.get('cart_items') or [],
            payment_method=data.get('payment_method') or '',
            business_id=business_id,
            user_id=data.get('user_id') or settings.user_id,
            amount_tendered=data.get('amount_paid', data.get('amount_tendered')),
            customer_id=customer_id,
            discount=data.get('discount'),
            require_customer_for_credit=settings.require_customer_for_credit,
        )
        customer = None
        if customer_id is not None:
            try:
                customer = store.get_customer(customer_id)
            except LocalStoreError as exc:
                app.logger.warning("Receipt without customer details for sale #%s: %s", sale['id'], exc)
        if _online():
            runner.start_background_cycle('sync-after-sale')
        return jsonify({
            'status': 'success',
            'message': f"Sale #{sale['id']} recorded locally",
            'sale': sale,
            'receipt': build_receipt(sale, _store_info(settings), customer),
        }), 201

    @app.route('/api/sales/pending')
    def api_pending_sales():
        return jsonify({'status': 'success', 'sales': store.list_sales('pending')})

    @app.route('/api/sales/failed')
    def api_failed_sales():
        """Review queue: sales the ledger refused or that ran out of retries."""
        return jsonify({'status': 'success', 'sales': store.failed_sales()})

    @app.route('/api/sales/<int:sale_id>/retry', methods=['POST'])
    def api_retry_sale(sale_id: int):
        if not store.requeue_failed(sale_id):
            return jsonify({'status': 'error', 'message': f"Sale #{sale_id} is not in the review queue"}), 404
        app.logger.info("Offline sale #%s requeued from review", sale_id)
        return jsonify({'status': 'success', 'sale': store.get_offline_sale(sale_id)})

    @app.route('/api/sync', methods=['POST'])
    def api_sync():
        if not _online():
            return jsonify({'status': 'error', 'message': 'Cannot sync while offline.'}), 503
        wait = str(request.args.get('wait', '1')).lower() in ('1', 'true', 'yes')
        if not wait:
            runner.start_background_cycle('sync-request')
            return jsonify({'status': 'accepted'}), 202
        report = runner.run_cycle()
        if report.busy:
            return jsonify({'status': 'error', 'message': 'Sync already in progress'}), 409
        return jsonify({'status': 'success', 'report': report.as_dict()})

    @app.route('/api/products')
    def api_products():
        sku = (request.args.get('sku') or '').strip()
        if sku:
            product = store.find_product_by_sku(sku)
            if not product:
                return jsonify({'status': 'error', 'message': f"SKU not registered: {sku}"}), 404
            return jsonify({'status': 'success', 'product': product})
        return jsonify({'status': 'success', 'products': store.search_products(request.args.get('q') or '')})

    @app.route('/api/customers')
    def api_customers():
        return jsonify({'status': 'success', 'customers': store.search_customers(request.args.get('q') or '')})

    @app.route('/api/printers')
    def api_printers():
        return jsonify({'status': 'success', 'printers': store.list_printers()})

    @app.route('/api/printers/default')
    def api_default_printer():
        attached_only = str(request.args.get('attached', '0')).lower() in ('1', 'true', 'yes')
        printer = printers.select_printer(store, attached_only=attached_only)
        return jsonify({'status': 'success', 'printer': printer})

    @app.route('/api/serial-ports')
    def api_serial_ports():
        """Return available serial/COM ports for the till."""
        try:
            ports = printers.available_ports()
        except Exception as exc:
            return jsonify({'status': 'error', 'message': str(exc)}), 500
        return jsonify({'status': 'success', 'ports': ports})

    return app
