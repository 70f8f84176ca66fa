import logging

from config import configure_logging, load_settings
from connectivity import ConnectivityMonitor
from ledger_client import LedgerClient
from offline_store import LocalStore
from pos_server import create_app
from sync_reconciler import RetryPolicy, SyncRunner


def build_services(settings):
    """Construct the per-process store, ledger client, monitor and sync runner."""
    store = LocalStore(settings.db_path)
    client = LedgerClient(
        settings.ledger_url,
        api_key=settings.ledger_api_key,
        access_token=settings.ledger_access_token,
        submit_rpc=settings.ledger_submit_rpc,
        timeout=settings.ledger_timeout,
    )
    monitor = ConnectivityMonitor(client.health, interval=settings.connectivity_interval)
    policy = RetryPolicy(
        max_attempts=settings.sync_max_attempts,
        backoff_base=settings.sync_backoff_base,
        backoff_cap=settings.sync_backoff_cap,
    )
    runner = SyncRunner(store, client, monitor=monitor, policy=policy, business_id=settings.business_id)
    return store, client, monitor, runner


if __name__ == '__main__':
    settings = load_settings()
    configure_logging(settings.log_level)
    store, client, monitor, runner = build_services(settings)
    monitor.subscribe(runner.on_connectivity_change)
    monitor.start()
    runner.start_periodic(settings.sync_interval)
    if not client.configured:
        logging.getLogger('till').warning("LEDGER_URL is not set; every sale stays in the local queue")
    app = create_app(store, runner, settings, monitor=monitor)
    try:
        app.run(host=settings.host, port=settings.port, debug=settings.debug, use_reloader=False)
    finally:
        runner.stop_periodic()
        monitor.stop()
        store.close()
