"""
Replay of queued offline sales against the ledger.

Sales go out oldest first, each under a token derived from the local record
so a resend after a lost reply cannot create a second server sale. A sale
leaves the local queue only when the ledger confirms it. Structural
rejections are flagged for review; transient failures back off and are
flagged once the attempt limit is reached. One bad sale never stops the rest.
"""
import datetime as dt
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from connectivity import ConnectivityMonitor
from ledger_client import LedgerClient, SaleRejected, SyncError
from offline_store import LocalStore, LocalStoreError, iso_now

logger = logging.getLogger(__name__)

TOKEN_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, 'offline-till/offline-sale')
LAST_SYNC_KEY = 'last_sync_utc'
RETRY_LIMIT_REASON = 'retry limit exceeded'


@dataclass
class RetryPolicy:
    max_attempts: int = 8
    backoff_base: float = 30.0
    backoff_cap: float = 3600.0

    def delay(self, attempts: int) -> float:
        """Seconds to wait after the given number of failed attempts."""
        exponent = max(0, int(attempts) - 1)
        # avoid float overflow on large attempt counts
        if exponent > 32:
            return float(self.backoff_cap)
        return float(min(self.backoff_cap, self.backoff_base * (2 ** exponent)))


@dataclass
class ReconcileReport:
    skipped_offline: bool = False
    busy: bool = False
    submitted: int = 0
    accepted: int = 0
    rejected: int = 0
    retried: int = 0
    escalated: int = 0
    errors: List[str] = field(default_factory=list)
    catalog: Dict[str, int] = field(default_factory=dict)
    catalog_error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            'skipped_offline': self.skipped_offline,
            'busy': self.busy,
            'submitted': self.submitted,
            'accepted': self.accepted,
            'rejected': self.rejected,
            'retried': self.retried,
            'escalated': self.escalated,
            'errors': list(self.errors),
            'catalog': dict(self.catalog),
            'catalog_error': self.catalog_error,
        }


def idempotency_token(sale: Dict[str, Any]) -> str:
    """Deterministic token for a queued sale: tenant + local id + creation time."""
    seed = f"{sale['business_id']}:{sale['id']}:{sale['created_utc']}"
    return str(uuid.uuid5(TOKEN_NAMESPACE, seed))


def build_submission(sale: Dict[str, Any]) -> Dict[str, Any]:
    """Server payload for one queued sale."""
    discount = sale.get('discount') or {}
    return {
        'idempotency_token': idempotency_token(sale),
        'local_id': sale['id'],
        'created_at': sale['created_utc'],
        'business_id': sale['business_id'],
        'user_id': sale['user_id'],
        'customer_id': sale.get('customer_id'),
        'payment_method': sale['payment_method'],
        'cart_items': [
            {
                'variant_id': line.get('variant_id'),
                'quantity': line.get('quantity'),
                'price': line.get('price'),
            }
            for line in sale.get('cart') or []
        ],
        'subtotal': sale.get('subtotal'),
        'discount_type': discount.get('type'),
        'discount_value': discount.get('value'),
        'discount_amount': discount.get('amount'),
        'total_amount': sale.get('total'),
        'amount_paid': sale.get('amount_paid'),
        'due_amount': sale.get('due_amount'),
        'payment_status': sale.get('payment_status'),
    }


def _utc(now: Optional[dt.datetime]) -> dt.datetime:
    now = now or dt.datetime.now(dt.timezone.utc)
    return now if now.tzinfo else now.replace(tzinfo=dt.timezone.utc)


def _replay_one(store: LocalStore, client: LedgerClient, sale: Dict[str, Any],
                policy: RetryPolicy, now: dt.datetime, report: ReconcileReport) -> None:
    sale_id = sale['id']
    token = idempotency_token(sale)
    report.submitted += 1
    try:
        result = client.submit_sale(build_submission(sale), token)
    except SaleRejected as exc:
        report.rejected += 1
        store.mark_failed(sale_id, exc.reason, error=str(exc))
        logger.warning("Ledger rejected offline sale #%s: %s", sale_id, exc.reason)
        return
    except SyncError as exc:
        _retry_later(store, sale, str(exc), policy, now, report)
        return
    except Exception as exc:
        logger.exception("Unexpected error submitting offline sale #%s", sale_id)
        _retry_later(store, sale, f"{type(exc).__name__}: {exc}", policy, now, report)
        return

    report.accepted += 1
    store.delete_offline_sale(sale_id)
    logger.info(
        "Offline sale #%s accepted as %s%s", sale_id, result.server_sale_id or '(existing)',
        ' [duplicate]' if result.duplicate else ''
    )


def _retry_later(store: LocalStore, sale: Dict[str, Any], error: str, policy: RetryPolicy,
                 now: dt.datetime, report: ReconcileReport) -> None:
    sale_id = sale['id']
    attempts = int(sale.get('attempts') or 0) + 1
    next_at = now + dt.timedelta(seconds=policy.delay(attempts))
    attempts = store.schedule_retry(sale_id, error, iso_now(next_at))
    if attempts >= policy.max_attempts:
        report.escalated += 1
        store.mark_failed(sale_id, RETRY_LIMIT_REASON, error=error)
        logger.warning("Offline sale #%s flagged after %d attempts: %s", sale_id, attempts, error)
        return
    report.retried += 1
    logger.warning("Offline sale #%s will retry after %s (attempt %d): %s", sale_id, iso_now(next_at), attempts, error)


def reconcile_pending(store: LocalStore, client: LedgerClient,
                      monitor: Optional[ConnectivityMonitor] = None,
                      policy: Optional[RetryPolicy] = None,
                      now: Optional[dt.datetime] = None,
                      limit: Optional[int] = None) -> ReconcileReport:
    """Submit every due pending sale, oldest first."""
    report = ReconcileReport()
    if monitor is not None and not monitor.is_online:
        report.skipped_offline = True
        logger.info("Offline; %d sale(s) stay queued", store.count_pending())
        return report
    policy = policy or RetryPolicy()
    now = _utc(now)
    for sale in store.pending_sales(iso_now(now), limit=limit):
        try:
            _replay_one(store, client, sale, policy, now, report)
        except LocalStoreError as exc:
            # The next pass resubmits under the same token.
            report.errors.append(f"sale #{sale['id']}: {exc}")
            logger.error("Local store error while reconciling sale #%s: %s", sale['id'], exc)
    if report.submitted:
        logger.info(
            "Reconciled %d sale(s): accepted=%d rejected=%d retry=%d flagged=%d",
            report.submitted, report.accepted, report.rejected, report.retried, report.escalated
        )
    return report


def refresh_catalog(store: LocalStore, client: LedgerClient, business_id: Optional[str] = None) -> Dict[str, int]:
    """Replace the cached products, customers and printers with the ledger's rows."""
    products = client.fetch_sellable_products(business_id)
    customers = client.fetch_customers(business_id)
    printers = client.fetch_printers(business_id)
    counts = {
        'products': store.replace_products(products),
        'customers': store.replace_customers(customers),
        'printers': store.replace_printers(printers),
    }
    logger.info("Catalog refreshed: %s", ", ".join(f"{k}={v}" for k, v in counts.items()))
    return counts


def sync_cycle(store: LocalStore, client: LedgerClient,
               monitor: Optional[ConnectivityMonitor] = None,
               policy: Optional[RetryPolicy] = None,
               business_id: Optional[str] = None,
               now: Optional[dt.datetime] = None) -> ReconcileReport:
    """Drain the queue, then refresh the caches and stamp the sync time."""
    report = reconcile_pending(store, client, monitor=monitor, policy=policy, now=now)
    if report.skipped_offline:
        return report
    try:
        report.catalog = refresh_catalog(store, client, business_id)
    except (SyncError, LocalStoreError) as exc:
        report.catalog_error = str(exc)
        logger.warning("Catalog refresh failed: %s", exc)
        return report
    store.set_meta(LAST_SYNC_KEY, iso_now(now))
    return report


class SyncRunner:
    """Runs sync cycles for one till, at most one at a time."""

    def __init__(self, store: LocalStore, client: LedgerClient,
                 monitor: Optional[ConnectivityMonitor] = None,
                 policy: Optional[RetryPolicy] = None,
                 business_id: Optional[str] = None):
        self.store = store
        self.client = client
        self.monitor = monitor
        self.policy = policy or RetryPolicy()
        self.business_id = business_id
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._periodic: Optional[threading.Thread] = None

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    def run_cycle(self) -> ReconcileReport:
        if not self._lock.acquire(blocking=False):
            return ReconcileReport(busy=True)
        try:
            return sync_cycle(self.store, self.client, monitor=self.monitor,
                              policy=self.policy, business_id=self.business_id)
        finally:
            self._lock.release()

    def on_connectivity_change(self, online: bool) -> None:
        """Listener for ConnectivityMonitor: sync as soon as the link returns."""
        if not online:
            logger.info("Offline; sales will be saved locally")
            return
        self.start_background_cycle('sync-on-reconnect')

    def start_background_cycle(self, name: str = 'sync-cycle') -> threading.Thread:
        thread = threading.Thread(target=self._run_logged, name=name, daemon=True)
        thread.start()
        return thread

    def _run_logged(self) -> None:
        try:
            self.run_cycle()
        except Exception:
            logger.exception("Background sync cycle failed")

    def start_periodic(self, interval: float) -> None:
        """Run a cycle every `interval` seconds on a daemon thread until stop_periodic()."""
        if self._periodic and self._periodic.is_alive():
            return
        self._stop.clear()
        self._periodic = threading.Thread(
            target=self._periodic_loop, args=(interval,), name='periodic-sync', daemon=True
        )
        self._periodic.start()
        logger.info("Periodic sync every %ss", interval)

    def _periodic_loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            self._run_logged()

    def stop_periodic(self) -> None:
        self._stop.set()
        thread = self._periodic
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=30)
        self._periodic = None
