"""
Local durable store for the offline till.

One SQLite file holds the cached catalog (products, customers, printers), the
queue of sales captured while the ledger was unreachable, and a small meta
table. The schema is versioned through PRAGMA user_version; migrations are
additive so an older file is upgraded in place on open.

Every public method is one atomic unit against one table. Nothing here spans
tables in a single transaction.
"""
import datetime as dt
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

logger = logging.getLogger(__name__)

SYNC_PENDING = 'pending'
SYNC_FAILED = 'failed'


class LocalStoreError(Exception):
    """Raised when the local store cannot persist or read a record."""


def iso_now(moment: Optional[dt.datetime] = None) -> str:
    moment = moment or dt.datetime.now(dt.timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=dt.timezone.utc)
    return moment.astimezone(dt.timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


# ---------- SCHEMA ----------
_MIGRATIONS: Dict[int, Sequence[str]] = {
    1: (
        """
        CREATE TABLE IF NOT EXISTS products (
          variant_id    INTEGER PRIMARY KEY,
          business_id   TEXT,
          product_name  TEXT NOT NULL DEFAULT '',
          variant_name  TEXT,
          sku           TEXT,
          price         NUMERIC NOT NULL DEFAULT 0,
          stock         NUMERIC,
          payload_json  TEXT,
          cached_utc    TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_products_name ON products(product_name)",
        "CREATE INDEX IF NOT EXISTS idx_products_sku ON products(sku)",
        """
        CREATE TABLE IF NOT EXISTS customers (
          id            INTEGER PRIMARY KEY,
          business_id   TEXT,
          name          TEXT NOT NULL DEFAULT '',
          phone         TEXT,
          email         TEXT,
          payload_json  TEXT,
          cached_utc    TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_customers_name ON customers(name)",
        "CREATE INDEX IF NOT EXISTS idx_customers_phone ON customers(phone)",
        """
        CREATE TABLE IF NOT EXISTS offline_sales (
          id               INTEGER PRIMARY KEY AUTOINCREMENT,
          created_utc      TEXT NOT NULL,
          business_id      TEXT NOT NULL,
          user_id          TEXT NOT NULL,
          customer_id      INTEGER,
          payment_method   TEXT NOT NULL,
          cart_json        TEXT NOT NULL,
          subtotal         NUMERIC NOT NULL,
          discount_type    TEXT,
          discount_value   NUMERIC,
          discount_amount  NUMERIC,
          total            NUMERIC NOT NULL,
          amount_tendered  NUMERIC NOT NULL,
          amount_paid      NUMERIC NOT NULL,
          due_amount       NUMERIC NOT NULL,
          change_due       NUMERIC NOT NULL DEFAULT 0,
          payment_status   TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_offline_sales_created ON offline_sales(created_utc)",
        "CREATE INDEX IF NOT EXISTS idx_offline_sales_customer ON offline_sales(customer_id)",
        "CREATE INDEX IF NOT EXISTS idx_offline_sales_pay_status ON offline_sales(payment_status)",
        """
        CREATE TABLE IF NOT EXISTS printers (
          id           INTEGER PRIMARY KEY,
          business_id  TEXT,
          name         TEXT NOT NULL DEFAULT '',
          system_name  TEXT,
          is_default   INTEGER NOT NULL DEFAULT 0,
          cached_utc   TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_printers_name ON printers(name)",
        "CREATE INDEX IF NOT EXISTS idx_printers_default ON printers(is_default)",
    ),
    # Replay bookkeeping for the sync reconciler
    2: (
        "ALTER TABLE offline_sales ADD COLUMN sync_status TEXT NOT NULL DEFAULT 'pending'",
        "ALTER TABLE offline_sales ADD COLUMN attempts INTEGER NOT NULL DEFAULT 0",
        "ALTER TABLE offline_sales ADD COLUMN last_error TEXT",
        "ALTER TABLE offline_sales ADD COLUMN next_attempt_utc TEXT",
        "ALTER TABLE offline_sales ADD COLUMN failure_reason TEXT",
        "ALTER TABLE offline_sales ADD COLUMN failed_utc TEXT",
        "CREATE INDEX IF NOT EXISTS idx_offline_sales_sync ON offline_sales(sync_status, created_utc)",
    ),
    3: (
        """
        CREATE TABLE IF NOT EXISTS meta (
          key          TEXT PRIMARY KEY,
          value        TEXT,
          updated_utc  TEXT NOT NULL
        )
        """,
    ),
}

SCHEMA_VERSION = max(_MIGRATIONS)


def schema_version(conn: sqlite3.Connection) -> int:
    return int(conn.execute("PRAGMA user_version").fetchone()[0])


def migrate(conn: sqlite3.Connection, target: Optional[int] = None) -> int:
    """Apply pending migrations up to `target` (default: latest). Returns the resulting version."""
    target = SCHEMA_VERSION if target is None else target
    current = schema_version(conn)
    for version in sorted(v for v in _MIGRATIONS if current < v <= target):
        conn.execute("BEGIN IMMEDIATE")
        try:
            for sql in _MIGRATIONS[version]:
                conn.execute(sql)
            conn.execute(f"PRAGMA user_version = {int(version)}")
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        logger.info("Local store upgraded to schema v%d", version)
        current = version
    return current


# ---------- ROW MAPPING ----------
def _as_float(value: Any, default: Optional[float] = 0.0) -> Optional[float]:
    if value in (None, '', False):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _sale_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    sale = dict(row)
    sale['cart'] = json.loads(sale.pop('cart_json') or '[]')
    if sale.get('discount_type'):
        sale['discount'] = {
            'type': sale['discount_type'],
            'value': sale['discount_value'],
            'amount': sale['discount_amount'],
        }
    else:
        sale['discount'] = None
    return sale


def _product_row(row: Dict[str, Any], now: str) -> Optional[Dict[str, Any]]:
    variant_id = row.get('variant_id') if row.get('variant_id') is not None else row.get('id')
    if variant_id is None:
        return None
    return {
        'variant_id': variant_id,
        'business_id': row.get('business_id'),
        'product_name': (row.get('product_name') or row.get('name') or '').strip(),
        'variant_name': row.get('variant_name'),
        'sku': (row.get('sku') or '').strip() or None,
        'price': _as_float(row.get('price', row.get('selling_price'))),
        'stock': _as_float(row.get('stock', row.get('quantity')), None),
        'payload_json': json.dumps(row, separators=(',', ':'), default=str),
        'cached_utc': now,
    }


def _customer_row(row: Dict[str, Any], now: str) -> Optional[Dict[str, Any]]:
    if row.get('id') is None:
        return None
    return {
        'id': row['id'],
        'business_id': row.get('business_id'),
        'name': (row.get('name') or row.get('customer_name') or '').strip(),
        'phone': (row.get('phone') or row.get('phone_number') or '').strip() or None,
        'email': (row.get('email') or '').strip() or None,
        'payload_json': json.dumps(row, separators=(',', ':'), default=str),
        'cached_utc': now,
    }


def _printer_row(row: Dict[str, Any], now: str) -> Optional[Dict[str, Any]]:
    if row.get('id') is None:
        return None
    return {
        'id': row['id'],
        'business_id': row.get('business_id'),
        'name': (row.get('name') or '').strip(),
        'system_name': (row.get('system_name') or row.get('device') or '').strip() or None,
        'is_default': 1 if row.get('is_default') in (1, '1', True, 'true', 'True') else 0,
        'cached_utc': now,
    }


def _cached_row(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data.pop('payload_json', None)
    return data


class LocalStore:
    """Handle on the till's SQLite file.

    Construct once per process and pass it to whatever needs it. The
    connection is shared between threads behind a lock.
    """

    def __init__(self, path: str, schema_version: Optional[int] = None):
        self.path = path
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(path, timeout=30, isolation_level=None, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            if path != ':memory:':
                self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
            migrate(self._conn, schema_version)
        except sqlite3.Error as exc:
            raise LocalStoreError(f"Cannot open local store {path}: {exc}") from exc

    @property
    def version(self) -> int:
        with self._guard('read schema version'):
            return schema_version(self._conn)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _guard(self, action: str) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as exc:
                raise LocalStoreError(f"{action} failed: {exc}") from exc

    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Connection]:
        with self._guard(action) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    # ---------- OFFLINE SALES ----------
    def add_offline_sale(self, sale: Dict[str, Any]) -> int:
        """Append one sale to the queue and return its local id."""
        try:
            cart_json = json.dumps(sale['cart'], separators=(',', ':'), allow_nan=False)
        except (TypeError, ValueError) as exc:
            raise LocalStoreError(f"Cannot serialize sale cart: {exc}") from exc
        discount = sale.get('discount') or {}
        params = (
            sale.get('created_utc') or iso_now(),
            str(sale['business_id']),
            str(sale['user_id']),
            sale.get('customer_id'),
            sale['payment_method'],
            cart_json,
            sale['subtotal'],
            discount.get('type'),
            discount.get('value'),
            discount.get('amount'),
            sale['total'],
            sale['amount_tendered'],
            sale['amount_paid'],
            sale['due_amount'],
            sale.get('change_due', 0),
            sale['payment_status'],
        )
        with self._guard('record offline sale') as conn:
            cur = conn.execute("""
                INSERT INTO offline_sales (
                  created_utc, business_id, user_id, customer_id, payment_method, cart_json,
                  subtotal, discount_type, discount_value, discount_amount, total,
                  amount_tendered, amount_paid, due_amount, change_due, payment_status
                ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
            """, params)
            return int(cur.lastrowid)

    def get_offline_sale(self, sale_id: int) -> Optional[Dict[str, Any]]:
        with self._guard('read offline sale') as conn:
            row = conn.execute("SELECT * FROM offline_sales WHERE id=?", (sale_id,)).fetchone()
        return _sale_from_row(row) if row else None

    def pending_sales(self, now: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Pending sales whose retry delay has elapsed, oldest first."""
        now = now or iso_now()
        sql = """
            SELECT * FROM offline_sales
            WHERE sync_status = ? AND (next_attempt_utc IS NULL OR next_attempt_utc <= ?)
            ORDER BY created_utc ASC, id ASC
        """
        params: List[Any] = [SYNC_PENDING, now]
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._guard('read pending sales') as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_sale_from_row(r) for r in rows]

    def list_sales(self, sync_status: str = SYNC_PENDING) -> List[Dict[str, Any]]:
        with self._guard('list offline sales') as conn:
            rows = conn.execute(
                "SELECT * FROM offline_sales WHERE sync_status=? ORDER BY created_utc ASC, id ASC",
                (sync_status,)
            ).fetchall()
        return [_sale_from_row(r) for r in rows]

    def failed_sales(self) -> List[Dict[str, Any]]:
        return self.list_sales(SYNC_FAILED)

    def count_sales(self, sync_status: str = SYNC_PENDING) -> int:
        with self._guard('count offline sales') as conn:
            row = conn.execute("SELECT COUNT(*) FROM offline_sales WHERE sync_status=?", (sync_status,)).fetchone()
        return int(row[0])

    def count_pending(self) -> int:
        return self.count_sales(SYNC_PENDING)

    def delete_offline_sale(self, sale_id: int) -> bool:
        with self._guard('delete offline sale') as conn:
            cur = conn.execute("DELETE FROM offline_sales WHERE id=?", (sale_id,))
            return cur.rowcount > 0

    def schedule_retry(self, sale_id: int, error: str, next_attempt_utc: str) -> int:
        """Record a transient failure; returns the new attempt count."""
        with self._transaction('schedule sale retry') as conn:
            conn.execute("""
                UPDATE offline_sales
                SET attempts = attempts + 1, last_error = ?, next_attempt_utc = ?
                WHERE id = ?
            """, (error, next_attempt_utc, sale_id))
            row = conn.execute("SELECT attempts FROM offline_sales WHERE id=?", (sale_id,)).fetchone()
        return int(row['attempts']) if row else 0

    def mark_failed(self, sale_id: int, reason: str, error: Optional[str] = None) -> None:
        with self._guard('flag offline sale') as conn:
            conn.execute("""
                UPDATE offline_sales
                SET sync_status = ?, failure_reason = ?, last_error = COALESCE(?, last_error),
                    failed_utc = ?, next_attempt_utc = NULL
                WHERE id = ?
            """, (SYNC_FAILED, reason, error, iso_now(), sale_id))

    def requeue_failed(self, sale_id: int) -> bool:
        """Put a flagged sale back in the queue after manual review."""
        with self._guard('requeue offline sale') as conn:
            cur = conn.execute("""
                UPDATE offline_sales
                SET sync_status = ?, attempts = 0, failure_reason = NULL, failed_utc = NULL,
                    next_attempt_utc = NULL
                WHERE id = ? AND sync_status = ?
            """, (SYNC_PENDING, sale_id, SYNC_FAILED))
            return cur.rowcount > 0

    # ---------- CATALOG CACHES ----------
    def _replace(self, table: str, columns: Sequence[str], rows: List[Dict[str, Any]]) -> int:
        placeholders = ','.join(':' + c for c in columns)
        sql = f"INSERT OR REPLACE INTO {table} ({','.join(columns)}) VALUES ({placeholders})"
        with self._transaction(f'refresh {table} cache') as conn:
            conn.execute(f"DELETE FROM {table}")
            if rows:
                conn.executemany(sql, rows)
        return len(rows)

    def replace_products(self, products: List[Dict[str, Any]]) -> int:
        now = iso_now()
        rows = [r for r in (_product_row(p, now) for p in products or []) if r]
        return self._replace('products', (
            'variant_id', 'business_id', 'product_name', 'variant_name', 'sku',
            'price', 'stock', 'payload_json', 'cached_utc'
        ), rows)

    def replace_customers(self, customers: List[Dict[str, Any]]) -> int:
        now = iso_now()
        rows = [r for r in (_customer_row(c, now) for c in customers or []) if r]
        return self._replace('customers', (
            'id', 'business_id', 'name', 'phone', 'email', 'payload_json', 'cached_utc'
        ), rows)

    def replace_printers(self, printers: List[Dict[str, Any]]) -> int:
        now = iso_now()
        rows = [r for r in (_printer_row(p, now) for p in printers or []) if r]
        return self._replace('printers', (
            'id', 'business_id', 'name', 'system_name', 'is_default', 'cached_utc'
        ), rows)

    def get_product(self, variant_id: int) -> Optional[Dict[str, Any]]:
        with self._guard('read product') as conn:
            row = conn.execute("SELECT * FROM products WHERE variant_id=?", (variant_id,)).fetchone()
        return _cached_row(row) if row else None

    def find_product_by_sku(self, sku: str) -> Optional[Dict[str, Any]]:
        sku = (sku or '').strip()
        if not sku:
            return None
        with self._guard('look up product by sku') as conn:
            row = conn.execute("SELECT * FROM products WHERE sku=? LIMIT 1", (sku,)).fetchone()
        return _cached_row(row) if row else None

    def search_products(self, term: str = '', limit: int = 50) -> List[Dict[str, Any]]:
        pattern = f"%{(term or '').strip()}%"
        with self._guard('search products') as conn:
            rows = conn.execute("""
                SELECT * FROM products
                WHERE product_name LIKE ? OR variant_name LIKE ? OR sku LIKE ?
                ORDER BY product_name, variant_name LIMIT ?
            """, (pattern, pattern, pattern, int(limit))).fetchall()
        return [_cached_row(r) for r in rows]

    def get_customer(self, customer_id: int) -> Optional[Dict[str, Any]]:
        with self._guard('read customer') as conn:
            row = conn.execute("SELECT * FROM customers WHERE id=?", (customer_id,)).fetchone()
        return _cached_row(row) if row else None

    def search_customers(self, term: str = '', limit: int = 50) -> List[Dict[str, Any]]:
        pattern = f"%{(term or '').strip()}%"
        with self._guard('search customers') as conn:
            rows = conn.execute("""
                SELECT * FROM customers WHERE name LIKE ? OR phone LIKE ?
                ORDER BY name LIMIT ?
            """, (pattern, pattern, int(limit))).fetchall()
        return [_cached_row(r) for r in rows]

    def list_printers(self) -> List[Dict[str, Any]]:
        with self._guard('list printers') as conn:
            rows = conn.execute("SELECT * FROM printers ORDER BY is_default DESC, name ASC").fetchall()
        return [_cached_row(r) for r in rows]

    def default_printer(self) -> Optional[Dict[str, Any]]:
        with self._guard('read default printer') as conn:
            row = conn.execute("SELECT * FROM printers WHERE is_default=1 ORDER BY id LIMIT 1").fetchone()
        return _cached_row(row) if row else None

    # ---------- META ----------
    def get_meta(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._guard('read meta') as conn:
            row = conn.execute("SELECT value FROM meta WHERE key=?", (key,)).fetchone()
        return row['value'] if row else default

    def set_meta(self, key: str, value: Optional[str]) -> None:
        with self._guard('write meta') as conn:
            conn.execute("""
                INSERT INTO meta (key, value, updated_utc) VALUES (?,?,?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_utc=excluded.updated_utc
            """, (key, value, iso_now()))
