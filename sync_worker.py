#!/usr/bin/env python3
"""
Offline till sync worker

Replays queued offline sales to the ledger and refreshes the local catalog.

Modes:
  (default)    loop: probe connectivity, run a sync cycle, sleep SYNC_INTERVAL
  --once       run a single sync cycle and exit
  --status     print queue counts and the last sync time
  --failed     list sales waiting in the review queue
  --retry ID   move a reviewed sale back into the pending queue

Env vars: see config.py (POS_DB_PATH, LEDGER_URL, SYNC_INTERVAL, ...)

Run:
  python sync_worker.py
"""
import argparse
import json
import logging
import time

from config import configure_logging, load_settings
from main import build_services
from sync_reconciler import LAST_SYNC_KEY

logger = logging.getLogger('sync_worker')


def print_status(store) -> None:
    print(json.dumps({
        'pending_sales': store.count_sales('pending'),
        'failed_sales': store.count_sales('failed'),
        'last_sync_utc': store.get_meta(LAST_SYNC_KEY),
        'schema_version': store.version,
    }, indent=2))


def print_failed(store) -> None:
    rows = store.failed_sales()
    if not rows:
        print('No sales awaiting review')
        return
    for sale in rows:
        print(f"#{sale['id']} {sale['created_utc']} total={sale['total']} "
              f"attempts={sale['attempts']} reason={sale['failure_reason']!r}")


def run_once(runner, monitor) -> None:
    monitor.poll_once()
    report = runner.run_cycle()
    if report.skipped_offline:
        logger.info("Ledger unreachable; %d sale(s) queued", runner.store.count_pending())
    elif report.submitted or report.catalog_error:
        logger.info("Sync cycle: %s", report.as_dict())


def main(argv=None) -> int:
    settings = load_settings()
    ap = argparse.ArgumentParser(description="Offline till sync worker")
    ap.add_argument("--db", default=settings.db_path, help="Path to SQLite DB")
    ap.add_argument("--once", action="store_true", help="Run one sync cycle and exit")
    ap.add_argument("--status", action="store_true", help="Show queue status")
    ap.add_argument("--failed", action="store_true", help="List sales in the review queue")
    ap.add_argument("--retry", type=int, metavar="ID", help="Requeue a reviewed sale")
    args = ap.parse_args(argv)

    settings.db_path = args.db
    configure_logging(settings.log_level)
    store, client, monitor, runner = build_services(settings)
    try:
        if args.status:
            print_status(store)
            return 0
        if args.failed:
            print_failed(store)
            return 0
        if args.retry is not None:
            if store.requeue_failed(args.retry):
                print(f"Sale #{args.retry} requeued")
                return 0
            print(f"Sale #{args.retry} is not in the review queue")
            return 1
        if args.once:
            run_once(runner, monitor)
            return 0

        logger.info("Starting sync worker interval=%ss db=%s ledger=%s",
                    settings.sync_interval, settings.db_path, client.base_url or '(not set)')
        while True:
            try:
                run_once(runner, monitor)
            except Exception:
                logger.exception("Sync cycle failed")
            time.sleep(settings.sync_interval)
    except KeyboardInterrupt:
        logger.info("Exiting on Ctrl+C")
        return 0
    finally:
        store.close()


if __name__ == '__main__':
    raise SystemExit(main())
