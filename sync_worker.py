#!/usr/bin/env python3
"""
POS Sync Worker

Keeps the local cache and the operation queue in step with ERPNext without the
HTTP server running.

Modes:
  - auto: pull products/customers and drain the queue each loop
  - full: additionally refresh duties & taxes and push legacy invoices

Env vars:
  POS_DB_PATH         SQLite DB path (default: pos.db)
  SYNC_MODE           'auto' | 'full' (default: 'auto')
  SYNC_INTERVAL       seconds between loops while online (default: 60)
  POS_PROBE_INTERVAL  seconds between connectivity probes (default: 15)

Run:
  python sync_worker.py
"""
import logging
import threading
from typing import Optional

import pos_config
import pos_storage as storage
from erp_client import ErpClient
from online_status import OnlineStatus
from sync_queue import SyncQueue
from sync_service import SyncService

log = logging.getLogger('pos.sync_worker')


def recover_queue(db_path: Optional[str] = None) -> int:
    """Reset operations left 'processing' by a crash before any drain runs."""
    conn = storage.connect(db_path)
    try:
        return SyncQueue(conn).recover_processing()
    finally:
        conn.close()


def run_periodic(sync: SyncService, stop: threading.Event, interval: float, mode: str = 'auto'):
    """Run a sync cycle every ``interval`` seconds while online until ``stop`` is set."""
    cycle = sync.full_sync if mode == 'full' else sync.auto_sync
    while not stop.wait(interval):
        if not sync.status.is_online():
            log.debug('Offline; waiting')
            continue
        report = cycle()
        if report.get('skipped'):
            log.info('Sync skipped: %s', report.get('reason'))


def start_background(sync: SyncService, status: OnlineStatus, client: ErpClient,
                     interval: Optional[float] = None, probe_interval: Optional[float] = None,
                     mode: str = 'auto') -> threading.Event:
    """Start the connectivity probe and periodic sync threads; set the returned event to stop them."""
    stop = threading.Event()
    sync.watch_connectivity()
    status.start(client.ping, probe_interval or pos_config.PROBE_INTERVAL)
    t = threading.Thread(
        target=run_periodic,
        args=(sync, stop, interval or pos_config.SYNC_INTERVAL, mode),
        name='pos-periodic-sync',
        daemon=True,
    )
    t.start()
    return stop


def main():
    pos_config.configure_logging('sync')
    mode = (pos_config.SYNC_MODE or 'auto').lower()
    if mode not in ('auto', 'full'):
        log.warning('Unknown SYNC_MODE %r; using auto', mode)
        mode = 'auto'
    log.info('Starting worker in mode=%s, interval=%ss, db=%s', mode, pos_config.SYNC_INTERVAL, pos_config.POS_DB_PATH)
    if not pos_config.has_erp_credentials():
        log.warning('ERPNext credentials not configured; remote calls will fail until they are set')

    recovered = recover_queue()
    if recovered:
        log.info('Recovered %d queue item(s)', recovered)

    client = ErpClient()
    status = OnlineStatus(online=False)
    sync = SyncService(client, status)
    stop = start_background(sync, status, client, mode=mode)
    try:
        while not stop.wait(1):
            pass
    except KeyboardInterrupt:
        log.info('Exiting on Ctrl+C')
    finally:
        stop.set()
        status.stop(timeout=2)


if __name__ == '__main__':
    main()
