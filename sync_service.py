"""
Sync orchestrator: pulls catalog and customers into the local cache and drains
the operation queue.

Only one cycle runs at a time. A trigger that arrives while a cycle is in
flight is dropped and reported as ``{"skipped": True}``. Every sub-task is
isolated so one failure never blocks the others.
"""
import logging
import sqlite3
import threading
from typing import Any, Callable, Dict, Optional

import pos_config
import pos_storage as storage
from online_status import OnlineStatus
from sync_queue import SyncQueue, process_sync_queue

log = logging.getLogger(__name__)

LAST_REPORT_KEY = "last_sync_report"


class SyncService:
    def __init__(self, client, status: Optional[OnlineStatus] = None,
                 connect: Optional[Callable[[], sqlite3.Connection]] = None,
                 company: Optional[str] = None, page_length: Optional[int] = None):
        self.client = client
        self.status = status or OnlineStatus(online=True)
        self._connect = connect or storage.connect
        self.company = company or pos_config.POS_COMPANY
        self.page_length = page_length or pos_config.ITEM_PAGE_LENGTH
        self._cycle_lock = threading.Lock()
        self._last_report: Optional[Dict[str, Any]] = None

    # ---------- public entry points ----------
    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    @property
    def last_report(self) -> Optional[Dict[str, Any]]:
        return self._last_report

    def auto_sync(self) -> Dict[str, Any]:
        return self._run_cycle("auto", full=False)

    def full_sync(self) -> Dict[str, Any]:
        return self._run_cycle("full", full=True)

    def trigger_auto_sync(self) -> Optional[threading.Thread]:
        """Start auto_sync on a daemon thread. Returns None when a cycle is already running."""
        return self._trigger(self.auto_sync, "pos-auto-sync")

    def trigger_full_sync(self) -> Optional[threading.Thread]:
        return self._trigger(self.full_sync, "pos-full-sync")

    def watch_connectivity(self) -> Callable[[], None]:
        """Run auto-sync whenever the monitor flips to online; returns the listener remover."""
        return self.status.add_online_listener(self.trigger_auto_sync)

    def _trigger(self, target: Callable[[], Dict[str, Any]], name: str) -> Optional[threading.Thread]:
        if self.is_running:
            log.info("Sync already running; ignoring %s trigger", name)
            return None
        t = threading.Thread(target=target, name=name, daemon=True)
        t.start()
        return t

    # ---------- cycle ----------
    def _run_cycle(self, kind: str, full: bool) -> Dict[str, Any]:
        if not self._cycle_lock.acquire(blocking=False):
            log.info("Sync cycle already in progress; %s sync skipped", kind)
            return {"kind": kind, "skipped": True, "reason": "already running"}
        conn = None
        try:
            if not self.status.is_online():
                log.info("Offline; %s sync skipped", kind)
                return {"kind": kind, "skipped": True, "reason": "offline"}
            conn = self._connect()
            report: Dict[str, Any] = {"kind": kind, "skipped": False, "started_utc": storage.iso_now()}
            report["products"] = self._run_task("products", self.sync_products, conn)
            report["customers"] = self._run_task("customers", self.sync_customers, conn)
            if full:
                company = self._company(conn)
                if company:
                    report["taxes"] = self._run_task(
                        "taxes", lambda c: self.refresh_duties_and_taxes(c, company), conn)
                report["invoices"] = self._run_task("invoices", self.sync_invoices, conn)
            report["queue"] = self._run_task("queue", self.drain_queue, conn)
            report["finished_utc"] = storage.iso_now()
            self._last_report = report
            try:
                storage.put_setting(conn, LAST_REPORT_KEY, report)
            except sqlite3.Error as exc:
                log.warning("Could not persist sync report: %s", exc)
            failed = [k for k, v in report.items() if isinstance(v, dict) and not v.get("success")]
            if failed:
                log.warning("%s sync finished with failures in: %s", kind.capitalize(), ", ".join(failed))
            else:
                log.info("%s sync finished", kind.capitalize())
            return report
        finally:
            if conn is not None:
                conn.close()
            self._cycle_lock.release()

    def _run_task(self, name: str, fn: Callable[[sqlite3.Connection], Any], conn: sqlite3.Connection) -> Dict[str, Any]:
        try:
            out = fn(conn)
        except Exception as exc:
            log.warning("Sync task '%s' failed: %s", name, exc)
            return {"success": False, "count": 0, "error": str(exc)}
        entry: Dict[str, Any] = {"success": True, "count": 0, "error": None}
        if isinstance(out, dict):
            entry.update(out)
        else:
            entry["count"] = int(out or 0)
        return entry

    def _company(self, conn: sqlite3.Connection) -> Optional[str]:
        return storage.get_setting(conn, "company") or self.company

    # ---------- sub-tasks ----------
    def sync_products(self, conn: sqlite3.Connection) -> int:
        price_list = storage.get_setting(conn, "price_list") or ""
        items = []
        start = 0
        while True:
            page = self.client.search_items("", price_list, start, self.page_length)
            batch = page.get("items") or []
            items.extend(batch)
            if not page.get("has_more") or not batch:
                break
            start += len(batch)
        storage.put_products(conn, items)
        log.debug("Pulled %d product(s) for price list '%s'", len(items), price_list)
        return len(items)

    def sync_customers(self, conn: sqlite3.Connection) -> int:
        customers = self.client.search_customers("")
        storage.put_customers(conn, customers)
        return len(customers)

    def refresh_duties_and_taxes(self, conn: sqlite3.Connection, company: str) -> int:
        data = self.client.fetch_duties_and_taxes(company)
        storage.put_setting(conn, "duties_and_taxes", data)
        return len(data.get("taxes") or [])

    def sync_invoices(self, conn: sqlite3.Connection) -> Dict[str, Any]:
        """Push legacy local invoices (not created through the queue)."""
        synced = 0
        errors = []
        for invoice in storage.get_unsynced_invoices(conn):
            try:
                result = self.client.submit_sales_invoice(invoice)
            except Exception as exc:
                log.warning("Error syncing invoice %s: %s", invoice["id"], exc)
                errors.append({"id": invoice["id"], "error": str(exc)})
                continue
            storage.mark_invoice_synced(conn, invoice["id"], (result or {}).get("name"))
            synced += 1
        return {"count": synced, "errors": errors}

    def drain_queue(self, conn: sqlite3.Connection) -> Dict[str, Any]:
        result = process_sync_queue(SyncQueue(conn), self.client, conn)
        return dict(result, count=result["processed"])
