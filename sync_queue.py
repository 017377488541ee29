#!/usr/bin/env python3
# Durable operation queue: offline checkouts and customers replayed against ERPNext in enqueue order
import copy
import datetime as dt
import logging
import sqlite3
import uuid
from typing import Any, Dict, List, Optional

import pos_config
import pos_storage as storage
from erp_client import DEFAULT_COMPANY, DEFAULT_MODE_OF_PAYMENT

log = logging.getLogger(__name__)

MAX_RETRIES = 3

# (type, action) -> required fields; a tuple entry means "any one of these"
PAYLOAD_VARIANTS: Dict[tuple, tuple] = {
    ("invoice", "create_draft"): ("customer_name", "cart_items"),
    ("invoice", "submit_and_pay"): (("erp_invoice_name", "order_id"),),
    ("invoice", "create_and_pay"): ("customer_name", "cart_items"),
    ("invoice", "submit"): ("items",),
    ("customer", "create"): ("name",),
}


class MissingInvoiceReference(ValueError):
    """submit_and_pay has neither an invoice name nor a resolvable order link."""


class AwaitingDependency(RuntimeError):
    """An earlier queued operation this one relies on has not completed yet."""


def _present(payload: Dict[str, Any], field: str) -> bool:
    value = payload.get(field)
    return value not in (None, "", [], {})


def validate_payload(typ: str, action: str, payload: Any):
    required = PAYLOAD_VARIANTS.get((typ, action))
    if required is None:
        raise ValueError(f"Unknown queue operation {typ}/{action}")
    if not isinstance(payload, dict):
        raise ValueError(f"{typ}/{action} payload must be an object")
    for field in required:
        if isinstance(field, tuple):
            if not any(_present(payload, f) for f in field):
                raise ValueError(f"{typ}/{action} requires one of: {', '.join(field)}")
        elif not _present(payload, field):
            raise ValueError(f"{typ}/{action} requires '{field}'")


class SyncQueue:
    """Queue lifecycle on top of the sync_queue table: pending -> processing -> completed|pending|failed."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def enqueue(self, typ: str, action: str, payload: Dict[str, Any]) -> int:
        validate_payload(typ, action, payload)
        op_id = storage.enqueue_operation(
            self.conn, typ, action, copy.deepcopy(payload), idempotency_key=uuid.uuid4().hex
        )
        log.info("Queued %s/%s as #%s", typ, action, op_id)
        return op_id

    def get(self, op_id: int) -> Optional[Dict[str, Any]]:
        return storage.get_operation(self.conn, op_id)

    def list_pending(self) -> List[Dict[str, Any]]:
        return storage.list_pending_operations(self.conn)

    def list_by_status(self, *statuses: str) -> List[Dict[str, Any]]:
        for st in statuses:
            if st not in storage.QUEUE_STATUSES:
                raise ValueError(f"Unknown queue status {st!r}")
        return storage.list_operations(self.conn, tuple(statuses) or None)

    def counts(self) -> Dict[str, int]:
        return storage.count_operations(self.conn)

    def mark_processing(self, op_id: int) -> bool:
        return storage.update_operation(self.conn, op_id, status="processing")

    def mark_completed(self, op_id: int) -> bool:
        return storage.update_operation(self.conn, op_id, status="completed", last_error=None,
                                        completed_utc=storage.iso_now())

    def mark_failed(self, op_id: int, error: str, retry_count: Optional[int] = None) -> bool:
        fields: Dict[str, Any] = {"status": "failed", "last_error": error}
        if retry_count is not None:
            fields["retry_count"] = retry_count
        return storage.update_operation(self.conn, op_id, **fields)

    def mark_retry(self, op_id: int, error: str) -> str:
        """Record a failed attempt; returns the resulting status ('pending' or 'failed')."""
        op = self.get(op_id)
        if op is None:
            raise KeyError(op_id)
        retry_count = int(op.get("retry_count") or 0) + 1
        status = "failed" if retry_count >= MAX_RETRIES else "pending"
        storage.update_operation(self.conn, op_id, status=status, retry_count=retry_count, last_error=error)
        return status

    def remove(self, op_id: int) -> bool:
        return storage.remove_operation(self.conn, op_id)

    def requeue_failed(self, op_id: int) -> bool:
        op = self.get(op_id)
        if not op or op["status"] != "failed":
            return False
        return storage.update_operation(self.conn, op_id, status="pending", retry_count=0, last_error=None)

    def recover_processing(self) -> int:
        recovered = storage.reset_processing_operations(self.conn)
        if recovered:
            log.warning("Recovered %d interrupted queue operation(s) back to pending", recovered)
        return recovered

    def purge_completed(self, grace_seconds: int = 0) -> int:
        cutoff = dt.datetime.now(dt.timezone.utc) - dt.timedelta(seconds=max(0, grace_seconds))
        stamp = cutoff.replace(microsecond=0, tzinfo=None).isoformat() + "Z"
        return storage.purge_completed_operations(self.conn, stamp)


# ---------- replay ----------
UNFINISHED_STATUSES = ("pending", "processing", "failed")


def _has_unfinished(conn: sqlite3.Connection, typ: str, action: str, field: str, value: Any) -> bool:
    """True when an earlier queued typ/action for ``payload[field] == value`` has not completed."""
    return any(
        op["type"] == typ and op["action"] == action and op["payload"].get(field) == value
        for op in storage.list_operations(conn, UNFINISHED_STATUSES)
    )


def _mark_local_invoice(conn: sqlite3.Connection, payload: Dict[str, Any], remote_name: Optional[str]):
    local_id = payload.get("local_invoice_id")
    if local_id:
        storage.mark_invoice_synced(conn, int(local_id), remote_name)


def _remote_customer(conn: sqlite3.Connection, customer_name: str) -> str:
    # invoices rung up for an offline-created customer wait for its customer/create
    if _has_unfinished(conn, "customer", "create", "placeholder_id", customer_name):
        raise AwaitingDependency(f"Waiting for customer {customer_name} to be created in ERPNext")
    return customer_name


def _replay_invoice(op: Dict[str, Any], client, conn: sqlite3.Connection) -> bool:
    action = op["action"]
    data = op["payload"]

    if action == "create_draft":
        order_id = data.get("order_id")
        if order_id and storage.get_pending_checkout_link(conn, order_id):
            # remote draft already exists for this order; an earlier attempt died before completing
            log.info("Draft for order %s already linked; skipping remote create", order_id)
            return True
        customer_name = _remote_customer(conn, data["customer_name"])
        kwargs = {}
        if pos_config.SEND_IDEMPOTENCY_KEY and op.get("idempotency_key"):
            kwargs["idempotency_key"] = op["idempotency_key"]
        draft = client.create_invoice_draft(
            customer_name, data.get("company") or DEFAULT_COMPANY, data["cart_items"], **kwargs
        )
        if order_id:
            storage.put_pending_checkout_link(conn, order_id, draft["name"])
        return True

    if action == "submit_and_pay":
        invoice_name = data.get("erp_invoice_name")
        order_id = data.get("order_id")
        from_link = False
        if not invoice_name and order_id:
            invoice_name = storage.get_pending_checkout_link(conn, order_id)
            from_link = bool(invoice_name)
        if not invoice_name:
            if order_id and _has_unfinished(conn, "invoice", "create_draft", "order_id", order_id):
                raise AwaitingDependency(f"Waiting for the draft invoice of order {order_id}")
            raise MissingInvoiceReference("Invoice name or orderId is required for submit_and_pay")
        client.submit_and_pay(invoice_name, data.get("mode_of_payment") or DEFAULT_MODE_OF_PAYMENT)
        if from_link:
            storage.delete_pending_checkout_link(conn, order_id)
        _mark_local_invoice(conn, data, invoice_name)
        return True

    if action == "create_and_pay":
        customer_name = _remote_customer(conn, data["customer_name"])
        draft = client.create_invoice_draft(
            customer_name, data.get("company") or DEFAULT_COMPANY, data["cart_items"]
        )
        client.submit_and_pay(draft["name"], data.get("mode_of_payment") or DEFAULT_MODE_OF_PAYMENT)
        _mark_local_invoice(conn, data, draft["name"])
        return True

    if action == "submit":
        if data.get("customer"):
            _remote_customer(conn, data["customer"])
        result = client.submit_sales_invoice(data)
        _mark_local_invoice(conn, data, (result or {}).get("name"))
        return True

    return False


def _repoint_queued_invoices(conn: sqlite3.Connection, placeholder: str, remote_name: str) -> int:
    """Rewrite unfinished invoice payloads that still name the placeholder customer."""
    changed = 0
    for op in storage.list_operations(conn, UNFINISHED_STATUSES):
        if op["type"] != "invoice":
            continue
        payload = op["payload"]
        touched = False
        for field in ("customer_name", "customer"):
            if payload.get(field) == placeholder:
                payload[field] = remote_name
                touched = True
        if touched:
            storage.replace_operation_payload(conn, op["id"], payload)
            changed += 1
    storage.rename_invoice_customer(conn, placeholder, remote_name)
    if changed:
        log.info("Pointed %d queued invoice(s) from %s to %s", changed, placeholder, remote_name)
    return changed


def _replay_customer(op: Dict[str, Any], client, conn: sqlite3.Connection) -> bool:
    if op["action"] != "create":
        return False
    data = op["payload"]
    created = client.create_customer(data["name"], data.get("phone"), data.get("email"))
    storage.put_customers(conn, [created])
    placeholder = data.get("placeholder_id")
    if placeholder and placeholder != created.get("name"):
        _repoint_queued_invoices(conn, placeholder, created["name"])
        storage.delete_customer(conn, placeholder)
    else:
        storage.delete_placeholder_customers(conn, data["name"])
    return True


def replay_operation(op: Dict[str, Any], client, conn: sqlite3.Connection) -> bool:
    """Run one queued operation against ERPNext. False means the action is not understood."""
    if op["type"] == "invoice":
        return _replay_invoice(op, client, conn)
    if op["type"] == "customer":
        return _replay_customer(op, client, conn)
    log.warning("Unknown queue item type: %s", op["type"])
    return False


def process_sync_queue(queue: SyncQueue, client, conn: Optional[sqlite3.Connection] = None,
                       grace_seconds: Optional[int] = None) -> Dict[str, Any]:
    """
    Drain pending operations one at a time in id order.

    Returns {'processed', 'failed', 'retried', 'deferred', 'errors': [{'id', 'error'}]}.
    An operation whose prerequisite (draft for its order, or its placeholder
    customer) has not completed stays pending without using up an attempt.
    Rows left 'processing' are not touched here; SyncQueue.recover_processing
    runs once at process startup. sqlite errors abort the drain.
    """
    conn = conn or queue.conn
    grace = pos_config.QUEUE_GRACE_SECONDS if grace_seconds is None else grace_seconds
    queue.purge_completed(grace)

    result: Dict[str, Any] = {"processed": 0, "failed": 0, "retried": 0, "deferred": 0, "errors": []}
    for entry in queue.list_pending():
        op_id = entry["id"]
        # re-read: an earlier replay in this drain may have rewritten the payload
        op = queue.get(op_id)
        if not op or op["status"] != "pending":
            continue
        queue.mark_processing(op_id)
        try:
            if not replay_operation(op, client, conn):
                raise RuntimeError(f"Processing failed: unsupported {op['type']}/{op['action']}")
        except sqlite3.Error:
            raise
        except AwaitingDependency as e:
            storage.update_operation(conn, op_id, status="pending", last_error=str(e))
            result["deferred"] += 1
            log.info("Queue item %s deferred: %s", op_id, e)
            continue
        except MissingInvoiceReference as e:
            queue.mark_failed(op_id, str(e), retry_count=int(op.get("retry_count") or 0) + 1)
            result["failed"] += 1
            result["errors"].append({"id": op_id, "error": str(e)})
            log.warning("Queue item %s failed permanently: %s", op_id, e)
            continue
        except Exception as e:
            status = queue.mark_retry(op_id, str(e))
            if status == "failed":
                result["failed"] += 1
                log.warning("Queue item %s failed after %d attempts: %s", op_id, MAX_RETRIES, e)
            else:
                result["retried"] += 1
                log.info("Queue item %s will be retried: %s", op_id, e)
            result["errors"].append({"id": op_id, "error": str(e)})
            continue
        queue.mark_completed(op_id)
        result["processed"] += 1
        log.info("Synced queue item %s (%s/%s)", op_id, op["type"], op["action"])

    queue.purge_completed(grace)
    return result
