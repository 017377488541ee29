#!/usr/bin/env python3
# Local cache store: SQLite tables for products, customers, settings, invoices and the sync queue
import json
import datetime as dt
from typing import Any, Dict, List, Optional
import sqlite3

import pos_config

QUEUE_STATUSES = ("pending", "processing", "completed", "failed")


def iso_now() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0, tzinfo=None).isoformat() + "Z"


def connect(db_path: Optional[str] = None) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path or pos_config.POS_DB_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    ensure_schema(conn)
    return conn


def ensure_schema(conn: sqlite3.Connection):
    _ensure_product_table(conn)
    _ensure_customer_table(conn)
    _ensure_settings_table(conn)
    _ensure_invoice_table(conn)
    _ensure_queue_tables(conn)
    conn.commit()


def _ensure_product_table(conn: sqlite3.Connection):
    conn.execute("""
    CREATE TABLE IF NOT EXISTS products (
      item_code TEXT PRIMARY KEY,
      item_name TEXT,
      description TEXT,
      actual_qty NUMERIC NOT NULL DEFAULT 0,
      rate NUMERIC NOT NULL DEFAULT 0,
      stock_uom TEXT,
      image TEXT,
      item_tax_template TEXT,
      tax_category TEXT,
      last_synced TEXT
    )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_products_name ON products(item_name)")


def _ensure_customer_table(conn: sqlite3.Connection):
    """Make sure the customers cache table exists (and has the newer columns)."""
    conn.execute("""
    CREATE TABLE IF NOT EXISTS customers (
      name TEXT PRIMARY KEY,
      customer_name TEXT,
      customer_type TEXT,
      territory TEXT,
      tax_category TEXT,
      state TEXT,
      default_price_list TEXT,
      last_synced TEXT
    )
    """)
    existing = {row["name"] for row in conn.execute("PRAGMA table_info(customers)").fetchall()}
    alters = []
    if "phone" not in existing:
        alters.append("ALTER TABLE customers ADD COLUMN phone TEXT")
    if "email" not in existing:
        alters.append("ALTER TABLE customers ADD COLUMN email TEXT")
    if "is_placeholder" not in existing:
        alters.append("ALTER TABLE customers ADD COLUMN is_placeholder INTEGER NOT NULL DEFAULT 0")
    for sql in alters:
        conn.execute(sql)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_customers_name ON customers(customer_name)")


def _ensure_settings_table(conn: sqlite3.Connection):
    conn.execute("""
    CREATE TABLE IF NOT EXISTS settings (
      key TEXT PRIMARY KEY,
      value_json TEXT,
      updated_utc TEXT
    )
    """)


def _ensure_invoice_table(conn: sqlite3.Connection):
    conn.execute("""
    CREATE TABLE IF NOT EXISTS sales_invoices (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      created_utc TEXT NOT NULL,
      customer TEXT,
      grand_total NUMERIC,
      payload_json TEXT NOT NULL,
      synced INTEGER NOT NULL DEFAULT 0,
      via_queue INTEGER NOT NULL DEFAULT 0,
      remote_invoice_id TEXT
    )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_sales_invoices_synced ON sales_invoices(synced, via_queue)")


def _ensure_queue_tables(conn: sqlite3.Connection):
    conn.execute("""
    CREATE TABLE IF NOT EXISTS sync_queue (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      type TEXT NOT NULL,
      action TEXT NOT NULL,
      payload_json TEXT NOT NULL,
      status TEXT NOT NULL DEFAULT 'pending',
      enqueued_utc TEXT NOT NULL,
      updated_utc TEXT NOT NULL,
      completed_utc TEXT,
      retry_count INTEGER NOT NULL DEFAULT 0,
      last_error TEXT,
      idempotency_key TEXT
    )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue(status, id)")
    conn.execute("""
    CREATE TABLE IF NOT EXISTS pending_checkout_links (
      order_id TEXT PRIMARY KEY,
      remote_invoice_id TEXT NOT NULL,
      created_utc TEXT NOT NULL
    )
    """)


def _as_float(value: Any) -> float:
    if value in (None, "", False):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


# ---------- PRODUCTS ----------
def put_products(conn: sqlite3.Connection, products: List[Dict[str, Any]]) -> int:
    """Overwrite cached products wholesale (last writer wins)."""
    if not products:
        return 0
    now = iso_now()
    stored = 0
    for p in products:
        item_code = (p.get("item_code") or p.get("name") or "").strip()
        if not item_code:
            continue
        conn.execute("""
            INSERT OR REPLACE INTO products
              (item_code, item_name, description, actual_qty, rate, stock_uom, image, item_tax_template, tax_category, last_synced)
            VALUES (?,?,?,?,?,?,?,?,?,?)
        """, (
            item_code,
            p.get("item_name") or item_code,
            p.get("description") or "",
            _as_float(p.get("actual_qty", p.get("qty"))),
            _as_float(p.get("standard_rate") or p.get("rate")),
            p.get("stock_uom") or "Nos",
            p.get("image"),
            p.get("item_tax_template") or None,
            p.get("tax_category") or None,
            now,
        ))
        stored += 1
    conn.commit()
    return stored


def get_all_products(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = conn.execute("SELECT * FROM products ORDER BY item_name COLLATE NOCASE").fetchall()
    return [dict(r) for r in rows]


def get_product(conn: sqlite3.Connection, item_code: str) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT * FROM products WHERE item_code=?", (item_code,)).fetchone()
    return dict(row) if row else None


def search_products_local(conn: sqlite3.Connection, term: str) -> List[Dict[str, Any]]:
    """Case-insensitive substring match on item name or code."""
    needle = (term or "").strip().lower()
    if not needle:
        return get_all_products(conn)
    like = f"%{needle}%"
    rows = conn.execute("""
        SELECT * FROM products
        WHERE lower(item_name) LIKE ? OR lower(item_code) LIKE ?
        ORDER BY item_name COLLATE NOCASE
    """, (like, like)).fetchall()
    return [dict(r) for r in rows]


# ---------- CUSTOMERS ----------
def put_customers(conn: sqlite3.Connection, customers: List[Dict[str, Any]]) -> int:
    """Cache ERPNext Customer entries; each row replaces the previous record."""
    if not customers:
        return 0
    now = iso_now()
    stored = 0
    for row in customers:
        name = (row.get("name") or "").strip()
        if not name:
            continue
        conn.execute("""
            INSERT OR REPLACE INTO customers
              (name, customer_name, customer_type, territory, tax_category, state, default_price_list,
               phone, email, is_placeholder, last_synced)
            VALUES (?,?,?,?,?,?,?,?,?,?,?)
        """, (
            name,
            row.get("customer_name") or name,
            row.get("customer_type") or "Individual",
            row.get("territory") or "",
            row.get("tax_category") or "",
            row.get("state") or "",
            row.get("default_price_list") or "",
            row.get("phone") or row.get("phone_number") or None,
            row.get("email") or row.get("email_id") or None,
            1 if row.get("is_placeholder") else 0,
            now,
        ))
        stored += 1
    conn.commit()
    return stored


def get_customer(conn: sqlite3.Connection, name: str) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT * FROM customers WHERE name=?", (name,)).fetchone()
    return dict(row) if row else None


def delete_customer(conn: sqlite3.Connection, name: str) -> bool:
    cur = conn.execute("DELETE FROM customers WHERE name=?", (name,))
    conn.commit()
    return cur.rowcount > 0


def delete_placeholder_customers(conn: sqlite3.Connection, customer_name: str) -> int:
    """Drop offline placeholder rows created for ``customer_name``."""
    cur = conn.execute(
        "DELETE FROM customers WHERE is_placeholder=1 AND lower(customer_name)=lower(?)",
        ((customer_name or "").strip(),)
    )
    conn.commit()
    return cur.rowcount


def get_all_customers(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = conn.execute("SELECT * FROM customers ORDER BY customer_name COLLATE NOCASE").fetchall()
    return [dict(r) for r in rows]


def search_customers_local(conn: sqlite3.Connection, term: str) -> List[Dict[str, Any]]:
    needle = (term or "").strip().lower()
    if not needle:
        return get_all_customers(conn)
    like = f"%{needle}%"
    rows = conn.execute("""
        SELECT * FROM customers
        WHERE lower(customer_name) LIKE ? OR lower(name) LIKE ?
        ORDER BY customer_name COLLATE NOCASE
    """, (like, like)).fetchall()
    return [dict(r) for r in rows]


# ---------- SETTINGS ----------
def put_setting(conn: sqlite3.Connection, key: str, value: Any):
    conn.execute("""
        INSERT INTO settings (key, value_json, updated_utc) VALUES (?,?,?)
        ON CONFLICT(key) DO UPDATE SET value_json=excluded.value_json, updated_utc=excluded.updated_utc
    """, (key, json.dumps(value, separators=(",", ":")), iso_now()))
    conn.commit()


def get_setting(conn: sqlite3.Connection, key: str, default: Any = None) -> Any:
    row = conn.execute("SELECT value_json FROM settings WHERE key=?", (key,)).fetchone()
    if not row or row["value_json"] is None:
        return default
    return json.loads(row["value_json"])


def delete_setting(conn: sqlite3.Connection, key: str):
    conn.execute("DELETE FROM settings WHERE key=?", (key,))
    conn.commit()


# ---------- SYNC QUEUE (backing store) ----------
def _queue_row(row: sqlite3.Row) -> Dict[str, Any]:
    entry = dict(row)
    entry["payload"] = json.loads(entry.pop("payload_json") or "{}")
    return entry


def enqueue_operation(conn: sqlite3.Connection, typ: str, action: str, payload: Dict[str, Any],
                      idempotency_key: Optional[str] = None) -> int:
    now = iso_now()
    cur = conn.execute("""
        INSERT INTO sync_queue (type, action, payload_json, status, enqueued_utc, updated_utc, retry_count, idempotency_key)
        VALUES (?,?,?,'pending',?,?,0,?)
    """, (typ, action, json.dumps(payload, separators=(",", ":")), now, now, idempotency_key))
    conn.commit()
    return int(cur.lastrowid)


def list_pending_operations(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    return list_operations(conn, ("pending",))


def list_operations(conn: sqlite3.Connection, statuses: Optional[tuple] = None) -> List[Dict[str, Any]]:
    if statuses:
        marks = ",".join("?" for _ in statuses)
        rows = conn.execute(f"SELECT * FROM sync_queue WHERE status IN ({marks}) ORDER BY id ASC", tuple(statuses)).fetchall()
    else:
        rows = conn.execute("SELECT * FROM sync_queue ORDER BY id ASC").fetchall()
    return [_queue_row(r) for r in rows]


def get_operation(conn: sqlite3.Connection, op_id: int) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT * FROM sync_queue WHERE id=?", (op_id,)).fetchone()
    return _queue_row(row) if row else None


def update_operation(conn: sqlite3.Connection, op_id: int, **fields: Any) -> bool:
    """Update status/retry metadata on a queue row. Unknown columns raise ValueError."""
    allowed = {"status", "retry_count", "last_error", "completed_utc"}
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Cannot update queue columns: {', '.join(sorted(unknown))}")
    if "status" in fields and fields["status"] not in QUEUE_STATUSES:
        raise ValueError(f"Unknown queue status {fields['status']!r}")
    fields["updated_utc"] = iso_now()
    assignments = ", ".join(f"{col}=?" for col in fields)
    cur = conn.execute(f"UPDATE sync_queue SET {assignments} WHERE id=?", (*fields.values(), op_id))
    conn.commit()
    return cur.rowcount > 0


def replace_operation_payload(conn: sqlite3.Connection, op_id: int, payload: Dict[str, Any]) -> bool:
    cur = conn.execute(
        "UPDATE sync_queue SET payload_json=?, updated_utc=? WHERE id=?",
        (json.dumps(payload, separators=(",", ":")), iso_now(), op_id)
    )
    conn.commit()
    return cur.rowcount > 0


def rename_invoice_customer(conn: sqlite3.Connection, old_name: str, new_name: str) -> int:
    """Point local invoices recorded against a placeholder customer at the real record."""
    rows = conn.execute("SELECT id, payload_json FROM sales_invoices WHERE customer=?", (old_name,)).fetchall()
    for row in rows:
        data = json.loads(row["payload_json"])
        data["customer"] = new_name
        conn.execute(
            "UPDATE sales_invoices SET customer=?, payload_json=? WHERE id=?",
            (new_name, json.dumps(data, separators=(",", ":")), row["id"])
        )
    conn.commit()
    return len(rows)


def remove_operation(conn: sqlite3.Connection, op_id: int) -> bool:
    cur = conn.execute("DELETE FROM sync_queue WHERE id=?", (op_id,))
    conn.commit()
    return cur.rowcount > 0


def count_operations(conn: sqlite3.Connection) -> Dict[str, int]:
    counts = {st: 0 for st in QUEUE_STATUSES}
    for row in conn.execute("SELECT status, COUNT(*) AS c FROM sync_queue GROUP BY status"):
        counts[row["status"]] = int(row["c"])
    return counts


def purge_completed_operations(conn: sqlite3.Connection, completed_before: str) -> int:
    """Delete completed rows whose completed_utc is at or before the cutoff (same ISO format as iso_now)."""
    cur = conn.execute(
        "DELETE FROM sync_queue WHERE status='completed' AND (completed_utc IS NULL OR completed_utc<=?)",
        (completed_before,)
    )
    conn.commit()
    return cur.rowcount


def reset_processing_operations(conn: sqlite3.Connection) -> int:
    cur = conn.execute(
        "UPDATE sync_queue SET status='pending', updated_utc=? WHERE status='processing'",
        (iso_now(),)
    )
    conn.commit()
    return cur.rowcount


# ---------- PENDING CHECKOUT LINKS ----------
def put_pending_checkout_link(conn: sqlite3.Connection, order_id: str, remote_invoice_id: str):
    conn.execute("""
        INSERT INTO pending_checkout_links (order_id, remote_invoice_id, created_utc) VALUES (?,?,?)
        ON CONFLICT(order_id) DO UPDATE SET remote_invoice_id=excluded.remote_invoice_id
    """, (order_id, remote_invoice_id, iso_now()))
    conn.commit()


def get_pending_checkout_link(conn: sqlite3.Connection, order_id: str) -> Optional[str]:
    row = conn.execute("SELECT remote_invoice_id FROM pending_checkout_links WHERE order_id=?", (order_id,)).fetchone()
    return row["remote_invoice_id"] if row else None


def delete_pending_checkout_link(conn: sqlite3.Connection, order_id: str):
    conn.execute("DELETE FROM pending_checkout_links WHERE order_id=?", (order_id,))
    conn.commit()


# ---------- LOCAL SALES INVOICES ----------
def save_sales_invoice(conn: sqlite3.Connection, invoice: Dict[str, Any], via_queue: bool = False) -> int:
    """
    invoice = {
      'customer': 'CUST-0001',
      'items': [ {'item_code': 'SKU1', 'item_name': 'Name', 'quantity': 1, 'rate': 59.99, 'uom': 'Nos'} ],
      'grand_total': 70.0,
      'mode_of_payment': 'Cash'
    }
    """
    cur = conn.execute("""
        INSERT INTO sales_invoices (created_utc, customer, grand_total, payload_json, synced, via_queue)
        VALUES (?,?,?,?,0,?)
    """, (
        invoice.get("timestamp") or iso_now(),
        invoice.get("customer"),
        _as_float(invoice.get("grand_total")),
        json.dumps(invoice, separators=(",", ":")),
        1 if via_queue else 0,
    ))
    conn.commit()
    return int(cur.lastrowid)


def _invoice_row(row: sqlite3.Row) -> Dict[str, Any]:
    data = json.loads(row["payload_json"])
    data.update({
        "id": row["id"],
        "timestamp": row["created_utc"],
        "synced": bool(row["synced"]),
        "via_queue": bool(row["via_queue"]),
        "remote_invoice_id": row["remote_invoice_id"],
    })
    return data


def get_sales_invoice(conn: sqlite3.Connection, invoice_id: int) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT * FROM sales_invoices WHERE id=?", (invoice_id,)).fetchone()
    return _invoice_row(row) if row else None


def get_unsynced_invoices(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    """Legacy invoices waiting for a full sync; queued checkouts are replayed by the queue instead."""
    rows = conn.execute(
        "SELECT * FROM sales_invoices WHERE synced=0 AND via_queue=0 ORDER BY id ASC"
    ).fetchall()
    return [_invoice_row(r) for r in rows]


def mark_invoice_synced(conn: sqlite3.Connection, invoice_id: int, remote_invoice_id: Optional[str] = None) -> bool:
    cur = conn.execute(
        "UPDATE sales_invoices SET synced=1, remote_invoice_id=COALESCE(?, remote_invoice_id) WHERE id=?",
        (remote_invoice_id, invoice_id)
    )
    conn.commit()
    return cur.rowcount > 0
