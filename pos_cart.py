"""Cart/order state and the online-or-queued checkout flow."""
import copy
import logging
import sqlite3
import uuid
from typing import Any, Dict, List, Optional

import pos_storage as storage
from erp_client import DEFAULT_MODE_OF_PAYMENT, ErpRequestError, company_state_for_profile
from sync_queue import SyncQueue
from tax_calculator import calculate_cart_tax

log = logging.getLogger(__name__)

WALK_IN_CUSTOMER = "Guest"


def _is_online(online) -> bool:
    if hasattr(online, "is_online"):
        return bool(online.is_online())
    return bool(online)


def company_state(conn: sqlite3.Connection) -> str:
    """Company state from settings, else from the selected POS profile's data."""
    explicit = storage.get_setting(conn, "company_state")
    if explicit:
        return explicit
    return company_state_for_profile(storage.get_setting(conn, "pos_profile_data"),
                                     storage.get_setting(conn, "pos_profile"))


def search_products(conn: sqlite3.Connection, client, online, term: str) -> List[Dict[str, Any]]:
    """Remote search while online; local cache when offline or when ERPNext errors."""
    if term and _is_online(online):
        try:
            price_list = storage.get_setting(conn, "price_list") or ""
            return client.search_items(term, price_list, 0, 20)["items"]
        except ErpRequestError as exc:
            log.warning("Online product search failed, falling back to local: %s", exc)
    return storage.search_products_local(conn, term)


def search_customers(conn: sqlite3.Connection, client, online, term: str) -> List[Dict[str, Any]]:
    if _is_online(online):
        try:
            return client.search_customers(term)
        except ErpRequestError as exc:
            log.warning("Online customer search failed, falling back to local: %s", exc)
    return storage.search_customers_local(conn, term)


def create_customer(conn: sqlite3.Connection, client, online, name: str, phone: Optional[str],
                    email: Optional[str] = None) -> Dict[str, Any]:
    """
    Create a customer in ERPNext, or cache a TEMP-xxxx placeholder and queue the
    creation when offline (or when the remote call fails).
    """
    name = (name or "").strip()
    if not name:
        raise ValueError("Customer name is required")
    if _is_online(online):
        try:
            created = client.create_customer(name, phone, email)
            storage.put_customers(conn, [created])
            return {"status": "created", "customer": created, "queue_id": None}
        except ErpRequestError as exc:
            log.warning("Customer create failed, queuing for later: %s", exc)

    placeholder = {
        "name": f"TEMP-{uuid.uuid4().hex[:10].upper()}",
        "customer_name": name,
        "customer_type": "Individual",
        "phone": phone,
        "email": email,
        "is_placeholder": True,
    }
    storage.put_customers(conn, [placeholder])
    queue_id = SyncQueue(conn).enqueue("customer", "create", {
        "name": name,
        "phone": phone,
        "email": email,
        "placeholder_id": placeholder["name"],
    })
    return {"status": "queued", "customer": storage.get_customer(conn, placeholder["name"]), "queue_id": queue_id}


class PosCart:
    def __init__(self):
        self.items: List[Dict[str, Any]] = []
        self.customer: Optional[Dict[str, Any]] = None

    # ---------- cart ----------
    def add_to_cart(self, product: Dict[str, Any], quantity: float = 1):
        if quantity is None or quantity <= 0:
            raise ValueError("Quantity must be positive")
        item_code = product.get("item_code")
        if not item_code:
            raise ValueError("Product has no item_code")
        existing = self._find(item_code)
        if existing:
            existing["quantity"] += quantity
            return existing
        rate = product.get("rate") or product.get("standard_rate") or 0
        line = dict(product)
        line.update({
            "quantity": quantity,
            "uom": product.get("stock_uom") or "Nos",
            "rate": max(0, float(rate)),
        })
        self.items.append(line)
        return line

    def remove_from_cart(self, item_code: str):
        self.items = [it for it in self.items if it.get("item_code") != item_code]

    def update_quantity(self, item_code: str, quantity: float):
        if quantity <= 0:
            self.remove_from_cart(item_code)
            return
        line = self._find(item_code)
        if line:
            line["quantity"] = quantity

    def clear(self):
        self.items = []
        self.customer = None

    def set_customer(self, customer: Optional[Dict[str, Any]]):
        self.customer = customer

    def clear_customer(self):
        self.customer = None

    def _find(self, item_code: str) -> Optional[Dict[str, Any]]:
        return next((it for it in self.items if it.get("item_code") == item_code), None)

    # ---------- totals ----------
    def subtotal(self) -> float:
        return sum(float(it.get("rate") or 0) * float(it.get("quantity") or 0) for it in self.items)

    def taxes(self, conn: sqlite3.Connection) -> Dict[str, Any]:
        return calculate_cart_tax(self.items, self.customer,
                                  storage.get_setting(conn, "duties_and_taxes") or {},
                                  company_state(conn))

    def snapshot(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self.items)

    def _cart_items_payload(self) -> List[Dict[str, Any]]:
        return [
            {
                "item_code": it.get("item_code"),
                "item_name": it.get("item_name"),
                "quantity": it.get("quantity"),
                "rate": it.get("rate"),
                "uom": it.get("uom"),
                "tax_category": it.get("tax_category"),
                "item_tax_template": it.get("item_tax_template"),
            }
            for it in self.snapshot()
        ]

    def _customer_name(self) -> str:
        if self.customer:
            return self.customer.get("name") or self.customer.get("customer_name") or WALK_IN_CUSTOMER
        return WALK_IN_CUSTOMER

    # ---------- checkout ----------
    def checkout(self, conn: sqlite3.Connection, client, online, mode_of_payment: str = DEFAULT_MODE_OF_PAYMENT,
                 company: Optional[str] = None) -> Dict[str, Any]:
        """
        Online: create the draft remotely and submit/pay it at once.
        Offline, for a placeholder customer, or when the draft call fails: record the sale locally and queue
        create_draft + submit_and_pay linked by a fresh order id.
        """
        if not self.items:
            raise ValueError("Cart is empty")
        company = company or storage.get_setting(conn, "company")
        totals = self.taxes(conn)
        customer_name = self._customer_name()
        cart_items = self._cart_items_payload()
        invoice = {
            "customer": customer_name,
            "items": cart_items,
            "subtotal": totals["subtotal"],
            "total_tax": totals["total_tax"],
            "grand_total": totals["grand_total"],
            "taxes": totals["breakdown"],
            "mode_of_payment": mode_of_payment,
            "company": company,
        }
        queue = SyncQueue(conn)
        # placeholder customers only exist locally until their queued create replays
        placeholder = bool((self.customer or {}).get("is_placeholder"))

        if _is_online(online) and not placeholder:
            try:
                draft = client.create_invoice_draft(customer_name, company, cart_items)
            except ErpRequestError as exc:
                log.warning("Draft invoice failed, saving checkout offline: %s", exc)
            else:
                result = self._finish_online(conn, client, queue, draft, invoice, mode_of_payment)
                result["totals"] = totals
                self.clear()
                return result

        order_id = f"ORD-{uuid.uuid4().hex[:12].upper()}"
        invoice["order_id"] = order_id
        local_id = storage.save_sales_invoice(conn, invoice, via_queue=True)
        queue_ids = [
            queue.enqueue("invoice", "create_draft", {
                "customer_name": customer_name,
                "company": company,
                "cart_items": cart_items,
                "order_id": order_id,
            }),
            queue.enqueue("invoice", "submit_and_pay", {
                "order_id": order_id,
                "mode_of_payment": mode_of_payment,
                "local_invoice_id": local_id,
                "cart_items": copy.deepcopy(cart_items),
            }),
        ]
        self.clear()
        return {
            "status": "queued",
            "order_id": order_id,
            "invoice": storage.get_sales_invoice(conn, local_id),
            "queue_ids": queue_ids,
            "totals": totals,
        }

    def _finish_online(self, conn, client, queue: SyncQueue, draft: Dict[str, Any], invoice: Dict[str, Any],
                       mode_of_payment: str) -> Dict[str, Any]:
        remote_name = draft["name"]
        invoice["order_id"] = remote_name
        try:
            client.submit_and_pay(remote_name, mode_of_payment)
        except ErpRequestError as exc:
            log.warning("Payment for %s failed, queuing submit_and_pay: %s", remote_name, exc)
            local_id = storage.save_sales_invoice(conn, invoice, via_queue=True)
            queue_id = queue.enqueue("invoice", "submit_and_pay", {
                "erp_invoice_name": remote_name,
                "mode_of_payment": mode_of_payment,
                "local_invoice_id": local_id,
            })
            return {
                "status": "queued",
                "order_id": remote_name,
                "invoice": storage.get_sales_invoice(conn, local_id),
                "queue_ids": [queue_id],
            }
        local_id = storage.save_sales_invoice(conn, invoice, via_queue=True)
        storage.mark_invoice_synced(conn, local_id, remote_name)
        return {
            "status": "completed",
            "order_id": remote_name,
            "invoice": storage.get_sales_invoice(conn, local_id),
            "queue_ids": [],
        }
