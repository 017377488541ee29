"""
ERPNext RPC client used by the sync core.

Every remote call goes through ``ErpClient._request`` and every response body is
unwrapped by ``normalize_message`` / ``normalize_list`` so callers always see a
single canonical shape. Credentials live on an explicit ``ErpSession`` object
that is updated through ``configure``.
"""
import datetime as dt
import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

import pos_config

log = logging.getLogger(__name__)

CUSTOM_API = "frappe.core.doctype.user.custom"
POS_PAGE_API = "erpnext.selling.page.point_of_sale.point_of_sale"
INVOICE_API = "erpnext.accounts.doctype.sales_invoice.sales_invoice_api"

DEFAULT_COMPANY = "LDT TECH"
DEFAULT_MODE_OF_PAYMENT = "Cash"

_LIST_KEYS = ("data", "profiles", "pos_profiles", "allowed_pos_profiles", "customers", "items", "taxes")


class ErpRequestError(RuntimeError):
    """Raised when ERPNext cannot be reached or rejects a call."""
    def __init__(self, message: str, status_code: Optional[int] = None, path: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.path = path


class ErpSession:
    """Connection settings handed to the client; replaces module-level credential globals."""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 api_secret: Optional[str] = None, timeout: float = 20):
        self.base_url = (base_url or "").rstrip("/") or None
        self.api_key = api_key or None
        self.api_secret = api_secret or None
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> "ErpSession":
        return cls(pos_config.ERPNEXT_URL, pos_config.API_KEY, pos_config.API_SECRET, pos_config.HTTP_TIMEOUT)

    def configure(self, api_key: Optional[str] = None, api_secret: Optional[str] = None,
                  base_url: Optional[str] = None):
        if base_url is not None:
            self.base_url = base_url.rstrip("/") or None
        if api_key is not None:
            self.api_key = api_key or None
        if api_secret is not None:
            self.api_secret = api_secret or None

    @property
    def has_token(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def headers(self) -> Dict[str, str]:
        headers = {
            'Accept': 'application/json',
            'Content-Type': 'application/json',
        }
        if self.has_token:
            headers['Authorization'] = f'token {self.api_key}:{self.api_secret}'
        return headers


def normalize_message(body: Any) -> Any:
    """Unwrap Frappe's ``{"message": ...}`` / ``{"data": ...}`` envelopes."""
    if isinstance(body, dict):
        for key in ("message", "data"):
            if body.get(key) is not None:
                return body[key]
    return body


def normalize_list(value: Any, keys=_LIST_KEYS) -> List[Any]:
    """Return the first list found in ``value`` (itself, or under one of ``keys``)."""
    value = normalize_message(value)
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        for key in keys:
            candidate = value.get(key)
            if isinstance(candidate, list):
                return candidate
    return []


def _error_message_from_response(resp: requests.Response) -> str:
    try:
        j = resp.json()
    except ValueError:
        return (resp.text or "").strip()[:400] or f"HTTP {resp.status_code}"
    if isinstance(j, dict):
        msg = j.get('message') or j.get('exception') or j.get('_error_message') or j.get('exc_type')
        if msg:
            return str(msg)
    return (resp.text or "").strip()[:400] or f"HTTP {resp.status_code}"


def resolve_rate_from_price_lists(item: Dict[str, Any], price_list: str) -> Dict[str, Any]:
    """Pick the selling rate and uom for ``price_list`` from an item's price_lists."""
    fallback_uom = item.get("stock_uom") or item.get("uom") or item.get("sales_uom") or "Nos"
    lists = item.get("price_lists")
    if isinstance(lists, list) and lists:
        wanted = (price_list or "").strip()
        selling = [pl for pl in lists if isinstance(pl, dict) and pl.get("selling") == 1]
        match = next((pl for pl in selling if (pl.get("price_list") or "").strip() == wanted), None)
        if match is None and selling:
            match = selling[0]
        if match is not None:
            return {"rate": match.get("price_list_rate") or 0, "uom": match.get("uom") or fallback_uom}
    rate = item.get("price_list_rate")
    if rate is None:
        rate = item.get("rate")
    if rate is None:
        rate = item.get("standard_rate")
    return {"rate": rate or 0, "uom": fallback_uom}


def _normalize_item(item: Dict[str, Any], price_list: str) -> Dict[str, Any]:
    resolved = resolve_rate_from_price_lists(item, price_list)
    qty = item.get("actual_qty")
    if qty is None:
        qty = item.get("qty") or 0
    return {
        "item_code": item.get("item_code") or item.get("name"),
        "item_name": item.get("item_name") or item.get("name"),
        "description": item.get("description") or "",
        "rate": resolved["rate"],
        "standard_rate": resolved["rate"],
        "stock_uom": resolved["uom"],
        "image": item.get("item_image") or item.get("image"),
        "actual_qty": qty,
        "has_variants": item.get("has_variants") or 0,
        "item_tax_template": item.get("item_tax_template"),
        "tax_category": item.get("tax_category"),
    }


def _normalize_customer(row: Dict[str, Any]) -> Dict[str, Any]:
    name = row.get("name") or row.get("value")
    return {
        "name": name,
        "customer_name": row.get("label") or row.get("customer_name") or row.get("description") or name,
        "customer_type": row.get("customer_type") or "Individual",
        "territory": row.get("territory") or "",
        "tax_category": row.get("tax_category") or row.get("gst_category") or "",
        "state": row.get("address") or row.get("state") or row.get("gst_state") or row.get("address_state") or "",
        "default_price_list": row.get("default_price_list") or "",
        "phone": row.get("phone_number") or row.get("mobile_no") or row.get("phone"),
        "email": row.get("email_id") or row.get("email"),
    }


def company_state_for_profile(profiles: Any, profile_name: Optional[str]) -> str:
    """Return ``company_state`` of the named POS profile, or '' when unknown."""
    if not profile_name:
        return ""
    for p in normalize_list(profiles):
        if isinstance(p, dict) and profile_name in (p.get("name"), p.get("pos_profile")):
            return p.get("company_state") or ""
    return ""


class ErpClient:
    """Stateless request/response wrapper around ERPNext whitelisted methods."""

    def __init__(self, session: Optional[ErpSession] = None, http: Optional[requests.Session] = None):
        self.session = session or ErpSession.from_env()
        self.http = http or requests.Session()

    def configure(self, api_key: Optional[str] = None, api_secret: Optional[str] = None,
                  base_url: Optional[str] = None):
        self.session.configure(api_key=api_key, api_secret=api_secret, base_url=base_url)

    @property
    def is_configured(self) -> bool:
        return bool(self.session.base_url)

    # ---------- transport ----------
    def _request(self, method: str, path: str, json: Any = None, data: Any = None,
                 params: Optional[Dict[str, Any]] = None) -> Any:
        if not self.session.base_url:
            raise ErpRequestError("ERPNext base URL not configured", path=path)
        url = self.session.base_url + quote(path, safe="/:.")
        headers = self.session.headers()
        if data is not None:
            headers['Content-Type'] = 'application/x-www-form-urlencoded'
        try:
            resp = self.http.request(method, url, headers=headers, json=json, data=data,
                                     params=params, timeout=self.session.timeout)
        except requests.RequestException as exc:
            raise ErpRequestError(f"ERPNext unreachable: {exc}", path=path) from exc
        if resp.status_code >= 400:
            raise ErpRequestError(_error_message_from_response(resp), status_code=resp.status_code, path=path)
        try:
            return resp.json()
        except ValueError as exc:
            raise ErpRequestError("ERPNext returned a non-JSON response", status_code=resp.status_code, path=path) from exc

    def _call(self, method_path: str, payload: Optional[Dict[str, Any]] = None, form: bool = False) -> Any:
        path = "/api/method/" + method_path
        if form:
            return normalize_message(self._request("POST", path, data=payload or {}))
        return normalize_message(self._request("POST", path, json=payload or {}))

    # ---------- session ----------
    def ping(self) -> bool:
        """Cheap reachability probe; never raises."""
        if not self.session.base_url:
            return False
        try:
            body = self._request("GET", "/api/method/ping")
        except ErpRequestError as exc:
            log.debug("ERPNext ping failed: %s", exc)
            return False
        return normalize_message(body) == "pong"

    def login(self, usr: str, pwd: str) -> Dict[str, Any]:
        body = self._request("POST", f"/api/method/{CUSTOM_API}.login", json={"usr": usr, "pwd": pwd})
        msg = body.get("message") if isinstance(body, dict) else None
        src = msg if isinstance(msg, dict) else (body if isinstance(body, dict) else {})
        success = src.get("success_key", src.get("success", body.get("success_key") if isinstance(body, dict) else 0))
        if success not in (1, "1", True):
            detail = msg if isinstance(msg, str) else src.get("message")
            raise ErpRequestError(detail or "Authentication failed. Please check your username and password.")
        data = body.get("data") or {}
        result = {
            "sid": src.get("sid"),
            "username": src.get("username"),
            "email": data.get("email"),
            "api_key": data.get("api_key"),
            "api_secret": data.get("api_secret"),
            "base_url": src.get("base_url") or self.session.base_url,
        }
        self.configure(api_key=result["api_key"], api_secret=result["api_secret"], base_url=result["base_url"])
        return result

    # ---------- catalog / customers ----------
    def search_items(self, txt: str = "", price_list: str = "", start: int = 0, page_length: int = 20) -> Dict[str, Any]:
        message = self._call(f"{CUSTOM_API}.get_items", {
            "price_list": price_list or "",
            "txt": txt or "",
            "start": start or 0,
            "page_length": page_length or 20,
        })
        message = message if isinstance(message, dict) else {"items": normalize_list(message)}
        raw_items = message.get("items") or []
        items = [_normalize_item(it, price_list) for it in raw_items if isinstance(it, dict)]
        total = message.get("total")
        return {
            "items": items,
            "total": len(raw_items) if total is None else total,
            "has_more": bool(message.get("has_more")),
        }

    def search_customers(self, search: str = "") -> List[Dict[str, Any]]:
        message = self._call(f"{CUSTOM_API}.get_customers", {"search": search or ""})
        return [_normalize_customer(r) for r in normalize_list(message) if isinstance(r, dict)]

    def create_customer(self, name: str, phone: Optional[str] = None, email: Optional[str] = None) -> Dict[str, Any]:
        payload = {
            "customer_name": name,
            "customer_type": "Individual",
            "phone_number": phone,
            "default_price_list": "Standard Selling",
            "gst_category": "Unregistered",
        }
        if email:
            payload["email_id"] = email
        data = normalize_message(self._request("POST", "/api/resource/Customer", json=payload))
        if not isinstance(data, dict) or not data.get("name"):
            raise ErpRequestError("Customer creation returned no document name", path="/api/resource/Customer")
        customer = _normalize_customer(data)
        customer["customer_name"] = data.get("customer_name") or name
        customer["phone"] = customer.get("phone") or phone
        customer["email"] = customer.get("email") or email
        return customer

    # ---------- invoices ----------
    def create_invoice_draft(self, customer_name: str, company: Optional[str], cart_items: List[Dict[str, Any]],
                             idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        payload = {
            "posting_date": dt.date.today().isoformat(),
            "submit": 0,
            "company": company or DEFAULT_COMPANY,
            "customer": customer_name,
            "items": [
                {"item_code": it.get("item_code"), "qty": it.get("quantity"), "rate": it.get("rate")}
                for it in cart_items or []
            ],
        }
        if idempotency_key:
            payload["pos_idempotency_key"] = idempotency_key
        message = self._call(f"{INVOICE_API}.create_sales_invoice_api", payload)
        if not isinstance(message, dict) or not message.get("name"):
            raise ErpRequestError("create_sales_invoice_api returned no invoice name")
        return {
            "name": message["name"],
            "net_total": message.get("net_total", message.get("total")),
            "grand_total": message.get("grand_total"),
            "taxes": normalize_list(message.get("taxes")),
            "raw": message,
        }

    def submit_and_pay(self, sales_invoice: str, mode_of_payment: str = DEFAULT_MODE_OF_PAYMENT) -> Any:
        return self._call(f"{INVOICE_API}.submit_and_pay_sales_invoice_api", {
            "sales_invoice": sales_invoice,
            "mode_of_payment": mode_of_payment or DEFAULT_MODE_OF_PAYMENT,
        })

    def submit_sales_invoice(self, invoice: Dict[str, Any]) -> Dict[str, Any]:
        """Legacy path: insert a Sales Invoice document directly."""
        posting = invoice.get("date") or dt.date.today().isoformat()
        doc = {
            "doctype": "Sales Invoice",
            "customer": invoice.get("customer") or "Guest",
            "posting_date": posting,
            "due_date": posting,
            "items": [
                {
                    "item_code": it.get("item_code"),
                    "item_name": it.get("item_name"),
                    "qty": it.get("quantity", it.get("qty")),
                    "rate": it.get("rate"),
                    "uom": it.get("uom") or "Nos",
                }
                for it in invoice.get("items") or []
            ],
            "taxes_and_charges": invoice.get("taxes_and_charges") or "",
            "total": invoice.get("total", invoice.get("subtotal")),
            "grand_total": invoice.get("grand_total"),
            "outstanding_amount": invoice.get("grand_total"),
        }
        data = normalize_message(self._request("POST", "/api/resource/Sales Invoice", json=doc))
        return data if isinstance(data, dict) else {"name": None}

    # ---------- taxes / profiles / shifts ----------
    def fetch_duties_and_taxes(self, company: str) -> Dict[str, Any]:
        message = self._call(f"{CUSTOM_API}.get_duties_and_taxes_list", {"company": company})
        return {"taxes": [t for t in normalize_list(message) if isinstance(t, dict)]}

    def fetch_pos_profiles(self) -> List[Dict[str, Any]]:
        message = self._call(f"{CUSTOM_API}.get_pos_profiles", {})
        profiles = []
        for p in normalize_list(message):
            if isinstance(p, str):
                profiles.append({"name": p})
            elif isinstance(p, dict) and (p.get("name") or p.get("pos_profile")):
                profiles.append(p)
        return profiles

    def fetch_pos_profile_data(self, pos_profile: str) -> Any:
        return self._call(f"{POS_PAGE_API}.get_pos_profile_data", {"pos_profile": pos_profile}, form=True)

    def check_opening_entry(self, user: str) -> List[Dict[str, Any]]:
        return normalize_list(self._call(f"{POS_PAGE_API}.check_opening_entry", {"user": user}, form=True))

    def create_opening_voucher(self, pos_profile: str, company: str, balance_details: List[Dict[str, Any]]) -> Any:
        return self._call(f"{POS_PAGE_API}.create_opening_voucher", {
            "pos_profile": pos_profile,
            "company": company,
            "balance_details": json.dumps(balance_details),
        }, form=True)

    def get_pos_closing_data(self, pos_opening_entry: str) -> Any:
        return self._call(f"{CUSTOM_API}.get_pos_closing_data_by_opening_entry",
                          {"pos_opening_entry": pos_opening_entry})

    def save_pos_closing_entry(self, doc: Dict[str, Any], action: str = "Save") -> Any:
        return self._call("frappe.desk.form.save.savedocs",
                          {"doc": json.dumps(doc), "action": action}, form=True)
