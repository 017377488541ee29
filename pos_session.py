"""Terminal session: ERPNext login, POS profile selection and the settings they persist."""
import logging
import sqlite3
from typing import Any, Dict, List, Optional

import pos_storage as storage
from erp_client import ErpRequestError, normalize_list, normalize_message
from pos_cart import _is_online

log = logging.getLogger(__name__)

SESSION_KEY = "login_session"
BASE_URL_KEY = "erpnext_base_url"
PROFILE_DATA_KEY = "pos_profile_data"

# settings a cashier may edit by hand; everything else is written by login/profile selection or sync
EDITABLE_SETTINGS = ("erpnext_base_url", "pos_profile", "price_list", "company", "company_state")


def restore_client(conn: sqlite3.Connection, client) -> bool:
    """Point the client at the stored base URL and login tokens. Env credentials stay when nothing is stored."""
    session = storage.get_setting(conn, SESSION_KEY) or {}
    base_url = storage.get_setting(conn, BASE_URL_KEY) or session.get("base_url")
    if not base_url and not session.get("api_key"):
        return False
    client.configure(api_key=session.get("api_key"), api_secret=session.get("api_secret"), base_url=base_url)
    log.info("Restored ERPNext session for %s", session.get("username") or base_url)
    return True


def current_user(conn: sqlite3.Connection) -> Optional[str]:
    session = storage.get_setting(conn, SESSION_KEY) or {}
    return session.get("email") or session.get("username")


def _refresh_taxes(conn: sqlite3.Connection, sync, company: str) -> Optional[int]:
    try:
        return sync.refresh_duties_and_taxes(conn, company)
    except ErpRequestError as exc:
        log.warning("Duties and taxes refresh for %s failed: %s", company, exc)
        return None


def login(conn: sqlite3.Connection, client, usr: str, pwd: str, base_url: Optional[str] = None,
          sync=None) -> Dict[str, Any]:
    """
    Log in against ERPNext and persist the session.

    Stores ``login_session`` (tokens, user and base URL, stamped with
    ``saved_at``) and ``erpnext_base_url``. When a company is already selected
    the duties and taxes are refreshed through ``sync``. Bad credentials raise
    ErpRequestError and leave the stored session untouched.
    """
    if not (usr or "").strip() or not pwd:
        raise ValueError("Username and password are required")
    if base_url:
        client.configure(base_url=base_url)
    result = client.login(usr.strip(), pwd)
    session = dict(result, saved_at=storage.iso_now())
    storage.put_setting(conn, SESSION_KEY, session)
    if session.get("base_url"):
        storage.put_setting(conn, BASE_URL_KEY, session["base_url"])
    log.info("Logged in to ERPNext as %s", session.get("username") or usr)

    company = storage.get_setting(conn, "company")
    if sync is not None and company:
        session["taxes"] = _refresh_taxes(conn, sync, company)
    return session


def logout(conn: sqlite3.Connection, client) -> bool:
    had_session = storage.get_setting(conn, SESSION_KEY) is not None
    storage.delete_setting(conn, SESSION_KEY)
    client.configure(api_key="", api_secret="")
    return had_session


def load_pos_profiles(conn: sqlite3.Connection, client, online) -> List[Dict[str, Any]]:
    """Fetch POS profiles while online and cache them; offline (or on error) serve the cache."""
    if _is_online(online):
        try:
            profiles = client.fetch_pos_profiles()
        except ErpRequestError as exc:
            log.warning("POS profile fetch failed, using cached profiles: %s", exc)
        else:
            storage.put_setting(conn, PROFILE_DATA_KEY, {"data": profiles, "saved_at": storage.iso_now()})
            return profiles
    return [p for p in normalize_list(storage.get_setting(conn, PROFILE_DATA_KEY)) if isinstance(p, dict)]


def _find_profile(profiles: List[Any], pos_profile: str) -> Optional[Dict[str, Any]]:
    for p in profiles:
        if isinstance(p, dict) and pos_profile in (p.get("name"), p.get("pos_profile")):
            return p
    return None


def select_pos_profile(conn: sqlite3.Connection, client, online, pos_profile: str, sync=None) -> Dict[str, Any]:
    """
    Make ``pos_profile`` the terminal's profile.

    Persists ``pos_profile``, ``price_list`` (the profile's selling price
    list), ``company`` and ``company_state``. Fields missing from the cached
    profile list are filled from get_pos_profile_data while online. Taxes for
    the profile's company are refreshed when online.
    """
    pos_profile = (pos_profile or "").strip()
    if not pos_profile:
        raise ValueError("pos_profile is required")
    profile = _find_profile(normalize_list(storage.get_setting(conn, PROFILE_DATA_KEY)), pos_profile)

    if _is_online(online) and (profile is None or not profile.get("selling_price_list") or not profile.get("company")):
        try:
            detail = normalize_message(client.fetch_pos_profile_data(pos_profile))
        except ErpRequestError as exc:
            log.warning("POS profile data for %s unavailable: %s", pos_profile, exc)
        else:
            if isinstance(detail, dict):
                merged = dict(detail)
                merged.update({k: v for k, v in (profile or {}).items() if v not in (None, "")})
                profile = merged
    if profile is None:
        raise ValueError(f"Unknown POS profile {pos_profile}")

    storage.put_setting(conn, "pos_profile", pos_profile)
    price_list = profile.get("selling_price_list")
    if price_list:
        storage.put_setting(conn, "price_list", price_list)
    company = profile.get("company")
    if company:
        storage.put_setting(conn, "company", company)
    state = profile.get("company_state")
    if state:
        storage.put_setting(conn, "company_state", state)
    else:
        storage.delete_setting(conn, "company_state")
    log.info("Selected POS profile %s (price list %s, company %s)", pos_profile, price_list, company)

    taxes = None
    if sync is not None and company and _is_online(online):
        taxes = _refresh_taxes(conn, sync, company)
    return {
        "pos_profile": pos_profile,
        "price_list": storage.get_setting(conn, "price_list"),
        "company": storage.get_setting(conn, "company"),
        "company_state": state or "",
        "taxes": taxes,
    }


def update_settings(conn: sqlite3.Connection, client, values: Dict[str, Any]) -> Dict[str, Any]:
    """Write hand-edited settings; an empty value clears the key. Unknown keys raise ValueError."""
    unknown = sorted(set(values) - set(EDITABLE_SETTINGS))
    if unknown:
        raise ValueError(f"Cannot edit settings: {', '.join(unknown)}")
    for key, value in values.items():
        if value in (None, ""):
            storage.delete_setting(conn, key)
        else:
            storage.put_setting(conn, key, value)
    if BASE_URL_KEY in values:
        client.configure(base_url=values[BASE_URL_KEY] or "")
    return {key: storage.get_setting(conn, key) for key in EDITABLE_SETTINGS}


def open_shift(conn: sqlite3.Connection, client, balance_details: List[Dict[str, Any]]) -> Any:
    """Create a POS opening voucher for the selected profile and company."""
    pos_profile = storage.get_setting(conn, "pos_profile")
    company = storage.get_setting(conn, "company")
    if not pos_profile or not company:
        raise ValueError("Select a POS profile before opening a shift")
    return client.create_opening_voucher(pos_profile, company, balance_details or [])
