"""Environment-driven settings for the offline POS sync core."""
import logging
import os
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw


def _env_int(name: str, default: int, minimum: Optional[int] = None) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _env_flag(name: str, default: str = '0') -> bool:
    return (_env_string(name, default) or default) == '1'


POS_DB_PATH = _env_string('POS_DB_PATH', 'pos.db')

# ERPNext API configuration
ERPNEXT_URL = _env_string('ERPNEXT_URL')
API_KEY = _env_string('ERPNEXT_API_KEY')
API_SECRET = _env_string('ERPNEXT_API_SECRET')
POS_COMPANY = _env_string('POS_COMPANY')

LOG_LEVEL_NAME = (_env_string('POS_LOG_LEVEL') or 'INFO').upper()

SYNC_MODE = _env_string('SYNC_MODE', 'auto')
SYNC_INTERVAL = _env_int('SYNC_INTERVAL', 60, minimum=10)
PROBE_INTERVAL = _env_int('POS_PROBE_INTERVAL', 15, minimum=5)
HTTP_TIMEOUT = _env_int('POS_HTTP_TIMEOUT', 20, minimum=1)
ITEM_PAGE_LENGTH = _env_int('POS_ITEM_PAGE_LENGTH', 100, minimum=1)
QUEUE_GRACE_SECONDS = _env_int('POS_QUEUE_GRACE_SECONDS', 5, minimum=0)

# Forward the per-operation token to create_sales_invoice_api (needs ERP-side dedupe support)
SEND_IDEMPOTENCY_KEY = _env_flag('POS_SEND_IDEMPOTENCY_KEY')

HOST = _env_string('HOST', '0.0.0.0')
PORT = _env_int('PORT', 5000)
FLASK_DEBUG = _env_flag('FLASK_DEBUG')


def log_level() -> int:
    return getattr(logging, LOG_LEVEL_NAME, logging.INFO)


def configure_logging(prefix: str = 'pos') -> None:
    """Configure root logging once for command-line entry points."""
    logging.basicConfig(
        level=log_level(),
        format=f'[{prefix}] %(asctime)s %(levelname)s %(name)s: %(message)s'
    )


def has_erp_credentials() -> bool:
    return bool(ERPNEXT_URL and API_KEY and API_SECRET)
