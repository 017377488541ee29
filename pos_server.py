from flask import Flask, request, jsonify
import logging
import sqlite3
import threading
from typing import Any, Dict, Optional

import pos_config
import pos_storage as storage
import pos_cart
import pos_session
from erp_client import DEFAULT_MODE_OF_PAYMENT, ErpClient, ErpRequestError
from online_status import OnlineStatus
from sync_queue import SyncQueue
from sync_service import LAST_REPORT_KEY, SyncService

app = Flask(__name__)
app.logger.setLevel(pos_config.log_level())
logging.getLogger('werkzeug').setLevel(pos_config.log_level())

_SERVICES_LOCK = threading.Lock()
_DB_PATH: Optional[str] = None
_CLIENT: Optional[ErpClient] = None
_STATUS: Optional[OnlineStatus] = None
_SYNC: Optional[SyncService] = None


def init_services(client=None, status: Optional[OnlineStatus] = None, db_path: Optional[str] = None,
                  company: Optional[str] = None) -> SyncService:
    """Wire the ERP client, connectivity monitor and sync orchestrator used by the routes."""
    global _DB_PATH, _CLIENT, _STATUS, _SYNC
    with _SERVICES_LOCK:
        _DB_PATH = db_path or pos_config.POS_DB_PATH
        _CLIENT = client or ErpClient()
        _STATUS = status or OnlineStatus(online=False)
        _SYNC = SyncService(_CLIENT, _STATUS, connect=_db_connect, company=company)
    conn = _db_connect()
    try:
        pos_session.restore_client(conn, _CLIENT)
    finally:
        conn.close()
    return _SYNC


def _services():
    if _SYNC is None:
        init_services()
    return _CLIENT, _STATUS, _SYNC


def _db_connect() -> sqlite3.Connection:
    return storage.connect(_DB_PATH or pos_config.POS_DB_PATH)


def _error(message: str, code: int = 400):
    return jsonify({'status': 'error', 'message': message}), code


def _build_cart(conn: sqlite3.Connection, data: Dict[str, Any]) -> pos_cart.PosCart:
    """Rebuild a cart from a posted body: {'items': [...], 'customer': {...} | 'customer_name': str}."""
    cart = pos_cart.PosCart()
    for raw in data.get('items') or []:
        if not isinstance(raw, dict) or not raw.get('item_code'):
            raise ValueError('Each item needs an item_code')
        product = storage.get_product(conn, raw['item_code']) or {}
        product.update({k: v for k, v in raw.items() if v is not None and k != 'quantity'})
        try:
            qty = float(raw.get('quantity', raw.get('qty', 1)))
        except (TypeError, ValueError):
            raise ValueError(f"Invalid quantity for {raw['item_code']}")
        cart.add_to_cart(product, qty)
    customer = data.get('customer')
    if isinstance(customer, dict):
        cart.set_customer(customer)
    elif data.get('customer_name'):
        name = str(data['customer_name'])
        cart.set_customer(storage.get_customer(conn, name) or {'name': name})
    return cart


@app.route('/api/status')
def api_status():
    _, status, sync = _services()
    conn = _db_connect()
    try:
        return jsonify({
            'status': 'success',
            'online': status.is_online(),
            'sync_running': sync.is_running,
            'queue': SyncQueue(conn).counts(),
            'last_sync': sync.last_report or storage.get_setting(conn, LAST_REPORT_KEY),
        })
    finally:
        conn.close()


def _start_sync(kind: str):
    _, status, sync = _services()
    if sync.is_running:
        return _error('Sync already running', 409)
    if not status.is_online():
        return jsonify({'status': 'error', 'message': 'ERPNext is unreachable', 'reason': 'offline'}), 503
    thread = sync.trigger_full_sync() if kind == 'full' else sync.trigger_auto_sync()
    if thread is None:
        return _error('Sync already running', 409)
    app.logger.info('%s sync started', kind.capitalize())
    return jsonify({'status': 'success', 'message': 'Sync started'}), 202


@app.route('/api/sync/full', methods=['POST'])
def api_sync_full():
    return _start_sync('full')


@app.route('/api/sync/auto', methods=['POST'])
def api_sync_auto():
    return _start_sync('auto')


@app.route('/api/sync/queue')
def api_sync_queue():
    raw = (request.args.get('status') or 'pending,processing,failed').strip()
    statuses = [s.strip() for s in raw.split(',') if s.strip()]
    conn = _db_connect()
    try:
        try:
            ops = SyncQueue(conn).list_by_status(*statuses)
        except ValueError as e:
            return _error(str(e))
        return jsonify({'status': 'success', 'operations': ops})
    finally:
        conn.close()


@app.route('/api/sync/queue/<int:op_id>/retry', methods=['POST'])
def api_sync_queue_retry(op_id: int):
    conn = _db_connect()
    try:
        queue = SyncQueue(conn)
        op = queue.get(op_id)
        if not op:
            return _error('Queue operation not found', 404)
        if not queue.requeue_failed(op_id):
            return _error(f"Only failed operations can be retried (status is {op['status']})", 409)
        return jsonify({'status': 'success', 'operation': queue.get(op_id)})
    finally:
        conn.close()


@app.route('/api/sync/queue/<int:op_id>', methods=['DELETE'])
def api_sync_queue_delete(op_id: int):
    conn = _db_connect()
    try:
        queue = SyncQueue(conn)
        op = queue.get(op_id)
        if not op:
            return _error('Queue operation not found', 404)
        if op['status'] not in ('failed', 'completed'):
            return _error(f"Cannot remove a {op['status']} operation", 409)
        queue.remove(op_id)
        return jsonify({'status': 'success', 'message': f'Removed operation {op_id}'})
    finally:
        conn.close()


@app.route('/api/products')
def api_products():
    conn = _db_connect()
    try:
        return jsonify({'status': 'success', 'items': storage.search_products_local(conn, request.args.get('q', ''))})
    finally:
        conn.close()


@app.route('/api/customers')
def api_customers():
    conn = _db_connect()
    try:
        return jsonify({'status': 'success', 'customers': storage.search_customers_local(conn, request.args.get('q', ''))})
    finally:
        conn.close()


@app.route('/api/customers', methods=['POST'])
def api_create_customer():
    client, status, _ = _services()
    data = request.get_json(silent=True) or {}
    conn = _db_connect()
    try:
        try:
            result = pos_cart.create_customer(conn, client, status, data.get('name'), data.get('phone'), data.get('email'))
        except ValueError as e:
            return _error(str(e))
        code = 201 if result['status'] == 'created' else 202
        return jsonify(dict(result, status='success', result=result['status'])), code
    finally:
        conn.close()


@app.route('/api/tax/preview', methods=['POST'])
def api_tax_preview():
    data = request.get_json(silent=True) or {}
    conn = _db_connect()
    try:
        try:
            cart = _build_cart(conn, data)
        except ValueError as e:
            return _error(str(e))
        return jsonify({'status': 'success', 'totals': cart.taxes(conn)})
    finally:
        conn.close()


@app.route('/api/checkout', methods=['POST'])
def api_checkout():
    client, status, _ = _services()
    data = request.get_json(silent=True) or {}
    conn = _db_connect()
    try:
        try:
            cart = _build_cart(conn, data)
            result = cart.checkout(conn, client, status,
                                   mode_of_payment=data.get('mode_of_payment') or DEFAULT_MODE_OF_PAYMENT,
                                   company=data.get('company'))
        except ValueError as e:
            return _error(str(e))
        app.logger.info('Checkout %s: %s', result['order_id'], result['status'])
        return jsonify(dict(result, status='success', result=result['status']))
    finally:
        conn.close()


@app.route('/api/login', methods=['POST'])
def api_login():
    client, _, sync = _services()
    data = request.get_json(silent=True) or {}
    conn = _db_connect()
    try:
        try:
            session = pos_session.login(conn, client, data.get('usr') or data.get('username'),
                                        data.get('pwd') or data.get('password'),
                                        base_url=data.get('base_url'), sync=sync)
        except ValueError as e:
            return _error(str(e))
        except ErpRequestError as e:
            app.logger.warning('Login failed: %s', e)
            return _error(str(e), 401)
        return jsonify({
            'status': 'success',
            'username': session.get('username'),
            'email': session.get('email'),
            'base_url': session.get('base_url'),
            'taxes': session.get('taxes'),
        })
    finally:
        conn.close()


@app.route('/api/logout', methods=['POST'])
def api_logout():
    client, _, _ = _services()
    conn = _db_connect()
    try:
        pos_session.logout(conn, client)
        return jsonify({'status': 'success', 'message': 'Logged out'})
    finally:
        conn.close()


@app.route('/api/pos-profiles')
def api_pos_profiles():
    client, status, _ = _services()
    conn = _db_connect()
    try:
        profiles = pos_session.load_pos_profiles(conn, client, status)
        return jsonify({'status': 'success', 'profiles': profiles,
                        'selected': storage.get_setting(conn, 'pos_profile')})
    finally:
        conn.close()


@app.route('/api/pos-profile', methods=['POST'])
def api_select_pos_profile():
    client, status, sync = _services()
    data = request.get_json(silent=True) or {}
    conn = _db_connect()
    try:
        try:
            selected = pos_session.select_pos_profile(conn, client, status, data.get('pos_profile'), sync=sync)
        except ValueError as e:
            return _error(str(e))
        return jsonify(dict(selected, status='success'))
    finally:
        conn.close()


@app.route('/api/settings', methods=['PUT'])
def api_update_settings():
    client, _, _ = _services()
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return _error('Expected a JSON object')
    conn = _db_connect()
    try:
        try:
            settings = pos_session.update_settings(conn, client, data)
        except ValueError as e:
            return _error(str(e))
        return jsonify({'status': 'success', 'settings': settings})
    finally:
        conn.close()


def _remote_call(func):
    """Run an ERPNext shift call, mapping offline and remote failures onto error envelopes."""
    _, status, _ = _services()
    if not status.is_online():
        return jsonify({'status': 'error', 'message': 'ERPNext is unreachable', 'reason': 'offline'}), 503
    try:
        return jsonify({'status': 'success', 'data': func()})
    except ErpRequestError as e:
        app.logger.warning('ERPNext call failed: %s', e)
        return _error(str(e), 502)


@app.route('/api/opening-entry')
def api_opening_entry():
    client, _, _ = _services()
    conn = _db_connect()
    try:
        user = request.args.get('user') or pos_session.current_user(conn)
        if not user:
            return _error('Log in before checking the opening entry', 401)
        return _remote_call(lambda: client.check_opening_entry(user))
    finally:
        conn.close()


@app.route('/api/opening-entry', methods=['POST'])
def api_create_opening_entry():
    client, _, _ = _services()
    data = request.get_json(silent=True) or {}
    conn = _db_connect()
    try:
        try:
            return _remote_call(lambda: pos_session.open_shift(conn, client, data.get('balance_details') or []))
        except ValueError as e:
            return _error(str(e))
    finally:
        conn.close()


@app.route('/api/closing-entry/<path:opening_entry>')
def api_closing_data(opening_entry: str):
    client, _, _ = _services()
    return _remote_call(lambda: client.get_pos_closing_data(opening_entry))


@app.route('/api/closing-entry', methods=['POST'])
def api_save_closing_entry():
    client, _, _ = _services()
    data = request.get_json(silent=True) or {}
    doc = data.get('doc')
    if not isinstance(doc, dict):
        return _error('doc is required')
    return _remote_call(lambda: client.save_pos_closing_entry(doc, data.get('action') or 'Save'))


if __name__ == '__main__':
    init_services()
    app.run(debug=pos_config.FLASK_DEBUG, host=pos_config.HOST, port=pos_config.PORT)
