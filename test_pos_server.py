import os
import tempfile
import unittest

import pos_server
import pos_storage as storage
from erp_client import DEFAULT_MODE_OF_PAYMENT, ErpRequestError
from online_status import OnlineStatus
from sync_queue import SyncQueue


class OfflineClient:
    """Every call fails the test; routes under test must stay local while offline."""

    def __getattr__(self, name):
        raise AssertionError(f"unexpected remote call: {name}")


class PosServerTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmp.name, "pos.db")
        self.status = OnlineStatus(online=False)
        self.sync = pos_server.init_services(client=OfflineClient(), status=self.status, db_path=self.db_path)
        self.conn = storage.connect(self.db_path)
        storage.put_products(self.conn, [{"item_code": "A", "item_name": "Alpha", "rate": 100}])
        storage.put_setting(self.conn, "duties_and_taxes", {"taxes": [{"account_name": "Output Tax IGST", "tax_rate": 18}]})
        self.app = pos_server.app.test_client()

    def tearDown(self):
        self.conn.close()
        self.tmp.cleanup()

    def test_status_reports_queue_and_connectivity(self):
        SyncQueue(self.conn).enqueue("customer", "create", {"name": "Jane"})
        resp = self.app.get("/api/status")
        self.assertEqual(resp.status_code, 200)
        body = resp.get_json()
        self.assertFalse(body["online"])
        self.assertEqual(body["queue"]["pending"], 1)
        self.assertIsNone(body["last_sync"])

    def test_products_and_customers_search_local_cache(self):
        body = self.app.get("/api/products?q=alp").get_json()
        self.assertEqual([p["item_code"] for p in body["items"]], ["A"])
        storage.put_customers(self.conn, [{"name": "CUST-1", "customer_name": "Jane"}])
        body = self.app.get("/api/customers?q=jan").get_json()
        self.assertEqual([c["name"] for c in body["customers"]], ["CUST-1"])

    def test_tax_preview(self):
        resp = self.app.post("/api/tax/preview", json={
            "items": [{"item_code": "A", "quantity": 2}],
            "customer": {"name": "CUST-1", "tax_category": "Out of State"},
        })
        self.assertEqual(resp.status_code, 200)
        totals = resp.get_json()["totals"]
        self.assertEqual(totals["grand_total"], 236)
        self.assertEqual(totals["breakdown"], [{"label": "IGST", "rate": 18, "amount": 36}])

    def test_tax_preview_rejects_bad_items(self):
        resp = self.app.post("/api/tax/preview", json={"items": [{"quantity": 2}]})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["status"], "error")

    def test_offline_checkout_is_queued(self):
        resp = self.app.post("/api/checkout", json={
            "items": [{"item_code": "A", "quantity": 1}],
            "customer_name": "Walk In",
            "mode_of_payment": "Cash",
        })
        self.assertEqual(resp.status_code, 200)
        body = resp.get_json()
        self.assertEqual(body["result"], "queued")
        self.assertEqual(len(body["queue_ids"]), 2)
        self.assertEqual(SyncQueue(self.conn).counts()["pending"], 2)

    def test_empty_checkout_rejected(self):
        resp = self.app.post("/api/checkout", json={"items": []})
        self.assertEqual(resp.status_code, 400)

    def test_offline_customer_create_returns_placeholder(self):
        resp = self.app.post("/api/customers", json={"name": "Jane", "phone": "555"})
        self.assertEqual(resp.status_code, 202)
        body = resp.get_json()
        self.assertEqual(body["result"], "queued")
        self.assertTrue(body["customer"]["name"].startswith("TEMP-"))
        self.assertEqual(self.app.post("/api/customers", json={}).status_code, 400)

    def test_queue_listing_retry_and_delete(self):
        queue = SyncQueue(self.conn)
        pending = queue.enqueue("customer", "create", {"name": "Jane"})
        failed = queue.enqueue("customer", "create", {"name": "Bob"})
        queue.mark_failed(failed, "HTTP 500", retry_count=3)

        body = self.app.get("/api/sync/queue").get_json()
        self.assertEqual([op["id"] for op in body["operations"]], [pending, failed])
        body = self.app.get("/api/sync/queue?status=failed").get_json()
        self.assertEqual([op["id"] for op in body["operations"]], [failed])
        self.assertEqual(self.app.get("/api/sync/queue?status=bogus").status_code, 400)

        self.assertEqual(self.app.delete(f"/api/sync/queue/{pending}").status_code, 409)
        self.assertEqual(self.app.post(f"/api/sync/queue/{pending}/retry").status_code, 409)
        self.assertEqual(self.app.post("/api/sync/queue/999/retry").status_code, 404)

        resp = self.app.post(f"/api/sync/queue/{failed}/retry")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()["operation"]["status"], "pending")

        queue.mark_failed(failed, "HTTP 500")
        self.assertEqual(self.app.delete(f"/api/sync/queue/{failed}").status_code, 200)
        self.assertIsNone(queue.get(failed))
        self.assertEqual(self.app.delete("/api/sync/queue/999").status_code, 404)

    def test_sync_trigger_conflicts_while_running(self):
        self.sync._cycle_lock.acquire()
        try:
            self.assertEqual(self.app.post("/api/sync/full").status_code, 409)
            self.assertEqual(self.app.post("/api/sync/auto").status_code, 409)
        finally:
            self.sync._cycle_lock.release()

    def test_sync_trigger_refused_while_offline(self):
        resp = self.app.post("/api/sync/auto")
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.get_json()["reason"], "offline")
        self.assertFalse(self.sync.is_running)

    def test_sync_trigger_starts_background_cycle(self):
        started = []
        self.status.set_online(True)
        self.sync.trigger_auto_sync = lambda: started.append("auto") or object()
        resp = self.app.post("/api/sync/auto")
        self.assertEqual(resp.status_code, 202)
        self.assertEqual(resp.get_json()["message"], "Sync started")
        self.assertEqual(started, ["auto"])

    def test_checkout_defaults_mode_of_payment(self):
        body = self.app.post("/api/checkout", json={"items": [{"item_code": "A", "quantity": 1}]}).get_json()
        pay = SyncQueue(self.conn).get(body["queue_ids"][1])
        self.assertEqual(pay["payload"]["mode_of_payment"], DEFAULT_MODE_OF_PAYMENT)

    def test_shift_calls_refused_while_offline(self):
        storage.put_setting(self.conn, "login_session", {"username": "cashier"})
        resp = self.app.get("/api/opening-entry")
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.get_json()["reason"], "offline")
        self.assertEqual(self.app.post("/api/closing-entry", json={}).status_code, 400)


class SessionClient:
    def __init__(self):
        self.calls = []

    def configure(self, api_key=None, api_secret=None, base_url=None):
        self.calls.append(("configure", base_url))

    def login(self, usr, pwd):
        if pwd != "secret":
            raise ErpRequestError("Authentication failed. Please check your username and password.")
        return {"sid": "sid-1", "username": usr, "email": "cashier@example.com",
                "api_key": "k", "api_secret": "s", "base_url": "https://erp.example.com"}

    def fetch_pos_profiles(self):
        return [{"name": "POS-1", "selling_price_list": "Retail", "company": "LDT TECH", "company_state": "Punjab"}]

    def fetch_duties_and_taxes(self, company):
        self.calls.append(("fetch_duties_and_taxes", company))
        return {"taxes": [{"account_name": "Output Tax CGST", "tax_rate": 9}]}

    def check_opening_entry(self, user):
        self.calls.append(("check_opening_entry", user))
        return [{"name": "POS-OPE-0001"}]

    def create_opening_voucher(self, pos_profile, company, balance_details):
        self.calls.append(("create_opening_voucher", pos_profile, company, balance_details))
        return {"name": "POS-OPE-0002"}

    def get_pos_closing_data(self, pos_opening_entry):
        raise ErpRequestError("Opening entry not found", status_code=404)


class PosServerSessionTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmp.name, "pos.db")
        self.client = SessionClient()
        self.status = OnlineStatus(online=True)
        pos_server.init_services(client=self.client, status=self.status, db_path=self.db_path)
        self.conn = storage.connect(self.db_path)
        self.app = pos_server.app.test_client()

    def tearDown(self):
        self.conn.close()
        self.tmp.cleanup()

    def test_login_then_profile_selection_persists_settings(self):
        resp = self.app.post("/api/login", json={"usr": "cashier", "pwd": "secret"})
        self.assertEqual(resp.status_code, 200)
        body = resp.get_json()
        self.assertEqual(body["username"], "cashier")
        self.assertNotIn("api_secret", body)
        self.assertEqual(storage.get_setting(self.conn, "erpnext_base_url"), "https://erp.example.com")
        self.assertEqual(storage.get_setting(self.conn, "login_session")["api_key"], "k")

        profiles = self.app.get("/api/pos-profiles").get_json()["profiles"]
        self.assertEqual([p["name"] for p in profiles], ["POS-1"])
        resp = self.app.post("/api/pos-profile", json={"pos_profile": "POS-1"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(storage.get_setting(self.conn, "price_list"), "Retail")
        self.assertEqual(storage.get_setting(self.conn, "company"), "LDT TECH")
        self.assertEqual(storage.get_setting(self.conn, "company_state"), "Punjab")
        self.assertIn(("fetch_duties_and_taxes", "LDT TECH"), self.client.calls)
        self.assertEqual(storage.get_setting(self.conn, "duties_and_taxes")["taxes"][0]["tax_rate"], 9)

    def test_bad_login_is_unauthorized(self):
        resp = self.app.post("/api/login", json={"usr": "cashier", "pwd": "nope"})
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(self.app.post("/api/login", json={}).status_code, 400)
        self.assertIsNone(storage.get_setting(self.conn, "login_session"))

    def test_init_restores_stored_session(self):
        storage.put_setting(self.conn, "erpnext_base_url", "https://erp.local")
        client = SessionClient()
        pos_server.init_services(client=client, status=self.status, db_path=self.db_path)
        self.assertEqual(client.calls, [("configure", "https://erp.local")])

    def test_settings_update_rejects_unknown_keys(self):
        resp = self.app.put("/api/settings", json={"price_list": "Retail"})
        self.assertEqual(resp.get_json()["settings"]["price_list"], "Retail")
        self.assertEqual(self.app.put("/api/settings", json={"sid": "x"}).status_code, 400)

    def test_opening_and_closing_entries(self):
        self.assertEqual(self.app.get("/api/opening-entry").status_code, 401)
        self.assertEqual(self.app.post("/api/opening-entry", json={}).status_code, 400)

        self.app.post("/api/login", json={"usr": "cashier", "pwd": "secret"})
        body = self.app.get("/api/opening-entry").get_json()
        self.assertEqual(body["data"], [{"name": "POS-OPE-0001"}])
        self.assertIn(("check_opening_entry", "cashier@example.com"), self.client.calls)

        storage.put_setting(self.conn, "pos_profile", "POS-1")
        storage.put_setting(self.conn, "company", "LDT TECH")
        balance = [{"mode_of_payment": "Cash", "opening_amount": 500}]
        resp = self.app.post("/api/opening-entry", json={"balance_details": balance})
        self.assertEqual(resp.get_json()["data"], {"name": "POS-OPE-0002"})
        self.assertIn(("create_opening_voucher", "POS-1", "LDT TECH", balance), self.client.calls)

        self.assertEqual(self.app.get("/api/closing-entry/POS-OPE-9").status_code, 502)


if __name__ == "__main__":
    unittest.main()
