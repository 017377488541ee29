import os
import tempfile
import unittest

import pos_storage as storage


class PosStorageTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmp.name, "pos.db")
        self.conn = storage.connect(self.db_path)

    def tearDown(self):
        self.conn.close()
        self.tmp.cleanup()

    def test_products_put_overwrites_and_search(self):
        storage.put_products(self.conn, [
            {"item_code": "SKU-1", "item_name": "Blue Shirt", "rate": 10, "item_tax_template": "GST 5%"},
            {"item_code": "SKU-2", "item_name": "Red Hat", "standard_rate": 4},
            {"item_name": "no code"},
        ])
        storage.put_products(self.conn, [{"item_code": "SKU-1", "item_name": "Blue Shirt XL", "rate": 12}])
        self.assertEqual(len(storage.get_all_products(self.conn)), 2)
        shirt = storage.get_product(self.conn, "SKU-1")
        self.assertEqual((shirt["item_name"], shirt["rate"]), ("Blue Shirt XL", 12))
        self.assertIsNone(shirt["item_tax_template"])
        self.assertEqual([p["item_code"] for p in storage.search_products_local(self.conn, "HAT")], ["SKU-2"])
        self.assertEqual([p["item_code"] for p in storage.search_products_local(self.conn, "sku-1")], ["SKU-1"])

    def test_customers_and_placeholders(self):
        storage.put_customers(self.conn, [
            {"name": "TEMP-1", "customer_name": "Jane", "phone": "555", "is_placeholder": True},
            {"name": "CUST-1", "customer_name": "John", "email_id": "john@example.com"},
        ])
        self.assertEqual(storage.get_customer(self.conn, "CUST-1")["email"], "john@example.com")
        self.assertEqual([c["name"] for c in storage.search_customers_local(self.conn, "jan")], ["TEMP-1"])
        self.assertEqual(storage.delete_placeholder_customers(self.conn, "jane"), 1)
        self.assertTrue(storage.delete_customer(self.conn, "CUST-1"))
        self.assertFalse(storage.delete_customer(self.conn, "CUST-1"))
        self.assertEqual(storage.get_all_customers(self.conn), [])

    def test_settings_round_trip_json(self):
        self.assertEqual(storage.get_setting(self.conn, "price_list", "fallback"), "fallback")
        storage.put_setting(self.conn, "duties_and_taxes", {"taxes": [{"tax_rate": 18}]})
        storage.put_setting(self.conn, "duties_and_taxes", {"taxes": []})
        self.assertEqual(storage.get_setting(self.conn, "duties_and_taxes"), {"taxes": []})
        storage.delete_setting(self.conn, "duties_and_taxes")
        self.assertIsNone(storage.get_setting(self.conn, "duties_and_taxes"))

    def test_update_operation_guards_columns_and_status(self):
        op_id = storage.enqueue_operation(self.conn, "customer", "create", {"name": "Jane"})
        with self.assertRaises(ValueError):
            storage.update_operation(self.conn, op_id, payload_json="{}")
        with self.assertRaises(ValueError):
            storage.update_operation(self.conn, op_id, status="done")
        self.assertTrue(storage.update_operation(self.conn, op_id, status="processing"))
        self.assertFalse(storage.update_operation(self.conn, 9999, status="pending"))
        self.assertEqual(storage.count_operations(self.conn),
                         {"pending": 0, "processing": 1, "completed": 0, "failed": 0})
        self.assertEqual(storage.reset_processing_operations(self.conn), 1)
        self.assertEqual(storage.list_pending_operations(self.conn)[0]["payload"], {"name": "Jane"})

    def test_pending_checkout_links(self):
        storage.put_pending_checkout_link(self.conn, "ORD-1", "ACC-SINV-1")
        storage.put_pending_checkout_link(self.conn, "ORD-1", "ACC-SINV-2")
        self.assertEqual(storage.get_pending_checkout_link(self.conn, "ORD-1"), "ACC-SINV-2")
        storage.delete_pending_checkout_link(self.conn, "ORD-1")
        self.assertIsNone(storage.get_pending_checkout_link(self.conn, "ORD-1"))

    def test_unsynced_invoices_exclude_queued_checkouts(self):
        legacy = storage.save_sales_invoice(self.conn, {"customer": "Jane", "items": [], "grand_total": "12.5"})
        storage.save_sales_invoice(self.conn, {"customer": "Jane", "items": []}, via_queue=True)
        unsynced = storage.get_unsynced_invoices(self.conn)
        self.assertEqual([inv["id"] for inv in unsynced], [legacy])
        self.assertTrue(storage.mark_invoice_synced(self.conn, legacy, "ACC-SINV-9"))
        self.assertEqual(storage.get_sales_invoice(self.conn, legacy)["remote_invoice_id"], "ACC-SINV-9")
        self.assertEqual(storage.get_unsynced_invoices(self.conn), [])

    def test_rename_invoice_customer_and_replace_payload(self):
        first = storage.save_sales_invoice(self.conn, {"customer": "TEMP-1", "items": []}, via_queue=True)
        other = storage.save_sales_invoice(self.conn, {"customer": "Jane", "items": []})
        self.assertEqual(storage.rename_invoice_customer(self.conn, "TEMP-1", "CUST-9"), 1)
        self.assertEqual(storage.get_sales_invoice(self.conn, first)["customer"], "CUST-9")
        self.assertEqual(storage.get_sales_invoice(self.conn, other)["customer"], "Jane")

        op_id = storage.enqueue_operation(self.conn, "invoice", "create_draft", {"customer_name": "TEMP-1"})
        self.assertTrue(storage.replace_operation_payload(self.conn, op_id, {"customer_name": "CUST-9"}))
        self.assertEqual(storage.get_operation(self.conn, op_id)["payload"], {"customer_name": "CUST-9"})
        self.assertFalse(storage.replace_operation_payload(self.conn, 9999, {}))

    def test_queue_survives_reconnect(self):
        op_id = storage.enqueue_operation(self.conn, "customer", "create", {"name": "Jane"})
        storage.update_operation(self.conn, op_id, status="processing")
        self.conn.close()
        self.conn = storage.connect(self.db_path)
        op = storage.get_operation(self.conn, op_id)
        self.assertEqual(op["status"], "processing")
        self.assertEqual(op["payload"], {"name": "Jane"})


if __name__ == "__main__":
    unittest.main()
