import unittest

from tax_calculator import calculate_cart_tax, gst_rate_from_template, resolve_item_tax


TAXES = {
    "taxes": [
        {"name": "Duties and Taxes - LT", "account_name": "Duties and Taxes", "is_group": 1, "tax_rate": 99},
        {"name": "Output Tax IGST - LT", "account_name": "Output Tax IGST", "tax_rate": 18},
        {"name": "Output Tax CGST - LT", "account_name": "Output Tax CGST", "tax_rate": 9},
        {"name": "Output Tax SGST - LT", "account_name": "Output Tax SGST", "tax_rate": 9},
    ]
}


def _cart(**item_fields):
    item = {"item_code": "A", "rate": 100, "quantity": 2}
    item.update(item_fields)
    return [item]


class TaxTierTest(unittest.TestCase):
    def test_customer_out_of_state_is_pure_igst(self):
        result = calculate_cart_tax(_cart(), {"tax_category": "Out of State"}, TAXES, "Punjab")
        self.assertEqual(result["breakdown"], [{"label": "IGST", "rate": 18, "amount": 36}])
        self.assertEqual(result["grand_total"], 236)
        self.assertEqual(result["subtotal"], 200)
        self.assertEqual(result["total_tax"], 36)

    def test_customer_category_short_circuits_item_and_address(self):
        cart = _cart(tax_category="In State", item_tax_template="GST 5%")
        customer = {"tax_category": "Interstate", "state": "Punjab"}
        result = calculate_cart_tax(cart, customer, TAXES, "Punjab")
        self.assertEqual([b["label"] for b in result["breakdown"]], ["IGST"])
        self.assertEqual(result["breakdown"][0]["rate"], 18)

    def test_customer_in_state_splits(self):
        result = calculate_cart_tax(_cart(), {"tax_category": "Within State"}, TAXES, "")
        self.assertEqual(result["breakdown"], [
            {"label": "CGST", "rate": 9, "amount": 18},
            {"label": "SGST", "rate": 9, "amount": 18},
        ])

    def test_unmatched_customer_category_defaults_to_igst(self):
        info = resolve_item_tax({"tax_category": "In State"}, {"tax_category": "Registered Regular"}, TAXES["taxes"], "Punjab")
        self.assertEqual(info["type"], "igst")

    def test_gst_category_counts_as_customer_category(self):
        info = resolve_item_tax({}, {"gst_category": "Overseas"}, TAXES["taxes"], "")
        self.assertEqual(info["type"], "igst")

    def test_item_category_used_without_customer_category(self):
        out = resolve_item_tax({"tax_category": "Out State"}, {}, TAXES["taxes"], "")
        self.assertEqual(out["type"], "igst")
        inside = resolve_item_tax({"tax_category": "Intra State"}, {"tax_category": ""}, TAXES["taxes"], "")
        self.assertEqual(inside["type"], "cgst_sgst")

    def test_unmatched_item_category_falls_through_to_template(self):
        info = resolve_item_tax({"tax_category": "Standard", "item_tax_template": "GST 5%"}, None, TAXES["taxes"], "")
        self.assertEqual(info["type"], "template")
        self.assertEqual(info["rate"], 5)

    def test_template_rate_labelled_igst(self):
        cart = _cart(tax_category="", item_tax_template="GST 12%")
        result = calculate_cart_tax(cart, {"tax_category": ""}, TAXES, "Punjab")
        self.assertEqual(result["breakdown"], [{"label": "IGST", "rate": 12, "amount": 24}])
        self.assertEqual(result["grand_total"], 224)

    def test_no_signals_and_no_states_is_cgst_sgst(self):
        for customer in (None, {}, {"name": "Walk-in"}):
            result = calculate_cart_tax(_cart(), customer, TAXES, "")
            labels = [b["label"] for b in result["breakdown"]]
            self.assertEqual(labels, ["CGST", "SGST"])
            self.assertNotIn("IGST", labels)

    def test_same_state_splits_and_rounds(self):
        cart = [{"item_code": "A", "rate": 10.55, "quantity": 3}]
        result = calculate_cart_tax(cart, {"state": " punjab "}, TAXES, "Punjab")
        self.assertEqual([b["label"] for b in result["breakdown"]], ["CGST", "SGST"])
        self.assertAlmostEqual(result["total_tax"], 31.65 * 0.18)
        self.assertEqual(result["grand_total"], 37)

    def test_customer_state_without_company_state_is_igst(self):
        info = resolve_item_tax({}, {"gst_state": "Kerala"}, TAXES["taxes"], "")
        self.assertEqual(info["type"], "igst")

    def test_different_states_is_igst(self):
        info = resolve_item_tax({}, {"address_state": "Kerala"}, TAXES["taxes"], "Punjab")
        self.assertEqual(info["type"], "igst")


class TaxAggregationTest(unittest.TestCase):
    def test_breakdown_merges_same_label_and_rate(self):
        cart = [
            {"item_code": "A", "rate": 100, "quantity": 1, "item_tax_template": "GST 12%"},
            {"item_code": "B", "rate": 50, "quantity": 2, "item_tax_template": "GST 12%"},
            {"item_code": "C", "rate": 100, "quantity": 1, "item_tax_template": "GST 5%"},
        ]
        result = calculate_cart_tax(cart, None, TAXES, "")
        self.assertEqual(result["breakdown"], [
            {"label": "IGST", "rate": 12, "amount": 24},
            {"label": "IGST", "rate": 5, "amount": 5},
        ])
        self.assertEqual(result["grand_total"], 329)

    def test_missing_rules_give_zero_and_no_breakdown(self):
        result = calculate_cart_tax(_cart(), {"tax_category": "Out of State"}, {"taxes": []}, "")
        self.assertEqual(result["breakdown"], [])
        self.assertEqual(result["total_tax"], 0)
        self.assertEqual(result["grand_total"], 200)

    def test_group_accounts_are_ignored(self):
        taxes = {"taxes": [{"account_name": "Output Tax IGST", "is_group": 1, "tax_rate": 40}]}
        result = calculate_cart_tax(_cart(), {"tax_category": "Out of State"}, taxes, "")
        self.assertEqual(result["total_tax"], 0)

    def test_half_up_rounding_only_on_grand_total(self):
        cart = [{"item_code": "A", "rate": 0.5, "quantity": 1}]
        result = calculate_cart_tax(cart, None, {"taxes": []}, "")
        self.assertEqual(result["subtotal"], 0.5)
        self.assertEqual(result["grand_total"], 1)

    def test_malformed_input_never_raises(self):
        cart = [{"item_code": "A", "rate": "abc", "quantity": None}, "junk", {"rate": float("nan"), "quantity": 1}]
        result = calculate_cart_tax(cart, "not-a-dict", {"taxes": "nope"}, None)
        self.assertEqual(result, {"subtotal": 0.0, "total_tax": 0.0, "grand_total": 0, "breakdown": []})
        self.assertEqual(calculate_cart_tax(None, None, None, None)["grand_total"], 0)

    def test_template_parsing(self):
        self.assertEqual(gst_rate_from_template("GST 18%"), 18)
        self.assertEqual(gst_rate_from_template("gst28%"), 28)
        self.assertEqual(gst_rate_from_template("In State GST 2.5% - LT"), 2.5)
        self.assertIsNone(gst_rate_from_template("Exempt"))
        self.assertIsNone(gst_rate_from_template(None))


if __name__ == "__main__":
    unittest.main()
