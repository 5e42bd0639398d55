"""
Tests for Key Derivation — customer / crop keys and stats storage keys.

Covers:
  - Customer key priority (email → Shopify id → customer id → name)
  - Crop key normalization and product-id fallback
  - Both order collections resolving to the same key
  - stats_key never merges distinct customer-crop pairs
"""

from learning.keys import crop_display_name, crop_key, customer_key, normalize_title, stats_key


class TestCustomerKey:
    def test_email_is_lowercased_and_trimmed(self):
        assert customer_key({"customerEmail": "  Chef@Bistro.COM "}) == "chef@bistro.com"

    def test_email_wins_over_other_identifiers(self):
        record = {
            "customerEmail": "chef@bistro.com",
            "shopifyCustomerId": "gid://shopify/Customer/12345",
            "customerName": "Bistro Chef",
        }
        assert customer_key(record) == "chef@bistro.com"

    def test_shopify_gid_uses_last_segment(self):
        assert customer_key({"shopifyCustomerId": "gid://shopify/Customer/12345"}) == "cust_12345"

    def test_webhook_customer_id(self):
        assert customer_key({"customerId": "cus_abc"}) == "cus_abc"

    def test_name_fallback(self):
        assert customer_key({"customerName": "Jane   Doe"}) == "name_jane_doe"

    def test_unknown_when_nothing_identifies_the_customer(self):
        assert customer_key({}) == "unknown"
        assert customer_key({"customerEmail": "   "}) == "unknown"

    def test_both_sources_resolve_to_same_key(self):
        sync_doc = {"customerEmail": "Chef@Bistro.com", "shopifyCustomerId": "gid://shopify/Customer/9"}
        webhook_doc = {"customerEmail": "chef@bistro.com ", "customerId": "cus_9"}
        assert customer_key(sync_doc) == customer_key(webhook_doc)


class TestCropKey:
    def test_title_normalization(self):
        assert crop_key({"title": "Pea Shoots (8oz)"}) == "pea_shoots_8oz"

    def test_leading_and_trailing_separators_trimmed(self):
        assert normalize_title("  --Sunflower!! ") == "sunflower"

    def test_product_id_fallback(self):
        assert crop_key({"shopifyProductId": "gid://shopify/Product/987"}) == "987"

    def test_unknown(self):
        assert crop_key({}) == "unknown"
        assert crop_key({"title": "!!!"}) == "unknown"

    def test_display_name_default(self):
        assert crop_display_name({"title": "Radish Mix"}) == "Radish Mix"
        assert crop_display_name({}) == "Unknown Product"


class TestStatsKey:
    def test_json_pair(self):
        assert stats_key("chef@bistro.com", "pea_shoots") == '["chef@bistro.com","pea_shoots"]'

    def test_punctuation_variants_do_not_collide(self):
        keys = {stats_key(customer, "pea_shoots") for customer in ("a.b@x.com", "a_b@x.com", "a b@x.com", "a/b@x.com")}
        assert len(keys) == 4

    def test_separator_in_parts_does_not_collide(self):
        assert stats_key("a__b", "c") != stats_key("a", "b__c")
        assert stats_key('a","b', "c") != stats_key("a", 'b","c')

    def test_long_keys_kept_whole(self):
        assert stats_key("c" * 150 + "1", "pea") != stats_key("c" * 150 + "2", "pea")

    def test_deterministic(self):
        assert stats_key("chef@bistro.com", "radish") == stats_key("chef@bistro.com", "radish")
