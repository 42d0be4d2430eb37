"""
Unit tests for the reconciliation cache
"""

from migration.reconciliation.cache import ReconciliationCache, source_ids, stable_hash, target_keys
from schemas.reconciliation import ReconciliationMapping


def mapping(entity_type):
    return ReconciliationMapping(entity_type=entity_type, mapper={"1": 1})


class TestReconciliationCache:
    """Test keying, storage and eviction"""

    def test_key_is_order_independent(self):
        a = ReconciliationCache.make_key("tax", [{"id": 1}, {"id": 2}], [{"k": "x"}, {"k": "y"}])
        b = ReconciliationCache.make_key("tax", [{"id": 2}, {"id": 1}], [{"k": "y"}, {"k": "x"}])

        assert a == b

    def test_key_uses_identifiers_only(self):
        """Non-key fields do not change the key"""
        a = ReconciliationCache.make_key("tax", [{"id": 1, "name": "IVA"}], [{"id_tipo_iva": 1, "pct": 21}])
        b = ReconciliationCache.make_key("tax", [{"id": 1, "name": "VAT"}], [{"id_tipo_iva": 1, "pct": 10}])

        assert a == b

    def test_key_separates_entity_types(self):
        items = [{"id": 1}]

        assert ReconciliationCache.make_key("tax", items, items) != ReconciliationCache.make_key("doctor", items, items)

    def test_explicit_key_fields(self):
        a = ReconciliationCache.make_key("tax", [{"code": 1}], [{"id": 9, "code": "A"}], "code", "code")
        b = ReconciliationCache.make_key("tax", [{"code": 1}], [{"id": 8, "code": "A"}], "code", "code")

        assert a == b

    def test_items_without_id_field_key_by_content(self):
        targets = [{"id_tipo_iva": 1}]
        a = ReconciliationCache.make_key("tax", [{"value": 1}, {"value": 2}], targets)
        b = ReconciliationCache.make_key("tax", [{"value": 7}, {"value": 9}], targets)

        assert a != b
        assert source_ids([{"value": 1}, {"id": 3}]) == ['{"value": 1}', 3]

    def test_target_keys_default_to_first_field(self):
        assert target_keys([{"b": 2, "a": 1}, {}]) == [2, None]

    def test_stable_hash(self):
        assert stable_hash([2, 1]) == stable_hash(["1", "2"])
        assert stable_hash([1]) != stable_hash([1, 1])

    def test_get_set_contains(self):
        cache = ReconciliationCache()
        key = cache.make_key("tax", [{"id": 1}], [{"id": 1}])
        value = mapping("tax")

        assert cache.get(key) is None
        cache.set(key, value)

        assert cache.get(key) is value
        assert key in cache
        assert len(cache) == 1

    def test_clear_by_entity_type(self):
        cache = ReconciliationCache()
        cache.set(cache.make_key("tax", [{"id": 1}], []), mapping("tax"))
        cache.set(cache.make_key("tax", [{"id": 2}], []), mapping("tax"))
        cache.set(cache.make_key("doctor", [{"id": 1}], []), mapping("doctor"))

        removed = cache.clear("tax")

        assert removed == 2
        assert len(cache) == 1
        assert cache.stats()["keys"][0].startswith("doctor:")

    def test_clear_all(self):
        cache = ReconciliationCache()
        cache.set(cache.make_key("tax", [], []), mapping("tax"))

        assert cache.clear() == 1
        assert cache.stats() == {"size": 0, "keys": []}

    def test_instances_are_isolated(self):
        first, second = ReconciliationCache(), ReconciliationCache()
        first.set(first.make_key("tax", [], []), mapping("tax"))

        assert len(second) == 0
