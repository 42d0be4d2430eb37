"""
Process-lifetime cache of validated reconciliation mappings
"""

from typing import Any, Dict, Iterable, List, Optional, Tuple
import hashlib
import json
import logging

from schemas.reconciliation import ReconciliationMapping

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str, str]


def stable_hash(values: Iterable[Any]) -> str:
    """Order-independent SHA-256 over the string forms of ``values``"""
    ordered = sorted(str(v) for v in values)
    payload = json.dumps(ordered, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def source_ids(items: Iterable[Dict[str, Any]], id_field: str = "id") -> List[Any]:
    """Identifier of each item; an item without one stands for itself by content"""
    ids = []
    for item in items:
        value = item.get(id_field)
        if value is None:
            value = json.dumps(item, sort_keys=True, default=str)
        ids.append(value)
    return ids


def target_keys(items: Iterable[Dict[str, Any]], key_field: Optional[str] = None) -> List[Any]:
    """Natural keys of target items; the first field when ``key_field`` is None"""
    keys = []
    for item in items:
        if key_field is not None:
            keys.append(item.get(key_field))
        else:
            keys.append(next(iter(item.values()), None))
    return keys


class ReconciliationCache:
    """
    Mappings keyed by (entity type, source-set hash, target-set hash).

    Owned by whoever builds the engine, so each run or tenant can get its
    own instance. Only validated mappings are stored.
    """

    def __init__(self):
        self._entries: Dict[CacheKey, ReconciliationMapping] = {}

    @staticmethod
    def make_key(
        entity_type: str,
        source_items: Iterable[Dict[str, Any]],
        target_items: Iterable[Dict[str, Any]],
        source_id_field: str = "id",
        target_key_field: Optional[str] = None
    ) -> CacheKey:
        return (
            entity_type,
            stable_hash(source_ids(source_items, source_id_field)),
            stable_hash(target_keys(target_items, target_key_field)),
        )

    def get(self, key: CacheKey) -> Optional[ReconciliationMapping]:
        return self._entries.get(key)

    def set(self, key: CacheKey, mapping: ReconciliationMapping):
        self._entries[key] = mapping

    def clear(self, entity_type: Optional[str] = None) -> int:
        """
        Drop cached mappings for one entity type, or all of them.

        Returns:
            Number of entries removed
        """
        if entity_type is None:
            removed = len(self._entries)
            self._entries.clear()
            logger.info("✓ Reconciliation cache cleared")
            return removed

        stale = [key for key in self._entries if key[0] == entity_type]
        for key in stale:
            del self._entries[key]
        logger.info(f"✓ Reconciliation cache cleared for {entity_type} ({len(stale)} entries)")
        return len(stale)

    def stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._entries),
            "keys": [f"{entity}:{src[:12]}:{tgt[:12]}" for entity, src, tgt in self._entries],
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries
