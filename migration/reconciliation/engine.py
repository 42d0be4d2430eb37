"""
Reconciliation engine: oracle call, structural validation and caching.

The oracle is a best-effort matcher. The engine never trusts its answer
blindly: ``mapper`` must be an object of ids coercible to integers,
``missing`` must be a list of objects, and under one-to-one cardinality
no target id may be claimed twice. Any violation becomes a tagged
``ReconciliationFailure``; nothing is silently coerced away and nothing
is raised to the caller.
"""

from collections import Counter
from typing import Any, Dict, List, Optional
import logging

from core.exceptions import (
    IncompleteReconciliationError,
    MalformedOracleResponseError,
    OracleError,
    ReconciliationError,
)
from migration.reconciliation.cache import ReconciliationCache
from migration.reconciliation.oracle import OracleRequest, ReconciliationOracle
from schemas.reconciliation import (
    Cardinality,
    ReconciliationErrorKind,
    ReconciliationFailure,
    ReconciliationMapping,
    ReconciliationPolicy,
    ReconciliationResult,
)

logger = logging.getLogger(__name__)


class MappingValidationError(ValueError):
    """Raised internally when an oracle answer breaks a structural rule"""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.details = details


def coerce_target_id(value: Any) -> int:
    """
    Convert an oracle-supplied target id to ``int``.

    Accepts ints, integral floats and digit strings. Booleans, fractional
    numbers and anything else are rejected.
    """
    if isinstance(value, bool):
        raise MappingValidationError(f"Target id {value!r} is a boolean")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        raise MappingValidationError(f"Target id {value!r} is not integral")
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return int(text)
    raise MappingValidationError(f"Target id {value!r} is not coercible to an integer")


def validate_oracle_result(
    entity_type: str,
    result: Dict[str, Any],
    policy: ReconciliationPolicy
) -> ReconciliationMapping:
    """
    Check an oracle answer against the mapping contract.

    Raises:
        MappingValidationError: On the first broken rule
    """
    mapper = result.get("mapper")
    if not isinstance(mapper, dict):
        raise MappingValidationError("'mapper' must be an object", {"mapper": mapper})

    missing = result.get("missing")
    if not isinstance(missing, list):
        raise MappingValidationError("'missing' must be an array", {"missing": missing})

    for index, item in enumerate(missing):
        if not isinstance(item, dict):
            raise MappingValidationError(
                f"'missing[{index}]' must be an object",
                {"index": index, "item": item}
            )

    coerced: Dict[str, int] = {}
    for source_id, target_id in mapper.items():
        try:
            coerced[str(source_id)] = coerce_target_id(target_id)
        except MappingValidationError as e:
            raise MappingValidationError(
                f"Invalid target id for source id {source_id!r}: {e}",
                {"source_id": source_id, "target_id": target_id}
            )

    if policy.cardinality == Cardinality.ONE_TO_ONE:
        claimed = Counter(coerced.values())
        duplicates = {target: count for target, count in claimed.items() if count > 1}
        if duplicates:
            sources = {
                target: sorted(src for src, tgt in coerced.items() if tgt == target)
                for target in duplicates
            }
            raise MappingValidationError(
                "One-to-one mapping assigns the same target id to several source ids",
                {"duplicates": sources}
            )

    return ReconciliationMapping(
        entity_type=entity_type,
        cardinality=policy.cardinality,
        mapper=coerced,
        missing=missing
    )


class ReconciliationEngine:
    """
    Produce identifier mappings between a source collection and a target collection.

    Responsibilities:
    - Serve identical (entity type, source set, target set) requests from the cache
    - Delegate matching to the oracle
    - Validate the oracle's answer before anyone acts on it
    """

    def __init__(
        self,
        oracle: ReconciliationOracle,
        cache: Optional[ReconciliationCache] = None
    ):
        self.oracle = oracle
        self.cache = cache if cache is not None else ReconciliationCache()

    async def reconcile(
        self,
        entity_type: str,
        source_items: List[Dict[str, Any]],
        target_items: List[Dict[str, Any]],
        policy: Optional[ReconciliationPolicy] = None
    ) -> ReconciliationResult:
        """
        Map ``source_items`` onto ``target_items``.

        Returns:
            ReconciliationMapping on success (the cached instance on a cache
            hit), otherwise a ReconciliationFailure tagged with its kind
        """
        policy = policy or ReconciliationPolicy()

        key = self.cache.make_key(
            entity_type,
            source_items,
            target_items,
            policy.source_id_field,
            policy.target_key_field
        )
        cached = self.cache.get(key)
        if cached is not None:
            logger.info(f"✓ Using cached mapping for {entity_type}")
            return cached

        request = OracleRequest(
            entity_type=entity_type,
            source_items=source_items,
            target_items=target_items,
            policy=policy
        )

        try:
            result = await self.oracle.reconcile(request)
        except MalformedOracleResponseError as e:
            return self._fail(entity_type, ReconciliationErrorKind.MALFORMED_RESPONSE, e.message, e.context)
        except OracleError as e:
            return self._fail(entity_type, ReconciliationErrorKind.ORACLE_UNAVAILABLE, e.message, e.context)
        except Exception as e:
            return self._fail(
                entity_type,
                ReconciliationErrorKind.ORACLE_UNAVAILABLE,
                f"Oracle call failed: {e}",
                {"error_type": type(e).__name__, "error_message": str(e)}
            )

        if not isinstance(result, dict):
            return self._fail(
                entity_type,
                ReconciliationErrorKind.MALFORMED_RESPONSE,
                "Oracle answer is not a JSON object",
                {"answer": repr(result)[:500]}
            )

        if result.get("error"):
            return self._fail(
                entity_type,
                ReconciliationErrorKind.ORACLE_ERROR,
                str(result.get("message") or result.get("error")),
                result
            )

        try:
            mapping = validate_oracle_result(entity_type, result, policy)
        except MappingValidationError as e:
            return self._fail(entity_type, ReconciliationErrorKind.INVALID_MAPPING, str(e), e.details)

        self.cache.set(key, mapping)
        logger.info(
            f"✓ Mapping for {entity_type}: {len(mapping.mapper)} mapped, "
            f"{len(mapping.missing)} missing"
        )
        return mapping

    @staticmethod
    def _fail(
        entity_type: str,
        kind: ReconciliationErrorKind,
        message: str,
        details: Optional[Any] = None
    ) -> ReconciliationFailure:
        logger.error(f"✗ Reconciliation failed for {entity_type} ({kind.value}): {message}")
        return ReconciliationFailure(
            entity_type=entity_type,
            kind=kind,
            message=message,
            details=details
        )


def require_mapping(
    result: ReconciliationResult,
    policy: Optional[ReconciliationPolicy] = None
) -> ReconciliationMapping:
    """
    Turn a reconciliation result into a mapping the caller may act on.

    Raises:
        ReconciliationError: The engine returned a failure
        IncompleteReconciliationError: The policy requires completeness and
            the mapping still has missing items
    """
    if isinstance(result, ReconciliationFailure):
        raise ReconciliationError(
            f"Reconciliation failed for {result.entity_type}: {result.message}",
            kind=result.kind.value,
            context={"entity_type": result.entity_type, "details": result.details}
        )

    if policy is not None and policy.require_complete and result.missing:
        raise IncompleteReconciliationError(
            f"{len(result.missing)} {result.entity_type} item(s) have no counterpart in the store",
            context={
                "entity_type": result.entity_type,
                "missing": result.missing,
                "mapper": result.mapper
            }
        )

    return result
