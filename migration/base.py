"""
Abstract base class for entity migrations and their reference dimensions
"""

from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union
import logging
import re

from sqlalchemy import text

from core.exceptions import SchemaValidationError
from migration.linking import FanOutGroup
from schemas.reconciliation import ReconciliationPolicy

logger = logging.getLogger(__name__)

_BIND_PARAM = re.compile(r"(?<!:):(\w+)")


@dataclass
class OracleDimension:
    """
    Reference dimension reconciled by the oracle.

    Source items come from ``source_endpoint`` (paginated, or a single
    response whose list sits under ``results_field``). Target items come
    from ``target_query``, whose ``:name`` parameters are bound from the
    run's tenant scope. ``context_from`` names dimensions reconciled
    earlier whose mappers are handed to the oracle as policy context.
    """
    name: str
    source_endpoint: str
    target_query: str
    policy: ReconciliationPolicy = field(default_factory=ReconciliationPolicy)
    source_params: Dict[str, Any] = field(default_factory=dict)
    paginated: bool = True
    results_field: Optional[str] = None
    exclude_fields: Tuple[str, ...] = ()
    context_from: Tuple[str, ...] = ()

    def target_statement(self, scope: Dict[str, Any]):
        """SQL statement and bound parameters for the target collection"""
        names = set(_BIND_PARAM.findall(self.target_query))
        missing = names - set(scope)
        if missing:
            raise SchemaValidationError(
                f"Target query for {self.name} needs tenant values {sorted(missing)}",
                context={"dimension": self.name, "missing": sorted(missing)}
            )
        params = {key: value for key, value in scope.items() if key in names}
        return text(self.target_query), params

    def strip(self, item: Dict[str, Any]) -> Dict[str, Any]:
        if not self.exclude_fields:
            return item
        return {k: v for k, v in item.items() if k not in self.exclude_fields}


@dataclass
class NaturalKeyDimension:
    """
    Reference dimension resolved by direct store lookup.

    Used for entities migrated earlier that carry their source id in a
    natural key column, e.g. patients keyed by ``old_id``.
    """
    name: str
    table: str
    id_column: str
    key_column: str = "old_id"
    scoped: bool = True


Dimension = Union[OracleDimension, NaturalKeyDimension]


class TransformContext:
    """
    Reconciled mappings and run settings handed to ``transform``.

    One context is created per page so warning counters stay page-local.
    """

    def __init__(
        self,
        mappings: Dict[str, Dict[str, Any]],
        tenant: Optional[Dict[str, Any]] = None,
        defaults: Optional[Dict[str, Any]] = None
    ):
        self.mappings = mappings
        self.tenant = dict(tenant or {})
        self.defaults = dict(defaults or {})
        self.warnings: Counter = Counter()

    def warn(self, key: str, message: Optional[str] = None):
        self.warnings[key] += 1
        if message:
            logger.warning(f"⚠ {message}")

    def resolve(self, dimension: str, source_id: Any) -> Optional[Any]:
        """
        Translate ``source_id`` through a reconciled dimension.

        Empty ids resolve to None silently; ids with no mapping resolve to
        None and count an ``unresolved_<dimension>`` warning.
        """
        if source_id is None or source_id == "":
            return None

        try:
            mapping = self.mappings[dimension]
        except KeyError:
            raise SchemaValidationError(
                f"Dimension {dimension} was not reconciled for this run",
                context={"dimension": dimension, "known": sorted(self.mappings)}
            )

        target_id = mapping.get(str(source_id))
        if target_id is None:
            self.warn(
                f"unresolved_{dimension}",
                f"No {dimension} mapping for source id {source_id}"
            )
        return target_id

    def known(self, dimension: str, source_id: Any) -> bool:
        """Whether ``source_id`` has a mapping, without counting a warning"""
        if source_id is None or source_id == "":
            return False
        return str(source_id) in self.mappings.get(dimension, {})

    def default(self, key: str, fallback: Any = None) -> Any:
        value = self.defaults.get(key)
        return fallback if value is None else value


class EntityMigration(ABC):
    """
    Abstract base class for one entity's migration.

    Subclasses declare where the entity comes from, where its primary and
    secondary records go, which reference dimensions must be reconciled
    first, and how one source item becomes a fan-out group.
    """

    name: str = ""
    endpoint: str = ""

    primary_table: str = ""
    primary_id_column: str = "id"
    natural_key_column: str = "old_id"
    secondary_table: Optional[str] = None

    # Tenant columns used to scope natural-key lookups
    scope_columns: Tuple[str, ...] = ()

    page_size: Optional[int] = None
    chunk_size: Optional[int] = None

    # Count unresolved references as errors in the run status
    strict_references: bool = False

    def __init__(
        self,
        tenant: Optional[Dict[str, Any]] = None,
        defaults: Optional[Dict[str, Any]] = None,
        source_params: Optional[Dict[str, Any]] = None,
        skip_existing: bool = False
    ):
        self.tenant = dict(tenant or {})
        self.defaults = dict(defaults or {})
        self.source_params = dict(source_params or {})
        self.skip_existing = skip_existing

    def validate(self):
        """Check the declaration and tenant before a run starts"""
        for attr in ("name", "endpoint", "primary_table"):
            if not getattr(self, attr):
                raise SchemaValidationError(
                    f"{type(self).__name__} does not declare '{attr}'",
                    context={"migration": type(self).__name__, "attribute": attr}
                )

        missing = [c for c in self.scope_columns if self.tenant.get(c) is None]
        if missing:
            raise SchemaValidationError(
                f"Tenant values missing for {self.name}: {', '.join(missing)}",
                context={"migration": self.name, "missing": missing}
            )

    @property
    def scope(self) -> Dict[str, Any]:
        return {column: self.tenant[column] for column in self.scope_columns}

    def dimensions(self) -> List[Dimension]:
        """Reference dimensions to resolve before the first page, in order"""
        return []

    def params(self) -> Dict[str, Any]:
        """Query parameters for the entity endpoint"""
        return dict(self.source_params)

    def detail_endpoint(self, item: Dict[str, Any]) -> Optional[str]:
        """Endpoint holding extra details for ``item``; None skips the fetch"""
        return None

    def merge_detail(self, item: Dict[str, Any], detail: Optional[Any]) -> Dict[str, Any]:
        if isinstance(detail, dict):
            return {**item, **detail}
        return item

    @abstractmethod
    def transform(self, item: Dict[str, Any], ctx: TransformContext) -> Optional[FanOutGroup]:
        """
        Turn one source item into its fan-out group.

        Args:
            item: Source item (merged with its details when declared)
            ctx: Reconciled mappings, tenant and defaults

        Returns:
            FanOutGroup, or None to skip the item
        """
        pass

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} tenant={self.tenant}>"
