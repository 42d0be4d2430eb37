"""
Pydantic schemas for identifier reconciliation between the source and the store
"""

from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field
import enum


class Cardinality(str, enum.Enum):
    """How many source identifiers may collapse onto one target identifier"""
    ONE_TO_ONE = "one-to-one"
    MANY_TO_ONE = "many-to-one"


class ReconciliationErrorKind(str, enum.Enum):
    """Tag carried by every reconciliation failure"""
    ORACLE_UNAVAILABLE = "oracle_unavailable"
    MALFORMED_RESPONSE = "malformed_response"
    ORACLE_ERROR = "oracle_error"
    INVALID_MAPPING = "invalid_mapping"


class ReconciliationPolicy(BaseModel):
    """
    Configuration for one reconciliation.

    ``require_complete`` does not change what the engine returns; it tells
    the caller whether a non-empty ``missing`` list makes the mapping
    unusable. ``context`` holds already-known mappings (e.g. tax types)
    so missing records can carry translated foreign keys.
    """
    cardinality: Cardinality = Cardinality.ONE_TO_ONE
    require_complete: bool = False
    context: Optional[Dict[str, Dict[str, int]]] = None

    # Identifier fields used for the cache key. ``None`` means the first
    # field of each target item, which is how store rows usually lead.
    source_id_field: str = "id"
    target_key_field: Optional[str] = None


class ReconciliationMapping(BaseModel):
    """
    Source id -> target id mapping plus target-shaped records for unmatched items.
    """
    entity_type: str
    cardinality: Cardinality = Cardinality.ONE_TO_ONE
    mapper: Dict[str, int] = Field(default_factory=dict)
    missing: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return True

    @property
    def is_complete(self) -> bool:
        return not self.missing

    def resolve(self, source_id: Any) -> Optional[int]:
        """Translate a source identifier, ``None`` when it is unmapped"""
        if source_id is None:
            return None
        return self.mapper.get(str(source_id))


class ReconciliationFailure(BaseModel):
    """Tagged error result returned instead of a mapping"""
    entity_type: str
    kind: ReconciliationErrorKind
    message: str
    details: Optional[Any] = None

    @property
    def ok(self) -> bool:
        return False


ReconciliationResult = Union[ReconciliationMapping, ReconciliationFailure]
