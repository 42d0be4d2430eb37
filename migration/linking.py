"""
Primary/secondary record linking.

A source item fans out into one primary record and any number of secondary
records. Secondaries reference their primary by the primary's source id
until the primary is persisted and its generated id has been re-queried;
only then is the reference rewritten and the secondary released for load.

    PENDING --persisted(id)--> PERSISTED --link--> LINKED
       |
       +-- primary absent after re-query --> UNRESOLVED (dropped, counted)
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple
import enum
import logging

from core.exceptions import SchemaValidationError

logger = logging.getLogger(__name__)


class LinkState(str, enum.Enum):
    PENDING = "pending"
    PERSISTED = "persisted"
    LINKED = "linked"
    UNRESOLVED = "unresolved"


@dataclass
class PrimaryRecord:
    """Independently meaningful record, inserted first (fan-out index 0)"""
    source_id: Any
    values: Dict[str, Any]
    state: LinkState = LinkState.PENDING
    target_id: Optional[Any] = None

    def mark_persisted(self, target_id: Any):
        self.target_id = target_id
        self.state = LinkState.PERSISTED

    def mark_unresolved(self):
        self.state = LinkState.UNRESOLVED


@dataclass
class SecondaryRecord:
    """
    Dependent record inserted after its primary (fan-out index > 0).

    ``reference_column`` receives the primary's generated id once known.
    ``table`` overrides the flow's default secondary table.
    """
    values: Dict[str, Any]
    reference_column: str
    table: Optional[str] = None
    state: LinkState = LinkState.PENDING
    parent_source_id: Optional[Any] = None

    def link(self, target_id: Any):
        self.values = {**self.values, self.reference_column: target_id}
        self.state = LinkState.LINKED

    def mark_unresolved(self):
        self.state = LinkState.UNRESOLVED

    def to_row(self) -> Dict[str, Any]:
        if self.state != LinkState.LINKED:
            raise SchemaValidationError(
                "Secondary record submitted before its reference was linked",
                context={
                    "state": self.state.value,
                    "parent_source_id": self.parent_source_id,
                    "reference_column": self.reference_column
                }
            )
        return self.values


@dataclass
class FanOutGroup:
    """One source item's records: the primary plus its dependents"""
    primary: PrimaryRecord
    secondaries: List[SecondaryRecord] = field(default_factory=list)

    def __post_init__(self):
        for secondary in self.secondaries:
            secondary.parent_source_id = self.primary.source_id

    @property
    def source_id(self) -> Any:
        return self.primary.source_id

    @property
    def records(self) -> List[Any]:
        """Records in fan-out order; index 0 is the primary"""
        return [self.primary, *self.secondaries]


def primary_rows(
    groups: Iterable[FanOutGroup],
    natural_key_column: str,
    scope: Optional[Dict[str, Any]] = None
) -> List[Dict[str, Any]]:
    """Rows for the primary load, each carrying its natural key and tenant scope"""
    rows = []
    for group in groups:
        row = dict(group.primary.values)
        row.setdefault(natural_key_column, group.primary.source_id)
        for scope_column, value in (scope or {}).items():
            row.setdefault(scope_column, value)
        rows.append(row)
    return rows


def resolve_links(
    groups: Iterable[FanOutGroup],
    id_map: Dict[str, Any]
) -> Tuple[List[SecondaryRecord], int]:
    """
    Apply re-queried generated ids to every group.

    Args:
        groups: Fan-out groups whose primaries were just loaded
        id_map: ``str(source_id) -> generated id`` from the store

    Returns:
        (linked secondaries ready to load, number of unresolved secondaries)
    """
    linked: List[SecondaryRecord] = []
    unresolved = 0

    for group in groups:
        target_id = id_map.get(str(group.primary.source_id))

        if target_id is None:
            group.primary.mark_unresolved()
            for secondary in group.secondaries:
                secondary.mark_unresolved()
            if group.secondaries:
                unresolved += len(group.secondaries)
                logger.warning(
                    f"⚠ Primary {group.primary.source_id} not found after insert; "
                    f"dropping {len(group.secondaries)} dependent record(s)"
                )
            continue

        group.primary.mark_persisted(target_id)
        for secondary in group.secondaries:
            secondary.link(target_id)
            linked.append(secondary)

    return linked, unresolved
