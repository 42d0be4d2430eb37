"""
Pydantic schemas for run statistics and reconciliation results.

Schemas:
    migration: Chunk results, per-load stats, page and run results
    reconciliation: Policies, mappings and tagged failures

Usage:
    from schemas.migration import BatchRunStats, MigrationResult, RunStatus
    from schemas.reconciliation import Cardinality, ReconciliationPolicy

Example:
    policy = ReconciliationPolicy(
        cardinality=Cardinality.MANY_TO_ONE,
        require_complete=True
    )
    result.model_dump(mode="json")
"""

from schemas.migration import (
    BatchRunStats,
    ChunkError,
    ChunkResult,
    MigrationResult,
    PageResult,
    RunStatus,
)
from schemas.reconciliation import (
    Cardinality,
    ReconciliationErrorKind,
    ReconciliationFailure,
    ReconciliationMapping,
    ReconciliationPolicy,
)

__all__ = [
    "RunStatus",
    "ChunkError",
    "ChunkResult",
    "BatchRunStats",
    "PageResult",
    "MigrationResult",
    "Cardinality",
    "ReconciliationErrorKind",
    "ReconciliationPolicy",
    "ReconciliationMapping",
    "ReconciliationFailure",
]
