"""
Entity migration pipeline: reconcile, stream, transform, load and link.

Subpackages:
    extractors: Source API transport client and paginated reader
    transformers: Record sanitizer
    loaders: Chunked transactional loader
    reconciliation: Oracle-backed identifier reconciliation with caching
    flows: Concrete entity migrations

Modules:
    base: EntityMigration contract, reference dimensions, TransformContext
    linking: Primary/secondary link state machine
    runner: MigrationOrchestrator
    recorder: Run audit persistence

Usage:
    from migration import MigrationOrchestrator
    from migration.flows import BudgetMigration

    result = await orchestrator.run(
        BudgetMigration(tenant={"id_clinica": 1, "id_super_clinica": 1})
    )
"""

from migration.base import (
    EntityMigration,
    NaturalKeyDimension,
    OracleDimension,
    TransformContext,
)
from migration.linking import FanOutGroup, PrimaryRecord, SecondaryRecord
from migration.recorder import RunRecorder
from migration.runner import MigrationOrchestrator

__all__ = [
    "EntityMigration",
    "NaturalKeyDimension",
    "OracleDimension",
    "TransformContext",
    "FanOutGroup",
    "PrimaryRecord",
    "SecondaryRecord",
    "RunRecorder",
    "MigrationOrchestrator",
]
