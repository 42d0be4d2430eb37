from migration.reconciliation.cache import ReconciliationCache
from migration.reconciliation.engine import ReconciliationEngine, require_mapping
from migration.reconciliation.oracle import (
    OpenAIReconciliationOracle,
    OracleRequest,
    ReconciliationOracle,
)

__all__ = [
    "ReconciliationCache",
    "ReconciliationEngine",
    "require_mapping",
    "ReconciliationOracle",
    "OpenAIReconciliationOracle",
    "OracleRequest",
]
