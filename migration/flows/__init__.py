from migration.flows.budgets import BudgetMigration

# Flows runnable by name from scripts/run_migration.py
FLOWS = {
    BudgetMigration.name: BudgetMigration,
}

__all__ = ["BudgetMigration", "FLOWS"]
