"""
SQLAlchemy ORM models for database tables.

Only the migration audit trail is modelled here. Entity tables in the
target store are written through lightweight table constructs and are
not owned by this package.

Models:
    base: Base declarative class and the MigrationStatus enum
    migration_run: One row per migration run with counts and errors

Usage:
    from models import MigrationRun, MigrationStatus
"""

from models.base import Base, MigrationStatus
from models.migration_run import MigrationRun

__all__ = [
    "Base",
    "MigrationStatus",
    "MigrationRun",
]
