from sqlalchemy import Column, BigInteger, String, Enum, DateTime, Float, Integer, Text, Index, JSON, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime
import uuid
from models.base import Base, MigrationStatus

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class MigrationRun(Base):
    """
    Tracks metadata for each entity migration run.

    Purpose:
    - Audit trail of all migration runs per tenant
    - Chunk failure and unresolved-reference tracking
    - Error details for aborted runs
    """
    __tablename__ = "migration_runs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    run_id = Column(Uuid(as_uuid=True), default=uuid.uuid4, unique=True, nullable=False, index=True)

    # Entity identification
    entity = Column(String(100), nullable=False, index=True)
    tenant = Column(JSONType, nullable=True)

    # Run metadata
    status = Column(Enum(MigrationStatus), default=MigrationStatus.RUNNING, nullable=False, index=True)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Statistics
    total_pages = Column(Integer, default=0)
    processed_pages = Column(Integer, default=0)
    source_records = Column(Integer, default=0)
    transform_failures = Column(Integer, default=0)
    skipped_existing = Column(Integer, default=0)
    primary_inserted = Column(Integer, default=0)
    secondary_inserted = Column(Integer, default=0)
    failed_batches = Column(Integer, default=0)

    # Unresolved references by dimension
    warnings = Column(JSONType, nullable=True)

    # Error tracking
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)

    __table_args__ = (
        Index("idx_migration_run_entity_started", "entity", "started_at"),
        Index("idx_migration_run_status", "status", "started_at"),
    )
