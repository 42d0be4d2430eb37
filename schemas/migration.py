"""
Pydantic schemas for load statistics and migration run results
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from collections import Counter
from pydantic import BaseModel, Field
import enum


class RunStatus(str, enum.Enum):
    """Overall outcome of a migration run"""
    RUNNING = "running"
    COMPLETE = "complete"
    COMPLETE_WITH_ERRORS = "complete_with_errors"
    FAILED = "failed"


class ChunkError(BaseModel):
    """Failure descriptor for one chunk of a load"""
    chunk: int = Field(..., description="1-based chunk number")
    offset: int = Field(..., description="Offset of the chunk's first record in the load")
    error: str
    code: Optional[str] = None


class ChunkResult(BaseModel):
    """Outcome of a single chunk transaction"""
    chunk: int
    succeeded: bool
    inserted: int = 0
    error: Optional[str] = None
    code: Optional[str] = None


class BatchRunStats(BaseModel):
    """
    Statistics accumulated across every chunk of one load.

    A report, not transactional state: failed chunks are recorded here
    while their rows are rolled back in the store.
    """
    total_records: int = 0
    total_batches: int = 0
    successful_batches: int = 0
    failed_batches: int = 0
    inserted_records: int = 0
    errors: List[ChunkError] = Field(default_factory=list)

    def record(self, result: ChunkResult, offset: int):
        if result.succeeded:
            self.successful_batches += 1
            self.inserted_records += result.inserted
        else:
            self.failed_batches += 1
            self.errors.append(
                ChunkError(
                    chunk=result.chunk,
                    offset=offset,
                    error=result.error or "unknown error",
                    code=result.code
                )
            )

    def merge(self, other: "BatchRunStats") -> "BatchRunStats":
        """Fold ``other`` into this instance and return it"""
        self.total_records += other.total_records
        self.total_batches += other.total_batches
        self.successful_batches += other.successful_batches
        self.failed_batches += other.failed_batches
        self.inserted_records += other.inserted_records
        self.errors.extend(other.errors)
        return self


class PageResult(BaseModel):
    """Load outcome for one source page"""
    page: int
    source_records: int = 0
    transform_failures: int = 0
    skipped_existing: int = 0
    primary: BatchRunStats = Field(default_factory=BatchRunStats)
    secondary: BatchRunStats = Field(default_factory=BatchRunStats)
    warnings: Dict[str, int] = Field(default_factory=dict)


class MigrationResult(BaseModel):
    """Run-level result aggregated across all pages"""
    entity: str
    status: RunStatus = RunStatus.RUNNING
    run_id: Optional[str] = None
    tenant: Dict[str, Any] = Field(default_factory=dict)

    total_pages: int = 0
    processed_pages: int = 0
    skipped_pages: List[int] = Field(default_factory=list)
    source_records: int = 0
    transform_failures: int = 0
    skipped_existing: int = 0

    primary: BatchRunStats = Field(default_factory=BatchRunStats)
    secondary: BatchRunStats = Field(default_factory=BatchRunStats)
    warnings: Dict[str, int] = Field(default_factory=dict)

    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    @property
    def failed_batches(self) -> int:
        return self.primary.failed_batches + self.secondary.failed_batches

    @property
    def inserted_records(self) -> int:
        return self.primary.inserted_records + self.secondary.inserted_records

    def add_page(self, page: PageResult):
        self.processed_pages += 1
        self.source_records += page.source_records
        self.transform_failures += page.transform_failures
        self.skipped_existing += page.skipped_existing
        self.primary.merge(page.primary)
        self.secondary.merge(page.secondary)
        self.warnings = dict(Counter(self.warnings) + Counter(page.warnings))

    def finish(self, strict_references: bool = False) -> "MigrationResult":
        """Set the final status: complete only when no chunk failed"""
        self.completed_at = datetime.utcnow()
        has_errors = self.failed_batches > 0
        if strict_references and any(self.warnings.values()):
            has_errors = True
        self.status = RunStatus.COMPLETE_WITH_ERRORS if has_errors else RunStatus.COMPLETE
        return self

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()
