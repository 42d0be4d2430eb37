"""
Persistence of migration run audit rows
"""

from datetime import datetime
from typing import Any, Dict, Optional
import json
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import MigrationException
from models.base import MigrationStatus
from models.migration_run import MigrationRun
from schemas.migration import MigrationResult

logger = logging.getLogger(__name__)


class RunRecorder:
    """
    Write one ``MigrationRun`` row per run.

    The row is created when the run starts, so aborted runs still leave
    a trace, and updated once with the final counts or the error.
    """

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def start(self, result: MigrationResult) -> str:
        """Insert a RUNNING row and stamp ``result.run_id``"""
        run_id = uuid.uuid4()

        async with self.session_maker() as session:
            session.add(
                MigrationRun(
                    run_id=run_id,
                    entity=result.entity,
                    tenant=result.tenant,
                    status=MigrationStatus.RUNNING,
                    started_at=result.started_at
                )
            )
            await session.commit()

        result.run_id = str(run_id)
        logger.info(f"Migration run {run_id} started for {result.entity}")
        return result.run_id

    async def complete(self, result: MigrationResult):
        await self._update(result, MigrationStatus(result.status.value))

    async def fail(self, result: MigrationResult, error: BaseException):
        if isinstance(error, MigrationException):
            details = error.to_dict()
            message = error.message
        else:
            details = {"error_type": type(error).__name__, "message": str(error)}
            message = str(error)

        await self._update(
            result,
            MigrationStatus.FAILED,
            error_message=message,
            error_details=details
        )

    async def _update(
        self,
        result: MigrationResult,
        status: MigrationStatus,
        error_message: Optional[str] = None,
        error_details: Optional[Dict[str, Any]] = None
    ):
        if result.run_id is None:
            return

        completed_at = result.completed_at or datetime.utcnow()

        async with self.session_maker() as session:
            row = (
                await session.execute(
                    select(MigrationRun).where(MigrationRun.run_id == uuid.UUID(result.run_id))
                )
            ).scalar_one_or_none()

            if row is None:
                logger.warning(f"⚠ Migration run {result.run_id} not found, audit row not updated")
                return

            row.status = status
            row.completed_at = completed_at
            row.duration_seconds = (completed_at - row.started_at).total_seconds()
            row.total_pages = result.total_pages
            row.processed_pages = result.processed_pages
            row.source_records = result.source_records
            row.transform_failures = result.transform_failures
            row.skipped_existing = result.skipped_existing
            row.primary_inserted = result.primary.inserted_records
            row.secondary_inserted = result.secondary.inserted_records
            row.failed_batches = result.failed_batches
            row.warnings = dict(result.warnings)

            if error_details is None and result.failed_batches:
                error_details = {
                    "chunk_errors": [
                        e.model_dump()
                        for e in (*result.primary.errors, *result.secondary.errors)
                    ]
                }
                error_message = f"{result.failed_batches} chunk(s) failed"

            row.error_message = error_message
            # Exception context may hold values the JSON column cannot store
            row.error_details = json.loads(json.dumps(error_details, default=str)) if error_details else None

            await session.commit()

        logger.info(f"Migration run {result.run_id} recorded as {status.value}")
