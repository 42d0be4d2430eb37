"""
Insert homogeneous records in fixed-size chunks, one transaction per chunk
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
import asyncio
import logging

from sqlalchemy import insert
from sqlalchemy.exc import SQLAlchemyError

from core.config import settings
from core.database import Store, table_clause
from core.exceptions import ChunkTimeoutError, HeterogeneousChunkError
from migration.transformers.sanitizer import sanitize_records
from schemas.migration import BatchRunStats, ChunkResult

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[ChunkResult, int, int], Awaitable[None]]


def store_error_code(exc: BaseException) -> Optional[str]:
    """
    Pull the driver's native error code out of a store exception.

    asyncpg exposes ``sqlstate``, psycopg ``pgcode``, sqlite
    ``sqlite_errorname`` and MySQL drivers put the numeric code in
    ``args[0]``. Falls back to the driver exception's class name.
    """
    if isinstance(exc, (ChunkTimeoutError, asyncio.TimeoutError)):
        return "TIMEOUT"

    orig = getattr(exc, "orig", None) or exc
    for attr in ("sqlstate", "pgcode", "sqlite_errorname"):
        code = getattr(orig, attr, None)
        if code:
            return str(code)

    args = getattr(orig, "args", ())
    if args and isinstance(args[0], int):
        return str(args[0])

    return type(orig).__name__


def check_homogeneous(
    table_name: str,
    records: Sequence[Dict[str, Any]],
    chunk_index: int = 0
) -> List[str]:
    """
    Verify every record carries the same column set as the first one.

    Returns:
        The shared column list, in the first record's order

    Raises:
        HeterogeneousChunkError: On the first record whose columns differ
    """
    columns = list(records[0].keys())
    expected = set(columns)

    for index, record in enumerate(records):
        if set(record.keys()) != expected:
            raise HeterogeneousChunkError(
                f"Records for {table_name} do not share one column set",
                context={
                    "table_name": table_name,
                    "chunk_index": chunk_index,
                    "record_index": index,
                    "expected_columns": sorted(expected),
                    "actual_columns": sorted(record.keys())
                }
            )

    return columns


class ChunkedLoader:
    """
    Load records into a named table with per-chunk transactions.

    Ensures:
    - Each chunk is all-or-nothing (begin -> insert -> commit, rollback on failure)
    - A failed chunk never stops later chunks
    - Chunks run sequentially in ascending offset order
    """

    def __init__(
        self,
        store: Store,
        chunk_size: Optional[int] = None,
        chunk_timeout: Optional[float] = settings.CHUNK_TIMEOUT_SECONDS
    ):
        self.store = store
        self.chunk_size = chunk_size or settings.MIGRATION_CHUNK_SIZE
        # None disables the per-chunk time budget
        self.chunk_timeout = chunk_timeout

    async def _insert(self, table_name: str, columns: List[str], rows: List[Dict[str, Any]]):
        tbl = table_clause(table_name, columns)
        stmt = insert(tbl).values(rows)

        async with self.store.transaction() as conn:
            await conn.execute(stmt)

    async def load_chunk(
        self,
        table_name: str,
        records: List[Dict[str, Any]],
        chunk_number: int = 1
    ) -> ChunkResult:
        """
        Insert one chunk as a single multi-row INSERT inside one transaction.

        Args:
            table_name: Target table (optionally schema-qualified)
            records: Records sharing one column set
            chunk_number: 1-based chunk number for logging and stats

        Returns:
            ChunkResult with the inserted count or the captured store error

        Raises:
            HeterogeneousChunkError: If records do not share a column set
        """
        if not records:
            return ChunkResult(chunk=chunk_number, succeeded=True, inserted=0)

        rows = sanitize_records(records)
        columns = check_homogeneous(table_name, rows, chunk_number - 1)

        try:
            if self.chunk_timeout:
                try:
                    await asyncio.wait_for(
                        self._insert(table_name, columns, rows),
                        timeout=self.chunk_timeout
                    )
                except asyncio.TimeoutError as e:
                    raise ChunkTimeoutError(
                        f"Chunk {chunk_number} exceeded {self.chunk_timeout}s",
                        context={"table_name": table_name, "chunk": chunk_number},
                        original_exception=e
                    )
            else:
                await self._insert(table_name, columns, rows)

        except (SQLAlchemyError, ChunkTimeoutError, OSError) as e:
            code = store_error_code(e)
            if isinstance(e, ChunkTimeoutError):
                message = e.message
            else:
                message = str(getattr(e, "orig", None) or e)
            logger.warning(
                f"Chunk {chunk_number} failed for {table_name}: {message}",
                extra={"error_context": {"table_name": table_name, "chunk": chunk_number, "code": code}}
            )
            return ChunkResult(
                chunk=chunk_number,
                succeeded=False,
                inserted=0,
                error=message,
                code=code
            )

        logger.info(f"Chunk {chunk_number}: inserted {len(rows)} records into {table_name}")
        return ChunkResult(chunk=chunk_number, succeeded=True, inserted=len(rows))

    async def load_all(
        self,
        table_name: str,
        records: List[Dict[str, Any]],
        chunk_size: Optional[int] = None,
        on_chunk_done: Optional[ChunkCallback] = None
    ) -> BatchRunStats:
        """
        Load ``records`` in consecutive chunks and aggregate statistics.

        Store failures are isolated to their chunk and recorded in the
        returned stats. Column-set validation runs over every chunk before
        the first insert, so a caller error inserts nothing.

        Args:
            table_name: Target table
            records: All records to insert
            chunk_size: Records per chunk (defaults to the loader's size)
            on_chunk_done: Awaited after every chunk with
                (result, chunk_number, total_chunks), success or not

        Returns:
            BatchRunStats for the whole load
        """
        size = chunk_size or self.chunk_size
        if size < 1:
            raise ValueError(f"chunk_size must be positive, got {size}")

        total_records = len(records)
        total_chunks = -(-total_records // size)
        stats = BatchRunStats(total_records=total_records, total_batches=total_chunks)

        if not records:
            return stats

        for index in range(total_chunks):
            chunk = records[index * size:(index + 1) * size]
            check_homogeneous(table_name, chunk, index)

        logger.info(
            f"Loading {total_records} records into {table_name} "
            f"in {total_chunks} chunks of {size}"
        )

        for index in range(total_chunks):
            offset = index * size
            chunk = records[offset:offset + size]

            result = await self.load_chunk(table_name, chunk, index + 1)
            stats.record(result, offset)

            if on_chunk_done is not None:
                await on_chunk_done(result, index + 1, total_chunks)

        logger.info(
            f"Load into {table_name} finished: "
            f"{stats.inserted_records}/{total_records} records inserted"
        )
        if stats.failed_batches:
            logger.warning(f"{stats.failed_batches} of {total_chunks} chunks failed for {table_name}")

        return stats
