"""
Database engine, session management and the scoped-transaction store client
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import column, select, table
from sqlalchemy.engine import Result
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def create_engine_from_settings(database_url: Optional[str] = None, **kwargs) -> AsyncEngine:
    """Create the async engine used by the store and the run recorder"""
    return create_async_engine(
        database_url or settings.DATABASE_URL,
        echo=settings.DATABASE_ECHO,
        pool_pre_ping=True,
        **kwargs
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    """Create a session factory bound to ``engine``"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


def table_clause(name: str, columns: Iterable[str]):
    """
    Build a lightweight table construct for ``name``.

    ``name`` may be schema-qualified (``"schema.table"``). Column types are
    left to the driver, so no reflection round-trip is needed.
    """
    schema = None
    if "." in name:
        schema, name = name.split(".", 1)
    return table(name, *(column(c) for c in columns), schema=schema)


class Store:
    """
    Store client with scoped connection acquisition.

    Every operation borrows one pooled connection for its own lifetime and
    gives it back on every exit path. ``transaction()`` commits on normal
    exit and rolls back on any exception, cancellation included.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        async with self.engine.begin() as conn:
            yield conn

    async def execute(self, statement, params: Optional[Any] = None) -> List[Mapping[str, Any]]:
        """Execute a statement in its own transaction and return row mappings"""
        async with self.transaction() as conn:
            result: Result = await conn.execute(statement, params)
            if result.returns_rows:
                return [dict(row) for row in result.mappings().all()]
            return []

    async def fetch_all(self, statement, params: Optional[Any] = None) -> List[Dict[str, Any]]:
        """Run a read-only query and return every row as a plain dict"""
        async with self.engine.connect() as conn:
            result = await conn.execute(statement, params)
            return [dict(row) for row in result.mappings().all()]

    async def fetch_key_map(
        self,
        table_name: str,
        id_column: str,
        key_column: str,
        keys: Optional[Iterable[Any]] = None,
        scope: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Look up generated identifiers by natural key.

        Args:
            table_name: Table holding the persisted records
            id_column: Store-assigned identifier column
            key_column: Natural (source) key column
            keys: Natural key values to look up; None maps every row in scope
            scope: Extra equality filters (tenant columns)

        Returns:
            Mapping of ``str(natural_key)`` to generated identifier. Keys not
            present in the store are absent from the mapping. When a key occurs
            more than once the highest identifier wins.
        """
        scope = scope or {}
        tbl = table_clause(table_name, [id_column, key_column, *scope.keys()])
        stmt = (
            select(tbl.c[id_column], tbl.c[key_column])
            .where(tbl.c[key_column].is_not(None))
            .order_by(tbl.c[id_column])
        )

        if keys is not None:
            keys = list(dict.fromkeys(keys))
            if not keys:
                return {}
            stmt = stmt.where(tbl.c[key_column].in_(keys))

        for scope_column, value in scope.items():
            stmt = stmt.where(tbl.c[scope_column] == value)

        rows = await self.fetch_all(stmt)
        return {str(row[key_column]): row[id_column] for row in rows}

    async def dispose(self):
        await self.engine.dispose()
