"""
Core utilities and configuration for the migration engine.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Async engine, session factory and the Store client
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration

Usage:
    from core.config import settings
    from core.database import Store, create_engine_from_settings
    from core.exceptions import ReconciliationError, SourceUnavailableError
    from core.logging import setup_logging

Example:
    setup_logging()

    store = Store(create_engine_from_settings())
    async with store.transaction() as conn:
        await conn.execute(statement)
"""

from core.config import settings
from core.database import Store, create_engine_from_settings, create_session_maker
from core.logging import setup_logging
from core.exceptions import (
    APIExtractionError,
    AuthenticationError,
    ChunkTimeoutError,
    DatabaseError,
    ExtractionError,
    HeterogeneousChunkError,
    IncompleteReconciliationError,
    LoadError,
    MalformedOracleResponseError,
    MigrationException,
    NetworkError,
    NonRetryableError,
    OracleError,
    OracleUnavailableError,
    RateLimitError,
    ReconciliationError,
    ResourceNotFoundError,
    RetryableError,
    SchemaValidationError,
    SourceUnavailableError,
    TransformationError,
    ValidationError,
)

__all__ = [
    "settings",
    "Store",
    "create_engine_from_settings",
    "create_session_maker",
    "setup_logging",
    # Exceptions
    "MigrationException",
    "ExtractionError",
    "APIExtractionError",
    "SourceUnavailableError",
    "NetworkError",
    "RateLimitError",
    "AuthenticationError",
    "ResourceNotFoundError",
    "TransformationError",
    "ValidationError",
    "HeterogeneousChunkError",
    "SchemaValidationError",
    "LoadError",
    "DatabaseError",
    "ChunkTimeoutError",
    "ReconciliationError",
    "IncompleteReconciliationError",
    "OracleError",
    "OracleUnavailableError",
    "MalformedOracleResponseError",
    "RetryableError",
    "NonRetryableError",
]
