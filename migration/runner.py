"""
Migration Runner - Orchestrates reconcile, stream, transform, load and link.

For every entity migration the runner:
1. Reconciles each reference dimension, failing fast on unusable mappings
2. Streams the entity's source pages one at a time
3. Optionally enriches each item with its details (bounded fan-out)
4. Transforms items into primary/secondary fan-out groups
5. Loads primaries, re-queries their generated ids by natural key
6. Links and loads the secondaries that reference them

Per-record and per-chunk failures are recorded in the run result; only
unusable reconciliations, first-page failures and malformed loader input
abort the run.
"""

from collections import defaultdict
from typing import Any, Dict, List, Optional
import logging

from core.database import Store
from core.exceptions import (
    MigrationException,
    SourceUnavailableError,
    TransformationError,
)
from migration.base import (
    Dimension,
    EntityMigration,
    NaturalKeyDimension,
    OracleDimension,
    TransformContext,
)
from migration.extractors.paginated_reader import PaginatedSourceReader
from migration.linking import FanOutGroup, primary_rows, resolve_links
from migration.loaders.batch_loader import ChunkedLoader
from migration.reconciliation.engine import ReconciliationEngine, require_mapping
from migration.recorder import RunRecorder
from schemas.migration import BatchRunStats, ChunkResult, MigrationResult, PageResult, RunStatus

logger = logging.getLogger(__name__)


class MigrationOrchestrator:
    """
    Dependency-linking orchestrator.

    Responsibilities:
    - Resolve reference dimensions before any record is written
    - Keep at most one source page in flight
    - Insert primaries before the secondaries that reference them
    - Never insert a secondary whose primary id could not be resolved
    - Report a run as complete only when no chunk failed
    """

    def __init__(
        self,
        reader: PaginatedSourceReader,
        loader: ChunkedLoader,
        engine: ReconciliationEngine,
        store: Store,
        recorder: Optional[RunRecorder] = None
    ):
        self.reader = reader
        self.loader = loader
        self.engine = engine
        self.store = store
        self.recorder = recorder

    # --------------------------------------------------
    # Reference dimensions
    # --------------------------------------------------

    async def _source_items(self, dimension: OracleDimension) -> List[Dict[str, Any]]:
        if dimension.paginated:
            fetched = await self.reader.fetch_all(
                dimension.source_endpoint,
                params=dimension.source_params or None
            )
            items = fetched.records
        else:
            response = await self.reader.client.get(
                dimension.source_endpoint,
                dimension.source_params or None
            )
            if not response.success:
                raise SourceUnavailableError(
                    f"Failed to fetch {dimension.name} items from {dimension.source_endpoint}",
                    context={
                        "dimension": dimension.name,
                        "endpoint": dimension.source_endpoint,
                        "status_code": response.status_code,
                        "error": response.error
                    }
                )

            items = response.data
            if dimension.results_field is not None:
                items = items.get(dimension.results_field) if isinstance(items, dict) else None

            if not isinstance(items, list):
                raise SourceUnavailableError(
                    f"{dimension.name} items not found in response from {dimension.source_endpoint}",
                    context={
                        "dimension": dimension.name,
                        "endpoint": dimension.source_endpoint,
                        "results_field": dimension.results_field
                    }
                )

        return [dimension.strip(item) for item in items]

    async def resolve_dimension(
        self,
        dimension: Dimension,
        scope: Dict[str, Any],
        resolved: Dict[str, Dict[str, Any]]
    ) -> Dict[str, Any]:
        """
        Build the ``source id -> target id`` mapping for one dimension.

        Raises:
            ReconciliationError: The engine returned a failure
            IncompleteReconciliationError: Items are missing under a
                require-complete policy
            SourceUnavailableError: The source items could not be fetched
        """
        if isinstance(dimension, NaturalKeyDimension):
            mapping = await self.store.fetch_key_map(
                dimension.table,
                dimension.id_column,
                dimension.key_column,
                scope=scope if dimension.scoped else None
            )
            logger.info(f"✓ Loaded {len(mapping)} {dimension.name} key(s) from {dimension.table}")
            return mapping

        source_items = await self._source_items(dimension)
        statement, params = dimension.target_statement(scope)
        target_items = await self.store.fetch_all(statement, params)

        logger.info(
            f"→ Reconciling {dimension.name}: {len(source_items)} source item(s) "
            f"against {len(target_items)} target item(s)"
        )

        policy = dimension.policy
        if dimension.context_from:
            context = dict(policy.context or {})
            for name in dimension.context_from:
                context[name] = dict(resolved[name])
            policy = policy.model_copy(update={"context": context})

        result = await self.engine.reconcile(dimension.name, source_items, target_items, policy)
        mapping = require_mapping(result, policy)
        return mapping.mapper

    async def resolve_dimensions(self, migration: EntityMigration) -> Dict[str, Dict[str, Any]]:
        """Resolve every dimension in declaration order"""
        resolved: Dict[str, Dict[str, Any]] = {}
        for dimension in migration.dimensions():
            resolved[dimension.name] = await self.resolve_dimension(
                dimension,
                migration.scope,
                resolved
            )
        return resolved

    # --------------------------------------------------
    # Pages
    # --------------------------------------------------

    async def _enrich(
        self,
        migration: EntityMigration,
        records: List[Dict[str, Any]],
        ctx: TransformContext
    ) -> List[Dict[str, Any]]:
        details = await self.reader.fetch_details(records, migration.detail_endpoint)

        items = []
        for fetched in details:
            if not fetched.success:
                ctx.warn("failed_details")
            items.append(migration.merge_detail(fetched.item, fetched.data))
        return items

    def _transform(
        self,
        migration: EntityMigration,
        items: List[Dict[str, Any]],
        ctx: TransformContext,
        page: PageResult
    ) -> List[FanOutGroup]:
        groups = []
        for item in items:
            try:
                group = migration.transform(item, ctx)
            except (TransformationError, AttributeError, KeyError, TypeError, ValueError) as e:
                page.transform_failures += 1
                error_detail = {
                    "phase": "transform",
                    "entity": migration.name,
                    "source_id": item.get("id") if isinstance(item, dict) else None,
                    "error_type": type(e).__name__,
                    "error_message": str(e)
                }
                logger.error(
                    f"Transform failed for {migration.name} item {error_detail['source_id']}: {e}",
                    extra={"error_context": error_detail}
                )
                continue

            if group is not None:
                groups.append(group)
        return groups

    async def _drop_existing(
        self,
        migration: EntityMigration,
        groups: List[FanOutGroup],
        page: PageResult
    ) -> List[FanOutGroup]:
        existing = await self.store.fetch_key_map(
            migration.primary_table,
            migration.primary_id_column,
            migration.natural_key_column,
            [group.source_id for group in groups],
            migration.scope
        )
        if not existing:
            return groups

        kept = [group for group in groups if str(group.source_id) not in existing]
        page.skipped_existing += len(groups) - len(kept)
        logger.info(f"  Skipping {len(groups) - len(kept)} already migrated {migration.name} record(s)")
        return kept

    async def _load_secondaries(
        self,
        migration: EntityMigration,
        loaded: List[FanOutGroup],
        failed: List[FanOutGroup],
        ctx: TransformContext
    ) -> BatchRunStats:
        stats = BatchRunStats()

        # Only primaries from committed chunks are looked up
        id_map = {}
        if loaded:
            id_map = await self.store.fetch_key_map(
                migration.primary_table,
                migration.primary_id_column,
                migration.natural_key_column,
                [group.source_id for group in loaded],
                migration.scope
            )
        linked, unresolved = resolve_links(loaded, id_map)
        _, not_inserted = resolve_links(failed, {})
        if unresolved + not_inserted:
            ctx.warnings["unresolved_primary"] += unresolved + not_inserted

        by_table: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for secondary in linked:
            table_name = secondary.table or migration.secondary_table
            if not table_name:
                raise TransformationError(
                    f"{migration.name} produced a secondary record with no target table",
                    context={"entity": migration.name, "parent_source_id": secondary.parent_source_id}
                )
            by_table[table_name].append(secondary.to_row())

        for table_name, rows in by_table.items():
            stats.merge(await self.loader.load_all(table_name, rows, migration.chunk_size))

        return stats

    async def process_page(
        self,
        migration: EntityMigration,
        records: List[Dict[str, Any]],
        page_index: int,
        mappings: Dict[str, Dict[str, Any]]
    ) -> PageResult:
        """Transform and load one source page"""
        page = PageResult(page=page_index, source_records=len(records))
        ctx = TransformContext(mappings, migration.tenant, migration.defaults)

        items = await self._enrich(migration, records, ctx)
        groups = self._transform(migration, items, ctx, page)

        if groups and migration.skip_existing:
            groups = await self._drop_existing(migration, groups, page)

        if groups:
            rows = primary_rows(groups, migration.natural_key_column, migration.scope)
            chunk_size = migration.chunk_size or self.loader.chunk_size
            failed_chunks = set()

            async def on_chunk_done(result: ChunkResult, chunk_number: int, total_chunks: int):
                if not result.succeeded:
                    failed_chunks.add(chunk_number)

            page.primary = await self.loader.load_all(
                migration.primary_table,
                rows,
                chunk_size,
                on_chunk_done=on_chunk_done
            )

            if any(group.secondaries for group in groups):
                loaded, failed = [], []
                for index, group in enumerate(groups):
                    if index // chunk_size + 1 in failed_chunks:
                        failed.append(group)
                    else:
                        loaded.append(group)
                page.secondary = await self._load_secondaries(migration, loaded, failed, ctx)

        page.warnings = dict(ctx.warnings)
        return page

    # --------------------------------------------------
    # Run
    # --------------------------------------------------

    async def run(self, migration: EntityMigration) -> MigrationResult:
        """
        Run one entity migration end to end.

        Returns:
            MigrationResult with page, chunk and warning counts. Its status
            is COMPLETE only if no chunk failed.

        Raises:
            ReconciliationError: A dimension could not be reconciled
            SourceUnavailableError: The first page could not be fetched
            HeterogeneousChunkError: A flow produced mixed column sets
        """
        migration.validate()
        result = MigrationResult(entity=migration.name, tenant=migration.tenant)

        if self.recorder is not None:
            await self.recorder.start(result)

        logger.info(f"Starting migration of {migration.name} (tenant: {migration.tenant})")

        try:
            # --------------------------------------------------
            # PHASE 1: REFERENCE DIMENSIONS
            # --------------------------------------------------
            mappings = await self.resolve_dimensions(migration)

            # --------------------------------------------------
            # PHASE 2: STREAM, TRANSFORM, LOAD, LINK
            # --------------------------------------------------
            async def on_page(records: List[Dict[str, Any]], page_index: int, total_pages: int):
                page = await self.process_page(migration, records, page_index, mappings)
                result.add_page(page)
                logger.info(
                    f"✓ Page {page_index + 1}/{total_pages} of {migration.name}: "
                    f"{page.primary.inserted_records} primary, "
                    f"{page.secondary.inserted_records} secondary record(s) inserted"
                )

            summary = await self.reader.stream_pages(
                migration.endpoint,
                on_page,
                migration.page_size,
                migration.params() or None
            )
            result.total_pages = summary.total_pages
            result.skipped_pages = list(summary.skipped_pages)

        except MigrationException as e:
            logger.error(
                f"Migration of {migration.name} failed: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            result.status = RunStatus.FAILED
            if self.recorder is not None:
                await self.recorder.fail(result, e)
            raise

        except Exception as e:
            logger.exception(f"Unexpected error in migration of {migration.name}")
            result.status = RunStatus.FAILED
            if self.recorder is not None:
                await self.recorder.fail(result, e)

            raise MigrationException(
                f"Unexpected error in migration of {migration.name}",
                context={
                    "entity": migration.name,
                    "tenant": migration.tenant,
                    "processed_pages": result.processed_pages
                },
                original_exception=e
            )

        # --------------------------------------------------
        # PHASE 3: FINALIZE
        # --------------------------------------------------
        result.finish(strict_references=migration.strict_references)

        if self.recorder is not None:
            await self.recorder.complete(result)

        logger.info(
            f"Migration of {migration.name} {result.status.value}: "
            f"{result.primary.inserted_records}/{result.primary.total_records} primary, "
            f"{result.secondary.inserted_records}/{result.secondary.total_records} secondary, "
            f"{result.failed_batches} failed chunk(s), warnings={result.warnings}"
        )
        return result
