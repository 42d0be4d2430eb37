"""
Script to run one registered entity migration for one tenant

Usage:
    python scripts/run_migration.py budgets \
        --tenant id_clinica=12 --tenant id_super_clinica=3 \
        --param centro=7 --default id_estado=2 --skip-existing
"""

import argparse
import asyncio
import json
import logging
import os
import sys

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import Store, create_engine_from_settings, create_session_maker
from core.exceptions import MigrationException
from core.logging import setup_logging
from migration.extractors.api_client import SourceAPIClient
from migration.extractors.paginated_reader import PaginatedSourceReader
from migration.flows import FLOWS
from migration.loaders.batch_loader import ChunkedLoader
from migration.reconciliation.cache import ReconciliationCache
from migration.reconciliation.engine import ReconciliationEngine
from migration.reconciliation.oracle import OpenAIReconciliationOracle
from migration.recorder import RunRecorder
from migration.runner import MigrationOrchestrator

logger = logging.getLogger(__name__)


def parse_value(raw: str):
    """Numbers become ints, everything else stays a string"""
    return int(raw) if raw.lstrip("-").isdigit() else raw


def key_value(pair: str):
    key, sep, value = pair.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"Expected key=value, got {pair!r}")
    return key, parse_value(value)


def parse_pairs(pairs):
    return dict(pairs or [])


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run an entity migration")
    parser.add_argument("flow", choices=sorted(FLOWS), help="Registered migration flow")
    parser.add_argument("--tenant", action="append", type=key_value, metavar="KEY=VALUE",
                        help="Tenant scope column, repeatable")
    parser.add_argument("--param", action="append", type=key_value, metavar="KEY=VALUE",
                        help="Source query parameter, repeatable")
    parser.add_argument("--default", action="append", type=key_value, metavar="KEY=VALUE",
                        help="Default value used when the source omits one, repeatable")
    parser.add_argument("--skip-existing", action="store_true",
                        help="Skip records whose natural key is already in the store")
    parser.add_argument("--token", help="Source API bearer token (defaults to SOURCE_API_TOKEN)")
    return parser


async def run_migration(args) -> int:
    """Run the selected flow and print its result as JSON"""
    migration = FLOWS[args.flow](
        tenant=parse_pairs(args.tenant),
        defaults=parse_pairs(args.default),
        source_params=parse_pairs(args.param),
        skip_existing=args.skip_existing
    )

    engine = create_engine_from_settings()
    store = Store(engine)

    try:
        async with SourceAPIClient(token=args.token) as client:
            orchestrator = MigrationOrchestrator(
                reader=PaginatedSourceReader(client),
                loader=ChunkedLoader(store),
                engine=ReconciliationEngine(OpenAIReconciliationOracle(), ReconciliationCache()),
                store=store,
                recorder=RunRecorder(create_session_maker(engine))
            )
            result = await orchestrator.run(migration)

        print(json.dumps(result.model_dump(mode="json"), indent=2))
        return 0

    except MigrationException as e:
        logger.error(f"Migration failed: {e}")
        print(json.dumps(e.to_dict(), indent=2, default=str))
        return 1

    finally:
        await store.dispose()


if __name__ == "__main__":
    setup_logging()
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    sys.exit(asyncio.run(run_migration(build_parser().parse_args())))
