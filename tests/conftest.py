"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool
from typing import Any, Dict, List
from core.database import Store, create_session_maker
from migration.extractors.api_client import TransportResponse
from migration.extractors.paginated_reader import PaginatedSourceReader
from migration.loaders.batch_loader import ChunkedLoader
from migration.reconciliation.engine import ReconciliationEngine
from migration.reconciliation.oracle import OracleRequest, ReconciliationOracle
from migration.runner import MigrationOrchestrator
from models.base import Base

# In-memory database shared by every connection of one engine
TEST_DATABASE_URL = "sqlite+aiosqlite://"

TEST_TABLES = [
    """
    CREATE TABLE items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        old_id INTEGER UNIQUE,
        name TEXT NOT NULL,
        tenant_id INTEGER
    )
    """,
    """
    CREATE TABLE orders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        old_id INTEGER,
        tenant_id INTEGER,
        reference TEXT NOT NULL,
        customer_id INTEGER
    )
    """,
    """
    CREATE TABLE order_lines (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id INTEGER NOT NULL,
        old_id INTEGER,
        description TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE customers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        old_id INTEGER,
        tenant_id INTEGER,
        name TEXT
    )
    """,
    """
    CREATE TABLE pacientes (
        id_paciente INTEGER PRIMARY KEY AUTOINCREMENT,
        old_id INTEGER,
        id_clinica INTEGER,
        id_super_clinica INTEGER
    )
    """,
    """
    CREATE TABLE medicos (
        id_medico INTEGER PRIMARY KEY AUTOINCREMENT,
        nombre TEXT,
        id_clinica INTEGER,
        id_super_clinica INTEGER
    )
    """,
    """
    CREATE TABLE tipo_iva (
        id_tipo_iva INTEGER PRIMARY KEY AUTOINCREMENT,
        nombre TEXT,
        porcentaje REAL
    )
    """,
    """
    CREATE TABLE presupuestos (
        id_presupuesto INTEGER PRIMARY KEY AUTOINCREMENT,
        id_paciente INTEGER NOT NULL,
        id_super_clinica INTEGER,
        id_clinica INTEGER,
        fecha TEXT,
        fecha_vencimiento TEXT,
        monto_total REAL,
        monto_pagado REAL,
        saldo_pendiente REAL,
        id_estado INTEGER,
        id_medico INTEGER,
        descripcion TEXT,
        old_id INTEGER,
        id_estado_registro INTEGER,
        usuario_creacion TEXT,
        id_usuario_creacion INTEGER,
        fecha_creacion TEXT,
        id_tipo_pago INTEGER
    )
    """,
    """
    CREATE TABLE detalle_presupuesto (
        id_detalle INTEGER PRIMARY KEY AUTOINCREMENT,
        id_presupuesto INTEGER NOT NULL,
        id_tratamiento INTEGER,
        item INTEGER,
        descripcion TEXT,
        cantidad REAL,
        precio REAL,
        descuento REAL,
        id_tipo_iva INTEGER,
        total_item REAL,
        id_producto INTEGER,
        old_id INTEGER
    )
    """,
    """
    CREATE TABLE recibos (
        id_recibo INTEGER PRIMARY KEY AUTOINCREMENT,
        id_cita INTEGER,
        id_super_clinica INTEGER,
        id_clinica INTEGER,
        id_paciente INTEGER,
        id_medico INTEGER,
        numero_recibo TEXT,
        forma_pago TEXT,
        fecha_recibo TEXT,
        monto_total REAL,
        id_factura INTEGER,
        old_id INTEGER,
        id_presupuesto INTEGER NOT NULL,
        fecha_creacion TEXT,
        detalles_migracion TEXT,
        descontar_del_presupuesto INTEGER
    )
    """,
]


class StubOracle(ReconciliationOracle):
    """
    Deterministic oracle returning canned answers.

    ``answers`` maps entity type to the dict returned for it; an
    exception instance is raised instead of returned.
    """

    def __init__(self, answers: Dict[str, Any]):
        self.answers = answers
        self.requests: List[OracleRequest] = []

    @property
    def call_count(self) -> int:
        return len(self.requests)

    async def reconcile(self, request: OracleRequest) -> Dict[str, Any]:
        self.requests.append(request)
        answer = self.answers[request.entity_type]
        if isinstance(answer, Exception):
            raise answer
        return answer


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create test database engine with the audit and entity tables"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        for ddl in TEST_TABLES:
            await conn.execute(text(ddl))

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def store(test_engine) -> Store:
    return Store(test_engine)


@pytest.fixture
def session_maker(test_engine):
    return create_session_maker(test_engine)


@pytest.fixture
def make_oracle():
    """Factory for deterministic oracles: make_oracle({"doctor": {...}})"""
    return StubOracle


class FakeSourceClient:
    """
    Source API double.

    ``collections`` are served as offset pages, ``documents`` as-is;
    endpoints in ``failing`` answer with HTTP 503.
    """

    def __init__(self, collections=None, documents=None, failing=()):
        self.collections = collections or {}
        self.documents = documents or {}
        self.failing = set(failing)
        self.calls = []

    async def get(self, endpoint, params=None):
        params = params or {}
        self.calls.append((endpoint, dict(params)))

        if endpoint in self.failing:
            return TransportResponse(success=False, status_code=503, error="unavailable")

        if endpoint in self.collections:
            items = self.collections[endpoint]
            offset, limit = params.get("offset", 0), params.get("limit", 100)
            return TransportResponse(
                success=True,
                data={"count": len(items), "results": [dict(i) for i in items[offset:offset + limit]]},
                status_code=200
            )

        if endpoint in self.documents:
            return TransportResponse(success=True, data=self.documents[endpoint], status_code=200)

        return TransportResponse(success=False, status_code=404, error="not found")


@pytest.fixture
def make_source():
    """Factory for in-memory sources: make_source(collections={...}, documents={...})"""
    return FakeSourceClient


@pytest.fixture
def make_orchestrator(store):
    """Build an orchestrator over ``store`` with real reader and loader"""
    def factory(client, oracle=None, recorder=None, page_size=100):
        return MigrationOrchestrator(
            reader=PaginatedSourceReader(
                client,
                page_size=page_size,
                offset_param="offset",
                limit_param="limit",
                count_field="count",
                results_field="results",
                detail_concurrency=4
            ),
            loader=ChunkedLoader(store, chunk_size=100),
            engine=ReconciliationEngine(oracle or StubOracle({})),
            store=store,
            recorder=recorder
        )
    return factory
