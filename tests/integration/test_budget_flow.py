"""
Integration tests for the budget migration flow
"""

import pytest
from sqlalchemy import text
from migration.flows import FLOWS
from migration.flows.budgets import (
    BudgetMigration,
    format_receipt_date,
    format_timestamp,
    ref_text,
    ref_value,
)
from schemas.migration import RunStatus

TENANT = {"id_clinica": 3, "id_super_clinica": 1}

USERS = [
    {"id": 901, "first_name": "Ana", "last_name": "Ruiz", "permissions": ["all"], "filtros_agenda": {}},
    {"id": 902, "first_name": "Luis", "last_name": "Gil", "permissions": [], "filtros_agenda": {}},
]

TAX_FORM = {"impuestos": [{"value": "iva21", "text": "IVA 21%"}, {"value": "exento", "text": "Exento"}]}

SALE = {
    "id": 44,
    "total": 100.0,
    "num_ticket": "T-17",
    "forma_pago": {"value": 2, "text": "tarjeta"},
    "fecha": "2024-03-02T09:30:00.000Z",
    "assigned_to": {"value": 902, "text": "Luis Gil"},
}


def budget(source_id, patient, lines=(), **extra):
    return {
        "id": source_id,
        "cliente": {"value": patient, "text": f"Patient {patient}"},
        "created_by": {"value": 901, "text": "Ana Ruiz"},
        "fecha": "2024-03-01T10:15:00.123Z",
        "total": 150.0,
        "observaciones": "",
        "venta": None,
        "lineas_presupuesto": list(lines),
        **extra
    }


def line(source_id, tax="iva21", **extra):
    return {
        "id": source_id,
        "descripcion": f"Treatment {source_id}",
        "cantidad": 1,
        "precio": 75.0,
        "total": 75.0,
        "impuesto": tax,
        "servicio": 12,
        **extra
    }


@pytest.fixture
def answers():
    return {
        "doctor": {"mapper": {"901": 7, "902": 7}, "missing": []},
        "tax": {"mapper": {"iva21": 1, "exento": 2}, "missing": []},
    }


async def seed(store):
    await store.execute(text(
        "INSERT INTO pacientes (id_paciente, old_id, id_clinica, id_super_clinica) "
        "VALUES (10, 500, 3, 1), (11, 501, 3, 1), (12, 500, 4, 1)"
    ))
    await store.execute(text(
        "INSERT INTO medicos (id_medico, nombre, id_clinica, id_super_clinica) VALUES (7, 'Dra. Ruiz', 3, 1)"
    ))
    await store.execute(text(
        "INSERT INTO tipo_iva (id_tipo_iva, nombre, porcentaje) VALUES (1, 'IVA 21', 21), (2, 'Exento', 0)"
    ))


def make_client(make_source, budgets):
    return make_source(
        collections={"/main/users/": USERS, "/ventas/presupuestos/": budgets},
        documents={"/ventas/ventas/form/": TAX_FORM},
    )


@pytest.mark.asyncio
async def test_budgets_and_lines_are_migrated(store, make_source, make_orchestrator, make_oracle, answers):
    await seed(store)
    client = make_client(make_source, [
        budget(1, 500, [line(100), line(101, tax="exento")]),
        budget(2, 501, [line(102)]),
    ])

    result = await make_orchestrator(client, make_oracle(answers)).run(
        BudgetMigration(tenant=TENANT, defaults={"id_tratamiento": 99})
    )

    assert result.status == RunStatus.COMPLETE
    assert result.primary.inserted_records == 2
    assert result.secondary.inserted_records == 3

    budgets = await store.fetch_all(text(
        "SELECT id_presupuesto, old_id, id_paciente, id_medico, id_clinica, fecha, saldo_pendiente "
        "FROM presupuestos ORDER BY old_id"
    ))
    assert [row["id_paciente"] for row in budgets] == [10, 11]
    assert {row["id_medico"] for row in budgets} == {7}
    assert {row["id_clinica"] for row in budgets} == {3}
    assert budgets[0]["fecha"] == "2024-03-01 10:15:00"
    assert budgets[0]["saldo_pendiente"] == 150.0

    lines = await store.fetch_all(text(
        "SELECT id_presupuesto, old_id, id_tipo_iva, id_tratamiento, item FROM detalle_presupuesto ORDER BY old_id"
    ))
    generated = {row["old_id"]: row["id_presupuesto"] for row in budgets}
    assert [row["id_presupuesto"] for row in lines] == [generated[1], generated[1], generated[2]]
    assert [row["id_tipo_iva"] for row in lines] == [1, 2, 1]
    assert [row["item"] for row in lines] == [1, 2, 1]
    assert {row["id_tratamiento"] for row in lines} == {99}


@pytest.mark.asyncio
async def test_oracle_receives_scoped_targets_and_stripped_users(store, make_source, make_orchestrator, make_oracle, answers):
    await seed(store)
    await store.execute(text(
        "INSERT INTO medicos (id_medico, nombre, id_clinica, id_super_clinica) VALUES (8, 'Other clinic', 4, 1)"
    ))
    oracle = make_oracle(answers)

    await make_orchestrator(make_client(make_source, []), oracle).run(BudgetMigration(tenant=TENANT))

    doctor, tax = oracle.requests
    assert doctor.entity_type == "doctor"
    assert [t["id_medico"] for t in doctor.target_items] == [7]
    assert all("permissions" not in u and "filtros_agenda" not in u for u in doctor.source_items)
    assert tax.entity_type == "tax"
    assert [s["value"] for s in tax.source_items] == ["iva21", "exento"]


@pytest.mark.asyncio
async def test_skipped_budgets_are_counted(store, make_source, make_orchestrator, make_oracle, answers):
    await seed(store)
    client = make_client(make_source, [
        budget(2, None),
        budget(3, 999, [line(101)]),
        budget(4, 501),
    ])

    result = await make_orchestrator(client, make_oracle(answers)).run(BudgetMigration(tenant=TENANT))

    assert result.primary.inserted_records == 1
    assert result.secondary.inserted_records == 0
    assert result.warnings == {"missing_patient": 1, "unresolved_patient": 1}
    assert result.status == RunStatus.COMPLETE


@pytest.mark.asyncio
async def test_budget_lines_fetched_from_detail_endpoint(store, make_source, make_orchestrator, make_oracle, answers):
    await seed(store)
    summary = budget(1, 500)
    del summary["lineas_presupuesto"]
    client = make_client(make_source, [summary])
    client.documents["/ventas/presupuestos/1/"] = {"lineas_presupuesto": [line(100), line(101)]}

    result = await make_orchestrator(client, make_oracle(answers)).run(BudgetMigration(tenant=TENANT))

    assert result.secondary.inserted_records == 2
    assert result.warnings == {}


@pytest.mark.asyncio
async def test_sold_budget_gets_a_linked_receipt(store, make_source, make_orchestrator, make_oracle, answers):
    await seed(store)
    client = make_client(make_source, [budget(1, 500, [line(100)], venta=44)])
    client.documents["/ventas/ventas/44/"] = SALE

    result = await make_orchestrator(client, make_oracle(answers)).run(BudgetMigration(tenant=TENANT))

    assert result.status == RunStatus.COMPLETE
    assert result.primary.inserted_records == 1
    assert result.secondary.inserted_records == 2
    assert result.warnings == {}

    (row,) = await store.fetch_all(text(
        "SELECT id_presupuesto, monto_pagado, saldo_pendiente, id_tipo_pago FROM presupuestos"
    ))
    assert row["monto_pagado"] == 100.0
    assert row["saldo_pendiente"] == 50.0
    assert row["id_tipo_pago"] == 1

    (receipt,) = await store.fetch_all(text(
        "SELECT id_presupuesto, old_id, id_paciente, id_medico, id_clinica, numero_recibo, "
        "forma_pago, fecha_recibo, monto_total, descontar_del_presupuesto FROM recibos"
    ))
    assert receipt["id_presupuesto"] == row["id_presupuesto"]
    assert receipt["old_id"] == 44
    assert receipt["id_paciente"] == 10
    assert receipt["id_medico"] == 7
    assert receipt["id_clinica"] == 3
    assert receipt["numero_recibo"] == "T-17"
    assert receipt["forma_pago"] == "tarjeta"
    assert receipt["fecha_recibo"] == "2024-03-02 09:30:00"
    assert receipt["monto_total"] == 100.0
    assert receipt["descontar_del_presupuesto"] == 0

    lines = await store.fetch_all(text("SELECT id_presupuesto FROM detalle_presupuesto"))
    assert [r["id_presupuesto"] for r in lines] == [row["id_presupuesto"]]


@pytest.mark.asyncio
async def test_budget_with_migrated_sale_is_skipped(store, make_source, make_orchestrator, make_oracle, answers):
    await seed(store)
    await store.execute(text(
        "INSERT INTO recibos (id_recibo, old_id, id_presupuesto, id_clinica, id_super_clinica) "
        "VALUES (5, 44, 1, 3, 1)"
    ))
    client = make_client(make_source, [budget(1, 500, [line(100)], venta=44), budget(2, 501)])
    client.documents["/ventas/ventas/44/"] = SALE

    result = await make_orchestrator(client, make_oracle(answers)).run(BudgetMigration(tenant=TENANT))

    assert result.primary.inserted_records == 1
    assert result.warnings == {"sale_already_migrated": 1}
    receipts = await store.fetch_all(text("SELECT id_recibo FROM recibos"))
    assert [r["id_recibo"] for r in receipts] == [5]


@pytest.mark.asyncio
async def test_unfetchable_sale_skips_its_budget(store, make_source, make_orchestrator, make_oracle, answers):
    await seed(store)
    client = make_client(make_source, [budget(1, 500, [line(100)], venta=44), budget(2, 501)])

    result = await make_orchestrator(client, make_oracle(answers)).run(BudgetMigration(tenant=TENANT))

    assert result.primary.inserted_records == 1
    assert result.secondary.inserted_records == 0
    assert result.warnings == {"failed_details": 1, "missing_sale": 1}


@pytest.mark.asyncio
async def test_center_param_only_scopes_doctors(store, make_source, make_orchestrator, make_oracle, answers):
    await seed(store)
    client = make_client(make_source, [])

    await make_orchestrator(client, make_oracle(answers)).run(
        BudgetMigration(tenant=TENANT, source_params={"centro": 5, "estado": "abierto"})
    )

    users_calls = [params for endpoint, params in client.calls if endpoint == "/main/users/"]
    budget_calls = [params for endpoint, params in client.calls if endpoint == "/ventas/presupuestos/"]
    assert users_calls[0]["centro"] == 5
    assert "centro" not in budget_calls[0]
    assert budget_calls[0]["estado"] == "abierto"


class TestBudgetHelpers:
    """Test source value helpers"""

    def test_ref_value_and_text(self):
        assert ref_value({"value": 3, "text": "Ana"}) == 3
        assert ref_value(3) == 3
        assert ref_text({"value": 3, "text": "Ana"}) == "Ana"
        assert ref_text(3) is None

    def test_format_timestamp(self):
        assert format_timestamp("2024-03-01T10:15:00.123Z") == "2024-03-01 10:15:00"
        assert format_timestamp("2024-03-01T10:15:00Z") == "2024-03-01 10:15:00"
        assert format_timestamp(None) is None

    def test_format_receipt_date(self):
        assert format_receipt_date("2024-03-02T09:30:00.000Z") == "2024-03-02 09:30:00"
        assert format_receipt_date("2024-03-02") == "2024-03-02 00:00:00"
        assert format_receipt_date(None) is None

    def test_detail_endpoint(self):
        migration = BudgetMigration(tenant=TENANT)

        assert migration.detail_endpoint({"id": 1}) == "/ventas/presupuestos/1/"
        assert migration.detail_endpoint({"id": 1, "lineas_presupuesto": []}) is None
        assert migration.detail_endpoint({"venta": 44, "lineas_presupuesto": []}) == "/ventas/ventas/44/"
        assert migration.detail_endpoint({"cliente": 500}) is None

    def test_flow_registry(self):
        assert FLOWS["budgets"] is BudgetMigration
