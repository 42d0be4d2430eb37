"""
Budget migration: source budgets become ``presupuestos`` rows, and each
budget line becomes a ``detalle_presupuesto`` row linked to its budget.

Reference dimensions:
    patient: natural-key lookup of already migrated patients (``old_id``)
    doctor:  oracle-reconciled, several source users may map to one doctor
    tax:     oracle-reconciled tax types keyed by ``value``, one-to-one
    receipt: natural-key lookup of sales already migrated into ``recibos``

A budget converted into a sale is loaded with the sale's paid amount, and
the sale becomes a ``recibos`` row linked to the budget. A budget whose sale
is already in ``recibos`` is skipped.
"""

from typing import Any, Dict, List, Optional

from migration.base import (
    EntityMigration,
    NaturalKeyDimension,
    OracleDimension,
    TransformContext,
)
from migration.linking import FanOutGroup, PrimaryRecord, SecondaryRecord
from schemas.reconciliation import Cardinality, ReconciliationPolicy

SALE_DETAIL_FIELD = "venta_detalle"


def ref_value(value: Any) -> Any:
    """Source references arrive either bare or as ``{"value": ..., "text": ...}``"""
    if isinstance(value, dict):
        return value.get("value")
    return value


def ref_text(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("text")
    return None


def format_timestamp(value: Optional[str]) -> Optional[str]:
    """``2024-03-01T10:15:00.123Z`` -> ``2024-03-01 10:15:00``"""
    if not value:
        return None
    return value.replace("T", " ").split(".")[0].rstrip("Z")


def format_receipt_date(value: Optional[str]) -> Optional[str]:
    """Like ``format_timestamp``, but a bare date gets ``00:00:00``"""
    if not value:
        return None
    day, _, time = value.partition("T")
    time = time.split(".")[0].rstrip("Z")
    return f"{day} {time or '00:00:00'}"


class BudgetMigration(EntityMigration):
    name = "budgets"
    endpoint = "/ventas/presupuestos/"

    primary_table = "presupuestos"
    primary_id_column = "id_presupuesto"
    natural_key_column = "old_id"
    secondary_table = "detalle_presupuesto"

    scope_columns = ("id_clinica", "id_super_clinica")

    def dimensions(self):
        center = self.source_params.get("centro")
        return [
            NaturalKeyDimension(
                name="patient",
                table="pacientes",
                id_column="id_paciente",
                key_column="old_id"
            ),
            OracleDimension(
                name="doctor",
                source_endpoint="/main/users/",
                source_params={"centro": center} if center is not None else {},
                target_query=(
                    "SELECT * FROM medicos "
                    "WHERE id_clinica = :id_clinica AND id_super_clinica = :id_super_clinica"
                ),
                policy=ReconciliationPolicy(
                    cardinality=Cardinality.MANY_TO_ONE,
                    require_complete=True
                ),
                exclude_fields=("permissions", "filtros_agenda")
            ),
            OracleDimension(
                name="tax",
                source_endpoint="/ventas/ventas/form/",
                target_query="SELECT * FROM tipo_iva",
                policy=ReconciliationPolicy(require_complete=True, source_id_field="value"),
                paginated=False,
                results_field="impuestos"
            ),
            NaturalKeyDimension(
                name="receipt",
                table="recibos",
                id_column="id_recibo",
                key_column="old_id"
            ),
        ]

    def params(self) -> Dict[str, Any]:
        # "centro" only scopes the doctor lookup
        return {k: v for k, v in self.source_params.items() if k != "centro"}

    def detail_endpoint(self, item: Dict[str, Any]) -> Optional[str]:
        sale = ref_value(item.get("venta"))
        if sale is not None:
            return f"/ventas/ventas/{sale}/"

        budget_id = item.get("id")
        if "lineas_presupuesto" in item or budget_id is None:
            return None
        return f"/ventas/presupuestos/{budget_id}/"

    def merge_detail(self, item: Dict[str, Any], detail: Optional[Any]) -> Dict[str, Any]:
        if ref_value(item.get("venta")) is not None:
            return {**item, SALE_DETAIL_FIELD: detail if isinstance(detail, dict) else None}
        return super().merge_detail(item, detail)

    def transform(self, item: Dict[str, Any], ctx: TransformContext) -> Optional[FanOutGroup]:
        sale_id = ref_value(item.get("venta"))
        sale = None
        if sale_id is not None:
            if ctx.known("receipt", sale_id):
                ctx.warn("sale_already_migrated")
                return None

            sale = item.get(SALE_DETAIL_FIELD)
            if not isinstance(sale, dict):
                ctx.warn("missing_sale", f"Sale {sale_id} of budget {item.get('id')} could not be fetched")
                return None

        patient = ref_value(item.get("cliente"))
        if patient is None:
            ctx.warn("missing_patient", f"Budget {item.get('id')} has no patient")
            return None

        patient_id = ctx.resolve("patient", patient)
        if patient_id is None:
            return None

        created_by = item.get("created_by")
        doctor_id = ctx.resolve("doctor", ref_value(created_by))

        total = item.get("total") or 0
        paid = (sale.get("total") or 0) if sale else 0
        timestamp = format_timestamp(item.get("fecha"))

        budget = PrimaryRecord(
            source_id=item["id"],
            values={
                "id_paciente": patient_id,
                "id_super_clinica": ctx.tenant["id_super_clinica"],
                "id_clinica": ctx.tenant["id_clinica"],
                "fecha": timestamp,
                "fecha_vencimiento": None,
                "monto_total": total,
                "monto_pagado": paid,
                "saldo_pendiente": total - paid,
                "id_estado": ctx.default("id_estado", 1),
                "id_medico": doctor_id,
                "descripcion": item.get("observaciones") or None,
                "old_id": item["id"],
                "id_estado_registro": ctx.default("id_estado_registro", 1),
                "usuario_creacion": ref_text(created_by),
                "id_usuario_creacion": ref_value(created_by),
                "fecha_creacion": timestamp,
                "id_tipo_pago": 1 if sale else None,
            }
        )

        secondaries = self.transform_lines(item.get("lineas_presupuesto") or [], ctx)
        if sale:
            secondaries.append(self.transform_receipt(sale, patient_id, ctx))

        return FanOutGroup(primary=budget, secondaries=secondaries)

    def transform_lines(self, lines: List[Dict[str, Any]], ctx: TransformContext) -> List[SecondaryRecord]:
        records = []
        for index, line in enumerate(lines):
            discount = line.get("importe_descuento_moneda") or line.get("valor_descuento") or 0
            records.append(
                SecondaryRecord(
                    reference_column="id_presupuesto",
                    values={
                        "id_tratamiento": ctx.default("id_tratamiento") if line.get("servicio") else None,
                        "item": index + 1,
                        "descripcion": line.get("descripcion") or "",
                        "cantidad": line.get("cantidad") or 1,
                        "precio": line.get("precio") or 0,
                        "descuento": discount,
                        "id_tipo_iva": ctx.resolve("tax", line.get("impuesto")),
                        "total_item": line.get("total") or 0,
                        "id_producto": ctx.default("id_producto") if line.get("producto") else None,
                        "old_id": line.get("id"),
                    }
                )
            )
        return records

    def transform_receipt(self, sale: Dict[str, Any], patient_id: Any, ctx: TransformContext) -> SecondaryRecord:
        """The sale behind a budget, as a receipt linked to that budget"""
        issued = format_receipt_date(sale.get("fecha"))
        return SecondaryRecord(
            table="recibos",
            reference_column="id_presupuesto",
            values={
                "id_cita": None,
                "id_super_clinica": ctx.tenant["id_super_clinica"],
                "id_clinica": ctx.tenant["id_clinica"],
                "id_paciente": patient_id,
                "id_medico": ctx.resolve("doctor", ref_value(sale.get("assigned_to"))),
                "numero_recibo": sale.get("num_ticket") or 0,
                "forma_pago": ref_text(sale.get("forma_pago")) or "efectivo",
                "fecha_recibo": issued,
                "monto_total": sale.get("total") or 0,
                "id_factura": None,
                "old_id": sale.get("id"),
                "fecha_creacion": issued,
                "detalles_migracion": None,
                "descontar_del_presupuesto": 0,
            }
        )
