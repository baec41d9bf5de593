"""Integration tests describing end-to-end boutique workflows.

These scenarios run the business layer against a real workbook on disk, with
persist/reload cycles in between, to check that the store, the data access
layer and the engine agree with each other.
"""

from __future__ import annotations

import re
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import openpyxl

from boutique_erp import core_logic
from boutique_erp.constants import SEQUENCES_SHEET, EntityKind


def _rental_form(product_id: int, **overrides) -> core_logic.TransactionForm:
    data = {
        "cliente_nombre": "Laura Pérez",
        "cliente_domicilio": "Av. Juárez 456",
        "cliente_telefono": "4529876543",
        "id_producto": product_id,
        "tipo": "renta",
        "fecha_entrega": "2025-03-11",
        "fecha_devolucion": "2025-03-13",
        "abono": "400",
        "total": "1200",
    }
    data.update(overrides)
    return core_logic.TransactionForm(**data)


def test_rental_lifecycle_flow(runtime_context, set_fixed_datetime):
    """Create a dress, rent it out, deliver and return it across reloads."""

    set_fixed_datetime(datetime(2025, 3, 10, 9, 0, tzinfo=UTC))
    context = runtime_context

    product = core_logic.create_product(
        context,
        {"codigo": "VD-999", "nombre": "Vestido Prueba", "tipo": "renta", "precio": "1200", "stock": 1},
    )
    # Persist and reload so the test mirrors the lifecycle of the production
    # application where writes go to disk before subsequent operations.
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    transaction = core_logic.create_transaction(context, _rental_form(product.id))
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    assert core_logic.get_product(context, product.id).stock == 0
    assert len(core_logic.list_customers(context)) == 1
    stored = core_logic.get_transaction(context, transaction.id)
    assert stored == transaction
    assert stored.estado == "pendiente"
    assert re.fullmatch(r"VIO-[0-9A-F]{8}", stored.folio)
    assert stored.fecha_creacion == date(2025, 3, 10)
    assert stored.abono == Decimal("400")

    (due,) = core_logic.list_upcoming_returns(context)
    assert due.transaction.id == transaction.id
    assert due.cliente.nombre == "Laura Pérez"

    core_logic.update_transaction_status(context, transaction.id, "entregado")
    core_logic.update_transaction_status(context, transaction.id, "devuelto")
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    assert core_logic.get_transaction(context, transaction.id).estado == "devuelto"
    assert core_logic.list_upcoming_returns(context) == []
    # Returning a dress does not restock it.
    assert core_logic.get_product(context, product.id).stock == 0
    assert core_logic.compute_dashboard_stats(context).rentas_activas == 0


def test_repeat_customer_is_resolved_from_the_workbook(runtime_context):
    context = runtime_context
    product = core_logic.create_product(
        context,
        {"codigo": "VD-456", "nombre": "Vestido Gala Dorado", "tipo": "renta", "precio": "2000", "stock": 6},
    )
    core_logic.create_transaction(context, _rental_form(product.id))
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    core_logic.create_transaction(context, _rental_form(product.id, cliente_domicilio="Otra dirección"))

    (customer,) = core_logic.list_customers(context)
    assert customer.domicilio == "Av. Juárez 456"
    assert {t.id_cliente for t in core_logic.list_transactions(context)} == {customer.id}
    assert core_logic.get_product(context, product.id).stock == 4


def test_deleted_ids_stay_retired_after_reload(runtime_context):
    context = runtime_context
    first = core_logic.create_product(
        context, {"codigo": "VD-1", "nombre": "Uno", "tipo": "venta", "precio": "10", "stock": 1}
    )
    core_logic.delete_product(context, first.id)
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    second = core_logic.create_product(
        context, {"codigo": "VD-2", "nombre": "Dos", "tipo": "venta", "precio": "10", "stock": 1}
    )
    assert second.id == 2


def test_workbook_layout_after_seed(runtime_context, set_fixed_datetime):
    """Seeded data should land on the expected sheets in column order."""

    set_fixed_datetime(datetime(2025, 3, 15, tzinfo=UTC))
    context = runtime_context
    assert core_logic.seed_development_data(context) is True
    core_logic.persist_context(context)

    workbook = openpyxl.load_workbook(context.settings.data_file)
    products = list(workbook[EntityKind.PRODUCTS.value].iter_rows(min_row=2, values_only=True))
    assert [row[1] for row in products] == ["VD-101", "VD-245", "VD-189", "VD-322", "VD-456"]

    transactions = list(workbook[EntityKind.TRANSACTIONS.value].iter_rows(min_row=2, values_only=True))
    assert len(transactions) == 4
    assert transactions[0][5] == (date(2025, 3, 15) - timedelta(days=2)).isoformat()

    sequences = {kind: next_id for kind, next_id in workbook[SEQUENCES_SHEET].iter_rows(min_row=2, values_only=True)}
    assert sequences[EntityKind.TRANSACTIONS.value] == 5
    assert sequences[EntityKind.USERS.value] == 2


def test_dashboard_matches_workbook_contents(runtime_context, set_fixed_datetime):
    set_fixed_datetime(datetime(2025, 3, 15, tzinfo=UTC))
    context = runtime_context
    core_logic.seed_development_data(context)
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    stats = core_logic.compute_dashboard_stats(context)
    assert stats.total_productos == 5
    assert stats.rentas_activas == 3
    # VD-101 drops to 1, VD-245 to 2, VD-189 to 3 and VD-322 stays at 4.
    assert stats.cantidad_bajo_stock == 4
    assert stats.ventas_mes == Decimal("7650")
