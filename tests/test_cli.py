"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from datetime import date
from unittest.mock import Mock

import pytest

from boutique_erp import cli, constants, core_logic


WRITE_COMMANDS = {
    "add-product",
    "update-product",
    "delete-product",
    "add-customer",
    "update-customer",
    "new-transaction",
    "set-status",
    "seed",
}

READ_COMMANDS = {
    "products",
    "low-stock",
    "customers",
    "transactions",
    "show-transaction",
    "recent-sales",
    "returns",
    "dashboard",
    "report",
}


def _parse(spec_factory, argv):
    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    spec = spec_factory(subparsers)
    spec.register(subparsers)
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "boutique-cli"
    assert "Boutique" in (parser.description or "")


def test_configure_subcommands_registers_every_command(cli_parser):
    """configure_subcommands should wire all read and write sub-commands."""

    command_table = cli.configure_subcommands(cli_parser)
    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS


def test_write_commands_are_marked_as_mutating(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    assert all(spec.mutates for spec in specs.values())


def test_read_commands_do_not_persist(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    assert not any(spec.mutates for spec in specs.values())
    for name in READ_COMMANDS:
        assert name in subparsers_action.choices


def test_build_command_table_indexes_specs(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert list(table) == ["alpha", "beta", "gamma"]


def test_build_command_table_rejects_duplicates(command_spec_iterable):
    with pytest.raises(ValueError):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


def test_dispatch_command_unknown_command_raises(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    with pytest.raises(KeyError):
        cli.dispatch_command(Mock(), argparse.Namespace(command="delta"), table)


def test_dispatch_command_invokes_executor(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert cli.dispatch_command(Mock(), argparse.Namespace(command="beta"), table) == 0


# ---------------------------------------------------------------------------
# Argument parsing and translation
# ---------------------------------------------------------------------------


def test_add_product_arguments_translate_to_request():
    namespace = _parse(
        cli.register_add_product_command,
        [
            "add-product",
            "--codigo",
            "VD-101",
            "--nombre",
            "Vestido Noche Elegante",
            "--tipo",
            "renta",
            "--precio",
            "1200",
            "--stock",
            "2",
        ],
    )
    assert cli.translate_add_product(namespace) == {
        "codigo": "VD-101",
        "nombre": "Vestido Noche Elegante",
        "descripcion": None,
        "tipo": "renta",
        "precio": "1200",
        "stock": "2",
    }


def test_add_product_rejects_unknown_tipo():
    with pytest.raises(SystemExit):
        _parse(
            cli.register_add_product_command,
            ["add-product", "--codigo", "X", "--nombre", "Y", "--tipo", "alquiler", "--precio", "1", "--stock", "1"],
        )


def test_update_product_keeps_only_supplied_fields():
    namespace = _parse(cli.register_update_product_command, ["update-product", "--id", "3", "--stock", "9"])
    assert namespace.product_id == 3
    assert cli.translate_update_product(namespace) == {"stock": "9"}


def test_update_customer_keeps_only_supplied_fields():
    namespace = _parse(cli.register_update_customer_command, ["update-customer", "--id", "2", "--telefono", "12345678"])
    assert cli.translate_update_customer(namespace) == {"telefono": "12345678"}


def test_new_transaction_translates_to_form():
    namespace = _parse(
        cli.register_new_transaction_command,
        [
            "new-transaction",
            "--cliente-nombre",
            "Ana",
            "--cliente-domicilio",
            "Calle 1",
            "--cliente-telefono",
            "4521234567",
            "--producto-id",
            "1",
            "--tipo",
            "renta",
            "--fecha-entrega",
            "2025-03-10",
            "--fecha-devolucion",
            "2025-03-12",
            "--total",
            "1200",
        ],
    )
    form = cli.translate_new_transaction(namespace)
    assert isinstance(form, core_logic.TransactionForm)
    assert form.id_producto == "1"
    assert form.fecha_devolucion == "2025-03-12"
    assert form.abono is None
    assert form.fecha_creacion is None


def test_set_status_only_accepts_known_states():
    namespace = _parse(cli.register_set_status_command, ["set-status", "--id", "1", "--estado", "entregado"])
    assert namespace.estado == constants.TransactionStatus.ENTREGADO.value
    with pytest.raises(SystemExit):
        _parse(cli.register_set_status_command, ["set-status", "--id", "1", "--estado", "perdido"])


def test_show_transaction_requires_id_or_folio():
    namespace = _parse(cli.register_show_transaction_command, ["show-transaction", "--folio", "VIO-0A1B2C3D"])
    assert namespace.folio == "VIO-0A1B2C3D"
    with pytest.raises(SystemExit):
        _parse(cli.register_show_transaction_command, ["show-transaction"])


def test_low_stock_defaults_to_listing_limit():
    namespace = _parse(cli.register_low_stock_command, ["low-stock"])
    assert namespace.limit == constants.LOW_STOCK_LISTING_LIMIT
    assert namespace.threshold is None


def test_report_parses_dates():
    namespace = _parse(cli.register_report_command, ["report", "--start", "2025-03-01", "--end", "2025-03-31"])
    assert namespace.start == date(2025, 3, 1)
    assert namespace.end == date(2025, 3, 31)


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (core_logic.ValidationError("bad"), 2),
        (core_logic.ConflictError("dup"), 2),
        (core_logic.NotFoundError("missing"), 4),
        (FileNotFoundError("config.ini"), 3),
        (core_logic.InternalError("disk"), 1),
        (RuntimeError("schema"), 1),
    ],
)
def test_handle_cli_error_maps_exit_codes(error, expected):
    assert cli.handle_cli_error(error) == expected


# ---------------------------------------------------------------------------
# End-to-end through main()
# ---------------------------------------------------------------------------


def _main(config_path, *argv):
    return cli.main(["--config", str(config_path), *argv])


def test_main_add_product_persists_workbook(config_file, capsys):
    exit_code = _main(
        config_file,
        "add-product",
        "--codigo",
        "VD-101",
        "--nombre",
        "Vestido Noche Elegante",
        "--tipo",
        "renta",
        "--precio",
        "1200",
        "--stock",
        "2",
    )
    assert exit_code == 0
    assert "VD-101" in capsys.readouterr().out

    reloaded = core_logic.load_runtime_context(config_file)
    assert [p.codigo for p in core_logic.list_products(reloaded)] == ["VD-101"]


def test_main_validation_failure_returns_2_and_saves_nothing(config_file):
    exit_code = _main(
        config_file, "add-product", "--codigo", "VD-1", "--nombre", "X", "--tipo", "venta", "--precio", "-5", "--stock", "1"
    )
    assert exit_code == 2
    assert core_logic.list_products(core_logic.load_runtime_context(config_file)) == []


def test_main_unknown_product_returns_4(config_file):
    assert _main(config_file, "delete-product", "--id", "7") == 4


def test_main_missing_config_returns_3(tmp_path):
    assert _main(tmp_path / "missing.ini", "products") == 3


def test_main_schema_mismatch_returns_1(config_factory):
    bundle = config_factory(schema_version="9.9.9")
    assert _main(bundle.config_path, "products") == 1


def test_main_transaction_flow(config_file, capsys):
    assert _main(config_file, "seed") == 0
    assert _main(
        config_file,
        "new-transaction",
        "--cliente-nombre",
        "Sofía Ramírez",
        "--cliente-domicilio",
        "Av. Independencia 10",
        "--cliente-telefono",
        "4520001111",
        "--producto-id",
        "4",
        "--tipo",
        "renta",
        "--fecha-entrega",
        "2025-03-10",
        "--total",
        "1500",
    ) == 0
    capsys.readouterr()

    context = core_logic.load_runtime_context(config_file)
    transaction = core_logic.search_transactions(context, query="Sofía")[0].transaction
    assert core_logic.get_product_by_codigo(context, "VD-322").stock == 3

    assert _main(config_file, "set-status", "--id", str(transaction.id), "--estado", "entregado") == 0
    assert _main(config_file, "show-transaction", "--folio", transaction.folio) == 0
    output = capsys.readouterr().out
    assert transaction.folio in output
    assert "entregado" in output

    assert _main(config_file, "dashboard") == 0
    assert "Test Boutique" in capsys.readouterr().out


def test_main_seed_twice_is_refused(config_file, capsys):
    assert _main(config_file, "seed") == 0
    assert _main(config_file, "seed") == 0
    assert "nothing seeded" in capsys.readouterr().out
    context = core_logic.load_runtime_context(config_file)
    assert len(core_logic.list_products(context)) == 5


def test_main_strict_policy_rejects_returning_a_sale(config_factory):
    bundle = config_factory(strict_status_updates="yes")
    assert _main(bundle.config_path, "seed") == 0
    # The first seeded transaction is a sale.
    assert _main(bundle.config_path, "set-status", "--id", "1", "--estado", "devuelto") == 2


@pytest.mark.parametrize(
    "argv",
    [
        ["products"],
        ["low-stock"],
        ["customers"],
        ["transactions", "--tipo", "renta"],
        ["recent-sales"],
        ["returns", "--days", "3"],
        ["report", "--start", "2020-01-01", "--end", "2030-12-31"],
    ],
)
def test_main_read_commands_succeed(config_file, argv):
    assert _main(config_file, "seed") == 0
    assert _main(config_file, *argv) == 0
