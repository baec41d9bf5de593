"""Shared pytest fixtures and utilities for Boutique ERP tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from boutique_erp import cli, constants, core_logic, data_manager  # noqa: E402
from boutique_erp.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Policies]\n"
    "AllowMissingProduct = {allow_missing_product}\n"
    "StrictStatusUpdates = {strict_status_updates}\n"
    "LowStockThreshold = {low_stock_threshold}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "boutique_master_data.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Boutique",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        allow_missing_product: str = "yes",
        strict_status_updates: str = "no",
        low_stock_threshold: int = constants.LOW_STOCK_THRESHOLD,
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        workbook_path = workbook_factory(subdir=bundle_dir_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                allow_missing_product=allow_missing_product,
                strict_status_updates=strict_status_updates,
                low_stock_threshold=low_stock_threshold,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="boutique-cli", description="Boutique CLI")


@pytest.fixture
def subparsers_action(cli_parser: argparse.ArgumentParser) -> argparse._SubParsersAction:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for memory-backed contexts."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "boutique_master_data.xlsx",
        store_name="Test Boutique",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def context(settings: data_manager.ConfigSettings) -> core_logic.RuntimeContext:
    """Assemble a runtime context over a fresh in-memory store."""

    return core_logic.create_memory_context(settings)


@pytest.fixture
def make_product(context: core_logic.RuntimeContext) -> Callable[..., data_manager.ProductRow]:
    """Create catalog products with sensible defaults."""

    counter = {"value": 0}

    def _make(**overrides: Any) -> data_manager.ProductRow:
        counter["value"] += 1
        data = {
            "codigo": f"VD-{100 + counter['value']}",
            "nombre": f"Vestido {counter['value']}",
            "descripcion": None,
            "tipo": "renta",
            "precio": "1200",
            "stock": 3,
        }
        data.update(overrides)
        return core_logic.create_product(context, data)

    return _make


@pytest.fixture
def transaction_form() -> Callable[..., core_logic.TransactionForm]:
    """Build valid transaction forms, overriding any field by keyword."""

    def _build(**overrides: Any) -> core_logic.TransactionForm:
        data = {
            "cliente_nombre": "Ana López",
            "cliente_domicilio": "Calle 1",
            "cliente_telefono": "4521234567",
            "id_producto": 1,
            "tipo": "renta",
            "fecha_entrega": "2025-03-10",
            "fecha_devolucion": "2025-03-12",
            "abono": "200",
            "total": "1200",
        }
        data.update(overrides)
        return core_logic.TransactionForm(**data)

    return _build


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
