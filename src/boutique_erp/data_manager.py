"""Data access layer for the boutique ERP.

This module provides low-level helpers that read from and write to the
``boutique_master_data.xlsx`` workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating or
   removing individual rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence, Union

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import LOW_STOCK_THRESHOLD, SEQUENCES_SHEET, EntityKind


CONFIG_FILE_NAME = "config.ini"


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    allow_missing_product: bool = True
    strict_status_updates: bool = False
    low_stock_threshold: int = LOW_STOCK_THRESHOLD


@dataclass(frozen=True)
class UserRow:
    """In-memory view of a row from the ``Users`` sheet."""

    id: int
    username: str
    password_hash: str
    nombre: str
    role: str


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    id: int
    codigo: str
    nombre: str
    descripcion: Optional[str]
    tipo: str
    precio: Decimal
    stock: int


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``Customers`` sheet."""

    id: int
    nombre: str
    domicilio: str
    telefono: str


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet."""

    id: int
    folio: str
    id_producto: int
    id_cliente: int
    tipo: str
    fecha_creacion: date
    fecha_entrega: date
    fecha_devolucion: Optional[date]
    abono: Optional[Decimal]
    total: Decimal
    estado: str


EntityRow = Union[UserRow, ProductRow, CustomerRow, TransactionRow]

ROW_TYPES: Dict[EntityKind, type] = {
    EntityKind.USERS: UserRow,
    EntityKind.PRODUCTS: ProductRow,
    EntityKind.CUSTOMERS: CustomerRow,
    EntityKind.TRANSACTIONS: TransactionRow,
}


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. The ``[Policies]`` section is
    optional and every option in it falls back to the dataclass default.
    Relative ``DataFile`` entries are anchored at ``base_path`` (or the current
    working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative
            ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required ``[System]`` options is missing.
        ValueError: If a policy option cannot be converted to its type.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    allow_missing_product = parser.getboolean("Policies", "AllowMissingProduct", fallback=True)
    strict_status_updates = parser.getboolean("Policies", "StrictStatusUpdates", fallback=False)
    low_stock_threshold = parser.getint("Policies", "LowStockThreshold", fallback=LOW_STOCK_THRESHOLD)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        allow_missing_product=allow_missing_product,
        strict_status_updates=strict_status_updates,
        low_stock_threshold=low_stock_threshold,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)
    log.debug("Workbook written to '%s'", dest)


def iter_records(workbook: Workbook, kind: EntityKind) -> Iterable[EntityRow]:
    """Iterate over the records stored on the worksheet backing ``kind``.

    The iterator skips the header row and any fully empty rows. Each remaining
    row is converted into the dataclass registered for ``kind``.

    Args:
        workbook (Workbook): Workbook containing the sheet.
        kind (EntityKind): Entity collection to read.

    Yields:
        EntityRow: One structured row for each meaningful record in the sheet.
    """

    deserialize = _DESERIALIZERS[kind]
    sheet = workbook[kind.value]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield deserialize(raw)


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet."""

    return iter_records(workbook, EntityKind.PRODUCTS)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream transaction records from the ``Transactions`` worksheet.

    Dates come back as :class:`~datetime.date` instances and money columns
    as :class:`~decimal.Decimal`; optional columns remain ``None`` when blank.
    """

    return iter_records(workbook, EntityKind.TRANSACTIONS)


def append_record(workbook: Workbook, kind: EntityKind, record: EntityRow) -> None:
    """Append ``record`` to the worksheet backing ``kind``.

    Args:
        workbook (Workbook): Workbook whose sheet should be modified.
        kind (EntityKind): Collection the record belongs to.
        record (EntityRow): Structured data ready for persistence.

    Raises:
        TypeError: If ``record`` is not the dataclass registered for ``kind``.
    """

    expected = ROW_TYPES[kind]
    if not isinstance(record, expected):
        raise TypeError(f"Expected {expected.__name__} for sheet '{kind.value}'")
    sheet = workbook[kind.value]
    sheet.append(_SERIALIZERS[kind](record))


def update_record(workbook: Workbook, kind: EntityKind, record_id: int, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing record.

    The function locates the row whose ``id`` matches ``record_id``, validates
    that each requested field exists in the header row, and writes the
    serialized values into the corresponding cells. Other columns are left
    untouched.

    Args:
        workbook (Workbook): Workbook containing the sheet.
        kind (EntityKind): Collection owning the record.
        record_id (int): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the record or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, kind.value, "id", record_id)
    if row_index is None:
        raise KeyError(f"{kind.value} row not found: {record_id}")

    sheet = workbook[kind.value]
    header_map = _header_map(sheet)

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown {kind.value} field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=_to_cell(value))


def delete_record(workbook: Workbook, kind: EntityKind, record_id: int) -> bool:
    """Remove the row holding ``record_id``; returns ``False`` when absent."""

    row_index = locate_row(workbook, kind.value, "id", record_id)
    if row_index is None:
        return False
    workbook[kind.value].delete_rows(row_index)
    return True


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: Any) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (Any): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def read_sequences(workbook: Workbook) -> Dict[EntityKind, int]:
    """Return the next identifier to hand out for every entity kind.

    Kinds missing from the ``Sequences`` sheet start at 1.
    """

    sequences = {kind: 1 for kind in EntityKind}
    sheet = workbook[SEQUENCES_SHEET]
    for kind_raw, next_raw in sheet.iter_rows(min_row=2, max_col=2, values_only=True):
        if kind_raw is None:
            continue
        sequences[EntityKind(str(kind_raw))] = int(next_raw)
    return sequences


def write_sequence(workbook: Workbook, kind: EntityKind, next_id: int) -> None:
    """Store ``next_id`` as the next identifier for ``kind``."""

    row_index = locate_row(workbook, SEQUENCES_SHEET, "kind", kind.value)
    sheet = workbook[SEQUENCES_SHEET]
    if row_index is None:
        sheet.append([kind.value, next_id])
    else:
        sheet.cell(row=row_index, column=2, value=next_id)


def serialize_user(record: UserRow) -> list[object]:
    """Arrange a user as ``[id, username, password_hash, nombre, role]``."""

    return [record.id, record.username, record.password_hash, record.nombre, record.role]


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering.

    Returns:
        list[object]: ``[id, codigo, nombre, descripcion, tipo, precio,
        stock]`` with ``precio`` written as decimal text.
    """

    return [
        record.id,
        record.codigo,
        record.nombre,
        record.descripcion,
        record.tipo,
        _to_cell(record.precio),
        record.stock,
    ]


def serialize_customer(record: CustomerRow) -> list[object]:
    return [record.id, record.nombre, record.domicilio, record.telefono]


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction dataclass into the sheet column order.

    Dates are written as ISO strings so Excel never reinterprets them as
    datetimes with a time component. Money is written as decimal text.
    """

    return [
        record.id,
        record.folio,
        record.id_producto,
        record.id_cliente,
        record.tipo,
        _to_cell(record.fecha_creacion),
        _to_cell(record.fecha_entrega),
        _to_cell(record.fecha_devolucion),
        _to_cell(record.abono),
        _to_cell(record.total),
        record.estado,
    ]


def deserialize_user(raw_row: Sequence[object]) -> UserRow:
    user_id, username, password_hash, nombre, role = raw_row[:5]
    return UserRow(
        id=int(user_id),
        username=str(username),
        password_hash=str(password_hash) if password_hash is not None else "",
        nombre=str(nombre),
        role=str(role),
    )


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Numeric prices become :class:`~decimal.Decimal` instances and the code is
    coerced to ``str`` because Excel likes to turn numeric-looking codes into
    numbers.
    """

    product_id, codigo, nombre, descripcion, tipo, precio_raw, stock_raw = raw_row[:7]
    return ProductRow(
        id=int(product_id),
        codigo=str(codigo),
        nombre=str(nombre),
        descripcion=str(descripcion) if descripcion is not None else None,
        tipo=str(tipo),
        precio=_to_decimal(precio_raw) or Decimal("0.00"),
        stock=int(stock_raw) if stock_raw is not None else 0,
    )


def deserialize_customer(raw_row: Sequence[object]) -> CustomerRow:
    customer_id, nombre, domicilio, telefono = raw_row[:4]
    return CustomerRow(
        id=int(customer_id),
        nombre=str(nombre),
        domicilio=str(domicilio),
        telefono=str(telefono),
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw worksheet row into a strongly typed transaction record.

    Args:
        raw_row (Sequence[object]): Raw cell values in worksheet order.

    Returns:
        TransactionRow: Dataclass with dates, decimals and ``None`` for blank
            optional columns.
    """

    (
        transaction_id,
        folio,
        id_producto,
        id_cliente,
        tipo,
        fecha_creacion,
        fecha_entrega,
        fecha_devolucion,
        abono,
        total,
        estado,
    ) = raw_row[:11]

    return TransactionRow(
        id=int(transaction_id),
        folio=str(folio),
        id_producto=int(id_producto),
        id_cliente=int(id_cliente),
        tipo=str(tipo),
        fecha_creacion=_to_date(fecha_creacion),
        fecha_entrega=_to_date(fecha_entrega),
        fecha_devolucion=_to_date(fecha_devolucion),
        abono=_to_decimal(abono),
        total=_to_decimal(total) or Decimal("0.00"),
        estado=str(estado),
    )


_SERIALIZERS = {
    EntityKind.USERS: serialize_user,
    EntityKind.PRODUCTS: serialize_product,
    EntityKind.CUSTOMERS: serialize_customer,
    EntityKind.TRANSACTIONS: serialize_transaction,
}

_DESERIALIZERS = {
    EntityKind.USERS: deserialize_user,
    EntityKind.PRODUCTS: deserialize_product,
    EntityKind.CUSTOMERS: deserialize_customer,
    EntityKind.TRANSACTIONS: deserialize_transaction,
}


def _header_map(sheet) -> Dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def _to_cell(value: Any) -> Any:
    # datetime is a date subclass; both are stored as ISO dates.
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    # Text keeps the Decimal scale; a float cell would drop it.
    if isinstance(value, Decimal):
        return str(value)
    return value


def _to_date(raw: object) -> Optional[date]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw))


def _to_decimal(raw: object) -> Optional[Decimal]:
    if raw is None or raw == "":
        return None
    return Decimal(str(raw))


__all__ = [
    "CONFIG_FILE_NAME",
    "ConfigSettings",
    "UserRow",
    "ProductRow",
    "CustomerRow",
    "TransactionRow",
    "EntityRow",
    "ROW_TYPES",
    "find_config_file",
    "read_config",
    "parse_settings",
    "open_workbook",
    "save_workbook",
    "iter_records",
    "iter_products",
    "iter_transactions",
    "append_record",
    "update_record",
    "delete_record",
    "locate_row",
    "read_sequences",
    "write_sequence",
]

