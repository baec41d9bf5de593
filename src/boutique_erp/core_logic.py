"""Business logic layer for the boutique ERP.

This module holds the rules for the product catalog, the customer directory,
the transaction engine and the dashboard. It consumes an entity store for all
I/O and never touches the workbook directly; every public operation takes a
:class:`RuntimeContext` that carries the settings, the store handle and the
write lock.
"""

from __future__ import annotations

import re
import secrets
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    FOLIO_MAX_ATTEMPTS,
    FOLIO_PREFIX,
    FOLIO_RANDOM_BYTES,
    PHONE_MAX_DIGITS,
    PHONE_MIN_DIGITS,
    RECENT_SALES_LIMIT,
    UPCOMING_RETURNS_DAYS,
    EntityKind,
    ProductType,
    TransactionStatus,
    TransactionType,
    UserRole,
)
from .data_manager import CustomerRow, ProductRow, TransactionRow, UserRow
from .store import EntityStore, MemoryStore, WorkbookStore


PHONE_PATTERN = re.compile(rf"^[0-9]{{{PHONE_MIN_DIGITS},{PHONE_MAX_DIGITS}}}$")
PRODUCT_FIELDS = ("codigo", "nombre", "descripcion", "tipo", "precio", "stock")
CUSTOMER_FIELDS = ("nombre", "domicilio", "telefono")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class BoutiqueError(Exception):
    """Base class for every error surfaced by the business layer.

    ``kind`` is a stable machine-readable tag, ``message`` the text shown to
    the operator.
    """

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


@dataclass(frozen=True)
class FieldViolation:
    """A single invalid field and the reason it was rejected."""

    field: str
    message: str


class ValidationError(BoutiqueError):
    """Raised when input fails shape or range checks.

    ``violations`` lists every offending field, not just the first one.
    """

    kind = "validation"

    def __init__(self, message: str, violations: Sequence[FieldViolation] = ()) -> None:
        super().__init__(message)
        self.violations: List[FieldViolation] = list(violations)

    def __str__(self) -> str:
        if not self.violations:
            return self.message
        details = "; ".join(f"{v.field}: {v.message}" for v in self.violations)
        return f"{self.message} ({details})"


class ConflictError(ValidationError):
    """Raised when a unique key such as a product code is already taken."""

    kind = "conflict"


class NotFoundError(BoutiqueError):
    """Raised when a referenced product, customer, user or transaction is unknown."""

    kind = "not_found"


class InternalError(BoutiqueError):
    """Raised when the store fails underneath an operation.

    The message stays generic; the original exception is chained and logged.
    """

    kind = "internal"


# ---------------------------------------------------------------------------
# Runtime context and value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RuntimeContext:
    """Settings, store handle and write lock shared by every operation."""

    settings: data_manager.ConfigSettings
    store: EntityStore
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


@dataclass(frozen=True)
class TransactionForm:
    """User intent for creating a transaction.

    Values may arrive as raw text (from the CLI or a web form);
    :func:`validate_transaction_form` coerces them and reports every problem.
    """

    cliente_nombre: Any = None
    cliente_domicilio: Any = None
    cliente_telefono: Any = None
    id_producto: Any = None
    tipo: Any = None
    fecha_entrega: Any = None
    fecha_devolucion: Any = None
    abono: Any = None
    total: Any = None
    fecha_creacion: Any = None


@dataclass(frozen=True)
class TransactionView:
    """A transaction joined with its product and customer.

    Dangling references join as ``None`` instead of failing.
    """

    transaction: TransactionRow
    producto: Optional[ProductRow]
    cliente: Optional[CustomerRow]


@dataclass(frozen=True)
class DashboardStats:
    """Headline figures shown on the dashboard."""

    total_productos: int
    ventas_mes: Decimal
    rentas_activas: int
    cantidad_bajo_stock: int


@dataclass(frozen=True)
class ProductPopularity:
    """How many transactions referenced a product within a period."""

    id_producto: int
    codigo: Optional[str]
    nombre: Optional[str]
    cantidad: int


@dataclass(frozen=True)
class PeriodReport:
    """Transaction breakdown for an inclusive date range."""

    start: date
    end: date
    totals_by_tipo: Dict[str, Decimal]
    counts_by_tipo: Dict[str, int]
    counts_by_estado: Dict[str, int]
    top_products: List[ProductPopularity]


def _today() -> date:
    """Return the current UTC calendar date used by every date comparison."""

    return datetime.now(UTC).date()


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the workbook-backed store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context backed by a :class:`WorkbookStore`.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = WorkbookStore.open(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=store)


def create_memory_context(settings: Optional[data_manager.ConfigSettings] = None) -> RuntimeContext:
    """Build a context over a fresh :class:`MemoryStore`.

    Useful for tests and for embedding the engine without a workbook. Id
    sequences start at 1 for every new context.
    """
    if settings is None:
        settings = data_manager.ConfigSettings(
            data_file=Path("boutique_master_data.xlsx"),
            store_name="Boutique",
            schema_version=EXPECTED_SCHEMA_VERSION,
        )
    return RuntimeContext(settings=settings, store=MemoryStore())


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work with a workbook declared for another schema version.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist pending store changes.

    Raises:
        InternalError: If the backend cannot write its data. The underlying
            exception is logged and chained, never shown to the caller.
    """
    with context._lock:
        try:
            context.store.save()
        except (OSError, ValueError) as exc:
            log.exception("Failed to persist store for '%s'", context.settings.data_file)
            raise InternalError("Unable to save boutique data") from exc
    log.info("Persisted store '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context over a newly opened workbook store.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    store = WorkbookStore.open(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, store=store)


# ---------------------------------------------------------------------------
# Field coercion helpers
# ---------------------------------------------------------------------------


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _coerce_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    # Decimal() accepts any Unicode digit; amounts must be ASCII.
    if not text.isascii():
        return None
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


def _coerce_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else None
    text = str(value).strip()
    if not re.fullmatch(r"[+-]?[0-9]+", text):
        return None
    return int(text)


def _coerce_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = _clean_text(value)
    if text is None:
        return None
    try:
        return date.fromisoformat(text)
    except ValueError:
        return None


def _coerce_choice(enum_type, value: Any) -> Optional[str]:
    if isinstance(value, enum_type):
        return value.value
    try:
        return enum_type(str(value).strip()).value
    except ValueError:
        return None


def _raise_if_invalid(message: str, violations: List[FieldViolation]) -> None:
    if violations:
        log.error("%s: %s", message, "; ".join(f"{v.field}: {v.message}" for v in violations))
        raise ValidationError(message, violations)


# ---------------------------------------------------------------------------
# Product catalog
# ---------------------------------------------------------------------------


def _clean_product_fields(data: Mapping[str, Any], *, partial: bool) -> tuple[Dict[str, Any], List[FieldViolation]]:
    """Coerce product fields and collect every violation.

    With ``partial`` only the keys present in ``data`` are checked, which is
    how edits are validated.
    """
    violations: List[FieldViolation] = []
    clean: Dict[str, Any] = {}

    for key in data:
        if key not in PRODUCT_FIELDS:
            violations.append(FieldViolation(key, "Unknown product field"))

    for name, label in (("codigo", "Product code"), ("nombre", "Product name")):
        if partial and name not in data:
            continue
        text = _clean_text(data.get(name))
        if text is None:
            violations.append(FieldViolation(name, f"{label} is required"))
        else:
            clean[name] = text

    if "descripcion" in data:
        clean["descripcion"] = _clean_text(data.get("descripcion"))
    elif not partial:
        clean["descripcion"] = None

    if not partial or "tipo" in data:
        tipo = _coerce_choice(ProductType, data.get("tipo"))
        if tipo is None:
            violations.append(FieldViolation("tipo", "Product type must be 'renta' or 'venta'"))
        else:
            clean["tipo"] = tipo

    if not partial or "precio" in data:
        precio = _coerce_decimal(data.get("precio"))
        if precio is None:
            violations.append(FieldViolation("precio", "Price must be a number"))
        elif precio < 0:
            violations.append(FieldViolation("precio", "Price must be zero or positive"))
        else:
            clean["precio"] = precio

    if not partial or "stock" in data:
        stock = _coerce_int(data.get("stock"))
        if stock is None:
            violations.append(FieldViolation("stock", "Stock must be a whole number"))
        elif stock < 0:
            violations.append(FieldViolation("stock", "Stock must be zero or positive"))
        else:
            clean["stock"] = stock

    return clean, violations


def list_products(context: RuntimeContext) -> List[ProductRow]:
    """Return every product in insertion order."""
    return context.store.list(EntityKind.PRODUCTS)


def get_product(context: RuntimeContext, product_id: int) -> ProductRow:
    """Resolve a product by id.

    Raises:
        NotFoundError: If ``product_id`` is unknown.
    """
    product = context.store.get(EntityKind.PRODUCTS, product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise NotFoundError(f"Unknown product id: {product_id}")
    return product


def get_product_by_codigo(context: RuntimeContext, codigo: str) -> Optional[ProductRow]:
    """Return the product whose code matches ``codigo`` exactly, if any."""
    for product in context.store.list(EntityKind.PRODUCTS):
        if product.codigo == codigo:
            return product
    return None


def create_product(context: RuntimeContext, data: Mapping[str, Any]) -> ProductRow:
    """Validate and add a product to the catalog.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        data (Mapping[str, Any]): ``codigo``, ``nombre``, ``tipo``,
            ``precio``, ``stock`` and an optional ``descripcion``.

    Returns:
        ProductRow: The stored product with its new id.

    Raises:
        ValidationError: Listing every missing or out-of-range field.
        ConflictError: If another product already uses the code.
    """
    clean, violations = _clean_product_fields(data, partial=False)
    _raise_if_invalid("Invalid product data", violations)

    with context._lock:
        if get_product_by_codigo(context, clean["codigo"]) is not None:
            log.warning("Rejected duplicate product code '%s'", clean["codigo"])
            raise ConflictError(
                "Product code already exists",
                [FieldViolation("codigo", f"Code '{clean['codigo']}' is already in use")],
            )
        product = context.store.insert(EntityKind.PRODUCTS, clean)

    log.info("Created product %d ('%s', stock=%d)", product.id, product.codigo, product.stock)
    return product


def update_product(context: RuntimeContext, product_id: int, changes: Mapping[str, Any]) -> ProductRow:
    """Apply a partial edit to a product.

    A new ``codigo`` is checked against every other product.

    Raises:
        NotFoundError: If ``product_id`` is unknown.
        ValidationError: If a supplied field is invalid.
        ConflictError: If the new code belongs to another product.
    """
    clean, violations = _clean_product_fields(changes, partial=True)
    _raise_if_invalid("Invalid product data", violations)

    with context._lock:
        get_product(context, product_id)
        if "codigo" in clean:
            existing = get_product_by_codigo(context, clean["codigo"])
            if existing is not None and existing.id != product_id:
                log.warning("Rejected product code change to '%s'", clean["codigo"])
                raise ConflictError(
                    "Product code already exists",
                    [FieldViolation("codigo", f"Code '{clean['codigo']}' is already in use")],
                )
        product = context.store.update(EntityKind.PRODUCTS, product_id, clean)

    log.info("Updated product %d (%s)", product_id, ", ".join(sorted(clean)) or "no changes")
    return product


def delete_product(context: RuntimeContext, product_id: int) -> None:
    """Remove a product.

    Transactions that reference it are left untouched and will join the
    product as ``None`` from then on.

    Raises:
        NotFoundError: If ``product_id`` is unknown.
    """
    with context._lock:
        removed = context.store.delete(EntityKind.PRODUCTS, product_id)
    if not removed:
        log.warning("Delete requested for unknown product '%s'", product_id)
        raise NotFoundError(f"Unknown product id: {product_id}")
    log.info("Deleted product %d", product_id)


def list_low_stock_products(
    context: RuntimeContext,
    threshold: Optional[int] = None,
    limit: Optional[int] = None,
) -> List[ProductRow]:
    """Return products whose stock is strictly below ``threshold``.

    Results are ordered by ascending stock; products with equal stock keep
    their insertion order. ``threshold`` defaults to the configured low-stock
    threshold and ``limit`` caps the result when provided.
    """
    if threshold is None:
        threshold = context.settings.low_stock_threshold
    if limit is not None and limit < 0:
        raise ValidationError("Invalid limit", [FieldViolation("limit", "Limit must be zero or positive")])

    low = sorted(
        (product for product in context.store.list(EntityKind.PRODUCTS) if product.stock < threshold),
        key=lambda product: product.stock,
    )
    return low if limit is None else low[:limit]


# ---------------------------------------------------------------------------
# Customer directory
# ---------------------------------------------------------------------------


def _clean_customer_fields(data: Mapping[str, Any], *, partial: bool) -> tuple[Dict[str, Any], List[FieldViolation]]:
    violations: List[FieldViolation] = []
    clean: Dict[str, Any] = {}

    for key in data:
        if key not in CUSTOMER_FIELDS:
            violations.append(FieldViolation(key, "Unknown customer field"))

    for name, label in (("nombre", "Customer name"), ("domicilio", "Address")):
        if partial and name not in data:
            continue
        text = _clean_text(data.get(name))
        if text is None:
            violations.append(FieldViolation(name, f"{label} is required"))
        else:
            clean[name] = text

    if not partial or "telefono" in data:
        telefono = _clean_text(data.get("telefono")) or ""
        if not PHONE_PATTERN.match(telefono):
            violations.append(
                FieldViolation(
                    "telefono",
                    f"Phone must be {PHONE_MIN_DIGITS} to {PHONE_MAX_DIGITS} digits",
                )
            )
        else:
            clean["telefono"] = telefono

    return clean, violations


def list_customers(context: RuntimeContext) -> List[CustomerRow]:
    return context.store.list(EntityKind.CUSTOMERS)


def get_customer(context: RuntimeContext, customer_id: int) -> CustomerRow:
    """Resolve a customer by id.

    Raises:
        NotFoundError: If ``customer_id`` is unknown.
    """
    customer = context.store.get(EntityKind.CUSTOMERS, customer_id)
    if customer is None:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise NotFoundError(f"Unknown customer id: {customer_id}")
    return customer


def create_customer(context: RuntimeContext, data: Mapping[str, Any]) -> CustomerRow:
    """Add a customer. Duplicate name/phone pairs are allowed here.

    Raises:
        ValidationError: If a name, address or phone is missing or malformed.
    """
    clean, violations = _clean_customer_fields(data, partial=False)
    _raise_if_invalid("Invalid customer data", violations)
    with context._lock:
        customer = context.store.insert(EntityKind.CUSTOMERS, clean)
    log.info("Created customer %d", customer.id)
    return customer


def update_customer(context: RuntimeContext, customer_id: int, changes: Mapping[str, Any]) -> CustomerRow:
    """Apply a partial edit to a customer.

    Raises:
        NotFoundError: If ``customer_id`` is unknown.
        ValidationError: If a supplied field is invalid.
    """
    clean, violations = _clean_customer_fields(changes, partial=True)
    _raise_if_invalid("Invalid customer data", violations)
    with context._lock:
        customer = context.store.update(EntityKind.CUSTOMERS, customer_id, clean)
    if customer is None:
        log.warning("Update requested for unknown customer '%s'", customer_id)
        raise NotFoundError(f"Unknown customer id: {customer_id}")
    log.info("Updated customer %d", customer_id)
    return customer


def find_customer_by_name_and_phone(context: RuntimeContext, nombre: str, telefono: str) -> Optional[CustomerRow]:
    """Return the first customer matching both fields exactly, or ``None``.

    Matching is case-sensitive and follows insertion order, so the oldest
    record wins when duplicates exist.
    """
    for customer in context.store.list(EntityKind.CUSTOMERS):
        if customer.nombre == nombre and customer.telefono == telefono:
            return customer
    return None


# ---------------------------------------------------------------------------
# Transaction engine
# ---------------------------------------------------------------------------


def validate_transaction_form(form: TransactionForm) -> TransactionForm:
    """Coerce a transaction form and reject it with every violation found.

    Args:
        form (TransactionForm): Raw user intent.

    Returns:
        TransactionForm: Copy holding clean values: stripped text, ``int``
            product id, enum values as strings, :class:`~datetime.date` and
            :class:`~decimal.Decimal` instances.

    Raises:
        ValidationError: Listing each invalid field; checks never stop at the
            first failure.
    """
    violations: List[FieldViolation] = []

    nombre = _clean_text(form.cliente_nombre)
    if nombre is None:
        violations.append(FieldViolation("cliente_nombre", "Customer name is required"))
    domicilio = _clean_text(form.cliente_domicilio)
    if domicilio is None:
        violations.append(FieldViolation("cliente_domicilio", "Address is required"))
    telefono = _clean_text(form.cliente_telefono) or ""
    if not PHONE_PATTERN.match(telefono):
        violations.append(
            FieldViolation(
                "cliente_telefono",
                f"Phone must be {PHONE_MIN_DIGITS} to {PHONE_MAX_DIGITS} digits",
            )
        )

    id_producto = _coerce_int(form.id_producto)
    if id_producto is None or id_producto < 1:
        violations.append(FieldViolation("id_producto", "A valid product id is required"))

    tipo = _coerce_choice(TransactionType, form.tipo)
    if tipo is None:
        violations.append(FieldViolation("tipo", "Transaction type must be 'renta' or 'venta'"))

    fecha_entrega = _coerce_date(form.fecha_entrega)
    if fecha_entrega is None:
        violations.append(FieldViolation("fecha_entrega", "Delivery date is required (YYYY-MM-DD)"))

    fecha_devolucion = None
    if _clean_text(form.fecha_devolucion) is not None or isinstance(form.fecha_devolucion, date):
        fecha_devolucion = _coerce_date(form.fecha_devolucion)
        if fecha_devolucion is None:
            violations.append(FieldViolation("fecha_devolucion", "Return date must be YYYY-MM-DD"))

    fecha_creacion = None
    if _clean_text(form.fecha_creacion) is not None or isinstance(form.fecha_creacion, date):
        fecha_creacion = _coerce_date(form.fecha_creacion)
        if fecha_creacion is None:
            violations.append(FieldViolation("fecha_creacion", "Creation date must be YYYY-MM-DD"))

    total = _coerce_decimal(form.total)
    if total is None:
        violations.append(FieldViolation("total", "Total is required"))
    elif total < 0:
        violations.append(FieldViolation("total", "Total must be zero or positive"))

    abono = None
    if _clean_text(form.abono) is not None:
        abono = _coerce_decimal(form.abono)
        if abono is None:
            violations.append(FieldViolation("abono", "Deposit must be a number"))
        elif abono < 0:
            violations.append(FieldViolation("abono", "Deposit must be zero or positive"))
        elif total is not None and total >= 0 and abono > total:
            violations.append(FieldViolation("abono", "Deposit cannot exceed the total"))

    if (
        tipo == TransactionType.RENTA.value
        and fecha_entrega is not None
        and fecha_devolucion is not None
        and fecha_devolucion < fecha_entrega
    ):
        violations.append(FieldViolation("fecha_devolucion", "Return date cannot precede the delivery date"))

    _raise_if_invalid("Invalid transaction data", violations)

    return TransactionForm(
        cliente_nombre=nombre,
        cliente_domicilio=domicilio,
        cliente_telefono=telefono,
        id_producto=id_producto,
        tipo=tipo,
        fecha_entrega=fecha_entrega,
        fecha_devolucion=fecha_devolucion,
        abono=abono,
        total=total,
        fecha_creacion=fecha_creacion,
    )


def resolve_customer(context: RuntimeContext, nombre: str, domicilio: str, telefono: str) -> CustomerRow:
    """Reuse the customer matching ``(nombre, telefono)`` or create one.

    An existing customer keeps its stored address; ``domicilio`` is only used
    when a new record has to be created.
    """
    with context._lock:
        existing = find_customer_by_name_and_phone(context, nombre, telefono)
        if existing is not None:
            log.debug("Reusing customer %d for transaction", existing.id)
            return existing
        return create_customer(context, {"nombre": nombre, "domicilio": domicilio, "telefono": telefono})


def _random_folio_suffix() -> str:
    return secrets.token_bytes(FOLIO_RANDOM_BYTES).hex().upper()


def generate_folio(context: RuntimeContext) -> str:
    """Draw a ``VIO-XXXXXXXX`` folio not used by any stored transaction.

    Raises:
        InternalError: If ``FOLIO_MAX_ATTEMPTS`` draws all collide.
    """
    for attempt in range(1, FOLIO_MAX_ATTEMPTS + 1):
        folio = f"{FOLIO_PREFIX}{_random_folio_suffix()}"
        if get_transaction_by_folio(context, folio) is None:
            return folio
        log.warning("Folio collision on '%s' (attempt %d)", folio, attempt)
    log.error("Could not draw a unique folio after %d attempts", FOLIO_MAX_ATTEMPTS)
    raise InternalError("Unable to assign a folio to the transaction")


def _decrement_stock(context: RuntimeContext, product_id: int) -> ProductRow:
    current = context.store.get(EntityKind.PRODUCTS, product_id)
    updated = context.store.update(EntityKind.PRODUCTS, product_id, {"stock": current.stock - 1})
    if updated.stock < 0:
        log.warning("Product %d stock went negative (%d)", product_id, updated.stock)
    return updated


def create_transaction(context: RuntimeContext, form: TransactionForm) -> TransactionRow:
    """Validate a form and record the transaction it describes.

    The workflow validates every field, draws a unique folio, resolves or
    creates the customer, stores the transaction as ``pendiente`` and takes
    exactly one unit off the product's stock. Folio draw, customer
    resolution, insert and decrement run under the context lock so concurrent
    callers cannot lose a decrement or duplicate a customer. A failed folio
    draw writes nothing.

    When the product does not exist the outcome depends on
    ``settings.allow_missing_product``: if enabled the transaction is stored
    without touching stock; otherwise nothing is written.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        form (TransactionForm): Structured user intent.

    Returns:
        TransactionRow: The stored transaction.

    Raises:
        ValidationError: If the form is invalid.
        NotFoundError: If the product is missing and the policy forbids it.
        InternalError: If no unique folio could be drawn.
    """
    clean = validate_transaction_form(form)

    with context._lock:
        product = context.store.get(EntityKind.PRODUCTS, clean.id_producto)
        if product is None:
            if not context.settings.allow_missing_product:
                log.warning("Rejected transaction for unknown product '%s'", clean.id_producto)
                raise NotFoundError(f"Unknown product id: {clean.id_producto}")
            log.warning(
                "Product '%s' not found; recording transaction without a stock decrement",
                clean.id_producto,
            )

        # Folio first: it only reads, so exhaustion leaves nothing behind.
        folio = generate_folio(context)
        customer = resolve_customer(context, clean.cliente_nombre, clean.cliente_domicilio, clean.cliente_telefono)
        transaction = context.store.insert(
            EntityKind.TRANSACTIONS,
            {
                "folio": folio,
                "id_producto": clean.id_producto,
                "id_cliente": customer.id,
                "tipo": clean.tipo,
                "fecha_creacion": clean.fecha_creacion or _today(),
                "fecha_entrega": clean.fecha_entrega,
                "fecha_devolucion": clean.fecha_devolucion,
                "abono": clean.abono,
                "total": clean.total,
                "estado": TransactionStatus.PENDIENTE.value,
            },
        )
        if product is not None:
            _decrement_stock(context, product.id)

    log.info(
        "Recorded %s transaction '%s' for product %s and customer %d (total=%s)",
        transaction.tipo,
        transaction.folio,
        transaction.id_producto,
        transaction.id_cliente,
        transaction.total,
    )
    return transaction


def _coerce_status(estado: Any) -> str:
    value = _coerce_choice(TransactionStatus, estado)
    if value is None:
        allowed = ", ".join(status.value for status in TransactionStatus)
        log.error("Unsupported transaction status provided: %s", estado)
        raise ValidationError(
            "Invalid transaction status",
            [FieldViolation("estado", f"Status must be one of: {allowed}")],
        )
    return value


def update_transaction_status(context: RuntimeContext, transaction_id: int, estado: Any) -> TransactionRow:
    """Overwrite a transaction's status.

    Any known status may replace any other; no stock is touched. Calling it
    twice with the same value leaves the transaction unchanged.

    Raises:
        ValidationError: If ``estado`` is not a known status.
        NotFoundError: If ``transaction_id`` is unknown.
    """
    value = _coerce_status(estado)
    with context._lock:
        transaction = context.store.update(EntityKind.TRANSACTIONS, transaction_id, {"estado": value})
    if transaction is None:
        log.warning("Status update requested for unknown transaction '%s'", transaction_id)
        raise NotFoundError(f"Unknown transaction id: {transaction_id}")
    log.info("Transaction '%s' set to %s", transaction.folio, value)
    return transaction


def update_transaction_status_strict(context: RuntimeContext, transaction_id: int, estado: Any) -> TransactionRow:
    """Status update that also rejects ``devuelto`` on sales.

    Only rentals can be returned. Everything else is delegated to
    :func:`update_transaction_status`.
    """
    value = _coerce_status(estado)
    with context._lock:
        transaction = get_transaction(context, transaction_id)
        if value == TransactionStatus.DEVUELTO.value and transaction.tipo != TransactionType.RENTA.value:
            log.error("Refused to mark %s transaction '%s' as returned", transaction.tipo, transaction.folio)
            raise ValidationError(
                "Invalid transaction status",
                [FieldViolation("estado", "Only rentals can be marked as returned")],
            )
        return update_transaction_status(context, transaction_id, value)


def set_transaction_status(context: RuntimeContext, transaction_id: int, estado: Any) -> TransactionRow:
    """Route a status change through the policy chosen in the settings."""
    if context.settings.strict_status_updates:
        return update_transaction_status_strict(context, transaction_id, estado)
    return update_transaction_status(context, transaction_id, estado)


def list_transactions(context: RuntimeContext) -> List[TransactionRow]:
    return context.store.list(EntityKind.TRANSACTIONS)


def get_transaction(context: RuntimeContext, transaction_id: int) -> TransactionRow:
    """Resolve a transaction by id.

    Raises:
        NotFoundError: If ``transaction_id`` is unknown.
    """
    transaction = context.store.get(EntityKind.TRANSACTIONS, transaction_id)
    if transaction is None:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise NotFoundError(f"Unknown transaction id: {transaction_id}")
    return transaction


def get_transaction_by_folio(context: RuntimeContext, folio: str) -> Optional[TransactionRow]:
    for transaction in context.store.list(EntityKind.TRANSACTIONS):
        if transaction.folio == folio:
            return transaction
    return None


def enrich_transaction(context: RuntimeContext, transaction: TransactionRow) -> TransactionView:
    """Join a transaction with its product and customer by id."""
    return TransactionView(
        transaction=transaction,
        producto=context.store.get(EntityKind.PRODUCTS, transaction.id_producto),
        cliente=context.store.get(EntityKind.CUSTOMERS, transaction.id_cliente),
    )


def get_transaction_detail(context: RuntimeContext, transaction_id: int) -> TransactionView:
    """Return a transaction joined with its product and customer.

    Raises:
        NotFoundError: If ``transaction_id`` is unknown.
    """
    return enrich_transaction(context, get_transaction(context, transaction_id))


def list_recent_sales(context: RuntimeContext, limit: int = RECENT_SALES_LIMIT) -> List[TransactionView]:
    """Return the newest ``limit`` transactions by creation date, enriched.

    Transactions created on the same day keep their insertion order.
    """
    if limit < 0:
        raise ValidationError("Invalid limit", [FieldViolation("limit", "Limit must be zero or positive")])
    newest = sorted(
        context.store.list(EntityKind.TRANSACTIONS),
        key=lambda transaction: transaction.fecha_creacion,
        reverse=True,
    )
    return [enrich_transaction(context, transaction) for transaction in newest[:limit]]


def list_upcoming_returns(context: RuntimeContext, days: int = UPCOMING_RETURNS_DAYS) -> List[TransactionView]:
    """Return rentals due back within ``days`` days of today, soonest first.

    A rental qualifies when it is not ``devuelto`` and its return date falls
    in ``[today, today + days]`` (both ends inclusive).
    """
    if days < 0:
        raise ValidationError("Invalid window", [FieldViolation("days", "Days must be zero or positive")])
    today = _today()
    try:
        end = today + timedelta(days=days)
    except OverflowError as exc:
        raise ValidationError("Invalid window", [FieldViolation("days", "Days is out of range")]) from exc
    due = [
        transaction
        for transaction in context.store.list(EntityKind.TRANSACTIONS)
        if transaction.tipo == TransactionType.RENTA.value
        and transaction.estado != TransactionStatus.DEVUELTO.value
        and transaction.fecha_devolucion is not None
        and today <= transaction.fecha_devolucion <= end
    ]
    due.sort(key=lambda transaction: transaction.fecha_devolucion)
    return [enrich_transaction(context, transaction) for transaction in due]


def search_transactions(
    context: RuntimeContext,
    *,
    tipo: Optional[str] = None,
    estado: Optional[str] = None,
    query: Optional[str] = None,
) -> List[TransactionView]:
    """Filter transactions the way the transactions screen does.

    ``tipo`` and ``estado`` are exact filters. ``query`` is matched
    case-insensitively against the folio, the customer name and the product
    name. Results are newest first.
    """
    needle = (_clean_text(query) or "").lower()
    matches: List[TransactionView] = []
    for transaction in context.store.list(EntityKind.TRANSACTIONS):
        if tipo is not None and transaction.tipo != tipo:
            continue
        if estado is not None and transaction.estado != estado:
            continue
        view = enrich_transaction(context, transaction)
        if needle:
            haystacks = [transaction.folio]
            if view.cliente is not None:
                haystacks.append(view.cliente.nombre)
            if view.producto is not None:
                haystacks.append(view.producto.nombre)
            if not any(needle in text.lower() for text in haystacks):
                continue
        matches.append(view)
    matches.sort(key=lambda view: view.transaction.fecha_creacion, reverse=True)
    return matches


# ---------------------------------------------------------------------------
# Dashboard and reports
# ---------------------------------------------------------------------------


def compute_dashboard_stats(context: RuntimeContext) -> DashboardStats:
    """Scan products and transactions for the dashboard figures.

    ``ventas_mes`` adds up ``total`` for every transaction created on or after
    the first day of the current UTC month. ``rentas_activas`` counts rentals
    that are neither returned nor completed.
    """
    products = context.store.list(EntityKind.PRODUCTS)
    transactions = context.store.list(EntityKind.TRANSACTIONS)
    month_start = _today().replace(day=1)

    ventas_mes = sum(
        (transaction.total for transaction in transactions if transaction.fecha_creacion >= month_start),
        Decimal("0"),
    )
    rentas_activas = sum(
        1
        for transaction in transactions
        if transaction.tipo == TransactionType.RENTA.value
        and transaction.estado not in (TransactionStatus.DEVUELTO.value, TransactionStatus.COMPLETADO.value)
    )
    stats = DashboardStats(
        total_productos=len(products),
        ventas_mes=ventas_mes,
        rentas_activas=rentas_activas,
        cantidad_bajo_stock=len(list_low_stock_products(context)),
    )
    log.debug("Computed dashboard stats: %s", stats)
    return stats


def build_period_report(context: RuntimeContext, start: date, end: date, *, top: int = 5) -> PeriodReport:
    """Break down transactions created between ``start`` and ``end``.

    Totals and counts are grouped by type and status; ``top_products`` lists
    the most frequently transacted products, ties broken by product id.

    Raises:
        ValidationError: If ``start`` is after ``end``.
    """
    if start > end:
        raise ValidationError(
            "Invalid report period",
            [FieldViolation("start", "Start date must not be after the end date")],
        )

    in_period = [
        transaction
        for transaction in context.store.list(EntityKind.TRANSACTIONS)
        if start <= transaction.fecha_creacion <= end
    ]

    totals_by_tipo = {tipo.value: Decimal("0") for tipo in TransactionType}
    counts_by_tipo = {tipo.value: 0 for tipo in TransactionType}
    counts_by_estado = {status.value: 0 for status in TransactionStatus}
    product_counts: Counter[int] = Counter()
    for transaction in in_period:
        totals_by_tipo[transaction.tipo] = totals_by_tipo.get(transaction.tipo, Decimal("0")) + transaction.total
        counts_by_tipo[transaction.tipo] = counts_by_tipo.get(transaction.tipo, 0) + 1
        counts_by_estado[transaction.estado] = counts_by_estado.get(transaction.estado, 0) + 1
        product_counts[transaction.id_producto] += 1

    ranked = sorted(product_counts.items(), key=lambda item: (-item[1], item[0]))[:top]
    top_products = []
    for product_id, cantidad in ranked:
        product = context.store.get(EntityKind.PRODUCTS, product_id)
        top_products.append(
            ProductPopularity(
                id_producto=product_id,
                codigo=product.codigo if product else None,
                nombre=product.nombre if product else None,
                cantidad=cantidad,
            )
        )

    return PeriodReport(
        start=start,
        end=end,
        totals_by_tipo=totals_by_tipo,
        counts_by_tipo=counts_by_tipo,
        counts_by_estado=counts_by_estado,
        top_products=top_products,
    )


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def list_users(context: RuntimeContext) -> List[UserRow]:
    return context.store.list(EntityKind.USERS)


def get_user(context: RuntimeContext, user_id: int) -> UserRow:
    user = context.store.get(EntityKind.USERS, user_id)
    if user is None:
        log.warning("User lookup failed for id '%s'", user_id)
        raise NotFoundError(f"Unknown user id: {user_id}")
    return user


def find_user_by_username(context: RuntimeContext, username: str) -> Optional[UserRow]:
    for user in context.store.list(EntityKind.USERS):
        if user.username == username:
            return user
    return None


def create_user(
    context: RuntimeContext,
    *,
    username: str,
    password_hash: str,
    nombre: str,
    role: Any = UserRole.VENDEDOR,
) -> UserRow:
    """Register a user. The password hash is stored as given.

    Raises:
        ValidationError: If a field is empty or the role is unknown.
        ConflictError: If the username is taken.
    """
    violations: List[FieldViolation] = []
    clean_username = _clean_text(username)
    if clean_username is None:
        violations.append(FieldViolation("username", "Username is required"))
    if _clean_text(password_hash) is None:
        violations.append(FieldViolation("password_hash", "Password hash is required"))
    clean_nombre = _clean_text(nombre)
    if clean_nombre is None:
        violations.append(FieldViolation("nombre", "Name is required"))
    clean_role = _coerce_choice(UserRole, role)
    if clean_role is None:
        violations.append(FieldViolation("role", "Role must be 'admin' or 'vendedor'"))
    _raise_if_invalid("Invalid user data", violations)

    with context._lock:
        if find_user_by_username(context, clean_username) is not None:
            raise ConflictError(
                "Username already exists",
                [FieldViolation("username", f"Username '{clean_username}' is already in use")],
            )
        user = context.store.insert(
            EntityKind.USERS,
            {
                "username": clean_username,
                "password_hash": password_hash,
                "nombre": clean_nombre,
                "role": clean_role,
            },
        )
    log.info("Created %s user '%s'", user.role, user.username)
    return user


# ---------------------------------------------------------------------------
# Development data
# ---------------------------------------------------------------------------


# bcrypt hash of "admin123"
_SEED_ADMIN_HASH = "$2b$10$9YAV0F.Yyt1C7oPJz6VW2OYJyD/4jHU25Ga2bpSXP6n8K9zHgWpmK"

_SEED_PRODUCTS = (
    {"codigo": "VD-101", "nombre": "Vestido Noche Elegante",
     "descripcion": "Vestido largo de noche con detalles en pedrería", "tipo": "renta", "precio": "1200", "stock": 2},
    {"codigo": "VD-245", "nombre": "Vestido Cocktail Rosa",
     "descripcion": "Vestido corto para cocktail color rosa pastel", "tipo": "venta", "precio": "3500", "stock": 3},
    {"codigo": "VD-189", "nombre": "Vestido Largo Sirena",
     "descripcion": "Vestido estilo sirena en color azul marino", "tipo": "renta", "precio": "950", "stock": 4},
    {"codigo": "VD-322", "nombre": "Vestido Fiesta Brillante",
     "descripcion": "Vestido con lentejuelas para fiestas especiales", "tipo": "renta", "precio": "1500", "stock": 4},
    {"codigo": "VD-456", "nombre": "Vestido Gala Dorado",
     "descripcion": "Vestido largo de gala con detalles dorados", "tipo": "renta", "precio": "2000", "stock": 6},
)

_SEED_CUSTOMERS = (
    {"nombre": "María González", "domicilio": "Calle Pinos 123, Col. Bellavista, Uruapan", "telefono": "4521234567"},
    {"nombre": "Laura Pérez", "domicilio": "Av. Juárez 456, Col. Centro, Uruapan", "telefono": "4529876543"},
    {"nombre": "Claudia Hernández", "domicilio": "Callejón de las Flores 78, Col. Jardines, Uruapan",
     "telefono": "4523456789"},
)


def seed_development_data(context: RuntimeContext) -> bool:
    """Fill an empty store with the demo catalog, customers and transactions.

    Transactions go through :func:`create_transaction`, so stock is taken off
    exactly as in normal use. Returns ``False`` without writing anything when
    the store already holds products, customers or transactions.
    """
    with context._lock:
        if any(context.store.list(kind) for kind in (EntityKind.PRODUCTS, EntityKind.CUSTOMERS, EntityKind.TRANSACTIONS)):
            log.warning("Store already holds data; skipping development seed")
            return False

        if find_user_by_username(context, "admin") is None:
            create_user(
                context,
                username="admin",
                password_hash=_SEED_ADMIN_HASH,
                nombre="Administrador",
                role=UserRole.ADMIN,
            )
        products = [create_product(context, data) for data in _SEED_PRODUCTS]
        customers = [create_customer(context, data) for data in _SEED_CUSTOMERS]

        today = _today()
        day = timedelta(days=1)
        plan = (
            # (customer, product, tipo, created, delivered, returned, abono, total, estado)
            (0, 1, "venta", today - 2 * day, today - day, None, None, "3500", "completado"),
            (1, 0, "renta", today - day, today, today + day, "400", "1200", "entregado"),
            (2, 2, "renta", today - 2 * day, today - day, today + 2 * day, "300", "950", "entregado"),
            (0, 4, "renta", today - 3 * day, today - 2 * day, today + 7 * day, "600", "2000", "entregado"),
        )
        for cust, prod, tipo, created, delivered, returned, abono, total, estado in plan:
            customer = customers[cust]
            transaction = create_transaction(
                context,
                TransactionForm(
                    cliente_nombre=customer.nombre,
                    cliente_domicilio=customer.domicilio,
                    cliente_telefono=customer.telefono,
                    id_producto=products[prod].id,
                    tipo=tipo,
                    fecha_creacion=created,
                    fecha_entrega=delivered,
                    fecha_devolucion=returned,
                    abono=abono,
                    total=total,
                ),
            )
            update_transaction_status(context, transaction.id, estado)

    log.info("Seeded development data (%d products, %d customers)", len(products), len(customers))
    return True


__all__ = [
    "BoutiqueError",
    "FieldViolation",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "InternalError",
    "RuntimeContext",
    "TransactionForm",
    "TransactionView",
    "DashboardStats",
    "ProductPopularity",
    "PeriodReport",
    "load_runtime_context",
    "create_memory_context",
    "ensure_schema_version",
    "persist_context",
    "refresh_context",
    "list_products",
    "get_product",
    "get_product_by_codigo",
    "create_product",
    "update_product",
    "delete_product",
    "list_low_stock_products",
    "list_customers",
    "get_customer",
    "create_customer",
    "update_customer",
    "find_customer_by_name_and_phone",
    "validate_transaction_form",
    "resolve_customer",
    "generate_folio",
    "create_transaction",
    "update_transaction_status",
    "update_transaction_status_strict",
    "set_transaction_status",
    "list_transactions",
    "get_transaction",
    "get_transaction_by_folio",
    "enrich_transaction",
    "get_transaction_detail",
    "list_recent_sales",
    "list_upcoming_returns",
    "search_transactions",
    "compute_dashboard_stats",
    "build_period_report",
    "list_users",
    "get_user",
    "find_user_by_username",
    "create_user",
    "seed_development_data",
]
