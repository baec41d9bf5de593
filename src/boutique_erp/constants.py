"""Enumerations and fixed values shared across the boutique modules.

The store, the business layer and the CLI all read their identifiers from
here so that sheet names, states and thresholds have one source of truth.
"""

from __future__ import annotations

from enum import Enum


# Schema version the workbook declared in config.ini must match.
EXPECTED_SCHEMA_VERSION = "1.0.0"

FOLIO_PREFIX = "VIO-"
FOLIO_RANDOM_BYTES = 4
FOLIO_MAX_ATTEMPTS = 5

LOW_STOCK_THRESHOLD = 5
# The product listing screen asks for at most ten low-stock rows.
LOW_STOCK_LISTING_LIMIT = 10

RECENT_SALES_LIMIT = 5
UPCOMING_RETURNS_DAYS = 7

PHONE_MIN_DIGITS = 8
PHONE_MAX_DIGITS = 15


class ProductType(str, Enum):
    """Whether a dress is offered for rent or for sale."""

    RENTA = "renta"
    VENTA = "venta"


class TransactionType(str, Enum):
    """Kind of deal recorded by a transaction."""

    RENTA = "renta"
    VENTA = "venta"


class TransactionStatus(str, Enum):
    """Lifecycle states of a transaction."""

    PENDIENTE = "pendiente"
    ENTREGADO = "entregado"
    DEVUELTO = "devuelto"
    COMPLETADO = "completado"


class UserRole(str, Enum):
    """Roles a boutique user can hold."""

    ADMIN = "admin"
    VENDEDOR = "vendedor"


class EntityKind(str, Enum):
    """Entity collections owned by the store.

    The values double as worksheet names in the workbook backend.
    """

    USERS = "Users"
    PRODUCTS = "Products"
    CUSTOMERS = "Customers"
    TRANSACTIONS = "Transactions"


SEQUENCES_SHEET = "Sequences"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "FOLIO_PREFIX",
    "FOLIO_RANDOM_BYTES",
    "FOLIO_MAX_ATTEMPTS",
    "LOW_STOCK_THRESHOLD",
    "LOW_STOCK_LISTING_LIMIT",
    "RECENT_SALES_LIMIT",
    "UPCOMING_RETURNS_DAYS",
    "PHONE_MIN_DIGITS",
    "PHONE_MAX_DIGITS",
    "ProductType",
    "TransactionType",
    "TransactionStatus",
    "UserRole",
    "EntityKind",
    "SEQUENCES_SHEET",
]
