"""Enumerations and fixed values shared across the retail POS modules.

The data access layer, the business logic layer and the CLI all import their
identifiers from here so sheet names, roles and payment methods are spelled
the same way everywhere.
"""

from __future__ import annotations

from enum import Enum


# Workbook layout version; config.ini must declare the same value.
EXPECTED_SCHEMA_VERSION = "2.0.0"

DEFAULT_CUSTOMER_NAME = "Walk-in Customer"
TOP_PRODUCTS_LIMIT = 10
RECENT_SALES_LIMIT = 10
LOW_STOCK_PREVIEW_LIMIT = 5


class PaymentMethod(str, Enum):
    """Enumerate the payment methods accepted at the till."""

    CASH = "cash"
    CARD = "card"
    CHECK = "check"
    DIGITAL = "digital"


class CategoryStatus(str, Enum):
    """Enumerate the lifecycle states of a product category."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class Role(str, Enum):
    """Enumerate the roles an operator can hold."""

    ADMIN = "ADMIN"
    CASHIER = "CASHIER"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    CATEGORIES = "Categories"
    PRODUCTS = "Products"
    USERS = "Users"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_CUSTOMER_NAME",
    "TOP_PRODUCTS_LIMIT",
    "RECENT_SALES_LIMIT",
    "LOW_STOCK_PREVIEW_LIMIT",
    "PaymentMethod",
    "CategoryStatus",
    "Role",
    "SheetName",
]
