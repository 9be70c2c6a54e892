"""Enumerations shared across the POS ledger modules.

Keeps the identifiers that are persisted in the workbook (movement types,
statuses, sheet names) in one place so the data access layer, the business
logic layer and the CLI agree on their exact spelling.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class MovementType(str, Enum):
    """Enumerate the stock movements recorded in the stock history.

    Reports downstream match on these values, so they must not change.
    """

    SALE = "sale"
    PURCHASE = "purchase"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    INITIAL_STOCK = "initial_stock"
    SALE_CANCELLATION = "sale_cancellation"


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms for sales."""

    CASH = "cash"
    CARD = "card"


class SaleOrigin(str, Enum):
    """Where a sale was rung up."""

    POS = "pos"
    ONLINE = "online"


class SaleStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    RECEIVED = "received"


class OnlineOrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    SUPPLIERS = "Suppliers"
    CLIENTS = "Clients"
    CATEGORIES = "Categories"
    SALES = "Sales"
    PURCHASES = "Purchases"
    ONLINE_ORDERS = "OnlineOrders"
    CART = "Cart"
    STOCK_HISTORY = "StockHistory"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MovementType",
    "PaymentMethod",
    "SaleOrigin",
    "SaleStatus",
    "PurchaseStatus",
    "OnlineOrderStatus",
    "SheetName",
]
