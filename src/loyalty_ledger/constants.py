"""Enumerations and fixed rates shared across the loyalty ledger modules.

Centralises domain constants so that the data access layer (DAL), the
calculator, the ledgers, and the presentation layer rely on a single source of
truth for sheet layouts and loyalty arithmetic.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Mapping, Sequence


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Monetary values carry two decimal places end to end.
MONEY_QUANTUM = Decimal("0.01")
ZERO_MONEY = Decimal("0.00")

# One point per full 1000 currency units of net payable.
POINTS_SPEND_UNIT = Decimal("1000")

# 100 points convert to 10.00 of cashback.
POINTS_TO_CASHBACK_RATE = Decimal("0.1")


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    CUSTOMERS = "Customers"
    TRANSACTIONS = "Transactions"
    TRANSACTION_ITEMS = "TransactionItems"


SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.PRODUCTS.value: [
        "ProductID",
        "Name",
        "Description",
        "Price",
        "StockQuantity",
        "Category",
        "CreatedAt",
    ],
    SheetName.CUSTOMERS.value: [
        "CustomerID",
        "Name",
        "Email",
        "Phone",
        "PointsBalance",
        "CashbackBalance",
        "CreatedAt",
    ],
    SheetName.TRANSACTIONS.value: [
        "TransactionID",
        "CustomerID",
        "TotalAmount",
        "PointsEarned",
        "CashbackUsed",
        "CreatedAt",
    ],
    SheetName.TRANSACTION_ITEMS.value: [
        "ItemID",
        "TransactionID",
        "ProductID",
        "Quantity",
        "UnitPrice",
        "TotalPrice",
    ],
}

# Primary key column per sheet.
KEY_COLUMNS: Mapping[str, str] = {
    sheet: columns[0] for sheet, columns in SHEET_COLUMNS.items()
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MONEY_QUANTUM",
    "ZERO_MONEY",
    "POINTS_SPEND_UNIT",
    "POINTS_TO_CASHBACK_RATE",
    "SheetName",
    "SHEET_COLUMNS",
    "KEY_COLUMNS",
]
