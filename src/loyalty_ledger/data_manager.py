"""Data access layer for the loyalty ledger.

This module provides low-level helpers that read from and write to the ledger
workbook. Business rules, locking, and atomicity belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and atomically persisting the
   Excel file.
3. Sheet operations: loading structured records and appending or rewriting
   individual rows.
"""


from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import KEY_COLUMNS, MONEY_QUANTUM, SHEET_COLUMNS, ZERO_MONEY, SheetName


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
CUSTOMERS_SHEET = SheetName.CUSTOMERS.value
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value
TRANSACTION_ITEMS_SHEET = SheetName.TRANSACTION_ITEMS.value

DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0
DEFAULT_UNIT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_CONFLICT_RETRIES = 3


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    unit_timeout_seconds: float = DEFAULT_UNIT_TIMEOUT_SECONDS
    max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: int
    name: str
    description: Optional[str]
    price: Decimal
    stock_quantity: int
    category: str
    created_at: datetime


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``Customers`` sheet."""

    customer_id: int
    name: str
    email: str
    phone: Optional[str]
    points_balance: int
    cashback_balance: Decimal
    created_at: datetime


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet."""

    transaction_id: int
    customer_id: int
    total_amount: Decimal
    points_earned: int
    cashback_used: Decimal
    created_at: datetime


@dataclass(frozen=True)
class TransactionItemRow:
    """In-memory view of a row from the ``TransactionItems`` sheet."""

    item_id: int
    transaction_id: int
    product_id: int
    quantity: int
    unit_price: Decimal
    total_price: Decimal


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. When no explicit path is given the function walks
    up from the current working directory toward the filesystem root looking
    for a file named ``CONFIG_FILE_NAME``. The first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
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

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. The ``[Ledger]`` section is optional
    and each of its entries falls back to a module default. Relative data file
    paths are expanded against ``base_path`` when provided, or against the
    current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If a ``[Ledger]`` tuning value is not numeric or is out of
            range.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    lock_timeout = parser.getfloat("Ledger", "LockTimeoutSeconds", fallback=DEFAULT_LOCK_TIMEOUT_SECONDS)
    unit_timeout = parser.getfloat("Ledger", "UnitTimeoutSeconds", fallback=DEFAULT_UNIT_TIMEOUT_SECONDS)
    max_retries = parser.getint("Ledger", "MaxConflictRetries", fallback=DEFAULT_MAX_CONFLICT_RETRIES)
    if lock_timeout <= 0 or unit_timeout <= 0:
        raise ValueError("Ledger timeouts must be greater than zero")
    if max_retries < 0:
        raise ValueError("MaxConflictRetries cannot be negative")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        lock_timeout_seconds=lock_timeout,
        unit_timeout_seconds=unit_timeout,
        max_conflict_retries=max_retries,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
        KeyError: If one of the ledger sheets is missing from the file.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    missing = [name for name in SHEET_COLUMNS if name not in wb.sheetnames]
    if missing:
        raise KeyError(f"Workbook '{data_file}' is missing sheets: {', '.join(missing)}")
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk so readers never observe a partial file.

    The workbook is first written to a hidden sibling file in the destination
    directory and then moved over the target with :func:`os.replace`, which is
    atomic on the same filesystem. A failure while writing leaves the previous
    file untouched and removes the partial copy.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    partial = dest.with_name(f".{dest.stem}.partial{dest.suffix}")
    try:
        workbook.save(partial)
        os.replace(partial, dest)
    except BaseException:
        partial.unlink(missing_ok=True)
        raise
    log.debug("Saved workbook '%s'", dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_rows(workbook: Workbook, sheet_name: str) -> Iterable[tuple]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    Yields:
        ProductRow: One structured row for each non-empty record in the sheet.
    """

    for raw in _iter_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_customers(workbook: Workbook) -> Iterable[CustomerRow]:
    """Iterate over the ``Customers`` worksheet and yield typed records."""

    for raw in _iter_rows(workbook, CUSTOMERS_SHEET):
        yield deserialize_customer(raw)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream transaction records from the ``Transactions`` worksheet."""

    for raw in _iter_rows(workbook, TRANSACTIONS_SHEET):
        yield deserialize_transaction(raw)


def iter_transaction_items(workbook: Workbook) -> Iterable[TransactionItemRow]:
    """Stream line items from the ``TransactionItems`` worksheet."""

    for raw in _iter_rows(workbook, TRANSACTION_ITEMS_SHEET):
        yield deserialize_transaction_item(raw)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_customer(workbook: Workbook, record: CustomerRow) -> None:
    """Append a customer record to the ``Customers`` worksheet."""

    workbook[CUSTOMERS_SHEET].append(serialize_customer(record))


def append_transaction(workbook: Workbook, record: TransactionRow) -> None:
    """Append a transaction record to the ``Transactions`` worksheet.

    Monetary fields are written as fixed two-decimal strings so the file never
    stores a binary float for money.
    """

    workbook[TRANSACTIONS_SHEET].append(serialize_transaction(record))


def append_transaction_item(workbook: Workbook, record: TransactionItemRow) -> None:
    """Append a line item to the ``TransactionItems`` worksheet."""

    workbook[TRANSACTION_ITEMS_SHEET].append(serialize_transaction_item(record))


def update_product(workbook: Workbook, record: ProductRow) -> None:
    """Rewrite the ``Products`` row whose ``ProductID`` matches ``record``.

    Raises:
        KeyError: If the product cannot be found.
    """

    _rewrite_row(workbook, PRODUCTS_SHEET, record.product_id, serialize_product(record))


def update_customer(workbook: Workbook, record: CustomerRow) -> None:
    """Rewrite the ``Customers`` row whose ``CustomerID`` matches ``record``.

    Raises:
        KeyError: If the customer cannot be found.
    """

    _rewrite_row(workbook, CUSTOMERS_SHEET, record.customer_id, serialize_customer(record))


def _rewrite_row(workbook: Workbook, sheet_name: str, key_value: int, values: Sequence[object]) -> None:
    row_index = locate_row(workbook, sheet_name, KEY_COLUMNS[sheet_name], key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} row not found: {key_value}")

    sheet = workbook[sheet_name]
    for column_index, value in enumerate(values, start=1):
        sheet.cell(row=row_index, column=column_index).value = value


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: object) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (object): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_cells = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def serialize_money(amount: Decimal) -> str:
    """Render a monetary value as a fixed two-decimal string cell."""

    return str(amount.quantize(MONEY_QUANTUM))


def serialize_timestamp(moment: datetime) -> str:
    """Render a timezone-aware timestamp as ISO-8601 text."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.isoformat()


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering."""

    return [
        record.product_id,
        record.name,
        record.description,
        serialize_money(record.price),
        record.stock_quantity,
        record.category,
        serialize_timestamp(record.created_at),
    ]


def serialize_customer(record: CustomerRow) -> list[object]:
    """Convert a customer dataclass into the worksheet column ordering."""

    return [
        record.customer_id,
        record.name,
        record.email,
        record.phone,
        record.points_balance,
        serialize_money(record.cashback_balance),
        serialize_timestamp(record.created_at),
    ]


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction dataclass into the transaction sheet column order."""

    return [
        record.transaction_id,
        record.customer_id,
        serialize_money(record.total_amount),
        record.points_earned,
        serialize_money(record.cashback_used),
        serialize_timestamp(record.created_at),
    ]


def serialize_transaction_item(record: TransactionItemRow) -> list[object]:
    """Convert a line item dataclass into the item sheet column order."""

    return [
        record.item_id,
        record.transaction_id,
        record.product_id,
        record.quantity,
        serialize_money(record.unit_price),
        serialize_money(record.total_price),
    ]


def _decimal_or_zero(raw: object) -> Decimal:
    # str() first so float cells written by other tools keep their short repr.
    return Decimal(str(raw)).quantize(MONEY_QUANTUM) if raw is not None else ZERO_MONEY


def _int_or_zero(raw: object) -> int:
    return int(raw) if raw is not None else 0


def _optional_text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def _parse_timestamp(raw: object) -> datetime:
    if isinstance(raw, datetime):
        moment = raw
    else:
        moment = datetime.fromisoformat(str(raw))
    # Naive values were written by hand; the ledger only ever writes UTC.
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Numeric columns are normalized into ``int`` and
    :class:`~decimal.Decimal`, and text columns are coerced to ``str`` to
    avoid surprises caused by Excel automatically interpreting numbers.
    """

    product_id, name, description, price, stock_quantity, category, created_at = raw_row[:7]
    return ProductRow(
        product_id=int(product_id),
        name=str(name),
        description=_optional_text(description),
        price=_decimal_or_zero(price),
        stock_quantity=_int_or_zero(stock_quantity),
        category=str(category) if category is not None else "",
        created_at=_parse_timestamp(created_at),
    )


def deserialize_customer(raw_row: Sequence[object]) -> CustomerRow:
    """Convert a raw worksheet row into a strongly typed customer record."""

    customer_id, name, email, phone, points_balance, cashback_balance, created_at = raw_row[:7]
    return CustomerRow(
        customer_id=int(customer_id),
        name=str(name),
        email=str(email),
        phone=_optional_text(phone),
        points_balance=_int_or_zero(points_balance),
        cashback_balance=_decimal_or_zero(cashback_balance),
        created_at=_parse_timestamp(created_at),
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw worksheet row into a strongly typed transaction record."""

    transaction_id, customer_id, total_amount, points_earned, cashback_used, created_at = raw_row[:6]
    return TransactionRow(
        transaction_id=int(transaction_id),
        customer_id=int(customer_id),
        total_amount=_decimal_or_zero(total_amount),
        points_earned=_int_or_zero(points_earned),
        cashback_used=_decimal_or_zero(cashback_used),
        created_at=_parse_timestamp(created_at),
    )


def deserialize_transaction_item(raw_row: Sequence[object]) -> TransactionItemRow:
    """Convert a raw worksheet row into a strongly typed line item record."""

    item_id, transaction_id, product_id, quantity, unit_price, total_price = raw_row[:6]
    return TransactionItemRow(
        item_id=int(item_id),
        transaction_id=int(transaction_id),
        product_id=int(product_id),
        quantity=_int_or_zero(quantity),
        unit_price=_decimal_or_zero(unit_price),
        total_price=_decimal_or_zero(total_price),
    )
