"""Business logic layer for the loyalty ledger.

This module hosts the transaction commit engine, the points conversion engine
and the read services that sit on top of the ledger store. Every mutation runs
inside a :class:`~loyalty_ledger.unit_of_work.UnitOfWork`, so a request either
lands completely (stock, balances and journal entry together) or leaves no
trace at all.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, ZERO_MONEY, SheetName
from .errors import (
    ConcurrencyConflict,
    CustomerNotFound,
    EmptyPurchase,
    InsufficientCashback,
    InsufficientStock,
    InvalidQuantity,
    ProductNotFound,
    TransactionNotFound,
    ValidationFailure,
)
from .ledgers import CustomerLedger, ProductLedger, TransactionJournal
from .pricing import (
    compute_cashback_from_points,
    compute_net_payable,
    compute_points_earned,
    compute_subtotal,
    require_nonnegative_money,
    require_point_count,
    require_positive_quantity,
    to_money,
)
from .unit_of_work import LedgerStore, UnitOfWork


T = TypeVar("T")


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the shared ledger store used by the BLL."""

    settings: data_manager.ConfigSettings
    store: LedgerStore

    @property
    def workbook(self):
        return self.store.workbook


@dataclass(frozen=True)
class LineItem:
    """One ``(product, quantity)`` pair of a purchase request."""

    product_id: int
    quantity: int


@dataclass(frozen=True)
class PurchaseCommand:
    """User intent for committing a purchase."""

    customer_id: int
    items: Sequence[LineItem]
    cashback_used: Optional[Decimal] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ConvertPointsCommand:
    """User intent for redeeming points as cashback."""

    customer_id: int
    points_to_convert: int


@dataclass(frozen=True)
class CreateCustomerCommand:
    """User intent for registering a customer with empty balances."""

    name: str
    email: str
    phone: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class CreateProductCommand:
    """User intent for adding a product to the catalog."""

    name: str
    price: Decimal
    stock_quantity: int
    category: str
    description: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class UpdateProductCommand:
    """Partial catalog update; ``None`` fields are left unchanged.

    ``clear_description`` removes the description, which ``None`` alone cannot
    express.
    """

    product_id: int
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = None
    stock_quantity: Optional[int] = None
    category: Optional[str] = None
    clear_description: bool = False


@dataclass(frozen=True)
class LoyaltySummary:
    """Read-only snapshot of a customer's balances and purchase history."""

    customer_id: int
    name: str
    points_balance: int
    cashback_balance: Decimal
    total_transactions: int
    total_spent: Decimal


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` when provided, otherwise the current UTC time.

    Naive datetimes are taken to be UTC.
    """

    if candidate is None:
        return datetime.now(UTC)
    if candidate.tzinfo is None:
        return candidate.replace(tzinfo=UTC)
    return candidate


def _run_in_unit(context: RuntimeContext, action: str, work: Callable[[UnitOfWork], T]) -> T:
    """Execute ``work`` inside a fresh unit of work, retrying lock conflicts.

    Only :class:`ConcurrencyConflict` is retried, and at most
    ``settings.max_conflict_retries`` times. Every attempt starts from a new
    unit, so nothing staged by a failed attempt carries over. Business-rule
    failures propagate on the first occurrence.

    Args:
        context (RuntimeContext): Runtime context owning the store.
        action (str): Human readable label used in log messages.
        work (Callable[[UnitOfWork], T]): Body executed with the open unit.

    Returns:
        T: Whatever ``work`` returned once the unit committed.

    Raises:
        ConcurrencyConflict: When every attempt timed out on a row lock.
    """
    attempts = context.settings.max_conflict_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            with context.store.unit_of_work() as unit:
                return work(unit)
        except ConcurrencyConflict as exc:
            if attempt == attempts:
                log.error("Giving up on %s after %d attempts: %s", action, attempts, exc)
                raise
            log.warning("Retrying %s after lock conflict (attempt %d of %d)", action, attempt, attempts)
    raise AssertionError("unreachable")  # pragma: no cover


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the ledger store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Context holding the parsed settings and a
            :class:`LedgerStore` indexed from the workbook.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options or sheets are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=LedgerStore(settings, workbook))


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
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


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Re-read the workbook from disk and return a context with a fresh store.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, store=LedgerStore(context.settings, workbook))


# -- reads ------------------------------------------------------------------


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return every product in identifier order."""
    return sorted(context.store.products(), key=lambda product: product.product_id)


def get_product(context: RuntimeContext, product_id: int) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        ProductNotFound: If ``product_id`` is absent from the store.
    """
    product = context.store.product(product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise ProductNotFound(f"Unknown product id: {product_id}")
    return product


def list_customers(context: RuntimeContext) -> List[data_manager.CustomerRow]:
    return sorted(context.store.customers(), key=lambda customer: customer.customer_id)


def get_customer(context: RuntimeContext, customer_id: int) -> data_manager.CustomerRow:
    """Resolve a customer record by its identifier.

    Raises:
        CustomerNotFound: If ``customer_id`` is absent from the store.
    """
    customer = context.store.customer(customer_id)
    if customer is None:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise CustomerNotFound(f"Customer with ID {customer_id} not found")
    return customer


def list_transactions(
    context: RuntimeContext, *, customer_id: Optional[int] = None
) -> List[data_manager.TransactionRow]:
    """Return the journal in append order, optionally for one customer.

    An unknown ``customer_id`` simply yields an empty list.
    """
    transactions = context.store.transactions()
    if customer_id is None:
        return transactions
    return [transaction for transaction in transactions if transaction.customer_id == customer_id]


def get_transaction(context: RuntimeContext, transaction_id: int) -> data_manager.TransactionRow:
    """Retrieve a transaction header by its identifier.

    Raises:
        TransactionNotFound: If the journal lacks the supplied identifier.
    """
    for transaction in context.store.transactions():
        if transaction.transaction_id == transaction_id:
            return transaction
    log.warning("Transaction lookup failed for id '%s'", transaction_id)
    raise TransactionNotFound(f"Unknown transaction id: {transaction_id}")


def list_transaction_items(
    context: RuntimeContext, transaction_id: int
) -> List[data_manager.TransactionItemRow]:
    """Return the line items of one transaction in the order they were sold.

    Raises:
        TransactionNotFound: If ``transaction_id`` is unknown.
    """
    get_transaction(context, transaction_id)
    return [item for item in context.store.transaction_items() if item.transaction_id == transaction_id]


def get_customer_loyalty_info(context: RuntimeContext, customer_id: int) -> LoyaltySummary:
    """Summarise a customer's balances and lifetime purchases.

    ``total_spent`` sums the gross ``total_amount`` of each transaction, i.e.
    the amount before cashback was applied. Balances and history come from one
    committed snapshot, so a purchase landing mid-call is either fully counted
    or not counted at all.

    Raises:
        CustomerNotFound: If ``customer_id`` is unknown.
    """
    state = context.store.snapshot()
    customer = state.customers.get(customer_id)
    if customer is None:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise CustomerNotFound(f"Customer with ID {customer_id} not found")
    history = [transaction for transaction in state.transactions if transaction.customer_id == customer_id]
    total_spent = sum((transaction.total_amount for transaction in history), ZERO_MONEY)
    return LoyaltySummary(
        customer_id=customer.customer_id,
        name=customer.name,
        points_balance=customer.points_balance,
        cashback_balance=customer.cashback_balance,
        total_transactions=len(history),
        total_spent=total_spent,
    )


# -- transaction commit engine ----------------------------------------------


def _validate_purchase_shape(command: PurchaseCommand) -> Tuple[List[LineItem], Decimal]:
    """Reject malformed purchase requests before the store is touched."""

    items = list(command.items)
    if not items:
        log.error("Purchase for customer %s has no line items", command.customer_id)
        raise EmptyPurchase("A purchase needs at least one line item")
    for item in items:
        if isinstance(item.product_id, bool) or not isinstance(item.product_id, int):
            log.warning("Product lookup failed for id '%s'", item.product_id)
            raise ProductNotFound(f"Unknown product id: {item.product_id}")
        require_positive_quantity(item.quantity)

    raw_cashback = command.cashback_used if command.cashback_used is not None else ZERO_MONEY
    cashback_used = require_nonnegative_money(to_money(raw_cashback))
    return items, cashback_used


def create_transaction(context: RuntimeContext, command: PurchaseCommand) -> data_manager.TransactionRow:
    """Commit a purchase as one atomic unit of work.

    The engine locks the customer, then every distinct product in ascending
    id order, and validates in this order: customer exists, each line's
    product exists with enough stock for the cumulative quantity requested,
    cashback balance covers the redemption, and the redemption does not
    exceed the subtotal. Only then does it stage the stock decrements, the
    balance changes and the journal entry. Points are earned on the net
    amount, one per full 1000, floored.

    Args:
        context (RuntimeContext): Runtime context owning the store.
        command (PurchaseCommand): Customer, line items and optional cashback.

    Returns:
        data_manager.TransactionRow: The committed transaction header, whose
            ``total_amount`` is the gross subtotal.

    Raises:
        EmptyPurchase: If ``command.items`` is empty.
        InvalidQuantity: If any quantity is not a positive integer.
        InvalidAmount: If ``cashback_used`` is negative or malformed.
        CustomerNotFound: If the customer is unknown.
        ProductNotFound: If any product is unknown.
        InsufficientStock: If a product cannot cover its requested quantity.
        InsufficientCashback: If the redemption exceeds the cashback balance.
        CashbackExceedsTotal: If the redemption exceeds the subtotal.
        ConcurrencyConflict: If row locks stayed busy through every retry.
    """
    items, cashback_used = _validate_purchase_shape(command)
    timestamp = _resolve_timestamp(command.timestamp)

    def work(unit: UnitOfWork) -> data_manager.TransactionRow:
        customers = CustomerLedger(unit)
        products = ProductLedger(unit)
        journal = TransactionJournal(unit)

        customer = customers.get_for_update(command.customer_id)
        products.lock(*(item.product_id for item in items))

        requested: Dict[int, int] = {}
        lines: List[Tuple[int, int, Decimal]] = []
        for item in items:
            product = products.get_for_update(item.product_id)
            requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity
            if requested[item.product_id] > product.stock_quantity:
                log.warning(
                    "Insufficient stock for product %s: requested %s, available %s",
                    item.product_id,
                    requested[item.product_id],
                    product.stock_quantity,
                )
                raise InsufficientStock(f"Insufficient stock for product {product.name}")
            lines.append((item.product_id, item.quantity, product.price))

        subtotal = compute_subtotal((unit_price, quantity) for _, quantity, unit_price in lines)
        if cashback_used > customer.cashback_balance:
            log.warning(
                "Insufficient cashback for customer %s: requested %s, balance %s",
                customer.customer_id,
                cashback_used,
                customer.cashback_balance,
            )
            raise InsufficientCashback("Insufficient cashback balance")
        net_payable = compute_net_payable(subtotal, cashback_used)
        points_earned = compute_points_earned(net_payable)

        for product_id, quantity, _ in lines:
            products.decrement_stock(product_id, quantity)
        customers.credit_points(customer.customer_id, points_earned)
        customers.debit_cashback(customer.customer_id, cashback_used)

        transaction, _ = journal.append(
            customer_id=customer.customer_id,
            total_amount=subtotal,
            points_earned=points_earned,
            cashback_used=cashback_used,
            lines=lines,
            created_at=timestamp,
        )
        return transaction

    transaction = _run_in_unit(context, "purchase", work)
    log.info(
        "Committed transaction %s for customer %s (total=%s, cashback=%s, points=%s)",
        transaction.transaction_id,
        transaction.customer_id,
        transaction.total_amount,
        transaction.cashback_used,
        transaction.points_earned,
    )
    return transaction


# -- points conversion engine -----------------------------------------------


def convert_points_to_cashback(context: RuntimeContext, command: ConvertPointsCommand) -> data_manager.CustomerRow:
    """Redeem points for cashback at the fixed conversion rate.

    Both balance changes commit together or not at all.

    Args:
        context (RuntimeContext): Runtime context owning the store.
        command (ConvertPointsCommand): Customer and number of points.

    Returns:
        data_manager.CustomerRow: The customer row as committed.

    Raises:
        InvalidPoints: If ``points_to_convert`` is not an integer >= 1.
        CustomerNotFound: If the customer is unknown.
        InsufficientPoints: If the customer holds fewer points than requested.
    """
    points = require_point_count(command.points_to_convert, allow_zero=False)
    cashback = compute_cashback_from_points(points)

    def work(unit: UnitOfWork) -> data_manager.CustomerRow:
        customers = CustomerLedger(unit)
        customers.get_for_update(command.customer_id)
        customers.debit_points(command.customer_id, points)
        return customers.credit_cashback(command.customer_id, cashback)

    customer = _run_in_unit(context, "points conversion", work)
    log.info(
        "Converted %s points to %s cashback for customer %s",
        points,
        cashback,
        customer.customer_id,
    )
    return customer


# -- catalog and registry writes --------------------------------------------


def _require_text(value: Optional[str], label: str) -> str:
    text = (value or "").strip()
    if not text:
        log.error("%s validation failed: %r", label, value)
        raise ValidationFailure(f"{label} is required")
    return text


def _require_stock(quantity: object) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
        log.error("Stock validation failed: %r", quantity)
        raise InvalidQuantity("Stock quantity must be a whole number of zero or more")
    return quantity


def create_customer(context: RuntimeContext, command: CreateCustomerCommand) -> data_manager.CustomerRow:
    """Register a customer with zero points and zero cashback.

    Raises:
        ValidationFailure: If the name or email is blank.
        DuplicateEmail: If another customer already uses the email.
    """
    name = _require_text(command.name, "Customer name")
    email = _require_text(command.email, "Email")
    phone = command.phone.strip() if command.phone and command.phone.strip() else None
    timestamp = _resolve_timestamp(command.timestamp)

    def work(unit: UnitOfWork) -> data_manager.CustomerRow:
        record = data_manager.CustomerRow(
            customer_id=unit.next_id(SheetName.CUSTOMERS),
            name=name,
            email=email,
            phone=phone,
            points_balance=0,
            cashback_balance=ZERO_MONEY,
            created_at=timestamp,
        )
        CustomerLedger(unit).register(record)
        return record

    customer = _run_in_unit(context, "customer registration", work)
    log.info("Registered customer %s <%s>", customer.customer_id, customer.email)
    return customer


def create_product(context: RuntimeContext, command: CreateProductCommand) -> data_manager.ProductRow:
    """Add a product to the catalog.

    Raises:
        ValidationFailure: If the name or category is blank.
        InvalidAmount: If the price is negative or not a two-decimal amount.
        InvalidQuantity: If the stock is negative or not an integer.
    """
    name = _require_text(command.name, "Product name")
    category = _require_text(command.category, "Category")
    price = require_nonnegative_money(to_money(command.price))
    stock = _require_stock(command.stock_quantity)
    timestamp = _resolve_timestamp(command.timestamp)

    def work(unit: UnitOfWork) -> data_manager.ProductRow:
        record = data_manager.ProductRow(
            product_id=unit.next_id(SheetName.PRODUCTS),
            name=name,
            description=command.description,
            price=price,
            stock_quantity=stock,
            category=category,
            created_at=timestamp,
        )
        ProductLedger(unit).save(record, new=True)
        return record

    product = _run_in_unit(context, "product creation", work)
    log.info("Added product %s '%s' (price=%s, stock=%s)", product.product_id, product.name, price, stock)
    return product


def update_product(context: RuntimeContext, command: UpdateProductCommand) -> data_manager.ProductRow:
    """Apply a partial update to one product under its row lock.

    Raises:
        ProductNotFound: If the product is unknown.
        ValidationFailure: If a supplied name or category is blank.
        InvalidAmount: If a supplied price is invalid.
        InvalidQuantity: If a supplied stock level is invalid.
    """
    changes: Dict[str, object] = {}
    if command.name is not None:
        changes["name"] = _require_text(command.name, "Product name")
    if command.category is not None:
        changes["category"] = _require_text(command.category, "Category")
    if command.price is not None:
        changes["price"] = require_nonnegative_money(to_money(command.price))
    if command.stock_quantity is not None:
        changes["stock_quantity"] = _require_stock(command.stock_quantity)
    if command.clear_description:
        changes["description"] = None
    elif command.description is not None:
        changes["description"] = command.description

    def work(unit: UnitOfWork) -> data_manager.ProductRow:
        products = ProductLedger(unit)
        updated = dataclasses.replace(products.get_for_update(command.product_id), **changes)
        products.save(updated)
        return updated

    product = _run_in_unit(context, "product update", work)
    log.info("Updated product %s (%s)", product.product_id, ", ".join(sorted(changes)) or "no changes")
    return product


__all__ = [
    "RuntimeContext",
    "LineItem",
    "PurchaseCommand",
    "ConvertPointsCommand",
    "CreateCustomerCommand",
    "CreateProductCommand",
    "UpdateProductCommand",
    "LoyaltySummary",
    "load_runtime_context",
    "ensure_schema_version",
    "refresh_context",
    "list_products",
    "get_product",
    "list_customers",
    "get_customer",
    "list_transactions",
    "get_transaction",
    "list_transaction_items",
    "get_customer_loyalty_info",
    "create_transaction",
    "convert_points_to_cashback",
    "create_customer",
    "create_product",
    "update_product",
]
