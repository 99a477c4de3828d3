"""Row-level ledgers bound to a single :class:`~loyalty_ledger.unit_of_work.UnitOfWork`.

The ledgers are the only code allowed to stage changes to product stock and
customer balances. Each mutating method checks its non-negativity guard first
and only then stages the new row, so a rejected request never leaves a
partial change behind in the unit.
"""

from __future__ import annotations

import dataclasses
from datetime import datetime
from decimal import Decimal
from typing import List, Sequence, Tuple

from . import data_manager, log
from .constants import SheetName
from .errors import (
    CustomerNotFound,
    InsufficientCashback,
    InsufficientPoints,
    InsufficientStock,
    ProductNotFound,
)
from .pricing import (
    compute_line_total,
    require_nonnegative_money,
    require_point_count,
    require_positive_quantity,
    to_money,
)
from .unit_of_work import UnitOfWork


class ProductLedger:
    """Stock view of the ``Products`` sheet inside one unit of work."""

    def __init__(self, unit: UnitOfWork) -> None:
        self._unit = unit

    def lock(self, *product_ids: int) -> None:
        """Take row locks for several products at once, lowest id first."""
        self._unit.lock(SheetName.PRODUCTS, *product_ids)

    def get_for_update(self, product_id: int) -> data_manager.ProductRow:
        """Lock the product row and return its current state.

        Raises:
            ProductNotFound: If no product carries ``product_id``.
            ConcurrencyConflict: If the row lock cannot be acquired in time.
        """
        self._unit.lock(SheetName.PRODUCTS, product_id)
        product = self._unit.product(product_id)
        if product is None:
            log.warning("Product lookup failed for id '%s'", product_id)
            raise ProductNotFound(f"Unknown product id: {product_id}")
        return product

    def decrement_stock(self, product_id: int, quantity: int) -> data_manager.ProductRow:
        """Stage ``stock_quantity -= quantity`` for ``product_id``.

        Raises:
            InvalidQuantity: If ``quantity`` is not a positive integer.
            InsufficientStock: If ``quantity`` exceeds the available stock.
        """
        require_positive_quantity(quantity)
        product = self.get_for_update(product_id)
        if quantity > product.stock_quantity:
            log.warning(
                "Insufficient stock for product %s: requested %s, available %s",
                product_id,
                quantity,
                product.stock_quantity,
            )
            raise InsufficientStock(f"Insufficient stock for product {product.name}")
        updated = dataclasses.replace(product, stock_quantity=product.stock_quantity - quantity)
        self._unit.stage_product(updated)
        return updated

    def save(self, record: data_manager.ProductRow, *, new: bool = False) -> None:
        """Stage a full product row, used by catalog maintenance."""
        if new:
            self._unit.lock(SheetName.PRODUCTS, record.product_id)
        self._unit.stage_product(record, new=new)


class CustomerLedger:
    """Balance view of the ``Customers`` sheet inside one unit of work."""

    def __init__(self, unit: UnitOfWork) -> None:
        self._unit = unit

    def get_for_update(self, customer_id: int) -> data_manager.CustomerRow:
        """Lock the customer row and return its current state.

        Raises:
            CustomerNotFound: If no customer carries ``customer_id``.
            ConcurrencyConflict: If the row lock cannot be acquired in time.
        """
        self._unit.lock(SheetName.CUSTOMERS, customer_id)
        customer = self._unit.customer(customer_id)
        if customer is None:
            log.warning("Customer lookup failed for id '%s'", customer_id)
            raise CustomerNotFound(f"Customer with ID {customer_id} not found")
        return customer

    def debit_cashback(self, customer_id: int, amount: Decimal) -> data_manager.CustomerRow:
        """Stage ``cashback_balance -= amount``.

        Raises:
            InvalidAmount: If ``amount`` is negative.
            InsufficientCashback: If ``amount`` exceeds the balance.
        """
        amount = require_nonnegative_money(to_money(amount))
        customer = self.get_for_update(customer_id)
        if amount > customer.cashback_balance:
            log.warning(
                "Insufficient cashback for customer %s: requested %s, balance %s",
                customer_id,
                amount,
                customer.cashback_balance,
            )
            raise InsufficientCashback("Insufficient cashback balance")
        return self._stage(dataclasses.replace(customer, cashback_balance=customer.cashback_balance - amount))

    def credit_cashback(self, customer_id: int, amount: Decimal) -> data_manager.CustomerRow:
        amount = require_nonnegative_money(to_money(amount))
        customer = self.get_for_update(customer_id)
        return self._stage(dataclasses.replace(customer, cashback_balance=customer.cashback_balance + amount))

    def debit_points(self, customer_id: int, points: int) -> data_manager.CustomerRow:
        """Stage ``points_balance -= points``.

        Raises:
            InvalidPoints: If ``points`` is negative or not an integer.
            InsufficientPoints: If ``points`` exceeds the balance.
        """
        require_point_count(points)
        customer = self.get_for_update(customer_id)
        if points > customer.points_balance:
            log.warning(
                "Insufficient points for customer %s: requested %s, balance %s",
                customer_id,
                points,
                customer.points_balance,
            )
            raise InsufficientPoints("Insufficient points balance")
        return self._stage(dataclasses.replace(customer, points_balance=customer.points_balance - points))

    def credit_points(self, customer_id: int, points: int) -> data_manager.CustomerRow:
        require_point_count(points)
        customer = self.get_for_update(customer_id)
        return self._stage(dataclasses.replace(customer, points_balance=customer.points_balance + points))

    def register(self, record: data_manager.CustomerRow) -> None:
        """Stage a brand-new customer row."""
        self._unit.lock(SheetName.CUSTOMERS, record.customer_id)
        self._unit.stage_customer(record, new=True)

    def _stage(self, record: data_manager.CustomerRow) -> data_manager.CustomerRow:
        self._unit.stage_customer(record)
        return record


class TransactionJournal:
    """Append-only writer for the ``Transactions`` and ``TransactionItems`` sheets."""

    def __init__(self, unit: UnitOfWork) -> None:
        self._unit = unit

    def append(
        self,
        customer_id: int,
        total_amount: Decimal,
        points_earned: int,
        cashback_used: Decimal,
        lines: Sequence[Tuple[int, int, Decimal]],
        created_at: datetime,
    ) -> Tuple[data_manager.TransactionRow, List[data_manager.TransactionItemRow]]:
        """Stage one transaction header plus one item per ``lines`` entry.

        Args:
            customer_id (int): Purchasing customer.
            total_amount (Decimal): Gross subtotal before cashback.
            points_earned (int): Points awarded on the net amount.
            cashback_used (Decimal): Cashback redeemed against the purchase.
            lines (Sequence[tuple[int, int, Decimal]]): ``(product_id,
                quantity, unit_price)`` triples in request order.
            created_at (datetime): Timestamp shared by the header.

        Returns:
            tuple[TransactionRow, list[TransactionItemRow]]: The staged rows.
        """
        transaction = data_manager.TransactionRow(
            transaction_id=self._unit.next_id(SheetName.TRANSACTIONS),
            customer_id=customer_id,
            total_amount=total_amount,
            points_earned=points_earned,
            cashback_used=cashback_used,
            created_at=created_at,
        )
        self._unit.append_transaction(transaction)

        items: List[data_manager.TransactionItemRow] = []
        for product_id, quantity, unit_price in lines:
            item = data_manager.TransactionItemRow(
                item_id=self._unit.next_id(SheetName.TRANSACTION_ITEMS),
                transaction_id=transaction.transaction_id,
                product_id=product_id,
                quantity=quantity,
                unit_price=unit_price,
                total_price=compute_line_total(unit_price, quantity),
            )
            self._unit.append_transaction_item(item)
            items.append(item)

        log.debug(
            "Staged transaction %s with %d items for customer %s",
            transaction.transaction_id,
            len(items),
            customer_id,
        )
        return transaction, items


__all__ = ["ProductLedger", "CustomerLedger", "TransactionJournal"]
