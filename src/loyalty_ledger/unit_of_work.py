"""Atomic, isolated units of work over the ledger workbook.

The :class:`LedgerStore` owns the live ``openpyxl`` workbook together with an
in-memory index of every sheet. Nothing outside this module writes to either.
All mutations flow through a :class:`UnitOfWork`:

* Rows are locked individually (``(sheet, id)`` keys) with a bounded wait, so
  requests touching disjoint customers and products proceed in parallel while
  two requests touching the same row serialize their read-decide-write cycle.
* Reads inside a unit see the unit's own staged rows first, then committed
  state. Writes are staged on the unit and never touch the workbook until
  commit.
* Commit runs under a store-wide guard. Staged rows are written into the
  workbook, the workbook is saved atomically, and only then is the in-memory
  index swapped. Any failure on that path reloads the workbook from disk, so
  either every staged row becomes visible or none does.

Row locks are process-local. One process owns a workbook at a time.
"""

from __future__ import annotations

import itertools
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import SheetName
from .errors import ConcurrencyConflict, DuplicateEmail, UnitOfWorkTimeout


RowKey = Tuple[str, int]

_unit_ids = itertools.count(1)


@dataclass(frozen=True)
class StoreState:
    """Committed snapshot of every ledger sheet, keyed for fast lookups."""

    products: Dict[int, data_manager.ProductRow] = field(default_factory=dict)
    customers: Dict[int, data_manager.CustomerRow] = field(default_factory=dict)
    transactions: Tuple[data_manager.TransactionRow, ...] = ()
    transaction_items: Tuple[data_manager.TransactionItemRow, ...] = ()


def load_state(workbook: Workbook) -> StoreState:
    """Build a :class:`StoreState` by scanning every sheet of ``workbook``."""

    state = StoreState(
        products={row.product_id: row for row in data_manager.iter_products(workbook)},
        customers={row.customer_id: row for row in data_manager.iter_customers(workbook)},
        transactions=tuple(data_manager.iter_transactions(workbook)),
        transaction_items=tuple(data_manager.iter_transaction_items(workbook)),
    )
    log.debug(
        "Loaded ledger state: %d products, %d customers, %d transactions, %d items",
        len(state.products),
        len(state.customers),
        len(state.transactions),
        len(state.transaction_items),
    )
    return state


class RowLockRegistry:
    """Hand out one :class:`threading.Lock` per ``(sheet, id)`` row key.

    Each entry counts the units holding or waiting on it and is dropped once
    that count reaches zero, so keys for rows that were only probed (or never
    existed) do not accumulate.
    """

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._entries: Dict[RowKey, List] = {}

    def __len__(self) -> int:
        with self._mutex:
            return len(self._entries)

    def _checkout(self, key: RowKey) -> threading.Lock:
        with self._mutex:
            entry = self._entries.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._entries[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: RowKey) -> None:
        with self._mutex:
            entry = self._entries[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._entries[key]

    def acquire(self, key: RowKey, *, timeout: float) -> None:
        """Block until ``key`` is free or raise :class:`ConcurrencyConflict`."""
        if not self._checkout(key).acquire(timeout=timeout):
            self._checkin(key)
            log.warning("Timed out after %.2fs waiting for row lock %s", timeout, key)
            raise ConcurrencyConflict(f"Row {key[0]}#{key[1]} is locked by another unit of work")

    def release(self, key: RowKey) -> None:
        with self._mutex:
            entry = self._entries[key]
        entry[0].release()
        self._checkin(key)

    def is_locked(self, key: RowKey) -> bool:
        with self._mutex:
            entry = self._entries.get(key)
            return entry is not None and entry[0].locked()


class UnitOfWork:
    """Staging area for one atomic request against a :class:`LedgerStore`.

    Instances are created by :meth:`LedgerStore.unit_of_work` and must not be
    shared across threads.
    """

    def __init__(self, store: "LedgerStore", *, started_at: float) -> None:
        self.unit_id = next(_unit_ids)
        self.started_at = started_at
        self._store = store
        self._held: List[RowKey] = []
        self._products: Dict[int, data_manager.ProductRow] = {}
        self._customers: Dict[int, data_manager.CustomerRow] = {}
        self._new_product_ids: Set[int] = set()
        self._new_customer_ids: Set[int] = set()
        self._transactions: List[data_manager.TransactionRow] = []
        self._transaction_items: List[data_manager.TransactionItemRow] = []

    # -- locking ----------------------------------------------------------

    def lock(self, sheet: SheetName, *row_ids: int) -> None:
        """Acquire row locks for ``row_ids`` in ascending order.

        Locks already held by this unit are skipped, so calling ``lock`` again
        for the same row is a no-op.
        """
        for row_id in sorted(set(row_ids)):
            key = (sheet.value, row_id)
            if key in self._held:
                continue
            self._store.row_locks.acquire(key, timeout=self._store.settings.lock_timeout_seconds)
            self._held.append(key)

    def holds(self, sheet: SheetName, row_id: int) -> bool:
        return (sheet.value, row_id) in self._held

    def _require_lock(self, sheet: SheetName, row_id: int) -> None:
        if not self.holds(sheet, row_id):
            raise RuntimeError(f"Unit {self.unit_id} must lock {sheet.value}#{row_id} before writing it")

    def release_locks(self) -> None:
        while self._held:
            self._store.row_locks.release(self._held.pop())

    # -- reads ------------------------------------------------------------

    def product(self, product_id: int) -> Optional[data_manager.ProductRow]:
        staged = self._products.get(product_id)
        return staged if staged is not None else self._store.product(product_id)

    def customer(self, customer_id: int) -> Optional[data_manager.CustomerRow]:
        staged = self._customers.get(customer_id)
        return staged if staged is not None else self._store.customer(customer_id)

    def next_id(self, sheet: SheetName) -> int:
        return self._store.next_id(sheet)

    # -- staged writes ----------------------------------------------------

    def stage_product(self, record: data_manager.ProductRow, *, new: bool = False) -> None:
        self._require_lock(SheetName.PRODUCTS, record.product_id)
        if new:
            self._new_product_ids.add(record.product_id)
        self._products[record.product_id] = record

    def stage_customer(self, record: data_manager.CustomerRow, *, new: bool = False) -> None:
        self._require_lock(SheetName.CUSTOMERS, record.customer_id)
        if new:
            self._new_customer_ids.add(record.customer_id)
        self._customers[record.customer_id] = record

    def append_transaction(self, record: data_manager.TransactionRow) -> None:
        self._transactions.append(record)

    def append_transaction_item(self, record: data_manager.TransactionItemRow) -> None:
        self._transaction_items.append(record)

    @property
    def is_empty(self) -> bool:
        return not (self._products or self._customers or self._transactions or self._transaction_items)

    # -- commit support ---------------------------------------------------

    def staged_customers(self) -> List[data_manager.CustomerRow]:
        return list(self._customers.values())

    def write_to(self, workbook: Workbook) -> None:
        """Copy every staged row into ``workbook``."""
        for product_id, record in self._products.items():
            if product_id in self._new_product_ids:
                data_manager.append_product(workbook, record)
            else:
                data_manager.update_product(workbook, record)
        for customer_id, record in self._customers.items():
            if customer_id in self._new_customer_ids:
                data_manager.append_customer(workbook, record)
            else:
                data_manager.update_customer(workbook, record)
        for transaction in self._transactions:
            data_manager.append_transaction(workbook, transaction)
        for item in self._transaction_items:
            data_manager.append_transaction_item(workbook, item)

    def merge_into(self, state: StoreState) -> StoreState:
        """Return a new :class:`StoreState` with this unit's rows applied."""
        return StoreState(
            products={**state.products, **self._products},
            customers={**state.customers, **self._customers},
            transactions=state.transactions + tuple(self._transactions),
            transaction_items=state.transaction_items + tuple(self._transaction_items),
        )


class LedgerStore:
    """Shared, thread-safe owner of the ledger workbook and its read index."""

    def __init__(
        self,
        settings: data_manager.ConfigSettings,
        workbook: Workbook,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.row_locks = RowLockRegistry()
        self._clock = clock
        self._guard = threading.RLock()
        self._workbook = workbook
        self._state = load_state(workbook)
        self._sequences: Dict[str, int] = {
            SheetName.PRODUCTS.value: max(self._state.products, default=0),
            SheetName.CUSTOMERS.value: max(self._state.customers, default=0),
            SheetName.TRANSACTIONS.value: max((t.transaction_id for t in self._state.transactions), default=0),
            SheetName.TRANSACTION_ITEMS.value: max((i.item_id for i in self._state.transaction_items), default=0),
        }

    @property
    def workbook(self) -> Workbook:
        with self._guard:
            return self._workbook

    # -- committed reads --------------------------------------------------

    def product(self, product_id: int) -> Optional[data_manager.ProductRow]:
        with self._guard:
            return self._state.products.get(product_id)

    def customer(self, customer_id: int) -> Optional[data_manager.CustomerRow]:
        with self._guard:
            return self._state.customers.get(customer_id)

    def products(self) -> List[data_manager.ProductRow]:
        with self._guard:
            return list(self._state.products.values())

    def customers(self) -> List[data_manager.CustomerRow]:
        with self._guard:
            return list(self._state.customers.values())

    def transactions(self) -> List[data_manager.TransactionRow]:
        with self._guard:
            return list(self._state.transactions)

    def transaction_items(self) -> List[data_manager.TransactionItemRow]:
        with self._guard:
            return list(self._state.transaction_items)

    def snapshot(self) -> StoreState:
        """Return the committed :class:`StoreState` as one consistent view."""
        with self._guard:
            return self._state

    def next_id(self, sheet: SheetName) -> int:
        """Allocate the next identifier for ``sheet``.

        Identifiers handed to a unit that later rolls back are not reused.
        """
        with self._guard:
            self._sequences[sheet.value] += 1
            return self._sequences[sheet.value]

    # -- units of work ----------------------------------------------------

    @contextmanager
    def unit_of_work(self) -> Iterator[UnitOfWork]:
        """Yield a :class:`UnitOfWork` that commits on clean exit.

        Leaving the ``with`` block through an exception discards every staged
        row. Row locks are released on every exit path, after the commit has
        either landed or been undone.
        """
        unit = UnitOfWork(self, started_at=self._clock())
        try:
            yield unit
            self._commit(unit)
        except BaseException as exc:
            log.warning("Unit of work %d rolled back: %s", unit.unit_id, exc)
            raise
        finally:
            unit.release_locks()

    def _commit(self, unit: UnitOfWork) -> None:
        with self._guard:
            if unit.is_empty:
                return
            self._check_deadline(unit)
            self._check_unique_emails(unit)
            try:
                unit.write_to(self._workbook)
                data_manager.save_workbook(self._workbook, self.settings.data_file)
            except BaseException:
                log.error(
                    "Commit of unit %d failed; restoring workbook from '%s'",
                    unit.unit_id,
                    self.settings.data_file,
                )
                self._workbook = data_manager.refresh_workbook(self.settings.data_file)
                raise
            self._state = unit.merge_into(self._state)
        log.debug("Unit of work %d committed", unit.unit_id)

    def _check_deadline(self, unit: UnitOfWork) -> None:
        elapsed = self._clock() - unit.started_at
        if elapsed > self.settings.unit_timeout_seconds:
            raise UnitOfWorkTimeout(
                f"Unit {unit.unit_id} ran for {elapsed:.2f}s, "
                f"over the {self.settings.unit_timeout_seconds:.2f}s limit"
            )

    def _check_unique_emails(self, unit: UnitOfWork) -> None:
        claimed: Dict[str, int] = {
            row.email: row.customer_id for row in self._state.customers.values()
        }
        for record in unit.staged_customers():
            owner = claimed.get(record.email)
            if owner is not None and owner != record.customer_id:
                raise DuplicateEmail(f"Email already registered: {record.email}")
            claimed[record.email] = record.customer_id


__all__ = [
    "RowKey",
    "StoreState",
    "load_state",
    "RowLockRegistry",
    "UnitOfWork",
    "LedgerStore",
]
