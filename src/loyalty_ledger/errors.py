"""Exception hierarchy for the loyalty ledger.

Every business-rule failure derives from :class:`BusinessRuleViolation` so the
presentation layer can map the whole family onto a single exit code. The
intermediate classes group failures by kind:

* :class:`MissingReferenceError` for customers, products, or transactions that
  do not exist.
* :class:`ValidationFailure` for malformed requests rejected before the store
  is touched (also a :class:`ValueError`).
* :class:`InsufficientResource` for stock, cashback, or points shortfalls.
* :class:`InvariantViolation` for requests that would break a ledger
  invariant, such as a negative net payable.

Concurrency problems are not business rules and live outside that tree.
"""

from __future__ import annotations


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced customer, product, or transaction is unknown."""


class CustomerNotFound(MissingReferenceError):
    pass


class ProductNotFound(MissingReferenceError):
    pass


class TransactionNotFound(MissingReferenceError):
    pass


class ValidationFailure(BusinessRuleViolation, ValueError):
    """Raised when request values are malformed or out of range."""


class InvalidQuantity(ValidationFailure):
    pass


class InvalidPoints(ValidationFailure):
    pass


class InvalidAmount(ValidationFailure):
    pass


class EmptyPurchase(ValidationFailure):
    pass


class DuplicateEmail(ValidationFailure):
    pass


class InsufficientResource(BusinessRuleViolation):
    """Raised when a balance or stock level cannot cover a request."""


class InsufficientStock(InsufficientResource):
    pass


class InsufficientCashback(InsufficientResource):
    pass


class InsufficientPoints(InsufficientResource):
    pass


class InvariantViolation(BusinessRuleViolation):
    """Raised when applying a request would break a ledger invariant."""


class CashbackExceedsTotal(InvariantViolation):
    pass


class ConcurrencyConflict(Exception):
    """Raised when a row lock cannot be acquired before the timeout expires."""


class UnitOfWorkTimeout(Exception):
    """Raised when a unit of work outlives its configured deadline."""


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "CustomerNotFound",
    "ProductNotFound",
    "TransactionNotFound",
    "ValidationFailure",
    "InvalidQuantity",
    "InvalidPoints",
    "InvalidAmount",
    "EmptyPurchase",
    "DuplicateEmail",
    "InsufficientResource",
    "InsufficientStock",
    "InsufficientCashback",
    "InsufficientPoints",
    "InvariantViolation",
    "CashbackExceedsTotal",
    "ConcurrencyConflict",
    "UnitOfWorkTimeout",
]
