"""Pricing and rewards calculator for the loyalty ledger.

Every function in this module is pure: it receives plain values, returns plain
values, and never touches the workbook. The commit and conversion engines in
:mod:`loyalty_ledger.core_logic` delegate all monetary and point arithmetic
here so the rounding rules live in exactly one place.

Monetary values are :class:`~decimal.Decimal` instances with two decimal
places. Binary floats are rejected outright rather than converted.
"""

from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Iterable, Tuple

from . import log
from .constants import MONEY_QUANTUM, POINTS_SPEND_UNIT, POINTS_TO_CASHBACK_RATE, ZERO_MONEY
from .errors import CashbackExceedsTotal, InvalidAmount, InvalidPoints, InvalidQuantity


def to_money(value: object) -> Decimal:
    """Normalise ``value`` into a two-decimal :class:`~decimal.Decimal`.

    Integers, decimal strings, and :class:`~decimal.Decimal` instances are
    accepted. Values that would lose precision when quantized to cents are
    rejected instead of silently rounded, because a rounded price or balance
    would drift across repeated credit and debit cycles.

    Args:
        value (object): Raw amount supplied by a command object, a worksheet
            cell, or the CLI.

    Returns:
        Decimal: The amount quantized to :data:`MONEY_QUANTUM`.

    Raises:
        InvalidAmount: If ``value`` is a float or bool, is not numeric, is not
            finite, or carries more than two decimal places.
    """
    if isinstance(value, (bool, float)):
        log.error("Amount validation failed: %r is a %s", value, type(value).__name__)
        raise InvalidAmount(f"Monetary values must be decimal, not {type(value).__name__}: {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
        quantized = amount.quantize(MONEY_QUANTUM) if amount.is_finite() else None
    except InvalidOperation as exc:
        log.error("Amount validation failed: %r is not numeric", value)
        raise InvalidAmount(f"Not a monetary value: {value!r}") from exc
    if quantized is None:
        log.error("Amount validation failed: %r is not finite", value)
        raise InvalidAmount(f"Monetary value must be finite: {value!r}")
    if quantized != amount:
        log.error("Amount validation failed: %r has more than two decimal places", value)
        raise InvalidAmount(f"Monetary value has more than two decimal places: {value!r}")
    return quantized


def format_money(amount: Decimal) -> str:
    """Render ``amount`` as fixed two-decimal text for the outer boundary."""
    return str(amount.quantize(MONEY_QUANTUM))


def require_positive_quantity(quantity: object) -> int:
    """Validate that a line-item quantity is a strictly positive integer.

    Args:
        quantity (object): Quantity supplied by a command object.

    Returns:
        int: ``quantity`` unchanged once validated.

    Raises:
        InvalidQuantity: If ``quantity`` is not an ``int`` (``bool`` excluded)
            or is zero or negative.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        log.error("Quantity validation failed: %r is not an integer", quantity)
        raise InvalidQuantity(f"Quantity must be a whole number: {quantity!r}")
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise InvalidQuantity("Quantity must be greater than zero")
    return quantity


def require_point_count(points: object, *, allow_zero: bool = True) -> int:
    """Validate that ``points`` is a non-negative integer point count."""
    if isinstance(points, bool) or not isinstance(points, int):
        log.error("Points validation failed: %r is not an integer", points)
        raise InvalidPoints(f"Points must be a whole number: {points!r}")
    if points < 0:
        log.error("Points validation failed: %s", points)
        raise InvalidPoints("Points cannot be negative")
    if points == 0 and not allow_zero:
        log.error("Points validation failed: %s", points)
        raise InvalidPoints("Points must be greater than zero")
    return points


def require_nonnegative_money(amount: Decimal) -> Decimal:
    """Validate that a monetary value is zero or positive.

    Raises:
        InvalidAmount: If ``amount`` is less than zero.
    """
    if amount < ZERO_MONEY:
        log.error("Monetary value validation failed: %s", amount)
        raise InvalidAmount("Amount must be zero or positive")
    return amount


def compute_line_total(unit_price: Decimal, quantity: int) -> Decimal:
    """Return ``unit_price * quantity`` for a single line item.

    Raises:
        InvalidQuantity: If ``quantity`` is not a positive integer.
    """
    require_positive_quantity(quantity)
    return (unit_price * quantity).quantize(MONEY_QUANTUM)


def compute_subtotal(lines: Iterable[Tuple[Decimal, int]]) -> Decimal:
    """Sum line totals over ``(unit_price, quantity)`` pairs.

    An empty iterable yields ``Decimal("0.00")``.
    """
    subtotal = ZERO_MONEY
    for unit_price, quantity in lines:
        subtotal += compute_line_total(unit_price, quantity)
    return subtotal


def compute_net_payable(subtotal: Decimal, cashback_requested: Decimal) -> Decimal:
    """Subtract redeemed cashback from the gross subtotal.

    Redeeming exactly the subtotal is allowed and yields a zero net payable.

    Args:
        subtotal (Decimal): Gross sum of all line totals.
        cashback_requested (Decimal): Cashback the customer wants to redeem.

    Returns:
        Decimal: ``subtotal - cashback_requested``.

    Raises:
        InvalidAmount: If ``cashback_requested`` is negative.
        CashbackExceedsTotal: If the result would be negative.
    """
    require_nonnegative_money(cashback_requested)
    net_payable = subtotal - cashback_requested
    if net_payable < ZERO_MONEY:
        log.warning(
            "Cashback %s exceeds subtotal %s",
            cashback_requested,
            subtotal,
        )
        raise CashbackExceedsTotal("Cashback used cannot exceed total amount")
    return net_payable


def compute_points_earned(net_payable: Decimal) -> int:
    """Award one point per full :data:`POINTS_SPEND_UNIT` of net payable.

    The quotient is always floored, so a partial unit earns nothing.

    Raises:
        InvalidAmount: If ``net_payable`` is negative.
    """
    require_nonnegative_money(net_payable)
    return int((net_payable / POINTS_SPEND_UNIT).to_integral_value(rounding=ROUND_FLOOR))


def compute_cashback_from_points(points: int) -> Decimal:
    """Convert a point count into its cashback equivalent.

    Args:
        points (int): Non-negative number of points to convert.

    Returns:
        Decimal: ``points * POINTS_TO_CASHBACK_RATE`` with two decimal places,
            e.g. 100 points -> ``Decimal("10.00")``.

    Raises:
        InvalidPoints: If ``points`` is negative, a bool, or not an integer.
    """
    require_point_count(points)
    return (Decimal(points) * POINTS_TO_CASHBACK_RATE).quantize(MONEY_QUANTUM)


__all__ = [
    "to_money",
    "format_money",
    "require_positive_quantity",
    "require_point_count",
    "require_nonnegative_money",
    "compute_line_total",
    "compute_subtotal",
    "compute_net_payable",
    "compute_points_earned",
    "compute_cashback_from_points",
]
