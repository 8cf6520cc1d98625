"""
Money helpers for invoice amounts.

Responsibility:
    The one place that rounds and compares monetary values.  Amounts are
    ``Decimal`` everywhere in the kernel; floats coming from callers or
    from stored documents are converted through their string form so no
    binary-float artefacts leak into totals.

Invariants enforced:
    - Half-even rounding to the currency's minor unit (two places by
      default) for every computed line total.
    - Unit prices that differ by at most half a minor unit compare equal.
    - Invoice totals may deviate from the sum of line totals by at most one
      minor unit.

Failure modes:
    - ``to_decimal`` raises ``InvalidOperation`` for unparsable strings;
      callers that validate user input use ``is_valid_amount`` first.
"""

from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Any

MONEY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_EVEN

ZERO = Decimal("0")
MINOR_UNIT = Decimal("0.01")
HALF_MINOR_UNIT = Decimal("0.005")


def to_decimal(value: Any) -> Decimal:
    """
    Coerce a stored or caller-supplied amount to ``Decimal``.

    ``None`` becomes zero.  Floats go through ``repr`` so that ``10.1``
    becomes ``Decimal("10.1")`` rather than its binary expansion.
    """
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise InvalidOperation(f"Boolean is not an amount: {value!r}")
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(str(value))


def is_valid_amount(value: Any) -> bool:
    """True when ``value`` converts to a finite Decimal."""
    try:
        amount = to_decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        return False
    return amount.is_finite()


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to the minor unit.

    This is the only sanctioned rounding function for invoice amounts.

    Example:
        round_money(Decimal("10.125")) -> Decimal("10.12")
        round_money(Decimal("10.135")) -> Decimal("10.14")
    """
    quantum = Decimal(1).scaleb(-decimal_places)
    return value.quantize(quantum, rounding=rounding)


def line_total(quantity: Any, unit_price: Any, decimal_places: int = MONEY_DECIMAL_PLACES) -> Decimal:
    """quantity x unit_price, rounded to the minor unit."""
    return round_money(to_decimal(quantity) * to_decimal(unit_price), decimal_places)


def prices_equal(a: Any, b: Any, tolerance: Decimal = HALF_MINOR_UNIT) -> bool:
    """Unit prices within half a minor unit of each other are equal."""
    a, b = to_decimal(a), to_decimal(b)
    if not (a.is_finite() and b.is_finite()):
        return False
    return abs(a - b) <= tolerance


def amounts_match(a: Any, b: Any, tolerance: Decimal = MINOR_UNIT) -> bool:
    """Totals agree when they differ by no more than one minor unit."""
    a, b = to_decimal(a), to_decimal(b)
    if not (a.is_finite() and b.is_finite()):
        return False
    return abs(a - b) <= tolerance


def money_to_str(value: Decimal, decimal_places: int = MONEY_DECIMAL_PLACES) -> str:
    """Stable string form used in stored documents and audit payloads."""
    return str(round_money(value, decimal_places))
