"""
Fixed-point monetary arithmetic.

Amounts are held as integer cents. Decimal inputs are rounded half-to-even on the
way in and converted back exactly on the way out. The representable range is that
of a signed 64-bit integer of cents (``MAX_UNITS``); every constructor and
arithmetic result is checked against it and raises ``PriceOverflowError`` instead
of wrapping.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Context, Decimal, InvalidOperation
import math
import numbers

from quant_core.errors import InvalidInputError, PriceOverflowError

PRECISION = 2
SCALE = 10**PRECISION
MAX_UNITS = 2**63 - 1
MIN_UNITS = -(2**63)

_QUANTUM = Decimal(1).scaleb(-PRECISION)
_ONE = Decimal(1)
_MAX_DECIMAL = Decimal(MAX_UNITS).scaleb(-PRECISION)
# Wide enough that 19-digit amounts times 17-digit factors stay exact.
_CONTEXT = Context(prec=60, rounding=ROUND_HALF_EVEN)


def checked(units: int) -> int:
    """Return ``units`` unchanged or raise if outside the 64-bit cent range."""
    if units > MAX_UNITS or units < MIN_UNITS:
        raise PriceOverflowError(
            f"amount of {units} cents exceeds fixed-point range "
            f"[{MIN_UNITS}, {MAX_UNITS}]"
        )
    return units


def _as_decimal(value: object) -> Decimal:
    if isinstance(value, Decimal):
        dec = value
    elif isinstance(value, numbers.Integral):
        dec = Decimal(int(value))
    elif isinstance(value, numbers.Real):
        as_float = float(value)
        if not math.isfinite(as_float):
            raise InvalidInputError(f"non-finite monetary value: {value!r}")
        # repr() keeps the shortest round-tripping digits, so 0.1 stays 0.1.
        dec = Decimal(repr(as_float))
    elif isinstance(value, str):
        try:
            dec = Decimal(value)
        except InvalidOperation as exc:
            raise InvalidInputError(f"not a decimal value: {value!r}") from exc
    else:
        raise InvalidInputError(f"not a decimal value: {value!r}")
    if not dec.is_finite():
        raise InvalidInputError(f"non-finite monetary value: {value!r}")
    return dec


def to_units(value: object) -> int:
    """Convert a decimal amount (dollars) to integer cents, rounding half-to-even."""
    dec = _as_decimal(value)
    if abs(dec) > _MAX_DECIMAL + 1:
        raise PriceOverflowError(f"{value!r} exceeds the fixed-point range of {_MAX_DECIMAL}")
    quantized = dec.quantize(_QUANTUM, rounding=ROUND_HALF_EVEN, context=_CONTEXT)
    return checked(int(quantized.scaleb(PRECISION)))


def from_units(units: int) -> Decimal:
    """Exact decimal value of an amount in cents."""
    return Decimal(checked(units)).scaleb(-PRECISION)


def units_to_float(units: int) -> float:
    return float(from_units(units))


def scale_units(units: int, factor: object) -> int:
    """Multiply an amount by a weight or multiplier, rounding half-to-even to a cent."""
    factor_dec = _as_decimal(factor)
    if abs(factor_dec) > _MAX_DECIMAL:
        raise PriceOverflowError(f"scale factor {factor!r} exceeds the fixed-point range")
    product = _CONTEXT.multiply(Decimal(checked(units)), factor_dec)
    return checked(int(product.quantize(_ONE, rounding=ROUND_HALF_EVEN, context=_CONTEXT)))


def div_round(numerator: int, denominator: int) -> int:
    """Integer division rounded half-to-even (pure integer arithmetic)."""
    if denominator == 0:
        raise ZeroDivisionError("division by zero in fixed-point amount")
    if denominator < 0:
        numerator, denominator = -numerator, -denominator
    quotient, remainder = divmod(numerator, denominator)
    twice = 2 * remainder
    if twice > denominator or (twice == denominator and quotient % 2 == 1):
        quotient += 1
    return quotient


def add_units(*amounts: int) -> int:
    return checked(sum(checked(a) for a in amounts))


@dataclass(frozen=True, slots=True, order=True)
class Price:
    """Immutable non-negative price in integer cents."""

    units: int

    def __post_init__(self) -> None:
        if not isinstance(self.units, int) or isinstance(self.units, bool):
            raise InvalidInputError(f"price units must be int, got {type(self.units).__name__}")
        checked(self.units)
        if self.units < 0:
            raise InvalidInputError(f"price cannot be negative: {self.units} cents")

    @classmethod
    def from_decimal(cls, value: object) -> "Price":
        return cls(to_units(value))

    def to_decimal(self) -> Decimal:
        return from_units(self.units)

    def to_float(self) -> float:
        return units_to_float(self.units)

    def __add__(self, other: "Price") -> "Price":
        if not isinstance(other, Price):
            return NotImplemented
        return Price(checked(self.units + other.units))

    def __sub__(self, other: "Price") -> "Price":
        if not isinstance(other, Price):
            return NotImplemented
        return Price(checked(self.units - other.units))

    def scale(self, weight: object) -> "Price":
        return Price(scale_units(self.units, weight))

    def __str__(self) -> str:
        return f"{self.to_decimal():.{PRECISION}f}"
