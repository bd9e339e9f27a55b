from __future__ import annotations

from decimal import Decimal

import numpy as np
import pytest

from quant_core.errors import InvalidInputError, PriceOverflowError
from quant_core.fixed_point import MAX_UNITS, Price, add_units, div_round, from_units, scale_units, to_units


def test_to_units_rounds_half_to_even() -> None:
    assert to_units("1.005") == 100
    assert to_units("1.015") == 102
    assert to_units("2.675") == 268
    assert to_units(0.125) == 12
    assert to_units(Decimal("-0.005")) == 0


def test_float_inputs_use_shortest_repr() -> None:
    assert to_units(0.1) == 10
    assert to_units(np.float64(19.99)) == 1999
    assert to_units(np.int64(7)) == 700


def test_price_round_trip_is_exact() -> None:
    price = Price.from_decimal("12.34")
    assert price.units == 1234
    assert price.to_decimal() == Decimal("12.34")
    assert str(price) == "12.34"
    assert from_units(-150) == Decimal("-1.50")


def test_price_arithmetic_and_ordering() -> None:
    a = Price.from_decimal("10.00")
    b = Price.from_decimal("2.50")
    assert (a + b).units == 1250
    assert (a - b).units == 750
    assert b < a
    assert a.scale(0.333).units == 333


def test_scale_and_division_round_half_to_even() -> None:
    assert scale_units(10001, 0.5) == 5000
    assert scale_units(10003, 0.5) == 5002
    assert div_round(5, 2) == 2
    assert div_round(7, 2) == 4
    assert div_round(-5, 2) == -2
    assert div_round(10, -4) == -2
    with pytest.raises(ZeroDivisionError):
        div_round(1, 0)


def test_overflow_is_reported_not_wrapped() -> None:
    with pytest.raises(PriceOverflowError):
        to_units(Decimal(MAX_UNITS))
    with pytest.raises(PriceOverflowError):
        Price(MAX_UNITS) + Price(1)
    with pytest.raises(PriceOverflowError):
        add_units(MAX_UNITS, 1)
    with pytest.raises(PriceOverflowError):
        scale_units(MAX_UNITS, 2)
    assert Price(MAX_UNITS).units == MAX_UNITS


def test_invalid_prices_are_rejected() -> None:
    with pytest.raises(InvalidInputError):
        Price(-1)
    with pytest.raises(InvalidInputError):
        to_units(float("nan"))
    with pytest.raises(InvalidInputError):
        to_units("abc")
    with pytest.raises(InvalidInputError):
        Price(1.5)  # type: ignore[arg-type]
    with pytest.raises(InvalidInputError):
        Price.from_decimal("-0.01")


def test_round_trip_over_representable_amounts() -> None:
    rng = np.random.default_rng(17)
    samples = [
        *rng.integers(0, 10**6, size=200).tolist(),
        *rng.integers(-(2**62), 2**62, size=200).tolist(),
        MAX_UNITS,
        -MAX_UNITS,
        0,
    ]
    for units in samples:
        assert to_units(from_units(units)) == units
        assert to_units(str(from_units(units))) == units
