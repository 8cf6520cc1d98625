"""Tests for invoice_kernel.domain.money."""

from decimal import Decimal, InvalidOperation

import pytest

from invoice_kernel.domain.money import (
    amounts_match,
    is_valid_amount,
    line_total,
    money_to_str,
    prices_equal,
    round_money,
    to_decimal,
)


class TestToDecimal:
    def test_none_is_zero(self):
        assert to_decimal(None) == Decimal("0")

    def test_float_uses_shortest_repr(self):
        assert to_decimal(10.1) == Decimal("10.1")

    def test_string_amount(self):
        assert to_decimal("7.00") == Decimal("7.00")

    def test_boolean_rejected(self):
        with pytest.raises(InvalidOperation):
            to_decimal(True)

    @pytest.mark.parametrize("value", ["abc", "NaN", "Infinity", object()])
    def test_invalid_amounts(self, value):
        assert not is_valid_amount(value)


class TestRounding:
    def test_half_even_rounds_down_on_even(self):
        assert round_money(Decimal("10.125")) == Decimal("10.12")

    def test_half_even_rounds_up_on_odd(self):
        assert round_money(Decimal("10.135")) == Decimal("10.14")

    def test_line_total(self):
        assert line_total(3, "7.00") == Decimal("21.00")
        assert line_total(3, "0.335") == Decimal("1.00")

    def test_money_to_str_two_places(self):
        assert money_to_str(Decimal("31")) == "31.00"


class TestTolerances:
    def test_prices_within_half_cent_are_equal(self):
        assert prices_equal("5.00", "5.004")
        assert prices_equal("5.00", "5.005")
        assert not prices_equal("5.00", "5.006")

    def test_amounts_within_one_cent_match(self):
        assert amounts_match("10.00", "10.01")
        assert not amounts_match("10.00", "10.02")

    def test_non_finite_never_equal(self):
        assert not prices_equal(Decimal("NaN"), Decimal("NaN"))
        assert not amounts_match(Decimal("Infinity"), Decimal("Infinity"))
