"""
Tests for integer minor-unit Money
"""

import pytest
from decimal import Decimal

from ar_engine.money import Money, Currency, sum_money


class TestMoney:
    """Test Money arithmetic and conversion"""

    def test_from_decimal_rounds_half_up(self):
        assert Money.from_decimal("12.345", Currency.USD).minor == 1235
        assert Money.from_decimal(Decimal("0.004"), Currency.USD).minor == 0
        assert Money.from_decimal("1500", Currency.JPY).minor == 1500

    def test_rejects_non_integer_minor_units(self):
        with pytest.raises(TypeError):
            Money(10.5, Currency.USD)
        with pytest.raises(TypeError):
            Money(True, Currency.USD)

    def test_arithmetic(self):
        a = Money.from_decimal("100.00", Currency.USD)
        b = Money.from_decimal("25.50", Currency.USD)

        assert (a + b).minor == 12550
        assert (a - b).minor == 7450
        assert (b * 3).minor == 7650
        assert (-b).minor == -2550
        assert abs(Money(-5, Currency.USD)).minor == 5

    def test_comparisons(self):
        small = Money(100, Currency.USD)
        large = Money(200, Currency.USD)

        assert small < large
        assert large >= small
        assert min(large, small) == small
        assert Money.zero(Currency.USD).is_zero()
        assert large.is_positive()
        assert (small - large).is_negative()

    def test_currency_mismatch_rejected(self):
        with pytest.raises(ValueError):
            Money(100, Currency.USD) + Money(100, Currency.EUR)
        with pytest.raises(ValueError):
            Money(100, Currency.USD) < Money(100, Currency.EUR)

    def test_multiply_requires_integer(self):
        with pytest.raises(TypeError):
            Money(100, Currency.USD) * Decimal("1.5")

    def test_display_and_dict(self):
        money = Money(123456, Currency.USD)
        assert money.to_decimal() == Decimal("1234.56")
        assert money.to_string() == "USD 1,234.56"
        assert Money.from_dict(money.to_dict()) == money
        assert Money(1500, Currency.JPY).to_string() == "JPY 1,500"

    def test_currency_lookup(self):
        assert Currency.from_code("usd") == Currency.USD
        with pytest.raises(ValueError):
            Currency.from_code("XYZ")

    def test_sum_money(self):
        values = [Money(100, Currency.USD), Money(250, Currency.USD)]
        assert sum_money(values, Currency.USD).minor == 350
        assert sum_money([], Currency.USD).is_zero()
