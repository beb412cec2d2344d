"""
Test suite for amount handling

Money is Decimal everywhere; these tests pin down rounding and parsing.
"""

import pytest
from decimal import Decimal

from microlend.currency import (
    ZERO, decimal_from_string, format_amount, percentage, round_amount,
    sum_amounts, to_decimal
)


class TestRounding:
    """Test half-up rounding to cents"""

    def test_round_half_up(self):
        assert round_amount(Decimal('2.345')) == Decimal('2.35')
        assert round_amount(Decimal('2.344')) == Decimal('2.34')
        assert round_amount(Decimal('-2.345')) == Decimal('-2.35')

    def test_round_keeps_two_places(self):
        assert str(round_amount(Decimal('1100'))) == '1100.00'

    def test_sum_of_nothing_is_zero(self):
        assert sum_amounts([]) == ZERO
        assert sum_amounts(iter(())) == Decimal('0.00')

    def test_sum_amounts(self):
        assert sum_amounts([Decimal('0.10'), Decimal('0.20'), Decimal('-0.05')]) == Decimal('0.25')


class TestConversion:
    """Test conversion of caller input to Decimal"""

    def test_accepts_decimal_int_and_string(self):
        assert to_decimal(Decimal('12.50')) == Decimal('12.50')
        assert to_decimal(1000) == Decimal('1000')
        assert to_decimal("1100.00") == Decimal('1100.00')

    def test_rejects_float(self):
        with pytest.raises(ValueError):
            to_decimal(0.1)

    def test_rejects_bool(self):
        with pytest.raises(ValueError):
            to_decimal(True)

    def test_rejects_non_finite(self):
        with pytest.raises(ValueError):
            to_decimal(Decimal('NaN'))
        with pytest.raises(ValueError):
            to_decimal(Decimal('Infinity'))

    def test_rejects_garbage(self):
        with pytest.raises(ValueError):
            to_decimal("not money")
        with pytest.raises(ValueError):
            to_decimal(None)

    def test_string_with_symbol_and_separators(self):
        assert decimal_from_string("₦1,234.50") == Decimal('1234.50')
        assert decimal_from_string(" 10,000 ") == Decimal('10000')
        assert decimal_from_string("NGN 2,500.00") == Decimal('2500.00')
        assert decimal_from_string("-250.50") == Decimal('-250.50')

    @pytest.mark.parametrize("value", ["12abc", "1e3", "1.2.3", "12-3", "..", "₦", "NaN", "abc12"])
    def test_malformed_strings_are_rejected(self, value):
        with pytest.raises(ValueError):
            decimal_from_string(value)

    def test_empty_string(self):
        with pytest.raises(ValueError):
            decimal_from_string("")


class TestPercentage:
    """Test rate calculations"""

    def test_percentage(self):
        assert percentage(Decimal('1100'), Decimal('11000')) == Decimal('10.00')
        assert percentage(Decimal('1'), Decimal('3')) == Decimal('33.33')

    def test_zero_whole_gives_zero(self):
        assert percentage(Decimal('500'), ZERO) == ZERO

    def test_format_amount(self):
        assert format_amount(Decimal('1234567.5')) == "NGN 1,234,567.50"
