# backend/tests/unit/core/test_money.py
"""Tests for the Decimal money helpers."""

from decimal import Decimal

import pytest

from mentr.core.money import ZERO, from_minor_units, round2, to_minor_units, to_money


class TestRound2:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("0.005", "0.01"),
            ("0.015", "0.02"),
            ("2.675", "2.68"),
            ("-1.005", "-1.01"),
            ("100", "100.00"),
        ],
    )
    def test_rounds_half_up_to_cents(self, value, expected):
        assert round2(value) == Decimal(expected)

    def test_float_input_goes_through_str(self):
        # 0.1 + 0.2 as a float is 0.30000000000000004
        assert round2(0.1 + 0.2) == Decimal("0.30")
        assert to_money(0.1) == Decimal("0.1")

    def test_decimal_passthrough_is_identity(self):
        value = Decimal("12.345")
        assert to_money(value) is value


class TestMinorUnits:
    def test_to_minor_units(self):
        assert to_minor_units(Decimal("75.00")) == 7500
        assert to_minor_units("19.999") == 2000
        assert to_minor_units(ZERO) == 0

    def test_from_minor_units(self):
        assert from_minor_units(4550) == Decimal("45.50")
        assert from_minor_units(1) == Decimal("0.01")
