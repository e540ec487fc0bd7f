"""Tests for money helpers."""

from decimal import Decimal

import pytest
from moneyed import Money

from randevu.platform.billing.money_utils import (
    MoneyHandler,
    format_amount,
    quantize_amount,
    to_decimal,
)

pytestmark = pytest.mark.unit


class TestMoneyHandler:
    def test_rejects_unknown_currency(self):
        with pytest.raises(ValueError, match="Invalid currency code"):
            MoneyHandler().validate_currency("XXQ")

    def test_currency_code_is_case_insensitive(self):
        assert MoneyHandler().validate_currency("try").code == "TRY"

    def test_unknown_locale_falls_back(self):
        handler = MoneyHandler(default_locale="zz_ZZ")

        assert handler.default_locale == "tr_TR"

    def test_create_money(self):
        money = MoneyHandler().create_money("12.50", "USD")

        assert money == Money(Decimal("12.50"), "USD")

    def test_round_money(self):
        rounded = MoneyHandler().round_money(Money(Decimal("10.005"), "EUR"))

        assert rounded.amount == Decimal("10.01")

    def test_zero_decimal_currency(self):
        assert quantize_amount(Decimal("1000.6"), "JPY") == Decimal("1001")


class TestHelpers:
    @pytest.mark.parametrize(
        "value,expected",
        [(Decimal("1.10"), Decimal("1.10")), ("2.5", Decimal("2.5")), (0.1, Decimal("0.1")), (3, Decimal("3"))],
    )
    def test_to_decimal(self, value, expected):
        assert to_decimal(value) == expected

    def test_quantize_rounds_half_up(self):
        assert quantize_amount(Decimal("2.345"), "TRY") == Decimal("2.35")

    def test_format_amount_mentions_value(self):
        formatted = format_amount(Decimal("1250.00"), "USD", locale="en_US")

        assert formatted == "$1,250.00"
