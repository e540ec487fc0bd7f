"""
Money and currency utilities using py-moneyed and Babel.

Plan prices and proration amounts are ``Decimal`` values in a plan's
currency. Rounding follows the currency's minor unit as reported by Babel.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from babel import Locale
from babel.core import UnknownLocaleError
from babel.numbers import format_currency, get_currency_precision
from moneyed import Currency, Money, get_currency
from moneyed.classes import CurrencyDoesNotExist

TRY = Currency("TRY")
USD = Currency("USD")
EUR = Currency("EUR")

DEFAULT_LOCALE = "tr_TR"


class MoneyHandler:
    """Central handler for money operations with proper error handling."""

    def __init__(self, default_currency: str = "TRY", default_locale: str = DEFAULT_LOCALE) -> None:
        self.default_currency = self.validate_currency(default_currency)
        self.default_locale = self._validate_locale(default_locale)

    def validate_currency(self, currency_code: str) -> Currency:
        """Validate and return Currency object."""
        try:
            return get_currency(currency_code.upper())
        except CurrencyDoesNotExist:
            raise ValueError(f"Invalid currency code: {currency_code}")

    def _validate_locale(self, locale_code: str) -> str:
        try:
            Locale.parse(locale_code)
            return locale_code
        except (UnknownLocaleError, ValueError):
            return DEFAULT_LOCALE

    def create_money(
        self, amount: int | float | Decimal | str, currency: str | None = None
    ) -> Money:
        """Create Money object with proper validation."""
        currency = currency or self.default_currency.code
        validated_currency = self.validate_currency(currency)
        return Money(amount=to_decimal(amount), currency=validated_currency)

    def get_currency_precision(self, currency_code: str) -> int:
        """Get decimal precision for a currency."""
        return get_currency_precision(currency_code.upper())

    def quantize(self, amount: Decimal, currency_code: str) -> Decimal:
        """Round half-up to the currency's minor unit."""
        precision = self.get_currency_precision(currency_code)
        return amount.quantize(Decimal(1).scaleb(-precision), rounding=ROUND_HALF_UP)

    def round_money(self, money: Money) -> Money:
        """Round Money to proper currency precision."""
        return Money(
            amount=self.quantize(money.amount, money.currency.code), currency=money.currency
        )

    def format_money(self, money: Money, locale: str | None = None, **kwargs: Any) -> str:
        """Format Money object with locale-aware formatting."""
        validated_locale = self._validate_locale(locale or self.default_locale)
        try:
            return format_currency(
                number=money.amount, currency=money.currency.code, locale=validated_locale, **kwargs
            )
        except (TypeError, ValueError):
            return f"{money.currency.code} {money.amount}"

    def format_amount(self, amount: Decimal, currency_code: str, locale: str | None = None) -> str:
        return self.format_money(self.create_money(amount, currency_code), locale)


def to_decimal(amount: int | float | Decimal | str) -> Decimal:
    """Convert to Decimal without binary float artefacts."""
    if isinstance(amount, Decimal):
        return amount
    if isinstance(amount, str):
        return Decimal(amount)
    return Decimal(str(amount))


# Global instance for convenience
money_handler = MoneyHandler()


def quantize_amount(amount: Decimal, currency_code: str) -> Decimal:
    """Round with the default handler."""
    return money_handler.quantize(amount, currency_code)


def format_amount(amount: Decimal, currency_code: str, locale: str | None = None) -> str:
    """Format with the default handler."""
    return money_handler.format_amount(amount, currency_code, locale)


__all__ = [
    "MoneyHandler",
    "money_handler",
    "to_decimal",
    "quantize_amount",
    "format_amount",
    "TRY",
    "USD",
    "EUR",
]
