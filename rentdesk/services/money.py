"""
Money rules for reservations and rentals.

All amounts are primary-currency Decimals rounded to 2 places with
ROUND_HALF_UP at the stored-value boundary. Configuration (tax, currencies,
exchange rate) is always passed in explicitly as a MoneyConfig.
"""
import math
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Union

from .errors import InvalidAmount, InvalidDateRange

Number = Union[Decimal, int, str]

CENT = Decimal('0.01')
SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class MoneyConfig:
    tax_rate: Decimal = Decimal('18')
    apply_tax: bool = True
    currency: str = "USD"
    currency_symbol: str = "$"
    secondary_currency: str = "DOP"
    secondary_symbol: str = "RD$"
    exchange_rate: Decimal = Decimal('60')
    show_dual: bool = True


@dataclass(frozen=True)
class Quote:
    total_days: int
    daily_rate: Decimal
    subtotal: Decimal
    tax_rate: Decimal
    taxes: Decimal
    discount: Decimal
    extra_charges: Decimal
    total: Decimal


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # Go through str so 0.1 stays 0.1
        return Decimal(str(value))
    return Decimal(value)


def quantize_money(value: Number) -> Decimal:
    """Round to 2 decimal places, half-up."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def days_between(start: datetime, end: datetime) -> int:
    """Billable days: ceiling of the span in whole days, at least 1."""
    if end < start:
        raise InvalidDateRange("End date is before start date", start=start, end=end)
    seconds = (end - start).total_seconds()
    return max(1, math.ceil(seconds / SECONDS_PER_DAY))


def line_total(daily_rate: Number, days: int) -> Decimal:
    rate = to_decimal(daily_rate)
    if rate < 0:
        raise InvalidAmount(f"daily_rate cannot be negative, got: {rate}")
    return quantize_money(rate * days)


def apply_tax(subtotal: Number, tax_rate: Number, enabled: bool) -> Decimal:
    if not enabled:
        return Decimal('0.00')
    return quantize_money(to_decimal(subtotal) * to_decimal(tax_rate) / Decimal('100'))


def total(subtotal: Number, taxes: Number, discount: Number = 0, extra_charges: Number = 0) -> Decimal:
    """subtotal - discount + taxes + extra_charges; never negative."""
    parts = {
        "subtotal": to_decimal(subtotal),
        "taxes": to_decimal(taxes),
        "discount": to_decimal(discount),
        "extra_charges": to_decimal(extra_charges),
    }
    for name, value in parts.items():
        if value < 0:
            raise InvalidAmount(f"{name} cannot be negative, got: {value}")

    result = parts["subtotal"] - parts["discount"] + parts["taxes"] + parts["extra_charges"]
    if result < 0:
        raise InvalidAmount(
            f"Total cannot be negative, got: {result}",
            subtotal=parts["subtotal"],
            discount=parts["discount"],
        )
    return quantize_money(result)


def dual_display(amount_primary: Number, exchange_rate: Number) -> Decimal:
    """Secondary-currency amount for display only; never stored."""
    return quantize_money(to_decimal(amount_primary) * to_decimal(exchange_rate))


def quote(
    config: MoneyConfig,
    daily_rate: Number,
    start: datetime,
    end: datetime,
    discount: Number = 0,
    extra_charges: Number = 0,
) -> Quote:
    days = days_between(start, end)
    rate = quantize_money(daily_rate)
    subtotal = line_total(rate, days)
    taxes = apply_tax(subtotal, config.tax_rate, config.apply_tax)
    discount_d = quantize_money(discount)
    extra_d = quantize_money(extra_charges)
    return Quote(
        total_days=days,
        daily_rate=rate,
        subtotal=subtotal,
        tax_rate=to_decimal(config.tax_rate) if config.apply_tax else Decimal('0'),
        taxes=taxes,
        discount=discount_d,
        extra_charges=extra_d,
        total=total(subtotal, taxes, discount_d, extra_d),
    )


def format_currency(amount: Number, symbol: str = "$") -> str:
    return f"{symbol}{quantize_money(amount):,.2f}"


def format_dual(amount: Number, config: MoneyConfig) -> Dict[str, str]:
    primary = format_currency(amount, config.currency_symbol)
    secondary = format_currency(dual_display(amount, config.exchange_rate), config.secondary_symbol)
    return {
        "primary": primary,
        "secondary": secondary,
        "combined": f"{primary} ({secondary})" if config.show_dual else primary,
    }
