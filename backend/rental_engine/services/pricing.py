from __future__ import annotations
"""Pricing calculator for rental requests.

Pure functions over integer cents. The platform fee percent and the
processor's minimum chargeable amount are passed in by the caller (they come
from application config) rather than read from module constants.
"""
import math
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP

from rental_engine.errors import AmountTooSmall, DurationOutOfRange, ValidationError

DEFAULT_PLATFORM_FEE_PERCENT = 0.02
DEFAULT_MIN_CHARGE_CENTS = 50

ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class Quote:
    rental_days: int
    daily_rate_cents: int
    rental_fee_cents: int
    deposit_cents: int
    platform_fee_cents: int
    lender_payout_cents: int

    @property
    def total_cents(self) -> int:
        return self.rental_fee_cents + self.deposit_cents

    def as_dict(self):
        data = asdict(self)
        data['total_cents'] = self.total_cents
        return data


def _ceil_days(delta: timedelta) -> int:
    return math.ceil(delta / ONE_DAY)


def rental_days(start: datetime, end: datetime) -> int:
    """Whole rental days between start and end, rounding partial days up."""
    return _ceil_days(end - start)


def check_duration(days: int, min_days: int, max_days: int) -> int:
    if days < min_days or days > max_days:
        raise DurationOutOfRange(f'Duration must be between {min_days} and {max_days} days')
    return days


def platform_fee(rental_fee_cents: int, platform_fee_percent: float) -> int:
    fee = Decimal(rental_fee_cents) * Decimal(str(platform_fee_percent))
    return int(fee.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def price(
    daily_rate_cents: int,
    days: int,
    deposit_cents: int,
    platform_fee_percent: float = DEFAULT_PLATFORM_FEE_PERCENT,
    minimum_cents: int = DEFAULT_MIN_CHARGE_CENTS,
) -> Quote:
    """Derive fee, payout and deposit figures for a rental.

    A zero total is a free rental and needs no payment. Any positive total
    below ``minimum_cents`` cannot be charged by the processor.
    """
    if daily_rate_cents < 0 or deposit_cents < 0:
        raise ValidationError('Rates and deposits cannot be negative')
    if days <= 0:
        raise DurationOutOfRange('Rental must last at least one day')
    rental_fee_cents = daily_rate_cents * days
    fee_cents = platform_fee(rental_fee_cents, platform_fee_percent)
    quote = Quote(
        rental_days=days,
        daily_rate_cents=daily_rate_cents,
        rental_fee_cents=rental_fee_cents,
        deposit_cents=deposit_cents,
        platform_fee_cents=fee_cents,
        lender_payout_cents=rental_fee_cents - fee_cents,
    )
    if 0 < quote.total_cents < minimum_cents:
        raise AmountTooSmall()
    return quote


def days_overdue(end: datetime, now: datetime) -> int:
    if now <= end:
        return 0
    return _ceil_days(now - end)


def late_fee(late_fee_per_day_cents: int, days: int) -> int:
    return late_fee_per_day_cents * days


def format_cents(cents: int) -> str:
    return f'{Decimal(cents) / 100:.2f}'

__all__ = [
    'Quote', 'rental_days', 'check_duration', 'platform_fee', 'price', 'days_overdue',
    'late_fee', 'format_cents', 'DEFAULT_PLATFORM_FEE_PERCENT', 'DEFAULT_MIN_CHARGE_CENTS',
]
