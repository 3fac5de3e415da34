from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def to_decimal(value: float | int | str | Decimal) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value: float | int | str | Decimal) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def as_amount(value: Decimal) -> float:
    return float(round_money(value))


def platform_fee(item_total, rate_percent) -> Decimal:
    return round_money(to_decimal(item_total) * to_decimal(rate_percent) / 100)


def processor_fee(item_total, percent_rate, fixed_fee, item_count_in_batch: int) -> Decimal:
    """Percentage of the item plus an even share of the per-charge fixed fee."""
    if item_count_in_batch < 1:
        raise ValueError("item_count_in_batch must be at least 1")
    percent_part = to_decimal(item_total) * to_decimal(percent_rate) / 100
    fixed_part = to_decimal(fixed_fee) / item_count_in_batch
    return round_money(percent_part + fixed_part)


def payee_net_share(item_total, platform_rate_percent, processor_percent_rate, processor_fixed_fee, batch_size: int) -> Decimal:
    return round_money(
        to_decimal(item_total)
        - platform_fee(item_total, platform_rate_percent)
        - processor_fee(item_total, processor_percent_rate, processor_fixed_fee, batch_size)
    )


def batch_payout_fee(amount, fee_percent) -> Decimal:
    return round_money(to_decimal(amount) * to_decimal(fee_percent) / 100)


@dataclass(frozen=True)
class FeeSplit:
    item_total: Decimal
    platform_fee: Decimal
    processor_fee: Decimal
    share: Decimal


def split_item(item_total, platform_rate_percent, processor_percent_rate, processor_fixed_fee, batch_size: int) -> FeeSplit:
    """Split one item into payee share, platform fee and processor fee.

    The platform fee is taken as the remainder so the three parts always sum
    to the item total exactly; rounding never lands on the payee.
    """
    total = round_money(item_total)
    processor = processor_fee(total, processor_percent_rate, processor_fixed_fee, batch_size)
    share = payee_net_share(total, platform_rate_percent, processor_percent_rate, processor_fixed_fee, batch_size)
    if share < 0:
        share = Decimal("0.00")
    if processor > total:
        processor = total
    return FeeSplit(
        item_total=total,
        platform_fee=total - processor - share,
        processor_fee=processor,
        share=share,
    )
