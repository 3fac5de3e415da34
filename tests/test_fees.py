from __future__ import annotations

from decimal import Decimal

import pytest

from settlement.domain.fees import (
    batch_payout_fee,
    payee_net_share,
    platform_fee,
    processor_fee,
    round_money,
    split_item,
)


def test_single_item_split_matches_worked_example():
    split = split_item(100.00, 1.0, 1.4, 0.20, 1)
    assert split.platform_fee == Decimal("1.00")
    assert split.processor_fee == Decimal("1.60")
    assert split.share == Decimal("97.40")


def test_fixed_processor_fee_is_shared_across_the_batch():
    assert processor_fee(10.00, 1.4, 0.20, 1) == Decimal("0.34")
    assert processor_fee(10.00, 1.4, 0.20, 4) == Decimal("0.19")


def test_processor_fee_rejects_empty_batch():
    with pytest.raises(ValueError):
        processor_fee(10.00, 1.4, 0.20, 0)


def test_rounding_is_half_up_to_cents():
    assert round_money(0.125) == Decimal("0.13")
    assert round_money("2.675") == Decimal("2.68")
    assert platform_fee(9.99, 5.0) == Decimal("0.50")


@pytest.mark.parametrize(
    ("total", "rate", "batch"),
    [(9.99, 5.0, 3), (0.99, 1.0, 7), (33.33, 1.0, 2), (250.00, 5.0, 1), (0.01, 1.0, 1)],
)
def test_item_split_conserves_the_item_total(total, rate, batch):
    split = split_item(total, rate, 1.4, 0.20, batch)
    assert split.share + split.platform_fee + split.processor_fee == round_money(total)
    assert split.share >= 0
    assert split.processor_fee >= 0


def test_share_never_goes_negative_on_tiny_items():
    split = split_item(0.10, 1.0, 1.4, 0.20, 1)
    assert split.share == Decimal("0.00")
    assert split.processor_fee == Decimal("0.10")
    assert split.platform_fee == Decimal("0.00")


def test_net_share_and_batch_fee():
    assert payee_net_share(20.00, 5.0, 1.4, 0.20, 2) == Decimal("18.62")
    assert batch_payout_fee(97.40, 2.0) == Decimal("1.95")
