from __future__ import annotations

from settlement.domain.stock import (
    MERCH_MOVEMENTS,
    VINYL_MOVEMENTS,
    StockLedger,
    apply_quantity,
    resolve_variant_key,
    stock_flags,
    variant_key_for,
)
from settlement.domain.types import OrderItem
from settlement.reconciliation.rules import check_stock_replay


def _vinyl(quantity: int = 1) -> OrderItem:
    return OrderItem(id="release-connected", type="vinyl", name="First Light LP", price=25.0, quantity=quantity, release_id="release-connected")


def test_variant_keys_are_normalised():
    assert variant_key_for("M", "Black") == "m_black"
    assert variant_key_for(None, None) == "onesize_default"
    assert variant_key_for("X Large", "Forest Green") == "x-large_forest-green"


def test_variant_fallbacks():
    stock = {"m_black": {"stock": 1}, "l_black": {"stock": 2}}
    assert resolve_variant_key(stock, "M", "Black") == "m_black"
    assert resolve_variant_key(stock, "L", "White") == "l_black"
    assert resolve_variant_key(stock, "S", "Black") is None
    assert resolve_variant_key({"onesize_default": {"stock": 4}}, "XL", "Red") == "onesize_default"


def test_apply_quantity_floors_at_zero():
    assert apply_quantity(2, 5, "sell") == 0
    assert apply_quantity(0, 1, "return") == 1


def test_stock_flags():
    flags = stock_flags({"a": {"stock": 2, "sold": 1}, "b": {"stock": 1, "sold": 0}}, 5)
    assert flags == {"totalStock": 3, "soldStock": 1, "isLowStock": True, "isOutOfStock": False}
    assert stock_flags({"a": {"stock": 0}}, 5)["isOutOfStock"] is True


def test_release_decrement_records_movement(seed):
    ledger = StockLedger(seed)
    outcome = ledger.decrement(_vinyl(quantity=3), "order-1", "FW-1")

    assert outcome.status == "ok"
    release = seed.get("releases", "release-connected")
    assert release["vinylStock"] == 7
    assert release["vinylSold"] == 3

    movements = ledger.movements_for("release-connected", VINYL_MOVEMENTS)
    assert len(movements) == 1
    assert movements[0]["type"] == "sell"
    assert movements[0]["stockDelta"] == -3
    assert movements[0]["previousStock"] == 10
    assert movements[0]["newStock"] == 7


def test_oversell_floors_at_zero_and_delta_matches_change(seed):
    ledger = StockLedger(seed)
    ledger.decrement(_vinyl(quantity=12), "order-1", "FW-1")

    assert seed.get("releases", "release-connected")["vinylStock"] == 0
    movement = ledger.movements_for("release-connected", VINYL_MOVEMENTS)[0]
    assert movement["stockDelta"] == -10
    assert movement["quantity"] == 12


def test_movements_replay_to_current_stock(seed):
    ledger = StockLedger(seed)
    item = _vinyl(quantity=2)
    ledger.decrement(item, "order-1", "FW-1")
    ledger.decrement(_vinyl(quantity=9), "order-2", "FW-2")
    ledger.refund(item, "order-1", "FW-1")

    movements = ledger.movements_for("release-connected", VINYL_MOVEMENTS)
    assert [m["type"] for m in movements] == ["sell", "sell", "return"]
    result = check_stock_replay("release-connected", movements, ledger.current_stock(item))
    assert result.passed, result.detail
    assert seed.get("releases", "release-connected")["vinylStock"] == 2


def test_merch_variant_decrement_updates_flags(seed):
    ledger = StockLedger(seed)
    item = OrderItem(id="tee-1", type="merch", name="Tee", price=20.0, quantity=1, product_id="tee-1", size="M", color="Black")
    outcome = ledger.decrement(item, "order-1", "FW-1")

    assert outcome.status == "ok"
    assert outcome.ref == "tee-1:m_black"
    product = seed.get("merch", "tee-1")
    assert product["variantStock"]["m_black"] == {"stock": 2, "sold": 1}
    assert product["totalStock"] == 2
    assert product["isLowStock"] is True
    assert ledger.movements_for("tee-1:m_black", MERCH_MOVEMENTS)[0]["variantKey"] == "m_black"


def test_listing_is_a_stock_of_one(seed):
    ledger = StockLedger(seed)
    item = OrderItem(id="listing-1", type="vinyl", name="Rare LP", price=25.0, seller_id="seller-1")

    ledger.decrement(item, "order-1", "FW-1")
    listing = seed.get("vinylListings", "listing-1")
    assert listing["status"] == "sold"
    assert listing["soldOrderId"] == "order-1"

    ledger.refund(item, "order-1", "FW-1")
    assert seed.get("vinylListings", "listing-1")["status"] == "active"
    deltas = [m["stockDelta"] for m in ledger.movements_for("listing:listing-1", VINYL_MOVEMENTS)]
    assert deltas == [-1, 1]


def test_untracked_items_are_skipped(seed):
    ledger = StockLedger(seed)
    missing = OrderItem(id="nope", type="vinyl", price=10.0, release_id="no-such-release")
    digital = OrderItem(id="release-connected", type="digital", price=10.0)

    assert ledger.decrement(missing, "order-1", "FW-1").status == "skipped"
    assert ledger.decrement(digital, "order-1", "FW-1").status == "skipped"
