from __future__ import annotations

import json

from settlement.cli import main
from settlement.domain.types import Order, Payout, PendingPayout
from settlement.reconciliation.rules import (
    check_conservation,
    check_refund_bound,
    check_single_order_per_reference,
    check_stock_replay,
    run_order_reconciliation,
)

NOW = "2026-01-01T00:00:00Z"


def order(**totals) -> Order:
    return Order(
        id="o1",
        order_number="FW-1",
        customer={"email": "buyer@example.com"},
        items=[{"id": "r1", "type": "digital", "price": 100.0, "payeeId": "a1", "payeeRole": "artist"}],
        totals={"subtotal": 100.0, "platformFee": 1.0, "processorFee": 1.6, "total": 100.0, **totals},
        created_at=NOW,
        updated_at=NOW,
    )


def payout(amount: float, **extra) -> Payout:
    return Payout(
        id=extra.pop("id", "p1"),
        payee_id="a1",
        payee_role="artist",
        order_id="o1",
        amount=amount,
        currency="gbp",
        rail=extra.pop("rail", "instant"),
        created_at=NOW,
        **extra,
    )


def test_conservation_counts_paid_and_pending_shares():
    assert check_conservation(order(), [payout(97.4)], []).passed

    held = PendingPayout(
        id="pp1",
        payee_id="a1",
        payee_role="artist",
        order_id="o1",
        amount=48.7,
        original_amount=97.4,
        currency="gbp",
        status="awaiting_connect",
        created_at=NOW,
    )
    assert check_conservation(order(), [], [held]).passed
    assert not check_conservation(order(), [], []).passed


def test_conservation_includes_batch_fee_and_ignores_retransfers():
    batch = payout(95.45, rail="batch", payout_service_fee=1.95)
    retransfer = payout(97.4, id="p2", reason="dispute_won_retransfer")
    assert check_conservation(order(), [batch, retransfer], []).passed


def test_refund_bound_flags_over_reversal_and_bad_status():
    assert check_refund_bound([payout(97.4, reversed_amount=48.7, status="partially_reversed")]).passed
    assert not check_refund_bound([payout(97.4, reversed_amount=98.0, status="reversed")]).passed
    assert not check_refund_bound([payout(97.4, reversed_amount=97.4, status="partially_reversed")]).passed


def test_single_order_per_reference():
    assert check_single_order_per_reference([{"id": "o1"}], "pi_1").passed
    assert not check_single_order_per_reference([{"id": "o1"}, {"id": "o2"}], "pi_1").passed


def test_stock_replay_detects_drift():
    movements = [
        {"id": "m1", "previousStock": 5, "newStock": 3, "stockDelta": -2},
        {"id": "m2", "previousStock": 3, "newStock": 4, "stockDelta": 1},
    ]
    assert check_stock_replay("r1", movements, 4).passed
    assert not check_stock_replay("r1", movements, 7).passed
    assert not check_stock_replay("r1", [{"id": "m3", "previousStock": 5, "newStock": 3, "stockDelta": -1}], 3).passed


def test_missing_order_report(store):
    results = run_order_reconciliation(store, "nope")
    assert [(r.rule, r.passed) for r in results] == [("order_exists", False)]


def test_cli_reconcile_and_init_db(services, seed, customer, capsys):
    result = services.assembler.create_order(
        cart=[{"id": "release-connected", "type": "vinyl", "price": 25.0, "releaseId": "release-connected"}],
        customer=customer,
        totals=None,
        payment_method="card",
        payment_reference="pi_cli",
    )

    assert main(["init-db"]) == 0
    capsys.readouterr()

    assert main(["reconcile", result.order_id]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["passed"] is True
    assert {r["rule"] for r in report["results"]} >= {"conservation", "refund_bound", "stock_replay:release-connected"}

    assert main(["reconcile", "missing-order"]) == 1
    capsys.readouterr()

    assert main(["retry-payouts", "--limit", "5"]) == 0
    assert json.loads(capsys.readouterr().out)["count"] == 0
