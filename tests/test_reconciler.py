from __future__ import annotations

import pytest

from settlement.ledger.store import where
from settlement.reconciliation.rules import run_order_reconciliation


def place_order(services, release_id: str, price: float, reference: str, customer: dict) -> str:
    result = services.assembler.create_order(
        cart=[{"id": release_id, "type": "digital", "name": "Album", "price": price, "releaseId": release_id}],
        customer=customer,
        totals={"subtotal": price, "total": price},
        payment_method="card",
        payment_reference=reference,
    )
    return result.order_id


def only_payout(store, order_id: str) -> dict:
    rows = store.query("payouts", [where("orderId", "EQUAL", order_id), where("reason", "EQUAL", "sale")])
    assert len(rows) == 1
    return rows[0]


def test_partial_refund_reverses_proportional_share(services, seed, gateway, notifier, customer):
    order_id = place_order(services, "release-connected", 100.0, "pi_refund", customer)

    result = services.reconciler.on_refund("ch_1", 100.0, 50.0, payment_reference="pi_refund")

    assert result.applied is True
    assert [r.amount for r in result.reversals] == [48.7]
    payout = only_payout(seed, order_id)
    assert payout["reversedAmount"] == 48.7
    assert payout["status"] == "partially_reversed"
    assert seed.get("artists", "artist-connected")["totalEarnings"] == pytest.approx(48.7)
    assert gateway.reversals[0]["amount"] == 48.7

    order = seed.get("orders", order_id)
    assert order["refundStatus"] == "partially_refunded"
    assert order["status"] == "completed"
    assert seed.get("refunds", "ch_1")["amountRefunded"] == 50.0
    assert any(m.subject.startswith("Refund processed") for m in notifier.to("connected@example.com"))


def test_replayed_refund_event_is_a_no_op(services, seed, gateway, customer):
    place_order(services, "release-connected", 100.0, "pi_replay", customer)

    services.reconciler.on_refund("ch_2", 100.0, 50.0, payment_reference="pi_replay")
    replay = services.reconciler.on_refund("ch_2", 100.0, 50.0, payment_reference="pi_replay")

    assert replay.applied is False
    assert replay.detail == "refund already recorded"
    assert len(gateway.reversals) == 1


def test_successive_refunds_never_over_reverse(services, seed, customer):
    order_id = place_order(services, "release-connected", 100.0, "pi_steps", customer)

    services.reconciler.on_refund("ch_3", 100.0, 30.0, payment_reference="pi_steps")
    services.reconciler.on_refund("ch_3", 100.0, 60.0, payment_reference="pi_steps")
    assert only_payout(seed, order_id)["reversedAmount"] == 58.44

    final = services.reconciler.on_refund("ch_3", 100.0, 100.0, payment_reference="pi_steps")
    assert [r.amount for r in final.reversals] == [38.96]
    payout = only_payout(seed, order_id)
    assert payout["reversedAmount"] == payout["amount"] == 97.4
    assert payout["status"] == "reversed"
    assert seed.get("orders", order_id)["status"] == "refunded"
    assert seed.get("artists", "artist-connected")["totalEarnings"] == pytest.approx(0.0, abs=1e-9)

    late = services.reconciler.on_refund("ch_3", 100.0, 100.0, payment_reference="pi_steps")
    assert late.applied is False
    bound = [r for r in run_order_reconciliation(seed, order_id) if r.rule == "refund_bound"][0]
    assert bound.passed, bound.detail


def test_near_total_refund_marks_order_refunded_but_reverses_proportionally(services, seed, customer):
    order_id = place_order(services, "release-connected", 100.0, "pi_near", customer)

    result = services.reconciler.on_refund("ch_4", 100.0, 99.0, payment_reference="pi_near")

    assert [r.amount for r in result.reversals] == [96.43]
    payout = only_payout(seed, order_id)
    assert payout["reversedAmount"] == 96.43
    assert payout["status"] == "partially_reversed"
    assert seed.get("refunds", "ch_4")["isFullRefund"] is True
    order = seed.get("orders", order_id)
    assert order["refundStatus"] == "fully_refunded"
    assert order["status"] == "refunded"
    bound = [r for r in run_order_reconciliation(seed, order_id) if r.rule == "refund_bound"][0]
    assert bound.passed, bound.detail

    rest = services.reconciler.on_refund("ch_4", 100.0, 100.0, payment_reference="pi_near")
    assert [r.amount for r in rest.reversals] == [0.97]
    assert only_payout(seed, order_id)["status"] == "reversed"


def test_charge_is_matched_through_the_processor(services, seed, gateway, customer):
    place_order(services, "release-connected", 100.0, "pi_lookup", customer)
    gateway.charges["ch_lookup"] = "pi_lookup"

    assert services.reconciler.on_refund("ch_lookup", 100.0, 100.0).applied is True
    missing = services.reconciler.on_refund("ch_unknown", 100.0, 100.0)
    assert missing.applied is False
    assert missing.detail == "order not found"


def test_refund_shrinks_then_cancels_pending_earnings(services, seed, customer):
    order_id = place_order(services, "release-unconnected", 20.0, "pi_pending", customer)

    services.reconciler.on_refund("ch_5", 20.0, 10.0, payment_reference="pi_pending")
    pending = seed.query("pendingPayouts", [where("orderId", "EQUAL", order_id)])[0]
    assert pending["amount"] == 9.66
    assert pending["originalAmount"] == 19.32
    assert seed.get("artists", "artist-unconnected")["pendingBalance"] == pytest.approx(9.66)

    services.reconciler.on_refund("ch_5", 20.0, 20.0, payment_reference="pi_pending")
    pending = seed.query("pendingPayouts", [where("orderId", "EQUAL", order_id)])[0]
    assert pending["status"] == "cancelled"
    assert seed.get("artists", "artist-unconnected")["pendingBalance"] == pytest.approx(0.0, abs=1e-9)
    assert seed.query("payouts", [where("orderId", "EQUAL", order_id)]) == []


def test_batch_payouts_are_flagged_for_manual_recovery(services, seed, gateway, customer):
    order_id = place_order(services, "release-paypal", 50.0, "pi_batch_refund", customer)

    result = services.reconciler.on_refund("ch_6", 50.0, 50.0, payment_reference="pi_batch_refund")

    assert len(result.reversals) == 1
    assert result.reversals[0].failed is True
    assert result.reversals[0].error == "batch payouts need manual recovery"
    assert gateway.reversals == []
    assert only_payout(seed, order_id)["reversedAmount"] == 0.0
    assert seed.get("refunds", "ch_6")["events"][-1]["needsReview"] is True


def test_lost_dispute_records_net_impact(services, seed, gateway, customer):
    order_id = place_order(services, "release-connected", 100.0, "pi_dispute_lost", customer)

    opened = services.reconciler.on_dispute_opened("dp_1", "ch_7", 100.0, "fraudulent", payment_reference="pi_dispute_lost")
    assert opened.applied is True
    assert opened.amount_reversed == 97.4
    assert only_payout(seed, order_id)["status"] == "reversed"

    duplicate = services.reconciler.on_dispute_opened("dp_1", "ch_7", 100.0, "fraudulent", payment_reference="pi_dispute_lost")
    assert duplicate.applied is False
    assert len(gateway.reversals) == 1

    closed = services.reconciler.on_dispute_closed("dp_1", "lost")
    dispute = seed.get("disputes", "dp_1")
    assert closed.applied is True
    assert dispute["status"] == "lost"
    assert dispute["amountRecovered"] == 97.4
    assert dispute["netImpact"] == 2.6
    assert seed.get("orders", order_id)["disputeStatus"] == "lost"
    assert seed.get("artists", "artist-connected")["totalEarnings"] == pytest.approx(0.0, abs=1e-9)


def test_won_dispute_restores_earnings(services, seed, gateway, customer):
    order_id = place_order(services, "release-connected", 100.0, "pi_dispute_won", customer)
    before = seed.get("artists", "artist-connected")["totalEarnings"]

    services.reconciler.on_dispute_opened("dp_2", "ch_8", 100.0, "product_not_received", payment_reference="pi_dispute_won")
    closed = services.reconciler.on_dispute_closed("dp_2", "won")

    assert [r.state for r in closed.retransfers] == ["paid"]
    assert seed.get("artists", "artist-connected")["totalEarnings"] == pytest.approx(before)
    dispute = seed.get("disputes", "dp_2")
    assert dispute["netImpact"] == 0.0
    assert dispute["retransfers"][0]["amount"] == 97.4

    retransfer = seed.query("payouts", [where("orderId", "EQUAL", order_id), where("reason", "EQUAL", "dispute_won_retransfer")])
    assert len(retransfer) == 1
    assert retransfer[0]["originalPayoutId"] == only_payout(seed, order_id)["id"]

    again = services.reconciler.on_dispute_closed("dp_2", "won")
    assert again.applied is False
    assert len(gateway.transfers) == 2


def test_won_dispute_holds_when_payee_disconnected(services, seed, customer):
    order_id = place_order(services, "release-connected", 100.0, "pi_dispute_hold", customer)
    services.reconciler.on_dispute_opened("dp_3", "ch_9", 100.0, "fraudulent", payment_reference="pi_dispute_hold")
    seed.update("artists", "artist-connected", {"stripeConnectStatus": "restricted"})

    closed = services.reconciler.on_dispute_closed("dp_3", "won")

    assert [r.state for r in closed.retransfers] == ["awaiting_connect"]
    pending = seed.query("pendingPayouts", [where("orderId", "EQUAL", order_id)])
    assert len(pending) == 1
    assert pending[0]["reason"] == "dispute_won_retransfer"
    assert pending[0]["amount"] == 97.4


def test_closing_unknown_dispute_is_ignored(services, seed):
    result = services.reconciler.on_dispute_closed("dp_missing", "lost")
    assert result.applied is False
    assert result.detail == "dispute not found"
