from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable

from settlement.domain.fees import round_money
from settlement.domain.sales_ledger import ledger_entries
from settlement.domain.stock import StockLedger
from settlement.domain.types import Order, Payout, PendingPayout, SalesLedgerEntry
from settlement.ledger.store import DocumentStore, where

TOLERANCE = Decimal("0.01")

# reasons under which money first left the platform for a sale
SETTLEMENT_REASONS = ("sale", "retry")


@dataclass
class ReconciliationResult:
    rule: str
    passed: bool
    detail: str


def check_single_order_per_reference(orders: list[dict[str, Any]], payment_reference: str | None) -> ReconciliationResult:
    if not payment_reference:
        return ReconciliationResult(rule="single_order_per_reference", passed=True, detail="no payment reference")
    ids = sorted(doc["id"] for doc in orders)
    return ReconciliationResult(
        rule="single_order_per_reference",
        passed=len(ids) <= 1,
        detail=f"payment_reference={payment_reference}, orders={ids}",
    )


def payee_settlement_total(payouts: Iterable[Payout], pending: Iterable[PendingPayout]) -> Decimal:
    """What payees were owed at settlement time, however it was paid."""
    total = Decimal("0.00")
    for payout in payouts:
        if payout.reason in SETTLEMENT_REASONS:
            total += round_money(payout.amount) + round_money(payout.payout_service_fee or 0)
    for row in pending:
        if row.reason == "sale" and row.status != "resolved":
            total += round_money(row.original_amount if row.original_amount is not None else row.amount)
    return total


def check_conservation(order: Order, payouts: list[Payout], pending: list[PendingPayout]) -> ReconciliationResult:
    totals = order.totals
    payees = payee_settlement_total(payouts, pending)
    accounted = (
        payees
        + round_money(totals.platform_fee)
        + round_money(totals.processor_fee)
        + round_money(totals.shipping)
        + round_money(totals.service_fees)
    )
    expected = round_money(totals.total)
    unattributed = [item.id for item in order.items if not item.payee_id]
    passed = abs(accounted - expected) <= TOLERANCE and not unattributed
    detail = (
        f"payees={payees}, platform_fee={totals.platform_fee:.2f}, processor_fee={totals.processor_fee:.2f}, "
        f"shipping={totals.shipping:.2f}, service_fees={totals.service_fees:.2f}, total={expected}"
    )
    if unattributed:
        detail += f", unattributed_items={unattributed}"
    return ReconciliationResult(rule="conservation", passed=passed, detail=detail)


def check_refund_bound(payouts: Iterable[Payout]) -> ReconciliationResult:
    for payout in payouts:
        reversed_amount = round_money(payout.reversed_amount)
        amount = round_money(payout.amount)
        if reversed_amount < 0 or reversed_amount > amount:
            return ReconciliationResult(
                rule="refund_bound",
                passed=False,
                detail=f"payout={payout.id} reversed={reversed_amount} amount={amount}",
            )
        if (payout.status == "reversed") != (reversed_amount == amount):
            return ReconciliationResult(
                rule="refund_bound",
                passed=False,
                detail=f"payout={payout.id} status={payout.status} reversed={reversed_amount} amount={amount}",
            )
    return ReconciliationResult(rule="refund_bound", passed=True, detail="ok")


def check_sales_ledger(order: Order, entries: list[SalesLedgerEntry]) -> ReconciliationResult:
    expected = {(item.payee_role, item.payee_id) for item in order.items if item.payee_id and item.payee_role}
    recorded = {(entry.payee_role, entry.payee_id) for entry in entries}
    missing = sorted(f"{role}:{payee}" for role, payee in expected - recorded)
    for entry in entries:
        fees = round_money(entry.platform_fee) + round_money(entry.processor_fee) + round_money(entry.payout_service_fee)
        if abs(fees - round_money(entry.total_fees)) > TOLERANCE or abs(
            round_money(entry.gross_total) - fees - round_money(entry.net_revenue)
        ) > TOLERANCE:
            return ReconciliationResult(
                rule="sales_ledger",
                passed=False,
                detail=f"entry={entry.id} gross={entry.gross_total} fees={entry.total_fees} net={entry.net_revenue}",
            )
    return ReconciliationResult(
        rule="sales_ledger",
        passed=not missing,
        detail=f"entries={len(entries)}, missing={missing}" if missing else f"entries={len(entries)}",
    )


def check_stock_replay(item_ref: str, movements: list[dict[str, Any]], current_stock: int | None) -> ReconciliationResult:
    rule = f"stock_replay:{item_ref}"
    if not movements:
        return ReconciliationResult(rule=rule, passed=True, detail="no movements")
    for movement in movements:
        if int(movement["newStock"]) < 0:
            return ReconciliationResult(rule=rule, passed=False, detail=f"negative stock in movement={movement['id']}")
        if int(movement["newStock"]) - int(movement["previousStock"]) != int(movement["stockDelta"]):
            return ReconciliationResult(rule=rule, passed=False, detail=f"delta mismatch in movement={movement['id']}")

    initial = int(movements[0]["previousStock"])
    replayed = initial + sum(int(movement["stockDelta"]) for movement in movements)
    passed = current_stock is None or replayed == current_stock
    return ReconciliationResult(
        rule=rule,
        passed=passed,
        detail=f"initial={initial}, replayed={replayed}, current={current_stock}",
    )


def run_order_reconciliation(store: DocumentStore, order_id: str) -> list[ReconciliationResult]:
    doc = store.get("orders", order_id)
    if doc is None:
        return [ReconciliationResult(rule="order_exists", passed=False, detail=f"order {order_id} not found")]
    order = Order.from_doc(doc)

    same_reference = []
    if order.payment_reference:
        same_reference = store.query("orders", [where("paymentReference", "EQUAL", order.payment_reference)])
    payouts = [Payout.from_doc(row) for row in store.query("payouts", [where("orderId", "EQUAL", order.id)])]
    pending = [PendingPayout.from_doc(row) for row in store.query("pendingPayouts", [where("orderId", "EQUAL", order.id)])]

    results = [
        check_single_order_per_reference(same_reference, order.payment_reference),
        check_conservation(order, payouts, pending),
        check_refund_bound(payouts),
        check_sales_ledger(order, ledger_entries(store, order.id)),
    ]

    ledger = StockLedger(store)
    seen: set[str] = set()
    for item in order.items:
        if not item.is_physical:
            continue
        item_ref = ledger.item_ref_for(item)
        if item_ref is None or item_ref in seen:
            continue
        seen.add(item_ref)
        movements = ledger.movements_for(item_ref, ledger.movement_collection(item))
        results.append(check_stock_replay(item_ref, movements, ledger.current_stock(item)))
    return results
