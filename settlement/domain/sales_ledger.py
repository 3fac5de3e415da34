from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable

from settlement.core.errors import DocumentStoreError
from settlement.domain import outcomes
from settlement.domain.fees import as_amount, round_money, to_decimal
from settlement.domain.outcomes import StepOutcome
from settlement.domain.payouts import PayeeGroup, PayoutResult, PayoutRouter
from settlement.domain.types import (
    PAYEE_COLLECTIONS,
    Order,
    OrderItem,
    Payee,
    Payout,
    PendingPayout,
    ReversedTransfer,
    SalesLedgerEntry,
)
from settlement.ledger.store import DocumentStore, now_iso, where

logger = logging.getLogger(__name__)

SALES_LEDGER = "salesLedger"
SETTLEMENT_REASONS = ("sale", "retry")
ZERO = Decimal("0.00")

PayeeKey = tuple[str, str]


def entry_id(order_id: str, payee_role: str, payee_id: str) -> str:
    return f"{order_id}:{payee_role}:{payee_id}"


def item_summary(item: OrderItem) -> dict[str, Any]:
    return {
        "type": item.type,
        "id": item.catalog_release_id or "",
        "title": item.title or item.name or "Unknown",
        "quantity": item.quantity,
        "unitPrice": item.price,
        "lineTotal": as_amount(round_money(item.line_total)),
    }


def ledger_entries(store: DocumentStore, order_id: str) -> list[SalesLedgerEntry]:
    rows = store.query(SALES_LEDGER, [where("orderId", "EQUAL", order_id)])
    return [SalesLedgerEntry.from_doc(row) for row in rows]


def _parse_timestamp(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(timezone.utc)


class SalesLedger:
    """Auditable record of what each payee earned on each order."""

    def __init__(self, store: DocumentStore, router: PayoutRouter):
        self.store = store
        self.router = router

    def record_sale(self, order: Order) -> list[StepOutcome]:
        """Write one entry per payee group; groups that already have one are left alone."""
        groups, unattributed = self.router.group(order)
        results = []
        for group in groups:
            try:
                results.append(self._record_group(order, group))
            except DocumentStoreError as exc:
                logger.warning("sales ledger entry for %s on order=%s failed: %s", group.payee_id, order.order_number, exc)
                results.append(outcomes.degraded("sales_ledger", str(exc), ref=group.payee_id))
        if unattributed:
            logger.info(
                "%s items on order=%s have no payee, kept as platform revenue",
                len(unattributed),
                order.order_number,
            )
        return results

    def _record_group(self, order: Order, group: PayeeGroup) -> StepOutcome:
        doc_id = entry_id(order.id, group.payee_role, group.payee_id)
        if self.store.get(SALES_LEDGER, doc_id) is not None:
            return outcomes.skipped("sales_ledger", "already recorded", ref=doc_id)

        filters = [where("orderId", "EQUAL", order.id), where("payeeId", "EQUAL", group.payee_id)]
        payouts = [Payout.from_doc(row) for row in self.store.query("payouts", filters)]
        pending = [PendingPayout.from_doc(row) for row in self.store.query("pendingPayouts", filters)]
        service_fee = sum(
            (round_money(p.payout_service_fee or 0) for p in payouts if p.reason in SETTLEMENT_REASONS),
            ZERO,
        )
        if payouts:
            payout_state = "paid"
        elif pending:
            payout_state = pending[0].status
        else:
            payout_state = "unpaid"

        payee_doc = self.store.get(PAYEE_COLLECTIONS[group.payee_role], group.payee_id)
        fees = round_money(group.platform_fee) + round_money(group.processor_fee) + service_fee
        sold_at = _parse_timestamp(order.created_at)
        entry = SalesLedgerEntry(
            order_id=order.id,
            order_number=order.order_number,
            timestamp=order.created_at,
            year=sold_at.year,
            month=sold_at.month,
            day=sold_at.day,
            customer_id=order.customer.user_id,
            customer_email=order.customer.email,
            payee_id=group.payee_id,
            payee_role=group.payee_role,
            payee_name=Payee.from_doc(payee_doc).label if payee_doc else None,
            gross_total=as_amount(group.gross),
            platform_fee=as_amount(group.platform_fee),
            processor_fee=as_amount(group.processor_fee),
            payout_service_fee=as_amount(service_fee),
            total_fees=as_amount(fees),
            net_revenue=as_amount(round_money(group.gross) - fees),
            payment_method=order.payment_method,
            payment_id=order.payment_reference,
            currency=order.currency,
            item_count=len(group.items),
            has_physical=any(item.is_physical for item in group.items),
            has_digital=any(not item.is_physical for item in group.items),
            items=[item_summary(item) for item in group.items],
            payout_state=payout_state,
        )
        self.store.set(SALES_LEDGER, doc_id, entry.to_doc())
        logger.info(
            "sales ledger %s: gross=%.2f net=%.2f (%s)",
            doc_id,
            entry.gross_total,
            entry.net_revenue,
            payout_state,
        )
        return outcomes.ok("sales_ledger", f"net {entry.net_revenue:.2f}", ref=doc_id)

    def annotate(
        self,
        order_id: str,
        kind: str,
        ref: str,
        status: str,
        reversals: Iterable[ReversedTransfer] = (),
        pending_changes: Iterable[dict[str, Any]] = (),
        reissued: Iterable[PayoutResult] = (),
    ) -> list[StepOutcome]:
        """Append a refund or dispute adjustment to every entry of the order."""
        reversed_by: dict[PayeeKey, Decimal] = defaultdict(lambda: ZERO)
        review: set[PayeeKey] = set()
        for reversal in reversals:
            key = (reversal.payee_role, reversal.payee_id)
            if reversal.failed:
                review.add(key)
            else:
                reversed_by[key] += to_decimal(reversal.amount)
        pending_by: dict[PayeeKey, Decimal] = defaultdict(lambda: ZERO)
        for change in pending_changes:
            pending_by[(change["payeeRole"], change["payeeId"])] += to_decimal(change["reduction"])
        reissued_by: dict[PayeeKey, Decimal] = defaultdict(lambda: ZERO)
        for payout in reissued:
            if payout.state == "paid" and payout.payee_id and payout.payee_role:
                reissued_by[(payout.payee_role, payout.payee_id)] += to_decimal(payout.amount)

        try:
            entries = ledger_entries(self.store, order_id)
        except DocumentStoreError as exc:
            logger.warning("sales ledger lookup for order=%s failed: %s", order_id, exc)
            return [outcomes.degraded("sales_ledger", str(exc), ref=order_id)]

        results = []
        now = now_iso()
        for entry in entries:
            key = (entry.payee_role, entry.payee_id)
            adjustment: dict[str, Any] = {
                "kind": kind,
                "ref": ref,
                "reversed": as_amount(reversed_by[key]),
                "createdAt": now,
            }
            if key in pending_by:
                adjustment["pendingReduction"] = as_amount(pending_by[key])
            if key in reissued_by:
                adjustment["reissued"] = as_amount(reissued_by[key])
            if key in review:
                adjustment["needsReview"] = True
            changes = {
                "adjustments": [*entry.adjustments, adjustment],
                "reversedAmount": as_amount(round_money(entry.reversed_amount) + reversed_by[key]),
                "reissuedAmount": as_amount(round_money(entry.reissued_amount) + reissued_by[key]),
                "status": status,
                "updatedAt": now,
            }
            try:
                self.store.update(SALES_LEDGER, entry.id, changes)
            except DocumentStoreError as exc:
                logger.warning("sales ledger %s %s annotation failed: %s", entry.id, kind, exc)
                results.append(outcomes.degraded("sales_ledger", str(exc), ref=entry.id))
                continue
            results.append(outcomes.ok("sales_ledger", kind, ref=entry.id))
        return results
