from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Literal

from settlement.core.config import Settings, get_settings
from settlement.core.errors import DocumentStoreError, PaymentGatewayError
from settlement.domain import messages
from settlement.domain.fees import as_amount, round_money, to_decimal
from settlement.domain.outcomes import StepOutcome
from settlement.domain.payouts import PayoutResult, PayoutRouter
from settlement.domain.sales_ledger import SalesLedger
from settlement.domain.types import (
    PAYEE_COLLECTIONS,
    Dispute,
    Order,
    Payee,
    Payout,
    PendingPayout,
    Refund,
    ReversedTransfer,
)
from settlement.integrations.mailer import Notifier
from settlement.integrations.payments import PaymentGateway
from settlement.ledger.store import DocumentStore, now_iso, where

logger = logging.getLogger(__name__)

# refunds at or above this share of the charge mark the order refunded and
# cancel its pending earnings; payout reversals stay proportional
FULL_REFUND_THRESHOLD = Decimal("0.99")
ZERO = Decimal("0.00")
CENT = Decimal("0.01")

ReconcileKind = Literal["refund", "dispute_opened", "dispute_closed"]


@dataclass
class ReconcileResult:
    kind: ReconcileKind
    ref: str
    applied: bool
    order_id: str | None = None
    detail: str = ""
    reversals: list[ReversedTransfer] = field(default_factory=list)
    retransfers: list[PayoutResult] = field(default_factory=list)
    outcomes: list[StepOutcome] = field(default_factory=list)

    @property
    def amount_reversed(self) -> float:
        return as_amount(sum((to_decimal(r.amount) for r in self.reversals if not r.failed), ZERO))

    def as_dict(self) -> dict:
        return {
            "kind": self.kind,
            "ref": self.ref,
            "applied": self.applied,
            "order_id": self.order_id,
            "detail": self.detail,
            "amount_reversed": self.amount_reversed,
            "reversals": [r.model_dump(by_alias=True, exclude_none=True) for r in self.reversals],
            "retransfers": [r.__dict__ for r in self.retransfers],
        }


def is_fully_reversed(amount: float, reversed_amount: Decimal) -> bool:
    return round_money(reversed_amount) >= round_money(amount)


class Reconciler:
    """Unwinds payouts on refunds and disputes, and re-issues them on won disputes."""

    def __init__(
        self,
        store: DocumentStore,
        gateway: PaymentGateway,
        router: PayoutRouter,
        notifier: Notifier,
        settings: Settings | None = None,
        sales_ledger: SalesLedger | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.router = router
        self.notifier = notifier
        self.settings = settings or get_settings()
        self.sales_ledger = sales_ledger or SalesLedger(store, router)

    def _find_order(self, charge_ref: str, payment_reference: str | None) -> Order | None:
        reference = payment_reference or self.gateway.payment_reference_for_charge(charge_ref)
        if not reference:
            return None
        rows = self.store.query("orders", [where("paymentReference", "EQUAL", reference)], limit=1)
        return Order.from_doc(rows[0]) if rows else None

    def _payouts(self, order_id: str) -> list[Payout]:
        rows = self.store.query("payouts", [where("orderId", "EQUAL", order_id)], order_by="createdAt")
        return [Payout.from_doc(row) for row in rows]

    def reverse_payout(self, payout: Payout, amount: Decimal, reason: str) -> ReversedTransfer:
        """Claw back ``amount`` (clamped to what remains) from one payout."""
        amount = min(round_money(amount), round_money(payout.remaining))
        entry = ReversedTransfer(
            payout_id=payout.id,
            transfer_ref=payout.external_transfer_ref,
            amount=as_amount(amount),
            payee_id=payout.payee_id,
            payee_role=payout.payee_role,
        )
        if amount <= 0:
            entry.failed = True
            entry.error = "nothing left to reverse"
            return entry
        if payout.rail != "instant" or not payout.external_transfer_ref:
            entry.failed = True
            entry.error = "batch payouts need manual recovery"
            logger.warning("payout %s on %s rail needs manual recovery of %.2f", payout.id, payout.rail, amount)
            return entry

        try:
            entry.reversal_ref = self.gateway.reverse_transfer(
                payout.external_transfer_ref,
                amount,
                metadata={"orderId": payout.order_id, "payoutId": payout.id, "reason": reason},
            )
        except PaymentGatewayError as exc:
            logger.error("reversal of payout %s failed: %s", payout.id, exc)
            entry.failed = True
            entry.error = str(exc)
            return entry

        reversed_total = round_money(payout.reversed_amount) + amount
        status = "reversed" if is_fully_reversed(payout.amount, reversed_total) else "partially_reversed"
        self.store.update(
            "payouts",
            payout.id,
            {
                "reversedAmount": as_amount(reversed_total),
                "status": status,
                "lastReversalRef": entry.reversal_ref,
                "updatedAt": now_iso(),
            },
        )
        payout.reversed_amount = as_amount(reversed_total)
        payout.status = status
        self.store.increment(
            PAYEE_COLLECTIONS[payout.payee_role],
            payout.payee_id,
            {"totalEarnings": -as_amount(amount)},
        )
        logger.info("reversed %.2f from payout %s (%s)", amount, payout.id, status)
        return entry

    # refunds

    @staticmethod
    def refund_share(payout: Payout, fraction: Decimal, settled: bool) -> Decimal:
        """Amount to claw back from ``payout`` for a refund of ``fraction`` of the charge.

        Proportional and clamped to what is left. Only once the whole charge
        is refunded, or the proportional cut leaves less than a cent behind,
        is the entire remainder taken.
        """
        remaining = round_money(payout.remaining)
        if settled:
            return remaining
        amount = min(round_money(to_decimal(payout.amount) * fraction), remaining)
        if remaining - amount < CENT:
            return remaining
        return amount

    def on_refund(
        self,
        charge_ref: str,
        total_charge_amount: float,
        total_refunded_so_far: float,
        payment_reference: str | None = None,
    ) -> ReconcileResult:
        result = ReconcileResult(kind="refund", ref=charge_ref, applied=False)
        total = round_money(total_charge_amount)
        refunded = round_money(total_refunded_so_far)
        if total <= 0:
            result.detail = "charge has no amount"
            return result

        order = self._find_order(charge_ref, payment_reference)
        if order is None:
            logger.warning("refund on charge=%s has no matching order", charge_ref)
            result.detail = "order not found"
            return result
        result.order_id = order.id

        existing = self.store.get("refunds", charge_ref)
        previous = round_money(existing.get("amountRefunded") or 0) if existing else ZERO
        newly_refunded = refunded - previous
        if newly_refunded <= 0:
            result.detail = "refund already recorded"
            return result

        fraction = newly_refunded / total
        is_full = refunded / total >= FULL_REFUND_THRESHOLD
        now = now_iso()

        # record the new cumulative total before moving money so a replay cannot reverse twice
        refund = Refund.from_doc(existing) if existing else Refund(
            charge_ref=charge_ref,
            order_id=order.id,
            order_number=order.order_number,
            amount_total=as_amount(total),
            amount_refunded=0.0,
            created_at=now,
            updated_at=now,
        )
        refund.amount_refunded = as_amount(refunded)
        refund.is_full_refund = is_full
        refund.updated_at = now
        self.store.set("refunds", charge_ref, refund.to_doc())

        for payout in self._payouts(order.id):
            if payout.status == "reversed" or payout.remaining <= 0:
                continue
            amount = self.refund_share(payout, fraction, settled=refunded >= total)
            if amount <= 0:
                continue
            result.reversals.append(self.reverse_payout(payout, amount, reason="refund"))

        pending_changes = self._adjust_pending(order, fraction, is_full)

        refund.events.append(
            {
                "amount": as_amount(newly_refunded),
                "fraction": float(round(fraction, 6)),
                "isFullRefund": is_full,
                "reversals": [r.model_dump(by_alias=True, exclude_none=True) for r in result.reversals],
                "pendingAdjustments": pending_changes,
                "needsReview": any(r.failed for r in result.reversals),
                "createdAt": now,
            }
        )
        self.store.update("refunds", charge_ref, {"events": refund.events, "updatedAt": now_iso()})

        order_changes = {
            "refundStatus": "fully_refunded" if is_full else "partially_refunded",
            "refundAmount": as_amount(refunded),
            "updatedAt": now_iso(),
        }
        if is_full:
            order_changes["status"] = "refunded"
        self.store.update("orders", order.id, order_changes)

        result.outcomes.extend(
            self.sales_ledger.annotate(
                order.id,
                "refund",
                charge_ref,
                status="refunded" if is_full else "partially_refunded",
                reversals=result.reversals,
                pending_changes=pending_changes,
            )
        )
        result.outcomes.extend(self._notify_refund(order, result.reversals, is_full))
        result.applied = True
        result.detail = f"refunded {newly_refunded} ({'full' if is_full else 'partial'})"
        logger.info(
            "refund on order=%s charge=%s: new=%.2f reversed=%.2f full=%s",
            order.order_number,
            charge_ref,
            newly_refunded,
            result.amount_reversed,
            is_full,
        )
        return result

    def _adjust_pending(self, order: Order, fraction: Decimal, is_full: bool) -> list[dict]:
        rows = self.store.query(
            "pendingPayouts",
            [where("orderId", "EQUAL", order.id), where("status", "IN", ["awaiting_connect", "retry_pending"])],
        )
        changes = []
        for row in rows:
            pending = PendingPayout.from_doc(row)
            current = round_money(pending.amount)
            if is_full:
                reduction = current
                self.store.update(
                    "pendingPayouts",
                    pending.id,
                    {"status": "cancelled", "cancelledReason": "order_refunded", "updatedAt": now_iso()},
                )
            else:
                base = round_money(pending.original_amount if pending.original_amount is not None else pending.amount)
                reduction = min(round_money(base * fraction), current)
                self.store.update(
                    "pendingPayouts",
                    pending.id,
                    {"amount": as_amount(current - reduction), "updatedAt": now_iso()},
                )
            if (
                reduction > 0
                and pending.balance_counted
                and self.store.get(PAYEE_COLLECTIONS[pending.payee_role], pending.payee_id)
            ):
                self.store.increment(
                    PAYEE_COLLECTIONS[pending.payee_role],
                    pending.payee_id,
                    {"pendingBalance": -as_amount(reduction)},
                )
            changes.append(
                {
                    "pendingPayoutId": pending.id,
                    "payeeId": pending.payee_id,
                    "payeeRole": pending.payee_role,
                    "reduction": as_amount(reduction),
                    "cancelled": is_full,
                }
            )
        return changes

    def _notify_refund(self, order: Order, reversals: list[ReversedTransfer], is_full: bool) -> list[StepOutcome]:
        totals: dict[tuple[str, str], Decimal] = defaultdict(lambda: ZERO)
        for reversal in reversals:
            if not reversal.failed:
                totals[(reversal.payee_role, reversal.payee_id)] += to_decimal(reversal.amount)

        results = []
        for (role, payee_id), amount in totals.items():
            try:
                doc = self.store.get(PAYEE_COLLECTIONS[role], payee_id)
            except DocumentStoreError as exc:
                logger.warning("refund notice lookup for %s failed: %s", payee_id, exc)
                continue
            if not doc or not doc.get("email"):
                continue
            payee = Payee.from_doc(doc)
            subject, html = messages.refund_adjustment(payee.label, order.order_number, as_amount(amount), order.currency, is_full)
            results.append(self.router.notify(payee.email, subject, html, ref=payee_id))
        return results

    # disputes

    def on_dispute_opened(
        self,
        dispute_ref: str,
        charge_ref: str,
        amount: float,
        reason: str | None,
        payment_reference: str | None = None,
    ) -> ReconcileResult:
        result = ReconcileResult(kind="dispute_opened", ref=dispute_ref, applied=False)
        if self.store.get("disputes", dispute_ref) is not None:
            result.detail = "dispute already recorded"
            return result

        dispute = Dispute(
            charge_ref=charge_ref,
            amount=as_amount(round_money(amount)),
            reason=reason,
            status="open",
            created_at=now_iso(),
        )
        errors: list[str] = []
        order = None
        try:
            order = self._find_order(charge_ref, payment_reference)
            if order is not None:
                dispute.order_id = order.id
                dispute.order_number = order.order_number
                result.order_id = order.id
                result.reversals = self._reverse_group(order)
        except (PaymentGatewayError, DocumentStoreError) as exc:
            logger.error("dispute %s reversal step failed: %s", dispute_ref, exc)
            errors.append(str(exc))

        errors.extend(r.error for r in result.reversals if r.failed and r.error)
        dispute.transfers_reversed = result.reversals
        dispute.amount_recovered = result.amount_reversed
        dispute.error = "; ".join(errors) or None
        self.store.set("disputes", dispute_ref, dispute.to_doc())

        if order is not None:
            self.store.update("orders", order.id, {"disputeStatus": "open", "updatedAt": now_iso()})
            result.outcomes.extend(
                self.sales_ledger.annotate(order.id, "dispute_opened", dispute_ref, status="disputed", reversals=result.reversals)
            )
        result.applied = True
        result.detail = f"recovered {dispute.amount_recovered:.2f} of {dispute.amount:.2f}"
        logger.warning(
            "dispute %s opened on charge=%s order=%s: recovered %.2f of %.2f",
            dispute_ref,
            charge_ref,
            dispute.order_number,
            dispute.amount_recovered,
            dispute.amount,
        )
        return result

    def _reverse_group(self, order: Order) -> list[ReversedTransfer]:
        payouts = self._payouts(order.id)
        by_ref = {p.external_transfer_ref: p for p in payouts if p.external_transfer_ref}
        reversals = []
        for transfer in self.gateway.list_transfers(order.id):
            if transfer.reversed:
                continue
            payout = by_ref.get(transfer.ref)
            if payout is None:
                logger.warning("transfer %s in group %s has no payout record", transfer.ref, order.id)
                continue
            remaining = min(
                round_money(transfer.amount) - round_money(transfer.amount_reversed),
                round_money(payout.remaining),
            )
            if remaining <= 0:
                continue
            reversals.append(self.reverse_payout(payout, remaining, reason="dispute"))

        for payout in payouts:
            if payout.rail == "batch" and payout.remaining > 0:
                reversals.append(self.reverse_payout(payout, round_money(payout.remaining), reason="dispute"))
        return reversals

    def on_dispute_closed(self, dispute_ref: str, outcome: str) -> ReconcileResult:
        result = ReconcileResult(kind="dispute_closed", ref=dispute_ref, applied=False)
        doc = self.store.get("disputes", dispute_ref)
        if doc is None:
            logger.warning("dispute %s closed but was never recorded", dispute_ref)
            result.detail = "dispute not found"
            return result
        dispute = Dispute.from_doc(doc)
        result.order_id = dispute.order_id
        if dispute.status != "open":
            result.detail = f"dispute already {dispute.status}"
            return result

        changes: dict = {"status": outcome, "closedAt": now_iso()}
        if outcome == "lost":
            net_impact = round_money(dispute.amount) - round_money(dispute.amount_recovered)
            changes["netImpact"] = as_amount(net_impact)
        else:
            result.retransfers = self._reissue(dispute)
            changes["netImpact"] = 0.0
            changes["retransfers"] = [
                {
                    "payeeId": r.payee_id,
                    "amount": r.amount,
                    "state": r.state,
                    "payoutId": r.payout_id,
                    "pendingPayoutId": r.pending_payout_id,
                }
                for r in result.retransfers
            ]
        self.store.update("disputes", dispute_ref, changes)
        if dispute.order_id:
            self.store.update("orders", dispute.order_id, {"disputeStatus": outcome, "updatedAt": now_iso()})
            result.outcomes.extend(
                self.sales_ledger.annotate(
                    dispute.order_id,
                    f"dispute_{outcome}",
                    dispute_ref,
                    status=f"dispute_{outcome}",
                    reissued=result.retransfers,
                )
            )

        result.applied = True
        result.detail = f"{outcome}, net impact {changes['netImpact']:.2f}"
        logger.info("dispute %s closed: %s", dispute_ref, result.detail)
        return result

    def _reissue(self, dispute: Dispute) -> list[PayoutResult]:
        results = []
        for entry in dispute.transfers_reversed:
            if entry.failed or entry.amount <= 0:
                continue
            collection = PAYEE_COLLECTIONS[entry.payee_role]
            doc = self.store.get(collection, entry.payee_id)
            payee = Payee.from_doc(doc) if doc else Payee(id=entry.payee_id)
            results.append(
                self.router.pay_or_hold(
                    payee=payee,
                    payee_role=entry.payee_role,
                    order_id=dispute.order_id,
                    order_number=dispute.order_number,
                    amount=round_money(entry.amount),
                    currency=self.settings.settlement_currency,
                    reason="dispute_won_retransfer",
                    original_payout_id=entry.payout_id,
                    payee_exists=doc is not None,
                    allowed_rails=("instant",),
                )
            )
        return results
