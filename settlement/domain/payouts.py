from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Literal
from uuid import uuid4

from settlement.core.config import Settings, get_settings
from settlement.core.errors import DocumentStoreError, NotificationError, PaymentGatewayError
from settlement.domain import messages, outcomes
from settlement.domain.fees import as_amount, batch_payout_fee, round_money, split_item
from settlement.domain.outcomes import StepOutcome
from settlement.domain.types import (
    OPEN_PENDING_STATUSES,
    PAYEE_COLLECTIONS,
    Order,
    OrderItem,
    Payee,
    PayeeRole,
    Payout,
    PendingPayout,
    Rail,
)
from settlement.integrations.mailer import Notifier
from settlement.integrations.payments import PaymentGateway
from settlement.ledger.store import DocumentStore, now_iso, where

logger = logging.getLogger(__name__)

PayoutState = Literal["paid", "awaiting_connect", "retry_pending", "skipped", "unattributed", "error"]


@dataclass
class PayeeGroup:
    payee_id: str
    payee_role: PayeeRole
    items: list[OrderItem] = field(default_factory=list)
    gross: Decimal = Decimal("0.00")
    platform_fee: Decimal = Decimal("0.00")
    processor_fee: Decimal = Decimal("0.00")
    share: Decimal = Decimal("0.00")


@dataclass
class PayoutResult:
    payee_id: str | None
    payee_role: str | None
    amount: float
    state: PayoutState
    rail: Rail | None = None
    payout_id: str | None = None
    pending_payout_id: str | None = None
    detail: str = ""

    def as_outcome(self) -> StepOutcome:
        ref = self.payout_id or self.pending_payout_id or self.payee_id
        detail = f"{self.state} {self.amount:.2f} {self.detail}".strip()
        if self.state in ("paid", "awaiting_connect"):
            return outcomes.ok("payout", detail, ref=ref)
        if self.state == "skipped":
            return outcomes.skipped("payout", detail, ref=ref)
        return outcomes.degraded("payout", detail, ref=ref)


def choose_rail(payee: Payee) -> Rail | None:
    """Pick the payout rail for a payee, or None when nothing is connected."""
    bank = payee.bank_transfer_account
    email = payee.payout_service_email
    if payee.payout_method == "stripe" and bank:
        return "instant"
    if payee.payout_method == "paypal" and email:
        return "batch"
    if bank:
        return "instant"
    if email:
        return "batch"
    return None


class PayoutRouter:
    def __init__(
        self,
        store: DocumentStore,
        gateway: PaymentGateway,
        notifier: Notifier,
        settings: Settings | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.notifier = notifier
        self.settings = settings or get_settings()

    # attribution

    def attribute(self, items: list[OrderItem]) -> list[OrderItem]:
        """Stamp each item with the payee that owns it."""
        cache: dict[tuple[str, str], dict | None] = {}

        def lookup(collection: str, doc_id: str) -> dict | None:
            key = (collection, doc_id)
            if key not in cache:
                try:
                    cache[key] = self.store.get(collection, doc_id)
                except DocumentStoreError as exc:
                    logger.warning("payee attribution lookup %s/%s failed: %s", collection, doc_id, exc)
                    cache[key] = None
            return cache[key]

        attributed = []
        for item in items:
            payee_id, role = self._resolve_payee(item, lookup)
            attributed.append(item.model_copy(update={"payee_id": payee_id, "payee_role": role}))
        return attributed

    @staticmethod
    def _resolve_payee(item: OrderItem, lookup) -> tuple[str | None, PayeeRole]:
        if item.listing_id:
            seller = item.seller_id or item.payee_id
            if not seller:
                listing = lookup("vinylListings", item.listing_id) or {}
                seller = listing.get("sellerId")
            return seller, "vinylSeller"
        if item.type == "merch":
            supplier = item.payee_id
            if not supplier and item.product_id:
                product = lookup("merch", item.product_id) or {}
                supplier = product.get("supplierId")
            return supplier, "merchSupplier"
        artist = item.payee_id or item.artist_id
        if not artist and item.catalog_release_id:
            release = lookup("releases", item.catalog_release_id) or {}
            artist = release.get("artistId") or release.get("userId")
        return artist, "artist"

    def group(self, order: Order) -> tuple[list[PayeeGroup], list[OrderItem]]:
        items = order.items
        if any(item.payee_id is None or item.payee_role is None for item in items):
            items = self.attribute(items)

        batch_size = max(1, len(order.items))
        groups: dict[tuple[str, str], PayeeGroup] = {}
        unattributed: list[OrderItem] = []
        for item in items:
            if not item.payee_id or not item.payee_role:
                unattributed.append(item)
                continue
            split = split_item(
                item.line_total,
                self.settings.platform_rate_for(item.payee_role),
                self.settings.processor_percent_rate,
                self.settings.processor_fixed_fee,
                batch_size,
            )
            key = (item.payee_role, item.payee_id)
            group = groups.setdefault(key, PayeeGroup(payee_id=item.payee_id, payee_role=item.payee_role))
            group.items.append(item)
            group.gross += split.item_total
            group.platform_fee += split.platform_fee
            group.processor_fee += split.processor_fee
            group.share += split.share
        return list(groups.values()), unattributed

    # dispatch

    def dispatch(self, order: Order) -> list[PayoutResult]:
        groups, unattributed = self.group(order)
        results = [self._dispatch_group(order, group) for group in groups]
        for item in unattributed:
            logger.warning("no payee resolved for item=%s order=%s", item.id, order.order_number)
            results.append(
                PayoutResult(
                    payee_id=None,
                    payee_role=item.payee_role,
                    amount=0.0,
                    state="unattributed",
                    detail=f"item {item.id} has no payee",
                )
            )
        return results

    def already_dispatched(self, order_id: str, payee_id: str) -> bool:
        filters = [where("orderId", "EQUAL", order_id), where("payeeId", "EQUAL", payee_id)]
        if self.store.query("payouts", filters, limit=1):
            return True
        return bool(self.store.query("pendingPayouts", filters, limit=1))

    def _dispatch_group(self, order: Order, group: PayeeGroup) -> PayoutResult:
        amount = round_money(group.share)
        try:
            if self.already_dispatched(order.id, group.payee_id):
                return PayoutResult(
                    payee_id=group.payee_id,
                    payee_role=group.payee_role,
                    amount=as_amount(amount),
                    state="skipped",
                    detail="already dispatched",
                )
            if amount <= 0:
                return PayoutResult(
                    payee_id=group.payee_id,
                    payee_role=group.payee_role,
                    amount=0.0,
                    state="skipped",
                    detail="nothing to pay",
                )

            doc = self.store.get(PAYEE_COLLECTIONS[group.payee_role], group.payee_id)
            payee = Payee.from_doc(doc) if doc else Payee(id=group.payee_id)
            if doc is None:
                logger.warning("%s %s not found, holding payout", group.payee_role, group.payee_id)

            return self.pay_or_hold(
                payee=payee,
                payee_role=group.payee_role,
                order_id=order.id,
                order_number=order.order_number,
                amount=amount,
                currency=order.currency,
                payee_exists=doc is not None,
            )
        except DocumentStoreError as exc:
            logger.error("payout for %s on order=%s failed: %s", group.payee_id, order.order_number, exc)
            return PayoutResult(
                payee_id=group.payee_id,
                payee_role=group.payee_role,
                amount=as_amount(amount),
                state="error",
                detail=str(exc),
            )

    def pay_or_hold(
        self,
        payee: Payee,
        payee_role: PayeeRole,
        order_id: str,
        order_number: str | None,
        amount: Decimal,
        currency: str,
        reason: str = "sale",
        original_payout_id: str | None = None,
        payee_exists: bool = True,
        allowed_rails: tuple[Rail, ...] = ("instant", "batch"),
    ) -> PayoutResult:
        """Send ``amount`` over the payee's rail, or record why it is pending."""
        rail = choose_rail(payee)
        if rail is not None and rail not in allowed_rails:
            rail = "instant" if "instant" in allowed_rails and payee.bank_transfer_account else None

        if rail is None:
            pending_id = self._hold(
                payee, payee_role, order_id, order_number, amount, currency,
                status="awaiting_connect",
                reason=reason,
                original_payout_id=original_payout_id,
                payee_exists=payee_exists,
            )
            return PayoutResult(
                payee_id=payee.id,
                payee_role=payee_role,
                amount=as_amount(amount),
                state="awaiting_connect",
                pending_payout_id=pending_id,
            )

        try:
            payout_id, sent = self.send(
                payee, payee_role, order_id, order_number, amount, currency, rail,
                reason=reason,
                original_payout_id=original_payout_id,
            )
        except PaymentGatewayError as exc:
            logger.warning("payout to %s for order=%s failed, queued for retry: %s", payee.id, order_number, exc)
            pending_id = self._hold(
                payee, payee_role, order_id, order_number, amount, currency,
                status="retry_pending",
                reason=reason,
                original_payout_id=original_payout_id,
                failure_reason=str(exc),
                payee_exists=payee_exists,
            )
            return PayoutResult(
                payee_id=payee.id,
                payee_role=payee_role,
                amount=as_amount(amount),
                state="retry_pending",
                rail=rail,
                pending_payout_id=pending_id,
                detail=str(exc),
            )

        return PayoutResult(
            payee_id=payee.id,
            payee_role=payee_role,
            amount=as_amount(sent),
            state="paid",
            rail=rail,
            payout_id=payout_id,
        )

    def send(
        self,
        payee: Payee,
        payee_role: PayeeRole,
        order_id: str,
        order_number: str | None,
        amount: Decimal,
        currency: str,
        rail: Rail,
        reason: str = "sale",
        original_payout_id: str | None = None,
        from_pending_payout: str | None = None,
        attempt: int | None = None,
    ) -> tuple[str, Decimal]:
        """Dispatch over ``rail`` and record the Payout; returns its id and the amount sent."""
        service_fee = None
        if rail == "instant":
            sent = round_money(amount)
            idempotency_key = f"{order_id}:{payee.id}:{reason}:{from_pending_payout or original_payout_id or 'first'}"
            if attempt is not None:
                # one key per retry attempt
                idempotency_key = f"{idempotency_key}:{attempt}"
            ref = self.gateway.create_transfer(
                destination=payee.bank_transfer_account,
                amount=sent,
                currency=currency,
                group_id=order_id,
                metadata={
                    "orderId": order_id,
                    "orderNumber": order_number or "",
                    "payeeId": payee.id,
                    "payeeRole": payee_role,
                    "reason": reason,
                },
                idempotency_key=idempotency_key,
            )
        else:
            service_fee = batch_payout_fee(amount, self.settings.payout_service_fee_percent)
            sent = round_money(amount) - service_fee
            result = self.gateway.batch_payout(
                destination_email=payee.payout_service_email,
                amount=sent,
                currency=currency,
                note=f"Earnings for order {order_number or order_id}",
                reference=f"{order_id}-{payee.id}-{uuid4().hex[:8]}",
            )
            if not result.success:
                raise PaymentGatewayError(result.error or "batch payout failed")
            ref = result.batch_ref

        now = now_iso()
        payout = Payout(
            payee_id=payee.id,
            payee_role=payee_role,
            payee_name=payee.label,
            order_id=order_id,
            order_number=order_number,
            amount=as_amount(sent),
            currency=currency,
            rail=rail,
            status="completed",
            external_transfer_ref=ref,
            payout_service_fee=as_amount(service_fee) if service_fee is not None else None,
            reason=reason,
            original_payout_id=original_payout_id,
            from_pending_payout=from_pending_payout,
            created_at=now,
            updated_at=now,
        )
        payout_id = self.store.add("payouts", payout.to_doc())
        self.store.increment(PAYEE_COLLECTIONS[payee_role], payee.id, {"totalEarnings": as_amount(sent)})
        self._resolve_earlier(payee, payee_role, order_id, payout_id)
        logger.info(
            "payout %s sent to %s %s via %s: %.2f %s",
            payout_id,
            payee_role,
            payee.id,
            rail,
            sent,
            currency,
        )
        return payout_id, sent

    def _resolve_earlier(self, payee: Payee, payee_role: PayeeRole, order_id: str, payout_id: str) -> None:
        rows = self.store.query(
            "pendingPayouts",
            [
                where("payeeId", "EQUAL", payee.id),
                where("orderId", "EQUAL", order_id),
                where("status", "IN", list(OPEN_PENDING_STATUSES)),
            ],
        )
        now = now_iso()
        for row in rows:
            pending = PendingPayout.from_doc(row)
            self.store.update(
                "pendingPayouts",
                pending.id,
                {"status": "resolved", "resolvedPayoutId": payout_id, "updatedAt": now},
            )
            if pending.balance_counted:
                self.store.increment(
                    PAYEE_COLLECTIONS[payee_role],
                    payee.id,
                    {"pendingBalance": -pending.amount},
                )

    def _hold(
        self,
        payee: Payee,
        payee_role: PayeeRole,
        order_id: str,
        order_number: str | None,
        amount: Decimal,
        currency: str,
        status: str,
        reason: str,
        original_payout_id: str | None = None,
        failure_reason: str | None = None,
        payee_exists: bool = True,
    ) -> str:
        pending = PendingPayout(
            payee_id=payee.id,
            payee_role=payee_role,
            payee_name=payee.label,
            payee_email=payee.email,
            order_id=order_id,
            order_number=order_number,
            amount=as_amount(amount),
            original_amount=as_amount(amount),
            currency=currency,
            status=status,
            reason=reason,
            failure_reason=failure_reason,
            original_payout_id=original_payout_id,
            balance_counted=payee_exists,
            created_at=now_iso(),
        )
        pending_id = self.store.add("pendingPayouts", pending.to_doc())
        if payee_exists:
            self.store.increment(PAYEE_COLLECTIONS[payee_role], payee.id, {"pendingBalance": as_amount(amount)})
        if status == "awaiting_connect":
            self._notify_pending(payee, pending_id, pending)
        return pending_id

    def _notify_pending(self, payee: Payee, pending_id: str, pending: PendingPayout) -> StepOutcome:
        if not payee.email:
            return outcomes.skipped("notify", "payee has no email", ref=pending_id)
        subject, html = messages.pending_earnings(
            payee.label, pending.amount, pending.currency, pending.order_number, self.settings.site_url
        )
        outcome = self.notify(payee.email, subject, html, ref=pending_id)
        if outcome.status == "ok":
            self.store.update("pendingPayouts", pending_id, {"notificationSent": True})
        return outcome

    def notify(self, to: str, subject: str, html: str, ref: str | None = None, bcc: str | None = None) -> StepOutcome:
        try:
            self.notifier.send(to, subject, html, bcc=bcc)
        except NotificationError as exc:
            logger.warning("notification to %s failed: %s", to, exc)
            return outcomes.degraded("notify", str(exc), ref=ref)
        return outcomes.ok("notify", subject, ref=ref)

    # scheduled retry

    def retry_pending(self, limit: int | None = None, max_age_days: int | None = None) -> list[PayoutResult]:
        limit = limit if limit is not None else self.settings.payout_retry_limit
        max_age_days = max_age_days if max_age_days is not None else self.settings.payout_retry_max_age_days
        cutoff = (datetime.now(timezone.utc) - timedelta(days=max_age_days)).isoformat().replace("+00:00", "Z")
        rows = self.store.query(
            "pendingPayouts",
            [
                where("status", "IN", ["retry_pending", "awaiting_connect"]),
                where("createdAt", "GREATER_THAN_OR_EQUAL", cutoff),
            ],
            order_by="createdAt",
            limit=limit,
        )
        logger.info("retrying %s pending payouts", len(rows))
        results = []
        for row in rows:
            pending = PendingPayout.from_doc(row)
            try:
                results.append(self._retry_one(pending))
            except DocumentStoreError as exc:
                logger.error("retry of pending payout %s aborted: %s", pending.id, exc)
                results.append(
                    PayoutResult(
                        payee_id=pending.payee_id,
                        payee_role=pending.payee_role,
                        amount=pending.amount,
                        state="error",
                        pending_payout_id=pending.id,
                        detail=str(exc),
                    )
                )
        return results

    def _retry_one(self, pending: PendingPayout) -> PayoutResult:
        collection = PAYEE_COLLECTIONS[pending.payee_role]
        doc = self.store.get(collection, pending.payee_id)
        payee = Payee.from_doc(doc) if doc else Payee(id=pending.payee_id)
        rail = choose_rail(payee)
        if rail is None:
            if pending.status != "awaiting_connect":
                self.store.update(
                    "pendingPayouts",
                    pending.id,
                    {"status": "awaiting_connect", "updatedAt": now_iso()},
                )
            return PayoutResult(
                payee_id=pending.payee_id,
                payee_role=pending.payee_role,
                amount=pending.amount,
                state="awaiting_connect",
                pending_payout_id=pending.id,
            )

        self.store.update("pendingPayouts", pending.id, {"status": "processing", "updatedAt": now_iso()})
        try:
            payout_id, sent = self.send(
                payee,
                pending.payee_role,
                pending.order_id,
                pending.order_number,
                round_money(pending.amount),
                pending.currency,
                rail,
                reason=pending.reason if pending.reason != "sale" else "retry",
                original_payout_id=pending.original_payout_id,
                from_pending_payout=pending.id,
                attempt=pending.retry_count,
            )
        except PaymentGatewayError as exc:
            self.store.update(
                "pendingPayouts",
                pending.id,
                {
                    "status": "retry_pending",
                    "retryCount": pending.retry_count + 1,
                    "failureReason": str(exc),
                    "updatedAt": now_iso(),
                },
            )
            logger.warning("retry of pending payout %s failed: %s", pending.id, exc)
            return PayoutResult(
                payee_id=pending.payee_id,
                payee_role=pending.payee_role,
                amount=pending.amount,
                state="retry_pending",
                rail=rail,
                pending_payout_id=pending.id,
                detail=str(exc),
            )

        if payee.email:
            subject, html = messages.payout_completed(payee.label, as_amount(sent), pending.currency, pending.order_number)
            self.notify(payee.email, subject, html, ref=payout_id)
        return PayoutResult(
            payee_id=pending.payee_id,
            payee_role=pending.payee_role,
            amount=as_amount(sent),
            state="paid",
            rail=rail,
            payout_id=payout_id,
            pending_payout_id=pending.id,
        )
