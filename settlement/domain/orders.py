from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import pydantic

from settlement.core.config import Settings, get_settings
from settlement.core.errors import DocumentStoreError, OrderCreationError, OrderNotFound, ValidationError
from settlement.domain import messages, outcomes
from settlement.domain.catalog import enrich_item, generate_order_number
from settlement.domain.events import CheckoutCompleted
from settlement.domain.fees import as_amount, round_money, split_item
from settlement.domain.outcomes import StepOutcome
from settlement.domain.payouts import PayoutResult, PayoutRouter
from settlement.domain.sales_ledger import SalesLedger
from settlement.domain.stock import StockLedger
from settlement.domain.types import PAYEE_COLLECTIONS, Customer, Order, OrderItem, OrderTotals
from settlement.integrations.mailer import Notifier
from settlement.ledger.store import DocumentStore, new_document_id, now_iso, where

logger = logging.getLogger(__name__)

PAYMENT_METHODS = {"card", "paypal", "free", "credit", "manual"}


@dataclass
class OrderResult:
    order_id: str
    order_number: str
    created: bool
    status: str
    outcomes: list[StepOutcome] = field(default_factory=list)
    payouts: list[PayoutResult] = field(default_factory=list)

    @property
    def degraded(self) -> list[StepOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status == "degraded"]

    def as_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "order_number": self.order_number,
            "created": self.created,
            "status": self.status,
            "outcomes": [outcome.as_dict() for outcome in self.outcomes],
        }


def initial_status(has_physical: bool, has_pre_order: bool) -> str:
    if has_pre_order:
        return "awaiting_release"
    if has_physical:
        return "processing"
    return "completed"


class OrderAssembler:
    """Builds one order per completed payment and fans out its side effects."""

    def __init__(
        self,
        store: DocumentStore,
        stock: StockLedger,
        router: PayoutRouter,
        notifier: Notifier,
        settings: Settings | None = None,
        sales_ledger: SalesLedger | None = None,
    ):
        self.store = store
        self.stock = stock
        self.router = router
        self.notifier = notifier
        self.settings = settings or get_settings()
        self.sales_ledger = sales_ledger or SalesLedger(store, router)

    def get_order(self, order_id: str) -> Order | None:
        doc = self.store.get("orders", order_id)
        return Order.from_doc(doc) if doc else None

    def find_by_reference(self, payment_reference: str) -> Order | None:
        rows = self.store.query("orders", [where("paymentReference", "EQUAL", payment_reference)], limit=1)
        return Order.from_doc(rows[0]) if rows else None

    def _require(self, order_id: str) -> Order:
        order = self.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"order {order_id} not found")
        return order

    def create_order(
        self,
        cart: list[dict[str, Any]],
        customer: Customer | dict[str, Any],
        totals: OrderTotals | dict[str, Any] | None,
        payment_method: str,
        payment_reference: str | None = None,
        shipping: dict[str, Any] | None = None,
        currency: str | None = None,
    ) -> OrderResult:
        customer = customer if isinstance(customer, Customer) else Customer.model_validate(customer or {})
        if not customer.email or "@" not in customer.email:
            raise ValidationError("customer email is required")
        if not cart:
            raise ValidationError("order has no items")
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"unsupported payment method: {payment_method}")
        try:
            items = [item if isinstance(item, OrderItem) else OrderItem.model_validate(item) for item in cart]
        except pydantic.ValidationError as exc:
            raise ValidationError(f"invalid cart item: {exc.errors()[0].get('msg')}") from exc

        if payment_reference:
            try:
                existing = self.find_by_reference(payment_reference)
            except DocumentStoreError as exc:
                raise OrderCreationError(f"idempotency check failed: {exc}") from exc
            if existing is not None:
                logger.info(
                    "order %s already exists for payment=%s, skipping",
                    existing.order_number,
                    payment_reference,
                )
                return OrderResult(
                    order_id=existing.id,
                    order_number=existing.order_number,
                    created=False,
                    status=existing.status,
                )

        items = [enrich_item(self.store, item) for item in items]
        items = self.router.attribute(items)

        now = datetime.now(timezone.utc)
        order_id = new_document_id()
        order = self._build(
            order_id=order_id,
            order_number=generate_order_number(now),
            items=items,
            customer=customer,
            totals=totals,
            payment_method=payment_method,
            payment_reference=payment_reference,
            shipping=shipping,
            currency=(currency or self.settings.settlement_currency).lower(),
        )

        try:
            self.store.set("orders", order_id, order.to_doc())
        except DocumentStoreError as exc:
            logger.error("order write failed for payment=%s: %s", payment_reference, exc)
            raise OrderCreationError(f"order write failed: {exc}") from exc
        logger.info(
            "order %s created: id=%s items=%s total=%.2f payment=%s",
            order.order_number,
            order_id,
            len(order.items),
            order.totals.total,
            payment_reference,
        )

        result = OrderResult(order_id=order_id, order_number=order.order_number, created=True, status=order.status)
        result.outcomes.extend(self.stock.decrement_order(order))
        result.payouts = self.router.dispatch(order)
        result.outcomes.extend(payout.as_outcome() for payout in result.payouts)
        result.outcomes.extend(self.sales_ledger.record_sale(order))
        result.outcomes.extend(self._notify(order))
        result.outcomes.append(self._count_customer_order(customer))
        self._record_outcomes(order_id, result.outcomes)
        return result

    def _build(
        self,
        order_id: str,
        order_number: str,
        items: list[OrderItem],
        customer: Customer,
        totals: OrderTotals | dict[str, Any] | None,
        payment_method: str,
        payment_reference: str | None,
        shipping: dict[str, Any] | None,
        currency: str,
    ) -> Order:
        given = totals if isinstance(totals, OrderTotals) else OrderTotals.model_validate(totals or {})

        batch_size = len(items)
        platform = Decimal("0.00")
        processor = Decimal("0.00")
        for item in items:
            split = split_item(
                item.line_total,
                self.settings.platform_rate_for(item.payee_role or "artist"),
                self.settings.processor_percent_rate,
                self.settings.processor_fixed_fee,
                batch_size,
            )
            platform += split.platform_fee
            processor += split.processor_fee

        subtotal = round_money(given.subtotal) if given.subtotal else round_money(sum(i.line_total for i in items))
        shipping_fee = round_money(given.shipping)
        service_fees = round_money(given.service_fees)
        total = round_money(given.total) if given.total else subtotal + shipping_fee + service_fees

        pre_order_dates = [item.release_date for item in items if item.is_pre_order and item.release_date]
        has_physical = any(item.is_physical for item in items)
        has_pre_order = any(item.is_pre_order for item in items)
        now = now_iso()
        return Order(
            id=order_id,
            order_number=order_number,
            customer=customer,
            shipping=shipping,
            items=items,
            totals=OrderTotals(
                subtotal=as_amount(subtotal),
                shipping=as_amount(shipping_fee),
                platform_fee=as_amount(platform),
                processor_fee=as_amount(processor),
                service_fees=as_amount(service_fees),
                total=as_amount(total),
            ),
            currency=currency,
            has_physical_items=has_physical,
            has_pre_order_items=has_pre_order,
            pre_order_delivery_date=max(pre_order_dates) if pre_order_dates else None,
            payment_method=payment_method,
            payment_reference=payment_reference,
            status=initial_status(has_physical, has_pre_order),
            created_at=now,
            updated_at=now,
        )

    def _notify(self, order: Order) -> list[StepOutcome]:
        results = []
        subject, html = messages.order_confirmation(order)
        results.append(
            self.router.notify(order.customer.email, subject, html, ref=order.id, bcc=self.settings.admin_bcc_email)
        )
        if order.has_physical_items:
            subject, html = messages.fulfillment_alert(order)
            results.append(self.router.notify(self.settings.fulfillment_email, subject, html, ref=order.id))

        by_payee: dict[tuple[str, str], list[OrderItem]] = defaultdict(list)
        for item in order.items:
            if item.payee_id and item.payee_role:
                by_payee[(item.payee_role, item.payee_id)].append(item)
        for (role, payee_id), items in by_payee.items():
            try:
                payee = self.store.get(PAYEE_COLLECTIONS[role], payee_id)
            except DocumentStoreError as exc:
                results.append(outcomes.degraded("notify", str(exc), ref=payee_id))
                continue
            if not payee or not payee.get("email"):
                results.append(outcomes.skipped("notify", "payee has no email", ref=payee_id))
                continue
            label = payee.get("artistName") or payee.get("name") or payee.get("displayName") or "there"
            subject, html = messages.payee_sale(label, order, items)
            results.append(self.router.notify(payee["email"], subject, html, ref=payee_id))
        return results

    def _count_customer_order(self, customer: Customer) -> StepOutcome:
        if not customer.user_id:
            return outcomes.skipped("customer", "guest checkout")
        try:
            if self.store.get("users", customer.user_id) is None:
                return outcomes.skipped("customer", "no user record", ref=customer.user_id)
            self.store.increment("users", customer.user_id, {"orderCount": 1})
            self.store.update("users", customer.user_id, {"lastOrderAt": now_iso()})
        except DocumentStoreError as exc:
            logger.warning("customer order count update failed for %s: %s", customer.user_id, exc)
            return outcomes.degraded("customer", str(exc), ref=customer.user_id)
        return outcomes.ok("customer", ref=customer.user_id)

    def _record_outcomes(self, order_id: str, step_outcomes: list[StepOutcome]) -> None:
        try:
            self.store.update(
                "orders",
                order_id,
                {"settlementOutcomes": [outcome.as_dict() for outcome in step_outcomes], "updatedAt": now_iso()},
            )
        except DocumentStoreError as exc:
            logger.warning("could not record settlement outcomes on order=%s: %s", order_id, exc)

    def confirm_checkout(self, event: CheckoutCompleted) -> OrderResult:
        """Create the order for a completed checkout (webhook or polling fallback)."""
        if event.payment_status not in (None, "paid", "no_payment_required"):
            raise ValidationError(f"checkout not paid: {event.payment_status}")

        items = list(event.items)
        if not items and event.pending_checkout_id:
            items = self._pending_checkout_items(event.pending_checkout_id)

        subtotal = event.subtotal
        if subtotal is None:
            subtotal = as_amount(round_money(event.amount_total) - round_money(event.shipping) - round_money(event.service_fees))
        return self.create_order(
            cart=items,
            customer=event.customer,
            totals={
                "subtotal": subtotal,
                "shipping": event.shipping,
                "serviceFees": event.service_fees,
                "total": event.amount_total,
            },
            payment_method="card" if event.amount_total > 0 else "free",
            payment_reference=event.payment_reference,
            shipping=event.shipping_address,
            currency=event.currency,
        )

    def _pending_checkout_items(self, pending_checkout_id: str) -> list[dict[str, Any]]:
        try:
            checkout = self.store.get("pendingCheckouts", pending_checkout_id)
        except DocumentStoreError as exc:
            raise OrderCreationError(f"pending checkout lookup failed: {exc}") from exc
        if not checkout:
            logger.warning("pending checkout %s not found", pending_checkout_id)
            return []
        return list(checkout.get("items") or [])

    def cancel_order(self, order_id: str) -> OrderResult:
        order = self._require(order_id)
        if order.status in ("cancelled", "refunded"):
            return OrderResult(order_id=order.id, order_number=order.order_number, created=False, status=order.status)

        now = now_iso()
        self.store.update("orders", order.id, {"status": "cancelled", "cancelledAt": now, "updatedAt": now})
        logger.info("order %s cancelled, returning stock", order.order_number)
        result = OrderResult(order_id=order.id, order_number=order.order_number, created=False, status="cancelled")
        result.outcomes.extend(self.stock.refund_order(order))
        return result

    def repair_order(self, order_id: str) -> OrderResult:
        """Re-apply stock and payout steps that did not land for an order."""
        order = self._require(order_id)
        result = OrderResult(order_id=order.id, order_number=order.order_number, created=False, status=order.status)
        if order.status in ("cancelled", "refunded"):
            result.outcomes.append(outcomes.skipped("repair", f"order is {order.status}"))
            return result

        result.outcomes.extend(self.stock.decrement_order(order, only_missing=True))
        result.payouts = self.router.dispatch(order)
        result.outcomes.extend(payout.as_outcome() for payout in result.payouts)
        result.outcomes.extend(self.sales_ledger.record_sale(order))
        logger.info("order %s repaired: %s", order.order_number, [o.status for o in result.outcomes])
        return result
