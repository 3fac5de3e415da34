from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol

import stripe

from settlement.core.config import Settings, get_settings
from settlement.core.errors import PaymentGatewayError
from settlement.domain.fees import round_money
from settlement.integrations.paypal import BatchPayoutResult, PayPalPayouts

logger = logging.getLogger(__name__)


@dataclass
class Transfer:
    ref: str
    destination: str | None
    amount: float
    amount_reversed: float = 0.0
    reversed: bool = False
    group_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    backend: str

    def create_transfer(
        self,
        destination: str,
        amount: Decimal,
        currency: str,
        group_id: str,
        metadata: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> str:
        ...

    def reverse_transfer(self, transfer_ref: str, amount: Decimal | None = None, metadata: dict[str, Any] | None = None) -> str:
        ...

    def list_transfers(self, group_id: str) -> list[Transfer]:
        ...

    def batch_payout(self, destination_email: str, amount: Decimal, currency: str, note: str, reference: str) -> BatchPayoutResult:
        ...

    def payment_reference_for_charge(self, charge_ref: str) -> str | None:
        ...

    def retrieve_checkout(self, session_id: str) -> dict[str, Any]:
        ...


def to_minor_units(amount) -> int:
    return int(round_money(amount) * 100)


def _plain(obj: Any) -> dict[str, Any]:
    # StripeObject renders itself as JSON
    return json.loads(str(obj))


class StripeGateway:
    backend = "stripe"

    def __init__(self, settings: Settings | None = None, batch_client: PayPalPayouts | None = None):
        self.settings = settings or get_settings()
        if not self.settings.stripe_secret_key:
            raise PaymentGatewayError("SETTLE_STRIPE_SECRET_KEY is not configured")
        stripe.api_key = self.settings.stripe_secret_key
        self.batch_client = batch_client or PayPalPayouts(self.settings)

    def create_transfer(
        self,
        destination: str,
        amount: Decimal,
        currency: str,
        group_id: str,
        metadata: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> str:
        try:
            transfer = stripe.Transfer.create(
                amount=to_minor_units(amount),
                currency=currency,
                destination=destination,
                transfer_group=group_id,
                metadata={key: str(value) for key, value in metadata.items()},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise PaymentGatewayError(f"transfer to {destination} failed: {exc.user_message or exc}") from exc
        return transfer.id

    def reverse_transfer(self, transfer_ref: str, amount: Decimal | None = None, metadata: dict[str, Any] | None = None) -> str:
        params: dict[str, Any] = {}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        if metadata:
            params["metadata"] = {key: str(value) for key, value in metadata.items()}
        try:
            reversal = stripe.Transfer.create_reversal(transfer_ref, **params)
        except stripe.StripeError as exc:
            raise PaymentGatewayError(f"reversal of {transfer_ref} failed: {exc.user_message or exc}") from exc
        return reversal.id

    def list_transfers(self, group_id: str) -> list[Transfer]:
        try:
            page = stripe.Transfer.list(transfer_group=group_id, limit=100)
            transfers = []
            for item in page.auto_paging_iter():
                transfers.append(
                    Transfer(
                        ref=item.id,
                        destination=item.destination,
                        amount=item.amount / 100,
                        amount_reversed=(item.amount_reversed or 0) / 100,
                        reversed=bool(item.reversed),
                        group_id=group_id,
                        metadata=dict(item.metadata or {}),
                    )
                )
        except stripe.StripeError as exc:
            raise PaymentGatewayError(f"listing transfers for group {group_id} failed: {exc}") from exc
        return transfers

    def batch_payout(self, destination_email: str, amount: Decimal, currency: str, note: str, reference: str) -> BatchPayoutResult:
        return self.batch_client.send(destination_email, amount, currency, note, reference)

    def payment_reference_for_charge(self, charge_ref: str) -> str | None:
        try:
            charge = stripe.Charge.retrieve(charge_ref)
        except stripe.StripeError as exc:
            raise PaymentGatewayError(f"charge lookup {charge_ref} failed: {exc}") from exc
        intent = charge.payment_intent
        if intent is None:
            return None
        return intent if isinstance(intent, str) else intent.id

    def retrieve_checkout(self, session_id: str) -> dict[str, Any]:
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.StripeError as exc:
            raise PaymentGatewayError(f"checkout session {session_id} lookup failed: {exc}") from exc
        return _plain(session)


class FakePaymentGateway:
    """In-memory processor used by tests and local runs without credentials."""

    backend = "fake"

    def __init__(self):
        self.transfers: dict[str, Transfer] = {}
        self.reversals: list[dict[str, Any]] = []
        self.batch_payouts: list[dict[str, Any]] = []
        self.charges: dict[str, str] = {}
        self.sessions: dict[str, dict[str, Any]] = {}
        self.failing_destinations: set[str] = set()
        self.idempotency_keys: list[str | None] = []
        self.fail_batch: bool = False
        self._seq = 0

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_fake_{self._seq}"

    def create_transfer(
        self,
        destination: str,
        amount: Decimal,
        currency: str,
        group_id: str,
        metadata: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> str:
        self.idempotency_keys.append(idempotency_key)
        if destination in self.failing_destinations:
            raise PaymentGatewayError(f"transfer to {destination} failed: destination unavailable")
        ref = self._next("tr")
        self.transfers[ref] = Transfer(
            ref=ref,
            destination=destination,
            amount=float(round_money(amount)),
            group_id=group_id,
            metadata=dict(metadata),
        )
        return ref

    def reverse_transfer(self, transfer_ref: str, amount: Decimal | None = None, metadata: dict[str, Any] | None = None) -> str:
        transfer = self.transfers.get(transfer_ref)
        if transfer is None:
            raise PaymentGatewayError(f"reversal of {transfer_ref} failed: no such transfer")
        remaining = round_money(transfer.amount - transfer.amount_reversed)
        value = remaining if amount is None else round_money(amount)
        if value > remaining:
            raise PaymentGatewayError(f"reversal of {transfer_ref} failed: exceeds remaining {remaining}")
        transfer.amount_reversed = float(round_money(transfer.amount_reversed + float(value)))
        transfer.reversed = round_money(transfer.amount_reversed) >= round_money(transfer.amount)
        ref = self._next("trr")
        self.reversals.append({"ref": ref, "transfer_ref": transfer_ref, "amount": float(value)})
        return ref

    def list_transfers(self, group_id: str) -> list[Transfer]:
        return [transfer for transfer in self.transfers.values() if transfer.group_id == group_id]

    def batch_payout(self, destination_email: str, amount: Decimal, currency: str, note: str, reference: str) -> BatchPayoutResult:
        if self.fail_batch:
            return BatchPayoutResult(success=False, error="batch payouts unavailable")
        batch_ref = self._next("batch")
        self.batch_payouts.append(
            {"ref": batch_ref, "email": destination_email, "amount": float(round_money(amount)), "reference": reference}
        )
        return BatchPayoutResult(success=True, batch_ref=batch_ref, status="PENDING")

    def payment_reference_for_charge(self, charge_ref: str) -> str | None:
        return self.charges.get(charge_ref)

    def retrieve_checkout(self, session_id: str) -> dict[str, Any]:
        session = self.sessions.get(session_id)
        if session is None:
            raise PaymentGatewayError(f"checkout session {session_id} lookup failed: not found")
        return session
