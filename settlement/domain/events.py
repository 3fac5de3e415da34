from __future__ import annotations

import json
import logging
from typing import Any, Literal

from pydantic import BaseModel, Field

from settlement.domain.types import Customer

logger = logging.getLogger(__name__)

DisputeOutcome = Literal["won", "lost"]


def _money(minor_units: Any) -> float:
    return round(int(minor_units or 0) / 100, 2)


def _float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _ref(value: Any) -> str | None:
    # processor objects are either ids or expanded objects with an id
    if isinstance(value, dict):
        return value.get("id")
    return value or None


class CheckoutCompleted(BaseModel):
    payment_reference: str | None
    session_id: str | None = None
    amount_total: float
    currency: str
    customer: Customer
    items: list[dict[str, Any]] = Field(default_factory=list)
    pending_checkout_id: str | None = None
    shipping_address: dict[str, Any] | None = None
    subtotal: float | None = None
    shipping: float = 0.0
    service_fees: float = 0.0
    payment_method: str = "card"
    payment_status: str | None = None

    @classmethod
    def from_session(cls, session: dict[str, Any]) -> "CheckoutCompleted":
        metadata = session.get("metadata") or {}
        items: list[dict[str, Any]] = []
        if metadata.get("items_json"):
            try:
                parsed = json.loads(metadata["items_json"])
                if isinstance(parsed, list):
                    items = parsed
            except ValueError:
                logger.error("unparseable items_json on session=%s", session.get("id"))

        shipping_address = None
        details = session.get("shipping_details") or {}
        address = details.get("address") if isinstance(details, dict) else None
        if address:
            shipping_address = {
                "name": details.get("name") or "",
                "address1": address.get("line1") or "",
                "address2": address.get("line2") or "",
                "city": address.get("city") or "",
                "county": address.get("state") or "",
                "postcode": address.get("postal_code") or "",
                "country": address.get("country") or "",
            }

        amount_total = _money(session.get("amount_total"))
        subtotal = metadata.get("subtotal")
        return cls(
            payment_reference=_ref(session.get("payment_intent")),
            session_id=session.get("id"),
            amount_total=amount_total,
            currency=(session.get("currency") or "gbp").lower(),
            customer=Customer(
                email=metadata.get("customer_email") or session.get("customer_email") or "",
                first_name=metadata.get("customer_firstName") or "Customer",
                last_name=metadata.get("customer_lastName") or "",
                phone=metadata.get("customer_phone") or "",
                user_id=metadata.get("customer_userId") or None,
            ),
            items=items,
            pending_checkout_id=metadata.get("pending_checkout_id") or None,
            shipping_address=shipping_address,
            subtotal=_float(subtotal) if subtotal not in (None, "") else None,
            shipping=_float(metadata.get("shipping")),
            service_fees=_float(metadata.get("serviceFees")),
            payment_status=session.get("payment_status"),
        )


class ChargeRefunded(BaseModel):
    charge_ref: str
    amount_total: float
    amount_refunded: float
    payment_reference: str | None = None

    @classmethod
    def from_charge(cls, charge: dict[str, Any]) -> "ChargeRefunded":
        return cls(
            charge_ref=charge["id"],
            amount_total=_money(charge.get("amount")),
            amount_refunded=_money(charge.get("amount_refunded")),
            payment_reference=_ref(charge.get("payment_intent")),
        )


class DisputeOpened(BaseModel):
    dispute_ref: str
    charge_ref: str
    amount: float
    reason: str | None = None
    payment_reference: str | None = None

    @classmethod
    def from_dispute(cls, dispute: dict[str, Any]) -> "DisputeOpened":
        return cls(
            dispute_ref=dispute["id"],
            charge_ref=_ref(dispute.get("charge")) or "",
            amount=_money(dispute.get("amount")),
            reason=dispute.get("reason"),
            payment_reference=_ref(dispute.get("payment_intent")),
        )


class DisputeClosed(BaseModel):
    dispute_ref: str
    outcome: DisputeOutcome

    @classmethod
    def from_dispute(cls, dispute: dict[str, Any]) -> "DisputeClosed":
        # an inquiry closed without a chargeback keeps the funds with the platform
        status = dispute.get("status")
        outcome: DisputeOutcome = "won" if status in ("won", "warning_closed") else "lost"
        return cls(dispute_ref=dispute["id"], outcome=outcome)
