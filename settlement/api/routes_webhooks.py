from __future__ import annotations

import logging
import time
from typing import Any

from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool

from settlement.api.utils import elapsed_ms, request_services
from settlement.core.errors import DocumentStoreError, ValidationError
from settlement.core.security import verify_webhook_payload
from settlement.domain.events import ChargeRefunded, CheckoutCompleted, DisputeClosed, DisputeOpened
from settlement.ledger.store import now_iso
from settlement.services import SettlementServices

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


def process_event(services: SettlementServices, event: dict[str, Any]) -> dict[str, Any]:
    event_type = event.get("type") or ""
    obj = (event.get("data") or {}).get("object") or {}

    if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
        checkout = CheckoutCompleted.from_session(obj)
        if checkout.payment_status not in (None, "paid", "no_payment_required"):
            return {"handled": False, "message": f"checkout not paid: {checkout.payment_status}"}
        result = services.assembler.confirm_checkout(checkout)
        message = f"order {result.order_number} {'created' if result.created else 'already exists'}"
        return {"handled": True, "message": message, "result": result.as_dict()}

    if event_type == "charge.refunded":
        refund = ChargeRefunded.from_charge(obj)
        result = services.reconciler.on_refund(
            refund.charge_ref,
            refund.amount_total,
            refund.amount_refunded,
            payment_reference=refund.payment_reference,
        )
        return {"handled": True, "message": result.detail, "result": result.as_dict()}

    if event_type == "charge.dispute.created":
        opened = DisputeOpened.from_dispute(obj)
        result = services.reconciler.on_dispute_opened(
            opened.dispute_ref,
            opened.charge_ref,
            opened.amount,
            opened.reason,
            payment_reference=opened.payment_reference,
        )
        return {"handled": True, "message": result.detail, "result": result.as_dict()}

    if event_type == "charge.dispute.closed":
        closed = DisputeClosed.from_dispute(obj)
        result = services.reconciler.on_dispute_closed(closed.dispute_ref, closed.outcome)
        return {"handled": True, "message": result.detail, "result": result.as_dict()}

    return {"handled": False, "message": f"unhandled event type {event_type}"}


def _log_webhook(services: SettlementServices, event: dict[str, Any], success: bool, message: str, started: float) -> None:
    try:
        services.store.add(
            "webhookLogs",
            {
                "source": "payments",
                "eventType": event.get("type"),
                "eventId": event.get("id"),
                "success": success,
                "message": message,
                "processingTimeMs": elapsed_ms(started),
                "createdAt": now_iso(),
            },
        )
    except DocumentStoreError as exc:
        logger.warning("could not write webhook log for event=%s: %s", event.get("id"), exc)


@router.post("/webhooks/payments")
async def payments_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
    services: SettlementServices = Depends(request_services),
):
    payload = await request.body()
    event = verify_webhook_payload(payload, stripe_signature)
    started = time.perf_counter()
    logger.info("webhook %s received: %s", event.get("id"), event.get("type"))

    try:
        outcome = await run_in_threadpool(process_event, services, event)
    except ValidationError as exc:
        # a malformed event will not improve on redelivery
        logger.error("webhook %s rejected: %s", event.get("id"), exc)
        await run_in_threadpool(_log_webhook, services, event, False, str(exc), started)
        return {"received": True, "handled": False, "message": str(exc)}
    except Exception as exc:
        await run_in_threadpool(_log_webhook, services, event, False, str(exc), started)
        raise

    await run_in_threadpool(_log_webhook, services, event, True, outcome["message"], started)
    return {"received": True, **outcome}
