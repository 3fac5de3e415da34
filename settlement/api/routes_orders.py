from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from settlement.api.utils import request_services
from settlement.core.errors import OrderNotFound
from settlement.core.security import Actor, get_actor
from settlement.domain.events import CheckoutCompleted
from settlement.services import SettlementServices

logger = logging.getLogger(__name__)

router = APIRouter(tags=["orders"])


class ConfirmCheckoutRequest(BaseModel):
    session_id: str


@router.post("/orders/confirm")
def confirm_order(
    req: ConfirmCheckoutRequest,
    services: SettlementServices = Depends(request_services),
):
    # the session is fetched from the processor, so the caller is not trusted for amounts
    session = services.gateway.retrieve_checkout(req.session_id)
    checkout = CheckoutCompleted.from_session(session)
    if checkout.payment_status not in ("paid", "no_payment_required"):
        raise HTTPException(status_code=409, detail=f"checkout not paid: {checkout.payment_status}")

    result = services.assembler.confirm_checkout(checkout)
    logger.info("checkout %s confirmed by poll: order=%s created=%s", req.session_id, result.order_number, result.created)
    return result.as_dict()


@router.get("/orders/{order_id}")
def get_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    services: SettlementServices = Depends(request_services),
):
    order = services.assembler.get_order(order_id)
    if order is None:
        raise OrderNotFound(f"order {order_id} not found")
    return order.model_dump(by_alias=True, exclude_none=True)
