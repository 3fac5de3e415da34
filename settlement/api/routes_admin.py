from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query

from settlement.api.utils import request_services
from settlement.core.security import Actor, get_actor, require_roles
from settlement.reconciliation.rules import run_order_reconciliation
from settlement.services import SettlementServices

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/orders/{order_id}/cancel")
def cancel_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    services: SettlementServices = Depends(request_services),
):
    require_roles(actor, {"admin", "support"}, detail="cancelling orders requires admin/support role")
    return services.assembler.cancel_order(order_id).as_dict()


@router.post("/orders/{order_id}/repair")
def repair_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    services: SettlementServices = Depends(request_services),
):
    require_roles(actor, {"admin"}, detail="repairing orders requires admin role")
    return services.assembler.repair_order(order_id).as_dict()


@router.post("/payouts/retry")
def retry_payouts(
    limit: int | None = Query(default=None, ge=1, le=500),
    max_age_days: int | None = Query(default=None, ge=1),
    actor: Actor = Depends(get_actor),
    services: SettlementServices = Depends(request_services),
):
    require_roles(actor, {"admin", "system"}, detail="payout retry requires admin/system role")
    results = services.router.retry_pending(limit=limit, max_age_days=max_age_days)
    return {
        "count": len(results),
        "paid": sum(1 for r in results if r.state == "paid"),
        "results": [asdict(r) for r in results],
    }


@router.get("/reconciliation/orders/{order_id}")
def reconcile_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    services: SettlementServices = Depends(request_services),
):
    require_roles(actor, {"admin", "support"}, detail="reconciliation requires admin/support role")
    results = run_order_reconciliation(services.store, order_id)
    return {
        "order_id": order_id,
        "passed": all(r.passed for r in results),
        "results": [asdict(r) for r in results],
    }
