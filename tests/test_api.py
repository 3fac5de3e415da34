from __future__ import annotations

import hashlib
import hmac
import json
import time

from settlement.core.config import get_settings
from settlement.ledger.store import where


def signed(payload: dict, secret: str | None = None, timestamp: int | None = None) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode("utf-8")
    ts = timestamp or int(time.time())
    secret = secret or get_settings().stripe_webhook_secret
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + body, hashlib.sha256).hexdigest()
    return body, {"Stripe-Signature": f"t={ts},v1={digest}", "Content-Type": "application/json"}


def deliver(client, payload: dict):
    body, headers = signed(payload)
    return client.post("/webhooks/payments", content=body, headers=headers)


def checkout_event(event_id: str, reference: str, amount_minor: int = 2500) -> dict:
    items = [{"id": "release-connected", "type": "vinyl", "name": "First Light LP", "price": 25.0, "releaseId": "release-connected"}]
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": f"cs_{event_id}",
                "payment_intent": reference,
                "amount_total": amount_minor,
                "currency": "gbp",
                "payment_status": "paid",
                "metadata": {"items_json": json.dumps(items), "customer_email": "buyer@example.com"},
            }
        },
    }


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_webhook_rejects_unsigned_and_forged_events(client, seed):
    body, _ = signed(checkout_event("evt_forged", "pi_forged"))

    unsigned = client.post("/webhooks/payments", content=body, headers={"Content-Type": "application/json"})
    assert unsigned.status_code == 401

    forged_body, forged_headers = signed(checkout_event("evt_forged", "pi_forged"), secret="whsec_wrong")
    forged = client.post("/webhooks/payments", content=forged_body, headers=forged_headers)
    assert forged.status_code == 401

    stale_body, stale_headers = signed(checkout_event("evt_old", "pi_old"), timestamp=int(time.time()) - 3600)
    assert client.post("/webhooks/payments", content=stale_body, headers=stale_headers).status_code == 401

    assert seed.query("orders") == []


def test_duplicate_checkout_webhook_creates_one_order(client, seed):
    event = checkout_event("evt_1", "pi_webhook")
    first = deliver(client, event)
    second = deliver(client, event)

    assert first.status_code == 200
    assert first.json()["result"]["created"] is True
    assert second.status_code == 200
    assert second.json()["result"]["created"] is False
    assert len(seed.query("orders", [where("paymentReference", "EQUAL", "pi_webhook")])) == 1
    assert seed.get("releases", "release-connected")["vinylStock"] == 9

    logs = seed.query("webhookLogs", [where("eventId", "EQUAL", "evt_1")])
    assert len(logs) == 2
    assert all(log["success"] for log in logs)
    assert all(log["processingTimeMs"] >= 0 for log in logs)


def test_refund_and_dispute_webhooks(client, seed, gateway):
    event = checkout_event("evt_2", "pi_money", amount_minor=2500)
    deliver(client, event)

    refund = {
        "id": "evt_3",
        "type": "charge.refunded",
        "data": {"object": {"id": "ch_money", "amount": 2500, "amount_refunded": 1250, "payment_intent": "pi_money"}},
    }
    response = deliver(client, refund)
    assert response.status_code == 200
    assert response.json()["result"]["applied"] is True
    assert len(gateway.reversals) == 1

    opened = {
        "id": "evt_4",
        "type": "charge.dispute.created",
        "data": {"object": {"id": "dp_api", "charge": "ch_money", "amount": 2500, "reason": "fraudulent", "payment_intent": "pi_money"}},
    }
    assert deliver(client, opened).json()["result"]["applied"] is True

    closed = {"id": "evt_5", "type": "charge.dispute.closed", "data": {"object": {"id": "dp_api", "status": "lost"}}}
    assert deliver(client, closed).json()["result"]["applied"] is True
    assert seed.get("disputes", "dp_api")["status"] == "lost"


def test_unhandled_and_invalid_events_are_acknowledged(client, seed):
    unhandled = deliver(client, {"id": "evt_6", "type": "customer.created", "data": {"object": {}}})
    assert unhandled.status_code == 200
    assert unhandled.json()["handled"] is False

    empty = checkout_event("evt_7", "pi_empty")
    empty["data"]["object"]["metadata"]["items_json"] = "[]"
    rejected = deliver(client, empty)
    assert rejected.status_code == 200
    assert rejected.json()["handled"] is False
    assert seed.query("orders") == []
    assert seed.query("webhookLogs", [where("eventId", "EQUAL", "evt_7")])[0]["success"] is False


def test_confirm_polls_the_processor(client, seed, gateway):
    gateway.sessions["cs_poll"] = checkout_event("evt_poll", "pi_poll")["data"]["object"]
    gateway.sessions["cs_unpaid"] = {**gateway.sessions["cs_poll"], "payment_status": "unpaid"}

    confirmed = client.post("/orders/confirm", json={"session_id": "cs_poll"})
    assert confirmed.status_code == 200
    assert confirmed.json()["created"] is True

    again = client.post("/orders/confirm", json={"session_id": "cs_poll"})
    assert again.json()["order_id"] == confirmed.json()["order_id"]
    assert again.json()["created"] is False

    assert client.post("/orders/confirm", json={"session_id": "cs_unpaid"}).status_code == 409
    missing = client.post("/orders/confirm", json={"session_id": "cs_missing"})
    assert missing.status_code == 502
    assert missing.json()["error"] == "dependency_unavailable"


def test_order_read_requires_api_key(client, seed, auth_headers):
    gateway_event = checkout_event("evt_read", "pi_read")
    created = deliver(client, gateway_event)
    order_id = created.json()["result"]["order_id"]

    assert client.get(f"/orders/{order_id}").status_code == 401
    found = client.get(f"/orders/{order_id}", headers=auth_headers["support"])
    assert found.status_code == 200
    assert found.json()["paymentReference"] == "pi_read"

    missing = client.get("/orders/nope", headers=auth_headers["support"])
    assert missing.status_code == 404
    assert missing.json()["error"] == "order_not_found"


def test_admin_routes_enforce_roles(client, seed, auth_headers):
    event = checkout_event("evt_admin", "pi_admin")
    order_id = deliver(client, event).json()["result"]["order_id"]

    assert client.post(f"/admin/orders/{order_id}/cancel").status_code == 401
    assert client.post(f"/admin/orders/{order_id}/cancel", headers=auth_headers["system"]).status_code == 403
    assert client.post(f"/admin/orders/{order_id}/repair", headers=auth_headers["support"]).status_code == 403

    report = client.get(f"/admin/reconciliation/orders/{order_id}", headers=auth_headers["support"])
    assert report.status_code == 200
    assert report.json()["passed"] is True

    repaired = client.post(f"/admin/orders/{order_id}/repair", headers=auth_headers["admin"])
    assert repaired.status_code == 200
    assert seed.get("releases", "release-connected")["vinylStock"] == 9

    retry = client.post("/admin/payouts/retry", headers=auth_headers["system"])
    assert retry.status_code == 200
    assert retry.json()["count"] == 0

    cancelled = client.post(f"/admin/orders/{order_id}/cancel", headers=auth_headers["admin"])
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert seed.get("releases", "release-connected")["vinylStock"] == 10

    assert client.post("/admin/orders/nope/cancel", headers=auth_headers["admin"]).status_code == 404
