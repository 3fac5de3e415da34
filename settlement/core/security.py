from __future__ import annotations

import json
from typing import Any, Literal

import stripe
from fastapi import Header, HTTPException
from pydantic import BaseModel

from settlement.core.config import get_settings


ActorType = Literal["admin", "support", "system"]


class Actor(BaseModel):
    type: ActorType
    id: str


def _auth_error(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


def _extract_api_key(authorization: str | None, x_api_key: str | None) -> str | None:
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise _auth_error("invalid authorization header")
        return token.strip()
    if x_api_key and x_api_key.strip():
        return x_api_key.strip()
    return None


def _actor_from_api_key(api_key: str) -> Actor | None:
    settings = get_settings()
    key_map = {
        settings.admin_api_key: Actor(type="admin", id=settings.admin_actor_id),
        settings.support_api_key: Actor(type="support", id=settings.support_actor_id),
        settings.system_api_key: Actor(type="system", id=settings.system_actor_id),
    }
    return key_map.get(api_key)


def get_actor(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
) -> Actor:
    settings = get_settings()
    if not settings.auth_enabled:
        return Actor(type="admin", id=settings.admin_actor_id)

    api_key = _extract_api_key(authorization, x_api_key)
    if not api_key:
        raise _auth_error("missing api key")

    actor = _actor_from_api_key(api_key)
    if actor is None:
        raise _auth_error("invalid api key")
    return actor


def require_roles(actor: Actor, allowed: set[str], detail: str = "insufficient role") -> None:
    if actor.type not in allowed:
        raise HTTPException(status_code=403, detail=detail)


def verify_webhook_payload(payload: bytes, signature_header: str | None) -> dict[str, Any]:
    """Authenticate a processor webhook body and return the decoded event.

    The processor signs ``"{timestamp}.{body}"`` with HMAC-SHA256 and sends
    ``t=<timestamp>,v1=<hex digest>``; events outside the tolerance window are
    rejected as replays. Unauthenticated events are never queued.
    """
    settings = get_settings()
    if not signature_header:
        raise _auth_error("missing webhook signature")
    try:
        stripe.WebhookSignature.verify_header(
            payload,
            signature_header,
            settings.stripe_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance_seconds,
        )
    except stripe.SignatureVerificationError as exc:
        raise _auth_error("invalid webhook signature") from exc

    try:
        event = json.loads(payload.decode("utf-8"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="invalid webhook body") from exc
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="invalid webhook body")
    return event
