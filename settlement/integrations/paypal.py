from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from settlement.core.config import Settings, get_settings
from settlement.core.errors import PaymentGatewayError
from settlement.domain.fees import round_money
from settlement.ledger.credentials import CredentialCache

logger = logging.getLogger(__name__)


@dataclass
class BatchPayoutResult:
    success: bool
    batch_ref: str | None = None
    item_ref: str | None = None
    status: str | None = None
    error: str | None = None


class PayPalPayouts:
    """Email-addressed batch payouts over the PayPal Payouts REST API."""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.BaseTransport | None = None,
        credentials: CredentialCache | None = None,
    ):
        self.settings = settings or get_settings()
        self.base_url = self.settings.paypal_base_url
        self.transport = transport
        self.credentials = credentials or CredentialCache(self._fetch_token, skew_seconds=60)

    @property
    def configured(self) -> bool:
        return bool(self.settings.paypal_client_id and self.settings.paypal_client_secret)

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.settings.http_timeout_seconds, transport=self.transport)

    def _fetch_token(self) -> tuple[str, int]:
        if not self.configured:
            raise PaymentGatewayError("PayPal credentials are not configured")
        try:
            with self._client() as client:
                response = client.post(
                    f"{self.base_url}/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
                )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PaymentGatewayError(f"PayPal auth failed: {exc}") from exc
        body = response.json()
        return str(body["access_token"]), int(body.get("expires_in", 3600))

    def send(self, email: str, amount, currency: str, note: str, reference: str) -> BatchPayoutResult:
        try:
            token = self.credentials.get()
        except PaymentGatewayError as exc:
            return BatchPayoutResult(success=False, error=str(exc))

        payload = {
            "sender_batch_header": {
                "sender_batch_id": reference,
                "email_subject": "You have received a payout",
                "email_message": note,
            },
            "items": [
                {
                    "recipient_type": "EMAIL",
                    "amount": {"value": f"{round_money(amount):.2f}", "currency": currency.upper()},
                    "receiver": email,
                    "note": note,
                    "sender_item_id": reference,
                }
            ],
        }
        try:
            with self._client() as client:
                response = client.post(
                    f"{self.base_url}/v1/payments/payouts",
                    json=payload,
                    headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                )
        except httpx.HTTPError as exc:
            logger.error("PayPal payout transport error for %s: %s", reference, exc)
            return BatchPayoutResult(success=False, error=str(exc))

        if response.status_code == 401:
            self.credentials.invalidate()
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            error = body.get("message") or body.get("name") or f"HTTP {response.status_code}"
            logger.error("PayPal payout failed for %s: %s", reference, error)
            return BatchPayoutResult(success=False, error=error)

        body = response.json()
        header = body.get("batch_header") or {}
        items = body.get("items") or []
        return BatchPayoutResult(
            success=True,
            batch_ref=header.get("payout_batch_id"),
            item_ref=items[0].get("payout_item_id") if items else None,
            status=header.get("batch_status"),
        )
