from decimal import Decimal
from typing import Optional
from urllib.parse import quote

import httpx

from storefront.errors import GatewayError
from storefront.gateway import (
    FAILED,
    SUCCESS,
    InitializeResult,
    PaymentGateway,
    VerifyResult,
    WebhookEvent,
    to_minor_units,
)

WEBHOOK_EVENTS = {
    "charge.success": SUCCESS,
    "charge.failed": FAILED,
}


class PaystackGateway(PaymentGateway):
    """Paystack transactions API. Amounts travel in kobo."""

    name = "paystack"
    signature_header = "x-paystack-signature"

    def __init__(self, secret_key: str, base_url: str = "https://api.paystack.co",
                 timeout: float = 15.0, client: Optional[httpx.Client] = None):
        super().__init__(base_url, timeout, client)
        self.secret_key = secret_key

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def webhook_secret(self) -> str:
        return self.secret_key

    def initialize(self, email: str, amount_major: Decimal, currency: str, reference: str,
                   callback_url: str, metadata: Optional[dict] = None) -> InitializeResult:
        payload = {
            "email": email,
            "amount": to_minor_units(amount_major),
            "reference": reference,
            "currency": currency,
            "callback_url": callback_url,
            "metadata": metadata or {},
        }
        body = self._request("POST", "/transaction/initialize", reference, json=payload, headers=self._headers())
        if not body.get("status"):
            raise GatewayError(body.get("message") or "Paystack init failed", reference, self.name)

        data = body.get("data") or {}
        if not data.get("authorization_url"):
            raise GatewayError("Paystack returned no authorization_url", reference, self.name)
        return InitializeResult(
            checkout_url=data["authorization_url"],
            provider_reference=data.get("reference"),
            access_code=data.get("access_code"),
        )

    def verify(self, reference: str) -> VerifyResult:
        body = self._request(
            "GET", f"/transaction/verify/{quote(reference, safe='')}", reference, headers=self._headers()
        )
        if not body.get("status"):
            raise GatewayError(body.get("message") or "Verification failed", reference, self.name)

        data = body.get("data") or {}
        provider_status = data.get("status") or "unknown"
        amount = data.get("amount")
        return VerifyResult(
            provider_status=provider_status,
            paid_amount_minor=int(amount) if amount is not None else None,
            raw=data,
            succeeded=provider_status == "success",
        )

    def parse_webhook(self, payload: dict) -> Optional[WebhookEvent]:
        event_type = payload.get("event")
        data = payload.get("data")
        if not event_type or not isinstance(data, dict):
            raise ValueError("Invalid payload")
        if event_type not in WEBHOOK_EVENTS:
            return None
        if not data.get("reference"):
            raise ValueError("Missing reference")

        amount = data.get("amount")
        return WebhookEvent(
            event_type=event_type,
            reference=data["reference"],
            observed_status=WEBHOOK_EVENTS[event_type],
            paid_amount_minor=int(amount) if amount is not None and event_type == "charge.success" else None,
        )
