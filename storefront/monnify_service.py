import time
from decimal import Decimal
from typing import Optional

import httpx
import structlog

from storefront.errors import GatewayError
from storefront.gateway import (
    FAILED,
    SUCCESS,
    InitializeResult,
    PaymentGateway,
    VerifyResult,
    WebhookEvent,
    to_major_units,
    to_minor_units,
)

logger = structlog.get_logger(component="monnify")

# Refresh the access token this many seconds before Monnify expires it
TOKEN_EXPIRY_MARGIN = 60


class MonnifyGateway(PaymentGateway):
    """Monnify collections API. Amounts travel in naira (major units)."""

    name = "monnify"
    signature_header = "monnify-signature"

    def __init__(self, api_key: str, secret_key: str, contract_code: str,
                 base_url: str = "https://sandbox.monnify.com", timeout: float = 15.0,
                 client: Optional[httpx.Client] = None):
        super().__init__(base_url, timeout, client)
        self.api_key = api_key
        self.secret_key = secret_key
        self.contract_code = contract_code
        self._token = None
        self._token_expires_at = 0.0

    def webhook_secret(self) -> str:
        return self.secret_key

    def _access_token(self, reference: Optional[str] = None) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        if not self.api_key or not self.secret_key:
            raise GatewayError("Monnify API credentials not configured", reference, self.name)

        body = self._request("POST", "/api/v1/auth/login", reference, auth=(self.api_key, self.secret_key))
        response_body = body.get("responseBody") or {}
        token = response_body.get("accessToken")
        if not body.get("requestSuccessful") or not token:
            raise GatewayError(
                body.get("responseMessage") or "Failed to authenticate with Monnify", reference, self.name
            )

        expires_in = int(response_body.get("expiresIn") or 0)
        self._token = token
        self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0)
        logger.info("monnify_authenticated", expires_in=expires_in)
        return token

    def _headers(self, reference: Optional[str] = None) -> dict:
        return {
            "Authorization": f"Bearer {self._access_token(reference)}",
            "Content-Type": "application/json",
        }

    def _checked(self, body: dict, reference: str, fallback: str) -> dict:
        if not body.get("requestSuccessful"):
            raise GatewayError(body.get("responseMessage") or fallback, reference, self.name)
        return body.get("responseBody") or {}

    def initialize(self, email: str, amount_major: Decimal, currency: str, reference: str,
                   callback_url: str, metadata: Optional[dict] = None) -> InitializeResult:
        # Round-trip through minor units so the amount is exact to the kobo
        amount = to_major_units(to_minor_units(amount_major))
        payload = {
            # JSON number; a two-place Decimal renders exactly as a float
            "amount": float(amount),
            "customerName": (metadata or {}).get("customer_name") or email,
            "customerEmail": email,
            "paymentReference": reference,
            "paymentDescription": (metadata or {}).get("description") or f"Order {reference}",
            "currencyCode": currency,
            "contractCode": self.contract_code,
            "redirectUrl": callback_url,
            "paymentMethods": ["CARD", "ACCOUNT_TRANSFER"],
            "metaData": metadata or {},
        }
        body = self._request(
            "POST",
            "/api/v1/merchant/transactions/init-transaction",
            reference,
            json=payload,
            headers=self._headers(reference),
        )
        data = self._checked(body, reference, "Monnify init failed")
        if not data.get("checkoutUrl"):
            raise GatewayError("Monnify returned no checkoutUrl", reference, self.name)
        return InitializeResult(
            checkout_url=data["checkoutUrl"],
            provider_reference=data.get("transactionReference"),
        )

    def verify(self, reference: str) -> VerifyResult:
        body = self._request(
            "GET",
            "/api/v2/merchant/transactions/query",
            reference,
            params={"paymentReference": reference},
            headers=self._headers(reference),
        )
        data = self._checked(body, reference, "Verification failed")
        provider_status = data.get("paymentStatus") or "UNKNOWN"
        amount_paid = data.get("amountPaid")
        return VerifyResult(
            provider_status=provider_status,
            paid_amount_minor=to_minor_units(amount_paid) if amount_paid is not None else None,
            raw=data,
            succeeded=provider_status == "PAID",
        )

    def parse_webhook(self, payload: dict) -> Optional[WebhookEvent]:
        event_type = payload.get("eventType")
        data = payload.get("eventData")
        if not event_type or not isinstance(data, dict):
            raise ValueError("Invalid payload")
        if event_type != "SUCCESSFUL_TRANSACTION":
            return None
        if not data.get("paymentReference"):
            raise ValueError("Missing paymentReference")

        paid = data.get("paymentStatus") == "PAID"
        amount_paid = data.get("amountPaid")
        return WebhookEvent(
            event_type=event_type,
            reference=data["paymentReference"],
            observed_status=SUCCESS if paid else FAILED,
            paid_amount_minor=to_minor_units(amount_paid) if paid and amount_paid is not None else None,
        )
