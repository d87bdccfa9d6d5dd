import hashlib
import hmac
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx
import structlog

from storefront.errors import GatewayError, GatewayTimeout, ValidationError

SUCCESS = "success"
FAILED = "failed"

MINOR_UNITS_PER_MAJOR = 100

logger = structlog.get_logger(component="gateway")


def to_minor_units(amount_major) -> int:
    """Convert a major-unit amount (naira) to minor units (kobo) exactly."""
    try:
        value = Decimal(str(amount_major))
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {amount_major!r}")
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount_major!r}")

    minor = value * MINOR_UNITS_PER_MAJOR
    if minor != minor.to_integral_value():
        raise ValidationError(f"Amount {amount_major} has fractions of a minor unit")
    return int(minor)


def to_major_units(amount_minor: int) -> Decimal:
    return (Decimal(int(amount_minor)) / MINOR_UNITS_PER_MAJOR).quantize(Decimal("0.01"))


def hmac_sha512_hex(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


@dataclass
class InitializeResult:
    checkout_url: str
    provider_reference: Optional[str] = None
    access_code: Optional[str] = None


@dataclass
class VerifyResult:
    provider_status: str
    paid_amount_minor: Optional[int]
    raw: dict = field(default_factory=dict)
    succeeded: bool = False

    @property
    def observed_status(self) -> str:
        return SUCCESS if self.succeeded else FAILED


@dataclass
class WebhookEvent:
    event_type: str
    reference: str
    observed_status: str
    paid_amount_minor: Optional[int] = None


class PaymentGateway:
    """Uniform interface over a payment provider.

    Subclasses set ``name`` and ``signature_header`` and implement
    ``initialize``, ``verify`` and ``parse_webhook``. Configuration is passed
    in at construction; ``client`` lets callers inject an ``httpx.Client``
    (tests use one backed by ``httpx.MockTransport``).
    """

    name = ""
    signature_header = ""

    def __init__(self, base_url: str, timeout: float = 15.0, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None

    def initialize(self, email: str, amount_major: Decimal, currency: str, reference: str,
                   callback_url: str, metadata: Optional[dict] = None) -> InitializeResult:
        raise NotImplementedError

    def verify(self, reference: str) -> VerifyResult:
        raise NotImplementedError

    def parse_webhook(self, payload: dict) -> Optional[WebhookEvent]:
        raise NotImplementedError

    def webhook_secret(self) -> str:
        raise NotImplementedError

    def validate_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        secret = self.webhook_secret()
        if not signature or not secret:
            return False
        computed = hmac_sha512_hex(secret, raw_body)
        return hmac.compare_digest(computed.encode("ascii"), signature.strip().lower().encode("utf-8"))

    def _request(self, method: str, path: str, reference: Optional[str] = None, **kwargs) -> dict:
        """Send a request and return the decoded JSON body.

        Timeouts raise GatewayTimeout; transport errors and non-2xx replies
        raise GatewayError with the provider's message when it sent one.
        """
        try:
            resp = self.client.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("gateway_timeout", provider=self.name, path=path, reference=reference)
            raise GatewayTimeout(
                f"{self.name} did not respond within {self.timeout}s", reference, self.name
            ) from e
        except httpx.HTTPError as e:
            logger.error("gateway_unreachable", provider=self.name, path=path, reference=reference, error=str(e))
            raise GatewayError(f"{self.name} unavailable: {e}", reference, self.name) from e

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.status_code < 200 or resp.status_code >= 300:
            message = self._error_message(body) or f"HTTP {resp.status_code}"
            logger.error(
                "gateway_error_response",
                provider=self.name,
                path=path,
                reference=reference,
                status_code=resp.status_code,
                message=message,
            )
            raise GatewayError(message, reference, self.name)

        if not isinstance(body, dict):
            raise GatewayError(f"Bad response from {self.name}", reference, self.name)
        return body

    def _error_message(self, body) -> Optional[str]:
        if isinstance(body, dict):
            return body.get("message") or body.get("responseMessage")
        return None


def build_gateway(name: str, settings, client: Optional[httpx.Client] = None) -> PaymentGateway:
    # Imported here; the provider modules import this one
    from storefront.monnify_service import MonnifyGateway
    from storefront.paystack_service import PaystackGateway

    name = (name or "").strip().lower()
    if name == PaystackGateway.name:
        return PaystackGateway(
            secret_key=settings.paystack_secret_key,
            base_url=settings.paystack_base_url,
            timeout=settings.gateway_timeout,
            client=client,
        )
    if name == MonnifyGateway.name:
        return MonnifyGateway(
            api_key=settings.monnify_api_key,
            secret_key=settings.monnify_secret_key,
            contract_code=settings.monnify_contract_code,
            base_url=settings.monnify_base_url,
            timeout=settings.gateway_timeout,
            client=client,
        )
    raise ValidationError(f"Unsupported payment gateway: {name!r}")


def resolve_webhook_gateway(headers) -> Optional[str]:
    """Name of the gateway whose signature header is on the request, if any.

    Paystack and Monnify sign with different headers, so a webhook can be
    routed to the right adapter whatever PAYMENT_GATEWAY is set to.
    """
    from storefront.monnify_service import MonnifyGateway
    from storefront.paystack_service import PaystackGateway

    for gateway_cls in (PaystackGateway, MonnifyGateway):
        if headers.get(gateway_cls.signature_header):
            return gateway_cls.name
    return None
