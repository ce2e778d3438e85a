"""
Stripe API client for off-session charges and refunds.

Provides async methods for:
- Creating and confirming payment intents against a saved payment method
- Creating refunds
- Retrieving payment intents and refunds (reconciliation)
- Verifying webhook signatures
"""

import hashlib
import hmac
import time
from dataclasses import dataclass, field
from typing import Optional

import httpx
from libs.common.config import get_settings
from libs.common.logging import get_logger

logger = get_logger(__name__)

settings = get_settings()

# Payment intent statuses that mean the charge went through
CHARGE_SUCCEEDED = "succeeded"
# Still settling; the outcome arrives by webhook
CHARGE_PROCESSING = "processing"

REFUND_SUCCEEDED = "succeeded"
REFUND_PENDING = "pending"


@dataclass
class ProcessorResult:
    """Result of a charge or refund call."""

    id: str
    status: str
    amount: int  # in cents
    raw: dict = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == CHARGE_SUCCEEDED

    @property
    def in_progress(self) -> bool:
        return self.status in (CHARGE_PROCESSING, REFUND_PENDING)


class StripeError(Exception):
    """Base exception for Stripe API errors."""

    def __init__(
        self, message: str, status_code: int = None, response_data: dict = None
    ):
        self.message = message
        self.status_code = status_code
        self.response_data = response_data or {}
        super().__init__(message)

    @property
    def outcome_unknown(self) -> bool:
        """No HTTP response arrived, so Stripe may still have acted on the request."""
        return self.status_code is None


class WebhookSignatureError(Exception):
    """Stripe-Signature header missing, malformed, stale or wrong."""


def _metadata_fields(metadata: Optional[dict]) -> dict:
    # Stripe takes form-encoded metadata[key]=value pairs
    return {f"metadata[{k}]": str(v) for k, v in (metadata or {}).items()}


def _result(data: dict) -> ProcessorResult:
    return ProcessorResult(
        id=data.get("id", ""),
        status=data.get("status", ""),
        amount=int(data.get("amount") or 0),
        raw=data,
    )


class StripeClient:
    """Async client for the Stripe PaymentIntents and Refunds APIs."""

    def __init__(
        self,
        secret_key: str = None,
        api_base: str = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        if not self.secret_key:
            raise ValueError("STRIPE_SECRET_KEY is required")
        self.api_base = (api_base or settings.STRIPE_API_BASE).rstrip("/")
        self._headers = {"Authorization": f"Bearer {self.secret_key}"}
        self._transport = transport

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: dict = None,
        idempotency_key: str = None,
    ) -> dict:
        """Make an async request to the Stripe API."""
        url = f"{self.api_base}{endpoint}"
        headers = dict(self._headers)
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        async with httpx.AsyncClient(
            timeout=30.0, transport=self._transport
        ) as client:
            try:
                response = await client.request(
                    method=method, url=url, headers=headers, data=data
                )
            except httpx.HTTPError as e:
                logger.error(
                    "Stripe request failed",
                    extra={"extra_fields": {"endpoint": endpoint, "error": str(e)}},
                )
                raise StripeError(message=f"Stripe request failed: {e}") from e

            try:
                body = response.json()
            except ValueError:
                body = None

            if not response.is_success:
                error = (body.get("error") if isinstance(body, dict) else None) or {}
                logger.error(
                    "Stripe API error: %s",
                    response.status_code,
                    extra={
                        "extra_fields": {
                            "endpoint": endpoint,
                            "error_type": error.get("type"),
                            "error_code": error.get("code"),
                            "message": error.get("message"),
                        }
                    },
                )
                raise StripeError(
                    message=error.get("message")
                    or f"Stripe returned HTTP {response.status_code}",
                    status_code=response.status_code,
                    response_data=body if isinstance(body, dict) else None,
                )

            if not isinstance(body, dict):
                logger.error(
                    "Stripe returned a non-JSON body",
                    extra={
                        "extra_fields": {
                            "endpoint": endpoint,
                            "status_code": response.status_code,
                        }
                    },
                )
                raise StripeError(
                    message="Stripe returned an unreadable response",
                    status_code=response.status_code,
                )

            return body

    # =========================================================================
    # Charges
    # =========================================================================

    async def create_charge(
        self,
        *,
        amount: int,
        customer_id: Optional[str],
        payment_method_id: str,
        metadata: dict,
        idempotency_key: str,
        description: str = None,
    ) -> ProcessorResult:
        """
        Charge a saved payment method off-session.

        Args:
            amount: Amount in cents
            customer_id: Stripe customer that owns the payment method
            payment_method_id: Saved payment method
            metadata: Echoed back on webhooks; must carry ``staging_id``
            idempotency_key: Reused on retry so Stripe charges at most once

        Returns:
            ProcessorResult with the payment intent id and status
        """
        data = {
            "amount": amount,
            "currency": settings.STRIPE_CURRENCY,
            "payment_method": payment_method_id,
            "confirm": "true",
            "off_session": "true",
            **_metadata_fields(metadata),
        }
        if customer_id:
            data["customer"] = customer_id
        if description:
            data["description"] = description

        body = await self._request(
            "POST", "/v1/payment_intents", data=data, idempotency_key=idempotency_key
        )
        return _result(body)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> ProcessorResult:
        body = await self._request("GET", f"/v1/payment_intents/{payment_intent_id}")
        return _result(body)

    # =========================================================================
    # Refunds
    # =========================================================================

    async def create_refund(
        self,
        *,
        payment_intent_id: str,
        amount: int,
        metadata: dict,
        idempotency_key: str,
    ) -> ProcessorResult:
        data = {
            "payment_intent": payment_intent_id,
            "amount": amount,
            **_metadata_fields(metadata),
        }
        body = await self._request(
            "POST", "/v1/refunds", data=data, idempotency_key=idempotency_key
        )
        return _result(body)

    async def retrieve_refund(self, refund_id: str) -> ProcessorResult:
        body = await self._request("GET", f"/v1/refunds/{refund_id}")
        return _result(body)


# =========================================================================
# Webhooks
# =========================================================================


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    tolerance: int = 300,
    now: Optional[int] = None,
) -> None:
    """Raise WebhookSignatureError unless ``header`` signs ``payload``.

    The header looks like ``t=1700000000,v1=<hex>,v1=<hex>``; any matching
    ``v1`` signature is accepted.
    """
    if not header:
        raise WebhookSignatureError("Missing Stripe-Signature header")

    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookSignatureError("Invalid signature timestamp")
        elif key == "v1":
            signatures.append(value)

    if timestamp is None or not signatures:
        raise WebhookSignatureError("Malformed Stripe-Signature header")

    now = now if now is not None else int(time.time())
    if tolerance and abs(now - timestamp) > tolerance:
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    expected = compute_signature(payload, timestamp, secret)
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise WebhookSignatureError("Signature mismatch")


def get_stripe_client() -> StripeClient:
    """FastAPI dependency; overridden in tests."""
    return StripeClient()
