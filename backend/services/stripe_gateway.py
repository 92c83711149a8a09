"""
Thin async wrapper around the Stripe SDK.

The SDK is blocking, so every call runs in a worker thread. Results are
handed back as plain dicts so the payment service never depends on SDK
object types.
"""
import asyncio
import json
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

import stripe

from core.exceptions import BadRequestException, PaymentException
from core.logging import structured_logger

logger = logging.getLogger(__name__)


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


def _as_dict(obj: Any) -> Dict[str, Any]:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeGateway:
    """Payment intents, refunds and webhook verification"""

    def __init__(self, api_key: str, webhook_secret: str = "", currency: str = "usd"):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.currency = currency

    async def _call(self, operation: str, func, *args, **kwargs) -> Dict[str, Any]:
        if not self.api_key:
            raise PaymentException(
                message="Payments are not configured",
                provider_message="STRIPE_SECRET_KEY is not set",
                status_code=503,
            )
        try:
            result = await asyncio.to_thread(func, *args, api_key=self.api_key, **kwargs)
        except stripe.StripeError as e:
            structured_logger.error(
                message=f"Stripe {operation} failed",
                metadata={
                    "operation": operation,
                    "stripe_code": getattr(e, "code", None),
                    "http_status": getattr(e, "http_status", None),
                },
                exception=e,
            )
            raise PaymentException(provider_message=getattr(e, "user_message", None) or str(e))
        return _as_dict(result)

    async def create_intent(self, amount: Decimal, currency: Optional[str], metadata: Dict[str, str]) -> Dict[str, Any]:
        return await self._call(
            "create_intent",
            stripe.PaymentIntent.create,
            amount=to_cents(amount),
            currency=(currency or self.currency).lower(),
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
        )

    async def retrieve_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return await self._call("retrieve_intent", stripe.PaymentIntent.retrieve, payment_intent_id)

    async def create_refund(
        self,
        payment_intent_id: str,
        amount: Optional[Decimal] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "payment_intent": payment_intent_id,
            "reason": "requested_by_customer",
            "metadata": metadata or {},
        }
        if amount is not None:
            params["amount"] = to_cents(amount)
        return await self._call("create_refund", stripe.Refund.create, **params)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the Stripe-Signature header and parse the event."""
        if not self.webhook_secret:
            raise BadRequestException(message="Webhook secret not configured", error_code="WEBHOOK_NOT_CONFIGURED")
        if not signature:
            raise BadRequestException(message="Missing Stripe signature", error_code="INVALID_SIGNATURE")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            logger.warning(f"Invalid Stripe webhook payload: {e}")
            raise BadRequestException(message="Invalid payload", error_code="INVALID_PAYLOAD")
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Invalid Stripe webhook signature: {e}")
            raise BadRequestException(message="Invalid signature", error_code="INVALID_SIGNATURE")
        # Verified; hand back the JSON as sent rather than the SDK object
        return json.loads(payload)
