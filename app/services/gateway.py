"""Stripe RPC boundary.

All Stripe objects are returned as plain dicts ({id, amount, status,
currency, metadata, ...}) so the ledger code never depends on SDK types.
SDK calls are blocking and run in the threadpool.
"""

import logging
from typing import Any, Callable, Dict, Optional

import stripe
from fastapi.concurrency import run_in_threadpool

from app.core.config import settings
from app.core.exceptions import GatewayUnavailable, SignatureInvalid

logger = logging.getLogger(__name__)


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeGateway:
    """Thin wrapper over the stripe SDK with error translation."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        currency: Optional[str] = None,
        api_version: Optional[str] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        )
        self.currency = currency or settings.CURRENCY
        self.api_version = api_version or settings.STRIPE_API_VERSION

    def _require_key(self) -> str:
        if not self.api_key or not self.api_key.strip():
            raise GatewayUnavailable(
                "Stripe is not configured on the server (missing STRIPE_SECRET_KEY)"
            )
        return self.api_key

    async def _call(self, description: str, fn: Callable[..., Any], *args, **kwargs) -> Dict[str, Any]:
        kwargs["api_key"] = self._require_key()
        kwargs["stripe_version"] = self.api_version
        try:
            result = await run_in_threadpool(fn, *args, **kwargs)
        except stripe.StripeError as exc:
            logger.error("Stripe %s failed: %s", description, exc)
            raise GatewayUnavailable(f"Payment gateway error during {description}") from exc
        return _as_dict(result)

    async def create_payment_intent(self, amount_cents: int, metadata: Dict[str, str]) -> Dict[str, Any]:
        return await self._call(
            "create payment intent",
            stripe.PaymentIntent.create,
            amount=amount_cents,
            currency=self.currency,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
        )

    async def retrieve_payment_intent(self, intent_id: str) -> Dict[str, Any]:
        return await self._call("retrieve payment intent", stripe.PaymentIntent.retrieve, intent_id)

    async def create_checkout_session(
        self,
        amount_cents: int,
        product_name: str,
        description: Optional[str],
        metadata: Dict[str, str],
        client_reference_id: str,
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, Any]:
        product_data: Dict[str, Any] = {"name": product_name}
        if description:
            product_data["description"] = description
        return await self._call(
            "create checkout session",
            stripe.checkout.Session.create,
            mode="payment",
            payment_method_types=["card"],
            line_items=[{
                "price_data": {
                    "currency": self.currency,
                    "product_data": product_data,
                    "unit_amount": amount_cents,
                },
                "quantity": 1,
            }],
            metadata=metadata,
            client_reference_id=client_reference_id,
            payment_intent_data={"metadata": metadata},
            success_url=success_url,
            cancel_url=cancel_url,
        )

    async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        return await self._call(
            "retrieve checkout session",
            stripe.checkout.Session.retrieve,
            session_id,
            expand=["payment_intent"],
        )

    async def expire_checkout_session(self, session_id: str) -> Dict[str, Any]:
        return await self._call(
            "expire checkout session", stripe.checkout.Session.expire, session_id
        )

    async def create_refund(
        self,
        charge_id: str,
        amount_cents: int,
        reason: Optional[str],
        metadata: Dict[str, str],
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "amount": amount_cents,
            "metadata": metadata,
        }
        if charge_id.startswith("pi_"):
            params["payment_intent"] = charge_id
        else:
            params["charge"] = charge_id
        if reason in ("duplicate", "fraudulent", "requested_by_customer"):
            params["reason"] = reason
        return await self._call("create refund", stripe.Refund.create, **params)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the webhook signature and parse the event."""
        if not self.webhook_secret:
            raise GatewayUnavailable("Webhook secret not configured")
        if not signature:
            raise SignatureInvalid("Missing Stripe-Signature header")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Webhook signature verification failed: %s", exc)
            raise SignatureInvalid("Webhook signature verification failed") from exc
        except ValueError as exc:
            logger.warning("Webhook payload could not be parsed: %s", exc)
            raise SignatureInvalid("Invalid webhook payload") from exc
        return _as_dict(event)
