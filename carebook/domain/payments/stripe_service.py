"""Stripe service - Read-only lookups used by the payment reconciler"""

import json
import logging
from typing import Optional

import stripe

from ...config import STRIPE_SECRET_KEY, STRIPE_TIMEOUT_SECONDS, STRIPE_WEBHOOK_SECRET

logger = logging.getLogger(__name__)


class PaymentProvider:
    """
    Lookup interface the reconciler depends on.

    Every method returns a plain dict holding only the fields the engine reads,
    and raises on any transport or API failure.
    """

    def get_checkout_session(self, session_id: str) -> dict:
        raise NotImplementedError

    def get_payment_intent(self, payment_intent_id: str) -> dict:
        raise NotImplementedError

    def get_charge(self, charge_id: str) -> dict:
        raise NotImplementedError

    def get_invoice(self, invoice_id: str) -> dict:
        raise NotImplementedError

    def get_subscription(self, subscription_id: str) -> dict:
        raise NotImplementedError


def _field(obj, name: str):
    return getattr(obj, name, None)


def _ref(value) -> Optional[dict]:
    """Expanded objects become {id, status}; bare ids become {id}"""
    if value is None:
        return None
    if isinstance(value, str):
        return {"id": value}
    return {"id": _field(value, "id"), "status": _field(value, "status")}


class StripePaymentProvider(PaymentProvider):
    """Stripe-backed lookups with a bounded timeout and no automatic retries"""

    def __init__(self, api_key: Optional[str] = None, timeout: float = STRIPE_TIMEOUT_SECONDS):
        self.api_key = api_key or STRIPE_SECRET_KEY
        if not self.api_key:
            logger.warning("STRIPE_SECRET_KEY not set; payment lookups will fail until configured")

        stripe.api_key = self.api_key
        # Retries belong to the caller (worker or webhook redelivery), not the request path
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    def get_checkout_session(self, session_id: str) -> dict:
        session = stripe.checkout.Session.retrieve(
            session_id, expand=["payment_intent", "subscription"]
        )
        return {
            "id": _field(session, "id"),
            "status": _field(session, "status"),
            "payment_status": _field(session, "payment_status"),
            "amount_total": _field(session, "amount_total"),
            "currency": _field(session, "currency"),
            "payment_intent": _ref(_field(session, "payment_intent")),
            "subscription": _ref(_field(session, "subscription")),
        }

    def get_payment_intent(self, payment_intent_id: str) -> dict:
        intent = stripe.PaymentIntent.retrieve(payment_intent_id)
        return {
            "id": _field(intent, "id"),
            "status": _field(intent, "status"),
            "amount": _field(intent, "amount"),
            "currency": _field(intent, "currency"),
        }

    def get_charge(self, charge_id: str) -> dict:
        charge = stripe.Charge.retrieve(charge_id)
        return {
            "id": _field(charge, "id"),
            "status": _field(charge, "status"),
            "paid": bool(_field(charge, "paid")),
            "refunded": bool(_field(charge, "refunded")),
        }

    def get_invoice(self, invoice_id: str) -> dict:
        invoice = stripe.Invoice.retrieve(invoice_id)
        return {
            "id": _field(invoice, "id"),
            "status": _field(invoice, "status"),
            "paid": bool(_field(invoice, "paid")),
            "subscription": _ref(_field(invoice, "subscription")),
            "amount_paid": _field(invoice, "amount_paid"),
        }

    def get_subscription(self, subscription_id: str) -> dict:
        subscription = stripe.Subscription.retrieve(subscription_id)
        return {"id": _field(subscription, "id"), "status": _field(subscription, "status")}


def construct_webhook_event(payload: bytes, signature: Optional[str]) -> dict:
    """Verify a Stripe webhook signature and return the event as a dict"""
    if not STRIPE_WEBHOOK_SECRET:
        raise ValueError("STRIPE_WEBHOOK_SECRET not configured")
    stripe.Webhook.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)
    return json.loads(payload)


_provider: Optional[PaymentProvider] = None


def get_payment_provider() -> PaymentProvider:
    """FastAPI dependency; tests override it with a fake provider"""
    global _provider
    if _provider is None:
        _provider = StripePaymentProvider()
    return _provider
