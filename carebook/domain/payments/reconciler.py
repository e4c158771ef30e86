"""
Payment reconciler

Single source of truth for "is this appointment paid?". Sources are consulted
in a fixed order:

    1. balance-funded        (is_balance, no external call)
    2. manual                (payment_status=completed, payment_method=manual)
    3. checkout session      (payment_status of the stored session)
    4. payment reference     (pi_/ch_/in_/sub_ id, only without a session)
    5. subscription          (active/trialing/past_due funds the appointment)

A failed provider lookup yields payment_status='error'. Callers making yes/no
decisions must treat 'error' as "not verified" and never as "unpaid".
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ...shared.timeutils import utcnow
from .stripe_service import PaymentProvider

logger = logging.getLogger(__name__)

STATUS_PAID = "paid"
STATUS_PENDING = "pending"
STATUS_FAILED = "failed"
STATUS_NONE = "none"
STATUS_ERROR = "error"

ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing", "past_due"})

_CHECKOUT_STATUS_MAP = {
    "paid": STATUS_PAID,
    "unpaid": STATUS_PENDING,
    "no_payment_required": STATUS_NONE,
}

_INTENT_STATUS_MAP = {
    "succeeded": STATUS_PAID,
    "processing": STATUS_PENDING,
    "requires_action": STATUS_PENDING,
    "requires_confirmation": STATUS_PENDING,
    "requires_capture": STATUS_PENDING,
    "requires_payment_method": STATUS_FAILED,
    "canceled": STATUS_FAILED,
}

_INVOICE_STATUS_MAP = {
    "paid": STATUS_PAID,
    "open": STATUS_PENDING,
    "draft": STATUS_PENDING,
    "void": STATUS_FAILED,
    "uncollectible": STATUS_FAILED,
}


@dataclass(frozen=True)
class PaymentState:
    is_paid: bool
    payment_status: str
    verification_source: str
    subscription_status: Optional[str] = None
    is_active: bool = False

    @property
    def is_error(self) -> bool:
        return self.payment_status == STATUS_ERROR

    def to_dict(self) -> dict:
        return {
            "isPaid": self.is_paid,
            "paymentStatus": self.payment_status,
            "subscriptionStatus": self.subscription_status,
            "isActive": self.is_active,
            "verificationSource": self.verification_source,
        }


@dataclass(frozen=True)
class PaymentFacts:
    """The raw identifiers a reconciliation can use"""

    is_balance: bool = False
    payment_status: Optional[str] = None
    payment_method: Optional[str] = None
    checkout_session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    subscription_id: Optional[str] = None

    @classmethod
    def from_appointment(cls, appointment) -> "PaymentFacts":
        return cls(
            is_balance=bool(appointment.is_balance),
            payment_status=appointment.payment_status,
            payment_method=appointment.payment_method,
            checkout_session_id=appointment.checkout_session_id,
            payment_intent_id=appointment.payment_intent_id,
            subscription_id=appointment.stripe_subscription_id,
        )


def _state(status: str, source: str) -> PaymentState:
    return PaymentState(
        is_paid=status == STATUS_PAID,
        payment_status=status,
        verification_source=source,
    )


class PaymentReconciler:
    """Every route that needs a paid/unpaid decision goes through this class"""

    def __init__(self, provider: PaymentProvider):
        self.provider = provider

    def reconcile(self, appointment) -> PaymentState:
        return self.reconcile_facts(PaymentFacts.from_appointment(appointment))

    def verify(
        self,
        checkout_session_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        is_balance: bool = False,
        subscription_id: Optional[str] = None,
    ) -> PaymentState:
        return self.reconcile_facts(
            PaymentFacts(
                is_balance=is_balance,
                checkout_session_id=checkout_session_id,
                payment_intent_id=payment_intent_id,
                subscription_id=subscription_id,
            )
        )

    def reconcile_facts(self, facts: PaymentFacts) -> PaymentState:
        if facts.is_balance:
            return _state(STATUS_PAID, "balance")

        if facts.payment_status == "completed" and facts.payment_method == "manual":
            return _state(STATUS_PAID, "manual")

        state = None
        subscription_id = facts.subscription_id
        subscription_status = None

        if facts.checkout_session_id:
            state, session_subscription = self._from_checkout_session(facts.checkout_session_id)
            if session_subscription:
                subscription_id = subscription_id or session_subscription.get("id")
                subscription_status = session_subscription.get("status")
        elif facts.payment_intent_id:
            state, linked_subscription = self._from_payment_reference(facts.payment_intent_id)
            if linked_subscription:
                subscription_id = subscription_id or linked_subscription.get("id")
                subscription_status = linked_subscription.get("status")

        if state is not None and state.is_paid:
            return state

        if subscription_id:
            if subscription_status is None:
                subscription_status = self._subscription_status(subscription_id)
            if subscription_status in ACTIVE_SUBSCRIPTION_STATUSES:
                return PaymentState(
                    is_paid=True,
                    payment_status=STATUS_PAID,
                    verification_source="subscription",
                    subscription_status=subscription_status,
                    is_active=True,
                )
            if subscription_status == STATUS_ERROR:
                return PaymentState(
                    is_paid=False,
                    payment_status=STATUS_ERROR,
                    verification_source="subscription",
                    subscription_status=STATUS_ERROR,
                )

        if state is None:
            return PaymentState(
                is_paid=False,
                payment_status=STATUS_NONE,
                verification_source="none",
                subscription_status=subscription_status,
            )

        return PaymentState(
            is_paid=False,
            payment_status=state.payment_status,
            verification_source=state.verification_source,
            subscription_status=subscription_status,
        )

    # ========================================================================
    # PROVIDER LOOKUPS
    # ========================================================================

    def _from_checkout_session(self, session_id: str) -> tuple[PaymentState, Optional[dict]]:
        try:
            session = self.provider.get_checkout_session(session_id)
        except Exception as e:
            logger.error(f"❌ Checkout session lookup failed for {session_id}: {e}")
            return _state(STATUS_ERROR, "checkout_session"), None

        status = _CHECKOUT_STATUS_MAP.get(session.get("payment_status"), STATUS_PENDING)

        if status != STATUS_PAID:
            intent = session.get("payment_intent") or {}
            intent_status = _INTENT_STATUS_MAP.get(intent.get("status"))
            if intent_status in (STATUS_PAID, STATUS_FAILED):
                status = intent_status
            elif session.get("status") == "expired":
                status = STATUS_FAILED

        return _state(status, "checkout_session"), session.get("subscription")

    def _from_payment_reference(self, reference: str) -> tuple[PaymentState, Optional[dict]]:
        """Resolve a stored payment id by its prefix"""
        try:
            if reference.startswith("pi_"):
                intent = self.provider.get_payment_intent(reference)
                status = _INTENT_STATUS_MAP.get(intent.get("status"), STATUS_PENDING)
                return _state(status, "payment_intent"), None

            if reference.startswith("ch_"):
                charge = self.provider.get_charge(reference)
                if charge.get("refunded") or charge.get("status") == "failed":
                    status = STATUS_FAILED
                elif charge.get("paid") and charge.get("status") == "succeeded":
                    status = STATUS_PAID
                else:
                    status = STATUS_PENDING
                return _state(status, "charge"), None

            if reference.startswith("in_"):
                invoice = self.provider.get_invoice(reference)
                status = _INVOICE_STATUS_MAP.get(invoice.get("status"), STATUS_PENDING)
                if invoice.get("paid"):
                    status = STATUS_PAID
                return _state(status, "invoice"), invoice.get("subscription")

            if reference.startswith("sub_"):
                subscription = self.provider.get_subscription(reference)
                sub_status = subscription.get("status")
                if sub_status in ACTIVE_SUBSCRIPTION_STATUSES:
                    status = STATUS_PAID
                elif sub_status in ("canceled", "unpaid", "incomplete_expired"):
                    status = STATUS_FAILED
                else:
                    status = STATUS_PENDING
                return _state(status, "subscription"), {"id": reference, "status": sub_status}
        except Exception as e:
            logger.error(f"❌ Payment lookup failed for {reference}: {e}")
            return _state(STATUS_ERROR, "payment_intent"), None

        logger.warning(f"⚠️ Unrecognised payment reference format: {reference}")
        return _state(STATUS_ERROR, "payment_intent"), None

    def _subscription_status(self, subscription_id: str) -> str:
        try:
            subscription = self.provider.get_subscription(subscription_id)
        except Exception as e:
            logger.error(f"❌ Subscription lookup failed for {subscription_id}: {e}")
            return STATUS_ERROR
        return subscription.get("status") or STATUS_NONE


def record_verification(appointment, state: PaymentState) -> bool:
    """
    Cache a reconciled state on the appointment.

    The only writer of ``is_stripe_verified`` and ``payment_status``. An 'error'
    state changes nothing. Returns True when a field changed.
    """
    if state.is_error:
        return False

    changed = False
    if state.is_paid:
        if appointment.payment_status != "completed":
            appointment.payment_status = "completed"
            changed = True
        if state.verification_source != "balance" and not appointment.is_stripe_verified:
            appointment.is_stripe_verified = True
            changed = True
        if appointment.paid_at is None:
            appointment.paid_at = utcnow()
            changed = True
    elif state.payment_status == STATUS_FAILED and appointment.payment_status != "refunded":
        if appointment.payment_status != "failed":
            appointment.payment_status = "failed"
            changed = True
        if appointment.is_stripe_verified:
            appointment.is_stripe_verified = False
            changed = True

    if changed:
        logger.info(
            f"💳 Appointment {appointment.id} payment cached: "
            f"{state.payment_status} via {state.verification_source}"
        )
    return changed
