"""Payment webhook service - Applies verified Stripe events to appointments and balances"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ...errors import DuplicatePayment, NotFoundError
from ..appointments.service import AppointmentService
from ..appointments.statuses import Actor
from ..balance.schemas import PaymentRef
from ..balance.service import BalanceService
from .reconciler import PaymentReconciler, PaymentState
from .stripe_service import PaymentProvider

logger = logging.getLogger(__name__)

METADATA_APPOINTMENT = "appointment"
METADATA_BALANCE_TOPUP = "balance_topup"


def _minor_to_major(amount: Optional[int]) -> float:
    return round((amount or 0) / 100, 2)


def _ref_id(value) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("id")
    return value


def _int_or_none(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class PaymentService:
    """Webhook handling and ad-hoc verification"""

    def __init__(self, db: Session, provider: PaymentProvider):
        self.db = db
        self.provider = provider
        self.reconciler = PaymentReconciler(provider)
        self.balance = BalanceService(db)

    def verify(
        self,
        actor: Optional[Actor] = None,
        appointment_id: Optional[int] = None,
        checkout_session_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        is_balance: bool = False,
    ) -> PaymentState:
        if appointment_id is not None:
            appointments = AppointmentService(self.db, self.provider)
            appointment = appointments.get_appointment(appointment_id, actor)
            return self.reconciler.reconcile(appointment)
        return self.reconciler.verify(checkout_session_id, payment_intent_id, is_balance, subscription_id)

    def handle_event(self, event: dict) -> dict:
        """Dispatch a verified webhook event; replays are idempotent"""
        event_type = event.get("type", "")
        data = (event.get("data") or {}).get("object") or {}
        logger.info(f"📨 Stripe webhook received: {event_type} ({event.get('id')})")

        if event_type == "checkout.session.completed":
            return self._checkout_completed(event_type, data)
        if event_type == "invoice.paid":
            return self._invoice_paid(event_type, data)

        logger.info(f"ℹ️ Ignoring unhandled Stripe event type: {event_type}")
        return {"eventType": event_type, "action": "ignored"}

    def _checkout_completed(self, event_type: str, session: dict) -> dict:
        metadata = session.get("metadata") or {}
        kind = metadata.get("type", METADATA_APPOINTMENT)

        if kind == METADATA_APPOINTMENT:
            appointment_id = _int_or_none(metadata.get("appointmentId"))
            if appointment_id is None:
                logger.warning(f"⚠️ Checkout {session.get('id')} has no appointmentId metadata")
                return {"eventType": event_type, "action": "ignored"}
            appointments = AppointmentService(self.db, self.provider)
            appointment = appointments.confirm_payment(
                appointment_id,
                checkout_session_id=session.get("id"),
                payment_intent_id=_ref_id(session.get("payment_intent")),
                subscription_id=_ref_id(session.get("subscription")),
            )
            logger.info(f"✅ Appointment {appointment.id} payment confirmed from checkout")
            return {"eventType": event_type, "action": "appointment_confirmed"}

        if kind == METADATA_BALANCE_TOPUP:
            user_id = _int_or_none(metadata.get("userId"))
            if user_id is None:
                raise NotFoundError(f"Checkout {session.get('id')} has no userId metadata")
            if session.get("payment_status") != "paid":
                logger.info(f"⏳ Top-up checkout {session.get('id')} not paid yet")
                return {"eventType": event_type, "action": "ignored"}

            intent_id = _ref_id(session.get("payment_intent"))
            payment_ref = PaymentRef(
                id=intent_id or session.get("id"),
                amount=_minor_to_major(session.get("amount_total")),
                currency=session.get("currency"),
                paymentType="payment_intent" if intent_id else "checkout_session",
                sessionsAdded=float(metadata.get("sessions") or 0),
            )
            return self._credit(event_type, user_id, payment_ref, "Balance top-up", "balance_credited")

        logger.info(f"ℹ️ Ignoring checkout with metadata type {kind}")
        return {"eventType": event_type, "action": "ignored"}

    def _invoice_paid(self, event_type: str, invoice: dict) -> dict:
        subscription_id = _ref_id(invoice.get("subscription"))
        details = invoice.get("subscription_details") or {}
        metadata = details.get("metadata") or invoice.get("metadata") or {}
        user_id = _int_or_none(metadata.get("userId"))

        if not subscription_id or user_id is None:
            logger.info(f"ℹ️ Invoice {invoice.get('id')} is not a tracked subscription renewal")
            return {"eventType": event_type, "action": "ignored"}

        amount = _minor_to_major(invoice.get("amount_paid"))
        if amount <= 0:
            return {"eventType": event_type, "action": "ignored"}

        payment_ref = PaymentRef(
            id=invoice.get("id"),
            amount=amount,
            currency=invoice.get("currency"),
            paymentType="subscription",
            sessionsAdded=float(metadata.get("sessions") or 0),
        )
        return self._credit(
            event_type,
            user_id,
            payment_ref,
            f"Subscription renewal ({subscription_id})",
            "subscription_credited",
        )

    def _credit(
        self, event_type: str, user_id: int, payment_ref: PaymentRef, reason: str, action: str
    ) -> dict:
        try:
            self.balance.add(user_id, payment_ref.amount, reason, payment_ref)
        except DuplicatePayment:
            return {"eventType": event_type, "action": action, "duplicate": True}
        return {"eventType": event_type, "action": action}
