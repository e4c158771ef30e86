"""Payout service - Pending payout aggregation and payout finalization"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ...config import CURRENCY
from ...errors import EngineError, NotFoundError, PayoutConflict
from ...models import TherapistPayment
from ...shared.timeutils import utcnow
from ..appointments.recurring import PAYMENT_PAID, find_session, normalize_recurring
from ..payments.reconciler import PaymentReconciler
from ..payments.stripe_service import PaymentProvider
from .calculator import (
    AppointmentPayout,
    appointment_payout,
    default_expected_payout_date,
    total_payout,
)
from .repository import PayoutRepository

logger = logging.getLogger(__name__)

PAYOUT_STATUSES = ("pending", "completed", "failed")


class PayoutService:
    """Service layer for therapist payouts"""

    def __init__(self, db: Session, provider: PaymentProvider):
        self.db = db
        self.repo = PayoutRepository()
        self.reconciler = PaymentReconciler(provider)

    def _get_therapist(self, therapist_id: int):
        therapist = self.repo.get_therapist(self.db, therapist_id)
        if not therapist:
            raise NotFoundError(f"Therapist {therapist_id} not found")
        return therapist

    def _collect(
        self, therapist, appointment_ids: Optional[list[int]] = None
    ) -> tuple[list, list[int]]:
        """
        Verified candidates as (appointment, normalized sessions, payout) triples,
        plus the ids skipped because payment could not be verified.
        """
        collected = []
        skipped = []
        for appointment in self.repo.get_candidate_appointments(self.db, therapist.id, appointment_ids):
            state = self.reconciler.reconcile(appointment)
            if not state.is_paid:
                logger.warning(
                    f"⚠️ Appointment {appointment.id} excluded from payout: "
                    f"payment {state.payment_status}"
                )
                skipped.append(appointment.id)
                continue

            normalized = normalize_recurring(
                appointment.recurring, appointment.status, bool(appointment.therapist_paid)
            )
            payout = appointment_payout(appointment, normalized.sessions, therapist.level)
            if payout.sessions:
                collected.append((appointment, normalized.sessions, payout))
        return collected, skipped

    def get_summary(self, therapist_id: int) -> dict:
        therapist = self._get_therapist(therapist_id)
        collected, skipped = self._collect(therapist)
        payouts: list[AppointmentPayout] = [payout for _, _, payout in collected]

        info = self.repo.get_payout_info(self.db, therapist.id)
        expected = (
            info.expected_payout_date
            if info and info.expected_payout_date
            else default_expected_payout_date(utcnow())
        )

        return {
            "therapistId": therapist.id,
            "totalPending": total_payout(payouts),
            "totalPaid": round(self.repo.get_total_paid(self.db, therapist.id), 2),
            "expectedPayoutDate": expected,
            "payoutFrequency": info.payout_schedule if info else "weekly",
            "currency": CURRENCY,
            "pendingAppointments": [
                {
                    "appointmentId": p.appointment_id,
                    "sessions": len(p.sessions),
                    "percentage": p.percentage,
                    "amount": p.amount,
                }
                for p in payouts
            ],
            "unverifiedAppointmentIds": skipped,
        }

    def finalize_payout(
        self,
        therapist_id: int,
        processed_by: Optional[int],
        payment_method: str = "manual",
        appointment_ids: Optional[list[int]] = None,
        transaction_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> tuple[TherapistPayment, list[int]]:
        """
        Settle every verified, completed, unpaid session of a therapist.

        The payment record and the paid flags are written in one transaction;
        if another payout settled one of the appointments first, the whole
        payout rolls back with PayoutConflict.
        """
        therapist = self._get_therapist(therapist_id)
        collected, skipped = self._collect(therapist, appointment_ids)
        if not collected:
            raise EngineError("No verified, completed and unpaid sessions to pay out")

        payouts = [payout for _, _, payout in collected]
        amount = total_payout(payouts)
        percentages = {p.percentage for p in payouts}
        now = utcnow()

        try:
            payment = self.repo.create_payment(
                self.db,
                therapist_id=therapist.id,
                amount=amount,
                currency=CURRENCY,
                payment_method=payment_method,
                status="completed",
                sessions=[s.snapshot() for p in payouts for s in p.sessions],
                appointment_ids=[p.appointment_id for p in payouts],
                payout_percentage=percentages.pop() if len(percentages) == 1 else None,
                processed_by=processed_by,
                transaction_id=transaction_id,
                note=note,
                paid_at=now,
            )

            conflicts = []
            for appointment, sessions, payout in collected:
                settled = [dict(s) for s in sessions]
                for payable in payout.sessions:
                    if payable.index is None:
                        continue
                    session = find_session(settled, payable.index)
                    if session is not None:
                        session["payment"] = PAYMENT_PAID
                if not self.repo.settle_appointment(self.db, appointment.id, settled):
                    conflicts.append(appointment.id)

            if conflicts:
                raise PayoutConflict(conflicts)

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(payment)
        logger.info(
            f"✅ Payout {payment.id} finalized for therapist {therapist.id}: "
            f"{amount:.2f} {CURRENCY} over {len(payment.sessions)} sessions"
        )
        return payment, skipped

    def update_payout_status(self, payment_id: int, status: str) -> TherapistPayment:
        """The only mutation allowed on a finalized payout"""
        if status not in PAYOUT_STATUSES:
            raise EngineError(f"Invalid payout status: {status}")
        payment = self.repo.get_payment(self.db, payment_id)
        if not payment:
            raise NotFoundError(f"Payout {payment_id} not found")

        payment.status = status
        if status == "completed" and payment.paid_at is None:
            payment.paid_at = utcnow()
        self.db.commit()
        self.db.refresh(payment)
        logger.info(f"📝 Payout {payment.id} status → {status}")
        return payment

    def get_history(self, therapist_id: int) -> list[TherapistPayment]:
        therapist = self._get_therapist(therapist_id)
        return self.repo.get_payments(self.db, therapist.id)
