"""Payout repository - Database operations for therapist payouts"""

from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models import Appointment, TherapistPayment, TherapistPayoutInfo, User
from ..appointments.statuses import COMPLETED, stored_values


class PayoutRepository:
    """Repository for payout database operations"""

    @staticmethod
    def get_therapist(db: Session, therapist_id: int) -> Optional[User]:
        return db.query(User).filter(User.id == therapist_id, User.role == "therapist").first()

    @staticmethod
    def get_candidate_appointments(
        db: Session, therapist_id: int, appointment_ids: Optional[list[int]] = None
    ) -> list[Appointment]:
        """Completed appointments of the therapist not yet flagged as paid out"""
        query = db.query(Appointment).filter(
            Appointment.therapist_id == therapist_id,
            Appointment.status.in_(stored_values(COMPLETED)),
            Appointment.therapist_paid.is_(False),
        )
        if appointment_ids:
            query = query.filter(Appointment.id.in_(appointment_ids))
        return query.order_by(Appointment.date.asc(), Appointment.id.asc()).all()

    @staticmethod
    def settle_appointment(db: Session, appointment_id: int, recurring: list) -> bool:
        """
        Flag one appointment as paid out, only if no other payout got there first.
        Returns False when the conditional update matched nothing.
        """
        updated = (
            db.query(Appointment)
            .filter(Appointment.id == appointment_id, Appointment.therapist_paid.is_(False))
            .update(
                {
                    Appointment.therapist_paid: True,
                    Appointment.payout_status: "paid",
                    Appointment.recurring: recurring,
                },
                synchronize_session=False,
            )
        )
        return updated == 1

    @staticmethod
    def create_payment(db: Session, **payment_data) -> TherapistPayment:
        payment = TherapistPayment(**payment_data)
        db.add(payment)
        db.flush()
        return payment

    @staticmethod
    def get_payment(db: Session, payment_id: int) -> Optional[TherapistPayment]:
        return db.query(TherapistPayment).filter(TherapistPayment.id == payment_id).first()

    @staticmethod
    def get_payments(db: Session, therapist_id: int) -> list[TherapistPayment]:
        return (
            db.query(TherapistPayment)
            .filter(TherapistPayment.therapist_id == therapist_id)
            .order_by(TherapistPayment.created_at.desc(), TherapistPayment.id.desc())
            .all()
        )

    @staticmethod
    def get_total_paid(db: Session, therapist_id: int) -> float:
        total = (
            db.query(func.coalesce(func.sum(TherapistPayment.amount), 0))
            .filter(
                TherapistPayment.therapist_id == therapist_id,
                TherapistPayment.status == "completed",
            )
            .scalar()
        )
        return float(total or 0)

    @staticmethod
    def get_payout_info(db: Session, therapist_id: int) -> Optional[TherapistPayoutInfo]:
        return (
            db.query(TherapistPayoutInfo)
            .filter(TherapistPayoutInfo.therapist_id == therapist_id)
            .first()
        )
