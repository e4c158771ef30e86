"""Appointment repository - Database operations for appointments"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...config import THERAPIST_LEVEL2_THRESHOLD
from ...models import Appointment, AppointmentStatusHistory, User
from .statuses import CONFIRMED, PENDING, RESCHEDULED, UNPAID, stored_values


class AppointmentRepository:
    """Repository for appointment database operations. Flushes, never commits."""

    @staticmethod
    def get_by_id(db: Session, appointment_id: int) -> Optional[Appointment]:
        return db.query(Appointment).filter(Appointment.id == appointment_id).first()

    @staticmethod
    def get_for_patient(db: Session, patient_id: int) -> list[Appointment]:
        return (
            db.query(Appointment)
            .filter(Appointment.patient_id == patient_id)
            .order_by(Appointment.created_at.desc(), Appointment.id.desc())
            .all()
        )

    @staticmethod
    def get_for_therapist(db: Session, therapist_id: int) -> list[Appointment]:
        return (
            db.query(Appointment)
            .filter(Appointment.therapist_id == therapist_id)
            .order_by(Appointment.date.asc(), Appointment.id.asc())
            .all()
        )

    @staticmethod
    def get_all(db: Session, limit: int = 200) -> list[Appointment]:
        return db.query(Appointment).order_by(Appointment.id.desc()).limit(limit).all()

    @staticmethod
    def get_user(db: Session, user_id: int) -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def create(db: Session, **appointment_data) -> Appointment:
        appointment = Appointment(**appointment_data)
        db.add(appointment)
        db.flush()
        return appointment

    @staticmethod
    def add_status_history(
        db: Session,
        appointment_id: int,
        from_status: str,
        to_status: str,
        actor_role: str,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> AppointmentStatusHistory:
        entry = AppointmentStatusHistory(
            appointment_id=appointment_id,
            from_status=from_status,
            to_status=to_status,
            actor_role=actor_role,
            actor_id=actor_id,
            reason=reason,
            meta=meta or None,
        )
        db.add(entry)
        db.flush()
        return entry

    @staticmethod
    def get_expirable(db: Session, now: datetime) -> list[Appointment]:
        """Awaiting payment or confirmed, with a start time already in the past"""
        return (
            db.query(Appointment)
            .filter(
                Appointment.status.in_(stored_values(UNPAID, PENDING, CONFIRMED, RESCHEDULED)),
                Appointment.date.isnot(None),
                Appointment.date < now,
            )
            .order_by(Appointment.date.asc())
            .all()
        )

    @staticmethod
    def get_with_recurring(db: Session) -> list[Appointment]:
        return db.query(Appointment).filter(Appointment.recurring.isnot(None)).all()

    @staticmethod
    def record_therapist_completion(db: Session, therapist_id: int) -> None:
        """Atomic counter bump, then promotion to level 2 once the threshold is reached"""
        db.query(User).filter(User.id == therapist_id).update(
            {User.completed_sessions: User.completed_sessions + 1},
            synchronize_session=False,
        )
        db.query(User).filter(
            User.id == therapist_id,
            User.completed_sessions >= THERAPIST_LEVEL2_THRESHOLD,
            User.level < 2,
        ).update({User.level: 2}, synchronize_session=False)
