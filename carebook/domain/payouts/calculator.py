"""
Payout calculator

Pure arithmetic over already-loaded appointments. A therapist earns
``unit_price * payout_percentage`` for every completed session that has not
been paid out yet, where the main session is tracked by
``Appointment.payout_status`` and the follow-up sessions by the ``payment``
field of each ``recurring`` entry.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from ...config import (
    DEFAULT_PAYOUT_DELAY_DAYS,
    PAYOUT_BASE_PERCENTAGE,
    PAYOUT_TIER_PERCENTAGE,
    PAYOUT_TIER_SESSION_THRESHOLD,
)
from ..appointments.recurring import completed_unpaid_sessions
from ..appointments.statuses import COMPLETED, canonical_status

MAIN_SESSION_PAID = "paid"


def payout_percentage(total_sessions: Optional[int], therapist_level: Optional[int] = None) -> float:
    """Large plans (9+ sessions) and level-2 therapists earn the higher tier"""
    if (total_sessions or 0) >= PAYOUT_TIER_SESSION_THRESHOLD or therapist_level == 2:
        return PAYOUT_TIER_PERCENTAGE
    return PAYOUT_BASE_PERCENTAGE


def session_unit_price(appointment) -> float:
    total = appointment.total_sessions or 1
    return (appointment.price or 0) / max(total, 1)


@dataclass
class PayableSession:
    appointment_id: int
    index: Optional[int]  # None for the main session
    price: float
    date: Optional[str]
    status: str = COMPLETED

    @property
    def session_id(self) -> str:
        if self.index is None:
            return f"{self.appointment_id}:main"
        return f"{self.appointment_id}:{self.index}"

    def snapshot(self) -> dict:
        return {
            "id": self.session_id,
            "appointmentId": self.appointment_id,
            "index": self.index,
            "price": round(self.price, 2),
            "date": self.date,
            "status": self.status,
        }


@dataclass
class AppointmentPayout:
    appointment_id: int
    percentage: float
    sessions: list = field(default_factory=list)

    @property
    def gross(self) -> float:
        return sum(s.price for s in self.sessions)

    @property
    def amount(self) -> float:
        return round(self.gross * self.percentage, 2)


def payable_sessions(appointment, sessions: list) -> list[PayableSession]:
    """
    Completed sessions of ``appointment`` not yet paid to the therapist.

    ``sessions`` is the normalized recurring list. A recurring entry's own
    ``price`` overrides the per-session unit price.
    """
    if canonical_status(appointment.status) != COMPLETED or appointment.therapist_paid:
        return []

    unit = session_unit_price(appointment)
    payable = []

    if appointment.payout_status != MAIN_SESSION_PAID:
        payable.append(
            PayableSession(
                appointment_id=appointment.id,
                index=None,
                price=unit,
                date=appointment.date.isoformat() if appointment.date else None,
            )
        )

    for session in completed_unpaid_sessions(sessions):
        override = session.get("price")
        price = float(override) if isinstance(override, (int, float)) and not isinstance(override, bool) else unit
        payable.append(
            PayableSession(
                appointment_id=appointment.id,
                index=session.get("index"),
                price=price,
                date=session.get("date"),
            )
        )
    return payable


def appointment_payout(appointment, sessions: list, therapist_level: Optional[int] = None) -> AppointmentPayout:
    return AppointmentPayout(
        appointment_id=appointment.id,
        percentage=payout_percentage(appointment.total_sessions, therapist_level),
        sessions=payable_sessions(appointment, sessions),
    )


def total_payout(payouts: list[AppointmentPayout]) -> float:
    return round(sum(p.amount for p in payouts), 2)


def default_expected_payout_date(now: datetime) -> datetime:
    """A week from now, at noon UTC"""
    target = now + timedelta(days=DEFAULT_PAYOUT_DELAY_DAYS)
    return target.replace(hour=12, minute=0, second=0, microsecond=0)
