from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, default="patient")  # patient, therapist, admin
    # Therapist tiering: level 2 unlocks the higher payout percentage
    level = Column(Integer, nullable=False, default=1)
    completed_sessions = Column(Integer, nullable=False, default=0)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    balance = relationship("Balance", back_populates="user", uselist=False)
    payout_info = relationship("TherapistPayoutInfo", back_populates="therapist", uselist=False)


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    therapist_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    date = Column(DateTime, nullable=True, index=True)  # Main session start (UTC)
    status = Column(String(50), nullable=False, default="unpaid")

    # Raw payment facts; the effective paid state is derived by the payment reconciler
    payment_status = Column(String(20), nullable=False, default="pending")  # pending, completed, failed, refunded
    payment_method = Column(String(20), nullable=True)  # stripe, balance, mixed, manual
    is_stripe_verified = Column(Boolean, nullable=False, default=False)
    is_balance = Column(Boolean, nullable=False, default=False)
    checkout_session_id = Column(String(255), nullable=True)
    payment_intent_id = Column(String(255), nullable=True)
    stripe_subscription_id = Column(String(255), nullable=True)
    paid_at = Column(DateTime, nullable=True)

    # Plan shape
    plan = Column(String(255), nullable=True)
    plan_type = Column(String(50), nullable=False, default="single_session")
    price = Column(Float, nullable=False, default=0)
    unit_price = Column(Float, nullable=True)  # Per-session price charged at checkout
    total_sessions = Column(Integer, nullable=False, default=1)
    completed_sessions = Column(Integer, nullable=False, default=0)
    # Stored as written by earlier releases: canonical dicts, bare ISO strings or
    # character-indexed dicts. Read through domain.appointments.recurring only.
    recurring = Column(JSON, nullable=False, default=list)

    # Special pricing provenance
    is_same_day_booking = Column(Boolean, nullable=False, default=False)
    same_day_surcharge = Column(Float, nullable=False, default=0)
    is_rescheduled = Column(Boolean, nullable=False, default=False)

    # Therapist settlement
    therapist_paid = Column(Boolean, nullable=False, default=False)
    payout_status = Column(String(20), nullable=False, default="unpaid")  # unpaid, pending_payout, paid

    decline_comment = Column(Text, nullable=True)
    old_therapies = Column(JSON, nullable=False, default=list)  # Therapist ids that declined
    reason = Column(Text, nullable=True)
    last_status_change_reason = Column(Text, nullable=True)
    last_status_changed_by = Column(String(64), nullable=True)
    last_status_changed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    patient = relationship("User", foreign_keys=[patient_id])
    therapist = relationship("User", foreign_keys=[therapist_id])
    status_history = relationship(
        "AppointmentStatusHistory",
        back_populates="appointment",
        order_by="AppointmentStatusHistory.id",
        cascade="all, delete-orphan",
    )


class AppointmentStatusHistory(Base):
    """Audit trail of accepted status transitions"""

    __tablename__ = "appointment_status_history"

    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    from_status = Column(String(50), nullable=False)
    to_status = Column(String(50), nullable=False)
    reason = Column(Text, nullable=True)
    actor_id = Column(String(64), nullable=True)
    actor_role = Column(String(20), nullable=False)
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    appointment = relationship("Appointment", back_populates="status_history")


class Balance(Base):
    __tablename__ = "balances"
    __table_args__ = (CheckConstraint("balance_amount >= 0", name="ck_balance_non_negative"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    balance_amount = Column(Float, nullable=False, default=0)
    # Legacy session-count model, kept for older balances
    total_sessions = Column(Float, nullable=False, default=0)
    spent_sessions = Column(Float, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="balance")
    history = relationship("BalanceHistory", order_by="BalanceHistory.id", back_populates="balance")
    payments = relationship("BalancePayment", order_by="BalancePayment.id", back_populates="balance")

    @property
    def remaining_sessions(self) -> float:
        return max((self.total_sessions or 0) - (self.spent_sessions or 0), 0)


class BalanceHistory(Base):
    """Append-only audit entry for every balance mutation"""

    __tablename__ = "balance_history"

    id = Column(Integer, primary_key=True, index=True)
    balance_id = Column(Integer, ForeignKey("balances.id"), nullable=False, index=True)
    action = Column(String(20), nullable=False)  # added, removed, used
    amount = Column(Float, nullable=False)
    reason = Column(Text, nullable=True)
    admin_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)
    surcharge = Column(Float, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now())

    balance = relationship("Balance", back_populates="history")


class BalancePayment(Base):
    """External payment credited to a balance; payment_id is credited at most once"""

    __tablename__ = "balance_payments"

    id = Column(Integer, primary_key=True, index=True)
    balance_id = Column(Integer, ForeignKey("balances.id"), nullable=False, index=True)
    payment_id = Column(String(255), unique=True, nullable=False, index=True)
    amount = Column(Float, nullable=False)
    currency = Column(String(10), nullable=False)
    date = Column(DateTime, nullable=False)
    sessions_added = Column(Float, nullable=False, default=0)
    payment_type = Column(String(30), nullable=False, default="unknown")

    balance = relationship("Balance", back_populates="payments")


class TherapistPayment(Base):
    """Finalized therapist payout; only status changes after creation"""

    __tablename__ = "therapist_payments"

    id = Column(Integer, primary_key=True, index=True)
    therapist_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    currency = Column(String(10), nullable=False)
    payment_method = Column(String(20), nullable=False)  # stripe, manual, usdt, usdc
    status = Column(String(20), nullable=False, default="pending")  # pending, completed, failed
    sessions = Column(JSON, nullable=False, default=list)  # [{id, price, date, status}]
    appointment_ids = Column(JSON, nullable=False, default=list)
    payout_percentage = Column(Float, nullable=True)
    processed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    transaction_id = Column(String(255), nullable=True)
    note = Column(Text, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class TherapistPayoutInfo(Base):
    __tablename__ = "therapist_payout_info"

    id = Column(Integer, primary_key=True, index=True)
    therapist_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    payout_schedule = Column(String(20), nullable=False, default="weekly")  # weekly, monthly, manual
    expected_payout_date = Column(DateTime, nullable=True)
    payment_details = Column(JSON, nullable=True)  # e.g. {"wallet": "...", "network": "BSC"}
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    therapist = relationship("User", back_populates="payout_info")
