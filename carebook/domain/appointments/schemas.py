"""Appointment domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, field_validator


class AppointmentCreate(BaseModel):
    """Schema for booking a new appointment"""

    patientId: Optional[int] = None  # Admins book on behalf of a patient
    plan: Optional[str] = None
    planType: str = "single_session"
    price: float
    unitPrice: Optional[float] = None
    totalSessions: int = 1
    date: Optional[datetime] = None
    sessionDates: list[datetime] = []
    paymentMethod: Optional[str] = None
    checkoutSessionId: Optional[str] = None
    paymentIntentId: Optional[str] = None
    subscriptionId: Optional[str] = None

    @field_validator("price")
    @classmethod
    def validate_price(cls, v):
        if v < 0:
            raise ValueError("Price cannot be negative")
        return round(v, 2)

    @field_validator("totalSessions")
    @classmethod
    def validate_total_sessions(cls, v):
        if v < 1:
            raise ValueError("A plan has at least one session")
        return v

    @field_validator("paymentMethod")
    @classmethod
    def validate_payment_method(cls, v):
        if v is not None and v not in ("stripe", "balance", "mixed", "manual"):
            raise ValueError("Payment method must be stripe, balance, mixed or manual")
        return v


class TransitionRequest(BaseModel):
    targetStatus: str  # Legacy aliases accepted, unknown values rejected as invalid transitions
    reason: Optional[str] = None
    meta: Optional[dict] = None


class AssignTherapistRequest(BaseModel):
    therapistId: int


class CancelRequest(BaseModel):
    reason: Optional[str] = None
    chargeFraction: Optional[float] = None  # Admin override of the cancellation window

    @field_validator("chargeFraction")
    @classmethod
    def validate_fraction(cls, v):
        if v is not None and not 0 <= v <= 1:
            raise ValueError("chargeFraction must be between 0 and 1")
        return v


class RescheduleRequest(BaseModel):
    newDate: datetime
    reason: Optional[str] = None


class SessionRescheduleRequest(BaseModel):
    index: int
    newDate: datetime


class SessionCompleteRequest(BaseModel):
    index: Optional[int] = None  # None completes the main session


class AppointmentResponse(BaseModel):
    """Schema for appointment response"""

    id: int
    patientId: int
    therapistId: Optional[int] = None
    date: Optional[datetime] = None
    status: str
    paymentStatus: str
    paymentMethod: Optional[str] = None
    isStripeVerified: bool
    isBalance: bool
    plan: Optional[str] = None
    planType: str
    price: float
    unitPrice: Optional[float] = None
    totalSessions: int
    completedSessions: int
    recurring: list[Any]
    isSameDayBooking: bool
    sameDaySurcharge: float
    isRescheduled: bool
    therapistPaid: bool
    payoutStatus: str
    declineComment: Optional[str] = None
    oldTherapies: list[Any] = []
    lastStatusChangeReason: Optional[str] = None
    lastStatusChangedAt: Optional[datetime] = None


class AllowedTransitionsResponse(BaseModel):
    currentStatus: str
    role: str
    allowed: list[str]


class StatusHistoryResponse(BaseModel):
    fromStatus: str
    toStatus: str
    reason: Optional[str] = None
    actorId: Optional[str] = None
    actorRole: str
    meta: Optional[dict] = None
    createdAt: Optional[datetime] = None


class CancelResponse(BaseModel):
    appointment: AppointmentResponse
    chargeFraction: float
    refundAmount: float


class MarkSessionsPaidResponse(BaseModel):
    appointmentId: int
    updated: int


class RecurringNormalizeRequest(BaseModel):
    rawRecurring: list[Any] = []
    parentStatus: Optional[str] = None
    parentPaid: bool = False


class RecurringNormalizeResponse(BaseModel):
    canonical: list[dict]
    skippedCount: int
    convertedCount: int
    changed: bool
    warnings: list[dict] = []


class RecurringRepairResponse(BaseModel):
    found: int
    updated: int
    skippedInvalid: int
    convertedToObjects: int
