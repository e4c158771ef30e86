"""Payout domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel

PayoutMethod = Literal["stripe", "manual", "usdt", "usdc"]
PayoutStatus = Literal["pending", "completed", "failed"]


class PendingAppointmentResponse(BaseModel):
    appointmentId: int
    sessions: int
    percentage: float
    amount: float


class PayoutSummaryResponse(BaseModel):
    therapistId: int
    totalPending: float
    totalPaid: float
    expectedPayoutDate: datetime
    payoutFrequency: str
    currency: str
    pendingAppointments: list[PendingAppointmentResponse] = []
    unverifiedAppointmentIds: list[int] = []


class FinalizePayoutRequest(BaseModel):
    therapistId: int
    paymentMethod: PayoutMethod = "manual"
    appointmentIds: Optional[list[int]] = None
    transactionId: Optional[str] = None
    note: Optional[str] = None


class PayoutStatusUpdate(BaseModel):
    status: PayoutStatus


class TherapistPaymentResponse(BaseModel):
    id: int
    therapistId: int
    amount: float
    currency: str
    paymentMethod: str
    status: str
    sessions: list[dict]
    appointmentIds: list[int]
    payoutPercentage: Optional[float] = None
    transactionId: Optional[str] = None
    paidAt: Optional[datetime] = None
    createdAt: Optional[datetime] = None


class FinalizePayoutResponse(BaseModel):
    payment: TherapistPaymentResponse
    skippedAppointmentIds: list[int] = []
