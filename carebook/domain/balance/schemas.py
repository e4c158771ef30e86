"""Balance domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, field_validator

PaymentType = Literal[
    "payment_intent",
    "charge",
    "checkout_session",
    "subscription",
    "renew_now",
    "refund",
    "manual",
    "unknown",
]


def _positive_amount(v: float) -> float:
    if v is None or v != v or v <= 0:
        raise ValueError("Amount must be greater than zero")
    return round(v, 2)


class PaymentRef(BaseModel):
    """External payment backing a credit; ``id`` is the dedupe key"""

    id: str
    amount: Optional[float] = None
    currency: Optional[str] = None
    paymentType: PaymentType = "unknown"
    sessionsAdded: float = 0

    @field_validator("id")
    @classmethod
    def validate_id(cls, v):
        if not v or not v.strip():
            raise ValueError("Payment reference id is required")
        return v.strip()


class BalanceAddRequest(BaseModel):
    amount: float
    reason: str
    paymentRef: PaymentRef

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v):
        return _positive_amount(v)


class BalanceRemoveRequest(BaseModel):
    amount: float
    reason: str

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v):
        return _positive_amount(v)


class BalanceUseRequest(BaseModel):
    amount: float
    reason: str
    appointmentId: Optional[int] = None
    surcharge: float = 0

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v):
        return _positive_amount(v)


class BalanceHistoryResponse(BaseModel):
    action: str
    amount: float
    reason: Optional[str] = None
    adminId: Optional[int] = None
    appointmentId: Optional[int] = None
    surcharge: float = 0
    createdAt: Optional[datetime] = None


class BalancePaymentResponse(BaseModel):
    paymentId: str
    amount: float
    currency: str
    date: datetime
    sessionsAdded: float
    paymentType: str


class BalanceResponse(BaseModel):
    userId: int
    balanceAmount: float
    totalSessions: float
    spentSessions: float
    remainingSessions: float
    currency: str
    history: list[BalanceHistoryResponse] = []
    payments: list[BalancePaymentResponse] = []


class BalanceMutationResponse(BaseModel):
    success: bool
    duplicate: bool = False
    balance: BalanceResponse


class BalanceRepairResponse(BaseModel):
    found: int
    repaired: int
