"""Payment domain schemas - Pydantic models for validation"""

from typing import Optional

from pydantic import BaseModel, model_validator


class VerifyPaymentRequest(BaseModel):
    """Ad-hoc verification of provider ids, with or without a stored appointment"""

    appointmentId: Optional[int] = None
    checkoutSessionId: Optional[str] = None
    paymentIntentId: Optional[str] = None
    subscriptionId: Optional[str] = None
    isBalance: bool = False

    @model_validator(mode="after")
    def require_reference(self):
        if not (
            self.appointmentId
            or self.checkoutSessionId
            or self.paymentIntentId
            or self.subscriptionId
            or self.isBalance
        ):
            raise ValueError("An appointment id or a payment reference is required")
        return self


class VerifyPaymentResponse(BaseModel):
    isPaid: bool
    paymentStatus: str
    subscriptionStatus: Optional[str] = None
    isActive: bool = False
    verificationSource: str


class WebhookResult(BaseModel):
    received: bool = True
    eventType: str
    action: str
    duplicate: bool = False
