"""Payment router - Verification endpoint and Stripe webhook"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from ...auth import get_current_actor
from ...database import get_db
from ..appointments.statuses import Actor
from .schemas import VerifyPaymentRequest, VerifyPaymentResponse, WebhookResult
from .service import PaymentService
from .stripe_service import PaymentProvider, construct_webhook_event, get_payment_provider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])
webhooks_router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def get_payment_service(
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> PaymentService:
    """Dependency injection for PaymentService"""
    return PaymentService(db, provider)


@router.post("/verify", response_model=VerifyPaymentResponse)
async def verify_payment(
    data: VerifyPaymentRequest,
    actor: Actor = Depends(get_current_actor),
    service: PaymentService = Depends(get_payment_service),
):
    """Reconcile without mutating anything; 'error' means the provider was unreachable"""
    state = service.verify(
        actor,
        appointment_id=data.appointmentId,
        checkout_session_id=data.checkoutSessionId,
        payment_intent_id=data.paymentIntentId,
        subscription_id=data.subscriptionId,
        is_balance=data.isBalance,
    )
    return VerifyPaymentResponse(**state.to_dict())


@webhooks_router.post("/stripe", response_model=WebhookResult)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    service: PaymentService = Depends(get_payment_service),
):
    """
    Handle Stripe webhook events

    Events handled:
    - checkout.session.completed - appointment payment or balance top-up
    - invoice.paid - subscription renewal credited to the balance
    """
    payload = await request.body()
    try:
        event = construct_webhook_event(payload, stripe_signature)
    except Exception as e:
        logger.warning(f"⚠️ Stripe webhook rejected: {str(e)}")
        raise HTTPException(status_code=400, detail="Invalid webhook signature") from e

    result = service.handle_event(event)
    return WebhookResult(**result)
