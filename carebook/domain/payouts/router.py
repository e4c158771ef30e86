"""Payout router - FastAPI endpoints for therapist payouts"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ...auth import actor_user_id, get_current_actor, require_admin
from ...database import get_db
from ...models import TherapistPayment
from ..appointments.statuses import Actor, ActorRole
from ..payments.stripe_service import PaymentProvider, get_payment_provider
from .schemas import (
    FinalizePayoutRequest,
    FinalizePayoutResponse,
    PayoutStatusUpdate,
    PayoutSummaryResponse,
    TherapistPaymentResponse,
)
from .service import PayoutService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payouts", tags=["Payouts"])


def get_payout_service(
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> PayoutService:
    """Dependency injection for PayoutService"""
    return PayoutService(db, provider)


def to_response(p: TherapistPayment) -> TherapistPaymentResponse:
    return TherapistPaymentResponse(
        id=p.id,
        therapistId=p.therapist_id,
        amount=p.amount,
        currency=p.currency,
        paymentMethod=p.payment_method,
        status=p.status,
        sessions=p.sessions or [],
        appointmentIds=p.appointment_ids or [],
        payoutPercentage=p.payout_percentage,
        transactionId=p.transaction_id,
        paidAt=p.paid_at,
        createdAt=p.created_at,
    )


def _check_access(actor: Actor, therapist_id: int) -> None:
    if actor.role == ActorRole.ADMIN:
        return
    if actor.role != ActorRole.THERAPIST or actor_user_id(actor) != therapist_id:
        raise HTTPException(status_code=403, detail="You can only view your own payouts")


@router.get("/{therapist_id}/summary", response_model=PayoutSummaryResponse)
async def get_payout_summary(
    therapist_id: int,
    actor: Actor = Depends(get_current_actor),
    service: PayoutService = Depends(get_payout_service),
):
    """Pending amount, paid total and expected payout date"""
    _check_access(actor, therapist_id)
    return PayoutSummaryResponse(**service.get_summary(therapist_id))


@router.get("/{therapist_id}/history", response_model=list[TherapistPaymentResponse])
async def get_payout_history(
    therapist_id: int,
    actor: Actor = Depends(get_current_actor),
    service: PayoutService = Depends(get_payout_service),
):
    _check_access(actor, therapist_id)
    return [to_response(p) for p in service.get_history(therapist_id)]


@router.post("/finalize", response_model=FinalizePayoutResponse)
async def finalize_payout(
    data: FinalizePayoutRequest,
    actor: Actor = Depends(require_admin),
    service: PayoutService = Depends(get_payout_service),
):
    """Settle every verified, completed and unpaid session of a therapist"""
    payment, skipped = service.finalize_payout(
        data.therapistId,
        processed_by=actor_user_id(actor),
        payment_method=data.paymentMethod,
        appointment_ids=data.appointmentIds,
        transaction_id=data.transactionId,
        note=data.note,
    )
    return FinalizePayoutResponse(payment=to_response(payment), skippedAppointmentIds=skipped)


@router.patch("/payments/{payment_id}/status", response_model=TherapistPaymentResponse)
async def update_payout_status(
    payment_id: int,
    data: PayoutStatusUpdate,
    actor: Actor = Depends(require_admin),
    service: PayoutService = Depends(get_payout_service),
):
    return to_response(service.update_payout_status(payment_id, data.status))
