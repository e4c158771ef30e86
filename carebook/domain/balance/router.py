"""Balance router - FastAPI endpoints for the session balance ledger"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ...auth import actor_user_id, get_current_actor, require_admin
from ...config import CURRENCY
from ...database import get_db
from ...errors import DuplicatePayment
from ...models import Balance
from ..appointments.statuses import Actor, ActorRole
from .schemas import (
    BalanceAddRequest,
    BalanceHistoryResponse,
    BalanceMutationResponse,
    BalancePaymentResponse,
    BalanceRemoveRequest,
    BalanceRepairResponse,
    BalanceResponse,
    BalanceUseRequest,
)
from .service import BalanceService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/balance", tags=["Balance"])


def get_balance_service(db: Session = Depends(get_db)) -> BalanceService:
    """Dependency injection for BalanceService"""
    return BalanceService(db)


def to_response(user_id: int, balance: Optional[Balance]) -> BalanceResponse:
    if balance is None:
        return BalanceResponse(
            userId=user_id,
            balanceAmount=0,
            totalSessions=0,
            spentSessions=0,
            remainingSessions=0,
            currency=CURRENCY,
        )
    return BalanceResponse(
        userId=user_id,
        balanceAmount=round(balance.balance_amount, 2),
        totalSessions=balance.total_sessions,
        spentSessions=balance.spent_sessions,
        remainingSessions=balance.remaining_sessions,
        currency=CURRENCY,
        history=[
            BalanceHistoryResponse(
                action=h.action,
                amount=h.amount,
                reason=h.reason,
                adminId=h.admin_id,
                appointmentId=h.appointment_id,
                surcharge=h.surcharge or 0,
                createdAt=h.created_at,
            )
            for h in balance.history
        ],
        payments=[
            BalancePaymentResponse(
                paymentId=p.payment_id,
                amount=p.amount,
                currency=p.currency,
                date=p.date,
                sessionsAdded=p.sessions_added,
                paymentType=p.payment_type,
            )
            for p in balance.payments
        ],
    )


def _own_user_id(actor: Actor) -> int:
    user_id = actor_user_id(actor)
    if user_id is None:
        raise HTTPException(status_code=400, detail="X-Actor-Id must be a user id")
    return user_id


def _check_access(actor: Actor, user_id: int) -> None:
    if actor.role != ActorRole.ADMIN and actor_user_id(actor) != user_id:
        raise HTTPException(status_code=403, detail="You can only access your own balance")


# ============================================================================
# READS
# ============================================================================


@router.get("/me", response_model=BalanceResponse)
async def get_my_balance(
    actor: Actor = Depends(get_current_actor),
    service: BalanceService = Depends(get_balance_service),
):
    user_id = _own_user_id(actor)
    return to_response(user_id, service.get_balance(user_id))


@router.get("/{user_id}", response_model=BalanceResponse)
async def get_balance(
    user_id: int,
    actor: Actor = Depends(get_current_actor),
    service: BalanceService = Depends(get_balance_service),
):
    _check_access(actor, user_id)
    return to_response(user_id, service.get_balance(user_id))


# ============================================================================
# MUTATIONS
# ============================================================================


@router.post("/{user_id}/add", response_model=BalanceMutationResponse)
async def add_balance(
    user_id: int,
    data: BalanceAddRequest,
    actor: Actor = Depends(require_admin),
    service: BalanceService = Depends(get_balance_service),
):
    """Credit against a payment reference; a replayed reference is a no-op success"""
    try:
        balance = service.add(
            user_id, data.amount, data.reason, data.paymentRef, admin_id=actor_user_id(actor)
        )
        return BalanceMutationResponse(success=True, balance=to_response(user_id, balance))
    except DuplicatePayment:
        return BalanceMutationResponse(
            success=True,
            duplicate=True,
            balance=to_response(user_id, service.get_balance(user_id)),
        )


@router.post("/{user_id}/remove", response_model=BalanceMutationResponse)
async def remove_balance(
    user_id: int,
    data: BalanceRemoveRequest,
    actor: Actor = Depends(require_admin),
    service: BalanceService = Depends(get_balance_service),
):
    balance = service.remove(user_id, data.amount, data.reason, admin_id=actor_user_id(actor))
    return BalanceMutationResponse(success=True, balance=to_response(user_id, balance))


@router.post("/{user_id}/use", response_model=BalanceMutationResponse)
async def use_balance(
    user_id: int,
    data: BalanceUseRequest,
    actor: Actor = Depends(get_current_actor),
    service: BalanceService = Depends(get_balance_service),
):
    """Spend balance on a session or a surcharge"""
    _check_access(actor, user_id)
    balance = service.use(
        user_id,
        data.amount,
        data.reason,
        appointment_id=data.appointmentId,
        surcharge=data.surcharge,
    )
    return BalanceMutationResponse(success=True, balance=to_response(user_id, balance))


@router.post("/repair", response_model=BalanceRepairResponse)
async def repair_balances(
    actor: Actor = Depends(require_admin),
    service: BalanceService = Depends(get_balance_service),
):
    """Clamp legacy overspent session counters"""
    logger.info(f"🔧 Balance repair requested by admin {actor.id}")
    return BalanceRepairResponse(**service.repair_negative_balances())
