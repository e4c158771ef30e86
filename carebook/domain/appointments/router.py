"""Appointment router - FastAPI endpoints for lifecycle operations"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...auth import get_current_actor, require_admin
from ...database import get_db
from ...models import Appointment
from ..payments.stripe_service import PaymentProvider, get_payment_provider
from .recurring import normalize_recurring
from .schemas import (
    AllowedTransitionsResponse,
    AppointmentCreate,
    AppointmentResponse,
    AssignTherapistRequest,
    CancelRequest,
    CancelResponse,
    MarkSessionsPaidResponse,
    RecurringNormalizeRequest,
    RecurringNormalizeResponse,
    RecurringRepairResponse,
    RescheduleRequest,
    SessionCompleteRequest,
    SessionRescheduleRequest,
    StatusHistoryResponse,
    TransitionRequest,
)
from .service import AppointmentService
from .statuses import Actor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/appointments", tags=["Appointments"])
recurring_router = APIRouter(prefix="/recurring", tags=["Recurring Sessions"])


def get_appointment_service(
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> AppointmentService:
    """Dependency injection for AppointmentService"""
    return AppointmentService(db, provider)


def to_response(a: Appointment) -> AppointmentResponse:
    return AppointmentResponse(
        id=a.id,
        patientId=a.patient_id,
        therapistId=a.therapist_id,
        date=a.date,
        status=a.status,
        paymentStatus=a.payment_status,
        paymentMethod=a.payment_method,
        isStripeVerified=bool(a.is_stripe_verified),
        isBalance=bool(a.is_balance),
        plan=a.plan,
        planType=a.plan_type,
        price=a.price or 0,
        unitPrice=a.unit_price,
        totalSessions=a.total_sessions or 1,
        completedSessions=a.completed_sessions or 0,
        recurring=a.recurring if isinstance(a.recurring, list) else [],
        isSameDayBooking=bool(a.is_same_day_booking),
        sameDaySurcharge=a.same_day_surcharge or 0,
        isRescheduled=bool(a.is_rescheduled),
        therapistPaid=bool(a.therapist_paid),
        payoutStatus=a.payout_status,
        declineComment=a.decline_comment,
        oldTherapies=a.old_therapies or [],
        lastStatusChangeReason=a.last_status_change_reason,
        lastStatusChangedAt=a.last_status_changed_at,
    )


# ============================================================================
# BOOKING AND READS
# ============================================================================


@router.post("", response_model=AppointmentResponse)
async def create_appointment(
    data: AppointmentCreate,
    actor: Actor = Depends(get_current_actor),
    service: AppointmentService = Depends(get_appointment_service),
):
    """Book an appointment; it starts as unpaid"""
    return to_response(service.create_appointment(data, actor))


@router.get("", response_model=list[AppointmentResponse])
async def list_appointments(
    actor: Actor = Depends(get_current_actor),
    service: AppointmentService = Depends(get_appointment_service),
):
    """Patients see their bookings, therapists their assignments, admins everything"""
    return [to_response(a) for a in service.list_appointments(actor)]


@router.get("/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    service: AppointmentService = Depends(get_appointment_service),
):
    return to_response(service.get_appointment(appointment_id, actor))


@router.get("/{appointment_id}/allowed-transitions", response_model=AllowedTransitionsResponse)
async def get_allowed_transitions(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    service: AppointmentService = Depends(get_appointment_service),
):
    current, allowed = service.get_allowed_transitions(appointment_id, actor)
    return AllowedTransitionsResponse(currentStatus=current, role=actor.role.value, allowed=allowed)


@router.get("/{appointment_id}/history", response_model=list[StatusHistoryResponse])
async def get_status_history(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    service: AppointmentService = Depends(get_appointment_service),
):
    return [
        StatusHistoryResponse(
            fromStatus=h.from_status,
            toStatus=h.to_status,
            reason=h.reason,
            actorId=h.actor_id,
            actorRole=h.actor_role,
            meta=h.meta,
            createdAt=h.created_at,
        )
        for h in service.get_status_history(appointment_id, actor)
    ]


@router.get("/{appointment_id}/payment-state")
async def get_payment_state(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    service: AppointmentService = Depends(get_appointment_service),
):
    """Reconciled payment state; 'error' means the provider could not be reached"""
    return service.get_payment_state(appointment_id, actor).to_dict()


# ============================================================================
# STATUS CHANGES
# ============================================================================


@router.post("/{appointment_id}/transition", response_model=AppointmentResponse)
async def transition_appointment(
    appointment_id: int,
    data: TransitionRequest,
    actor: Actor = Depends(get_current_actor),
    service: AppointmentService = Depends(get_appointment_service),
):
    appointment = service.transition(appointment_id, data.targetStatus, actor, data.reason, data.meta)
    return to_response(appointment)


@router.post("/{appointment_id}/assign", response_model=AppointmentResponse)
async def assign_therapist(
    appointment_id: int,
    data: AssignTherapistRequest,
    actor: Actor = Depends(require_admin),
    service: AppointmentService = Depends(get_appointment_service),
):
    """Match a therapist; the appointment then waits for their acceptance"""
    return to_response(service.assign_therapist(appointment_id, data.therapistId, actor))


@router.post("/{appointment_id}/cancel", response_model=CancelResponse)
async def cancel_appointment(
    appointment_id: int,
    data: CancelRequest,
    actor: Actor = Depends(get_current_actor),
    service: AppointmentService = Depends(get_appointment_service),
):
    """Cancel and refund unused sessions to the patient balance"""
    appointment, fraction, refund = service.cancel(
        appointment_id, actor, data.reason, data.chargeFraction
    )
    return CancelResponse(
        appointment=to_response(appointment), chargeFraction=fraction, refundAmount=refund
    )


@router.post("/{appointment_id}/reschedule", response_model=AppointmentResponse)
async def reschedule_appointment(
    appointment_id: int,
    data: RescheduleRequest,
    actor: Actor = Depends(get_current_actor),
    service: AppointmentService = Depends(get_appointment_service),
):
    return to_response(service.reschedule(appointment_id, actor, data.newDate, data.reason))


@router.post("/{appointment_id}/pay-with-balance", response_model=AppointmentResponse)
async def pay_with_balance(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    service: AppointmentService = Depends(get_appointment_service),
):
    return to_response(service.pay_with_balance(appointment_id, actor))


# ============================================================================
# SESSIONS
# ============================================================================


@router.post("/{appointment_id}/sessions/complete", response_model=AppointmentResponse)
async def complete_session(
    appointment_id: int,
    data: SessionCompleteRequest,
    actor: Actor = Depends(get_current_actor),
    service: AppointmentService = Depends(get_appointment_service),
):
    return to_response(service.complete_session(appointment_id, actor, data.index))


@router.post("/{appointment_id}/sessions/reschedule", response_model=AppointmentResponse)
async def reschedule_session(
    appointment_id: int,
    data: SessionRescheduleRequest,
    actor: Actor = Depends(get_current_actor),
    service: AppointmentService = Depends(get_appointment_service),
):
    return to_response(service.reschedule_session(appointment_id, data.index, actor, data.newDate))


@router.post("/{appointment_id}/sessions/mark-paid", response_model=MarkSessionsPaidResponse)
async def mark_sessions_paid(
    appointment_id: int,
    actor: Actor = Depends(require_admin),
    service: AppointmentService = Depends(get_appointment_service),
):
    updated = service.mark_sessions_paid(appointment_id, actor)
    return MarkSessionsPaidResponse(appointmentId=appointment_id, updated=updated)


# ============================================================================
# RECURRING NORMALIZATION
# ============================================================================


@recurring_router.post("/normalize", response_model=RecurringNormalizeResponse)
async def normalize(data: RecurringNormalizeRequest):
    """Pure normalization, nothing is stored"""
    result = normalize_recurring(data.rawRecurring, data.parentStatus, data.parentPaid)
    return RecurringNormalizeResponse(**result.to_dict())


@recurring_router.post("/repair", response_model=RecurringRepairResponse)
async def repair_recurring(
    actor: Actor = Depends(require_admin),
    service: AppointmentService = Depends(get_appointment_service),
):
    """Batch repair of every stored recurring list"""
    logger.info(f"🔧 Recurring repair requested by admin {actor.id}")
    return RecurringRepairResponse(**service.repair_recurring())
