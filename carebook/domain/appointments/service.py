"""Appointment service - Lifecycle operations built on the status machine

Every public operation runs as one unit of work: status flip, history row,
ledger movement and cached payment flags commit together or not at all.
Status-change events are handed to the notification dispatcher only after
the commit succeeds.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...config import (
    FREE_CANCELLATION_HOURS,
    LATE_CANCELLATION_CHARGE,
    SAME_DAY_SURCHARGE_PERCENTAGE,
)
from ...errors import (
    ActorNotPermitted,
    EngineError,
    NotFoundError,
    PaymentRequired,
    PaymentVerificationError,
    TransitionGuardFailed,
)
from ...models import Appointment, AppointmentStatusHistory
from ...services.notifications import NotificationDispatcher, StatusChangeEvent, get_dispatcher
from ...shared.timeutils import to_naive_utc, utcnow
from ..balance.service import FULL_REFUND, BalanceService
from ..payments.reconciler import PaymentReconciler, PaymentState, record_verification
from ..payments.stripe_service import PaymentProvider
from .recurring import (
    PAYMENT_PAID,
    SESSION_COMPLETED,
    build_sessions,
    count_completed,
    find_session,
    normalize_appointment_sessions,
    normalize_session_date,
)
from .repository import AppointmentRepository
from .schemas import AppointmentCreate
from .statuses import (
    CANCELLED,
    COMPLETED,
    CONFIRMED,
    MATCHED_PENDING_THERAPIST_ACCEPTANCE,
    PENDING,
    PENDING_MATCH,
    PENDING_SCHEDULING,
    RESCHEDULED,
    UNPAID,
    Actor,
    ActorRole,
    allowed_transitions,
    canonical_status,
    check_ownership,
    validate_transition,
)

logger = logging.getLogger(__name__)

EXPIRY_REASON = "Expired - payment not completed before scheduled time"

MAIN_UNPAID = "unpaid"
MAIN_PENDING_PAYOUT = "pending_payout"
MAIN_PAID = "paid"


def same_day_surcharge(price: float, total_sessions: int) -> float:
    """Per-session surcharge for booking or moving into a slot on the current day"""
    return round((price or 0) * SAME_DAY_SURCHARGE_PERCENTAGE / 100 / max(total_sessions or 1, 1), 2)


def _actor_user_id(actor: Actor) -> int:
    try:
        return int(actor.id)
    except (TypeError, ValueError):
        raise ActorNotPermitted("A numeric actor id is required for this action") from None


class AppointmentService:
    """Service layer for appointment lifecycle logic"""

    def __init__(
        self,
        db: Session,
        provider: PaymentProvider,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.db = db
        self.repo = AppointmentRepository()
        self.balance = BalanceService(db)
        self.reconciler = PaymentReconciler(provider)
        self.dispatcher = dispatcher or get_dispatcher()
        self._pending_events: list[StatusChangeEvent] = []

    @contextmanager
    def _unit_of_work(self):
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            self._pending_events.clear()
            raise

        events, self._pending_events = self._pending_events, []
        for event in events:
            self.dispatcher.dispatch(event)

    # ========================================================================
    # READS
    # ========================================================================

    def get_appointment(self, appointment_id: int, actor: Optional[Actor] = None) -> Appointment:
        appointment = self.repo.get_by_id(self.db, appointment_id)
        if not appointment:
            raise NotFoundError(f"Appointment {appointment_id} not found")
        if actor is not None:
            check_ownership(appointment, actor)
        return appointment

    def list_appointments(self, actor: Actor) -> list[Appointment]:
        role = ActorRole(actor.role)
        if role == ActorRole.PATIENT:
            return self.repo.get_for_patient(self.db, _actor_user_id(actor))
        if role == ActorRole.THERAPIST:
            return self.repo.get_for_therapist(self.db, _actor_user_id(actor))
        return self.repo.get_all(self.db)

    def get_allowed_transitions(self, appointment_id: int, actor: Actor) -> tuple[str, list[str]]:
        appointment = self.get_appointment(appointment_id, actor)
        current = canonical_status(appointment.status) or appointment.status
        return current, sorted(allowed_transitions(appointment.status, actor.role))

    def get_status_history(self, appointment_id: int, actor: Actor) -> list[AppointmentStatusHistory]:
        appointment = self.get_appointment(appointment_id, actor)
        return list(appointment.status_history)

    def get_payment_state(self, appointment_id: int, actor: Actor) -> PaymentState:
        """Reconcile and cache the result on the appointment"""
        appointment = self.get_appointment(appointment_id, actor)
        state = self.reconciler.reconcile(appointment)
        if record_verification(appointment, state):
            self.db.commit()
        return state

    # ========================================================================
    # BOOKING
    # ========================================================================

    def create_appointment(self, data: AppointmentCreate, actor: Actor) -> Appointment:
        role = ActorRole(actor.role)
        if role == ActorRole.PATIENT:
            patient_id = _actor_user_id(actor)
        elif role == ActorRole.ADMIN and data.patientId is not None:
            patient_id = data.patientId
        else:
            raise ActorNotPermitted("Only patients (or admins on their behalf) can book appointments")

        if not self.repo.get_user(self.db, patient_id):
            raise NotFoundError(f"Patient {patient_id} not found")

        if len(data.sessionDates) > data.totalSessions - 1:
            raise EngineError(
                f"A {data.totalSessions}-session plan has at most {data.totalSessions - 1} follow-up dates"
            )

        date = to_naive_utc(data.date) if data.date else None
        is_same_day = date is not None and date.date() == utcnow().date()

        with self._unit_of_work():
            appointment = self.repo.create(
                self.db,
                patient_id=patient_id,
                date=date,
                status=UNPAID,
                payment_status="pending",
                payment_method=data.paymentMethod,
                checkout_session_id=data.checkoutSessionId,
                payment_intent_id=data.paymentIntentId,
                stripe_subscription_id=data.subscriptionId,
                plan=data.plan,
                plan_type=data.planType,
                price=data.price,
                unit_price=data.unitPrice,
                total_sessions=data.totalSessions,
                completed_sessions=0,
                recurring=build_sessions(data.sessionDates),
                is_same_day_booking=is_same_day,
                same_day_surcharge=same_day_surcharge(data.price, data.totalSessions) if is_same_day else 0,
                old_therapies=[],
            )
        logger.info(f"📅 Appointment {appointment.id} booked for patient {patient_id}")
        return appointment

    def pay_with_balance(self, appointment_id: int, actor: Actor) -> Appointment:
        """Fund an unpaid appointment from the patient's balance and queue it for matching"""
        appointment = self.get_appointment(appointment_id, actor)
        current, target = validate_transition(appointment.status, PENDING_MATCH, Actor.system())
        amount = round((appointment.price or 0) + (appointment.same_day_surcharge or 0), 2)

        with self._unit_of_work():
            self.balance.use(
                appointment.patient_id,
                amount,
                f"Payment for appointment {appointment.id}",
                appointment_id=appointment.id,
                surcharge=appointment.same_day_surcharge or 0,
                commit=False,
            )
            appointment.is_balance = True
            appointment.payment_method = "balance"
            state = self.reconciler.reconcile(appointment)
            record_verification(appointment, state)
            self._apply_transition(
                appointment, current, target, Actor.system(), "Paid from balance", {"amount": amount}
            )
        return appointment

    def confirm_payment(
        self,
        appointment_id: int,
        checkout_session_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> Appointment:
        """
        Webhook entry point: store provider ids, cache the reconciled state and
        move a paid appointment on to matching.
        """
        appointment = self.get_appointment(appointment_id)

        with self._unit_of_work():
            if checkout_session_id and not appointment.checkout_session_id:
                appointment.checkout_session_id = checkout_session_id
            if payment_intent_id and not appointment.payment_intent_id:
                appointment.payment_intent_id = payment_intent_id
            if subscription_id and not appointment.stripe_subscription_id:
                appointment.stripe_subscription_id = subscription_id
            if not appointment.payment_method:
                appointment.payment_method = "stripe"

            state = self.reconciler.reconcile(appointment)
            if state.is_error:
                raise PaymentVerificationError(
                    f"Could not verify payment for appointment {appointment.id}"
                )
            record_verification(appointment, state)

            if state.is_paid and canonical_status(appointment.status) in (UNPAID, PENDING):
                system = Actor.system()
                current, target = validate_transition(appointment.status, PENDING_MATCH, system)
                self._apply_transition(
                    appointment,
                    current,
                    target,
                    system,
                    "Payment confirmed",
                    {"source": state.verification_source},
                )
        return appointment

    # ========================================================================
    # STATUS TRANSITIONS
    # ========================================================================

    def _require_verified_payment(self, appointment: Appointment) -> PaymentState:
        """'error' is never read as paid; it surfaces as PaymentVerificationError"""
        state = self.reconciler.reconcile(appointment)
        if state.is_error:
            raise PaymentVerificationError(
                f"Could not verify payment for appointment {appointment.id}, try again later"
            )
        if not state.is_paid:
            raise PaymentRequired(f"Appointment {appointment.id} has no verified payment")
        record_verification(appointment, state)
        return state

    def _check_guards(self, appointment: Appointment, target: str, actor: Actor) -> None:
        # Admin overrides skip business guards; the reason is on record instead
        if ActorRole(actor.role) == ActorRole.ADMIN:
            return
        if target == PENDING_SCHEDULING and appointment.therapist_id is None:
            raise TransitionGuardFailed(target, "A therapist must be assigned before scheduling")
        if target == CONFIRMED and appointment.date is None:
            raise TransitionGuardFailed(target, "A session date is required to confirm")
        if target == RESCHEDULED:
            raise TransitionGuardFailed(target, "A new date is required, use reschedule instead")
        if target in (PENDING_MATCH, COMPLETED):
            self._require_verified_payment(appointment)

    def _apply_transition(
        self,
        appointment: Appointment,
        current: str,
        target: str,
        actor: Actor,
        reason: Optional[str],
        meta: Optional[dict],
    ) -> None:
        role = ActorRole(actor.role)
        therapist_id = appointment.therapist_id

        if target == COMPLETED:
            appointment.completed_sessions = max(
                appointment.completed_sessions or 0, appointment.total_sessions or 1
            )
            if appointment.payout_status == MAIN_UNPAID:
                appointment.payout_status = MAIN_PENDING_PAYOUT
            if therapist_id:
                self.repo.record_therapist_completion(self.db, therapist_id)

        if (
            role == ActorRole.THERAPIST
            and current == MATCHED_PENDING_THERAPIST_ACCEPTANCE
            and target == CANCELLED
        ):
            appointment.decline_comment = reason
            appointment.old_therapies = [*(appointment.old_therapies or []), therapist_id]
            appointment.therapist_id = None
            logger.info(f"🙅 Therapist {therapist_id} declined appointment {appointment.id}")

        if target == CANCELLED and reason:
            appointment.reason = reason

        appointment.status = target
        appointment.last_status_change_reason = reason
        appointment.last_status_changed_by = actor.id or role.value
        appointment.last_status_changed_at = utcnow()

        if target == COMPLETED:
            # Sessions default to completed under a completed parent
            normalize_appointment_sessions(appointment)

        self.repo.add_status_history(
            self.db,
            appointment.id,
            from_status=current,
            to_status=target,
            actor_role=role.value,
            actor_id=actor.id,
            reason=reason,
            meta=meta,
        )
        self._pending_events.append(
            StatusChangeEvent(
                appointment_id=appointment.id,
                from_status=current,
                to_status=target,
                actor_role=role.value,
                actor_id=actor.id,
                reason=reason,
                patient_id=appointment.patient_id,
                therapist_id=therapist_id,
                meta=meta or {},
            )
        )
        logger.info(f"🔄 Appointment {appointment.id}: {current} → {target} ({role.value})")

    def transition(
        self,
        appointment_id: int,
        target_status: str,
        actor: Actor,
        reason: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> Appointment:
        """Validate and apply one status change requested by ``actor``"""
        appointment = self.get_appointment(appointment_id, actor)
        current, target = validate_transition(appointment.status, target_status, actor, reason)

        # Patient and admin cancellations carry a refund
        if target == CANCELLED and ActorRole(actor.role) in (ActorRole.PATIENT, ActorRole.ADMIN):
            appointment, _, _ = self.cancel(appointment_id, actor, reason)
            return appointment

        with self._unit_of_work():
            normalize_appointment_sessions(appointment)
            self._check_guards(appointment, target, actor)
            self._apply_transition(appointment, current, target, actor, reason, meta)
        return appointment

    def assign_therapist(self, appointment_id: int, therapist_id: int, actor: Actor) -> Appointment:
        """Admin matching: attach a therapist and hand the appointment over for acceptance"""
        if ActorRole(actor.role) != ActorRole.ADMIN:
            raise ActorNotPermitted("Only admins can assign therapists")
        appointment = self.get_appointment(appointment_id)

        therapist = self.repo.get_user(self.db, therapist_id)
        if not therapist or therapist.role != "therapist":
            raise NotFoundError(f"Therapist {therapist_id} not found")
        if therapist_id in (appointment.old_therapies or []):
            raise TransitionGuardFailed(
                MATCHED_PENDING_THERAPIST_ACCEPTANCE,
                f"Therapist {therapist_id} already declined this appointment",
            )
        if canonical_status(appointment.status) != PENDING_MATCH:
            raise TransitionGuardFailed(
                MATCHED_PENDING_THERAPIST_ACCEPTANCE, "Only appointments awaiting a match can be assigned"
            )

        reason = f"Matched with therapist {therapist_id}"
        current, target = validate_transition(
            appointment.status, MATCHED_PENDING_THERAPIST_ACCEPTANCE, actor, reason
        )
        with self._unit_of_work():
            appointment.therapist_id = therapist_id
            self._apply_transition(
                appointment, current, target, actor, reason, {"therapistId": therapist_id}
            )
        return appointment

    # ========================================================================
    # CANCELLATION
    # ========================================================================

    def cancellation_fraction(
        self,
        appointment: Appointment,
        actor: Actor,
        charge_fraction: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> float:
        """Full refund outside the free-cancellation window, partial inside it"""
        if charge_fraction is not None:
            if ActorRole(actor.role) != ActorRole.ADMIN:
                raise ActorNotPermitted("Only admins can set a custom cancellation charge")
            return charge_fraction
        if appointment.date is None:
            return FULL_REFUND
        now = now or utcnow()
        hours_until = (appointment.date - now).total_seconds() / 3600
        if hours_until >= FREE_CANCELLATION_HOURS:
            return FULL_REFUND
        return LATE_CANCELLATION_CHARGE

    def cancel(
        self,
        appointment_id: int,
        actor: Actor,
        reason: Optional[str] = None,
        charge_fraction: Optional[float] = None,
    ) -> tuple[Appointment, float, float]:
        """
        Cancel and refund the unused sessions in one transaction.

        Returns (appointment, charge_fraction, refund_amount). Raises
        PaymentVerificationError when the provider cannot be consulted, rather
        than cancelling a possibly-paid appointment without its refund.
        """
        if ActorRole(actor.role) == ActorRole.THERAPIST:
            raise ActorNotPermitted("Therapists decline appointments through a status transition")

        appointment = self.get_appointment(appointment_id, actor)
        current, target = validate_transition(appointment.status, CANCELLED, actor, reason)
        fraction = self.cancellation_fraction(appointment, actor, charge_fraction)

        state = self.reconciler.reconcile(appointment)
        if state.is_error:
            raise PaymentVerificationError(
                f"Could not verify payment for appointment {appointment.id}; cancellation not applied"
            )

        refund_amount = 0.0
        with self._unit_of_work():
            normalize_appointment_sessions(appointment)
            record_verification(appointment, state)
            self._apply_transition(
                appointment,
                current,
                target,
                actor,
                reason,
                {"chargeFraction": fraction, "paymentStatus": state.payment_status},
            )
            if state.is_paid and fraction > 0:
                if fraction == FULL_REFUND:
                    policy = "full"
                elif fraction == LATE_CANCELLATION_CHARGE:
                    policy = "late"
                else:
                    policy = f"custom-{fraction:g}"
                refund_amount = self.balance.refund(appointment, fraction, policy, commit=False)

        logger.info(
            f"❌ Appointment {appointment.id} cancelled by {ActorRole(actor.role).value}, "
            f"refund {refund_amount:.2f}"
        )
        return appointment, fraction, refund_amount

    # ========================================================================
    # RESCHEDULING
    # ========================================================================

    def reschedule(
        self,
        appointment_id: int,
        actor: Actor,
        new_date: datetime,
        reason: Optional[str] = None,
    ) -> Appointment:
        """
        Move a confirmed appointment to a new slot.

        A slot on the current day costs the same-day surcharge, spent from the
        patient's balance; InsufficientBalance aborts the whole reschedule.
        The appointment re-enters ``confirmed`` when a therapist is still
        assigned, otherwise ``pending_match``.
        """
        appointment = self.get_appointment(appointment_id, actor)
        new_date = to_naive_utc(new_date)
        now = utcnow()
        if new_date <= now:
            raise TransitionGuardFailed(RESCHEDULED, "The new date must be in the future")

        current, target = validate_transition(appointment.status, RESCHEDULED, actor, reason)

        with self._unit_of_work():
            normalize_appointment_sessions(appointment)
            previous_date = appointment.date
            self._apply_transition(
                appointment,
                current,
                target,
                actor,
                reason,
                {
                    "previousDate": previous_date.isoformat() if previous_date else None,
                    "newDate": new_date.isoformat(),
                },
            )

            is_same_day = new_date.date() == now.date()
            surcharge = 0.0
            if is_same_day:
                surcharge = same_day_surcharge(appointment.price, appointment.total_sessions)
                if surcharge > 0:
                    self.balance.use(
                        appointment.patient_id,
                        surcharge,
                        f"Same-day reschedule surcharge for appointment {appointment.id}",
                        appointment_id=appointment.id,
                        surcharge=surcharge,
                        commit=False,
                    )

            appointment.date = new_date
            appointment.is_rescheduled = True
            appointment.is_same_day_booking = is_same_day
            appointment.same_day_surcharge = surcharge

            system = Actor.system()
            re_entry = CONFIRMED if appointment.therapist_id else PENDING_MATCH
            current, target = validate_transition(RESCHEDULED, re_entry, system)
            self._apply_transition(
                appointment, current, target, system, "Rescheduled appointment re-entered the schedule", None
            )
        return appointment

    def reschedule_session(
        self, appointment_id: int, index: int, actor: Actor, new_date: datetime
    ) -> Appointment:
        """Replace the date of one recurring session; its status and payment stay as they are"""
        if ActorRole(actor.role) not in (ActorRole.THERAPIST, ActorRole.ADMIN):
            raise ActorNotPermitted("Only the assigned therapist or an admin can move a session")
        appointment = self.get_appointment(appointment_id, actor)
        date = normalize_session_date(new_date)

        with self._unit_of_work():
            result = normalize_appointment_sessions(appointment)
            sessions = [dict(s) for s in result.sessions]
            session = find_session(sessions, index)
            if session is None:
                raise NotFoundError(f"Session {index} not found on appointment {appointment.id}")
            if session.get("status") == SESSION_COMPLETED:
                raise TransitionGuardFailed(RESCHEDULED, "Completed sessions cannot be rescheduled")
            session["date"] = date
            appointment.recurring = sessions
        logger.info(f"📆 Appointment {appointment.id} session {index} moved to {date}")
        return appointment

    # ========================================================================
    # SESSION COMPLETION AND SETTLEMENT FLAGS
    # ========================================================================

    def complete_session(
        self, appointment_id: int, actor: Actor, index: Optional[int] = None
    ) -> Appointment:
        """
        Mark one session completed (``index=None`` is the main session).

        Completion never goes backwards. Once every session of the plan is
        completed the appointment itself transitions to ``completed``.
        """
        role = ActorRole(actor.role)
        if role not in (ActorRole.THERAPIST, ActorRole.ADMIN):
            raise ActorNotPermitted("Only the assigned therapist or an admin can complete sessions")
        appointment = self.get_appointment(appointment_id, actor)
        if canonical_status(appointment.status) != CONFIRMED:
            raise TransitionGuardFailed(
                COMPLETED, "Sessions can only be completed on a confirmed appointment"
            )
        self._require_verified_payment(appointment)

        with self._unit_of_work():
            result = normalize_appointment_sessions(appointment)
            sessions = [dict(s) for s in result.sessions]

            if index is None:
                if appointment.payout_status == MAIN_UNPAID:
                    appointment.payout_status = MAIN_PENDING_PAYOUT
            else:
                session = find_session(sessions, index)
                if session is None:
                    raise NotFoundError(f"Session {index} not found on appointment {appointment.id}")
                session["status"] = SESSION_COMPLETED
                appointment.recurring = sessions

            main_done = 1 if appointment.payout_status in (MAIN_PENDING_PAYOUT, MAIN_PAID) else 0
            total = appointment.total_sessions or 1
            appointment.completed_sessions = max(
                appointment.completed_sessions or 0,
                min(main_done + count_completed(sessions), total),
            )
            logger.info(
                f"✅ Appointment {appointment.id} session {'main' if index is None else index} "
                f"completed ({appointment.completed_sessions}/{total})"
            )

            if appointment.completed_sessions >= total:
                reason = "All sessions completed"
                current, target = validate_transition(appointment.status, COMPLETED, actor, reason)
                self._apply_transition(appointment, current, target, actor, reason, None)
        return appointment

    def mark_sessions_paid(self, appointment_id: int, actor: Actor) -> int:
        """Admin bulk 'mark paid': every completed session becomes paid, nothing is downgraded"""
        if ActorRole(actor.role) != ActorRole.ADMIN:
            raise ActorNotPermitted("Only admins can mark sessions as paid")
        appointment = self.get_appointment(appointment_id)

        updated = 0
        with self._unit_of_work():
            result = normalize_appointment_sessions(appointment)
            sessions = [dict(s) for s in result.sessions]
            for session in sessions:
                if session.get("status") == SESSION_COMPLETED and session.get("payment") != PAYMENT_PAID:
                    session["payment"] = PAYMENT_PAID
                    updated += 1
            if appointment.payout_status == MAIN_PENDING_PAYOUT:
                appointment.payout_status = MAIN_PAID
                updated += 1
            if updated:
                appointment.recurring = sessions
        logger.info(f"💵 Appointment {appointment.id}: {updated} sessions marked paid")
        return updated

    # ========================================================================
    # SWEEPS (cron)
    # ========================================================================

    def expire_unpaid(self, now: Optional[datetime] = None) -> dict:
        """
        Cancel appointments whose start time passed without a verified payment.
        A lookup error leaves the appointment untouched for the next run.
        """
        now = to_naive_utc(now) if now else utcnow()
        summary = {"checked": 0, "expired": 0, "skipped_paid": 0, "skipped_error": 0}
        system = Actor.system()

        for appointment in self.repo.get_expirable(self.db, now):
            summary["checked"] += 1
            state = self.reconciler.reconcile(appointment)

            if state.is_error:
                summary["skipped_error"] += 1
                logger.warning(f"⚠️ Appointment {appointment.id}: payment lookup failed, not expiring")
                continue

            if state.is_paid:
                summary["skipped_paid"] += 1
                if record_verification(appointment, state):
                    self.db.commit()
                continue

            try:
                current, target = validate_transition(appointment.status, CANCELLED, system, EXPIRY_REASON)
                with self._unit_of_work():
                    self._apply_transition(
                        appointment, current, target, system, EXPIRY_REASON, {"expiredAt": now.isoformat()}
                    )
                summary["expired"] += 1
            except EngineError as e:
                logger.error(f"❌ Failed to expire appointment {appointment.id}: {e.message}")
                continue

        if summary["expired"]:
            logger.info(f"📊 Expiry summary: {summary}")
        return summary

    def repair_recurring(self) -> dict:
        """Batch repair of stored recurring lists; safe to run any number of times"""
        summary = {"found": 0, "updated": 0, "skippedInvalid": 0, "convertedToObjects": 0}
        with self._unit_of_work():
            for appointment in self.repo.get_with_recurring(self.db):
                if not appointment.recurring:
                    continue
                summary["found"] += 1
                result = normalize_appointment_sessions(appointment)
                summary["skippedInvalid"] += result.skipped_count
                summary["convertedToObjects"] += result.converted_count
                if result.changed:
                    summary["updated"] += 1
        logger.info(f"📊 Recurring repair summary: {summary}")
        return summary
