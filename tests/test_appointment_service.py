from datetime import timedelta

import pytest

from carebook.domain.appointments.schemas import AppointmentCreate
from carebook.domain.appointments.service import EXPIRY_REASON, AppointmentService, same_day_surcharge
from carebook.domain.appointments.statuses import Actor, ActorRole
from carebook.domain.balance.schemas import PaymentRef
from carebook.domain.balance.service import BalanceService
from carebook.errors import (
    ActorNotPermitted,
    EngineError,
    InsufficientBalance,
    InvalidTransition,
    NotFoundError,
    PaymentRequired,
    PaymentVerificationError,
    TransitionGuardFailed,
)
from carebook.models import AppointmentStatusHistory, Balance
from carebook.shared.timeutils import utcnow


def as_actor(user, role=None) -> Actor:
    return Actor(ActorRole(role or user.role), str(user.id))


@pytest.fixture
def admin(make_user):
    return make_user("admin")


@pytest.fixture
def service(db, provider, dispatcher):
    return AppointmentService(db, provider, dispatcher)


def credit(db, user_id, amount, payment_id):
    BalanceService(db).add(user_id, amount, "Top-up", PaymentRef(id=payment_id, amount=amount))


class TestBooking:
    def test_patient_books_for_themselves(self, service, patient):
        data = AppointmentCreate(
            price=300,
            unitPrice=100,
            totalSessions=3,
            date=utcnow() + timedelta(days=2),
            sessionDates=[utcnow() + timedelta(days=9), utcnow() + timedelta(days=16)],
            checkoutSessionId="cs_new",
        )
        appointment = service.create_appointment(data, as_actor(patient))

        assert appointment.status == "unpaid"
        assert appointment.patient_id == patient.id
        assert [s["index"] for s in appointment.recurring] == [0, 1]
        assert appointment.is_same_day_booking is False

    def test_too_many_follow_up_dates(self, service, patient):
        data = AppointmentCreate(price=100, totalSessions=1, sessionDates=[utcnow() + timedelta(days=9)])
        with pytest.raises(EngineError):
            service.create_appointment(data, as_actor(patient))

    def test_therapists_cannot_book(self, service, therapist):
        with pytest.raises(ActorNotPermitted):
            service.create_appointment(AppointmentCreate(price=100), as_actor(therapist))


class TestPaymentConfirmation:
    def test_paid_checkout_moves_to_matching(self, db, service, provider, dispatcher, make_appointment):
        provider.add_paid_checkout("cs_ok")
        appointment = make_appointment()

        service.confirm_payment(appointment.id, checkout_session_id="cs_ok")

        db.refresh(appointment)
        assert appointment.status == "pending_match"
        assert appointment.payment_status == "completed"
        assert appointment.is_stripe_verified is True
        assert appointment.checkout_session_id == "cs_ok"
        history = db.query(AppointmentStatusHistory).filter_by(appointment_id=appointment.id).all()
        assert [(h.from_status, h.to_status, h.actor_role) for h in history] == [
            ("unpaid", "pending_match", "system")
        ]
        assert [e.to_status for e in dispatcher.events] == ["pending_match"]

    def test_replayed_confirmation_is_a_no_op(self, db, service, provider, dispatcher, make_appointment):
        provider.add_paid_checkout("cs_twice")
        appointment = make_appointment()

        service.confirm_payment(appointment.id, checkout_session_id="cs_twice")
        service.confirm_payment(appointment.id, checkout_session_id="cs_twice")

        assert db.query(AppointmentStatusHistory).filter_by(appointment_id=appointment.id).count() == 1
        assert len(dispatcher.events) == 1

    def test_provider_outage_leaves_appointment_untouched(self, db, service, provider, dispatcher, make_appointment):
        provider.failing.add("cs_down")
        appointment = make_appointment()

        with pytest.raises(PaymentVerificationError):
            service.confirm_payment(appointment.id, checkout_session_id="cs_down")

        db.refresh(appointment)
        assert appointment.status == "unpaid"
        assert appointment.checkout_session_id is None
        assert dispatcher.events == []

    def test_pay_with_balance(self, db, service, patient, make_appointment):
        credit(db, patient.id, 500, "pi_funds")
        appointment = make_appointment(price=300)

        service.pay_with_balance(appointment.id, as_actor(patient))

        db.refresh(appointment)
        assert appointment.status == "pending_match"
        assert appointment.is_balance is True
        assert appointment.payment_status == "completed"
        assert BalanceService(db).get_balance(patient.id).balance_amount == 200

    def test_pay_with_insufficient_balance_changes_nothing(self, db, service, patient, make_appointment):
        credit(db, patient.id, 100, "pi_small")
        appointment = make_appointment(price=300)

        with pytest.raises(InsufficientBalance):
            service.pay_with_balance(appointment.id, as_actor(patient))

        db.refresh(appointment)
        assert appointment.status == "unpaid"
        assert appointment.is_balance is False
        assert BalanceService(db).get_balance(patient.id).balance_amount == 100


class TestLifecycle:
    def test_match_accept_schedule_complete(self, db, service, patient, therapist, admin, make_appointment):
        appointment = make_appointment(status="pending_match", is_balance=True, payment_method="balance")

        service.assign_therapist(appointment.id, therapist.id, as_actor(admin))
        service.transition(appointment.id, "pending_scheduling", as_actor(therapist))
        service.transition(appointment.id, "confirmed", as_actor(therapist))
        service.transition(appointment.id, "completed", as_actor(therapist))

        db.refresh(appointment)
        assert appointment.status == "completed"
        assert appointment.completed_sessions == 1
        assert appointment.payout_status == "pending_payout"
        db.refresh(therapist)
        assert therapist.completed_sessions == 1

        statuses = [h.to_status for h in service.get_status_history(appointment.id, as_actor(admin))]
        assert statuses == ["matched_pending_therapist_acceptance", "pending_scheduling", "confirmed", "completed"]

    def test_completion_requires_verified_payment(self, db, service, therapist, make_appointment):
        appointment = make_appointment(status="confirmed", therapist_id=therapist.id)

        with pytest.raises(PaymentRequired):
            service.transition(appointment.id, "completed", as_actor(therapist))

        db.refresh(appointment)
        assert appointment.status == "confirmed"

    def test_completion_refuses_on_provider_error(self, service, provider, therapist, make_appointment):
        provider.failing.add("cs_err")
        appointment = make_appointment(status="confirmed", therapist_id=therapist.id, checkout_session_id="cs_err")

        with pytest.raises(PaymentVerificationError):
            service.transition(appointment.id, "completed", as_actor(therapist))

    def test_confirm_requires_a_date(self, service, therapist, make_appointment):
        appointment = make_appointment(status="pending_scheduling", therapist_id=therapist.id, date=None)
        with pytest.raises(TransitionGuardFailed):
            service.transition(appointment.id, "confirmed", as_actor(therapist))

    def test_therapist_promoted_at_threshold(self, db, service, make_user, make_appointment):
        senior = make_user("therapist", completed_sessions=11)
        appointment = make_appointment(
            status="confirmed", therapist_id=senior.id, is_balance=True, payment_method="balance"
        )

        service.transition(appointment.id, "completed", as_actor(senior))

        db.refresh(senior)
        assert senior.completed_sessions == 12
        assert senior.level == 2

    def test_therapist_rejection_unassigns(self, db, service, therapist, make_appointment):
        appointment = make_appointment(status="matched_pending_therapist_acceptance", therapist_id=therapist.id)

        service.transition(appointment.id, "cancelled", as_actor(therapist), reason="Schedule full")

        db.refresh(appointment)
        assert appointment.status == "cancelled"
        assert appointment.therapist_id is None
        assert appointment.decline_comment == "Schedule full"
        assert appointment.old_therapies == [therapist.id]

    def test_declined_therapist_cannot_be_reassigned(self, service, therapist, admin, make_appointment):
        appointment = make_appointment(status="pending_match", old_therapies=[therapist.id])
        with pytest.raises(TransitionGuardFailed):
            service.assign_therapist(appointment.id, therapist.id, as_actor(admin))

    def test_patient_cannot_skip_ahead(self, service, patient, make_appointment):
        appointment = make_appointment(status="pending_match")
        with pytest.raises(InvalidTransition) as exc_info:
            service.transition(appointment.id, "confirmed", as_actor(patient))
        assert exc_info.value.allowed == ["cancelled"]

    def test_other_patients_are_refused(self, service, make_user, make_appointment):
        stranger = make_user("patient")
        appointment = make_appointment(status="confirmed")
        with pytest.raises(ActorNotPermitted):
            service.transition(appointment.id, "cancelled", as_actor(stranger))

    def test_admin_override_is_recorded(self, db, service, admin, make_appointment):
        appointment = make_appointment(status="cancelled")

        service.transition(appointment.id, "confirmed", as_actor(admin), reason="Cancelled by mistake")

        db.refresh(appointment)
        assert appointment.status == "confirmed"
        assert appointment.last_status_change_reason == "Cancelled by mistake"
        assert appointment.last_status_changed_by == str(admin.id)

    def test_legacy_status_is_read_through_aliases(self, db, service, therapist, make_appointment):
        appointment = make_appointment(
            status="approved", therapist_id=therapist.id, is_balance=True, payment_method="balance"
        )
        service.transition(appointment.id, "completed", as_actor(therapist))
        db.refresh(appointment)
        assert appointment.status == "completed"

    def test_missing_appointment(self, service, admin):
        with pytest.raises(NotFoundError):
            service.transition(999, "cancelled", as_actor(admin), reason="gone")


class TestCancellation:
    def test_late_cancellation_refunds_half_of_unused_sessions(self, db, service, provider, patient, make_appointment):
        provider.add_paid_checkout("cs_paid")
        appointment = make_appointment(
            status="confirmed",
            price=300,
            unit_price=100,
            total_sessions=3,
            completed_sessions=1,
            payment_method="stripe",
            checkout_session_id="cs_paid",
            date=utcnow() + timedelta(hours=5),
        )

        _, fraction, refund = service.cancel(appointment.id, as_actor(patient), reason="Sick")

        assert fraction == 0.5
        assert refund == 100.00
        balance = BalanceService(db).get_balance(patient.id)
        assert balance.balance_amount == 100.00
        db.refresh(appointment)
        assert appointment.status == "cancelled"
        assert appointment.reason == "Sick"

    def test_early_cancellation_refunds_everything_unused(self, service, provider, patient, make_appointment):
        provider.add_paid_checkout("cs_early")
        appointment = make_appointment(
            status="pending_match",
            price=300,
            unit_price=100,
            total_sessions=3,
            payment_method="stripe",
            checkout_session_id="cs_early",
            date=utcnow() + timedelta(days=3),
        )

        _, fraction, refund = service.cancel(appointment.id, as_actor(patient))

        assert fraction == 1.0
        assert refund == 300.00

    def test_unpaid_cancellation_refunds_nothing(self, db, service, patient, make_appointment):
        appointment = make_appointment(status="unpaid")
        _, _, refund = service.cancel(appointment.id, as_actor(patient))
        assert refund == 0
        assert BalanceService(db).get_balance(patient.id) is None

    def test_provider_error_refuses_cancellation(self, db, service, provider, patient, make_appointment):
        provider.failing.add("cs_flaky")
        appointment = make_appointment(status="confirmed", checkout_session_id="cs_flaky")

        with pytest.raises(PaymentVerificationError):
            service.cancel(appointment.id, as_actor(patient))

        db.refresh(appointment)
        assert appointment.status == "confirmed"

    def test_failed_refund_rolls_back_the_status_flip(self, db, service, patient, make_appointment, monkeypatch):
        appointment = make_appointment(status="confirmed", is_balance=True, payment_method="balance")

        def broken_refund(*args, **kwargs):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(service.balance, "refund", broken_refund)

        with pytest.raises(RuntimeError):
            service.cancel(appointment.id, as_actor(patient))

        db.refresh(appointment)
        assert appointment.status == "confirmed"
        assert db.query(AppointmentStatusHistory).count() == 0

    def test_transition_to_cancelled_goes_through_refund(self, db, service, patient, make_appointment):
        appointment = make_appointment(status="pending_match", is_balance=True, payment_method="balance", price=200)

        service.transition(appointment.id, "cancelled", as_actor(patient))

        assert BalanceService(db).get_balance(patient.id).balance_amount == 200

    def test_admin_sets_a_custom_fraction(self, service, admin, make_appointment):
        appointment = make_appointment(status="confirmed", is_balance=True, payment_method="balance", price=200)
        _, fraction, refund = service.cancel(appointment.id, as_actor(admin), "Goodwill", charge_fraction=0.25)
        assert fraction == 0.25
        assert refund == 50.00

    def test_patient_cannot_set_a_fraction(self, service, patient, make_appointment):
        appointment = make_appointment(status="confirmed")
        with pytest.raises(ActorNotPermitted):
            service.cancel(appointment.id, as_actor(patient), charge_fraction=1.0)


class TestReschedule:
    def test_reschedule_reenters_confirmed(self, db, service, patient, therapist, make_appointment):
        appointment = make_appointment(status="confirmed", therapist_id=therapist.id)
        new_date = utcnow() + timedelta(days=10)

        service.reschedule(appointment.id, as_actor(patient), new_date)

        db.refresh(appointment)
        assert appointment.status == "confirmed"
        assert appointment.is_rescheduled is True
        assert appointment.date == new_date
        statuses = [h.to_status for h in appointment.status_history]
        assert statuses == ["rescheduled", "confirmed"]

    def test_reschedule_without_therapist_goes_back_to_matching(self, db, service, patient, make_appointment):
        appointment = make_appointment(status="confirmed")
        service.reschedule(appointment.id, as_actor(patient), utcnow() + timedelta(days=10))
        db.refresh(appointment)
        assert appointment.status == "pending_match"

    def test_same_day_reschedule_charges_surcharge(self, db, service, patient, therapist, make_appointment):
        credit(db, patient.id, 500, "pi_surcharge")
        appointment = make_appointment(status="confirmed", therapist_id=therapist.id, price=300, total_sessions=3)
        surcharge = same_day_surcharge(300, 3)

        service.reschedule(appointment.id, as_actor(patient), utcnow() + timedelta(minutes=5))

        db.refresh(appointment)
        assert surcharge == 64.00
        assert appointment.same_day_surcharge == surcharge
        assert appointment.is_same_day_booking is True
        assert BalanceService(db).get_balance(patient.id).balance_amount == 436.00

    def test_unfunded_surcharge_aborts_reschedule(self, db, service, patient, therapist, make_appointment):
        original_date = utcnow() + timedelta(days=3)
        appointment = make_appointment(
            status="confirmed", therapist_id=therapist.id, price=300, total_sessions=3, date=original_date
        )

        with pytest.raises(InsufficientBalance):
            service.reschedule(appointment.id, as_actor(patient), utcnow() + timedelta(minutes=5))

        db.refresh(appointment)
        assert appointment.status == "confirmed"
        assert appointment.date == original_date
        assert appointment.status_history == []

    def test_past_dates_are_rejected(self, service, patient, make_appointment):
        appointment = make_appointment(status="confirmed")
        with pytest.raises(TransitionGuardFailed):
            service.reschedule(appointment.id, as_actor(patient), utcnow() - timedelta(hours=1))

    def test_bare_reschedule_transition_is_refused(self, service, patient, make_appointment):
        appointment = make_appointment(status="confirmed")
        with pytest.raises(TransitionGuardFailed):
            service.transition(appointment.id, "rescheduled", as_actor(patient))


class TestSessions:
    @pytest.fixture
    def plan(self, make_appointment, therapist):
        return make_appointment(
            status="confirmed",
            therapist_id=therapist.id,
            is_balance=True,
            payment_method="balance",
            price=300,
            total_sessions=3,
            recurring=["2025-03-08T10:00:00Z", {str(i): c for i, c in enumerate("2025-03-15T10:00:00Z")}],
        )

    def test_completing_every_session_completes_the_plan(self, db, service, therapist, plan):
        actor = as_actor(therapist)

        service.complete_session(plan.id, actor)
        service.complete_session(plan.id, actor, index=0)
        db.refresh(plan)
        assert plan.status == "confirmed"
        assert plan.completed_sessions == 2
        assert plan.recurring[0]["status"] == "completed"
        assert plan.recurring[1]["date"] == "2025-03-15T10:00:00.000Z"

        service.complete_session(plan.id, actor, index=1)
        db.refresh(plan)
        assert plan.status == "completed"
        assert plan.completed_sessions == 3

    def test_completion_is_idempotent(self, db, service, therapist, plan):
        service.complete_session(plan.id, as_actor(therapist), index=0)
        service.complete_session(plan.id, as_actor(therapist), index=0)
        db.refresh(plan)
        assert plan.completed_sessions == 1

    def test_unknown_session_index(self, service, therapist, plan):
        with pytest.raises(NotFoundError):
            service.complete_session(plan.id, as_actor(therapist), index=7)

    def test_patients_cannot_complete_sessions(self, service, patient, plan):
        with pytest.raises(ActorNotPermitted):
            service.complete_session(plan.id, as_actor(patient), index=0)

    def test_reschedule_session_keeps_status(self, db, service, therapist, plan):
        service.complete_session(plan.id, as_actor(therapist), index=0)

        service.reschedule_session(plan.id, 1, as_actor(therapist), utcnow() + timedelta(days=30))
        with pytest.raises(TransitionGuardFailed):
            service.reschedule_session(plan.id, 0, as_actor(therapist), utcnow() + timedelta(days=30))

        db.refresh(plan)
        assert plan.recurring[0]["status"] == "completed"
        assert plan.recurring[1]["status"] == "in_progress"

    def test_mark_sessions_paid_never_downgrades(self, db, service, therapist, admin, plan):
        service.complete_session(plan.id, as_actor(therapist))
        service.complete_session(plan.id, as_actor(therapist), index=0)

        updated = service.mark_sessions_paid(plan.id, as_actor(admin))

        db.refresh(plan)
        assert updated == 2
        assert plan.payout_status == "paid"
        assert plan.recurring[0]["payment"] == "paid"
        assert plan.recurring[1]["payment"] == "not_paid"
        assert service.mark_sessions_paid(plan.id, as_actor(admin)) == 0

    def test_only_admins_mark_paid(self, service, therapist, plan):
        with pytest.raises(ActorNotPermitted):
            service.mark_sessions_paid(plan.id, as_actor(therapist))


class TestExpiry:
    def test_expires_only_unpaid_past_appointments(self, db, service, provider, make_appointment):
        past = utcnow() - timedelta(hours=2)
        provider.add_paid_checkout("cs_paid_late")
        provider.failing.add("cs_unknown")

        unpaid = make_appointment(status="unpaid", date=past)
        paid = make_appointment(status="unpaid", date=past, checkout_session_id="cs_paid_late")
        unknown = make_appointment(status="unpaid", date=past, checkout_session_id="cs_unknown")
        future = make_appointment(status="unpaid", date=utcnow() + timedelta(days=1))

        summary = service.expire_unpaid()

        assert summary == {"checked": 3, "expired": 1, "skipped_paid": 1, "skipped_error": 1}
        for appointment in (unpaid, paid, unknown, future):
            db.refresh(appointment)
        assert unpaid.status == "cancelled"
        assert unpaid.last_status_change_reason == EXPIRY_REASON
        assert paid.status == "unpaid"
        assert paid.payment_status == "completed"
        assert unknown.status == "unpaid"
        assert future.status == "unpaid"

    def test_sweep_is_repeatable(self, service, make_appointment):
        make_appointment(status="unpaid", date=utcnow() - timedelta(hours=1))
        assert service.expire_unpaid()["expired"] == 1
        assert service.expire_unpaid()["checked"] == 0


class TestRecurringRepair:
    def test_batch_repair_counts(self, db, service, make_appointment):
        canonical = [{"date": "2025-03-01T10:00:00.000Z", "status": "in_progress", "payment": "not_paid", "index": 0}]
        make_appointment(status="confirmed", recurring=canonical)
        broken = make_appointment(
            status="confirmed",
            recurring=["2025-03-01T10:00:00Z", {str(i): c for i, c in enumerate("bad-date")}],
        )
        make_appointment(status="confirmed", recurring=[])

        summary = service.repair_recurring()

        assert summary == {"found": 2, "updated": 1, "skippedInvalid": 1, "convertedToObjects": 1}
        db.refresh(broken)
        assert broken.recurring == [
            {"date": "2025-03-01T10:00:00.000Z", "status": "in_progress", "payment": "not_paid", "index": 0}
        ]
        assert service.repair_recurring()["updated"] == 0


class TestReads:
    def test_listing_is_scoped_by_role(self, service, patient, therapist, admin, make_user, make_appointment):
        mine = make_appointment(therapist_id=therapist.id)
        make_appointment(patient_id=make_user("patient").id)

        assert [a.id for a in service.list_appointments(as_actor(patient))] == [mine.id]
        assert [a.id for a in service.list_appointments(as_actor(therapist))] == [mine.id]
        assert len(service.list_appointments(as_actor(admin))) == 2

    def test_allowed_transitions(self, service, patient, make_appointment):
        appointment = make_appointment(status="upcoming")
        current, allowed = service.get_allowed_transitions(appointment.id, as_actor(patient))
        assert current == "confirmed"
        assert allowed == ["cancelled", "rescheduled"]

    def test_payment_state_is_cached(self, db, service, provider, patient, make_appointment):
        provider.add_paid_checkout("cs_state")
        appointment = make_appointment(checkout_session_id="cs_state")

        state = service.get_payment_state(appointment.id, as_actor(patient))

        assert state.is_paid is True
        db.refresh(appointment)
        assert appointment.is_stripe_verified is True


def test_notification_failures_do_not_break_operations(db, provider, patient, make_appointment):
    from carebook.services.notifications import NotificationDispatcher

    dispatcher = NotificationDispatcher()

    def broken_listener(event):
        raise RuntimeError("smtp down")

    dispatcher.subscribe(broken_listener)
    service = AppointmentService(db, provider, dispatcher)
    appointment = make_appointment(status="confirmed")

    service.cancel(appointment.id, as_actor(patient))

    db.refresh(appointment)
    assert appointment.status == "cancelled"
    assert db.query(Balance).count() == 0
