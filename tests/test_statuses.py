import pytest

from carebook.domain.appointments.statuses import (
    CANCELLED,
    CANONICAL_STATUSES,
    COMPLETED,
    CONFIRMED,
    MATCHED_PENDING_THERAPIST_ACCEPTANCE,
    NO_SHOW,
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
    stored_values,
    validate_transition,
)
from carebook.errors import ActorNotPermitted, InvalidTransition, TransitionGuardFailed

PATIENT = Actor(ActorRole.PATIENT, "1")
THERAPIST = Actor(ActorRole.THERAPIST, "2")
ADMIN = Actor(ActorRole.ADMIN, "3")
SYSTEM = Actor.system()

OPEN_STATUSES = [UNPAID, PENDING, PENDING_MATCH, MATCHED_PENDING_THERAPIST_ACCEPTANCE, PENDING_SCHEDULING,
                 CONFIRMED, RESCHEDULED]

# Every (current, target) pair each non-admin role may request
EXPECTED_MOVES = {
    ActorRole.PATIENT: {(status, CANCELLED) for status in OPEN_STATUSES} | {(CONFIRMED, RESCHEDULED)},
    ActorRole.THERAPIST: {
        (MATCHED_PENDING_THERAPIST_ACCEPTANCE, PENDING_SCHEDULING),
        (MATCHED_PENDING_THERAPIST_ACCEPTANCE, CANCELLED),
        (PENDING_SCHEDULING, CONFIRMED),
        (RESCHEDULED, CONFIRMED),
        (CONFIRMED, COMPLETED),
        (CONFIRMED, NO_SHOW),
    },
    ActorRole.SYSTEM: {
        (UNPAID, PENDING),
        (UNPAID, PENDING_MATCH),
        (UNPAID, CANCELLED),
        (PENDING, PENDING_MATCH),
        (PENDING, UNPAID),
        (PENDING, CANCELLED),
        (CONFIRMED, CANCELLED),
        (RESCHEDULED, CONFIRMED),
        (RESCHEDULED, PENDING_MATCH),
        (RESCHEDULED, CANCELLED),
    },
}


def is_expected(current: str, role: ActorRole, target: str) -> bool:
    if role == ActorRole.ADMIN:
        return current != target
    return (current, target) in EXPECTED_MOVES[role]


class TestCanonicalStatus:
    @pytest.mark.parametrize(
        "legacy,expected",
        [
            ("not_paid", UNPAID),
            ("pending_approval", MATCHED_PENDING_THERAPIST_ACCEPTANCE),
            ("approved", CONFIRMED),
            ("upcoming", CONFIRMED),
            ("rejected", CANCELLED),
            ("completed_validated", COMPLETED),
            ("  Confirmed ", CONFIRMED),
        ],
    )
    def test_legacy_aliases_map_to_canonical(self, legacy, expected):
        assert canonical_status(legacy) == expected

    def test_unknown_values_are_not_coerced(self):
        assert canonical_status("archived") is None
        assert canonical_status(None) is None
        assert canonical_status(3) is None

    def test_stored_values_include_legacy_aliases(self):
        assert set(stored_values(COMPLETED)) == {COMPLETED, "completed_pending_validation", "completed_validated"}
        assert set(stored_values(UNPAID, CONFIRMED)) == {UNPAID, "not_paid", CONFIRMED, "approved", "upcoming",
                                                         "in_progress"}


class TestRoleTable:
    def test_therapist_accepts_and_rejects_a_match(self):
        allowed = allowed_transitions(MATCHED_PENDING_THERAPIST_ACCEPTANCE, ActorRole.THERAPIST)
        assert allowed == {PENDING_SCHEDULING, CANCELLED}

    def test_patient_can_cancel_or_reschedule_only(self):
        assert allowed_transitions(CONFIRMED, ActorRole.PATIENT) == {CANCELLED, RESCHEDULED}
        assert allowed_transitions(PENDING_MATCH, ActorRole.PATIENT) == {CANCELLED}

    def test_terminal_statuses_are_closed_to_non_admins(self):
        for role in (ActorRole.PATIENT, ActorRole.THERAPIST, ActorRole.SYSTEM):
            assert allowed_transitions(COMPLETED, role) == frozenset()
            assert allowed_transitions(CANCELLED, role) == frozenset()

    def test_admin_can_reach_every_other_status(self):
        assert allowed_transitions(COMPLETED, ActorRole.ADMIN) == CANONICAL_STATUSES - {COMPLETED}

    def test_system_moves_paid_appointments_to_matching(self):
        assert PENDING_MATCH in allowed_transitions(UNPAID, ActorRole.SYSTEM)


class TestFullTable:
    @pytest.mark.parametrize("target", sorted(CANONICAL_STATUSES))
    @pytest.mark.parametrize("role", list(ActorRole))
    @pytest.mark.parametrize("current", sorted(CANONICAL_STATUSES))
    def test_decision_matches_table(self, current, role, target):
        actor = Actor(role, None if role == ActorRole.SYSTEM else "1")
        reason = "Manual correction" if role == ActorRole.ADMIN else None

        if is_expected(current, role, target):
            assert validate_transition(current, target, actor, reason) == (current, target)
        else:
            with pytest.raises(InvalidTransition) as exc_info:
                validate_transition(current, target, actor, reason)
            assert exc_info.value.attempted == target
            assert sorted(exc_info.value.allowed) == sorted(
                s for s in CANONICAL_STATUSES if is_expected(current, role, s)
            )

    @pytest.mark.parametrize("role", [ActorRole.PATIENT, ActorRole.THERAPIST, ActorRole.SYSTEM])
    def test_no_show_is_terminal_for_non_admins(self, role):
        assert allowed_transitions(NO_SHOW, role) == frozenset()

    def test_system_re_enters_after_a_reschedule(self):
        assert validate_transition(RESCHEDULED, CONFIRMED, SYSTEM) == (RESCHEDULED, CONFIRMED)
        assert validate_transition(RESCHEDULED, PENDING_MATCH, SYSTEM) == (RESCHEDULED, PENDING_MATCH)


class TestValidateTransition:
    def test_returns_canonical_pair_for_legacy_input(self):
        assert validate_transition("approved", "completed", THERAPIST) == (CONFIRMED, COMPLETED)

    def test_invalid_transition_reports_attempted_and_allowed(self):
        with pytest.raises(InvalidTransition) as exc_info:
            validate_transition(UNPAID, COMPLETED, THERAPIST)

        error = exc_info.value
        assert error.current == UNPAID
        assert error.attempted == COMPLETED
        assert error.allowed == []
        assert error.to_dict()["code"] == "invalid_transition"

    def test_unknown_target_is_rejected_not_coerced(self):
        with pytest.raises(InvalidTransition) as exc_info:
            validate_transition(CONFIRMED, "done", PATIENT)
        assert exc_info.value.attempted == "done"
        assert exc_info.value.allowed == [CANCELLED, RESCHEDULED]

    def test_patient_cannot_complete(self):
        with pytest.raises(InvalidTransition):
            validate_transition(CONFIRMED, COMPLETED, PATIENT)

    def test_admin_override_needs_a_reason(self):
        with pytest.raises(TransitionGuardFailed):
            validate_transition(CANCELLED, CONFIRMED, ADMIN)
        assert validate_transition(CANCELLED, CONFIRMED, ADMIN, "Refund reversed") == (CANCELLED, CONFIRMED)

    def test_admin_cannot_target_the_current_status(self):
        with pytest.raises(InvalidTransition):
            validate_transition(CONFIRMED, CONFIRMED, ADMIN, "no-op")


class _Appointment:
    def __init__(self, patient_id, therapist_id=None):
        self.patient_id = patient_id
        self.therapist_id = therapist_id


class TestOwnership:
    def test_patient_owns_their_appointment(self):
        check_ownership(_Appointment(patient_id=1), PATIENT)

    def test_patient_cannot_touch_someone_elses(self):
        with pytest.raises(ActorNotPermitted):
            check_ownership(_Appointment(patient_id=9), PATIENT)

    def test_therapist_must_be_assigned(self):
        check_ownership(_Appointment(patient_id=1, therapist_id=2), THERAPIST)
        with pytest.raises(ActorNotPermitted):
            check_ownership(_Appointment(patient_id=1, therapist_id=None), THERAPIST)

    def test_admin_and_system_bypass_ownership(self):
        check_ownership(_Appointment(patient_id=9), ADMIN)
        check_ownership(_Appointment(patient_id=9), SYSTEM)
