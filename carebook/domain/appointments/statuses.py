"""
Appointment status machine

Canonical flow:
    unpaid → pending → pending_match → matched_pending_therapist_acceptance
    → pending_scheduling → confirmed → completed
Side branches: cancelled (any non-terminal), no-show (from confirmed),
rescheduled (from confirmed, re-enters confirmed or pending_match).

Legality is decided here only, per actor role. Historical status values are
mapped to the canonical set by ``canonical_status`` before any comparison.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ...errors import ActorNotPermitted, InvalidTransition, TransitionGuardFailed

UNPAID = "unpaid"
PENDING = "pending"
PENDING_MATCH = "pending_match"
MATCHED_PENDING_THERAPIST_ACCEPTANCE = "matched_pending_therapist_acceptance"
PENDING_SCHEDULING = "pending_scheduling"
CONFIRMED = "confirmed"
RESCHEDULED = "rescheduled"
COMPLETED = "completed"
CANCELLED = "cancelled"
NO_SHOW = "no-show"

CANONICAL_STATUSES = frozenset(
    {
        UNPAID,
        PENDING,
        PENDING_MATCH,
        MATCHED_PENDING_THERAPIST_ACCEPTANCE,
        PENDING_SCHEDULING,
        CONFIRMED,
        RESCHEDULED,
        COMPLETED,
        CANCELLED,
        NO_SHOW,
    }
)

TERMINAL_STATUSES = frozenset({COMPLETED, CANCELLED, NO_SHOW})

# Values written by earlier releases
LEGACY_STATUS_ALIASES = {
    "not_paid": UNPAID,
    "pending_approval": MATCHED_PENDING_THERAPIST_ACCEPTANCE,
    "approved": CONFIRMED,
    "upcoming": CONFIRMED,
    "in_progress": CONFIRMED,
    "rejected": CANCELLED,
    "completed_pending_validation": COMPLETED,
    "completed_validated": COMPLETED,
}


class ActorRole(str, Enum):
    PATIENT = "patient"
    THERAPIST = "therapist"
    ADMIN = "admin"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """Who is asking for a change. System actors (webhook, cron) have no id."""

    role: ActorRole
    id: Optional[str] = None

    @classmethod
    def system(cls) -> "Actor":
        return cls(role=ActorRole.SYSTEM)


# Webhook and cron driven moves, including re-entry after a reschedule
_SYSTEM_TRANSITIONS = {
    UNPAID: {PENDING, PENDING_MATCH, CANCELLED},
    PENDING: {PENDING_MATCH, UNPAID, CANCELLED},
    CONFIRMED: {CANCELLED},
    RESCHEDULED: {CONFIRMED, PENDING_MATCH, CANCELLED},
}

_THERAPIST_TRANSITIONS = {
    MATCHED_PENDING_THERAPIST_ACCEPTANCE: {PENDING_SCHEDULING, CANCELLED},
    PENDING_SCHEDULING: {CONFIRMED},
    RESCHEDULED: {CONFIRMED},
    CONFIRMED: {COMPLETED, NO_SHOW},
}


def canonical_status(value) -> Optional[str]:
    """Map a stored or requested status to the canonical set, None if unknown"""
    if not isinstance(value, str):
        return None
    key = value.strip().lower()
    if key in CANONICAL_STATUSES:
        return key
    return LEGACY_STATUS_ALIASES.get(key)


def stored_values(*canonical: str) -> list[str]:
    """Every stored value that maps onto one of ``canonical``, for SQL IN filters"""
    values = [status for status in canonical if status in CANONICAL_STATUSES]
    values += [legacy for legacy, target in LEGACY_STATUS_ALIASES.items() if target in canonical]
    return values


def allowed_transitions(current: str, role: ActorRole) -> frozenset:
    """Every target status ``role`` may request from ``current``"""
    current = canonical_status(current)
    if current is None:
        return frozenset()

    role = ActorRole(role)
    if role == ActorRole.ADMIN:
        return CANONICAL_STATUSES - {current}
    if current in TERMINAL_STATUSES:
        return frozenset()
    if role == ActorRole.PATIENT:
        targets = {CANCELLED}
        if current == CONFIRMED:
            targets.add(RESCHEDULED)
        return frozenset(targets)
    if role == ActorRole.THERAPIST:
        return frozenset(_THERAPIST_TRANSITIONS.get(current, ()))
    return frozenset(_SYSTEM_TRANSITIONS.get(current, ()))


def validate_transition(
    current: str, target: str, actor: Actor, reason: Optional[str] = None
) -> tuple[str, str]:
    """
    Check that ``actor`` may move an appointment from ``current`` to ``target``.

    Returns the canonical (current, target) pair. Raises InvalidTransition with
    the attempted and allowed values; the target is never coerced.
    """
    current_canonical = canonical_status(current)
    target_canonical = canonical_status(target)
    role = ActorRole(actor.role)

    allowed = allowed_transitions(current_canonical, role) if current_canonical else frozenset()
    if current_canonical is None or target_canonical is None or target_canonical not in allowed:
        raise InvalidTransition(
            current=str(current),
            attempted=str(target),
            allowed=list(allowed),
            role=role.value,
        )

    if role == ActorRole.ADMIN and not (reason and reason.strip()):
        raise TransitionGuardFailed(target_canonical, "A reason is required for admin status overrides")

    return current_canonical, target_canonical


def check_ownership(appointment, actor: Actor) -> None:
    """Patients act on their own appointments, therapists on assigned ones"""
    role = ActorRole(actor.role)
    if role in (ActorRole.ADMIN, ActorRole.SYSTEM):
        return
    if role == ActorRole.PATIENT:
        if actor.id is None or str(appointment.patient_id) != str(actor.id):
            raise ActorNotPermitted("You can only modify your own appointments")
        return
    if appointment.therapist_id is None or str(appointment.therapist_id) != str(actor.id):
        raise ActorNotPermitted("You can only modify appointments assigned to you")
