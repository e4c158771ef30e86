"""Engine error taxonomy

Every error the engine raises on purpose derives from EngineError and carries a
stable ``code`` plus the structured fields a caller needs to render a precise
message. main.py maps each class to an HTTP status.
"""

from typing import Optional


class EngineError(Exception):
    code = "engine_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class NotFoundError(EngineError):
    code = "not_found"
    status_code = 404


class InvalidTransition(EngineError):
    """Requested status is not reachable from the current status for this actor"""

    code = "invalid_transition"

    def __init__(self, current: str, attempted: str, allowed: list[str], role: Optional[str] = None):
        self.current = current
        self.attempted = attempted
        self.allowed = sorted(allowed)
        self.role = role
        who = f" for {role}" if role else ""
        super().__init__(
            f"Cannot transition from '{current}' to '{attempted}'{who}. "
            f"Allowed: {', '.join(self.allowed) or 'none'}"
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update(
            {
                "current": self.current,
                "attempted": self.attempted,
                "allowed": self.allowed,
                "role": self.role,
            }
        )
        return data


class ActorNotPermitted(EngineError):
    code = "actor_not_permitted"
    status_code = 403


class TransitionGuardFailed(EngineError):
    """Transition is legal for the role but a business precondition is missing"""

    code = "transition_guard_failed"

    def __init__(self, target: str, message: str):
        self.target = target
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["target"] = self.target
        return data


class PaymentRequired(EngineError):
    code = "payment_required"
    status_code = 402


class PaymentVerificationError(EngineError):
    """The payment provider could not be consulted; the paid state is unknown"""

    code = "payment_verification_error"
    status_code = 503


class LedgerValidationError(EngineError):
    code = "ledger_validation_error"


class InsufficientBalance(EngineError):
    code = "insufficient_balance"

    def __init__(self, requested: float, available: float):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient balance: requested {requested:.2f}, available {available:.2f}"
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({"requested": self.requested, "available": self.available})
        return data


class DuplicatePayment(EngineError):
    """Payment reference already credited. Callers treat this as an idempotent success."""

    code = "duplicate_payment"
    status_code = 409

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment {payment_id} already credited")

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["paymentId"] = self.payment_id
        return data


class PayoutConflict(EngineError):
    code = "payout_conflict"
    status_code = 409

    def __init__(self, appointment_ids: list[int]):
        self.appointment_ids = appointment_ids
        super().__init__(f"Appointments already settled by another payout: {appointment_ids}")

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["appointmentIds"] = self.appointment_ids
        return data


class DataIntegrityWarning(UserWarning):
    """Malformed stored data skipped during normalization. Logged, never raised."""

    def __init__(self, message: str, index: Optional[int] = None, raw=None):
        super().__init__(message)
        self.message = message
        self.index = index
        self.raw = raw

    def to_dict(self) -> dict:
        return {"message": self.message, "index": self.index}
