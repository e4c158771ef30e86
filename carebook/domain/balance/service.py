"""Balance service - Business logic for the session balance ledger

add/remove/use are the only mutation entry points. Each one is a single atomic
delta UPDATE plus an append-only history row, so the audit trail always agrees
with ``balance_amount``.
"""

import logging
import math
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import CURRENCY
from ...errors import DuplicatePayment, InsufficientBalance, LedgerValidationError
from ...models import Appointment, Balance
from .repository import BalanceRepository
from .schemas import PaymentRef

logger = logging.getLogger(__name__)

ACTION_ADDED = "added"
ACTION_REMOVED = "removed"
ACTION_USED = "used"

FULL_REFUND = 1.0


def _validate_amount(amount) -> float:
    if amount is None or not isinstance(amount, (int, float)) or isinstance(amount, bool):
        raise LedgerValidationError("Amount must be a number")
    if not math.isfinite(amount):
        raise LedgerValidationError("Amount must be a finite number")
    amount = round(float(amount), 2)
    if amount <= 0:
        raise LedgerValidationError("Amount must be greater than zero")
    return amount


def refund_payment_method(appointment: Appointment) -> str:
    if appointment.payment_method in ("stripe", "mixed", "balance"):
        return appointment.payment_method
    return "balance" if appointment.is_balance else "stripe"


def calculate_refund_amount(appointment: Appointment, charge_fraction: float) -> float:
    """
    Refund owed for the sessions the patient has not used yet.

    Card or mixed payments refund remaining_sessions * unit_price * fraction,
    pure balance payments refund price * fraction. Rounded to cents.
    """
    if charge_fraction < 0 or charge_fraction > 1:
        raise LedgerValidationError("Charge fraction must be between 0 and 1")

    price = appointment.price or 0
    if refund_payment_method(appointment) == "balance":
        return round(price * charge_fraction, 2)

    remaining = max((appointment.total_sessions or 1) - (appointment.completed_sessions or 0), 0)
    unit_price = appointment.unit_price if appointment.unit_price else price
    return round(remaining * unit_price * charge_fraction, 2)


def refund_reference_id(appointment_id: int, policy: str) -> str:
    return f"refund:{appointment_id}:{policy}"


class BalanceService:
    """Service layer for balance business logic"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = BalanceRepository()

    def get_balance(self, user_id: int) -> Optional[Balance]:
        return self.repo.get_by_user(self.db, user_id)

    def _finish(self, balance: Balance, commit: bool) -> Balance:
        if commit:
            self.db.commit()
        self.db.refresh(balance)
        return balance

    def add(
        self,
        user_id: int,
        amount: float,
        reason: str,
        payment_ref: Optional[PaymentRef],
        admin_id: Optional[int] = None,
        commit: bool = True,
    ) -> Balance:
        """
        Credit a balance against an external payment (or an explicit admin override).

        Raises DuplicatePayment when ``payment_ref.id`` was already credited;
        callers treat that as an idempotent success.
        """
        amount = _validate_amount(amount)
        if payment_ref is None or not payment_ref.id:
            raise LedgerValidationError("A payment reference is required to add balance")

        if self.repo.payment_exists(self.db, payment_ref.id):
            logger.info(f"🔄 Payment {payment_ref.id} already credited, skipping")
            raise DuplicatePayment(payment_ref.id)

        balance = self.repo.get_or_create(self.db, user_id)
        try:
            self.repo.add_payment(
                self.db,
                balance.id,
                payment_id=payment_ref.id,
                amount=payment_ref.amount if payment_ref.amount is not None else amount,
                currency=(payment_ref.currency or CURRENCY).upper(),
                sessions_added=payment_ref.sessionsAdded or 0,
                payment_type=payment_ref.paymentType,
            )
        except IntegrityError:
            # A concurrent request credited the same payment first
            self.db.rollback()
            logger.info(f"🔄 Payment {payment_ref.id} credited concurrently, skipping")
            raise DuplicatePayment(payment_ref.id) from None

        self.repo.increment(self.db, balance.id, amount, sessions=payment_ref.sessionsAdded or 0)
        self.repo.add_history(
            self.db, balance.id, ACTION_ADDED, amount, reason=reason, admin_id=admin_id
        )
        logger.info(f"✅ Added {amount:.2f} {CURRENCY} to balance of user {user_id} ({payment_ref.id})")
        return self._finish(balance, commit)

    def remove(
        self,
        user_id: int,
        amount: float,
        reason: str,
        admin_id: Optional[int] = None,
        commit: bool = True,
    ) -> Balance:
        return self._debit(user_id, amount, reason, ACTION_REMOVED, admin_id=admin_id, commit=commit)

    def use(
        self,
        user_id: int,
        amount: float,
        reason: str,
        appointment_id: Optional[int] = None,
        surcharge: float = 0,
        commit: bool = True,
    ) -> Balance:
        """Spend balance on a session or a surcharge"""
        return self._debit(
            user_id,
            amount,
            reason,
            ACTION_USED,
            appointment_id=appointment_id,
            surcharge=surcharge,
            commit=commit,
        )

    def _debit(
        self,
        user_id: int,
        amount: float,
        reason: str,
        action: str,
        admin_id: Optional[int] = None,
        appointment_id: Optional[int] = None,
        surcharge: float = 0,
        commit: bool = True,
    ) -> Balance:
        amount = _validate_amount(amount)
        balance = self.repo.get_or_create(self.db, user_id)

        if not self.repo.decrement_if_available(self.db, balance.id, amount):
            self.db.refresh(balance)
            logger.warning(
                f"⚠️ Insufficient balance for user {user_id}: "
                f"requested {amount:.2f}, available {balance.balance_amount:.2f}"
            )
            raise InsufficientBalance(requested=amount, available=balance.balance_amount)

        self.repo.add_history(
            self.db,
            balance.id,
            action,
            amount,
            reason=reason,
            admin_id=admin_id,
            appointment_id=appointment_id,
            surcharge=surcharge,
        )
        logger.info(f"💸 Balance {action} {amount:.2f} {CURRENCY} for user {user_id}")
        return self._finish(balance, commit)

    def refund(
        self,
        appointment: Appointment,
        charge_fraction: float,
        policy: str,
        commit: bool = True,
    ) -> float:
        """
        Credit the patient for an appointment's unused sessions.

        The payment reference ``refund:{appointment_id}:{policy}`` makes a
        replayed cancellation credit at most once. Returns the credited amount
        (0 when nothing is owed or the refund was already applied).
        """
        amount = calculate_refund_amount(appointment, charge_fraction)
        if amount <= 0:
            logger.info(f"ℹ️ No refund owed for appointment {appointment.id}")
            return 0.0

        reference_id = refund_reference_id(appointment.id, policy)
        if self.repo.payment_exists(self.db, reference_id):
            logger.info(f"🔄 Refund {reference_id} already applied, skipping")
            return 0.0

        method = refund_payment_method(appointment)
        payment_ref = PaymentRef(
            id=reference_id,
            amount=amount,
            currency=CURRENCY,
            paymentType="refund",
        )
        reason = (
            f"Refund for appointment {appointment.id} "
            f"({method}, {int(round(charge_fraction * 100))}% of unused value)"
        )
        self.add(appointment.patient_id, amount, reason, payment_ref, commit=commit)
        logger.info(f"💰 Refunded {amount:.2f} {CURRENCY} for appointment {appointment.id}")
        return amount

    def repair_negative_balances(self) -> dict:
        """Clamp legacy spent_sessions so remaining sessions never go negative"""
        summary = {"found": 0, "repaired": 0}
        try:
            for balance in self.repo.get_overspent(self.db):
                summary["found"] += 1
                logger.warning(
                    f"⚠️ Balance {balance.id} overspent: "
                    f"spent {balance.spent_sessions} > total {balance.total_sessions}"
                )
                if self.repo.clamp_spent_sessions(self.db, balance.id):
                    summary["repaired"] += 1
            if summary["repaired"]:
                self.db.commit()
                logger.info(f"📊 Balance repair summary: {summary}")
            return summary
        except Exception as e:
            logger.error(f"❌ Error repairing balances: {str(e)}")
            self.db.rollback()
            raise
