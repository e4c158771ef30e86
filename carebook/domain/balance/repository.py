"""Balance repository - Database operations for the session balance ledger"""

from typing import Optional

from sqlalchemy import Numeric, cast, func
from sqlalchemy.orm import Session

from ...models import Balance, BalanceHistory, BalancePayment
from ...shared.timeutils import utcnow


def _cents(expression):
    """Round a money expression to cents in SQL so repeated deltas do not drift"""
    return func.round(cast(expression, Numeric), 2)


class BalanceRepository:
    """Repository for balance database operations. Flushes, never commits."""

    @staticmethod
    def get_by_user(db: Session, user_id: int) -> Optional[Balance]:
        return db.query(Balance).filter(Balance.user_id == user_id).first()

    @staticmethod
    def get_or_create(db: Session, user_id: int) -> Balance:
        """Balances are created lazily on the first balance-affecting action"""
        balance = db.query(Balance).filter(Balance.user_id == user_id).first()
        if balance:
            return balance
        balance = Balance(user_id=user_id, balance_amount=0, total_sessions=0, spent_sessions=0)
        db.add(balance)
        db.flush()
        return balance

    @staticmethod
    def payment_exists(db: Session, payment_id: str) -> bool:
        return (
            db.query(BalancePayment.id).filter(BalancePayment.payment_id == payment_id).first()
            is not None
        )

    @staticmethod
    def add_payment(
        db: Session,
        balance_id: int,
        payment_id: str,
        amount: float,
        currency: str,
        sessions_added: float,
        payment_type: str,
    ) -> BalancePayment:
        """Insert a payment row; the UNIQUE payment_id rejects a second credit at flush"""
        payment = BalancePayment(
            balance_id=balance_id,
            payment_id=payment_id,
            amount=amount,
            currency=currency,
            date=utcnow(),
            sessions_added=sessions_added,
            payment_type=payment_type,
        )
        db.add(payment)
        db.flush()
        return payment

    @staticmethod
    def add_history(
        db: Session,
        balance_id: int,
        action: str,
        amount: float,
        reason: Optional[str] = None,
        admin_id: Optional[int] = None,
        appointment_id: Optional[int] = None,
        surcharge: float = 0,
    ) -> BalanceHistory:
        entry = BalanceHistory(
            balance_id=balance_id,
            action=action,
            amount=amount,
            reason=reason,
            admin_id=admin_id,
            appointment_id=appointment_id,
            surcharge=surcharge or 0,
        )
        db.add(entry)
        db.flush()
        return entry

    @staticmethod
    def increment(db: Session, balance_id: int, amount: float, sessions: float = 0) -> None:
        """Atomic delta: UPDATE balances SET balance_amount = balance_amount + :amount"""
        values = {Balance.balance_amount: _cents(Balance.balance_amount + amount)}
        if sessions:
            values[Balance.total_sessions] = Balance.total_sessions + sessions
        db.query(Balance).filter(Balance.id == balance_id).update(values, synchronize_session=False)

    @staticmethod
    def decrement_if_available(db: Session, balance_id: int, amount: float) -> bool:
        """Conditional atomic delta; False when the balance does not cover ``amount``"""
        updated = (
            db.query(Balance)
            .filter(Balance.id == balance_id, _cents(Balance.balance_amount - amount) >= 0)
            .update(
                {Balance.balance_amount: _cents(Balance.balance_amount - amount)},
                synchronize_session=False,
            )
        )
        return updated == 1

    @staticmethod
    def get_overspent(db: Session) -> list[Balance]:
        return db.query(Balance).filter(Balance.spent_sessions > Balance.total_sessions).all()

    @staticmethod
    def clamp_spent_sessions(db: Session, balance_id: int) -> bool:
        updated = (
            db.query(Balance)
            .filter(Balance.id == balance_id, Balance.spent_sessions > Balance.total_sessions)
            .update({Balance.spent_sessions: Balance.total_sessions}, synchronize_session=False)
        )
        return updated == 1
