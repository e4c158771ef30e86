"""
Automated maintenance for appointments and balances
Handles unpaid → cancelled expiry once the start time has passed
Repairs legacy recurring arrays and overspent balance counters
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..domain.appointments.service import AppointmentService
from ..domain.balance.service import BalanceService
from ..domain.payments.stripe_service import PaymentProvider, get_payment_provider

logger = logging.getLogger(__name__)


def expire_unpaid_appointments(
    db: Session, provider: Optional[PaymentProvider] = None, now: Optional[datetime] = None
) -> dict:
    """
    Cancel appointments whose start time passed without a verified payment.
    Should be run as a scheduled job (e.g., hourly cron)

    Returns:
        dict: Summary with checked / expired / skipped_paid / skipped_error counts
    """
    try:
        service = AppointmentService(db, provider or get_payment_provider())
        summary = service.expire_unpaid(now)
        if not summary["expired"]:
            logger.debug("ℹ️ No unpaid appointments to expire")
        return summary
    except Exception as e:
        logger.error(f"❌ Error expiring unpaid appointments: {str(e)}")
        db.rollback()
        raise


def repair_recurring_sessions(db: Session, provider: Optional[PaymentProvider] = None) -> dict:
    """Rewrite every stored recurring list in canonical form"""
    try:
        service = AppointmentService(db, provider or get_payment_provider())
        return service.repair_recurring()
    except Exception as e:
        logger.error(f"❌ Error repairing recurring sessions: {str(e)}")
        db.rollback()
        raise


def repair_negative_balances(db: Session) -> dict:
    return BalanceService(db).repair_negative_balances()
