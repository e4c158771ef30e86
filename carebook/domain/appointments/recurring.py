"""
Recurring-session normalizer

``Appointment.recurring`` holds one entry per session of a multi-session plan.
Earlier releases stored three shapes:

    canonical        {"date": "...", "status": "...", "payment": "...", "index": 0}
    legacy string    "2025-03-01T10:00:00.000Z"
    corrupted dict   {"0": "2", "1": "0", "2": "2", "3": "5", ...}
                     (a string written character by character into an object)

Everything that reads the list in order to change it goes through
``normalize_recurring`` first, so the rest of the engine only sees the
canonical shape.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ...errors import DataIntegrityWarning
from ...shared.timeutils import format_iso_instant, parse_iso_instant
from .statuses import COMPLETED, canonical_status

logger = logging.getLogger(__name__)

SESSION_IN_PROGRESS = "in_progress"
SESSION_COMPLETED = "completed"
PAYMENT_NOT_PAID = "not_paid"
PAYMENT_PAID = "paid"

SHAPE_CANONICAL = "canonical"
SHAPE_LEGACY_STRING = "legacy_string"
SHAPE_CORRUPTED = "corrupted"
SHAPE_UNKNOWN = "unknown"

_CORE_KEYS = ("date", "status", "payment", "index")


@dataclass
class NormalizationResult:
    sessions: list = field(default_factory=list)
    skipped_count: int = 0
    converted_count: int = 0
    changed: bool = False
    warnings: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "canonical": self.sessions,
            "skippedCount": self.skipped_count,
            "convertedCount": self.converted_count,
            "changed": self.changed,
            "warnings": [w.to_dict() for w in self.warnings],
        }


def _is_position_key(key) -> bool:
    return isinstance(key, str) and key.isascii() and key.isdigit()


def classify_entry(raw) -> str:
    if isinstance(raw, str):
        return SHAPE_LEGACY_STRING
    if isinstance(raw, dict):
        if "date" in raw:
            return SHAPE_CANONICAL
        if raw and all(_is_position_key(k) for k in raw):
            return SHAPE_CORRUPTED
    return SHAPE_UNKNOWN


def rebuild_corrupted_string(raw: dict) -> str:
    """Concatenate the character values in ascending numeric key order"""
    return "".join(str(raw[key]) for key in sorted(raw, key=int))


def normalize_session_date(value) -> Optional[str]:
    """Return the date as ``YYYY-MM-DDTHH:MM:SS.mmmZ``, or None if unparsable"""
    if isinstance(value, datetime):
        return format_iso_instant(value)
    parsed = parse_iso_instant(value)
    if parsed is None:
        return None
    return format_iso_instant(parsed)


def default_session_status(parent_status: Optional[str]) -> str:
    return SESSION_COMPLETED if canonical_status(parent_status) == COMPLETED else SESSION_IN_PROGRESS


def default_session_payment(parent_paid: bool) -> str:
    return PAYMENT_PAID if parent_paid else PAYMENT_NOT_PAID


def _valid_index(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def normalize_recurring(raw_sessions, parent_status: Optional[str], parent_paid: bool) -> NormalizationResult:
    """
    Canonicalize a stored recurring list.

    Status and payment only move upwards: an entry already ``completed`` or
    ``paid`` keeps it, anything else falls back to the parent's defaults.
    Unparsable entries are dropped and reported as DataIntegrityWarning,
    never raised. Running this on its own output changes nothing.
    """
    result = NormalizationResult()

    if raw_sessions is None:
        return result
    original = raw_sessions
    if isinstance(raw_sessions, (str, dict)):
        raw_sessions = [raw_sessions]
    if not isinstance(raw_sessions, list):
        warning = DataIntegrityWarning(
            f"recurring is a {type(raw_sessions).__name__}, expected a list", raw=raw_sessions
        )
        logger.warning(f"⚠️ {warning.message}")
        result.warnings.append(warning)
        result.changed = True
        return result

    status_default = default_session_status(parent_status)
    payment_default = default_session_payment(parent_paid)

    for position, raw in enumerate(raw_sessions):
        shape = classify_entry(raw)

        if shape == SHAPE_CANONICAL:
            source = raw
            raw_date = raw.get("date")
        elif shape == SHAPE_LEGACY_STRING:
            source = {}
            raw_date = raw
        elif shape == SHAPE_CORRUPTED:
            source = {}
            raw_date = rebuild_corrupted_string(raw)
        else:
            warning = DataIntegrityWarning(
                f"Session {position}: unrecognised entry of type {type(raw).__name__}",
                index=position,
                raw=raw,
            )
            logger.warning(f"⚠️ {warning.message}")
            result.warnings.append(warning)
            result.skipped_count += 1
            continue

        date = normalize_session_date(raw_date)
        if date is None:
            warning = DataIntegrityWarning(
                f"Session {position}: invalid date {raw_date!r} ({shape})",
                index=position,
                raw=raw,
            )
            logger.warning(f"⚠️ {warning.message}")
            result.warnings.append(warning)
            result.skipped_count += 1
            continue

        session = {
            "date": date,
            "status": SESSION_COMPLETED
            if source.get("status") == SESSION_COMPLETED
            else status_default,
            "payment": PAYMENT_PAID if source.get("payment") == PAYMENT_PAID else payment_default,
            "index": source["index"] if _valid_index(source.get("index")) else position,
        }
        for key, value in source.items():
            if key not in _CORE_KEYS and not _is_position_key(key):
                session[key] = value

        if shape != SHAPE_CANONICAL:
            result.converted_count += 1
        result.sessions.append(session)

    result.changed = result.sessions != original
    if result.converted_count or result.skipped_count:
        logger.info(
            f"🔧 Normalized recurring sessions: {len(result.sessions)} kept, "
            f"{result.converted_count} converted, {result.skipped_count} skipped"
        )
    return result


def normalize_appointment_sessions(appointment) -> NormalizationResult:
    """Normalize ``appointment.recurring`` in place; writes a new list only when it changed"""
    result = normalize_recurring(
        appointment.recurring, appointment.status, bool(appointment.therapist_paid)
    )
    if result.changed:
        appointment.recurring = list(result.sessions)
    return result


def find_session(sessions: list, index: int) -> Optional[dict]:
    for session in sessions:
        if session.get("index") == index:
            return session
    return None


def build_sessions(dates: list) -> list:
    """Fresh canonical sessions for a newly booked plan"""
    sessions = []
    for position, value in enumerate(dates):
        date = normalize_session_date(value)
        if date is None:
            raise ValueError(f"Invalid session date: {value!r}")
        sessions.append(
            {
                "date": date,
                "status": SESSION_IN_PROGRESS,
                "payment": PAYMENT_NOT_PAID,
                "index": position,
            }
        )
    return sessions


def count_completed(sessions: list) -> int:
    return sum(1 for s in sessions if s.get("status") == SESSION_COMPLETED)


def completed_unpaid_sessions(sessions: list) -> list:
    return [
        s
        for s in sessions
        if s.get("status") == SESSION_COMPLETED and s.get("payment") != PAYMENT_PAID
    ]
