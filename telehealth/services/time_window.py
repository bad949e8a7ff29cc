"""
Join-window arithmetic and read-time status derivation.

Pure functions over naive UTC instants; nothing here touches storage.
"""

import math
from datetime import datetime, timedelta
from typing import Optional

from telehealth.core.errors import TimeWindowError, ValidationError
from telehealth.models.consultation import Consultation, ConsultationStatus
from telehealth.utils.clock import isoformat

EARLY = timedelta(minutes=5)
LATE = timedelta(minutes=30)

ACTIVE_STATUSES = (ConsultationStatus.PAID, ConsultationStatus.IN_CALL)


def _minutes(delta: timedelta) -> int:
    return int(delta.total_seconds() // 60)


def opens_at(scheduled_start_at: datetime) -> datetime:
    return scheduled_start_at - EARLY


def closes_at(scheduled_start_at: datetime) -> datetime:
    return scheduled_start_at + LATE


def joinable(scheduled_start_at: Optional[datetime], now: datetime) -> bool:
    """Unscheduled consultations are always joinable; both bounds are inclusive."""
    if scheduled_start_at is None:
        return True
    return opens_at(scheduled_start_at) <= now <= closes_at(scheduled_start_at)


def check_joinable(scheduled_start_at: Optional[datetime], now: datetime):
    """Raise TimeWindowError carrying the violated boundary when ``now`` is outside the window."""
    if joinable(scheduled_start_at, now):
        return

    window_open = opens_at(scheduled_start_at)
    if now < window_open:
        minutes_left = math.ceil((window_open - now).total_seconds() / 60)
        raise TimeWindowError(
            f"Too early to join. You can join {_minutes(EARLY)} minutes before the scheduled time. "
            f"Please wait {minutes_left} more minutes.",
            {"scheduledAt": isoformat(scheduled_start_at), "opensAt": isoformat(window_open)}
        )

    raise TimeWindowError(
        f"Too late to join. The join window closed {_minutes(LATE)} minutes after the scheduled time.",
        {"scheduledAt": isoformat(scheduled_start_at), "closedAt": isoformat(closes_at(scheduled_start_at))}
    )


def effective_status(consultation: Consultation, now: datetime) -> ConsultationStatus:
    """
    Status to display. An active consultation whose window has closed reads as
    EXPIRED; the stored status is left as it is.
    """
    status = consultation.status
    if (
        status in ACTIVE_STATUSES
        and consultation.scheduled_start_at is not None
        and now > closes_at(consultation.scheduled_start_at)
    ):
        return ConsultationStatus.EXPIRED
    return status


def is_upcoming(consultation: Consultation, now: datetime) -> bool:
    return (
        consultation.status in ACTIVE_STATUSES
        and consultation.scheduled_start_at is not None
        and now < opens_at(consultation.scheduled_start_at)
    )


def validate_booking_time(scheduled_start_at: Optional[datetime], now: datetime):
    if scheduled_start_at is not None and scheduled_start_at <= now:
        raise ValidationError(
            "Scheduled time must be in the future",
            {"field": "scheduledStartAt"}
        )
