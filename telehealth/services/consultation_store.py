"""
Persistence helpers for consultations and their satellites.

Writes to a consultation row go through ``compare_and_swap``: the UPDATE only
matches while the stored updated_at still equals the value the caller read,
so a concurrent writer turns into a lost swap instead of a silent overwrite.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from sqlalchemy.orm import Session

from telehealth.core.errors import NotFoundError
from telehealth.models.consultation import Consultation, VideoSession
from telehealth.models.payments import Payment, PaymentStatus
from telehealth.models.user import User

logger = logging.getLogger(__name__)


def get_consultation(db: Session, consultation_id: str) -> Optional[Consultation]:
    return db.query(Consultation).filter(Consultation.id == consultation_id).first()


def get_consultation_or_404(db: Session, consultation_id: str) -> Consultation:
    consultation = get_consultation(db, consultation_id)
    if consultation is None:
        raise NotFoundError("Consultation not found")
    return consultation


def get_user(db: Session, user_id: str) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def get_video_session(db: Session, consultation_id: str) -> Optional[VideoSession]:
    return db.query(VideoSession).filter(VideoSession.consultation_id == consultation_id).first()


def get_paid_payment(db: Session, consultation_id: str) -> Optional[Payment]:
    return (
        db.query(Payment)
        .filter(Payment.consultation_id == consultation_id, Payment.status == PaymentStatus.PAID)
        .first()
    )


def get_open_payment(db: Session, consultation_id: str) -> Optional[Payment]:
    """A PENDING or PAID payment; either one blocks a new checkout."""
    return (
        db.query(Payment)
        .filter(
            Payment.consultation_id == consultation_id,
            Payment.status.in_((PaymentStatus.PENDING, PaymentStatus.PAID))
        )
        .order_by(Payment.created_at.desc())
        .first()
    )


def next_updated_at(previous: datetime, now: datetime) -> datetime:
    """Strictly later than ``previous`` even when the clock has not moved."""
    if now > previous:
        return now
    return previous + timedelta(microseconds=1)


def compare_and_swap(
    db: Session,
    consultation: Consultation,
    expected_updated_at: datetime,
    values: Dict[str, Any],
    now: datetime
) -> bool:
    """
    Apply ``values`` to the consultation only if its stored updated_at equals
    ``expected_updated_at``. Stamps a new updated_at and refreshes the instance.

    Returns False when another writer got there first. Never commits.
    """
    new_values = dict(values)
    new_values["updated_at"] = next_updated_at(expected_updated_at, now)

    matched = (
        db.query(Consultation)
        .filter(
            Consultation.id == consultation.id,
            Consultation.updated_at == expected_updated_at
        )
        .update(new_values, synchronize_session=False)
    )
    db.refresh(consultation)

    if matched != 1:
        logger.info(f"[Store] Compare-and-swap lost for consultation {consultation.id}")
        return False
    return True
