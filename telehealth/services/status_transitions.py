"""
Consultation status state machine.

    CREATED ──> PAYMENT_PENDING ──> PAID ──> IN_CALL ──> COMPLETED
       │             │   ▲            │
       │             ▼   │            │
       │        PAYMENT_FAILED        │
       └──────> CANCELLED <───────────┘  (also from PAYMENT_PENDING)

EXPIRED is terminal and only ever derived for display.
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy.orm import Session

from telehealth.core.errors import ConflictError, InvalidStatusTransitionError, ValidationError
from telehealth.models.consultation import Consultation, ConsultationStatus
from telehealth.models.user import User
from telehealth.services.audit_logger import AuditRecorder, AuditContext
from telehealth.services.consultation_store import compare_and_swap

logger = logging.getLogger(__name__)

S = ConsultationStatus

ALLOWED_TRANSITIONS = {
    S.CREATED: frozenset({S.PAYMENT_PENDING, S.CANCELLED}),
    S.PAYMENT_PENDING: frozenset({S.PAID, S.PAYMENT_FAILED, S.CANCELLED}),
    S.PAID: frozenset({S.IN_CALL, S.CANCELLED}),
    S.IN_CALL: frozenset({S.COMPLETED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
    S.EXPIRED: frozenset(),
    S.PAYMENT_FAILED: frozenset({S.PAYMENT_PENDING}),
}


class StatusTransitionValidator:
    """Legal-edge checks plus the side effects bound to entering a status."""

    @staticmethod
    def validate(from_status: ConsultationStatus, to_status: ConsultationStatus) -> bool:
        return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())

    @staticmethod
    def ensure_valid(from_status: ConsultationStatus, to_status: ConsultationStatus):
        if not StatusTransitionValidator.validate(from_status, to_status):
            raise InvalidStatusTransitionError(from_status, to_status)

    @staticmethod
    def parse_status(value) -> ConsultationStatus:
        if isinstance(value, ConsultationStatus):
            return value
        try:
            return ConsultationStatus(value)
        except ValueError:
            raise ValidationError(
                "Invalid status value",
                {"field": "status", "validOptions": [s.value for s in ConsultationStatus]}
            )

    @staticmethod
    def entry_stamps(to_status: ConsultationStatus, now: datetime) -> Dict[str, Any]:
        if to_status == S.IN_CALL:
            return {"started_at": now}
        if to_status == S.COMPLETED:
            return {"ended_at": now}
        return {}

    @staticmethod
    def apply(
        db: Session,
        consultation: Consultation,
        to_status: ConsultationStatus,
        actor: User,
        now: datetime,
        expected_updated_at: Optional[datetime] = None,
        extra_values: Optional[Dict[str, Any]] = None,
        audit_extra: Optional[Dict[str, Any]] = None,
        context: Optional[AuditContext] = None
    ) -> ConsultationStatus:
        """
        Move ``consultation`` to ``to_status`` inside the caller's transaction.

        The row write is a compare-and-swap on updated_at (``expected_updated_at``
        defaults to the value currently loaded) and the CONSULT_STATUS_CHANGED
        event is flushed in the same unit. Nothing is committed here; if the
        audit write fails the caller's rollback discards the status change too.

        Returns the status the consultation moved from.
        """
        from_status = consultation.status
        StatusTransitionValidator.ensure_valid(from_status, to_status)

        values: Dict[str, Any] = {"status": to_status}
        values.update(StatusTransitionValidator.entry_stamps(to_status, now))
        if extra_values:
            values.update(extra_values)

        expected = expected_updated_at if expected_updated_at is not None else consultation.updated_at
        if not compare_and_swap(db, consultation, expected, values, now):
            raise ConflictError(
                "Consultation was modified by another request. Please refresh and try again.",
                {"serverUpdatedAt": consultation.updated_at.isoformat()}
            )

        AuditRecorder.log_status_changed(
            db, actor, consultation.id, from_status, to_status, extra=audit_extra, context=context, now=now
        )
        logger.info(f"[Status] Consultation {consultation.id}: {from_status.value} -> {to_status.value}")
        return from_status
