"""
Consultation audit trail
Append-only events written inside the caller's transaction. The [AUDIT] log
line for an event is emitted once its transaction commits and dropped if it
rolls back.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple

from sqlalchemy import event
from sqlalchemy.orm import Session

from telehealth.core.logging import log_audit
from telehealth.models.audit import AuditEvent, AuditEventType
from telehealth.models.user import User
from telehealth.utils.clock import utcnow, isoformat

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
PENDING_AUDIT_LINES = "pending_audit_lines"


@event.listens_for(Session, "after_commit")
def _emit_committed_audit_lines(session):
    for entry in session.info.pop(PENDING_AUDIT_LINES, []):
        log_audit(*entry)


@event.listens_for(Session, "after_rollback")
def _drop_rolled_back_audit_lines(session):
    session.info.pop(PENDING_AUDIT_LINES, None)


@dataclass
class AuditContext:
    """Request attributes stamped on every event recorded for that request."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class AuditRecorder:
    """
    Appends AuditEvent rows to an open transaction.

    ``record`` adds and flushes but never commits: the event becomes durable
    together with the mutation it describes, or not at all.
    """

    @staticmethod
    def record(
        db: Session,
        event_type: AuditEventType,
        actor_user_id: Optional[str],
        consultation_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
        context: Optional[AuditContext] = None,
        now: Optional[datetime] = None
    ) -> AuditEvent:
        """
        Record an audit event in the current unit of work

        Args:
            db: Session holding the open transaction
            event_type: One of AuditEventType
            actor_user_id: ID of user performing the action
            consultation_id: Consultation the action applies to
            metadata: Event-specific data (opaque)
            context: Client IP address and user agent
            now: Event instant, defaults to the current time
        """
        context = context or AuditContext()
        created_at = now or utcnow()

        audit_event = AuditEvent(
            actor_user_id=actor_user_id,
            consultation_id=consultation_id,
            event_type=event_type.value,
            event_metadata=metadata or {},
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            created_at=created_at,
        )
        db.add(audit_event)
        db.flush()

        db.info.setdefault(PENDING_AUDIT_LINES, []).append(
            (event_type.value, actor_user_id, consultation_id, metadata or {}, isoformat(created_at))
        )
        return audit_event

    @staticmethod
    def log_consultation_created(db: Session, actor: User, consultation, context=None, now=None):
        return AuditRecorder.record(
            db,
            AuditEventType.CONSULT_CREATED,
            actor.id,
            consultation.id,
            {
                "specialty": consultation.specialty.value,
                "scheduledStartAt": isoformat(consultation.scheduled_start_at),
            },
            context=context,
            now=now
        )

    @staticmethod
    def log_status_changed(db: Session, actor: User, consultation_id: str, from_status, to_status,
                           extra: Optional[Dict[str, Any]] = None, context=None, now=None):
        metadata = {"from": from_status.value, "to": to_status.value}
        if extra:
            metadata.update(extra)
        return AuditRecorder.record(
            db, AuditEventType.CONSULT_STATUS_CHANGED, actor.id, consultation_id, metadata,
            context=context, now=now
        )

    @staticmethod
    def log_doctor_assigned(db: Session, actor: User, consultation_id: str,
                            from_doctor_id: Optional[str], to_doctor_id: str, context=None, now=None):
        return AuditRecorder.record(
            db, AuditEventType.CONSULT_DOCTOR_ASSIGNED, actor.id, consultation_id,
            {"from": from_doctor_id, "to": to_doctor_id},
            context=context, now=now
        )

    @staticmethod
    def log_rescheduled(db: Session, actor: User, consultation_id: str,
                        from_start: Optional[datetime], to_start: Optional[datetime], context=None, now=None):
        return AuditRecorder.record(
            db, AuditEventType.CONSULT_RESCHEDULED, actor.id, consultation_id,
            {"from": isoformat(from_start), "to": isoformat(to_start)},
            context=context, now=now
        )

    @staticmethod
    def log_join_token_minted(db: Session, actor: User, consultation_id: str, room_name: str,
                              is_owner: bool, context=None, now=None):
        return AuditRecorder.record(
            db, AuditEventType.JOIN_TOKEN_MINTED, actor.id, consultation_id,
            {"roomName": room_name, "isOwner": is_owner, "userRole": actor.role.value},
            context=context, now=now
        )

    @staticmethod
    def log_checkout_created(db: Session, actor: User, consultation_id: str, payment_id: str,
                             amount: int, currency: str, context=None, now=None):
        return AuditRecorder.record(
            db, AuditEventType.PAYMENT_CHECKOUT_CREATED, actor.id, consultation_id,
            {"paymentId": payment_id, "amount": amount, "currency": currency},
            context=context, now=now
        )

    @staticmethod
    def list_events(
        db: Session,
        event_type: Optional[str] = None,
        actor_user_id: Optional[str] = None,
        consultation_id: Optional[str] = None,
        page: int = 1,
        limit: int = 50
    ) -> Tuple[List[AuditEvent], int]:
        """Filtered page of events, newest first, plus the total match count."""
        page = max(page, 1)
        limit = max(1, min(limit, MAX_PAGE_SIZE))

        query = db.query(AuditEvent)
        if event_type:
            query = query.filter(AuditEvent.event_type == event_type)
        if actor_user_id:
            query = query.filter(AuditEvent.actor_user_id == actor_user_id)
        if consultation_id:
            query = query.filter(AuditEvent.consultation_id == consultation_id)

        total = query.count()
        events = (
            query.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return events, total
