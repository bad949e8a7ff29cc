"""
Append-only audit trail.
Rows are inserted in the same transaction as the change they describe and are
never updated or deleted.
"""

import enum
import uuid

from sqlalchemy import Column, String, DateTime, ForeignKey, Index, JSON

from telehealth.database import Base
from telehealth.utils.clock import utcnow


class AuditEventType(str, enum.Enum):
    CONSULT_CREATED = "CONSULT_CREATED"
    CONSULT_STATUS_CHANGED = "CONSULT_STATUS_CHANGED"
    CONSULT_DOCTOR_ASSIGNED = "CONSULT_DOCTOR_ASSIGNED"
    CONSULT_RESCHEDULED = "CONSULT_RESCHEDULED"
    JOIN_TOKEN_MINTED = "JOIN_TOKEN_MINTED"
    PAYMENT_CHECKOUT_CREATED = "PAYMENT_CHECKOUT_CREATED"


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    actor_user_id = Column(String, ForeignKey("users.id"), nullable=True)
    consultation_id = Column(String, ForeignKey("consultations.id"), nullable=True)

    event_type = Column(String, nullable=False)
    event_metadata = Column(JSON, nullable=True)

    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_audit_actor", "actor_user_id"),
        Index("idx_audit_consultation", "consultation_id"),
        Index("idx_audit_event_type", "event_type"),
        Index("idx_audit_created", "created_at"),
    )
