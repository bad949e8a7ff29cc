"""
Consultation and video session models.

Tables:
- consultations: one patient-doctor engagement and its lifecycle status
- video_sessions: the external video room bound to a consultation (1:1)
"""

import enum
import uuid

from sqlalchemy import (
    Column, String, DateTime, ForeignKey, Index, Enum as SQLEnum, text
)
from sqlalchemy.orm import relationship

from telehealth.database import Base
from telehealth.utils.clock import utcnow


class Specialty(str, enum.Enum):
    GENERAL = "GENERAL"
    CARDIOLOGY = "CARDIOLOGY"
    DERMATOLOGY = "DERMATOLOGY"
    PEDIATRICS = "PEDIATRICS"
    PSYCHIATRY = "PSYCHIATRY"
    ORTHOPEDICS = "ORTHOPEDICS"


class ConsultationStatus(str, enum.Enum):
    CREATED = "CREATED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAID = "PAID"
    IN_CALL = "IN_CALL"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    PAYMENT_FAILED = "PAYMENT_FAILED"


# Statuses that hold a doctor's slot for good
CONFIRMED_STATUSES = (
    ConsultationStatus.PAID,
    ConsultationStatus.IN_CALL,
    ConsultationStatus.COMPLETED,
)

_confirmed_slot_predicate = text(
    "doctor_id IS NOT NULL AND scheduled_start_at IS NOT NULL "
    "AND status IN ('PAID', 'IN_CALL', 'COMPLETED')"
)


def _new_id() -> str:
    return str(uuid.uuid4())


class Consultation(Base):
    __tablename__ = "consultations"

    id = Column(String, primary_key=True, default=_new_id)
    patient_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    doctor_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)

    specialty = Column(SQLEnum(Specialty, name="specialty"), nullable=False)
    status = Column(
        SQLEnum(ConsultationStatus, name="consultation_status"),
        nullable=False,
        default=ConsultationStatus.CREATED,
        index=True
    )

    scheduled_start_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    # Optimistic-concurrency marker: every write compares against the stored value
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    video_session = relationship("VideoSession", back_populates="consultation", uselist=False)
    payments = relationship("Payment", back_populates="consultation", order_by="Payment.created_at")

    __table_args__ = (
        Index(
            "uq_consultation_confirmed_slot",
            "doctor_id",
            "scheduled_start_at",
            unique=True,
            postgresql_where=_confirmed_slot_predicate,
            sqlite_where=_confirmed_slot_predicate,
        ),
    )


class VideoSession(Base):
    """External video room owned by exactly one consultation."""
    __tablename__ = "video_sessions"

    id = Column(String, primary_key=True, default=_new_id)
    consultation_id = Column(String, ForeignKey("consultations.id"), nullable=False, unique=True)

    provider = Column(String, nullable=False, default="DAILY")
    room_name = Column(String, nullable=False, unique=True)
    room_url = Column(String, nullable=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    ended_at = Column(DateTime, nullable=True)

    consultation = relationship("Consultation", back_populates="video_session")

    __table_args__ = (
        Index("idx_video_session_room", "room_name"),
    )
