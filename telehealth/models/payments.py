"""
Payment model for Stripe Checkout sessions.
Several rows may exist per consultation (one per checkout attempt), but at
most one of them PENDING or PAID. A consultation counts as paid once a
PAID row exists.
"""

import enum
import uuid

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Index, Enum as SQLEnum, text
from sqlalchemy.orm import relationship

from telehealth.database import Base
from telehealth.utils.clock import utcnow


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


# At most one checkout in flight or settled per consultation
_open_payment_predicate = text("status IN ('PENDING', 'PAID')")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    consultation_id = Column(String, ForeignKey("consultations.id"), nullable=False, index=True)

    provider = Column(String, nullable=False, default="STRIPE")
    status = Column(SQLEnum(PaymentStatus, name="payment_status"), nullable=False, default=PaymentStatus.PENDING)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")

    provider_checkout_id = Column(String, unique=True, nullable=True)
    idempotency_key = Column(String, unique=True, nullable=False)

    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    consultation = relationship("Consultation", back_populates="payments")

    __table_args__ = (
        Index("idx_payment_consultation_status", "consultation_id", "status"),
        Index(
            "uq_payment_open_per_consultation",
            "consultation_id",
            unique=True,
            postgresql_where=_open_payment_predicate,
            sqlite_where=_open_payment_predicate,
        ),
    )
