from telehealth.models.user import User, UserRole
from telehealth.models.consultation import (
    Consultation,
    ConsultationStatus,
    Specialty,
    VideoSession,
    CONFIRMED_STATUSES,
)
from telehealth.models.payments import Payment, PaymentStatus
from telehealth.models.audit import AuditEvent, AuditEventType

__all__ = [
    "User",
    "UserRole",
    "Consultation",
    "ConsultationStatus",
    "Specialty",
    "VideoSession",
    "CONFIRMED_STATUSES",
    "Payment",
    "PaymentStatus",
    "AuditEvent",
    "AuditEventType",
]
