"""
Access Control Module

Role-based capabilities plus the relationship checks that tie a caller to a
consultation (owning patient, assigned doctor, admin).

Roles are the closed ``UserRole`` enum; handlers ask for a capability, never
compare role strings.
"""

import enum
import logging
from typing import Optional

from telehealth.core.errors import ForbiddenError
from telehealth.models.consultation import Consultation
from telehealth.models.user import User, UserRole

logger = logging.getLogger(__name__)


class Capability(str, enum.Enum):
    CREATE_CONSULTATION = "create_consultation"
    VIEW_ALL_CONSULTATIONS = "view_all_consultations"
    CHANGE_STATUS = "change_status"
    RESCHEDULE = "reschedule"
    ASSIGN_DOCTOR = "assign_doctor"
    OWN_CALL = "own_call"
    CLOSE_CALL = "close_call"
    INITIATE_PAYMENT = "initiate_payment"
    VIEW_ALL_PAYMENTS = "view_all_payments"
    VIEW_AUDIT_LOG = "view_audit_log"


class AccessControlService:
    """
    Centralized access control service
    """

    # Role capability matrix
    ROLE_CAPABILITIES = {
        UserRole.PATIENT: {
            Capability.CREATE_CONSULTATION,
            Capability.INITIATE_PAYMENT,
        },
        UserRole.DOCTOR: {
            Capability.CHANGE_STATUS,
            Capability.RESCHEDULE,
            Capability.OWN_CALL,
            Capability.CLOSE_CALL,
        },
        UserRole.ADMIN: {
            Capability.VIEW_ALL_CONSULTATIONS,
            Capability.CHANGE_STATUS,
            Capability.RESCHEDULE,
            Capability.ASSIGN_DOCTOR,
            Capability.OWN_CALL,
            Capability.CLOSE_CALL,
            Capability.VIEW_ALL_PAYMENTS,
            Capability.VIEW_AUDIT_LOG,
        },
    }

    @staticmethod
    def check_permission(role: UserRole, capability: Capability) -> bool:
        return capability in AccessControlService.ROLE_CAPABILITIES.get(role, set())

    @staticmethod
    def require(user: User, capability: Capability, message: Optional[str] = None):
        """Raise ForbiddenError unless the caller's role grants ``capability``."""
        if not AccessControlService.check_permission(user.role, capability):
            logger.info(f"Access denied: user={user.id} role={user.role.value} capability={capability.value}")
            raise ForbiddenError(message or "Access denied")

    @staticmethod
    def is_participant(user: User, consultation: Consultation) -> bool:
        return user.id == consultation.patient_id or (
            consultation.doctor_id is not None and user.id == consultation.doctor_id
        )

    @staticmethod
    def can_access_consultation(user: User, consultation: Consultation) -> bool:
        """Owning patient, assigned doctor or anyone who may view every consultation."""
        if AccessControlService.check_permission(user.role, Capability.VIEW_ALL_CONSULTATIONS):
            return True
        return AccessControlService.is_participant(user, consultation)

    @staticmethod
    def ensure_consultation_access(user: User, consultation: Consultation):
        if not AccessControlService.can_access_consultation(user, consultation):
            logger.info(f"Access denied: user={user.id} consultation={consultation.id}")
            raise ForbiddenError("Access denied")

    @staticmethod
    def ensure_consultation_owner(user: User, consultation: Consultation, message: str):
        """Only the patient who booked the consultation passes."""
        if user.id != consultation.patient_id or not AccessControlService.check_permission(
            user.role, Capability.INITIATE_PAYMENT
        ):
            logger.info(f"Owner check failed: user={user.id} consultation={consultation.id}")
            raise ForbiddenError(message)
