"""
Consultation booking and management.

Creation, reads, listing and the role-gated PATCH. Every mutation commits
together with its audit event(s) through ``atomic``.
"""

import logging
from datetime import datetime
from typing import Optional, List, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from telehealth.core.access_control import AccessControlService, Capability
from telehealth.core.errors import ConflictError, NotFoundError, ValidationError
from telehealth.database import atomic
from telehealth.models.consultation import Consultation, ConsultationStatus, Specialty
from telehealth.models.user import User, UserRole
from telehealth.services.audit_logger import AuditRecorder, AuditContext
from telehealth.services.consultation_store import (
    compare_and_swap,
    get_consultation_or_404,
    get_user,
)
from telehealth.services.slot_lock import SlotLock
from telehealth.services.status_transitions import StatusTransitionValidator
from telehealth.services.time_window import validate_booking_time
from telehealth.utils.clock import Clock, utcnow, to_utc_naive

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

# Entering these statuses settles the slot one way or the other
SLOT_SETTLING_STATUSES = (
    ConsultationStatus.PAID,
    ConsultationStatus.PAYMENT_FAILED,
    ConsultationStatus.CANCELLED,
)


def parse_specialty(value) -> Specialty:
    if isinstance(value, Specialty):
        return value
    try:
        return Specialty(value)
    except ValueError:
        raise ValidationError(
            "Invalid specialty",
            {"field": "specialty", "validOptions": [s.value for s in Specialty]}
        )


class ConsultationService:
    def __init__(
        self,
        db: Session,
        clock: Clock = utcnow,
        slot_lock: Optional[SlotLock] = None,
        context: Optional[AuditContext] = None
    ):
        self.db = db
        self.clock = clock
        self.slot_lock = slot_lock or SlotLock()
        self.context = context

    def create(self, user: User, specialty, scheduled_start_at: Optional[datetime] = None) -> Consultation:
        AccessControlService.require(user, Capability.CREATE_CONSULTATION, "Only patients can book consultations")

        specialty = parse_specialty(specialty)
        scheduled_start_at = to_utc_naive(scheduled_start_at)
        now = self.clock()
        validate_booking_time(scheduled_start_at, now)

        with atomic(self.db):
            consultation = Consultation(
                patient_id=user.id,
                specialty=specialty,
                status=ConsultationStatus.CREATED,
                scheduled_start_at=scheduled_start_at,
                created_at=now,
                updated_at=now,
            )
            self.db.add(consultation)
            self.db.flush()
            AuditRecorder.log_consultation_created(self.db, user, consultation, context=self.context, now=now)

        logger.info(f"[Consultation] Created {consultation.id} ({specialty.value}) for patient {user.id}")
        return consultation

    def get(self, consultation_id: str, user: User) -> Consultation:
        consultation = get_consultation_or_404(self.db, consultation_id)
        AccessControlService.ensure_consultation_access(user, consultation)
        return consultation

    def list(
        self,
        user: User,
        status=None,
        specialty=None,
        limit: int = 20,
        offset: int = 0
    ) -> Tuple[List[Consultation], int]:
        """Consultations visible to ``user``, newest first, plus the total count."""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(offset, 0)

        query = self.db.query(Consultation)
        if not AccessControlService.check_permission(user.role, Capability.VIEW_ALL_CONSULTATIONS):
            if user.role == UserRole.DOCTOR:
                query = query.filter(Consultation.doctor_id == user.id)
            else:
                query = query.filter(Consultation.patient_id == user.id)

        if status is not None:
            query = query.filter(Consultation.status == StatusTransitionValidator.parse_status(status))
        if specialty is not None:
            query = query.filter(Consultation.specialty == parse_specialty(specialty))

        total = query.count()
        items = (
            query.order_by(Consultation.created_at.desc(), Consultation.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return items, total

    def update(
        self,
        consultation_id: str,
        user: User,
        status=None,
        doctor_id: Optional[str] = None,
        scheduled_start_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None
    ) -> Consultation:
        """
        Apply a partial update. Checks run in a fixed order so the caller
        always gets the most fundamental failure first:

        404, access, status/schedule role, doctor assignment role and target,
        status enum, transition, schedule in the future, stale updatedAt.
        """
        if status is None and doctor_id is None and scheduled_start_at is None:
            raise ValidationError("No updates provided")

        consultation = get_consultation_or_404(self.db, consultation_id)
        AccessControlService.ensure_consultation_access(user, consultation)

        if status is not None:
            AccessControlService.require(
                user, Capability.CHANGE_STATUS, "Only doctors and admins can change consultation status"
            )
        if scheduled_start_at is not None:
            AccessControlService.require(
                user, Capability.RESCHEDULE, "Only doctors and admins can reschedule consultations"
            )
        if doctor_id is not None:
            AccessControlService.require(user, Capability.ASSIGN_DOCTOR, "Only admins can assign doctors")
            target = get_user(self.db, doctor_id)
            if target is None:
                raise NotFoundError("Doctor not found")
            if target.role != UserRole.DOCTOR:
                raise ValidationError("Assigned user is not a doctor", {"field": "doctorId"})

        new_status = None
        if status is not None:
            new_status = StatusTransitionValidator.parse_status(status)
            StatusTransitionValidator.ensure_valid(consultation.status, new_status)

        now = self.clock()
        if scheduled_start_at is not None:
            scheduled_start_at = to_utc_naive(scheduled_start_at)
            validate_booking_time(scheduled_start_at, now)

        if updated_at is not None:
            client_updated_at = to_utc_naive(updated_at)
            if consultation.updated_at > client_updated_at:
                raise ConflictError(
                    "Consultation was modified by another request. Please refresh and try again.",
                    {
                        "serverUpdatedAt": consultation.updated_at.isoformat(),
                        "clientUpdatedAt": client_updated_at.isoformat(),
                    }
                )

        previous_doctor_id = consultation.doctor_id
        previous_start = consultation.scheduled_start_at
        doctor_changed = doctor_id is not None and doctor_id != previous_doctor_id
        schedule_changed = scheduled_start_at is not None and scheduled_start_at != previous_start

        if new_status is None and not doctor_changed and not schedule_changed:
            return consultation

        values = {}
        if doctor_changed:
            values["doctor_id"] = doctor_id
        if schedule_changed:
            values["scheduled_start_at"] = scheduled_start_at

        slot_doctor = doctor_id if doctor_changed else previous_doctor_id
        slot_start = scheduled_start_at if schedule_changed else previous_start
        lock_acquired = False
        if (doctor_changed or schedule_changed) and slot_doctor and slot_start:
            lock_acquired = self._acquire_slot(consultation.id, slot_doctor, slot_start)

        expected_updated_at = consultation.updated_at
        try:
            with atomic(self.db):
                if new_status is not None:
                    StatusTransitionValidator.apply(
                        self.db, consultation, new_status, user, now,
                        expected_updated_at=expected_updated_at,
                        extra_values=values,
                        context=self.context
                    )
                elif not compare_and_swap(self.db, consultation, expected_updated_at, values, now):
                    raise ConflictError(
                        "Consultation was modified by another request. Please refresh and try again.",
                        {"serverUpdatedAt": consultation.updated_at.isoformat()}
                    )

                if doctor_changed:
                    AuditRecorder.log_doctor_assigned(
                        self.db, user, consultation.id, previous_doctor_id, doctor_id,
                        context=self.context, now=now
                    )
                if schedule_changed:
                    AuditRecorder.log_rescheduled(
                        self.db, user, consultation.id, previous_start, scheduled_start_at,
                        context=self.context, now=now
                    )
        except IntegrityError:
            if lock_acquired:
                self.slot_lock.release(slot_doctor, slot_start, consultation.id)
            logger.info(f"[Consultation] Confirmed slot already taken for {consultation_id}")
            raise ConflictError(
                "Doctor already has a confirmed consultation at this time",
                {"field": "scheduledStartAt"}
            )
        except Exception:
            if lock_acquired:
                self.slot_lock.release(slot_doctor, slot_start, consultation.id)
            raise

        if new_status in SLOT_SETTLING_STATUSES and consultation.doctor_id and consultation.scheduled_start_at:
            self.slot_lock.release(consultation.doctor_id, consultation.scheduled_start_at, consultation.id)

        logger.info(f"[Consultation] Updated {consultation.id} by {user.role.value} {user.id}")
        return consultation

    def _acquire_slot(self, consultation_id: str, doctor_id: str, scheduled_start_at: datetime) -> bool:
        acquired = self.slot_lock.try_acquire(doctor_id, scheduled_start_at, consultation_id)
        if acquired is False:
            raise ConflictError(
                "This time slot is currently being booked by another consultation",
                {"doctorId": doctor_id, "scheduledStartAt": scheduled_start_at.isoformat()}
            )
        return bool(acquired)
