"""
Consultation payment initiation and status polling.

Each initiation is a new attempt with its own idempotency key. A PENDING or
PAID payment blocks further attempts (409), checked before the provider is
called and enforced by a partial unique index for racing requests. The PENDING
Payment row is only written after the provider returned a checkout session,
and it commits together with its PAYMENT_CHECKOUT_CREATED event. Payment
finalization (PENDING -> PAID/FAILED) happens outside this service; callers
poll ``get_status`` until it reports paid.
"""

import logging
import uuid
from typing import Optional, Dict, Any, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from telehealth.config import settings
from telehealth.core.access_control import AccessControlService, Capability
from telehealth.core.errors import ConflictError, ForbiddenError, NotFoundError, PaymentProviderError, ValidationError
from telehealth.database import atomic
from telehealth.models.consultation import ConsultationStatus, Specialty
from telehealth.models.payments import Payment, PaymentStatus
from telehealth.models.user import User
from telehealth.services.audit_logger import AuditRecorder, AuditContext
from telehealth.services.consultation_store import get_consultation_or_404, get_open_payment, get_paid_payment
from telehealth.services.stripe_service import PaymentResult
from telehealth.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

# Consultation fees in whole US dollars
SPECIALTY_FEES_USD = {
    Specialty.GENERAL: 50,
    Specialty.CARDIOLOGY: 150,
    Specialty.DERMATOLOGY: 85,
    Specialty.PEDIATRICS: 65,
    Specialty.PSYCHIATRY: 120,
    Specialty.ORTHOPEDICS: 110,
}
DEFAULT_FEE_USD = 50

PAYABLE_STATUSES = (
    ConsultationStatus.CREATED,
    ConsultationStatus.PAYMENT_PENDING,
    ConsultationStatus.PAYMENT_FAILED,
)


def fee_cents(specialty: Specialty) -> int:
    return SPECIALTY_FEES_USD.get(specialty, DEFAULT_FEE_USD) * 100


class PaymentProvider(Protocol):
    def create_checkout_session(self, consultation_id: str, patient_id: str, description: str,
                                amount_cents: int, currency: str, success_url: str, cancel_url: str,
                                idempotency_key: str) -> PaymentResult: ...


class PaymentInitiator:
    def __init__(
        self,
        db: Session,
        payment_provider: PaymentProvider,
        clock: Clock = utcnow,
        context: Optional[AuditContext] = None
    ):
        self.db = db
        self.payment_provider = payment_provider
        self.clock = clock
        self.context = context

    def initiate(self, consultation_id: str, user: User) -> Dict[str, Any]:
        """Create a checkout session and its PENDING payment; returns {url, paymentId}."""
        consultation = get_consultation_or_404(self.db, consultation_id)
        AccessControlService.ensure_consultation_owner(
            user, consultation, "You are not authorized to pay for this consultation"
        )

        if consultation.status not in PAYABLE_STATUSES:
            raise ValidationError(
                "Consultation is not awaiting payment",
                {"currentStatus": consultation.status.value}
            )

        self._ensure_no_open_payment(consultation_id)

        amount = fee_cents(consultation.specialty)
        currency = settings.PAYMENT_CURRENCY
        idempotency_key = str(uuid.uuid4())
        base_url = settings.PUBLIC_BASE_URL.rstrip("/")

        result = self.payment_provider.create_checkout_session(
            consultation_id=consultation_id,
            patient_id=user.id,
            description=f"{consultation.specialty.value.title()} Consultation",
            amount_cents=amount,
            currency=currency,
            success_url=f"{base_url}/checkout/success?id={consultation_id}",
            cancel_url=f"{base_url}/consultations/{consultation_id}",
            idempotency_key=idempotency_key
        )
        if not result.success or not result.data or not result.data.get("url"):
            logger.error(f"[Payments] Checkout creation failed for consultation {consultation_id}: {result.error}")
            raise PaymentProviderError("Failed to create checkout session")

        now = self.clock()
        try:
            with atomic(self.db):
                payment = Payment(
                    consultation_id=consultation_id,
                    status=PaymentStatus.PENDING,
                    amount=amount,
                    currency=currency,
                    provider_checkout_id=result.data["session_id"],
                    idempotency_key=idempotency_key,
                    created_at=now,
                    updated_at=now,
                )
                self.db.add(payment)
                self.db.flush()
                AuditRecorder.log_checkout_created(
                    self.db, user, consultation_id, payment.id, amount, currency, context=self.context, now=now
                )
        except IntegrityError:
            # A concurrent request committed its checkout first; this session is never handed out
            logger.info(
                f"[Payments] Concurrent checkout on consultation {consultation_id}; "
                f"discarding session {result.data['session_id']}"
            )
            self._ensure_no_open_payment(consultation_id)
            raise

        logger.info(f"[Payments] Checkout {payment.id} created for consultation {consultation_id} ({amount} {currency})")
        return {"url": result.data["url"], "paymentId": payment.id}

    def _ensure_no_open_payment(self, consultation_id: str):
        existing = get_open_payment(self.db, consultation_id)
        if existing is None:
            return
        if existing.status == PaymentStatus.PAID:
            raise ConflictError("Consultation has already been paid", {"paymentId": existing.id})
        raise ConflictError("A payment for this consultation is already in progress", {"paymentId": existing.id})

    def get_status(self, consultation_id: str, user: User) -> Dict[str, bool]:
        """Pure read: paid is true once any PAID payment exists."""
        consultation = get_consultation_or_404(self.db, consultation_id)
        AccessControlService.ensure_consultation_access(user, consultation)
        return {"paid": get_paid_payment(self.db, consultation_id) is not None}

    def get_payment(self, payment_id: str, user: User) -> Payment:
        payment = self.db.query(Payment).filter(Payment.id == payment_id).first()
        if payment is None:
            raise NotFoundError("Payment not found")

        consultation = payment.consultation
        if consultation.patient_id != user.id and not AccessControlService.check_permission(
            user.role, Capability.VIEW_ALL_PAYMENTS
        ):
            raise ForbiddenError("Access denied")
        return payment
