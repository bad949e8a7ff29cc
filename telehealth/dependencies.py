from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from telehealth.core.errors import UnauthorizedError
from telehealth.database import get_db
from telehealth.models.user import User
from telehealth.services.audit_logger import AuditContext
from telehealth.services.consultation_service import ConsultationService
from telehealth.services.daily_video_service import DailyVideoService, get_daily_service
from telehealth.services.join_orchestrator import JoinOrchestrator
from telehealth.services.payment_initiator import PaymentInitiator
from telehealth.services.slot_lock import SlotLock, get_slot_lock
from telehealth.services.stripe_service import StripeService, get_stripe_service
from telehealth.utils.clock import Clock, utcnow
from telehealth.utils.security import verify_token

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db)
) -> User:
    if not token:
        raise UnauthorizedError("Authentication required")

    payload = verify_token(token)
    if payload is None:
        raise UnauthorizedError("Could not validate credentials")

    user_id = payload.get("sub")
    if user_id is None or not isinstance(user_id, str):
        raise UnauthorizedError("Could not validate credentials")

    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise UnauthorizedError("Could not validate credentials")

    return user


def get_clock() -> Clock:
    return utcnow


def get_video_provider() -> DailyVideoService:
    return get_daily_service()


def get_payment_provider() -> StripeService:
    return get_stripe_service()


def get_audit_context(request: Request) -> AuditContext:
    return AuditContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent")
    )


def get_consultation_service(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    slot_lock: SlotLock = Depends(get_slot_lock),
    context: AuditContext = Depends(get_audit_context)
) -> ConsultationService:
    return ConsultationService(db, clock=clock, slot_lock=slot_lock, context=context)


def get_join_orchestrator(
    db: Session = Depends(get_db),
    video_provider=Depends(get_video_provider),
    clock: Clock = Depends(get_clock),
    context: AuditContext = Depends(get_audit_context)
) -> JoinOrchestrator:
    return JoinOrchestrator(db, video_provider, clock=clock, context=context)


def get_payment_initiator(
    db: Session = Depends(get_db),
    payment_provider=Depends(get_payment_provider),
    clock: Clock = Depends(get_clock),
    context: AuditContext = Depends(get_audit_context)
) -> PaymentInitiator:
    return PaymentInitiator(db, payment_provider, clock=clock, context=context)
