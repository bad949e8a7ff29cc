"""
Consultation Router
Booking, reads, role-gated updates and the video call lifecycle (join/close).
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from telehealth.dependencies import (
    get_clock,
    get_consultation_service,
    get_current_user,
    get_join_orchestrator,
)
from telehealth.models.user import User
from telehealth.schemas.consultation_schemas import (
    ConsultationCreate,
    ConsultationListResponse,
    ConsultationResponse,
    ConsultationUpdate,
    JoinResponse,
    Pagination,
)
from telehealth.services.consultation_service import ConsultationService, MAX_PAGE_SIZE
from telehealth.services.join_orchestrator import JoinOrchestrator
from telehealth.utils.clock import Clock

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/consultations", tags=["consultations"])


@router.post("", response_model=ConsultationResponse, status_code=status.HTTP_201_CREATED)
def create_consultation(
    request: ConsultationCreate,
    current_user: User = Depends(get_current_user),
    service: ConsultationService = Depends(get_consultation_service),
    clock: Clock = Depends(get_clock)
):
    """Book a consultation. Patients only."""
    consultation = service.create(current_user, request.specialty, request.scheduled_start_at)
    return ConsultationResponse.from_consultation(consultation, clock())


@router.get("", response_model=ConsultationListResponse)
async def list_consultations(
    status_filter: Optional[str] = Query(None, alias="status"),
    specialty: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
    current_user: User = Depends(get_current_user),
    service: ConsultationService = Depends(get_consultation_service),
    clock: Clock = Depends(get_clock)
):
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    offset = max(offset, 0)
    items, total = service.list(current_user, status_filter, specialty, limit, offset)
    now = clock()
    return ConsultationListResponse(
        data=[ConsultationResponse.from_consultation(c, now) for c in items],
        pagination=Pagination(total=total, limit=limit, offset=offset, has_more=offset + len(items) < total)
    )


@router.get("/{consultation_id}", response_model=ConsultationResponse)
async def get_consultation(
    consultation_id: str,
    current_user: User = Depends(get_current_user),
    service: ConsultationService = Depends(get_consultation_service),
    clock: Clock = Depends(get_clock)
):
    consultation = service.get(consultation_id, current_user)
    return ConsultationResponse.from_consultation(consultation, clock())


@router.patch("/{consultation_id}", response_model=ConsultationResponse)
def update_consultation(
    consultation_id: str,
    request: ConsultationUpdate,
    current_user: User = Depends(get_current_user),
    service: ConsultationService = Depends(get_consultation_service),
    clock: Clock = Depends(get_clock)
):
    """
    Partial update. Send back the last ``updatedAt`` you read to have the
    write rejected with 409 if someone else changed the consultation since.
    """
    consultation = service.update(
        consultation_id,
        current_user,
        status=request.status,
        doctor_id=request.doctor_id,
        scheduled_start_at=request.scheduled_start_at,
        updated_at=request.updated_at
    )
    return ConsultationResponse.from_consultation(consultation, clock())


@router.post("/{consultation_id}/join", response_model=JoinResponse)
def join_consultation(
    consultation_id: str,
    current_user: User = Depends(get_current_user),
    orchestrator: JoinOrchestrator = Depends(get_join_orchestrator)
):
    """
    Join the video call. The first join provisions the room and moves the
    consultation to IN_CALL; each call returns a fresh 30-minute token.
    """
    return orchestrator.join(consultation_id, current_user)


@router.post("/{consultation_id}/close", response_model=ConsultationResponse)
def close_consultation(
    consultation_id: str,
    current_user: User = Depends(get_current_user),
    orchestrator: JoinOrchestrator = Depends(get_join_orchestrator),
    clock: Clock = Depends(get_clock)
):
    consultation = orchestrator.close(consultation_id, current_user)
    return ConsultationResponse.from_consultation(consultation, clock())
