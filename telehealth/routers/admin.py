"""
Admin Router
Read-only access to the consultation audit trail.
"""

import math
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from telehealth.core.access_control import AccessControlService, Capability
from telehealth.database import get_db
from telehealth.dependencies import get_current_user
from telehealth.models.user import User
from telehealth.schemas.consultation_schemas import (
    AuditEventListResponse,
    AuditEventResponse,
    PageMeta,
)
from telehealth.services.audit_logger import AuditRecorder, MAX_PAGE_SIZE

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


@router.get("/audit", response_model=AuditEventListResponse)
async def list_audit_events(
    eventType: Optional[str] = None,
    actorUserId: Optional[str] = None,
    consultationId: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Filtered, paginated audit events, newest first. Admins only."""
    AccessControlService.require(current_user, Capability.VIEW_AUDIT_LOG, "Admin access required")

    page = max(page, 1)
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    events, total = AuditRecorder.list_events(
        db,
        event_type=eventType,
        actor_user_id=actorUserId,
        consultation_id=consultationId,
        page=page,
        limit=limit
    )

    return AuditEventListResponse(
        data=[AuditEventResponse.model_validate(event) for event in events],
        meta=PageMeta(page=page, limit=limit, total=total, total_pages=math.ceil(total / limit))
    )
