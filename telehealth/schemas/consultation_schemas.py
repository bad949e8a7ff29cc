"""
Pydantic schemas for the consultation API.
Field names are snake_case in Python and camelCase on the wire.
"""

from datetime import datetime
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from telehealth.models.consultation import Consultation
from telehealth.services.time_window import effective_status, is_upcoming


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ConsultationCreate(CamelModel):
    # Kept as str so unknown values get the service's validOptions error
    specialty: str
    scheduled_start_at: Optional[datetime] = None


class ConsultationUpdate(CamelModel):
    status: Optional[str] = None
    doctor_id: Optional[str] = None
    scheduled_start_at: Optional[datetime] = None
    updated_at: Optional[datetime] = Field(None, description="Last updatedAt the client saw")


class VideoSessionResponse(CamelModel):
    room_name: str
    room_url: str
    created_at: datetime
    ended_at: Optional[datetime] = None


class ConsultationResponse(CamelModel):
    id: str
    patient_id: str
    doctor_id: Optional[str] = None
    specialty: str
    status: str
    effective_status: str
    is_upcoming: bool
    scheduled_start_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    video_session: Optional[VideoSessionResponse] = None

    @classmethod
    def from_consultation(cls, consultation: Consultation, now: datetime) -> "ConsultationResponse":
        video_session = consultation.video_session
        return cls(
            id=consultation.id,
            patient_id=consultation.patient_id,
            doctor_id=consultation.doctor_id,
            specialty=consultation.specialty.value,
            status=consultation.status.value,
            effective_status=effective_status(consultation, now).value,
            is_upcoming=is_upcoming(consultation, now),
            scheduled_start_at=consultation.scheduled_start_at,
            started_at=consultation.started_at,
            ended_at=consultation.ended_at,
            created_at=consultation.created_at,
            updated_at=consultation.updated_at,
            video_session=VideoSessionResponse.model_validate(video_session) if video_session else None,
        )


class Pagination(CamelModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class ConsultationListResponse(CamelModel):
    data: List[ConsultationResponse]
    pagination: Pagination


class JoinResponse(CamelModel):
    join_url: str
    room_url: str
    token: str
    expires_at: datetime


class AuditEventResponse(CamelModel):
    id: str
    actor_user_id: Optional[str] = None
    consultation_id: Optional[str] = None
    event_type: str
    event_metadata: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime


class PageMeta(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int


class AuditEventListResponse(CamelModel):
    data: List[AuditEventResponse]
    meta: PageMeta
