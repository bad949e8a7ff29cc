"""
Join Orchestrator
=================

Grants a participant access to a consultation's video call.

The first successful join provisions the provider room, then commits the
VideoSession row, the PAID -> IN_CALL transition (with started_at) and its
audit event as one unit. The room is created before that unit because the
row needs its name and URL; when the unit fails the room is deleted again
(compensating action). A failed compensation is logged and the room is left
behind: there is no reconciliation job for such orphans.

Concurrent first joins are settled by the unique consultation_id on
video_sessions. The loser compensates its own room and continues with the
winner's session. Room names carry a random suffix, so a loser never touches
the winner's room; if the loser's room creation itself fails while a winner
already exists, it likewise continues with the winner. Every join mints a
fresh short-lived token; rooms are reused.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from telehealth.config import settings
from telehealth.core.access_control import AccessControlService, Capability
from telehealth.core.errors import ConsultationError, ValidationError, VideoProviderError
from telehealth.database import atomic
from telehealth.models.consultation import Consultation, ConsultationStatus, VideoSession
from telehealth.models.user import User
from telehealth.services.audit_logger import AuditRecorder, AuditContext
from telehealth.services.consultation_store import get_consultation_or_404, get_video_session
from telehealth.services.daily_video_service import DailyVideoService
from telehealth.services.status_transitions import StatusTransitionValidator
from telehealth.services.time_window import check_joinable
from telehealth.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

JOINABLE_STATUSES = (ConsultationStatus.PAID, ConsultationStatus.IN_CALL)
VIDEO_PROVIDER = "DAILY"


class VideoProvider(Protocol):
    def create_room(self, room_name: str) -> Dict[str, Any]: ...

    def create_meeting_token(self, room_name: str, user_id: str, user_name: str,
                             is_owner: bool, expires_at: datetime) -> str: ...

    def delete_room(self, room_name: str) -> bool: ...


class JoinOrchestrator:
    def __init__(
        self,
        db: Session,
        video_provider: VideoProvider,
        clock: Clock = utcnow,
        context: Optional[AuditContext] = None
    ):
        self.db = db
        self.video_provider = video_provider
        self.clock = clock
        self.context = context

    def join(self, consultation_id: str, user: User) -> Dict[str, Any]:
        """
        Authorize ``user`` and return {joinUrl, roomUrl, token, expiresAt}.

        Raises NotFoundError, ForbiddenError, ValidationError (wrong status),
        TimeWindowError (outside the join window) or VideoProviderError.
        """
        now = self.clock()
        consultation = get_consultation_or_404(self.db, consultation_id)
        AccessControlService.ensure_consultation_access(user, consultation)

        if consultation.status not in JOINABLE_STATUSES:
            raise ValidationError(
                "Consultation is not ready to join",
                {
                    "currentStatus": consultation.status.value,
                    "requiredStatus": " or ".join(s.value for s in JOINABLE_STATUSES),
                }
            )

        check_joinable(consultation.scheduled_start_at, now)

        video_session = get_video_session(self.db, consultation.id)
        if video_session is None:
            video_session = self._provision(consultation, user, now)
        else:
            logger.info(f"[Join] Reusing room {video_session.room_name} for consultation {consultation.id}")

        is_owner = AccessControlService.check_permission(user.role, Capability.OWN_CALL)
        expires_at = now + timedelta(minutes=settings.JOIN_TOKEN_EXPIRY_MINUTES)
        room_name = video_session.room_name
        room_url = video_session.room_url

        token = self.video_provider.create_meeting_token(
            room_name=room_name,
            user_id=user.id,
            user_name=user.role.value.title(),
            is_owner=is_owner,
            expires_at=expires_at
        )

        with atomic(self.db):
            AuditRecorder.log_join_token_minted(
                self.db, user, consultation_id, room_name, is_owner, context=self.context, now=now
            )

        logger.info(f"[Join] Token minted for {user.role.value} {user.id} on consultation {consultation_id}")
        return {
            "joinUrl": f"{room_url}?t={token}",
            "roomUrl": room_url,
            "token": token,
            "expiresAt": expires_at,
        }

    def _provision(self, consultation: Consultation, user: User, now: datetime) -> VideoSession:
        """First join: create the room, then commit session + transition + audit or compensate."""
        consultation_id = consultation.id
        try:
            room = self.video_provider.create_room(DailyVideoService.generate_room_name(consultation_id, now))
        except VideoProviderError:
            winner = get_video_session(self.db, consultation_id)
            if winner is None:
                raise
            logger.info(f"[Join] Room creation failed but consultation {consultation_id} already has room "
                        f"{winner.room_name}; continuing with it")
            return winner
        room_name = room["room_name"]

        try:
            with atomic(self.db):
                video_session = VideoSession(
                    consultation_id=consultation_id,
                    provider=VIDEO_PROVIDER,
                    room_name=room_name,
                    room_url=room["room_url"],
                    created_at=now,
                )
                self.db.add(video_session)
                self.db.flush()

                if consultation.status == ConsultationStatus.PAID:
                    StatusTransitionValidator.apply(
                        self.db, consultation, ConsultationStatus.IN_CALL, user, now, context=self.context
                    )
        except IntegrityError:
            logger.info(f"[Join] Concurrent first join on consultation {consultation_id}; discarding room {room_name}")
            self.compensate(room_name, consultation_id)
            winner = get_video_session(self.db, consultation_id)
            if winner is None:
                raise ConsultationError("Video session could not be created")
            return winner
        except Exception:
            self.compensate(room_name, consultation_id)
            raise

        logger.info(f"[Join] Provisioned room {room_name} for consultation {consultation_id}")
        return video_session

    def compensate(self, room_name: str, consultation_id: str):
        """Delete a room whose session row never committed. Failures are logged only."""
        try:
            self.video_provider.delete_room(room_name)
            logger.info(f"[Join] Compensated room {room_name} for consultation {consultation_id}")
        except Exception as e:
            logger.error(
                f"[Join] Compensation failed for room {room_name} (consultation {consultation_id}); "
                f"room left orphaned: {type(e).__name__}: {e}"
            )

    def close(self, consultation_id: str, user: User) -> Consultation:
        """
        End an active call: IN_CALL -> COMPLETED with the session's ended_at in
        the same unit, then delete the room. Room deletion failure does not undo
        the completion.
        """
        now = self.clock()
        consultation = get_consultation_or_404(self.db, consultation_id)
        AccessControlService.ensure_consultation_access(user, consultation)
        AccessControlService.require(user, Capability.CLOSE_CALL, "Only the doctor or an admin can end the call")

        if consultation.status != ConsultationStatus.IN_CALL:
            raise ValidationError(
                "Only an active call can be closed",
                {"currentStatus": consultation.status.value, "requiredStatus": ConsultationStatus.IN_CALL.value}
            )

        video_session = get_video_session(self.db, consultation_id)
        with atomic(self.db):
            StatusTransitionValidator.apply(
                self.db, consultation, ConsultationStatus.COMPLETED, user, now,
                audit_extra={"closedBy": user.id},
                context=self.context
            )
            if video_session is not None:
                video_session.ended_at = now
                self.db.flush()

        if video_session is not None:
            try:
                self.video_provider.delete_room(video_session.room_name)
            except VideoProviderError as e:
                logger.warning(f"[Join] Room {video_session.room_name} not deleted after close: {e}")

        logger.info(f"[Join] Consultation {consultation_id} closed by {user.role.value} {user.id}")
        return consultation
