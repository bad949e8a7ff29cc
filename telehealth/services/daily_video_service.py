"""
Daily.co Video Service
======================

Thin client over the Daily.co REST API used by the join flow:
- private room creation with a caller-chosen unique name
- meeting tokens with an explicit hard expiry (owner or participant)
- room deletion, used both when a call closes and as a compensating action

Every call is synchronous with a timeout and no retry; failures surface as
VideoProviderError.
"""

import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Dict, Any, Optional

import requests

from telehealth.config import settings
from telehealth.core.errors import VideoProviderError
from telehealth.utils.clock import utcnow, epoch_millis

logger = logging.getLogger(__name__)


class DailyVideoService:
    """
    Daily.co video service for consultations.

    Features:
    - Room naming: consult_{consultation_id}_{epoch_millis}
    - Role-based tokens (doctor/admin = owner, patient = participant)
    - Idempotent room deletion (already-gone rooms count as deleted)
    """

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.api_key = api_key if api_key is not None else settings.DAILY_API_KEY
        self.base_url = (base_url or settings.DAILY_API_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.PROVIDER_TIMEOUT_SECONDS

        if not self.api_key:
            logger.warning("DAILY_API_KEY not set - video rooms cannot be created")

        self.headers = {
            "Authorization": f"Bearer {self.api_key}" if self.api_key else "",
            "Content-Type": "application/json"
        }

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    @staticmethod
    def generate_room_name(consultation_id: str, now: datetime) -> str:
        """
        consult_<id>_<epochMillis>_<suffix>. The random suffix keeps names unique
        per attempt, so compensation only ever deletes its own room.
        """
        return f"consult_{consultation_id}_{epoch_millis(now)}_{uuid.uuid4().hex[:8]}"

    def _require_configured(self):
        if not self.is_configured:
            raise VideoProviderError("DAILY_API_KEY not configured")

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        try:
            return requests.request(
                method,
                f"{self.base_url}{path}",
                headers=self.headers,
                timeout=self.timeout,
                **kwargs
            )
        except requests.RequestException as e:
            raise VideoProviderError(f"Daily.co request failed: {type(e).__name__}") from e

    def create_room(self, room_name: str, expiry_minutes: Optional[int] = None) -> Dict[str, Any]:
        """
        Create a private video room.

        Returns:
            Dictionary with room_name and room_url
        """
        self._require_configured()

        minutes = expiry_minutes or settings.DAILY_ROOM_EXPIRY_MINUTES
        exp_time = utcnow() + timedelta(minutes=minutes)

        payload = {
            "name": room_name,
            "privacy": "private",
            "properties": {
                "exp": epoch_millis(exp_time) // 1000,
                "eject_at_room_exp": True,
                "enable_chat": True,
                "enable_screenshare": True,
                "enable_prejoin_ui": True,
                "max_participants": 2,
            }
        }

        response = self._request("POST", "/rooms", json=payload)
        if response.status_code != 200:
            logger.error(f"[Daily] Failed to create room {room_name}: HTTP {response.status_code}")
            raise VideoProviderError(f"Failed to create video room (HTTP {response.status_code})")

        room_data = response.json()
        logger.info(f"[Daily] Created room: {room_data['name']}")

        return {
            "room_name": room_data["name"],
            "room_url": room_data["url"],
        }

    def create_meeting_token(
        self,
        room_name: str,
        user_id: str,
        user_name: str,
        is_owner: bool,
        expires_at: datetime
    ) -> str:
        """
        Create a meeting token for a specific participant.

        Args:
            room_name: Daily.co room name
            user_id: Internal user ID (for tracking, not displayed)
            user_name: Display name
            is_owner: Whether the participant may manage and end the call
            expires_at: Hard expiry instant (naive UTC)

        Returns:
            Meeting token string
        """
        self._require_configured()

        payload = {
            "properties": {
                "room_name": room_name,
                "user_name": user_name,
                "user_id": user_id,
                "is_owner": is_owner,
                "exp": epoch_millis(expires_at) // 1000,
            }
        }

        response = self._request("POST", "/meeting-tokens", json=payload)
        if response.status_code != 200:
            logger.error(f"[Daily] Failed to mint meeting token for {room_name}: HTTP {response.status_code}")
            raise VideoProviderError(f"Failed to create meeting token (HTTP {response.status_code})")

        return response.json()["token"]

    def delete_room(self, room_name: str) -> bool:
        """
        Delete a room. A room that is already gone counts as deleted.
        Raises VideoProviderError on any other failure.
        """
        response = self._request("DELETE", f"/rooms/{room_name}")

        if response.status_code in (200, 404):
            logger.info(f"[Daily] Deleted room: {room_name}")
            return True

        logger.warning(f"[Daily] Failed to delete room {room_name}: HTTP {response.status_code}")
        raise VideoProviderError(f"Failed to delete video room (HTTP {response.status_code})")


_daily_service: Optional[DailyVideoService] = None
_daily_service_lock = threading.Lock()


def get_daily_service() -> DailyVideoService:
    """Get singleton Daily.co service instance."""
    global _daily_service
    if _daily_service is None:
        with _daily_service_lock:
            if _daily_service is None:
                _daily_service = DailyVideoService()
    return _daily_service
