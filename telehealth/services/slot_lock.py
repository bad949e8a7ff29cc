"""
Advisory Redis lock on a doctor's time slot.

Narrows the window in which two consultations can be steered into the same
(doctor, start) pair. It is never the correctness boundary: the confirmed-slot
unique index in the database is. When Redis is unset or unreachable every
operation reports "unavailable" and callers carry on without it.
"""

import logging
import threading
from datetime import datetime
from typing import Optional

import redis
from redis.exceptions import RedisError

from telehealth.config import settings
from telehealth.utils.clock import epoch_millis

logger = logging.getLogger(__name__)


class SlotLock:
    KEY_PREFIX = "slotlock"

    def __init__(self, client: Optional["redis.Redis"] = None, ttl_seconds: Optional[int] = None):
        self._redis_client = client
        self.ttl_seconds = ttl_seconds or settings.SLOT_LOCK_TTL_SECONDS

    @property
    def available(self) -> bool:
        return self._redis_client is not None

    @classmethod
    def key_for(cls, doctor_id: str, scheduled_start_at: datetime) -> str:
        return f"{cls.KEY_PREFIX}:{doctor_id}:{epoch_millis(scheduled_start_at)}"

    def try_acquire(self, doctor_id: str, scheduled_start_at: datetime, owner: str) -> Optional[bool]:
        """
        Returns True when ``owner`` holds the lock (newly or already), False when
        someone else holds it, None when Redis is unavailable.
        """
        if not self._redis_client:
            return None

        key = self.key_for(doctor_id, scheduled_start_at)
        try:
            if self._redis_client.set(key, owner, nx=True, ex=self.ttl_seconds):
                return True
            return self._redis_client.get(key) == owner
        except RedisError as e:
            logger.warning(f"[SlotLock] Redis unavailable while locking {key}: {e}")
            return None

    def release(self, doctor_id: str, scheduled_start_at: datetime, owner: str) -> bool:
        """Best-effort; only the owner's lock is removed."""
        if not self._redis_client:
            return False

        key = self.key_for(doctor_id, scheduled_start_at)
        try:
            if self._redis_client.get(key) == owner:
                self._redis_client.delete(key)
                return True
        except RedisError as e:
            logger.warning(f"[SlotLock] Failed to release {key}: {e}")
        return False


_slot_lock: Optional[SlotLock] = None
_slot_lock_guard = threading.Lock()


def _connect() -> Optional["redis.Redis"]:
    if not settings.REDIS_URL:
        logger.info("[SlotLock] REDIS_URL not set - advisory slot locking disabled")
        return None
    try:
        client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0
        )
        client.ping()
        logger.info("[SlotLock] Connected to Redis")
        return client
    except RedisError as e:
        logger.warning(f"[SlotLock] Redis not available, slot locking disabled: {e}")
        return None


def get_slot_lock() -> SlotLock:
    """Get singleton slot lock; the Redis connection is attempted once."""
    global _slot_lock
    if _slot_lock is None:
        with _slot_lock_guard:
            if _slot_lock is None:
                _slot_lock = SlotLock(_connect())
    return _slot_lock
