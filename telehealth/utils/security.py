import logging
from datetime import timedelta
from typing import Optional, Dict, Any

from jose import JWTError, jwt

from telehealth.config import settings
from telehealth.utils.clock import utcnow

logger = logging.getLogger(__name__)

ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    if expires_delta:
        expire = utcnow() + expires_delta
    else:
        expire = utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})

    return jwt.encode(to_encode, settings.jwt_secret(), algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode a bearer token issued by the session service.
    Returns None when the signature, expiry or format is invalid.
    """
    try:
        return jwt.decode(token, settings.jwt_secret(), algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        logger.info(f"Bearer verification failed: {type(e).__name__}")
        return None
