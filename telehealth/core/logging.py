"""
Secure Logging Utility

Structured logging for the consultation service.

SECURITY REQUIREMENTS:
- Meeting tokens, bearer tokens and provider API keys never reach the logs
- Every failure is logged with the consultation id for correlation
- Each committed audit event emits one [AUDIT] line on the "audit" logger
"""

import json
import logging
import re
import sys
from typing import Optional, Dict, Any

from telehealth.config import settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_configured = False


def configure_logging(level: Optional[str] = None):
    """Configure the root logger once; later calls only adjust the level."""
    global _configured
    resolved = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)
    if not _configured:
        logging.basicConfig(
            level=resolved,
            format=LOG_FORMAT,
            handlers=[
                logging.StreamHandler(sys.stdout)
            ]
        )
        _configured = True
    logging.getLogger().setLevel(resolved)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a module"""
    return logging.getLogger(name)


class SecureLogger:
    """
    Logging wrapper that strips credentials from messages before they are emitted
    """

    SENSITIVE_PATTERNS = [
        r'secret',
        r'token',
        r'api[_-]?key',
        r'authorization',
        r'bearer',
        r'password',
        r'credential',
    ]

    @staticmethod
    def sanitize_message(message: str) -> str:
        # Query-string tokens (join URLs carry ?t=<token>)
        message = re.sub(r'([?&]t=)[^\s&]+', r'\1[token]', message)

        # Bearer credentials
        message = re.sub(r'(?i)(bearer\s+)[A-Za-z0-9._\-]+', r'\1[token]', message)

        # JWT-shaped strings
        message = re.sub(r'\beyJ[A-Za-z0-9_\-]*\.[A-Za-z0-9_\-]*\.[A-Za-z0-9_\-]*', '[token]', message)

        # Stripe secret keys
        message = re.sub(r'\b(sk|rk)_(live|test)_[A-Za-z0-9]+', '[api_key]', message)

        # Long alphanumeric strings (likely tokens)
        message = re.sub(r'\b[A-Za-z0-9]{32,}\b', '[token]', message)

        # Email addresses
        message = re.sub(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b', '[email]', message)

        if '\n' in message:
            message = message.split('\n')[0] + ' [stack trace truncated]'

        return message

    @staticmethod
    def should_sanitize(message: str) -> bool:
        """Check if message contains sensitive patterns"""
        message_lower = message.lower()
        for pattern in SecureLogger.SENSITIVE_PATTERNS:
            if re.search(pattern, message_lower):
                return True
        return False

    @classmethod
    def log(cls, logger: logging.Logger, level: int, message: str, *args, **kwargs):
        if cls.should_sanitize(message):
            message = cls.sanitize_message(message)
            logger.log(level, f"[SANITIZED] {message}", *args, **kwargs)
        else:
            logger.log(level, message, *args, **kwargs)


def log_audit(event_type: str, user_id: Optional[str], consultation_id: Optional[str],
              details: Dict[str, Any], timestamp: str):
    """
    Log audit event with structured data

    Args:
        event_type: Type of audit event
        user_id: Acting user ID (if applicable)
        consultation_id: Consultation the event belongs to
        details: Event metadata
        timestamp: ISO instant the event was recorded
    """
    audit_entry = {
        "timestamp": timestamp,
        "event_type": event_type,
        "user_id": user_id,
        "consultation_id": consultation_id,
        "details": details
    }
    get_logger("audit").info(f"[AUDIT] {json.dumps(audit_entry, default=str)}")
