"""
Logging setup for the clinic-operations service.

Patient contact details (emails, phone numbers) reach the logs only
through SecureLogger, which masks them before the record is written.
"""

import json
import logging
import re
import sys
from datetime import datetime
from typing import Any, Dict, Optional

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a module"""
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    return logger


class SecureLogger:
    """
    Masks contact details and secrets in log messages
    """

    SENSITIVE_PATTERNS = [
        r'password',
        r'secret',
        r'token',
        r'api[_-]?key',
        r'authorization',
        r'bearer',
        r'@',
        r'\+?\d{7,}',
    ]

    @staticmethod
    def sanitize_message(message: str) -> str:
        """
        Sanitize log message to remove sensitive information

        Args:
            message: Original log message

        Returns:
            Sanitized log message
        """
        message = re.sub(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b', '[email]', message)
        message = re.sub(r'\+?\d[\d\s().-]{6,}\d', '[phone]', message)
        message = re.sub(r'\b[A-Za-z0-9_-]{32,}\b', '[token]', message)

        if '\n' in message:
            message = message.split('\n')[0] + ' [stack trace truncated]'

        return message

    @staticmethod
    def should_sanitize(message: str) -> bool:
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


def log_error(message: str, logger_name: Optional[str] = None, exc_info: bool = False, **kwargs):
    """Log error message securely"""
    logger = get_logger(logger_name or __name__)
    if exc_info:
        kwargs['exc_info'] = True
    SecureLogger.log(logger, logging.ERROR, message, **kwargs)


def log_audit(event_type: str, user_id: Optional[str], details: Dict[str, Any]):
    """
    Log audit event with structured data

    Args:
        event_type: Type of audit event
        user_id: User ID (if applicable)
        details: Additional event details
    """
    logger = get_logger("audit")
    audit_entry = {
        "timestamp": datetime.utcnow().isoformat(),
        "event_type": event_type,
        "user_id": user_id,
        "details": details
    }
    logger.info(f"[AUDIT] {json.dumps(audit_entry, default=str)}")
