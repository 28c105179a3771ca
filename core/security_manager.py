# core/security_manager.py
"""
Security Manager for Firewatch
Implements:
- Password hashing and verification (bcrypt)
- Random token and session id generation
- Audit logging to the audit_log table
"""

import json
import logging
import secrets
from typing import Any, Dict, Optional

import bcrypt
from flask import has_request_context, request
from sqlalchemy.exc import SQLAlchemyError

from core.database import Database
from core.database_models import AuditLog
from core.errors import ValidationError

# Configure logging
logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 12
# bcrypt ignores everything past 72 bytes
MAX_PASSWORD_BYTES = 72
DEFAULT_BCRYPT_ROUNDS = 12


class SecurityManager:
    """
    Password, token and audit helpers shared by the stores and the API
    """

    def __init__(self, db: Database, bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS):
        """
        Initialize security manager

        Args:
            db: Database whose audit_log table receives security events
            bcrypt_rounds: bcrypt cost factor
        """
        self.session_factory = db.session_factory
        self.bcrypt_rounds = bcrypt_rounds

        # Dummy hash so unknown accounts cost the same as wrong passwords
        self._dummy_hash = self.hash_password(secrets.token_urlsafe(16))

        logger.info("SecurityManager initialized")

    def validate_password(self, password: str) -> None:
        if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
        if len(password.encode('utf-8')) > MAX_PASSWORD_BYTES:
            raise ValidationError(f"password must be at most {MAX_PASSWORD_BYTES} bytes")

    def hash_password(self, password: str) -> str:
        """
        Hash password with a per-password bcrypt salt

        Args:
            password: Plain text password

        Returns:
            bcrypt hash string
        """
        salt = bcrypt.gensalt(rounds=self.bcrypt_rounds)
        return bcrypt.hashpw(password.encode('utf-8'), salt).decode('ascii')

    def verify_password(self, password: str, hashed_password: Optional[str]) -> bool:
        """
        Verify password against hash

        Args:
            password: Plain text password to verify
            hashed_password: Stored bcrypt hash, or None for an unknown account

        Returns:
            True if password is valid
        """
        target = hashed_password or self._dummy_hash
        try:
            matched = bcrypt.checkpw(password.encode('utf-8'), target.encode('ascii'))
        except ValueError:
            logger.warning("Stored password hash is malformed")
            return False
        return matched and hashed_password is not None

    @staticmethod
    def generate_token() -> str:
        """URL-safe single-use token for invites and password resets"""
        return secrets.token_urlsafe(32)

    @staticmethod
    def generate_session_id() -> str:
        return secrets.token_hex(32)

    def log_security_event(self, event_type: str, details: Dict[str, Any] = None,
                           user_id: Optional[str] = None) -> None:
        """
        Log security event for audit trail

        Args:
            event_type: Type of security event
            details: Additional event details (never report content or secrets)
            user_id: Acting admin, when known
        """
        details = dict(details or {})
        if has_request_context():
            details.setdefault('endpoint', request.endpoint)
            details.setdefault('method', request.method)

        try:
            with self.session_factory.begin() as session:
                session.add(AuditLog(
                    user_id=user_id,
                    action=event_type,
                    detail=json.dumps(details, default=str),
                ))
        except SQLAlchemyError as e:
            logger.error(f"Failed to log security event {event_type}: {e}")
            return

        logger.info(f"Security event logged: {event_type}")
