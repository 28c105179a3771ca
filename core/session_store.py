# core/session_store.py
"""
Server-side admin sessions: opaque random ids with an absolute expiry
"""

import logging
from datetime import timedelta

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from core.database import Database
from core.database_models import Session, utcnow
from core.errors import NotFoundError, StorageError
from core.security_manager import SecurityManager

logger = logging.getLogger(__name__)

SESSION_TTL = timedelta(hours=4)


class SessionStore:
    def __init__(self, db: Database, ttl: timedelta = SESSION_TTL):
        self.session_factory = db.session_factory
        self.ttl = ttl

    def create(self, user_id: str) -> str:
        session_id = SecurityManager.generate_session_id()
        now = utcnow()
        try:
            with self.session_factory.begin() as session:
                session.add(Session(id=session_id, user_id=user_id,
                                    created_at=now, expires_at=now + self.ttl))
        except SQLAlchemyError as e:
            logger.error(f"Failed to create session: {e}")
            raise StorageError("failed to create session") from e
        return session_id

    def get_user_id(self, session_id: str) -> str:
        """User id for a live session; expired and unknown ids are NotFound"""
        if not session_id:
            raise NotFoundError("no session")
        try:
            with self.session_factory() as session:
                user_id = session.execute(
                    select(Session.user_id)
                    .where(Session.id == session_id, Session.expires_at > utcnow())
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Failed to read session: {e}")
            raise StorageError("failed to read session") from e

        if user_id is None:
            raise NotFoundError("session not found or expired")
        return user_id

    def delete(self, session_id: str) -> None:
        self._delete(Session.id == session_id)

    def delete_all_by_user_id(self, user_id: str) -> int:
        """Log the user out everywhere"""
        count = self._delete(Session.user_id == user_id)
        logger.info(f"Deleted {count} session(s) for user {user_id}")
        return count

    def delete_expired(self) -> int:
        return self._delete(Session.expires_at <= utcnow())

    def _delete(self, condition) -> int:
        try:
            with self.session_factory.begin() as session:
                result = session.execute(delete(Session).where(condition))
                return result.rowcount
        except SQLAlchemyError as e:
            logger.error(f"Failed to delete sessions: {e}")
            raise StorageError("failed to delete sessions") from e
