# core/user_store.py
"""
Admin users, invitations and password reset tokens.

Email addresses are never stored in the clear: each is kept as an HMAC for
exact-match lookup plus an AES-GCM encrypted copy for display and sending.
Invite and reset tokens are stored only as SHA-256 hashes.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from core.crypto import Crypter, email_hmac, hash_token, normalize_email
from core.database import Database
from core.database_models import (
    AdminUser, InvitationToken, PasswordResetToken, Session, new_id, utcnow
)
from core.errors import NotFoundError, StorageError, ValidationError
from core.security_manager import SecurityManager

logger = logging.getLogger(__name__)

ROLES = ('admin', 'super_admin')
STATUSES = ('active', 'inactive')
INVITE_TTL = timedelta(hours=48)
RESET_TTL = timedelta(hours=1)

_USERNAME_STRIP = re.compile(r'[^a-z0-9._-]+')


@dataclass
class UserView:
    """Decrypted, API-safe view of an admin user"""
    id: str
    username: str
    email: str
    role: str
    status: str
    created_at: Optional[datetime]
    last_login_at: Optional[datetime]

    @property
    def is_super_admin(self) -> bool:
        return self.role == 'super_admin'

    @property
    def is_active(self) -> bool:
        return self.status == 'active'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'role': self.role,
            'status': self.status,
            'createdAt': self.created_at.isoformat() + 'Z' if self.created_at else None,
            'lastLoginAt': self.last_login_at.isoformat() + 'Z' if self.last_login_at else None,
        }


def validate_admin_email(email: str) -> str:
    """Syntax check only; admin mailboxes are not probed over DNS"""
    try:
        return validate_email(normalize_email(email), check_deliverability=False).normalized
    except EmailNotValidError as e:
        raise ValidationError(f"invalid email address: {e}") from e


def validate_role(role: str) -> str:
    if role not in ROLES:
        raise ValidationError(f"role must be one of: {', '.join(ROLES)}")
    return role


def validate_status(status: str) -> str:
    if status not in STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(STATUSES)}")
    return status


class UserStore:
    def __init__(self, db: Database, crypter: Crypter, hmac_key: bytes,
                 security_manager: SecurityManager):
        self.session_factory = db.session_factory
        self.crypter = crypter
        self.hmac_key = hmac_key
        self.security = security_manager

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def _view(self, row: AdminUser) -> UserView:
        try:
            email = self.crypter.decrypt_str(row.email_encrypted)
        except StorageError as e:
            logger.error(f"Could not decrypt email for user {row.id}")
            raise StorageError(f"stored email for user {row.id} is unreadable") from e
        return UserView(
            id=row.id,
            username=row.username,
            email=email,
            role=row.role,
            status=row.status,
            created_at=row.created_at,
            last_login_at=row.last_login_at,
        )

    def _unique_username(self, session, email: str) -> str:
        base = _USERNAME_STRIP.sub('', email.split('@', 1)[0].lower()) or 'admin'
        candidate, n = base, 1
        while session.scalar(select(func.count()).select_from(AdminUser)
                             .where(AdminUser.username == candidate)):
            n += 1
            candidate = f"{base}-{n}"
        return candidate

    def _insert_user(self, session, email: str, password: str, role: str,
                     status: str = 'active') -> AdminUser:
        email = validate_admin_email(email)
        validate_role(role)
        validate_status(status)
        self.security.validate_password(password)

        digest = email_hmac(self.hmac_key, email)
        if session.scalar(select(func.count()).select_from(AdminUser)
                          .where(AdminUser.email_hmac == digest)):
            raise ValidationError("a user with that email already exists")

        row = AdminUser(
            id=new_id(),
            username=self._unique_username(session, email),
            email_hmac=digest,
            email_encrypted=self.crypter.encrypt_str(email),
            password_hash=self.security.hash_password(password),
            role=role,
            status=status,
        )
        session.add(row)
        session.flush()
        return row

    def create_user(self, email: str, password: str, role: str, status: str = 'active') -> UserView:
        try:
            with self.session_factory.begin() as session:
                row = self._insert_user(session, email, password, role, status)
                view = self._view(row)
        except IntegrityError as e:
            raise ValidationError("a user with that email already exists") from e
        except SQLAlchemyError as e:
            logger.error(f"Failed to create user: {e}")
            raise StorageError("failed to create user") from e
        logger.info(f"Created {role} user {view.id}")
        return view

    def count(self) -> int:
        with self.session_factory() as session:
            return session.scalar(select(func.count()).select_from(AdminUser))

    def get_by_id(self, user_id: str) -> UserView:
        with self.session_factory() as session:
            row = session.get(AdminUser, user_id)
            if row is None:
                raise NotFoundError("user not found")
            return self._view(row)

    def get_by_email(self, email: str) -> UserView:
        digest = email_hmac(self.hmac_key, email)
        with self.session_factory() as session:
            row = session.execute(
                select(AdminUser).where(AdminUser.email_hmac == digest)
            ).scalar_one_or_none()
            if row is None:
                raise NotFoundError("user not found")
            return self._view(row)

    def list_users(self) -> List[UserView]:
        with self.session_factory() as session:
            rows = session.execute(select(AdminUser).order_by(AdminUser.created_at)).scalars().all()
            return [self._view(row) for row in rows]

    def authenticate(self, identifier: str, password: str) -> Optional[UserView]:
        """
        Check credentials by email or username.

        Returns the user on success, None otherwise. Unknown accounts still
        pay for one bcrypt comparison.
        """
        identifier = (identifier or '').strip()
        with self.session_factory.begin() as session:
            if '@' in identifier:
                condition = AdminUser.email_hmac == email_hmac(self.hmac_key, identifier)
            else:
                condition = AdminUser.username == identifier.lower()
            row = session.execute(select(AdminUser).where(condition)).scalar_one_or_none()

            if not self.security.verify_password(password or '', row.password_hash if row else None):
                return None
            if row.status != 'active':
                return None
            row.last_login_at = utcnow()
            return self._view(row)

    def _active_super_admins(self, session) -> int:
        return session.scalar(
            select(func.count()).select_from(AdminUser)
            .where(AdminUser.role == 'super_admin', AdminUser.status == 'active')
        )

    def update_user(self, user_id: str, role: Optional[str] = None,
                    status: Optional[str] = None) -> UserView:
        if role is not None:
            validate_role(role)
        if status is not None:
            validate_status(status)

        with self.session_factory.begin() as session:
            row = session.get(AdminUser, user_id)
            if row is None:
                raise NotFoundError("user not found")

            loses_super_admin = (
                row.role == 'super_admin' and row.status == 'active'
                and ((role is not None and role != 'super_admin')
                     or (status is not None and status != 'active'))
            )
            if loses_super_admin and self._active_super_admins(session) <= 1:
                raise ValidationError("cannot demote or deactivate the last super_admin account")

            if role is not None:
                row.role = role
            if status is not None:
                row.status = status
            view = self._view(row)

        if status == 'inactive':
            self._delete_sessions(user_id)
        return view

    def delete_user(self, user_id: str, acting_user_id: str) -> None:
        if user_id == acting_user_id:
            raise ValidationError("cannot delete your own account")

        with self.session_factory.begin() as session:
            row = session.get(AdminUser, user_id)
            if row is None:
                raise NotFoundError("user not found")
            if row.role == 'super_admin' and self._active_super_admins(session) <= 1 \
                    and row.status == 'active':
                raise ValidationError("cannot delete the last super_admin account")

            session.execute(delete(Session).where(Session.user_id == user_id))
            session.delete(row)
        logger.info(f"Deleted user {user_id}")

    def set_password(self, user_id: str, new_password: str) -> None:
        """Change the password and drop every session of the user"""
        self.security.validate_password(new_password)
        with self.session_factory.begin() as session:
            row = session.get(AdminUser, user_id)
            if row is None:
                raise NotFoundError("user not found")
            row.password_hash = self.security.hash_password(new_password)
            session.execute(delete(Session).where(Session.user_id == user_id))

    def verify_user_password(self, user_id: str, password: str) -> bool:
        with self.session_factory() as session:
            row = session.get(AdminUser, user_id)
            return self.security.verify_password(password or '', row.password_hash if row else None)

    def _delete_sessions(self, user_id: str) -> None:
        with self.session_factory.begin() as session:
            session.execute(delete(Session).where(Session.user_id == user_id))

    def seed_first_admin(self, email: str, password: str) -> bool:
        """Create a super_admin when the user table is empty"""
        if not email or not password:
            return False
        if self.count():
            return False
        self.create_user(email, password, 'super_admin')
        logger.info("Seeded first super_admin account")
        return True

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    def create_invite(self, email: str, role: str) -> str:
        """Store a hashed invite and return the raw token for the invite URL"""
        email = validate_admin_email(email)
        validate_role(role)
        with self.session_factory() as session:
            exists = session.scalar(select(func.count()).select_from(AdminUser)
                                    .where(AdminUser.email_hmac == email_hmac(self.hmac_key, email)))
        if exists:
            raise ValidationError("a user with that email already exists")

        token = self.security.generate_token()
        with self.session_factory.begin() as session:
            session.add(InvitationToken(
                id=new_id(),
                email_encrypted=self.crypter.encrypt_str(email),
                role=role,
                token_hash=hash_token(token),
                expires_at=utcnow() + INVITE_TTL,
                used=False,
            ))
        return token

    def accept_invite(self, token: str, password: str) -> UserView:
        """Create the invited user and consume the invite in one transaction"""
        if not token:
            raise NotFoundError("invitation not found")
        try:
            with self.session_factory.begin() as session:
                invite = session.execute(
                    select(InvitationToken).where(
                        InvitationToken.token_hash == hash_token(token),
                        InvitationToken.used.is_(False),
                        InvitationToken.expires_at > utcnow(),
                    )
                ).scalar_one_or_none()
                if invite is None:
                    raise NotFoundError("invitation not found or expired")

                email = self.crypter.decrypt_str(invite.email_encrypted)
                row = self._insert_user(session, email, password, invite.role)
                invite.used = True
                view = self._view(row)
        except IntegrityError as e:
            raise ValidationError("a user with that email already exists") from e
        logger.info(f"Invitation accepted, created user {view.id}")
        return view

    # ------------------------------------------------------------------
    # Password resets
    # ------------------------------------------------------------------

    def create_password_reset(self, email: str) -> Optional[Tuple[UserView, str]]:
        """Returns (user, raw token), or None when no active user has that email"""
        try:
            user = self.get_by_email(email)
        except NotFoundError:
            return None
        if not user.is_active:
            return None

        token = self.security.generate_token()
        with self.session_factory.begin() as session:
            session.add(PasswordResetToken(
                id=new_id(),
                user_id=user.id,
                token_hash=hash_token(token),
                expires_at=utcnow() + RESET_TTL,
                used=False,
            ))
        return user, token

    def reset_password(self, token: str, new_password: str) -> str:
        """Consume a reset token, set the password and log the user out everywhere"""
        self.security.validate_password(new_password)
        if not token:
            raise NotFoundError("reset token not found")
        with self.session_factory.begin() as session:
            reset = session.execute(
                select(PasswordResetToken).where(
                    PasswordResetToken.token_hash == hash_token(token),
                    PasswordResetToken.used.is_(False),
                    PasswordResetToken.expires_at > utcnow(),
                )
            ).scalar_one_or_none()
            if reset is None:
                raise NotFoundError("reset token not found or expired")

            user = session.get(AdminUser, reset.user_id)
            user.password_hash = self.security.hash_password(new_password)
            reset.used = True
            session.execute(delete(Session).where(Session.user_id == user.id))
            return user.id
