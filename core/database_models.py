from datetime import datetime, timezone
import uuid
from sqlalchemy import (
    Column, Integer, String, DateTime, Text, Boolean, LargeBinary, ForeignKey,
    CheckConstraint, Index, text
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class ReportSchemaRow(Base):
    __tablename__ = 'report_schema'

    # Insertion order defines "most recent"; updated_at is provenance only
    id = Column(Integer, primary_key=True, autoincrement=True)
    version = Column(Integer, nullable=False, default=1)
    is_live = Column(Boolean, nullable=False, default=False, index=True)
    schema = Column(Text, nullable=False)  # JSON document
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    updated_by = Column(String(255))

    __table_args__ = (
        # At most one live row, enforced by the database as well as by promotion
        Index('uq_report_schema_single_live', 'is_live', unique=True,
              sqlite_where=text('is_live = 1'), postgresql_where=text('is_live')),
    )


class SettingsRow(Base):
    __tablename__ = 'settings'

    id = Column(Integer, primary_key=True, default=1)
    data = Column(LargeBinary, nullable=False)  # AES-GCM encrypted JSON blob
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint('id = 1', name='single_row'),
    )


class AdminUser(Base):
    __tablename__ = 'admin_users'

    id = Column(String(36), primary_key=True, default=new_id)
    username = Column(String(255), unique=True, nullable=False)
    email_hmac = Column(String(64), unique=True, nullable=False)
    email_encrypted = Column(LargeBinary, nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default='active')
    created_at = Column(DateTime, nullable=False, default=utcnow)
    last_login_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint("role IN ('admin', 'super_admin')", name='valid_role'),
        CheckConstraint("status IN ('active', 'inactive')", name='valid_status'),
    )

    # Relationships
    sessions = relationship("Session", back_populates="user", cascade="all, delete-orphan")
    reset_tokens = relationship("PasswordResetToken", back_populates="user", cascade="all, delete-orphan")


class Session(Base):
    __tablename__ = 'sessions'

    id = Column(String(64), primary_key=True)
    user_id = Column(String(36), ForeignKey('admin_users.id', ondelete='CASCADE'), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)

    # Relationships
    user = relationship("AdminUser", back_populates="sessions")


class InvitationToken(Base):
    __tablename__ = 'invitation_tokens'

    id = Column(String(36), primary_key=True, default=new_id)
    email_encrypted = Column(LargeBinary, nullable=False)
    role = Column(String(20), nullable=False)
    token_hash = Column(String(64), nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False)
    used = Column(Boolean, nullable=False, default=False)


class PasswordResetToken(Base):
    __tablename__ = 'password_reset_tokens'

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey('admin_users.id', ondelete='CASCADE'), nullable=False)
    token_hash = Column(String(64), nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False)
    used = Column(Boolean, nullable=False, default=False)

    # Relationships
    user = relationship("AdminUser", back_populates="reset_tokens")


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey('admin_users.id', ondelete='SET NULL'))
    action = Column(String(100), nullable=False)
    detail = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
