"""
SQLAlchemy ORM models for linked accounts, sync history and mirrored data.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, relationship

from connectors.vault import EncryptedSecret, is_legacy_secret


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    ERROR = "error"
    REVOKED = "revoked"


class SyncRunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncRunStatus.SUCCEEDED, SyncRunStatus.FAILED)


class Base(DeclarativeBase):
    pass


class Connection(Base):
    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="connections_user_provider_unique"),
        Index("idx_connections_org", "organization_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(String(64), nullable=False)
    user_id = Column(String(64), nullable=False)
    provider = Column(String(32), nullable=False)
    account_email = Column(String(255))
    # {ciphertext, iv, authTag, salt}; null once revoked
    access_token_enc = Column(JSONB)
    refresh_token_enc = Column(JSONB)
    expires_at = Column(DateTime(timezone=True))
    status = Column(String(16), nullable=False, default=ConnectionStatus.ACTIVE.value)
    last_synced_at = Column(DateTime(timezone=True))
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    sync_runs = relationship("SyncRun", back_populates="connection")
    calendars = relationship("ExternalCalendar", back_populates="connection", cascade="all, delete-orphan")

    @property
    def access_token_secret(self) -> Optional[EncryptedSecret]:
        if not self.access_token_enc or is_legacy_secret(self.access_token_enc):
            return None
        return EncryptedSecret.from_dict(self.access_token_enc)

    @property
    def refresh_token_secret(self) -> Optional[EncryptedSecret]:
        if not self.refresh_token_enc or is_legacy_secret(self.refresh_token_enc):
            return None
        return EncryptedSecret.from_dict(self.refresh_token_enc)

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE.value


class SyncRun(Base):
    __tablename__ = "sync_runs"
    __table_args__ = (
        Index("idx_sync_runs_connection", "connection_id", "started_at"),
        Index("idx_sync_runs_org", "organization_id", "started_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    connection_id = Column(UUID(as_uuid=True), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False)
    organization_id = Column(String(64), nullable=False)
    user_id = Column(String(64), nullable=False)
    provider = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default=SyncRunStatus.QUEUED.value)
    started_at = Column(DateTime(timezone=True), default=utcnow)
    finished_at = Column(DateTime(timezone=True))
    stats = Column(JSONB, default=dict)
    error_message = Column(Text)

    connection = relationship("Connection", back_populates="sync_runs")


class SyncLease(Base):
    """At most one holder per connection; an expired lease may be taken over."""

    __tablename__ = "sync_leases"

    connection_id = Column(UUID(as_uuid=True), ForeignKey("connections.id", ondelete="CASCADE"), primary_key=True)
    holder = Column(String(255), nullable=False)
    acquired_at = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)


class ExternalCalendar(Base):
    __tablename__ = "external_calendars"
    __table_args__ = (
        UniqueConstraint("connection_id", "external_id", name="external_calendars_external_unique"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    connection_id = Column(UUID(as_uuid=True), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False)
    organization_id = Column(String(64), nullable=False)
    user_id = Column(String(64), nullable=False)
    external_id = Column(Text, nullable=False)
    name = Column(Text, nullable=False)
    time_zone = Column(String(64))
    is_primary = Column(Boolean, default=False)
    is_enabled = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    connection = relationship("Connection", back_populates="calendars")
    events = relationship("CalendarEvent", back_populates="calendar", cascade="all, delete-orphan")


class CalendarEvent(Base):
    __tablename__ = "calendar_events"
    __table_args__ = (
        UniqueConstraint("calendar_id", "external_id", name="calendar_events_external_unique"),
        Index("idx_calendar_events_user_start", "user_id", "start_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    calendar_id = Column(UUID(as_uuid=True), ForeignKey("external_calendars.id", ondelete="CASCADE"), nullable=False)
    organization_id = Column(String(64), nullable=False)
    user_id = Column(String(64), nullable=False)
    external_id = Column(Text, nullable=False)
    title = Column(Text)
    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=False)
    is_busy = Column(Boolean, default=True)
    external_modified_at = Column(DateTime(timezone=True))
    synced_at = Column(DateTime(timezone=True), default=utcnow)

    calendar = relationship("ExternalCalendar", back_populates="events")


class SyncedFile(Base):
    __tablename__ = "synced_files"
    __table_args__ = (
        UniqueConstraint("connection_id", "external_id", name="synced_files_external_unique"),
        Index("idx_synced_files_org", "organization_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    connection_id = Column(UUID(as_uuid=True), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False)
    organization_id = Column(String(64), nullable=False)
    user_id = Column(String(64), nullable=False)
    provider = Column(String(32), nullable=False)
    external_id = Column(Text, nullable=False)
    name = Column(Text, nullable=False)
    content_type = Column(String(255))
    size_bytes = Column(BigInteger)
    source_path = Column(Text)
    destination_key = Column(Text, nullable=False)
    external_modified_at = Column(DateTime(timezone=True))
    synced_at = Column(DateTime(timezone=True), default=utcnow)


class OrganizationStorageSettings(Base):
    __tablename__ = "organization_storage_settings"

    organization_id = Column(String(64), primary_key=True)
    prefix = Column(Text)
    enabled = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
