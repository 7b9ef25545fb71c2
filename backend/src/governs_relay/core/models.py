"""SQLAlchemy 2.0 models for the record store tables the relay reads and writes.

The relay does not own the schema; these models mirror the platform tables it
authenticates against (orgs, users, memberships, API keys) and the tables it
appends to (decisions, relay_events, audit_logs).

Note: Uses dialect-agnostic types (JSON, DateTime, Uuid) so models work with
both PostgreSQL (production) and SQLite (unit tests).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

import uuid_utils
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from governs_relay.core.database import Base
from governs_relay.core.enums import OrgRole


class Org(Base):
    """Tenant (organisation)."""

    __tablename__ = "orgs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid_utils.uuid7)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    slug: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    memberships: Mapped[list[OrgMembership]] = relationship(back_populates="org")


class User(Base):
    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid_utils.uuid7)
    email: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    memberships: Mapped[list[OrgMembership]] = relationship(back_populates="user")


class OrgMembership(Base):
    """User <-> org membership with a role."""

    __tablename__ = "org_memberships"
    __table_args__ = (UniqueConstraint("org_id", "user_id", name="uq_org_memberships_org_user"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid_utils.uuid7)
    org_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role: Mapped[OrgRole] = mapped_column(String, nullable=False, default=OrgRole.VIEWER)
    created_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    org: Mapped[Org] = relationship(back_populates="memberships")
    user: Mapped[User] = relationship(back_populates="memberships")


class ApiKey(Base):
    """Org-scoped API key. Only the sha256 hash of the secret is stored."""

    __tablename__ = "api_keys"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid_utils.uuid7)
    key_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    key_prefix: Mapped[str] = mapped_column(String(16), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    org_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    scopes: Mapped[list] = mapped_column(  # type: ignore[type-arg]
        JSON, nullable=False, default=list
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    org: Mapped[Org] = relationship(lazy="joined")
    user: Mapped[User] = relationship(lazy="joined")


class Decision(Base):
    """Governance decision ingested from a precheck/postcheck."""

    __tablename__ = "decisions"
    __table_args__ = (
        UniqueConstraint("org_id", "idempotency_key", name="uq_decisions_org_idempotency"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid_utils.uuid7)
    org_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    direction: Mapped[str] = mapped_column(String, nullable=False)
    decision: Mapped[str] = mapped_column(String, nullable=False)
    tool: Mapped[str | None] = mapped_column(Text, nullable=True)
    scope: Mapped[str | None] = mapped_column(Text, nullable=True)
    detector_summary: Mapped[dict] = mapped_column(  # type: ignore[type-arg]
        JSON, nullable=False, default=dict
    )
    payload_hash: Mapped[str] = mapped_column(Text, nullable=False)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[list] = mapped_column(  # type: ignore[type-arg]
        JSON, nullable=False, default=list
    )
    idempotency_key: Mapped[str] = mapped_column(Text, nullable=False)
    ts: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class RelayEvent(Base):
    """Durable event history used for replay-since-cursor.

    Cursors are strictly increasing per channel; the unique constraint makes
    concurrent appenders retry rather than reuse a cursor.
    """

    __tablename__ = "relay_events"
    __table_args__ = (UniqueConstraint("channel", "cursor", name="uq_relay_events_channel_cursor"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid_utils.uuid7)
    channel: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    cursor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payload: Mapped[Any] = mapped_column(JSON, nullable=True)
    org_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid_utils.uuid7)
    org_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    user_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    resource: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict] = mapped_column(  # type: ignore[type-arg]
        JSON, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
