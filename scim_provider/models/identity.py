"""
Identity Store Models

Backing tables for SCIM Users and Groups.

Design:
- `username_norm` / `display_name_norm` hold the case-folded identifier so that
  uniqueness is enforced case-insensitively by the database.
- `attributes` holds core-schema attributes without a dedicated column;
  `extensions` holds extension-schema attributes keyed by schema URN.
- `version` is bumped on every successful write and backs the SCIM ETag.
- `managed` marks users provisioned through SCIM.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from scim_provider.shared.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScimUser(Base):
    __tablename__ = "scim_users"
    __table_args__ = (
        UniqueConstraint("username_norm", name="uq_scim_user_username_norm"),
    )

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    username: Mapped[str] = mapped_column(String(length=255), nullable=False)
    username_norm: Mapped[str] = mapped_column(
        String(length=255), nullable=False, index=True
    )
    email: Mapped[str | None] = mapped_column(String(length=320), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    external_id: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    attributes: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    extensions: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    managed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class ScimGroup(Base):
    __tablename__ = "scim_groups"
    __table_args__ = (
        UniqueConstraint("display_name_norm", name="uq_scim_group_display_name_norm"),
    )

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    display_name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    display_name_norm: Mapped[str] = mapped_column(
        String(length=255), nullable=False, index=True
    )
    external_id: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    attributes: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    extensions: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class ScimGroupMember(Base):
    __tablename__ = "scim_group_members"

    group_id: Mapped[UUID] = mapped_column(
        Uuid(),
        ForeignKey("scim_groups.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[UUID] = mapped_column(
        Uuid(),
        ForeignKey("scim_users.id", ondelete="CASCADE"),
        primary_key=True,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
