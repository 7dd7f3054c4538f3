"""
Identity store collaborator.

The SCIM engine talks to persistence only through `IdentityStore`. The bundled
`SqlAlchemyIdentityStore` keeps users, groups and memberships in the tables
declared in `scim_provider.models.identity`.

Every write is a compare-and-swap on the record version, so a concurrent writer
surfaces as PreconditionFailedError instead of a silent overwrite.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, Union
from uuid import UUID

import structlog
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from scim_provider.models.identity import ScimGroup, ScimGroupMember, ScimUser
from scim_provider.shared.core.exceptions import (
    ConflictError,
    NotFoundError,
    PreconditionFailedError,
    StoreError,
)

logger = structlog.get_logger()

USER = "User"
GROUP = "Group"


@dataclass(frozen=True, slots=True)
class MemberRef:
    value: str
    display: str | None = None
    type: str | None = None


@dataclass(slots=True)
class UserRecord:
    username: str
    id: str | None = None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    enabled: bool = True
    external_id: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    extensions: dict[str, dict[str, Any]] = field(default_factory=dict)
    # Derived from membership; never written through a user record.
    groups: list[MemberRef] = field(default_factory=list)
    managed: bool = True
    version: int = 0
    created: datetime | None = None
    last_modified: datetime | None = None


@dataclass(slots=True)
class GroupRecord:
    display_name: str
    id: str | None = None
    external_id: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    extensions: dict[str, dict[str, Any]] = field(default_factory=dict)
    members: list[MemberRef] = field(default_factory=list)
    version: int = 0
    created: datetime | None = None
    last_modified: datetime | None = None


StoreRecord = Union[UserRecord, GroupRecord]


class IdentityStore(Protocol):
    async def find_by_id(self, resource_type: str, resource_id: str) -> StoreRecord | None:
        """Return the record with `resource_id`, or None."""

    async def find_by_filter(
        self, resource_type: str, predicate: Callable[[StoreRecord], bool]
    ) -> list[StoreRecord]:
        """Return every record for which `predicate` holds."""

    async def create(self, resource_type: str, record: StoreRecord) -> StoreRecord:
        """Persist a new record and return it with id, version and timestamps."""

    async def update(
        self,
        resource_type: str,
        resource_id: str,
        record: StoreRecord,
        expected_version: int | None,
    ) -> StoreRecord:
        """Replace a record if its version still equals `expected_version`."""

    async def delete(self, resource_type: str, resource_id: str) -> bool:
        """Delete a record. Returns False when nothing was deleted."""


def _parse_uuid(value: str | None) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every stored timestamp is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _norm(value: str) -> str:
    return value.strip().casefold()


class SqlAlchemyIdentityStore:
    """IdentityStore over an AsyncSession. One instance per request."""

    def __init__(self, session: AsyncSession, *, managed_only: bool = False) -> None:
        self._session = session
        self._managed_only = managed_only

    # -- reads -------------------------------------------------------------

    async def find_by_id(self, resource_type: str, resource_id: str) -> StoreRecord | None:
        parsed = _parse_uuid(resource_id)
        if parsed is None:
            return None
        try:
            if resource_type == USER:
                stmt = select(ScimUser).where(ScimUser.id == parsed)
                if self._managed_only:
                    stmt = stmt.where(ScimUser.managed.is_(True))
                user = (await self._session.execute(stmt)).scalar_one_or_none()
                if user is None:
                    return None
                groups = await self._load_user_groups([user.id])
                return self._user_record(user, groups.get(user.id, []))

            group = (
                await self._session.execute(select(ScimGroup).where(ScimGroup.id == parsed))
            ).scalar_one_or_none()
            if group is None:
                return None
            members = await self._load_group_members([group.id])
            return self._group_record(group, members.get(group.id, []))
        except SQLAlchemyError as exc:
            raise self._store_error("find_by_id", resource_type, exc) from exc

    async def find_by_filter(
        self, resource_type: str, predicate: Callable[[StoreRecord], bool]
    ) -> list[StoreRecord]:
        try:
            records: list[StoreRecord]
            if resource_type == USER:
                stmt = select(ScimUser).order_by(ScimUser.created_at, ScimUser.id)
                if self._managed_only:
                    stmt = stmt.where(ScimUser.managed.is_(True))
                users = list((await self._session.execute(stmt)).scalars().all())
                groups = await self._load_user_groups([user.id for user in users])
                records = [self._user_record(u, groups.get(u.id, [])) for u in users]
            else:
                stmt_g = select(ScimGroup).order_by(ScimGroup.created_at, ScimGroup.id)
                found = list((await self._session.execute(stmt_g)).scalars().all())
                members = await self._load_group_members([group.id for group in found])
                records = [self._group_record(g, members.get(g.id, [])) for g in found]
        except SQLAlchemyError as exc:
            raise self._store_error("find_by_filter", resource_type, exc) from exc
        return [record for record in records if predicate(record)]

    # -- writes ------------------------------------------------------------

    async def create(self, resource_type: str, record: StoreRecord) -> StoreRecord:
        now = datetime.now(timezone.utc)
        try:
            if isinstance(record, UserRecord):
                row: Any = ScimUser(
                    **self._user_values(record),
                    managed=record.managed,
                    version=1,
                    created_at=now,
                    updated_at=now,
                )
            else:
                row = ScimGroup(
                    **self._group_values(record),
                    version=1,
                    created_at=now,
                    updated_at=now,
                )
            self._session.add(row)
            await self._session.flush()
            new_id = row.id
            if isinstance(record, GroupRecord):
                await self._replace_members(new_id, record.members)
            await self._session.commit()
        except IntegrityError as exc:
            await self._session.rollback()
            raise ConflictError(f"{resource_type} already exists") from exc
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise self._store_error("create", resource_type, exc) from exc

        logger.debug("identity_store_created", resource_type=resource_type, id=str(new_id))
        created = await self.find_by_id(resource_type, str(new_id))
        if created is None:
            raise StoreError(f"{resource_type} {new_id} vanished after create")
        return created

    async def update(
        self,
        resource_type: str,
        resource_id: str,
        record: StoreRecord,
        expected_version: int | None,
    ) -> StoreRecord:
        parsed = _parse_uuid(resource_id)
        if parsed is None:
            raise NotFoundError()

        model: Any = ScimUser if resource_type == USER else ScimGroup
        values = (
            self._user_values(record)
            if isinstance(record, UserRecord)
            else self._group_values(record)
        )
        stmt = (
            update(model)
            .where(model.id == parsed)
            .values(
                **values,
                version=model.version + 1,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if expected_version is not None:
            stmt = stmt.where(model.version == expected_version)

        try:
            result = await self._session.execute(stmt)
            if result.rowcount == 0:
                await self._session.rollback()
                if await self.find_by_id(resource_type, resource_id) is None:
                    raise NotFoundError()
                raise PreconditionFailedError(
                    f"{resource_type} {resource_id} was modified concurrently"
                )
            if isinstance(record, GroupRecord):
                await self._replace_members(parsed, record.members)
            await self._session.commit()
        except IntegrityError as exc:
            await self._session.rollback()
            raise ConflictError(f"{resource_type} already exists") from exc
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise self._store_error("update", resource_type, exc) from exc

        self._session.expire_all()
        updated = await self.find_by_id(resource_type, resource_id)
        if updated is None:
            raise NotFoundError()
        return updated

    async def delete(self, resource_type: str, resource_id: str) -> bool:
        parsed = _parse_uuid(resource_id)
        if parsed is None:
            return False
        try:
            # Membership rows are removed explicitly; SQLite does not enforce
            # ON DELETE CASCADE unless foreign keys are switched on.
            if resource_type == USER:
                target = select(ScimUser.id).where(ScimUser.id == parsed)
                if self._managed_only:
                    target = target.where(ScimUser.managed.is_(True))
                if (await self._session.execute(target)).scalar_one_or_none() is None:
                    return False
                await self._session.execute(
                    delete(ScimGroupMember).where(ScimGroupMember.user_id == parsed)
                )
                result = await self._session.execute(
                    delete(ScimUser).where(ScimUser.id == parsed)
                )
            else:
                await self._session.execute(
                    delete(ScimGroupMember).where(ScimGroupMember.group_id == parsed)
                )
                result = await self._session.execute(
                    delete(ScimGroup).where(ScimGroup.id == parsed)
                )
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise self._store_error("delete", resource_type, exc) from exc
        return bool(result.rowcount)

    # -- helpers -----------------------------------------------------------

    @staticmethod
    def _store_error(action: str, resource_type: str, exc: SQLAlchemyError) -> StoreError:
        logger.error(
            "identity_store_failed",
            action=action,
            resource_type=resource_type,
            error=str(exc),
        )
        return StoreError(f"Identity store {action} failed: {exc}")

    @staticmethod
    def _user_values(record: UserRecord) -> dict[str, Any]:
        return {
            "username": record.username,
            "username_norm": _norm(record.username),
            "email": record.email,
            "first_name": record.first_name,
            "last_name": record.last_name,
            "enabled": bool(record.enabled),
            "external_id": record.external_id,
            "attributes": dict(record.attributes),
            "extensions": dict(record.extensions),
        }

    @staticmethod
    def _group_values(record: GroupRecord) -> dict[str, Any]:
        return {
            "display_name": record.display_name,
            "display_name_norm": _norm(record.display_name),
            "external_id": record.external_id,
            "attributes": dict(record.attributes),
            "extensions": dict(record.extensions),
        }

    async def _replace_members(self, group_id: UUID, members: Sequence[MemberRef]) -> None:
        await self._session.execute(
            delete(ScimGroupMember).where(ScimGroupMember.group_id == group_id)
        )
        user_ids = []
        for member in members:
            parsed = _parse_uuid(member.value)
            if parsed is not None and parsed not in user_ids:
                user_ids.append(parsed)
        if user_ids:
            await self._session.execute(
                insert(ScimGroupMember),
                [{"group_id": group_id, "user_id": uid} for uid in user_ids],
            )

    async def _load_user_groups(self, user_ids: list[UUID]) -> dict[UUID, list[MemberRef]]:
        if not user_ids:
            return {}
        rows = (
            await self._session.execute(
                select(ScimGroupMember.user_id, ScimGroup.id, ScimGroup.display_name)
                .join(ScimGroup, ScimGroupMember.group_id == ScimGroup.id)
                .where(ScimGroupMember.user_id.in_(user_ids))
                .order_by(ScimGroup.display_name_norm)
            )
        ).all()
        mapping: dict[UUID, list[MemberRef]] = {uid: [] for uid in user_ids}
        for user_id, group_id, display_name in rows:
            mapping.setdefault(user_id, []).append(
                MemberRef(value=str(group_id), display=display_name, type="direct")
            )
        return mapping

    async def _load_group_members(self, group_ids: list[UUID]) -> dict[UUID, list[MemberRef]]:
        if not group_ids:
            return {}
        rows = (
            await self._session.execute(
                select(ScimGroupMember.group_id, ScimUser.id, ScimUser.username)
                .join(ScimUser, ScimGroupMember.user_id == ScimUser.id)
                .where(ScimGroupMember.group_id.in_(group_ids))
                .order_by(ScimGroupMember.created_at, ScimUser.id)
            )
        ).all()
        mapping: dict[UUID, list[MemberRef]] = {gid: [] for gid in group_ids}
        for group_id, user_id, username in rows:
            mapping.setdefault(group_id, []).append(
                MemberRef(value=str(user_id), display=username, type=USER)
            )
        return mapping

    @staticmethod
    def _user_record(user: ScimUser, groups: list[MemberRef]) -> UserRecord:
        return UserRecord(
            id=str(user.id),
            username=user.username,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            enabled=bool(user.enabled),
            external_id=user.external_id,
            attributes=dict(user.attributes or {}),
            extensions=dict(user.extensions or {}),
            groups=groups,
            managed=bool(user.managed),
            version=int(user.version),
            created=_as_utc(user.created_at),
            last_modified=_as_utc(user.updated_at),
        )

    @staticmethod
    def _group_record(group: ScimGroup, members: list[MemberRef]) -> GroupRecord:
        return GroupRecord(
            id=str(group.id),
            display_name=group.display_name,
            external_id=group.external_id,
            attributes=dict(group.attributes or {}),
            extensions=dict(group.extensions or {}),
            members=members,
            version=int(group.version),
            created=_as_utc(group.created_at),
            last_modified=_as_utc(group.updated_at),
        )
