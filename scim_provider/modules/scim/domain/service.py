"""
SCIM resource controller.

One controller per resource type and request. It owns the request pipeline
between the HTTP layer and the identity store: resolve the resource, check
preconditions, map and validate, persist, and render the result.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

import structlog

from scim_provider.modules.scim.domain.filter import compile_filter
from scim_provider.modules.scim.domain.mapper import ResourceMapper, make_etag
from scim_provider.modules.scim.domain.pagination import Page, paginate, sort_resources
from scim_provider.modules.scim.domain.patch import PatchOperation, apply_patch
from scim_provider.modules.scim.domain.schema import ResourceType
from scim_provider.modules.scim.domain.store import (
    GROUP,
    USER,
    IdentityStore,
    StoreRecord,
    UserRecord,
)
from scim_provider.shared.core.config import Settings
from scim_provider.shared.core.exceptions import (
    ConflictError,
    NotFoundError,
    PreconditionFailedError,
)
from scim_provider.shared.core.logging import audit_log

logger = structlog.get_logger()


def etag_matches(header: str, version: int) -> bool:
    """True when an If-Match / If-None-Match header names the current version."""
    current = make_etag(version)
    for raw in header.split(","):
        tag = raw.strip()
        if tag == "*":
            return True
        # Weak comparison: W/"3" and "3" name the same version.
        if tag.removeprefix("W/") == current.removeprefix("W/"):
            return True
    return False


def _norm(value: str | None) -> str:
    return (value or "").strip().casefold()


class ResourceController:
    def __init__(
        self,
        store: IdentityStore,
        resource_type: ResourceType,
        mapper: ResourceMapper,
        settings: Settings,
    ) -> None:
        self.store = store
        self.resource_type = resource_type
        self.mapper = mapper
        self.settings = settings

    @property
    def _event_prefix(self) -> str:
        return f"scim_{self.resource_type.id.lower()}"

    # -- reads -------------------------------------------------------------

    async def load(self, resource_id: str) -> StoreRecord:
        record = await self.store.find_by_id(self.resource_type.id, resource_id)
        if record is None:
            raise NotFoundError(f"{self.resource_type.name} {resource_id} not found")
        return record

    async def get(self, resource_id: str) -> dict[str, Any]:
        return self.mapper.to_representation(await self.load(resource_id))

    async def search(
        self,
        *,
        filter_text: str | None = None,
        sort_by: str | None = None,
        sort_order: str | None = None,
        start_index: int | None = None,
        count: int | None = None,
    ) -> Page:
        matches = (
            compile_filter(filter_text, self.resource_type)
            if filter_text and filter_text.strip()
            else None
        )
        rendered: dict[str | None, dict[str, Any]] = {}

        def predicate(record: StoreRecord) -> bool:
            representation = self.mapper.to_representation(record)
            if matches is not None and not matches(representation):
                return False
            rendered[record.id] = representation
            return True

        records = await self.store.find_by_filter(self.resource_type.id, predicate)
        resources = sort_resources(
            [rendered[record.id] for record in records],
            sort_by,
            sort_order,
            self.resource_type,
        )
        page = paginate(
            resources,
            start_index,
            count,
            default_count=self.settings.SCIM_DEFAULT_COUNT,
            max_results=self.settings.SCIM_MAX_RESULTS,
        )
        logger.debug(
            "scim_search",
            resource_type=self.resource_type.id,
            filter=filter_text,
            total_results=page.total_results,
            items_per_page=page.items_per_page,
        )
        return page

    # -- writes ------------------------------------------------------------

    async def create(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        record = await self._to_record(payload)
        await self._check_uniqueness(record)
        created = await self.store.create(self.resource_type.id, record)
        audit_log(
            f"{self._event_prefix}_created",
            self.resource_type.id,
            created.id,
            self._audit_details(created),
        )
        return self.mapper.to_representation(created)

    async def replace(
        self, resource_id: str, payload: Mapping[str, Any], if_match: str | None = None
    ) -> dict[str, Any]:
        current = await self.load(resource_id)
        self.check_precondition(current, if_match)
        record = await self._to_record(payload, existing=current)
        return await self._persist(current, record, "replaced")

    async def patch(
        self,
        resource_id: str,
        operations: Sequence[PatchOperation],
        if_match: str | None = None,
    ) -> dict[str, Any]:
        current = await self.load(resource_id)
        self.check_precondition(current, if_match)
        representation = self.mapper.to_representation(current)
        if not operations:
            return representation

        patched = apply_patch(representation, operations, self.resource_type)
        if patched == representation:
            logger.debug(
                "scim_patch_noop", resource_type=self.resource_type.id, id=resource_id
            )
            return representation
        record = await self._to_record(patched, existing=current)
        return await self._persist(
            current, record, "patched", operations=[op.op.lower() for op in operations]
        )

    async def delete(self, resource_id: str, if_match: str | None = None) -> None:
        current = await self.load(resource_id)
        self.check_precondition(current, if_match)
        if not await self.store.delete(self.resource_type.id, resource_id):
            raise NotFoundError(f"{self.resource_type.name} {resource_id} not found")
        audit_log(
            f"{self._event_prefix}_deleted",
            self.resource_type.id,
            resource_id,
            self._audit_details(current),
        )

    def check_precondition(self, record: StoreRecord, if_match: str | None) -> None:
        if if_match is None or not if_match.strip():
            if self.settings.SCIM_REQUIRE_IF_MATCH:
                raise PreconditionFailedError("If-Match header is required")
            return
        if not etag_matches(if_match, record.version):
            raise PreconditionFailedError(
                f"If-Match {if_match} does not match current version "
                f"{make_etag(record.version)}"
            )

    # -- helpers -----------------------------------------------------------

    async def _persist(
        self, current: StoreRecord, record: StoreRecord, action: str, **details: Any
    ) -> dict[str, Any]:
        assert current.id is not None
        await self._check_uniqueness(record, exclude_id=current.id)
        updated = await self.store.update(
            self.resource_type.id, current.id, record, expected_version=current.version
        )
        audit_log(
            f"{self._event_prefix}_{action}",
            self.resource_type.id,
            updated.id,
            {**self._audit_details(updated), **details},
        )
        return self.mapper.to_representation(updated)

    async def _check_uniqueness(
        self, record: StoreRecord, exclude_id: str | None = None
    ) -> None:
        if isinstance(record, UserRecord):
            attribute, value = "userName", record.username
        else:
            attribute, value = "displayName", record.display_name
        wanted = _norm(value)

        def clashes(other: StoreRecord) -> bool:
            if other.id == exclude_id:
                return False
            other_value = other.username if isinstance(other, UserRecord) else other.display_name
            return _norm(other_value) == wanted

        if await self.store.find_by_filter(self.resource_type.id, clashes):
            raise ConflictError(
                f"{self.resource_type.name} with {attribute} '{value}' already exists"
            )

    async def _to_record(
        self, payload: Mapping[str, Any], existing: StoreRecord | None = None
    ) -> StoreRecord:
        unknown = await self._unknown_member_violations(payload)
        return self.mapper.to_store_record(payload, existing=existing, rejected=unknown)

    async def _unknown_member_violations(self, payload: Mapping[str, Any]) -> list[str]:
        if self.resource_type.id != GROUP:
            return []
        members = self.mapper.normalize(payload).get("members")
        if not isinstance(members, list):
            return []
        missing: list[str] = []
        for entry in members:
            value = entry.get("value") if isinstance(entry, Mapping) else None
            if not isinstance(value, str) or not value or value in missing:
                continue
            if await self.store.find_by_id(USER, value) is None:
                missing.append(value)
        return [f"Member '{value}' does not reference an existing User" for value in missing]

    @staticmethod
    def _audit_details(record: StoreRecord) -> dict[str, Any]:
        if isinstance(record, UserRecord):
            return {"user_name": record.username, "version": record.version}
        return {
            "display_name": record.display_name,
            "member_count": len(record.members),
            "version": record.version,
        }
