"""
Resource mapping between SCIM representations and identity-store records.

Correspondence table (User):

    userName                    <-> username
    name.givenName              <-> first_name
    name.familyName             <-> last_name
    emails[primary eq true]     <-> email
    active                      <-> enabled
    externalId                  <-> external_id
    <extension URN>             <-> extensions[<URN>]
    anything else in the schema <-> attributes[<name>]

Group: displayName <-> display_name, members <-> membership rows.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from scim_provider.modules.scim.domain.schema import (
    AttributeDefinition,
    AttributeType,
    Mutability,
    ResourceType,
    find_key,
    get_attribute,
    normalize_object,
    normalize_value,
)
from scim_provider.modules.scim.domain.store import (
    GROUP,
    USER,
    GroupRecord,
    MemberRef,
    StoreRecord,
    UserRecord,
)
from scim_provider.shared.core.exceptions import ValidationError

_MUTABILITY = "mutability"
_INVALID_VALUE = "invalidValue"


def make_etag(version: int) -> str:
    return f'W/"{version}"'


def format_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_datetime(value: str) -> datetime | None:
    raw = value.strip()
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


def has_value(value: Any) -> bool:
    """SCIM treats null, empty strings and empty collections as unassigned."""
    if value is None:
        return False
    if isinstance(value, (str, list, dict)):
        return len(value) > 0
    return True


@dataclass(slots=True)
class _Violations:
    items: list[tuple[str, str]]

    def add(self, kind: str, message: str) -> None:
        self.items.append((kind, message))

    def raise_if_any(self) -> None:
        if not self.items:
            return
        kinds = {kind for kind, _ in self.items}
        scim_type = _MUTABILITY if kinds == {_MUTABILITY} else _INVALID_VALUE
        raise ValidationError([message for _, message in self.items], scim_type=scim_type)


class ResourceMapper:
    """Shared normalization and validation. Subclasses own the store mapping."""

    # Server-managed attributes clients routinely echo back; dropped on write.
    ignored_attributes: frozenset[str] = frozenset({"id", "meta", "schemas"})

    def __init__(self, resource_type: ResourceType, *, base_url: str) -> None:
        self.resource_type = resource_type
        self._base_url = base_url.rstrip("/")
        self._immutable_exempt: frozenset[str] = frozenset()

    def location(self, resource_id: str | None, endpoint: str | None = None) -> str:
        return f"{self._base_url}{endpoint or self.resource_type.endpoint}/{resource_id}"

    # -- normalization -----------------------------------------------------

    def normalize(self, resource: Mapping[str, Any]) -> dict[str, Any]:
        """Canonical attribute names; unknown and server-managed attributes dropped."""
        result: dict[str, Any] = {}
        ignored = {name.lower() for name in self.ignored_attributes}
        for key, value in resource.items():
            if not isinstance(key, str) or key.lower() in ignored:
                continue
            extension = self.resource_type.extension(key)
            if extension is not None:
                if isinstance(value, Mapping):
                    result[extension.id] = normalize_object(extension.attributes, value)
                else:
                    result[extension.id] = value
                continue
            if key.lower().startswith("urn:"):
                # Reported by validate() as an unknown extension.
                result[key] = value
                continue
            definition = self.resource_type.core_attribute(key)
            if definition is not None:
                result[definition.name] = normalize_value(definition, value)
        return result

    # -- validation --------------------------------------------------------

    def validate(
        self,
        resource: Mapping[str, Any],
        *,
        schemas: Any = None,
        existing: Mapping[str, Any] | None = None,
        rejected: Sequence[str] = (),
    ) -> None:
        """
        Collect every violation of `resource` (already normalized) and raise once.

        `rejected` carries violations found outside the schema, such as member
        references to unknown users, so they are reported in the same error.
        """
        violations = _Violations([])
        self._check_schemas(schemas, violations)

        prior: Mapping[str, Any] = existing or {}
        top_level = list(self.resource_type.schema.attributes)
        external_id = self.resource_type.core_attribute("externalId")
        if external_id is not None:
            top_level.append(external_id)
        for definition in top_level:
            self._check_attribute(
                definition,
                resource.get(definition.name),
                prior.get(definition.name),
                violations,
            )

        for extension in self.resource_type.extensions:
            value = resource.get(extension.id)
            if value is None:
                if self.resource_type.is_extension_required(extension.id):
                    violations.add(
                        _INVALID_VALUE, f"Schema extension '{extension.id}' is required"
                    )
                continue
            if not isinstance(value, Mapping):
                violations.add(
                    _INVALID_VALUE, f"Schema extension '{extension.id}' must be an object"
                )
                continue
            ext_prior = prior.get(extension.id)
            ext_prior = ext_prior if isinstance(ext_prior, Mapping) else {}
            for definition in extension.attributes:
                self._check_attribute(
                    definition,
                    value.get(definition.name),
                    ext_prior.get(definition.name),
                    violations,
                )

        for key in resource:
            if key.lower().startswith("urn:") and self.resource_type.extension(key) is None:
                violations.add(_INVALID_VALUE, f"Unknown schema extension '{key}'")

        for message in rejected:
            violations.add(_INVALID_VALUE, message)
        violations.raise_if_any()

    def _check_schemas(self, schemas: Any, violations: _Violations) -> None:
        if schemas is None:
            return
        if not isinstance(schemas, list) or not all(isinstance(s, str) for s in schemas):
            violations.add(_INVALID_VALUE, "Attribute 'schemas' must be a list of URNs")
            return
        known = {urn.lower() for urn in self.resource_type.schema_urns}
        if self.resource_type.schema.id.lower() not in {s.lower() for s in schemas}:
            violations.add(
                _INVALID_VALUE,
                f"Attribute 'schemas' must include '{self.resource_type.schema.id}'",
            )
        for urn in schemas:
            if urn.lower() not in known:
                violations.add(_INVALID_VALUE, f"Unknown schema '{urn}'")

    def _check_attribute(
        self,
        definition: AttributeDefinition,
        value: Any,
        prior: Any,
        violations: _Violations,
    ) -> None:
        present = has_value(value)
        if definition.mutability is Mutability.READ_ONLY:
            if present and value != prior:
                violations.add(_MUTABILITY, f"Attribute '{definition.path}' is readOnly")
            return
        if definition.required and not present:
            violations.add(_INVALID_VALUE, f"Attribute '{definition.path}' is required")
            return
        if (
            definition.mutability is Mutability.IMMUTABLE
            and definition.name not in self._immutable_exempt
            and has_value(prior)
            and value != prior
        ):
            violations.add(
                _MUTABILITY,
                f"Attribute '{definition.path}' is immutable and cannot be changed",
            )
        if not present:
            return
        if definition.multi_valued:
            self._check_multi(definition, value, violations)
        else:
            self._check_single(definition, value, prior, definition.path, violations)

    def _check_multi(
        self, definition: AttributeDefinition, value: Any, violations: _Violations
    ) -> None:
        if not isinstance(value, list):
            violations.add(_INVALID_VALUE, f"Attribute '{definition.path}' must be a list")
            return
        primaries = 0
        for index, item in enumerate(value):
            self._check_single(
                definition, item, None, f"{definition.path}[{index}]", violations
            )
            if isinstance(item, Mapping) and item.get("primary") is True:
                primaries += 1
        if primaries > 1:
            violations.add(
                _INVALID_VALUE,
                f"Attribute '{definition.path}' allows at most one primary value",
            )

    def _check_single(
        self,
        definition: AttributeDefinition,
        value: Any,
        prior: Any,
        label: str,
        violations: _Violations,
    ) -> None:
        attr_type = definition.type
        if attr_type is AttributeType.COMPLEX:
            if not isinstance(value, Mapping):
                violations.add(_INVALID_VALUE, f"Attribute '{label}' must be a complex value")
                return
            prior_obj = prior if isinstance(prior, Mapping) else {}
            for sub in definition.sub_attributes:
                sub_value = value.get(sub.name)
                sub_label = f"{label}.{sub.name}"
                if sub.mutability is Mutability.READ_ONLY:
                    if has_value(sub_value) and sub_value != prior_obj.get(sub.name):
                        violations.add(_MUTABILITY, f"Attribute '{sub_label}' is readOnly")
                    continue
                if sub.required and not has_value(sub_value):
                    violations.add(_INVALID_VALUE, f"Attribute '{sub_label}' is required")
                    continue
                if sub_value is not None:
                    self._check_single(
                        sub, sub_value, prior_obj.get(sub.name), sub_label, violations
                    )
            return

        valid = True
        if attr_type in (AttributeType.STRING, AttributeType.REFERENCE, AttributeType.BINARY):
            valid = isinstance(value, str)
        elif attr_type is AttributeType.BOOLEAN:
            valid = isinstance(value, bool)
        elif attr_type is AttributeType.INTEGER:
            valid = isinstance(value, int) and not isinstance(value, bool)
        elif attr_type is AttributeType.DECIMAL:
            valid = isinstance(value, (int, float)) and not isinstance(value, bool)
        elif attr_type is AttributeType.DATE_TIME:
            valid = isinstance(value, str) and _parse_datetime(value) is not None
        if not valid:
            violations.add(
                _INVALID_VALUE, f"Attribute '{label}' must be of type {attr_type.value}"
            )
        elif definition.canonical_values and isinstance(value, str):
            allowed = definition.canonical_values
            if definition.case_exact:
                known = value in allowed
            else:
                known = value.casefold() in {option.casefold() for option in allowed}
            if not known:
                violations.add(
                    _INVALID_VALUE,
                    f"Attribute '{label}' must be one of: {', '.join(allowed)}",
                )

    # -- representation helpers --------------------------------------------

    def _meta(self, record: StoreRecord) -> dict[str, Any]:
        meta: dict[str, Any] = {
            "resourceType": self.resource_type.name,
            "created": format_datetime(record.created),
            "lastModified": format_datetime(record.last_modified),
            "location": self.location(record.id),
            "version": make_etag(record.version),
        }
        return {key: value for key, value in meta.items() if value is not None}

    def _schemas_for(self, extensions: Mapping[str, Any]) -> list[str]:
        urns = [self.resource_type.schema.id]
        for extension in self.resource_type.extensions:
            if has_value(extensions.get(extension.id)):
                urns.append(extension.id)
        return urns

    def _extensions_from(self, canonical: Mapping[str, Any]) -> dict[str, dict[str, Any]]:
        return {
            extension.id: copy.deepcopy(dict(canonical[extension.id]))
            for extension in self.resource_type.extensions
            if isinstance(canonical.get(extension.id), Mapping)
            and has_value(canonical[extension.id])
        }

    def _prior(self, existing: StoreRecord | None) -> dict[str, Any] | None:
        if existing is None:
            return None
        return self.normalize(self.to_representation(existing))

    def to_representation(self, record: StoreRecord) -> dict[str, Any]:
        raise NotImplementedError

    def to_store_record(
        self,
        resource: Mapping[str, Any],
        existing: StoreRecord | None = None,
        *,
        rejected: Sequence[str] = (),
    ) -> StoreRecord:
        raise NotImplementedError


def primary_value(entries: Any) -> str | None:
    """Value of the primary entry of a multi-valued attribute, else the first value."""
    if not isinstance(entries, list):
        return None
    candidates = [e for e in entries if isinstance(e, Mapping) and has_value(e.get("value"))]
    for entry in candidates:
        if entry.get("primary") is True:
            return str(entry["value"])
    return str(candidates[0]["value"]) if candidates else None


def _reconcile_emails(emails: Any, primary: str | None) -> list[dict[str, Any]]:
    entries = [dict(e) for e in emails if isinstance(e, Mapping)] if isinstance(emails, list) else []
    if not primary:
        return entries
    found = False
    for entry in entries:
        if not found and str(entry.get("value", "")).casefold() == primary.casefold():
            entry["primary"] = True
            found = True
        elif entry.get("primary") is True:
            entry["primary"] = False
    if not found:
        entries.insert(0, {"value": primary, "primary": True})
    return entries


class UserMapper(ResourceMapper):
    ignored_attributes = frozenset({"id", "meta", "schemas", "groups"})
    _column_attributes = frozenset({"userName", "name", "active", "externalId"})

    def __init__(
        self, resource_type: ResourceType, *, base_url: str, email_as_username: bool = False
    ) -> None:
        super().__init__(resource_type, base_url=base_url)
        self.email_as_username = email_as_username
        if email_as_username:
            self._immutable_exempt = frozenset({"userName"})

    def to_representation(self, record: StoreRecord) -> dict[str, Any]:
        assert isinstance(record, UserRecord)
        payload: dict[str, Any] = {
            "schemas": self._schemas_for(record.extensions),
            "id": record.id,
        }
        if record.external_id:
            payload["externalId"] = record.external_id
        payload["userName"] = record.username

        name = dict(record.attributes.get("name") or {})
        if record.first_name:
            name["givenName"] = record.first_name
        if record.last_name:
            name["familyName"] = record.last_name
        if name:
            payload["name"] = name

        for definition in self.resource_type.schema.attributes:
            if definition.name in self._column_attributes or definition.name == "groups":
                continue
            if definition.name in record.attributes:
                payload[definition.name] = copy.deepcopy(record.attributes[definition.name])

        emails = _reconcile_emails(record.attributes.get("emails"), record.email)
        if emails:
            payload["emails"] = emails
        payload["active"] = bool(record.enabled)
        if record.groups:
            payload["groups"] = [
                {
                    "value": group.value,
                    "$ref": self.location(group.value, "/Groups"),
                    "display": group.display,
                    "type": group.type or "direct",
                }
                for group in record.groups
            ]
        for urn, value in self._extensions_from(record.extensions).items():
            payload[urn] = value
        payload["meta"] = self._meta(record)
        return payload

    def to_store_record(
        self,
        resource: Mapping[str, Any],
        existing: StoreRecord | None = None,
        *,
        rejected: Sequence[str] = (),
    ) -> UserRecord:
        canonical = self.normalize(resource)
        if self.email_as_username:
            email = primary_value(canonical.get("emails"))
            if email:
                canonical["userName"] = email
        self.validate(
            canonical,
            schemas=get_attribute(resource, "schemas"),
            existing=self._prior(existing),
            rejected=rejected,
        )

        name = dict(canonical.get("name") or {})
        first_name = name.pop("givenName", None)
        last_name = name.pop("familyName", None)
        attributes = {
            key: value
            for key, value in canonical.items()
            if key not in self._column_attributes
            and not key.lower().startswith("urn:")
            and has_value(value)
        }
        if has_value(name):
            attributes["name"] = name
        active = canonical.get("active")

        record = UserRecord(
            username=str(canonical["userName"]),
            email=primary_value(canonical.get("emails")),
            first_name=first_name,
            last_name=last_name,
            enabled=True if active is None else bool(active),
            external_id=canonical.get("externalId"),
            attributes=attributes,
            extensions=self._extensions_from(canonical),
        )
        if isinstance(existing, UserRecord):
            record.id = existing.id
            record.managed = existing.managed
            record.version = existing.version
            record.created = existing.created
            record.groups = list(existing.groups)
        return record


class GroupMapper(ResourceMapper):
    _column_attributes = frozenset({"displayName", "members", "externalId"})

    def to_representation(self, record: StoreRecord) -> dict[str, Any]:
        assert isinstance(record, GroupRecord)
        payload: dict[str, Any] = {
            "schemas": self._schemas_for(record.extensions),
            "id": record.id,
        }
        if record.external_id:
            payload["externalId"] = record.external_id
        payload["displayName"] = record.display_name
        for key, value in record.attributes.items():
            if self.resource_type.schema.attribute(key) is not None:
                payload[key] = copy.deepcopy(value)
        if record.members:
            payload["members"] = [
                {
                    "value": member.value,
                    "$ref": self.location(member.value, "/Users"),
                    "display": member.display,
                    "type": member.type or USER,
                }
                for member in record.members
            ]
        for urn, value in self._extensions_from(record.extensions).items():
            payload[urn] = value
        payload["meta"] = self._meta(record)
        return payload

    def to_store_record(
        self,
        resource: Mapping[str, Any],
        existing: StoreRecord | None = None,
        *,
        rejected: Sequence[str] = (),
    ) -> GroupRecord:
        canonical = self.normalize(resource)
        self.validate(
            canonical,
            schemas=get_attribute(resource, "schemas"),
            existing=self._prior(existing),
            rejected=rejected,
        )

        members: list[MemberRef] = []
        seen: set[str] = set()
        for entry in canonical.get("members") or []:
            value = str(entry["value"])
            if value in seen:
                continue
            seen.add(value)
            members.append(
                MemberRef(value=value, display=entry.get("display"), type=entry.get("type"))
            )

        record = GroupRecord(
            display_name=str(canonical["displayName"]),
            external_id=canonical.get("externalId"),
            attributes={
                key: value
                for key, value in canonical.items()
                if key not in self._column_attributes
                and not key.lower().startswith("urn:")
                and has_value(value)
            },
            extensions=self._extensions_from(canonical),
            members=members,
        )
        if isinstance(existing, GroupRecord):
            record.id = existing.id
            record.version = existing.version
            record.created = existing.created
        return record


def mapper_for(
    resource_type: ResourceType, *, base_url: str, email_as_username: bool = False
) -> ResourceMapper:
    if resource_type.id == USER:
        return UserMapper(
            resource_type, base_url=base_url, email_as_username=email_as_username
        )
    if resource_type.id == GROUP:
        return GroupMapper(resource_type, base_url=base_url)
    raise ValueError(f"No mapper for resource type {resource_type.id}")
