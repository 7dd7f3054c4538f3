"""
SCIM schema model.

Schema documents (RFC 7643 section 7) are loaded once per process from package
data plus any extension files named in settings, and exposed read-only through
the `SchemaRegistry`.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any, Iterable, Mapping

import structlog

from scim_provider.shared.core.config import get_settings

logger = structlog.get_logger()

SCIM_USER_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:User"
SCIM_GROUP_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:Group"
SCIM_ENTERPRISE_USER_SCHEMA = (
    "urn:ietf:params:scim:schemas:extension:enterprise:2.0:User"
)
SCIM_SCHEMA_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:Schema"
SCIM_RESOURCE_TYPE_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:ResourceType"

_SCHEMA_PACKAGE = "scim_provider.modules.scim.domain.schemas"
_BUNDLED_SCHEMA_FILES = ("user.json", "group.json", "enterprise_user.json")


class AttributeType(str, Enum):
    STRING = "string"
    BOOLEAN = "boolean"
    DECIMAL = "decimal"
    INTEGER = "integer"
    DATE_TIME = "dateTime"
    REFERENCE = "reference"
    BINARY = "binary"
    COMPLEX = "complex"


class Mutability(str, Enum):
    READ_ONLY = "readOnly"
    READ_WRITE = "readWrite"
    IMMUTABLE = "immutable"
    WRITE_ONLY = "writeOnly"


class Returned(str, Enum):
    ALWAYS = "always"
    NEVER = "never"
    DEFAULT = "default"
    REQUEST = "request"


class SchemaLoadError(ValueError):
    """Raised when a schema document cannot be turned into a ResourceSchema."""


@dataclass(frozen=True, slots=True)
class AttributeDefinition:
    name: str
    type: AttributeType
    path: str
    multi_valued: bool = False
    mutability: Mutability = Mutability.READ_WRITE
    required: bool = False
    case_exact: bool = False
    returned: Returned = Returned.DEFAULT
    uniqueness: str = "none"
    description: str = ""
    canonical_values: tuple[str, ...] = ()
    reference_types: tuple[str, ...] = ()
    sub_attributes: tuple[AttributeDefinition, ...] = ()

    @property
    def is_complex(self) -> bool:
        return self.type is AttributeType.COMPLEX

    def sub_attribute(self, name: str) -> AttributeDefinition | None:
        key = name.lower()
        for sub in self.sub_attributes:
            if sub.name.lower() == key:
                return sub
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any], parent_path: str = "") -> AttributeDefinition:
        try:
            name = str(data["name"])
            attr_type = AttributeType(data.get("type", "string"))
            mutability = Mutability(data.get("mutability", "readWrite"))
            returned = Returned(data.get("returned", "default"))
        except (KeyError, ValueError) as exc:
            raise SchemaLoadError(f"Invalid attribute definition: {data!r}") from exc

        path = f"{parent_path}.{name}" if parent_path else name
        subs = tuple(
            cls.from_dict(sub, path) for sub in data.get("subAttributes") or []
        )
        if attr_type is AttributeType.COMPLEX and not subs:
            raise SchemaLoadError(f"Complex attribute '{path}' has no subAttributes")
        return cls(
            name=name,
            type=attr_type,
            path=path,
            multi_valued=bool(data.get("multiValued", False)),
            mutability=mutability,
            required=bool(data.get("required", False)),
            case_exact=bool(data.get("caseExact", False)),
            returned=returned,
            uniqueness=str(data.get("uniqueness", "none")),
            description=str(data.get("description", "")),
            canonical_values=tuple(data.get("canonicalValues") or ()),
            reference_types=tuple(data.get("referenceTypes") or ()),
            sub_attributes=subs,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "type": self.type.value,
            "multiValued": self.multi_valued,
            "description": self.description,
            "required": self.required,
            "mutability": self.mutability.value,
            "returned": self.returned.value,
        }
        if self.type in (
            AttributeType.STRING,
            AttributeType.REFERENCE,
            AttributeType.BINARY,
        ):
            payload["caseExact"] = self.case_exact
        if not self.is_complex:
            payload["uniqueness"] = self.uniqueness
        if self.canonical_values:
            payload["canonicalValues"] = list(self.canonical_values)
        if self.reference_types:
            payload["referenceTypes"] = list(self.reference_types)
        if self.sub_attributes:
            payload["subAttributes"] = [sub.to_dict() for sub in self.sub_attributes]
        return payload


@dataclass(frozen=True, slots=True)
class ResourceSchema:
    id: str
    name: str
    description: str
    attributes: tuple[AttributeDefinition, ...]

    def attribute(self, name: str) -> AttributeDefinition | None:
        key = name.lower()
        for attr in self.attributes:
            if attr.name.lower() == key:
                return attr
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResourceSchema:
        schema_id = str(data.get("id") or "")
        if not schema_id.lower().startswith("urn:"):
            raise SchemaLoadError(f"Schema id must be a URN: {schema_id!r}")
        prefix = "" if _is_core_schema(schema_id) else schema_id
        attributes = tuple(
            _load_top_level(attr, prefix) for attr in data.get("attributes") or []
        )
        return cls(
            id=schema_id,
            name=str(data.get("name") or schema_id.rsplit(":", 1)[-1]),
            description=str(data.get("description") or ""),
            attributes=attributes,
        )

    def to_dict(self, *, base_url: str) -> dict[str, Any]:
        return {
            "schemas": [SCIM_SCHEMA_SCHEMA],
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "attributes": [attr.to_dict() for attr in self.attributes],
            "meta": {
                "resourceType": "Schema",
                "location": f"{base_url.rstrip('/')}/Schemas/{self.id}",
            },
        }


def _is_core_schema(schema_id: str) -> bool:
    return schema_id.lower().startswith("urn:ietf:params:scim:schemas:core:")


def _load_top_level(data: dict[str, Any], urn_prefix: str) -> AttributeDefinition:
    attr = AttributeDefinition.from_dict(data)
    if not urn_prefix:
        return attr
    return _with_prefix(attr, urn_prefix)


def _with_prefix(attr: AttributeDefinition, urn_prefix: str) -> AttributeDefinition:
    # Extension attribute paths carry the schema URN: "<urn>:manager.value".
    subs = tuple(_with_prefix(sub, urn_prefix) for sub in attr.sub_attributes)
    return replace(attr, path=f"{urn_prefix}:{attr.path}", sub_attributes=subs)


# Attributes shared by every resource type (RFC 7643 section 3.1).
COMMON_ATTRIBUTES: tuple[AttributeDefinition, ...] = (
    AttributeDefinition(
        name="id",
        type=AttributeType.STRING,
        path="id",
        mutability=Mutability.READ_ONLY,
        case_exact=True,
        returned=Returned.ALWAYS,
        uniqueness="server",
        description="Unique identifier for the resource, assigned by the service provider.",
    ),
    AttributeDefinition(
        name="externalId",
        type=AttributeType.STRING,
        path="externalId",
        case_exact=True,
        description="Identifier for the resource as defined by the provisioning client.",
    ),
    AttributeDefinition(
        name="meta",
        type=AttributeType.COMPLEX,
        path="meta",
        mutability=Mutability.READ_ONLY,
        description="Resource metadata.",
        sub_attributes=tuple(
            AttributeDefinition(
                name=name,
                type=attr_type,
                path=f"meta.{name}",
                mutability=Mutability.READ_ONLY,
                case_exact=True,
            )
            for name, attr_type in (
                ("resourceType", AttributeType.STRING),
                ("created", AttributeType.DATE_TIME),
                ("lastModified", AttributeType.DATE_TIME),
                ("location", AttributeType.REFERENCE),
                ("version", AttributeType.STRING),
            )
        ),
    ),
)


@dataclass(frozen=True, slots=True)
class ResourceType:
    id: str
    name: str
    endpoint: str
    description: str
    schema: ResourceSchema
    extensions: tuple[ResourceSchema, ...] = ()
    required_extensions: frozenset[str] = field(default_factory=frozenset)

    @property
    def schema_urns(self) -> list[str]:
        return [self.schema.id] + [ext.id for ext in self.extensions]

    def extension(self, urn: str) -> ResourceSchema | None:
        key = urn.lower()
        for ext in self.extensions:
            if ext.id.lower() == key:
                return ext
        return None

    def is_extension_required(self, urn: str) -> bool:
        return urn in self.required_extensions

    def core_attribute(self, name: str) -> AttributeDefinition | None:
        attr = self.schema.attribute(name)
        if attr is not None:
            return attr
        key = name.lower()
        for common in COMMON_ATTRIBUTES:
            if common.name.lower() == key:
                return common
        return None

    def resolve(
        self,
        attribute: str,
        sub_attribute: str | None = None,
        urn: str | None = None,
    ) -> AttributeDefinition | None:
        """Return the definition of `[urn:]attribute[.sub_attribute]`, or None."""
        if urn is None or urn.lower() == self.schema.id.lower():
            attr = self.core_attribute(attribute)
        else:
            ext = self.extension(urn)
            attr = ext.attribute(attribute) if ext else None
        if attr is None or sub_attribute is None:
            return attr
        return attr.sub_attribute(sub_attribute)

    def to_dict(self, *, base_url: str) -> dict[str, Any]:
        return {
            "schemas": [SCIM_RESOURCE_TYPE_SCHEMA],
            "id": self.id,
            "name": self.name,
            "endpoint": self.endpoint,
            "description": self.description,
            "schema": self.schema.id,
            "schemaExtensions": [
                {"schema": ext.id, "required": ext.id in self.required_extensions}
                for ext in self.extensions
            ],
            "meta": {
                "resourceType": "ResourceType",
                "location": f"{base_url.rstrip('/')}/ResourceTypes/{self.id}",
            },
        }


class SchemaRegistry:
    """Process-wide, read-only view over the loaded schemas and resource types."""

    def __init__(
        self, schemas: Iterable[ResourceSchema], resource_types: Iterable[ResourceType]
    ) -> None:
        self._schemas = {schema.id.lower(): schema for schema in schemas}
        self._resource_types = {rt.id.lower(): rt for rt in resource_types}

    def schemas(self) -> list[ResourceSchema]:
        return list(self._schemas.values())

    def schema(self, urn: str) -> ResourceSchema | None:
        return self._schemas.get((urn or "").strip().lower())

    def resource_types(self) -> list[ResourceType]:
        return list(self._resource_types.values())

    def resource_type(self, name: str) -> ResourceType:
        try:
            return self._resource_types[name.lower()]
        except KeyError as exc:
            raise KeyError(f"Unknown resource type: {name}") from exc

    def find_resource_type(self, name: str) -> ResourceType | None:
        return self._resource_types.get((name or "").strip().lower())


def _read_bundled(filename: str) -> Any:
    return json.loads(
        resources.files(_SCHEMA_PACKAGE).joinpath(filename).read_text(encoding="utf-8")
    )


def load_schema_file(path: str | Path) -> ResourceSchema:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise SchemaLoadError(f"Cannot read schema document {path}: {exc}") from exc
    return ResourceSchema.from_dict(data)


def build_registry(extra_schema_files: Iterable[str | Path] = ()) -> SchemaRegistry:
    schemas = {
        schema.id: schema
        for schema in (
            ResourceSchema.from_dict(_read_bundled(name))
            for name in _BUNDLED_SCHEMA_FILES
        )
    }
    user_extras: list[str] = []
    for path in extra_schema_files:
        schema = load_schema_file(path)
        if _is_core_schema(schema.id):
            raise SchemaLoadError(
                f"Extra schema {schema.id} must be an extension, not a core schema"
            )
        schemas[schema.id] = schema
        user_extras.append(schema.id)
        logger.info("scim_extension_schema_loaded", schema=schema.id, path=str(path))

    resource_types: list[ResourceType] = []
    for item in _read_bundled("resource_types.json"):
        core = schemas.get(item["schema"])
        if core is None:
            raise SchemaLoadError(f"Resource type {item['id']} references unknown schema")
        extension_refs = list(item.get("schemaExtensions") or [])
        if item["id"] == "User":
            extension_refs += [{"schema": urn, "required": False} for urn in user_extras]
        extensions = tuple(schemas[ref["schema"]] for ref in extension_refs)
        resource_types.append(
            ResourceType(
                id=item["id"],
                name=item["name"],
                endpoint=item["endpoint"],
                description=item.get("description", ""),
                schema=core,
                extensions=extensions,
                required_extensions=frozenset(
                    ref["schema"] for ref in extension_refs if ref.get("required")
                ),
            )
        )
    return SchemaRegistry(schemas.values(), resource_types)


@lru_cache
def get_schema_registry() -> SchemaRegistry:
    """Returns the process-wide schema registry, loaded on first use."""
    settings = get_settings()
    registry = build_registry(settings.SCIM_EXTRA_SCHEMA_FILES)
    logger.info(
        "scim_schema_registry_loaded",
        schemas=[schema.id for schema in registry.schemas()],
    )
    return registry


def find_key(mapping: Mapping[str, Any], name: str) -> str | None:
    """Return the key of `mapping` that matches `name` case-insensitively."""
    if name in mapping:
        return name
    lowered = name.lower()
    for candidate in mapping:
        if isinstance(candidate, str) and candidate.lower() == lowered:
            return candidate
    return None


def get_attribute(mapping: Mapping[str, Any], name: str, default: Any = None) -> Any:
    key = find_key(mapping, name)
    return mapping[key] if key is not None else default


def is_core_schema_urn(urn: str) -> bool:
    return _is_core_schema(urn)


def normalize_value(definition: AttributeDefinition, value: Any) -> Any:
    """
    Deep copy of `value` with sub-attribute names in their canonical case.

    Unknown sub-attributes are dropped. A lone object sent for a multi-valued
    attribute is wrapped in a list.
    """
    if value is None:
        return None
    if definition.multi_valued and not isinstance(value, list):
        value = [value]
    if not definition.is_complex:
        return copy.deepcopy(value)
    if isinstance(value, list):
        return [
            normalize_object(definition.sub_attributes, item)
            if isinstance(item, Mapping)
            else copy.deepcopy(item)
            for item in value
        ]
    if isinstance(value, Mapping):
        return normalize_object(definition.sub_attributes, value)
    return copy.deepcopy(value)


def normalize_object(
    definitions: Iterable[AttributeDefinition], value: Mapping[str, Any]
) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for definition in definitions:
        key = find_key(value, definition.name)
        if key is not None:
            result[definition.name] = normalize_value(definition, value[key])
    return result
