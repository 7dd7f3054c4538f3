"""
`attributes` / `excludedAttributes` projection (RFC 7644 section 3.4.2.5).
"""

from __future__ import annotations

import copy
from typing import Any, Mapping

from scim_provider.modules.scim.domain.filter import AttributePath, parse_attribute_path
from scim_provider.modules.scim.domain.schema import (
    AttributeDefinition,
    Returned,
    ResourceType,
    find_key,
    is_core_schema_urn,
)
from scim_provider.shared.core.exceptions import FilterParseError, ValidationError

_ALWAYS_KEYS = ("schemas", "id", "meta")


def parse_attribute_list(text: str | None) -> list[AttributePath]:
    if not text:
        return []
    paths: list[AttributePath] = []
    for raw in text.split(","):
        item = raw.strip()
        if not item:
            continue
        try:
            paths.append(parse_attribute_path(item))
        except FilterParseError as exc:
            raise ValidationError([f"Invalid attribute path '{item}'"]) from exc
    return paths


def _container(
    resource: Mapping[str, Any], path: AttributePath
) -> tuple[Mapping[str, Any] | None, str | None]:
    """The object holding `path` and, for extension paths, its key in the resource."""
    if path.urn and not is_core_schema_urn(path.urn):
        key = find_key(resource, path.urn)
        if key is None or not isinstance(resource[key], Mapping):
            return None, None
        return resource[key], key
    return resource, None


def _strip_never(resource: dict[str, Any], resource_type: ResourceType) -> None:
    for definition in resource_type.schema.attributes:
        if definition.returned is Returned.NEVER:
            key = find_key(resource, definition.name)
            if key is not None:
                resource.pop(key)


def _copy_path(
    source: Mapping[str, Any],
    target: dict[str, Any],
    path: AttributePath,
    definition: AttributeDefinition,
) -> None:
    key = find_key(source, definition.name)
    if key is None:
        return
    value = source[key]
    if path.sub_attribute is None:
        target[key] = copy.deepcopy(value)
        return
    if isinstance(value, list):
        # Slots stay index-aligned with the source entries.
        slots = target.get(key)
        if not (
            isinstance(slots, list)
            and len(slots) == len(value)
            and all(isinstance(slot, dict) for slot in slots)
        ):
            slots = [{} for _ in value]
        for index, entry in enumerate(value):
            if not isinstance(entry, Mapping):
                continue
            sub_key = find_key(entry, path.sub_attribute)
            if sub_key is not None:
                slots[index][sub_key] = copy.deepcopy(entry[sub_key])
        target[key] = slots
    elif isinstance(value, Mapping):
        sub_key = find_key(value, path.sub_attribute)
        if sub_key is not None:
            target.setdefault(key, {})[sub_key] = copy.deepcopy(value[sub_key])


def _drop_empty_entries(target: dict[str, Any]) -> None:
    """Remove slots left empty by sub-attribute selection, then empty containers."""
    for key in list(target):
        value = target[key]
        if isinstance(value, list) and value and all(isinstance(e, dict) for e in value):
            kept = [entry for entry in value if entry]
            if kept:
                target[key] = kept
            else:
                target.pop(key)
        elif isinstance(value, dict) and key not in _ALWAYS_KEYS:
            _drop_empty_entries(value)
            if not value:
                target.pop(key)


def _remove_path(
    target: dict[str, Any], path: AttributePath, definition: AttributeDefinition
) -> None:
    key = find_key(target, definition.name)
    if key is None:
        return
    if path.sub_attribute is None:
        target.pop(key)
        return
    value = target[key]
    entries = value if isinstance(value, list) else [value]
    for entry in entries:
        if isinstance(entry, dict):
            sub_key = find_key(entry, path.sub_attribute)
            if sub_key is not None:
                entry.pop(sub_key)


def _whole_extension(resource_type: ResourceType, path: AttributePath) -> str | None:
    # "urn:...:enterprise:2.0:User" parses as urn "urn:...:2.0", attribute "User".
    if path.urn is None or path.sub_attribute is not None:
        return None
    extension = resource_type.extension(f"{path.urn}:{path.attribute}")
    return extension.id if extension is not None else None


def _always_returned(definition: AttributeDefinition | None) -> bool:
    return definition is not None and definition.returned is Returned.ALWAYS


def project(
    resource: Mapping[str, Any],
    resource_type: ResourceType,
    attributes: str | None = None,
    excluded_attributes: str | None = None,
) -> dict[str, Any]:
    """
    Apply attribute selection to a rendered resource.

    `attributes` wins when both are given. Paths that name no known attribute
    are ignored; `schemas`, `id`, `meta` and every `returned: always`
    attribute survive either way.
    """
    included = parse_attribute_list(attributes)
    excluded = parse_attribute_list(excluded_attributes)

    if included:
        result: dict[str, Any] = {
            key: copy.deepcopy(resource[key]) for key in _ALWAYS_KEYS if key in resource
        }
        for definition in resource_type.schema.attributes:
            if _always_returned(definition):
                _copy_path(resource, result, AttributePath(definition.name), definition)
        for path in included:
            whole = _whole_extension(resource_type, path)
            if whole is not None:
                key = find_key(resource, whole)
                if key is not None:
                    result[key] = copy.deepcopy(resource[key])
                continue
            definition = resource_type.resolve(path.attribute, None, path.urn)
            if definition is None:
                continue
            source, ext_key = _container(resource, path)
            if source is None:
                continue
            if ext_key is None:
                _copy_path(source, result, path, definition)
            else:
                _copy_path(source, result.setdefault(ext_key, {}), path, definition)
        _drop_empty_entries(result)
    else:
        result = copy.deepcopy(dict(resource))
        for path in excluded:
            whole = _whole_extension(resource_type, path)
            if whole is not None:
                key = find_key(result, whole)
                if key is not None:
                    result.pop(key)
                continue
            definition = resource_type.resolve(path.attribute, None, path.urn)
            if definition is None or _always_returned(definition):
                continue
            if path.sub_attribute and _always_returned(
                definition.sub_attribute(path.sub_attribute)
            ):
                continue
            if path.attribute.lower() in _ALWAYS_KEYS and path.urn is None:
                continue
            target, ext_key = _container(result, path)
            if target is None:
                continue
            _remove_path(target, path, definition)  # type: ignore[arg-type]
            if ext_key is not None and not result[ext_key]:
                result.pop(ext_key)

    _strip_never(result, resource_type)
    return result
