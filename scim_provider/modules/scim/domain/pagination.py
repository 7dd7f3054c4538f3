"""
List responses: sorting and index-based pagination (RFC 7644 section 3.4.2.3-4).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from scim_provider.modules.scim.domain.filter import AttributePath, parse_attribute_path
from scim_provider.modules.scim.domain.schema import (
    AttributeDefinition,
    ResourceType,
    get_attribute,
    is_core_schema_urn,
)
from scim_provider.shared.core.exceptions import FilterParseError, ValidationError

ASCENDING = "ascending"
DESCENDING = "descending"


@dataclass(slots=True)
class Page:
    total_results: int
    start_index: int
    items_per_page: int
    resources: list[dict[str, Any]] = field(default_factory=list)


def normalize_start_index(start_index: int | None) -> int:
    if start_index is None:
        return 1
    return max(1, int(start_index))


def normalize_count(count: int | None, *, default: int, maximum: int) -> int:
    if count is None:
        count = default
    return min(max(0, int(count)), maximum)


def paginate(
    resources: Sequence[dict[str, Any]],
    start_index: int | None,
    count: int | None,
    *,
    default_count: int,
    max_results: int,
) -> Page:
    start = normalize_start_index(start_index)
    size = normalize_count(count, default=default_count, maximum=max_results)
    window = list(resources[start - 1 : start - 1 + size]) if size else []
    return Page(
        total_results=len(resources),
        start_index=start,
        items_per_page=len(window),
        resources=window,
    )


def _sort_path(sort_by: str, resource_type: ResourceType) -> tuple[AttributePath, AttributeDefinition]:
    try:
        path = parse_attribute_path(sort_by)
    except FilterParseError as exc:
        raise ValidationError([f"Invalid sortBy '{sort_by}'"]) from exc
    definition = resource_type.resolve(path.attribute, path.sub_attribute, path.urn)
    if definition is None:
        raise ValidationError([f"Unknown sortBy attribute '{sort_by}'"])
    return path, definition


def _sort_value(resource: Mapping[str, Any], path: AttributePath) -> Any:
    root: Any = resource
    if path.urn and not is_core_schema_urn(path.urn):
        root = get_attribute(resource, path.urn)
        if not isinstance(root, Mapping):
            return None
    value = get_attribute(root, path.attribute)
    if isinstance(value, list):
        # Multi-valued: sort by the primary entry, else the first one.
        entries = [entry for entry in value if entry is not None]
        if not entries:
            return None
        primary = [e for e in entries if isinstance(e, Mapping) and e.get("primary") is True]
        value = (primary or entries)[0]
        if isinstance(value, Mapping) and path.sub_attribute is None:
            value = get_attribute(value, "value")
    if path.sub_attribute:
        value = get_attribute(value, path.sub_attribute) if isinstance(value, Mapping) else None
    return value


def _sort_key(value: Any, definition: AttributeDefinition) -> tuple[int, Any]:
    if isinstance(value, bool):
        return (0, value)
    if isinstance(value, (int, float)):
        return (1, value)
    text = str(value)
    return (2, text if definition.case_exact else text.casefold())


def sort_resources(
    resources: Sequence[dict[str, Any]],
    sort_by: str | None,
    sort_order: str | None,
    resource_type: ResourceType,
) -> list[dict[str, Any]]:
    """
    Stable sort on `sort_by`; ties broken by id ascending.

    Resources without a value for the attribute sort last in either order.
    """
    order = (sort_order or ASCENDING).strip().lower()
    if order not in (ASCENDING, DESCENDING):
        raise ValidationError([f"Invalid sortOrder '{sort_order}'"])
    by_id = sorted(resources, key=lambda r: str(r.get("id") or ""))
    if not sort_by:
        return list(resources)

    path, definition = _sort_path(sort_by, resource_type)
    present: list[tuple[tuple[int, Any], dict[str, Any]]] = []
    missing: list[dict[str, Any]] = []
    for resource in by_id:
        value = _sort_value(resource, path)
        if value is None or value == "":
            missing.append(resource)
        else:
            present.append((_sort_key(value, definition), resource))

    # Python's sort is stable, so reverse=True keeps id order among ties.
    present.sort(key=lambda item: item[0], reverse=order == DESCENDING)
    return [resource for _, resource in present] + missing
