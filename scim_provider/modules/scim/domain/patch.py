"""
SCIM PATCH (RFC 7644 section 3.5.2).

`apply_patch` applies operations in order to a deep copy of a representation.
Each operation sees the effects of the previous ones; the first failure aborts
the request and the input is left untouched.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from scim_provider.modules.scim.domain.filter import (
    And,
    Comparison,
    FilterExpression,
    PatchPath,
    evaluate_element,
    parse_patch_path,
)
from scim_provider.modules.scim.domain.mapper import has_value
from scim_provider.modules.scim.domain.schema import (
    AttributeDefinition,
    Mutability,
    ResourceSchema,
    ResourceType,
    find_key,
    normalize_object,
    normalize_value,
)
from scim_provider.shared.core.exceptions import PatchError

PATCH_OP_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:PatchOp"

_SUPPORTED_OPS = frozenset({"add", "replace", "remove"})
_SKIPPED_KEYS = frozenset({"schemas", "id", "meta"})


@dataclass(frozen=True, slots=True)
class PatchOperation:
    op: str
    path: str | None = None
    value: Any = None


def apply_patch(
    resource: Mapping[str, Any],
    operations: Sequence[PatchOperation],
    resource_type: ResourceType,
) -> dict[str, Any]:
    result = copy.deepcopy(dict(resource))
    applier = _PatchApplier(resource_type)
    for operation in operations:
        applier.apply(result, operation)
    return result


def _seed_from_filter(
    expression: FilterExpression, definition: AttributeDefinition
) -> dict[str, Any]:
    # `add emails[type eq "work"].value` with no match creates {"type": "work", ...}.
    if isinstance(expression, And):
        return {
            **_seed_from_filter(expression.left, definition),
            **_seed_from_filter(expression.right, definition),
        }
    if (
        isinstance(expression, Comparison)
        and expression.operator == "eq"
        and expression.path.sub_attribute is None
    ):
        sub = definition.sub_attribute(expression.path.attribute)
        if sub is not None:
            return {sub.name: expression.value}
    return {}


class _PatchApplier:
    def __init__(self, resource_type: ResourceType) -> None:
        self._resource_type = resource_type

    def apply(self, target: dict[str, Any], operation: PatchOperation) -> None:
        op = (operation.op or "").strip().lower()
        if op not in _SUPPORTED_OPS:
            raise PatchError(f"Unsupported patch operation '{operation.op}'", "invalidSyntax")
        path = (operation.path or "").strip() or None
        value = operation.value
        if op != "remove" and value is None:
            raise PatchError(f"Operation '{op}' requires a value", "invalidValue")

        if path is None:
            if op == "remove":
                raise PatchError("Operation 'remove' requires a path", "noTarget")
            if not isinstance(value, Mapping):
                raise PatchError(
                    f"Operation '{op}' without a path requires an object value",
                    "invalidValue",
                )
            self._apply_object(target, op, value)
            return

        extension = self._resource_type.extension(path)
        if extension is not None:
            self._apply_extension(target, op, extension, value)
            return
        self._apply_path(target, op, parse_patch_path(path), value, path)

    # -- whole-object forms --------------------------------------------------

    def _apply_object(
        self, target: dict[str, Any], op: str, value: Mapping[str, Any], urn: str | None = None
    ) -> None:
        for key, item in value.items():
            if not isinstance(key, str) or key.lower() in _SKIPPED_KEYS:
                continue
            extension = self._resource_type.extension(key) if urn is None else None
            if extension is not None:
                self._apply_extension(target, op, extension, item)
                continue
            text = f"{urn}:{key}" if urn else key
            self._apply_path(target, op, parse_patch_path(text), item, text)

    def _apply_extension(
        self, target: dict[str, Any], op: str, extension: ResourceSchema, value: Any
    ) -> None:
        if op == "remove":
            for attr in extension.attributes:
                self._check_writable(attr, extension.id)
            key = find_key(target, extension.id)
            if key is not None:
                target.pop(key)
            return
        if not isinstance(value, Mapping):
            raise PatchError(
                f"Value for '{extension.id}' must be an object", "invalidValue"
            )
        self._apply_object(target, op, value, urn=extension.id)

    # -- path form -----------------------------------------------------------

    def _apply_path(
        self,
        target: dict[str, Any],
        op: str,
        patch_path: PatchPath,
        value: Any,
        text: str,
    ) -> None:
        attr_path = patch_path.attribute
        definition = self._resource_type.resolve(attr_path.attribute, None, attr_path.urn)
        if definition is None:
            raise PatchError(f"Unknown attribute path '{text}'", "invalidPath")
        sub_name = patch_path.target_sub_attribute
        sub: AttributeDefinition | None = None
        if sub_name is not None:
            sub = definition.sub_attribute(sub_name)
            if sub is None:
                raise PatchError(f"Unknown attribute path '{text}'", "invalidPath")
        if patch_path.value_filter is not None and not definition.multi_valued:
            raise PatchError(
                f"Value filter on single-valued attribute '{definition.name}'", "invalidPath"
            )
        self._check_writable(definition, text)
        if sub is not None:
            self._check_writable(sub, text)

        container = self._container(target, attr_path.urn, create=op != "remove")
        if container is None:
            return
        key = find_key(container, definition.name) or definition.name
        if key != definition.name:
            container[definition.name] = container.pop(key)
        key = definition.name

        if patch_path.value_filter is not None:
            self._apply_filtered(container, op, definition, sub, patch_path.value_filter, value)
        elif sub is not None:
            self._apply_sub(container, op, definition, sub, value)
        elif op == "remove":
            self._remove(container, definition, value)
        else:
            self._set(container, op, definition, value)

        if not has_value(container.get(key)):
            container.pop(key, None)
        if container is not target and not container:
            ext_key = find_key(target, str(attr_path.urn))
            if ext_key is not None:
                target.pop(ext_key)

    def _container(
        self, target: dict[str, Any], urn: str | None, *, create: bool
    ) -> dict[str, Any] | None:
        if urn is None or urn.lower() == self._resource_type.schema.id.lower():
            return target
        extension = self._resource_type.extension(urn)
        if extension is None:
            return target
        key = find_key(target, extension.id)
        if key is None or not isinstance(target[key], dict):
            if not create:
                return None
            if key is not None:
                target.pop(key)
            target[extension.id] = {}
            return target[extension.id]
        return target[key]

    # -- mutability ----------------------------------------------------------

    @staticmethod
    def _check_writable(definition: AttributeDefinition, text: str) -> None:
        if definition.mutability is Mutability.READ_ONLY:
            raise PatchError(
                f"Attribute '{text}' is readOnly", "attributeNotModifiable"
            )

    @staticmethod
    def _check_immutable(
        definition: AttributeDefinition, current: Any, new: Any, op: str
    ) -> None:
        if definition.mutability is not Mutability.IMMUTABLE or not has_value(current):
            return
        if op == "remove" or new != current:
            raise PatchError(
                f"Attribute '{definition.path}' is immutable and cannot be changed",
                "attributeNotModifiable",
            )

    # -- operations ----------------------------------------------------------

    def _set(
        self, container: dict[str, Any], op: str, definition: AttributeDefinition, value: Any
    ) -> None:
        key = definition.name
        new = normalize_value(definition, value)
        current = container.get(key)

        if definition.multi_valued:
            if op == "replace":
                self._check_immutable(definition, current, new, op)
                container[key] = new
                return
            entries = list(current) if isinstance(current, list) else []
            for item in new:
                if item in entries:
                    continue
                if isinstance(item, dict) and item.get("primary") is True:
                    _demote_primary(entries)
                entries.append(item)
            container[key] = entries
            return

        if definition.is_complex:
            if not isinstance(new, dict):
                raise PatchError(
                    f"Value for '{definition.path}' must be an object", "invalidValue"
                )
            merged = dict(current) if isinstance(current, dict) else {}
            for sub_name, sub_value in new.items():
                sub = definition.sub_attribute(sub_name)
                if sub is not None:
                    self._check_writable(sub, sub.path)
                    self._check_immutable(sub, merged.get(sub_name), sub_value, op)
                merged[sub_name] = sub_value
            container[key] = merged
            return

        self._check_immutable(definition, current, new, op)
        container[key] = new

    def _remove(
        self, container: dict[str, Any], definition: AttributeDefinition, value: Any
    ) -> None:
        key = definition.name
        current = container.get(key)
        if definition.multi_valued and isinstance(current, list) and value is not None:
            # `remove members` with a value list removes just those entries.
            doomed = [
                entry.get("value") if isinstance(entry, Mapping) else entry
                for entry in (value if isinstance(value, list) else [value])
            ]
            container[key] = [
                entry
                for entry in current
                if (entry.get("value") if isinstance(entry, Mapping) else entry)
                not in doomed
            ]
            return
        self._check_immutable(definition, current, None, "remove")
        container.pop(key, None)

    def _apply_sub(
        self,
        container: dict[str, Any],
        op: str,
        definition: AttributeDefinition,
        sub: AttributeDefinition,
        value: Any,
    ) -> None:
        key = definition.name
        current = container.get(key)
        if definition.multi_valued:
            entries = [e for e in current if isinstance(e, dict)] if isinstance(current, list) else []
            for entry in entries:
                self._assign(entry, op, sub, value)
            if entries:
                container[key] = entries
            return
        obj = dict(current) if isinstance(current, dict) else {}
        self._assign(obj, op, sub, value)
        container[key] = obj

    def _apply_filtered(
        self,
        container: dict[str, Any],
        op: str,
        definition: AttributeDefinition,
        sub: AttributeDefinition | None,
        expression: FilterExpression,
        value: Any,
    ) -> None:
        key = definition.name
        current = container.get(key)
        entries = list(current) if isinstance(current, list) else []
        matched = [
            index
            for index, entry in enumerate(entries)
            if isinstance(entry, Mapping) and evaluate_element(expression, entry, definition)
        ]

        if not matched:
            if op == "add":
                entry = _seed_from_filter(expression, definition)
                if sub is not None:
                    self._assign(entry, op, sub, value)
                elif isinstance(value, Mapping):
                    entry.update(normalize_object(definition.sub_attributes, value))
                if entry.get("primary") is True:
                    _demote_primary(entries)
                entries.append(entry)
                container[key] = entries
            return

        if op == "remove" and sub is None:
            container[key] = [e for i, e in enumerate(entries) if i not in matched]
            return

        for index in matched:
            entry = dict(entries[index])
            if sub is not None:
                self._assign(entry, op, sub, value)
            else:
                if not isinstance(value, Mapping):
                    raise PatchError(
                        f"Value for '{definition.path}' must be an object", "invalidValue"
                    )
                replacement = normalize_object(definition.sub_attributes, value)
                if op == "add":
                    entry.update(replacement)
                else:
                    entry = replacement
            entries[index] = entry

        promoted = [i for i in matched if entries[i].get("primary") is True]
        if promoted:
            keep = promoted[-1]
            for index, entry in enumerate(entries):
                if index != keep and isinstance(entry, dict) and entry.get("primary") is True:
                    entries[index] = {**entry, "primary": False}
        container[key] = entries

    def _assign(
        self, entry: dict[str, Any], op: str, sub: AttributeDefinition, value: Any
    ) -> None:
        current = entry.get(sub.name)
        if op == "remove":
            self._check_immutable(sub, current, None, op)
            entry.pop(sub.name, None)
            return
        new = normalize_value(sub, value)
        self._check_immutable(sub, current, new, op)
        entry[sub.name] = new


def _demote_primary(entries: list[Any]) -> None:
    for index, entry in enumerate(entries):
        if isinstance(entry, dict) and entry.get("primary") is True:
            entries[index] = {**entry, "primary": False}
