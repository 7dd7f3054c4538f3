"""
SCIM filter expressions (RFC 7644 section 3.4.2.2).

Recursive-descent parser producing immutable expression trees, and an evaluator
that matches them against a resource representation.

Precedence, highest first: not, comparison, and, or. Parentheses override.
"""

from __future__ import annotations

import json
import operator
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Union

from scim_provider.modules.scim.domain.schema import (
    AttributeDefinition,
    AttributeType,
    ResourceType,
    get_attribute,
    is_core_schema_urn,
)
from scim_provider.shared.core.exceptions import FilterParseError

COMPARISON_OPERATORS = frozenset({"eq", "ne", "co", "sw", "ew", "gt", "ge", "lt", "le"})
_LOGICAL_KEYWORDS = frozenset({"and", "or", "not"})

_ORDERING: dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": operator.gt,
    "ge": operator.ge,
    "lt": operator.lt,
    "le": operator.le,
}

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<lparen>\()
  | (?P<rparen>\))
  | (?P<lbracket>\[)
  | (?P<rbracket>\])
  | (?P<string>"(?:[^"\\]|\\.)*")
  | (?P<word>[^\s()\[\]"]+)
    """,
    re.VERBOSE,
)
_NUMBER_RE = re.compile(r"-?(?:0|[1-9]\d*)(?:\.\d+)?(?:[eE][+-]?\d+)?")
_ATTR_NAME_RE = re.compile(r"[A-Za-z$][\w$-]*")


@dataclass(frozen=True, slots=True)
class AttributePath:
    attribute: str
    sub_attribute: str | None = None
    urn: str | None = None

    def __str__(self) -> str:
        text = self.attribute
        if self.sub_attribute:
            text = f"{text}.{self.sub_attribute}"
        if self.urn:
            text = f"{self.urn}:{text}"
        return text


@dataclass(frozen=True, slots=True)
class Comparison:
    path: AttributePath
    operator: str
    value: Any


@dataclass(frozen=True, slots=True)
class Presence:
    path: AttributePath


@dataclass(frozen=True, slots=True)
class And:
    left: FilterExpression
    right: FilterExpression


@dataclass(frozen=True, slots=True)
class Or:
    left: FilterExpression
    right: FilterExpression


@dataclass(frozen=True, slots=True)
class Not:
    child: FilterExpression


@dataclass(frozen=True, slots=True)
class ValuePath:
    path: AttributePath
    filter: FilterExpression


FilterExpression = Union[Comparison, Presence, And, Or, Not, ValuePath]


@dataclass(frozen=True, slots=True)
class PatchPath:
    """A PATCH target: `attr[.sub]` or `attr[filter][.sub]`."""

    attribute: AttributePath
    value_filter: FilterExpression | None = None
    sub_attribute: str | None = None

    @property
    def target_sub_attribute(self) -> str | None:
        return self.sub_attribute or self.attribute.sub_attribute


@dataclass(frozen=True, slots=True)
class _Token:
    kind: str
    text: str
    position: int


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            # Only an unterminated string literal fails every alternative.
            raise FilterParseError(pos, "closing '\"'", text)
        kind = match.lastgroup or "word"
        if kind != "ws":
            tokens.append(_Token(kind, match.group(), pos))
        pos = match.end()
    tokens.append(_Token("eof", "", len(text)))
    return tokens


def parse_attribute_path(
    text: str, position: int = 0, source: str | None = None
) -> AttributePath:
    """Parse `[urn:]attribute[.subAttribute]`."""
    raw = text.strip()
    urn: str | None = None
    if raw.lower().startswith("urn:"):
        urn, _, raw = raw.rpartition(":")
    parts = raw.split(".")
    if len(parts) > 2 or not all(_ATTR_NAME_RE.fullmatch(part) for part in parts):
        raise FilterParseError(position, "attribute path", source or text)
    return AttributePath(
        attribute=parts[0],
        sub_attribute=parts[1] if len(parts) == 2 else None,
        urn=urn or None,
    )


class _Parser:
    def __init__(self, text: str) -> None:
        self._text = text
        self._tokens = _tokenize(text)
        self._index = 0

    def _peek(self) -> _Token:
        return self._tokens[self._index]

    def _advance(self) -> _Token:
        token = self._tokens[self._index]
        if token.kind != "eof":
            self._index += 1
        return token

    def _error(self, expected: str, token: _Token | None = None) -> FilterParseError:
        token = token or self._peek()
        return FilterParseError(token.position, expected, self._text)

    @staticmethod
    def _keyword(token: _Token) -> str | None:
        return token.text.lower() if token.kind == "word" else None

    def _expect(self, kind: str, description: str) -> _Token:
        token = self._peek()
        if token.kind != kind:
            raise self._error(description, token)
        return self._advance()

    def _expect_end(self) -> None:
        if self._peek().kind != "eof":
            raise self._error("end of expression")

    def parse_filter(self) -> FilterExpression:
        if self._peek().kind == "eof":
            raise self._error("filter expression")
        expression = self._parse_or()
        self._expect_end()
        return expression

    def parse_patch_path(self) -> PatchPath:
        token = self._peek()
        if token.kind != "word":
            raise self._error("attribute path", token)
        self._advance()
        path = parse_attribute_path(token.text, token.position, self._text)

        value_filter: FilterExpression | None = None
        sub_attribute: str | None = None
        if self._peek().kind == "lbracket":
            if path.sub_attribute is not None:
                raise self._error("end of expression")
            self._advance()
            value_filter = self._parse_or()
            self._expect("rbracket", "']'")
            trailing = self._peek()
            if trailing.kind == "word" and trailing.text.startswith("."):
                self._advance()
                sub_attribute = trailing.text[1:]
                if not _ATTR_NAME_RE.fullmatch(sub_attribute):
                    raise self._error("sub-attribute name", trailing)
        self._expect_end()
        return PatchPath(path, value_filter, sub_attribute)

    def _parse_or(self) -> FilterExpression:
        left = self._parse_and()
        while self._keyword(self._peek()) == "or":
            self._advance()
            left = Or(left, self._parse_and())
        return left

    def _parse_and(self) -> FilterExpression:
        left = self._parse_not()
        while self._keyword(self._peek()) == "and":
            self._advance()
            left = And(left, self._parse_not())
        return left

    def _parse_not(self) -> FilterExpression:
        if self._keyword(self._peek()) == "not":
            self._advance()
            return Not(self._parse_not())
        return self._parse_atom()

    def _parse_atom(self) -> FilterExpression:
        token = self._peek()
        if token.kind == "lparen":
            self._advance()
            expression = self._parse_or()
            self._expect("rparen", "')'")
            return expression
        if token.kind != "word" or token.text.lower() in _LOGICAL_KEYWORDS:
            raise self._error("attribute path", token)
        self._advance()
        path = parse_attribute_path(token.text, token.position, self._text)

        following = self._peek()
        if following.kind == "lbracket":
            self._advance()
            inner = self._parse_or()
            self._expect("rbracket", "']'")
            return ValuePath(path, inner)

        op = self._keyword(following)
        if op == "pr":
            self._advance()
            return Presence(path)
        if op in COMPARISON_OPERATORS:
            self._advance()
            return Comparison(path, op, self._parse_value())
        raise self._error("operator", following)

    def _parse_value(self) -> Any:
        token = self._advance()
        if token.kind == "string":
            try:
                return json.loads(token.text)
            except json.JSONDecodeError as exc:
                raise self._error("valid string literal", token) from exc
        if token.kind == "word":
            lowered = token.text.lower()
            if lowered == "true":
                return True
            if lowered == "false":
                return False
            if lowered == "null":
                return None
            if _NUMBER_RE.fullmatch(token.text):
                if any(ch in token.text for ch in ".eE"):
                    return float(token.text)
                return int(token.text)
        raise self._error("comparison value", token)


def parse_filter(text: str) -> FilterExpression:
    """Parse a filter string, raising FilterParseError(position, expected)."""
    return _Parser(text or "").parse_filter()


def parse_patch_path(text: str) -> PatchPath:
    return _Parser(text or "").parse_patch_path()


def _parse_datetime(value: str) -> datetime | None:
    raw = value.strip()
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, dict)):
        return len(value) > 0
    return True


def _compare(op: str, actual: Any, expected: Any, definition: AttributeDefinition | None) -> bool:
    if expected is None:
        return op == "ne"

    if isinstance(expected, bool) or isinstance(actual, bool):
        if not (isinstance(expected, bool) and isinstance(actual, bool)):
            return False
        if op in ("eq", "ne"):
            return _ORDERING[op](actual, expected)
        return False

    if isinstance(expected, (int, float)):
        if not isinstance(actual, (int, float)) or op not in _ORDERING:
            return False
        return _ORDERING[op](actual, expected)

    if not isinstance(expected, str) or not isinstance(actual, str):
        return False

    if (
        definition is not None
        and definition.type is AttributeType.DATE_TIME
        and op in _ORDERING
    ):
        left, right = _parse_datetime(actual), _parse_datetime(expected)
        if left is None or right is None:
            return False
        return _ORDERING[op](left, right)

    case_exact = definition.case_exact if definition is not None else True
    if not case_exact:
        actual, expected = actual.casefold(), expected.casefold()
    if op == "co":
        return expected in actual
    if op == "sw":
        return actual.startswith(expected)
    if op == "ew":
        return actual.endswith(expected)
    return _ORDERING[op](actual, expected)


class _Evaluator:
    def __init__(self, resource_type: ResourceType | None) -> None:
        self._resource_type = resource_type

    def matches(
        self,
        expression: FilterExpression,
        scope: Mapping[str, Any],
        parent: AttributeDefinition | None = None,
    ) -> bool:
        if isinstance(expression, And):
            return self.matches(expression.left, scope, parent) and self.matches(
                expression.right, scope, parent
            )
        if isinstance(expression, Or):
            return self.matches(expression.left, scope, parent) or self.matches(
                expression.right, scope, parent
            )
        if isinstance(expression, Not):
            return not self.matches(expression.child, scope, parent)
        if isinstance(expression, Presence):
            values = self._values(expression.path, scope, parent, unwrap=False)
            return any(_is_present(value) for value in values)
        if isinstance(expression, Comparison):
            definition = self._definition(expression.path, parent)
            values = self._values(expression.path, scope, parent, unwrap=True)
            if not values:
                return (expression.operator == "eq" and expression.value is None) or (
                    expression.operator == "ne" and expression.value is not None
                )
            return any(
                _compare(expression.operator, value, expression.value, definition)
                for value in values
            )
        if isinstance(expression, ValuePath):
            definition = self._definition(expression.path, parent)
            elements = self._values(expression.path, scope, parent, unwrap=False)
            return any(
                isinstance(element, Mapping)
                and self.matches(expression.filter, element, definition)
                for element in elements
            )
        raise TypeError(f"Unsupported filter node: {type(expression).__name__}")

    def _definition(
        self, path: AttributePath, parent: AttributeDefinition | None
    ) -> AttributeDefinition | None:
        if parent is not None:
            definition = parent.sub_attribute(path.attribute)
            if definition is not None and path.sub_attribute:
                return definition.sub_attribute(path.sub_attribute)
            return definition
        if self._resource_type is None:
            return None
        return self._resource_type.resolve(path.attribute, path.sub_attribute, path.urn)

    def _values(
        self,
        path: AttributePath,
        scope: Mapping[str, Any],
        parent: AttributeDefinition | None,
        *,
        unwrap: bool,
    ) -> list[Any]:
        root: Any = scope
        if parent is None and path.urn and not is_core_schema_urn(path.urn):
            root = get_attribute(scope, path.urn)
            if not isinstance(root, Mapping):
                return []

        value = get_attribute(root, path.attribute)
        items = value if isinstance(value, list) else [value]
        if path.sub_attribute:
            collected: list[Any] = []
            for item in items:
                if isinstance(item, Mapping):
                    sub = get_attribute(item, path.sub_attribute)
                    collected.extend(sub if isinstance(sub, list) else [sub])
            items = collected
        elif unwrap:
            # A complex multi-valued attribute compares by its "value" sub-attribute.
            items = [
                get_attribute(item, "value") if isinstance(item, Mapping) else item
                for item in items
            ]
        return [item for item in items if item is not None]


def evaluate(
    expression: FilterExpression,
    resource: Mapping[str, Any],
    resource_type: ResourceType | None = None,
) -> bool:
    """Return True when `resource` satisfies `expression`. Never mutates the resource."""
    return _Evaluator(resource_type).matches(expression, resource)


def evaluate_element(
    expression: FilterExpression,
    element: Mapping[str, Any],
    parent: AttributeDefinition | None,
) -> bool:
    """Evaluate a value-path filter against one entry of a multi-valued attribute."""
    return _Evaluator(None).matches(expression, element, parent)


def compile_filter(
    text: str, resource_type: ResourceType | None = None
) -> Callable[[Mapping[str, Any]], bool]:
    expression = parse_filter(text)
    return lambda resource: evaluate(expression, resource, resource_type)
