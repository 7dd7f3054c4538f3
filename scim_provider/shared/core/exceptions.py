from typing import Optional, Sequence


class ScimError(Exception):
    """Base exception for all SCIM protocol errors."""

    def __init__(
        self, status_code: int, detail: str, *, scim_type: Optional[str] = None
    ) -> None:
        super().__init__(detail)
        self.status_code = int(status_code)
        self.detail = str(detail)
        self.scim_type = scim_type


class FilterParseError(ScimError):
    """Raised when a filter expression or attribute path is malformed."""

    def __init__(self, position: int, expected: str, text: str = ""):
        detail = f"Invalid filter at position {position}: expected {expected}"
        if text:
            detail = f"{detail} in {text!r}"
        super().__init__(400, detail, scim_type="invalidFilter")
        self.position = position
        self.expected = expected


class ValidationError(ScimError):
    """Raised when a resource violates its schema. Carries every violation found."""

    def __init__(self, violations: Sequence[str], scim_type: str = "invalidValue"):
        self.violations = list(violations)
        super().__init__(400, "; ".join(self.violations), scim_type=scim_type)


class PatchError(ScimError):
    """
    Raised when a PATCH request cannot be applied.

    `reason` is the engine's failure kind; `scim_type` is what goes on the wire.
    attributeNotModifiable is reported as RFC 7644 "mutability".
    """

    _WIRE_TYPES = {"attributeNotModifiable": "mutability"}

    def __init__(self, detail: str, reason: str = "invalidValue"):
        super().__init__(400, detail, scim_type=self._WIRE_TYPES.get(reason, reason))
        self.reason = reason


class ConflictError(ScimError):
    """Raised when a uniqueness constraint would be violated."""

    def __init__(self, detail: str):
        super().__init__(409, detail, scim_type="uniqueness")


class PreconditionFailedError(ScimError):
    """Raised when If-Match does not match the current resource version."""

    def __init__(self, detail: str = "Resource version does not match If-Match"):
        super().__init__(412, detail)


class NotFoundError(ScimError):
    """Raised when a requested resource is not found."""

    def __init__(self, detail: str = "Resource not found"):
        super().__init__(404, detail)


class StoreError(ScimError):
    """Raised when the identity store fails. Surfaced as-is, never retried."""

    def __init__(self, detail: str):
        super().__init__(500, detail)
