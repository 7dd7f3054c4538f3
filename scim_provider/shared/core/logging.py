import logging
import re
import sys
from typing import Any

import structlog

from scim_provider.shared.core.config import get_settings

REDACTED = "[REDACTED]"

# Credential-bearing keys; SCIM clients may send `password` on User writes.
_SECRET_KEYS = frozenset(
    {
        "password",
        "token",
        "secret",
        "authorization",
        "apikey",
        "bearer",
        "cookie",
    }
)
_SECRET_SUFFIXES = ("_token", "_secret", "_password", "_key")
_BEARER_VALUE = re.compile(r"\b(Bearer|Basic)\s+[A-Za-z0-9._~+/=-]+", re.IGNORECASE)


def _is_secret_key(key: Any) -> bool:
    name = str(key).strip().lower().replace("-", "_")
    if name.endswith(_SECRET_SUFFIXES):
        return True
    return any(part in _SECRET_KEYS for part in name.split("_") if part)


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: REDACTED if _is_secret_key(k) else _scrub(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_scrub(item) for item in value]
    if isinstance(value, str):
        return _BEARER_VALUE.sub(lambda match: f"{match.group(1)} {REDACTED}", value)
    return value


def sensitive_field_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Mask credential-like keys at any depth, and bearer/basic credentials
    embedded in string values (echoed Authorization headers, error details).
    """
    return {
        key: REDACTED if _is_secret_key(key) else _scrub(value)
        for key, value in event_dict.items()
    }


def setup_logging() -> None:
    settings = get_settings()
    level = logging.DEBUG if settings.DEBUG else logging.INFO

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        sensitive_field_redactor,
    ]
    if settings.DEBUG:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    # uvicorn and SQLAlchemy log through the stdlib.
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)


def audit_log(
    event: str,
    resource_type: str,
    resource_id: str,
    details: dict[str, Any] | None = None,
) -> None:
    """
    Provisioning audit event on the `audit` logger.
    Emitted once for every create, replace, patch and delete.
    """
    structlog.get_logger("audit").info(
        event,
        resource_type=str(resource_type),
        resource_id=str(resource_id),
        metadata=details or {},
    )
