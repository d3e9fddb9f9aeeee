"""
Read-time masking of audit payloads.

Stored audit rows keep their original payloads; masking is applied only when
an entry leaves the query service. A key is sensitive when its lowercased
name contains any entry of `SENSITIVE_FIELDS`; its value is replaced
wholesale by `MASK_TOKEN`, whatever its type.
"""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)

SENSITIVE_FIELDS: tuple[str, ...] = (
    "password",
    "passwordHash",
    "token",
    "accessToken",
    "refreshToken",
    "apiKey",
    "secret",
    "privateKey",
    "creditCard",
    "cvv",
    "ssn",
    "otp",
    "pin",
)

MASK_TOKEN = "********"

_NEEDLES: tuple[str, ...] = tuple(sorted({field.lower() for field in SENSITIVE_FIELDS}))


class MaskingError(TypeError):
    """Raised when a payload contains something that is not JSON data."""


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(needle in lowered for needle in _NEEDLES)


def mask(value: Any) -> Any:
    """
    Return a masked copy of a JSON value. Never mutates its input.

    Tuples are treated as arrays. Anything outside the JSON union raises
    `MaskingError`.
    """

    if value is None or isinstance(value, (bool, int, float, str)):
        return value

    if isinstance(value, (list, tuple)):
        return [mask(item) for item in value]

    if isinstance(value, dict):
        masked: dict[str, Any] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise MaskingError(f"object keys must be strings, got {type(key).__name__}")
            masked[key] = MASK_TOKEN if is_sensitive_key(key) else mask(item)
        return masked

    raise MaskingError(f"cannot mask value of type {type(value).__name__}")


def mask_payload(value: Any) -> Any:
    """
    Boundary wrapper around `mask`: on failure the whole payload is replaced
    by `MASK_TOKEN` rather than exposed.
    """

    try:
        return mask(value)
    except (MaskingError, RecursionError) as exc:
        # Payload itself is never logged.
        logger.warning("Audit payload could not be masked; withholding it error=%s", type(exc).__name__)
        return MASK_TOKEN
