from __future__ import annotations

import re
from typing import Any


# Serial numbers are ticket positions inside a pack: 0..999 inclusive
MIN_SERIAL = 0
MAX_SERIAL = 999

_DIGITS = re.compile(r"^[0-9]+$")


class ValidationError(ValueError):
    """400-level input problem. Raised before any database work."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field: str | None = None, value: Any = None):
        super().__init__(message)
        self.field = field
        self.value = value

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": str(self),
            "field": self.field,
            "value": self.value if self.value is None or isinstance(self.value, (str, int)) else repr(self.value),
        }


class NotFoundError(LookupError):
    """404-level lookup failure (shift, pack or opening record missing)."""

    def __init__(self, code: str, message: str, *, entity_id: Any = None):
        super().__init__(message)
        self.code = code
        self.entity_id = entity_id

    def to_dict(self) -> dict:
        return {"code": self.code, "message": str(self), "entity_id": self.entity_id}


def parse_serial(value: Any, field: str) -> int:
    """
    Strictly parse a serial number into its integer position.

    Accepts digit-only strings ("000", "015") and plain ints. Rejects
    bools, floats, signs, whitespace-only and anything outside [0, 999].
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be numeric, got {value!r}", field=field, value=value)

    if isinstance(value, int):
        number = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not _DIGITS.match(stripped):
            raise ValidationError(f"{field} must be numeric, got {value!r}", field=field, value=value)
        number = int(stripped)
    else:
        raise ValidationError(f"{field} must be numeric, got {value!r}", field=field, value=value)

    if number < MIN_SERIAL or number > MAX_SERIAL:
        raise ValidationError(
            f"{field} must be between {MIN_SERIAL:03d} and {MAX_SERIAL:03d}, got {value!r}",
            field=field,
            value=value,
        )
    return number


def require_id(value: Any, field: str) -> int:
    """Entity ids are positive integers; digit strings are coerced."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} is required", field=field, value=value)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} is required", field=field, value=value)
        if not _DIGITS.match(stripped):
            raise ValidationError(f"{field} must be an integer id", field=field, value=value)
        value = int(stripped)
    if not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer id", field=field, value=value)
    if value <= 0:
        raise ValidationError(f"{field} must be a positive id", field=field, value=value)
    return value


def require_actor(value: Any, field: str) -> str:
    """Actor ids are opaque non-empty strings supplied by the auth layer."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required", field=field, value=value)
    return value.strip()
