"""Input validation for flag and organization mutations."""

from __future__ import annotations

import re
from typing import Any

from pydantic import ValidationError

from .errors import ValidationFailed
from .models import FlagType, Role

FLAG_KEY_MIN_LENGTH = 2
FLAG_KEY_MAX_LENGTH = 50
USER_ID_MAX_LENGTH = 128
ORGANIZATION_NAME_MIN_LENGTH = 2
ORGANIZATION_NAME_MAX_LENGTH = 100

_FLAG_KEY_CHARS = re.compile(r"^[A-Za-z0-9_-]+$")
_FORBIDDEN_NAME_CHARS = set('<>"\'&')


def validate_flag_key(key: Any) -> str:
    if not isinstance(key, str) or not key:
        raise ValidationFailed("Feature flag key cannot be empty", {"key": "required"})
    if not FLAG_KEY_MIN_LENGTH <= len(key) <= FLAG_KEY_MAX_LENGTH:
        raise ValidationFailed(
            f"Feature flag key must be between {FLAG_KEY_MIN_LENGTH} and {FLAG_KEY_MAX_LENGTH} characters",
            {"key": "length"},
        )
    if not _FLAG_KEY_CHARS.match(key):
        raise ValidationFailed(
            "Feature flag key can only contain letters, numbers, underscores, and hyphens",
            {"key": "characters"},
        )
    if not key[0].isalpha():
        raise ValidationFailed("Feature flag key must start with a letter", {"key": "first_character"})
    return key


def parse_flag_type(value: Any) -> FlagType:
    try:
        return FlagType(value)
    except ValueError:
        allowed = ", ".join(t.value for t in FlagType)
        raise ValidationFailed(
            f"Unknown flag type '{value}'. Expected one of: {allowed}", {"type": "unknown"}
        ) from None


def parse_role(value: Any) -> Role:
    try:
        return Role(value)
    except ValueError:
        raise ValidationFailed(f"Unknown role '{value}'", {"role": "unknown"}) from None


def require_text(value: Any, field: str) -> str:
    """Flag and override values are opaque text; only presence is checked."""
    if not isinstance(value, str):
        raise ValidationFailed(f"{field} must be a string", {field: "type"})
    return value


def require_id(value: Any, field: str = "user_id") -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationFailed(f"{field} is required", {field: "required"})
    if value != value.strip() or any(ch.isspace() for ch in value):
        raise ValidationFailed(f"{field} must not contain whitespace", {field: "format"})
    if len(value) > USER_ID_MAX_LENGTH:
        raise ValidationFailed(f"{field} is too long", {field: "length"})
    return value


def normalize_description(description: str | None) -> str | None:
    if description is None:
        return None
    trimmed = require_text(description, "description").strip()
    return trimmed or None


def validate_organization_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationFailed("Organization name cannot be empty", {"name": "required"})
    trimmed = name.strip()
    if not ORGANIZATION_NAME_MIN_LENGTH <= len(trimmed) <= ORGANIZATION_NAME_MAX_LENGTH:
        raise ValidationFailed(
            f"Organization name must be between {ORGANIZATION_NAME_MIN_LENGTH} "
            f"and {ORGANIZATION_NAME_MAX_LENGTH} characters",
            {"name": "length"},
        )
    if _FORBIDDEN_NAME_CHARS.intersection(trimmed):
        raise ValidationFailed("Organization name contains invalid characters", {"name": "characters"})
    return trimmed


def from_pydantic(exc: ValidationError) -> ValidationFailed:
    field_errors = {
        ".".join(str(part) for part in error["loc"]) or "__root__": error["msg"]
        for error in exc.errors()
    }
    return ValidationFailed("Invalid input", field_errors)
