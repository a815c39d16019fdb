"""Typed failures raised by the flag core."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from .models import utcnow


class BanderaError(Exception):
    """Base class for every failure the core reports to its callers."""

    default_message = "Operation failed"

    def __init__(
        self,
        message: str | None = None,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        self.error_code = error_code or _error_code(type(self).__name__)
        self.details = details or {}
        self.timestamp = timestamp or utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        return f"{self.error_code}: {self.message}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}(message={self.message!r}, error_code={self.error_code!r})"


class Denied(BanderaError):
    """The actor may not perform the action. ``reason`` is safe to show."""

    default_message = "Not authorized"

    def __init__(self, reason: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(reason or self.default_message, details=details)
        self.reason = self.message


class NotFound(BanderaError):
    default_message = "Resource not found"

    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(
            f"{resource} with id '{identifier}' not found",
            details={"resource": resource, "id": identifier},
        )
        self.resource = resource
        self.identifier = identifier


class DuplicateKey(BanderaError):
    default_message = "Key already exists"

    def __init__(self, key: str, namespace: str, resource: str = "Feature flag") -> None:
        super().__init__(
            f"{resource} '{key}' already exists in {namespace}",
            details={"resource": resource, "key": key, "namespace": namespace},
        )
        self.key = key
        self.namespace = namespace


class ValidationFailed(BanderaError):
    default_message = "Validation failed"

    def __init__(self, message: str | None = None, field_errors: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.field_errors = field_errors or {}
        if self.field_errors:
            self.details["field_errors"] = self.field_errors


class StorageFailure(BanderaError):
    """Storage collaborator failed. Not retried here."""

    default_message = "Storage operation failed"

    def __init__(self, operation: str, message: str | None = None) -> None:
        super().__init__(
            message or f"Storage operation '{operation}' failed",
            details={"operation": operation},
        )
        self.operation = operation


def _error_code(class_name: str) -> str:
    chars: list[str] = []
    for index, char in enumerate(class_name):
        if char.isupper() and index:
            chars.append("_")
        chars.append(char.upper())
    return "".join(chars)
