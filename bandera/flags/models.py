"""Typed models for the flag core."""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


class FlagType(str, Enum):
    BOOLEAN = "boolean"
    STRING = "string"
    NUMBER = "number"
    JSON = "json"


class Role(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


# ---------------------------------------------------------------------------
# Flag scope: tagged variant, consumers dispatch with isinstance()
# ---------------------------------------------------------------------------

class PersonalScope(BaseModel):
    """Flag lives in one user's private namespace."""

    model_config = ConfigDict(frozen=True)

    type: Literal["personal"] = "personal"
    owner_id: str = Field(min_length=1)

    @property
    def namespace(self) -> str:
        return f"user:{self.owner_id}"


class OrganizationScope(BaseModel):
    """Flag lives in an organization's shared namespace."""

    model_config = ConfigDict(frozen=True)

    type: Literal["organization"] = "organization"
    organization_id: str = Field(min_length=1)

    @property
    def namespace(self) -> str:
        return f"org:{self.organization_id}"


FlagScope = Annotated[Union[PersonalScope, OrganizationScope], Field(discriminator="type")]


def scope_payload(scope: PersonalScope | OrganizationScope) -> dict[str, str]:
    if isinstance(scope, PersonalScope):
        return {"type": "personal", "ownerId": scope.owner_id}
    if isinstance(scope, OrganizationScope):
        return {"type": "organization", "organizationId": scope.organization_id}
    raise TypeError(f"Unknown flag scope: {scope!r}")


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

class Flag(BaseModel):
    id: str = Field(default_factory=new_id)
    key: str = Field(min_length=1)
    type: FlagType
    default_value: str
    description: str | None = None
    scope: FlagScope
    enabled: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def organization_id(self) -> str | None:
        return self.scope.organization_id if isinstance(self.scope, OrganizationScope) else None

    @property
    def owner_id(self) -> str | None:
        return self.scope.owner_id if isinstance(self.scope, PersonalScope) else None


class Override(BaseModel):
    """Per-user replacement value. One row per (flag_id, user_id)."""

    id: str = Field(default_factory=new_id)
    flag_id: str
    user_id: str
    value: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Organization(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=2, max_length=100)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Membership(BaseModel):
    organization_id: str
    user_id: str
    role: Role = Role.MEMBER
    created_at: datetime = Field(default_factory=utcnow)


class FlagPatch(BaseModel):
    """Partial update; only explicitly set fields are applied."""

    model_config = ConfigDict(extra="forbid")

    key: str | None = None
    type: FlagType | None = None
    default_value: str | None = None
    description: str | None = None
    enabled: bool | None = None


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------

class AuditKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    TOGGLED = "toggled"
    OVERRIDE_CREATED = "override_created"
    OVERRIDE_DELETED = "override_deleted"
    ORGANIZATION_CREATED = "organization_created"
    ORGANIZATION_RENAMED = "organization_renamed"
    ORGANIZATION_DELETED = "organization_deleted"
    MEMBER_ADDED = "member_added"
    MEMBER_REMOVED = "member_removed"
    ROLE_CHANGED = "role_changed"


class AuditRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    kind: AuditKind
    message: str
    actor_id: str
    flag_id: str | None = None
    organization_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Resolution and authorization results
# ---------------------------------------------------------------------------

class EffectiveValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str
    is_overridden: bool = False


class Decision(BaseModel):
    """Allow/deny outcome. Denial is a normal result, never an exception."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: str = ""

    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> "Decision":
        return cls(allowed=False, reason=reason)

    def __bool__(self) -> bool:
        return self.allowed


class FlagView(BaseModel):
    flag: Flag
    effective: EffectiveValue


class FlagDetail(BaseModel):
    flag: Flag
    effective: EffectiveValue
    overrides: list[Override] = Field(default_factory=list)
    history: list[AuditRecord] = Field(default_factory=list)
    can_mutate: bool = False


# ---------------------------------------------------------------------------
# Change events (ephemeral, never persisted)
# ---------------------------------------------------------------------------

class ChangeKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    TOGGLED = "toggled"

    @property
    def event_name(self) -> str:
        return f"feature_flag.{self.value}"


class ChangeEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ChangeKind
    flag_id: str
    key: str
    value: str
    is_overridden: bool = False
    enabled: bool = True
    scope: FlagScope
    audience_user_id: str | None = None
    """When set, only subscribers of this user receive the event."""
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def for_flag(
        cls,
        kind: ChangeKind,
        flag: Flag,
        value: str | None = None,
        is_overridden: bool = False,
        audience_user_id: str | None = None,
    ) -> "ChangeEvent":
        return cls(
            kind=kind,
            flag_id=flag.id,
            key=flag.key,
            value=flag.default_value if value is None else value,
            is_overridden=is_overridden,
            enabled=flag.enabled,
            scope=flag.scope,
            audience_user_id=audience_user_id,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "flagId": self.flag_id,
            "key": self.key,
            "value": self.value,
            "isOverridden": self.is_overridden,
            "enabled": self.enabled,
            "scope": scope_payload(self.scope),
            "timestamp": self.timestamp.isoformat(),
        }

    def to_message(self) -> str:
        return json.dumps({"event": self.kind.event_name, "data": self.to_payload()})
