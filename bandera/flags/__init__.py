"""Feature flag core: resolution, authorization, audit and change fan-out."""

from .audit import AuditTrail
from .authorization import AuthorizationGuard
from .broadcaster import ChangeBroadcaster, SubscriberHandle
from .coordinator import CoordinatorConfig, FlagMutationCoordinator
from .errors import BanderaError, Denied, DuplicateKey, NotFound, StorageFailure, ValidationFailed
from .locks import KeyedLock
from .membership import MembershipIndex
from .models import (
    AuditKind,
    AuditRecord,
    ChangeEvent,
    ChangeKind,
    Decision,
    EffectiveValue,
    Flag,
    FlagDetail,
    FlagPatch,
    FlagType,
    FlagView,
    Membership,
    Organization,
    OrganizationScope,
    Override,
    PersonalScope,
    Role,
)
from .organizations import OrganizationService
from .resolver import FlagResolver
from .storage import FlagStore, InMemoryFlagStore

__all__ = [
    "AuditKind",
    "AuditRecord",
    "AuditTrail",
    "AuthorizationGuard",
    "BanderaError",
    "ChangeBroadcaster",
    "ChangeEvent",
    "ChangeKind",
    "CoordinatorConfig",
    "Decision",
    "Denied",
    "DuplicateKey",
    "EffectiveValue",
    "Flag",
    "FlagDetail",
    "FlagMutationCoordinator",
    "FlagPatch",
    "FlagResolver",
    "FlagStore",
    "FlagType",
    "FlagView",
    "InMemoryFlagStore",
    "KeyedLock",
    "Membership",
    "MembershipIndex",
    "NotFound",
    "Organization",
    "OrganizationScope",
    "OrganizationService",
    "Override",
    "PersonalScope",
    "Role",
    "StorageFailure",
    "SubscriberHandle",
    "ValidationFailed",
]
