from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field

from bandera.flags import Flag, FlagMutationCoordinator, Organization, Override, Role

ADMIN_USER_ID = "admin"
MEMBER_USER_ID = "user"
ORGANIZATION_NAME = "Test Organization"

# key, type, default, description, organization-scoped
DEMO_FLAGS: list[tuple[str, str, str, str, bool]] = [
    ("test-flag-1", "boolean", "false", "A test boolean flag", True),
    ("test-flag-2", "string", "test", "A test string flag", True),
    ("personal-flag", "boolean", "true", "A personal test flag", False),
]


@dataclass
class DemoWorkspace:
    organization: Organization
    flags: dict[str, Flag] = field(default_factory=dict)
    overrides: list[Override] = field(default_factory=list)

    def summary(self) -> dict:
        return {
            "organization": {"id": self.organization.id, "name": self.organization.name},
            "users": {"admin": ADMIN_USER_ID, "member": MEMBER_USER_ID},
            "flags": {key: flag.id for key, flag in self.flags.items()},
            "overrides": [
                {"flag_id": o.flag_id, "user_id": o.user_id, "value": o.value} for o in self.overrides
            ],
        }


async def seed_demo(coordinator: FlagMutationCoordinator) -> DemoWorkspace:
    """Populate *coordinator* with one organization, its flags and one override.

    Goes through the public operations, so every row is audited and
    broadcast the same way live traffic would be.
    """
    organizations = coordinator.organizations
    organization = await organizations.create_organization(ORGANIZATION_NAME, ADMIN_USER_ID)
    await organizations.add_member(organization.id, MEMBER_USER_ID, Role.MEMBER, ADMIN_USER_ID)

    workspace = DemoWorkspace(organization=organization)
    for key, flag_type, default, description, shared in DEMO_FLAGS:
        workspace.flags[key] = await coordinator.create_flag(
            key,
            flag_type,
            default,
            ADMIN_USER_ID,
            description=description,
            organization_id=organization.id if shared else None,
        )

    workspace.overrides.append(
        await coordinator.create_override(
            workspace.flags["test-flag-1"].id, MEMBER_USER_ID, "true", ADMIN_USER_ID
        )
    )
    return workspace


def _main() -> None:
    workspace = asyncio.run(seed_demo(FlagMutationCoordinator()))
    print("Seeded demo workspace:")
    print(json.dumps(workspace.summary(), indent=2))


if __name__ == "__main__":
    _main()
