"""Seeding utilities for local demo data."""

from .demo_seed import (
    ADMIN_USER_ID,
    DEMO_FLAGS,
    MEMBER_USER_ID,
    ORGANIZATION_NAME,
    DemoWorkspace,
    seed_demo,
)

__all__ = [
    "ADMIN_USER_ID",
    "DEMO_FLAGS",
    "DemoWorkspace",
    "MEMBER_USER_ID",
    "ORGANIZATION_NAME",
    "seed_demo",
]
