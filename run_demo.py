#!/usr/bin/env python
"""Seed an in-memory flag core, stream its change events, and print a snapshot.

Usage:
    python run_demo.py [--viewer USER_ID] [--log-level DEBUG] [--json-logs]

What this does:
1) Builds a FlagMutationCoordinator over the in-memory store
2) Registers a console subscriber that prints every change event
3) Seeds one organization, three flags and one override
4) Toggles a flag, then prints each flag's effective value for the viewer
"""

from __future__ import annotations

import argparse
import asyncio
import json

from dotenv import load_dotenv

load_dotenv()

from bandera.flags import FlagMutationCoordinator
from bandera.logs import configure_logging
from bandera.seed import ADMIN_USER_ID, MEMBER_USER_ID, seed_demo


class ConsoleSubscriber:
    def __init__(self, label: str) -> None:
        self.label = label

    def send(self, message: str) -> None:
        event = json.loads(message)
        data = event["data"]
        print(f"[{self.label}] {event['event']:<22} {data['key']:<16} value={data['value']!r}")


async def run(viewer_id: str) -> dict:
    coordinator = FlagMutationCoordinator()
    broadcaster = coordinator.broadcaster
    broadcaster.register("console", ConsoleSubscriber("all"))

    try:
        workspace = await seed_demo(coordinator)
        await coordinator.toggle_flag(workspace.flags["test-flag-2"].id, ADMIN_USER_ID)
        await broadcaster.drain()

        org_id = workspace.organization.id
        views = await coordinator.list_flags(viewer_id, organization_id=org_id)
        if viewer_id == ADMIN_USER_ID:
            views += await coordinator.list_flags(viewer_id)

        return {
            "viewer": viewer_id,
            "workspace": workspace.summary(),
            "flags": {
                view.flag.key: {
                    "value": view.effective.value,
                    "is_overridden": view.effective.is_overridden,
                    "enabled": view.flag.enabled,
                }
                for view in views
            },
            "organization_history": [
                record.message for record in await coordinator.audit.organization_history(org_id)
            ],
        }
    finally:
        await broadcaster.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the Bandera flag core against demo data")
    parser.add_argument(
        "--viewer",
        default=MEMBER_USER_ID,
        help=f"User whose effective values are printed (default: {MEMBER_USER_ID})",
    )
    parser.add_argument("--log-level", default=None, help="Overrides BANDERA_LOG_LEVEL")
    parser.add_argument("--json-logs", action="store_true", default=None, help="Render logs as JSON")
    args = parser.parse_args()

    configure_logging(level=args.log_level, json_output=args.json_logs)
    snapshot = asyncio.run(run(args.viewer))
    print("\nSnapshot")
    print(json.dumps(snapshot, indent=2))


if __name__ == "__main__":
    main()
