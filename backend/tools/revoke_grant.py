"""Revoke one or more access grants (operator tool)."""

from __future__ import annotations

import argparse
import asyncio
import json
from uuid import UUID

from datashare.core.logging import configure_logging
from datashare.db.session import close_db, get_session_factory, init_db
from datashare.modules.access.admin import GrantAdministration
from datashare.modules.access.audit import AccessAuditLogger
from datashare.modules.access.store import SqlGrantStore


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Revoke access grants immediately.")
    parser.add_argument("grant_ids", nargs="+", type=UUID, help="Grant UUIDs to revoke.")
    parser.add_argument("--revoked-by", default=None, help="Operator identifier for the audit log.")
    return parser.parse_args()


async def _main() -> int:
    args = _parse_args()
    configure_logging()
    await init_db()
    try:
        session_factory = get_session_factory()
        admin = GrantAdministration(
            SqlGrantStore(session_factory),
            AccessAuditLogger(session_factory),
        )
        summary: dict[str, list[str]] = {"revoked": [], "unchanged": []}
        for grant_id in args.grant_ids:
            changed = await admin.revoke(grant_id, revoked_by=args.revoked_by)
            summary["revoked" if changed else "unchanged"].append(str(grant_id))
        print(json.dumps(summary, indent=2))
        return 0
    finally:
        await close_db()


if __name__ == "__main__":
    raise SystemExit(asyncio.run(_main()))
