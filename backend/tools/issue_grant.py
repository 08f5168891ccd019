"""Issue an access grant for a funding application (operator tool)."""

from __future__ import annotations

import argparse
import asyncio
import json
from datetime import timedelta
from uuid import UUID

from datashare.core.config import get_settings
from datashare.core.logging import configure_logging
from datashare.db.models import AccessLevel
from datashare.db.session import close_db, get_session_factory, init_db
from datashare.modules.access.admin import GrantAdministration
from datashare.modules.access.audit import AccessAuditLogger
from datashare.modules.access.errors import TokenCollisionError
from datashare.modules.access.store import SqlGrantStore


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Issue a bearer access grant.")
    parser.add_argument("--application-id", required=True, type=UUID)
    parser.add_argument("--recipient-email", required=True)
    parser.add_argument(
        "--access-level",
        choices=[level.value for level in AccessLevel],
        default=AccessLevel.SUMMARY.value,
    )
    parser.add_argument("--expires-in-hours", type=float, default=72.0)
    parser.add_argument("--max-downloads", type=int, default=5)
    parser.add_argument("--lender-id", type=UUID, default=None)
    parser.add_argument(
        "--allow-ip",
        action="append",
        default=None,
        help="CIDR or IP permitted to use the grant; repeat for several. Omit for no restriction.",
    )
    parser.add_argument("--issued-by", default=None, help="Operator identifier for the audit log.")
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
            token_bytes=get_settings().token_bytes,
        )
        try:
            grant = await admin.issue(
                application_id=args.application_id,
                recipient_email=args.recipient_email,
                access_level=AccessLevel(args.access_level),
                expires_in=timedelta(hours=args.expires_in_hours),
                max_downloads=args.max_downloads,
                lender_id=args.lender_id,
                allowed_ip_prefixes=args.allow_ip,
                issued_by=args.issued_by,
            )
        except (ValueError, TokenCollisionError) as exc:
            print(json.dumps({"error": str(exc)}, indent=2))
            return 1
        print(
            json.dumps(
                {
                    "grant_id": str(grant.id),
                    "token": grant.token,
                    "access_level": grant.access_level,
                    "expires_at": grant.expires_at.isoformat(),
                    "max_downloads": grant.max_downloads,
                },
                indent=2,
            )
        )
        return 0
    finally:
        await close_db()


if __name__ == "__main__":
    raise SystemExit(asyncio.run(_main()))
