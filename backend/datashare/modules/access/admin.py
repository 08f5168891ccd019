"""
Grant issuance and revocation for the platform side of the gateway.

These are operator operations: they are reachable from ``tools/`` and never
from the public access routes.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from uuid import UUID

from datashare.core.config import get_settings
from datashare.core.logging import get_logger
from datashare.db.models import AccessGrant, AccessLevel
from datashare.modules.access import audit
from datashare.modules.access.audit import AuditSink
from datashare.modules.access.store import GrantStore
from datashare.modules.access.tokens import generate_token, utcnow

logger = get_logger(__name__)


def normalize_ip_prefixes(prefixes: Sequence[str] | None) -> list[str] | None:
    """Canonicalize an allow-list, rejecting entries that do not parse.

    ``None`` stays ``None`` (unrestricted). Bare addresses become host
    networks so that stored entries always read back as CIDR.
    """
    if prefixes is None:
        return None
    normalized: list[str] = []
    for prefix in prefixes:
        try:
            network = ipaddress.ip_network(prefix.strip(), strict=False)
        except ValueError as exc:
            raise ValueError(f"invalid IP prefix: {prefix!r}") from exc
        normalized.append(str(network))
    return normalized


class GrantAdministration:
    """Issue and revoke access grants."""

    def __init__(
        self,
        store: GrantStore,
        audit_sink: AuditSink,
        *,
        clock: Callable[[], datetime] = utcnow,
        token_bytes: int | None = None,
    ) -> None:
        self._store = store
        self._audit = audit_sink
        self._clock = clock
        self._token_bytes = token_bytes or get_settings().token_bytes

    async def issue(
        self,
        *,
        application_id: UUID,
        recipient_email: str,
        access_level: AccessLevel,
        expires_in: timedelta,
        max_downloads: int,
        lender_id: UUID | None = None,
        allowed_ip_prefixes: Sequence[str] | None = None,
        issued_by: str | None = None,
    ) -> AccessGrant:
        """Create a grant with a fresh token.

        A token collision is surfaced as ``TokenCollisionError``; the grant
        holding the existing token is never touched.
        """
        if expires_in <= timedelta(0):
            raise ValueError("expires_in must be positive")
        if max_downloads < 0:
            raise ValueError("max_downloads must not be negative")
        if not recipient_email.strip():
            raise ValueError("recipient_email is required")

        grant = AccessGrant(
            token=generate_token(self._token_bytes),
            application_id=application_id,
            lender_id=lender_id,
            recipient_email=recipient_email.strip(),
            access_level=AccessLevel(access_level).value,
            expires_at=self._clock() + expires_in,
            max_downloads=max_downloads,
            download_count=0,
            allowed_ip_prefixes=normalize_ip_prefixes(allowed_ip_prefixes),
        )
        created = await self._store.create(grant)

        logger.info(
            "access_grant_issued",
            grant_id=str(created.id),
            application_id=str(application_id),
            access_level=created.access_level,
        )
        await self._audit.record(
            action=audit.GRANT_ISSUED,
            grant_id=created.id,
            detail={
                "application_id": str(application_id),
                "access_level": created.access_level,
                "max_downloads": max_downloads,
                "expires_at": created.expires_at.isoformat(),
                "issued_by": issued_by,
            },
        )
        return created

    async def revoke(self, grant_id: UUID, *, revoked_by: str | None = None) -> bool:
        """Revoke a grant. Idempotent: returns False if nothing changed."""
        changed = await self._store.revoke(grant_id, now=self._clock())
        if not changed:
            logger.info("access_grant_revoke_noop", grant_id=str(grant_id))
            return False

        logger.info("access_grant_revoked", grant_id=str(grant_id))
        await self._audit.record(
            action=audit.GRANT_REVOKED,
            grant_id=grant_id,
            detail={"revoked_by": revoked_by},
        )
        return True
