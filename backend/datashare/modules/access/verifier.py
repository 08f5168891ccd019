"""
Access verification: token plus caller context to an active grant or a reason.

The checks run in a fixed order (shape, existence, revocation, expiry, IP
allow-list) and each call writes exactly one access-log entry naming the
specific outcome, so abuse patterns can be told apart from audit data alone.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Callable, Sequence
from datetime import datetime
from uuid import UUID

from datashare.core.logging import get_logger
from datashare.db.models import AccessGrant
from datashare.modules.access import audit
from datashare.modules.access.audit import AuditSink
from datashare.modules.access.context import RequestContext, within_deadline
from datashare.modules.access.errors import (
    AccessFailure,
    FailureReason,
    MalformedTokenError,
    TransientStoreError,
)
from datashare.modules.access.store import GrantStore
from datashare.modules.access.tokens import parse_token, utcnow

logger = get_logger(__name__)


def address_allowed(address: str | None, allowed_prefixes: Sequence[str] | None) -> bool:
    """Match *address* against a CIDR/IP allow-list.

    ``None`` means unrestricted. An empty list, an unparseable caller
    address, or entries that do not parse never match.
    """
    if allowed_prefixes is None:
        return True
    try:
        caller = ipaddress.ip_address(address or "")
    except ValueError:
        return False
    for prefix in allowed_prefixes:
        try:
            network = ipaddress.ip_network(str(prefix).strip(), strict=False)
        except ValueError:
            continue
        if caller.version == network.version and caller in network:
            return True
    return False


class AccessVerifier:
    """Resolve bearer tokens to active grants."""

    def __init__(
        self,
        store: GrantStore,
        audit_sink: AuditSink,
        *,
        clock: Callable[[], datetime] = utcnow,
        token_length: int | None = None,
    ) -> None:
        self._store = store
        self._audit = audit_sink
        self._clock = clock
        self._token_length = token_length

    async def verify(self, token: str, context: RequestContext) -> AccessGrant | AccessFailure:
        """Verify a bearer token presented by an external party."""
        try:
            parse_token(token, length=self._token_length)
        except MalformedTokenError:
            failure = AccessFailure(FailureReason.MALFORMED_TOKEN)
            await self._record(failure, context)
            return failure

        try:
            grant = await within_deadline(self._store.get_by_token(token), context)
        except TransientStoreError:
            await self._record(AccessFailure(FailureReason.TRANSIENT), context)
            raise
        return await self._finish(grant, context)

    async def verify_grant_id(
        self,
        grant_id: UUID,
        context: RequestContext,
        *,
        via: str,
    ) -> AccessGrant | AccessFailure:
        """Re-verify a grant reached through a derived credential (document link)."""
        try:
            grant = await within_deadline(self._store.get_by_id(grant_id), context)
        except TransientStoreError:
            await self._record(AccessFailure(FailureReason.TRANSIENT, grant_id), context, via=via)
            raise
        return await self._finish(grant, context, via=via)

    async def reject(
        self,
        reason: FailureReason,
        context: RequestContext,
        *,
        via: str | None = None,
    ) -> AccessFailure:
        """Record a verification failure detected before any store lookup."""
        failure = AccessFailure(reason)
        await self._record(failure, context, via=via)
        return failure

    def check(self, grant: AccessGrant | None, address: str | None) -> AccessGrant | AccessFailure:
        """Apply the grant state checks without touching the store or the log."""
        if grant is None:
            return AccessFailure(FailureReason.NOT_FOUND)
        if grant.revoked_at is not None:
            return AccessFailure(FailureReason.REVOKED, grant.id)
        if self._clock() >= grant.expires_at:
            return AccessFailure(FailureReason.EXPIRED, grant.id)
        if not address_allowed(address, grant.allowed_ip_prefixes):
            return AccessFailure(FailureReason.IP_NOT_ALLOWED, grant.id)
        return grant

    async def _finish(
        self,
        grant: AccessGrant | None,
        context: RequestContext,
        *,
        via: str | None = None,
    ) -> AccessGrant | AccessFailure:
        outcome = self.check(grant, context.address)
        await self._record(outcome, context, via=via)
        return outcome

    async def _record(
        self,
        outcome: AccessGrant | AccessFailure,
        context: RequestContext,
        *,
        via: str | None = None,
    ) -> None:
        detail: dict[str, str] | None = {"via": via} if via else None
        if isinstance(outcome, AccessFailure):
            logger.info(
                "access_verification_denied",
                reason=outcome.reason.value,
                grant_id=str(outcome.grant_id) if outcome.grant_id else None,
                client_ip=context.address,
            )
            await self._audit.record(
                action=audit.verify_failure(outcome.reason),
                grant_id=outcome.grant_id,
                context=context,
                detail=detail,
            )
            return
        await self._audit.record(
            action=audit.VERIFY_SUCCESS,
            grant_id=outcome.id,
            context=context,
            detail=detail,
        )
