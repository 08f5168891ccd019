"""
Download quota consumption.

``consume`` delegates the test-and-increment to the store's single
conditional update; nothing here reads the counter and writes it back.
Only transient failures that left nothing committed are retried, with
bounded exponential backoff inside the request deadline.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from datashare.core.logging import get_logger
from datashare.db.models import AccessGrant, GrantStatus
from datashare.modules.access import audit
from datashare.modules.access.audit import AuditSink
from datashare.modules.access.context import RequestContext, within_deadline
from datashare.modules.access.errors import AccessFailure, FailureReason, TransientStoreError
from datashare.modules.access.store import GrantStore
from datashare.modules.access.tokens import utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConsumeOk:
    """One unit consumed. ``remaining`` is informational only."""

    remaining: int


_STATUS_REASONS = {
    GrantStatus.REVOKED: FailureReason.REVOKED,
    GrantStatus.EXPIRED: FailureReason.EXPIRED,
    GrantStatus.EXHAUSTED: FailureReason.QUOTA_EXCEEDED,
}


class QuotaTracker:
    """Atomically consume download units for a grant."""

    def __init__(
        self,
        store: GrantStore,
        audit_sink: AuditSink,
        *,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = 4,
        backoff_base_seconds: float = 0.05,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._audit = audit_sink
        self._clock = clock
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base_seconds
        self._sleep = sleep

    async def consume(
        self,
        grant_id: UUID,
        context: RequestContext,
        *,
        detail: dict[str, Any] | None = None,
    ) -> ConsumeOk | AccessFailure:
        """Consume one download unit and record exactly one access-log entry."""
        try:
            outcome = await self._consume(grant_id, context)
        except TransientStoreError:
            outcome = AccessFailure(FailureReason.TRANSIENT, grant_id)

        if isinstance(outcome, ConsumeOk):
            await self._audit.record(
                action=audit.DOWNLOAD,
                grant_id=grant_id,
                context=context,
                detail={**(detail or {}), "remaining": outcome.remaining},
            )
        else:
            logger.info(
                "download_denied",
                reason=outcome.reason.value,
                grant_id=str(grant_id),
                client_ip=context.address,
            )
            await self._audit.record(
                action=audit.download_failure(outcome.reason),
                grant_id=grant_id,
                context=context,
                detail=detail,
            )
        return outcome

    async def _consume(self, grant_id: UUID, context: RequestContext) -> ConsumeOk | AccessFailure:
        remaining: int | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                remaining = await within_deadline(
                    self._store.consume_download(grant_id, now=self._clock()),
                    context,
                )
                break
            except TransientStoreError as exc:
                # A failure during COMMIT may have spent the unit already;
                # only failures known to be uncommitted are repeated.
                budget = context.remaining()
                if not exc.retryable or attempt >= self._max_attempts or budget <= 0:
                    raise
                delay = min(self._backoff_base * (2 ** (attempt - 1)), budget)
                logger.info(
                    "quota_consume_retry",
                    grant_id=str(grant_id),
                    attempt=attempt,
                    delay_seconds=delay,
                )
                await self._sleep(delay)

        if remaining is not None:
            return ConsumeOk(remaining=remaining)

        # The update did not apply; read once to name the reason in the log.
        grant = await within_deadline(self._store.get_by_id(grant_id), context)
        return AccessFailure(self._classify(grant), grant_id)

    def _classify(self, grant: AccessGrant | None) -> FailureReason:
        if grant is None:
            return FailureReason.NOT_FOUND
        status = grant.status_at(self._clock())
        return _STATUS_REASONS.get(status, FailureReason.QUOTA_EXCEEDED)
