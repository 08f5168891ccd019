"""
Append-only access log.

Every verification attempt and every consumption or offer action produces
exactly one ``access_log`` row. Writes use their own short-lived transaction
so a failed business operation never takes its audit row down with it, and
a failed audit write never fails the request: it is reported to the
operational log instead.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from datashare.core.logging import get_logger
from datashare.db.models import AccessLogEntry
from datashare.modules.access.context import RequestContext
from datashare.modules.access.errors import FailureReason

logger = get_logger(__name__)

VERIFY_SUCCESS = "verify_success"
DOWNLOAD = "download"
OFFER_ACCEPTED = "offer_accepted"
OFFER_REJECTED = "offer_rejected"
OFFER_SUBMITTED = "offer_submitted"
GRANT_ISSUED = "grant_issued"
GRANT_REVOKED = "grant_revoked"


def verify_failure(reason: FailureReason) -> str:
    return f"verify_failure:{reason.value}"


def download_failure(reason: FailureReason) -> str:
    return f"download_failure:{reason.value}"


def offer_failure(reason: FailureReason) -> str:
    return f"offer_failure:{reason.value}"


class AuditSink(Protocol):
    """Interface the gateway components record through."""

    async def record(
        self,
        *,
        action: str,
        grant_id: UUID | None = None,
        context: RequestContext | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None: ...


class AccessAuditLogger:
    """Database-backed ``AuditSink``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        write_timeout_seconds: float = 2.0,
    ) -> None:
        self._session_factory = session_factory
        self._write_timeout = write_timeout_seconds

    async def record(
        self,
        *,
        action: str,
        grant_id: UUID | None = None,
        context: RequestContext | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        grant_ref = str(grant_id) if grant_id else None
        entry = AccessLogEntry(
            grant_id=grant_id,
            action=action,
            actor_address=context.address if context else None,
            actor_agent=context.agent if context else None,
            detail=detail,
        )
        try:
            await asyncio.wait_for(self._write(entry), timeout=self._write_timeout)
        except Exception:
            logger.warning(
                "access_log_write_failed",
                action=action,
                grant_id=grant_ref,
                exc_info=True,
            )
            return

        logger.debug("access_log_recorded", action=action, grant_id=grant_ref)

    async def _write(self, entry: AccessLogEntry) -> None:
        async with self._session_factory.begin() as session:
            session.add(entry)
