"""
Grant store: the single source of truth and synchronization point for grants.

``SqlGrantStore`` opens one short transaction per operation. The quota
increment is a single conditional ``UPDATE ... RETURNING``; concurrent
callers serialize on the row lock and each re-evaluates the ``WHERE`` clause
against the committed row, so the counter can never pass ``max_downloads``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Protocol
from uuid import UUID

from sqlalchemy import exc as sa_exc
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from datashare.core.logging import get_logger
from datashare.db.models import AccessGrant
from datashare.modules.access.errors import TokenCollisionError, TransientStoreError

logger = get_logger(__name__)

# serialization_failure, deadlock_detected: the server rolled the transaction back
_ROLLED_BACK_SQLSTATES = frozenset({"40001", "40P01"})


class GrantStore(Protocol):
    """Narrow repository interface over persisted grants."""

    async def get_by_token(self, token: str) -> AccessGrant | None: ...

    async def get_by_id(self, grant_id: UUID) -> AccessGrant | None: ...

    async def create(self, grant: AccessGrant) -> AccessGrant: ...

    async def consume_download(self, grant_id: UUID, *, now: datetime) -> int | None:
        """Atomically take one download unit.

        Returns the downloads remaining after the increment, or ``None`` when
        the grant is missing, revoked, expired at *now*, or exhausted.
        """
        ...

    async def revoke(self, grant_id: UUID, *, now: datetime) -> bool: ...


def _is_transient(error: sa_exc.DBAPIError) -> bool:
    if isinstance(error, (sa_exc.OperationalError, sa_exc.InterfaceError)):
        return True
    if error.connection_invalidated:
        return True
    return _sqlstate(error) in _ROLLED_BACK_SQLSTATES


def _sqlstate(error: sa_exc.DBAPIError) -> str | None:
    return getattr(error.orig, "sqlstate", None)


@asynccontextmanager
async def translate_store_errors(
    operation: str, *, uncommitted: bool = False
) -> AsyncIterator[None]:
    """Re-raise connectivity and contention failures as ``TransientStoreError``.

    Pass ``uncommitted=True`` around work that runs before COMMIT is sent: a
    failure there leaves nothing applied and may be retried. A failure while
    committing may have committed, so only the rolled-back SQLSTATEs are
    marked retryable there.
    """
    try:
        yield
    except sa_exc.DBAPIError as error:
        if not _is_transient(error):
            raise
        retryable = uncommitted or _sqlstate(error) in _ROLLED_BACK_SQLSTATES
        logger.warning(
            "grant_store_transient_error",
            operation=operation,
            retryable=retryable,
            exc_info=True,
        )
        raise TransientStoreError(f"{operation} failed", retryable=retryable) from error
    except (sa_exc.TimeoutError, OSError) as error:
        logger.warning("grant_store_unavailable", operation=operation, exc_info=True)
        raise TransientStoreError(f"{operation} failed", retryable=uncommitted) from error


class SqlGrantStore:
    """Grant store backed by the relational database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_by_token(self, token: str) -> AccessGrant | None:
        async with translate_store_errors("get_by_token"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(AccessGrant).where(AccessGrant.token == token)
                )
                return result.scalar_one_or_none()

    async def get_by_id(self, grant_id: UUID) -> AccessGrant | None:
        async with translate_store_errors("get_by_id"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(AccessGrant).where(AccessGrant.id == grant_id)
                )
                return result.scalar_one_or_none()

    async def create(self, grant: AccessGrant) -> AccessGrant:
        """Insert a new grant; a duplicate token is never overwritten."""
        async with translate_store_errors("create"):
            try:
                async with self._session_factory.begin() as session:
                    session.add(grant)
            except sa_exc.IntegrityError as error:
                if "ux_grants_token" in str(error.orig):
                    raise TokenCollisionError("generated grant token already exists") from error
                raise
        return grant

    async def consume_download(self, grant_id: UUID, *, now: datetime) -> int | None:
        stmt = (
            update(AccessGrant)
            .where(
                AccessGrant.id == grant_id,
                AccessGrant.download_count < AccessGrant.max_downloads,
                AccessGrant.revoked_at.is_(None),
                AccessGrant.expires_at > now,
            )
            .values(download_count=AccessGrant.download_count + 1)
            .returning(AccessGrant.download_count, AccessGrant.max_downloads)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            async with translate_store_errors("consume_download", uncommitted=True):
                row = (await session.execute(stmt)).first()
            async with translate_store_errors("consume_download"):
                await session.commit()
        if row is None:
            return None
        download_count, max_downloads = row
        return max_downloads - download_count

    async def revoke(self, grant_id: UUID, *, now: datetime) -> bool:
        """Mark a grant revoked. Returns False if it was missing or already revoked."""
        stmt = (
            update(AccessGrant)
            .where(AccessGrant.id == grant_id, AccessGrant.revoked_at.is_(None))
            .values(revoked_at=now)
            .returning(AccessGrant.id)
            .execution_options(synchronize_session=False)
        )
        async with translate_store_errors("revoke"):
            async with self._session_factory.begin() as session:
                row = (await session.execute(stmt)).first()
        return row is not None
