"""
Unit tests for the SQL grant store: statement shape and error translation.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, ProgrammingError

from datashare.db.models import AccessGrant
from datashare.modules.access.errors import TokenCollisionError, TransientStoreError
from datashare.modules.access.store import SqlGrantStore, translate_store_errors


def _factory(row: object = None) -> tuple[MagicMock, MagicMock]:
    result = MagicMock()
    result.first.return_value = row
    session = MagicMock()
    session.execute = AsyncMock(return_value=result)
    session.commit = AsyncMock()

    @asynccontextmanager
    async def _session():  # type: ignore[no-untyped-def]
        yield session

    factory = MagicMock(side_effect=_session)
    factory.begin = _session
    return factory, session


def _sql(statement: object) -> str:
    return str(statement.compile(dialect=postgresql.dialect()))  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_consume_is_one_conditional_update() -> None:
    factory, session = _factory(row=(3, 5))
    store = SqlGrantStore(factory)
    grant_id = uuid4()

    remaining = await store.consume_download(grant_id, now=datetime.now(UTC))

    assert remaining == 2
    session.execute.assert_awaited_once()
    session.commit.assert_awaited_once()
    sql = _sql(session.execute.await_args[0][0])
    assert sql.startswith("UPDATE grants SET download_count=")
    assert "grants.download_count +" in sql
    assert "grants.download_count < grants.max_downloads" in sql
    assert "grants.revoked_at IS NULL" in sql
    assert "grants.expires_at >" in sql
    assert "RETURNING grants.download_count, grants.max_downloads" in sql


@pytest.mark.asyncio
async def test_consume_reports_not_applied() -> None:
    factory, _ = _factory(row=None)
    store = SqlGrantStore(factory)

    assert await store.consume_download(uuid4(), now=datetime.now(UTC)) is None


@pytest.mark.asyncio
async def test_consume_failure_before_commit_is_retryable() -> None:
    factory, session = _factory(row=(1, 5))
    session.execute.side_effect = OperationalError(
        "UPDATE grants", {}, Exception("connection reset")
    )

    with pytest.raises(TransientStoreError) as excinfo:
        await SqlGrantStore(factory).consume_download(uuid4(), now=datetime.now(UTC))

    assert excinfo.value.retryable is True
    session.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_consume_failure_during_commit_is_not_retryable() -> None:
    factory, session = _factory(row=(1, 5))
    session.commit.side_effect = OperationalError(
        "COMMIT", {}, Exception("server closed the connection unexpectedly")
    )

    with pytest.raises(TransientStoreError) as excinfo:
        await SqlGrantStore(factory).consume_download(uuid4(), now=datetime.now(UTC))

    assert excinfo.value.retryable is False


@pytest.mark.asyncio
async def test_consume_serialization_failure_at_commit_is_retryable() -> None:
    orig = Exception("could not serialize access due to concurrent update")
    orig.sqlstate = "40001"  # type: ignore[attr-defined]
    factory, session = _factory(row=(1, 5))
    session.commit.side_effect = OperationalError("COMMIT", {}, orig)

    with pytest.raises(TransientStoreError) as excinfo:
        await SqlGrantStore(factory).consume_download(uuid4(), now=datetime.now(UTC))

    assert excinfo.value.retryable is True


@pytest.mark.asyncio
async def test_revoke_only_touches_unrevoked_grants() -> None:
    factory, session = _factory(row=(uuid4(),))
    store = SqlGrantStore(factory)

    assert await store.revoke(uuid4(), now=datetime.now(UTC)) is True
    sql = _sql(session.execute.await_args[0][0])
    assert "SET revoked_at=" in sql
    assert "grants.revoked_at IS NULL" in sql


@pytest.mark.asyncio
async def test_revoke_again_is_a_noop() -> None:
    factory, _ = _factory(row=None)
    assert await SqlGrantStore(factory).revoke(uuid4(), now=datetime.now(UTC)) is False


@pytest.mark.asyncio
async def test_create_maps_token_collision() -> None:
    @asynccontextmanager
    async def _begin():  # type: ignore[no-untyped-def]
        yield MagicMock()
        raise IntegrityError(
            "INSERT INTO grants",
            {},
            Exception('duplicate key value violates unique constraint "ux_grants_token"'),
        )

    factory = MagicMock()
    factory.begin = _begin
    grant = AccessGrant(token="a" * 64)

    with pytest.raises(TokenCollisionError):
        await SqlGrantStore(factory).create(grant)


@pytest.mark.asyncio
async def test_create_reraises_other_integrity_errors() -> None:
    @asynccontextmanager
    async def _begin():  # type: ignore[no-untyped-def]
        yield MagicMock()
        raise IntegrityError(
            "INSERT INTO grants",
            {},
            Exception('violates check constraint "ck_grants_max_downloads_non_negative"'),
        )

    factory = MagicMock()
    factory.begin = _begin

    with pytest.raises(IntegrityError):
        await SqlGrantStore(factory).create(AccessGrant(token="b" * 64))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        OperationalError("SELECT", {}, Exception("server closed the connection")),
        InterfaceError("SELECT", {}, Exception("connection is closed")),
        ConnectionResetError("reset by peer"),
    ],
)
async def test_connectivity_errors_become_transient(error: Exception) -> None:
    with pytest.raises(TransientStoreError):
        async with translate_store_errors("get_by_token"):
            raise error


@pytest.mark.asyncio
async def test_serialization_failures_become_transient() -> None:
    orig = Exception("could not serialize access")
    orig.sqlstate = "40001"  # type: ignore[attr-defined]

    with pytest.raises(TransientStoreError):
        async with translate_store_errors("consume_download"):
            raise ProgrammingError("UPDATE grants", {}, orig)


@pytest.mark.asyncio
async def test_programming_errors_propagate() -> None:
    with pytest.raises(ProgrammingError):
        async with translate_store_errors("get_by_token"):
            raise ProgrammingError("SELECT", {}, Exception("relation does not exist"))
