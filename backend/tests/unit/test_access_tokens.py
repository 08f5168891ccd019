"""
Unit tests for grant token generation/shape checks and per-document links.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import jwt
import pytest

from datashare.modules.access.errors import LinkExpiredError, MalformedTokenError
from datashare.modules.access.tokens import DocumentLinkCodec, generate_token, parse_token

# --------------------------------------------------------------------------
# Grant tokens
# --------------------------------------------------------------------------


def test_generated_token_is_64_lowercase_hex() -> None:
    token = generate_token()
    assert len(token) == 64
    assert set(token) <= set("0123456789abcdef")


def test_generated_tokens_do_not_repeat() -> None:
    tokens = {generate_token() for _ in range(500)}
    assert len(tokens) == 500


def test_parse_accepts_well_formed_token() -> None:
    token = generate_token()
    assert parse_token(token) == token


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "abc",
        "a" * 63,
        "a" * 65,
        "A" * 64,
        "g" * 64,
        ("a" * 62) + "/.",
        None,
        1234,
    ],
)
def test_parse_rejects_malformed_token(raw: object) -> None:
    with pytest.raises(MalformedTokenError):
        parse_token(raw)


def test_parse_honours_configured_length() -> None:
    token = generate_token(16)
    assert parse_token(token, length=32) == token
    with pytest.raises(MalformedTokenError):
        parse_token(token)


# --------------------------------------------------------------------------
# Document links
# --------------------------------------------------------------------------


def _codec(*, secret: str = "link-secret", now: datetime | None = None) -> DocumentLinkCodec:
    moment = now or datetime.now(UTC)
    return DocumentLinkCodec(secret, 300, clock=lambda: moment)


def test_link_claims_identify_grant_and_document() -> None:
    grant_id, application_id, document_id = uuid4(), uuid4(), uuid4()
    codec = _codec()

    link = codec.issue(grant_id=grant_id, application_id=application_id, document_id=document_id)
    assert link is not None

    claims = codec.read(link)
    assert claims.grant_id == grant_id
    assert claims.application_id == application_id
    assert claims.document_id == document_id
    assert claims.expires_at > datetime.now(UTC)


def test_link_never_embeds_the_grant_token() -> None:
    grant_token = generate_token()
    codec = _codec()
    link = codec.issue(grant_id=uuid4(), application_id=uuid4(), document_id=uuid4())
    assert link is not None

    payload = jwt.decode(link, options={"verify_signature": False})
    assert grant_token not in link
    assert grant_token not in str(payload)


def test_expired_link_is_rejected() -> None:
    issued = _codec(now=datetime.now(UTC) - timedelta(hours=1))
    link = issued.issue(grant_id=uuid4(), application_id=uuid4(), document_id=uuid4())
    assert link is not None

    with pytest.raises(LinkExpiredError):
        _codec().read(link)


def test_link_signed_with_other_secret_is_rejected() -> None:
    link = _codec(secret="other").issue(
        grant_id=uuid4(), application_id=uuid4(), document_id=uuid4()
    )
    assert link is not None

    with pytest.raises(MalformedTokenError) as exc_info:
        _codec().read(link)
    assert not isinstance(exc_info.value, LinkExpiredError)


def test_link_with_wrong_audience_is_rejected() -> None:
    forged = jwt.encode(
        {
            "gid": str(uuid4()),
            "app": str(uuid4()),
            "doc": str(uuid4()),
            "aud": "someone-else",
            "exp": datetime.now(UTC) + timedelta(minutes=5),
        },
        "link-secret",
        algorithm="HS256",
    )
    with pytest.raises(MalformedTokenError):
        _codec().read(forged)


def test_link_with_unparseable_claims_is_rejected() -> None:
    forged = jwt.encode(
        {
            "gid": "not-a-uuid",
            "app": str(uuid4()),
            "doc": str(uuid4()),
            "aud": DocumentLinkCodec.AUDIENCE,
            "exp": datetime.now(UTC) + timedelta(minutes=5),
        },
        "link-secret",
        algorithm="HS256",
    )
    with pytest.raises(MalformedTokenError):
        _codec().read(forged)


def test_garbage_link_is_rejected() -> None:
    with pytest.raises(MalformedTokenError):
        _codec().read("not.a.jwt")


def test_links_disabled_without_secret() -> None:
    codec = _codec(secret="")
    assert codec.enabled is False
    assert codec.issue(grant_id=uuid4(), application_id=uuid4(), document_id=uuid4()) is None
    with pytest.raises(MalformedTokenError):
        codec.read("anything")
