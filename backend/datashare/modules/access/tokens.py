"""
Grant token and per-document link codecs.

Grant tokens are opaque random hex strings with no embedded structure; all
meaning lives in the grant store. Document links are short-lived JWTs bound
to a grant's *id*, so a leaked link can neither be extended nor traced back
to the bearer token that produced it.
"""

from __future__ import annotations

import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

import jwt

from datashare.core.config import get_settings
from datashare.modules.access.errors import LinkExpiredError, MalformedTokenError

_HEX_DIGITS = frozenset("0123456789abcdef")


def utcnow() -> datetime:
    return datetime.now(UTC)


def generate_token(num_bytes: int | None = None) -> str:
    """Generate a new grant token from the OS CSPRNG."""
    if num_bytes is None:
        num_bytes = get_settings().token_bytes
    return secrets.token_hex(num_bytes)


def parse_token(raw: object, *, length: int | None = None) -> str:
    """Validate token shape only; never consults the store.

    Raises:
        MalformedTokenError: wrong type, length or alphabet.
    """
    if length is None:
        length = get_settings().token_length
    if not isinstance(raw, str) or len(raw) != length:
        raise MalformedTokenError("token has unexpected length")
    if not _HEX_DIGITS.issuperset(raw):
        raise MalformedTokenError("token has unexpected characters")
    return raw


@dataclass(frozen=True)
class DocumentLinkClaims:
    """Verified contents of a per-document link."""

    grant_id: UUID
    application_id: UUID
    document_id: UUID
    expires_at: datetime


class DocumentLinkCodec:
    """Issue and verify HS256-signed per-document download links."""

    ALGORITHM = "HS256"
    AUDIENCE = "datashare:document-download"

    def __init__(
        self,
        secret: str,
        ttl_seconds: int,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._secret = secret
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return bool(self._secret)

    def issue(self, *, grant_id: UUID, application_id: UUID, document_id: UUID) -> str | None:
        """Return a signed link token, or ``None`` when no secret is configured."""
        if not self.enabled:
            return None
        now = self._clock()
        payload = {
            "gid": str(grant_id),
            "app": str(application_id),
            "doc": str(document_id),
            "aud": self.AUDIENCE,
            "iat": now,
            "exp": now + self._ttl,
            "jti": secrets.token_hex(8),
        }
        return jwt.encode(payload, self._secret, algorithm=self.ALGORITHM)

    def read(self, link: str) -> DocumentLinkClaims:
        """Verify signature, audience and expiry of *link*."""
        if not self.enabled:
            raise MalformedTokenError("document links are disabled")
        try:
            payload = jwt.decode(
                link,
                self._secret,
                algorithms=[self.ALGORITHM],
                audience=self.AUDIENCE,
                options={"require": ["exp", "gid", "app", "doc"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise LinkExpiredError("document link expired") from exc
        except jwt.InvalidTokenError as exc:
            raise MalformedTokenError("document link invalid") from exc

        try:
            return DocumentLinkClaims(
                grant_id=UUID(str(payload["gid"])),
                application_id=UUID(str(payload["app"])),
                document_id=UUID(str(payload["doc"])),
                expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=UTC),
            )
        except (TypeError, ValueError) as exc:
            raise MalformedTokenError("document link claims invalid") from exc
