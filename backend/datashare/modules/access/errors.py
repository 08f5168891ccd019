"""Failure taxonomy for the access gateway.

Expected denials travel as ``AccessFailure`` values out of the verifier and
quota tracker and as ``AccessError`` out of the service layer. Exceptions
are reserved for infrastructure trouble (``TransientStoreError``) and for
programming-level invariants such as a token collision.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from uuid import UUID


class FailureReason(str, Enum):
    """Why an access attempt was denied."""

    MALFORMED_TOKEN = "malformed_token"
    NOT_FOUND = "not_found"
    REVOKED = "revoked"
    EXPIRED = "expired"
    IP_NOT_ALLOWED = "ip_not_allowed"
    QUOTA_EXCEEDED = "quota_exceeded"
    INSUFFICIENT_ACCESS_LEVEL = "insufficient_access_level"
    ALREADY_DECIDED = "already_decided"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class AccessFailure:
    """Typed denial result."""

    reason: FailureReason
    grant_id: UUID | None = None


class AccessError(Exception):
    """Denial raised by the gateway service for the router to translate."""

    def __init__(self, reason: FailureReason, grant_id: UUID | None = None) -> None:
        super().__init__(reason.value)
        self.reason = reason
        self.grant_id = grant_id

    @classmethod
    def from_failure(cls, failure: AccessFailure) -> AccessError:
        return cls(failure.reason, failure.grant_id)


class ResourceNotFoundError(LookupError):
    """A document or offer does not exist within the grant's application."""


class MalformedTokenError(ValueError):
    """Presented token or link does not have the expected shape."""


class LinkExpiredError(MalformedTokenError):
    """Per-document link was well formed but is past its expiry."""


class TokenCollisionError(RuntimeError):
    """A freshly generated grant token already exists in the store."""


class TransientStoreError(RuntimeError):
    """The grant store was unavailable or did not answer before the deadline.

    ``retryable`` is set only when the failed operation is known not to have
    committed, so repeating it cannot apply a write twice.
    """

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable
