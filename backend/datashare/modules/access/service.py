"""Gateway service: composes verification, projection, quota and audit.

Each public method takes a bearer credential and the caller's context,
and either returns the permitted result or raises ``AccessError`` /
``ResourceNotFoundError`` for the router to translate into a generic
public error.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from datashare.core.config import Settings
from datashare.core.logging import get_logger
from datashare.db.models import AccessGrant, AccessLevel, ApplicationDocument, OfferStatus
from datashare.modules.access import audit
from datashare.modules.access.audit import AccessAuditLogger, AuditSink
from datashare.modules.access.context import RequestContext, within_deadline
from datashare.modules.access.errors import (
    AccessError,
    AccessFailure,
    FailureReason,
    MalformedTokenError,
    ResourceNotFoundError,
    TransientStoreError,
)
from datashare.modules.access.projector import project, resolve_access_level
from datashare.modules.access.quota import ConsumeOk, QuotaTracker
from datashare.modules.access.repository import ApplicationRepository
from datashare.modules.access.schemas import (
    AccessViewResponse,
    GrantInfo,
    OfferSubmissionRequest,
)
from datashare.modules.access.storage import (
    DocumentObjectNotFoundError,
    DocumentStorage,
    DocumentStream,
)
from datashare.modules.access.store import GrantStore, SqlGrantStore
from datashare.modules.access.tokens import DocumentLinkCodec, utcnow
from datashare.modules.access.verifier import AccessVerifier

logger = get_logger(__name__)

_OFFER_TRANSITIONS = {
    "accept": (OfferStatus.ACCEPTED, audit.OFFER_ACCEPTED),
    "reject": (OfferStatus.REJECTED, audit.OFFER_REJECTED),
}


@dataclass(frozen=True)
class DocumentDownload:
    """An opened document ready to be streamed."""

    document: ApplicationDocument
    chunks: DocumentStream
    downloads_remaining: int


class AccessGatewayService:
    """Operations available to holders of a grant token."""

    def __init__(
        self,
        *,
        verifier: AccessVerifier,
        quota: QuotaTracker,
        repository: ApplicationRepository,
        storage: DocumentStorage,
        audit_sink: AuditSink,
        link_codec: DocumentLinkCodec,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._verifier = verifier
        self._quota = quota
        self._repository = repository
        self._storage = storage
        self._audit = audit_sink
        self._link_codec = link_codec
        self._clock = clock

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def view(self, token: str, context: RequestContext) -> AccessViewResponse:
        """Return grant information and the projected application view."""
        grant = await self._require_grant(token, context)
        application = await within_deadline(
            self._repository.load_application(grant.application_id), context
        )
        return AccessViewResponse(
            grant=GrantInfo(
                access_level=resolve_access_level(grant.access_level),
                expires_at=grant.expires_at,
                downloads_remaining=grant.downloads_remaining,
                recipient_email=grant.recipient_email,
                lender_id=grant.lender_id,
            ),
            data=project(grant, application, self._link_codec),
        )

    # ------------------------------------------------------------------
    # Consumption path
    # ------------------------------------------------------------------

    async def record_download(self, token: str, context: RequestContext) -> int:
        """Consume one download unit; returns the downloads remaining."""
        grant = await self._require_grant(token, context)
        detail = {"via": "action"}
        await self._require_full_for_download(grant, context, detail)
        return await self._consume(grant, context, detail=detail)

    async def open_document(
        self,
        token: str,
        document_id: UUID,
        context: RequestContext,
    ) -> DocumentDownload:
        grant = await self._require_grant(token, context)
        return await self._download(grant, document_id, context, via="token")

    async def open_document_link(self, link: str, context: RequestContext) -> DocumentDownload:
        """Download through a per-document link issued in a full view."""
        try:
            claims = self._link_codec.read(link)
        except MalformedTokenError as exc:
            failure = await self._verifier.reject(
                FailureReason.MALFORMED_TOKEN, context, via="document_link"
            )
            raise AccessError.from_failure(failure) from exc

        grant = self._unwrap(
            await self._verifier.verify_grant_id(claims.grant_id, context, via="document_link")
        )
        if grant.application_id != claims.application_id:
            raise AccessError(FailureReason.NOT_FOUND, grant.id)
        return await self._download(grant, claims.document_id, context, via="document_link")

    # ------------------------------------------------------------------
    # Offer actions
    # ------------------------------------------------------------------

    async def decide_offer(
        self,
        token: str,
        offer_id: UUID,
        action: str,
        context: RequestContext,
    ) -> OfferStatus:
        grant = await self._require_grant(token, context)
        transition = _OFFER_TRANSITIONS.get(action)
        if transition is None:
            raise ValueError(f"unsupported offer action: {action}")
        new_status, success_action = transition
        detail: dict[str, Any] = {"offer_id": str(offer_id), "action": action}

        try:
            self._require_full(grant)
            if grant.lender_id is not None:
                raise AccessError(FailureReason.INSUFFICIENT_ACCESS_LEVEL, grant.id)
            applied = await within_deadline(
                self._repository.decide_offer(
                    application_id=grant.application_id,
                    offer_id=offer_id,
                    status=new_status,
                    now=self._clock(),
                ),
                context,
            )
        except AccessError as exc:
            await self._record_offer_failure(grant, exc.reason, context, detail)
            raise
        except ResourceNotFoundError:
            await self._record_offer_failure(grant, FailureReason.NOT_FOUND, context, detail)
            raise
        except TransientStoreError:
            await self._record_offer_failure(grant, FailureReason.TRANSIENT, context, detail)
            raise

        if not applied:
            await self._record_offer_failure(
                grant, FailureReason.ALREADY_DECIDED, context, detail
            )
            raise AccessError(FailureReason.ALREADY_DECIDED, grant.id)

        await self._audit.record(
            action=success_action, grant_id=grant.id, context=context, detail=detail
        )
        return new_status

    async def submit_offer(
        self,
        token: str,
        payload: OfferSubmissionRequest,
        context: RequestContext,
    ) -> UUID:
        """Create a pending offer from the lender the grant was issued to."""
        grant = await self._require_grant(token, context)
        detail: dict[str, Any] = {"action": "submit"}
        try:
            self._require_full(grant)
            if grant.lender_id is None:
                raise AccessError(FailureReason.INSUFFICIENT_ACCESS_LEVEL, grant.id)
            offer = await within_deadline(
                self._repository.submit_offer(
                    application_id=grant.application_id,
                    lender_id=grant.lender_id,
                    payload=payload,
                ),
                context,
            )
        except AccessError as exc:
            await self._record_offer_failure(grant, exc.reason, context, detail)
            raise
        except TransientStoreError:
            await self._record_offer_failure(grant, FailureReason.TRANSIENT, context, detail)
            raise

        await self._audit.record(
            action=audit.OFFER_SUBMITTED,
            grant_id=grant.id,
            context=context,
            detail={"offer_id": str(offer.id), "amount": str(payload.amount)},
        )
        return offer.id

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require_grant(self, token: str, context: RequestContext) -> AccessGrant:
        return self._unwrap(await self._verifier.verify(token, context))

    @staticmethod
    def _unwrap(outcome: AccessGrant | AccessFailure) -> AccessGrant:
        if isinstance(outcome, AccessFailure):
            raise AccessError.from_failure(outcome)
        return outcome

    @staticmethod
    def _require_full(grant: AccessGrant) -> None:
        if resolve_access_level(grant.access_level) is not AccessLevel.FULL:
            raise AccessError(FailureReason.INSUFFICIENT_ACCESS_LEVEL, grant.id)

    async def _require_full_for_download(
        self,
        grant: AccessGrant,
        context: RequestContext,
        detail: dict[str, Any],
    ) -> None:
        try:
            self._require_full(grant)
        except AccessError as exc:
            await self._record_download_failure(grant, exc.reason, context, detail)
            raise

    async def _consume(
        self,
        grant: AccessGrant,
        context: RequestContext,
        *,
        detail: dict[str, Any],
    ) -> int:
        outcome = await self._quota.consume(grant.id, context, detail=detail)
        if isinstance(outcome, ConsumeOk):
            return outcome.remaining
        raise AccessError.from_failure(outcome)

    async def _download(
        self,
        grant: AccessGrant,
        document_id: UUID,
        context: RequestContext,
        *,
        via: str,
    ) -> DocumentDownload:
        """Open the document, then spend a unit; a refused unit closes the stream.

        Nothing is charged for bytes that cannot be served.
        """
        detail = {"document_id": str(document_id), "via": via}
        await self._require_full_for_download(grant, context, detail)
        try:
            document = await within_deadline(
                self._repository.get_document(
                    application_id=grant.application_id,
                    document_id=document_id,
                ),
                context,
            )
        except ResourceNotFoundError:
            await self._record_download_failure(grant, FailureReason.NOT_FOUND, context, detail)
            raise
        except TransientStoreError:
            await self._record_download_failure(grant, FailureReason.TRANSIENT, context, detail)
            raise

        chunks = await self._open_object(grant, document, context, detail)
        try:
            remaining = await self._consume(grant, context, detail=detail)
        except BaseException:
            await chunks.aclose()
            raise
        return DocumentDownload(document=document, chunks=chunks, downloads_remaining=remaining)

    async def _open_object(
        self,
        grant: AccessGrant,
        document: ApplicationDocument,
        context: RequestContext,
        detail: dict[str, Any],
    ) -> DocumentStream:
        try:
            return await self._storage.open(document.object_key)
        except DocumentObjectNotFoundError as exc:
            logger.error(
                "document_object_missing",
                grant_id=str(grant.id),
                document_id=str(document.id),
            )
            await self._record_download_failure(grant, FailureReason.NOT_FOUND, context, detail)
            raise ResourceNotFoundError("document object not found") from exc
        except Exception as exc:
            logger.warning(
                "document_storage_unavailable",
                grant_id=str(grant.id),
                document_id=str(document.id),
                exc_info=True,
            )
            await self._record_download_failure(grant, FailureReason.TRANSIENT, context, detail)
            raise TransientStoreError("document storage unavailable") from exc

    async def _record_download_failure(
        self,
        grant: AccessGrant,
        reason: FailureReason,
        context: RequestContext,
        detail: dict[str, Any],
    ) -> None:
        await self._audit.record(
            action=audit.download_failure(reason),
            grant_id=grant.id,
            context=context,
            detail=detail,
        )

    async def _record_offer_failure(
        self,
        grant: AccessGrant,
        reason: FailureReason,
        context: RequestContext,
        detail: dict[str, Any],
    ) -> None:
        await self._audit.record(
            action=audit.offer_failure(reason),
            grant_id=grant.id,
            context=context,
            detail=detail,
        )


def build_access_service(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    *,
    store: GrantStore | None = None,
    storage: DocumentStorage | None = None,
) -> AccessGatewayService:
    """Wire the gateway against the database and object storage."""
    grant_store = store or SqlGrantStore(session_factory)
    audit_logger = AccessAuditLogger(session_factory)
    return AccessGatewayService(
        verifier=AccessVerifier(
            grant_store,
            audit_logger,
            token_length=settings.token_length,
        ),
        quota=QuotaTracker(
            grant_store,
            audit_logger,
            max_attempts=settings.consume_max_attempts,
            backoff_base_seconds=settings.consume_backoff_base_seconds,
        ),
        repository=ApplicationRepository(session_factory),
        storage=storage or DocumentStorage(),
        audit_sink=audit_logger,
        link_codec=DocumentLinkCodec(
            settings.document_link_secret,
            settings.document_link_ttl_seconds,
        ),
    )
