"""
Public access routes for holders of a grant token.

No authentication beyond the token itself. Every denial is mapped to a
generic public message here; the specific reason only ever reaches the
access log and the operational log.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Annotated, NoReturn
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from datashare.core.config import get_settings
from datashare.core.logging import get_logger
from datashare.core.rate_limit import get_client_ip
from datashare.db.models import OfferStatus
from datashare.modules.access.context import RequestContext
from datashare.modules.access.errors import (
    AccessError,
    FailureReason,
    ResourceNotFoundError,
    TransientStoreError,
)
from datashare.modules.access.schemas import (
    AccessActionRequest,
    AccessActionResponse,
    AccessViewResponse,
    OfferActionRequest,
    OfferActionResponse,
    OfferSubmissionRequest,
    OfferSubmissionResponse,
)
from datashare.modules.access.service import AccessGatewayService, DocumentDownload

logger = get_logger(__name__)

router = APIRouter()

_INVALID = (status.HTTP_403_FORBIDDEN, "Access link is invalid")
_PUBLIC_ERRORS: dict[FailureReason, tuple[int, str]] = {
    FailureReason.MALFORMED_TOKEN: _INVALID,
    FailureReason.NOT_FOUND: _INVALID,
    FailureReason.REVOKED: _INVALID,
    FailureReason.IP_NOT_ALLOWED: _INVALID,
    FailureReason.EXPIRED: (status.HTTP_410_GONE, "Access link has expired"),
    FailureReason.QUOTA_EXCEEDED: (status.HTTP_429_TOO_MANY_REQUESTS, "Download limit reached"),
    FailureReason.INSUFFICIENT_ACCESS_LEVEL: (
        status.HTTP_403_FORBIDDEN,
        "Not permitted for this link",
    ),
    FailureReason.ALREADY_DECIDED: (
        status.HTTP_400_BAD_REQUEST,
        "Offer has already been decided",
    ),
}
_TRANSIENT_RETRY_AFTER_SECONDS = 1
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._ -]")


def get_access_service(request: Request) -> AccessGatewayService:
    """Return the gateway service built at application startup."""
    service: AccessGatewayService | None = getattr(request.app.state, "access_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service temporarily unavailable",
        )
    return service


async def get_request_context(request: Request) -> RequestContext:
    return RequestContext.start(
        address=get_client_ip(request),
        agent=request.headers.get("user-agent"),
        timeout_seconds=get_settings().request_timeout_seconds,
    )


AccessService = Annotated[AccessGatewayService, Depends(get_access_service)]
CallerContext = Annotated[RequestContext, Depends(get_request_context)]


def _raise_unavailable(exc: Exception) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Service temporarily unavailable",
        headers={"Retry-After": str(_TRANSIENT_RETRY_AFTER_SECONDS)},
    ) from exc


@contextmanager
def _public_errors() -> Iterator[None]:
    """Translate gateway failures into fixed, generic HTTP errors."""
    try:
        yield
    except AccessError as exc:
        if exc.reason is FailureReason.TRANSIENT:
            _raise_unavailable(exc)
        status_code, detail = _PUBLIC_ERRORS[exc.reason]
        raise HTTPException(status_code=status_code, detail=detail) from exc
    except ResourceNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found") from exc
    except TransientStoreError as exc:
        logger.warning("access_request_unavailable", error=str(exc))
        _raise_unavailable(exc)


def _safe_filename(name: str) -> str:
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", name).strip()
    return cleaned or "document"


def _stream(download: DocumentDownload) -> StreamingResponse:
    document = download.document
    headers = {
        "Content-Disposition": f'attachment; filename="{_safe_filename(document.name)}"',
        "Cache-Control": "private, no-store",
        "X-Downloads-Remaining": str(download.downloads_remaining),
    }
    return StreamingResponse(
        download.chunks,
        media_type=document.content_type or "application/octet-stream",
        headers=headers,
    )


@router.get("/documents/{link_token}")
async def download_via_link(
    link_token: str,
    service: AccessService,
    context: CallerContext,
) -> StreamingResponse:
    """Download one document through a short-lived per-document link."""
    with _public_errors():
        download = await service.open_document_link(link_token, context)
    return _stream(download)


@router.get("/{token}", response_model=AccessViewResponse)
async def get_access(
    token: str,
    service: AccessService,
    context: CallerContext,
) -> AccessViewResponse:
    """Return grant information and the application view it permits."""
    with _public_errors():
        return await service.view(token, context)


@router.post("/{token}", response_model=AccessActionResponse)
async def perform_access_action(
    token: str,
    body: AccessActionRequest,
    service: AccessService,
    context: CallerContext,
) -> AccessActionResponse:
    """Consume one download unit from the grant's quota."""
    with _public_errors():
        remaining = await service.record_download(token, context)
    return AccessActionResponse(downloads_remaining=remaining)


@router.get("/{token}/document/{document_id}")
async def download_document(
    token: str,
    document_id: UUID,
    service: AccessService,
    context: CallerContext,
) -> StreamingResponse:
    with _public_errors():
        download = await service.open_document(token, document_id, context)
    return _stream(download)


@router.patch("/{token}/offer/{offer_id}", response_model=OfferActionResponse)
async def decide_offer(
    token: str,
    offer_id: UUID,
    body: OfferActionRequest,
    service: AccessService,
    context: CallerContext,
) -> OfferActionResponse:
    """Accept or reject a pending offer on the shared application."""
    with _public_errors():
        new_status = await service.decide_offer(token, offer_id, body.action, context)
    return OfferActionResponse(offer_id=offer_id, status=new_status)


@router.post(
    "/{token}/offer",
    response_model=OfferSubmissionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def submit_offer(
    token: str,
    body: OfferSubmissionRequest,
    service: AccessService,
    context: CallerContext,
) -> OfferSubmissionResponse:
    """Submit a financing offer as the lender the grant was issued to."""
    with _public_errors():
        offer_id = await service.submit_offer(token, body, context)
    return OfferSubmissionResponse(offer_id=offer_id, status=OfferStatus.PENDING)
