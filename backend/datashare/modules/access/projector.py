"""Access-level projection of a funding application.

``project`` is pure and total: it never raises and never returns more than
the grant's level allows. Anything other than an exact ``full`` level,
and any failure while assembling the full view, yields the summary view.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal, InvalidOperation
from typing import Any

from datashare.core.logging import get_logger
from datashare.db.models import (
    AccessGrant,
    AccessLevel,
    ApplicationDocument,
    FinancingOffer,
    FundingApplication,
    OfferStatus,
)
from datashare.modules.access.schemas import (
    ApplicationOverview,
    CompanyOverview,
    ContactDetails,
    DocumentListing,
    DownloadableDocument,
    FinancialDetail,
    FinancialSummary,
    FullView,
    OfferView,
    ProjectedView,
    SummaryView,
)
from datashare.modules.access.tokens import DocumentLinkCodec

logger = get_logger(__name__)

_LEVELS: dict[str, AccessLevel] = {level.value: level for level in AccessLevel}

# Upper bounds (exclusive) and labels used in place of exact figures.
_MONEY_BANDS: tuple[tuple[Decimal, str], ...] = (
    (Decimal("10000"), "under 10k"),
    (Decimal("50000"), "10k-50k"),
    (Decimal("100000"), "50k-100k"),
    (Decimal("250000"), "100k-250k"),
    (Decimal("500000"), "250k-500k"),
    (Decimal("1000000"), "500k-1M"),
    (Decimal("5000000"), "1M-5M"),
)
_TOP_BAND = "5M+"


def resolve_access_level(raw: Any) -> AccessLevel:
    """Map a stored level to the closed enum, defaulting to the most restrictive."""
    if isinstance(raw, str):
        return _LEVELS.get(raw, AccessLevel.SUMMARY)
    return AccessLevel.SUMMARY


def money_band(value: Any) -> str | None:
    if value is None:
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if amount.is_nan() or amount < 0:
        return None
    for upper, label in _MONEY_BANDS:
        if amount < upper:
            return label
    return _TOP_BAND


def project(
    grant: AccessGrant,
    application: FundingApplication | None,
    link_codec: DocumentLinkCodec | None = None,
) -> ProjectedView:
    """Build the view of *application* permitted by *grant*."""
    try:
        summary = _summary_view(grant, application)
    except Exception:
        logger.warning("summary_projection_failed", grant_id=_grant_ref(grant), exc_info=True)
        summary = _empty_summary(grant)

    if resolve_access_level(getattr(grant, "access_level", None)) is not AccessLevel.FULL:
        return summary

    try:
        return _full_view(summary, grant, application, link_codec)
    except Exception:
        logger.warning("full_projection_failed", grant_id=_grant_ref(grant), exc_info=True)
        return summary


def _grant_ref(grant: Any) -> str | None:
    grant_id = getattr(grant, "id", None)
    return str(grant_id) if grant_id is not None else None


def _empty_summary(grant: Any) -> SummaryView:
    application_id = getattr(grant, "application_id", None)
    return SummaryView.model_construct(
        application=ApplicationOverview.model_construct(id=application_id),
        company=CompanyOverview(),
        financial_summary=FinancialSummary(),
        documents=[],
    )


def _summary_view(grant: AccessGrant, application: FundingApplication | None) -> SummaryView:
    if application is None:
        return _empty_summary(grant)

    company = application.company
    return SummaryView(
        application=ApplicationOverview(
            id=application.id,
            reference=application.reference,
            funding_type=application.funding_type,
            term_months=application.term_months,
        ),
        company=CompanyOverview(
            name=company.name if company else None,
            industry=company.industry if company else None,
        ),
        financial_summary=FinancialSummary(
            amount_band=money_band(application.amount),
            revenue_band=money_band(company.annual_revenue if company else None),
        ),
        documents=[
            DocumentListing(name=document.name, document_type=document.document_type)
            for document in _documents(application)
        ],
    )


def _full_view(
    summary: SummaryView,
    grant: AccessGrant,
    application: FundingApplication | None,
    link_codec: DocumentLinkCodec | None,
) -> FullView:
    if application is None:
        raise ValueError("full view requires the application record")

    company = application.company
    return FullView(
        application=summary.application,
        company=summary.company,
        financial_summary=summary.financial_summary,
        documents=[
            _downloadable(document, grant, link_codec) for document in _documents(application)
        ],
        contact=ContactDetails(
            business_id=company.business_id if company else None,
            email=company.contact_email if company else None,
            phone=company.contact_phone if company else None,
        ),
        financials=FinancialDetail(
            amount=application.amount,
            annual_revenue=company.annual_revenue if company else None,
            purpose=application.purpose,
        ),
        offers=[_offer_view(offer, grant) for offer in (application.offers or [])],
    )


def _documents(application: FundingApplication) -> Iterable[ApplicationDocument]:
    return application.documents or []


def _downloadable(
    document: ApplicationDocument,
    grant: AccessGrant,
    link_codec: DocumentLinkCodec | None,
) -> DownloadableDocument:
    download_token = None
    if link_codec is not None:
        download_token = link_codec.issue(
            grant_id=grant.id,
            application_id=grant.application_id,
            document_id=document.id,
        )
    return DownloadableDocument(
        id=document.id,
        name=document.name,
        document_type=document.document_type,
        content_type=document.content_type,
        size_bytes=document.size_bytes,
        download_token=download_token,
    )


def _offer_view(offer: FinancingOffer, grant: AccessGrant) -> OfferView:
    # Lenders see offers but only the applicant side may decide them.
    actionable = offer.status == OfferStatus.PENDING and grant.lender_id is None
    return OfferView(
        id=offer.id,
        lender_id=offer.lender_id,
        amount_offered=offer.amount_offered,
        interest_rate=offer.interest_rate,
        term_months=offer.term_months,
        monthly_payment=offer.monthly_payment,
        total_repayment=offer.total_repayment,
        valid_until=offer.valid_until,
        notes=offer.notes,
        status=offer.status,
        actionable=actionable,
    )
