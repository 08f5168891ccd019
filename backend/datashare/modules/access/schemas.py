"""Pydantic request/response schemas for the access gateway."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from datashare.db.models import AccessLevel, OfferStatus

# =============================================================================
# Projected views
# =============================================================================


class _ViewModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ApplicationOverview(_ViewModel):
    """Identifiers and non-sensitive terms of the application."""

    id: UUID
    reference: str | None = None
    funding_type: str | None = None
    term_months: int | None = None


class CompanyOverview(_ViewModel):
    name: str | None = None
    industry: str | None = None


class FinancialSummary(_ViewModel):
    """Redacted financials: bands instead of figures."""

    amount_band: str | None = None
    revenue_band: str | None = None


class DocumentListing(_ViewModel):
    """Document name and type only."""

    name: str
    document_type: str | None = None


class SummaryView(_ViewModel):
    """Read-only view permitted by ``summary`` grants."""

    access_level: Literal["summary"] = "summary"
    application: ApplicationOverview
    company: CompanyOverview
    financial_summary: FinancialSummary
    documents: list[DocumentListing]


class ContactDetails(_ViewModel):
    business_id: str | None = None
    email: str | None = None
    phone: str | None = None


class FinancialDetail(_ViewModel):
    amount: Decimal | None = None
    annual_revenue: Decimal | None = None
    purpose: str | None = None


class DownloadableDocument(_ViewModel):
    """Document entry carrying its own short-lived download link."""

    id: UUID
    name: str
    document_type: str | None = None
    content_type: str | None = None
    size_bytes: int | None = None
    download_token: str | None = None


class OfferView(_ViewModel):
    id: UUID
    lender_id: UUID | None = None
    amount_offered: Decimal
    interest_rate: Decimal
    term_months: int
    monthly_payment: Decimal | None = None
    total_repayment: Decimal | None = None
    valid_until: datetime | None = None
    notes: str | None = None
    status: OfferStatus
    actionable: bool


class FullView(_ViewModel):
    """Everything in ``SummaryView`` plus figures, contact, offers and links."""

    access_level: Literal["full"] = "full"
    application: ApplicationOverview
    company: CompanyOverview
    financial_summary: FinancialSummary
    documents: list[DownloadableDocument]
    contact: ContactDetails
    financials: FinancialDetail
    offers: list[OfferView]


ProjectedView = FullView | SummaryView


# =============================================================================
# Endpoint payloads
# =============================================================================


class GrantInfo(BaseModel):
    """What the link holder may know about their own grant."""

    access_level: AccessLevel
    expires_at: datetime
    downloads_remaining: int
    recipient_email: str
    lender_id: UUID | None = None


class AccessViewResponse(BaseModel):
    grant: GrantInfo
    data: FullView | SummaryView = Field(discriminator="access_level")


class AccessActionRequest(BaseModel):
    action: Literal["download"]


class AccessActionResponse(BaseModel):
    downloads_remaining: int


class OfferActionRequest(BaseModel):
    action: Literal["accept", "reject"]


class OfferActionResponse(BaseModel):
    offer_id: UUID
    status: OfferStatus


class OfferSubmissionRequest(BaseModel):
    """Offer submitted by a lender holding a full-access grant."""

    amount: Decimal = Field(gt=0)
    interest_rate: Decimal = Field(ge=0)
    term_months: int = Field(gt=0)
    monthly_payment: Decimal = Field(gt=0)
    total_repayment: Decimal = Field(gt=0)
    valid_until: datetime
    notes: str | None = Field(default=None, max_length=4000)


class OfferSubmissionResponse(BaseModel):
    offer_id: UUID
    status: OfferStatus
