"""
SQLAlchemy ORM models for the data sharing gateway.

``grants`` and ``access_log`` are owned by the gateway. The funding
application aggregate (applications, companies, documents, offers) is owned
by the issuing platform; it is mapped here so the gateway can read it and
perform the two offer mutations it is allowed to make.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
    }


# =============================================================================
# Enums
# =============================================================================


class AccessLevel(str, PyEnum):
    """Permission tier attached to a grant."""

    SUMMARY = "summary"
    FULL = "full"


class OfferStatus(str, PyEnum):
    """Lifecycle status of a financing offer."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class GrantStatus(str, PyEnum):
    """Derived grant state; never stored."""

    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"
    REVOKED = "revoked"


def _enum_values(enum_cls: type[PyEnum]) -> list[str]:
    return [member.value for member in enum_cls]


# =============================================================================
# Access Grant Models
# =============================================================================


class AccessGrant(Base):
    """
    Capability record permitting bounded access to one funding application.

    Every field is fixed at issuance except ``download_count`` and
    ``revoked_at``, which only the grant store mutates.
    """

    __tablename__ = "grants"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    token: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Opaque hex bearer token; lookup key only",
    )
    application_id: Mapped[UUID] = mapped_column(nullable=False)
    lender_id: Mapped[UUID | None] = mapped_column(nullable=True)
    recipient_email: Mapped[str] = mapped_column(String(320), nullable=False)
    # Stored as plain text so that legacy levels survive a read and can be
    # projected fail-closed instead of failing the load.
    access_level: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=AccessLevel.SUMMARY.value,
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    max_downloads: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    allowed_ip_prefixes: Mapped[list[str] | None] = mapped_column(
        JSONB,
        nullable=True,
        comment="CIDR or IP allow-list; NULL means unrestricted",
    )
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ux_grants_token", "token", unique=True),
        Index("ix_grants_application_id", "application_id"),
        CheckConstraint("max_downloads >= 0", name="ck_grants_max_downloads_non_negative"),
        CheckConstraint(
            "download_count >= 0 AND download_count <= max_downloads",
            name="ck_grants_download_count_bounded",
        ),
    )

    def status_at(self, now: datetime) -> GrantStatus:
        """Derive the grant status at *now*."""
        if self.revoked_at is not None:
            return GrantStatus.REVOKED
        if now >= self.expires_at:
            return GrantStatus.EXPIRED
        if self.download_count >= self.max_downloads:
            return GrantStatus.EXHAUSTED
        return GrantStatus.ACTIVE

    @property
    def downloads_remaining(self) -> int:
        return max(0, self.max_downloads - self.download_count)


class AccessLogEntry(Base):
    """
    Append-only audit fact for one access attempt or consumption event.

    ``grant_id`` is NULL when the presented token never resolved to a grant.
    """

    __tablename__ = "access_log"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    grant_id: Mapped[UUID | None] = mapped_column(ForeignKey("grants.id"), nullable=True)
    action: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="verify_success, verify_failure:<reason>, download, offer_accepted, ...",
    )
    actor_address: Mapped[str | None] = mapped_column(String(45))
    actor_agent: Mapped[str | None] = mapped_column(Text)
    detail: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_access_log_grant_id", "grant_id"),
        Index("ix_access_log_action", "action"),
        Index("ix_access_log_created_at", "created_at"),
    )


# =============================================================================
# Funding Application Aggregate (owned by the issuing platform)
# =============================================================================


class Company(Base):
    """Applicant company."""

    __tablename__ = "companies"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    business_id: Mapped[str | None] = mapped_column(String(64))
    industry: Mapped[str | None] = mapped_column(String(255))
    contact_email: Mapped[str | None] = mapped_column(String(320))
    contact_phone: Mapped[str | None] = mapped_column(String(64))
    annual_revenue: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))


class FundingApplication(Base):
    """Funding application submitted by a company."""

    __tablename__ = "funding_applications"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    reference: Mapped[str | None] = mapped_column(String(64))
    company_id: Mapped[UUID] = mapped_column(ForeignKey("companies.id"), nullable=False)
    funding_type: Mapped[str | None] = mapped_column(String(64))
    amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    term_months: Mapped[int | None] = mapped_column(Integer)
    purpose: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    company: Mapped[Company] = relationship(lazy="joined")
    documents: Mapped[list["ApplicationDocument"]] = relationship(
        back_populates="application",
        lazy="selectin",
        order_by="ApplicationDocument.created_at",
    )
    offers: Mapped[list["FinancingOffer"]] = relationship(
        back_populates="application",
        lazy="selectin",
        order_by="FinancingOffer.created_at",
    )


class ApplicationDocument(Base):
    """Document attached to a funding application; bytes live in object storage."""

    __tablename__ = "application_documents"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    application_id: Mapped[UUID] = mapped_column(
        ForeignKey("funding_applications.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    document_type: Mapped[str | None] = mapped_column(String(64))
    content_type: Mapped[str] = mapped_column(
        String(255), nullable=False, default="application/octet-stream"
    )
    size_bytes: Mapped[int | None] = mapped_column(BigInteger)
    object_key: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    application: Mapped[FundingApplication] = relationship(back_populates="documents")

    __table_args__ = (Index("ix_application_documents_application_id", "application_id"),)


class FinancingOffer(Base):
    """Offer made by a lender against a funding application."""

    __tablename__ = "financing_offers"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    application_id: Mapped[UUID] = mapped_column(
        ForeignKey("funding_applications.id", ondelete="CASCADE"),
        nullable=False,
    )
    lender_id: Mapped[UUID | None] = mapped_column(nullable=True)
    amount_offered: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    interest_rate: Mapped[Decimal] = mapped_column(Numeric(7, 3), nullable=False)
    term_months: Mapped[int] = mapped_column(Integer, nullable=False)
    monthly_payment: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    total_repayment: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    notes: Mapped[str | None] = mapped_column(Text)
    status: Mapped[OfferStatus] = mapped_column(
        Enum(OfferStatus, values_callable=_enum_values),
        nullable=False,
        default=OfferStatus.PENDING,
    )
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    application: Mapped[FundingApplication] = relationship(back_populates="offers")

    __table_args__ = (Index("ix_financing_offers_application_id", "application_id"),)
