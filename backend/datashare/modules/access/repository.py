"""Read access to the funding application aggregate, plus offer mutations.

Every lookup is scoped by the grant's ``application_id``; an identifier that
belongs to another application is indistinguishable from one that does not
exist.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from datashare.db.models import (
    ApplicationDocument,
    FinancingOffer,
    FundingApplication,
    OfferStatus,
)
from datashare.modules.access.errors import ResourceNotFoundError
from datashare.modules.access.schemas import OfferSubmissionRequest
from datashare.modules.access.store import translate_store_errors


class ApplicationRepository:
    """Narrow interface onto records owned by the issuing platform."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def load_application(self, application_id: UUID) -> FundingApplication | None:
        """Load an application with its company, documents and offers."""
        async with translate_store_errors("load_application"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(FundingApplication).where(FundingApplication.id == application_id)
                )
                return result.scalar_one_or_none()

    async def get_document(
        self,
        *,
        application_id: UUID,
        document_id: UUID,
    ) -> ApplicationDocument:
        async with translate_store_errors("get_document"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(ApplicationDocument).where(
                        ApplicationDocument.id == document_id,
                        ApplicationDocument.application_id == application_id,
                    )
                )
                document = result.scalar_one_or_none()
        if document is None:
            raise ResourceNotFoundError("document not found")
        return document

    async def decide_offer(
        self,
        *,
        application_id: UUID,
        offer_id: UUID,
        status: OfferStatus,
        now: datetime,
    ) -> bool:
        """Move a pending offer to *status*.

        Returns False if the offer was already decided.

        Raises:
            ResourceNotFoundError: no such offer on this application.
        """
        stmt = (
            update(FinancingOffer)
            .where(
                FinancingOffer.id == offer_id,
                FinancingOffer.application_id == application_id,
                FinancingOffer.status == OfferStatus.PENDING,
            )
            .values(status=status, decided_at=now)
            .returning(FinancingOffer.id)
            .execution_options(synchronize_session=False)
        )
        async with translate_store_errors("decide_offer"):
            async with self._session_factory.begin() as session:
                row = (await session.execute(stmt)).first()
                if row is not None:
                    return True
                existing = await session.execute(
                    select(FinancingOffer.id).where(
                        FinancingOffer.id == offer_id,
                        FinancingOffer.application_id == application_id,
                    )
                )
                if existing.scalar_one_or_none() is None:
                    raise ResourceNotFoundError("offer not found")
        return False

    async def submit_offer(
        self,
        *,
        application_id: UUID,
        lender_id: UUID,
        payload: OfferSubmissionRequest,
    ) -> FinancingOffer:
        offer = FinancingOffer(
            application_id=application_id,
            lender_id=lender_id,
            amount_offered=payload.amount,
            interest_rate=payload.interest_rate,
            term_months=payload.term_months,
            monthly_payment=payload.monthly_payment,
            total_repayment=payload.total_repayment,
            valid_until=payload.valid_until,
            notes=payload.notes,
            status=OfferStatus.PENDING,
        )
        async with translate_store_errors("submit_offer"):
            async with self._session_factory.begin() as session:
                session.add(offer)
        return offer
