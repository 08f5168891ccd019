"""
In-memory collaborators for the access gateway unit tests.

``InMemoryGrantStore`` mirrors the SQL store's contract: the consume path
checks and increments under one lock, and yields to the event loop at the
same points a database round-trip would, so concurrent callers interleave.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

import pytest
import pytest_asyncio

from datashare.db.models import (
    AccessGrant,
    ApplicationDocument,
    Company,
    FinancingOffer,
    FundingApplication,
    OfferStatus,
)
from datashare.modules.access.context import RequestContext
from datashare.modules.access.errors import (
    ResourceNotFoundError,
    TokenCollisionError,
    TransientStoreError,
)
from datashare.modules.access.quota import QuotaTracker
from datashare.modules.access.schemas import OfferSubmissionRequest
from datashare.modules.access.service import AccessGatewayService
from datashare.modules.access.storage import DocumentObjectNotFoundError
from datashare.modules.access.tokens import DocumentLinkCodec, generate_token
from datashare.modules.access.verifier import AccessVerifier

CALLER_IP = "203.0.113.7"
LINK_SECRET = "unit-test-document-link-secret"


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class InMemoryGrantStore:
    """``GrantStore`` fake with an atomic consume."""

    def __init__(self) -> None:
        self.grants: dict[UUID, AccessGrant] = {}
        self.calls: list[str] = []
        self.transient_failures = 0
        self._row_lock = asyncio.Lock()

    def add(self, grant: AccessGrant) -> AccessGrant:
        self.grants[grant.id] = grant
        return grant

    async def get_by_token(self, token: str) -> AccessGrant | None:
        self.calls.append("get_by_token")
        await asyncio.sleep(0)
        return next((g for g in self.grants.values() if g.token == token), None)

    async def get_by_id(self, grant_id: UUID) -> AccessGrant | None:
        self.calls.append("get_by_id")
        await asyncio.sleep(0)
        return self.grants.get(grant_id)

    async def create(self, grant: AccessGrant) -> AccessGrant:
        self.calls.append("create")
        if any(existing.token == grant.token for existing in self.grants.values()):
            raise TokenCollisionError("generated grant token already exists")
        if grant.id is None:
            grant.id = uuid4()
        return self.add(grant)

    async def consume_download(self, grant_id: UUID, *, now: datetime) -> int | None:
        self.calls.append("consume_download")
        await asyncio.sleep(0)
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransientStoreError("simulated connection reset", retryable=True)
        async with self._row_lock:
            grant = self.grants.get(grant_id)
            if (
                grant is None
                or grant.revoked_at is not None
                or now >= grant.expires_at
                or grant.download_count >= grant.max_downloads
            ):
                return None
            # Yield while holding the row lock, as a real UPDATE would.
            await asyncio.sleep(0)
            grant.download_count += 1
            return grant.max_downloads - grant.download_count

    async def revoke(self, grant_id: UUID, *, now: datetime) -> bool:
        self.calls.append("revoke")
        grant = self.grants.get(grant_id)
        if grant is None or grant.revoked_at is not None:
            return False
        grant.revoked_at = now
        return True


@dataclass
class AuditRecord:
    action: str
    grant_id: UUID | None
    address: str | None
    detail: dict[str, Any] | None


class RecordingAuditSink:
    def __init__(self) -> None:
        self.entries: list[AuditRecord] = []

    async def record(
        self,
        *,
        action: str,
        grant_id: UUID | None = None,
        context: RequestContext | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        self.entries.append(
            AuditRecord(
                action=action,
                grant_id=grant_id,
                address=context.address if context else None,
                detail=detail,
            )
        )

    @property
    def actions(self) -> list[str]:
        return [entry.action for entry in self.entries]


class InMemoryApplicationRepository:
    """Application aggregate fake with the same scoping rules as the SQL one."""

    def __init__(self) -> None:
        self.applications: dict[UUID, FundingApplication] = {}
        self.submitted: list[FinancingOffer] = []

    def add(self, application: FundingApplication) -> FundingApplication:
        self.applications[application.id] = application
        return application

    async def load_application(self, application_id: UUID) -> FundingApplication | None:
        return self.applications.get(application_id)

    async def get_document(
        self,
        *,
        application_id: UUID,
        document_id: UUID,
    ) -> ApplicationDocument:
        application = self.applications.get(application_id)
        for document in application.documents if application else []:
            if document.id == document_id:
                return document
        raise ResourceNotFoundError("document not found")

    async def decide_offer(
        self,
        *,
        application_id: UUID,
        offer_id: UUID,
        status: OfferStatus,
        now: datetime,
    ) -> bool:
        application = self.applications.get(application_id)
        for offer in application.offers if application else []:
            if offer.id == offer_id:
                if offer.status != OfferStatus.PENDING:
                    return False
                offer.status = status
                offer.decided_at = now
                return True
        raise ResourceNotFoundError("offer not found")

    async def submit_offer(
        self,
        *,
        application_id: UUID,
        lender_id: UUID,
        payload: OfferSubmissionRequest,
    ) -> FinancingOffer:
        offer = FinancingOffer(
            id=uuid4(),
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
        self.submitted.append(offer)
        return offer


class FakeDocumentStream:
    """Serves a payload in four-byte chunks and records when it is released."""

    def __init__(self, payload: bytes, released: list[FakeDocumentStream]) -> None:
        self._chunks = [payload[start : start + 4] for start in range(0, len(payload), 4)]
        self._released = released
        self.closed = False

    def __aiter__(self) -> FakeDocumentStream:
        return self

    async def __anext__(self) -> bytes:
        if self.closed or not self._chunks:
            await self.aclose()
            raise StopAsyncIteration
        return self._chunks.pop(0)

    async def aclose(self) -> None:
        if not self.closed:
            self.closed = True
            self._released.append(self)


class FakeDocumentStorage:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.opened: list[str] = []
        self.released: list[FakeDocumentStream] = []
        self.failure: Exception | None = None

    async def open(self, object_key: str) -> FakeDocumentStream:
        if self.failure is not None:
            raise self.failure
        if object_key not in self.objects:
            raise DocumentObjectNotFoundError("document object not found")
        self.opened.append(object_key)
        return FakeDocumentStream(self.objects[object_key], self.released)


def build_application(*, application_id: UUID | None = None) -> FundingApplication:
    """A funding application with one document and one pending offer."""
    application_id = application_id or uuid4()
    company = Company(
        id=uuid4(),
        name="Nordic Widgets Oy",
        business_id="1234567-8",
        industry="Manufacturing",
        contact_email="cfo@nordicwidgets.example",
        contact_phone="+358 40 1234567",
        annual_revenue=Decimal("2400000.00"),
    )
    document = ApplicationDocument(
        id=uuid4(),
        application_id=application_id,
        name="financial statements 2025.pdf",
        document_type="financial_statement",
        content_type="application/pdf",
        size_bytes=11,
        object_key=f"applications/{application_id}/statements.pdf",
    )
    offer = FinancingOffer(
        id=uuid4(),
        application_id=application_id,
        lender_id=uuid4(),
        amount_offered=Decimal("150000.00"),
        interest_rate=Decimal("6.500"),
        term_months=24,
        monthly_payment=Decimal("6700.00"),
        total_repayment=Decimal("160800.00"),
        valid_until=datetime(2030, 1, 1, tzinfo=UTC),
        notes=None,
        status=OfferStatus.PENDING,
    )
    return FundingApplication(
        id=application_id,
        reference="FA-2026-0042",
        company_id=company.id,
        company=company,
        funding_type="working_capital",
        amount=Decimal("175000.00"),
        term_months=24,
        purpose="Inventory financing ahead of peak season",
        documents=[document],
        offers=[offer],
    )


# --------------------------------------------------------------------------
# Fixtures
# --------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime.now(UTC).replace(microsecond=0))


@pytest.fixture
def grant_store() -> InMemoryGrantStore:
    return InMemoryGrantStore()


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def make_grant(
    grant_store: InMemoryGrantStore, clock: FakeClock
) -> Callable[..., AccessGrant]:
    def _make(**overrides: Any) -> AccessGrant:
        values: dict[str, Any] = {
            "id": uuid4(),
            "token": generate_token(32),
            "application_id": uuid4(),
            "lender_id": None,
            "recipient_email": "analyst@lender.example",
            "access_level": "full",
            "expires_at": clock.now + timedelta(days=1),
            "max_downloads": 5,
            "download_count": 0,
            "allowed_ip_prefixes": None,
            "revoked_at": None,
        }
        values.update(overrides)
        return grant_store.add(AccessGrant(**values))

    return _make


@pytest_asyncio.fixture
async def ctx() -> RequestContext:
    return RequestContext.start(address=CALLER_IP, agent="pytest", timeout_seconds=5.0)


@pytest.fixture
def verifier(
    grant_store: InMemoryGrantStore, audit_sink: RecordingAuditSink, clock: FakeClock
) -> AccessVerifier:
    return AccessVerifier(grant_store, audit_sink, clock=clock, token_length=64)


@pytest.fixture
def no_sleep() -> list[float]:
    """Collects backoff delays instead of sleeping."""
    return []


@pytest.fixture
def quota(
    grant_store: InMemoryGrantStore,
    audit_sink: RecordingAuditSink,
    clock: FakeClock,
    no_sleep: list[float],
) -> QuotaTracker:
    async def _sleep(delay: float) -> None:
        no_sleep.append(delay)

    return QuotaTracker(grant_store, audit_sink, clock=clock, sleep=_sleep)


@pytest.fixture
def link_codec(clock: FakeClock) -> DocumentLinkCodec:
    return DocumentLinkCodec(LINK_SECRET, 300, clock=clock)


@pytest.fixture
def repository() -> InMemoryApplicationRepository:
    return InMemoryApplicationRepository()


@pytest.fixture
def storage() -> FakeDocumentStorage:
    return FakeDocumentStorage()


@pytest.fixture
def application(
    repository: InMemoryApplicationRepository, storage: FakeDocumentStorage
) -> FundingApplication:
    app = repository.add(build_application())
    for document in app.documents:
        storage.objects[document.object_key] = b"PDF-1.7 ..."
    return app


@pytest.fixture
def gateway(
    verifier: AccessVerifier,
    quota: QuotaTracker,
    repository: InMemoryApplicationRepository,
    storage: FakeDocumentStorage,
    audit_sink: RecordingAuditSink,
    link_codec: DocumentLinkCodec,
    clock: FakeClock,
) -> AccessGatewayService:
    return AccessGatewayService(
        verifier=verifier,
        quota=quota,
        repository=repository,  # type: ignore[arg-type]
        storage=storage,  # type: ignore[arg-type]
        audit_sink=audit_sink,
        link_codec=link_codec,
        clock=clock,
    )

