"""Database package."""

from datashare.db.models import (
    AccessGrant,
    AccessLevel,
    AccessLogEntry,
    ApplicationDocument,
    Base,
    Company,
    FinancingOffer,
    FundingApplication,
    GrantStatus,
    OfferStatus,
)
from datashare.db.session import (
    close_db,
    get_db_session,
    get_session_factory,
    init_db,
)

__all__ = [
    "get_db_session",
    "get_session_factory",
    "init_db",
    "close_db",
    "Base",
    "AccessGrant",
    "AccessLevel",
    "AccessLogEntry",
    "GrantStatus",
    "Company",
    "FundingApplication",
    "ApplicationDocument",
    "FinancingOffer",
    "OfferStatus",
]
