"""
Core Utilities Package

Shared data models, amounts, dates, errors and configuration used by the
feed engine and the transports.
"""

from .config import (
    ApiConfig,
    Config,
    Environment,
    FeedConfig,
    get_config,
    is_development,
    is_production,
    is_test,
    reload_config,
)
from .dates import date_section_label, group_by_date, parse_api_date
from .errors import (
    AuthExpired,
    FeedError,
    StaleFingerprint,
    TransportFailure,
    UnknownTransaction,
    ValidationRejected,
)
from .models import (
    CategoryRef,
    FeedFilters,
    Fingerprint,
    KindFilter,
    Page,
    SyncState,
    Transaction,
    TransactionDraft,
    TransactionKind,
    flatten,
)
from .money import Money

__all__ = [
    # Configuration
    "ApiConfig",
    "Config",
    "Environment",
    "FeedConfig",
    "get_config",
    "is_development",
    "is_production",
    "is_test",
    "reload_config",
    # Dates
    "date_section_label",
    "group_by_date",
    "parse_api_date",
    # Errors
    "AuthExpired",
    "FeedError",
    "StaleFingerprint",
    "TransportFailure",
    "UnknownTransaction",
    "ValidationRejected",
    # Data models
    "CategoryRef",
    "FeedFilters",
    "Fingerprint",
    "KindFilter",
    "Money",
    "Page",
    "SyncState",
    "Transaction",
    "TransactionDraft",
    "TransactionKind",
    "flatten",
]
