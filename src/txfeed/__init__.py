"""
txfeed - Optimistic Transaction Feed Engine

Client-side engine behind a unified expense/income feed: cursor pagination
over a remote API, optimistic create and delete with rollback, and
reconciliation against a backend whose reads lag its writes.

Key Features:
- Filtered feeds cached per fingerprint, paged with opaque cursors
- Optimistic rows shown before the server answers, rolled back on failure
- Settle-window refetch that swaps temporary ids for server ids
- Invalidation on network restore and logout

Domain Packages:
- core: Money, dates, data models, errors, configuration
- feed: Cache store, pager, mutation coordinator, reconciliation, engine
- api: HTTP client for the transactions REST API
- cli: Command-line interface

Example Usage:
    from txfeed import Fingerprint, TransactionFeed
    from txfeed.api import HttpTransactionRemote

    feed = TransactionFeed(HttpTransactionRemote.from_config(get_config()))
    snapshot = feed.observe(Fingerprint.for_filters(kind="expense"))
"""

__version__ = "0.1.0"
__author__ = "Karl Davis"

from .core.config import Environment, get_config
from .core.errors import (
    AuthExpired,
    FeedError,
    StaleFingerprint,
    TransportFailure,
    ValidationRejected,
)
from .core.models import (
    FeedFilters,
    Fingerprint,
    Page,
    Transaction,
    TransactionDraft,
    TransactionKind,
)
from .core.money import Money
from .feed.engine import FeedSnapshot, TransactionFeed
from .feed.mutations import CreateMutation, DeleteMutation, MutationStatus, UpdateMutation

__all__ = [
    # Engine
    "FeedSnapshot",
    "TransactionFeed",
    # Mutations
    "CreateMutation",
    "DeleteMutation",
    "MutationStatus",
    "UpdateMutation",
    # Core models
    "FeedFilters",
    "Fingerprint",
    "Money",
    "Page",
    "Transaction",
    "TransactionDraft",
    "TransactionKind",
    # Errors
    "AuthExpired",
    "FeedError",
    "StaleFingerprint",
    "TransportFailure",
    "ValidationRejected",
    # Configuration
    "get_config",
    "Environment",
]
