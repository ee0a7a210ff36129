"""
Feed Engine Package

Optimistic mutation and cursor-pagination engine for the unified
expense/income feed.

This package provides:
- Cache store of feed pages keyed by filter fingerprint
- Cursor pager with request coalescing and stale-response discard
- Mutation coordinator with optimistic patches and snapshot rollback
- Reconciliation scheduler that refetches after the settle window
- Invalidation bus for network-restored and session-cleared events

Key Components:
- engine: TransactionFeed facade used by the rendering layer
- cache_store: Pages, generation counters and detail cache
- pager: First-page and next-page fetching plus merge rules
- mutations: Create/update/delete lifecycle and per-entity ordering
- reconciliation: Settle-window timers per fingerprint
- invalidation: Process-wide invalidation events
"""

from .cache_store import CacheEntry, CacheSnapshot, CacheStore
from .engine import FeedSnapshot, TransactionFeed
from .invalidation import (
    InvalidationBus,
    InvalidationReason,
    get_invalidation_bus,
    reset_invalidation_bus,
)
from .mutations import (
    CreateMutation,
    DeleteMutation,
    Mutation,
    MutationCoordinator,
    MutationHandle,
    MutationKind,
    MutationOutcome,
    MutationStatus,
    PendingMutation,
    UpdateMutation,
)
from .pager import CursorPager, merge_first_page, merge_next_page
from .reconciliation import ReconciliationScheduler
from .remote import FeedPageResponse, TransactionRemote
from .scheduling import CancellationToken, ScheduledTask, TaskState

__all__ = [
    # Engine facade
    "FeedSnapshot",
    "TransactionFeed",
    # Cache
    "CacheEntry",
    "CacheSnapshot",
    "CacheStore",
    # Pagination
    "CursorPager",
    "merge_first_page",
    "merge_next_page",
    # Mutations
    "CreateMutation",
    "DeleteMutation",
    "Mutation",
    "MutationCoordinator",
    "MutationHandle",
    "MutationKind",
    "MutationOutcome",
    "MutationStatus",
    "PendingMutation",
    "UpdateMutation",
    # Reconciliation and invalidation
    "CancellationToken",
    "InvalidationBus",
    "InvalidationReason",
    "ReconciliationScheduler",
    "ScheduledTask",
    "TaskState",
    "get_invalidation_bus",
    "reset_invalidation_bus",
    # Remote contract
    "FeedPageResponse",
    "TransactionRemote",
]
