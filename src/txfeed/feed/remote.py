#!/usr/bin/env python3
"""
Remote Feed Contract

Protocol the engine consumes for reads and writes. The HTTP implementation
lives in ``txfeed.api.client``; tests use an in-memory fake.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol

from ..core.models import FeedFilters, Transaction, TransactionDraft


@dataclass(frozen=True)
class FeedPageResponse:
    """One page as returned by the remote feed."""

    items: tuple[Transaction, ...] = field(default_factory=tuple)
    next_cursor: str | None = None
    has_more: bool = False
    total: int | None = None


class TransactionRemote(Protocol):
    """
    Authoritative source of transactions.

    Implementations raise ``TransportFailure`` for network problems and
    ``ValidationRejected`` when the server refuses a payload.
    """

    async def fetch_page(self, filters: FeedFilters, cursor: str | None, limit: int) -> FeedPageResponse:
        """
        Fetch one page of the feed.

        Args:
            filters: Active feed filters
            cursor: Opaque cursor from the previous page (None for the first page)
            limit: Maximum number of items

        Returns:
            Items plus the cursor of the next page
        """
        ...

    async def create(self, draft: TransactionDraft) -> Transaction:
        """Create a transaction and return the authoritative copy."""
        ...

    async def update(self, transaction_id: str, changes: dict[str, Any]) -> Transaction:
        """Apply partial changes and return the updated authoritative copy."""
        ...

    async def delete(self, transaction_id: str) -> None:
        """Delete a transaction by authoritative id."""
        ...

    async def get(self, transaction_id: str) -> Transaction | None:
        """Fetch one transaction, or None if it does not exist."""
        ...
