#!/usr/bin/env python3
"""
Core Data Models for the Transaction Feed

Data structures shared by the cache store, pager, mutation coordinator and
transports. Transactions and pages are frozen so a snapshot of the cache is
simply a set of references: nothing can mutate a page after it was captured.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any

from .errors import ValidationRejected
from .money import Money

MAX_AMOUNT = Money.from_decimal("10000000")
TRANSACTIONS_ENTITY = "transactions"


class TransactionKind(Enum):
    """Classification of a feed entry."""

    EXPENSE = "expense"
    INCOME = "income"


class SyncState(Enum):
    """Whether a row is known to the server."""

    PROVISIONAL = "provisional"  # temporary id only, create in flight
    CONFIRMED = "confirmed"  # server has it (authoritative id known)


class KindFilter(Enum):
    """Classification filter of a feed."""

    ALL = "all"
    EXPENSE = "expense"
    INCOME = "income"

    def accepts(self, kind: TransactionKind) -> bool:
        return self is KindFilter.ALL or self.value == kind.value


@dataclass(frozen=True)
class CategoryRef:
    """Category details denormalized onto a transaction for display."""

    id: str
    name: str
    icon: str | None = None
    color: str | None = None
    type: str | None = None


@dataclass(frozen=True)
class Transaction:
    """
    A single entry of the unified expense/income feed.

    ``id`` is the displayed identity. A provisional row carries only
    ``temp_id`` (and ``id == temp_id``). After its create commits the row is
    CONFIRMED with ``server_id`` set but keeps displaying the temporary id
    until the reconciliation refetch sees the authoritative copy; the row is
    then promoted in place and ``id`` becomes ``server_id``.
    """

    id: str
    kind: TransactionKind
    amount: Money
    category_id: str
    date: date
    sync_state: SyncState = SyncState.CONFIRMED
    server_id: str | None = None
    temp_id: str | None = None

    # Descriptive fields
    description: str | None = None
    payment_method: str | None = None
    location: str | None = None
    source: str | None = None
    tags: tuple[str, ...] = ()
    is_recurring: bool = False
    recurring_frequency: str | None = None
    category: CategoryRef | None = None

    # Metadata
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_provisional(self) -> bool:
        return self.sync_state is SyncState.PROVISIONAL

    @property
    def awaiting_swap(self) -> bool:
        """Committed create whose displayed id is still the temporary one."""
        return (
            self.sync_state is SyncState.CONFIRMED
            and self.server_id is not None
            and self.id != self.server_id
        )

    def identity_keys(self) -> set[str]:
        """Every id this row is known under."""
        return {key for key in (self.id, self.server_id, self.temp_id) if key}

    def confirm(self, server_id: str) -> "Transaction":
        """Mark a provisional row as committed without swapping its displayed id."""
        return replace(self, sync_state=SyncState.CONFIRMED, server_id=server_id)

    def promote(self, authoritative: "Transaction") -> "Transaction":
        """
        Replace this row's data with its authoritative copy.

        The returned row takes every server-computed field and the server id,
        and sits at this row's position in the page.
        """
        return replace(authoritative, temp_id=None, sync_state=SyncState.CONFIRMED)

    def searchable_text(self) -> str:
        parts = [self.description, self.source, self.location]
        if self.category:
            parts.append(self.category.name)
        return " ".join(part for part in parts if part).casefold()


@dataclass(frozen=True)
class TransactionDraft:
    """Fields of a transaction to create (no id)."""

    kind: TransactionKind
    amount: Money
    category_id: str
    date: date
    description: str | None = None
    payment_method: str | None = None
    location: str | None = None
    source: str | None = None
    tags: tuple[str, ...] = ()
    is_recurring: bool = False
    recurring_frequency: str | None = None

    def validate(self) -> None:
        """
        Check the rules the client enforces before anything is sent.

        Raises:
            ValidationRejected: If the draft would be rejected
        """
        if not self.amount.is_positive() or self.amount > MAX_AMOUNT:
            raise ValidationRejected(
                f"Amount must be between 0.01 and {MAX_AMOUNT}",
                {"amount": "out of range"},
            )
        if not self.category_id:
            raise ValidationRejected("Category is required", {"categoryId": "required"})
        if self.kind is TransactionKind.INCOME and not (self.source and self.source.strip()):
            raise ValidationRejected("Income source is required", {"source": "required"})

    def to_provisional(self, temp_id: str, category: CategoryRef | None = None) -> Transaction:
        """Build the optimistic row shown while the create is in flight."""
        return Transaction(
            id=temp_id,
            temp_id=temp_id,
            kind=self.kind,
            amount=self.amount,
            category_id=self.category_id,
            date=self.date,
            sync_state=SyncState.PROVISIONAL,
            description=self.description,
            payment_method=self.payment_method or default_payment_method(self.kind),
            location=self.location,
            source=self.source,
            tags=self.tags,
            is_recurring=self.is_recurring,
            recurring_frequency=self.recurring_frequency,
            category=category,
            created_at=datetime.now(),
        )


def default_payment_method(kind: TransactionKind) -> str:
    return "cash" if kind is TransactionKind.EXPENSE else "bank_transfer"


@dataclass(frozen=True)
class FeedFilters:
    """
    Active filters of a feed.

    Use ``FeedFilters.create`` to build instances from user input: it
    normalizes the search text so equivalent requests compare equal.
    """

    kind: KindFilter = KindFilter.ALL
    start_date: date | None = None
    end_date: date | None = None
    search: str | None = None
    category_id: str | None = None

    @classmethod
    def create(
        cls,
        kind: KindFilter | str = KindFilter.ALL,
        start_date: date | None = None,
        end_date: date | None = None,
        search: str | None = None,
        category_id: str | None = None,
    ) -> "FeedFilters":
        if isinstance(kind, str):
            kind = KindFilter(kind)
        normalized = search.strip().casefold() if search else None
        return cls(
            kind=kind,
            start_date=start_date,
            end_date=end_date,
            search=normalized or None,
            category_id=category_id or None,
        )

    def matches(self, transaction: Transaction) -> bool:
        """Would the server include ``transaction`` in a feed with these filters?"""
        if not self.kind.accepts(transaction.kind):
            return False
        if self.start_date and transaction.date < self.start_date:
            return False
        if self.end_date and transaction.date > self.end_date:
            return False
        if self.category_id and transaction.category_id != self.category_id:
            return False
        if self.search and self.search not in transaction.searchable_text():
            return False
        return True

    def to_params(self) -> dict[str, Any]:
        """Query parameters for the remote feed (``None`` values dropped)."""
        params: dict[str, Any] = {
            "type": self.kind.value,
            "startDate": self.start_date.isoformat() if self.start_date else None,
            "endDate": self.end_date.isoformat() if self.end_date else None,
            "search": self.search,
            "categoryId": self.category_id,
        }
        return {key: value for key, value in params.items() if value is not None}


@dataclass(frozen=True)
class Fingerprint:
    """Canonical identity of a cached feed: entity type plus filters."""

    filters: FeedFilters = field(default_factory=FeedFilters)
    entity: str = TRANSACTIONS_ENTITY

    @classmethod
    def for_filters(cls, **filters: Any) -> "Fingerprint":
        return cls(filters=FeedFilters.create(**filters))

    @property
    def key(self) -> str:
        params = self.filters.to_params()
        query = "&".join(f"{name}={params[name]}" for name in sorted(params))
        return f"{self.entity}?{query}"

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class Page:
    """
    One page of a feed.

    ``total`` is the feed-wide displayed total; it is mirrored on every page
    of a fingerprint so optimistic adjustments touch every page.
    """

    items: tuple[Transaction, ...] = ()
    next_cursor: str | None = None
    has_more: bool = False
    total: int | None = None

    def ids(self) -> set[str]:
        keys: set[str] = set()
        for item in self.items:
            keys |= item.identity_keys()
        return keys

    def index_of(self, transaction_id: str) -> int | None:
        for index, item in enumerate(self.items):
            if transaction_id in item.identity_keys():
                return index
        return None

    def with_total_delta(self, delta: int) -> "Page":
        if self.total is None:
            return self
        return replace(self, total=max(0, self.total + delta))


PageList = list[Page]


def flatten(pages: list[Page]) -> list[Transaction]:
    """All transactions of a feed in display order."""
    return [item for page in pages for item in page.items]
