#!/usr/bin/env python3
"""
Transaction Feed Engine

Facade the rendering layer talks to. Wires one cache store, pager, mutation
coordinator and reconciliation scheduler together and subscribes them to an
invalidation bus.

Must be used from a running asyncio event loop: ``observe`` and ``submit``
are synchronous but may start background tasks.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from ..core.config import FeedConfig
from ..core.errors import FeedError, StaleFingerprint
from ..core.models import CategoryRef, Fingerprint, Page, Transaction, TransactionDraft, flatten
from .cache_store import CacheStore, ChangeListener
from .invalidation import InvalidationBus, InvalidationReason, get_invalidation_bus
from .mutations import (
    CreateMutation,
    DeleteMutation,
    Mutation,
    MutationCoordinator,
    MutationHandle,
    MutationOutcome,
    UpdateMutation,
)
from .pager import CursorPager
from .reconciliation import ReconciliationScheduler
from .remote import TransactionRemote

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeedSnapshot:
    """What the rendering layer needs to draw one feed."""

    fingerprint: Fingerprint
    pages: tuple[Page, ...]
    is_loading: bool
    error: Exception | None
    has_more: bool
    is_stale: bool
    generation: int

    @property
    def items(self) -> list[Transaction]:
        return flatten(list(self.pages))

    @property
    def total(self) -> int | None:
        return self.pages[0].total if self.pages else None


class TransactionFeed:
    """
    Optimistic, cursor-paginated transaction feed.

    Example:
        feed = TransactionFeed(remote)
        expenses = Fingerprint.for_filters(kind="expense")
        snapshot = feed.observe(expenses)       # starts the first-page fetch
        handle = feed.submit(CreateMutation(draft))  # row visible immediately
        outcome = await handle
    """

    def __init__(
        self,
        remote: TransactionRemote,
        config: FeedConfig | None = None,
        store: CacheStore | None = None,
        bus: InvalidationBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the engine.

        Args:
            remote: Authoritative feed and write endpoint
            config: Feed tuning (page size, settle window, stale time)
            store: Cache store to use (a fresh one by default)
            bus: Invalidation bus to subscribe to (process-wide one by default)
            clock: Monotonic time source for entry ages
        """
        self.config = config or FeedConfig()
        self.remote = remote
        self.store = store or CacheStore(clock=clock)
        self.pager = CursorPager(self.store, remote, page_limit=self.config.page_limit)
        self.scheduler = ReconciliationScheduler(
            self.store,
            refetch=self._refetch_quietly,
            is_visible=self.is_visible,
            settle_window=self.config.settle_window_seconds,
        )
        self._categories: dict[str, CategoryRef] = {}
        self.coordinator = MutationCoordinator(
            self.store,
            remote,
            reconcile=self.scheduler.arm_all,
            category_lookup=self._categories.get,
            history_size=self.config.mutation_history,
        )

        self._visible: set[Fingerprint] = set()
        self._background: set[asyncio.Task] = set()
        self.bus = bus or get_invalidation_bus()
        self._unsubscribe = self.bus.subscribe(self._on_invalidation)

    # ------------------------------------------------------------------
    # Rendering-layer interface
    # ------------------------------------------------------------------

    def observe(self, fingerprint: Fingerprint) -> FeedSnapshot:
        """
        Current state of a feed; marks it visible.

        Starts a background first-page fetch when the feed was never loaded,
        was invalidated, or is older than the configured stale time.
        """
        self._visible.add(fingerprint)
        if self.store.entry(fingerprint) is None:
            self.store.ensure(fingerprint)
            self.coordinator.seed(fingerprint)

        needs_fetch = (
            self.store.is_stale(fingerprint)
            or self.store.is_expired(fingerprint, self.config.stale_time_seconds)
        )
        if needs_fetch and not self.pager.is_refreshing(fingerprint):
            self._spawn_refetch(fingerprint)

        return self.snapshot(fingerprint)

    def snapshot(self, fingerprint: Fingerprint) -> FeedSnapshot:
        """State of a feed without side effects."""
        entry = self.store.entry(fingerprint)
        return FeedSnapshot(
            fingerprint=fingerprint,
            pages=tuple(entry.pages) if entry else (),
            is_loading=self.pager.is_loading(fingerprint),
            error=self.pager.last_error(fingerprint),
            has_more=self.pager.has_more(fingerprint),
            is_stale=self.store.is_stale(fingerprint),
            generation=self.store.generation(fingerprint),
        )

    def release(self, fingerprint: Fingerprint) -> None:
        """The rendering layer no longer shows this feed."""
        self._visible.discard(fingerprint)

    def is_visible(self, fingerprint: Fingerprint) -> bool:
        return fingerprint in self._visible

    async def load_more(self, fingerprint: Fingerprint) -> list[Page]:
        """Load the next page (scroll), starting over if the feed went stale."""
        try:
            return await self.pager.fetch_next(fingerprint)
        except StaleFingerprint as e:
            logger.debug(f"{e}; restarting from the first page")
            return await self.pager.fetch_first(fingerprint)

    async def refresh(self, fingerprint: Fingerprint) -> list[Page]:
        """Refetch a feed from its first page (pull to refresh)."""
        return await self.pager.fetch_first(fingerprint)

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Be told which feed changed after every store update."""
        return self.store.add_listener(listener)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def submit(self, mutation: Mutation) -> MutationHandle:
        """Start a mutation; the optimistic patch is applied before this returns."""
        return self.coordinator.submit(mutation)

    async def mutate(self, mutation: Mutation) -> MutationOutcome:
        """Run a mutation to completion."""
        return await self.coordinator.execute(mutation)

    async def create(self, draft: TransactionDraft) -> MutationOutcome:
        return await self.mutate(CreateMutation(draft))

    async def update(self, transaction_id: str, changes: Mapping[str, Any]) -> MutationOutcome:
        return await self.mutate(UpdateMutation(transaction_id, changes))

    async def delete(self, transaction_id: str) -> MutationOutcome:
        return await self.mutate(DeleteMutation(transaction_id))

    # ------------------------------------------------------------------
    # Detail view and categories
    # ------------------------------------------------------------------

    async def detail(self, transaction_id: str) -> Transaction | None:
        """
        Single transaction for a detail screen (read-through cache).

        A provisional row that the server does not know yet is served from
        the feed cache.
        """
        cached = self.store.read_detail(transaction_id)
        if cached is not None:
            return cached

        server_id = self.coordinator.server_id_for(transaction_id)
        if server_id is None:
            return self.store.locate(transaction_id)

        transaction = await self.remote.get(server_id)
        if transaction is not None:
            self.store.write_detail(transaction)
        return transaction

    def register_categories(self, categories: Iterable[CategoryRef]) -> None:
        """Categories used to decorate optimistic rows."""
        for category in categories:
            self._categories[category.id] = category

    # ------------------------------------------------------------------
    # Invalidation triggers
    # ------------------------------------------------------------------

    def on_network_restored(self) -> None:
        self.bus.network_restored()

    def on_session_cleared(self) -> None:
        self.bus.session_cleared()

    def _on_invalidation(self, reason: InvalidationReason) -> None:
        if reason is InvalidationReason.SESSION_CLEARED:
            self.scheduler.shutdown()
            self.store.bump_all()
            self.store.clear()
            self.pager.reset()
            self.coordinator.reset()
        else:
            self.store.bump_all()

        for fingerprint in sorted(self._visible, key=lambda fp: fp.key):
            self.store.ensure(fingerprint)
            self._spawn_refetch(fingerprint)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        """Stop timers and background fetches; wait for mutations to settle."""
        self._unsubscribe()
        await self.coordinator.aclose()
        self.scheduler.shutdown()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.pager.aclose()

    async def __aenter__(self) -> "TransactionFeed":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def wait_idle(self) -> None:
        """Wait for background fetches started so far to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def settle(self) -> None:
        """Wait for mutations, reconciliation timers and background fetches to finish."""
        await self.coordinator.aclose()
        await self.scheduler.drain()
        await self.wait_idle()

    def _spawn_refetch(self, fingerprint: Fingerprint) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop; {fingerprint} will be fetched on next observe")
            return
        task = loop.create_task(self._refetch_quietly(fingerprint), name=f"refetch:{fingerprint.key}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refetch_quietly(self, fingerprint: Fingerprint) -> None:
        try:
            await self.pager.fetch_first(fingerprint)
        except FeedError as e:
            logger.warning(f"Background refetch of {fingerprint} failed: {e}")
        except Exception:
            logger.exception(f"Background refetch of {fingerprint} failed")
