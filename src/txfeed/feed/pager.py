#!/usr/bin/env python3
"""
Cursor Pager

Fetches feed pages from the remote through opaque cursors and merges them
into the cache store.

Ordering rules:
- At most one fetch per fingerprint is outstanding; concurrent callers share
  the in-flight request.
- A first-page fetch supersedes an in-flight next-page fetch. Every fetch
  records the fingerprint's generation and the pager epoch when it starts and
  is discarded on arrival if either moved on.
- A next-page fetch against a stale fingerprint raises ``StaleFingerprint``;
  the caller must start over from the first page.
"""

import asyncio
import logging
from dataclasses import dataclass, replace

from ..core.errors import StaleFingerprint
from ..core.models import Fingerprint, Page, Transaction, flatten
from .cache_store import CacheStore
from .remote import FeedPageResponse, TransactionRemote

logger = logging.getLogger(__name__)


@dataclass
class FetchState:
    """Per-fingerprint fetch bookkeeping."""

    epoch: int = 0
    in_flight: asyncio.Task | None = None
    in_flight_first: bool = False
    in_flight_generation: int = 0
    is_loading: bool = False
    error: Exception | None = None
    requests: int = 0
    discarded: int = 0

    @property
    def busy(self) -> bool:
        return self.in_flight is not None and not self.in_flight.done()


class CursorPager:
    """First-page and next-page fetching with dedup merge into the store."""

    def __init__(self, store: CacheStore, remote: TransactionRemote, page_limit: int = 30):
        """
        Initialize the pager.

        Args:
            store: Cache store the pages are merged into
            remote: Authoritative feed
            page_limit: Items requested per page
        """
        self._store = store
        self._remote = remote
        self.page_limit = page_limit
        self._states: dict[Fingerprint, FetchState] = {}

    def state(self, fingerprint: Fingerprint) -> FetchState:
        state = self._states.get(fingerprint)
        if state is None:
            state = FetchState()
            self._states[fingerprint] = state
        return state

    def is_loading(self, fingerprint: Fingerprint) -> bool:
        state = self._states.get(fingerprint)
        return state is not None and state.busy

    def is_refreshing(self, fingerprint: Fingerprint) -> bool:
        """True while a first-page fetch for the current generation is in flight."""
        state = self._states.get(fingerprint)
        return (
            state is not None
            and state.busy
            and state.in_flight_first
            and state.in_flight_generation == self._store.generation(fingerprint)
        )

    def last_error(self, fingerprint: Fingerprint) -> Exception | None:
        state = self._states.get(fingerprint)
        return state.error if state is not None else None

    def has_more(self, fingerprint: Fingerprint) -> bool:
        pages = self._store.read(fingerprint) or []
        return bool(pages) and pages[-1].has_more and pages[-1].next_cursor is not None

    async def fetch_first(self, fingerprint: Fingerprint) -> list[Page]:
        """
        Fetch page 1 and replace the feed's pages with it.

        Returns:
            The feed's pages after the merge
        """
        state = self.state(fingerprint)
        generation = self._store.generation(fingerprint)
        if state.busy and state.in_flight_first and state.in_flight_generation == generation:
            logger.debug(f"Joining in-flight first-page fetch for {fingerprint}")
            return await self._join(state.in_flight)

        if state.busy:
            logger.debug(f"First-page fetch supersedes in-flight fetch for {fingerprint}")

        state.epoch += 1
        self._store.ensure(fingerprint)
        task = self._spawn(fingerprint, state, cursor=None, generation=generation)
        return await self._join(task)

    async def fetch_next(self, fingerprint: Fingerprint) -> list[Page]:
        """
        Fetch the page after the last cached one and append it.

        Returns immediately when there is nothing more to load or when a
        fetch is already in flight (its result is shared).

        Raises:
            StaleFingerprint: If the feed was invalidated since it was loaded
        """
        if self._store.is_stale(fingerprint):
            entry = self._store.entry(fingerprint)
            raise StaleFingerprint(
                fingerprint.key,
                entry.generation if entry else 0,
                self._store.generation(fingerprint),
            )

        state = self.state(fingerprint)
        if state.busy:
            logger.debug(f"Coalescing next-page fetch for {fingerprint}")
            return await self._join(state.in_flight)

        entry = self._store.entry(fingerprint)
        if entry is None or not entry.loaded:
            return await self.fetch_first(fingerprint)

        last = entry.pages[-1] if entry.pages else None
        if last is None or not last.has_more or last.next_cursor is None:
            return list(entry.pages)

        task = self._spawn(
            fingerprint,
            state,
            cursor=last.next_cursor,
            generation=self._store.generation(fingerprint),
        )
        return await self._join(task)

    def reset(self) -> None:
        """Forget every fingerprint's fetch state (in-flight results are discarded)."""
        self._states.clear()

    async def aclose(self) -> None:
        """Cancel outstanding fetches."""
        tasks = [state.in_flight for state in self._states.values() if state.busy]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._states.clear()

    # ------------------------------------------------------------------

    def _spawn(
        self, fingerprint: Fingerprint, state: FetchState, cursor: str | None, generation: int
    ) -> asyncio.Task:
        first = cursor is None
        task = asyncio.get_running_loop().create_task(
            self._load(fingerprint, state, cursor, generation, state.epoch),
            name=f"fetch:{fingerprint.key}:{cursor or 'first'}",
        )
        task.add_done_callback(_consume_exception)
        state.in_flight = task
        state.in_flight_first = first
        state.in_flight_generation = generation
        state.is_loading = True
        return task

    async def _join(self, task: asyncio.Task) -> list[Page]:
        return await asyncio.shield(task)

    async def _load(
        self,
        fingerprint: Fingerprint,
        state: FetchState,
        cursor: str | None,
        generation: int,
        epoch: int,
    ) -> list[Page]:
        state.requests += 1
        logger.debug(f"Fetching {fingerprint} cursor={cursor or '<first>'} limit={self.page_limit}")
        try:
            response = await self._remote.fetch_page(fingerprint.filters, cursor, self.page_limit)
        except Exception as e:
            if not self._superseded(fingerprint, state, generation, epoch):
                state.error = e
            logger.warning(f"Fetch failed for {fingerprint}: {e}")
            raise
        finally:
            if state.in_flight is asyncio.current_task():
                state.in_flight = None
                state.is_loading = False

        if self._superseded(fingerprint, state, generation, epoch):
            state.discarded += 1
            logger.debug(f"Discarding superseded response for {fingerprint} (generation {generation})")
            return self._store.read(fingerprint) or []

        existing = self._store.read(fingerprint) or []
        if cursor is None:
            pages = merge_first_page(existing, response)
        else:
            pages = merge_next_page(existing, response)
        self._store.write(fingerprint, pages)
        state.error = None
        logger.debug(
            f"Merged {len(response.items)} item(s) into {fingerprint}: "
            f"{len(pages)} page(s), has_more={response.has_more}"
        )
        return pages

    def _superseded(self, fingerprint: Fingerprint, state: FetchState, generation: int, epoch: int) -> bool:
        return (
            self._states.get(fingerprint) is not state
            or state.epoch != epoch
            or self._store.generation(fingerprint) != generation
        )


def _consume_exception(task: asyncio.Task) -> None:
    # Background fetch errors are surfaced through FetchState and the callers.
    if not task.cancelled():
        task.exception()


def merge_first_page(existing: list[Page], response: FeedPageResponse) -> list[Page]:
    """
    Build the page list that replaces a feed after a first-page fetch.

    Creations still in flight stay at the head of the first page. Committed
    creations whose authoritative copy arrived are promoted: the server row
    takes the place in server order and carries the server id. Committed
    creations the response does not show yet (read lag) stay at the head too.
    """
    rows = flatten(existing)
    awaiting = {row.server_id: row for row in rows if row.awaiting_swap}
    returned = {incoming.id for incoming in response.items}
    retained = [
        row for row in rows
        if row.is_provisional or (row.awaiting_swap and row.server_id not in returned)
    ]

    items: list[Transaction] = list(retained)
    seen: set[str] = set()
    for row in retained:
        seen |= row.identity_keys()

    for incoming in response.items:
        if incoming.id in seen:
            continue
        local = awaiting.get(incoming.id)
        row = local.promote(incoming) if local is not None else incoming
        items.append(row)
        seen |= row.identity_keys()

    total = response.total + len(retained) if response.total is not None else None
    return [
        Page(
            items=tuple(items),
            next_cursor=response.next_cursor,
            has_more=response.has_more,
            total=total,
        )
    ]


def merge_next_page(existing: list[Page], response: FeedPageResponse) -> list[Page]:
    """
    Append a fetched page, dropping items already present anywhere in the feed.

    An incoming item that is the authoritative copy of a committed creation
    replaces that row where it stands instead of being appended.
    """
    pages = list(existing)
    seen: set[str] = set()
    awaiting: dict[str, tuple[int, int]] = {}
    for page_index, page in enumerate(pages):
        for item_index, item in enumerate(page.items):
            seen |= item.identity_keys()
            if item.awaiting_swap:
                awaiting[item.server_id] = (page_index, item_index)

    appended: list[Transaction] = []
    for incoming in response.items:
        position = awaiting.pop(incoming.id, None)
        if position is not None:
            page_index, item_index = position
            page = pages[page_index]
            items = list(page.items)
            items[item_index] = items[item_index].promote(incoming)
            pages[page_index] = replace(page, items=tuple(items))
            continue
        if incoming.identity_keys() & seen:
            logger.debug(f"Dropping duplicate {incoming.id} from next page")
            continue
        appended.append(incoming)
        seen |= incoming.identity_keys()

    total = response.total
    if total is not None:
        pending = sum(
            1 for page in pages for item in page.items if item.is_provisional or item.awaiting_swap
        )
        total += pending
        pages = [replace(page, total=total) for page in pages]
    elif pages:
        total = pages[-1].total

    pages.append(
        Page(
            items=tuple(appended),
            next_cursor=response.next_cursor,
            has_more=response.has_more,
            total=total,
        )
    )
    return pages
