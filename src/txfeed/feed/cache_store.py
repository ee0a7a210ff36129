#!/usr/bin/env python3
"""
Cache Store - In-memory table of feed pages keyed by fingerprint.

Every operation is synchronous and runs to completion before control returns
to the event loop, so readers never observe a partially applied patch. Pages
and transactions are immutable; snapshots are therefore plain references.
"""

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from ..core.models import Fingerprint, Page, Transaction

logger = logging.getLogger(__name__)

PagesTransform = Callable[[list[Page]], list[Page]]
FingerprintPredicate = Callable[[Fingerprint], bool]
ChangeListener = Callable[[Fingerprint], None]


@dataclass
class CacheEntry:
    """Cached state of one feed."""

    fingerprint: Fingerprint
    pages: list[Page] = field(default_factory=list)
    generation: int = 0  # Generation the pages were loaded under
    loads: int = 0  # Number of authoritative writes
    updated_at: float | None = None  # Clock time of the last authoritative write

    @property
    def loaded(self) -> bool:
        return self.updated_at is not None


@dataclass(frozen=True)
class CacheSnapshot:
    """
    Pages of a set of fingerprints captured at one instant.

    ``versions`` records (generation, loads) per fingerprint so a restore can
    tell whether the feed was refetched after the capture.
    """

    pages: dict[Fingerprint, tuple[Page, ...]]
    versions: dict[Fingerprint, tuple[int, int]]

    @property
    def fingerprints(self) -> list[Fingerprint]:
        return list(self.pages)

    def is_empty(self) -> bool:
        return not self.pages


class CacheStore:
    """
    Keyed table mapping a fingerprint to an ordered list of pages.

    Also holds the per-fingerprint generation counters (invalidation
    triggers) and the detail-view cache. Generations survive ``clear()`` so a
    response started before a logout can never be applied after it.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        """
        Initialize an empty store.

        Args:
            clock: Monotonic time source used for entry ages
        """
        self._clock = clock
        self._entries: dict[Fingerprint, CacheEntry] = {}
        self._generations: dict[Fingerprint, int] = {}
        self._details: dict[str, Transaction] = {}
        self._listeners: list[ChangeListener] = []

    # ------------------------------------------------------------------
    # Point reads and writes
    # ------------------------------------------------------------------

    def read(self, fingerprint: Fingerprint) -> list[Page] | None:
        """
        Get the cached pages of a feed.

        Returns:
            Copy of the page list, or None if the fingerprint is unknown
        """
        entry = self._entries.get(fingerprint)
        if entry is None:
            return None
        return list(entry.pages)

    def entry(self, fingerprint: Fingerprint) -> CacheEntry | None:
        return self._entries.get(fingerprint)

    def ensure(self, fingerprint: Fingerprint) -> CacheEntry:
        """Register a fingerprint with no pages if it is not cached yet."""
        entry = self._entries.get(fingerprint)
        if entry is None:
            entry = CacheEntry(fingerprint=fingerprint, generation=self.generation(fingerprint))
            self._entries[fingerprint] = entry
            logger.debug(f"Registered feed {fingerprint}")
        return entry

    def write(self, fingerprint: Fingerprint, pages: Iterable[Page]) -> None:
        """
        Store authoritative pages for a feed.

        The entry becomes fresh: its generation is set to the current one.
        """
        entry = self.ensure(fingerprint)
        entry.pages = list(pages)
        entry.generation = self.generation(fingerprint)
        entry.loads += 1
        entry.updated_at = self._clock()
        self._notify([fingerprint])

    def fingerprints(self) -> list[Fingerprint]:
        return list(self._entries)

    def find(self, transaction_id: str) -> list[Fingerprint]:
        """Fingerprints whose pages contain a row known under ``transaction_id``."""
        return [
            fingerprint
            for fingerprint, entry in self._entries.items()
            if any(page.index_of(transaction_id) is not None for page in entry.pages)
        ]

    def locate(self, transaction_id: str) -> Transaction | None:
        """First cached row known under ``transaction_id``, in any feed."""
        for entry in self._entries.values():
            for page in entry.pages:
                index = page.index_of(transaction_id)
                if index is not None:
                    return page.items[index]
        return None

    # ------------------------------------------------------------------
    # Wildcard patches and snapshots
    # ------------------------------------------------------------------

    def patch_all(self, predicate: FingerprintPredicate, transform: PagesTransform) -> list[Fingerprint]:
        """
        Apply ``transform`` to the pages of every feed matching ``predicate``.

        All transforms are computed before any result is stored, so an
        exception in one leaves every feed untouched.

        Returns:
            Fingerprints whose pages changed
        """
        staged: dict[Fingerprint, list[Page]] = {}
        for fingerprint, entry in self._entries.items():
            if not predicate(fingerprint):
                continue
            new_pages = transform(list(entry.pages))
            if new_pages != entry.pages:
                staged[fingerprint] = list(new_pages)

        for fingerprint, new_pages in staged.items():
            self._entries[fingerprint].pages = new_pages

        if staged:
            logger.debug(f"Patched {len(staged)} feed(s): {', '.join(str(fp) for fp in staged)}")
            self._notify(list(staged))
        return list(staged)

    def snapshot(self, fingerprints: Iterable[Fingerprint]) -> CacheSnapshot:
        """Capture the pages of the given feeds."""
        pages: dict[Fingerprint, tuple[Page, ...]] = {}
        versions: dict[Fingerprint, tuple[int, int]] = {}
        for fingerprint in fingerprints:
            entry = self._entries.get(fingerprint)
            if entry is None:
                continue
            pages[fingerprint] = tuple(entry.pages)
            versions[fingerprint] = (self.generation(fingerprint), entry.loads)
        return CacheSnapshot(pages=pages, versions=versions)

    def restore(self, snapshot: CacheSnapshot) -> list[Fingerprint]:
        """
        Put captured pages back verbatim, in one step.

        Feeds that were refetched or invalidated since the capture are not
        overwritten (their pages are newer than the snapshot).

        Returns:
            Fingerprints that still exist but could not be restored verbatim
        """
        restored: list[Fingerprint] = []
        skipped: list[Fingerprint] = []
        for fingerprint, pages in snapshot.pages.items():
            entry = self._entries.get(fingerprint)
            if entry is None:
                continue
            if snapshot.versions[fingerprint] != (self.generation(fingerprint), entry.loads):
                skipped.append(fingerprint)
                continue
            entry.pages = list(pages)
            restored.append(fingerprint)

        if restored:
            self._notify(restored)
        return skipped

    # ------------------------------------------------------------------
    # Invalidation triggers
    # ------------------------------------------------------------------

    def generation(self, fingerprint: Fingerprint) -> int:
        return self._generations.get(fingerprint, 0)

    def bump_generation(self, fingerprint: Fingerprint) -> int:
        """Mark a feed's cached pages stale."""
        generation = self.generation(fingerprint) + 1
        self._generations[fingerprint] = generation
        logger.debug(f"Generation of {fingerprint} advanced to {generation}")
        return generation

    def bump_all(self) -> list[Fingerprint]:
        """Mark every known feed stale."""
        fingerprints = list(set(self._entries) | set(self._generations))
        for fingerprint in fingerprints:
            self.bump_generation(fingerprint)
        return fingerprints

    def is_stale(self, fingerprint: Fingerprint) -> bool:
        entry = self._entries.get(fingerprint)
        if entry is None:
            return False
        return entry.generation < self.generation(fingerprint)

    def is_expired(self, fingerprint: Fingerprint, max_age_seconds: float) -> bool:
        """True when the feed was never loaded or was loaded too long ago."""
        entry = self._entries.get(fingerprint)
        if entry is None or entry.updated_at is None:
            return True
        return self._clock() - entry.updated_at >= max_age_seconds

    # ------------------------------------------------------------------
    # Detail-view cache
    # ------------------------------------------------------------------

    def read_detail(self, transaction_id: str) -> Transaction | None:
        return self._details.get(transaction_id)

    def write_detail(self, transaction: Transaction) -> None:
        for key in transaction.identity_keys():
            self._details[key] = transaction

    def invalidate_detail(self, transaction_id: str) -> None:
        cached = self._details.pop(transaction_id, None)
        if cached is not None:
            for key in cached.identity_keys():
                self._details.pop(key, None)

    # ------------------------------------------------------------------
    # Lifecycle and listeners
    # ------------------------------------------------------------------

    def clear(self) -> None:
        """Drop every cached feed and detail (generations are kept)."""
        fingerprints = list(self._entries)
        self._entries.clear()
        self._details.clear()
        logger.info(f"Cache cleared ({len(fingerprints)} feed(s) dropped)")
        self._notify(fingerprints)

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """
        Register a callback invoked with each changed fingerprint.

        Returns:
            Function that unregisters the listener
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, fingerprints: list[Fingerprint]) -> None:
        for fingerprint in fingerprints:
            for listener in list(self._listeners):
                try:
                    listener(fingerprint)
                except Exception:
                    logger.exception(f"Cache listener failed for {fingerprint}")
