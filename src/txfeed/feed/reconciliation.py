#!/usr/bin/env python3
"""
Reconciliation Scheduler

After a mutation commits, the backend may not show it to reads immediately
(asynchronous indexing). Each affected feed therefore gets a single-shot
timer; when it fires the feed is invalidated and, if on screen, refetched so
provisional rows are replaced by their authoritative copies.
"""

import logging
from collections.abc import Awaitable, Callable

from ..core.models import Fingerprint
from .cache_store import CacheStore
from .scheduling import CancellationToken, ScheduledTask

logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    """One coalescing settle-window timer per fingerprint."""

    def __init__(
        self,
        store: CacheStore,
        refetch: Callable[[Fingerprint], Awaitable[object]],
        is_visible: Callable[[Fingerprint], bool],
        settle_window: float = 1.5,
    ):
        """
        Initialize the scheduler.

        Args:
            store: Store whose generation counters are bumped on firing
            refetch: First-page fetch for a fingerprint
            is_visible: Whether the rendering layer currently shows a fingerprint
            settle_window: Seconds between the last commit and the refetch
        """
        self._store = store
        self._refetch = refetch
        self._is_visible = is_visible
        self.settle_window = settle_window
        self._timers: dict[Fingerprint, ScheduledTask] = {}
        self._started: list[ScheduledTask] = []
        self.fired_count = 0

    def arm(self, fingerprint: Fingerprint) -> ScheduledTask:
        """
        Start (or restart) the settle-window timer of a feed.

        A commit within the window of an earlier one replaces its timer, so
        the refetch happens once, one window after the last commit.
        """
        existing = self._timers.get(fingerprint)
        if existing is not None and existing.pending:
            existing.cancel()
            logger.debug(f"Re-armed reconciliation for {fingerprint}")

        task = ScheduledTask(
            name=f"reconcile:{fingerprint.key}",
            delay=self.settle_window,
            action=lambda token: self._fire(fingerprint, token),
        )
        self._timers[fingerprint] = task
        self._started = [started for started in self._started if not started.done]
        self._started.append(task)
        return task.start()

    def arm_all(self, fingerprints: list[Fingerprint]) -> None:
        for fingerprint in fingerprints:
            self.arm(fingerprint)

    def cancel(self, fingerprint: Fingerprint) -> bool:
        task = self._timers.pop(fingerprint, None)
        return task.cancel() if task is not None else False

    def is_armed(self, fingerprint: Fingerprint) -> bool:
        task = self._timers.get(fingerprint)
        return task is not None and task.pending

    def armed(self) -> list[Fingerprint]:
        return [fp for fp, task in self._timers.items() if task.pending]

    def shutdown(self) -> None:
        """Cancel every timer (logout / engine close)."""
        for task in self._timers.values():
            task.cancel()
        if self._timers:
            logger.debug(f"Cancelled {len(self._timers)} reconciliation timer(s)")
        self._timers.clear()

    async def drain(self) -> None:
        """Wait until every timer armed so far has fired (including its refetch) or been cancelled."""
        while True:
            outstanding = [task for task in self._started if not task.done]
            if not outstanding:
                return
            for task in outstanding:
                await task.wait()

    async def _fire(self, fingerprint: Fingerprint, token: CancellationToken) -> None:
        if self._timers.get(fingerprint) is not None and self._timers[fingerprint].token is token:
            del self._timers[fingerprint]

        self.fired_count += 1
        self._store.bump_generation(fingerprint)
        if not self._is_visible(fingerprint):
            logger.debug(f"Reconciliation marked {fingerprint} stale (not visible)")
            return

        logger.debug(f"Reconciling {fingerprint}")
        await self._refetch(fingerprint)
