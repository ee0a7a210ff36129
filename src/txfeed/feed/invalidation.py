#!/usr/bin/env python3
"""
Invalidation Bus

Process-wide signal for events that make every cached feed suspect: the
network coming back after being offline, and the session being cleared.
"""

import logging
from collections import deque
from collections.abc import Callable
from enum import Enum

logger = logging.getLogger(__name__)


class InvalidationReason(Enum):
    """Why every feed is being invalidated."""

    NETWORK_RESTORED = "network-restored"
    SESSION_CLEARED = "session-cleared"


InvalidationHandler = Callable[[InvalidationReason], None]


class InvalidationBus:
    """
    Synchronous fan-out of invalidation events to subscribed engines.

    Handlers run in subscription order; one failing handler does not stop
    the others.
    """

    def __init__(self, online: bool = True, history_size: int = 50):
        self._handlers: list[InvalidationHandler] = []
        self._online = online
        self.emitted: deque[InvalidationReason] = deque(maxlen=history_size)

    @property
    def online(self) -> bool:
        return self._online

    def subscribe(self, handler: InvalidationHandler) -> Callable[[], None]:
        """
        Register a handler.

        Returns:
            Function that unsubscribes the handler
        """
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def emit(self, reason: InvalidationReason) -> None:
        logger.info(f"Invalidation: {reason.value} ({len(self._handlers)} subscriber(s))")
        self.emitted.append(reason)
        for handler in list(self._handlers):
            try:
                handler(reason)
            except Exception:
                logger.exception(f"Invalidation handler failed for {reason.value}")

    def set_online(self, online: bool) -> bool:
        """
        Record a connectivity change.

        Returns:
            True if this was an offline -> online transition (and was emitted)
        """
        restored = online and not self._online
        self._online = online
        if restored:
            self.emit(InvalidationReason.NETWORK_RESTORED)
        elif not online:
            logger.info("Network offline")
        return restored

    def network_restored(self) -> None:
        self._online = True
        self.emit(InvalidationReason.NETWORK_RESTORED)

    def session_cleared(self) -> None:
        self.emit(InvalidationReason.SESSION_CLEARED)


# Global bus instance
_bus: InvalidationBus | None = None


def get_invalidation_bus() -> InvalidationBus:
    """Get the process-wide invalidation bus."""
    global _bus
    if _bus is None:
        _bus = InvalidationBus()
    return _bus


def reset_invalidation_bus() -> InvalidationBus:
    """Replace the process-wide bus with a fresh one (useful for testing)."""
    global _bus
    _bus = None
    return get_invalidation_bus()
