#!/usr/bin/env python3
"""
Scheduled Tasks

Single-shot delayed actions with an explicit cancellation token, so re-arming
and shutdown are first-class operations instead of forgotten closures.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum

logger = logging.getLogger(__name__)


class CancellationToken:
    """Flag shared between a scheduled task and whoever may cancel it."""

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        for callback in self._callbacks:
            callback()
        self._callbacks.clear()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)


class TaskState(Enum):
    """Lifecycle of a scheduled task."""

    CREATED = "created"
    WAITING = "waiting"
    FIRING = "firing"
    FIRED = "fired"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ScheduledTask:
    """
    Run ``action`` once after ``delay`` seconds unless cancelled first.

    Cancelling while waiting stops the timer. Cancelling while the action runs
    only sets the token; the action checks it at its own suspension points.
    """

    def __init__(
        self,
        name: str,
        delay: float,
        action: Callable[[CancellationToken], Awaitable[None]],
    ):
        self.name = name
        self.delay = delay
        self.token = CancellationToken()
        self.state = TaskState.CREATED
        self._action = action
        self._task: asyncio.Task | None = None
        self.token.on_cancel(self._on_cancel)

    def start(self) -> "ScheduledTask":
        """Arm the timer on the running event loop."""
        if self.state is TaskState.CANCELLED:
            return self
        if self.state is not TaskState.CREATED:
            raise RuntimeError(f"Scheduled task {self.name} already started")
        self.state = TaskState.WAITING
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"scheduled:{self.name}")
        return self

    def cancel(self) -> bool:
        """
        Cancel the task.

        Returns:
            True if the action will not run (it had not started yet)
        """
        not_started = self.state in (TaskState.CREATED, TaskState.WAITING)
        self.token.cancel()
        return not_started

    @property
    def pending(self) -> bool:
        return self.state in (TaskState.CREATED, TaskState.WAITING)

    @property
    def fired(self) -> bool:
        return self.state is TaskState.FIRED

    @property
    def cancelled(self) -> bool:
        return self.state is TaskState.CANCELLED

    @property
    def done(self) -> bool:
        return self.state in (TaskState.FIRED, TaskState.CANCELLED, TaskState.FAILED)

    async def wait(self) -> None:
        """Wait until the task has fired, failed or been cancelled."""
        if self._task is not None:
            await asyncio.wait({self._task})

    def _on_cancel(self) -> None:
        if self.state is TaskState.WAITING and self._task is not None:
            self.state = TaskState.CANCELLED
            self._task.cancel()
        elif self.state is TaskState.CREATED:
            self.state = TaskState.CANCELLED

    async def _run(self) -> None:
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.state = TaskState.CANCELLED
            return
        if self.token.cancelled:
            self.state = TaskState.CANCELLED
            return

        self.state = TaskState.FIRING
        try:
            await self._action(self.token)
        except asyncio.CancelledError:
            self.state = TaskState.CANCELLED
            raise
        except Exception:
            self.state = TaskState.FAILED
            logger.exception(f"Scheduled task {self.name} failed")
            return
        self.state = TaskState.FIRED
