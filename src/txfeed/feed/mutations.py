#!/usr/bin/env python3
"""
Mutation Coordinator

Executes create/update/delete against the remote while keeping every cached
feed consistent:

- create and delete are optimistic: the cache is patched synchronously when
  the mutation is submitted, before the remote call is issued;
- a failed mutation restores the pages captured just before its patch;
- mutations on one entity run strictly one after another (FIFO), a later one
  is only applied once its predecessor has settled.
"""

import asyncio
import itertools
import logging
import time
from collections import deque
from collections.abc import Callable, Generator, Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, assert_never

from ..core.errors import TransportFailure, UnknownTransaction
from ..core.models import CategoryRef, Fingerprint, Page, Transaction, TransactionDraft
from .cache_store import CacheSnapshot, CacheStore
from .remote import TransactionRemote

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "temp"


class MutationKind(Enum):
    """Kinds of feed mutation."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class MutationStatus(Enum):
    """Lifecycle of a pending mutation."""

    QUEUED = "queued"  # waiting for an earlier mutation on the same entity
    IN_FLIGHT = "in-flight"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled-back"
    SKIPPED = "skipped"  # nothing to do (e.g. delete of a create that never landed)

    @property
    def terminal(self) -> bool:
        return self in (MutationStatus.COMMITTED, MutationStatus.ROLLED_BACK, MutationStatus.SKIPPED)


@dataclass(frozen=True)
class CreateMutation:
    draft: TransactionDraft
    kind = MutationKind.CREATE


@dataclass(frozen=True)
class UpdateMutation:
    target_id: str
    changes: Mapping[str, Any]
    kind = MutationKind.UPDATE


@dataclass(frozen=True)
class DeleteMutation:
    target_id: str
    kind = MutationKind.DELETE


Mutation = CreateMutation | UpdateMutation | DeleteMutation


@dataclass
class PendingMutation:
    """Bookkeeping record of one submitted mutation."""

    id: int
    kind: MutationKind
    target_id: str
    entity_key: str
    session: int = 0
    status: MutationStatus = MutationStatus.QUEUED
    snapshot: CacheSnapshot | None = None
    server_id: str | None = None
    provisional: Transaction | None = None
    error: BaseException | None = None
    submitted_at: datetime = field(default_factory=datetime.now)
    settled_at: datetime | None = None

    @property
    def affected(self) -> list[Fingerprint]:
        return self.snapshot.fingerprints if self.snapshot else []


@dataclass(frozen=True)
class MutationOutcome:
    """Result of a settled mutation."""

    status: MutationStatus
    target_id: str
    transaction: Transaction | None
    mutation: PendingMutation

    @property
    def ok(self) -> bool:
        return self.status in (MutationStatus.COMMITTED, MutationStatus.SKIPPED)


class MutationHandle:
    """
    Returned synchronously by ``submit``; await it for the outcome.

    The optimistic patch (if any) is already in the cache when the handle is
    returned, and ``target_id`` already carries the temporary id of a create.
    Awaiting re-raises the error of a rolled-back mutation.
    """

    def __init__(self, pending: PendingMutation, task: "asyncio.Task[MutationOutcome]"):
        self.pending = pending
        self.task = task

    @property
    def target_id(self) -> str:
        return self.pending.target_id

    @property
    def status(self) -> MutationStatus:
        return self.pending.status

    def __await__(self) -> Generator[Any, None, MutationOutcome]:
        return asyncio.shield(self.task).__await__()


class MutationCoordinator:
    """Optimistic mutation execution with snapshot rollback."""

    def __init__(
        self,
        store: CacheStore,
        remote: TransactionRemote,
        reconcile: Callable[[list[Fingerprint]], None] | None = None,
        category_lookup: Callable[[str], CategoryRef | None] | None = None,
        history_size: int = 100,
    ):
        """
        Initialize the coordinator.

        Args:
            store: Cache store holding the feeds to patch
            remote: Authoritative write endpoint
            reconcile: Called with the feeds that need an authoritative refetch
                after a mutation settles
            category_lookup: Resolves a category id for display on optimistic rows
            history_size: Number of settled mutations kept in ``history``
        """
        self._store = store
        self._remote = remote
        self._reconcile = reconcile or (lambda fingerprints: None)
        self._category_lookup = category_lookup or (lambda category_id: None)

        self._session_stamp = int(time.time() * 1000)
        self._temp_counter = itertools.count(1)
        self._mutation_ids = itertools.count(1)

        self._issued: set[str] = set()  # temporary ids created here
        self._server_ids: dict[str, str] = {}  # temp id -> authoritative id
        self._aliases: dict[str, str] = {}  # authoritative id -> temp id
        self._session = 0  # advanced whenever the session is cleared

        self._tails: dict[str, asyncio.Task] = {}
        self._active: dict[str, PendingMutation] = {}
        self.history: deque[PendingMutation] = deque(maxlen=history_size)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, mutation: Mutation) -> MutationHandle:
        """
        Start a mutation.

        Runs synchronously up to the remote call: validates, queues behind any
        unsettled mutation of the same entity, and otherwise applies the
        optimistic patch right away.

        Raises:
            ValidationRejected: If a create draft fails local validation
        """
        if isinstance(mutation, CreateMutation):
            mutation.draft.validate()
            target_id = self._new_temp_id()
        elif isinstance(mutation, UpdateMutation):
            target_id = mutation.target_id
        elif isinstance(mutation, DeleteMutation):
            target_id = mutation.target_id
        else:
            assert_never(mutation)

        entity_key = self.entity_key(target_id)
        pending = PendingMutation(
            id=next(self._mutation_ids),
            kind=mutation.kind,
            target_id=target_id,
            entity_key=entity_key,
            session=self._session,
        )

        predecessor = self._tails.get(entity_key)
        if predecessor is not None and predecessor.done():
            predecessor = None

        if predecessor is None:
            self._begin(pending, mutation)
        else:
            logger.debug(f"Mutation #{pending.id} ({pending.kind.value} {target_id}) queued")

        task = asyncio.get_running_loop().create_task(
            self._run(pending, mutation, predecessor),
            name=f"mutation:{pending.id}:{pending.kind.value}",
        )
        self._tails[entity_key] = task
        task.add_done_callback(lambda done: self._on_task_done(entity_key, done))
        return MutationHandle(pending, task)

    async def execute(self, mutation: Mutation) -> MutationOutcome:
        """Submit a mutation and wait for it to settle."""
        return await self.submit(mutation)

    def entity_key(self, transaction_id: str) -> str:
        """Key under which mutations of one entity are serialized."""
        return self._aliases.get(transaction_id, transaction_id)

    def active(self, transaction_id: str) -> PendingMutation | None:
        """The in-flight mutation of an entity, if any."""
        return self._active.get(self.entity_key(transaction_id))

    def is_temporary(self, transaction_id: str) -> bool:
        return transaction_id in self._issued

    def server_id_for(self, transaction_id: str) -> str | None:
        """
        Authoritative id for a (possibly temporary) id.

        Returns None for a temporary id whose create has not committed.
        """
        if transaction_id in self._issued:
            return self._server_ids.get(transaction_id)
        return transaction_id

    def seed(self, fingerprint: Fingerprint) -> int:
        """
        Splice creations still in flight into a newly registered feed.

        Returns:
            Number of provisional rows added
        """
        rows = [
            pending.provisional
            for pending in self._active.values()
            if pending.kind is MutationKind.CREATE
            and self._in_session(pending)
            and pending.provisional is not None
            and fingerprint.filters.matches(pending.provisional)
        ]
        for row in rows:
            self._store.patch_all(lambda fp: fp == fingerprint, lambda pages, row=row: splice_head(pages, row))
        return len(rows)

    def reset(self) -> None:
        """
        Forget id aliases and history (session cleared).

        Mutations still running settle without touching the cache again.
        """
        self._session += 1
        self._server_ids.clear()
        self._aliases.clear()
        self._active.clear()
        self.history.clear()

    async def aclose(self) -> None:
        """Wait for submitted mutations to settle."""
        tasks = [task for task in self._tails.values() if not task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _in_session(self, pending: PendingMutation) -> bool:
        return pending.session == self._session

    def _new_temp_id(self) -> str:
        temp_id = f"{TEMP_ID_PREFIX}-{self._session_stamp}-{next(self._temp_counter)}"
        self._issued.add(temp_id)
        return temp_id

    async def _run(
        self,
        pending: PendingMutation,
        mutation: Mutation,
        predecessor: asyncio.Task | None,
    ) -> MutationOutcome:
        if predecessor is not None:
            await asyncio.wait({predecessor})
            if not self._in_session(pending):
                logger.info(f"Mutation #{pending.id}: dropped, session was cleared while it was queued")
                return self._settle(pending, None, MutationStatus.SKIPPED)
            self._begin(pending, mutation)

        if pending.status is MutationStatus.SKIPPED:
            return self._settle(pending, None)

        try:
            result = await self._invoke(pending, mutation)
        except (Exception, asyncio.CancelledError) as e:
            self._rollback(pending, e)
            raise

        return self._commit(pending, result)

    def _begin(self, pending: PendingMutation, mutation: Mutation) -> None:
        """Apply the optimistic patch (synchronously, one store operation)."""
        if isinstance(mutation, CreateMutation):
            self._begin_create(pending, mutation.draft)
        elif isinstance(mutation, DeleteMutation):
            self._begin_delete(pending)
        elif isinstance(mutation, UpdateMutation):
            pending.server_id = self.server_id_for(pending.target_id)
            pending.status = MutationStatus.IN_FLIGHT
        else:
            assert_never(mutation)

        if pending.status is MutationStatus.IN_FLIGHT:
            self._active[pending.entity_key] = pending

    def _begin_create(self, pending: PendingMutation, draft: TransactionDraft) -> None:
        row = draft.to_provisional(pending.target_id, self._category_lookup(draft.category_id))

        def matches(fingerprint: Fingerprint) -> bool:
            return fingerprint.filters.matches(row)

        pending.provisional = row
        pending.snapshot = self._store.snapshot(fp for fp in self._store.fingerprints() if matches(fp))
        self._store.patch_all(matches, lambda pages: splice_head(pages, row))
        pending.status = MutationStatus.IN_FLIGHT
        logger.debug(
            f"Mutation #{pending.id}: provisional {row.id} spliced into "
            f"{len(pending.affected)} feed(s)"
        )

    def _begin_delete(self, pending: PendingMutation) -> None:
        target_id = pending.target_id
        server_id = self.server_id_for(target_id)
        if server_id is None:
            # Create never reached the server: drop any local trace, no remote call
            self._store.patch_all(lambda fp: True, lambda pages: remove_rows(pages, {target_id}))
            pending.status = MutationStatus.SKIPPED
            logger.info(f"Mutation #{pending.id}: delete of unconfirmed {target_id} handled locally")
            return

        ids = {target_id, server_id}
        fingerprints = set(self._store.find(target_id)) | set(self._store.find(server_id))
        pending.server_id = server_id
        pending.snapshot = self._store.snapshot(fingerprints)
        self._store.patch_all(lambda fp: fp in fingerprints, lambda pages: remove_rows(pages, ids))
        pending.status = MutationStatus.IN_FLIGHT
        logger.debug(f"Mutation #{pending.id}: {target_id} removed from {len(fingerprints)} feed(s)")

    async def _invoke(self, pending: PendingMutation, mutation: Mutation) -> Transaction | None:
        if isinstance(mutation, CreateMutation):
            created = await self._remote.create(mutation.draft)
            if created is None:
                raise TransportFailure(f"Create of {pending.target_id} returned no transaction")
            return created
        if isinstance(mutation, DeleteMutation):
            await self._remote.delete(pending.server_id)
            return None
        if isinstance(mutation, UpdateMutation):
            if pending.server_id is None:
                raise UnknownTransaction(f"No authoritative transaction for {pending.target_id}")
            return await self._remote.update(pending.server_id, dict(mutation.changes))
        assert_never(mutation)

    def _commit(self, pending: PendingMutation, result: Transaction | None) -> MutationOutcome:
        if not self._in_session(pending):
            if result is not None:
                pending.server_id = result.server_id or result.id
            logger.info(f"Mutation #{pending.id}: {pending.kind.value} committed after the session was cleared")
            return self._settle(pending, result, MutationStatus.COMMITTED)

        if pending.kind is MutationKind.CREATE:
            temp_id = pending.target_id
            server_id = result.server_id or result.id
            pending.server_id = server_id
            self._server_ids[temp_id] = server_id
            self._aliases[server_id] = temp_id

            touched = self._store.patch_all(
                lambda fp: True,
                lambda pages: map_rows(pages, {temp_id}, lambda row: row.confirm(server_id)),
            )
            self._store.write_detail(result)
            affected = set(pending.affected) | set(touched)
            logger.info(f"Mutation #{pending.id}: create committed ({temp_id} -> {server_id})")
        elif pending.kind is MutationKind.DELETE:
            for key in (pending.target_id, pending.server_id):
                if key:
                    self._store.invalidate_detail(key)
            affected = set(pending.affected)
            logger.info(f"Mutation #{pending.id}: delete of {pending.server_id} committed")
        else:
            for key in (pending.target_id, pending.server_id):
                if key:
                    self._store.invalidate_detail(key)
            affected = set(self._store.find(pending.target_id))
            logger.info(f"Mutation #{pending.id}: update of {pending.server_id} committed")

        outcome = self._settle(pending, result, MutationStatus.COMMITTED)
        if affected:
            self._reconcile(sorted(affected, key=lambda fp: fp.key))
        return outcome

    def _rollback(self, pending: PendingMutation, error: BaseException) -> None:
        if self._in_session(pending):
            self._undo(pending)

        pending.error = error
        self._settle(pending, None, MutationStatus.ROLLED_BACK)
        logger.warning(
            f"Mutation #{pending.id}: {pending.kind.value} of {pending.target_id} rolled back: {error!r}"
        )

    def _undo(self, pending: PendingMutation) -> None:
        skipped: list[Fingerprint] = []
        if pending.snapshot is not None:
            skipped = self._store.restore(pending.snapshot)

        if pending.kind is MutationKind.CREATE:
            temp_id = pending.target_id
            # Feeds refetched meanwhile still carry the row; take it out of them
            self._store.patch_all(lambda fp: True, lambda pages: remove_rows(pages, {temp_id}))
        elif skipped:
            self._reconcile(skipped)

    def _settle(
        self,
        pending: PendingMutation,
        result: Transaction | None,
        status: MutationStatus | None = None,
    ) -> MutationOutcome:
        if status is not None:
            pending.status = status
        pending.settled_at = datetime.now()
        if self._active.get(pending.entity_key) is pending:
            del self._active[pending.entity_key]
        self.history.append(pending)
        return MutationOutcome(
            status=pending.status,
            target_id=pending.target_id,
            transaction=result,
            mutation=pending,
        )

    def _on_task_done(self, entity_key: str, task: asyncio.Task) -> None:
        if self._tails.get(entity_key) is task:
            del self._tails[entity_key]
        if not task.cancelled():
            task.exception()


# ----------------------------------------------------------------------
# Page transforms
# ----------------------------------------------------------------------


def splice_head(pages: list[Page], row: Transaction) -> list[Page]:
    """
    Insert an optimistic row at the head of the first page.

    Every page's displayed total grows by one. A feed with no pages yet gets
    a single page holding just the row.
    """
    if not pages:
        return [Page(items=(row,), next_cursor=None, has_more=False, total=1)]

    first = pages[0]
    result = [replace(first, items=(row, *first.items))]
    result.extend(pages[1:])
    return [page.with_total_delta(1) for page in result]


def remove_rows(pages: list[Page], ids: Iterable[str]) -> list[Page]:
    """
    Remove rows known under any of ``ids``; totals shrink by the rows removed.

    Pages without a match are returned unchanged.
    """
    ids = set(ids)
    kept_pages: list[Page] = []
    removed = 0
    for page in pages:
        kept = tuple(item for item in page.items if not (item.identity_keys() & ids))
        removed += len(page.items) - len(kept)
        kept_pages.append(replace(page, items=kept) if len(kept) != len(page.items) else page)

    if not removed:
        return pages
    return [page.with_total_delta(-removed) for page in kept_pages]


def map_rows(
    pages: list[Page], ids: Iterable[str], transform: Callable[[Transaction], Transaction]
) -> list[Page]:
    """Replace rows known under any of ``ids`` in place."""
    ids = set(ids)
    result: list[Page] = []
    for page in pages:
        if not any(item.identity_keys() & ids for item in page.items):
            result.append(page)
            continue
        items = tuple(transform(item) if item.identity_keys() & ids else item for item in page.items)
        result.append(replace(page, items=items))
    return result
