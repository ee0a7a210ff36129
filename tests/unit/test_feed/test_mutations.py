#!/usr/bin/env python3
"""
Unit tests for the mutation coordinator.

Tests optimistic patches, snapshot rollback, per-entity ordering and the
handling of temporary ids.
"""

import asyncio
import re

import pytest

from tests.fixtures.fake_remote import FakeTransactionRemote, make_draft
from txfeed.core.errors import TransportFailure, UnknownTransaction, ValidationRejected
from txfeed.core.models import CategoryRef, Fingerprint, Page, flatten
from txfeed.feed.cache_store import CacheStore
from txfeed.feed.mutations import (
    CreateMutation,
    DeleteMutation,
    MutationCoordinator,
    MutationStatus,
    UpdateMutation,
    map_rows,
    remove_rows,
    splice_head,
)


class ReconcileRecorder:
    """Stands in for the reconciliation scheduler."""

    def __init__(self):
        self.calls = []

    def __call__(self, fingerprints):
        self.calls.append(list(fingerprints))


def loaded_store(transactions, *fingerprints):
    """Store with one authoritative page per fingerprint."""
    store = CacheStore()
    for fingerprint in fingerprints:
        rows = tuple(txn for txn in transactions if fingerprint.filters.matches(txn))
        store.write(fingerprint, [Page(items=rows, total=len(rows))])
    return store


def ids(store, fingerprint):
    return [txn.id for txn in flatten(store.read(fingerprint))]


def traces(store, transaction_id):
    """Every cached row known under ``transaction_id``, in any feed."""
    return [
        txn
        for fingerprint in store.fingerprints()
        for txn in flatten(store.read(fingerprint))
        if transaction_id in txn.identity_keys()
    ]


@pytest.fixture
def income_feed():
    return Fingerprint.for_filters(kind="income")


@pytest.mark.mutations
class TestOptimisticCreate:
    """Test the create lifecycle."""

    def test_provisional_row_is_visible_before_remote_call(
        self, sample_transactions, all_feed, expense_feed, income_feed
    ):
        store = loaded_store(sample_transactions, all_feed, expense_feed, income_feed)
        remote = FakeTransactionRemote(list(sample_transactions))
        coordinator = MutationCoordinator(store, remote)

        async def scenario():
            handle = coordinator.submit(CreateMutation(make_draft("500")))
            # Synchronously applied, nothing sent yet
            visible = {fp: ids(store, fp) for fp in (all_feed, expense_feed, income_feed)}
            totals = {fp: store.read(fp)[0].total for fp in (all_feed, expense_feed)}
            calls_before = len(remote.calls_to("create"))
            status = handle.status
            await handle
            return handle.target_id, visible, totals, calls_before, status

        temp_id, visible, totals, calls_before, status = asyncio.run(scenario())

        assert re.match(r"^temp-\d+-\d+$", temp_id)
        assert visible[all_feed] == [temp_id, "tx_3", "tx_2", "tx_1"]
        assert visible[expense_feed] == [temp_id, "tx_3", "tx_1"]
        assert visible[income_feed] == ["tx_2"]
        assert totals == {all_feed: 4, expense_feed: 3}
        assert calls_before == 0
        assert status is MutationStatus.IN_FLIGHT

    def test_commit_confirms_row_and_requests_reconciliation(
        self, sample_transactions, all_feed, expense_feed
    ):
        store = loaded_store(sample_transactions, all_feed, expense_feed)
        remote = FakeTransactionRemote(list(sample_transactions), ids=["tx_new"])
        reconcile = ReconcileRecorder()
        coordinator = MutationCoordinator(store, remote, reconcile=reconcile)

        outcome = asyncio.run(coordinator.execute(CreateMutation(make_draft("500"))))

        assert outcome.status is MutationStatus.COMMITTED
        assert outcome.ok
        assert outcome.transaction.id == "tx_new"
        row = store.read(all_feed)[0].items[0]
        assert row.id == outcome.target_id
        assert row.server_id == "tx_new"
        assert row.awaiting_swap
        assert coordinator.server_id_for(outcome.target_id) == "tx_new"
        assert coordinator.entity_key("tx_new") == outcome.target_id
        assert reconcile.calls == [[all_feed, expense_feed]]
        assert store.read_detail("tx_new") == outcome.transaction

    def test_failed_create_restores_exact_snapshot(self, sample_transactions, all_feed, expense_feed):
        store = loaded_store(sample_transactions, all_feed, expense_feed)
        before = {fp: store.read(fp) for fp in (all_feed, expense_feed)}
        remote = FakeTransactionRemote(list(sample_transactions))
        remote.fail_next("create", TransportFailure("timeout"))
        reconcile = ReconcileRecorder()
        coordinator = MutationCoordinator(store, remote, reconcile=reconcile)

        with pytest.raises(TransportFailure):
            asyncio.run(coordinator.execute(CreateMutation(make_draft())))

        assert {fp: store.read(fp) for fp in (all_feed, expense_feed)} == before
        assert coordinator.history[-1].status is MutationStatus.ROLLED_BACK
        assert isinstance(coordinator.history[-1].error, TransportFailure)
        assert reconcile.calls == []

    def test_server_rejection_message_is_preserved(self, sample_transactions, all_feed):
        store = loaded_store(sample_transactions, all_feed)
        remote = FakeTransactionRemote()
        remote.fail_next("create", ValidationRejected("Category does not exist"))
        coordinator = MutationCoordinator(store, remote)

        with pytest.raises(ValidationRejected) as exc_info:
            asyncio.run(coordinator.execute(CreateMutation(make_draft())))

        assert exc_info.value.message == "Category does not exist"

    def test_rollback_after_refetch_removes_provisional_row(self, sample_transactions, all_feed):
        """Test a feed refetched during the create loses the row on failure."""
        store = loaded_store(sample_transactions, all_feed)
        remote = FakeTransactionRemote()
        coordinator = MutationCoordinator(store, remote)

        async def scenario():
            remote.hold("create")
            handle = coordinator.submit(CreateMutation(make_draft()))
            provisional = store.read(all_feed)[0].items[0]
            # Refetch lands while the create is in flight (provisional row kept)
            store.write(all_feed, [Page(items=(provisional, *sample_transactions), total=4)])
            remote.fail_next("create", TransportFailure("timeout"))
            remote.release("create")
            with pytest.raises(TransportFailure):
                await handle
            return handle.target_id

        temp_id = asyncio.run(scenario())

        assert traces(store, temp_id) == []
        assert ids(store, all_feed) == ["tx_3", "tx_2", "tx_1"]

    def test_local_validation_rejects_before_patch(self, sample_transactions, all_feed):
        store = loaded_store(sample_transactions, all_feed)
        remote = FakeTransactionRemote()
        coordinator = MutationCoordinator(store, remote)

        async def scenario():
            coordinator.submit(CreateMutation(make_draft("0")))

        with pytest.raises(ValidationRejected):
            asyncio.run(scenario())

        assert ids(store, all_feed) == ["tx_3", "tx_2", "tx_1"]
        assert remote.calls == []

    def test_registered_empty_feed_gets_a_page(self, all_feed):
        store = CacheStore()
        store.ensure(all_feed)
        remote = FakeTransactionRemote()
        coordinator = MutationCoordinator(store, remote)

        async def scenario():
            remote.hold("create")
            handle = coordinator.submit(CreateMutation(make_draft("500")))
            pages = store.read(all_feed)
            remote.release("create")
            await handle
            return pages

        pages = asyncio.run(scenario())

        assert len(pages) == 1
        assert pages[0].total == 1
        assert pages[0].items[0].is_provisional

    def test_category_lookup_decorates_provisional_row(self, all_feed):
        store = CacheStore()
        store.ensure(all_feed)
        category = CategoryRef(id="cat-food", name="Food", icon="utensils", color="#f00")
        coordinator = MutationCoordinator(
            store, FakeTransactionRemote(), category_lookup={"cat-food": category}.get
        )

        asyncio.run(coordinator.execute(CreateMutation(make_draft())))

        assert store.read(all_feed)[0].items[0].category == category

    def test_temporary_ids_are_unique(self, all_feed):
        coordinator = MutationCoordinator(CacheStore(), FakeTransactionRemote())

        async def scenario():
            handles = [coordinator.submit(CreateMutation(make_draft())) for _ in range(3)]
            await asyncio.gather(*handles)
            return [handle.target_id for handle in handles]

        temp_ids = asyncio.run(scenario())

        assert len(set(temp_ids)) == 3
        assert all(coordinator.is_temporary(temp_id) for temp_id in temp_ids)


@pytest.mark.mutations
class TestOptimisticDelete:
    """Test the delete lifecycle."""

    def test_delete_removes_row_from_every_feed(self, sample_transactions, all_feed, expense_feed):
        store = loaded_store(sample_transactions, all_feed, expense_feed)
        remote = FakeTransactionRemote(list(sample_transactions))
        reconcile = ReconcileRecorder()
        coordinator = MutationCoordinator(store, remote, reconcile=reconcile)

        async def scenario():
            remote.hold("delete")
            handle = coordinator.submit(DeleteMutation("tx_1"))
            during = (ids(store, all_feed), ids(store, expense_feed), store.read(all_feed)[0].total)
            remote.release("delete")
            outcome = await handle
            return during, outcome

        during, outcome = asyncio.run(scenario())

        assert during == (["tx_3", "tx_2"], ["tx_3"], 2)
        assert outcome.status is MutationStatus.COMMITTED
        assert remote.calls_to("delete") == [("tx_1",)]
        assert reconcile.calls == [[all_feed, expense_feed]]

    def test_failed_delete_restores_row_at_original_index_in_both_feeds(
        self, sample_transactions, all_feed, expense_feed
    ):
        store = loaded_store(sample_transactions, all_feed, expense_feed)
        before = {fp: store.read(fp) for fp in (all_feed, expense_feed)}
        remote = FakeTransactionRemote(list(sample_transactions))
        remote.fail_next("delete", TransportFailure("server error", status_code=500))
        coordinator = MutationCoordinator(store, remote)

        with pytest.raises(TransportFailure):
            asyncio.run(coordinator.execute(DeleteMutation("tx_1")))

        assert store.read(all_feed) == before[all_feed]
        assert store.read(expense_feed) == before[expense_feed]
        assert ids(store, all_feed).index("tx_1") == 2
        assert ids(store, expense_feed).index("tx_1") == 1
        assert store.read(all_feed)[0].total == 3

    def test_failed_delete_after_refetch_requests_reconciliation(self, sample_transactions, all_feed):
        store = loaded_store(sample_transactions, all_feed)
        remote = FakeTransactionRemote(list(sample_transactions))
        reconcile = ReconcileRecorder()
        coordinator = MutationCoordinator(store, remote, reconcile=reconcile)

        async def scenario():
            remote.hold("delete")
            handle = coordinator.submit(DeleteMutation("tx_1"))
            refetched = [Page(items=tuple(sample_transactions[:2]), total=2)]
            store.write(all_feed, refetched)
            remote.fail_next("delete", TransportFailure("timeout"))
            remote.release("delete")
            with pytest.raises(TransportFailure):
                await handle
            return refetched

        refetched = asyncio.run(scenario())

        # Newer pages are not overwritten by the old snapshot
        assert store.read(all_feed) == refetched
        assert reconcile.calls == [[all_feed]]


@pytest.mark.mutations
class TestCreateThenDelete:
    """Test deleting a row whose create has not settled."""

    def test_delete_of_failed_create_never_reaches_server(self, sample_transactions, all_feed, expense_feed):
        store = loaded_store(sample_transactions, all_feed, expense_feed)
        remote = FakeTransactionRemote(list(sample_transactions))
        coordinator = MutationCoordinator(store, remote)

        async def scenario():
            remote.hold("create")
            create = coordinator.submit(CreateMutation(make_draft()))
            delete = coordinator.submit(DeleteMutation(create.target_id))
            queued = delete.status
            remote.fail_next("create", TransportFailure("offline"))
            remote.release("create")
            with pytest.raises(TransportFailure):
                await create
            outcome = await delete
            return create.target_id, queued, outcome

        temp_id, queued, outcome = asyncio.run(scenario())

        assert queued is MutationStatus.QUEUED
        assert outcome.status is MutationStatus.SKIPPED
        assert remote.calls_to("delete") == []
        assert traces(store, temp_id) == []

    def test_delete_of_committed_create_uses_server_id(self, sample_transactions, all_feed, expense_feed):
        store = loaded_store(sample_transactions, all_feed, expense_feed)
        remote = FakeTransactionRemote(list(sample_transactions), ids=["tx_new"])
        coordinator = MutationCoordinator(store, remote)

        async def scenario():
            remote.hold("create")
            create = coordinator.submit(CreateMutation(make_draft()))
            delete = coordinator.submit(DeleteMutation(create.target_id))
            remote.release("create")
            await create
            await delete
            return create.target_id

        temp_id = asyncio.run(scenario())

        assert remote.calls_to("delete") == [("tx_new",)]
        assert traces(store, temp_id) == []
        assert traces(store, "tx_new") == []
        assert ids(store, all_feed) == ["tx_3", "tx_2", "tx_1"]

    def test_delete_after_rolled_back_create_is_local(self, all_feed):
        store = CacheStore()
        store.ensure(all_feed)
        remote = FakeTransactionRemote()
        remote.fail_next("create", TransportFailure("offline"))
        coordinator = MutationCoordinator(store, remote)

        async def scenario():
            create = coordinator.submit(CreateMutation(make_draft()))
            with pytest.raises(TransportFailure):
                await create
            return await coordinator.execute(DeleteMutation(create.target_id))

        outcome = asyncio.run(scenario())

        assert outcome.status is MutationStatus.SKIPPED
        assert remote.calls_to("delete") == []


@pytest.mark.mutations
class TestUpdateAndOrdering:
    """Test updates and per-entity serialization."""

    def test_update_waits_for_create_and_targets_server_id(self, all_feed):
        store = CacheStore()
        store.ensure(all_feed)
        remote = FakeTransactionRemote(ids=["tx_new"])
        reconcile = ReconcileRecorder()
        coordinator = MutationCoordinator(store, remote, reconcile=reconcile)

        async def scenario():
            remote.hold("create")
            create = coordinator.submit(CreateMutation(make_draft()))
            update = coordinator.submit(UpdateMutation(create.target_id, {"description": "Edited"}))
            await asyncio.sleep(0.01)
            update_calls_while_creating = len(remote.calls_to("update"))
            remote.release("create")
            await create
            return update_calls_while_creating, await update

        calls_while_creating, outcome = asyncio.run(scenario())

        assert calls_while_creating == 0
        assert remote.calls_to("update") == [("tx_new", {"description": "Edited"})]
        assert outcome.transaction.description == "Edited"
        assert reconcile.calls[-1] == [all_feed]

    def test_update_of_unconfirmed_create_is_rejected(self, all_feed):
        store = CacheStore()
        remote = FakeTransactionRemote()
        remote.fail_next("create", TransportFailure("offline"))
        coordinator = MutationCoordinator(store, remote)

        async def scenario():
            create = coordinator.submit(CreateMutation(make_draft()))
            update = coordinator.submit(UpdateMutation(create.target_id, {"description": "x"}))
            with pytest.raises(TransportFailure):
                await create
            await update

        with pytest.raises(UnknownTransaction):
            asyncio.run(scenario())

        assert remote.calls_to("update") == []

    def test_update_invalidates_detail_cache(self, sample_transactions, all_feed):
        store = loaded_store(sample_transactions, all_feed)
        store.write_detail(sample_transactions[0])
        coordinator = MutationCoordinator(store, FakeTransactionRemote(list(sample_transactions)))

        asyncio.run(coordinator.execute(UpdateMutation("tx_3", {"description": "Edited"})))

        assert store.read_detail("tx_3") is None

    def test_same_entity_mutations_run_one_at_a_time(self, sample_transactions):
        remote = FakeTransactionRemote(list(sample_transactions))
        coordinator = MutationCoordinator(CacheStore(), remote)

        async def scenario():
            remote.hold("update")
            first = coordinator.submit(UpdateMutation("tx_1", {"description": "one"}))
            second = coordinator.submit(UpdateMutation("tx_1", {"description": "two"}))
            await asyncio.sleep(0.01)
            active = coordinator.active("tx_1")
            remote.release("update")
            await asyncio.gather(first, second)
            return active, first

        active, first = asyncio.run(scenario())

        assert active is first.pending
        assert remote.max_in_flight["update"] == 1
        assert [args[1]["description"] for args in remote.calls_to("update")] == ["one", "two"]

    def test_different_entities_run_concurrently(self, sample_transactions):
        remote = FakeTransactionRemote(list(sample_transactions))
        coordinator = MutationCoordinator(CacheStore(), remote)

        async def scenario():
            remote.hold("delete")
            handles = [coordinator.submit(DeleteMutation(tx)) for tx in ("tx_1", "tx_2")]
            await asyncio.sleep(0.01)
            in_flight = remote.in_flight["delete"]
            remote.release("delete")
            await asyncio.gather(*handles)
            return in_flight

        assert asyncio.run(scenario()) == 2

    def test_history_is_bounded(self, sample_transactions):
        remote = FakeTransactionRemote(list(sample_transactions))
        coordinator = MutationCoordinator(CacheStore(), remote, history_size=2)

        async def scenario():
            for description in ("a", "b", "c"):
                await coordinator.execute(UpdateMutation("tx_1", {"description": description}))

        asyncio.run(scenario())

        assert len(coordinator.history) == 2
        assert all(pending.status.terminal for pending in coordinator.history)


class EmptyCreateRemote(FakeTransactionRemote):
    """Remote whose create answers without a transaction."""

    async def create(self, draft):
        await super().create(draft)
        return None


@pytest.mark.mutations
class TestIncompleteResponses:
    """Test remote answers the coordinator cannot commit."""

    def test_create_without_transaction_rolls_back(self, sample_transactions, all_feed):
        store = loaded_store(sample_transactions, all_feed)
        before = store.read(all_feed)
        coordinator = MutationCoordinator(store, EmptyCreateRemote(list(sample_transactions)))

        with pytest.raises(TransportFailure, match="returned no transaction"):
            asyncio.run(coordinator.execute(CreateMutation(make_draft())))

        assert store.read(all_feed) == before
        assert coordinator.history[-1].status is MutationStatus.ROLLED_BACK


@pytest.mark.mutations
class TestSessionReset:
    """Test mutations running across a cleared session."""

    def test_create_committing_after_reset_leaves_cache_alone(self, sample_transactions, all_feed):
        store = loaded_store(sample_transactions, all_feed)
        remote = FakeTransactionRemote(list(sample_transactions), ids=["tx_new"])
        reconcile = ReconcileRecorder()
        coordinator = MutationCoordinator(store, remote, reconcile=reconcile)

        async def scenario():
            remote.hold("create")
            handle = coordinator.submit(CreateMutation(make_draft("500")))
            store.clear()
            coordinator.reset()
            store.ensure(all_feed)
            seeded = coordinator.seed(all_feed)
            remote.release("create")
            return handle, seeded, await handle

        handle, seeded, outcome = asyncio.run(scenario())

        assert seeded == 0
        assert outcome.status is MutationStatus.COMMITTED
        assert outcome.transaction.id == "tx_new"
        assert store.read(all_feed) == []
        assert store.read_detail("tx_new") is None
        assert coordinator.server_id_for(handle.target_id) is None
        assert coordinator.active(handle.target_id) is None
        assert reconcile.calls == []

    def test_create_failing_after_reset_does_not_restore_old_pages(self, sample_transactions, all_feed):
        store = loaded_store(sample_transactions, all_feed)
        remote = FakeTransactionRemote(list(sample_transactions))
        remote.fail_next("create", TransportFailure("offline"))
        reconcile = ReconcileRecorder()
        coordinator = MutationCoordinator(store, remote, reconcile=reconcile)

        async def scenario():
            remote.hold("create")
            handle = coordinator.submit(CreateMutation(make_draft()))
            store.clear()
            coordinator.reset()
            store.write(all_feed, [Page(items=(), total=0)])
            remote.release("create")
            with pytest.raises(TransportFailure):
                await handle

        asyncio.run(scenario())

        assert ids(store, all_feed) == []
        assert coordinator.history[-1].status is MutationStatus.ROLLED_BACK
        assert reconcile.calls == []

    def test_mutation_queued_at_reset_is_dropped(self, sample_transactions, all_feed):
        store = loaded_store(sample_transactions, all_feed)
        remote = FakeTransactionRemote(list(sample_transactions))
        coordinator = MutationCoordinator(store, remote)

        async def scenario():
            remote.hold("update")
            first = coordinator.submit(UpdateMutation("tx_1", {"description": "a"}))
            second = coordinator.submit(UpdateMutation("tx_1", {"description": "b"}))
            coordinator.reset()
            remote.release("update")
            return await first, await second

        first, second = asyncio.run(scenario())

        assert first.status is MutationStatus.COMMITTED
        assert second.status is MutationStatus.SKIPPED
        assert [args[1] for args in remote.calls_to("update")] == [{"description": "a"}]


class TestPageTransforms:
    """Test the pure page transforms."""

    @pytest.mark.unit
    def test_splice_head_grows_every_total(self, sample_transactions):
        pages = [Page(items=tuple(sample_transactions[:2]), total=3), Page(items=(sample_transactions[2],), total=3)]
        row = make_draft().to_provisional("temp-1")

        spliced = splice_head(pages, row)

        assert spliced[0].items[0] is row
        assert [page.total for page in spliced] == [4, 4]
        assert spliced[1].items == pages[1].items

    @pytest.mark.unit
    def test_remove_rows_shrinks_totals(self, sample_transactions):
        pages = [Page(items=tuple(sample_transactions), total=3)]

        result = remove_rows(pages, {"tx_2"})

        assert [txn.id for txn in result[0].items] == ["tx_3", "tx_1"]
        assert result[0].total == 2
        assert remove_rows(pages, {"missing"}) is pages

    @pytest.mark.unit
    def test_map_rows_replaces_in_place(self, sample_transactions):
        pages = [Page(items=tuple(sample_transactions))]

        result = map_rows(pages, {"tx_2"}, lambda row: row.confirm("other"))

        assert [txn.id for txn in result[0].items] == ["tx_3", "tx_2", "tx_1"]
        assert result[0].items[1].server_id == "other"
