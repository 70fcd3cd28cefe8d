"""Pending write queue and its replay sweeper."""

from datetime import timedelta

import pytest

from hostgate.service.pending_sweeper import PendingWriteSweeper
from hostgate.storage.errors import StorageUnavailable
from hostgate.storage.file_store import FileTenantStore
from hostgate.storage.models import DEAD, PENDING, utcnow
from hostgate.storage.pending import PendingWriteQueue


class FlakyStore:
    """Wraps a real store; fails upserts while ``down`` is set."""

    def __init__(self, inner: FileTenantStore):
        self.inner = inner
        self.down = False
        self.upserts = 0

    def upsert(self, org_id, user_id, content_hash, payload, **kwargs):
        self.upserts += 1
        if self.down:
            raise StorageUnavailable("backend down")
        return self.inner.upsert(org_id, user_id, content_hash, payload, **kwargs)


@pytest.fixture
def queue(tmp_path):
    return PendingWriteQueue(tmp_path)


@pytest.fixture
def flaky(tmp_path):
    return FlakyStore(FileTenantStore(tmp_path / "store"))


class TestPendingWriteQueue:
    def test_enqueue_persists_entry(self, queue):
        entry = queue.enqueue("acme", "u1", "hash-0001", {"a": 1})
        [loaded] = queue.list_entries()
        assert loaded.id == entry.id
        assert loaded.status == PENDING
        assert loaded.attempts == 0
        assert loaded.payload == {"a": 1}

    def test_entries_listed_in_creation_order(self, queue):
        ids = [queue.enqueue("acme", "u1", f"hash-000{i}", {}).id for i in range(3)]
        assert [entry.id for entry in queue.list_entries()] == ids

    def test_survives_new_instance(self, queue, tmp_path):
        queue.enqueue("acme", "u1", "hash-0001", {})
        assert len(PendingWriteQueue(tmp_path).list_entries()) == 1

    def test_corrupt_entry_left_in_place(self, queue):
        queue.enqueue("acme", "u1", "hash-0001", {})
        bad = queue.root / "0000000000000-bad.json"
        bad.write_text("not json")
        assert len(queue.list_entries()) == 1
        assert bad.exists()

    def test_remove_and_stats(self, queue):
        first = queue.enqueue("acme", "u1", "hash-0001", {})
        second = queue.enqueue("acme", "u1", "hash-0002", {})
        second.status = DEAD
        queue.update(second)
        assert queue.stats() == {PENDING: 1, DEAD: 1}
        assert queue.remove(first.id) is True
        assert queue.remove(first.id) is False
        assert queue.remove("../escape") is False


class TestPendingWriteSweeper:
    async def test_replay_persists_and_clears(self, queue, flaky):
        queue.enqueue("acme", "u1", "hash-0001", {"a": 1})
        sweeper = PendingWriteSweeper(queue, flaky, max_attempts=3)

        report = await sweeper.sweep()

        assert report.replayed == 1
        assert queue.list_entries() == []
        assert flaky.inner.get("acme", "u1", "hash-0001").payload == {"a": 1}

    async def test_failed_replay_stays_pending(self, queue, flaky):
        queue.enqueue("acme", "u1", "hash-0001", {})
        flaky.down = True
        sweeper = PendingWriteSweeper(queue, flaky, max_attempts=3)

        report = await sweeper.sweep()

        assert report.failed == 1
        [entry] = queue.list_entries()
        assert entry.status == PENDING
        assert entry.attempts == 1
        assert entry.last_error
        assert entry.last_attempt_at is not None

    async def test_dead_letters_after_max_attempts(self, queue, flaky):
        queue.enqueue("acme", "u1", "hash-0001", {})
        flaky.down = True
        sweeper = PendingWriteSweeper(queue, flaky, max_attempts=2)

        await sweeper.sweep()
        report = await sweeper.sweep()
        assert report.dead_lettered == 1

        flaky.down = False
        upserts_before = flaky.upserts
        await sweeper.sweep()
        # Dead entries are kept on disk and never retried
        assert flaky.upserts == upserts_before
        assert sweeper.stats() == {PENDING: 0, DEAD: 1}

    async def test_replay_is_idempotent(self, queue, flaky):
        flaky.inner.upsert("acme", "u1", "hash-0001", {"v": 1})
        queue.enqueue("acme", "u1", "hash-0001", {"v": 1})
        await PendingWriteSweeper(queue, flaky).sweep()
        assert len(flaky.inner.list_by_tenant("acme", "u1")) == 1

    async def test_newer_direct_write_wins_over_replay(self, queue, flaky):
        flaky.down = True
        queue.enqueue("acme", "u1", "journal-0001", {"v": 1})
        flaky.down = False
        flaky.upsert("acme", "u1", "journal-0001", {"v": 2})

        report = await PendingWriteSweeper(queue, flaky).sweep()

        assert (report.replayed, report.superseded) == (0, 1)
        assert queue.list_entries() == []
        assert flaky.inner.get("acme", "u1", "journal-0001").payload == {"v": 2}

    async def test_replay_overwrites_older_record(self, queue, flaky):
        flaky.inner.upsert("acme", "u1", "journal-0001", {"v": 0})
        entry = queue.enqueue("acme", "u1", "journal-0001", {"v": 1})
        entry.created_at = utcnow() + timedelta(seconds=1)
        queue.update(entry)

        report = await PendingWriteSweeper(queue, flaky).sweep()

        assert report.replayed == 1
        assert flaky.inner.get("acme", "u1", "journal-0001").payload == {"v": 1}

    async def test_overlapping_sweep_skipped(self, queue, flaky):
        sweeper = PendingWriteSweeper(queue, flaky)
        async with sweeper._lock:
            report = await sweeper.sweep()
        assert report.skipped is True

    async def test_continues_after_one_failure(self, queue, flaky):
        class PickyStore(FlakyStore):
            def upsert(self, org_id, user_id, content_hash, payload, **kwargs):
                if content_hash == "hash-bad":
                    raise StorageUnavailable("rejected")
                return super().upsert(org_id, user_id, content_hash, payload, **kwargs)

        store = PickyStore(flaky.inner)
        queue.enqueue("acme", "u1", "hash-bad", {})
        queue.enqueue("acme", "u1", "hash-good", {})
        report = await PendingWriteSweeper(queue, store).sweep()
        assert (report.replayed, report.failed) == (1, 1)
