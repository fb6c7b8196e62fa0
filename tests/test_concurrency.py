"""Concurrent units of work racing through one store."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from occkv import ConcurrencyConflict, LockMode, UnitOfWork, VersionedStore, store


@pytest.fixture(params=["memory", "disk"])
def versioned(request, tmp_path):
    if request.param == "memory":
        return store()
    return store("disk", path=str(tmp_path / "records"))


def run_concurrently(fn):
    """Run ``fn`` on another thread and wait for it, re-raising its errors."""
    with ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(fn).result()


class TestFirstCommitWins:
    def test_some_item_scenario(self, versioned):
        item = versioned.create({"name": "Some Item"})

        u1 = UnitOfWork(versioned)
        payload = u1.read(item.id)
        assert u1.tickets[item.id].version == 0
        payload["name"] = "New Name"
        u1.stage(item.id, payload)

        def other():
            u2 = UnitOfWork(versioned)
            theirs = u2.read(item.id)
            assert u2.tickets[item.id].version == 0
            theirs["name"] = "Other Name"
            u2.stage(item.id, theirs)
            u2.commit()

        run_concurrently(other)

        with pytest.raises(ConcurrencyConflict) as info:
            u1.commit()
        assert info.value.record_id == item.id
        record = versioned.get(item.id)
        assert record.payload == {"name": "Other Name"}
        assert record.version == 1

    def test_second_committer_loses(self, versioned):
        r = versioned.create({"n": 0})
        u1 = UnitOfWork(versioned)
        u2 = UnitOfWork(versioned)
        u1.read(r.id)
        u2.read(r.id)
        u1.stage(r.id, {"n": 1})
        u2.stage(r.id, {"n": 2})

        u2.commit()
        with pytest.raises(ConcurrencyConflict):
            u1.commit()
        assert versioned.get(r.id).payload == {"n": 2}
        assert versioned.version_of(r.id) == 1

    def test_many_threads_one_winner(self):
        s = VersionedStore()
        r = s.create({"winner": None})
        barrier = threading.Barrier(8)
        winners = []
        losers = []

        def contend(n):
            uow = UnitOfWork(s)
            uow.read(r.id)
            uow.stage(r.id, {"winner": n})
            barrier.wait()
            try:
                uow.commit()
                winners.append(n)
            except ConcurrencyConflict:
                losers.append(n)

        threads = [threading.Thread(target=contend, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1
        assert len(losers) == 7
        assert s.get(r.id).payload == {"winner": winners[0]}
        assert s.version_of(r.id) == 1


class TestReadOnlyDetection:
    def test_optimistic_reads_fail_after_concurrent_write(self, versioned):
        records = versioned.create_many([{"n": i} for i in range(3)])
        first = records[0]

        u1 = UnitOfWork(versioned)
        for record in records:
            u1.read(record.id, LockMode.OPTIMISTIC)

        def other():
            u2 = UnitOfWork(versioned)
            u2.read(first.id)
            u2.stage(first.id, {"n": 100})
            u2.commit()

        run_concurrently(other)

        with pytest.raises(ConcurrencyConflict) as info:
            u1.commit()
        assert info.value.record_id == first.id

    def test_optimistic_reads_commit_when_untouched(self, versioned):
        records = versioned.create_many([{"n": i} for i in range(3)])
        u1 = UnitOfWork(versioned)
        for record in records:
            u1.read(record.id, LockMode.OPTIMISTIC)
        assert u1.commit()
        assert [versioned.version_of(r.id) for r in records] == [0, 0, 0]

    def test_optimistic_read_fails_after_concurrent_delete(self, versioned):
        r = versioned.create({})
        u1 = UnitOfWork(versioned)
        u1.read(r.id, LockMode.OPTIMISTIC)
        versioned.delete(r.id)
        with pytest.raises(ConcurrencyConflict):
            u1.commit()


class TestForcedIncrement:
    def test_concurrent_child_insert_detected(self, versioned):
        parent = versioned.create({"name": "parent"})

        u1 = UnitOfWork(versioned)
        u1.read(parent.id, LockMode.FORCE_INCREMENT)
        u1.add({"parent_id": parent.id, "value": 1})

        def other():
            u2 = UnitOfWork(versioned)
            u2.read(parent.id, LockMode.FORCE_INCREMENT)
            u2.add({"parent_id": parent.id, "value": 2})
            u2.commit()

        run_concurrently(other)
        assert versioned.version_of(parent.id) == 1

        with pytest.raises(ConcurrencyConflict) as info:
            u1.commit()
        assert info.value.record_id == parent.id
        children = versioned.query(lambda p: p.get("parent_id") == parent.id)
        assert [c.payload["value"] for c in children] == [2]

    def test_without_force_increment_insert_goes_unnoticed(self, versioned):
        parent = versioned.create({"name": "parent"})

        u1 = UnitOfWork(versioned)
        u1.read(parent.id, LockMode.OPTIMISTIC)
        u1.add({"parent_id": parent.id})

        u2 = UnitOfWork(versioned)
        u2.read(parent.id, LockMode.OPTIMISTIC)
        u2.add({"parent_id": parent.id})
        u2.commit()

        u1.commit()
        assert len(versioned.query(lambda p: p.get("parent_id") == parent.id)) == 2


class TestNoOp:
    def test_none_reads_always_commit(self, versioned):
        r = versioned.create({"n": 0})
        u1 = UnitOfWork(versioned)
        u1.read(r.id, LockMode.NONE)

        for n in range(3):
            with versioned.begin() as other:
                other.read(r.id)
                other.stage(r.id, {"n": n + 1})

        assert u1.commit()
        assert versioned.version_of(r.id) == 3


class TestVersionMonotonicity:
    def test_versions_step_by_one(self, versioned):
        r = versioned.create({"n": 0})
        seen = [versioned.version_of(r.id)]
        for n in range(5):
            with versioned.begin() as uow:
                payload = uow.read(r.id)
                payload["n"] = n
                uow.stage(r.id, payload)
            seen.append(versioned.version_of(r.id))
        assert seen == [0, 1, 2, 3, 4, 5]

    def test_retry_loop_never_loses_updates(self):
        s = VersionedStore()
        counter = s.create({"count": 0})
        pre_versions = []
        lock = threading.Lock()

        def increment(times):
            for _ in range(times):
                while True:
                    uow = UnitOfWork(s)
                    payload = uow.read(counter.id)
                    observed = uow.tickets[counter.id].version
                    payload["count"] += 1
                    uow.stage(counter.id, payload)
                    try:
                        uow.commit()
                    except ConcurrencyConflict:
                        continue
                    with lock:
                        pre_versions.append(observed)
                    break

        threads = [threading.Thread(target=increment, args=(25,)) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        record = s.get(counter.id)
        assert record.payload == {"count": 100}
        assert record.version == 100
        assert sorted(pre_versions) == list(range(100))


class TestReadsDuringCommit:
    def test_get_does_not_wait_for_commit(self):
        s = VersionedStore()
        r = s.create({"n": 0})
        inside = threading.Event()
        release = threading.Event()

        def slow_commit():
            with s.store.transaction():
                s.try_apply({r.id: {"n": 1}}, {r.id: 0})
                inside.set()
                release.wait()

        t = threading.Thread(target=slow_commit)
        t.start()
        inside.wait()
        started = time.monotonic()
        during = s.get(r.id)
        queried = s.query()
        elapsed = time.monotonic() - started
        release.set()
        t.join()

        assert elapsed < 0.5
        assert during.version == 0
        assert queried[0].payload == {"n": 0}
        assert s.get(r.id).version == 1
