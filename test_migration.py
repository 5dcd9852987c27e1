"""Tests for the one-time distance-metric migration."""

import json

import pytest

import migrate_distance
from migrate_distance import describe
from migration import CollectionDump, DistanceMigrator, MigrationMarker, MigrationStatus
from sidecar import READY, Readiness


def seed(store, metric="l2", n=5):
    collection = store.create_collection("memories", metric)
    if n:
        collection.add(
            ids=[f"mem_{i}" for i in range(n)],
            embeddings=[[float(i), 1.0, -0.5] for i in range(n)],
            documents=[f"memory {i}" for i in range(n)],
            metadatas=[{"type": "discovery", "project": "api", "tags": json.dumps([f"t{i}"])} for i in range(n)],
        )
    return collection


def snapshot(collection) -> dict:
    return collection.get(include=["documents", "metadatas", "embeddings"])


@pytest.fixture
def migrator(store, tmp_path):
    return DistanceMigrator(
        store,
        collection_name="memories",
        metric="cosine",
        marker=MigrationMarker(tmp_path / ".distance_migrated"),
        snapshot_path=tmp_path / ".migration_snapshot.json",
        batch_size=2,
    )


class TestMigrationMarker:
    def test_pending_then_done(self, tmp_path):
        marker = MigrationMarker(tmp_path / "sub" / ".marker")
        assert marker.status() is MigrationStatus.PENDING
        assert marker.completed_at() is None
        marker.mark_done()
        assert marker.status() is MigrationStatus.DONE
        assert marker.completed_at()


class TestCollectionDump:
    def test_save_and_load(self, tmp_path):
        dump = CollectionDump(ids=["a"], documents=["doc"], metadatas=[{"k": "v"}], embeddings=[[0.5, 0.25]])
        path = tmp_path / "snap.json"
        dump.save(path)
        assert CollectionDump.load(path) == dump
        assert not path.with_suffix(".tmp").exists()

    def test_load_rejects_misaligned(self, tmp_path):
        path = tmp_path / "snap.json"
        path.write_text(json.dumps({"ids": ["a", "b"], "documents": ["x"], "metadatas": [None], "embeddings": [[1]]}))
        with pytest.raises(ValueError):
            CollectionDump.load(path)

    def test_batches(self):
        dump = CollectionDump(
            ids=["a", "b", "c"], documents=["1", "2", "3"], metadatas=[None] * 3, embeddings=[[1], [2], [3]]
        )
        assert [ids for ids, *_ in dump.batches(2)] == [["a", "b"], ["c"]]

    def test_merge_newer_wins(self):
        dump = CollectionDump(ids=["a", "b"], documents=["1", "2"], metadatas=[None, None], embeddings=[[1], [2]])
        dump.merge(
            CollectionDump(ids=["b", "c"], documents=["2b", "3"], metadatas=[{"k": "v"}, None], embeddings=[[20], [3]])
        )
        assert dump.ids == ["a", "b", "c"]
        assert dump.documents == ["1", "2b", "3"]
        assert dump.metadatas == [None, {"k": "v"}, None]
        assert dump.embeddings == [[1], [20], [3]]


class TestDistanceMigrator:
    async def test_migrates_and_preserves_records(self, store, migrator):
        before = snapshot(seed(store))

        assert await migrator.migrate_if_needed() is MigrationStatus.DONE

        migrated = store.collections["memories"]
        assert migrated.distance_metric == "cosine"
        assert snapshot(migrated) == before
        assert migrator.marker.status() is MigrationStatus.DONE
        assert not migrator.snapshot_path.exists()

    async def test_reuses_stored_embeddings(self, store, migrator):
        seed(store)
        await migrator.migrate_if_needed()
        # the new collection has no embedding function; any re-embed would raise
        assert store.collections["memories"]._embed is None
        assert store.collections["memories"].count() == 5

    async def test_inserts_in_batches(self, store, migrator):
        seed(store, n=5)
        await migrator.migrate_if_needed()
        assert store.collections["memories"].calls.count("add") == 3

    async def test_idempotent(self, store, migrator):
        seed(store)
        await migrator.migrate_if_needed()
        calls = list(store.calls)
        records = snapshot(store.collections["memories"])

        assert await migrator.migrate_if_needed() is MigrationStatus.DONE
        assert store.calls == calls
        assert snapshot(store.collections["memories"]) == records

    async def test_missing_collection(self, store, migrator):
        assert await migrator.migrate_if_needed() is MigrationStatus.DONE
        assert "memories" not in store.collections
        assert store.calls == []

    async def test_already_on_target_metric(self, store, migrator):
        seed(store, metric="cosine")
        store.calls.clear()
        assert await migrator.migrate_if_needed() is MigrationStatus.DONE
        assert store.calls == []

    async def test_empty_collection_recreated(self, store, migrator):
        seed(store, n=0)
        assert await migrator.migrate_if_needed() is MigrationStatus.DONE
        assert store.collections["memories"].distance_metric == "cosine"
        assert store.collections["memories"].count() == 0

    async def test_read_failure_leaves_data_and_no_marker(self, store, migrator):
        original = seed(store)
        store.fail_on.add("get")

        assert await migrator.migrate_if_needed() is MigrationStatus.PENDING
        assert migrator.marker.status() is MigrationStatus.PENDING
        assert store.collections["memories"] is original
        assert original.distance_metric == "l2"
        assert not migrator.snapshot_path.exists()

    async def test_failure_after_delete_resumes_from_snapshot(self, store, migrator):
        before = snapshot(seed(store))
        store.fail_on.add("create_collection")

        assert await migrator.migrate_if_needed() is MigrationStatus.PENDING
        assert "memories" not in store.collections
        assert migrator.snapshot_path.exists()
        assert migrator.marker.status() is MigrationStatus.PENDING

        store.fail_on.clear()
        assert await migrator.migrate_if_needed() is MigrationStatus.DONE
        migrated = store.collections["memories"]
        assert migrated.distance_metric == "cosine"
        assert snapshot(migrated) == before
        assert not migrator.snapshot_path.exists()

    async def test_partial_insert_resumes_from_snapshot(self, store, migrator):
        before = snapshot(seed(store))
        store.fail_on.add("add")

        assert await migrator.migrate_if_needed() is MigrationStatus.PENDING
        assert store.collections["memories"].count() == 0

        store.fail_on.clear()
        assert await migrator.migrate_if_needed() is MigrationStatus.DONE
        assert snapshot(store.collections["memories"]) == before

    async def test_delete_failure_keeps_later_writes(self, store, migrator):
        collection = seed(store)
        store.fail_on.add("delete_collection")

        assert await migrator.migrate_if_needed() is MigrationStatus.PENDING
        assert store.collections["memories"] is collection
        assert migrator.snapshot_path.exists()

        store.fail_on.clear()
        collection.upsert(ids=["mem_new"], embeddings=[[9.0, 9.0, 9.0]], documents=["new"], metadatas=[{"type": "change"}])
        assert await migrator.migrate_if_needed() is MigrationStatus.DONE

        migrated = store.collections["memories"]
        assert migrated.distance_metric == "cosine"
        assert sorted(snapshot(migrated)["ids"]) == ["mem_0", "mem_1", "mem_2", "mem_3", "mem_4", "mem_new"]
        assert not migrator.snapshot_path.exists()

    async def test_create_failure_keeps_later_writes(self, store, migrator):
        before = snapshot(seed(store))
        store.fail_on.add("create_collection")
        assert await migrator.migrate_if_needed() is MigrationStatus.PENDING
        assert "memories" not in store.collections

        store.fail_on.clear()
        # the server recreates the collection on the target metric and keeps saving
        fresh = store.create_collection("memories", "cosine")
        fresh.upsert(ids=["mem_new"], embeddings=[[9.0, 9.0, 9.0]], documents=["new"], metadatas=[{"type": "change"}])

        assert await migrator.migrate_if_needed() is MigrationStatus.DONE
        after = snapshot(store.collections["memories"])
        assert sorted(after["ids"]) == sorted(before["ids"] + ["mem_new"])
        assert after["documents"][after["ids"].index("mem_new")] == "new"

    async def test_partial_insert_keeps_later_writes(self, store, migrator):
        seed(store)
        store.fail_on.add("add")
        assert await migrator.migrate_if_needed() is MigrationStatus.PENDING

        store.fail_on.clear()
        target = store.collections["memories"]
        target.upsert(ids=["mem_new"], embeddings=[[9.0, 9.0, 9.0]], documents=["new"], metadatas=[{"type": "change"}])
        target.upsert(ids=["mem_0"], embeddings=[[0.0, 1.0, -0.5]], documents=["edited"], metadatas=[{"type": "change"}])

        assert await migrator.migrate_if_needed() is MigrationStatus.DONE
        after = snapshot(store.collections["memories"])
        assert len(after["ids"]) == 6
        assert after["documents"][after["ids"].index("mem_0")] == "edited"
        assert after["metadatas"][after["ids"].index("mem_0")] == {"type": "change"}
        assert "mem_new" in after["ids"]

    async def test_resume_saves_merged_snapshot_before_delete(self, store, migrator):
        seed(store)
        store.fail_on.add("add")
        await migrator.migrate_if_needed()

        store.fail_on = {"delete_collection"}
        store.collections["memories"].upsert(
            ids=["mem_new"], embeddings=[[9.0, 9.0, 9.0]], documents=["new"], metadatas=[{"type": "change"}]
        )
        assert await migrator.migrate_if_needed() is MigrationStatus.PENDING
        assert "mem_new" in CollectionDump.load(migrator.snapshot_path).ids
        assert store.collections["memories"].count() == 1


class TestDescribePlan:
    def test_pending_with_records(self, store, migrator):
        seed(store, n=5)
        lines = describe(migrator)
        assert "(pending)" in lines[1]
        assert "5 records, metric l2" in lines[2]
        assert "3 batch(es) of 2" in lines[3]

    async def test_done(self, store, migrator):
        await migrator.migrate_if_needed()
        lines = describe(migrator)
        assert "(done)" in lines[1]
        assert lines[-1] == "Nothing to do."


class StubSupervisor:
    def __init__(self, live=True, readiness=READY):
        self.live = live
        self.readiness = readiness
        self.launched = False

    async def is_live(self):
        return self.live

    async def ensure_running(self):
        self.launched = True
        return self.readiness


@pytest.fixture
def command(store, migrator, monkeypatch):
    """Point ``migrate_distance.run`` at the fake store and a stub supervisor."""
    supervisor = StubSupervisor()
    monkeypatch.setattr(migrate_distance, "SidecarSupervisor", lambda: supervisor)
    monkeypatch.setattr(migrate_distance, "ChromaStore", lambda: store)
    monkeypatch.setattr(migrate_distance, "DistanceMigrator", lambda _store: migrator)
    return supervisor


class TestRunCommand:
    async def test_status_reports_without_changes(self, store, migrator, command, capsys):
        seed(store)
        assert await migrate_distance.run(dry_run=False, status_only=True) == 0
        out = capsys.readouterr().out
        assert "(pending)" in out
        assert "5 records, metric l2" in out
        assert store.collections["memories"].distance_metric == "l2"
        assert not command.launched

    async def test_dry_run_reports_without_changes(self, store, migrator, command, capsys):
        seed(store)
        assert await migrate_distance.run(dry_run=True, status_only=False) == 0
        out = capsys.readouterr().out
        assert "DRY RUN MODE - No changes applied" in out
        assert store.collections["memories"].distance_metric == "l2"
        assert migrator.marker.status() is MigrationStatus.PENDING
        assert not command.launched

    async def test_inspection_needs_running_sidecar(self, command, capsys):
        command.live = False
        assert await migrate_distance.run(dry_run=True, status_only=False) == 1
        assert "not reachable" in capsys.readouterr().out
        assert not command.launched

    async def test_apply(self, store, migrator, command, capsys):
        seed(store)
        assert await migrate_distance.run(dry_run=False, status_only=False) == 0
        assert "Migration complete" in capsys.readouterr().out
        assert command.launched
        assert store.collections["memories"].distance_metric == "cosine"
        assert migrator.marker.status() is MigrationStatus.DONE

    async def test_apply_failure(self, store, migrator, command, capsys):
        seed(store)
        store.fail_on.add("get")
        assert await migrate_distance.run(dry_run=False, status_only=False) == 1
        assert "Migration failed" in capsys.readouterr().out
        assert migrator.marker.status() is MigrationStatus.PENDING

    async def test_apply_sidecar_not_ready(self, store, command, capsys):
        command.readiness = Readiness.failed("did not become ready in time")
        assert await migrate_distance.run(dry_run=False, status_only=False) == 1
        assert "did not become ready in time" in capsys.readouterr().out
        assert store.calls == []

    def test_main_exit_code(self, store, command, monkeypatch):
        monkeypatch.setattr("sys.argv", ["migrate_distance.py", "--status"])
        with pytest.raises(SystemExit) as exc:
            migrate_distance.main()
        assert exc.value.code == 0
