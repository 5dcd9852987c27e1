"""
One-time distance-metric migration for the memories collection.

Chroma fixes a collection's distance space at creation, so switching metric
(e.g. l2 -> cosine) means recreating the collection. The stored embeddings
are reused as-is: a migration never calls the embedding provider.

A snapshot left by a failed attempt is merged with whatever the collection
holds on the next run (live records win), so memories written in between
survive the resume.

IMPORTANT: the collection is unavailable between delete and re-insert.
Single-writer operation is assumed; nothing guards against two processes
migrating the same data directory at once.
"""

from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from chroma_store import ChromaStore
from config import CONFIG
from utils import now_iso


class MigrationStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"


class MigrationMarker:
    """Filesystem sentinel: present (with a timestamp) once migration completed."""

    def __init__(self, path: Path):
        self.path = path

    def status(self) -> MigrationStatus:
        return MigrationStatus.DONE if self.path.exists() else MigrationStatus.PENDING

    def completed_at(self) -> str | None:
        try:
            return self.path.read_text().strip() or None
        except OSError:
            return None

    def mark_done(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(now_iso())


@dataclass
class CollectionDump:
    """Index-aligned copy of every record in a collection."""

    ids: list[str] = field(default_factory=list)
    documents: list[str | None] = field(default_factory=list)
    metadatas: list[dict | None] = field(default_factory=list)
    embeddings: list[list[float]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.ids)

    def extend(self, page: dict) -> None:
        self.ids.extend(page["ids"])
        self.documents.extend(page["documents"])
        self.metadatas.extend(page["metadatas"])
        self.embeddings.extend([list(e) for e in page["embeddings"]])

    def merge(self, newer: CollectionDump) -> None:
        """Overlay ``newer`` by id: its records replace ours, unseen ids are appended."""
        index = {record_id: i for i, record_id in enumerate(self.ids)}
        for i, record_id in enumerate(newer.ids):
            row = (newer.documents[i], newer.metadatas[i], list(newer.embeddings[i]))
            if record_id in index:
                j = index[record_id]
                self.documents[j], self.metadatas[j], self.embeddings[j] = row
            else:
                index[record_id] = len(self.ids)
                self.ids.append(record_id)
                self.documents.append(row[0])
                self.metadatas.append(row[1])
                self.embeddings.append(row[2])

    def batches(self, size: int):
        for start in range(0, len(self.ids), size):
            end = start + size
            yield (
                self.ids[start:end],
                self.embeddings[start:end],
                self.documents[start:end],
                self.metadatas[start:end],
            )

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(
            json.dumps(
                {
                    "ids": self.ids,
                    "documents": self.documents,
                    "metadatas": self.metadatas,
                    "embeddings": self.embeddings,
                }
            )
        )
        tmp.replace(path)

    @classmethod
    def load(cls, path: Path) -> CollectionDump:
        data = json.loads(path.read_text())
        dump = cls(
            ids=data["ids"],
            documents=data["documents"],
            metadatas=data["metadatas"],
            embeddings=data["embeddings"],
        )
        if not (len(dump.ids) == len(dump.documents) == len(dump.metadatas) == len(dump.embeddings)):
            raise ValueError(f"Corrupt migration snapshot: {path}")
        return dump


class DistanceMigrator:
    """Recreates a collection under a new distance metric, reusing its embeddings."""

    def __init__(
        self,
        store: ChromaStore,
        collection_name: str = CONFIG.collection_name,
        metric: str = CONFIG.distance_metric,
        marker: MigrationMarker | None = None,
        snapshot_path: Path | None = None,
        batch_size: int = CONFIG.migration_batch_size,
    ):
        self.store = store
        self.collection_name = collection_name
        self.metric = metric
        self.marker = marker or MigrationMarker(CONFIG.marker_path)
        self.snapshot_path = snapshot_path or CONFIG.snapshot_path
        self.batch_size = batch_size

    async def migrate_if_needed(self) -> MigrationStatus:
        """Run the migration once; failures are logged and retried next start."""
        if self.marker.status() is MigrationStatus.DONE:
            return MigrationStatus.DONE
        try:
            await asyncio.to_thread(self.run)
        except Exception as e:
            print(
                f"[recall] Distance migration failed, will retry on next start: {e}",
                file=sys.stderr,
            )
            return MigrationStatus.PENDING
        return self.marker.status()

    def run(self) -> None:
        """Blocking migration body. Raises on any failure, leaving no marker."""
        collection = self.store.get_collection(self.collection_name)

        if self.snapshot_path.exists():
            dump = CollectionDump.load(self.snapshot_path)
            if (
                collection is not None
                and collection.distance_metric != self.metric
                and collection.count() >= len(dump)
            ):
                # never deleted; the live collection supersedes the snapshot
                print(
                    "[recall] Source collection intact, discarding stale migration snapshot",
                    file=sys.stderr,
                )
                self.snapshot_path.unlink()
            else:
                if collection is not None:
                    dump.merge(self._read_all(collection, collection.count()))
                    dump.save(self.snapshot_path)
                print(
                    f"[recall] Resuming migration from snapshot ({len(dump)} records)",
                    file=sys.stderr,
                )
                self._recreate(dump)
                self._finish()
                return

        if collection is None:
            self._finish()
            return

        if collection.distance_metric == self.metric:
            self._finish()
            return

        total = collection.count()
        if total == 0:
            self.store.delete_collection(self.collection_name)
            self.store.create_collection(self.collection_name, self.metric)
            self._finish()
            return

        dump = self._read_all(collection, total)
        dump.save(self.snapshot_path)
        print(
            f"[recall] Migrating {len(dump)} memories from {collection.distance_metric} "
            f"to {self.metric}",
            file=sys.stderr,
        )
        self._recreate(dump)
        self._finish()

    def _read_all(self, collection, total: int) -> CollectionDump:
        dump = CollectionDump()
        while True:
            page = collection.get(
                limit=self.batch_size,
                offset=len(dump),
                include=["documents", "metadatas", "embeddings"],
            )
            dump.extend(page)
            if len(page["ids"]) < self.batch_size:
                break
        if len(dump) != total:
            raise RuntimeError(f"Read {len(dump)} of {total} records; not migrating")
        return dump

    def _recreate(self, dump: CollectionDump) -> None:
        if self.store.get_collection(self.collection_name) is not None:
            self.store.delete_collection(self.collection_name)
        target = self.store.create_collection(self.collection_name, self.metric)
        for ids, embeddings, documents, metadatas in dump.batches(self.batch_size):
            target.add(ids=ids, embeddings=embeddings, documents=documents, metadatas=metadatas)

    def _finish(self) -> None:
        self.marker.mark_done()
        self.snapshot_path.unlink(missing_ok=True)
