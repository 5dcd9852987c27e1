"""Shared fixtures: an in-memory stand-in for the Chroma server."""

import copy
import itertools

import numpy as np
import pytest


class FakeChromaFailure(RuntimeError):
    pass


def _distance(a, b, metric: str) -> float:
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if metric == "l2":
        return float(np.sum((a - b) ** 2))
    if metric == "ip":
        return float(1 - np.dot(a, b))
    denom = np.linalg.norm(a) * np.linalg.norm(b)
    return float(1 - np.dot(a, b) / denom) if denom else 1.0


def _matches(metadata: dict | None, where: dict | None) -> bool:
    if not where:
        return True
    if "$and" in where:
        return all(_matches(metadata, clause) for clause in where["$and"])
    meta = metadata or {}
    return all(meta.get(key) == cond["$eq"] for key, cond in where.items())


class FakeCollection:
    """Implements the subset of ``chroma_store.Collection`` the app uses."""

    _ids = itertools.count(1)

    def __init__(self, store, name: str, metric: str, embedding_function=None):
        self._store = store
        self.id = f"col-{next(self._ids)}"
        self.name = name
        self.metadata = {"hnsw:space": metric}
        self.configuration = {}
        self._embed = embedding_function
        self.records: dict[str, dict] = {}
        self.calls: list[str] = []

    @property
    def distance_metric(self) -> str:
        return self.metadata["hnsw:space"]

    def _check(self, op: str):
        self.calls.append(op)
        self._store._check(op)

    def _vectors(self, documents, embeddings):
        if embeddings is not None:
            return [list(e) for e in embeddings]
        if documents is None:
            return None
        if self._embed is None:
            raise ValueError("no embedding function")
        return self._embed(list(documents))

    def _write(self, ids, embeddings, documents, metadatas, replace: bool):
        vectors = self._vectors(documents, embeddings)
        for i, record_id in enumerate(ids):
            if not replace and record_id in self.records:
                continue
            self.records[record_id] = {
                "document": documents[i] if documents is not None else None,
                "metadata": copy.deepcopy(metadatas[i]) if metadatas is not None else None,
                "embedding": vectors[i] if vectors is not None else None,
            }

    def add(self, ids, embeddings=None, documents=None, metadatas=None):
        self._check("add")
        self._write(ids, embeddings, documents, metadatas, replace=False)

    def upsert(self, ids, embeddings=None, documents=None, metadatas=None):
        self._check("upsert")
        self._write(ids, embeddings, documents, metadatas, replace=True)

    def get(self, ids=None, where=None, limit=None, offset=None, include=("documents", "metadatas")):
        self._check("get")
        selected = [
            (record_id, rec)
            for record_id, rec in self.records.items()
            if (ids is None or record_id in ids) and _matches(rec["metadata"], where)
        ]
        start = offset or 0
        end = start + limit if limit is not None else None
        selected = selected[start:end]
        return {
            "ids": [record_id for record_id, _ in selected],
            "documents": [copy.deepcopy(rec["document"]) for _, rec in selected],
            "metadatas": [copy.deepcopy(rec["metadata"]) for _, rec in selected],
            "embeddings": [list(rec["embedding"]) for _, rec in selected]
            if "embeddings" in include
            else [None] * len(selected),
        }

    def query(self, query_embeddings=None, query_texts=None, n_results=10, where=None, include=()):
        self._check("query")
        vectors = self._vectors(query_texts, query_embeddings)
        result = {"ids": [], "documents": [], "metadatas": [], "distances": []}
        for vector in vectors:
            hits = sorted(
                (
                    (_distance(vector, rec["embedding"], self.distance_metric), record_id, rec)
                    for record_id, rec in self.records.items()
                    if _matches(rec["metadata"], where)
                ),
                key=lambda hit: hit[0],
            )[:n_results]
            result["ids"].append([record_id for _, record_id, _ in hits])
            result["documents"].append([rec["document"] for _, _, rec in hits])
            result["metadatas"].append([copy.deepcopy(rec["metadata"]) for _, _, rec in hits])
            result["distances"].append([d for d, _, _ in hits])
        return result

    def delete(self, ids=None, where=None):
        self._check("delete")
        for record_id in list(self.records):
            if (ids is None or record_id in ids) and _matches(self.records[record_id]["metadata"], where):
                del self.records[record_id]

    def count(self) -> int:
        self._check("count")
        return len(self.records)


class FakeStore:
    """In-memory ``chroma_store.ChromaStore`` with per-operation failure injection."""

    base_url = "http://fake-chroma:8321"

    def __init__(self):
        self.collections: dict[str, FakeCollection] = {}
        self.fail_on: set[str] = set()
        self.calls: list[str] = []

    def _check(self, op: str):
        if op in self.fail_on:
            raise FakeChromaFailure(f"injected failure in {op}")

    def list_collections(self):
        self._check("list_collections")
        return [{"id": c.id, "name": c.name, "metadata": c.metadata} for c in self.collections.values()]

    def get_collection(self, name, embedding_function=None):
        self._check("get_collection")
        collection = self.collections.get(name)
        if collection is not None and embedding_function is not None:
            collection._embed = embedding_function
        return collection

    def create_collection(self, name, metric="cosine", embedding_function=None, get_or_create=False):
        self.calls.append(f"create:{name}:{metric}")
        self._check("create_collection")
        if name in self.collections:
            if not get_or_create:
                raise FakeChromaFailure(f"collection {name} already exists")
            existing = self.collections[name]
            existing._embed = embedding_function or existing._embed
            return existing
        collection = FakeCollection(self, name, metric, embedding_function)
        self.collections[name] = collection
        return collection

    def get_or_create_collection(self, name, metric="cosine", embedding_function=None):
        return self.create_collection(name, metric, embedding_function, get_or_create=True)

    def delete_collection(self, name):
        self.calls.append(f"delete:{name}")
        self._check("delete_collection")
        if name not in self.collections:
            raise FakeChromaFailure(f"collection {name} does not exist")
        del self.collections[name]


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def memories(store):
    return store.create_collection("memories", "cosine")


@pytest.fixture
def sessions(store):
    return store.create_collection("sessions", "l2", embedding_function=lambda texts: [[0.0] for _ in texts])
