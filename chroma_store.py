"""
Minimal Chroma v2 REST client.

The vector engine runs as a separate server process (see sidecar.py), so all
access goes over HTTP with ``requests``. Calls are blocking; async callers
wrap them in ``asyncio.to_thread``.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

import requests

from config import CONFIG
from models import VectorRecord

EmbeddingFunction = Callable[[list[str]], list[list[float]]]

DEFAULT_TENANT = "default_tenant"
DEFAULT_DATABASE = "default_database"
LIST_PAGE_SIZE = 100
REQUEST_TIMEOUT = 30


class ChromaError(RuntimeError):
    """Non-2xx response from the Chroma server."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"Chroma error {status_code}: {message}")
        self.status_code = status_code
        self.message = message


def placeholder_embeddings(texts: list[str]) -> list[list[float]]:
    """Constant vectors for collections that are looked up by id/metadata only."""
    return [[0.0] for _ in texts]


def build_where(**conditions: str | None) -> dict | None:
    """Equality filter over non-empty values, AND-combined.

    Chroma rejects ``$and`` with fewer than two clauses, so a single
    condition is returned bare.
    """
    clauses = [{key: {"$eq": value}} for key, value in conditions.items() if value]
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def upsert_records(collection: Collection, records: Sequence[VectorRecord]) -> None:
    """Insert-or-replace whole records; embeddings must already be computed."""
    collection.upsert(
        ids=[r.id for r in records],
        embeddings=[r.embedding for r in records],
        documents=[r.content for r in records],
        metadatas=[r.metadata for r in records],
    )


class ChromaStore:
    """Collection administration for one tenant/database."""

    def __init__(
        self,
        base_url: str | None = None,
        tenant: str = DEFAULT_TENANT,
        database: str = DEFAULT_DATABASE,
        session: requests.Session | None = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self.base_url = (base_url or CONFIG.base_url).rstrip("/")
        self.tenant = tenant
        self.database = database
        self.timeout = timeout
        self._http = session or requests.Session()

    @property
    def collections_url(self) -> str:
        return (
            f"{self.base_url}/api/v2/tenants/{self.tenant}"
            f"/databases/{self.database}/collections"
        )

    def request(self, method: str, url: str, **kwargs: Any) -> Any:
        kwargs.setdefault("timeout", self.timeout)
        response = self._http.request(method, url, **kwargs)
        if not response.ok:
            try:
                body = response.json()
                message = body.get("message") or body.get("error") or response.text
            except ValueError:
                message = response.text
            raise ChromaError(response.status_code, message)
        if not response.content:
            return None
        return response.json()

    def list_collections(self) -> list[dict]:
        collections: list[dict] = []
        offset = 0
        while True:
            page = self.request(
                "GET", self.collections_url, params={"limit": LIST_PAGE_SIZE, "offset": offset}
            ) or []
            collections.extend(page)
            if len(page) < LIST_PAGE_SIZE:
                return collections
            offset += LIST_PAGE_SIZE

    def get_collection(
        self, name: str, embedding_function: EmbeddingFunction | None = None
    ) -> Collection | None:
        """Look up a collection by name; ``None`` when it does not exist."""
        for info in self.list_collections():
            if info.get("name") == name:
                return Collection(self, info, embedding_function)
        return None

    def create_collection(
        self,
        name: str,
        metric: str = CONFIG.distance_metric,
        embedding_function: EmbeddingFunction | None = None,
        get_or_create: bool = False,
    ) -> Collection:
        info = self.request(
            "POST",
            self.collections_url,
            json={
                "name": name,
                "metadata": {"hnsw:space": metric},
                "get_or_create": get_or_create,
            },
        )
        return Collection(self, info, embedding_function)

    def get_or_create_collection(
        self,
        name: str,
        metric: str = CONFIG.distance_metric,
        embedding_function: EmbeddingFunction | None = None,
    ) -> Collection:
        return self.create_collection(name, metric, embedding_function, get_or_create=True)

    def delete_collection(self, name: str) -> None:
        self.request("DELETE", f"{self.collections_url}/{name}")


class Collection:
    """Handle to one collection; record operations address it by id."""

    def __init__(
        self,
        store: ChromaStore,
        info: dict,
        embedding_function: EmbeddingFunction | None = None,
    ):
        self._store = store
        self.id: str = info["id"]
        self.name: str = info.get("name", "")
        self.metadata: dict = info.get("metadata") or {}
        self.configuration: dict = info.get("configuration_json") or {}
        self._embed = embedding_function

    def __repr__(self) -> str:
        return f"Collection(name={self.name!r}, metric={self.distance_metric!r})"

    @property
    def distance_metric(self) -> str:
        """Configured space; Chroma defaults to l2 when none was given."""
        hnsw = self.configuration.get("hnsw") or {}
        return hnsw.get("space") or self.metadata.get("hnsw:space") or "l2"

    def _url(self, action: str) -> str:
        return f"{self._store.collections_url}/{self.id}/{action}"

    def _resolve_embeddings(
        self, documents: Sequence[str] | None, embeddings: Sequence[Sequence[float]] | None
    ) -> list[list[float]] | None:
        if embeddings is not None:
            return [list(e) for e in embeddings]
        if documents is None:
            return None
        if self._embed is None:
            raise ValueError(f"Collection {self.name!r} has no embedding function; pass embeddings")
        return self._embed(list(documents))

    def _write(
        self,
        action: str,
        ids: Sequence[str],
        embeddings: Sequence[Sequence[float]] | None = None,
        documents: Sequence[str] | None = None,
        metadatas: Sequence[dict | None] | None = None,
    ) -> None:
        body: dict[str, Any] = {"ids": list(ids)}
        vectors = self._resolve_embeddings(documents, embeddings)
        if vectors is not None:
            body["embeddings"] = vectors
        if documents is not None:
            body["documents"] = list(documents)
        if metadatas is not None:
            body["metadatas"] = list(metadatas)
        self._store.request("POST", self._url(action), json=body)

    def add(self, ids, embeddings=None, documents=None, metadatas=None) -> None:
        self._write("add", ids, embeddings, documents, metadatas)

    def upsert(self, ids, embeddings=None, documents=None, metadatas=None) -> None:
        """Insert-or-replace by id."""
        self._write("upsert", ids, embeddings, documents, metadatas)

    def get(
        self,
        ids: Sequence[str] | None = None,
        where: dict | None = None,
        limit: int | None = None,
        offset: int | None = None,
        include: Sequence[str] = ("documents", "metadatas"),
    ) -> dict[str, list]:
        body: dict[str, Any] = {"include": list(include)}
        if ids is not None:
            body["ids"] = list(ids)
        if where:
            body["where"] = where
        if limit is not None:
            body["limit"] = limit
        if offset is not None:
            body["offset"] = offset
        result = self._store.request("POST", self._url("get"), json=body) or {}
        count = len(result.get("ids") or [])
        return {
            "ids": result.get("ids") or [],
            "documents": result.get("documents") or [None] * count,
            "metadatas": result.get("metadatas") or [None] * count,
            "embeddings": result.get("embeddings") or [None] * count,
        }

    def query(
        self,
        query_embeddings: Sequence[Sequence[float]] | None = None,
        query_texts: Sequence[str] | None = None,
        n_results: int = 10,
        where: dict | None = None,
        include: Sequence[str] = ("documents", "metadatas", "distances"),
    ) -> dict[str, list]:
        """Nearest-neighbour search; one result list per query vector."""
        vectors = self._resolve_embeddings(query_texts, query_embeddings)
        if vectors is None:
            raise ValueError("query needs query_embeddings or query_texts")
        body: dict[str, Any] = {
            "query_embeddings": vectors,
            "n_results": n_results,
            "include": list(include),
        }
        if where:
            body["where"] = where
        result = self._store.request("POST", self._url("query"), json=body) or {}
        return {
            key: result.get(key) or [[] for _ in vectors]
            for key in ("ids", "documents", "metadatas", "distances")
        }

    def delete(self, ids: Sequence[str] | None = None, where: dict | None = None) -> None:
        body: dict[str, Any] = {}
        if ids is not None:
            body["ids"] = list(ids)
        if where:
            body["where"] = where
        self._store.request("POST", self._url("delete"), json=body)

    def count(self) -> int:
        return int(self._store.request("GET", self._url("count")) or 0)
