"""Near-duplicate suppression for auto-captured memories."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Sequence

from chroma_store import Collection
from config import CONFIG


async def nearest_distance(
    embedding: Sequence[float], collection: Collection
) -> tuple[float | None, str | None]:
    """Distance to the single nearest neighbour (``None`` if the collection is empty)."""
    try:
        result = await asyncio.to_thread(
            collection.query,
            query_embeddings=[list(embedding)],
            n_results=1,
            include=["distances"],
        )
    except Exception as e:
        return None, f"Nearest-neighbour query failed: {e}"

    distances = result.get("distances") or [[]]
    if not distances or not distances[0]:
        return None, None  # empty collection
    return float(distances[0][0]), None


async def is_duplicate(
    embedding: Sequence[float],
    collection: Collection,
    threshold: float | None = None,
) -> bool:
    """True when the closest stored record is nearer than ``threshold``.

    Strict comparison: a distance exactly at the threshold is not a duplicate.
    Must run after embedding and before insert. Advisory only, nothing is
    locked, so two concurrent captures of the same text can both pass.
    """
    limit = CONFIG.dedup_distance if threshold is None else threshold
    distance, error = await nearest_distance(embedding, collection)
    if error:
        print(f"[recall] Dedup check skipped: {error}", file=sys.stderr)
        return False
    return distance is not None and distance < limit
