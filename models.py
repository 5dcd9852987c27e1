"""Shared data models for recall-mcp."""

from __future__ import annotations

import json

from pydantic import BaseModel, Field


class VectorRecord(BaseModel):
    """A document stored in a Chroma collection.

    Chroma metadata values are scalars only, so arrays and objects are kept
    as JSON strings (``tags``, ``projects``, ``types_seen``).
    """

    id: str  # caller-assigned, re-insert is an upsert
    content: str
    embedding: list[float] | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class ScoredCandidate(BaseModel):
    """A query hit with its similarity and estimated token cost. Never stored."""

    id: str
    content: str
    type: str = ""
    project: str | None = None
    tags: list[str] = Field(default_factory=list)
    similarity: float = 0.0
    created_at: str = ""
    tokens: int = 0

    @classmethod
    def from_hit(
        cls, record_id: str, document: str | None, metadata: dict | None, similarity: float, tokens: int
    ) -> ScoredCandidate:
        meta = metadata or {}
        return cls(
            id=record_id,
            content=document or "",
            type=meta.get("type", ""),
            project=meta.get("project") or None,
            tags=parse_json_list(meta.get("tags")),
            similarity=similarity,
            created_at=meta.get("created_at", ""),
            tokens=tokens,
        )


class SessionRecord(BaseModel):
    """Persisted summary of one server run.

    ``end_time`` stays empty while the session is open; a record that keeps
    an empty ``end_time`` after its process died is an orphaned session.
    """

    session_id: str
    start_time: str
    end_time: str = ""
    memory_count: int = 0
    projects: list[str] = Field(default_factory=list)
    types_seen: list[str] = Field(default_factory=list)
    summary: str = ""

    @property
    def is_open(self) -> bool:
        return not self.end_time

    def to_metadata(self) -> dict[str, str]:
        return {
            "session_id": self.session_id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "memory_count": str(self.memory_count),
            "projects": json.dumps(self.projects),
            "types_seen": json.dumps(self.types_seen),
        }

    @classmethod
    def from_metadata(cls, metadata: dict | None, summary: str = "") -> SessionRecord:
        meta = metadata or {}
        try:
            memory_count = int(meta.get("memory_count", "0"))
        except (TypeError, ValueError):
            memory_count = 0
        return cls(
            session_id=meta.get("session_id", ""),
            start_time=meta.get("start_time", ""),
            end_time=meta.get("end_time", ""),
            memory_count=memory_count,
            projects=parse_json_list(meta.get("projects")),
            types_seen=parse_json_list(meta.get("types_seen")),
            summary=summary or "",
        )


def parse_json_list(value: str | None) -> list[str]:
    """Decode a JSON-array metadata value, tolerating junk."""
    if not value:
        return []
    try:
        decoded = json.loads(value)
    except (TypeError, ValueError):
        return []
    return [str(v) for v in decoded] if isinstance(decoded, list) else []
