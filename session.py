"""
Per-run session tracking.

Counters live in memory on a ``SessionState`` owned by the server context
and are written to the ``sessions`` collection exactly twice: once when the
session opens and once when it closes.
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass, field
from enum import Enum

from chroma_store import Collection
from models import SessionRecord
from utils import later_than, make_id, now_iso

SESSION_NOT_STARTED = "Error: Session not started"


class SessionPhase(str, Enum):
    UNSTARTED = "unstarted"
    OPEN = "open"
    CLOSED = "closed"


def generate_session_id() -> str:
    return make_id("ses")


@dataclass
class SessionState:
    """In-memory activity counters for the current run."""

    phase: SessionPhase = SessionPhase.UNSTARTED
    session_id: str | None = None
    start_time: str = ""
    memory_count: int = 0
    # dicts as insertion-ordered sets
    projects: dict[str, None] = field(default_factory=dict)
    types_seen: dict[str, None] = field(default_factory=dict)

    def record(self, project: str | None, memory_type: str) -> None:
        self.memory_count += 1
        if project:
            self.projects[project] = None
        if memory_type:
            self.types_seen[memory_type] = None

    def summary(self) -> str:
        if self.memory_count == 0:
            return f"Session {self.session_id}: no memories saved."
        types = ", ".join(self.types_seen)
        projects = ", ".join(self.projects) or "none"
        return (
            f"Session {self.session_id}: {self.memory_count} memories saved. "
            f"Types: {types}. Projects: {projects}."
        )

    def to_record(self, start_time: str, end_time: str = "") -> SessionRecord:
        return SessionRecord(
            session_id=self.session_id or "",
            start_time=start_time,
            end_time=end_time,
            memory_count=self.memory_count,
            projects=list(self.projects),
            types_seen=list(self.types_seen),
        )


class SessionAggregator:
    """Opens, updates and closes the session record for one server run."""

    def __init__(self, collection: Collection, state: SessionState | None = None):
        self._collection = collection
        self.state = state or SessionState()

    def current_session_id(self) -> tuple[str | None, str | None]:
        if self.state.phase is SessionPhase.UNSTARTED:
            return None, SESSION_NOT_STARTED
        return self.state.session_id, None

    async def start_session(self, session_id: str | None = None) -> str | None:
        """Write the opening record and move to ``OPEN``. Returns an error or ``None``."""
        if self.state.phase is not SessionPhase.UNSTARTED:
            return f"Error: Session {self.state.session_id} already {self.state.phase.value}"

        session_id = session_id or generate_session_id()
        start_time = now_iso()
        self.state.session_id = session_id
        self.state.start_time = start_time
        record = self.state.to_record(start_time)
        try:
            await asyncio.to_thread(
                self._collection.upsert,
                ids=[session_id],
                documents=[f"Session {session_id} started"],
                metadatas=[record.to_metadata()],
            )
        except Exception as e:
            self.state.session_id = None
            self.state.start_time = ""
            return f"Error: Failed to open session {session_id}: {e}"

        self.state.phase = SessionPhase.OPEN
        return None

    def record_activity(self, project: str | None, memory_type: str) -> str | None:
        """Count one saved memory. Not persisted until ``end_session``."""
        if self.state.phase is SessionPhase.UNSTARTED:
            return SESSION_NOT_STARTED
        if self.state.phase is SessionPhase.CLOSED:
            return f"Error: Session {self.state.session_id} already closed"
        self.state.record(project, memory_type)
        return None

    async def _stored_start_time(self, session_id: str) -> str:
        try:
            existing = await asyncio.to_thread(
                self._collection.get, ids=[session_id], include=["metadatas"]
            )
        except Exception as e:
            print(f"[recall] Could not read session {session_id}: {e}", file=sys.stderr)
            return self.state.start_time
        if existing["ids"]:
            meta = existing["metadatas"][0] or {}
            return meta.get("start_time") or self.state.start_time
        return self.state.start_time

    async def end_session(self, session_id: str | None = None) -> str | None:
        """Merge the in-memory counters into the stored record and close it."""
        if self.state.phase is SessionPhase.UNSTARTED:
            return SESSION_NOT_STARTED
        if self.state.phase is SessionPhase.CLOSED:
            return f"Error: Session {self.state.session_id} already closed"
        session_id = session_id or self.state.session_id
        if session_id != self.state.session_id:
            return f"Error: Session {session_id} is not the current session"

        start_time = await self._stored_start_time(session_id)
        record = self.state.to_record(start_time, end_time=later_than(start_time))
        try:
            await asyncio.to_thread(
                self._collection.upsert,
                ids=[session_id],
                documents=[self.state.summary()],
                metadatas=[record.to_metadata()],
            )
        except Exception as e:
            return f"Error: Failed to close session {session_id}: {e}"

        self.state.phase = SessionPhase.CLOSED
        return None


async def list_sessions(collection: Collection, limit: int = 20, offset: int = 0) -> list[SessionRecord]:
    """Stored sessions, newest first. Open and orphaned ones have an empty ``end_time``."""
    result = await asyncio.to_thread(collection.get, include=["documents", "metadatas"])
    records = [
        SessionRecord.from_metadata(meta, summary=doc or "")
        for doc, meta in zip(result["documents"], result["metadatas"])
    ]
    records.sort(key=lambda r: r.start_time, reverse=True)
    return records[offset : offset + limit]
