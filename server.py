#!/usr/bin/env python3
"""
Recall Memory MCP Server - Chroma sidecar implementation

Persistent agent memory backed by a Chroma server that this process
supervises:
- FastMCP for the tool surface, with a lifespan that owns all state
- Chroma (launched on demand) for vector storage, cosine distance
- One-time distance migration that reuses stored embeddings
- Token-budgeted context blocks for prompt injection
- Per-run session records
"""

import asyncio
import json
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from chroma_store import ChromaStore, Collection, build_where, placeholder_embeddings, upsert_records
from config import CONFIG, VALID_TYPES
from embeddings import embed_documents, get_embedding
from migration import DistanceMigrator
from models import ScoredCandidate, VectorRecord
from session import SessionAggregator, generate_session_id, list_sessions
from sidecar import SidecarSupervisor
from tokens import apply_token_budget, distance_to_similarity, estimate_tokens, format_context_block
from utils import make_id, now_iso


class SidecarUnavailable(RuntimeError):
    """The vector engine never became reachable; startup cannot continue."""


@dataclass
class RecallContext:
    """Everything the tools need, created once per server run."""

    store: ChromaStore
    memories: Collection
    sessions: Collection
    aggregator: SessionAggregator


async def bootstrap(
    store: ChromaStore | None = None,
    supervisor: SidecarSupervisor | None = None,
    migrator: DistanceMigrator | None = None,
    session_id: str | None = None,
) -> RecallContext:
    """Sidecar ready -> migration -> collection handles -> session opened, in that order."""
    store = store or ChromaStore()
    supervisor = supervisor or SidecarSupervisor(base_url=store.base_url)

    readiness = await supervisor.ensure_running()
    if not readiness.ready:
        raise SidecarUnavailable(f"Chroma sidecar {readiness.reason}")

    migrator = migrator or DistanceMigrator(store)
    status = await migrator.migrate_if_needed()
    print(f"[recall] Distance migration: {status.value}", file=sys.stderr)

    memories = await asyncio.to_thread(
        store.get_or_create_collection, CONFIG.collection_name, CONFIG.distance_metric, embed_documents
    )
    sessions = await asyncio.to_thread(
        store.get_or_create_collection, CONFIG.session_collection_name, "l2", placeholder_embeddings
    )

    aggregator = SessionAggregator(sessions)
    error = await aggregator.start_session(session_id or generate_session_id())
    if error:
        print(f"[recall] {error}", file=sys.stderr)

    return RecallContext(store=store, memories=memories, sessions=sessions, aggregator=aggregator)


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[RecallContext]:
    context = await bootstrap()
    print("[recall] Server ready", file=sys.stderr)
    try:
        yield context
    finally:
        error = await context.aggregator.end_session()
        if error:
            print(f"[recall] Session end error: {error}", file=sys.stderr)


mcp = FastMCP(
    "recall",
    instructions="Persistent memory across sessions with semantic search and token-budgeted context",
    lifespan=lifespan,
)


def _app(ctx: Context) -> RecallContext:
    return ctx.request_context.lifespan_context


def _normalize_type(memory_type: str | None) -> tuple[str | None, str | None]:
    """Normalize and validate a memory type string."""
    if memory_type is None:
        return None, None
    normalized = memory_type.lower()
    if normalized not in VALID_TYPES:
        return None, f"Error: Invalid type '{memory_type}'. Valid: {sorted(VALID_TYPES)}"
    return normalized, None


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def save_memory(
    content: str,
    ctx: Context,
    type: str = "discovery",
    project: str | None = None,
    tags: list[str] | None = None,
) -> str:
    """Save a memory for future sessions: discoveries, decisions, bug fixes.

    Args:
        content: The memory content to save
        type: One of discovery, decision, bugfix, feature, change
        project: Project name to scope the memory to
        tags: Optional tags for categorization
    """
    if not content.strip():
        return "Error: content is required"

    memory_type, error = _normalize_type(type or "discovery")
    if error:
        return error

    embedding = await get_embedding(content, task_type="RETRIEVAL_DOCUMENT")
    if embedding is None:
        return "Error: Failed to generate embedding. Check embedding provider configuration."

    app = _app(ctx)
    metadata = {
        "type": memory_type,
        "project": project or "",
        "tags": json.dumps(tags or []),
        "created_at": now_iso(),
    }
    session_id, _ = app.aggregator.current_session_id()
    if session_id:
        metadata["session_id"] = session_id

    record = VectorRecord(id=make_id("mem"), content=content, embedding=embedding, metadata=metadata)
    await asyncio.to_thread(upsert_records, app.memories, [record])

    error = app.aggregator.record_activity(project, memory_type)
    if error:
        print(f"[recall] Activity not tracked: {error}", file=sys.stderr)

    total = await asyncio.to_thread(app.memories.count)
    return f"Saved (ID: {record.id}, {memory_type})\nTotal memories: {total}"


async def _ranked_candidates(
    app: RecallContext, query: str, limit: int, project: str | None, memory_type: str | None
) -> tuple[list[ScoredCandidate] | None, str | None]:
    """Nearest memories to ``query``, best first, with similarity and token cost."""
    embedding = await get_embedding(query, task_type="RETRIEVAL_QUERY")
    if embedding is None:
        return None, "Error: Failed to generate embedding. Check embedding provider configuration."

    result = await asyncio.to_thread(
        app.memories.query,
        query_embeddings=[embedding],
        n_results=limit,
        where=build_where(project=project, type=memory_type),
    )

    metric = app.memories.distance_metric
    candidates = [
        ScoredCandidate.from_hit(
            record_id,
            document,
            metadata,
            similarity=distance_to_similarity(distance, metric),
            tokens=estimate_tokens(document or ""),
        )
        for record_id, document, metadata, distance in zip(
            result["ids"][0], result["documents"][0], result["metadatas"][0], result["distances"][0]
        )
    ]
    return candidates, None


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def search_memory(
    query: str,
    ctx: Context,
    limit: int = 10,
    project: str | None = None,
    type: str | None = None,
    max_tokens: int | None = None,
) -> str:
    """Semantic search over stored memories. Returns JSON hits with similarity scores.

    Args:
        query: Search query, matched semantically against stored memories
        limit: Max results (default 10)
        project: Optional project filter
        type: Optional memory type filter
        max_tokens: Optional token budget; results are trimmed to fit and the
            response reports tokens_used, max_tokens and truncated
    """
    if not query.strip():
        return "Error: query is required"
    if limit <= 0:
        return f"Error: limit must be positive, got {limit}"

    memory_type, error = _normalize_type(type)
    if error:
        return error

    candidates, error = await _ranked_candidates(_app(ctx), query, limit, project, memory_type)
    if error:
        return error
    if not candidates:
        return json.dumps({"results": [], "message": "No memories found."})

    selected = candidates
    response: dict = {}
    if max_tokens is not None:
        selected, used = apply_token_budget(candidates, max_tokens)
        truncated = len(selected) < len(candidates) or any(
            s.content != c.content for s, c in zip(selected, candidates)
        )
        response = {"tokens_used": used, "max_tokens": max_tokens, "truncated": truncated}

    results = [c.model_dump(exclude={"tokens"}) for c in selected]
    return json.dumps({"results": results, "total_searched": len(candidates), **response}, indent=2)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def get_context(
    query: str,
    ctx: Context,
    max_tokens: int = CONFIG.default_context_tokens,
    project: str | None = None,
    type: str | None = None,
    limit: int = CONFIG.default_context_pool,
) -> str:
    """Relevant memories as a <recall-context> block that fits a token budget.

    Args:
        query: Search query, matched semantically against stored memories
        max_tokens: Approximate token budget for the block (default 2000)
        project: Optional project filter
        type: Optional memory type filter
        limit: Candidate pool size before trimming to the budget (default 20)
    """
    if not query.strip():
        return "Error: query is required"
    if limit <= 0:
        return f"Error: limit must be positive, got {limit}"

    memory_type, error = _normalize_type(type)
    if error:
        return error

    candidates, error = await _ranked_candidates(_app(ctx), query, limit, project, memory_type)
    if error:
        return error

    selected, _ = apply_token_budget(candidates, max_tokens)
    return format_context_block(selected)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def session_history(ctx: Context, limit: int = 20, offset: int = 0) -> str:
    """List past sessions: memory count, projects touched, types saved.

    Args:
        limit: Max sessions to return (default 20)
        offset: Number of sessions to skip (default 0)
    """
    app = _app(ctx)
    records = await list_sessions(app.sessions, limit=limit, offset=offset)
    if not records:
        return "No sessions recorded yet."

    current_id, _ = app.aggregator.current_session_id()
    lines = [f"{len(records)} sessions:\n"]
    for record in records:
        if record.session_id == current_id and record.is_open:
            status = "current"
        elif record.is_open:
            status = "orphaned"
        else:
            status = "closed"
        lines.append(f"{record.session_id} ({status})")
        lines.append(f"    Started: {record.start_time[:19]} | Ended: {record.end_time[:19] or '-'}")
        lines.append(f"    Memories: {record.memory_count}")
        if record.projects:
            lines.append(f"    Projects: {', '.join(record.projects)}")
        if record.types_seen:
            lines.append(f"    Types: {', '.join(record.types_seen)}")
        lines.append("")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def get_session_memories(session_id: str, ctx: Context, limit: int = 50) -> str:
    """Memories saved during one session, oldest first.

    Args:
        session_id: Session ID as shown by session_history
        limit: Max memories to return (default 50)
    """
    if not session_id.strip():
        return "Error: session_id is required"
    if limit <= 0:
        return f"Error: limit must be positive, got {limit}"

    app = _app(ctx)
    result = await asyncio.to_thread(
        app.memories.get, where=build_where(session_id=session_id), limit=limit
    )
    hits = sorted(
        (
            ScoredCandidate.from_hit(record_id, document, metadata, similarity=0.0, tokens=0)
            for record_id, document, metadata in zip(result["ids"], result["documents"], result["metadatas"])
        ),
        key=lambda mem: mem.created_at,
    )
    if not hits:
        return f"No memories found for session {session_id}."

    lines = [f"{len(hits)} memories from session {session_id}:\n"]
    for mem in hits:
        project_part = f", {mem.project}" if mem.project else ""
        lines.append(f"[{mem.id}] ({mem.type}{project_part}) {mem.created_at[:19]}")
        lines.append(f"    {mem.content}")
        if mem.tags:
            lines.append(f"    Tags: {', '.join(mem.tags)}")
        lines.append("")
    return "\n".join(lines)


# =============================================================================
# Server Entry Point
# =============================================================================


def main():
    """Entry point."""
    fatal = None
    try:
        asyncio.run(mcp.run_stdio_async())
    except* SidecarUnavailable as group:
        fatal = group.exceptions[0]
    if fatal is not None:
        print(f"[recall] Fatal: {fatal}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
