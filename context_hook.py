#!/usr/bin/env python3
"""
Session start context hook.

Injects a table of the most recent memories for the current project (topped
up with global ones when the project has few) into the new agent session via
``hookSpecificOutput.additionalContext``.

Like the capture hook it only probes the sidecar, never launches it, and
always exits 0; any failure yields an empty context.
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path

from chroma_store import ChromaStore, Collection, build_where
from config import CONFIG
from models import ScoredCandidate
from sidecar import http_probe
from utils import now_iso, project_from_cwd

LOG_PATH = Path.home() / ".recall" / "logs" / "context.log"

MAX_MEMORIES = 10
PREVIEW_CHARS = 120
TYPE_ICONS = {"discovery": "D", "decision": "A", "bugfix": "B", "feature": "F", "change": "C"}
EMPTY_MESSAGE = "No memories found. Use `save_memory` to start building persistent context."


def log(message: str, level: str = "INFO"):
    LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().isoformat()
    with LOG_PATH.open("a") as f:
        f.write(f"[{timestamp}] {level}: {message}\n")


def _fetch(collection: Collection, where: dict | None) -> list[ScoredCandidate]:
    result = collection.get(where=where, limit=MAX_MEMORIES * 3, include=["documents", "metadatas"])
    return [
        ScoredCandidate.from_hit(record_id, document, metadata, similarity=0.0, tokens=0)
        for record_id, document, metadata in zip(result["ids"], result["documents"], result["metadatas"])
    ]


def recent_memories(collection: Collection, project: str) -> list[ScoredCandidate]:
    """Newest memories for ``project``, padded with global ones if it has fewer than half a page."""
    memories = _fetch(collection, build_where(project=project)) if project else []
    if len(memories) < MAX_MEMORIES // 2:
        seen = {m.id for m in memories}
        memories += [m for m in _fetch(collection, None) if m.id not in seen]
    memories.sort(key=lambda m: m.created_at, reverse=True)
    return memories[:MAX_MEMORIES]


def preview(content: str) -> str:
    if len(content) > PREVIEW_CHARS:
        content = content[:PREVIEW_CHARS].rstrip() + "..."
    return content.replace("|", "\\|").replace("\n", " ")


def format_context(memories: list[ScoredCandidate], project: str, total: int) -> str:
    lines = [f"# [recall] {project or 'global'} context - {now_iso()[:10]}", ""]
    if not memories:
        lines.append(EMPTY_MESSAGE)
        return "\n".join(lines)

    lines.append(
        f"Recent memories ({len(memories)} of {total} total). "
        "Use `get_context` or `search_memory` for full content."
    )
    lines.append("")
    lines.append("| ID | Date | T | Preview |")
    lines.append("|----|------|---|---------|")
    for m in memories:
        date = m.created_at[:10] or "unknown"
        lines.append(f"| {m.id} | {date} | {TYPE_ICONS.get(m.type, '?')} | {preview(m.content)} |")
    lines.append("")
    lines.append("**Legend:** D=discovery A=decision B=bugfix F=feature C=change")
    if total > len(memories):
        lines.append(
            f"{total - len(memories)} older memories not shown. Use `search_memory` to find specific ones."
        )
    return "\n".join(lines)


async def build_context(payload: dict, store: ChromaStore | None = None) -> str:
    project = project_from_cwd(payload.get("cwd") or str(Path.cwd()))

    store = store or ChromaStore()
    if not await asyncio.to_thread(http_probe, f"{store.base_url}/api/v2/heartbeat"):
        log("Chroma sidecar not running; no context injected", "WARNING")
        return ""

    collection = await asyncio.to_thread(store.get_collection, CONFIG.collection_name)
    if collection is None:
        log(f"Collection {CONFIG.collection_name} missing; no context injected", "WARNING")
        return ""

    total = await asyncio.to_thread(collection.count)
    memories = await asyncio.to_thread(recent_memories, collection, project)
    log(f"Injected {len(memories)} of {total} memories for {project or 'global'}")
    return format_context(memories, project, total)


def emit(additional_context: str):
    output = {
        "hookSpecificOutput": {
            "hookEventName": "SessionStart",
            "additionalContext": additional_context,
        }
    }
    print(json.dumps(output))


def main():
    payload = {}
    try:
        raw = sys.stdin.read()
        if raw.strip():
            payload = json.loads(raw)
    except json.JSONDecodeError as e:
        log(f"Invalid JSON input: {e}", "ERROR")
    if not isinstance(payload, dict):
        payload = {}

    try:
        context = asyncio.run(build_context(payload))
    except Exception as e:
        log(f"Context build failed: {e}", "ERROR")
        context = ""

    emit(context)
    sys.exit(0)


if __name__ == "__main__":
    main()
