#!/usr/bin/env python3
"""
Post-tool-use capture hook.

Records notable agent actions (meaningful shell commands, failures, source
file writes and edits) as memories without being asked. Embeds the
candidate, skips it if a near-duplicate already exists, then upserts it
with ``source="hook-auto"``.

The hook never launches the sidecar and always exits 0.
"""

from __future__ import annotations

import asyncio
import json
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from chroma_store import ChromaStore, Collection, upsert_records
from config import CONFIG
from dedup import is_duplicate
from embeddings import get_embedding
from models import VectorRecord
from sidecar import http_probe
from utils import make_id, now_iso, project_from_cwd

LOG_PATH = Path.home() / ".recall" / "logs" / "capture.log"
OWN_TOOL_PREFIX = "mcp__recall__"

INTERESTING_COMMANDS = [
    re.compile(p)
    for p in (
        r"git (commit|push|merge|rebase|tag)",
        r"(pip|uv|poetry) (install|add|remove)",
        r"npm (install|ci|publish)",
        r"docker (build|push|run|compose)",
        r"alembic (upgrade|downgrade|revision)",
        r"deploy",
        r"^ssh\s",
    )
]
SOURCE_FILE = re.compile(r"\.(ts|tsx|js|jsx|py|go|rs|sql|sh|yaml|yml|toml)$")
IGNORED_PATH = re.compile(r"node_modules|\.venv|__pycache__|dist|build|\.git|\.next")
ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[a-zA-Z]")


@dataclass
class CaptureDecision:
    content: str
    type: str
    tags: list[str] = field(default_factory=list)


def log(message: str, level: str = "INFO"):
    LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().isoformat()
    with LOG_PATH.open("a") as f:
        f.write(f"[{timestamp}] {level}: {message}\n")


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE.sub("", text).replace("\r", "")


def is_interesting_command(cmd: str) -> bool:
    return any(p.search(cmd) for p in INTERESTING_COMMANDS)


def is_capturable_path(path: str) -> bool:
    return bool(SOURCE_FILE.search(path)) and not IGNORED_PATH.search(path)


def should_capture(tool_name: str, tool_input: dict, tool_response: dict) -> CaptureDecision | None:
    """Decide whether a tool call is worth remembering."""
    tool_input = tool_input or {}
    tool_response = tool_response or {}

    if tool_name == "Bash":
        cmd = tool_input.get("command", "")
        exit_code = tool_response.get("exitCode", 0)
        stdout = strip_ansi(tool_response.get("stdout") or "")
        stderr = strip_ansi(tool_response.get("stderr") or "")

        if exit_code == 0 and is_interesting_command(cmd):
            content = f"Ran: {cmd[:200]}"
            if stdout:
                content += f"\nOutput: {stdout[:300]}"
            return CaptureDecision(content, "change", ["bash", "auto-captured"])

        if exit_code != 0 and len(stderr) > 20:
            return CaptureDecision(
                f"Command failed: {cmd[:150]}\nError: {stderr[:300]}",
                "bugfix",
                ["bash", "error", "auto-captured"],
            )

    if tool_name == "Write":
        path = tool_input.get("file_path", "")
        if is_capturable_path(path):
            return CaptureDecision(f"Created file: {path}", "change", ["file-change", "auto-captured"])

    if tool_name == "Edit":
        path = tool_input.get("file_path", "")
        if is_capturable_path(path):
            detail = f"Modified file: {path}"
            old = (tool_input.get("old_string") or "").strip()
            new = (tool_input.get("new_string") or "").strip()
            if old and new:
                detail += f"\n- {old[:100]} -> {new[:100]}"
            return CaptureDecision(detail, "change", ["file-change", "auto-captured"])

    return None


async def capture(decision: CaptureDecision, project: str, collection: Collection) -> str | None:
    """Embed, dedup-check and store one capture. Returns the new id, if stored."""
    embedding = await get_embedding(decision.content, task_type="RETRIEVAL_DOCUMENT")
    if embedding is None:
        log(f"Failed to generate embedding for: {decision.content[:100]}...", "ERROR")
        return None

    if await is_duplicate(embedding, collection):
        log(f"Skipping near-duplicate: {decision.content[:100]}...")
        return None

    record = VectorRecord(
        id=make_id("auto", 4),
        content=decision.content,
        embedding=embedding,
        metadata={
            "type": decision.type,
            "project": project,
            "tags": json.dumps(decision.tags),
            "created_at": now_iso(),
            "source": "hook-auto",
        },
    )
    await asyncio.to_thread(upsert_records, collection, [record])
    log(f"Auto-saved memory {record.id}: [{decision.type}] {decision.content[:100]}")
    return record.id


async def handle(payload: dict, store: ChromaStore | None = None) -> str | None:
    tool_name = payload.get("tool_name") or ""
    if tool_name.startswith(OWN_TOOL_PREFIX):
        return None

    decision = should_capture(tool_name, payload.get("tool_input"), payload.get("tool_response"))
    if decision is None:
        return None

    store = store or ChromaStore()
    if not await asyncio.to_thread(http_probe, f"{store.base_url}/api/v2/heartbeat"):
        log("Chroma sidecar not running; capture skipped", "WARNING")
        return None

    collection = await asyncio.to_thread(store.get_collection, CONFIG.collection_name)
    if collection is None:
        log(f"Collection {CONFIG.collection_name} missing; capture skipped", "WARNING")
        return None

    project = project_from_cwd(payload.get("cwd") or str(Path.cwd()))
    return await capture(decision, project, collection)


def main():
    try:
        payload = json.load(sys.stdin)
    except json.JSONDecodeError as e:
        log(f"Invalid JSON input: {e}", "ERROR")
        sys.exit(0)

    try:
        asyncio.run(handle(payload))
    except Exception as e:
        log(f"Capture failed: {e}", "ERROR")
    sys.exit(0)


if __name__ == "__main__":
    main()
