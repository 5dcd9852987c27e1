"""
Token budgeting for recall results.

Token counts are a character-length estimate, not a tokenizer: callers must
treat every budget here as approximate.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

from config import CONFIG
from models import ScoredCandidate

TRUNCATION_MARKER = "…"


def estimate_tokens(text: str, chars_per_token: int | None = None) -> int:
    """Rough token estimate: ``ceil(len(text) / chars_per_token)``."""
    k = chars_per_token or CONFIG.chars_per_token
    return math.ceil(len(text) / k)


def distance_to_similarity(distance: float | None, metric: str = "cosine") -> float:
    """Map a Chroma distance onto a ``[0, 1]`` similarity score."""
    if distance is None:
        return 0.0
    if metric == "l2":
        return round(1 / (1 + max(distance, 0.0)), 3)
    return round(min(max(1 - distance, 0.0), 1.0), 3)


def apply_token_budget(
    candidates: Sequence[ScoredCandidate],
    max_tokens: int,
    chars_per_token: int | None = None,
) -> tuple[list[ScoredCandidate], int]:
    """Greedily select candidates, in the given order, that fit ``max_tokens``.

    Candidates must already be ranked by descending similarity; they are
    not re-sorted. A candidate that does not fit is skipped, except the first
    one, which is truncated to the remaining budget (and ends the walk) so a
    non-empty budget never returns nothing because of one long top hit.

    Returns ``(selected, tokens_used)``.
    """
    if max_tokens <= 0:
        return [], 0

    k = chars_per_token or CONFIG.chars_per_token
    selected: list[ScoredCandidate] = []
    remaining = max_tokens

    for i, candidate in enumerate(candidates):
        if candidate.tokens <= remaining:
            selected.append(candidate)
            remaining -= candidate.tokens
        elif i == 0 and remaining > 0:
            truncated = candidate.content[: remaining * k] + TRUNCATION_MARKER
            selected.append(candidate.model_copy(update={"content": truncated, "tokens": remaining}))
            remaining = 0
            break

    return selected, max_tokens - remaining


def format_context_block(candidates: Sequence[ScoredCandidate]) -> str:
    """Render selected memories as a ``<recall-context>`` prompt block."""
    if not candidates:
        return "<recall-context>\n(no relevant memories found)\n</recall-context>"

    lines = ["<recall-context>"]
    for mem in candidates:
        project_part = f"project: {mem.project} | " if mem.project else ""
        lines.append(f"[{project_part}type: {mem.type} | {mem.created_at[:10]}]")
        lines.append(mem.content)
        lines.append("")
    lines.append("</recall-context>")
    return "\n".join(lines)
