"""
Embedding provider client.

Ollama (local) is the primary provider with Google GenAI as fallback. When
both fail callers get ``None`` and must skip the write; there is no
synthetic fallback vector.
"""

from __future__ import annotations

import asyncio
import os
import sys
import threading
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import requests

from config import CONFIG

if TYPE_CHECKING:
    from google.genai import Client as GenAIClient

_lock = threading.Lock()
_genai_client: GenAIClient | None = None


def _get_api_key() -> str:
    """Get API key from environment or secrets file."""
    key = os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")
    if key:
        return key
    secrets_path = Path.home() / ".secrets" / "GOOGLE_API_KEY"
    if secrets_path.exists():
        return secrets_path.read_text().strip()
    raise ValueError(
        "GOOGLE_API_KEY not found. Set environment variable or create ~/.secrets/GOOGLE_API_KEY"
    )


def get_genai_client() -> GenAIClient:
    """Get or create the GenAI client singleton (thread-safe)."""
    global _genai_client
    if _genai_client is None:
        with _lock:
            if _genai_client is None:
                from google import genai

                _genai_client = genai.Client(api_key=_get_api_key())
    return _genai_client


def normalize(values) -> list[float]:
    """Fit to ``CONFIG.embedding_dim`` (truncate or zero-pad) and scale to unit length."""
    embedding = np.asarray(values, dtype=np.float64)
    if len(embedding) > CONFIG.embedding_dim:
        embedding = embedding[: CONFIG.embedding_dim]
    elif len(embedding) < CONFIG.embedding_dim:
        embedding = np.concatenate([embedding, np.zeros(CONFIG.embedding_dim - len(embedding))])
    norm = np.linalg.norm(embedding)
    return (embedding / norm).tolist() if norm > 0 else embedding.tolist()


def _compute_embedding_ollama(text: str) -> list[float] | None:
    try:
        response = requests.post(
            f"{CONFIG.ollama_base_url}/api/embeddings",
            json={"model": CONFIG.embedding_model, "prompt": text},
            timeout=30,
        )
        response.raise_for_status()
        values = response.json().get("embedding") or []
        if not values:
            return None
        return normalize(values)
    except Exception as e:
        print(f"[recall] Ollama embedding error: {e}", file=sys.stderr)
        return None


def _compute_embedding_google(text: str, task_type: str) -> list[float] | None:
    try:
        from google.genai import types

        response = get_genai_client().models.embed_content(
            model=CONFIG.google_embedding_model,
            contents=text,
            config=types.EmbedContentConfig(
                task_type=task_type, output_dimensionality=CONFIG.embedding_dim
            ),
        )
        return normalize(response.embeddings[0].values)
    except Exception as e:
        print(f"[recall] Google embedding error: {e}", file=sys.stderr)
        return None


def compute_embedding(text: str, task_type: str = "SEMANTIC_SIMILARITY") -> list[float] | None:
    """Synchronous embedding with provider fallback chain."""
    if CONFIG.embedding_provider.lower() == "ollama":
        result = _compute_embedding_ollama(text)
        if result:
            return result
        print("[recall] Ollama failed, falling back to Google", file=sys.stderr)
    return _compute_embedding_google(text, task_type)


@lru_cache(maxsize=128)
def _compute_embedding_cached(text: str, task_type: str) -> tuple[float, ...] | None:
    result = compute_embedding(text, task_type)
    return tuple(result) if result else None


async def get_embedding(text: str, task_type: str = "SEMANTIC_SIMILARITY") -> list[float] | None:
    """Embed one text off the event loop, with an LRU cache."""
    cached = await asyncio.to_thread(_compute_embedding_cached, text, task_type)
    return list(cached) if cached else None


def embed_documents(texts: list[str]) -> list[list[float]]:
    """Embedding function for collection handles; raises if any text fails."""
    vectors = []
    for text in texts:
        cached = _compute_embedding_cached(text, "RETRIEVAL_DOCUMENT")
        if cached is None:
            raise RuntimeError(f"Failed to embed document of length {len(text)}")
        vectors.append(list(cached))
    return vectors
