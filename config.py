"""Shared configuration for recall-mcp."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

VALID_TYPES = frozenset({"discovery", "decision", "bugfix", "feature", "change"})
VALID_METRICS = frozenset({"cosine", "l2", "ip"})


@dataclass(frozen=True, slots=True)
class Config:
    """Server configuration with sensible defaults."""

    data_dir: Path = Path(os.environ.get("RECALL_DATA_DIR", Path.home() / ".recall" / "chroma_data"))
    chroma_host: str = os.environ.get("RECALL_CHROMA_HOST", "localhost")
    chroma_port: int = int(os.environ.get("RECALL_CHROMA_PORT", "8321"))
    collection_name: str = "memories"
    session_collection_name: str = "sessions"
    distance_metric: str = os.environ.get("RECALL_DISTANCE_METRIC", "cosine")  # cosine | l2 | ip

    # Sidecar supervision
    probe_timeout: float = 2.0
    poll_interval: float = 1.0
    ready_timeout: float = float(os.environ.get("RECALL_READY_TIMEOUT", "30"))
    chroma_command: str = os.environ.get("RECALL_CHROMA_COMMAND", "chroma")
    container_image: str = os.environ.get("RECALL_CONTAINER_IMAGE", "chromadb/chroma")
    container_name: str = "recall-chroma"

    # Migration
    migration_batch_size: int = 500
    marker_name: str = ".distance_migrated"
    snapshot_name: str = ".migration_snapshot.json"

    # Heuristics (no derivation, tune per embedding model)
    dedup_distance: float = float(os.environ.get("RECALL_DEDUP_DISTANCE", "0.05"))
    chars_per_token: int = int(os.environ.get("RECALL_CHARS_PER_TOKEN", "4"))
    default_context_tokens: int = 2000
    default_context_pool: int = 20

    # Embedding provider
    embedding_provider: str = os.environ.get("EMBEDDING_PROVIDER", "ollama")  # ollama | google
    embedding_model: str = os.environ.get("EMBEDDING_MODEL", "nomic-embed-text")
    google_embedding_model: str = "gemini-embedding-001"
    embedding_dim: int = int(os.environ.get("EMBEDDING_DIM", "768"))
    ollama_base_url: str = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")

    def __post_init__(self):
        if self.chars_per_token <= 0:
            raise ValueError(f"RECALL_CHARS_PER_TOKEN must be positive, got {self.chars_per_token}")
        if self.distance_metric not in VALID_METRICS:
            raise ValueError(
                f"RECALL_DISTANCE_METRIC must be one of {sorted(VALID_METRICS)}, got {self.distance_metric!r}"
            )

    @property
    def base_url(self) -> str:
        return f"http://{self.chroma_host}:{self.chroma_port}"

    @property
    def marker_path(self) -> Path:
        return self.data_dir / self.marker_name

    @property
    def snapshot_path(self) -> Path:
        return self.data_dir / self.snapshot_name


CONFIG = Config()
