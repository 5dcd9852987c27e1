"""Shared utility functions for recall-mcp."""

import random
import re
import string
import time
from datetime import datetime, timedelta, timezone

_ID_ALPHABET = string.ascii_lowercase + string.digits


def now_iso() -> str:
    """Get current UTC timestamp as ISO string."""
    return datetime.now(timezone.utc).isoformat()


def later_than(previous: str) -> str:
    """Current timestamp, nudged forward if the clock has not moved past ``previous``."""
    current = now_iso()
    if previous and current <= previous:
        try:
            current = (datetime.fromisoformat(previous) + timedelta(microseconds=1)).isoformat()
        except ValueError:
            pass
    return current


def make_id(prefix: str, suffix_len: int = 6) -> str:
    """Build ``<prefix>_<epoch-ms>_<random>`` identifiers.

    Examples:
        make_id("ses") -> ses_1760856000123_k3x9qa
        make_id("auto", 4) -> auto_1760856000123_p0zd
    """
    suffix = "".join(random.choices(_ID_ALPHABET, k=suffix_len))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def project_from_cwd(cwd: str) -> str:
    """Last path component of a Unix or Windows working directory."""
    parts = [p for p in re.split(r"[/\\]", cwd or "") if p]
    return parts[-1] if parts else ""
