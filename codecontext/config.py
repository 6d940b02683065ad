"""Configuration paths and defaults for the local code-context caches."""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(os.environ.get("CODECONTEXT_HOME", str(Path.home() / ".codecontext"))).expanduser()
CACHE_DIR = BASE_DIR / "cache"
GRAPH_CACHE_DIR = CACHE_DIR / "graphs"
SEMANTIC_CACHE_DIR = CACHE_DIR / "semantic"

# Files above this size are skipped while scanning a project (5 MiB)
DEFAULT_MAX_FILE_SIZE = 5 * 1024 * 1024

# Embedding batches: items inside a batch run concurrently, batches run
# one after another with a fixed pause to respect service rate limits.
DEFAULT_BATCH_SIZE = 10
DEFAULT_BATCH_DELAY = 0.1

# Embedding model used when nothing is configured (offline token hashing)
DEFAULT_EMBEDDING_MODEL = "hash"


def ensure_base_dirs() -> None:
    """Create base directories for local caches if needed."""
    GRAPH_CACHE_DIR.mkdir(parents=True, exist_ok=True)
    SEMANTIC_CACHE_DIR.mkdir(parents=True, exist_ok=True)
