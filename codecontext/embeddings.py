"""Embedding services and the batched embedding generator.

Supported backends (configure via ``cctx config set-embedding``):

========== ============================ ====== =================================
Key        Remote model                 Dim    Notes
========== ============================ ====== =================================
hash       (none)                       256    Offline token hashing, no semantics
ollama     nomic-embed-text (default)   768    Local Ollama server over HTTP
gemini     text-embedding-004           768    Hosted Google API, needs a key
========== ============================ ====== =================================

Architecture:
- A service only has to provide ``embed_text(text) -> List[float]`` and a
  ``model_key`` naming the model that produced the vector.
- :class:`EmbeddingGenerator` batches code units: requests inside a batch
  run concurrently on a thread pool, batches run one after another with a
  fixed delay to respect service rate limits.  A failed unit is logged and
  left out; it never aborts the batch.
- Embeddings are reused while a unit's content hash and the model stay
  the same (see :meth:`EmbeddingGenerator.incremental_generate_embeddings`).
"""

from __future__ import annotations

import logging
import math
import re
import time
from concurrent.futures import ThreadPoolExecutor
from hashlib import blake2b
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests

from .code_units import build_embedding_text
from .config import DEFAULT_BATCH_DELAY, DEFAULT_BATCH_SIZE, DEFAULT_EMBEDDING_MODEL
from .models import CodeUnit, EmbeddingResult

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

REQUEST_TIMEOUT = 30


class EmbeddingError(RuntimeError):
    """Raised when an embedding service call fails."""


# ===================================================================
# Model Registry
# ===================================================================

EMBEDDING_MODELS: Dict[str, Dict[str, Any]] = {
    "hash": {
        "name": "Hash Embedding",
        "remote_model": None,
        "dim": 256,
        "description": "Offline fallback, keyword-level similarity only",
    },
    "ollama": {
        "name": "Ollama embeddings",
        "remote_model": "nomic-embed-text",
        "dim": 768,
        "description": "Local Ollama server (POST /api/embeddings)",
    },
    "gemini": {
        "name": "Gemini text-embedding-004",
        "remote_model": "text-embedding-004",
        "dim": 768,
        "description": "Google Generative Language API, needs an API key",
    },
}


# ===================================================================
# HashEmbeddingModel  (offline)
# ===================================================================

class HashEmbeddingModel:
    """Deterministic token-hashing embedder with no external service.

    Provides basic keyword-level similarity.  Used as the default when no
    embedding service is configured.
    """

    model_key = "hash"

    def __init__(self, dim: int = 256) -> None:
        self.dim = dim

    def embed_text(self, text: str) -> List[float]:
        vec = [0.0] * self.dim
        tokens = _TOKEN_RE.findall(text.lower())
        if not tokens:
            return vec
        for token in tokens:
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "big") % self.dim
            sign = 1.0 if (digest[4] & 1) == 0 else -1.0
            vec[idx] += sign
        return _l2_normalize(vec)


# ===================================================================
# HTTP embedders
# ===================================================================

class OllamaEmbedder:
    """Embeddings from a local Ollama server."""

    def __init__(
        self,
        endpoint: str = "http://127.0.0.1:11434",
        model: str = "nomic-embed-text",
        timeout: int = REQUEST_TIMEOUT,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.model_key = f"ollama:{model}"

    def embed_text(self, text: str) -> List[float]:
        try:
            resp = requests.post(
                f"{self.endpoint}/api/embeddings",
                json={"model": self.model, "prompt": text},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            vector = resp.json()["embedding"]
        except (requests.RequestException, ValueError, KeyError) as exc:
            raise EmbeddingError(f"Ollama embedding request failed: {exc}") from exc
        return [float(v) for v in vector]


class GeminiEmbedder:
    """Embeddings from the Google Generative Language API."""

    BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-004",
        timeout: int = REQUEST_TIMEOUT,
    ) -> None:
        if not api_key:
            raise ValueError("Gemini embeddings need an API key (set [embeddings].api_key)")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.model_key = f"gemini:{model}"

    def embed_text(self, text: str) -> List[float]:
        try:
            resp = requests.post(
                f"{self.BASE_URL}/{self.model}:embedContent",
                params={"key": self.api_key},
                json={
                    "model": f"models/{self.model}",
                    "content": {"parts": [{"text": text}]},
                },
                timeout=self.timeout,
            )
            resp.raise_for_status()
            vector = resp.json()["embedding"]["values"]
        except (requests.RequestException, ValueError, KeyError) as exc:
            raise EmbeddingError(f"Gemini embedding request failed: {exc}") from exc
        return [float(v) for v in vector]


# ===================================================================
# Factory
# ===================================================================

def get_embedder(model_key: Optional[str] = None) -> Any:
    """Return the configured embedding service.

    Resolution order:

    1. Explicit ``model_key`` argument.
    2. ``[embeddings].model`` from ``~/.codecontext/config.toml``.
    3. ``"hash"`` (offline fallback).
    """
    from .config_manager import load_embedding_config

    emb_cfg = load_embedding_config()
    if model_key is None:
        model_key = emb_cfg.get("model", DEFAULT_EMBEDDING_MODEL)

    if model_key == "hash":
        return HashEmbeddingModel()
    if model_key == "ollama":
        return OllamaEmbedder(
            endpoint=emb_cfg.get("endpoint") or "http://127.0.0.1:11434",
            model=emb_cfg.get("name") or EMBEDDING_MODELS["ollama"]["remote_model"],
        )
    if model_key == "gemini":
        return GeminiEmbedder(
            api_key=emb_cfg.get("api_key", ""),
            model=emb_cfg.get("name") or EMBEDDING_MODELS["gemini"]["remote_model"],
        )

    logger.warning("Unknown embedding model '%s', falling back to hash.", model_key)
    return HashEmbeddingModel()


# ===================================================================
# Generator
# ===================================================================

class EmbeddingGenerator:
    """Turns code units into embedding results using one service."""

    def __init__(
        self,
        embedder: Any,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay: float = DEFAULT_BATCH_DELAY,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.embedder = embedder
        self.batch_size = batch_size
        self.batch_delay = batch_delay

    @property
    def model(self) -> str:
        return getattr(self.embedder, "model_key", DEFAULT_EMBEDDING_MODEL)

    def generate_embedding(self, text: str) -> List[float]:
        """Embed a single text; service errors propagate."""
        return list(self.embedder.embed_text(text))

    def _embed_unit(self, unit: CodeUnit) -> EmbeddingResult:
        return EmbeddingResult(
            unit_id=unit.id,
            vector=self.generate_embedding(build_embedding_text(unit)),
            model=self.model,
            generated_at=time.time(),
            content_hash=unit.metadata.content_hash,
        )

    def batch_generate_embeddings(
        self,
        units: Iterable[CodeUnit],
        batch_size: Optional[int] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> Dict[str, EmbeddingResult]:
        """Embed *units* batch by batch.

        Items of a batch are embedded concurrently; a pause of
        ``batch_delay`` seconds separates consecutive batches.
        """
        pending = list(units)
        size = batch_size or self.batch_size
        total = len(pending)
        results: Dict[str, EmbeddingResult] = {}

        for offset in range(0, total, size):
            if offset and self.batch_delay > 0:
                time.sleep(self.batch_delay)
            batch = pending[offset:offset + size]
            with ThreadPoolExecutor(max_workers=len(batch)) as pool:
                futures = [pool.submit(self._embed_unit, unit) for unit in batch]
                for unit, future in zip(batch, futures):
                    try:
                        results[unit.id] = future.result()
                    except Exception as exc:
                        logger.warning("Failed to embed %s: %s", unit.id, exc)
            if on_progress is not None:
                on_progress(min(offset + size, total), total)

        logger.info("Embedded %d of %d units with %s", len(results), total, self.model)
        return results

    def needs_regeneration(self, unit: CodeUnit, existing: Optional[EmbeddingResult]) -> bool:
        if existing is None:
            return True
        return existing.content_hash != unit.metadata.content_hash or existing.model != self.model

    def incremental_generate_embeddings(
        self,
        units: Iterable[CodeUnit],
        existing: Dict[str, EmbeddingResult],
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> Dict[str, EmbeddingResult]:
        """Reuse still-valid embeddings and generate the rest."""
        results: Dict[str, EmbeddingResult] = {}
        stale: List[CodeUnit] = []
        for unit in units:
            prior = existing.get(unit.id)
            if self.needs_regeneration(unit, prior):
                stale.append(unit)
            else:
                results[unit.id] = prior
        reused = len(results)
        results.update(self.batch_generate_embeddings(stale, on_progress=on_progress))
        logger.info("Reused %d embeddings, regenerated %d", reused, len(stale))
        return results


# ===================================================================
# Utility
# ===================================================================

def cosine_similarity(vec_a: List[float], vec_b: List[float]) -> float:
    """Cosine similarity between two vectors.

    Returns a value in ``[-1, 1]``.  Empty, zero-magnitude or mismatched
    vectors return ``0.0``.
    """
    if not vec_a or not vec_b or len(vec_a) != len(vec_b):
        return 0.0
    dot = sum(a * b for a, b in zip(vec_a, vec_b))
    norm_a = math.sqrt(sum(a * a for a in vec_a))
    norm_b = math.sqrt(sum(b * b for b in vec_b))
    if norm_a < 1e-12 or norm_b < 1e-12:
        return 0.0
    return dot / (norm_a * norm_b)


def _l2_normalize(vec: List[float]) -> List[float]:
    """Return *vec* scaled to unit length; a zero vector is returned unchanged."""
    norm = math.sqrt(sum(v * v for v in vec))
    if norm < 1e-12:
        return vec
    return [v / norm for v in vec]
