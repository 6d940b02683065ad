"""Semantic index manager: build, update and cache the vector index.

Pipeline for a full build::

    graph -> extract_code_units -> [max_units] -> enrich_units_with_code
          -> drop empty units -> embed (unless skipped) -> vector store

The units map, the embeddings map and the vector store move in lock-step:
every embedded unit id has exactly one vector-store entry and every
vector-store entry has an embedding.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional, Set

from .code_units import ReadFile, enrich_units_with_code, extract_code_units
from .embeddings import EmbeddingGenerator
from .graph_builder import read_source
from .models import (
    DependencyGraph,
    EmbeddingResult,
    IndexStats,
    SemanticIndex,
    VectorMetadata,
)
from .storage import INDEX_VERSION, SemanticIndexCache
from .vector_store import InMemoryVectorStore

logger = logging.getLogger(__name__)


def _read_from_disk(path: str) -> str:
    return read_source(Path(path))


def stale_files(index: SemanticIndex, graph: DependencyGraph) -> Set[str]:
    """Files whose content changed since their units were indexed.

    Covers files added to or removed from the graph as well.
    """
    stale = {
        path for path, record in graph.files.items()
        if index.file_hashes.get(path) != record.content_hash
    }
    stale.update(path for path in index.file_hashes if path not in graph.files)
    stale.update(unit.file for unit in index.units.values() if unit.file not in graph.files)
    return stale


def compute_index_stats(index: SemanticIndex) -> IndexStats:
    breakdown: Dict[str, int] = {}
    for unit in index.units.values():
        breakdown[unit.language] = breakdown.get(unit.language, 0) + 1
    return IndexStats(
        total_units=len(index.units),
        total_embeddings=len(index.embeddings),
        language_breakdown=breakdown,
    )


class SemanticIndexManager:
    """Builds and maintains the semantic index of one project at a time."""

    def __init__(
        self,
        generator: EmbeddingGenerator,
        cache: Optional[SemanticIndexCache] = None,
        read_file: Optional[ReadFile] = None,
    ) -> None:
        self.generator = generator
        self.cache = cache or SemanticIndexCache()
        self.read_file = read_file or _read_from_disk

    # ------------------------------------------------------------------
    # Build / update
    # ------------------------------------------------------------------

    def build(
        self,
        graph: DependencyGraph,
        max_units: Optional[int] = None,
        skip_embeddings: bool = False,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> SemanticIndex:
        units = extract_code_units(graph)
        if max_units is not None:
            units = units[:max_units]
        units = [u for u in enrich_units_with_code(units, self.read_file) if u.code.strip()]

        index = SemanticIndex(
            project_root=graph.project_root,
            version=INDEX_VERSION,
            model=self.generator.model,
            last_updated=time.time(),
            vector_store=InMemoryVectorStore(),
            units={u.id: u for u in units},
            file_hashes={path: record.content_hash for path, record in graph.files.items()},
        )
        if not skip_embeddings:
            self._insert(index, self.generator.batch_generate_embeddings(units, on_progress=on_progress))
        index.stats = compute_index_stats(index)
        logger.info(
            "Semantic index built: %d units, %d embeddings",
            index.stats.total_units, index.stats.total_embeddings,
        )
        return index

    def update(
        self,
        index: SemanticIndex,
        changed_files: Iterable[str],
        graph: DependencyGraph,
    ) -> SemanticIndex:
        """Replace the units of *changed_files* in place.

        Embeddings whose unit content did not change are reused.
        """
        changed = {os.path.abspath(p) for p in changed_files}
        previous: Dict[str, EmbeddingResult] = {}
        for uid, unit in list(index.units.items()):
            if unit.file not in changed:
                continue
            vector = index.embeddings.pop(uid, None)
            if vector is not None:
                previous[uid] = EmbeddingResult(
                    unit_id=uid,
                    vector=vector,
                    model=index.model,
                    generated_at=index.last_updated,
                    content_hash=unit.metadata.content_hash,
                )
            index.vector_store.delete(uid)
            del index.units[uid]

        fresh = extract_code_units(graph, paths=changed)
        fresh = [u for u in enrich_units_with_code(fresh, self.read_file) if u.code.strip()]
        for unit in fresh:
            index.units[unit.id] = unit
        for path in changed:
            record = graph.files.get(path)
            if record is None:
                index.file_hashes.pop(path, None)
            else:
                index.file_hashes[path] = record.content_hash
        self._insert(index, self.generator.incremental_generate_embeddings(fresh, previous))

        index.last_updated = time.time()
        index.stats = compute_index_stats(index)
        logger.info("Semantic index updated for %d files", len(changed))
        return index

    def _insert(self, index: SemanticIndex, results: Dict[str, EmbeddingResult]) -> None:
        for uid, result in results.items():
            unit = index.units.get(uid)
            if unit is None:
                continue
            index.embeddings[uid] = result.vector
            index.vector_store.insert(uid, result.vector, VectorMetadata.for_unit(unit))

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def load_or_build(
        self,
        graph: DependencyGraph,
        changed_files: Optional[Iterable[str]] = None,
        force_rebuild: bool = False,
        max_units: Optional[int] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> SemanticIndex:
        """Return the cached index or build one.

        A cached index is patched for *changed_files* plus every file whose
        graph content hash no longer matches the one recorded at indexing
        time, so edits seen by an earlier graph load are not missed.
        """
        if not force_rebuild:
            cached = self.cache.load(graph.project_root, expected_model=self.generator.model)
            if cached is not None:
                changed = sorted(stale_files(cached, graph).union(changed_files or []))
                if changed:
                    self.update(cached, changed, graph)
                    self.cache.save(cached)
                return cached

        index = self.build(graph, max_units=max_units, on_progress=on_progress)
        self.cache.save(index)
        return index

    def clear_cache(self, project_root: str) -> bool:
        return self.cache.clear(project_root)
