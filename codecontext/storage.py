"""Persistence layer for per-project graph and semantic index caches.

Architecture:
- One JSON file per project and cache kind, named after an md5 hash of the
  absolute project root (``graph-<hash>.json``,
  ``semantic-index-<hash>.json``).
- Maps are flattened into ``[key, value]`` pair lists on disk.
- A cache that cannot be read, has the wrong shape or carries another
  version is treated as absent; the caller rebuilds.
- Writes are whole-file; concurrent writers for the same project race and
  the last writer wins.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from . import config
from .graph_builder import (
    GRAPH_VERSION,
    GraphBuildError,
    ProgressCallback,
    build_graph,
    read_source,
    scan_project,
    update_graph,
)
from .models import (
    CodeUnit,
    DependencyGraph,
    FileRecord,
    GraphLoadResult,
    GraphStats,
    IndexStats,
    SemanticIndex,
    SymbolLocation,
    VectorMetadata,
)
from .parser import ParserRegistry, content_hash, default_registry
from .vector_store import InMemoryVectorStore

logger = logging.getLogger(__name__)

INDEX_VERSION = "1.0.0"


def cache_key(project_root: str) -> str:
    """Stable, irreversible key for a project root."""
    absolute = str(Path(project_root).resolve())
    return hashlib.md5(absolute.encode("utf-8")).hexdigest()


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable cache file %s: %s", path, exc)
        return None
    if not isinstance(data, dict):
        logger.warning("Ignoring malformed cache file %s", path)
        return None
    return data


def _write_json(path: Path, data: Dict[str, Any]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def _remove_matching(cache_dir: Path, pattern: str) -> int:
    if not cache_dir.exists():
        return 0
    removed = 0
    for path in cache_dir.glob(pattern):
        path.unlink()
        removed += 1
    return removed


# ===================================================================
# Graph cache
# ===================================================================

class GraphCache:
    """Disk cache for dependency graphs with incremental invalidation."""

    def __init__(
        self,
        cache_dir: Optional[Path] = None,
        registry: Optional[ParserRegistry] = None,
        include: Optional[Sequence[str]] = None,
        exclude: Optional[Sequence[str]] = None,
        max_file_size: int = config.DEFAULT_MAX_FILE_SIZE,
    ) -> None:
        self.cache_dir = Path(cache_dir) if cache_dir is not None else config.GRAPH_CACHE_DIR
        self.registry = registry or default_registry()
        self.include = include
        self.exclude = exclude
        self.max_file_size = max_file_size

    def cache_path(self, project_root: str) -> Path:
        return self.cache_dir / f"graph-{cache_key(project_root)}.json"

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, graph: DependencyGraph) -> Path:
        data = {
            "files": [[path, graph.files[path].to_dict()] for path in sorted(graph.files)],
            "symbols": [
                [name, [loc.to_dict() for loc in locations]]
                for name, locations in graph.symbols.items()
            ],
            "lastUpdated": graph.last_updated,
            "projectRoot": graph.project_root,
            "version": graph.version,
            "stats": graph.stats.to_dict(),
        }
        path = _write_json(self.cache_path(graph.project_root), data)
        logger.debug("Saved graph cache %s", path)
        return path

    def load(self, project_root: str) -> Optional[DependencyGraph]:
        path = self.cache_path(project_root)
        data = _read_json(path)
        if data is None:
            return None
        if data.get("version") != GRAPH_VERSION:
            logger.info("Graph cache %s has version %s, expected %s", path, data.get("version"), GRAPH_VERSION)
            return None
        try:
            return DependencyGraph(
                project_root=data["projectRoot"],
                version=data["version"],
                last_updated=float(data["lastUpdated"]),
                files={path_: FileRecord.from_dict(rec) for path_, rec in data["files"]},
                symbols={
                    name: [SymbolLocation.from_dict(loc) for loc in locations]
                    for name, locations in data["symbols"]
                },
                stats=GraphStats.from_dict(data["stats"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring malformed graph cache %s: %s", path, exc)
            return None

    def clear(self, project_root: str) -> bool:
        path = self.cache_path(project_root)
        if path.exists():
            path.unlink()
            return True
        return False

    def clear_all(self) -> int:
        return _remove_matching(self.cache_dir, "graph-*.json")

    # ------------------------------------------------------------------
    # Change detection
    # ------------------------------------------------------------------

    def detect_changed_files(self, graph: DependencyGraph) -> List[str]:
        """Return known files whose content may differ from the graph.

        A newer mtime or a different size marks a file changed outright;
        otherwise the content hash decides.  Unreadable files count as changed.
        """
        changed: List[str] = []
        for path, record in graph.files.items():
            file_path = Path(path)
            try:
                stat = file_path.stat()
                if stat.st_mtime > record.last_modified or stat.st_size != record.size:
                    changed.append(path)
                elif content_hash(read_source(file_path)) != record.content_hash:
                    changed.append(path)
            except OSError:
                changed.append(path)
        return sorted(changed)

    def detect_added_files(self, graph: DependencyGraph) -> List[str]:
        """Return eligible files that appeared since *graph* was built."""
        root = Path(graph.project_root)
        if not root.is_dir():
            return []
        found = scan_project(root, self.registry, self.include, self.exclude, self.max_file_size)
        return [str(p) for p in found if str(p) not in graph.files]

    # ------------------------------------------------------------------
    # Load or build
    # ------------------------------------------------------------------

    def load_or_build(
        self,
        project_root: str,
        force_rebuild: bool = False,
        on_progress: Optional[ProgressCallback] = None,
    ) -> GraphLoadResult:
        start = time.perf_counter()
        root = str(Path(project_root).resolve())

        if not force_rebuild:
            cached = self.load(root)
            if cached is not None:
                changed = self.detect_changed_files(cached) + self.detect_added_files(cached)
                if changed:
                    logger.info("Updating graph for %d changed files", len(changed))
                    update_graph(
                        cached, changed, self.registry,
                        self.include, self.exclude, self.max_file_size,
                    )
                    self.save(cached)
                return GraphLoadResult(
                    graph=cached,
                    from_cache=True,
                    duration_ms=int((time.perf_counter() - start) * 1000),
                    changed_files=changed,
                )

        result = build_graph(
            root,
            include=self.include,
            exclude=self.exclude,
            max_file_size=self.max_file_size,
            skip_errors=True,
            on_progress=on_progress,
            registry=self.registry,
        )
        if not result.success:
            details = "; ".join(f"{e['file']}: {e['error']}" for e in result.errors)
            raise GraphBuildError(f"Failed to build dependency graph for {root}: {details}")
        self.save(result.graph)
        return GraphLoadResult(
            graph=result.graph,
            from_cache=False,
            duration_ms=int((time.perf_counter() - start) * 1000),
            changed_files=sorted(result.graph.files),
        )


# ===================================================================
# Semantic index cache
# ===================================================================

class SemanticIndexCache:
    """Disk cache for semantic indexes; the vector store is rebuilt on load."""

    def __init__(self, cache_dir: Optional[Path] = None) -> None:
        self.cache_dir = Path(cache_dir) if cache_dir is not None else config.SEMANTIC_CACHE_DIR

    def cache_path(self, project_root: str) -> Path:
        return self.cache_dir / f"semantic-index-{cache_key(project_root)}.json"

    def save(self, index: SemanticIndex) -> Path:
        data = {
            "units": [[uid, unit.to_dict()] for uid, unit in index.units.items()],
            "embeddings": [[uid, vector] for uid, vector in index.embeddings.items()],
            "lastUpdated": index.last_updated,
            "projectRoot": index.project_root,
            "version": index.version,
            "stats": index.stats.to_dict(),
            "vectorStoreData": None,
            "model": index.model,
            "fileHashes": sorted(index.file_hashes.items()),
        }
        path = _write_json(self.cache_path(index.project_root), data)
        logger.debug("Saved semantic index cache %s", path)
        return path

    def load(self, project_root: str, expected_model: Optional[str] = None) -> Optional[SemanticIndex]:
        path = self.cache_path(project_root)
        data = _read_json(path)
        if data is None:
            return None
        if data.get("version") != INDEX_VERSION:
            logger.info("Semantic index %s has version %s, expected %s", path, data.get("version"), INDEX_VERSION)
            return None
        if expected_model is not None and data.get("model") != expected_model:
            logger.info("Semantic index %s was built with model %s", path, data.get("model"))
            return None

        try:
            units: Dict[str, CodeUnit] = {uid: CodeUnit.from_dict(u) for uid, u in data["units"]}
            store = InMemoryVectorStore()
            embeddings: Dict[str, List[float]] = {}
            for uid, vector in data["embeddings"]:
                unit = units.get(uid)
                if unit is None:
                    logger.debug("Dropping orphan embedding %s", uid)
                    continue
                embeddings[uid] = [float(v) for v in vector]
                store.insert(uid, embeddings[uid], VectorMetadata.for_unit(unit))
            return SemanticIndex(
                project_root=data["projectRoot"],
                version=data["version"],
                model=data.get("model", ""),
                last_updated=float(data["lastUpdated"]),
                vector_store=store,
                units=units,
                embeddings=embeddings,
                stats=IndexStats.from_dict(data.get("stats", {})),
                file_hashes={p: str(h) for p, h in data.get("fileHashes", [])},
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring malformed semantic index %s: %s", path, exc)
            return None

    def clear(self, project_root: str) -> bool:
        path = self.cache_path(project_root)
        if path.exists():
            path.unlink()
            return True
        return False

    def clear_all(self) -> int:
        return _remove_matching(self.cache_dir, "semantic-index-*.json")
