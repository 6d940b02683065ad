"""Dependency graph builder.

Walks a project, parses every supported file through the parser registry and
assembles a :class:`~codecontext.models.DependencyGraph`:

1. enumerate files (deny-listed directories, dotfiles, unsupported
   extensions, oversized files and include/exclude globs are skipped),
2. parse each file into a :class:`~codecontext.models.FileRecord`,
3. rebuild the global symbol index from all definitions,
4. resolve usages: for every import that lands on a project file, record
   the importing file in ``used_in`` of the imported symbols.

Step 3 and 4 always run over the whole graph in sorted path order, so an
incremental :func:`update_graph` produces the same graph as a full build.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .config import DEFAULT_MAX_FILE_SIZE
from .models import (
    DependencyGraph,
    GraphBuildResult,
    GraphStats,
    ImportStatement,
    SymbolLocation,
)
from .parser import ParserRegistry, default_registry

logger = logging.getLogger(__name__)

GRAPH_VERSION = "1.0.0"

IGNORED_DIRS = {
    "node_modules", ".git", ".next", "dist", "build", ".vscode", ".idea",
    "__pycache__", "venv", "env", ".venv", "target", "out", "bin",
}
IGNORED_FILES = {".DS_Store", "Thumbs.db"}

SCRIPT_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")

ProgressCallback = Callable[[int, int, str], None]


class GraphBuildError(RuntimeError):
    """Raised when a full graph build is required and fails."""


def read_source(path: Path) -> str:
    """Read a source file the same way for parsing and change detection."""
    return path.read_text(encoding="utf-8", errors="ignore")


# ---------------------------------------------------------------------------
# File enumeration
# ---------------------------------------------------------------------------

def _matches(rel_path: str, patterns: Optional[Sequence[str]]) -> bool:
    return any(fnmatch.fnmatch(rel_path, pattern) for pattern in patterns or ())


def is_eligible(
    path: Path,
    root: Path,
    registry: ParserRegistry,
    include: Optional[Sequence[str]] = None,
    exclude: Optional[Sequence[str]] = None,
    max_file_size: int = DEFAULT_MAX_FILE_SIZE,
) -> bool:
    """Return True if *path* would be picked up by a full scan of *root*."""
    try:
        rel = path.relative_to(root)
    except ValueError:
        return False
    if any(part in IGNORED_DIRS or part.startswith(".") for part in rel.parts[:-1]):
        return False
    if rel.name in IGNORED_FILES or rel.name.startswith("."):
        return False
    if not registry.is_supported(str(path)):
        return False
    rel_posix = rel.as_posix()
    if include and not _matches(rel_posix, include):
        return False
    if _matches(rel_posix, exclude):
        return False
    try:
        return path.is_file() and path.stat().st_size <= max_file_size
    except OSError:
        return False


def scan_project(
    root: Path,
    registry: ParserRegistry,
    include: Optional[Sequence[str]] = None,
    exclude: Optional[Sequence[str]] = None,
    max_file_size: int = DEFAULT_MAX_FILE_SIZE,
) -> List[Path]:
    """Enumerate eligible source files under *root* in sorted order."""
    found: List[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if d not in IGNORED_DIRS and not d.startswith(".")
        )
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            if is_eligible(path, root, registry, include, exclude, max_file_size):
                found.append(path)
            elif registry.is_supported(filename) and not filename.startswith("."):
                logger.debug("Skipping %s (excluded or too large)", path)
    return sorted(found)


# ---------------------------------------------------------------------------
# Build
# ---------------------------------------------------------------------------

def build_graph(
    project_root: str,
    include: Optional[Sequence[str]] = None,
    exclude: Optional[Sequence[str]] = None,
    max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    skip_errors: bool = True,
    on_progress: Optional[ProgressCallback] = None,
    registry: Optional[ParserRegistry] = None,
) -> GraphBuildResult:
    """Build a full dependency graph for *project_root*.

    Per-file read or parse failures are collected in ``errors``.  They end
    the build with ``success=False`` only when *skip_errors* is False.
    """
    start = time.perf_counter()
    registry = registry or default_registry()
    root = Path(project_root).resolve()
    graph = DependencyGraph(
        project_root=str(root),
        version=GRAPH_VERSION,
        last_updated=time.time(),
    )
    errors: List[Dict[str, str]] = []

    def _result(success: bool) -> GraphBuildResult:
        duration_ms = int((time.perf_counter() - start) * 1000)
        return GraphBuildResult(graph=graph, duration_ms=duration_ms, success=success, errors=errors)

    if not root.is_dir():
        errors.append({"file": "BUILD", "error": f"Project root is not a directory: {root}"})
        return _result(False)

    try:
        files = scan_project(root, registry, include, exclude, max_file_size)
    except OSError as exc:
        errors.append({"file": "BUILD", "error": str(exc)})
        return _result(False)

    total = len(files)
    logger.info("Parsing %d files under %s", total, root)
    for index, path in enumerate(files, 1):
        if on_progress is not None:
            on_progress(index, total, str(path))
        parser = registry.get_for_path(str(path))
        try:
            graph.files[str(path)] = parser.parse_file(str(path), read_source(path))
        except Exception as exc:
            logger.warning("Failed to parse %s: %s", path, exc)
            errors.append({"file": str(path), "error": str(exc)})
            if not skip_errors:
                return _result(False)

    rebuild_symbol_index(graph)
    logger.info(
        "Graph built: %d files, %d symbols, %d imports",
        graph.stats.total_files, graph.stats.total_symbols, graph.stats.total_imports,
    )
    return _result(True)


def update_graph(
    graph: DependencyGraph,
    changed_files: Sequence[str],
    registry: Optional[ParserRegistry] = None,
    include: Optional[Sequence[str]] = None,
    exclude: Optional[Sequence[str]] = None,
    max_file_size: int = DEFAULT_MAX_FILE_SIZE,
) -> DependencyGraph:
    """Re-parse *changed_files* in place and rebuild the derived indexes.

    A changed file that no longer exists (or is no longer eligible) is
    removed from the graph.  New eligible files are added.
    """
    registry = registry or default_registry()
    root = Path(graph.project_root)
    for changed in changed_files:
        key = os.path.abspath(changed)
        graph.files.pop(key, None)
        path = Path(key)
        if not is_eligible(path, root, registry, include, exclude, max_file_size):
            logger.debug("Dropped %s from graph", key)
            continue
        try:
            graph.files[key] = registry.get_for_path(key).parse_file(key, read_source(path))
        except OSError as exc:
            logger.warning("Could not re-read %s: %s", key, exc)

    rebuild_symbol_index(graph)
    graph.last_updated = time.time()
    return graph


# ---------------------------------------------------------------------------
# Derived indexes
# ---------------------------------------------------------------------------

def rebuild_symbol_index(graph: DependencyGraph) -> None:
    """Recompute ``symbols``, usages and stats from ``files``."""
    symbols: Dict[str, List[SymbolLocation]] = {}
    for path in sorted(graph.files):
        for definition in graph.files[path].definitions:
            symbols.setdefault(definition.name, []).append(SymbolLocation(
                name=definition.name,
                defined_in=path,
                kind=definition.kind,
                start_line=definition.start_line,
                end_line=definition.end_line,
                definition=definition,
            ))
    graph.symbols = symbols
    _resolve_usages(graph)
    graph.stats = compute_stats(graph)


def _resolve_usages(graph: DependencyGraph) -> None:
    for path in sorted(graph.files):
        for stmt in graph.files[path].imports:
            target = resolve_import_path(stmt, path, graph)
            if target is None or target == path:
                continue
            target_record = graph.files[target]
            if "*" in stmt.symbols or stmt.kind == "namespace":
                names = [d.name for d in target_record.exports]
            else:
                names = list(stmt.symbols)
                default = target_record.default_export()
                if stmt.kind == "default" and default is not None:
                    names.append(default.name)
            for name in names:
                for location in graph.symbols.get(name, []):
                    if location.defined_in == target and path not in location.used_in:
                        location.used_in.append(path)


def compute_stats(graph: DependencyGraph) -> GraphStats:
    breakdown: Dict[str, int] = {}
    for record in graph.files.values():
        breakdown[record.language] = breakdown.get(record.language, 0) + 1
    return GraphStats(
        total_files=len(graph.files),
        total_symbols=len(graph.symbols),
        total_imports=sum(len(r.imports) for r in graph.files.values()),
        language_breakdown=breakdown,
    )


# ---------------------------------------------------------------------------
# Import path resolution
# ---------------------------------------------------------------------------

def resolve_import_path(
    stmt: ImportStatement,
    current_file: str,
    graph: DependencyGraph,
) -> Optional[str]:
    """Map an import to the project file it refers to, or None.

    Every candidate path is checked against graph membership, never against
    the filesystem.  Imports of packages outside the project resolve to None.
    """
    record = graph.files.get(current_file)
    if record is not None:
        language = record.language
    elif current_file.endswith(".py"):
        language = "python"
    elif current_file.endswith(".java"):
        language = "java"
    else:
        language = "typescript"

    if language == "java":
        return _java_target(stmt, graph)
    if language == "python":
        candidates = _python_candidates(stmt.from_module, current_file, graph.project_root)
    else:
        candidates = _script_candidates(stmt.from_module, current_file)

    for candidate in candidates:
        if candidate in graph.files:
            return candidate
    return None


def _script_candidates(module: str, current_file: str) -> List[str]:
    if not module.startswith((".", "/")):
        return []
    base = os.path.normpath(os.path.join(os.path.dirname(current_file), module))
    candidates = [base]
    stem, ext = os.path.splitext(base)
    if ext in (".js", ".jsx", ".mjs", ".cjs"):
        # ESM style TypeScript imports name the emitted .js file
        candidates.extend([stem + ".ts", stem + ".tsx"])
    candidates.extend(base + e for e in SCRIPT_EXTENSIONS)
    candidates.extend(os.path.join(base, "index" + e) for e in SCRIPT_EXTENSIONS)
    return candidates


def _python_candidates(module: str, current_file: str, project_root: str) -> List[str]:
    level = len(module) - len(module.lstrip("."))
    rest = module[level:]
    rel = rest.replace(".", os.sep)
    if level:
        base = os.path.dirname(current_file)
        for _ in range(level - 1):
            base = os.path.dirname(base)
        bases = [base]
    else:
        bases = [project_root, os.path.dirname(current_file)]

    candidates: List[str] = []
    for base in bases:
        target = os.path.join(base, rel) if rel else base
        if rel:
            candidates.append(target + ".py")
        candidates.append(os.path.join(target, "__init__.py"))
    return candidates


def _java_target(stmt: ImportStatement, graph: DependencyGraph) -> Optional[str]:
    if "*" in stmt.symbols:
        return None
    suffix = os.sep + stmt.from_module.replace(".", os.sep) + ".java"
    matches = [path for path in graph.files if path.endswith(suffix)]
    return min(matches) if matches else None
