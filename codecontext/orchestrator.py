"""Orchestrator wiring the graph, resolver and semantic stages together."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Optional, Tuple

from .code_units import ReadFile
from .config_manager import load_embedding_config, load_index_config
from .embeddings import EmbeddingGenerator, get_embedder
from .graph_builder import read_source
from .models import (
    ContextBundle,
    DependencyGraph,
    GraphLoadResult,
    QueryContext,
    RetrievalOptions,
    SemanticIndex,
)
from .parser import ParserRegistry, default_registry
from .retrieval import combine_with_symbol_resolution, retrieve_relevant_code
from .semantic_index import SemanticIndexManager
from .storage import GraphCache, SemanticIndexCache
from .symbol_resolver import build_line_context, detect_symbols

logger = logging.getLogger(__name__)


class ContextOrchestrator:
    """Produces the context bundle for one line of one project file."""

    def __init__(
        self,
        project_root: str,
        registry: Optional[ParserRegistry] = None,
        embedder: Optional[Any] = None,
        cache_dir: Optional[Path] = None,
        read_file: Optional[ReadFile] = None,
    ):
        self.project_root = str(Path(project_root).resolve())
        self.registry = registry or default_registry()
        self.read_file = read_file

        index_cfg = load_index_config()
        emb_cfg = load_embedding_config()
        self.graph_cache = GraphCache(
            cache_dir=Path(cache_dir) / "graphs" if cache_dir is not None else None,
            registry=self.registry,
            exclude=index_cfg.get("exclude") or None,
            max_file_size=int(index_cfg["max_file_size"]),
        )
        self.generator = EmbeddingGenerator(
            embedder if embedder is not None else get_embedder(),
            batch_size=int(emb_cfg["batch_size"]),
            batch_delay=float(emb_cfg["batch_delay"]),
        )
        self.semantic = SemanticIndexManager(
            self.generator,
            cache=SemanticIndexCache(Path(cache_dir) / "semantic" if cache_dir is not None else None),
            read_file=read_file,
        )

    def load_graph(self, force_rebuild: bool = False) -> GraphLoadResult:
        return self.graph_cache.load_or_build(self.project_root, force_rebuild=force_rebuild)

    def load_semantic_index(
        self,
        graph: DependencyGraph,
        changed_files: Optional[List[str]] = None,
        force_rebuild: bool = False,
    ) -> SemanticIndex:
        return self.semantic.load_or_build(graph, changed_files=changed_files, force_rebuild=force_rebuild)

    def _read_lines(self, path: str) -> List[str]:
        if self.read_file is not None:
            return self.read_file(path).splitlines()
        return read_source(Path(path)).splitlines()

    def _target_line(self, path: str, line_number: int, surrounding: int) -> Tuple[str, List[str]]:
        lines = self._read_lines(path)
        if not 1 <= line_number <= len(lines):
            raise ValueError(f"Line {line_number} is outside {path} ({len(lines)} lines)")
        first = max(0, line_number - 1 - surrounding)
        last = min(len(lines), line_number + surrounding)
        around = [lines[i] for i in range(first, last) if i != line_number - 1]
        return lines[line_number - 1], around

    def explain_context(
        self,
        file: str,
        line_number: int,
        surrounding: int = 5,
        semantic: bool = True,
        options: Optional[RetrievalOptions] = None,
    ) -> ContextBundle:
        """Resolve the symbols of one line and gather ranked context for it.

        Raises:
            ValueError: *line_number* is not a line of *file*.
        """
        path = str(Path(file).resolve())
        loaded = self.load_graph()
        graph = loaded.graph

        line, around = self._target_line(path, line_number, surrounding)
        line_context = build_line_context(
            line, line_number, path, graph, registry=self.registry, read_file=self.read_file,
        )
        bundle = ContextBundle(file=path, line_number=line_number, line=line, line_context=line_context)

        record = graph.files.get(path)
        if not semantic or record is None:
            bundle.combined = combine_with_symbol_resolution(line_context.symbols, [])
            return bundle

        index = self.load_semantic_index(graph, changed_files=loaded.changed_files)
        query = QueryContext(
            target_line=line,
            language=record.language,
            current_file=path,
            symbols=detect_symbols(line, record.language, self.registry),
            surrounding_lines=around,
        )
        bundle.semantic_results = retrieve_relevant_code(query, index, self.generator, options)
        bundle.combined = combine_with_symbol_resolution(line_context.symbols, bundle.semantic_results)
        logger.info(
            "Context for %s:%d: %d resolved symbols, %d semantic results",
            path, line_number, len(line_context.symbols), len(bundle.semantic_results),
        )
        return bundle
