"""Symbol resolution: what does a name on a given line refer to?

Resolution order (the first match wins):

1. **local**    - defined in the current file (confidence 1.0)
2. **imported** - named by an import of the current file.  An import that
   leaves the project is **external** (1.0, no body); one that lands on a
   project file exporting the name is **project** (1.0).  Wildcard and
   namespace imports are consulted after explicit names.
3. **global**   - exported somewhere in the project, but not imported
   here: **project** with confidence 0.7
4. **unknown**  - confidence 0.0

Code excerpts are read through a ``read_file`` callback (disk by default)
and capped at :data:`MAX_BLOCK_LINES` lines from the definition start.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from .code_units import estimate_tokens
from .graph_builder import read_source, resolve_import_path
from .models import (
    CodeBlock,
    DependencyGraph,
    FileRecord,
    LineContext,
    SymbolDefinition,
    SymbolReference,
)
from .parser import ParserRegistry, default_registry, unique

logger = logging.getLogger(__name__)

MAX_BLOCK_LINES = 50
IMPORTED_CONFIDENCE = 1.0
GLOBAL_INDEX_CONFIDENCE = 0.7

ReadFile = Callable[[str], str]


def _read_from_disk(path: str) -> str:
    return read_source(Path(path))


def detect_symbols(line: str, language: str, registry: Optional[ParserRegistry] = None) -> List[str]:
    """Candidate symbol names on *line*, using the parser for *language*."""
    parser = (registry or default_registry()).get_by_language(language)
    if parser is None:
        return []
    return parser.extract_symbols_from_line(line)


def extract_code_block(
    file_path: str,
    start_line: int,
    end_line: int,
    language: str,
    max_lines: int = MAX_BLOCK_LINES,
    read_file: Optional[ReadFile] = None,
) -> CodeBlock:
    """Read lines ``start_line..end_line`` (1-based) capped at *max_lines*."""
    last = min(end_line, start_line + max_lines - 1)
    try:
        lines = (read_file or _read_from_disk)(file_path).splitlines()
    except (OSError, ValueError) as exc:
        logger.debug("Unable to read %s: %s", file_path, exc)
        return CodeBlock(
            content=f"Unable to read file: {file_path}",
            start_line=start_line,
            end_line=last,
            file_path=file_path,
            language=language,
        )
    return CodeBlock(
        content="\n".join(lines[start_line - 1:last]),
        start_line=start_line,
        end_line=last,
        file_path=file_path,
        language=language,
    )


def _reference(
    name: str,
    kind: str,
    confidence: float,
    path: str,
    definition: SymbolDefinition,
    graph: DependencyGraph,
    read_file: Optional[ReadFile],
) -> SymbolReference:
    record = graph.files.get(path)
    language = record.language if record is not None else ""
    return SymbolReference(
        name=name,
        kind=kind,
        confidence=confidence,
        definition_file=path,
        definition=extract_code_block(
            path, definition.start_line, definition.end_line, language, read_file=read_file,
        ),
        symbol_kind=definition.kind,
    )


def _resolve_via_imports(
    name: str,
    current_file: str,
    record: FileRecord,
    graph: DependencyGraph,
    read_file: Optional[ReadFile],
) -> Optional[SymbolReference]:
    for stmt in record.imports:
        if name not in stmt.local_names():
            continue
        target = resolve_import_path(stmt, current_file, graph)
        if target is None:
            if stmt.is_external:
                return SymbolReference(name=name, kind="external", confidence=IMPORTED_CONFIDENCE)
            continue
        target_record = graph.files[target]
        definition = target_record.find_export(stmt.aliases.get(name, name))
        if definition is None and stmt.kind == "default":
            definition = target_record.default_export()
        if definition is not None:
            return _reference(name, "project", IMPORTED_CONFIDENCE, target, definition, graph, read_file)

    for stmt in record.imports:
        if "*" not in stmt.symbols and stmt.kind != "namespace":
            continue
        target = resolve_import_path(stmt, current_file, graph)
        if target is None:
            continue
        definition = graph.files[target].find_export(name)
        if definition is not None:
            return _reference(name, "project", IMPORTED_CONFIDENCE, target, definition, graph, read_file)
    return None


def resolve_symbol(
    name: str,
    current_file: str,
    graph: DependencyGraph,
    read_file: Optional[ReadFile] = None,
) -> SymbolReference:
    """Resolve *name* as seen from *current_file*."""
    record = graph.files.get(current_file)
    if record is not None:
        local = record.find_definition(name)
        if local is not None:
            return _reference(name, "local", 1.0, current_file, local, graph, read_file)
        imported = _resolve_via_imports(name, current_file, record, graph, read_file)
        if imported is not None:
            return imported

    for location in graph.symbols.get(name, []):
        if location.definition.is_exported:
            return _reference(
                name, "project", GLOBAL_INDEX_CONFIDENCE,
                location.defined_in, location.definition, graph, read_file,
            )
    return SymbolReference(name=name, kind="unknown", confidence=0.0)


def resolve_multiple_symbols(
    names: Iterable[str],
    current_file: str,
    graph: DependencyGraph,
    read_file: Optional[ReadFile] = None,
) -> Dict[str, SymbolReference]:
    return {name: resolve_symbol(name, current_file, graph, read_file) for name in unique(names)}


def get_referenced_symbols(
    code: str,
    current_file: str,
    graph: DependencyGraph,
    registry: Optional[ParserRegistry] = None,
    read_file: Optional[ReadFile] = None,
) -> Dict[str, SymbolReference]:
    """Resolve every symbol referenced anywhere in a block of *code*."""
    record = graph.files.get(current_file)
    if record is None:
        return {}
    registry = registry or default_registry()
    names: List[str] = []
    for line in code.split("\n"):
        names.extend(detect_symbols(line, record.language, registry))
    return resolve_multiple_symbols(names, current_file, graph, read_file)


def build_line_context(
    line: str,
    line_number: int,
    current_file: str,
    graph: DependencyGraph,
    registry: Optional[ParserRegistry] = None,
    read_file: Optional[ReadFile] = None,
    max_context_symbols: int = 5,
    max_lines_per_symbol: int = 30,
    token_budget: Optional[int] = None,
) -> LineContext:
    """Resolve the symbols on one line and gather cross-file context blocks.

    Only project definitions living in other files become context blocks.
    Blocks are trimmed to *max_lines_per_symbol*; once *token_budget* would
    be exceeded no further blocks are added.
    """
    context = LineContext(line_number=line_number)
    record = graph.files.get(current_file)
    if record is None:
        return context

    names = detect_symbols(line, record.language, registry)[:max_context_symbols]
    context.symbols = [resolve_symbol(n, current_file, graph, read_file) for n in names]

    seen = set()
    for ref in context.symbols:
        if ref.kind != "project" or ref.definition is None or ref.definition_file == current_file:
            continue
        block = ref.definition
        if block.end_line - block.start_line + 1 > max_lines_per_symbol:
            last = block.start_line + max_lines_per_symbol - 1
            block = replace(
                block,
                content="\n".join(block.content.split("\n")[:max_lines_per_symbol]),
                end_line=last,
            )
        key = (block.file_path, block.start_line)
        if key in seen:
            continue
        tokens = estimate_tokens(block.content)
        if token_budget is not None and context.total_tokens + tokens > token_budget:
            logger.debug("Token budget %d reached, skipping %s", token_budget, ref.name)
            break
        seen.add(key)
        context.context_blocks.append(block)
        context.total_tokens += tokens
    return context
