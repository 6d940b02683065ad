"""Code-unit extraction: one embeddable chunk per symbol definition.

Units are first built from graph metadata only (cheap), then enriched with
their source text through an injected ``read_file`` callback so callers can
serve content from disk, an editor buffer or a test fixture.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .models import CodeUnit, DependencyGraph, UnitMetadata
from .parser import content_hash, unique

logger = logging.getLogger(__name__)

MAX_UNIT_TOKENS = 500
CHARS_PER_TOKEN = 4
# Rough line width used to estimate a definition's size before reading it
CHARS_PER_LINE_ESTIMATE = 50
TRUNCATION_NOTE = "... (truncated)"

ReadFile = Callable[[str], str]

_UNIT_KINDS = {
    "function": "function",
    "method": "function",
    "class": "class",
    "interface": "interface",
    "type": "type",
    "variable": "block",
    "constant": "block",
}

_BRANCH_RE = re.compile(r"\b(?:if|elif|for|while|case|catch|except)\b|&&|\|\|")


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_complexity(code: str) -> int:
    """Branch count plus one; a coarse cyclomatic complexity."""
    return 1 + len(_BRANCH_RE.findall(code))


def extract_code_units(graph: DependencyGraph, paths: Optional[Iterable[str]] = None) -> List[CodeUnit]:
    """Create metadata-only units for every definition in *graph*.

    *paths* limits extraction to those files of the graph.

    Definitions estimated far above the token ceiling are skipped.  When a
    file defines the same name twice the first definition keeps the id.
    """
    units: List[CodeUnit] = []
    for path in sorted(graph.files if paths is None else set(paths)):
        record = graph.files.get(path)
        if record is None:
            continue
        imports = unique(stmt.from_module for stmt in record.imports)
        seen = set()
        for definition in record.definitions:
            line_count = definition.end_line - definition.start_line + 1
            estimated = math.ceil(line_count * CHARS_PER_LINE_ESTIMATE / CHARS_PER_TOKEN)
            if estimated > 2 * MAX_UNIT_TOKENS:
                logger.warning(
                    "Skipping %s in %s: ~%d tokens exceeds %d",
                    definition.name, path, estimated, 2 * MAX_UNIT_TOKENS,
                )
                continue

            unit_id = f"{path}::{definition.name}"
            if unit_id in seen:
                logger.debug("Duplicate unit id %s, keeping first definition", unit_id)
                continue
            seen.add(unit_id)

            units.append(CodeUnit(
                id=unit_id,
                file=path,
                symbol=definition.name,
                language=record.language,
                kind=_UNIT_KINDS.get(definition.kind, "block"),
                start_line=definition.start_line,
                end_line=definition.end_line,
                signature=definition.signature,
                documentation=definition.documentation,
                imports=list(imports),
                is_exported=definition.is_exported,
            ))
    return units


def truncate_code(code: str, language: str) -> Tuple[str, bool]:
    """Cut *code* at a line boundary so it fits the unit token ceiling.

    A first line longer than the whole budget is cut mid-line.
    """
    if estimate_tokens(code) <= MAX_UNIT_TOKENS:
        return code, False
    marker = ("# " if language == "python" else "// ") + TRUNCATION_NOTE
    budget = MAX_UNIT_TOKENS * CHARS_PER_TOKEN - len(marker) - 1
    kept: List[str] = []
    size = 0
    for line in code.split("\n"):
        if size + len(line) + 1 > budget:
            break
        kept.append(line)
        size += len(line) + 1
    if not kept:
        # a single overlong line is cut mid-line
        kept.append(code[:budget])
    return "\n".join(kept + [marker]), True


def enrich_units_with_code(units: Iterable[CodeUnit], read_file: ReadFile) -> List[CodeUnit]:
    """Return copies of *units* carrying their code, hash and token count.

    Each file is read once.  Units of unreadable files are dropped.
    """
    by_file: Dict[str, List[CodeUnit]] = {}
    for unit in units:
        by_file.setdefault(unit.file, []).append(unit)

    enriched: List[CodeUnit] = []
    for path, file_units in by_file.items():
        try:
            lines = read_file(path).splitlines()
        except (OSError, ValueError) as exc:
            logger.warning("Could not read %s, dropping %d units: %s", path, len(file_units), exc)
            continue

        for unit in file_units:
            code = "\n".join(lines[unit.start_line - 1:unit.end_line])
            digest = content_hash(code)
            code, truncated = truncate_code(code, unit.language)
            enriched.append(replace(
                unit,
                code=code,
                metadata=UnitMetadata(
                    tokens=MAX_UNIT_TOKENS if truncated else estimate_tokens(code),
                    content_hash=digest,
                    complexity=estimate_complexity(code),
                ),
            ))
    return enriched


def filter_units(
    units: Iterable[CodeUnit],
    kinds: Optional[Sequence[str]] = None,
    languages: Optional[Sequence[str]] = None,
    min_tokens: int = 0,
    max_tokens: Optional[int] = None,
    exported_only: bool = False,
) -> List[CodeUnit]:
    result = []
    for unit in units:
        if kinds and unit.kind not in kinds:
            continue
        if languages and unit.language not in languages:
            continue
        if unit.metadata.tokens < min_tokens:
            continue
        if max_tokens is not None and unit.metadata.tokens > max_tokens:
            continue
        if exported_only and not unit.is_exported:
            continue
        result.append(unit)
    return result


def build_embedding_text(unit: CodeUnit) -> str:
    """Text sent to the embedding service for *unit*."""
    parts: List[str] = []
    if unit.symbol:
        parts.append(f"Symbol: {unit.symbol}")
    if unit.signature:
        parts.append(f"Signature: {unit.signature}")
    if unit.documentation:
        parts.append(f"Documentation: {unit.documentation}")
    parts.append(f"Code:\n{unit.code}")
    return "\n\n".join(parts)
