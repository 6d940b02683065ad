"""Semantic retrieval with confidence banding and a precedence merge.

Ranking pipeline for one query:

1. Embed the query text (target line, symbols, a few surrounding lines).
2. Search the vector store (``top_k=20``, same language, similarity floor
   :data:`MEDIUM_CONFIDENCE`).
3. Re-score each hit with additive signals, every one recorded as a
   human-readable reason:

   - exact symbol-name match ``+0.2``
   - case-insensitive substring match with a query symbol ``+0.1``
   - exported definition ``+0.05``
   - same file as the query ``-0.1``

   The score is clamped to at most 1.0.
4. Band: ``>= 0.7`` high (auto include), ``>= 0.6`` medium, else low.
5. Medium results are kept only with a corroborating signal.
6. Cap the list at 3, or 5 when the top hits fan out over several symbols.

:func:`combine_with_symbol_resolution` then puts exact symbol-resolution
hits ahead of every semantic result.  Semantic results never outrank
resolved ones.
"""

from __future__ import annotations

import logging
import os
from typing import Dict, Iterable, List, Optional

from .code_units import estimate_tokens
from .embeddings import EmbeddingGenerator
from .models import (
    CodeUnit,
    QueryContext,
    RankedResult,
    RetrievalOptions,
    SearchFilters,
    SemanticIndex,
    SymbolReference,
    UnitMetadata,
)

logger = logging.getLogger(__name__)

HIGH_CONFIDENCE = 0.7
MEDIUM_CONFIDENCE = 0.6

DEFAULT_MAX_RESULTS = 3
EXPANDED_MAX_RESULTS = 5
SEARCH_TOP_K = 20
MAX_SURROUNDING_LINES = 5

EXACT_MATCH_BOOST = 0.2
PARTIAL_MATCH_BOOST = 0.1
EXPORTED_BOOST = 0.05
SAME_FILE_PENALTY = 0.1

# Definition kind -> code unit kind for resolved references
_RESOLVED_UNIT_KINDS: Dict[str, str] = {
    "function": "function",
    "method": "function",
    "class": "class",
    "interface": "interface",
    "type": "type",
}


def build_query_text(query: QueryContext) -> str:
    parts = [query.target_line]
    if query.symbols:
        parts.append(f"Symbols: {', '.join(query.symbols)}")
    surrounding = query.surrounding_lines[:MAX_SURROUNDING_LINES]
    if surrounding:
        parts.append("Context:\n" + "\n".join(surrounding))
    return "\n\n".join(parts)


def confidence_band(score: float) -> str:
    if score >= HIGH_CONFIDENCE:
        return "high"
    if score >= MEDIUM_CONFIDENCE:
        return "medium"
    return "low"


# ===================================================================
# Scoring
# ===================================================================

def _score(unit: CodeUnit, similarity: float, query: QueryContext) -> RankedResult:
    score = similarity
    reasons = [f"Semantic similarity: {similarity:.3f}"]

    if unit.symbol and unit.symbol in query.symbols:
        score += EXACT_MATCH_BOOST
        reasons.append("Symbol name match")

    if unit.symbol:
        own = unit.symbol.lower()
        for candidate in query.symbols:
            other = candidate.lower()
            if own in other or other in own:
                score += PARTIAL_MATCH_BOOST
                reasons.append(f"Partial symbol match: {candidate}")
                break

    if unit.is_exported:
        score += EXPORTED_BOOST
        reasons.append("Exported symbol (definition)")

    if unit.file == query.current_file:
        score -= SAME_FILE_PENALTY
        reasons.append("Same file penalty")

    score = min(score, 1.0)
    band = confidence_band(score)
    auto_include = band == "high"
    if band == "medium":
        auto_include = _corroborated(unit, query, reasons)

    return RankedResult(
        unit=unit,
        score=score,
        confidence_band=band,
        match_reasons=reasons,
        auto_include=auto_include,
    )


def _corroborated(unit: CodeUnit, query: QueryContext, reasons: List[str]) -> bool:
    """Second signal needed before a medium-band result is trusted."""
    if unit.symbol and unit.symbol in query.symbols:
        reasons.append("Conditional: symbol match")
        return True
    if unit.is_exported:
        reasons.append("Conditional: is definition")
        return True
    return False


def _is_included(result: RankedResult, options: RetrievalOptions) -> bool:
    if options.min_confidence is not None and result.score < options.min_confidence:
        return False
    if result.confidence_band == "high":
        return True
    if result.confidence_band == "medium":
        return result.auto_include and options.include_conditional
    logger.debug(
        "Dropping low-confidence result %s (score %.3f)", result.unit.id, result.score,
    )
    return False


def determine_max_results(results: List[RankedResult], options: Optional[RetrievalOptions] = None) -> int:
    """Result cap: 3 by default, 5 when the top hits span several symbols."""
    if options is not None and options.max_results:
        return options.max_results
    symbols = {r.unit.symbol for r in results[:EXPANDED_MAX_RESULTS] if r.unit.symbol}
    if len(symbols) > 1:
        logger.debug("Symbol fan-out detected (%d symbols), allowing %d results",
                     len(symbols), EXPANDED_MAX_RESULTS)
        return EXPANDED_MAX_RESULTS
    return DEFAULT_MAX_RESULTS


# ===================================================================
# Retrieval
# ===================================================================

def retrieve_relevant_code(
    query: QueryContext,
    index: SemanticIndex,
    generator: EmbeddingGenerator,
    options: Optional[RetrievalOptions] = None,
) -> List[RankedResult]:
    """Rank indexed code units by relevance to *query*."""
    options = options or RetrievalOptions()
    if index.vector_store.size() == 0:
        return []

    query_vector = generator.generate_embedding(build_query_text(query))
    hits = index.vector_store.search(
        query_vector,
        top_k=SEARCH_TOP_K,
        filters=SearchFilters(
            language=query.language,
            exclude_files=[query.current_file] if options.exclude_current_file else None,
        ),
        min_similarity=MEDIUM_CONFIDENCE,
    )
    logger.debug("Vector search for %r returned %d candidates", query.target_line, len(hits))

    ranked = [_score(hit.metadata.unit, hit.similarity, query) for hit in hits]
    ranked.sort(key=lambda r: (-r.score, r.unit.id))

    included = [r for r in ranked if _is_included(r, options)]
    final = included[:determine_max_results(included, options)]
    for result in final:
        logger.debug(
            "  %s::%s score=%.3f band=%s",
            os.path.basename(result.unit.file), result.unit.symbol,
            result.score, result.confidence_band,
        )
    return final


# ===================================================================
# Precedence merge
# ===================================================================

def _resolved_unit(ref: SymbolReference) -> CodeUnit:
    block = ref.definition
    return CodeUnit(
        id=f"{ref.definition_file}::{ref.name}",
        file=ref.definition_file or "",
        language=block.language,
        kind=_RESOLVED_UNIT_KINDS.get(ref.symbol_kind or "", "block"),
        start_line=block.start_line,
        end_line=block.end_line,
        code=block.content,
        symbol=ref.name,
        is_exported=True,
        metadata=UnitMetadata(tokens=estimate_tokens(block.content)),
    )


def combine_with_symbol_resolution(
    symbol_refs: Iterable[SymbolReference],
    semantic_results: Iterable[RankedResult],
) -> List[RankedResult]:
    """Resolved project definitions first, then non-overlapping semantic hits.

    Semantic results from a file that already supplied a resolved
    definition are dropped.
    """
    combined: List[RankedResult] = []
    resolved_files = set()
    seen_ids = set()

    for ref in symbol_refs:
        if ref.kind != "project" or ref.definition is None:
            continue
        unit = _resolved_unit(ref)
        resolved_files.add(unit.file)
        if unit.id in seen_ids:
            continue
        seen_ids.add(unit.id)
        reason = (
            "Direct symbol resolution" if ref.confidence >= 1.0
            else "Inferred symbol resolution (not imported)"
        )
        combined.append(RankedResult(
            unit=unit,
            score=1.0,
            confidence_band="high",
            match_reasons=[reason],
            auto_include=True,
            origin="resolved",
        ))

    for result in semantic_results:
        if result.unit.file in resolved_files or result.unit.id in seen_ids:
            continue
        seen_ids.add(result.unit.id)
        combined.append(RankedResult(
            unit=result.unit,
            score=result.score,
            confidence_band=result.confidence_band,
            match_reasons=["Semantic context"] + list(result.match_reasons),
            auto_include=result.auto_include,
            origin="semantic",
        ))
    return combined


def format_context(results: Iterable[RankedResult]) -> str:
    """Render ranked results as plain text for a downstream prompt."""
    chunks: List[str] = []
    for result in results:
        unit = result.unit
        header = (
            f"[{result.origin}] {unit.file}:{unit.start_line}-{unit.end_line}"
            f" {unit.symbol or ''} (score {result.score:.2f}, {result.confidence_band})"
        )
        reasons = "; ".join(result.match_reasons)
        chunks.append(f"{header}\nReasons: {reasons}\n```{unit.language}\n{unit.code}\n```")
    return "\n\n".join(chunks)
