"""Tests for semantic retrieval, banding and the precedence merge."""

import math
from typing import List

import pytest

from codecontext.embeddings import EmbeddingGenerator
from codecontext.models import (
    CodeBlock,
    CodeUnit,
    QueryContext,
    RankedResult,
    RetrievalOptions,
    SemanticIndex,
    SymbolReference,
    VectorMetadata,
)
from codecontext.retrieval import (
    build_query_text,
    combine_with_symbol_resolution,
    confidence_band,
    determine_max_results,
    format_context,
    retrieve_relevant_code,
)
from codecontext.vector_store import InMemoryVectorStore

from conftest import FixedEmbedder, RecordingEmbedder

CURRENT = "/proj/main.ts"


def _unit(symbol: str, file: str = "/proj/lib.ts", exported: bool = False, language: str = "typescript") -> CodeUnit:
    return CodeUnit(
        id=f"{file}::{symbol}", file=file, language=language, kind="function",
        start_line=1, end_line=3, code=f"function {symbol}() {{}}", symbol=symbol,
        is_exported=exported,
    )


def _vector(similarity: float) -> List[float]:
    """A unit vector whose cosine with ``[1, 0]`` is *similarity*."""
    return [similarity, math.sqrt(1.0 - similarity * similarity)]


def _index(*entries) -> SemanticIndex:
    store = InMemoryVectorStore()
    index = SemanticIndex(
        project_root="/proj", version="1.0.0", model="fixed", last_updated=0.0, vector_store=store,
    )
    for unit, similarity in entries:
        vector = _vector(similarity)
        index.units[unit.id] = unit
        index.embeddings[unit.id] = vector
        store.insert(unit.id, vector, VectorMetadata.for_unit(unit))
    return index


def _query(symbols=None, language: str = "typescript") -> QueryContext:
    return QueryContext(
        target_line="const label = formatDate(user.createdAt);",
        language=language,
        current_file=CURRENT,
        symbols=list(symbols or []),
    )


@pytest.fixture
def generator() -> EmbeddingGenerator:
    return EmbeddingGenerator(FixedEmbedder({}, default=[1.0, 0.0]), batch_delay=0)


def _by_symbol(results):
    return {r.unit.symbol: r for r in results}


class TestScoring:
    """Additive signals and confidence bands."""

    def test_confidence_band_boundaries(self):
        assert confidence_band(0.7) == "high"
        assert confidence_band(0.6999) == "medium"
        assert confidence_band(0.6) == "medium"
        assert confidence_band(0.5999999) == "low"

    def test_high_similarity_is_auto_included(self, generator):
        [result] = retrieve_relevant_code(_query(), _index((_unit("alpha"), 0.9)), generator)
        assert result.confidence_band == "high"
        assert result.auto_include
        assert result.score == pytest.approx(0.9)
        assert result.match_reasons == ["Semantic similarity: 0.900"]
        assert result.origin == "semantic"

    def test_same_file_penalty_drops_to_low(self, generator):
        index = _index((_unit("alpha", file=CURRENT), 0.65))
        assert retrieve_relevant_code(_query(), index, generator) == []

    def test_uncorroborated_medium_is_excluded(self, generator):
        index = _index((_unit("alpha"), 0.65))
        assert retrieve_relevant_code(_query(), index, generator) == []

    def test_exported_medium_is_conditionally_included(self, generator):
        index = _index((_unit("alpha", exported=True), 0.62))
        [result] = retrieve_relevant_code(_query(), index, generator)

        assert result.confidence_band == "medium"
        assert result.score == pytest.approx(0.67)
        assert "Exported symbol (definition)" in result.match_reasons
        assert "Conditional: is definition" in result.match_reasons

        strict = RetrievalOptions(include_conditional=False)
        assert retrieve_relevant_code(_query(), index, generator, strict) == []

    def test_symbol_match_boosts(self, generator):
        index = _index(
            (_unit("formatDate", file="/proj/a.ts"), 0.62),
            (_unit("formatDateTime", file="/proj/b.ts"), 0.65),
        )
        results = _by_symbol(retrieve_relevant_code(_query(["formatDate"]), index, generator))

        exact = results["formatDate"]
        assert exact.score == pytest.approx(0.92)
        assert "Symbol name match" in exact.match_reasons
        assert "Partial symbol match: formatDate" in exact.match_reasons

        partial = results["formatDateTime"]
        assert partial.score == pytest.approx(0.75)
        assert "Symbol name match" not in partial.match_reasons
        assert "Partial symbol match: formatDate" in partial.match_reasons

    def test_score_is_clamped(self, generator):
        index = _index((_unit("formatDate", exported=True), 0.95))
        [result] = retrieve_relevant_code(_query(["formatDate"]), index, generator)
        assert result.score == 1.0

    def test_results_are_sorted_by_score(self, generator):
        index = _index(
            (_unit("low", file="/proj/a.ts"), 0.75),
            (_unit("high", file="/proj/b.ts"), 0.95),
            (_unit("mid", file="/proj/c.ts"), 0.85),
        )
        results = retrieve_relevant_code(_query(), index, generator)
        assert [r.unit.symbol for r in results] == ["high", "mid", "low"]


class TestResultCap:
    """Fan-out and explicit caps."""

    def test_distinct_symbols_expand_to_five(self, generator):
        entries = [(_unit(f"sym{i}", file=f"/proj/f{i}.ts"), 0.9) for i in range(7)]
        assert len(retrieve_relevant_code(_query(), _index(*entries), generator)) == 5

    def test_single_symbol_stays_at_three(self, generator):
        entries = [(_unit("dup", file=f"/proj/f{i}.ts"), 0.9) for i in range(5)]
        assert len(retrieve_relevant_code(_query(), _index(*entries), generator)) == 3

    def test_explicit_max_results(self, generator):
        entries = [(_unit(f"sym{i}", file=f"/proj/f{i}.ts"), 0.9) for i in range(7)]
        options = RetrievalOptions(max_results=2)
        assert len(retrieve_relevant_code(_query(), _index(*entries), generator, options)) == 2

    def test_determine_max_results(self):
        def ranked(symbol: str) -> RankedResult:
            return RankedResult(unit=_unit(symbol), score=0.9, confidence_band="high")

        assert determine_max_results([]) == 3
        assert determine_max_results([ranked("a"), ranked("a")]) == 3
        assert determine_max_results([ranked("a"), ranked("b")]) == 5
        assert determine_max_results([ranked("a")], RetrievalOptions(max_results=7)) == 7


class TestFilters:
    """Options that narrow the candidate set."""

    def test_min_confidence(self, generator):
        index = _index((_unit("a", file="/proj/a.ts"), 0.95), (_unit("b", file="/proj/b.ts"), 0.8))
        results = retrieve_relevant_code(_query(), index, generator, RetrievalOptions(min_confidence=0.9))
        assert [r.unit.symbol for r in results] == ["a"]

    def test_exclude_current_file(self, generator):
        index = _index((_unit("here", file=CURRENT), 0.99), (_unit("there"), 0.9))
        results = retrieve_relevant_code(
            _query(), index, generator, RetrievalOptions(exclude_current_file=True),
        )
        assert [r.unit.symbol for r in results] == ["there"]

    def test_other_languages_are_ignored(self, generator):
        index = _index((_unit("py", file="/proj/a.py", language="python"), 0.95))
        assert retrieve_relevant_code(_query(), index, generator) == []

    def test_below_similarity_floor(self, generator):
        index = _index((_unit("alpha", exported=True), 0.55))
        assert retrieve_relevant_code(_query(["alpha"]), index, generator) == []

    def test_empty_store_skips_embedding(self):
        embedder = RecordingEmbedder()
        generator = EmbeddingGenerator(embedder)
        assert retrieve_relevant_code(_query(), _index(), generator) == []
        assert embedder.texts == []


def test_build_query_text():
    query = QueryContext(
        target_line="x = f(y)",
        language="python",
        current_file="/p/a.py",
        symbols=["f", "y"],
        surrounding_lines=[f"line {i}" for i in range(8)],
    )
    text = build_query_text(query)
    assert text == "x = f(y)\n\nSymbols: f, y\n\nContext:\nline 0\nline 1\nline 2\nline 3\nline 4"

    bare = QueryContext(target_line="pass", language="python", current_file="/p/a.py")
    assert build_query_text(bare) == "pass"


class TestCombine:
    """Resolved definitions always come first."""

    def _ref(self, name: str, file: str, confidence: float = 1.0, kind: str = "project") -> SymbolReference:
        return SymbolReference(
            name=name,
            kind=kind,
            confidence=confidence,
            definition_file=file,
            definition=CodeBlock(
                content=f"export function {name}() {{}}", start_line=4, end_line=6,
                file_path=file, language="typescript",
            ),
            symbol_kind="function",
        )

    def _semantic(self, symbol: str, file: str, score: float = 0.95) -> RankedResult:
        return RankedResult(
            unit=_unit(symbol, file=file), score=score, confidence_band="high",
            match_reasons=["Semantic similarity: 0.950"], auto_include=True,
        )

    def test_precedence_and_deduplication(self):
        refs = [
            self._ref("formatDate", "/proj/utils.ts"),
            self._ref("reverse", "/proj/StringUtils.java", confidence=0.7),
            SymbolReference(name="path", kind="external", confidence=1.0),
            SymbolReference(name="mystery", kind="unknown", confidence=0.0),
        ]
        semantic = [
            self._semantic("clamp", "/proj/utils.ts", score=0.99),
            self._semantic("Logger", "/proj/logger.ts"),
        ]

        combined = combine_with_symbol_resolution(refs, semantic)

        assert [r.unit.symbol for r in combined] == ["formatDate", "reverse", "Logger"]
        first, second, third = combined
        assert first.origin == "resolved"
        assert first.match_reasons == ["Direct symbol resolution"]
        assert first.score == 1.0
        assert first.unit.id == "/proj/utils.ts::formatDate"
        assert first.unit.kind == "function"
        assert (first.unit.start_line, first.unit.end_line) == (4, 6)
        assert second.match_reasons == ["Inferred symbol resolution (not imported)"]
        assert third.origin == "semantic"
        assert third.match_reasons == ["Semantic context", "Semantic similarity: 0.950"]

    def test_duplicate_ids_are_merged(self):
        refs = [self._ref("formatDate", "/proj/utils.ts"), self._ref("formatDate", "/proj/utils.ts")]
        combined = combine_with_symbol_resolution(refs, [self._semantic("other", "/proj/x.ts")])
        assert [r.unit.id for r in combined] == ["/proj/utils.ts::formatDate", "/proj/x.ts::other"]

    def test_semantic_only(self):
        combined = combine_with_symbol_resolution([], [self._semantic("a", "/proj/a.ts")])
        assert [r.origin for r in combined] == ["semantic"]


def test_format_context():
    result = RankedResult(
        unit=_unit("alpha"), score=0.9, confidence_band="high",
        match_reasons=["Semantic similarity: 0.900"], origin="semantic",
    )
    text = format_context([result])
    assert text.startswith("[semantic] /proj/lib.ts:1-3 alpha (score 0.90, high)")
    assert "Reasons: Semantic similarity: 0.900" in text
    assert "```typescript\nfunction alpha() {}\n```" in text
    assert format_context([]) == ""
