"""Tests for the in-memory vector store."""

import json
from pathlib import Path

import pytest

from codecontext.models import CodeUnit, SearchFilters, VectorMetadata
from codecontext.vector_store import InMemoryVectorStore


def _meta(uid: str, file: str = "/p/a.ts", language: str = "typescript", kind: str = "function"):
    unit = CodeUnit(
        id=uid, file=file, language=language, kind=kind,
        start_line=1, end_line=3, code="code", symbol=uid.split("::")[-1],
    )
    return VectorMetadata.for_unit(unit)


@pytest.fixture
def store() -> InMemoryVectorStore:
    s = InMemoryVectorStore()
    s.insert("/p/a.ts::same", [1.0, 0.0, 0.0], _meta("/p/a.ts::same"))
    s.insert("/p/b.ts::close", [0.9, 0.1, 0.0], _meta("/p/b.ts::close", file="/p/b.ts"))
    s.insert("/p/c.py::far", [0.0, 1.0, 0.0], _meta("/p/c.py::far", file="/p/c.py", language="python", kind="class"))
    return s


class TestInMemoryVectorStore:
    """Test InMemoryVectorStore functionality."""

    def test_insert_replaces_existing(self, store: InMemoryVectorStore):
        assert store.size() == 3
        store.insert("/p/a.ts::same", [0.0, 0.0, 1.0], _meta("/p/a.ts::same"))
        assert store.size() == 3
        assert store.get("/p/a.ts::same").vector == [0.0, 0.0, 1.0]

    def test_delete_and_clear(self, store: InMemoryVectorStore):
        assert store.delete("/p/a.ts::same") is True
        assert store.delete("/p/a.ts::same") is False
        assert "/p/a.ts::same" not in store
        store.clear()
        assert len(store) == 0
        assert store.search([1.0, 0.0, 0.0]) == []

    def test_search_orders_by_similarity(self, store: InMemoryVectorStore):
        """Most similar entries come first."""
        results = store.search([1.0, 0.0, 0.0], top_k=3)
        assert [r.id for r in results] == ["/p/a.ts::same", "/p/b.ts::close", "/p/c.py::far"]
        assert results[0].similarity == pytest.approx(1.0)
        assert results[2].similarity == pytest.approx(0.0)
        assert results[0].metadata.unit.symbol == "same"

    def test_ties_are_broken_by_id(self):
        s = InMemoryVectorStore()
        for uid in ("/p/z.ts::f", "/p/a.ts::f", "/p/m.ts::f"):
            s.insert(uid, [1.0, 1.0], _meta(uid))
        assert [r.id for r in s.search([1.0, 1.0])] == ["/p/a.ts::f", "/p/m.ts::f", "/p/z.ts::f"]

    def test_top_k_and_min_similarity(self, store: InMemoryVectorStore):
        assert len(store.search([1.0, 0.0, 0.0], top_k=1)) == 1
        results = store.search([1.0, 0.0, 0.0], min_similarity=0.5)
        assert [r.id for r in results] == ["/p/a.ts::same", "/p/b.ts::close"]

    def test_filters(self, store: InMemoryVectorStore):
        query = [1.0, 0.0, 0.0]
        assert [r.id for r in store.search(query, filters=SearchFilters(language="python"))] == ["/p/c.py::far"]
        assert [r.id for r in store.search(query, filters=SearchFilters(file="/p/b.ts"))] == ["/p/b.ts::close"]
        assert [r.id for r in store.search(query, filters=SearchFilters(kinds=["class"]))] == ["/p/c.py::far"]

        excluded = store.search(query, filters=SearchFilters(exclude_files=["/p/a.ts", "/p/c.py"]))
        assert [r.id for r in excluded] == ["/p/b.ts::close"]

    def test_mismatched_dimensions_score_zero(self, store: InMemoryVectorStore):
        results = store.search([1.0, 0.0], top_k=3)
        assert all(r.similarity == 0.0 for r in results)

    def test_snapshot_round_trip(self, store: InMemoryVectorStore, temp_dir: Path):
        path = temp_dir / "snap" / "vectors.json"
        store.save(path)

        restored = InMemoryVectorStore()
        assert restored.load(path) == 3
        assert sorted(restored.ids()) == sorted(store.ids())
        assert restored.get("/p/c.py::far").metadata.language == "python"
        assert restored.get("/p/b.ts::close").vector == [0.9, 0.1, 0.0]

    def test_bad_snapshot_leaves_store_empty(self, store: InMemoryVectorStore, temp_dir: Path):
        path = temp_dir / "broken.json"
        path.write_text(json.dumps({"entries": [{"id": "x"}]}))
        assert store.load(path) == 0
        assert store.size() == 0

        assert store.load(temp_dir / "missing.json") == 0
