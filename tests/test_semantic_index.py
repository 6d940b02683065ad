"""Tests for building, updating and caching the semantic index."""

from pathlib import Path

import pytest

from codecontext.embeddings import EmbeddingGenerator
from codecontext.graph_builder import build_graph, update_graph
from codecontext.semantic_index import SemanticIndexManager, compute_index_stats, stale_files
from codecontext.storage import SemanticIndexCache

from conftest import RecordingEmbedder


@pytest.fixture
def cache(temp_dir: Path) -> SemanticIndexCache:
    return SemanticIndexCache(cache_dir=temp_dir / "semantic")


def _manager(embedder, cache: SemanticIndexCache) -> SemanticIndexManager:
    return SemanticIndexManager(EmbeddingGenerator(embedder, batch_size=4, batch_delay=0), cache=cache)


def _assert_in_step(index):
    assert set(index.embeddings) == set(index.vector_store.ids())
    assert set(index.embeddings) <= set(index.units)


class TestBuild:
    """Full builds."""

    def test_build_embeds_every_unit(self, project_copy: Path, recording_embedder, cache):
        graph = build_graph(str(project_copy)).graph
        index = _manager(recording_embedder, cache).build(graph)

        utils_ts = str(project_copy / "utils.ts")
        assert f"{utils_ts}::formatDate" in index.units
        assert index.units[f"{utils_ts}::formatDate"].code.startswith("export function formatDate")
        assert len(index.embeddings) == len(index.units)
        assert len(recording_embedder.texts) == len(index.units)
        assert index.model == "hash"
        assert index.project_root == str(project_copy)
        assert index.stats.total_units == len(index.units)
        assert index.stats.language_breakdown["typescript"] >= 5
        _assert_in_step(index)

    def test_max_units(self, project_copy: Path, recording_embedder, cache):
        graph = build_graph(str(project_copy)).graph
        index = _manager(recording_embedder, cache).build(graph, max_units=2)
        assert len(index.units) == 2

    def test_skip_embeddings(self, project_copy: Path, recording_embedder, cache):
        graph = build_graph(str(project_copy)).graph
        index = _manager(recording_embedder, cache).build(graph, skip_embeddings=True)
        assert index.units
        assert index.embeddings == {}
        assert index.vector_store.size() == 0
        assert recording_embedder.texts == []

    def test_failed_embedding_leaves_unit_unembedded(self, project_copy: Path, cache):
        embedder = RecordingEmbedder(fail_on="Symbol: clamp\n")
        graph = build_graph(str(project_copy)).graph
        index = _manager(embedder, cache).build(graph)

        clamp_id = f"{project_copy / 'utils.ts'}::clamp"
        assert clamp_id in index.units
        assert clamp_id not in index.embeddings
        assert clamp_id not in index.vector_store
        assert index.stats.total_embeddings == index.stats.total_units - 1
        _assert_in_step(index)

    def test_progress(self, project_copy: Path, recording_embedder, cache):
        graph = build_graph(str(project_copy)).graph
        calls = []
        index = _manager(recording_embedder, cache).build(
            graph, on_progress=lambda done, total: calls.append((done, total)),
        )
        assert calls[-1] == (len(index.units), len(index.units))


class TestUpdate:
    """Incremental updates reuse unchanged embeddings."""

    def test_only_changed_units_are_reembedded(self, project_copy: Path, recording_embedder, cache):
        graph = build_graph(str(project_copy)).graph
        manager = _manager(recording_embedder, cache)
        index = manager.build(graph)
        before = dict(index.embeddings)

        utils = project_copy / "utils.ts"
        utils.write_text(utils.read_text().replace("slice(0, 10)", "slice(0, 7)"))
        update_graph(graph, [str(utils)])
        recording_embedder.texts.clear()

        manager.update(index, [str(utils)], graph)

        assert len(recording_embedder.texts) == 1
        assert "slice(0, 7)" in recording_embedder.texts[0]
        format_date = f"{utils}::formatDate"
        clamp = f"{utils}::clamp"
        assert "slice(0, 7)" in index.units[format_date].code
        assert index.embeddings[clamp] == before[clamp]
        assert len(index.units) == len(before)
        _assert_in_step(index)

    def test_deleted_file_units_are_removed(self, project_copy: Path, recording_embedder, cache):
        graph = build_graph(str(project_copy)).graph
        manager = _manager(recording_embedder, cache)
        index = manager.build(graph)

        logger_ts = project_copy / "logger.ts"
        logger_ts.unlink()
        update_graph(graph, [str(logger_ts)])
        manager.update(index, [str(logger_ts)], graph)

        assert not any(u.file == str(logger_ts) for u in index.units.values())
        assert f"{logger_ts}::Logger" not in index.vector_store
        assert index.stats == compute_index_stats(index)
        _assert_in_step(index)


class TestLoadOrBuild:
    """Cache interplay."""

    def test_second_load_comes_from_cache(self, project_copy: Path, recording_embedder, cache):
        graph = build_graph(str(project_copy)).graph
        manager = _manager(recording_embedder, cache)
        first = manager.load_or_build(graph)
        embedded = len(recording_embedder.texts)

        second = manager.load_or_build(graph, changed_files=[])

        assert len(recording_embedder.texts) == embedded
        assert set(second.units) == set(first.units)
        assert second.embeddings == first.embeddings
        _assert_in_step(second)

    def test_changed_files_are_applied_and_saved(self, project_copy: Path, recording_embedder, cache):
        graph = build_graph(str(project_copy)).graph
        manager = _manager(recording_embedder, cache)
        manager.load_or_build(graph)

        added = project_copy / "extra.ts"
        added.write_text("export function extra(): number {\n  return 42;\n}\n")
        update_graph(graph, [str(added)])
        manager.load_or_build(graph, changed_files=[str(added)])

        reloaded = cache.load(str(project_copy), expected_model="hash")
        assert f"{added}::extra" in reloaded.units
        assert f"{added}::extra" in reloaded.vector_store

    def test_model_change_forces_rebuild(self, project_copy: Path, recording_embedder, cache):
        graph = build_graph(str(project_copy)).graph
        _manager(recording_embedder, cache).load_or_build(graph)

        other = RecordingEmbedder(model_key="other-model")
        index = _manager(other, cache).load_or_build(graph)

        assert index.model == "other-model"
        assert len(other.texts) == len(index.units)

    def test_force_rebuild_and_clear(self, project_copy: Path, recording_embedder, cache):
        graph = build_graph(str(project_copy)).graph
        manager = _manager(recording_embedder, cache)
        manager.load_or_build(graph)
        embedded = len(recording_embedder.texts)

        manager.load_or_build(graph, force_rebuild=True)
        assert len(recording_embedder.texts) == 2 * embedded

        assert manager.clear_cache(str(project_copy)) is True
        assert cache.load(str(project_copy)) is None

    def test_edits_are_found_without_changed_files(self, project_copy: Path, recording_embedder, cache):
        graph = build_graph(str(project_copy)).graph
        manager = _manager(recording_embedder, cache)
        manager.load_or_build(graph)

        utils = project_copy / "utils.ts"
        utils.write_text(utils.read_text().replace("slice(0, 10)", "slice(0, 7)"))
        logger_ts = project_copy / "logger.ts"
        logger_ts.unlink()
        update_graph(graph, [str(utils), str(logger_ts)])
        recording_embedder.texts.clear()

        index = manager.load_or_build(graph)

        assert "slice(0, 7)" in index.units[f"{utils}::formatDate"].code
        assert f"{logger_ts}::Logger" not in index.units
        assert len(recording_embedder.texts) == 1
        assert stale_files(index, graph) == set()
        _assert_in_step(index)

        reloaded = cache.load(str(project_copy), expected_model="hash")
        assert reloaded.file_hashes == index.file_hashes
        assert str(logger_ts) not in reloaded.file_hashes


def test_stale_files(project_copy: Path, recording_embedder, cache):
    graph = build_graph(str(project_copy)).graph
    index = _manager(recording_embedder, cache).build(graph)
    assert stale_files(index, graph) == set()

    utils = str(project_copy / "utils.ts")
    index.file_hashes[utils] = "outdated"
    gone = str(project_copy / "gone.ts")
    index.file_hashes[gone] = "abc"
    assert stale_files(index, graph) == {utils, gone}

    # a graph file that was never indexed
    del index.file_hashes[utils]
    assert utils in stale_files(index, graph)
