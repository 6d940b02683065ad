"""Pytest configuration and fixtures for codecontext tests."""

import shutil
import tempfile
import threading
from pathlib import Path
from typing import Dict, Generator, List

import pytest

from codecontext.embeddings import HashEmbeddingModel


@pytest.fixture(autouse=True)
def _isolated_home(monkeypatch, tmp_path: Path):
    """Keep every cache and config file of a test inside its tmp_path.

    Nothing a test does may touch ``~/.codecontext``.
    """
    home = tmp_path / "codecontext-home"
    monkeypatch.setattr("codecontext.config.BASE_DIR", home)
    monkeypatch.setattr("codecontext.config.CACHE_DIR", home / "cache")
    monkeypatch.setattr("codecontext.config.GRAPH_CACHE_DIR", home / "cache" / "graphs")
    monkeypatch.setattr("codecontext.config.SEMANTIC_CACHE_DIR", home / "cache" / "semantic")
    monkeypatch.setattr("codecontext.config_manager.CONFIG_FILE", home / "config.toml")
    return home


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp()).resolve()
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def sample_project_path() -> Path:
    """Get path to sample test project."""
    return (Path(__file__).parent / "fixtures" / "sample_project").resolve()


@pytest.fixture
def project_copy(temp_dir: Path, sample_project_path: Path) -> Path:
    """A writable copy of the sample project."""
    target = temp_dir / "project"
    shutil.copytree(sample_project_path, target)
    return target


class RecordingEmbedder:
    """Hash embedder that records every text it is asked to embed."""

    def __init__(self, model_key: str = "hash", fail_on: str = ""):
        self.model_key = model_key
        self.fail_on = fail_on
        self.texts: List[str] = []
        self._inner = HashEmbeddingModel()
        self._lock = threading.Lock()

    def embed_text(self, text: str) -> List[float]:
        with self._lock:
            self.texts.append(text)
        if self.fail_on and self.fail_on in text:
            raise RuntimeError(f"refusing to embed {self.fail_on}")
        return self._inner.embed_text(text)


class FixedEmbedder:
    """Returns a preset vector per keyword and a default otherwise."""

    model_key = "fixed"

    def __init__(self, vectors: Dict[str, List[float]], default: List[float]):
        self.vectors = vectors
        self.default = default

    def embed_text(self, text: str) -> List[float]:
        for keyword, vector in self.vectors.items():
            if keyword in text:
                return list(vector)
        return list(self.default)


@pytest.fixture
def recording_embedder() -> RecordingEmbedder:
    return RecordingEmbedder()
