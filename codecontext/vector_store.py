"""In-memory vector store with exact cosine search.

Every query is a linear scan: filter by metadata, score with cosine
similarity, drop scores below the floor, sort descending and truncate.
That is exact and fast enough for the few thousand code units of a single
project; approximate indexes are not needed at this scale.

Schema per entry:

========= ================ ======================================
Field     Type             Description
========= ================ ======================================
id        str              Code unit id (``<file>::<symbol>``)
vector    List[float]      Embedding vector
metadata  VectorMetadata   The unit plus its file / language / kind
========= ================ ======================================
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from .embeddings import cosine_similarity
from .models import CodeUnit, SearchFilters, SearchResult, VectorMetadata

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = "1.0.0"


@dataclass
class VectorEntry:
    id: str
    vector: List[float]
    metadata: VectorMetadata


class InMemoryVectorStore:
    """Id -> (vector, metadata) map with brute-force cosine search."""

    def __init__(self) -> None:
        self._entries: Dict[str, VectorEntry] = {}

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def insert(self, entry_id: str, vector: List[float], metadata: VectorMetadata) -> None:
        """Insert or replace the entry for *entry_id*."""
        self._entries[entry_id] = VectorEntry(id=entry_id, vector=list(vector), metadata=metadata)

    def delete(self, entry_id: str) -> bool:
        return self._entries.pop(entry_id, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._entries

    def ids(self) -> List[str]:
        return list(self._entries)

    def get(self, entry_id: str) -> Optional[VectorEntry]:
        return self._entries.get(entry_id)

    def search(
        self,
        query: List[float],
        top_k: int = 10,
        filters: Optional[SearchFilters] = None,
        min_similarity: float = 0.0,
    ) -> List[SearchResult]:
        """Return the *top_k* most similar entries passing *filters*.

        Results are ordered by similarity (descending), ties by id.
        """
        results: List[SearchResult] = []
        for entry in self._entries.values():
            if filters is not None and not _passes(entry.metadata, filters):
                continue
            similarity = cosine_similarity(query, entry.vector)
            if similarity < min_similarity:
                continue
            results.append(SearchResult(id=entry.id, similarity=similarity, metadata=entry.metadata))

        results.sort(key=lambda r: (-r.similarity, r.id))
        return results[:top_k]

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def save(self, path: Path) -> None:
        """Write a JSON snapshot of every entry."""
        data = {
            "version": SNAPSHOT_VERSION,
            "entries": [
                {
                    "id": entry.id,
                    "vector": entry.vector,
                    "unit": entry.metadata.unit.to_dict(),
                }
                for entry in self._entries.values()
            ],
        }
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data), encoding="utf-8")

    def load(self, path: Path) -> int:
        """Replace the contents with a snapshot; returns the entry count.

        A missing or unreadable snapshot leaves the store empty.
        """
        self.clear()
        path = Path(path)
        if not path.exists():
            return 0
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            for item in data["entries"]:
                unit = CodeUnit.from_dict(item["unit"])
                self.insert(item["id"], [float(v) for v in item["vector"]], VectorMetadata.for_unit(unit))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Could not load vector snapshot %s, starting empty: %s", path, exc)
            self.clear()
        return self.size()


def _passes(metadata: VectorMetadata, filters: SearchFilters) -> bool:
    if filters.file is not None and metadata.file != filters.file:
        return False
    if filters.language is not None and metadata.language != filters.language:
        return False
    if filters.kinds and metadata.kind not in filters.kinds:
        return False
    if filters.exclude_files and metadata.file in filters.exclude_files:
        return False
    return True
