from __future__ import annotations

import logging
from pathlib import Path
import threading
from typing import Iterable

from knowledge.models import RetrievalChunk
from knowledge.storage.json_store import read_json, write_json_atomic

logger = logging.getLogger(__name__)


class ChunkStore:
    """Append-only chunk collection kept in a single JSON file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def load(self) -> list[RetrievalChunk]:
        with self._lock:
            return self._load_locked()

    def add(self, chunk: RetrievalChunk) -> bool:
        return self.add_many([chunk]) == 1

    def add_many(self, chunks: Iterable[RetrievalChunk]) -> int:
        """Insert chunks whose id is unseen; returns the number added."""
        with self._lock:
            existing = self._load_locked()
            seen = {chunk.chunk_id for chunk in existing}
            added = 0
            for chunk in chunks:
                if chunk.chunk_id in seen:
                    continue
                seen.add(chunk.chunk_id)
                existing.append(chunk)
                added += 1
            if added:
                write_json_atomic(self.path, {"chunks": [chunk.to_dict() for chunk in existing]})
            return added

    def _load_locked(self) -> list[RetrievalChunk]:
        raw = read_json(self.path, {"chunks": []})
        if not isinstance(raw, dict) or not isinstance(raw.get("chunks"), list):
            logger.warning("Chunk store has no chunk list, treating as empty: %s", self.path)
            return []
        chunks: list[RetrievalChunk] = []
        for item in raw["chunks"]:
            chunk = RetrievalChunk.from_dict(item)
            if chunk is not None:
                chunks.append(chunk)
        return chunks
