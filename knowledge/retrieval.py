from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from pathlib import Path
from typing import Any

from config.settings import Settings, get_settings
from knowledge.models import RetrievalChunk, RetrievalHit
from knowledge.normalize import chunk_hash, normalize_text, query_tokens, sha1_hex
from knowledge.storage.chunk_store import ChunkStore
from knowledge.storage.note_store import NoteStore

logger = logging.getLogger(__name__)

# Keyword density is tiny (0.01-0.05 typical); the gain maps it onto the 0-1
# range used by the answer thresholds. Swap for cosine similarity if embeddings land.
SCORE_GAIN = 25.0
LEARNED_BOOST = 1.1
MIN_LENGTH_NORM = 80
MAX_LENGTH_NORM = 800


@dataclass(slots=True)
class IngestStats:
    scanned: int = 0
    added: int = 0


class KeywordRetriever:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: ChunkStore | None = None,
        notes: NoteStore | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store or ChunkStore(self.settings.rag_store_path)
        self.notes = notes or NoteStore(self.settings.learned_dir)

    def search(self, query: str, top_k: int = 3) -> list[RetrievalHit]:
        if top_k <= 0:
            return []
        chunks = self.store.load()
        if not chunks:
            return []
        normalized = normalize_text(query)
        if not normalized:
            return []

        tokens = query_tokens(normalized)
        hits: list[RetrievalHit] = []
        for chunk in chunks:
            raw_score, score = score_chunk(tokens, chunk)
            if score <= 0:
                continue
            hits.append(
                RetrievalHit(
                    chunk_id=chunk.chunk_id,
                    text=chunk.text,
                    source=chunk.source,
                    origin=chunk.origin,
                    score=score,
                    raw_score=raw_score,
                )
            )
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:top_k]

    def add_chunk(
        self,
        text: str,
        *,
        source: str = "runtime",
        tags: list[str] | None = None,
    ) -> RetrievalChunk | None:
        clean = normalize_text(text)
        if not clean:
            return None
        chunk = RetrievalChunk(
            chunk_id=chunk_hash(source, clean),
            source=source,
            origin="runtime",
            text=clean,
            created_at=_now_iso(),
            tags=list(tags or []),
        )
        if not self.store.add(chunk):
            logger.debug("Chunk already stored: %s", chunk.chunk_id)
        return chunk

    def ingest_uploads(self, directory: str | Path | None = None) -> IngestStats:
        upload_dir = Path(directory) if directory else self.settings.uploads_dir
        stats = IngestStats()
        if not upload_dir.exists():
            return stats

        files = sorted(path for path in upload_dir.iterdir() if path.suffix.lower() == ".txt")
        stats.scanned = len(files)
        candidates: list[RetrievalChunk] = []
        for path in files:
            try:
                text = normalize_text(path.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError):
                logger.warning("Skipping unreadable upload: %s", path.name)
                continue
            if not text:
                continue
            candidates.append(
                RetrievalChunk(
                    chunk_id=sha1_hex(f"{path.name}{text}"),
                    source=path.name,
                    origin="upload",
                    text=text,
                    created_at=_now_iso(),
                )
            )
        stats.added = self.store.add_many(candidates)
        logger.info("Upload ingestion scanned=%s added=%s", stats.scanned, stats.added)
        return stats

    def ingest_learned(self, notes: NoteStore | None = None) -> IngestStats:
        note_store = notes or self.notes
        stats = IngestStats()
        learned = note_store.list_notes()
        stats.scanned = len(learned)
        candidates: list[RetrievalChunk] = []
        for note in learned:
            text = normalize_text(note.content)
            if not text:
                continue
            candidates.append(
                RetrievalChunk(
                    chunk_id=note.note_id or sha1_hex(text),
                    source="learned",
                    origin="learned",
                    text=text,
                    question=note.question,
                    tags=list(note.tags),
                    created_at=note.created_at or _now_iso(),
                )
            )
        stats.added = self.store.add_many(candidates)
        logger.info("Learned ingestion scanned=%s added=%s", stats.scanned, stats.added)
        return stats

    def stats(self) -> dict[str, Any]:
        chunks = self.store.load()
        return {
            "documents": len(chunks),
            "learned": sum(1 for chunk in chunks if chunk.source == "learned"),
        }


def score_chunk(tokens: list[str], chunk: RetrievalChunk) -> tuple[float, float]:
    text = chunk.text or ""
    if not text:
        return 0.0, 0.0
    hit_count = sum(text.count(token) for token in tokens if token)
    length_norm = max(MIN_LENGTH_NORM, min(MAX_LENGTH_NORM, len(text)))
    raw_score = hit_count / float(length_norm)
    score = min(1.0, raw_score * SCORE_GAIN)
    if chunk.source == "learned" or chunk.origin == "learned":
        score = min(1.0, score * LEARNED_BOOST)
    return raw_score, score


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
