from __future__ import annotations

from pathlib import Path

import pytest

from config.settings import build_settings
from knowledge.learning import build_note
from knowledge.models import RetrievalChunk
from knowledge.retrieval import KeywordRetriever
from knowledge.storage.chunk_store import ChunkStore
from knowledge.storage.note_store import NoteStore


def _retriever(tmp_path: Path) -> KeywordRetriever:
    return KeywordRetriever(build_settings(tmp_path))


def _chunk(chunk_id: str, text: str, *, origin: str = "runtime", source: str = "runtime") -> RetrievalChunk:
    return RetrievalChunk(
        chunk_id=chunk_id,
        source=source,
        origin=origin,
        text=text,
        created_at="2025-01-01T00:00:00+00:00",
    )


def test_empty_store_and_empty_query_return_nothing(tmp_path: Path) -> None:
    retriever = _retriever(tmp_path)
    assert retriever.search("香水") == []

    retriever.add_chunk("香水的前調通常持續十五分鐘左右")
    assert retriever.search("！？") == []
    assert retriever.search("香水", top_k=0) == []


def test_search_orders_by_keyword_density(tmp_path: Path) -> None:
    retriever = _retriever(tmp_path)
    retriever.store.add_many([_chunk("sparse", "香水"), _chunk("dense", "香水香水香水"), _chunk("other", "天空")])

    hits = retriever.search("香水", top_k=5)
    assert [hit.chunk_id for hit in hits] == ["dense", "sparse"]
    assert hits[0].score == 1.0
    # 3 hits over the 80-char floor, scaled by 25.
    assert hits[1].score == pytest.approx(3 / 80 * 25)
    assert hits[1].raw_score == pytest.approx(3 / 80)


def test_learned_chunks_get_a_boost(tmp_path: Path) -> None:
    retriever = _retriever(tmp_path)
    retriever.store.add_many(
        [
            _chunk("runtime", "藍色"),
            _chunk("learned", "藍色", origin="learned", source="learned"),
        ]
    )

    hits = retriever.search("藍色")
    assert hits[0].chunk_id == "learned"
    assert hits[0].is_learned
    assert hits[0].score == 1.0
    assert hits[1].score == pytest.approx(0.9375)


def test_top_k_truncates(tmp_path: Path) -> None:
    retriever = _retriever(tmp_path)
    retriever.store.add_many([_chunk(f"c{idx}", "咖啡" * (idx + 1)) for idx in range(5)])
    assert len(retriever.search("咖啡", top_k=2)) == 2


def test_add_chunk_is_idempotent(tmp_path: Path) -> None:
    retriever = _retriever(tmp_path)
    first = retriever.add_chunk("  同一段內容。 ")
    second = retriever.add_chunk("同一段內容")

    assert first is not None and second is not None
    assert first.chunk_id == second.chunk_id
    assert len(retriever.store.load()) == 1
    assert retriever.add_chunk("   ") is None


def test_ingest_uploads_only_reads_txt(tmp_path: Path) -> None:
    settings = build_settings(tmp_path)
    settings.uploads_dir.mkdir(parents=True, exist_ok=True)
    (settings.uploads_dir / "guide.txt").write_text("香水保存要避開陽光直射", encoding="utf-8")
    (settings.uploads_dir / "notes.md").write_text("不會被讀取", encoding="utf-8")

    retriever = KeywordRetriever(settings)
    stats = retriever.ingest_uploads()
    assert (stats.scanned, stats.added) == (1, 1)
    assert retriever.ingest_uploads().added == 0

    hit = retriever.search("陽光")[0]
    assert hit.source == "guide.txt"
    assert hit.origin == "upload"


def test_ingest_learned_uses_note_id(tmp_path: Path) -> None:
    settings = build_settings(tmp_path)
    notes = NoteStore(settings.learned_dir)
    note = build_note("香水前調多久", "香水前調通常持續十五分鐘左右。")
    notes.put_if_absent(note)

    retriever = KeywordRetriever(settings, notes=notes)
    stats = retriever.ingest_learned()
    assert (stats.scanned, stats.added) == (1, 1)
    assert retriever.stats() == {"documents": 1, "learned": 1}

    hits = retriever.search("香水前調多久")
    assert hits[0].chunk_id == note.note_id
    assert hits[0].is_learned


def test_corrupt_store_reads_as_empty(tmp_path: Path) -> None:
    path = tmp_path / "rag_store.json"
    path.write_text("{not json", encoding="utf-8")
    store = ChunkStore(path)
    assert store.load() == []

    path.write_text('{"chunks": "nope"}', encoding="utf-8")
    assert store.load() == []

    assert store.add(_chunk("a", "內容"))
    assert len(store.load()) == 1
