from __future__ import annotations

import logging
from pathlib import Path
import threading

from knowledge.models import LearnedNote
from knowledge.storage.json_store import read_json, write_json_atomic

logger = logging.getLogger(__name__)


class NoteStore:
    """One JSON file per learned note, keyed by note id. Notes are write-once."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def path_for(self, note_id: str) -> Path:
        return self.directory / f"{note_id}.json"

    def exists(self, note_id: str) -> bool:
        return self.path_for(note_id).exists()

    def put_if_absent(self, note: LearnedNote) -> bool:
        with self._lock:
            path = self.path_for(note.note_id)
            if path.exists():
                return False
            write_json_atomic(path, note.to_dict())
            return True

    def list_notes(self) -> list[LearnedNote]:
        notes: list[LearnedNote] = []
        for path in sorted(self.directory.glob("*.json")):
            note = LearnedNote.from_dict(read_json(path, None))
            if note is None:
                logger.warning("Skipping malformed learned note: %s", path.name)
                continue
            notes.append(note)
        notes.sort(key=lambda note: note.created_at, reverse=True)
        return notes
