from __future__ import annotations

import logging
from pathlib import Path
import re
import threading
from typing import Iterable
import uuid

from knowledge.models import IntentState, Session, Turn
from knowledge.storage.json_store import read_json, write_json_atomic

logger = logging.getLogger(__name__)

_SAFE_ID_RE = re.compile(r"[^A-Za-z0-9_.-]")


class SessionStore:
    """Per-session JSON records: message history plus any open slot-filling state."""

    def __init__(self, directory: str | Path, max_turns: int = 80) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.max_turns = max(1, int(max_turns))
        self._lock = threading.Lock()

    def path_for(self, session_id: str) -> Path:
        safe = _SAFE_ID_RE.sub("_", session_id)[:128] or "_"
        return self.directory / f"{safe}.json"

    def get_or_create(self, session_id: str | None = None) -> str:
        sid = str(session_id or "").strip() or str(uuid.uuid4())
        with self._lock:
            path = self.path_for(sid)
            if not path.exists():
                write_json_atomic(path, Session(session_id=sid).to_dict())
                logger.debug("Created session %s", sid)
        return sid

    def load(self, session_id: str) -> Session:
        return Session.from_dict(read_json(self.path_for(session_id), None), session_id)

    def get_history(self, session_id: str) -> list[Turn]:
        return self.load(session_id).messages

    def get_intent_state(self, session_id: str) -> IntentState | None:
        return self.load(session_id).intent_state

    def set_intent_state(self, session_id: str, state: IntentState | None) -> IntentState | None:
        with self._lock:
            session = self.load(session_id)
            session.intent_state = state
            self._save(session)
        return state

    def append_turns(self, session_id: str, turns: Iterable[Turn]) -> list[Turn]:
        with self._lock:
            session = self.load(session_id)
            session.messages = (session.messages + list(turns))[-self.max_turns :]
            self._save(session)
            return list(session.messages)

    def bump_correction(self, session_id: str, is_correction: bool) -> int:
        """Count consecutive correction turns; any other turn resets the counter."""
        with self._lock:
            session = self.load(session_id)
            session.correction_count = session.correction_count + 1 if is_correction else 0
            self._save(session)
            return session.correction_count

    def reset(self, session_id: str) -> None:
        with self._lock:
            path = self.path_for(session_id)
            if path.exists():
                path.unlink()

    def _save(self, session: Session) -> None:
        write_json_atomic(self.path_for(session.session_id), session.to_dict())
