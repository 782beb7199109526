"""Per-device memory of the sessions this device has joined.

Most recent first, de-duplicated by game id, capped. Purely local: it carries
no authority and is only used to offer a rejoin.
"""

import json
import logging
import os
import time
from dataclasses import asdict, dataclass
from typing import List, Optional

from poisoner.config import Config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionEntry:
    game_id: str
    participant_name: str
    timestamp: float


class SessionStore:
    """In-memory session history. Subclasses persist the entry list."""

    def __init__(self, max_entries: int = Config.MAX_RECENT_SESSIONS, clock=time.time):
        self.max_entries = max_entries
        self._clock = clock
        self._entries: List[SessionEntry] = []

    def _load(self) -> List[SessionEntry]:
        return list(self._entries)

    def _dump(self, entries: List[SessionEntry]) -> None:
        self._entries = list(entries)

    def save(self, game_id: str, participant_name: str) -> SessionEntry:
        entry = SessionEntry(game_id, participant_name, self._clock())
        entries = [entry] + [e for e in self._load() if e.game_id != game_id]
        self._dump(entries[:self.max_entries])
        return entry

    def get_all(self) -> List[SessionEntry]:
        return self._load()

    def get_most_recent(self) -> Optional[SessionEntry]:
        entries = self._load()
        return entries[0] if entries else None

    def clear(self, game_id: Optional[str] = None) -> None:
        if game_id is None:
            self._dump([])
            return
        self._dump([e for e in self._load() if e.game_id != game_id])

    def clear_old(self, max_age: float = Config.SESSION_MAX_AGE_SEC) -> None:
        now = self._clock()
        self._dump([e for e in self._load() if now - e.timestamp < max_age])


MemorySessionStore = SessionStore


class JsonSessionStore(SessionStore):
    """Session history kept in a JSON file."""

    def __init__(self, path: str = Config.SESSION_STORE_PATH, **kwargs):
        super().__init__(**kwargs)
        self.path = path

    def _load(self):
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, 'r', encoding='utf-8') as fh:
                raw = json.load(fh)
            return [SessionEntry(**item) for item in raw]
        except (ValueError, TypeError) as exc:
            logger.warning(f"[sessions] ignoring unreadable session file {self.path}: {exc}")
            return []

    def _dump(self, entries):
        if not entries:
            if os.path.exists(self.path):
                os.remove(self.path)
            return
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, 'w', encoding='utf-8') as fh:
            json.dump([asdict(e) for e in entries], fh)
        os.replace(tmp_path, self.path)
