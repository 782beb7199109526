"""The per-client session object that presentation code talks to.

It owns the engine, its stores and feed, and the action surface, and turns
every failure into both a raised error and a notice on one stream. A session
is only remembered locally once attaching has fully succeeded; closing while
a join or rejoin is in flight leaves the client on the entry screen.
"""

import logging
import random
import time
from enum import Enum
from typing import Callable, List, Optional

from poisoner.config import Config
from poisoner.schemas import GameSession, Participant, Phase
from . import roster
from .debug import DebugControls
from .engine import EngineState, Notice, NoticeKind, Projection, ReconciliationEngine
from .errors import AttachCancelled, NotFound, SyncError
from .feed import ChangeFeed, SocketIOChangeFeed
from .local_store import JsonSessionStore, SessionStore
from .phases import PhaseController
from .rejoin import RejoinResult, rejoin
from .store import HttpRecordStore, RecordStore

logger = logging.getLogger(__name__)


class Screen(str, Enum):
    ENTRY = 'entry'
    GAME = 'game'


class GameClient:

    def __init__(self, store: RecordStore, feed: ChangeFeed, sessions: SessionStore,
                 max_players: int = Config.MAX_PLAYERS, min_players: int = Config.MIN_PLAYERS,
                 rng: Optional[random.Random] = None, spawn: Optional[Callable] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.store = store
        self.feed = feed
        self.sessions = sessions
        self.max_players = max_players
        self.engine = ReconciliationEngine(store, feed, sessions)
        self.phases = PhaseController(store, self.engine, min_players=min_players, rng=rng)
        self.debug = DebugControls(store, self.engine, self.phases, spawn=spawn, sleep=sleep, rng=rng)
        self.screen = Screen.ENTRY
        self._navigation = 0
        self._listeners: List[Callable[[Notice], None]] = []
        self.engine.add_listener(self._on_notice)

    @classmethod
    def connect(cls, server_url: str = Config.SERVER_URL,
                session_path: str = Config.SESSION_STORE_PATH, **kwargs) -> 'GameClient':
        """Client wired to a running server over HTTP and Socket.IO."""
        feed = SocketIOChangeFeed(server_url)
        feed.connect()
        kwargs.setdefault('spawn', feed.start_background_task)
        return cls(HttpRecordStore(server_url), feed, JsonSessionStore(session_path), **kwargs)

    # ---- notices ----

    def add_listener(self, callback: Callable[[Notice], None]) -> None:
        self._listeners.append(callback)

    def _publish(self, notice: Notice) -> None:
        for callback in list(self._listeners):
            callback(notice)

    def _on_notice(self, notice: Notice) -> None:
        if notice.kind is NoticeKind.INVALIDATED:
            self._navigation += 1
            self.engine.detach()
            self.screen = Screen.ENTRY
        self._publish(notice)

    def _call(self, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except SyncError as exc:
            logger.warning(f"[client] {fn.__name__} failed: {exc.code}: {exc}")
            self._publish(Notice(NoticeKind.ERROR, game_id=self.engine.game_id, error=exc, message=str(exc)))
            raise

    # ---- projection ----

    @property
    def attached(self) -> bool:
        return self.screen is Screen.GAME

    def snapshot(self) -> Projection:
        return self.engine.snapshot()

    def role(self) -> Optional[bool]:
        return self.engine.role()

    @property
    def readiness(self):
        return self.engine.readiness

    def active_game(self) -> Optional[GameSession]:
        return self._call(self.store.find_active_game)

    # ---- entering a session ----

    def _enter(self, game_id: str, name: str, navigation: int) -> Participant:
        if navigation != self._navigation:
            raise AttachCancelled(f"Navigation away from game {game_id}")
        me = self.engine.attach(game_id, name)
        if navigation != self._navigation:
            self.engine.detach()
            raise AttachCancelled(f"Navigation away from game {game_id}")
        self.sessions.save(game_id, name)
        self.screen = Screen.GAME
        return me

    def create_game(self, host_name: str) -> Participant:
        def _create():
            navigation = self._begin()
            host = roster.create_game(self.store, None, host_name)
            return self._enter(host.game_id, host_name, navigation)
        return self._call(_create)

    def join(self, game_id: str, name: str) -> Participant:
        def _join():
            navigation = self._begin()
            roster.join_game(self.store, None, game_id, name, max_players=self.max_players)
            return self._enter(game_id, name, navigation)
        return self._call(_join)

    def resume(self, game_id: Optional[str] = None, name: Optional[str] = None) -> RejoinResult:
        """Rejoin a remembered session (the most recent one by default) and attach."""
        def _resume():
            nonlocal game_id, name
            if game_id is None or name is None:
                entry = self.sessions.get_most_recent()
                if entry is None:
                    raise NotFound("No remembered session to rejoin")
                game_id, name = entry.game_id, entry.participant_name
            navigation = self._begin()
            result = rejoin(self.store, self.sessions, game_id, name,
                            max_players=self.max_players, remember=False)
            self._enter(game_id, name, navigation)
            return result
        return self._call(_resume)

    def claim_host(self, name: str = Config.HOST_HANDOVER_NAME) -> RejoinResult:
        game = self._call(roster.claim_host, self.store, self.sessions, name)
        return self.resume(game.id, name)

    def _begin(self) -> int:
        if self.engine.state in (EngineState.ATTACHING, EngineState.ATTACHED):
            self.close()
        return self._navigation

    def close(self) -> None:
        """Leave the game screen without touching shared state."""
        self._navigation += 1
        self.engine.detach()
        self.screen = Screen.ENTRY

    def shutdown(self) -> None:
        self.close()
        for resource in (self.feed, self.store):
            closer = getattr(resource, 'close', None)
            if closer is not None:
                closer()

    # ---- actions ----

    def start_selection(self) -> GameSession:
        return self._call(self.phases.start_selection)

    def acknowledge(self) -> Participant:
        return self._call(self.phases.acknowledge)

    def advance(self) -> GameSession:
        return self._call(self.phases.advance)

    def complete(self) -> GameSession:
        return self._call(self.phases.complete)

    def force_phase(self, phase: Phase) -> GameSession:
        return self._call(self.phases.force, phase)

    def remove_participant(self, participant_id: int) -> None:
        self._call(roster.remove_participant, self.store, self.engine, participant_id)

    def leave(self) -> None:
        self._call(roster.leave, self.store, self.engine, self.sessions)
        if self.screen is Screen.GAME:
            self.close()
