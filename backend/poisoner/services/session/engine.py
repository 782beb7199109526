"""Reconciliation engine: one client's projection of a game and its roster.

The projection is built from one full read and then kept current from the
change feed. Events carry full row snapshots; a snapshot whose ``revision``
is older than the row already held is stale and ignored, and deleted ids are
remembered so late inserts or updates cannot bring a row back. That makes
the projection independent of delivery order and duplication.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Callable, Dict, List, Optional, Set, Tuple

from poisoner.schemas import (
    GameDelete,
    GameSession,
    Participant,
    ParticipantDelete,
    ParticipantInsert,
    Phase,
)
from .errors import AttachCancelled, NotFound, PreconditionFailed, SelfNotFound, SessionEnded, SyncError
from .feed import ChangeFeed, Topic
from .local_store import SessionStore
from .store import RecordStore

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    DETACHED = 'detached'
    ATTACHING = 'attaching'
    ATTACHED = 'attached'
    INVALIDATED = 'invalidated'


class NoticeKind(str, Enum):
    INVALIDATED = 'invalidated'
    ERROR = 'error'
    CELEBRATE = 'celebrate'
    INFO = 'info'


@dataclass(frozen=True)
class Notice:
    """One entry on the notice stream exposed to presentation code."""
    kind: NoticeKind
    game_id: Optional[str] = None
    reason: Optional[str] = None  # evicted, left, completed, gone
    error: Optional[SyncError] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class Projection:
    game: Optional[GameSession]
    participants: Tuple[Participant, ...]
    me: Optional[Participant]

    @property
    def readiness(self) -> Tuple[int, int]:
        return sum(1 for p in self.participants if p.acknowledged), len(self.participants)


class ReconciliationEngine:

    def __init__(self, store: RecordStore, feed: ChangeFeed, sessions: Optional[SessionStore] = None):
        self.store = store
        self.feed = feed
        self.sessions = sessions
        self._lock = threading.RLock()
        self._listeners: List[Callable[[Notice], None]] = []
        self._generation = 0
        self._state = EngineState.DETACHED
        self._subscriptions = []
        self._buffer: Optional[list] = None
        self._leaving = False
        self._reset_projection(None, None)

    def _reset_projection(self, game_id, self_name):
        self._game_id = game_id
        self._self_name = self_name
        self._game: Optional[GameSession] = None
        self._participants: Dict[int, Participant] = {}
        self._tombstones: Set[int] = set()
        self._me: Optional[Participant] = None

    # ---- notice stream ----

    def add_listener(self, callback: Callable[[Notice], None]) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[Notice], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def notify(self, notice: Notice) -> None:
        for callback in list(self._listeners):
            callback(notice)

    # ---- read-only projection ----

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def game_id(self) -> Optional[str]:
        return self._game_id

    @property
    def self_name(self) -> Optional[str]:
        return self._self_name

    @property
    def game(self) -> Optional[GameSession]:
        return self._game

    @property
    def participants(self) -> Tuple[Participant, ...]:
        with self._lock:
            return tuple(self._participants[pid] for pid in sorted(self._participants))

    @property
    def me(self) -> Optional[Participant]:
        return self._me

    @property
    def is_host(self) -> bool:
        return bool(self._me and self._me.is_host)

    @property
    def readiness(self) -> Tuple[int, int]:
        return self.snapshot().readiness

    def snapshot(self) -> Projection:
        with self._lock:
            return Projection(self._game, self.participants, self._me)

    def role(self) -> Optional[bool]:
        """This client's poisoner flag, only once roles are in play."""
        with self._lock:
            if self._game is None or self._me is None:
                return None
            if self._game.phase not in (Phase.SELECTING, Phase.ACTIVE):
                return None
            return self._me.is_poisoner

    # ---- lifecycle ----

    def attach(self, game_id: str, self_name: str) -> Participant:
        """Subscribe, read the full state, and locate this client's row.

        Events arriving before the read completes are buffered and applied
        on top of it.
        """
        with self._lock:
            if self._state in (EngineState.ATTACHING, EngineState.ATTACHED):
                raise PreconditionFailed(f"Already attached to game {self._game_id}")
            self._generation += 1
            generation = self._generation
            self._state = EngineState.ATTACHING
            self._leaving = False
            self._reset_projection(game_id, self_name)
            self._buffer = []
            self._subscriptions = []
        handler = partial(self._on_event, generation)
        resync = partial(self._on_reconnect, generation)
        logger.info(f"[attach] game={game_id} name={self_name!r} generation={generation}")

        try:
            # Subscribing may wait on the transport, so the lock is not held here
            for topic in (Topic.for_game(game_id), Topic.for_participants(game_id)):
                subscription = self.feed.subscribe(topic, handler, on_reconnect=resync)
                with self._lock:
                    if generation != self._generation:
                        self.feed.unsubscribe(subscription)
                        raise AttachCancelled(f"Attach to game {game_id} was cancelled")
                    self._subscriptions.append(subscription)
            game = self.store.read_game(game_id)
            if game.phase.is_terminal:
                raise SessionEnded(f"Game {game_id} has already completed")
            roster = self.store.list_participants(game_id)
        except SyncError:
            self._release(generation)
            raise

        with self._lock:
            if generation != self._generation or self._state is not EngineState.ATTACHING:
                raise AttachCancelled(f"Attach to game {game_id} was cancelled")
            me = next((p for p in roster if p.name == self_name), None)
            if me is None:
                self._release(generation)
                raise SelfNotFound(f"No participant named {self_name!r} in game {game_id}")
            self._game = game
            self._participants = {p.id: p for p in roster}
            self._me = me
            buffered, self._buffer = self._buffer, None
            self._state = EngineState.ATTACHED
            for event in buffered:
                self._apply(event)
            logger.info(f"[attach-done] game={game_id} participants={len(roster)} replayed={len(buffered)}")
            return self._me

    def detach(self) -> None:
        """Release both subscriptions. Safe during an in-flight attach."""
        with self._lock:
            if self._state is EngineState.DETACHED and not self._subscriptions:
                logger.debug(f"[detach-skip] game={self._game_id} already detached")
                return
            self._generation += 1
            self._unsubscribe_all()
            self._buffer = None
            self._state = EngineState.DETACHED
            logger.info(f"[detach] game={self._game_id}")
            self._reset_projection(None, None)

    def _release(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._generation += 1
            self._unsubscribe_all()
            self._buffer = None
            self._state = EngineState.DETACHED

    def _unsubscribe_all(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            self.feed.unsubscribe(subscription)

    def mark_leaving(self) -> None:
        """The next removal of this client's row is a voluntary leave."""
        self._leaving = True

    # ---- feed events ----

    def _on_event(self, generation: int, event) -> None:
        with self._lock:
            if generation != self._generation:
                return
            if event.table == 'games':
                self.on_game_event(event)
            else:
                self.on_participant_event(event)

    def on_game_event(self, event) -> None:
        with self._lock:
            if self._gate(event):
                self._apply_game(event)

    def on_participant_event(self, event) -> None:
        with self._lock:
            if self._gate(event):
                self._apply_participant(event)

    def _gate(self, event) -> bool:
        if self._state is EngineState.ATTACHING:
            self._buffer.append(event)
            return False
        return self._state is EngineState.ATTACHED

    def _apply(self, event) -> None:
        if event.table == 'games':
            self._apply_game(event)
        else:
            self._apply_participant(event)

    def _apply_game(self, event) -> None:
        if isinstance(event, GameDelete):
            if event.before.id == self._game_id:
                self._invalidate('gone')
            return
        row = event.after
        if row.id != self._game_id:
            return
        if self._game is not None and row.revision < self._game.revision:
            logger.debug(f"[stale-game] game={row.id} revision={row.revision} held={self._game.revision}")
            return
        self._game = row
        if row.phase.is_terminal:
            self._invalidate('completed')

    def _apply_participant(self, event) -> None:
        if isinstance(event, ParticipantDelete):
            row = event.before
            self._tombstones.add(row.id)
            self._participants.pop(row.id, None)
            if self._is_self(row):
                self._invalidate('left' if self._leaving else 'evicted')
            return
        row = event.after
        if row.game_id != self._game_id or row.id in self._tombstones:
            return
        current = self._participants.get(row.id)
        if current is not None:
            if isinstance(event, ParticipantInsert):
                return
            if row.revision < current.revision:
                logger.debug(f"[stale-participant] id={row.id} revision={row.revision} held={current.revision}")
                return
        self._participants[row.id] = row
        if row.name == self._self_name:
            self._me = row

    def _is_self(self, row: Participant) -> bool:
        if row.name != self._self_name:
            return False
        return self._me is None or self._me.id == row.id

    def _invalidate(self, reason: str) -> None:
        if self._state is EngineState.INVALIDATED:
            return
        self._state = EngineState.INVALIDATED
        logger.info(f"[invalidate] game={self._game_id} name={self._self_name!r} reason={reason}")
        if self.sessions is not None:
            self.sessions.clear(self._game_id)
        self.notify(Notice(NoticeKind.INVALIDATED, game_id=self._game_id, reason=reason))

    # ---- reconnect ----

    def _on_reconnect(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._state is not EngineState.ATTACHED:
                return
            game_id = self._game_id
        self.resync(generation)
        logger.info(f"[resync] game={game_id}")

    def resync(self, generation: Optional[int] = None) -> None:
        """Re-read the full state after missed events and fold it in."""
        generation = self._generation if generation is None else generation
        game_id = self._game_id
        try:
            game = self.store.read_game(game_id)
            roster = self.store.list_participants(game_id)
        except NotFound:
            with self._lock:
                if generation == self._generation:
                    self._invalidate('gone')
            return
        except SyncError as exc:
            logger.error(f"[resync-failed] game={game_id} error={exc}")
            self.notify(Notice(NoticeKind.ERROR, game_id=game_id, error=exc, message=str(exc)))
            return

        with self._lock:
            if generation != self._generation or self._state is not EngineState.ATTACHED:
                return
            present = {p.id for p in roster}
            for pid in [pid for pid in self._participants if pid not in present]:
                del self._participants[pid]
            for row in roster:
                current = self._participants.get(row.id)
                if row.id in self._tombstones or (current is not None and row.revision < current.revision):
                    continue
                self._participants[row.id] = row
                if row.name == self._self_name:
                    self._me = row
            if self._game is None or game.revision >= self._game.revision:
                self._game = game
            if self._me is not None and self._me.id not in present:
                self._invalidate('left' if self._leaving else 'evicted')
            elif self._game.phase.is_terminal:
                self._invalidate('completed')
