"""Phase transitions and role assignment, issued by one client against the shared records.

Guards are checked against a fresh read before anything is written. The
transitions are sequences of independent writes, so other clients can see
intermediate states (roles reset but phase not yet SELECTING, for example);
readers must only trust ``is_poisoner`` once the phase says roles are in play.
"""

import logging
import random
from typing import Optional

from poisoner.config import Config
from poisoner.schemas import NEXT_PHASE, GameSession, Participant, Phase
from .engine import Notice, NoticeKind, ReconciliationEngine
from .errors import PreconditionFailed, SelfNotFound
from .store import RecordStore

logger = logging.getLogger(__name__)


class PhaseController:

    def __init__(self, store: RecordStore, engine: ReconciliationEngine,
                 min_players: int = Config.MIN_PLAYERS, rng: Optional[random.Random] = None):
        self.store = store
        self.engine = engine
        self.min_players = min_players
        self.rng = rng or random.SystemRandom()

    def _me(self) -> Participant:
        me = self.engine.me
        if me is None:
            raise SelfNotFound("This client is not attached to a game")
        return me

    def _require_host(self) -> Participant:
        me = self._me()
        if not me.is_host:
            raise PreconditionFailed("Only the host can do that")
        return me

    def _read_game(self, expected: Phase) -> GameSession:
        game = self.store.read_game(self.engine.game_id)
        if game.phase is not expected:
            raise PreconditionFailed(f"Game is in {game.phase.value}, expected {expected.value}")
        return game

    def start_selection(self) -> GameSession:
        """LOBBY -> SELECTING: reset roles, pick one poisoner, then switch phase."""
        self._require_host()
        game = self._read_game(Phase.LOBBY)
        roster = self.store.list_participants(game.id)
        if len(roster) < self.min_players:
            raise PreconditionFailed(
                f"At least {self.min_players} players are required to start ({len(roster)} joined)"
            )
        return self._enter_selection(game.id, roster)

    def _enter_selection(self, game_id: str, roster) -> GameSession:
        if roster:
            poisoner = self.rng.choice(roster)
            self.store.reset_and_assign_roles(game_id, poisoner.id)
            logger.info(f"[selection] game={game_id} players={len(roster)} roles assigned")
        return self.store.update_game(game_id, phase=Phase.SELECTING)

    def acknowledge(self) -> Participant:
        """Confirm this client has seen its role. Repeats are no-ops."""
        me = self._me()
        game = self._read_game(Phase.SELECTING)
        # The projection may still hold a flag from before the last reset
        current = self.store.find_participant(game.id, me.name)
        if current.acknowledged:
            return current
        return self.store.update_participant(current.id, acknowledged=True)

    def advance(self) -> GameSession:
        """SELECTING -> ACTIVE once every participant has acknowledged."""
        self._require_host()
        game = self._read_game(Phase.SELECTING)
        roster = self.store.list_participants(game.id)
        acknowledged = sum(1 for p in roster if p.acknowledged)
        if not roster or acknowledged < len(roster):
            raise PreconditionFailed(f"{acknowledged} of {len(roster)} players have acknowledged")
        game = self.store.update_game(game.id, phase=NEXT_PHASE[game.phase])
        logger.info(f"[advance] game={game.id} phase={game.phase.value}")
        self.engine.notify(Notice(NoticeKind.CELEBRATE, game_id=game.id))
        self.engine.notify(Notice(NoticeKind.INFO, game_id=game.id, message='All aboard! The journey has begun.'))
        return game

    def complete(self) -> GameSession:
        """ACTIVE -> COMPLETED. Every attached client invalidates on seeing it."""
        self._require_host()
        game = self._read_game(Phase.ACTIVE)
        return self.store.update_game(game.id, phase=NEXT_PHASE[game.phase])

    def force(self, phase) -> GameSession:
        """Jump to any phase, with that phase's effects but without its guards."""
        self._require_host()
        phase = Phase(phase)
        game_id = self.engine.game_id
        logger.warning(f"[force-phase] game={game_id} phase={phase.value}")
        if phase is Phase.SELECTING:
            return self._enter_selection(game_id, self.store.list_participants(game_id))
        return self.store.update_game(game_id, phase=phase)
