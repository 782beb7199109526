"""Rejoin: restore this device's participant row from a remembered (game, name) pair.

The row may be gone (local storage outlived it, or the player was removed),
so a missing row is re-created rather than treated as an error. Running the
protocol twice with no change in between is a no-op reconnect the second
time; a concurrent duplicate insert surfaces as ``Conflict`` instead of a
second row.
"""

import logging
from dataclasses import dataclass

from poisoner.config import Config
from poisoner.schemas import GameSession, Participant, Phase
from .errors import CapacityExceeded, NotFound, SessionEnded, SessionGone
from .local_store import SessionStore
from .store import RecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RejoinResult:
    game: GameSession
    participant: Participant
    reconnected: bool


def rejoin(store: RecordStore, sessions: SessionStore, game_id: str, name: str,
           max_players: int = Config.MAX_PLAYERS, remember: bool = True) -> RejoinResult:
    """Run the rejoin protocol; with ``remember`` off the caller records the session itself."""
    try:
        game = store.read_game(game_id)
    except NotFound as exc:
        sessions.clear(game_id)
        raise SessionGone(f"Game {game_id} no longer exists") from exc

    if game.phase.is_terminal:
        raise SessionEnded(f"Game {game_id} has already completed")

    try:
        existing = store.find_participant(game_id, name)
    except NotFound:
        existing = None

    if existing is not None:
        participant = existing
        # The lobby has no roles to acknowledge yet
        if game.phase is Phase.LOBBY and existing.acknowledged:
            participant = store.update_participant(existing.id, acknowledged=False)
        logger.info(f"[rejoin] reconnect game={game_id} name={name!r} host={participant.is_host}")
        result = RejoinResult(game, participant, reconnected=True)
    else:
        roster = store.list_participants(game_id)
        if len(roster) >= max_players:
            raise CapacityExceeded(f"Game {game_id} already has {len(roster)} players")
        # A session must never be left without a host
        become_host = not any(p.is_host for p in roster)
        participant = store.insert_participant(game_id, name, is_host=become_host)
        logger.info(f"[rejoin] re-created game={game_id} name={name!r} host={become_host}")
        result = RejoinResult(game, participant, reconnected=False)

    if remember:
        sessions.save(game_id, name)
    return result
