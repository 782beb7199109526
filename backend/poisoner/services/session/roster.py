"""Roster management: creating and joining games, leaving, removal, host recovery."""

import logging
from typing import Optional

from poisoner.config import Config
from poisoner.schemas import GameSession, Participant, Phase
from .engine import ReconciliationEngine
from .errors import CapacityExceeded, Conflict, NotFound, PreconditionFailed, SessionEnded, SelfNotFound
from .local_store import SessionStore
from .store import RecordStore

logger = logging.getLogger(__name__)


def create_game(store: RecordStore, sessions: Optional[SessionStore], host_name: str) -> Participant:
    """Open a new lobby with the creator as its host."""
    game = store.create_game(Phase.LOBBY)
    host = store.insert_participant(game.id, host_name, is_host=True)
    if sessions is not None:
        sessions.save(game.id, host_name)
    logger.info(f"[create] game={game.id} host={host_name!r}")
    return host


def join_game(store: RecordStore, sessions: Optional[SessionStore], game_id: str, name: str,
              max_players: int = Config.MAX_PLAYERS) -> Participant:
    """First-time join of a game that has not completed."""
    game = store.read_game(game_id)
    if game.phase.is_terminal:
        raise SessionEnded("This train has already departed")
    roster = store.list_participants(game_id)
    if any(p.name == name for p in roster):
        raise Conflict(f"Name {name!r} is already taken")
    if len(roster) >= max_players:
        raise CapacityExceeded(f"Game {game_id} already has {len(roster)} players")
    participant = store.insert_participant(game_id, name, is_host=False)
    if sessions is not None:
        sessions.save(game_id, name)
    logger.info(f"[join] game={game_id} name={name!r}")
    return participant


def leave(store: RecordStore, engine: ReconciliationEngine, sessions: Optional[SessionStore] = None) -> None:
    """Delete this client's own row. Hosts leave the same way."""
    me = engine.me
    if me is None:
        raise SelfNotFound("This client is not attached to a game")
    engine.mark_leaving()
    store.delete_participant(me.id)
    if sessions is not None:
        sessions.clear(me.game_id)
    logger.info(f"[leave] game={me.game_id} name={me.name!r}")


def remove_participant(store: RecordStore, engine: ReconciliationEngine, participant_id: int) -> None:
    """Host removes another participant; the removed client evicts itself on the delete."""
    me = engine.me
    if me is None or not me.is_host:
        raise PreconditionFailed("Only the host can remove players")
    if participant_id == me.id:
        raise PreconditionFailed("The host leaves instead of removing themselves")
    target = next((p for p in store.list_participants(me.game_id) if p.id == participant_id), None)
    if target is None:
        raise NotFound(f"Participant {participant_id} is not in game {me.game_id}")
    if target.is_host:
        raise PreconditionFailed("The host cannot be removed")
    store.delete_participant(participant_id)
    logger.info(f"[remove] game={me.game_id} participant={participant_id}")


def hand_over_host(store: RecordStore, name: str = Config.HOST_HANDOVER_NAME,
                   sessions: Optional[SessionStore] = None) -> Participant:
    """Operator recovery: make the well-known identity the host of the active game.

    Demotes every other host row, then promotes or inserts ``name``. Skips
    the rejoin self-healing rule and the capacity limit.
    """
    game = store.find_active_game()
    if game is None:
        raise NotFound("No active game found")
    roster = store.list_participants(game.id)
    for row in roster:
        if row.is_host and row.name != name:
            store.update_participant(row.id, is_host=False)
            logger.info(f"[handover] game={game.id} demoted={row.name!r}")
    existing = next((p for p in roster if p.name == name), None)
    if existing is None:
        new_host = store.insert_participant(game.id, name, is_host=True)
    elif not existing.is_host:
        new_host = store.update_participant(existing.id, is_host=True)
    else:
        new_host = existing
    if sessions is not None:
        sessions.save(game.id, name)
    logger.info(f"[handover] game={game.id} host={name!r}")
    return new_host


def claim_host(store: RecordStore, sessions: SessionStore,
               name: str = Config.HOST_HANDOVER_NAME) -> GameSession:
    """Bind this device to the well-known host identity of the active game."""
    game = store.find_active_game()
    if game is None:
        raise NotFound("No active game found")
    try:
        host = store.find_participant(game.id, name)
    except NotFound as exc:
        raise NotFound(f"No host named {name!r} in game {game.id}") from exc
    if not host.is_host:
        raise NotFound(f"{name!r} is not the host of game {game.id}")
    sessions.save(game.id, name)
    return game
