"""Shared record store: the game row and participant rows every client reads and writes.

``SqlRecordStore`` talks to the database directly (server side, CLI, tests)
and publishes a feed event for every committed row change.
``HttpRecordStore`` reaches the same operations through the REST API.
"""

import abc
import functools
import logging
from typing import Callable, List, Optional

import httpx
from sqlalchemy.exc import IntegrityError, OperationalError

from poisoner import db
from poisoner.models import Game, Participant as ParticipantRow
from poisoner.schemas import GameSession, Participant, Phase
from .errors import Conflict, NotFound, Transient, error_from_response

logger = logging.getLogger(__name__)

GAME_FIELDS = frozenset({'phase'})
PARTICIPANT_FIELDS = frozenset({'is_host', 'is_poisoner', 'acknowledged'})


def _check_fields(changes: dict, allowed: frozenset) -> dict:
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Unsupported fields: {sorted(unknown)}")
    return {k: (v.value if isinstance(v, Phase) else v) for k, v in changes.items()}


class RecordStore(abc.ABC):
    """Operations the session core needs from the shared records."""

    @abc.abstractmethod
    def read_game(self, game_id: str) -> GameSession:
        ...

    @abc.abstractmethod
    def create_game(self, phase: Phase = Phase.LOBBY) -> GameSession:
        ...

    @abc.abstractmethod
    def update_game(self, game_id: str, **changes) -> GameSession:
        ...

    @abc.abstractmethod
    def find_active_game(self) -> Optional[GameSession]:
        """Most recently created game that has not completed."""

    @abc.abstractmethod
    def list_participants(self, game_id: str) -> List[Participant]:
        ...

    @abc.abstractmethod
    def find_participant(self, game_id: str, name: str) -> Participant:
        ...

    @abc.abstractmethod
    def insert_participant(self, game_id: str, name: str, is_host: bool = False,
                           is_poisoner: Optional[bool] = None, acknowledged: bool = False) -> Participant:
        ...

    @abc.abstractmethod
    def update_participant(self, participant_id: int, **changes) -> Participant:
        ...

    @abc.abstractmethod
    def update_participants_where(self, game_id: str, **changes) -> List[Participant]:
        ...

    @abc.abstractmethod
    def delete_participant(self, participant_id: int) -> None:
        ...

    def reset_and_assign_roles(self, game_id: str, poisoner_id: int) -> List[Participant]:
        """Clear every role and acknowledgment, then mark one poisoner.

        Two independent writes here; stores with multi-row transactions
        override this to apply both at once.
        """
        self.update_participants_where(game_id, acknowledged=False, is_poisoner=False)
        self.update_participant(poisoner_id, is_poisoner=True)
        return self.list_participants(game_id)


def _translate_errors(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except OperationalError as exc:
            db.session.rollback()
            raise Transient(f"Record store unavailable: {exc.orig}") from exc
    return wrapper


class SqlRecordStore(RecordStore):
    """Record store backed by the Flask-SQLAlchemy session (needs an app context)."""

    def __init__(self, publish: Optional[Callable] = None):
        self.publish = publish

    def _emit(self, events) -> None:
        if self.publish is None:
            return
        for table, event_type, before, after in events:
            self.publish(table, event_type, before, after)

    @staticmethod
    def _game_row(game_id: str):
        game = db.session.get(Game, game_id)
        if game is None:
            raise NotFound(f"Game {game_id} not found")
        return game

    @staticmethod
    def _participant_row(participant_id: int):
        row = db.session.get(ParticipantRow, participant_id)
        if row is None:
            raise NotFound(f"Participant {participant_id} not found")
        return row

    @_translate_errors
    def read_game(self, game_id):
        return GameSession.model_validate(self._game_row(game_id).to_dict())

    @_translate_errors
    def create_game(self, phase=Phase.LOBBY):
        game = Game(phase=Phase(phase).value)
        db.session.add(game)
        db.session.commit()
        after = game.to_dict()
        logger.info(f"[records] created game={game.id} phase={game.phase}")
        self._emit([('games', 'INSERT', None, after)])
        return GameSession.model_validate(after)

    @_translate_errors
    def update_game(self, game_id, **changes):
        changes = _check_fields(changes, GAME_FIELDS)
        if 'phase' in changes:
            changes['phase'] = Phase(changes['phase']).value
        game = self._game_row(game_id)
        before = game.to_dict()
        for key, value in changes.items():
            setattr(game, key, value)
        game.revision = (game.revision or 0) + 1
        db.session.commit()
        after = game.to_dict()
        self._emit([('games', 'UPDATE', before, after)])
        return GameSession.model_validate(after)

    @_translate_errors
    def find_active_game(self):
        game = (
            Game.query.filter(Game.phase != Phase.COMPLETED.value)
            .order_by(Game.created_at.desc(), Game.id.desc())
            .first()
        )
        return GameSession.model_validate(game.to_dict()) if game else None

    @_translate_errors
    def list_participants(self, game_id):
        rows = ParticipantRow.query.filter_by(game_id=game_id).order_by(ParticipantRow.id).all()
        return [Participant.model_validate(r.to_dict()) for r in rows]

    @_translate_errors
    def find_participant(self, game_id, name):
        row = ParticipantRow.query.filter_by(game_id=game_id, name=name).first()
        if row is None:
            raise NotFound(f"No participant named {name!r} in game {game_id}")
        return Participant.model_validate(row.to_dict())

    @_translate_errors
    def insert_participant(self, game_id, name, is_host=False, is_poisoner=None, acknowledged=False):
        self._game_row(game_id)
        row = ParticipantRow(
            game_id=game_id,
            name=name,
            is_host=bool(is_host),
            is_poisoner=is_poisoner,
            acknowledged=bool(acknowledged),
        )
        db.session.add(row)
        try:
            db.session.commit()
        except IntegrityError as exc:
            db.session.rollback()
            raise Conflict(f"Name {name!r} is already taken") from exc
        after = row.to_dict()
        logger.info(f"[records] inserted participant={row.id} game={game_id} name={name!r} host={row.is_host}")
        self._emit([('participants', 'INSERT', None, after)])
        return Participant.model_validate(after)

    @_translate_errors
    def update_participant(self, participant_id, **changes):
        changes = _check_fields(changes, PARTICIPANT_FIELDS)
        row = self._participant_row(participant_id)
        before = row.to_dict()
        for key, value in changes.items():
            setattr(row, key, value)
        row.revision = (row.revision or 0) + 1
        db.session.commit()
        after = row.to_dict()
        self._emit([('participants', 'UPDATE', before, after)])
        return Participant.model_validate(after)

    @_translate_errors
    def update_participants_where(self, game_id, **changes):
        changes = _check_fields(changes, PARTICIPANT_FIELDS)
        rows = ParticipantRow.query.filter_by(game_id=game_id).order_by(ParticipantRow.id).all()
        befores = [r.to_dict() for r in rows]
        for row in rows:
            for key, value in changes.items():
                setattr(row, key, value)
            row.revision = (row.revision or 0) + 1
        db.session.commit()
        afters = [r.to_dict() for r in rows]
        self._emit([('participants', 'UPDATE', b, a) for b, a in zip(befores, afters)])
        return [Participant.model_validate(a) for a in afters]

    @_translate_errors
    def delete_participant(self, participant_id):
        row = db.session.get(ParticipantRow, participant_id)
        if row is None:
            return
        before = row.to_dict()
        db.session.delete(row)
        db.session.commit()
        logger.info(f"[records] deleted participant={participant_id} game={before['game_id']}")
        self._emit([('participants', 'DELETE', before, None)])

    @_translate_errors
    def reset_and_assign_roles(self, game_id, poisoner_id):
        rows = ParticipantRow.query.filter_by(game_id=game_id).order_by(ParticipantRow.id).all()
        if not any(r.id == poisoner_id for r in rows):
            raise NotFound(f"Participant {poisoner_id} is not in game {game_id}")
        befores = [r.to_dict() for r in rows]
        for row in rows:
            row.acknowledged = False
            row.is_poisoner = row.id == poisoner_id
            row.revision = (row.revision or 0) + 1
        db.session.commit()
        afters = [r.to_dict() for r in rows]
        logger.info(f"[records] roles assigned game={game_id} poisoner={poisoner_id}")
        self._emit([('participants', 'UPDATE', b, a) for b, a in zip(befores, afters)])
        return [Participant.model_validate(a) for a in afters]


class HttpRecordStore(RecordStore):
    """Record store reached over the server's REST API."""

    def __init__(self, base_url: Optional[str] = None, client: Optional[httpx.Client] = None,
                 timeout: float = 10.0):
        if client is None:
            client = httpx.Client(base_url=base_url, timeout=timeout)
        self._http = client

    def close(self) -> None:
        self._http.close()

    def _request(self, method: str, path: str, **kwargs):
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise Transient(f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            raise error_from_response(response.status_code, body)
        return response.json()

    def read_game(self, game_id):
        return GameSession.model_validate(self._request('GET', f'/api/games/{game_id}'))

    def create_game(self, phase=Phase.LOBBY):
        data = self._request('POST', '/api/games', json={'phase': Phase(phase).value})
        return GameSession.model_validate(data)

    def update_game(self, game_id, **changes):
        changes = _check_fields(changes, GAME_FIELDS)
        return GameSession.model_validate(self._request('PATCH', f'/api/games/{game_id}', json=changes))

    def find_active_game(self):
        try:
            data = self._request('GET', '/api/games/active')
        except NotFound:
            return None
        return GameSession.model_validate(data)

    def list_participants(self, game_id):
        data = self._request('GET', f'/api/games/{game_id}/participants')
        return [Participant.model_validate(p) for p in data]

    def find_participant(self, game_id, name):
        data = self._request('GET', f'/api/games/{game_id}/participants', params={'name': name})
        if not data:
            raise NotFound(f"No participant named {name!r} in game {game_id}")
        return Participant.model_validate(data[0])

    def insert_participant(self, game_id, name, is_host=False, is_poisoner=None, acknowledged=False):
        body = {'name': name, 'is_host': is_host, 'is_poisoner': is_poisoner, 'acknowledged': acknowledged}
        return Participant.model_validate(self._request('POST', f'/api/games/{game_id}/participants', json=body))

    def update_participant(self, participant_id, **changes):
        changes = _check_fields(changes, PARTICIPANT_FIELDS)
        data = self._request('PATCH', f'/api/participants/{participant_id}', json=changes)
        return Participant.model_validate(data)

    def update_participants_where(self, game_id, **changes):
        changes = _check_fields(changes, PARTICIPANT_FIELDS)
        data = self._request('PATCH', f'/api/games/{game_id}/participants', json=changes)
        return [Participant.model_validate(p) for p in data]

    def delete_participant(self, participant_id):
        self._request('DELETE', f'/api/participants/{participant_id}')

    def reset_and_assign_roles(self, game_id, poisoner_id):
        data = self._request('POST', f'/api/games/{game_id}/roles', json={'poisoner_id': poisoner_id})
        return [Participant.model_validate(p) for p in data]
