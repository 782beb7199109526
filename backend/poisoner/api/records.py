from flask import Blueprint, jsonify, request, current_app
from pydantic import ValidationError
from poisoner.feed_events import broadcast_change
from poisoner.schemas import GameCreate, GamePatch, ParticipantCreate, ParticipantPatch, RoleAssignment
from poisoner.services.session.errors import NotFound, SyncError
from poisoner.services.session.store import SqlRecordStore


records = Blueprint('records', __name__)


def _store() -> SqlRecordStore:
    return SqlRecordStore(publish=broadcast_change)


def _body(model):
    return model.model_validate(request.get_json(silent=True) or {})


def _dump(item):
    if isinstance(item, list):
        return [i.model_dump(mode='json') for i in item]
    return item.model_dump(mode='json')


@records.errorhandler(SyncError)
def handle_sync_error(exc):
    current_app.logger.info(f"[records] {request.method} {request.path} -> {exc.status_code} {exc.code}: {exc}")
    return jsonify(exc.to_dict()), exc.status_code


@records.errorhandler(ValidationError)
def handle_validation_error(exc):
    return jsonify({'error': 'Invalid request body', 'code': 'invalid_request',
                    'details': exc.errors(include_url=False, include_context=False)}), 400


@records.errorhandler(ValueError)
def handle_value_error(exc):
    return jsonify({'error': str(exc), 'code': 'invalid_request'}), 400


# ---- games ----

@records.route('/games', methods=['POST'])
def create_game():
    data = _body(GameCreate)
    game = _store().create_game(data.phase)
    return jsonify(_dump(game)), 201


@records.route('/games/active', methods=['GET'])
def get_active_game():
    game = _store().find_active_game()
    if game is None:
        raise NotFound('No active game found')
    return jsonify(_dump(game))


@records.route('/games/<string:game_id>', methods=['GET'])
def get_game(game_id):
    return jsonify(_dump(_store().read_game(game_id)))


@records.route('/games/<string:game_id>', methods=['PATCH'])
def patch_game(game_id):
    data = _body(GamePatch)
    game = _store().update_game(game_id, phase=data.phase)
    current_app.logger.info(f"[phase] game={game_id} -> {game.phase.value} rev={game.revision}")
    return jsonify(_dump(game))


# ---- participants ----

@records.route('/games/<string:game_id>/participants', methods=['GET'])
def list_participants(game_id):
    store = _store()
    store.read_game(game_id)
    name = request.args.get('name')
    if name is not None:
        try:
            return jsonify([_dump(store.find_participant(game_id, name))])
        except NotFound:
            return jsonify([])
    return jsonify(_dump(store.list_participants(game_id)))


@records.route('/games/<string:game_id>/participants', methods=['POST'])
def add_participant(game_id):
    data = _body(ParticipantCreate)
    participant = _store().insert_participant(
        game_id,
        data.name,
        is_host=data.is_host,
        is_poisoner=data.is_poisoner,
        acknowledged=data.acknowledged,
    )
    return jsonify(_dump(participant)), 201


@records.route('/games/<string:game_id>/participants', methods=['PATCH'])
def patch_participants(game_id):
    changes = _body(ParticipantPatch).model_dump(exclude_unset=True)
    store = _store()
    store.read_game(game_id)
    return jsonify(_dump(store.update_participants_where(game_id, **changes)))


@records.route('/games/<string:game_id>/roles', methods=['POST'])
def assign_roles(game_id):
    data = _body(RoleAssignment)
    store = _store()
    store.read_game(game_id)
    return jsonify(_dump(store.reset_and_assign_roles(game_id, data.poisoner_id)))


@records.route('/participants/<int:participant_id>', methods=['PATCH'])
def patch_participant(participant_id):
    changes = _body(ParticipantPatch).model_dump(exclude_unset=True)
    return jsonify(_dump(_store().update_participant(participant_id, **changes)))


@records.route('/participants/<int:participant_id>', methods=['DELETE'])
def delete_participant(participant_id):
    _store().delete_participant(participant_id)
    return jsonify({'ok': True})
