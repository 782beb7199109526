import os
import random
import sys
import pytest

# Ensure the backend root (containing the `poisoner` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

import httpx

from poisoner import create_app, db, socketio
from poisoner.services.session.client import GameClient
from poisoner.services.session.feed import ChangeHub
from poisoner.services.session.local_store import MemorySessionStore
from poisoner.services.session.store import HttpRecordStore, SqlRecordStore


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    ALLOWED_ORIGINS = ['http://localhost:5173']
    HOST_HANDOVER_NAME = 'RUSSELL TINSLEBOTTOM'


def run_inline(target, *args):
    """Stand-in for a background task spawner: runs the task immediately."""
    target(*args)


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        import poisoner.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/feed'
    )
    yield test_client
    if test_client.is_connected('/feed'):
        test_client.disconnect(namespace='/feed')


@pytest.fixture()
def hub():
    return ChangeHub()


@pytest.fixture()
def store(flask_app, hub):
    """Database-backed record store publishing to the in-process hub."""
    return SqlRecordStore(publish=hub.publish)


@pytest.fixture()
def http_store(flask_app):
    """Record store talking to the app's REST API without a network socket."""
    http = httpx.Client(transport=httpx.WSGITransport(app=flask_app), base_url='http://testserver')
    record_store = HttpRecordStore(client=http)
    yield record_store
    record_store.close()


@pytest.fixture()
def make_client(store, hub):
    """Factory for game clients sharing one database and one change hub."""
    created = []

    def _make(seed=7, auto_deliver=True, **kwargs):
        game_client = GameClient(
            store,
            hub.feed(auto_deliver=auto_deliver),
            MemorySessionStore(),
            rng=random.Random(seed),
            spawn=run_inline,
            sleep=lambda _delay: None,
            **kwargs,
        )
        created.append(game_client)
        return game_client

    yield _make
    for game_client in created:
        game_client.shutdown()


@pytest.fixture()
def lobby(make_client):
    """A lobby with host A and players B, C and D, each on their own client."""
    host = make_client(seed=1)
    host.create_game('A')
    game_id = host.engine.game_id
    players = {'A': host}
    for seed, name in enumerate(['B', 'C', 'D'], start=2):
        player = make_client(seed=seed)
        player.join(game_id, name)
        players[name] = player
    return players
